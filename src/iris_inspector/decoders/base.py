"""
Decoder interface and the fallback record for payloads nobody interprets.
"""

from __future__ import annotations

import abc
import struct
from typing import Literal

from pydantic import Field

from ..core.contracts import WireModel

_U32 = struct.Struct("<I")


def read_u64_halves(data: bytes, offset: int) -> int:
    """
    Read a little-endian u64 as two u32 halves.

    Returns 0 when the value would run past the end of `data`.
    """
    if offset < 0 or offset + 8 > len(data):
        return 0
    (low,) = _U32.unpack_from(data, offset)
    (high,) = _U32.unpack_from(data, offset + 4)
    return (high << 32) | low


def hex32(value: int) -> str:
    return f"0x{value:08X}"


def hex64(value: int) -> str:
    return f"0x{value:016X}"


class RawPayload(WireModel):
    """Payload bytes forwarded without interpretation."""

    kind: Literal["raw"] = "raw"
    length: int = Field(ge=0)
    reason: Literal["unregistered", "decode_failed"] = "unregistered"


class PayloadDecoder(abc.ABC):
    """Interprets the payload of one event type."""

    kind: str
    description: str = ""

    @abc.abstractmethod
    def decode(self, payload: bytes) -> WireModel:
        """Return the structured record; raise on malformed input."""


__all__ = ["PayloadDecoder", "RawPayload", "hex32", "hex64", "read_u64_halves"]
