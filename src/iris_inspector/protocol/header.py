"""
Fixed-layout event header carried at the start of every frame's data.

    RESERVED      2 bytes
    TIMESTAMP_NS  8 bytes  little-endian u64
    EVENT_TYPE    2 bytes  little-endian u16
    CPU_ID        1 byte
    RESERVED      5 bytes  (future sequence number / flags)
    PAYLOAD       remaining bytes
"""

from __future__ import annotations

import logging
import struct

from ..core.contracts import Event, Frame

logger = logging.getLogger(__name__)

HEADER_FORMAT = struct.Struct("<2xQHB5x")
HEADER_SIZE = HEADER_FORMAT.size


def encode_header(timestamp_ns: int, event_type: int, cpu_id: int) -> bytes:
    return HEADER_FORMAT.pack(timestamp_ns, event_type, cpu_id)


class HeaderParser:
    """Turns frames into events; frames shorter than the header are rejected and counted."""

    def __init__(self) -> None:
        self.rejected = 0

    def parse(self, frame: Frame) -> Event | None:
        data = frame.data
        if len(data) < HEADER_SIZE:
            self.rejected += 1
            logger.debug("Dropping frame with %d data bytes; header needs %d", len(data), HEADER_SIZE)
            return None
        timestamp_ns, event_type, cpu_id = HEADER_FORMAT.unpack_from(data)
        payload = data[HEADER_SIZE:] or None
        return Event(
            timestamp_ns=timestamp_ns,
            event_type=event_type,
            cpu_id=cpu_id,
            payload=payload,
        )


__all__ = ["HEADER_FORMAT", "HEADER_SIZE", "HeaderParser", "encode_header"]
