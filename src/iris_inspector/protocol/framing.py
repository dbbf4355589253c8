"""
Stateful frame extraction for the IRIS wire protocol.

Wire layout of a single frame::

    MAGIC   4 bytes  b"IRIS" (0x53495249 read as a little-endian u32)
    LENGTH  2 bytes  little-endian count of the bytes that follow
    DATA    LENGTH bytes

The producer never waits for acknowledgement, so the decoder has to cope
with arbitrary chunk boundaries, garbage before the first frame, and a
producer that restarts in the middle of a frame. When the buffer does not
start with the marker it scans forward byte by byte for the next one and
reports how much it threw away.
"""

from __future__ import annotations

import struct

from ..core.contracts import CorruptionSignal, Frame
from .header import HEADER_SIZE

MAGIC = 0x53495249
MAGIC_BYTES = struct.pack("<I", MAGIC)
LENGTH_FORMAT = struct.Struct("<H")
PREAMBLE_SIZE = len(MAGIC_BYTES) + LENGTH_FORMAT.size
MIN_FRAME_SIZE = PREAMBLE_SIZE + HEADER_SIZE
# A marker split across two chunks leaves at most this many bytes behind.
RETAINED_TAIL = len(MAGIC_BYTES) - 1

REASON_RESYNCHRONIZED = "resynchronized"
REASON_NO_MARKER = "no marker found"

Emission = Frame | CorruptionSignal


def encode_frame(data: bytes) -> bytes:
    """Wrap `data` in the IRIS preamble."""
    if len(data) > 0xFFFF:
        raise ValueError(f"Frame data too large: {len(data)} bytes")
    return MAGIC_BYTES + LENGTH_FORMAT.pack(len(data)) + data


class FrameDecoder:
    """
    Accumulates raw chunks and yields complete frames.

    `write` returns the frames and corruption signals produced by the new
    chunk, in stream order. The decoder is not re-entrant; a single ingest
    connection drives it sequentially.
    """

    def __init__(self, *, min_frame_size: int = MIN_FRAME_SIZE) -> None:
        if min_frame_size < PREAMBLE_SIZE:
            raise ValueError(f"min_frame_size must be at least {PREAMBLE_SIZE}")
        self._min_frame_size = min_frame_size
        self._buffer = bytearray()

    @property
    def pending(self) -> int:
        """Number of bytes buffered and not yet emitted or discarded."""
        return len(self._buffer)

    def reset(self) -> None:
        self._buffer.clear()

    def write(self, chunk: bytes) -> list[Emission]:
        self._buffer += chunk
        emissions: list[Emission] = []
        buffer = self._buffer
        while len(buffer) >= self._min_frame_size:
            if not buffer.startswith(MAGIC_BYTES):
                signal = self._resynchronize()
                if signal is not None:
                    emissions.append(signal)
                continue
            (length,) = LENGTH_FORMAT.unpack_from(buffer, len(MAGIC_BYTES))
            total = PREAMBLE_SIZE + length
            if len(buffer) < total:
                break
            emissions.append(Frame(length_field=length, data=bytes(buffer[PREAMBLE_SIZE:total])))
            del buffer[:total]
        return emissions

    def _resynchronize(self) -> CorruptionSignal | None:
        buffer = self._buffer
        index = buffer.find(MAGIC_BYTES, 1)
        if index > 0:
            del buffer[:index]
            return CorruptionSignal(discarded_length=index, reason=REASON_RESYNCHRONIZED)
        discard = max(0, len(buffer) - RETAINED_TAIL)
        if discard:
            del buffer[:discard]
            return CorruptionSignal(discarded_length=discard, reason=REASON_NO_MARKER)
        return None


__all__ = [
    "MAGIC",
    "MAGIC_BYTES",
    "MIN_FRAME_SIZE",
    "PREAMBLE_SIZE",
    "REASON_NO_MARKER",
    "REASON_RESYNCHRONIZED",
    "Emission",
    "FrameDecoder",
    "encode_frame",
]
