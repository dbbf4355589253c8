"""Wire protocol: frame extraction and fixed header parsing."""

from .framing import (
    MAGIC,
    MAGIC_BYTES,
    MIN_FRAME_SIZE,
    REASON_NO_MARKER,
    REASON_RESYNCHRONIZED,
    Emission,
    FrameDecoder,
    encode_frame,
)
from .header import HEADER_SIZE, HeaderParser, encode_header

__all__ = [
    "HEADER_SIZE",
    "MAGIC",
    "MAGIC_BYTES",
    "MIN_FRAME_SIZE",
    "REASON_NO_MARKER",
    "REASON_RESYNCHRONIZED",
    "Emission",
    "FrameDecoder",
    "HeaderParser",
    "encode_frame",
    "encode_header",
]
