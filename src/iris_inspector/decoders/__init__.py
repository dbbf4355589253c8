"""Payload decoders for event types whose payload is raw kernel memory."""

from .base import PayloadDecoder, RawPayload
from .descriptor_table import (
    DescriptorTableDecoder,
    DescriptorTableRecord,
    SegmentDescriptor,
    TssUpperHalf,
)
from .registry import DecodedPayload, PayloadDecoderRegistry, default_registry
from .task_state import TaskStateSegmentDecoder, TaskStateSegmentRecord

__all__ = [
    "DecodedPayload",
    "DescriptorTableDecoder",
    "DescriptorTableRecord",
    "PayloadDecoder",
    "PayloadDecoderRegistry",
    "RawPayload",
    "SegmentDescriptor",
    "TaskStateSegmentDecoder",
    "TaskStateSegmentRecord",
    "TssUpperHalf",
    "default_registry",
]
