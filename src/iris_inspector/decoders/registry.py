"""
Registry mapping event types to payload decoders.

A malformed payload must never interrupt the event stream, so `decode`
swallows decoder failures at its boundary: they are logged, counted, and
reported to the caller as "no decoded payload".
"""

from __future__ import annotations

import logging
from typing import Annotated

from pydantic import Field

from ..core.catalogue import EventType
from .base import PayloadDecoder, RawPayload
from .descriptor_table import DescriptorTableDecoder, DescriptorTableRecord
from .task_state import TaskStateSegmentDecoder, TaskStateSegmentRecord

logger = logging.getLogger(__name__)

DecodedPayload = Annotated[
    DescriptorTableRecord | TaskStateSegmentRecord | RawPayload,
    Field(discriminator="kind"),
]


class PayloadDecoderRegistry:
    def __init__(self) -> None:
        self._decoders: dict[int, PayloadDecoder] = {}
        self.failures = 0

    def register(self, event_type: int, decoder: PayloadDecoder) -> None:
        previous = self._decoders.get(event_type)
        if previous is not None and previous is not decoder:
            logger.info(
                "Replacing decoder %s for event 0x%04x with %s",
                type(previous).__name__,
                event_type,
                type(decoder).__name__,
            )
        self._decoders[event_type] = decoder

    def has_decoder(self, event_type: int) -> bool:
        return event_type in self._decoders

    def decoder_for(self, event_type: int) -> PayloadDecoder | None:
        return self._decoders.get(event_type)

    def decode(
        self, event_type: int, payload: bytes
    ) -> DescriptorTableRecord | TaskStateSegmentRecord | None:
        """Decode `payload` with the registered decoder, or return None."""
        decoder = self._decoders.get(event_type)
        if decoder is None:
            return None
        try:
            return decoder.decode(payload)  # type: ignore[return-value]
        except Exception:
            self.failures += 1
            logger.exception(
                "Failed to decode %d-byte payload of event 0x%04x with %s",
                len(payload),
                event_type,
                type(decoder).__name__,
            )
            return None

    def resolve(self, event_type: int, payload: bytes) -> DecodedPayload:
        """Like `decode`, but falls back to a raw record instead of None."""
        record = self.decode(event_type, payload)
        if record is not None:
            return record
        reason = "decode_failed" if event_type in self._decoders else "unregistered"
        return RawPayload(length=len(payload), reason=reason)


def default_registry() -> PayloadDecoderRegistry:
    """Registry with the boot-time reference decoders installed."""
    registry = PayloadDecoderRegistry()
    registry.register(EventType.GDT_LOADED, DescriptorTableDecoder())
    registry.register(EventType.TSS_LOADED, TaskStateSegmentDecoder())
    return registry


__all__ = ["DecodedPayload", "PayloadDecoderRegistry", "default_registry"]
