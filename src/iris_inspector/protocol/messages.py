"""
Messages exchanged with subscribers over the distribution channel.

Every server message is a JSON object with a `type` discriminant. Bodies go
under `data`, except for `pong` and `shutdown` which carry a single field.
"""

from __future__ import annotations

import time
from typing import Literal

from pydantic import Field

from ..core.contracts import DistributorStats, Event, WireModel
from ..decoders.registry import DecodedPayload


def now_ms() -> int:
    """Wall-clock milliseconds, the resolution subscribers display."""
    return int(time.time() * 1000)


class EventBody(WireModel):
    timestamp: int = Field(description="Nanoseconds since boot.")
    event_type: int
    cpu_id: int
    sequence_number: int | None = None
    flags: int | None = None
    name: str
    payload: str | None = Field(default=None, description="Raw payload as lowercase hex.")
    decoded_payload: DecodedPayload | None = None

    @classmethod
    def from_event(
        cls, event: Event, *, name: str, decoded: DecodedPayload | None = None
    ) -> EventBody:
        return cls(
            timestamp=event.timestamp_ns,
            event_type=event.event_type,
            cpu_id=event.cpu_id,
            sequence_number=event.sequence_number,
            flags=event.flags,
            name=name,
            payload=event.payload.hex() if event.payload is not None else None,
            decoded_payload=decoded,
        )


class StatsBody(WireModel):
    total_connections: int
    active_connections: int
    total_events_broadcast: int
    total_bytes_sent: int
    uptime: float

    @classmethod
    def from_stats(cls, stats: DistributorStats) -> StatsBody:
        return cls(
            total_connections=stats.total_connections,
            active_connections=stats.active_connections,
            total_events_broadcast=stats.total_events_broadcast,
            total_bytes_sent=stats.total_bytes_sent,
            uptime=stats.uptime_seconds,
        )


class WelcomeBody(WireModel):
    client_id: int
    server_time: int
    stats: StatsBody


class WelcomeMessage(WireModel):
    type: Literal["welcome"] = "welcome"
    data: WelcomeBody


class EventMessage(WireModel):
    type: Literal["event"] = "event"
    data: EventBody


class BatchMessage(WireModel):
    type: Literal["batch"] = "batch"
    data: list[EventBody]


class StatsMessage(WireModel):
    type: Literal["stats"] = "stats"
    data: StatsBody


class PongMessage(WireModel):
    type: Literal["pong"] = "pong"
    timestamp: int = Field(default_factory=now_ms)


class ShutdownMessage(WireModel):
    type: Literal["shutdown"] = "shutdown"
    reason: str = "Server shutting down"


__all__ = [
    "BatchMessage",
    "EventBody",
    "EventMessage",
    "PongMessage",
    "ShutdownMessage",
    "StatsBody",
    "StatsMessage",
    "WelcomeBody",
    "WelcomeMessage",
    "now_ms",
]
