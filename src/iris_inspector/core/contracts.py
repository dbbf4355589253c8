"""
Contracts and payload schemas shared by the IRIS inspector pipeline.

Two families live here: the decoded stream types (frames, corruption
signals, events) that flow from the ingest channel towards subscribers, and
the telemetry/control payloads that travel on the internal event bus.
"""

from __future__ import annotations

import abc
import datetime as dt
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Literal, Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

U64_MAX = 2**64 - 1
U32_MAX = 2**32 - 1
U16_MAX = 2**16 - 1
U8_MAX = 2**8 - 1


class BasePayload(BaseModel):
    """Base class for all bus payloads."""

    model_config = ConfigDict(extra="allow", frozen=True)

    schema_version: str = Field(
        default="1.0.0", description="Semantic version of the payload schema."
    )


class WireModel(BaseModel):
    """Base for models rendered to subscribers; JSON keys are camelCase."""

    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)


@dataclass(frozen=True, slots=True)
class Frame:
    """One length-delimited unit extracted from the raw byte stream."""

    length_field: int
    data: bytes

    def __post_init__(self) -> None:
        if len(self.data) != self.length_field:
            raise ValueError(
                f"Frame data is {len(self.data)} bytes but length field says {self.length_field}"
            )


@dataclass(frozen=True, slots=True)
class CorruptionSignal:
    """Bytes discarded by the frame decoder while resynchronizing."""

    discarded_length: int
    reason: str


class Event(BasePayload):
    """Structured record derived from a frame's fixed header plus optional payload."""

    timestamp_ns: int = Field(ge=0, le=U64_MAX, description="Nanoseconds since boot.")
    event_type: int = Field(ge=0, le=U16_MAX)
    cpu_id: int = Field(ge=0, le=U8_MAX)
    sequence_number: int | None = Field(default=None, ge=0, le=U32_MAX)
    flags: int | None = Field(default=None, ge=0, le=U16_MAX)
    payload: bytes | None = Field(default=None)

    @model_validator(mode="after")
    def _empty_payload_is_absent(self) -> Event:
        if self.payload is not None and len(self.payload) == 0:
            raise ValueError("payload must be absent rather than empty")
        return self


class SessionState:
    """Tracks whether the current producer session has announced itself."""

    def __init__(self) -> None:
        self.init_received = False

    def mark_initialized(self) -> bool:
        """Set the flag; returns True when this call flipped it."""
        flipped = not self.init_received
        self.init_received = True
        return flipped

    def reset(self) -> None:
        self.init_received = False


ConnectionStateName = Literal["disconnected", "connecting", "connected"]


class PipelineStatus(BasePayload):
    """Telemetry snapshot emitted by the orchestrator on `status.pipeline`."""

    connection_state: ConnectionStateName = Field(default="disconnected")
    init_received: bool = Field(default=False)
    connections_total: int = Field(default=0, ge=0)
    frames_total: int = Field(default=0, ge=0)
    events_total: int = Field(default=0, ge=0)
    header_rejected_total: int = Field(default=0, ge=0)
    corruption_total: int = Field(default=0, ge=0)
    bytes_discarded_total: int = Field(default=0, ge=0)
    decode_failures_total: int = Field(default=0, ge=0)
    pending_bytes: int = Field(default=0, ge=0)


class DistributorStats(BasePayload):
    """Counters maintained by the distributor; published on `status.distributor`."""

    total_connections: int = Field(default=0, ge=0)
    active_connections: int = Field(default=0, ge=0)
    total_events_broadcast: int = Field(default=0, ge=0)
    total_bytes_sent: int = Field(default=0, ge=0)
    uptime_seconds: float = Field(default=0.0, ge=0.0)


class HealthStatus(BaseModel):
    """Structured health report for modules."""

    model_config = ConfigDict(extra="allow", frozen=True)

    status: str = Field(description="Health classification such as healthy/degraded/error.")
    details: dict[str, Any] = Field(default_factory=dict)


class HealthSummary(BasePayload):
    """Aggregated health report emitted on `status.health.summary`."""

    status: str = Field(description="Overall classification.")
    modules: dict[str, HealthStatus] = Field(default_factory=dict)


class ControlCommand(BasePayload):
    """Payload emitted by the control API to steer the ingest side."""

    command: str = Field(description="Command identifier, e.g. ingest.stop")
    issued_at: dt.datetime = Field(default_factory=lambda: dt.datetime.now(tz=dt.UTC))
    arguments: dict[str, Any] = Field(default_factory=dict)


class ModuleConfig(BaseModel):
    """Baseline configuration contract applied to all modules."""

    model_config = ConfigDict(extra="allow")

    enabled: bool = Field(default=True)
    options: dict[str, Any] = Field(
        default_factory=dict, description="Arbitrary module configuration."
    )


@runtime_checkable
class EventHandler(Protocol):
    """Callable type for bus subscribers."""

    async def __call__(self, topic: str, payload: BasePayload) -> None: ...


if TYPE_CHECKING:
    from .bus import EventBus


class BaseModule(abc.ABC):
    """
    Abstract base class for the pipeline's lifecycle-managed components.

    Modules receive the shared bus from the orchestrator and are configured
    before `start` is awaited.
    """

    name: str

    def __init__(self) -> None:
        self._configured = False
        self._config = ModuleConfig()
        self._bus: EventBus | None = None

    @property
    def bus(self) -> EventBus:
        if self._bus is None:
            raise RuntimeError(f"{self.__class__.__name__} has not been attached to an EventBus.")
        return self._bus

    def set_bus(self, bus: EventBus) -> None:
        """Attach the shared event bus instance to the module."""
        self._bus = bus

    async def configure(self, config: ModuleConfig) -> None:
        """Apply the provided configuration prior to module start."""
        self._config = config
        self._configured = True

    @abc.abstractmethod
    async def start(self) -> None:
        """Begin processing."""

    async def stop(self) -> None:
        return None

    async def health(self) -> HealthStatus:
        """Return a basic health status; modules can override for richer diagnostics."""
        status = "healthy" if self._configured else "degraded"
        return HealthStatus(status=status, details={"configured": self._configured})


__all__ = [
    "BaseModule",
    "BasePayload",
    "ConnectionStateName",
    "ControlCommand",
    "CorruptionSignal",
    "DistributorStats",
    "Event",
    "EventHandler",
    "Frame",
    "HealthStatus",
    "HealthSummary",
    "ModuleConfig",
    "PipelineStatus",
    "SessionState",
    "WireModel",
]
