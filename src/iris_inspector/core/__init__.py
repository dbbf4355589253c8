"""
Core infrastructure: contracts, the telemetry bus, the event catalogue and configuration.

The orchestrator lives in `iris_inspector.core.orchestrator`; it depends on the
modules package and is therefore not re-exported here.
"""

from .bus import EventBus, Subscription
from .catalogue import EventCatalogue, EventCategory, EventDefinition, EventSeverity, EventType
from .config import ConfigError, ConfigService, ConfigSnapshot
from .contracts import (
    BaseModule,
    BasePayload,
    CorruptionSignal,
    Event,
    Frame,
    HealthStatus,
    ModuleConfig,
    SessionState,
)

__all__ = [
    "BaseModule",
    "BasePayload",
    "ConfigError",
    "ConfigService",
    "ConfigSnapshot",
    "CorruptionSignal",
    "Event",
    "EventBus",
    "EventCatalogue",
    "EventCategory",
    "EventDefinition",
    "EventSeverity",
    "EventType",
    "Frame",
    "HealthStatus",
    "ModuleConfig",
    "SessionState",
    "Subscription",
]
