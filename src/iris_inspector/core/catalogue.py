"""
Catalogue of known kernel event identifiers.

Identifiers are grouped in 256-wide ranges per category (system events in
0x0000-0x00FF, boot events in 0x0100-0x01FF, and so on). The catalogue is a
plain instance owned by the orchestrator; callers that need lookups receive
it by reference.
"""

from __future__ import annotations

from enum import IntEnum, StrEnum

from pydantic import BaseModel, ConfigDict


class EventType(IntEnum):
    IRIS_INIT = 0x0001
    BOOT_START = 0x0100
    GDT_LOADED = 0x0101
    TSS_LOADED = 0x0102


class EventCategory(StrEnum):
    SYSTEM = "SYSTEM"
    BOOT = "BOOT"
    PROCESS = "PROCESS"
    MEMORY = "MEMORY"
    INTERRUPT = "INTERRUPT"
    SYNC = "SYNC"
    IO = "IO"
    FILESYSTEM = "FS"
    NETWORK = "NET"


class EventSeverity(StrEnum):
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class EventDefinition(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    name: str
    category: EventCategory
    description: str
    severity: EventSeverity = EventSeverity.INFO


DEFAULT_EVENTS: tuple[EventDefinition, ...] = (
    EventDefinition(
        id=EventType.IRIS_INIT,
        name="IRIS_INIT",
        category=EventCategory.SYSTEM,
        description="IRIS debug system initialized",
    ),
    EventDefinition(
        id=EventType.BOOT_START,
        name="BOOT_START",
        category=EventCategory.BOOT,
        description="Kernel boot sequence started",
    ),
    EventDefinition(
        id=EventType.GDT_LOADED,
        name="GDT_LOADED",
        category=EventCategory.BOOT,
        description="Global Descriptor Table loaded",
    ),
    EventDefinition(
        id=EventType.TSS_LOADED,
        name="TSS_LOADED",
        category=EventCategory.BOOT,
        description="Task State Segment configured",
    ),
)


class EventCatalogue:
    """Lookup table from event-type identifier to its definition."""

    def __init__(self, definitions: tuple[EventDefinition, ...] | None = None) -> None:
        self._events: dict[int, EventDefinition] = {}
        for definition in DEFAULT_EVENTS if definitions is None else definitions:
            self.register(definition)

    def register(self, definition: EventDefinition) -> None:
        self._events[definition.id] = definition

    def lookup(self, event_id: int) -> EventDefinition | None:
        return self._events.get(event_id)

    def name_of(self, event_id: int) -> str:
        definition = self._events.get(event_id)
        if definition is None:
            return f"EVENT_0x{event_id:04x}"
        return definition.name

    def by_category(self, category: EventCategory) -> list[EventDefinition]:
        return [event for event in self._events.values() if event.category == category]

    def by_severity(self, severity: EventSeverity) -> list[EventDefinition]:
        return [event for event in self._events.values() if event.severity == severity]

    def __contains__(self, event_id: object) -> bool:
        return event_id in self._events

    def __len__(self) -> int:
        return len(self._events)


__all__ = [
    "DEFAULT_EVENTS",
    "EventCatalogue",
    "EventCategory",
    "EventDefinition",
    "EventSeverity",
    "EventType",
]
