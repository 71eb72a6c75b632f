from app.models.calendar import Calendar
from app.models.event import (
    Event,
    EventCreate,
    EventKind,
    EventPatch,
    EventRead,
    EventSource,
    EventStatus,
)

__all__ = [
    "Calendar",
    "Event",
    "EventCreate",
    "EventKind",
    "EventPatch",
    "EventRead",
    "EventSource",
    "EventStatus",
]
