"""Event model and the request/response shapes built on it.

One table backs three kinds of rows:

- standalone events (no rule, no parent),
- series parents, which hold the recurrence rule and carry the ``series``
  status sentinel so they never show up as occurrences,
- instances, the materialized occurrences of a series, keyed by
  ``(parent_id, occurrence_key)``.

The storage schema keeps the sentinel status for compatibility, but code
should branch on :attr:`Event.kind` rather than on the status.
"""

import json
from datetime import UTC, date, datetime
from enum import StrEnum
from typing import TYPE_CHECKING, Any, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, field_validator
from sqlalchemy import JSON, Column, DateTime, Index, UniqueConstraint, text
from sqlmodel import Field, Relationship, SQLModel

from app.core.clock import as_utc

if TYPE_CHECKING:
    from app.models.calendar import Calendar

MAX_DESCRIPTION_BYTES = 64 * 1024
MAX_METADATA_BYTES = 16 * 1024


class EventStatus(StrEnum):
    CONFIRMED = "confirmed"
    TENTATIVE = "tentative"
    CANCELLED = "cancelled"
    SERIES = "series"


class EventSource(StrEnum):
    API = "api"
    INBOUND = "inbound"


class EventKind(StrEnum):
    STANDALONE = "standalone"
    SERIES = "series"
    INSTANCE = "instance"


class Event(SQLModel, table=True):
    """A calendar event, series definition, or materialized instance.

    Attributes:
        id: Unique identifier (UUID).
        calendar_id: Owning calendar. Deleting the calendar deletes the event.
        title: Event title/summary.
        description: Free-form description.
        location: Free-form location.
        metadata_: Structured client metadata (exposed as ``metadata``).
        attendees: List of attendee email addresses.
        start_time: Start instant (UTC). Midnight of the first day for
            all-day events.
        end_time: End instant (UTC). Midnight of the last day for all-day
            events, which are end-inclusive.
        all_day: Whether the event is date-only.
        timezone: IANA zone the wall-clock time of a series is pinned to.
        status: confirmed, tentative, cancelled, or the ``series`` sentinel.
        recurrence_rule: RRULE text. Set on series parents only.
        parent_id: Series this instance belongs to. Set on instances only.
        occurrence_key: Local date this instance represents in its series.
        is_exception: Instance was edited directly and no longer follows
            edits to its parent.
        instance_status: Status planned instances of this series carry.
        horizon_days: Rolling materialization window, fixed at creation.
        materialized_until: How far ahead instances have been generated.
        series_until: Cutoff date; no instance at or after it is created.
        source: ``api`` or ``inbound``.
        external_uid: Identifier supplied by an inbound message (iCal UID).
        sequence: Revision counter for external calendar clients.
        organiser_email: Organiser of an inbound invitation.
        reply_sent: The RSVP response last sent for this event.
    """
    __table_args__ = (
        UniqueConstraint("parent_id", "occurrence_key", name="uq_event_parent_occurrence"),
        Index(
            "uq_event_calendar_external_uid",
            "calendar_id",
            "external_uid",
            unique=True,
            sqlite_where=text("external_uid IS NOT NULL AND status != 'cancelled'"),
            postgresql_where=text("external_uid IS NOT NULL AND status != 'cancelled'"),
        ),
    )

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    calendar_id: UUID = Field(foreign_key="calendar.id", ondelete="CASCADE", index=True)

    title: str
    description: str | None = None
    location: str | None = None
    metadata_: dict | None = Field(default=None, sa_column=Column(JSON))
    attendees: list | None = Field(default=None, sa_column=Column(JSON))

    start_time: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    end_time: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    all_day: bool = Field(default=False)
    timezone: str = Field(default="UTC")
    status: str = Field(default=EventStatus.CONFIRMED, index=True)

    recurrence_rule: str | None = None
    parent_id: UUID | None = Field(
        default=None, foreign_key="event.id", ondelete="CASCADE", index=True
    )
    occurrence_key: date | None = None
    is_exception: bool = Field(default=False)

    instance_status: str | None = None
    horizon_days: int | None = None
    materialized_until: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True))
    )
    series_until: date | None = None

    source: str = Field(default=EventSource.API)
    external_uid: str | None = Field(default=None, index=True)
    sequence: int = Field(default=0)
    organiser_email: str | None = None
    reply_sent: str | None = None

    created_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
    updated_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )

    calendar: Optional["Calendar"] = Relationship(back_populates="events")

    @property
    def kind(self) -> EventKind:
        if self.recurrence_rule is not None:
            return EventKind.SERIES
        if self.parent_id is not None:
            return EventKind.INSTANCE
        return EventKind.STANDALONE

    @property
    def is_planned(self) -> bool:
        """An instance still following its parent."""
        return (
            self.kind == EventKind.INSTANCE
            and not self.is_exception
            and self.status != EventStatus.CANCELLED
        )

    def touch(self) -> None:
        """Record a content change."""
        self.sequence += 1
        self.updated_at = datetime.now(UTC)


def _check_sizes(description: str | None, metadata: dict | None) -> None:
    if description is not None and len(description.encode()) > MAX_DESCRIPTION_BYTES:
        raise ValueError("description exceeds 64KB limit")
    if metadata is not None and len(json.dumps(metadata).encode()) > MAX_METADATA_BYTES:
        raise ValueError("metadata exceeds 16KB limit")


class EventCreate(BaseModel):
    """Body of a create request. ``recurrence`` makes it a series."""
    title: str
    start: datetime
    end: datetime
    description: str | None = None
    location: str | None = None
    metadata: dict[str, Any] | None = None
    attendees: list[str] | None = None
    status: EventStatus = EventStatus.CONFIRMED
    all_day: bool = False
    recurrence: str | None = None
    timezone: str | None = None
    external_uid: str | None = None

    @field_validator("start", "end")
    @classmethod
    def _normalize_utc(cls, value):
        return as_utc(value)

    @field_validator("description")
    @classmethod
    def _description_size(cls, value):
        _check_sizes(value, None)
        return value

    @field_validator("metadata")
    @classmethod
    def _metadata_size(cls, value):
        _check_sizes(None, value)
        return value


class EventPatch(BaseModel):
    """Partial update. Only fields explicitly present in the request change.

    Which of these fields flow from a series parent to its instances is
    decided by the tables in :mod:`app.calendar.propagation`.
    """
    title: str | None = None
    description: str | None = None
    location: str | None = None
    metadata: dict[str, Any] | None = None
    attendees: list[str] | None = None
    status: EventStatus | None = None
    start: datetime | None = None
    end: datetime | None = None
    all_day: bool | None = None
    recurrence: str | None = None
    timezone: str | None = None

    @field_validator("start", "end")
    @classmethod
    def _normalize_utc(cls, value):
        return as_utc(value) if value is not None else value

    @field_validator("description")
    @classmethod
    def _description_size(cls, value):
        _check_sizes(value, None)
        return value

    @field_validator("metadata")
    @classmethod
    def _metadata_size(cls, value):
        _check_sizes(None, value)
        return value

    def changes(self) -> dict[str, Any]:
        """The fields the caller actually supplied."""
        return self.model_dump(exclude_unset=True)


class EventRead(BaseModel):
    """Public representation of an event, also used for webhook snapshots."""
    id: UUID
    calendar_id: UUID
    kind: EventKind
    title: str
    description: str | None
    location: str | None
    metadata: dict | None
    attendees: list | None
    start: datetime
    end: datetime
    all_day: bool
    timezone: str
    status: str
    source: str
    recurrence: str | None
    parent_id: UUID | None
    occurrence_key: date | None
    is_exception: bool
    external_uid: str | None
    sequence: int
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_event(cls, event: Event) -> "EventRead":
        return cls(
            id=event.id,
            calendar_id=event.calendar_id,
            kind=event.kind,
            title=event.title,
            description=event.description,
            location=event.location,
            metadata=event.metadata_,
            attendees=event.attendees,
            start=as_utc(event.start_time),
            end=as_utc(event.end_time),
            all_day=event.all_day,
            timezone=event.timezone,
            status=event.status,
            source=event.source,
            recurrence=event.recurrence_rule,
            parent_id=event.parent_id,
            occurrence_key=event.occurrence_key,
            is_exception=event.is_exception,
            external_uid=event.external_uid,
            sequence=event.sequence,
            created_at=as_utc(event.created_at),
            updated_at=as_utc(event.updated_at),
        )
