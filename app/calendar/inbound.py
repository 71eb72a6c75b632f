"""Reconcile inbound invitations against the event model.

An inbound message's unique identifier (the iCal UID) decides what happens:

- unknown UID, REQUEST/PUBLISH: create a tentative event with source
  ``inbound`` (a series when the message carries a usable rule),
- known UID, REQUEST/PUBLISH: update that event in place,
- known UID, CANCEL: cancel it.

Anything that cannot be acted on comes back as ``ignored`` with a reason.
The HTTP layer reports success upstream regardless, so providers never
retry a message we chose to drop.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from uuid import UUID

from pydantic import ValidationError
from sqlmodel import Session

from app.calendar.deletion import cancel_from, delete_event
from app.calendar.events import create_event, find_by_external_uid
from app.calendar.ics import InboundMessage
from app.calendar.notifier import ChangeType, Notifier
from app.calendar.propagation import apply_patch
from app.calendar.recurrence import resolve_zone
from app.core.clock import as_utc
from app.core.exceptions import InvalidEventData, InvalidRecurrenceRule
from app.models import Calendar, Event, EventCreate, EventKind, EventPatch, EventSource, EventStatus

logger = logging.getLogger(__name__)

SUPPORTED_METHODS = {"REQUEST", "PUBLISH", "CANCEL"}
DEFAULT_DURATION = timedelta(hours=1)


@dataclass
class InboundOutcome:
    status: str
    event_id: UUID | None = None
    reason: str | None = None
    instances_created: int | None = None

    def as_dict(self) -> dict:
        body = {"status": self.status}
        if self.event_id is not None:
            body["event_id"] = str(self.event_id)
        if self.reason is not None:
            body["reason"] = self.reason
        if self.instances_created is not None:
            body["instances_created"] = self.instances_created
        return body


def ignored(reason: str) -> InboundOutcome:
    return InboundOutcome(status="ignored", reason=reason)


def reconcile(
    session: Session,
    calendar: Calendar,
    message: InboundMessage,
    *,
    now: datetime,
    notifier: Notifier | None = None,
) -> InboundOutcome:
    """Apply one inbound message to ``calendar``. Does not commit."""
    method = (message.method or "REQUEST").upper()
    if method not in SUPPORTED_METHODS:
        return ignored(f"Unsupported method: {method}")
    if not message.uid:
        return ignored(f"{method} without UID")

    existing = find_by_external_uid(session, calendar.id, message.uid)

    if method == "CANCEL":
        if existing is None or existing.status == EventStatus.CANCELLED:
            return ignored("No matching event to cancel")
        _cancel(session, existing, now=now, notifier=notifier)
        return InboundOutcome(status="cancelled", event_id=existing.id)

    if message.start is None:
        return ignored("VEVENT missing start time")

    try:
        if existing is None:
            return _create(session, calendar, message, now=now, notifier=notifier)
        return _update(session, existing, message, now=now, notifier=notifier)
    except (InvalidEventData, InvalidRecurrenceRule, ValidationError) as e:
        return ignored(str(e))


def _end(message: InboundMessage) -> datetime:
    if message.end is not None:
        return message.end
    return message.start if message.all_day else message.start + DEFAULT_DURATION


def _create(
    session: Session,
    calendar: Calendar,
    message: InboundMessage,
    *,
    now: datetime,
    notifier: Notifier | None,
) -> InboundOutcome:
    data = EventCreate(
        title=message.title or "Untitled",
        start=message.start,
        end=_end(message),
        description=message.description,
        location=message.location,
        attendees=message.attendees,
        status=EventStatus.TENTATIVE,
        all_day=message.all_day,
        external_uid=message.uid,
    )
    if message.recurrence:
        try:
            event, created = create_event(
                session,
                calendar,
                data.model_copy(update={"recurrence": message.recurrence}),
                now=now,
                notifier=notifier,
                source=EventSource.INBOUND,
                organiser_email=message.organiser_email,
            )
            return InboundOutcome(status="created", event_id=event.id, instances_created=created)
        except InvalidRecurrenceRule as e:
            logger.info(
                f"Inbound: invalid RRULE {message.recurrence!r} for calendar {calendar.id}: "
                f"{e}. Creating as single event."
            )

    event, _ = create_event(
        session,
        calendar,
        data,
        now=now,
        notifier=notifier,
        source=EventSource.INBOUND,
        organiser_email=message.organiser_email,
    )
    return InboundOutcome(status="created", event_id=event.id)


def _update(
    session: Session,
    event: Event,
    message: InboundMessage,
    *,
    now: datetime,
    notifier: Notifier | None,
) -> InboundOutcome:
    end = _end(message)
    fields = {
        "title": message.title or event.title,
        "description": message.description,
        "location": message.location,
        "attendees": message.attendees,
    }
    times_changed = (
        as_utc(event.start_time) != as_utc(message.start)
        or as_utc(event.end_time) != as_utc(end)
    )
    if times_changed:
        fields["start"] = message.start
        fields["end"] = end

    if event.kind == EventKind.SERIES:
        if message.recurrence and message.recurrence != event.recurrence_rule:
            fields["recurrence"] = message.recurrence
    elif times_changed or event.status == EventStatus.CANCELLED:
        # The agent has to confirm again
        fields["status"] = EventStatus.TENTATIVE

    result = apply_patch(session, event, EventPatch(**fields), now=now, notifier=notifier)
    if message.organiser_email:
        event.organiser_email = message.organiser_email
        session.add(event)

    created = result.instances_created if event.kind == EventKind.SERIES else None
    return InboundOutcome(status="updated", event_id=event.id, instances_created=created)


def _cancel(session: Session, event: Event, *, now: datetime, notifier: Notifier | None) -> None:
    if event.kind == EventKind.SERIES:
        first_day = as_utc(event.start_time).astimezone(resolve_zone(event.timezone)).date()
        cancel_from(session, event, first_day, notifier)
        return
    if event.kind == EventKind.INSTANCE:
        delete_event(session, event, now=now, notifier=notifier)
        return
    event.status = EventStatus.CANCELLED
    event.touch()
    session.add(event)
    if notifier is not None:
        notifier.queue(ChangeType.DELETED, event)
