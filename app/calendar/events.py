"""Event creation, RSVP responses and occurrence-facing listings."""
import logging
from datetime import datetime, timedelta
from uuid import UUID

from sqlmodel import Session, select

from app.calendar.materializer import materialize
from app.calendar.notifier import ChangeType, Notifier
from app.calendar.recurrence import resolve_zone, validate_rule
from app.core.clock import as_utc, day_start
from app.core.config import settings
from app.core.exceptions import InvalidEventData, NotFound
from app.models import Calendar, Event, EventCreate, EventKind, EventSource, EventStatus

logger = logging.getLogger(__name__)

MAX_LIST_LIMIT = 200
MAX_UPCOMING_LIMIT = 50

# RSVP response -> resulting event status
RESPONSE_STATUS = {
    "accepted": EventStatus.CONFIRMED,
    "declined": EventStatus.CANCELLED,
    "tentative": EventStatus.TENTATIVE,
}


def find_by_external_uid(session: Session, calendar_id: UUID, uid: str) -> Event | None:
    """The event carrying ``uid`` in a calendar, preferring live rows."""
    statement = (
        select(Event)
        .where(Event.calendar_id == calendar_id)
        .where(Event.external_uid == uid)
        .order_by((Event.status == EventStatus.CANCELLED).asc(), Event.updated_at.desc())
    )
    return session.exec(statement).first()


def create_event(
    session: Session,
    calendar: Calendar,
    data: EventCreate,
    *,
    now: datetime,
    notifier: Notifier | None = None,
    source: EventSource = EventSource.API,
    organiser_email: str | None = None,
) -> tuple[Event, int | None]:
    """Create a standalone event, or a series when ``data.recurrence`` is set.

    For a series the parent row is stored with the ``series`` status and its
    first window of instances is materialized straight away. Returns the
    created event and, for a series, the number of instances materialized.
    Does not commit.
    """
    tz = data.timezone or calendar.timezone
    resolve_zone(tz)
    start, end = data.start, data.end
    if data.all_day:
        start, end = day_start(start), day_start(end)
    if as_utc(end) < as_utc(start):
        raise InvalidEventData("end must not be before start")
    if data.status == EventStatus.SERIES:
        raise InvalidEventData("status 'series' is reserved")
    if data.external_uid:
        existing = find_by_external_uid(session, calendar.id, data.external_uid)
        if existing is not None and existing.status != EventStatus.CANCELLED:
            raise InvalidEventData(f"external_uid {data.external_uid!r} is already in use")

    event = Event(
        calendar_id=calendar.id,
        title=data.title,
        description=data.description,
        location=data.location,
        metadata_=data.metadata,
        attendees=data.attendees,
        start_time=start,
        end_time=end,
        all_day=data.all_day,
        timezone=tz,
        status=data.status,
        source=source,
        external_uid=data.external_uid,
        organiser_email=organiser_email,
    )

    if not data.recurrence:
        session.add(event)
        session.flush()
        if notifier is not None:
            notifier.queue(ChangeType.CREATED, event)
        return event, None

    if data.status == EventStatus.CANCELLED:
        raise InvalidEventData("A series cannot be created cancelled")
    window_days = settings.materialize_window_days
    validate_rule(
        data.recurrence,
        start,
        end,
        tz,
        window_days=window_days,
        max_instances=settings.max_instances_per_window,
        all_day=data.all_day,
    )
    event.recurrence_rule = data.recurrence.strip()
    event.status = EventStatus.SERIES
    event.instance_status = data.status
    event.horizon_days = window_days
    session.add(event)
    session.flush()
    if notifier is not None:
        notifier.queue(ChangeType.CREATED, event)

    created = materialize(
        session, event, as_utc(now) + timedelta(days=window_days), notifier, window_start=now
    )
    logger.info(f"Created series {event.id} with {created} instances")
    return event, created


def respond(
    session: Session,
    event: Event,
    response: str,
    *,
    notifier: Notifier | None = None,
) -> Event:
    """Record an RSVP: accepted, declined or tentative.

    Responding to an instance is a direct edit, so it becomes an exception.
    """
    if response not in RESPONSE_STATUS:
        raise InvalidEventData(f"response must be one of: {', '.join(RESPONSE_STATUS)}")
    if event.kind == EventKind.SERIES:
        raise InvalidEventData("Respond to an instance of the series, not the series itself")

    event.status = RESPONSE_STATUS[response]
    event.reply_sent = response
    if event.kind == EventKind.INSTANCE:
        event.is_exception = True
    event.touch()
    session.add(event)
    if notifier is not None:
        notifier.queue(ChangeType.RESPONDED, event)
    return event


def get_event(session: Session, calendar_id: UUID, event_id: UUID) -> Event:
    event = session.get(Event, event_id)
    if event is None or event.calendar_id != calendar_id:
        raise NotFound("Event")
    return event


def list_events(
    session: Session,
    calendar_id: UUID,
    *,
    start: datetime | None = None,
    end: datetime | None = None,
    status: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[Event]:
    """Occurrences and standalone events of a calendar, by start time.

    Series parents are never listed.
    """
    statement = (
        select(Event)
        .where(Event.calendar_id == calendar_id)
        .where(Event.recurrence_rule.is_(None))
    )
    if start is not None:
        statement = statement.where(Event.start_time >= as_utc(start))
    if end is not None:
        statement = statement.where(Event.start_time <= as_utc(end))
    if status is not None:
        statement = statement.where(Event.status == status)
    statement = (
        statement.order_by(Event.start_time)
        .offset(max(offset, 0))
        .limit(min(max(limit, 1), MAX_LIST_LIMIT))
    )
    return list(session.exec(statement).all())


def upcoming_events(session: Session, calendar_id: UUID, now: datetime, limit: int = 5) -> list[Event]:
    """The next live occurrences starting at or after ``now``."""
    statement = (
        select(Event)
        .where(Event.calendar_id == calendar_id)
        .where(Event.recurrence_rule.is_(None))
        .where(Event.status != EventStatus.CANCELLED)
        .where(Event.start_time >= as_utc(now))
        .order_by(Event.start_time)
        .limit(min(max(limit, 1), MAX_UPCOMING_LIMIT))
    )
    return list(session.exec(statement).all())


def feed_events(session: Session, calendar_id: UUID) -> list[Event]:
    """Everything a feed subscriber should see: live occurrences and standalone events."""
    statement = (
        select(Event)
        .where(Event.calendar_id == calendar_id)
        .where(Event.recurrence_rule.is_(None))
        .where(Event.status.not_in([EventStatus.CANCELLED, EventStatus.SERIES]))
        .order_by(Event.start_time)
    )
    return list(session.exec(statement).all())


def iso_duration(delta: timedelta) -> str:
    """Format a non-negative duration as ISO 8601, e.g. ``PT14M30S``."""
    total = max(int(delta.total_seconds()), 0)
    hours, remainder = divmod(total, 3600)
    minutes, seconds = divmod(remainder, 60)
    parts = "PT"
    if hours:
        parts += f"{hours}H"
    if minutes:
        parts += f"{minutes}M"
    if seconds or parts == "PT":
        parts += f"{seconds}S"
    return parts
