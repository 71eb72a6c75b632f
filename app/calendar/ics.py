"""iCalendar in both directions: inbound invitations and the read-only feed."""
from datetime import UTC, date, datetime, timedelta

from icalendar import Calendar as ICalendar
from icalendar import Event as IEvent
from icalendar import vCalAddress
from pydantic import BaseModel

from app.core.clock import as_utc
from app.core.exceptions import InboundParseError
from app.models import Calendar, Event, EventStatus

PRODID = "-//Agent Calendar//Agent Calendar//EN"

# Event status -> iCalendar STATUS; anything else is left unset
FEED_STATUS = {
    EventStatus.CONFIRMED: "CONFIRMED",
    EventStatus.TENTATIVE: "TENTATIVE",
}


class InboundMessage(BaseModel):
    """A structured inbound message, as handed over by the mail transport."""
    method: str = "REQUEST"
    uid: str | None = None
    title: str | None = None
    start: datetime | None = None
    end: datetime | None = None
    all_day: bool = False
    description: str | None = None
    location: str | None = None
    organiser_email: str | None = None
    attendees: list[str] | None = None
    recurrence: str | None = None


def clean_email(value) -> str | None:
    """Strip ``mailto:`` and normalise case."""
    if not value:
        return None
    text = str(value).strip()
    if text.lower().startswith("mailto:"):
        text = text[7:]
    return text.strip().lower() or None


def _text(component, name: str) -> str | None:
    value = component.get(name)
    return str(value) if value is not None else None


def _as_datetime(value: date | datetime) -> datetime:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)
    return datetime(value.year, value.month, value.day, tzinfo=UTC)


def parse_ics(text: str) -> InboundMessage:
    """Parse the first VEVENT of an iCalendar document.

    METHOD is read from the calendar (default REQUEST). All-day DTEND is
    exclusive in iCalendar and is converted to the inclusive last day.
    """
    try:
        calendar = ICalendar.from_ical(text)
    except (ValueError, IndexError, KeyError) as e:
        raise InboundParseError(f"Unparseable iCalendar data: {e}") from e

    vevent = next(iter(calendar.walk("VEVENT")), None)
    if vevent is None:
        raise InboundParseError("No VEVENT found in .ics")

    start = end = None
    all_day = False
    if vevent.get("DTSTART") is not None:
        raw_start = vevent.decoded("DTSTART")
        all_day = not isinstance(raw_start, datetime)
        start = _as_datetime(raw_start)
    if vevent.get("DTEND") is not None:
        end = _as_datetime(vevent.decoded("DTEND"))
        if all_day and start is not None and end > start:
            end -= timedelta(days=1)

    attendees = vevent.get("ATTENDEE")
    if attendees is not None and not isinstance(attendees, list):
        attendees = [attendees]
    attendee_emails = [e for e in (clean_email(a) for a in attendees or []) if e]

    rrule = vevent.get("RRULE")
    recurrence = rrule.to_ical().decode() if rrule is not None else None

    return InboundMessage(
        method=str(calendar.get("METHOD", "REQUEST")).upper(),
        uid=_text(vevent, "UID"),
        title=_text(vevent, "SUMMARY"),
        start=start,
        end=end,
        all_day=all_day,
        description=_text(vevent, "DESCRIPTION"),
        location=_text(vevent, "LOCATION"),
        organiser_email=clean_email(vevent.get("ORGANIZER")),
        attendees=attendee_emails or None,
        recurrence=recurrence,
    )


def _feed_event(event: Event) -> IEvent:
    vevent = IEvent()
    vevent.add("uid", str(event.id))
    vevent.add("summary", event.title)
    vevent.add("dtstamp", as_utc(event.updated_at))
    vevent.add("created", as_utc(event.created_at))
    vevent.add("sequence", event.sequence)
    if event.all_day:
        # Stored all-day ends are the inclusive last day; DTEND is exclusive
        first = as_utc(event.start_time).date()
        last = as_utc(event.end_time).date()
        vevent.add("dtstart", first)
        vevent.add("dtend", max(last, first) + timedelta(days=1))
    else:
        vevent.add("dtstart", as_utc(event.start_time))
        vevent.add("dtend", as_utc(event.end_time))
    if event.description:
        vevent.add("description", event.description)
    if event.location:
        vevent.add("location", event.location)
    for email in event.attendees or []:
        vevent.add("attendee", vCalAddress(f"mailto:{email}"))
    if event.status in FEED_STATUS:
        vevent.add("status", FEED_STATUS[event.status])
    return vevent


def build_feed(calendar: Calendar, events: list[Event]) -> bytes:
    """Serialize a calendar's occurrences as a VCALENDAR document.

    ``events`` should already exclude series parents and cancelled rows;
    see :func:`app.calendar.events.feed_events`.
    """
    feed = ICalendar()
    feed.add("prodid", PRODID)
    feed.add("version", "2.0")
    feed.add("calscale", "GREGORIAN")
    feed.add("x-wr-calname", calendar.name)
    feed.add("x-wr-timezone", calendar.timezone)
    for event in events:
        feed.add_component(_feed_event(event))
    return feed.to_ical()
