"""Event routes: create, list, edit, delete and respond to events of a calendar."""
from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlmodel import Session

from app.calendar.deletion import DeleteScope, delete_event
from app.calendar.events import (
    MAX_LIST_LIMIT,
    MAX_UPCOMING_LIMIT,
    create_event,
    get_event,
    iso_duration,
    list_events,
    respond,
    upcoming_events,
)
from app.calendar.notifier import Notifier
from app.calendar.propagation import apply_patch
from app.calendar.store import store_errors
from app.core.clock import as_utc
from app.core.database import get_session
from app.models import Calendar, EventCreate, EventPatch, EventRead
from app.routes.dependencies import get_calendar, get_notifier, get_now

router = APIRouter(prefix="/calendars/{calendar_id}", tags=["events"])


class EventCreated(EventRead):
    instances_created: int | None = None


class EventUpdated(BaseModel):
    event: EventRead
    instances_updated: int
    instances_created: int
    instances_cancelled: int


class RespondRequest(BaseModel):
    response: str


@router.post("/events", status_code=201, response_model=EventCreated)
async def create_calendar_event(
    body: EventCreate,
    calendar: Calendar = Depends(get_calendar),
    session: Session = Depends(get_session),
    now: datetime = Depends(get_now),
    notifier: Notifier = Depends(get_notifier),
):
    """
    Create an event.

    With ``recurrence`` set this creates a series: the parent is stored and
    its first window of instances is materialized in the same transaction.
    """
    event, created = create_event(session, calendar, body, now=now, notifier=notifier)
    with store_errors():
        session.commit()
    session.refresh(event)
    notifier.flush(session)
    return EventCreated(**EventRead.from_event(event).model_dump(), instances_created=created)


@router.get("/events", response_model=list[EventRead])
async def list_calendar_events(
    calendar: Calendar = Depends(get_calendar),
    session: Session = Depends(get_session),
    start: datetime | None = None,
    end: datetime | None = None,
    status: str | None = None,
    limit: int = Query(50, ge=1, le=MAX_LIST_LIMIT),
    offset: int = Query(0, ge=0),
):
    """List occurrences and standalone events by start time. Series parents are never listed."""
    events = list_events(
        session, calendar.id, start=start, end=end, status=status, limit=limit, offset=offset
    )
    return [EventRead.from_event(e) for e in events]


@router.get("/upcoming")
async def upcoming_calendar_events(
    calendar: Calendar = Depends(get_calendar),
    session: Session = Depends(get_session),
    now: datetime = Depends(get_now),
    limit: int = Query(5, ge=1, le=MAX_UPCOMING_LIMIT),
):
    """The next live events, plus how long until the first one starts."""
    events = upcoming_events(session, calendar.id, now, limit)
    starts_in = None
    if events:
        starts_in = iso_duration(as_utc(events[0].start_time) - as_utc(now))
    return {
        "events": [EventRead.from_event(e).model_dump(mode="json") for e in events],
        "next_event_starts_in": starts_in,
    }


@router.get("/events/{event_id}", response_model=EventRead)
async def read_calendar_event(
    event_id: UUID,
    calendar: Calendar = Depends(get_calendar),
    session: Session = Depends(get_session),
):
    return EventRead.from_event(get_event(session, calendar.id, event_id))


@router.patch("/events/{event_id}", response_model=EventUpdated)
async def update_calendar_event(
    event_id: UUID,
    body: EventPatch,
    calendar: Calendar = Depends(get_calendar),
    session: Session = Depends(get_session),
    now: datetime = Depends(get_now),
    notifier: Notifier = Depends(get_notifier),
):
    """
    Patch an event.

    Editing an instance turns it into an exception. Editing a series
    propagates to every planned instance and leaves exceptions alone.
    """
    event = get_event(session, calendar.id, event_id)
    result = apply_patch(session, event, body, now=now, notifier=notifier)
    with store_errors():
        session.commit()
    session.refresh(event)
    notifier.flush(session)
    return EventUpdated(
        event=EventRead.from_event(event),
        instances_updated=result.instances_updated,
        instances_created=result.instances_created,
        instances_cancelled=result.instances_cancelled,
    )


@router.delete("/events/{event_id}")
async def delete_calendar_event(
    event_id: UUID,
    scope: DeleteScope = DeleteScope.SINGLE,
    calendar: Calendar = Depends(get_calendar),
    session: Session = Depends(get_session),
    now: datetime = Depends(get_now),
    notifier: Notifier = Depends(get_notifier),
):
    """
    Delete an event.

    ``scope`` only matters for series: ``single`` cancels one instance,
    ``future`` cancels it and everything after, ``all`` removes the series.
    The scope actually applied is returned.
    """
    event = get_event(session, calendar.id, event_id)
    applied = delete_event(session, event, scope, now=now, notifier=notifier)
    with store_errors():
        session.commit()
    notifier.flush(session)
    return {"deleted": str(event_id), "scope": applied.value}


@router.post("/events/{event_id}/respond", response_model=EventRead)
async def respond_to_event(
    event_id: UUID,
    body: RespondRequest,
    calendar: Calendar = Depends(get_calendar),
    session: Session = Depends(get_session),
    notifier: Notifier = Depends(get_notifier),
):
    """Record an RSVP: accepted, declined or tentative."""
    event = get_event(session, calendar.id, event_id)
    respond(session, event, body.response, notifier=notifier)
    with store_errors():
        session.commit()
    session.refresh(event)
    notifier.flush(session)
    return EventRead.from_event(event)
