"""Read-only iCalendar feed, authenticated by the calendar's feed token."""
import hmac
import logging
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import Response
from sqlmodel import Session

from app.calendar.events import feed_events
from app.calendar.ics import build_feed
from app.core.database import get_session
from app.models import Calendar

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/feeds", tags=["feeds"])


@router.get("/{calendar_id}.ics")
async def calendar_feed(
    calendar_id: UUID,
    token: str | None = Query(None),
    session: Session = Depends(get_session),
):
    """
    Subscribe-able feed of a calendar's occurrences.

    Series parents and cancelled events are left out; clients such as Google
    or Apple Calendar only ever see concrete occurrences.
    """
    if not token:
        raise HTTPException(status_code=401, detail="Missing token parameter")

    calendar = session.get(Calendar, calendar_id)
    if calendar is None or not hmac.compare_digest(
        calendar.feed_token.encode(), token.encode()
    ):
        raise HTTPException(status_code=401, detail="Invalid calendar or token")

    events = feed_events(session, calendar.id)
    logger.debug(f"Serving feed for calendar {calendar.id} with {len(events)} events")
    return Response(
        content=build_feed(calendar, events),
        media_type="text/calendar; charset=utf-8",
        headers={"Content-Disposition": f'inline; filename="{calendar.id}.ics"'},
    )
