"""Calendar routes: create, inspect, configure webhooks, delete."""
from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, HttpUrl
from sqlalchemy import delete
from sqlmodel import Session

from app.calendar.recurrence import resolve_zone
from app.calendar.store import store_errors
from app.core.database import get_session
from app.models import Calendar, Event
from app.routes.dependencies import get_calendar, get_owner_id

router = APIRouter(prefix="/calendars", tags=["calendars"])


class CalendarCreate(BaseModel):
    name: str
    timezone: str = "UTC"


class CalendarUpdate(BaseModel):
    name: str | None = None
    timezone: str | None = None
    webhook_url: HttpUrl | None = None
    webhook_secret: str | None = None


class CalendarRead(BaseModel):
    id: UUID
    name: str
    timezone: str
    webhook_url: str | None
    has_webhook_secret: bool
    inbound_path: str
    feed_path: str
    created_at: datetime

    @classmethod
    def from_calendar(cls, calendar: Calendar) -> "CalendarRead":
        return cls(
            id=calendar.id,
            name=calendar.name,
            timezone=calendar.timezone,
            webhook_url=calendar.webhook_url,
            has_webhook_secret=bool(calendar.webhook_secret),
            inbound_path=f"/inbound/{calendar.inbound_token}",
            feed_path=f"/feeds/{calendar.id}.ics?token={calendar.feed_token}",
            created_at=calendar.created_at,
        )


@router.post("", status_code=201, response_model=CalendarRead)
async def create_calendar(
    body: CalendarCreate,
    owner_id: str = Depends(get_owner_id),
    session: Session = Depends(get_session),
):
    """Create a calendar owned by the caller."""
    resolve_zone(body.timezone)
    calendar = Calendar(owner_id=owner_id, name=body.name, timezone=body.timezone)
    session.add(calendar)
    with store_errors():
        session.commit()
    session.refresh(calendar)
    return CalendarRead.from_calendar(calendar)


@router.get("/{calendar_id}", response_model=CalendarRead)
async def read_calendar(calendar: Calendar = Depends(get_calendar)):
    return CalendarRead.from_calendar(calendar)


@router.patch("/{calendar_id}", response_model=CalendarRead)
async def update_calendar(
    body: CalendarUpdate,
    calendar: Calendar = Depends(get_calendar),
    session: Session = Depends(get_session),
):
    """Update name, timezone or webhook settings. Only supplied fields change."""
    changes = body.model_dump(exclude_unset=True)
    if not changes:
        raise HTTPException(status_code=400, detail="No fields to update")
    if changes.get("timezone") is not None:
        resolve_zone(changes["timezone"])
    if "webhook_url" in changes:
        changes["webhook_url"] = str(body.webhook_url) if body.webhook_url else None
    for name, value in changes.items():
        if name in ("name", "timezone") and value is None:
            raise HTTPException(status_code=400, detail=f"{name} cannot be null")
        setattr(calendar, name, value)
    session.add(calendar)
    with store_errors():
        session.commit()
    session.refresh(calendar)
    return CalendarRead.from_calendar(calendar)


@router.delete("/{calendar_id}", status_code=204)
async def delete_calendar(
    calendar: Calendar = Depends(get_calendar),
    session: Session = Depends(get_session),
):
    """Delete a calendar and, with it, every event it owns."""
    session.execute(delete(Event).where(Event.calendar_id == calendar.id))
    session.delete(calendar)
    with store_errors():
        session.commit()
