"""Shared FastAPI dependencies for the route modules."""
from datetime import datetime
from uuid import UUID

from fastapi import Depends, Header, Request
from sqlmodel import Session

from app.calendar.notifier import Notifier
from app.core.clock import utcnow
from app.core.database import get_session
from app.core.exceptions import NotFound
from app.models import Calendar


def get_owner_id(x_owner_id: str = Header(...)) -> str:
    """Identity resolved upstream by the auth layer. Trusted as-is."""
    return x_owner_id


def get_now() -> datetime:
    return utcnow()


def get_notifier(request: Request) -> Notifier:
    """A fresh notifier per request, delivering on the app's webhook pool."""
    return Notifier(executor=getattr(request.app.state, "webhook_executor", None))


def get_calendar(
    calendar_id: UUID,
    owner_id: str = Depends(get_owner_id),
    session: Session = Depends(get_session),
) -> Calendar:
    """The calendar in the path, if it belongs to the caller."""
    calendar = session.get(Calendar, calendar_id)
    if calendar is None or calendar.owner_id != owner_id:
        raise NotFound("Calendar")
    return calendar
