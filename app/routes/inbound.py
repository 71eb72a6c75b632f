"""Inbound invitation route, addressed by a calendar's inbound token."""
import logging
from datetime import datetime

from fastapi import APIRouter, Body, Depends
from pydantic import ValidationError
from sqlmodel import Session, select

from app.calendar.ics import InboundMessage, parse_ics
from app.calendar.inbound import ignored, reconcile
from app.calendar.notifier import Notifier
from app.calendar.store import store_errors
from app.core.database import get_session
from app.core.exceptions import InboundParseError, NotFound, StoreUnavailable
from app.models import Calendar
from app.routes.dependencies import get_notifier, get_now

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/inbound", tags=["inbound"])


@router.post("/{token}")
async def receive_inbound(
    token: str,
    payload: dict = Body(...),
    session: Session = Depends(get_session),
    now: datetime = Depends(get_now),
    notifier: Notifier = Depends(get_notifier),
):
    """
    Apply an inbound invitation to the calendar owning ``token``.

    The body is either a structured message or ``{"ics": "<raw iCalendar>"}``.
    Always answers 200 with the outcome, so providers never retry a message
    that was deliberately dropped. Only an unknown token is a 404.
    """
    calendar = session.exec(select(Calendar).where(Calendar.inbound_token == token)).first()
    if calendar is None:
        raise NotFound("Calendar")

    try:
        if "ics" in payload:
            message = parse_ics(str(payload["ics"]))
        else:
            message = InboundMessage.model_validate(payload)
    except (InboundParseError, ValidationError) as e:
        logger.info(f"Inbound message for calendar {calendar.id} ignored: {e}")
        return ignored(f"Unparseable message: {e}").as_dict()

    try:
        outcome = reconcile(session, calendar, message, now=now, notifier=notifier)
        with store_errors():
            session.commit()
    except StoreUnavailable as e:
        session.rollback()
        notifier.discard()
        logger.error(f"Inbound processing for calendar {calendar.id} failed, store unavailable: {e}")
        return {"status": "error", "reason": "Store unavailable", "retryable": True}
    except Exception as e:
        session.rollback()
        notifier.discard()
        logger.exception(f"Inbound processing failed for calendar {calendar.id}: {e}")
        return {"status": "error", "reason": "Internal processing error"}

    notifier.flush(session)
    logger.info(f"Inbound {message.method} {message.uid} for calendar {calendar.id}: {outcome.status}")
    return outcome.as_dict()
