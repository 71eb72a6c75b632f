"""Outbound change notifications (webhooks).

Every externally observable mutation of an event is queued here while the
unit of work runs, then flushed once the transaction has committed:

    notifier.queue(ChangeType.UPDATED, event)
    session.commit()
    notifier.flush(session)

Each notification is POSTed as JSON to the owning calendar's
``webhook_url``. When the calendar has a ``webhook_secret`` the exact bytes
sent are signed with HMAC-SHA256 and the hex digest goes in the
``X-Calendar-Signature`` header. Delivery is a single attempt with a bounded
timeout; failures are logged and dropped.
"""
import hashlib
import hmac
import json
import logging
from collections.abc import Callable
from concurrent.futures import Executor
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum
from uuid import UUID

import httpx
from sqlmodel import Session, select

from app.core.config import settings
from app.core.exceptions import NotificationDeliveryFailed
from app.models import Calendar, Event, EventRead

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Calendar-Signature"
USER_AGENT = "AgentCalendar-Webhook/1.0"


class ChangeType(StrEnum):
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"
    RESPONDED = "responded"


@dataclass(frozen=True)
class Notice:
    change_type: ChangeType
    calendar_id: UUID
    event_id: UUID
    snapshot: dict
    occurred_at: datetime


def sign_payload(secret: str, body: bytes) -> str:
    """HMAC-SHA256 hex digest of ``body`` keyed with ``secret``."""
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def verify_signature(secret: str, body: bytes, signature: str) -> bool:
    """Check a signature the way a webhook receiver should."""
    return hmac.compare_digest(sign_payload(secret, body), signature)


def serialize_notice(notice: Notice) -> bytes:
    """The exact bytes transmitted for a notice."""
    payload = {
        "type": notice.change_type.value,
        "calendar_id": str(notice.calendar_id),
        "event_id": str(notice.event_id),
        "event": notice.snapshot,
        "timestamp": notice.occurred_at.isoformat(),
    }
    return json.dumps(payload, separators=(",", ":")).encode()


def build_headers(body: bytes, secret: str | None) -> dict[str, str]:
    headers = {"Content-Type": "application/json", "User-Agent": USER_AGENT}
    if secret:
        headers[SIGNATURE_HEADER] = sign_payload(secret, body)
    return headers


def post_webhook(url: str, body: bytes, headers: dict[str, str], timeout: float) -> None:
    """POST one webhook. Raises :class:`NotificationDeliveryFailed` on any failure."""
    try:
        response = httpx.post(url, content=body, headers=headers, timeout=timeout)
    except httpx.HTTPError as e:
        raise NotificationDeliveryFailed(f"POST {url} failed: {e}") from e
    if response.status_code >= 400:
        raise NotificationDeliveryFailed(f"POST {url} returned {response.status_code}")


Transport = Callable[[str, bytes, dict[str, str], float], None]


class Notifier:
    """Collects change notices for one unit of work and delivers them.

    Args:
        transport: Callable that performs the POST. Defaults to
            :func:`post_webhook`.
        executor: Where deliveries run. ``None`` delivers inline, which is
            what tests use; the app passes a thread pool so requests never
            wait on webhook endpoints.
        timeout: Per-delivery timeout in seconds.
    """

    def __init__(
        self,
        transport: Transport = post_webhook,
        executor: Executor | None = None,
        timeout: float | None = None,
    ):
        self.transport = transport
        self.executor = executor
        self.timeout = timeout if timeout is not None else settings.webhook_timeout_seconds
        self.pending: list[Notice] = []

    def queue(self, change_type: ChangeType, event: Event) -> None:
        """Snapshot ``event`` now and hold the notice until :meth:`flush`."""
        snapshot = EventRead.from_event(event).model_dump(mode="json")
        self.pending.append(
            Notice(
                change_type=change_type,
                calendar_id=event.calendar_id,
                event_id=event.id,
                snapshot=snapshot,
                occurred_at=datetime.now(UTC),
            )
        )

    def discard(self) -> None:
        """Drop pending notices, e.g. after a rollback."""
        self.pending.clear()

    def flush(self, session: Session) -> int:
        """Send every pending notice. Returns how many were dispatched."""
        notices, self.pending = self.pending, []
        if not notices:
            return 0

        calendar_ids = {n.calendar_id for n in notices}
        calendars = {
            c.id: c
            for c in session.exec(select(Calendar).where(Calendar.id.in_(calendar_ids))).all()
        }

        dispatched = 0
        for notice in notices:
            calendar = calendars.get(notice.calendar_id)
            if calendar is None or not calendar.webhook_url:
                continue
            body = serialize_notice(notice)
            headers = build_headers(body, calendar.webhook_secret)
            if self.executor is None:
                self._deliver(calendar.webhook_url, body, headers)
            else:
                self.executor.submit(self._deliver, calendar.webhook_url, body, headers)
            dispatched += 1
        return dispatched

    def _deliver(self, url: str, body: bytes, headers: dict[str, str]) -> None:
        try:
            self.transport(url, body, headers, self.timeout)
        except NotificationDeliveryFailed as e:
            logger.warning(f"Webhook delivery dropped: {e}")
        except Exception as e:
            logger.warning(f"Webhook delivery dropped, unexpected error: {e}")
