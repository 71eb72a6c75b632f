"""Deletion of events and of recurring series.

Scopes for a delete request aimed at a series:

- ``single``: cancel just the targeted instance.
- ``future``: cancel the target and every later instance, and record a
  cutoff on the series so the horizon scheduler never recreates them.
- ``all``: delete the parent. Every instance goes with it. Not recoverable.

Standalone events have no scope; they are simply removed.
"""
import logging
from datetime import date, datetime
from enum import StrEnum

from sqlalchemy import delete
from sqlmodel import Session

from app.calendar.notifier import ChangeType, Notifier
from app.calendar.recurrence import resolve_zone
from app.calendar.store import series_instances, store_errors
from app.core.clock import as_utc
from app.core.exceptions import NotFound
from app.models import Event, EventKind, EventStatus

logger = logging.getLogger(__name__)


class DeleteScope(StrEnum):
    SINGLE = "single"
    FUTURE = "future"
    ALL = "all"


def delete_event(
    session: Session,
    event: Event,
    scope: DeleteScope = DeleteScope.SINGLE,
    *,
    now: datetime,
    notifier: Notifier | None = None,
) -> DeleteScope:
    """Delete or cancel ``event`` with ``scope`` and return the scope applied.

    Against a series parent, ``single`` has nothing narrower to act on and is
    applied as ``all``; ``future`` cuts the series at today's date in the
    series timezone. Does not commit.
    """
    kind = event.kind

    if kind == EventKind.STANDALONE:
        if notifier is not None:
            notifier.queue(ChangeType.DELETED, event)
        session.delete(event)
        return DeleteScope.SINGLE

    if kind == EventKind.SERIES:
        if scope == DeleteScope.FUTURE:
            today = as_utc(now).astimezone(resolve_zone(event.timezone)).date()
            cancel_from(session, event, today, notifier)
            return DeleteScope.FUTURE
        delete_series(session, event, notifier)
        return DeleteScope.ALL

    if scope == DeleteScope.SINGLE:
        if event.status != EventStatus.CANCELLED:
            _cancel(session, event, notifier)
        return DeleteScope.SINGLE

    parent = session.get(Event, event.parent_id)
    if parent is None:
        raise NotFound("Series")
    if scope == DeleteScope.FUTURE:
        cancel_from(session, parent, event.occurrence_key, notifier)
        return DeleteScope.FUTURE
    delete_series(session, parent, notifier)
    return DeleteScope.ALL


def cancel_from(
    session: Session,
    parent: Event,
    cutoff: date,
    notifier: Notifier | None = None,
) -> int:
    """Cancel every live instance at or after ``cutoff`` and stop the series there.

    Exceptions are cancelled too. Returns the number of instances cancelled.
    """
    cancelled = 0
    for instance in series_instances(session, parent.id):
        if instance.occurrence_key >= cutoff:
            _cancel(session, instance, notifier)
            cancelled += 1

    if parent.series_until is None or cutoff < parent.series_until:
        parent.series_until = cutoff
    parent.touch()
    session.add(parent)
    logger.info(f"Series {parent.id} cut at {cutoff}: {cancelled} instances cancelled")
    return cancelled


def delete_series(session: Session, parent: Event, notifier: Notifier | None = None) -> int:
    """Delete a parent and all of its instances in the current transaction."""
    instances = series_instances(session, parent.id, include_cancelled=True)
    if notifier is not None:
        for instance in instances:
            if instance.status != EventStatus.CANCELLED:
                notifier.queue(ChangeType.DELETED, instance)
        notifier.queue(ChangeType.DELETED, parent)

    with store_errors():
        session.execute(delete(Event).where(Event.parent_id == parent.id))
        session.delete(parent)
        session.flush()
    logger.info(f"Deleted series {parent.id} with {len(instances)} instances")
    return len(instances)


def _cancel(session: Session, instance: Event, notifier: Notifier | None) -> None:
    instance.status = EventStatus.CANCELLED
    instance.touch()
    session.add(instance)
    if notifier is not None:
        notifier.queue(ChangeType.DELETED, instance)
