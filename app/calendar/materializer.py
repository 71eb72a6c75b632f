"""Materialization of recurring series into instance rows."""
import logging
from datetime import UTC, datetime
from uuid import uuid4

from sqlmodel import Session, select

from app.calendar.notifier import ChangeType, Notifier
from app.calendar.recurrence import Occurrence, generate_occurrences
from app.calendar.store import existing_occurrence_keys, insert_instances
from app.core.clock import as_utc
from app.core.exceptions import InvalidEventData
from app.models import Event, EventKind, EventStatus

logger = logging.getLogger(__name__)


def series_occurrences(
    parent: Event,
    horizon_end: datetime,
    window_start: datetime | None = None,
) -> list[Occurrence]:
    """Occurrences of ``parent`` in ``[window_start, horizon_end]``, honouring its cutoff.

    Without ``window_start`` the series is listed from its anchor.
    """
    return list(
        generate_occurrences(
            parent.recurrence_rule,
            parent.start_time,
            parent.end_time,
            parent.timezone,
            horizon_end,
            all_day=parent.all_day,
            cutoff=parent.series_until,
            window_start=window_start,
        )
    )


def instance_row(parent: Event, occurrence: Occurrence) -> dict:
    """Column values for a new instance of ``parent``.

    Instances copy the parent's non-temporal fields as they are right now;
    their own times come from the occurrence. ``external_uid`` stays on the
    parent so inbound lookups keep resolving to the series.
    """
    now = datetime.now(UTC)
    return {
        "id": uuid4(),
        "calendar_id": parent.calendar_id,
        "title": parent.title,
        "description": parent.description,
        "location": parent.location,
        "metadata_": parent.metadata_,
        "attendees": parent.attendees,
        "start_time": occurrence.start,
        "end_time": occurrence.end,
        "all_day": parent.all_day,
        "timezone": parent.timezone,
        "status": parent.instance_status or EventStatus.CONFIRMED,
        "recurrence_rule": None,
        "parent_id": parent.id,
        "occurrence_key": occurrence.key,
        "is_exception": False,
        "source": parent.source,
        "sequence": 0,
        "organiser_email": parent.organiser_email,
        "created_at": now,
        "updated_at": now,
    }


def materialize(
    session: Session,
    parent: Event,
    horizon_end: datetime,
    notifier: Notifier | None = None,
    *,
    window_start: datetime,
) -> int:
    """Create the missing instances of ``parent`` between ``window_start`` and ``horizon_end``.

    ``window_start`` is normally the current time: occurrences that ended
    before it are history and never get a row, however old the anchor is.

    Idempotent: occurrences that already have an instance (in any state) are
    left alone, and concurrent callers racing on the same occurrence are
    resolved by the store's unique constraint. Returns the number of
    instances this call created. Does not commit.
    """
    if parent.kind != EventKind.SERIES:
        raise InvalidEventData("Only a series can be materialized")

    occurrences = series_occurrences(parent, horizon_end, window_start)
    taken = existing_occurrence_keys(session, parent.id)
    rows = [instance_row(parent, o) for o in occurrences if o.key not in taken]
    created_ids = insert_instances(session, rows)

    horizon_end = as_utc(horizon_end)
    if parent.materialized_until is None or as_utc(parent.materialized_until) < horizon_end:
        parent.materialized_until = horizon_end
        session.add(parent)

    if created_ids and notifier is not None:
        created = session.exec(select(Event).where(Event.id.in_(created_ids))).all()
        for instance in sorted(created, key=lambda e: e.occurrence_key):
            notifier.queue(ChangeType.CREATED, instance)

    if created_ids:
        logger.info(f"Materialized {len(created_ids)} instances for series {parent.id}")
    return len(created_ids)
