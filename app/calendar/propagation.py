"""Edits to events and how they spread across a recurring series.

Instance state machine::

    Planned --(direct edit)--> Exception
    Planned | Exception --(cancel)--> Cancelled   (terminal)

- Editing a standalone event changes that row.
- Editing an instance changes that row only and marks it an exception.
- Editing a parent's content fields copies the new values to every planned
  instance of the series, past ones included. Exceptions and cancelled
  instances are skipped.
- Changing a parent's rule, times or timezone rematerializes the series
  from now on: planned instances the new rule no longer produces are
  cancelled, the rest keep their rows, and new occurrences are inserted.
  Instances that already ended keep their times and status.
  Exceptions are never touched.

The tables below are the whole propagation policy: patch field name mapped
to the event column it writes.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID

from sqlmodel import Session

from app.calendar.materializer import materialize, series_occurrences
from app.calendar.notifier import ChangeType, Notifier
from app.calendar.recurrence import Occurrence, resolve_zone, validate_rule
from app.calendar.store import series_instances
from app.core.clock import as_utc, day_start
from app.core.config import settings
from app.core.exceptions import InvalidEventData
from app.models import Event, EventKind, EventPatch, EventStatus

logger = logging.getLogger(__name__)

# Copied from a parent to its planned instances
PROPAGATED_FIELDS = {
    "title": "title",
    "description": "description",
    "location": "location",
    "metadata": "metadata_",
    "attendees": "attendees",
}

# Reshape the occurrence set of a series when changed on the parent
TIMING_FIELDS = {
    "start": "start_time",
    "end": "end_time",
    "all_day": "all_day",
}
SERIES_FIELDS = {
    "recurrence": "recurrence_rule",
    "timezone": "timezone",
}

NON_NULLABLE_FIELDS = {"title", "status", "start", "end", "all_day", "timezone", "recurrence"}

SERIES_STATUSES = {EventStatus.CONFIRMED, EventStatus.TENTATIVE}


@dataclass
class PatchResult:
    event: Event
    instances_updated: int = 0
    instances_created: int = 0
    instances_cancelled: int = 0


@dataclass
class _SyncCounts:
    updated: set[UUID] = field(default_factory=set)
    cancelled: int = 0


def apply_patch(
    session: Session,
    event: Event,
    patch: EventPatch,
    *,
    now: datetime,
    notifier: Notifier | None = None,
) -> PatchResult:
    """Apply ``patch`` to ``event`` and propagate it as the event kind requires.

    Everything is validated before any row changes. Does not commit.
    """
    changes = patch.changes()
    if not changes:
        raise InvalidEventData("No fields to update")
    for name in NON_NULLABLE_FIELDS & changes.keys():
        if changes[name] is None:
            raise InvalidEventData(f"{name} cannot be null")
    if changes.get("status") == EventStatus.SERIES:
        raise InvalidEventData("status 'series' is reserved")
    _normalize_all_day(event, changes)

    if event.kind == EventKind.SERIES:
        return _patch_series(session, event, changes, now=now, notifier=notifier)

    if "recurrence" in changes:
        raise InvalidEventData("recurrence can only be changed on a series")
    if event.status == EventStatus.CANCELLED and event.kind == EventKind.INSTANCE:
        raise InvalidEventData("A cancelled instance cannot be edited")

    start = changes.get("start", event.start_time)
    end = changes.get("end", event.end_time)
    if as_utc(end) < as_utc(start):
        raise InvalidEventData("end must not be before start")
    if "timezone" in changes:
        resolve_zone(changes["timezone"])

    for name, value in changes.items():
        column = {**PROPAGATED_FIELDS, **TIMING_FIELDS, **SERIES_FIELDS}.get(name, name)
        setattr(event, column, value)
    if event.kind == EventKind.INSTANCE:
        event.is_exception = True
    event.touch()
    session.add(event)

    if notifier is not None:
        cancelled = changes.get("status") == EventStatus.CANCELLED
        notifier.queue(ChangeType.DELETED if cancelled else ChangeType.UPDATED, event)
    return PatchResult(event=event)


def _normalize_all_day(event: Event, changes: dict[str, Any]) -> None:
    """Pin the times of an all-day result to midnight UTC, as creation does."""
    if not changes.get("all_day", event.all_day):
        return
    if not any(name in changes for name in TIMING_FIELDS):
        return
    changes["start"] = day_start(changes.get("start", event.start_time))
    changes["end"] = day_start(changes.get("end", event.end_time))


def _patch_series(
    session: Session,
    parent: Event,
    changes: dict[str, Any],
    *,
    now: datetime,
    notifier: Notifier | None,
) -> PatchResult:
    if "status" in changes and changes["status"] not in SERIES_STATUSES:
        raise InvalidEventData(
            "A series status must be confirmed or tentative; use delete to cancel it"
        )

    reshape = any(name in changes for name in (*TIMING_FIELDS, *SERIES_FIELDS))
    if reshape:
        start = changes.get("start", parent.start_time)
        end = changes.get("end", parent.end_time)
        if as_utc(end) < as_utc(start):
            raise InvalidEventData("end must not be before start")
        validate_rule(
            changes.get("recurrence", parent.recurrence_rule),
            start,
            end,
            changes.get("timezone", parent.timezone),
            window_days=parent.horizon_days or settings.materialize_window_days,
            max_instances=settings.max_instances_per_window,
            all_day=changes.get("all_day", parent.all_day),
        )

    values = {
        PROPAGATED_FIELDS[name]: value
        for name, value in changes.items()
        if name in PROPAGATED_FIELDS
    }
    if "status" in changes:
        values["status"] = changes["status"]

    for column, value in values.items():
        setattr(parent, "instance_status" if column == "status" else column, value)
    for name, column in {**TIMING_FIELDS, **SERIES_FIELDS}.items():
        if name in changes:
            setattr(parent, column, changes[name])
    parent.touch()
    session.add(parent)
    if notifier is not None:
        notifier.queue(ChangeType.UPDATED, parent)

    if reshape:
        result = rematerialize(session, parent, now=now, notifier=notifier, values=values)
        logger.info(
            f"Rematerialized series {parent.id}: {result.instances_created} created, "
            f"{result.instances_cancelled} cancelled, {result.instances_updated} updated"
        )
        return result

    counts = _sync_instances(session, parent, values, notifier)
    return PatchResult(event=parent, instances_updated=len(counts.updated))


def rematerialize(
    session: Session,
    parent: Event,
    *,
    now: datetime,
    notifier: Notifier | None = None,
    values: dict[str, Any] | None = None,
) -> PatchResult:
    """Reconcile a series with its (already updated) rule and anchor.

    ``values`` are content columns to copy to planned instances in the same
    pass. The horizon is never shrunk: it is the later of what was already
    materialized and ``now`` plus the series window.
    """
    window = timedelta(days=parent.horizon_days or settings.materialize_window_days)
    horizon_end = as_utc(now) + window
    if parent.materialized_until is not None:
        horizon_end = max(horizon_end, as_utc(parent.materialized_until))

    window_start = as_utc(now)
    occurrences = {o.key: o for o in series_occurrences(parent, horizon_end, window_start)}
    counts = _sync_instances(
        session, parent, values or {}, notifier, occurrences=occurrences, window_start=window_start
    )
    created = materialize(session, parent, horizon_end, notifier, window_start=window_start)
    return PatchResult(
        event=parent,
        instances_updated=len(counts.updated),
        instances_created=created,
        instances_cancelled=counts.cancelled,
    )


def _sync_instances(
    session: Session,
    parent: Event,
    values: dict[str, Any],
    notifier: Notifier | None,
    *,
    occurrences: dict | None = None,
    window_start: datetime | None = None,
) -> _SyncCounts:
    """Push ``values`` (and, if given, ``occurrences`` times) to planned instances.

    Instances that ended before ``window_start`` are outside the occurrence
    window: they take the new ``values`` but are neither retimed nor cancelled.
    """
    counts = _SyncCounts()
    if not values and occurrences is None:
        return counts
    if window_start is not None and parent.all_day:
        window_start = day_start(window_start)

    for instance in series_instances(session, parent.id):
        if not instance.is_planned:
            continue

        in_window = window_start is None or as_utc(instance.end_time) >= window_start
        if occurrences is not None and in_window:
            occurrence: Occurrence | None = occurrences.get(instance.occurrence_key)
            if occurrence is None:
                instance.status = EventStatus.CANCELLED
                instance.touch()
                session.add(instance)
                counts.cancelled += 1
                if notifier is not None:
                    notifier.queue(ChangeType.DELETED, instance)
                continue
            changed = _retime(instance, parent, occurrence)
        else:
            changed = False

        for column, value in values.items():
            if getattr(instance, column) != value:
                setattr(instance, column, value)
                changed = True

        if changed:
            instance.touch()
            session.add(instance)
            counts.updated.add(instance.id)
            if notifier is not None:
                notifier.queue(ChangeType.UPDATED, instance)
    return counts


def _retime(instance: Event, parent: Event, occurrence: Occurrence) -> bool:
    changed = False
    if as_utc(instance.start_time) != occurrence.start or as_utc(instance.end_time) != occurrence.end:
        instance.start_time = occurrence.start
        instance.end_time = occurrence.end
        changed = True
    if instance.all_day != parent.all_day or instance.timezone != parent.timezone:
        instance.all_day = parent.all_day
        instance.timezone = parent.timezone
        changed = True
    return changed
