"""Tests for series materialization and the instance store."""

from datetime import UTC, date, datetime, timedelta

import pytest
from sqlmodel import Session, select

from app.calendar.events import list_events
from app.calendar.materializer import instance_row, materialize, series_occurrences
from app.calendar.notifier import ChangeType
from app.calendar.store import existing_occurrence_keys, insert_instances
from app.core.clock import as_utc
from app.core.exceptions import InvalidEventData
from app.models import Event, EventKind, EventStatus


def instances_of(session: Session, parent: Event) -> list[Event]:
    statement = select(Event).where(Event.parent_id == parent.id).order_by(Event.occurrence_key)
    return list(session.exec(statement).all())


class TestMaterialize:
    """Tests for materialize."""

    def test_daily_series_round_trip(self, session: Session, calendar, make_series):
        parent, created = make_series("FREQ=DAILY;COUNT=5")
        session.commit()

        assert created == 5
        assert parent.kind == EventKind.SERIES
        assert parent.status == EventStatus.SERIES

        listed = list_events(session, calendar.id)
        assert [e.occurrence_key for e in listed] == [date(2025, 3, d) for d in range(1, 6)]
        assert all(e.parent_id == parent.id for e in listed)
        assert all(e.status == EventStatus.CONFIRMED for e in listed)
        assert parent.id not in {e.id for e in listed}

    def test_materialize_is_idempotent(self, session: Session, make_series, now):
        parent, _ = make_series("FREQ=DAILY;COUNT=5")

        assert materialize(session, parent, now + timedelta(days=90), window_start=now) == 0
        assert materialize(session, parent, now + timedelta(days=90), window_start=now) == 0
        assert len(instances_of(session, parent)) == 5

    def test_window_bounds_unbounded_series(self, session: Session, make_series, now):
        parent, created = make_series("FREQ=DAILY")

        # 2025-03-01 through 2025-05-29; 05-30 09:00 is past the horizon
        assert created == 90
        assert as_utc(parent.materialized_until) == now + timedelta(days=90)
        assert instances_of(session, parent)[-1].occurrence_key == date(2025, 5, 29)

    def test_instances_match_generated_occurrences(self, session: Session, make_series, now):
        parent, _ = make_series("FREQ=WEEKLY;BYDAY=MO,TH;INTERVAL=2")
        horizon = now + timedelta(days=90)

        expected = [o.key for o in series_occurrences(parent, horizon)]
        assert [i.occurrence_key for i in instances_of(session, parent)] == expected

    def test_extending_horizon_adds_only_new_occurrences(self, session: Session, make_series, now):
        parent, _ = make_series("FREQ=DAILY")

        assert materialize(session, parent, now + timedelta(days=100), window_start=now) == 10
        assert len(instances_of(session, parent)) == 100

    def test_horizon_never_moves_back(self, session: Session, make_series, now):
        parent, _ = make_series("FREQ=DAILY")
        materialize(session, parent, now + timedelta(days=10), window_start=now)
        assert as_utc(parent.materialized_until) == now + timedelta(days=90)

    def test_cancelled_instance_is_not_recreated(self, session: Session, make_series, now):
        parent, _ = make_series("FREQ=DAILY;COUNT=5")
        victim = instances_of(session, parent)[2]
        victim.status = EventStatus.CANCELLED
        session.add(victim)
        session.commit()

        assert materialize(session, parent, now + timedelta(days=90), window_start=now) == 0
        assert len(instances_of(session, parent)) == 5

    def test_instances_inherit_parent_fields(self, session: Session, make_series):
        parent, _ = make_series(
            "FREQ=WEEKLY;COUNT=3",
            title="Planning",
            description="Sprint planning",
            location="Room 1",
            metadata={"team": "core"},
            attendees=["a@example.com"],
            status=EventStatus.TENTATIVE,
            external_uid="series-uid@example.com",
        )

        for instance in instances_of(session, parent):
            assert instance.title == "Planning"
            assert instance.description == "Sprint planning"
            assert instance.location == "Room 1"
            assert instance.metadata_ == {"team": "core"}
            assert instance.attendees == ["a@example.com"]
            assert instance.status == EventStatus.TENTATIVE
            assert instance.external_uid is None
            assert instance.is_exception is False
            assert instance.kind == EventKind.INSTANCE

    def test_series_until_stops_extension(self, session: Session, make_series, now):
        parent, _ = make_series("FREQ=DAILY")
        parent.series_until = date(2025, 3, 10)

        assert materialize(session, parent, now + timedelta(days=200), window_start=now) == 0
        assert len(instances_of(session, parent)) == 90

    def test_cutoff_limits_fresh_materialization(self, session: Session, calendar, now):
        parent = Event(
            calendar_id=calendar.id,
            title="Cut",
            start_time=now + timedelta(hours=1),
            end_time=now + timedelta(hours=2),
            status=EventStatus.SERIES,
            recurrence_rule="FREQ=DAILY",
            instance_status=EventStatus.CONFIRMED,
            series_until=date(2025, 3, 4),
        )
        session.add(parent)
        session.flush()

        assert materialize(session, parent, now + timedelta(days=30), window_start=now) == 3
        assert [i.occurrence_key for i in instances_of(session, parent)] == [
            date(2025, 3, 1),
            date(2025, 3, 2),
            date(2025, 3, 3),
        ]

    def test_past_anchor_materializes_only_the_window(self, session: Session, calendar, now):
        parent = Event(
            calendar_id=calendar.id,
            title="Old standup",
            start_time=datetime(2019, 1, 7, 9, 0, tzinfo=UTC),
            end_time=datetime(2019, 1, 7, 10, 0, tzinfo=UTC),
            status=EventStatus.SERIES,
            recurrence_rule="FREQ=DAILY",
            instance_status=EventStatus.CONFIRMED,
        )
        session.add(parent)
        session.flush()

        assert materialize(session, parent, now + timedelta(days=90), window_start=now) == 90
        instances = instances_of(session, parent)
        assert instances[0].occurrence_key == date(2025, 3, 1)
        assert all(as_utc(i.end_time) >= now for i in instances)

    def test_only_series_can_be_materialized(self, session: Session, standalone_event, now):
        with pytest.raises(InvalidEventData):
            materialize(session, standalone_event, now + timedelta(days=90), window_start=now)

    def test_created_instances_are_announced(self, session: Session, make_series, notifier, transport):
        parent, _ = make_series("FREQ=DAILY;COUNT=3", notifier=notifier)

        assert [n.change_type for n in notifier.pending] == [ChangeType.CREATED] * 4
        assert notifier.pending[0].event_id == parent.id

        session.commit()
        assert notifier.flush(session) == 4
        assert len(transport.calls) == 4


class TestInstanceStore:
    """Tests for the insert-or-ignore store adapter."""

    def test_existing_keys_include_cancelled(self, session: Session, make_series):
        parent, _ = make_series("FREQ=DAILY;COUNT=3")
        first = instances_of(session, parent)[0]
        first.status = EventStatus.CANCELLED
        session.add(first)
        session.flush()

        assert existing_occurrence_keys(session, parent.id) == {
            date(2025, 3, 1),
            date(2025, 3, 2),
            date(2025, 3, 3),
        }

    def test_duplicate_occurrences_are_skipped(self, session: Session, make_series, now):
        parent, _ = make_series("FREQ=DAILY;COUNT=3")
        rows = [instance_row(parent, o) for o in series_occurrences(parent, now + timedelta(days=5))]

        assert insert_instances(session, rows) == []
        assert len(instances_of(session, parent)) == 3

    def test_inserts_in_batches(self, session: Session, make_series, now):
        parent, created = make_series("FREQ=DAILY;COUNT=200")
        assert created == 90

        rows = [
            instance_row(parent, o)
            for o in series_occurrences(parent, now + timedelta(days=365))
        ]
        inserted = insert_instances(session, rows)
        assert len(inserted) == 110
        assert len(instances_of(session, parent)) == 200

    def test_empty_insert(self, session: Session):
        assert insert_instances(session, []) == []
