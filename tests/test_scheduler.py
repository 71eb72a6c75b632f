"""Tests for the horizon scheduler."""

from datetime import timedelta

from sqlmodel import Session, select

from app.calendar import materializer
from app.calendar.notifier import Notifier
from app.core import scheduler as scheduler_module
from app.core.scheduler import HorizonScheduler
from app.models import Event


def count_instances(session: Session, parent_id) -> int:
    return len(session.exec(select(Event).where(Event.parent_id == parent_id)).all())


class TestHorizonScheduler:
    """Tests for HorizonScheduler.run_once."""

    def test_extends_every_series(self, session: Session, engine, make_series, now):
        first, _ = make_series("FREQ=DAILY")
        second, _ = make_series("FREQ=WEEKLY;BYDAY=MO", title="Weekly review")
        session.commit()
        first_id, second_id = first.id, second.id

        scheduler = HorizonScheduler(engine, clock=lambda: now + timedelta(days=10))
        stats = scheduler.run_once()

        assert stats["parents"] == 2
        assert stats["failed"] == 0
        session.expire_all()
        assert count_instances(session, first_id) == 100
        # Mondays from 2025-03-03 through 2025-06-02
        assert count_instances(session, second_id) == 14

    def test_second_pass_creates_nothing(self, session: Session, engine, make_series, now):
        make_series("FREQ=DAILY")
        session.commit()

        scheduler = HorizonScheduler(engine, clock=lambda: now + timedelta(days=10))
        assert scheduler.run_once()["created"] == 10
        assert scheduler.run_once()["created"] == 0

    def test_bounded_series_stop_growing(self, session: Session, engine, make_series, now):
        parent, _ = make_series("FREQ=DAILY;COUNT=5")
        session.commit()

        stats = HorizonScheduler(engine, clock=lambda: now + timedelta(days=365)).run_once()

        assert stats["created"] == 0
        assert count_instances(session, parent.id) == 5

    def test_failure_is_isolated_per_series(self, session: Session, engine, make_series, now, monkeypatch):
        broken, _ = make_series("FREQ=DAILY", title="Broken")
        healthy, _ = make_series("FREQ=DAILY", title="Healthy")
        session.commit()
        broken_id, healthy_id = broken.id, healthy.id

        def flaky_materialize(session, parent, horizon_end, notifier=None, *, window_start):
            if parent.id == broken_id:
                raise RuntimeError("disk on fire")
            return materializer.materialize(session, parent, horizon_end, notifier, window_start=window_start)

        monkeypatch.setattr(scheduler_module, "materialize", flaky_materialize)

        stats = HorizonScheduler(engine, clock=lambda: now + timedelta(days=10)).run_once()

        assert stats == {"parents": 2, "created": 10, "failed": 1}
        session.expire_all()
        assert count_instances(session, broken_id) == 90
        assert count_instances(session, healthy_id) == 100

    def test_new_instances_are_announced(self, session: Session, engine, make_series, now, transport):
        make_series("FREQ=DAILY")
        session.commit()

        scheduler = HorizonScheduler(
            engine,
            clock=lambda: now + timedelta(days=3),
            notifier_factory=lambda: Notifier(transport=transport),
        )
        scheduler.run_once()

        assert len(transport.calls) == 3
        assert all(b'"type":"created"' in call["body"] for call in transport.calls)

    def test_failed_series_announces_nothing(self, session: Session, engine, make_series, now, transport, monkeypatch):
        make_series("FREQ=DAILY")
        session.commit()

        def broken_materialize(session, parent, horizon_end, notifier=None, *, window_start):
            materializer.materialize(session, parent, horizon_end, notifier, window_start=window_start)
            raise RuntimeError("commit would fail")

        monkeypatch.setattr(scheduler_module, "materialize", broken_materialize)

        scheduler = HorizonScheduler(
            engine,
            clock=lambda: now + timedelta(days=3),
            notifier_factory=lambda: Notifier(transport=transport),
        )
        stats = scheduler.run_once()

        assert stats["failed"] == 1
        assert transport.calls == []

    def test_default_interval_comes_from_settings(self, engine):
        scheduler = HorizonScheduler(engine)
        assert scheduler.interval == timedelta(days=1)
        assert scheduler.running is False
