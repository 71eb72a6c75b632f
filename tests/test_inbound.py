"""Tests for inbound invitation reconciliation."""

from datetime import UTC, date, datetime, timedelta

from sqlmodel import Session, select

from app.calendar.events import respond
from app.calendar.ics import InboundMessage
from app.calendar.inbound import reconcile
from app.core.clock import as_utc
from app.core.config import settings
from app.models import Event, EventKind, EventSource, EventStatus

START = datetime(2025, 3, 5, 15, 0, tzinfo=UTC)


def invite(**fields) -> InboundMessage:
    values = {
        "method": "REQUEST",
        "uid": "review-42@example.com",
        "title": "Quarterly review",
        "start": START,
        "end": START + timedelta(hours=1),
        "organiser_email": "boss@example.com",
    }
    values.update(fields)
    return InboundMessage(**values)


class TestReconcile:
    """Tests for reconcile."""

    def test_new_uid_creates_tentative_event(self, session: Session, calendar, now):
        outcome = reconcile(session, calendar, invite(), now=now)

        assert outcome.status == "created"
        event = session.get(Event, outcome.event_id)
        assert event.status == EventStatus.TENTATIVE
        assert event.source == EventSource.INBOUND
        assert event.external_uid == "review-42@example.com"
        assert event.organiser_email == "boss@example.com"

    def test_same_uid_updates_in_place(self, session: Session, calendar, now):
        created = reconcile(session, calendar, invite(), now=now)

        updated = reconcile(session, calendar, invite(title="Quarterly review (v2)"), now=now)

        assert updated.status == "updated"
        assert updated.event_id == created.event_id
        events = session.exec(select(Event).where(Event.calendar_id == calendar.id)).all()
        assert len(events) == 1
        assert events[0].title == "Quarterly review (v2)"

    def test_reschedule_needs_confirmation_again(self, session: Session, calendar, now):
        outcome = reconcile(session, calendar, invite(), now=now)
        event = session.get(Event, outcome.event_id)
        respond(session, event, "accepted")
        assert event.status == EventStatus.CONFIRMED

        reconcile(session, calendar, invite(title="Renamed"), now=now)
        assert event.status == EventStatus.CONFIRMED

        later = START + timedelta(days=1)
        reconcile(session, calendar, invite(start=later, end=later + timedelta(hours=1)), now=now)
        assert event.status == EventStatus.TENTATIVE
        assert as_utc(event.start_time) == later

    def test_cancel_then_ignore_repeat(self, session: Session, calendar, notifier, now):
        created = reconcile(session, calendar, invite(), now=now)

        outcome = reconcile(session, calendar, invite(method="CANCEL"), now=now, notifier=notifier)
        assert outcome.status == "cancelled"
        assert outcome.event_id == created.event_id
        assert session.get(Event, created.event_id).status == EventStatus.CANCELLED
        assert notifier.pending[-1].change_type == "deleted"

        again = reconcile(session, calendar, invite(method="CANCEL"), now=now)
        assert again.status == "ignored"

    def test_request_after_cancel_revives(self, session: Session, calendar, now):
        created = reconcile(session, calendar, invite(), now=now)
        reconcile(session, calendar, invite(method="CANCEL"), now=now)

        outcome = reconcile(session, calendar, invite(), now=now)

        assert outcome.status == "updated"
        assert outcome.event_id == created.event_id
        assert session.get(Event, created.event_id).status == EventStatus.TENTATIVE

    def test_recurring_invite_creates_series(self, session: Session, calendar, now):
        outcome = reconcile(session, calendar, invite(recurrence="FREQ=WEEKLY;COUNT=4"), now=now)

        assert outcome.status == "created"
        assert outcome.instances_created == 4
        parent = session.get(Event, outcome.event_id)
        assert parent.kind == EventKind.SERIES
        assert parent.instance_status == EventStatus.TENTATIVE
        instances = session.exec(select(Event).where(Event.parent_id == parent.id)).all()
        assert all(i.status == EventStatus.TENTATIVE for i in instances)
        assert all(i.source == EventSource.INBOUND for i in instances)

    def test_long_running_series_starts_at_now(self, session: Session, calendar, now):
        anchor = datetime(2019, 1, 7, 15, 0, tzinfo=UTC)
        outcome = reconcile(
            session,
            calendar,
            invite(start=anchor, end=anchor + timedelta(hours=1), recurrence="FREQ=DAILY"),
            now=now,
        )

        assert outcome.status == "created"
        assert outcome.instances_created == 90
        assert outcome.instances_created <= settings.max_instances_per_window
        instances = session.exec(select(Event).where(Event.parent_id == outcome.event_id)).all()
        assert min(i.occurrence_key for i in instances) == date(2025, 3, 1)

    def test_invalid_rule_falls_back_to_single_event(self, session: Session, calendar, now):
        outcome = reconcile(session, calendar, invite(recurrence="FREQ=HOURLY"), now=now)

        assert outcome.status == "created"
        assert outcome.instances_created is None
        assert session.get(Event, outcome.event_id).kind == EventKind.STANDALONE

    def test_cancel_series_cancels_instances(self, session: Session, calendar, now):
        created = reconcile(session, calendar, invite(recurrence="FREQ=WEEKLY;COUNT=4"), now=now)

        outcome = reconcile(session, calendar, invite(method="CANCEL"), now=now)

        assert outcome.status == "cancelled"
        parent = session.get(Event, created.event_id)
        assert parent.series_until == date(2025, 3, 5)
        instances = session.exec(select(Event).where(Event.parent_id == parent.id)).all()
        assert [i.status for i in instances] == [EventStatus.CANCELLED] * 4

    def test_series_rule_change(self, session: Session, calendar, now):
        created = reconcile(session, calendar, invite(recurrence="FREQ=WEEKLY;COUNT=4"), now=now)

        outcome = reconcile(session, calendar, invite(recurrence="FREQ=WEEKLY;COUNT=2"), now=now)

        assert outcome.status == "updated"
        instances = session.exec(
            select(Event).where(Event.parent_id == created.event_id).order_by(Event.occurrence_key)
        ).all()
        assert [i.status for i in instances] == [EventStatus.TENTATIVE] * 2 + [EventStatus.CANCELLED] * 2

    def test_missing_uid_is_ignored(self, session: Session, calendar, now):
        outcome = reconcile(session, calendar, invite(uid=None), now=now)
        assert outcome.status == "ignored"
        assert "UID" in outcome.reason

    def test_unsupported_method_is_ignored(self, session: Session, calendar, now):
        outcome = reconcile(session, calendar, invite(method="REPLY"), now=now)
        assert outcome.status == "ignored"

    def test_missing_start_is_ignored(self, session: Session, calendar, now):
        outcome = reconcile(session, calendar, invite(start=None, end=None), now=now)
        assert outcome.status == "ignored"

    def test_end_before_start_is_ignored(self, session: Session, calendar, now):
        outcome = reconcile(session, calendar, invite(end=START - timedelta(hours=1)), now=now)
        assert outcome.status == "ignored"
        assert session.exec(select(Event)).all() == []

    def test_missing_end_defaults_to_one_hour(self, session: Session, calendar, now):
        outcome = reconcile(session, calendar, invite(end=None), now=now)
        event = session.get(Event, outcome.event_id)
        assert as_utc(event.end_time) - as_utc(event.start_time) == timedelta(hours=1)

    def test_as_dict(self, session: Session, calendar, now):
        body = reconcile(session, calendar, invite(), now=now).as_dict()
        assert body["status"] == "created"
        assert "reason" not in body
        assert "event_id" in body
