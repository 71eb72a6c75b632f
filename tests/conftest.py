"""Shared test fixtures."""

from datetime import UTC, datetime, timedelta

import pytest
from fastapi.testclient import TestClient
from sqlmodel import Session, SQLModel, create_engine
from sqlmodel.pool import StaticPool

from app.calendar.events import create_event
from app.calendar.notifier import Notifier
from app.core.database import configure_engine, get_session
from app.main import app
from app.models import Calendar, Event, EventCreate
from app.routes.dependencies import get_notifier, get_now

# Saturday; every test runs at this instant unless it says otherwise
NOW = datetime(2025, 3, 1, 8, 0, tzinfo=UTC)

OWNER = "agent-1"
OWNER_HEADERS = {"X-Owner-Id": OWNER}


class RecordingTransport:
    """Stands in for the webhook POST and remembers every call."""

    def __init__(self):
        self.calls = []

    def __call__(self, url, body, headers, timeout):
        self.calls.append({"url": url, "body": body, "headers": headers, "timeout": timeout})


@pytest.fixture(name="engine")
def engine_fixture():
    """Create an in-memory SQLite database for testing."""
    engine = configure_engine(
        create_engine(
            "sqlite://",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)


@pytest.fixture(name="session")
def session_fixture(engine):
    """Create a new database session for each test."""
    with Session(engine) as session:
        yield session


@pytest.fixture(name="now")
def now_fixture() -> datetime:
    return NOW


@pytest.fixture(name="headers")
def headers_fixture() -> dict:
    """Identity headers for the calendar owner."""
    return dict(OWNER_HEADERS)


@pytest.fixture(name="transport")
def transport_fixture() -> RecordingTransport:
    return RecordingTransport()


@pytest.fixture(name="notifier")
def notifier_fixture(transport: RecordingTransport) -> Notifier:
    """A notifier that delivers inline through the recording transport."""
    return Notifier(transport=transport)


@pytest.fixture(name="client")
def client_fixture(session: Session, transport: RecordingTransport):
    """Create a test client with the test database session and a fixed clock."""

    def get_session_override():
        try:
            yield session
        except Exception:
            session.rollback()
            raise

    app.dependency_overrides[get_session] = get_session_override
    app.dependency_overrides[get_now] = lambda: NOW
    app.dependency_overrides[get_notifier] = lambda: Notifier(transport=transport)
    client = TestClient(app)
    yield client
    app.dependency_overrides.clear()


@pytest.fixture(name="calendar")
def calendar_fixture(session: Session) -> Calendar:
    """A UTC calendar with a signed webhook configured."""
    calendar = Calendar(
        owner_id=OWNER,
        name="Work",
        timezone="UTC",
        webhook_url="https://hooks.example.com/calendar",
        webhook_secret="s3cret",
    )
    session.add(calendar)
    session.commit()
    session.refresh(calendar)
    return calendar


@pytest.fixture(name="quiet_calendar")
def quiet_calendar_fixture(session: Session) -> Calendar:
    """A calendar with no webhook."""
    calendar = Calendar(owner_id=OWNER, name="Personal", timezone="America/New_York")
    session.add(calendar)
    session.commit()
    session.refresh(calendar)
    return calendar


@pytest.fixture(name="make_series")
def make_series_fixture(session: Session, calendar: Calendar):
    """Create a series through the core and return ``(parent, instances_created)``."""

    def make(
        rule: str,
        start: datetime = datetime(2025, 3, 1, 9, 0, tzinfo=UTC),
        duration: timedelta = timedelta(hours=1),
        now: datetime = NOW,
        notifier: Notifier | None = None,
        **fields,
    ) -> tuple[Event, int]:
        data = EventCreate(
            title=fields.pop("title", "Standup"),
            start=start,
            end=start + duration,
            recurrence=rule,
            **fields,
        )
        return create_event(session, calendar, data, now=now, notifier=notifier)

    return make


@pytest.fixture(name="standalone_event")
def standalone_event_fixture(session: Session, calendar: Calendar) -> Event:
    """A one-off event tomorrow morning."""
    event = Event(
        calendar_id=calendar.id,
        title="Dentist",
        start_time=datetime(2025, 3, 2, 10, 0, tzinfo=UTC),
        end_time=datetime(2025, 3, 2, 11, 0, tzinfo=UTC),
    )
    session.add(event)
    session.commit()
    session.refresh(event)
    return event
