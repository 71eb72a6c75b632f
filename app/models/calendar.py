"""Calendar model: the owner of events and of webhook configuration."""

import secrets
from datetime import UTC, datetime
from typing import TYPE_CHECKING
from uuid import UUID, uuid4

from sqlmodel import Field, Relationship, SQLModel

if TYPE_CHECKING:
    from app.models.event import Event


def new_inbound_token() -> str:
    return f"inb_{secrets.token_urlsafe(24)}"


def new_feed_token() -> str:
    return f"feed_{secrets.token_urlsafe(24)}"


class Calendar(SQLModel, table=True):
    """A calendar owned by one automated client.

    Attributes:
        id: Unique identifier (UUID).
        owner_id: Identity resolved by the auth layer; trusted as-is.
        name: Display name.
        timezone: IANA zone name used as the wall clock for new series.
        webhook_url: Where change notifications are POSTed, if anywhere.
        webhook_secret: Shared secret used to sign notification payloads.
        inbound_token: Unguessable token identifying this calendar on the
            inbound message route.
        feed_token: Secret query parameter that unlocks the read-only
            iCalendar feed.
        events: Events owned by this calendar. Deleting the calendar
            deletes them.
    """
    id: UUID = Field(default_factory=uuid4, primary_key=True)
    owner_id: str = Field(index=True)
    name: str
    timezone: str = Field(default="UTC")
    webhook_url: str | None = None
    webhook_secret: str | None = None
    inbound_token: str = Field(default_factory=new_inbound_token, unique=True, index=True)
    feed_token: str = Field(default_factory=new_feed_token, unique=True)
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    events: list["Event"] = Relationship(
        back_populates="calendar",
        sa_relationship_kwargs={"passive_deletes": "all"},
    )
