"""Persistence boundary for instance rows.

The core needs only two things from the relational store: reading the
instances a series already has, and inserting new ones with insert-or-ignore
semantics on the ``(parent_id, occurrence_key)`` unique constraint. Both the
request path and the horizon scheduler go through here, so two writers
racing on the same series can never create the same occurrence twice.
"""
import logging
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import date
from uuid import UUID

from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import OperationalError
from sqlmodel import Session, select

from app.core.exceptions import StoreUnavailable
from app.models import Event, EventStatus

logger = logging.getLogger(__name__)

# Rows per INSERT statement; keeps bound parameters under SQLite's limit
INSERT_BATCH_SIZE = 40

_DIALECT_INSERTS = {
    "sqlite": sqlite_insert,
    "postgresql": postgresql_insert,
}


@contextmanager
def store_errors() -> Iterator[None]:
    """Translate driver-level outages into :class:`StoreUnavailable`."""
    try:
        yield
    except OperationalError as e:
        logger.error(f"Store operation failed: {e}")
        raise StoreUnavailable("The event store is temporarily unavailable") from e


def existing_occurrence_keys(session: Session, parent_id: UUID) -> set[date]:
    """Occurrence keys already taken for a series, cancelled rows included.

    A cancelled instance still occupies its key, so it is never re-created.
    """
    statement = select(Event.occurrence_key).where(Event.parent_id == parent_id)
    with store_errors():
        return set(session.exec(statement).all())


def series_instances(session: Session, parent_id: UUID, *, include_cancelled: bool = False):
    """All instances of a series ordered by occurrence date."""
    statement = select(Event).where(Event.parent_id == parent_id)
    if not include_cancelled:
        statement = statement.where(Event.status != EventStatus.CANCELLED)
    with store_errors():
        return session.exec(statement.order_by(Event.occurrence_key)).all()


def series_parent_ids(session: Session) -> list[UUID]:
    """Ids of every series parent, for the horizon scheduler."""
    statement = select(Event.id).where(Event.recurrence_rule.is_not(None))
    with store_errors():
        return list(session.exec(statement).all())


def insert_instances(session: Session, rows: list[dict]) -> list[UUID]:
    """Insert instance rows, skipping any whose occurrence already exists.

    Returns the ids of the rows actually inserted. A skipped row is the
    ``ConflictIgnored`` case: another writer already materialized it.
    """
    if not rows:
        return []
    dialect = session.get_bind().dialect.name
    insert = _DIALECT_INSERTS.get(dialect)
    if insert is None:
        raise NotImplementedError(f"Insert-or-ignore is not implemented for {dialect}")

    inserted: list[UUID] = []
    with store_errors():
        for i in range(0, len(rows), INSERT_BATCH_SIZE):
            batch = rows[i:i + INSERT_BATCH_SIZE]
            statement = (
                insert(Event)
                .values(batch)
                .on_conflict_do_nothing(index_elements=["parent_id", "occurrence_key"])
                .returning(Event.id)
            )
            inserted.extend(session.execute(statement).scalars().all())

    skipped = len(rows) - len(inserted)
    if skipped:
        logger.debug(f"Skipped {skipped} already-materialized occurrences")
    return inserted
