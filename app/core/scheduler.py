"""Background horizon extension for recurring series."""
import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.engine import Engine
from sqlmodel import Session

from app.calendar.materializer import materialize
from app.calendar.notifier import Notifier
from app.calendar.store import series_parent_ids
from app.core.clock import Clock, utcnow
from app.core.config import settings
from app.models import Event

logger = logging.getLogger(__name__)

JOB_ID = "horizon_extension"


class HorizonScheduler:
    """Keeps every series materialized up to ``now + window``.

    Runs one pass as soon as it starts, then one every ``interval``. Each
    series is materialized in its own transaction; a failure for one series
    is logged and the pass moves on. A failed pass is retried on the next
    tick.

    Args:
        engine: Engine shared with the request handlers.
        clock: Source of "now". Injected so passes are reproducible in tests.
        interval: Time between passes.
        notifier_factory: Builds a :class:`Notifier` per series so newly
            created instances are announced. ``None`` disables notifications.
    """

    def __init__(
        self,
        engine: Engine,
        clock: Clock = utcnow,
        interval: timedelta | None = None,
        notifier_factory: Callable[[], Notifier] | None = None,
    ):
        self.engine = engine
        self.clock = clock
        self.interval = interval or timedelta(minutes=settings.horizon_interval_minutes)
        self.notifier_factory = notifier_factory
        self._scheduler: AsyncIOScheduler | None = None

    def run_once(self) -> dict:
        """Extend the horizon of every series once. Never raises."""
        stats = {"parents": 0, "created": 0, "failed": 0}
        now = self.clock()
        try:
            with Session(self.engine) as session:
                parent_ids = series_parent_ids(session)
        except Exception as e:
            logger.error(f"Horizon extension could not list series, retrying next tick: {e}")
            return stats

        for parent_id in parent_ids:
            stats["parents"] += 1
            notifier = self.notifier_factory() if self.notifier_factory else None
            try:
                with Session(self.engine) as session:
                    parent = session.get(Event, parent_id)
                    if parent is None:
                        continue  # deleted since the listing
                    window = timedelta(days=parent.horizon_days or settings.materialize_window_days)
                    stats["created"] += materialize(
                        session, parent, now + window, notifier, window_start=now
                    )
                    session.commit()
                    if notifier is not None:
                        notifier.flush(session)
            except Exception as e:
                stats["failed"] += 1
                if notifier is not None:
                    notifier.discard()
                logger.exception(f"Horizon extension failed for series {parent_id}: {e}")

        logger.info(f"Horizon extension completed: {stats}")
        return stats

    def start(self) -> None:
        """Schedule the job and run the first pass immediately."""
        if self._scheduler is not None:
            return
        self._scheduler = AsyncIOScheduler()
        self._scheduler.add_job(
            self.run_once,
            trigger=IntervalTrigger(seconds=self.interval.total_seconds()),
            id=JOB_ID,
            replace_existing=True,
            next_run_time=datetime.now(UTC),
            max_instances=1,
            coalesce=True,
        )
        self._scheduler.start()
        logger.info(f"Horizon scheduler started, extending every {self.interval}")

    def stop(self) -> None:
        """Graceful shutdown."""
        if self._scheduler is None:
            return
        self._scheduler.shutdown(wait=False)
        self._scheduler = None
        logger.info("Horizon scheduler shut down")

    @property
    def running(self) -> bool:
        return self._scheduler is not None
