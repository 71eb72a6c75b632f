"""Agent Calendar service."""
import logging
from concurrent.futures import ThreadPoolExecutor
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.calendar.notifier import Notifier
from app.core.config import settings
from app.core.database import create_db_and_tables, engine
from app.core.exceptions import (
    InvalidEventData,
    InvalidRecurrenceRule,
    NotFound,
    StoreUnavailable,
    invalid_input_handler,
    not_found_handler,
    store_unavailable_handler,
)
from app.core.scheduler import HorizonScheduler
from app.routes import calendars, events, feeds, inbound

# Configure logging
log_dir = Path.home() / ".logs" / "agent_calendar"
log_dir.mkdir(parents=True, exist_ok=True)
log_file = log_dir / "latest.log"

logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    filename=str(log_file),
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown lifecycle."""
    # Startup
    logger.info("Starting Agent Calendar")
    create_db_and_tables()
    executor = ThreadPoolExecutor(
        max_workers=settings.webhook_max_workers, thread_name_prefix="webhook"
    )
    app.state.webhook_executor = executor
    scheduler = HorizonScheduler(engine, notifier_factory=lambda: Notifier(executor=executor))
    scheduler.start()
    yield
    # Shutdown
    scheduler.stop()
    executor.shutdown(wait=True)
    logger.info("Agent Calendar shut down")


app = FastAPI(
    title=settings.app_name,
    description="Calendar service for automated agents: recurring series, scoped deletes, signed webhooks and inbound invitations",
    version="0.1.0",
    lifespan=lifespan,
)

# Configure CORS for external access
origins = (
    ["*"]
    if settings.allowed_origins == "*"
    else [o.strip() for o in settings.allowed_origins.split(",")]
)
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Exception handlers
app.add_exception_handler(InvalidRecurrenceRule, invalid_input_handler)
app.add_exception_handler(InvalidEventData, invalid_input_handler)
app.add_exception_handler(NotFound, not_found_handler)
app.add_exception_handler(StoreUnavailable, store_unavailable_handler)

# Include routers
app.include_router(calendars.router)
app.include_router(events.router)
app.include_router(inbound.router)
app.include_router(feeds.router)


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {"status": "healthy", "app": settings.app_name}
