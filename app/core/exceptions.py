"""Error taxonomy for the calendar core and its HTTP handlers.

Core code raises these exceptions; ``app.main`` registers the handlers at
the bottom of this module so the transport can tell "your input was
invalid" apart from "something failed on our side".
"""

from fastapi import Request, status
from fastapi.responses import JSONResponse


class CalendarError(Exception):
    """Base class for errors raised by the calendar core."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class InvalidRecurrenceRule(CalendarError):
    """Raised when a recurrence rule cannot be parsed or is unsupported.

    Args:
        token: The rule token that failed (e.g. ``"FREQ"`` or ``"BYDAY"``).
        message: Human-readable explanation.
    """

    def __init__(self, token: str, message: str):
        self.token = token
        super().__init__(f"Invalid recurrence rule ({token}): {message}")


class InvalidEventData(CalendarError):
    """Raised when a create or patch request is invalid for the target event."""


class NotFound(CalendarError):
    """Raised when an event or calendar does not exist for the caller."""

    def __init__(self, what: str = "Event"):
        super().__init__(f"{what} not found")


class ConflictIgnored(CalendarError):
    """An insert hit an existing row; treated as already done, never surfaced."""


class StoreUnavailable(CalendarError):
    """Transient storage failure. Callers may retry."""


class NotificationDeliveryFailed(CalendarError):
    """A webhook could not be delivered. Logged only, never surfaced."""


class InboundParseError(CalendarError):
    """An inbound message could not be decoded into an event."""


# Exception Handlers


async def invalid_input_handler(request: Request, exc: CalendarError):
    """Return a 400 for rule and event validation failures."""
    content = {"error": "invalid_input", "detail": exc.message}
    if isinstance(exc, InvalidRecurrenceRule):
        content["token"] = exc.token
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content=content)


async def not_found_handler(request: Request, exc: NotFound):
    """Return a 404 for missing events and calendars."""
    return JSONResponse(
        status_code=status.HTTP_404_NOT_FOUND,
        content={"error": "not_found", "detail": exc.message},
    )


async def store_unavailable_handler(request: Request, exc: StoreUnavailable):
    """Return a 503 so clients know the failure is on our side and retryable."""
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"error": "store_unavailable", "detail": exc.message, "retryable": True},
    )
