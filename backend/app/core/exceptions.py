import enum

from fastapi import Request, status
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
import structlog

logger = structlog.get_logger()


class RelayErrorKind(str, enum.Enum):
    """
    Error kinds reported to a socket caller in an `error` event.
    """
    NOT_FOUND = "NotFound"
    SESSION_CLOSED = "SessionClosed"
    BLOCKED = "Blocked"
    DELIVERY_FAILURE = "DeliveryFailure"
    PERSISTENCE_FAILURE = "PersistenceFailure"
    INVALID_PAYLOAD = "InvalidPayload"
    UNKNOWN_EVENT = "UnknownEvent"
    INTERNAL = "InternalError"


class SessionStoreError(Exception):
    """Raised by a session store when a read or write could not be completed."""


class SessionNotFoundError(SessionStoreError):
    def __init__(self, session_id: str):
        super().__init__(f"Interaction not found: {session_id}")
        self.session_id = session_id


async def global_exception_handler(request: Request, exc: Exception):
    """
    Catch-all for unhandled exceptions.
    Prevents stack trace leakage in production.
    """
    logger.error("unhandled_exception", error=str(exc), path=request.url.path)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "An unexpected error occurred."},
    )

async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail},
    )

async def validation_exception_handler(request: Request, exc: RequestValidationError):
    logger.warning("validation_error", errors=exc.errors(), path=request.url.path)
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"detail": "Validation error", "errors": exc.errors()},
    )
