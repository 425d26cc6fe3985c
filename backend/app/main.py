import asyncio
import contextlib
from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
import structlog

from app.core.config import settings
from app.core.logging import setup_logging
from app.core.exceptions import (
    global_exception_handler,
    http_exception_handler,
    validation_exception_handler,
)

# Setup Logging
setup_logging()
logger = structlog.get_logger()


def build_relay():
    from app.db.session import AsyncSessionLocal
    from app.services.directory import SqlDirectory
    from app.services.notification_service import NotificationDispatcher
    from app.services.pending_calls import PendingCallBuffer
    from app.services.relay_engine import RelayEngine
    from app.services.session_store import SqlSessionStore

    return RelayEngine(
        store=SqlSessionStore(AsyncSessionLocal),
        directory=SqlDirectory(AsyncSessionLocal),
        dispatcher=NotificationDispatcher(),
        pending_calls=PendingCallBuffer(ttl_seconds=settings.PENDING_CALL_TTL_SECONDS),
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Builds the relay unless one was installed on app.state beforehand (tests).
    """
    if getattr(app.state, "relay", None) is None:
        if settings.AUTO_CREATE_TABLES:
            from app.db.init_db import create_tables
            from app.db.session import engine
            await create_tables(engine)
        app.state.relay = build_relay()

    relay = app.state.relay
    sweeper = asyncio.create_task(relay.sweep_pending_calls(settings.PENDING_CALL_SWEEP_SECONDS))
    logger.info("startup", project=settings.PROJECT_NAME, environment=settings.ENVIRONMENT)
    yield
    sweeper.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await sweeper
    await relay.drain()
    logger.info("shutdown")

app = FastAPI(
    title=settings.PROJECT_NAME,
    version="1.0.0",
    description="Scanner/owner chat and call relay",
    lifespan=lifespan,
    docs_url=f"{settings.API_V1_STR}/docs",
    openapi_url=f"{settings.API_V1_STR}/openapi.json",
)

# Middleware: CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=False,  # MUST be False when using wildcard origins
    allow_methods=["*"],
    allow_headers=["*"],
)

# Exception Handlers
app.add_exception_handler(Exception, global_exception_handler)
app.add_exception_handler(StarletteHTTPException, http_exception_handler)
app.add_exception_handler(RequestValidationError, validation_exception_handler)

# Health Check
@app.get("/health", tags=["system"])
async def health_check():
    return {"status": "ok", "environment": settings.ENVIRONMENT}


from app.api.v1 import interactions, realtime

app.include_router(realtime.router, tags=["realtime"])
app.include_router(interactions.router, prefix=f"{settings.API_V1_STR}/interactions", tags=["interactions"])

if __name__ == "__main__":
    import uvicorn
    uvicorn.run("app.main:app", host="0.0.0.0", port=8000, reload=True)
