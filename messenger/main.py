import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles

from messenger.api.common import APIResponse
from messenger.api.routes import conversations, messages, notifications, realtime
from messenger.auth_config import auth_backend, fastapi_users
from messenger.core.config import settings
from messenger.core.expiring_keys import ExpiringKeySet
from messenger.db import check_database_health, get_db_session
from messenger.realtime.gateway import RealtimeGateway
from messenger.schemas.user import UserCreate, UserRead, UserUpdate
from messenger.services.media_store import build_media_store
from messenger.services.migration_service import run_migrations
from messenger.services.notification_service import NotificationDispatcher

logging.basicConfig(level=settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup and shutdown events."""
    logger.info("Starting application...")
    try:
        if settings.RUN_MIGRATIONS:
            await run_migrations()
        await check_database_health()
        logger.info("Database health check passed - application ready")
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        logger.error("Application startup aborted due to database issues")
        raise

    gateway = RealtimeGateway()
    gateway.init()
    # Background notification work follows dependency overrides, like requests do
    session_factory = app.dependency_overrides.get(get_db_session, get_db_session)
    dispatcher = NotificationDispatcher(
        session_factory,
        gateway=gateway,
        recent_pushes=ExpiringKeySet(settings.NOTIFICATION_DEDUP_SECONDS),
    )
    app.state.gateway = gateway
    app.state.notification_dispatcher = dispatcher
    media_store = build_media_store(settings)
    app.state.media_store = media_store

    yield

    logger.info("Application shutting down...")
    await dispatcher.shutdown()
    await gateway.shutdown()
    await media_store.close()


app = FastAPI(title="Messenger", lifespan=lifespan)


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    """Renders HTTP errors in the same envelope as successful responses."""
    if isinstance(exc.detail, str):
        return APIResponse.error(exc.detail, status_code=exc.status_code)
    # Structured details, such as fastapi-users password errors, are kept as they are
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


app.include_router(
    fastapi_users.get_auth_router(auth_backend), prefix="/auth/jwt", tags=["auth"]
)
app.include_router(
    fastapi_users.get_register_router(UserRead, UserCreate),
    prefix="/auth",
    tags=["auth"],
)
app.include_router(
    fastapi_users.get_users_router(UserRead, UserUpdate),
    prefix="/users",
    tags=["users"],
)
app.include_router(conversations.conversations_router_instance)
app.include_router(messages.messages_router_instance)
app.include_router(notifications.notifications_router_instance)
app.include_router(realtime.realtime_router_instance, tags=["realtime"])

if settings.MEDIA_BACKEND == "local":
    Path(settings.MEDIA_ROOT).mkdir(parents=True, exist_ok=True)
    app.mount(
        settings.MEDIA_BASE_URL,
        StaticFiles(directory=settings.MEDIA_ROOT),
        name="media",
    )


@app.get("/health")
async def health_check():
    """Health check endpoint for Docker and load balancers."""
    return {"status": "healthy", "timestamp": datetime.now(timezone.utc).isoformat()}
