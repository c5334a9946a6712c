import logging
import uuid
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request

from onboarding_auth.api.auth import router as auth_router
from onboarding_auth.core.config import APP_VERSION, settings
from onboarding_auth.core.errors import (
    HTTPError,
    auth_error_handler,
    configuration_error_handler,
    http_error_handler,
)
from onboarding_auth.core.exceptions import AuthError, ConfigurationError
from onboarding_auth.core.logging import setup_logging
from onboarding_auth.db.session import init_db
from onboarding_auth.services.notification import NotificationDispatcher, create_sender

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application startup and shutdown."""
    # Setup structured logging first
    setup_logging()

    if settings.DATABASE_AUTO_CREATE:
        logger.info("Ensuring database tables exist")
        await init_db()

    logger.info(f"Email provider: {settings.EMAIL_PROVIDER}")

    yield

    # Shutdown
    logger.info("Waiting for pending notifications")
    await app.state.notifier.drain()


def create_app() -> FastAPI:
    app = FastAPI(
        title=settings.APP_NAME,
        version=APP_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
        redirect_slashes=False,
    )
    app.state.notifier = NotificationDispatcher(create_sender())

    # Register custom exception handlers for standardized error responses
    app.add_exception_handler(HTTPError, http_error_handler)
    app.add_exception_handler(AuthError, auth_error_handler)
    app.add_exception_handler(ConfigurationError, configuration_error_handler)

    @app.middleware("http")
    async def add_request_id(request: Request, call_next):
        """Add unique request ID for tracking and debugging."""
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
        request.state.request_id = request_id

        # Bind request_id to all log entries during this request
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=request_id)
        try:
            response = await call_next(request)
        finally:
            structlog.contextvars.clear_contextvars()

        response.headers["X-Request-ID"] = request_id
        return response

    app.include_router(auth_router, prefix="/api")
    return app


app = create_app()
