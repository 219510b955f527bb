"""
FastAPI application entry point.
"""

import asyncio
import uuid
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

import callbridge.calls.models  # noqa: F401
import callbridge.permissions.models  # noqa: F401
from callbridge.calls.lifecycle import CallLifecycleManager
from callbridge.calls.router import router as calls_router
from callbridge.config import Settings, get_settings
from callbridge.correlation.correlator import EventCorrelator
from callbridge.crm import build_crm
from callbridge.messaging import build_messaging_provider
from callbridge.notifications.fanout import NotificationFanout
from callbridge.notifications.router import router as notifications_router
from callbridge.permissions.ledger import PermissionLedger, run_expiry_sweeper
from callbridge.permissions.router import router as permissions_router
from callbridge.shared.database import get_database_manager
from callbridge.shared.exceptions import (
    AppException,
    CallNotFoundError,
    CollaboratorError,
    DuplicateExternalIdError,
    NoPendingRequestError,
    PermissionRequiredError,
    RateLimitedError,
    ValidationError,
)
from callbridge.shared.locks import EntityLockRegistry
from callbridge.shared.logging import correlation_id_var, get_logger, setup_logging
from callbridge.telephony.factory import build_telephony_provider, get_telephony_config
from callbridge.telephony.webhooks.parser import IDEMPOTENCY_HEADER
from callbridge.telephony.webhooks.router import router as webhooks_router

logger = get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"

# HTTP status for each domain error. Lookup walks the exception's MRO.
ERROR_STATUS: dict[type[AppException], int] = {
    ValidationError: status.HTTP_400_BAD_REQUEST,
    CallNotFoundError: status.HTTP_404_NOT_FOUND,
    PermissionRequiredError: status.HTTP_403_FORBIDDEN,
    RateLimitedError: status.HTTP_429_TOO_MANY_REQUESTS,
    DuplicateExternalIdError: status.HTTP_409_CONFLICT,
    NoPendingRequestError: status.HTTP_404_NOT_FOUND,
    CollaboratorError: status.HTTP_502_BAD_GATEWAY,
}


def build_services(app: FastAPI, settings: Settings) -> None:
    """Wire the domain services onto ``app.state``."""
    db = get_database_manager()
    telephony_config = get_telephony_config()
    locks = EntityLockRegistry()

    fanout = NotificationFanout(
        max_observers=settings.fanout_max_observers,
        queue_size=settings.fanout_queue_size,
    )
    telephony = build_telephony_provider(telephony_config)
    messaging = build_messaging_provider()
    crm = build_crm()

    ledger = PermissionLedger(db.session_factory, locks, messaging, settings)
    lifecycle = CallLifecycleManager(
        db.session_factory,
        locks,
        ledger,
        telephony,
        fanout,
        telephony_config,
        contact_resolver=crm,
        crm=crm,
        settings=settings,
    )

    app.state.db = db
    app.state.fanout = fanout
    app.state.telephony = telephony
    app.state.telephony_config = telephony_config
    app.state.messaging = messaging
    app.state.crm = crm
    app.state.ledger = ledger
    app.state.lifecycle = lifecycle
    app.state.correlator = EventCorrelator(db.session_factory, locks, lifecycle, ledger, fanout)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager."""
    setup_logging()
    settings = get_settings()

    logger.info("Application starting", extra={"env": settings.app_env})

    build_services(app, settings)
    if settings.auto_create_schema:
        await app.state.db.create_all()
        logger.info("Database schema ensured")

    sweeper_task: asyncio.Task[None] | None = None
    if settings.expiry_sweep_enabled:
        sweeper_task = asyncio.create_task(
            run_expiry_sweeper(app.state.ledger, settings.expiry_sweep_interval_seconds)
        )
        logger.info("Permission expiry sweeper enabled; background task created")

    yield

    logger.info("Shutting down application")

    if sweeper_task is not None:
        sweeper_task.cancel()
        try:
            await sweeper_task
        except asyncio.CancelledError:
            pass
        logger.info("Permission expiry sweeper stopped")

    await app.state.fanout.close()
    await app.state.telephony.close()
    await app.state.messaging.close()
    await app.state.crm.close()
    await app.state.db.close()
    logger.info("Application shutdown complete")


def _error_body(exc: AppException) -> dict[str, Any]:
    return {
        "detail": {
            "code": exc.code,
            "message": exc.message,
            "details": exc.details,
        }
    }


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="callbridge API",
        description="Consent-gated business voice calls bridged to agents",
        version="0.1.0",
        lifespan=lifespan,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
    )

    # Map domain exceptions to HTTP responses
    @app.exception_handler(AppException)
    async def _app_exception(_: Request, exc: AppException) -> JSONResponse:
        status_code = next(
            (ERROR_STATUS[cls] for cls in type(exc).__mro__ if cls in ERROR_STATUS),
            status.HTTP_500_INTERNAL_SERVER_ERROR,
        )
        headers: dict[str, str] = {}

        if isinstance(exc, CollaboratorError):
            # Provider responses stay in the logs.
            logger.error(
                "Collaborator request failed",
                extra={
                    "error": exc.message,
                    "error_code": exc.error_code,
                    "provider_response": exc.provider_response,
                },
            )
            body = {
                "detail": {
                    "code": "COLLABORATOR_ERROR",
                    "message": "Upstream provider request failed",
                    "details": {k: v for k, v in exc.details.items() if k == "call_id"},
                }
            }
            return JSONResponse(status_code=status_code, content=body)

        if isinstance(exc, RateLimitedError) and exc.retry_after_seconds is not None:
            headers["Retry-After"] = str(exc.retry_after_seconds)

        return JSONResponse(status_code=status_code, content=_error_body(exc), headers=headers)

    # Request validation (FastAPI/Pydantic) -> consistent 422 payload
    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        request: Request,
        exc: RequestValidationError,
    ) -> JSONResponse:
        errors = []
        for error in exc.errors():
            field = ".".join(str(loc) for loc in error["loc"])
            errors.append(
                {
                    "field": field,
                    "message": error["msg"],
                    "type": error["type"],
                }
            )
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={
                "detail": {
                    "code": "VALIDATION_ERROR",
                    "message": "Request validation failed",
                    "errors": errors,
                }
            },
        )

    @app.middleware("http")
    async def correlation_id_middleware(request: Request, call_next):
        correlation_id = (
            request.headers.get(REQUEST_ID_HEADER)
            or request.headers.get(IDEMPOTENCY_HEADER)
            or str(uuid.uuid4())
        )
        token = correlation_id_var.set(correlation_id)
        try:
            response = await call_next(request)
        finally:
            correlation_id_var.reset(token)
        response.headers[REQUEST_ID_HEADER] = correlation_id
        return response

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Include routers
    app.include_router(calls_router)
    app.include_router(permissions_router)
    app.include_router(webhooks_router)
    app.include_router(notifications_router)

    @app.get("/health")
    async def health_check() -> dict[str, str]:
        return {"status": "healthy"}

    return app


app = create_app()
