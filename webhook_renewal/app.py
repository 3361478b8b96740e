"""
FastAPI application factory for the webhook renewal service.

This module builds the app with routers, request-id middleware, error
handlers and a lifespan that owns the service container and the renewal
engine. All configuration is loaded from environment variables via the config
module.
"""

import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

import structlog
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from webhook_renewal.config import Settings, get_settings
from webhook_renewal.db import database
from webhook_renewal.dependencies import ServiceContainer, build_container
from webhook_renewal.errors import (
    AuthExpiredError,
    PersistenceError,
    ProviderRejectedError,
    RenewalServiceError,
    TokenExchangeError,
    TransientNetworkError,
)
from webhook_renewal.routers import (
    auth,
    health,
    messages,
    renewal,
    subscriptions,
    webhook,
)
from webhook_renewal.utils.logging import configure_logging

logger = structlog.get_logger(__name__)


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", "unknown")


def _service_error_response(
    request: Request, exc: RenewalServiceError
) -> JSONResponse:
    """Map the error taxonomy onto HTTP status codes and a structured body."""
    body: Dict[str, Any] = {
        "success": False,
        "message": str(exc),
        "reauthenticate": False,
        "requestId": _request_id(request),
    }

    if isinstance(exc, AuthExpiredError):
        status_code = status.HTTP_401_UNAUTHORIZED
        body["error"] = "AUTH-EXPIRED"
        body["reauthenticate"] = True
    elif isinstance(exc, ProviderRejectedError):
        status_code = status.HTTP_502_BAD_GATEWAY
        body["error"] = "PROVIDER-REJECTED"
        body["providerCode"] = exc.code
        body["providerStatus"] = exc.status_code
    elif isinstance(exc, TransientNetworkError):
        status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        body["error"] = "PROVIDER-UNAVAILABLE"
    elif isinstance(exc, TokenExchangeError):
        status_code = status.HTTP_400_BAD_REQUEST
        body["error"] = "AUTH-EXCHANGE-FAIL"
    elif isinstance(exc, PersistenceError):
        status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
        body["error"] = "STORAGE-FAILURE"
        body["message"] = "Storage is unavailable"
    else:
        status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
        body["error"] = "APP-500-INTERNAL"

    logger.warning(
        "Request failed",
        path=request.url.path,
        error=body["error"],
        error_type=type(exc).__name__,
        status_code=status_code,
        request_id=body["requestId"],
    )
    return JSONResponse(status_code=status_code, content=body)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Startup: open the database (when configured), build the service container,
    start the renewal engine. Shutdown: stop the engine, close HTTP clients and
    the database.
    """
    settings: Settings = app.state.settings

    logger.info(
        f"Starting {settings.app_name}",
        version=settings.app_version,
        environment=settings.app_env,
    )
    settings.log_config()

    owns_database = False
    container: Optional[ServiceContainer] = getattr(app.state, "container", None)
    if container is None:
        if settings.database_url:
            await database.on_startup(settings)
            owns_database = True
        container = build_container(settings)
        app.state.container = container

    if settings.renewal_enabled:
        await container.renewal_engine.start()

    yield

    logger.info(f"Shutting down {settings.app_name}...")
    await container.aclose()
    if owns_database:
        await database.on_shutdown()


def create_app(
    settings: Optional[Settings] = None,
    container: Optional[ServiceContainer] = None,
) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        settings: Settings override (defaults to the environment)
        container: Prebuilt services, used by tests to inject stubs
    """
    settings = settings or get_settings()
    configure_logging(settings.log_level, settings.app_env, settings.app_version)

    app = FastAPI(
        title=settings.app_name,
        description="Keeps Microsoft Graph mail subscriptions alive by renewing them before they expire",
        version=settings.app_version,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )
    app.state.settings = settings
    app.state.container = container

    @app.middleware("http")
    async def add_request_id(request: Request, call_next):
        """Attach a request id for tracing across logs."""
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
        request.state.request_id = request_id

        start_time = time.time()
        with structlog.contextvars.bound_contextvars(request_id=request_id):
            response = await call_next(request)

        response.headers["X-Request-ID"] = request_id
        response.headers["X-Response-Time"] = f"{(time.time() - start_time) * 1000:.2f}ms"
        return response

    @app.exception_handler(RenewalServiceError)
    async def service_error_handler(
        request: Request, exc: RenewalServiceError
    ) -> JSONResponse:
        return _service_error_response(request, exc)

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(
        request: Request, exc: StarletteHTTPException
    ) -> JSONResponse:
        error_code_map = {
            400: "APP-400-VALIDATION",
            401: "APP-401-AUTH",
            403: "APP-403-FORBIDDEN",
            404: "APP-404-NOT-FOUND",
            405: "APP-405-METHOD",
            503: "APP-503-UNAVAILABLE",
        }

        return JSONResponse(
            status_code=exc.status_code,
            content={
                "success": False,
                "error": error_code_map.get(exc.status_code, f"APP-{exc.status_code}"),
                "message": exc.detail,
                "reauthenticate": exc.status_code == status.HTTP_401_UNAUTHORIZED,
                "requestId": _request_id(request),
            },
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        errors = [
            {
                "field": ".".join(str(loc) for loc in error["loc"]),
                "message": error["msg"],
                "type": error["type"],
            }
            for error in exc.errors()
        ]

        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={
                "success": False,
                "error": "APP-400-VALIDATION",
                "message": "Request validation failed",
                "details": errors,
                "requestId": _request_id(request),
            },
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(
        request: Request, exc: Exception
    ) -> JSONResponse:
        logger.exception(
            "Unhandled exception", path=request.url.path, request_id=_request_id(request)
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "success": False,
                "error": "APP-500-INTERNAL",
                "message": "An internal error occurred",
                "requestId": _request_id(request),
            },
        )

    app.include_router(health.router)
    app.include_router(auth.router)
    app.include_router(subscriptions.router)
    app.include_router(messages.router)
    app.include_router(webhook.router)
    app.include_router(renewal.router)

    @app.get("/", include_in_schema=False)
    async def root() -> Dict[str, Any]:
        """Basic service information."""
        return {
            "service": settings.app_name,
            "version": settings.app_version,
            "docs": "/docs",
            "health": "/healthz",
            "login": "/auth/login",
        }

    return app
