"""FastAPI application setup for the DansGaming staff portal API.

This module creates and configures the FastAPI application with lifespan
management for the database and the shared Discord services, middleware,
exception handlers and routing.
"""

from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException

from dansgaming import __version__
from dansgaming.shared.config import configure_logging, get_settings
from dansgaming.shared.database import close_database, init_database
from dansgaming.web.api.limiter import limiter
from dansgaming.web.api.routers.discord_auth import router as discord_auth_router
from dansgaming.web.api.routers.discord_stats import router as discord_stats_router
from dansgaming.web.api.routers.staff import router as staff_router
from dansgaming.web.api.routers.staff_documents import router as staff_documents_router
from dansgaming.web.api.schemas import (
    ErrorDetail,
    ErrorResponse,
    RateLimitErrorResponse,
    ValidationErrorResponse,
)
from dansgaming.web.crud import (
    ConflictError,
    DatabaseOperationError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from dansgaming.web.discord import (
    DiscordAPIError,
    DiscordClient,
    DiscordConfigurationError,
    DiscordPermissionError,
    DiscordRateLimitError,
)
from dansgaming.web.discord_oauth import DiscordOAuth
from dansgaming.web.member_cache import GuildMemberCache
from dansgaming.web.roles import RoleMapping
from dansgaming.web.roster import KeyedLocks
from dansgaming.web.security_headers import SecurityHeadersMiddleware

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Manage FastAPI application lifespan.

    Opens the database and builds the process-wide Discord client, member
    cache and role mapping; closes them on shutdown. Without a bot token or
    guild id the client and cache are left unset and Discord-backed
    endpoints answer with a configuration error.

    Args:
        app: FastAPI application instance

    Yields:
        None: Control to the application
    """
    settings = get_settings()
    configure_logging(settings)

    discord_client = None
    discord_oauth = DiscordOAuth.from_settings(settings)

    try:
        await init_database()

        app.state.settings = settings
        app.state.role_mapping = RoleMapping.from_settings(settings)
        app.state.roster_locks = KeyedLocks()
        app.state.discord_oauth = discord_oauth

        if settings.discord_bot_token:
            discord_client = DiscordClient.from_settings(settings)
        app.state.discord_client = discord_client

        if discord_client is not None and settings.discord_guild_id:
            app.state.member_cache = GuildMemberCache(
                discord_client, settings.discord_guild_id, ttl=settings.member_cache_ttl
            )
        else:
            app.state.member_cache = None
            logger.warning(
                f"Discord not configured, missing: {', '.join(settings.missing_discord_config())}"
            )

        yield

    finally:
        if discord_client is not None:
            await discord_client.aclose()
        await discord_oauth.aclose()
        await close_database()


settings = get_settings()

api = FastAPI(
    title="DansGaming Staff API",
    description="Staff roster, Discord sign-in and staff knowledge base",
    version=__version__,
    lifespan=lifespan,
)

api.state.limiter = limiter
api.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


# Request ID middleware
@api.middleware("http")
async def add_request_id_middleware(request: Request, call_next):
    """Add request ID to request state for tracking."""
    request_id = request.headers.get("x-request-id", str(uuid.uuid4()))
    request.state.request_id = request_id

    response = await call_next(request)

    response.headers["x-request-id"] = request_id
    return response


api.add_middleware(SlowAPIMiddleware)

api.add_middleware(SecurityHeadersMiddleware)

# Add CORS middleware for development (after security headers)
if settings.is_development:
    api.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", str(uuid.uuid4()))


def _error_response(
    request: Request, status_code: int, error: str, error_type: str, **extra
) -> JSONResponse:
    body = ErrorResponse(
        error=error,
        type=error_type,
        timestamp=datetime.now(timezone.utc),
        request_id=_request_id(request),
    ).model_dump(mode="json")
    body.update(extra)
    return JSONResponse(status_code=status_code, content=body)


def _log_extra(request: Request, exc: Exception) -> dict:
    return {
        "request_id": _request_id(request),
        "url": str(request.url),
        "method": request.method,
        "error": str(exc),
    }


# Exception handlers
@api.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Handle Pydantic validation errors as 400 responses.

    Args:
        request: FastAPI request object
        exc: Validation exception

    Returns:
        JSONResponse: Formatted validation error response
    """
    request_id = _request_id(request)

    errors = []
    for error in exc.errors():
        field_path = " -> ".join(str(loc) for loc in error["loc"])
        errors.append(
            ErrorDetail(code=error["type"], message=error["msg"], field=field_path)
        )

    logger.warning(
        "Validation error",
        extra={
            "request_id": request_id,
            "url": str(request.url),
            "method": request.method,
            "errors": [error.model_dump() for error in errors],
        },
    )

    response = ValidationErrorResponse(
        error="Request validation failed",
        type="validation_error",
        errors=errors,
        timestamp=datetime.now(timezone.utc),
        request_id=request_id,
    )

    return JSONResponse(status_code=400, content=response.model_dump(mode="json"))


@api.exception_handler(StarletteHTTPException)
async def http_exception_handler(
    request: Request, exc: StarletteHTTPException
) -> JSONResponse:
    """Render ``HTTPException`` as ``{"error": detail}``.

    A dict ``detail`` is returned as the body unchanged.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(
            status_code=exc.status_code, content=exc.detail, headers=exc.headers
        )
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": str(exc.detail)},
        headers=exc.headers,
    )


@api.exception_handler(NotFoundError)
async def not_found_exception_handler(
    request: Request, exc: NotFoundError
) -> JSONResponse:
    logger.info("Resource not found", extra=_log_extra(request, exc))
    return _error_response(request, 404, str(exc), "not_found_error")


@api.exception_handler(ConflictError)
async def conflict_exception_handler(
    request: Request, exc: ConflictError
) -> JSONResponse:
    logger.warning("Conflict error", extra=_log_extra(request, exc))
    return _error_response(request, 409, str(exc), "conflict_error")


@api.exception_handler(ValidationError)
async def business_validation_exception_handler(
    request: Request, exc: ValidationError
) -> JSONResponse:
    logger.info("Rejected invalid input", extra=_log_extra(request, exc))
    return _error_response(request, 400, str(exc), "validation_error")


@api.exception_handler(PermissionDeniedError)
async def permission_denied_exception_handler(
    request: Request, exc: PermissionDeniedError
) -> JSONResponse:
    logger.info("Permission denied", extra=_log_extra(request, exc))
    return _error_response(request, 403, str(exc), "permission_error")


@api.exception_handler(DatabaseOperationError)
async def database_exception_handler(
    request: Request, exc: DatabaseOperationError
) -> JSONResponse:
    """Handle DatabaseOperationError exceptions.

    Args:
        request: FastAPI request object
        exc: DatabaseOperationError exception

    Returns:
        JSONResponse: 500 error response
    """
    logger.error(f"Database operation error: {exc}", extra=_log_extra(request, exc))

    # Don't expose internal database errors in production
    if settings.verbose_errors_enabled and settings.is_development:
        detail = f"Database error: {str(exc)}"
    else:
        detail = "Internal server error"

    return _error_response(request, 500, detail, "database_error")


@api.exception_handler(DiscordRateLimitError)
async def discord_rate_limit_exception_handler(
    request: Request, exc: DiscordRateLimitError
) -> JSONResponse:
    logger.warning(
        f"Discord rate limit surfaced to client, retry after {exc.retry_after}s",
        extra=_log_extra(request, exc),
    )
    body = RateLimitErrorResponse.for_retry_after(exc.retry_after, _request_id(request))
    return JSONResponse(status_code=429, content=body.model_dump(mode="json"))


@api.exception_handler(DiscordPermissionError)
async def discord_permission_exception_handler(
    request: Request, exc: DiscordPermissionError
) -> JSONResponse:
    logger.error("Discord bot permissions error", extra=_log_extra(request, exc))
    return _error_response(
        request,
        500,
        "Discord bot permissions error. Please check bot configuration.",
        "discord_permission_error",
        details="Bot needs Server Members Intent, View Server Members and Manage Roles permissions",
    )


@api.exception_handler(DiscordConfigurationError)
async def discord_configuration_exception_handler(
    request: Request, exc: DiscordConfigurationError
) -> JSONResponse:
    logger.error("Discord configuration missing", extra=_log_extra(request, exc))
    return _error_response(
        request, 500, "Discord configuration missing", "configuration_error", missing=exc.missing
    )


@api.exception_handler(DiscordAPIError)
async def discord_api_exception_handler(
    request: Request, exc: DiscordAPIError
) -> JSONResponse:
    logger.error(f"Discord API error {exc.status}", extra=_log_extra(request, exc))
    return _error_response(
        request, 502, "Discord API request failed", "discord_api_error", status=exc.status
    )


@api.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unexpected exceptions globally.

    Args:
        request: FastAPI request object
        exc: Exception that was raised

    Returns:
        JSONResponse: Error response
    """
    logger.exception(
        "Unhandled exception",
        extra={
            "request_id": _request_id(request),
            "url": str(request.url),
            "method": request.method,
            "exception_type": type(exc).__name__,
        },
    )

    # Don't expose internal error details in production
    if settings.verbose_errors_enabled and settings.is_development:
        detail = f"Internal server error: {str(exc)}"
    else:
        detail = "Internal server error"

    return _error_response(request, 500, detail, "internal_error")


# Include routers
api.include_router(discord_auth_router)

api.include_router(staff_router)

api.include_router(staff_documents_router)

api.include_router(discord_stats_router)


# Health check endpoint
@api.get("/health", tags=["Health"])
async def health_check() -> dict[str, str]:
    """Health check endpoint for monitoring.

    Returns:
        dict: Health status
    """
    return {"status": "healthy", "version": __version__}
