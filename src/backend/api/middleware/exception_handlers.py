"""
Global exception handlers for Chat Relay API.

Provides centralized error handling with consistent response formatting,
proper logging, and request context integration.
"""

from __future__ import annotations

import traceback

from typing import Any

import asyncpg

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from openai import (
    APIError as OpenAIAPIError,
    AuthenticationError as OpenAIAuthError,
    RateLimitError as OpenAIRateLimitError,
)
from pydantic import ValidationError

from api.middleware.request_context import get_request_context, get_request_id
from core.constants import ACTIVATE_GATEWAY_ERROR_FRAGMENT, get_settings
from models.error_models import (
    ErrorCode,
    ErrorDetail,
    ErrorResponse,
    get_error_message,
    get_status_code,
)
from utils.logger import logger


class AppException(Exception):
    """Base application exception with error code support.

    Use this for business logic errors that should return a specific
    error code and message to the client.

    Example:
        raise AppException(code=ErrorCode.NOT_FOUND_CHAT, details={"chat_id": chat_id})
    """

    def __init__(
        self,
        code: ErrorCode,
        message: str | None = None,
        details: dict[str, Any] | None = None,
        cause: Exception | None = None,
    ):
        self.code = code
        self.message = message or get_error_message(code)
        self.details = details
        self.cause = cause
        super().__init__(self.message)

    @property
    def status_code(self) -> int:
        return get_status_code(self.code)


class BadRequestError(AppException):
    """Malformed input or a known upstream activation failure."""

    def __init__(
        self,
        code: ErrorCode = ErrorCode.BAD_REQUEST_API,
        message: str | None = None,
        details: dict[str, Any] | None = None,
        cause: Exception | None = None,
    ):
        super().__init__(code=code, message=message, details=details, cause=cause)


class UnauthorizedError(AppException):
    """No identity, or an identity that could not be verified."""

    def __init__(self, code: ErrorCode = ErrorCode.UNAUTHORIZED_CHAT, message: str | None = None):
        super().__init__(code=code, message=message)


class ForbiddenError(AppException):
    """Identity lacks ownership or visibility rights."""

    def __init__(self, code: ErrorCode = ErrorCode.FORBIDDEN_CHAT, resource_id: str | None = None):
        super().__init__(code=code, details={"id": resource_id} if resource_id else None)


class NotFoundError(AppException):
    """Chat, stream, message or document is absent."""

    def __init__(self, code: ErrorCode = ErrorCode.NOT_FOUND_CHAT, resource_id: str | None = None):
        super().__init__(code=code, details={"id": resource_id} if resource_id else None)


class RateLimitError(AppException):
    """Daily message quota exceeded."""

    def __init__(self, code: ErrorCode = ErrorCode.RATE_LIMIT_CHAT, limit: int | None = None):
        super().__init__(code=code, details={"limit": limit} if limit is not None else None)


class OfflineError(AppException):
    """Network or unexpected upstream failure before streaming began."""

    def __init__(self, code: ErrorCode = ErrorCode.OFFLINE_CHAT, cause: Exception | None = None):
        super().__init__(code=code, cause=cause)


def translate_upstream_error(exc: Exception) -> AppException:
    """Map an unexpected exception raised before streaming started to the error taxonomy."""
    if isinstance(exc, AppException):
        return exc
    if ACTIVATE_GATEWAY_ERROR_FRAGMENT in str(exc):
        return BadRequestError(code=ErrorCode.BAD_REQUEST_ACTIVATE_GATEWAY, cause=exc)
    return OfflineError(cause=exc)


def _create_error_response(
    code: ErrorCode,
    message: str,
    request: Request | None = None,
    details: list[ErrorDetail] | None = None,
    debug_info: dict[str, Any] | None = None,
) -> ErrorResponse:
    """Create a standardized error response."""
    return ErrorResponse(
        code=code,
        message=message,
        request_id=get_request_id(),
        path=request.url.path if request else None,
        details=details,
        debug=debug_info,
    )


def _log_error(error: Exception, code: ErrorCode, status_code: int) -> None:
    """Log error with appropriate level and context."""
    ctx = get_request_context()
    log_context = ctx.to_log_context() if ctx else {}
    log_context["error_code"] = code.value
    log_context["status_code"] = status_code

    if status_code >= 500:
        logger.error(f"Server error: {code.value} - {error}", exc_info=True, **log_context)
    elif status_code >= 400:
        logger.warning(f"Client error: {code.value} - {error}", **log_context)


def _validation_details(errors: list[Any]) -> list[ErrorDetail]:
    return [
        ErrorDetail(
            field=".".join(str(loc) for loc in error["loc"]),
            message=error["msg"],
            code=error["type"],
        )
        for error in errors
    ]


async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    """Handle application-specific exceptions."""
    status_code = exc.status_code

    settings = get_settings()
    debug_info = None
    if settings.debug:
        debug_info = {
            "exception_type": type(exc).__name__,
            "cause": str(exc.cause) if exc.cause else None,
        }

    details = None
    if exc.details:
        details = [ErrorDetail(message=str(v), field=k) for k, v in exc.details.items()]

    error_response = _create_error_response(
        code=exc.code,
        message=exc.message,
        request=request,
        details=details,
        debug_info=debug_info,
    )

    _log_error(exc, exc.code, status_code)

    return JSONResponse(
        status_code=status_code,
        content=error_response.to_dict(include_debug=settings.debug),
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Handle FastAPI HTTPException with consistent formatting."""
    status_to_code = {
        400: ErrorCode.BAD_REQUEST_API,
        401: ErrorCode.UNAUTHORIZED_AUTH,
        403: ErrorCode.FORBIDDEN_CHAT,
        404: ErrorCode.NOT_FOUND_CHAT,
        429: ErrorCode.RATE_LIMIT_CHAT,
        503: ErrorCode.OFFLINE_CHAT,
    }
    code = status_to_code.get(exc.status_code, ErrorCode.INTERNAL_API)
    message = exc.detail if isinstance(exc.detail, str) else str(exc.detail)

    error_response = _create_error_response(code=code, message=message, request=request)
    _log_error(exc, code, exc.status_code)

    return JSONResponse(status_code=exc.status_code, content=error_response.to_dict())


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Handle request parsing errors as ``bad_request:api``."""
    error_response = _create_error_response(
        code=ErrorCode.BAD_REQUEST_API,
        message=get_error_message(ErrorCode.BAD_REQUEST_API),
        request=request,
        details=_validation_details(list(exc.errors())),
    )
    _log_error(exc, ErrorCode.BAD_REQUEST_API, 400)
    return JSONResponse(status_code=400, content=error_response.to_dict())


async def pydantic_exception_handler(request: Request, exc: ValidationError) -> JSONResponse:
    """Handle Pydantic ValidationError raised outside request parsing."""
    error_response = _create_error_response(
        code=ErrorCode.BAD_REQUEST_API,
        message="Data validation failed",
        request=request,
        details=_validation_details(list(exc.errors())),
    )
    _log_error(exc, ErrorCode.BAD_REQUEST_API, 400)
    return JSONResponse(status_code=400, content=error_response.to_dict())


async def openai_exception_handler(request: Request, exc: OpenAIAPIError) -> JSONResponse:
    """Handle OpenAI API errors that escape before a stream starts."""
    if ACTIVATE_GATEWAY_ERROR_FRAGMENT in str(exc):
        code = ErrorCode.BAD_REQUEST_ACTIVATE_GATEWAY
    elif isinstance(exc, OpenAIRateLimitError):
        code = ErrorCode.RATE_LIMIT_CHAT
    elif isinstance(exc, OpenAIAuthError):
        code = ErrorCode.OFFLINE_CHAT
    else:
        code = ErrorCode.OFFLINE_CHAT
    status_code = get_status_code(code)

    settings = get_settings()
    debug_info = None
    if settings.debug:
        debug_info = {
            "openai_error_type": type(exc).__name__,
            "openai_error_code": getattr(exc, "code", None),
        }

    error_response = _create_error_response(
        code=code,
        message=get_error_message(code),
        request=request,
        debug_info=debug_info,
    )
    _log_error(exc, code, status_code)

    return JSONResponse(
        status_code=status_code,
        content=error_response.to_dict(include_debug=settings.debug),
    )


async def asyncpg_exception_handler(request: Request, exc: asyncpg.PostgresError) -> JSONResponse:
    """Handle PostgreSQL database errors."""
    settings = get_settings()
    debug_info = None
    if settings.debug:
        debug_info = {
            "pg_error_code": getattr(exc, "sqlstate", None),
            "pg_error_class": type(exc).__name__,
        }

    error_response = _create_error_response(
        code=ErrorCode.INTERNAL_DATABASE,
        message=get_error_message(ErrorCode.INTERNAL_DATABASE),
        request=request,
        debug_info=debug_info,
    )
    _log_error(exc, ErrorCode.INTERNAL_DATABASE, 500)

    return JSONResponse(
        status_code=500,
        content=error_response.to_dict(include_debug=settings.debug),
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unexpected exceptions with graceful degradation."""
    settings = get_settings()

    logger.error(
        f"Unhandled exception: {type(exc).__name__}: {exc}",
        exc_info=True,
        request_id=get_request_id(),
        path=request.url.path,
    )

    debug_info = None
    if settings.debug:
        debug_info = {
            "exception_type": type(exc).__name__,
            "exception_message": str(exc),
            "traceback": traceback.format_exc(),
        }

    error_response = _create_error_response(
        code=ErrorCode.INTERNAL_API,
        message=get_error_message(ErrorCode.INTERNAL_API),
        request=request,
        debug_info=debug_info,
    )

    return JSONResponse(
        status_code=500,
        content=error_response.to_dict(include_debug=settings.debug),
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Register all exception handlers with the FastAPI application."""
    # Starlette's signature expects Exception; covariant handlers are safe at runtime
    app.add_exception_handler(AppException, app_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(HTTPException, http_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(RequestValidationError, validation_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(ValidationError, pydantic_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(OpenAIAPIError, openai_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(asyncpg.PostgresError, asyncpg_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(Exception, generic_exception_handler)


__all__ = [
    "AppException",
    "BadRequestError",
    "ForbiddenError",
    "NotFoundError",
    "OfflineError",
    "RateLimitError",
    "UnauthorizedError",
    "app_exception_handler",
    "asyncpg_exception_handler",
    "generic_exception_handler",
    "http_exception_handler",
    "openai_exception_handler",
    "pydantic_exception_handler",
    "register_exception_handlers",
    "translate_upstream_error",
    "validation_exception_handler",
]
