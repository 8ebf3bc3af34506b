"""
Standardized error response models for Chat Relay API.

Error codes follow a ``type:surface`` convention so clients can branch on the
type (``rate_limit``, ``forbidden``...) and show a surface-specific message.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class ErrorType(str, Enum):
    """Error taxonomy shared by every surface."""

    BAD_REQUEST = "bad_request"
    UNAUTHORIZED = "unauthorized"
    FORBIDDEN = "forbidden"
    NOT_FOUND = "not_found"
    RATE_LIMIT = "rate_limit"
    OFFLINE = "offline"
    INTERNAL = "internal"


class ErrorCode(str, Enum):
    """Application-specific error codes (``type:surface``)."""

    BAD_REQUEST_API = "bad_request:api"
    BAD_REQUEST_CHAT = "bad_request:chat"
    BAD_REQUEST_ACTIVATE_GATEWAY = "bad_request:activate_gateway"

    UNAUTHORIZED_AUTH = "unauthorized:auth"
    UNAUTHORIZED_CHAT = "unauthorized:chat"

    FORBIDDEN_CHAT = "forbidden:chat"

    NOT_FOUND_CHAT = "not_found:chat"
    NOT_FOUND_STREAM = "not_found:stream"
    NOT_FOUND_DOCUMENT = "not_found:document"

    RATE_LIMIT_CHAT = "rate_limit:chat"

    OFFLINE_CHAT = "offline:chat"

    INTERNAL_API = "internal:api"
    INTERNAL_DATABASE = "internal:database"

    @property
    def error_type(self) -> ErrorType:
        return ErrorType(self.value.split(":", 1)[0])

    @property
    def surface(self) -> str:
        return self.value.split(":", 1)[1]


#: Default user-facing message per code
ERROR_MESSAGES: dict[ErrorCode, str] = {
    ErrorCode.BAD_REQUEST_API: "The request couldn't be processed. Please check your input and try again.",
    ErrorCode.BAD_REQUEST_CHAT: "The chat request is invalid.",
    ErrorCode.BAD_REQUEST_ACTIVATE_GATEWAY: (
        "The model gateway requires a valid credit card on file to service requests."
    ),
    ErrorCode.UNAUTHORIZED_AUTH: "You need to sign in before continuing.",
    ErrorCode.UNAUTHORIZED_CHAT: "You need to sign in to view this chat. Please sign in and try again.",
    ErrorCode.FORBIDDEN_CHAT: "This chat belongs to another user. Please check the chat ID and try again.",
    ErrorCode.NOT_FOUND_CHAT: "The requested chat was not found. Please check the chat ID and try again.",
    ErrorCode.NOT_FOUND_STREAM: "No resumable stream was found for this chat.",
    ErrorCode.NOT_FOUND_DOCUMENT: "The requested document was not found.",
    ErrorCode.RATE_LIMIT_CHAT: (
        "You have exceeded your maximum number of messages for the day. Please try again later."
    ),
    ErrorCode.OFFLINE_CHAT: "We're having trouble sending your message. Please check your connection and try again.",
    ErrorCode.INTERNAL_API: "An unexpected error occurred.",
    ErrorCode.INTERNAL_DATABASE: "Database operation failed.",
}

# HTTP status code mappings for error types
ERROR_TYPE_TO_STATUS: dict[ErrorType, int] = {
    ErrorType.BAD_REQUEST: 400,
    ErrorType.UNAUTHORIZED: 401,
    ErrorType.FORBIDDEN: 403,
    ErrorType.NOT_FOUND: 404,
    ErrorType.RATE_LIMIT: 429,
    ErrorType.OFFLINE: 503,
    ErrorType.INTERNAL: 500,
}


class ErrorDetail(BaseModel):
    """Detailed information about a specific validation or sub-error."""

    field: str | None = None
    message: str
    code: str | None = None


class ErrorResponse(BaseModel):
    """Standardized error response model for REST endpoints.

    Example response:
    {
        "error": {
            "code": "forbidden:chat",
            "message": "This chat belongs to another user...",
            "request_id": "req_abc123",
            "timestamp": "2025-01-15T10:30:00Z",
            "path": "/api/chat/4c9f..."
        }
    }
    """

    code: ErrorCode
    message: str
    request_id: str | None = None
    timestamp: str = Field(default_factory=lambda: datetime.now(UTC).isoformat())
    details: list[ErrorDetail] | None = None
    path: str | None = None
    # Debug info - only included in development mode
    debug: dict[str, Any] | None = Field(default=None, exclude=True)

    def to_dict(self, include_debug: bool = False) -> dict[str, Any]:
        """Convert to dictionary for JSON response."""
        data = self.model_dump(mode="json", exclude_none=True)
        if include_debug and self.debug:
            data["debug"] = self.debug
        return {"error": data}


def get_status_code(error_code: ErrorCode) -> int:
    """Get HTTP status code for an error code."""
    return ERROR_TYPE_TO_STATUS.get(error_code.error_type, 500)


def get_error_message(error_code: ErrorCode) -> str:
    """Get the default user-facing message for an error code."""
    return ERROR_MESSAGES.get(error_code, "Something went wrong. Please try again later.")


__all__ = [
    "ERROR_MESSAGES",
    "ERROR_TYPE_TO_STATUS",
    "ErrorCode",
    "ErrorDetail",
    "ErrorResponse",
    "ErrorType",
    "get_error_message",
    "get_status_code",
]
