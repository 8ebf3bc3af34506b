"""Bearer token authentication for the chat routes."""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from api.middleware.exception_handlers import UnauthorizedError
from api.middleware.request_context import update_request_context
from api.services.auth_service import AuthService
from models.api_models import UserInfo
from models.error_models import ErrorCode

# Missing headers are reported as unauthorized:chat instead of FastAPI's bare 403
bearer_scheme = HTTPBearer(auto_error=False)


async def get_current_user(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(bearer_scheme)],
) -> UserInfo:
    """Resolve the caller from the ``Authorization: Bearer`` header.

    Raises:
        UnauthorizedError: ``unauthorized:chat`` without a token,
            ``unauthorized:auth`` when the token does not verify.
    """
    if credentials is None:
        raise UnauthorizedError(ErrorCode.UNAUTHORIZED_CHAT)

    try:
        user = AuthService().decode_access_token(credentials.credentials)
    except ValueError as exc:
        raise UnauthorizedError(ErrorCode.UNAUTHORIZED_AUTH, message="Invalid token") from exc

    update_request_context(user_id=user.id)
    return user


CurrentUser = Annotated[UserInfo, Depends(get_current_user)]
