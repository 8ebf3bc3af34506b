from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

from jose import JWTError, jwt

from core.constants import Settings, get_settings
from models.api_models import UserInfo

ACCESS_TOKEN_USE = "access"


class AuthService:
    """Issue and validate JWT access tokens.

    Sign-in and registration happen elsewhere; this service only needs to
    trust the tokens. ``type`` carries the user type (``guest`` or
    ``regular``), ``token_use`` separates access tokens from anything else
    signed with the same secret.
    """

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or get_settings()

    def create_access_token(self, user: UserInfo, expires_in: timedelta | None = None) -> str:
        now = datetime.now(timezone.utc)
        expires_at = now + (expires_in or timedelta(minutes=self.settings.access_token_expires_minutes))
        payload: dict[str, Any] = {
            "sub": user.id,
            "type": user.type,
            "token_use": ACCESS_TOKEN_USE,
            "iat": now,
            "exp": expires_at,
        }
        if user.email:
            payload["email"] = user.email
        token: str = jwt.encode(payload, self.settings.jwt_secret, algorithm=self.settings.jwt_algorithm)
        return token

    def decode_access_token(self, token: str) -> UserInfo:
        """Validate an access token and return the identity it carries."""
        try:
            payload: dict[str, Any] = jwt.decode(
                token,
                self.settings.jwt_secret,
                algorithms=[self.settings.jwt_algorithm],
            )
        except JWTError as exc:
            raise ValueError("Invalid token") from exc

        if payload.get("token_use") != ACCESS_TOKEN_USE:
            raise ValueError("Invalid token type")
        if not payload.get("sub"):
            raise ValueError("Token has no subject")

        return UserInfo(
            id=str(payload["sub"]),
            email=payload.get("email"),
            type=payload.get("type") or "regular",
        )
