"""OAuth token record and per-provider authentication status."""

from __future__ import annotations

import time
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict

EXPIRY_BUFFER_MS = 60_000
DEFAULT_EXPIRES_IN_S = 3600


def now_ms() -> int:
    return int(time.time() * 1000)


class OAuthTokens(BaseModel):
    model_config = ConfigDict(frozen=True)

    access_token: str
    refresh_token: str | None = None
    expires_at: int
    token_type: str = "Bearer"
    scope: str | None = None
    email: str | None = None
    project_id: str | None = None

    def is_expired(self, now: int | None = None) -> bool:
        """True once inside the 60 second buffer before the real expiry."""
        now = now_ms() if now is None else now
        return now >= self.expires_at - EXPIRY_BUFFER_MS

    def needs_refresh(self, now: int | None = None) -> bool:
        return self.is_expired(now) and self.refresh_token is not None

    @classmethod
    def from_token_response(
        cls,
        data: dict[str, Any],
        *,
        previous_refresh_token: str | None = None,
        email: str | None = None,
        project_id: str | None = None,
    ) -> "OAuthTokens":
        """Build tokens from a token endpoint body; raises KeyError/ValueError when invalid."""
        access_token = data["access_token"]
        if not isinstance(access_token, str) or not access_token:
            raise ValueError("access_token is empty")
        expires_in = int(data.get("expires_in") or DEFAULT_EXPIRES_IN_S)
        return cls(
            access_token=access_token,
            refresh_token=data.get("refresh_token") or previous_refresh_token,
            expires_at=now_ms() + expires_in * 1000,
            token_type=data.get("token_type") or "Bearer",
            scope=data.get("scope"),
            email=email,
            project_id=project_id,
        )


class AuthPhase(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATING = "authenticating"
    AUTHENTICATED = "authenticated"
    ERROR = "error"


class AuthStatus(BaseModel):
    """Snapshot of one provider's position in the auth state machine."""

    model_config = ConfigDict(frozen=True)

    phase: AuthPhase
    email: str | None = None
    expires_at: int | None = None
    message: str | None = None
    recoverable: bool = True

    @classmethod
    def unauthenticated(cls) -> "AuthStatus":
        return cls(phase=AuthPhase.UNAUTHENTICATED)

    @classmethod
    def authenticating(cls) -> "AuthStatus":
        return cls(phase=AuthPhase.AUTHENTICATING)

    @classmethod
    def authenticated(cls, tokens: OAuthTokens) -> "AuthStatus":
        return cls(phase=AuthPhase.AUTHENTICATED, email=tokens.email, expires_at=tokens.expires_at)

    @classmethod
    def error(cls, message: str, recoverable: bool) -> "AuthStatus":
        return cls(phase=AuthPhase.ERROR, message=message, recoverable=recoverable)
