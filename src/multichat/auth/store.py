"""Token store contract and an in-memory implementation.

Real deployments back this with encrypted storage (a keystore, encrypted preferences);
the core only relies on the get/set/clear contract below.
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from enum import Enum

from multichat.auth.tokens import OAuthTokens


class TokenField(str, Enum):
    ACCESS_TOKEN = "access_token"
    REFRESH_TOKEN = "refresh_token"
    EXPIRES_AT = "expires_at"
    EMAIL = "email"
    PROJECT_ID = "project_id"


class TokenStore(ABC):
    """Secure key-value storage keyed by provider id and field."""

    @abstractmethod
    def get(self, provider_id: str, field: TokenField) -> str | None:
        raise NotImplementedError

    @abstractmethod
    def set(self, provider_id: str, field: TokenField, value: str) -> None:
        raise NotImplementedError

    @abstractmethod
    def clear(self, provider_id: str, field: TokenField | None = None) -> None:
        """Clear one field, or every field for the provider when ``field`` is None."""
        raise NotImplementedError

    def load_tokens(self, provider_id: str) -> OAuthTokens | None:
        access_token = self.get(provider_id, TokenField.ACCESS_TOKEN)
        if access_token is None:
            return None
        expires_at = self.get(provider_id, TokenField.EXPIRES_AT)
        return OAuthTokens(
            access_token=access_token,
            refresh_token=self.get(provider_id, TokenField.REFRESH_TOKEN),
            # A token stored without expiry is treated as already expired.
            expires_at=int(expires_at) if expires_at else 0,
            email=self.get(provider_id, TokenField.EMAIL),
            project_id=self.get(provider_id, TokenField.PROJECT_ID),
        )

    def save_tokens(self, provider_id: str, tokens: OAuthTokens) -> None:
        self.set(provider_id, TokenField.ACCESS_TOKEN, tokens.access_token)
        self.set(provider_id, TokenField.EXPIRES_AT, str(tokens.expires_at))
        if tokens.refresh_token is not None:
            self.set(provider_id, TokenField.REFRESH_TOKEN, tokens.refresh_token)
        if tokens.email is not None:
            self.set(provider_id, TokenField.EMAIL, tokens.email)
        if tokens.project_id is not None:
            self.set(provider_id, TokenField.PROJECT_ID, tokens.project_id)


class InMemoryTokenStore(TokenStore):
    def __init__(self) -> None:
        self._values: dict[tuple[str, TokenField], str] = {}
        self._lock = threading.Lock()

    def get(self, provider_id: str, field: TokenField) -> str | None:
        with self._lock:
            return self._values.get((provider_id, field))

    def set(self, provider_id: str, field: TokenField, value: str) -> None:
        with self._lock:
            self._values[(provider_id, field)] = value

    def clear(self, provider_id: str, field: TokenField | None = None) -> None:
        with self._lock:
            if field is not None:
                self._values.pop((provider_id, field), None)
                return
            for key in [key for key in self._values if key[0] == provider_id]:
                del self._values[key]
