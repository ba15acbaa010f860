"""Package specific exception hierarchy."""

from __future__ import annotations


class MultichatError(Exception):
    """Base exception for the multichat package."""

    recoverable: bool = False


class UnsupportedProviderError(MultichatError):
    """Raised when a provider kind cannot serve the requested operation."""

    def __init__(self, provider: str, operation: str | None = None) -> None:
        detail = f" for {operation}" if operation else ""
        super().__init__(f"Provider '{provider}' is not supported{detail}.")
        self.provider = provider


class UnsupportedFeatureError(MultichatError):
    """Raised when a requested feature is unsupported by a provider."""

    def __init__(self, feature: str) -> None:
        super().__init__(f"Feature '{feature}' is not supported.")
        self.feature = feature


class AuthRequiredError(MultichatError):
    """No usable credentials for the provider; the user has to sign in or add a key."""

    recoverable = True

    def __init__(self, provider: str, message: str | None = None) -> None:
        super().__init__(message or f"Not authenticated with {provider}. Please sign in.")
        self.provider = provider


class ProviderError(MultichatError):
    """Represents provider-specific HTTP or API errors."""

    def __init__(self, provider: str, message: str, status_code: int | None = None) -> None:
        suffix = f" (status {status_code})" if status_code is not None else ""
        super().__init__(f"{provider}: {message}{suffix}")
        self.provider = provider
        self.status_code = status_code

    @property
    def recoverable(self) -> bool:  # type: ignore[override]
        return is_retryable_status(self.status_code)

    @property
    def is_auth_error(self) -> bool:
        return self.status_code in (401, 403)


class NonJsonResponseError(ProviderError):
    """The server answered with HTML or another non-JSON body, usually a wrong base URL."""


class TransportFailure(MultichatError):
    """DNS, connect, timeout or other network-level failure before a usable response."""

    def __init__(self, message: str, code: str | None = None, recoverable: bool = True) -> None:
        super().__init__(message)
        self.code = code
        self.recoverable = recoverable


class EmptyStreamError(MultichatError):
    """The connection closed without any content and without a terminal marker."""

    recoverable = True


class ParseFailureError(MultichatError):
    """A payload could not be decoded."""

    def __init__(self, message: str, payload: str | None = None) -> None:
        super().__init__(message)
        self.payload = payload


class OAuthError(MultichatError):
    """Base class for failures in the OAuth flow."""

    def __init__(self, message: str, recoverable: bool = False) -> None:
        super().__init__(message)
        self.recoverable = recoverable


class InvalidStateError(OAuthError):
    """Callback state is unknown, expired or already consumed (possible CSRF or replay)."""

    def __init__(self) -> None:
        super().__init__(
            "OAuth state mismatch. The authorization request may have expired. "
            "Please try signing in again.",
            recoverable=True,
        )


class InvalidCallbackError(OAuthError):
    """The callback URI is missing required parameters or carries a malformed state."""

    def __init__(self, reason: str) -> None:
        super().__init__(f"Invalid OAuth callback: {reason}")


class TokenExchangeFailedError(OAuthError):
    """The authorization code could not be exchanged for tokens."""

    def __init__(self, reason: str, recoverable: bool = True) -> None:
        super().__init__(f"Failed to complete sign-in: {reason}", recoverable=recoverable)


class RefreshFailedError(OAuthError):
    """An expired access token could not be renewed."""

    def __init__(self, reason: str, recoverable: bool = False) -> None:
        super().__init__(
            f"Session expired and could not be renewed: {reason}", recoverable=recoverable
        )


class UserCancelledError(OAuthError):
    """The user declined consent."""

    def __init__(self) -> None:
        super().__init__("Sign-in was cancelled.", recoverable=True)


class OAuthConfigError(OAuthError):
    """The OAuth client for a provider is missing or incomplete."""

    def __init__(self, provider: str, reason: str) -> None:
        super().__init__(f"OAuth client for '{provider}' is misconfigured: {reason}")


class UserInfoFailedError(OAuthError):
    """The userinfo lookup after sign-in failed."""

    def __init__(self, reason: str) -> None:
        super().__init__(f"Failed to retrieve user information: {reason}", recoverable=True)


def is_retryable_status(status_code: int | None) -> bool:
    """Return True for HTTP statuses worth retrying (429 and 5xx)."""
    if status_code is None:
        return False
    return status_code == 429 or status_code >= 500
