"""OAuth client registrations per provider kind."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field

from multichat.auth import google
from multichat.config import Settings, get_settings
from multichat.errors import OAuthConfigError, UnsupportedProviderError
from multichat.types import AuthKind, ProviderConfig, ProviderKind


class OAuthClientConfig(BaseModel):
    """Endpoints and client credentials for an authorization-code + PKCE flow."""

    model_config = ConfigDict(frozen=True)

    client_id: str
    client_secret: str | None = None
    authorization_url: str
    token_url: str
    redirect_uri: str
    scopes: tuple[str, ...]
    extra_params: dict[str, str] = Field(default_factory=dict)
    userinfo_url: str | None = None


def redirect_uri_for(provider_id: str, settings: Settings | None = None) -> str:
    settings = settings or get_settings()
    return f"{settings.redirect_scheme}://oauth/{provider_id}"


def antigravity_client(provider_id: str, settings: Settings | None = None) -> OAuthClientConfig:
    settings = settings or get_settings()
    if not settings.antigravity_client_id:
        raise OAuthConfigError(provider_id, "set MULTICHAT_ANTIGRAVITY_CLIENT_ID")
    return OAuthClientConfig(
        client_id=settings.antigravity_client_id,
        client_secret=settings.antigravity_client_secret or None,
        authorization_url=google.AUTH_URL,
        token_url=google.TOKEN_URL,
        redirect_uri=redirect_uri_for(provider_id, settings),
        scopes=google.SCOPES,
        extra_params=dict(google.EXTRA_AUTH_PARAMS),
        userinfo_url=google.USERINFO_URL,
    )


def oauth_client_for(config: ProviderConfig, settings: Settings | None = None) -> OAuthClientConfig:
    """Return the OAuth client for an OAuth provider configuration."""
    if config.auth is not AuthKind.OAUTH:
        raise UnsupportedProviderError(config.name, "OAuth")
    if config.kind is ProviderKind.ANTIGRAVITY:
        return antigravity_client(config.id, settings)
    raise UnsupportedProviderError(config.name, "OAuth")
