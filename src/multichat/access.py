"""Credential resolution shared by streaming, model listing and one-shot completions."""

from __future__ import annotations

from dataclasses import dataclass

from multichat.auth.google import ProjectInfo
from multichat.auth.manager import OAuthManager
from multichat.errors import AuthRequiredError
from multichat.types import AuthKind, Credentials, ProviderConfig, ProviderKind


@dataclass(frozen=True)
class AccessContext:
    """What a dialect needs to authenticate one call."""

    api_key: str | None = None
    bearer_token: str | None = None
    project: ProjectInfo | None = None


async def resolve_access(
    config: ProviderConfig,
    credentials: Credentials | None,
    oauth: OAuthManager | None,
) -> AccessContext:
    """Return the credentials for a call; raises AuthRequiredError when the user must sign in."""
    if config.auth is AuthKind.NONE:
        api_key = credentials.api_key if credentials else None
        return AccessContext(api_key=api_key or None)

    if config.auth is AuthKind.API_KEY:
        api_key = credentials.api_key if credentials else None
        if not api_key:
            raise AuthRequiredError(config.name, f"API key required for {config.name}.")
        return AccessContext(api_key=api_key)

    if oauth is None:
        raise AuthRequiredError(config.name)
    token = await oauth.get_valid_access_token(config.id)
    if token is None:
        raise AuthRequiredError(config.name)
    project = None
    if config.kind is ProviderKind.ANTIGRAVITY:
        project = await oauth.resolve_project(config.id, token)
    return AccessContext(bearer_token=token, project=project)
