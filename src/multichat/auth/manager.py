"""OAuth authorization-code + PKCE orchestration.

The manager builds authorization URLs, validates callbacks against the flows it started,
exchanges codes for tokens, and hands out valid access tokens. Refreshes are serialized per
provider so concurrent callers share a single refresh request; issuing two refreshes with
the same refresh token can make the provider revoke one of the results.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections.abc import Mapping
from dataclasses import dataclass
from urllib.parse import parse_qs, urlsplit

import httpx

from multichat.auth import pkce
from multichat.auth import state as state_codec
from multichat.auth.clients import OAuthClientConfig, oauth_client_for
from multichat.auth.google import ProjectInfo, ProjectResolver
from multichat.auth.state import OAuthState
from multichat.auth.store import TokenStore
from multichat.auth.tokens import AuthPhase, AuthStatus, OAuthTokens
from multichat.config import Settings, get_settings
from multichat.errors import (
    InvalidCallbackError,
    InvalidStateError,
    OAuthConfigError,
    OAuthError,
    RefreshFailedError,
    TokenExchangeFailedError,
    UserCancelledError,
    UserInfoFailedError,
    is_retryable_status,
)
from multichat.transport import create_request_client, extract_error_message
from multichat.types import ProviderConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuthorizationRequest:
    """URL to open in the browser for one authorization round-trip."""

    url: str
    nonce: str
    provider_id: str


class OAuthManager:
    def __init__(
        self,
        store: TokenStore,
        *,
        client: httpx.AsyncClient | None = None,
        settings: Settings | None = None,
        project_resolver: ProjectResolver | None = None,
        clients: Mapping[str, OAuthClientConfig] | None = None,
    ) -> None:
        self._store = store
        self._settings = settings or get_settings()
        self._owns_client = client is None
        self._client = client or create_request_client(self._settings)
        self._projects = project_resolver or ProjectResolver(
            self._client, default_project_id=self._settings.antigravity_default_project_id
        )
        self._clients: dict[str, OAuthClientConfig] = dict(clients or {})
        self._pending: dict[str, OAuthState] = {}
        self._pending_lock = threading.Lock()
        self._refresh_locks: dict[str, asyncio.Lock] = {}
        self._statuses: dict[str, AuthStatus] = {}

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    # -- client registry ---------------------------------------------------------------

    def register(self, config: ProviderConfig) -> OAuthClientConfig:
        """Remember the OAuth client for a provider so refreshes can find it by id."""
        existing = self._clients.get(config.id)
        if existing is not None:
            return existing
        client_config = oauth_client_for(config, self._settings)
        self._clients[config.id] = client_config
        return client_config

    def register_client(self, provider_id: str, client_config: OAuthClientConfig) -> None:
        self._clients[provider_id] = client_config

    def _client_config(self, provider_id: str) -> OAuthClientConfig:
        try:
            return self._clients[provider_id]
        except KeyError:
            raise OAuthConfigError(provider_id, "no OAuth client registered") from None

    # -- authorization flow ------------------------------------------------------------

    def start_auth_flow(
        self, config: ProviderConfig, project_id_hint: str | None = None
    ) -> AuthorizationRequest:
        client_config = self.register(config)
        pair = pkce.generate()
        pending = OAuthState(
            verifier=pair.verifier,
            provider_id=config.id,
            nonce=pkce.generate_nonce(),
            project_id_hint=project_id_hint,
        )
        with self._pending_lock:
            self._purge_expired_locked()
            self._pending[pending.nonce] = pending

        params = {
            "client_id": client_config.client_id,
            "response_type": "code",
            "redirect_uri": client_config.redirect_uri,
            "scope": " ".join(client_config.scopes),
            "code_challenge": pair.challenge,
            "code_challenge_method": pkce.CODE_CHALLENGE_METHOD,
            "state": state_codec.encode(pending),
        }
        params.update(client_config.extra_params)
        url = httpx.URL(client_config.authorization_url, params=params)

        self._statuses[config.id] = AuthStatus.authenticating()
        logger.info("Started OAuth flow for %s", config.id)
        return AuthorizationRequest(url=str(url), nonce=pending.nonce, provider_id=config.id)

    def has_pending(self, nonce: str) -> bool:
        with self._pending_lock:
            return nonce in self._pending

    def _consume(self, nonce: str) -> OAuthState | None:
        with self._pending_lock:
            return self._pending.pop(nonce, None)

    def _purge_expired_locked(self) -> None:
        now = time.time()
        ttl = self._settings.pending_auth_ttl_s
        for nonce in [n for n, s in self._pending.items() if s.is_expired(ttl, now)]:
            del self._pending[nonce]

    async def handle_callback(self, uri: str) -> OAuthTokens:
        """Validate a redirect URI and exchange its code; raises OAuthError subclasses."""
        query = parse_qs(urlsplit(uri).query)

        def param(name: str) -> str | None:
            values = query.get(name)
            return values[0] if values else None

        state_token = param("state")
        error = param("error")
        if error is not None:
            self._abandon(state_token, error)
            if error == "access_denied":
                raise UserCancelledError()
            raise TokenExchangeFailedError(param("error_description") or error, recoverable=False)

        code = param("code")
        if not code:
            raise InvalidCallbackError("missing authorization code")
        if not state_token:
            raise InvalidCallbackError("missing state parameter")

        try:
            decoded = state_codec.decode(state_token)
        except InvalidCallbackError as exc:
            raise InvalidStateError() from exc

        pending = self._consume(decoded.nonce)
        if pending is None:
            logger.warning("OAuth callback with unknown or reused state")
            raise InvalidStateError()
        if pending.provider_id != decoded.provider_id or pending.is_expired(
            self._settings.pending_auth_ttl_s
        ):
            self._statuses[pending.provider_id] = AuthStatus.error(str(InvalidStateError()), True)
            raise InvalidStateError()

        provider_id = pending.provider_id
        try:
            client_config = self._client_config(provider_id)
            tokens = await self._exchange_code(client_config, code, pending)
        except OAuthError as exc:
            self._statuses[provider_id] = AuthStatus.error(str(exc), exc.recoverable)
            raise

        self._store.save_tokens(provider_id, tokens)
        self._statuses[provider_id] = AuthStatus.authenticated(tokens)
        logger.info("OAuth sign-in completed for %s", provider_id)
        return tokens

    def _abandon(self, state_token: str | None, error: str) -> None:
        if not state_token:
            return
        try:
            decoded = state_codec.decode(state_token)
        except InvalidCallbackError:
            return
        pending = self._consume(decoded.nonce)
        if pending is not None:
            self._statuses[pending.provider_id] = AuthStatus.error(error, True)

    async def _exchange_code(
        self, client_config: OAuthClientConfig, code: str, pending: OAuthState
    ) -> OAuthTokens:
        form = {
            "client_id": client_config.client_id,
            "code": code,
            "grant_type": "authorization_code",
            "redirect_uri": client_config.redirect_uri,
            "code_verifier": pending.verifier,
        }
        if client_config.client_secret:
            form["client_secret"] = client_config.client_secret

        try:
            response = await self._client.post(client_config.token_url, data=form)
        except httpx.HTTPError as exc:
            raise TokenExchangeFailedError(f"network error: {exc}", recoverable=True) from exc
        if response.status_code >= 400:
            message = extract_error_message(response.text, response.status_code)
            raise TokenExchangeFailedError(
                f"{message} (status {response.status_code})",
                recoverable=is_retryable_status(response.status_code),
            )
        try:
            tokens = OAuthTokens.from_token_response(
                response.json(), project_id=pending.project_id_hint
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise TokenExchangeFailedError("malformed token response", recoverable=False) from exc

        if client_config.userinfo_url:
            try:
                email = await self.fetch_user_email(client_config, tokens.access_token)
            except UserInfoFailedError as exc:
                logger.warning("%s", exc)
            else:
                tokens = tokens.model_copy(update={"email": email})
        return tokens

    async def fetch_user_email(self, client_config: OAuthClientConfig, access_token: str) -> str:
        if not client_config.userinfo_url:
            raise UserInfoFailedError("provider has no userinfo endpoint")
        try:
            response = await self._client.get(
                client_config.userinfo_url, headers={"Authorization": f"Bearer {access_token}"}
            )
        except httpx.HTTPError as exc:
            raise UserInfoFailedError(f"network error: {exc}") from exc
        if response.status_code >= 400:
            raise UserInfoFailedError(f"HTTP {response.status_code}")
        try:
            email = response.json().get("email")
        except (AttributeError, ValueError) as exc:
            raise UserInfoFailedError("malformed userinfo response") from exc
        if not isinstance(email, str) or not email:
            raise UserInfoFailedError("missing email in userinfo response")
        return email

    # -- tokens ------------------------------------------------------------------------

    async def get_valid_access_token(self, provider_id: str) -> str | None:
        """Return a usable access token, refreshing when needed; None means sign in again."""
        tokens = self._store.load_tokens(provider_id)
        if tokens is None:
            return None
        if not tokens.is_expired():
            return tokens.access_token
        if not tokens.needs_refresh():
            logger.info("Access token for %s expired and cannot be refreshed", provider_id)
            return None
        try:
            refreshed = await self.refresh_tokens(provider_id)
        except OAuthError as exc:
            logger.warning("Token refresh for %s failed: %s", provider_id, exc)
            return None
        return refreshed.access_token

    async def refresh_tokens(self, provider_id: str, *, force: bool = False) -> OAuthTokens:
        """Refresh the provider's tokens; at most one refresh per provider runs at a time."""
        lock = self._refresh_locks.setdefault(provider_id, asyncio.Lock())
        async with lock:
            current = self._store.load_tokens(provider_id)
            if current is None or current.refresh_token is None:
                raise self._refresh_failed(provider_id, RefreshFailedError("no refresh token available"))
            if not force and not current.is_expired():
                # Another caller refreshed while this one waited for the lock.
                return current
            client_config = self._client_config(provider_id)
            form = {
                "client_id": client_config.client_id,
                "refresh_token": current.refresh_token,
                "grant_type": "refresh_token",
            }
            if client_config.client_secret:
                form["client_secret"] = client_config.client_secret

            try:
                response = await self._client.post(client_config.token_url, data=form)
            except httpx.HTTPError as exc:
                raise self._refresh_failed(
                    provider_id, RefreshFailedError(f"network error: {exc}", recoverable=True)
                ) from exc
            if response.status_code >= 400:
                recoverable = is_retryable_status(response.status_code)
                if not recoverable:
                    # The refresh token is dead; keep nothing that could be replayed.
                    self._store.clear(provider_id)
                    self._projects.invalidate()
                message = extract_error_message(response.text, response.status_code)
                raise self._refresh_failed(
                    provider_id,
                    RefreshFailedError(f"{message} (status {response.status_code})", recoverable),
                )
            try:
                tokens = OAuthTokens.from_token_response(
                    response.json(),
                    previous_refresh_token=current.refresh_token,
                    email=current.email,
                    project_id=current.project_id,
                )
            except (KeyError, TypeError, ValueError) as exc:
                raise self._refresh_failed(
                    provider_id, RefreshFailedError("malformed token response")
                ) from exc

            self._store.save_tokens(provider_id, tokens)
            self._statuses[provider_id] = AuthStatus.authenticated(tokens)
            logger.info("Refreshed access token for %s", provider_id)
            return tokens

    def _refresh_failed(self, provider_id: str, exc: RefreshFailedError) -> RefreshFailedError:
        self._statuses[provider_id] = AuthStatus.error(str(exc), exc.recoverable)
        return exc

    def logout(self, provider_id: str) -> None:
        self._store.clear(provider_id)
        self._projects.invalidate()
        self._statuses[provider_id] = AuthStatus.unauthenticated()
        logger.info("Signed out of %s", provider_id)

    def auth_status(self, provider_id: str) -> AuthStatus:
        status = self._statuses.get(provider_id)
        if status is not None and status.phase in (AuthPhase.AUTHENTICATING, AuthPhase.ERROR):
            return status
        tokens = self._store.load_tokens(provider_id)
        if tokens is None:
            return AuthStatus.unauthenticated()
        if tokens.is_expired() and not tokens.needs_refresh():
            return AuthStatus.unauthenticated()
        return AuthStatus.authenticated(tokens)

    # -- provider metadata -------------------------------------------------------------

    async def resolve_project(self, provider_id: str, access_token: str) -> ProjectInfo:
        hint = self._store.load_tokens(provider_id)
        return await self._projects.resolve(access_token, hint.project_id if hint else None)

    def invalidate_project(self) -> None:
        self._projects.invalidate()
