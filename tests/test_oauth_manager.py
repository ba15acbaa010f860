import asyncio
import json
import time
import unittest
from unittest import mock
from urllib.parse import parse_qs, urlencode, urlsplit

import httpx

from multichat.auth import google, pkce
from multichat.auth import state as state_codec
from multichat.auth.clients import OAuthClientConfig
from multichat.auth.manager import OAuthManager
from multichat.auth.state import OAuthState
from multichat.auth.store import InMemoryTokenStore, TokenField
from multichat.auth.tokens import AuthPhase, OAuthTokens, now_ms
from multichat.config import Settings
from multichat.errors import (
    InvalidCallbackError,
    InvalidStateError,
    OAuthConfigError,
    TokenExchangeFailedError,
    UnsupportedProviderError,
    UserCancelledError,
)
from multichat.types import ProviderConfig

PROVIDER_ID = "antigravity-default"
TOKEN_URL = "https://oauth.example.test/token"


def _settings(**overrides) -> Settings:
    values = {"antigravity_client_id": "client-123", "antigravity_client_secret": "s3cret"}
    values.update(overrides)
    return Settings(**values)


def _client_config() -> OAuthClientConfig:
    return OAuthClientConfig(
        client_id="client-123",
        authorization_url="https://oauth.example.test/auth",
        token_url=TOKEN_URL,
        redirect_uri=f"multichat://oauth/{PROVIDER_ID}",
        scopes=("scope-a",),
    )


class StartAuthFlowTests(unittest.TestCase):
    def test_authorization_url_carries_pkce_and_state(self) -> None:
        async def scenario():
            async with httpx.AsyncClient(transport=httpx.MockTransport(_unexpected)) as client:
                manager = OAuthManager(InMemoryTokenStore(), client=client, settings=_settings())
                config = ProviderConfig.antigravity_template()
                request = manager.start_auth_flow(config, project_id_hint="proj-hint")
                return manager, request

        manager, request = asyncio.run(scenario())
        self.assertTrue(request.url.startswith(google.AUTH_URL))
        query = parse_qs(urlsplit(request.url).query)
        self.assertEqual(query["client_id"], ["client-123"])
        self.assertEqual(query["response_type"], ["code"])
        self.assertEqual(query["redirect_uri"], [f"multichat://oauth/{PROVIDER_ID}"])
        self.assertEqual(query["scope"], [" ".join(google.SCOPES)])
        self.assertEqual(query["code_challenge_method"], ["S256"])
        self.assertEqual(query["access_type"], ["offline"])
        self.assertEqual(query["prompt"], ["consent"])

        state = state_codec.decode(query["state"][0])
        self.assertEqual(state.nonce, request.nonce)
        self.assertEqual(state.provider_id, PROVIDER_ID)
        self.assertEqual(state.project_id_hint, "proj-hint")
        self.assertEqual(pkce.challenge_for(state.verifier), query["code_challenge"][0])
        self.assertTrue(manager.has_pending(request.nonce))
        self.assertEqual(manager.auth_status(PROVIDER_ID).phase, AuthPhase.AUTHENTICATING)

    def test_rejects_non_oauth_provider(self) -> None:
        manager = OAuthManager(InMemoryTokenStore(), client=_mock_client(_unexpected), settings=_settings())
        with self.assertRaises(UnsupportedProviderError):
            manager.start_auth_flow(ProviderConfig.openai_template())

    def test_missing_client_id_is_a_config_error(self) -> None:
        manager = OAuthManager(
            InMemoryTokenStore(), client=_mock_client(_unexpected), settings=_settings(antigravity_client_id="")
        )
        with self.assertRaises(OAuthConfigError):
            manager.start_auth_flow(ProviderConfig.antigravity_template())


class HandleCallbackTests(unittest.TestCase):
    def test_unknown_state_never_reaches_token_endpoint(self) -> None:
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(200, json={"access_token": "nope"})

        forged = state_codec.encode(OAuthState(verifier="v" * 43, provider_id=PROVIDER_ID, nonce="forged"))

        async def scenario():
            async with _mock_client(handler) as client:
                manager = OAuthManager(InMemoryTokenStore(), client=client, settings=_settings())
                manager.start_auth_flow(ProviderConfig.antigravity_template())
                await manager.handle_callback(_callback(code="abc", state=forged))

        with self.assertRaises(InvalidStateError):
            asyncio.run(scenario())
        self.assertEqual(calls, [])

    def test_undecodable_state_is_invalid_state(self) -> None:
        async def scenario():
            async with _mock_client(_unexpected) as client:
                manager = OAuthManager(InMemoryTokenStore(), client=client, settings=_settings())
                await manager.handle_callback(_callback(code="abc", state="not-a-state"))

        with self.assertRaises(InvalidStateError):
            asyncio.run(scenario())

    def test_missing_code_is_invalid_callback(self) -> None:
        async def scenario():
            async with _mock_client(_unexpected) as client:
                manager = OAuthManager(InMemoryTokenStore(), client=client, settings=_settings())
                await manager.handle_callback(_callback(state="x"))

        with self.assertRaises(InvalidCallbackError):
            asyncio.run(scenario())

    def test_successful_exchange_persists_tokens(self) -> None:
        seen_forms = []

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url == httpx.URL(google.TOKEN_URL):
                seen_forms.append(parse_qs(request.content.decode()))
                return httpx.Response(
                    200, json={"access_token": "at-1", "refresh_token": "rt-1", "expires_in": 3600}
                )
            if request.url == httpx.URL(google.USERINFO_URL):
                self.assertEqual(request.headers["Authorization"], "Bearer at-1")
                return httpx.Response(200, json={"email": "user@example.test"})
            return _unexpected(request)

        store = InMemoryTokenStore()

        async def scenario():
            async with _mock_client(handler) as client:
                manager = OAuthManager(store, client=client, settings=_settings())
                auth = manager.start_auth_flow(ProviderConfig.antigravity_template(), "proj-9")
                state = parse_qs(urlsplit(auth.url).query)["state"][0]
                tokens = await manager.handle_callback(_callback(code="the-code", state=state))
                with self.assertRaises(InvalidStateError):
                    # A replayed callback finds its nonce already consumed.
                    await manager.handle_callback(_callback(code="the-code", state=state))
                return manager, auth, tokens

        manager, auth, tokens = asyncio.run(scenario())
        self.assertEqual(tokens.access_token, "at-1")
        self.assertEqual(tokens.email, "user@example.test")
        self.assertEqual(tokens.project_id, "proj-9")
        self.assertEqual(store.get(PROVIDER_ID, TokenField.REFRESH_TOKEN), "rt-1")
        self.assertFalse(manager.has_pending(auth.nonce))
        self.assertEqual(manager.auth_status(PROVIDER_ID).phase, AuthPhase.AUTHENTICATED)

        form = seen_forms[0]
        self.assertEqual(form["grant_type"], ["authorization_code"])
        self.assertEqual(form["code"], ["the-code"])
        self.assertEqual(form["client_secret"], ["s3cret"])
        self.assertEqual(len(form["code_verifier"][0]), 86)

    def test_userinfo_failure_does_not_block_sign_in(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url == httpx.URL(google.TOKEN_URL):
                return httpx.Response(200, json={"access_token": "at-1", "expires_in": 60})
            return httpx.Response(500, text="down")

        async def scenario():
            async with _mock_client(handler) as client:
                manager = OAuthManager(InMemoryTokenStore(), client=client, settings=_settings())
                auth = manager.start_auth_flow(ProviderConfig.antigravity_template())
                state = parse_qs(urlsplit(auth.url).query)["state"][0]
                return await manager.handle_callback(_callback(code="c", state=state))

        tokens = asyncio.run(scenario())
        self.assertEqual(tokens.access_token, "at-1")
        self.assertIsNone(tokens.email)

    def test_token_endpoint_errors(self) -> None:
        for status, recoverable in ((400, False), (503, True)):
            with self.subTest(status=status):

                def handler(request: httpx.Request, status=status) -> httpx.Response:
                    return httpx.Response(status, json={"error": "invalid_grant"})

                async def scenario():
                    async with _mock_client(handler) as client:
                        manager = OAuthManager(InMemoryTokenStore(), client=client, settings=_settings())
                        auth = manager.start_auth_flow(ProviderConfig.antigravity_template())
                        state = parse_qs(urlsplit(auth.url).query)["state"][0]
                        try:
                            await manager.handle_callback(_callback(code="c", state=state))
                        finally:
                            self.assertEqual(manager.auth_status(PROVIDER_ID).phase, AuthPhase.ERROR)

                with self.assertRaises(TokenExchangeFailedError) as ctx:
                    asyncio.run(scenario())
                self.assertEqual(ctx.exception.recoverable, recoverable)

    def test_access_denied_is_user_cancelled(self) -> None:
        async def scenario():
            async with _mock_client(_unexpected) as client:
                manager = OAuthManager(InMemoryTokenStore(), client=client, settings=_settings())
                auth = manager.start_auth_flow(ProviderConfig.antigravity_template())
                state = parse_qs(urlsplit(auth.url).query)["state"][0]
                try:
                    await manager.handle_callback(_callback(error="access_denied", state=state))
                finally:
                    self.assertFalse(manager.has_pending(auth.nonce))

        with self.assertRaises(UserCancelledError):
            asyncio.run(scenario())

    def test_expired_pending_flow_is_rejected(self) -> None:
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(200, json={"access_token": "late", "expires_in": 3600})

        async def scenario():
            async with _mock_client(handler) as client:
                manager = OAuthManager(InMemoryTokenStore(), client=client, settings=_settings())
                auth = manager.start_auth_flow(ProviderConfig.antigravity_template())
                state = parse_qs(urlsplit(auth.url).query)["state"][0]
                eleven_minutes_later = time.time() + 660
                try:
                    with mock.patch.object(state_codec.time, "time", return_value=eleven_minutes_later):
                        await manager.handle_callback(_callback(code="abc", state=state))
                finally:
                    self.assertFalse(manager.has_pending(auth.nonce))
                    self.assertEqual(manager.auth_status(PROVIDER_ID).phase, AuthPhase.ERROR)

        with self.assertRaises(InvalidStateError):
            asyncio.run(scenario())
        self.assertEqual(calls, [])


class RefreshTests(unittest.TestCase):
    def _expired_store(self, refresh_token: str | None = "rt-1") -> InMemoryTokenStore:
        store = InMemoryTokenStore()
        store.save_tokens(
            PROVIDER_ID,
            OAuthTokens(
                access_token="old",
                refresh_token=refresh_token,
                expires_at=now_ms() - 1_000,
                email="user@example.test",
            ),
        )
        return store

    def test_concurrent_callers_share_one_refresh(self) -> None:
        calls = []

        async def handler(request: httpx.Request) -> httpx.Response:
            calls.append(parse_qs(request.content.decode()))
            await asyncio.sleep(0.05)
            return httpx.Response(200, json={"access_token": "fresh", "expires_in": 3600})

        store = self._expired_store()

        async def scenario():
            async with _mock_client(handler) as client:
                manager = OAuthManager(store, client=client, settings=_settings())
                manager.register_client(PROVIDER_ID, _client_config())
                return await asyncio.gather(
                    *(manager.get_valid_access_token(PROVIDER_ID) for _ in range(8))
                )

        tokens = asyncio.run(scenario())
        self.assertEqual(tokens, ["fresh"] * 8)
        self.assertEqual(len(calls), 1)
        self.assertEqual(calls[0]["grant_type"], ["refresh_token"])
        self.assertEqual(calls[0]["refresh_token"], ["rt-1"])
        refreshed = store.load_tokens(PROVIDER_ID)
        self.assertEqual(refreshed.refresh_token, "rt-1")
        self.assertEqual(refreshed.email, "user@example.test")

    def test_valid_token_needs_no_network(self) -> None:
        store = InMemoryTokenStore()
        store.save_tokens(PROVIDER_ID, OAuthTokens(access_token="live", expires_at=now_ms() + 3_600_000))

        async def scenario():
            async with _mock_client(_unexpected) as client:
                manager = OAuthManager(store, client=client, settings=_settings())
                return await manager.get_valid_access_token(PROVIDER_ID)

        self.assertEqual(asyncio.run(scenario()), "live")

    def test_expired_without_refresh_token_returns_none(self) -> None:
        store = self._expired_store(refresh_token=None)

        async def scenario():
            async with _mock_client(_unexpected) as client:
                manager = OAuthManager(store, client=client, settings=_settings())
                return await manager.get_valid_access_token(PROVIDER_ID)

        self.assertIsNone(asyncio.run(scenario()))

    def test_rejected_refresh_discards_tokens(self) -> None:
        store = self._expired_store()

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(400, json={"error": "invalid_grant"})

        async def scenario():
            async with _mock_client(handler) as client:
                manager = OAuthManager(store, client=client, settings=_settings())
                manager.register_client(PROVIDER_ID, _client_config())
                token = await manager.get_valid_access_token(PROVIDER_ID)
                return manager, token

        manager, token = asyncio.run(scenario())
        self.assertIsNone(token)
        self.assertIsNone(store.load_tokens(PROVIDER_ID))
        status = manager.auth_status(PROVIDER_ID)
        self.assertEqual(status.phase, AuthPhase.ERROR)
        self.assertFalse(status.recoverable)

    def test_server_error_keeps_tokens_for_retry(self) -> None:
        store = self._expired_store()

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(503, text="unavailable")

        async def scenario():
            async with _mock_client(handler) as client:
                manager = OAuthManager(store, client=client, settings=_settings())
                manager.register_client(PROVIDER_ID, _client_config())
                return manager, await manager.get_valid_access_token(PROVIDER_ID)

        manager, token = asyncio.run(scenario())
        self.assertIsNone(token)
        self.assertIsNotNone(store.load_tokens(PROVIDER_ID))
        self.assertTrue(manager.auth_status(PROVIDER_ID).recoverable)

    def test_logout_clears_tokens(self) -> None:
        store = self._expired_store()
        manager = OAuthManager(store, client=_mock_client(_unexpected), settings=_settings())
        manager.logout(PROVIDER_ID)
        self.assertIsNone(store.load_tokens(PROVIDER_ID))
        self.assertEqual(manager.auth_status(PROVIDER_ID).phase, AuthPhase.UNAUTHENTICATED)


def _callback(**params: str) -> str:
    return f"multichat://oauth/{PROVIDER_ID}?{urlencode(params)}"


def _mock_client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def _unexpected(request: httpx.Request) -> httpx.Response:
    raise AssertionError(f"unexpected request to {request.url}: {json.dumps(dict(request.headers))}")


if __name__ == "__main__":
    unittest.main()
