"""Async client orchestrating provider interactions."""

from __future__ import annotations

from collections.abc import Sequence
from typing import AsyncIterator

import httpx

from multichat import completion
from multichat.auth.manager import OAuthManager
from multichat.catalog import ModelCatalog
from multichat.config import Settings, get_settings
from multichat.dialects import ensure_capabilities
from multichat.errors import UnsupportedFeatureError
from multichat.events import StreamEvent
from multichat.streaming import StreamController
from multichat.transport import create_request_client
from multichat.types import (
    AiModel,
    ChatRequest,
    ConversationMessage,
    Credentials,
    ProviderConfig,
    ReasoningEffort,
)


class ChatClient:
    """High-level coordinator for chatting with configured providers.

    OAuth providers need an ``OAuthManager``; API-key providers take their key through
    ``Credentials`` on each call.
    """

    def __init__(
        self,
        *,
        oauth: OAuthManager | None = None,
        settings: Settings | None = None,
        streaming_client: httpx.AsyncClient | None = None,
        request_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._oauth = oauth
        self._owns_request_client = request_client is None
        self._request_client = request_client or create_request_client(self._settings)
        self._controller = StreamController(streaming_client, oauth=oauth, settings=self._settings)
        self._catalog = ModelCatalog(self._request_client, oauth=oauth)

    @property
    def oauth(self) -> OAuthManager | None:
        return self._oauth

    async def aclose(self) -> None:
        """Cancel any active stream and close owned HTTP clients."""
        await self._controller.aclose()
        if self._owns_request_client:
            await self._request_client.aclose()

    def stream_chat(
        self,
        config: ProviderConfig,
        messages: Sequence[ConversationMessage],
        model: str | None = None,
        credentials: Credentials | None = None,
        *,
        system_prompt: str | None = None,
        temperature: float | None = 0.7,
        reasoning_effort: ReasoningEffort = ReasoningEffort.HIGH,
        max_tokens: int | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Stream events for a chat turn; a newer call cancels this one."""
        if not config.capabilities.streaming:
            raise UnsupportedFeatureError("streaming")
        request = ChatRequest(
            provider=config,
            model=model or config.default_model,
            messages=list(messages),
            system_prompt=system_prompt,
            temperature=temperature,
            reasoning_effort=reasoning_effort,
            max_tokens=max_tokens,
        )
        ensure_capabilities(request)
        return self._controller.stream(request, credentials)

    async def cancel_streaming(self) -> None:
        await self._controller.cancel()

    async def fetch_models(
        self, config: ProviderConfig, credentials: Credentials | None = None
    ) -> list[AiModel]:
        return await self._catalog.fetch_models(config, credentials)

    async def generate_simple_completion(
        self,
        config: ProviderConfig,
        prompt: str,
        model: str | None = None,
        credentials: Credentials | None = None,
    ) -> str:
        return await completion.generate_simple_completion(
            config,
            prompt,
            model or config.default_model,
            credentials,
            client=self._request_client,
            oauth=self._oauth,
        )
