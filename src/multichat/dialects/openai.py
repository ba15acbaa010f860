"""OpenAI-compatible Chat Completions dialect (OpenAI, OpenRouter, Groq, GitHub Copilot...)."""

from __future__ import annotations

import logging
from typing import Any

from multichat.access import AccessContext
from multichat.dialects.base import (
    Dialect,
    Route,
    as_list,
    as_object,
    as_text,
    decode_json,
    error_event_from_body,
    strip_data_prefix,
    system_prompt_for,
)
from multichat.events import CONNECTED, KEEP_ALIVE, ContentEvent, DoneEvent, StreamEvent
from multichat.types import AiModel, ChatRequest, ConversationMessage, ProviderConfig, ProviderKind

_CHAT_PATH = "/v1/chat/completions"
_MODELS_PATH = "/v1/models"


def normalize_base_url(base_url: str) -> str:
    """Drop a trailing ``/v1`` (or, failing that, ``/api``) so paths are not doubled."""
    url = base_url.rstrip("/")
    for suffix in ("/v1", "/api"):
        if url.endswith(suffix):
            return url[: -len(suffix)].rstrip("/")
    return url


class OpenAIDialect(Dialect):
    """Server-sent events with ``data:`` lines and a ``[DONE]`` sentinel."""

    name = "openai"
    _logger = logging.getLogger(__name__)

    def build_route(
        self, config: ProviderConfig, model: str, access: AccessContext, *, stream: bool
    ) -> Route:
        if config.kind is ProviderKind.GITHUB_COPILOT:
            url = f"{config.base_url.rstrip('/')}/chat/completions"
        else:
            url = f"{normalize_base_url(config.base_url)}{_CHAT_PATH}"
        headers = {"Content-Type": "application/json", **config.headers}
        if stream:
            headers["Accept"] = "text/event-stream"
        self._authorize(headers, access)
        return Route(url=url, headers=headers)

    def build_payload(
        self, request: ChatRequest, *, stream: bool, access: AccessContext | None = None
    ) -> dict[str, Any]:
        messages: list[dict[str, Any]] = []
        system_prompt = system_prompt_for(request)
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.extend(self._serialize_message(m) for m in request.messages)

        payload: dict[str, Any] = {
            "model": request.model,
            "messages": messages,
            "stream": stream,
        }
        if request.temperature is not None:
            payload["temperature"] = request.temperature
        if request.max_tokens is not None:
            payload["max_tokens"] = request.max_tokens
        if request.thinking_enabled:
            payload["reasoning_effort"] = request.reasoning_effort.value
        return payload

    @staticmethod
    def _serialize_message(message: ConversationMessage) -> dict[str, Any]:
        images = [a for a in message.attachments if a.is_image]
        if not images:
            return {"role": message.role, "content": message.content}
        parts: list[dict[str, Any]] = []
        if message.content:
            parts.append({"type": "text", "text": message.content})
        for image in images:
            parts.append({"type": "image_url", "image_url": {"url": image.data_url, "detail": "auto"}})
        return {"role": message.role, "content": parts}

    def parse_line(self, line: str) -> StreamEvent | None:
        line = line.strip()
        if not line or line.startswith(":"):
            return KEEP_ALIVE

        # OpenAI streaming uses SSE. We only care about "data:" lines.
        data_str = strip_data_prefix(line)
        if data_str is None:
            return None
        if data_str == "[DONE]":
            return DoneEvent()

        event = decode_json(data_str)
        if not isinstance(event, dict):
            self._logger.debug("Ignoring non-object streaming chunk: %s", data_str)
            return None
        if event.get("error") is not None:
            return error_event_from_body(event["error"])

        choices = as_list(event.get("choices"), data_str)
        if not choices:
            return KEEP_ALIVE
        choice = as_object(choices[0], data_str, allow_missing=False)
        bodies = [as_object(choice.get(key), data_str) for key in ("delta", "message")]
        text = self._extract_delta_text(bodies)
        thinking = self._extract_reasoning(bodies)
        finish_reason = as_text(choice.get("finish_reason")) or None
        if text or thinking:
            # A final delta may carry the finish reason too; the controller keeps it for Done.
            return ContentEvent(text=text, thinking=thinking, finish_reason=finish_reason)

        if finish_reason:
            return DoneEvent(finish_reason=finish_reason, model=as_text(event.get("model")) or None)
        if bodies[0].get("role"):
            return CONNECTED
        return KEEP_ALIVE

    @staticmethod
    def _extract_delta_text(bodies: list[dict[str, Any]]) -> str:
        """Extract the streaming text delta, falling back to a full ``message`` object."""
        for body in bodies:
            content = body.get("content")
            if isinstance(content, str) and content:
                return content
        return ""

    @staticmethod
    def _extract_reasoning(bodies: list[dict[str, Any]]) -> str | None:
        for body in bodies:
            for field in ("reasoning_content", "reasoning"):
                value = body.get(field)
                if isinstance(value, str) and value:
                    return value
        return None

    def extract_text(self, data: dict[str, Any]) -> str:
        choices = as_list(data.get("choices"))
        if not choices:
            return ""
        message = as_object(as_object(choices[0], allow_missing=False).get("message"))
        return as_text(message.get("content"))

    def models_route(self, config: ProviderConfig, access: AccessContext) -> Route:
        if config.kind is ProviderKind.GITHUB_COPILOT:
            url = f"{config.base_url.rstrip('/')}/models"
        else:
            url = f"{normalize_base_url(config.base_url)}{_MODELS_PATH}"
        headers = {"Accept": "application/json", **config.headers}
        self._authorize(headers, access)
        return Route(url=url, headers=headers)

    def parse_models(self, data: dict[str, Any], config: ProviderConfig) -> list[AiModel]:
        return [
            AiModel(id=item["id"], name=item.get("name") or item["id"], provider_id=config.id)
            for item in data.get("data") or []
            if isinstance(item, dict) and item.get("id")
        ]

    @staticmethod
    def _authorize(headers: dict[str, str], access: AccessContext) -> None:
        token = access.bearer_token or access.api_key
        if token:
            headers["Authorization"] = f"Bearer {token}"
