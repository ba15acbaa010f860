"""Anthropic Messages API dialect."""

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
    split_system,
    strip_data_prefix,
    system_prompt_for,
)
from multichat.errors import ProviderError
from multichat.events import (
    CONNECTED,
    FINISH_LENGTH,
    FINISH_STOP,
    KEEP_ALIVE,
    ContentEvent,
    DoneEvent,
    StreamEvent,
)
from multichat.types import AiModel, ChatRequest, ConversationMessage, ProviderConfig

_MESSAGES_PATH = "/v1/messages"
_MODELS_PATH = "/v1/models"
_API_VERSION = "2023-06-01"
_DEFAULT_MAX_TOKENS = 8192

_STOP_REASONS = {
    "end_turn": FINISH_STOP,
    "stop_sequence": FINISH_STOP,
    "max_tokens": FINISH_LENGTH,
}
_RECOVERABLE_ERRORS = ("overloaded_error", "api_error", "rate_limit_error")


class AnthropicDialect(Dialect):
    """Typed SSE events; ``event:`` names are repeated in each ``data:`` body as ``type``."""

    name = "anthropic"
    _logger = logging.getLogger(__name__)

    def build_route(
        self, config: ProviderConfig, model: str, access: AccessContext, *, stream: bool
    ) -> Route:
        headers = self._headers(config, access)
        headers["content-type"] = "application/json"
        if stream:
            headers["accept"] = "text/event-stream"
        return Route(url=f"{config.base_url.rstrip('/')}{_MESSAGES_PATH}", headers=headers)

    @staticmethod
    def _headers(config: ProviderConfig, access: AccessContext) -> dict[str, str]:
        headers = {"anthropic-version": _API_VERSION, **config.headers}
        if access.api_key:
            headers["x-api-key"] = access.api_key
        elif access.bearer_token:
            headers["Authorization"] = f"Bearer {access.bearer_token}"
        return headers

    def build_payload(
        self, request: ChatRequest, *, stream: bool, access: AccessContext | None = None
    ) -> dict[str, Any]:
        system_text, msgs = split_system(request.messages)
        system_prompt = system_prompt_for(request)
        if system_prompt:
            system_text = "\n".join(part for part in (system_prompt, system_text) if part)

        max_tokens = request.max_tokens or _DEFAULT_MAX_TOKENS
        payload: dict[str, Any] = {
            "model": request.model,
            "max_tokens": max_tokens,
            "messages": [self._serialize_message(m) for m in msgs],
            "stream": stream,
        }
        if system_text:
            payload["system"] = system_text

        budget = request.reasoning_effort.thinking_budget
        if request.thinking_enabled and budget:
            payload["thinking"] = {"type": "enabled", "budget_tokens": budget}
            # max_tokens has to leave room for the answer after the thinking budget.
            payload["max_tokens"] = max(max_tokens, budget + _DEFAULT_MAX_TOKENS)
        elif request.temperature is not None:
            payload["temperature"] = request.temperature
        return payload

    @staticmethod
    def _serialize_message(message: ConversationMessage) -> dict[str, Any]:
        # Anthropic Messages API expects only user/assistant roles here.
        if message.role not in ("user", "assistant"):
            raise ProviderError("anthropic", f"Unsupported role: {message.role}")
        blocks: list[dict[str, Any]] = []
        for attachment in message.attachments:
            block_type = "image" if attachment.is_image else "document"
            blocks.append(
                {
                    "type": block_type,
                    "source": {
                        "type": "base64",
                        "media_type": attachment.mime_type,
                        "data": attachment.data,
                    },
                }
            )
        blocks.append({"type": "text", "text": message.content})
        return {"role": message.role, "content": blocks}

    def parse_line(self, line: str) -> StreamEvent | None:
        line = line.strip()
        if not line or line.startswith(":"):
            return KEEP_ALIVE
        if line.startswith("event:"):
            return None
        payload = strip_data_prefix(line)
        if payload is None:
            return None

        data = decode_json(payload)
        if not isinstance(data, dict):
            return None
        event_type = data.get("type")

        if event_type == "content_block_delta":
            delta = as_object(data.get("delta"), payload)
            if delta.get("type") == "text_delta" and as_text(delta.get("text")):
                return ContentEvent(text=delta["text"])
            if delta.get("type") == "thinking_delta" and as_text(delta.get("thinking")):
                return ContentEvent(thinking=delta["thinking"])
            return KEEP_ALIVE
        if event_type == "message_delta":
            stop_reason = as_text(as_object(data.get("delta"), payload).get("stop_reason"))
            if stop_reason:
                return DoneEvent(finish_reason=_STOP_REASONS.get(stop_reason, stop_reason))
            return KEEP_ALIVE
        if event_type == "message_stop":
            return DoneEvent()
        if event_type == "message_start":
            return CONNECTED
        if event_type == "error":
            return error_event_from_body(data.get("error"), recoverable_codes=_RECOVERABLE_ERRORS)
        if event_type in ("ping", "content_block_start", "content_block_stop"):
            return KEEP_ALIVE
        self._logger.debug("Ignoring unknown Anthropic event type: %s", event_type)
        return None

    def extract_text(self, data: dict[str, Any]) -> str:
        parts: list[str] = []
        for b in as_list(data.get("content")):
            block = as_object(b, allow_missing=False)
            if block.get("type") == "text":
                parts.append(as_text(block.get("text")))
        return "".join(parts)

    def models_route(self, config: ProviderConfig, access: AccessContext) -> Route:
        return Route(url=f"{config.base_url.rstrip('/')}{_MODELS_PATH}", headers=self._headers(config, access))

    def parse_models(self, data: dict[str, Any], config: ProviderConfig) -> list[AiModel]:
        return [
            AiModel(id=item["id"], name=item.get("display_name") or item["id"], provider_id=config.id)
            for item in data.get("data") or []
            if isinstance(item, dict) and item.get("id")
        ]
