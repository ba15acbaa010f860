"""Ollama native ``/api/chat`` dialect (newline-delimited JSON)."""

from __future__ import annotations

import logging
from typing import Any

from multichat.access import AccessContext
from multichat.dialects.base import (
    Dialect,
    Route,
    as_object,
    as_text,
    decode_json,
    error_event_from_body,
    system_prompt_for,
)
from multichat.events import FINISH_STOP, KEEP_ALIVE, ContentEvent, DoneEvent, StreamEvent
from multichat.types import AiModel, ChatRequest, ConversationMessage, ProviderConfig

_CHAT_PATH = "/api/chat"
_TAGS_PATH = "/api/tags"


class OllamaDialect(Dialect):
    name = "ollama"
    collect_completion = True
    _logger = logging.getLogger(__name__)

    def build_route(
        self, config: ProviderConfig, model: str, access: AccessContext, *, stream: bool
    ) -> Route:
        headers = {"Content-Type": "application/json", **config.headers}
        if access.api_key:
            # Hosted Ollama proxies accept a bearer key; a local server ignores it.
            headers["Authorization"] = f"Bearer {access.api_key}"
        return Route(url=f"{config.base_url.rstrip('/')}{_CHAT_PATH}", headers=headers)

    def build_payload(
        self, request: ChatRequest, *, stream: bool, access: AccessContext | None = None
    ) -> dict[str, Any]:
        messages: list[dict[str, Any]] = []
        system_prompt = system_prompt_for(request)
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.extend(self._serialize_message(m) for m in request.messages)

        options: dict[str, Any] = {}
        if request.temperature is not None:
            options["temperature"] = request.temperature
        if request.max_tokens is not None:
            options["num_predict"] = request.max_tokens

        payload: dict[str, Any] = {
            "model": request.model,
            "messages": messages,
            "stream": stream,
            "think": request.thinking_enabled,
        }
        if options:
            payload["options"] = options
        return payload

    @staticmethod
    def _serialize_message(message: ConversationMessage) -> dict[str, Any]:
        body: dict[str, Any] = {"role": message.role, "content": message.content}
        images = [a.data for a in message.attachments if a.is_image]
        if images:
            body["images"] = images
        return body

    def parse_line(self, line: str) -> StreamEvent | None:
        line = line.strip()
        if not line:
            return KEEP_ALIVE
        data = decode_json(line)
        if not isinstance(data, dict):
            self._logger.debug("Ignoring non-object NDJSON line: %s", line)
            return None
        if data.get("error") is not None:
            return error_event_from_body(data["error"])

        message = as_object(data.get("message"), line)
        text = as_text(message.get("content"))
        thinking = as_text(message.get("thinking")) or None
        if data.get("done") is True:
            finish_reason = as_text(data.get("done_reason")) or FINISH_STOP
            if text or thinking:
                # Final chunk carried content; let the closing rule finish the stream.
                return ContentEvent(text=text, thinking=thinking, finish_reason=finish_reason)
            return DoneEvent(finish_reason=finish_reason, model=as_text(data.get("model")) or None)
        if text or thinking:
            return ContentEvent(text=text, thinking=thinking)
        return KEEP_ALIVE

    def extract_text(self, data: dict[str, Any]) -> str:
        return as_text(as_object(data.get("message")).get("content"))

    def models_route(self, config: ProviderConfig, access: AccessContext) -> Route:
        headers = {"Accept": "application/json", **config.headers}
        if access.api_key:
            headers["Authorization"] = f"Bearer {access.api_key}"
        return Route(url=f"{config.base_url.rstrip('/')}{_TAGS_PATH}", headers=headers)

    def parse_models(self, data: dict[str, Any], config: ProviderConfig) -> list[AiModel]:
        models = []
        for item in data.get("models") or []:
            model_id = item.get("name") or item.get("model") if isinstance(item, dict) else None
            if not model_id:
                continue
            models.append(
                AiModel(id=model_id, name=model_id.removesuffix(":latest"), provider_id=config.id)
            )
        return models
