"""Gemini ``generateContent`` dialect, over an API key or the OAuth-gated Code Assist backend."""

from __future__ import annotations

import logging
from typing import Any

from multichat.access import AccessContext
from multichat.auth import google
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
from multichat.errors import AuthRequiredError
from multichat.events import (
    FINISH_CONTENT_FILTER,
    FINISH_LENGTH,
    FINISH_STOP,
    KEEP_ALIVE,
    ContentEvent,
    DoneEvent,
    ErrorEvent,
    StreamEvent,
)
from multichat.types import AiModel, ChatRequest, ConversationMessage, ProviderConfig

MAX_OUTPUT_TOKENS = 64_000

_FINISH_REASONS = {
    "MAX_TOKENS": FINISH_LENGTH,
    "SAFETY": FINISH_CONTENT_FILTER,
    "RECITATION": FINISH_CONTENT_FILTER,
    "PROHIBITED_CONTENT": FINISH_CONTENT_FILTER,
}
_SAFETY_CATEGORIES = (
    "HARM_CATEGORY_HARASSMENT",
    "HARM_CATEGORY_HATE_SPEECH",
    "HARM_CATEGORY_SEXUALLY_EXPLICIT",
    "HARM_CATEGORY_DANGEROUS_CONTENT",
)
_RECOVERABLE_STATUSES = ("RESOURCE_EXHAUSTED", "UNAVAILABLE", "INTERNAL", "DEADLINE_EXCEEDED")


def map_finish_reason(reason: str) -> str:
    return _FINISH_REASONS.get(reason.upper(), FINISH_STOP)


class GeminiDialect(Dialect):
    """SSE stream of ``GenerateContentResponse`` chunks, no end sentinel."""

    name = "gemini"
    _logger = logging.getLogger(__name__)

    def build_route(
        self, config: ProviderConfig, model: str, access: AccessContext, *, stream: bool
    ) -> Route:
        base = config.base_url.rstrip("/")
        if stream:
            url = f"{base}/v1beta/models/{model}:streamGenerateContent?alt=sse"
        else:
            url = f"{base}/v1beta/models/{model}:generateContent"
        headers = {"Content-Type": "application/json", **config.headers}
        if stream:
            headers["Accept"] = "text/event-stream"
        if access.api_key:
            headers["x-goog-api-key"] = access.api_key
        return Route(url=url, headers=headers)

    def build_payload(
        self, request: ChatRequest, *, stream: bool, access: AccessContext | None = None
    ) -> dict[str, Any]:
        return self._generate_request(request)

    def _generate_request(self, request: ChatRequest) -> dict[str, Any]:
        inline_system, history = split_system(request.messages)
        instructions = [part for part in self._system_parts(request) if part]
        if inline_system:
            instructions.append(inline_system)

        generation: dict[str, Any] = {
            "maxOutputTokens": request.max_tokens or MAX_OUTPUT_TOKENS,
        }
        if request.temperature is not None:
            generation["temperature"] = request.temperature
        if request.thinking_enabled:
            generation["thinkingConfig"] = {
                "thinkingBudget": request.reasoning_effort.thinking_budget,
                "includeThoughts": True,
            }

        body: dict[str, Any] = {
            "contents": [self._serialize_message(m) for m in history],
            "generationConfig": generation,
            "safetySettings": [
                {"category": category, "threshold": "BLOCK_NONE"} for category in _SAFETY_CATEGORIES
            ],
        }
        if instructions:
            body["systemInstruction"] = {"parts": [{"text": text} for text in instructions]}
        return body

    def _system_parts(self, request: ChatRequest) -> list[str | None]:
        return [system_prompt_for(request)]

    @staticmethod
    def _serialize_message(message: ConversationMessage) -> dict[str, Any]:
        parts: list[dict[str, Any]] = []
        if message.content:
            parts.append({"text": message.content})
        for attachment in message.attachments:
            parts.append({"inlineData": {"mimeType": attachment.mime_type, "data": attachment.data}})
        if not parts:
            parts.append({"text": ""})
        return {"role": "model" if message.role == "assistant" else "user", "parts": parts}

    def parse_line(self, line: str) -> StreamEvent | None:
        line = line.strip()
        if not line or line.startswith(":"):
            return KEEP_ALIVE
        payload = strip_data_prefix(line)
        if payload is None:
            return None

        data = decode_json(payload)
        if not isinstance(data, dict):
            self._logger.debug("Ignoring non-object streaming chunk: %s", payload)
            return None
        if data.get("error") is not None:
            return self._error_event(data["error"])

        body = self._unwrap(data)
        candidates = as_list(body.get("candidates"), payload)
        if not candidates:
            return KEEP_ALIVE
        candidate = as_object(candidates[0], payload, allow_missing=False)

        text_parts: list[str] = []
        thought_parts: list[str] = []
        for part in self._parts(candidate, payload):
            text = part.get("text")
            if not isinstance(text, str) or not text:
                continue
            (thought_parts if part.get("thought") is True else text_parts).append(text)

        finish_reason = as_text(candidate.get("finishReason"))
        mapped = map_finish_reason(finish_reason) if finish_reason else None
        if text_parts or thought_parts:
            return ContentEvent(
                text="".join(text_parts),
                thinking="".join(thought_parts) or None,
                finish_reason=mapped,
            )
        if mapped:
            return DoneEvent(finish_reason=mapped, model=as_text(body.get("modelVersion")) or None)
        return KEEP_ALIVE

    @staticmethod
    def _parts(candidate: dict[str, Any], payload: str | None = None) -> list[dict[str, Any]]:
        content = as_object(candidate.get("content"), payload)
        return [
            as_object(part, payload, allow_missing=False)
            for part in as_list(content.get("parts"), payload)
        ]

    @staticmethod
    def _unwrap(data: dict[str, Any]) -> dict[str, Any]:
        # Code Assist wraps each chunk as {"response": {...}}.
        response = data.get("response")
        return response if isinstance(response, dict) else data

    @staticmethod
    def _error_event(error: Any) -> ErrorEvent:
        event = error_event_from_body(error, recoverable_codes=_RECOVERABLE_STATUSES)
        if isinstance(error, dict) and not event.recoverable and error.get("status") in _RECOVERABLE_STATUSES:
            return event.model_copy(update={"recoverable": True})
        return event

    def extract_text(self, data: dict[str, Any]) -> str:
        body = self._unwrap(data)
        candidates = as_list(body.get("candidates"))
        if not candidates:
            return ""
        for part in self._parts(as_object(candidates[0], allow_missing=False)):
            if part.get("thought") is True:
                continue
            text = part.get("text")
            if isinstance(text, str) and text:
                return text
        return ""

    def models_route(self, config: ProviderConfig, access: AccessContext) -> Route | None:
        headers = {"Accept": "application/json", **config.headers}
        if access.api_key:
            headers["x-goog-api-key"] = access.api_key
        return Route(url=f"{config.base_url.rstrip('/')}/v1beta/models", headers=headers)

    def parse_models(self, data: dict[str, Any], config: ProviderConfig) -> list[AiModel]:
        models = []
        for item in data.get("models") or []:
            if not isinstance(item, dict) or not item.get("name"):
                continue
            methods = item.get("supportedGenerationMethods")
            if methods is not None and "generateContent" not in methods:
                continue
            model_id = item["name"].removeprefix("models/")
            models.append(
                AiModel(id=model_id, name=item.get("displayName") or model_id, provider_id=config.id)
            )
        return models


class AntigravityDialect(GeminiDialect):
    """Gemini payloads wrapped in the Code Assist envelope, addressed by a resolved project."""

    name = "antigravity"
    _logger = logging.getLogger(__name__)

    def build_route(
        self, config: ProviderConfig, model: str, access: AccessContext, *, stream: bool
    ) -> Route:
        project = self._require_project(config, access)
        if stream:
            url = f"{project.endpoint}/v1internal:streamGenerateContent?alt=sse"
        else:
            url = f"{project.endpoint}/v1internal:generateContent"
        headers = google.request_headers(access.bearer_token or "", project.project_id)
        headers["Content-Type"] = "application/json"
        if stream:
            headers["Accept"] = "text/event-stream"
        return Route(url=url, headers=headers)

    def build_payload(
        self, request: ChatRequest, *, stream: bool, access: AccessContext | None = None
    ) -> dict[str, Any]:
        project = self._require_project(request.provider, access)
        return {
            "model": google.map_model_id(request.model),
            "project": project.project_id,
            "request": self._generate_request(request),
        }

    def _system_parts(self, request: ChatRequest) -> list[str | None]:
        return [google.SYSTEM_INSTRUCTION, system_prompt_for(request)]

    @staticmethod
    def _require_project(config: ProviderConfig, access: AccessContext | None) -> google.ProjectInfo:
        if access is None or access.project is None or not access.bearer_token:
            raise AuthRequiredError(config.name)
        return access.project

    def models_route(self, config: ProviderConfig, access: AccessContext) -> Route | None:
        return None

    def builtin_models(self, config: ProviderConfig) -> list[AiModel]:
        return google.builtin_models(config.id)
