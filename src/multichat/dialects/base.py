"""Dialect interface shared by every wire format, plus small encoding helpers."""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from multichat.access import AccessContext
from multichat.errors import ParseFailureError, UnsupportedFeatureError
from multichat.events import ErrorEvent, StreamEvent
from multichat.types import AiModel, ChatRequest, ConversationMessage, ProviderConfig


@dataclass(frozen=True)
class Route:
    """Resolved URL and headers for one HTTP call."""

    url: str
    headers: dict[str, str] = field(default_factory=dict)


class Dialect(ABC):
    """Encoder and line parser for one backend family.

    Parsers are stateless: each line maps to at most one event and the controller owns
    everything that spans lines (first-content tracking, the implicit-Done rule).
    """

    name: str
    # Whether a clean connection close after content counts as success.
    implicit_done: bool = True
    # Whether one-shot completions must read a stream because the backend rejects stream=false.
    collect_completion: bool = False
    _logger = logging.getLogger(__name__)

    @abstractmethod
    def build_route(
        self, config: ProviderConfig, model: str, access: AccessContext, *, stream: bool
    ) -> Route:
        """Return the chat endpoint and headers for a request."""
        raise NotImplementedError

    @abstractmethod
    def build_payload(
        self, request: ChatRequest, *, stream: bool, access: AccessContext | None = None
    ) -> dict[str, Any]:
        """Encode a request body."""
        raise NotImplementedError

    @abstractmethod
    def parse_line(self, line: str) -> StreamEvent | None:
        """Decode one stream line; raises ParseFailureError for malformed JSON."""
        raise NotImplementedError

    @abstractmethod
    def extract_text(self, data: dict[str, Any]) -> str:
        """Return the answer text from a non-streaming response body."""
        raise NotImplementedError

    def models_route(self, config: ProviderConfig, access: AccessContext) -> Route | None:
        """Model listing endpoint, or None when the dialect ships a built-in list."""
        return None

    def parse_models(self, data: dict[str, Any], config: ProviderConfig) -> list[AiModel]:
        raise NotImplementedError

    def builtin_models(self, config: ProviderConfig) -> list[AiModel]:
        return []


def decode_json(payload: str) -> Any:
    try:
        return json.loads(payload)
    except json.JSONDecodeError as exc:
        raise ParseFailureError(f"Malformed JSON in stream: {exc.msg}", payload) from exc


def as_object(
    value: Any, payload: str | None = None, *, allow_missing: bool = True
) -> dict[str, Any]:
    """Return a nested JSON object; a missing field reads as empty.

    Any other type means the chunk does not have the documented shape and is reported as
    a ParseFailureError, the same as undecodable JSON. Array elements pass
    ``allow_missing=False`` since a null element is malformed too.
    """
    if value is None and allow_missing:
        return {}
    if not isinstance(value, dict):
        raise ParseFailureError(f"Expected a JSON object, got {type(value).__name__}", payload)
    return value


def as_list(value: Any, payload: str | None = None) -> list[Any]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise ParseFailureError(f"Expected a JSON array, got {type(value).__name__}", payload)
    return value


def as_text(value: Any) -> str:
    """Return a JSON string value; anything else reads as empty."""
    return value if isinstance(value, str) else ""


def error_event_from_body(error: Any, *, recoverable_codes: tuple[str, ...] = ()) -> ErrorEvent:
    """Turn an in-band ``error`` value into an ErrorEvent.

    A numeric code of 429 or 5xx is recoverable, as is any string code listed in
    ``recoverable_codes``.
    """
    if isinstance(error, dict):
        message = error.get("message") or json.dumps(error)
        raw_code = error.get("code", error.get("type"))
    else:
        message = str(error)
        raw_code = None
    code = str(raw_code) if raw_code is not None else None
    recoverable = False
    if isinstance(raw_code, int) or (isinstance(raw_code, str) and raw_code.isdigit()):
        status = int(raw_code)
        recoverable = status == 429 or status >= 500
    elif code in recoverable_codes:
        recoverable = True
    return ErrorEvent(message=str(message), code=code, recoverable=recoverable)


def strip_data_prefix(line: str) -> str | None:
    """Return the payload of an SSE ``data:`` line, or None for any other field."""
    if not line.startswith("data:"):
        return None
    return line[len("data:") :].strip()


def system_prompt_for(request: ChatRequest) -> str | None:
    prompt = request.system_prompt or request.provider.system_prompt
    return prompt or None


def split_system(messages: list[ConversationMessage]) -> tuple[str, list[ConversationMessage]]:
    system_parts: list[str] = []
    rest: list[ConversationMessage] = []
    for m in messages:
        if m.role == "system":
            system_parts.append(m.content)
        else:
            rest.append(m)
    return ("\n".join(system_parts), rest)


def ensure_capabilities(request: ChatRequest) -> None:
    """Fail fast if the request carries attachments the provider cannot take."""
    caps = request.provider.capabilities
    for message in request.messages:
        for attachment in message.attachments:
            if attachment.is_image and not caps.images:
                raise UnsupportedFeatureError("images")
            if attachment.mime_type == "application/pdf" and not caps.pdf:
                raise UnsupportedFeatureError("pdf")
