"""HTTP client construction and failure classification."""

from __future__ import annotations

import json
from typing import Any

import httpx

from multichat.config import Settings, get_settings
from multichat.errors import NonJsonResponseError, ParseFailureError, ProviderError, TransportFailure
from multichat.events import CONNECTION_FAILED, TIMEOUT, ErrorEvent


def streaming_timeout(settings: Settings | None = None) -> httpx.Timeout:
    settings = settings or get_settings()
    return httpx.Timeout(
        connect=settings.connect_timeout_s,
        read=settings.stream_read_timeout_s,
        write=settings.write_timeout_s,
        pool=settings.pool_timeout_s,
    )


def request_timeout(settings: Settings | None = None) -> httpx.Timeout:
    settings = settings or get_settings()
    return httpx.Timeout(settings.request_timeout_s, connect=settings.connect_timeout_s)


def create_streaming_client(
    settings: Settings | None = None, transport: httpx.AsyncBaseTransport | None = None
) -> httpx.AsyncClient:
    """Client for long-lived streaming calls."""
    return httpx.AsyncClient(timeout=streaming_timeout(settings), transport=transport)


def create_request_client(
    settings: Settings | None = None, transport: httpx.AsyncBaseTransport | None = None
) -> httpx.AsyncClient:
    """Client for short one-shot calls (token endpoint, model lists, probes)."""
    return httpx.AsyncClient(timeout=request_timeout(settings), transport=transport)


def classify_exception(exc: Exception) -> TransportFailure:
    """Map an httpx failure onto a TransportFailure with a stable code."""
    if isinstance(exc, httpx.TimeoutException):
        return TransportFailure(str(exc) or "Request timed out", code=TIMEOUT)
    if isinstance(exc, (httpx.NetworkError, httpx.RemoteProtocolError)):
        return TransportFailure(str(exc) or "Connection failed", code=CONNECTION_FAILED)
    return TransportFailure(str(exc) or type(exc).__name__, recoverable=False)


def error_event_from_exception(exc: Exception) -> ErrorEvent:
    failure = classify_exception(exc)
    return ErrorEvent(message=str(failure), code=failure.code, recoverable=failure.recoverable)


def extract_error_message(body: str, status_code: int) -> str:
    """Pull a human message out of an error body, falling back to the raw text."""
    try:
        data = json.loads(body)
    except ValueError:
        return f"HTTP {status_code}: {body}"
    if isinstance(data, dict):
        error = data.get("error")
        if isinstance(error, dict) and isinstance(error.get("message"), str):
            return error["message"]
        if isinstance(error, str):
            return error
        if isinstance(data.get("message"), str):
            return data["message"]
    return f"HTTP {status_code}: {body}"


def looks_like_html(response: httpx.Response) -> bool:
    content_type = response.headers.get("content-type", "")
    return "application/json" not in content_type and response.text.lstrip().startswith("<")


def json_or_error(
    provider: str, response: httpx.Response, *, hint: str | None = None
) -> dict[str, Any]:
    """Return the JSON object body or raise a typed error."""
    if response.status_code >= 400:
        raise ProviderError(
            provider,
            extract_error_message(response.text, response.status_code) or response.reason_phrase,
            status_code=response.status_code,
        )
    if looks_like_html(response):
        raise NonJsonResponseError(
            provider,
            hint or "Server returned HTML instead of JSON. Check the base URL.",
            status_code=response.status_code,
        )
    try:
        data = response.json()
    except ValueError as exc:
        raise ParseFailureError(f"{provider}: invalid JSON response: {exc}", response.text) from exc
    if not isinstance(data, dict):
        raise ParseFailureError(f"{provider}: expected a JSON object", response.text)
    return data
