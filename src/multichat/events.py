"""Unified streaming events every dialect parser normalizes into."""

from __future__ import annotations

from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field

from multichat.errors import is_retryable_status

# Non-HTTP error codes carried by ErrorEvent.code.
AUTH_REQUIRED = "AUTH_REQUIRED"
CONNECTION_FAILED = "connection_failed"
TIMEOUT = "timeout"
PARSE_ERROR = "parse_error"
EMPTY_STREAM = "empty_stream"
TRUNCATED = "truncated"

FINISH_STOP = "stop"
FINISH_LENGTH = "length"
FINISH_CONTENT_FILTER = "content_filter"


class _Event(BaseModel):
    model_config = ConfigDict(frozen=True)

    @property
    def is_terminal(self) -> bool:
        return False


class ContentEvent(_Event):
    """A partial text delta. ``thinking`` holds reasoning text, kept apart from the answer.

    ``finish_reason`` is set when the backend reports why generation stopped on the same
    chunk as the last delta; the stream's Done carries it.
    """

    type: Literal["content"] = "content"
    text: str = ""
    thinking: str | None = None
    is_first: bool = False
    finish_reason: str | None = None


class DoneEvent(_Event):
    """Terminal success. ``implicit`` marks a Done synthesized at connection close."""

    type: Literal["done"] = "done"
    finish_reason: str | None = None
    model: str | None = None
    implicit: bool = False

    @property
    def is_terminal(self) -> bool:
        return True


class ErrorEvent(_Event):
    """Terminal failure."""

    type: Literal["error"] = "error"
    message: str
    code: str | None = None
    recoverable: bool = False

    @property
    def is_terminal(self) -> bool:
        return True

    @classmethod
    def from_http_status(cls, status_code: int, message: str) -> "ErrorEvent":
        return cls(
            message=message,
            code=str(status_code),
            recoverable=is_retryable_status(status_code),
        )


class ConnectedEvent(_Event):
    """Response headers arrived; no content yet."""

    type: Literal["connected"] = "connected"


class KeepAliveEvent(_Event):
    """Heartbeat or blank line."""

    type: Literal["keep_alive"] = "keep_alive"


StreamEvent = Annotated[
    Union[ContentEvent, DoneEvent, ErrorEvent, ConnectedEvent, KeepAliveEvent],
    Field(discriminator="type"),
]

CONNECTED = ConnectedEvent()
KEEP_ALIVE = KeepAliveEvent()
