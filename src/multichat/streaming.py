"""Cancellable streaming chat calls normalized into unified events."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import aclosing

import httpx

from multichat.access import resolve_access
from multichat.auth.manager import OAuthManager
from multichat.config import Settings
from multichat.dialects import Dialect, dialect_for
from multichat.errors import AuthRequiredError, MultichatError, ParseFailureError
from multichat.events import (
    AUTH_REQUIRED,
    CONNECTED,
    EMPTY_STREAM,
    PARSE_ERROR,
    TRUNCATED,
    ConnectedEvent,
    ContentEvent,
    DoneEvent,
    ErrorEvent,
    KeepAliveEvent,
    StreamEvent,
)
from multichat.transport import create_streaming_client, error_event_from_exception, extract_error_message
from multichat.types import ChatRequest, Credentials, ProviderKind

logger = logging.getLogger(__name__)


def resolve_stream_end(
    *,
    saw_content: bool,
    implicit_done: bool = True,
    last_failure: ParseFailureError | None = None,
    finish_reason: str | None = None,
) -> StreamEvent:
    """Decide the terminal event for a stream that closed without one.

    Some backends (Gemini, Code Assist) just close the connection when they are finished, so
    a close after content is treated as success. A close before any content is an empty
    stream, and a malformed final line is reported as a parse error. ``finish_reason`` is the
    reason a content chunk reported, if any.
    """
    if last_failure is not None:
        return ErrorEvent(message=str(last_failure), code=PARSE_ERROR)
    if not saw_content:
        return ErrorEvent(
            message="Stream ended without any content", code=EMPTY_STREAM, recoverable=True
        )
    if not implicit_done:
        return ErrorEvent(
            message="Stream ended before completion", code=TRUNCATED, recoverable=True
        )
    logger.debug("Connection closed after content without a terminal event; completing")
    return DoneEvent(finish_reason=finish_reason, implicit=True)


class _StreamCall:
    def __init__(self) -> None:
        self.cancelled = False
        self.pending: asyncio.Future[httpx.Response] | None = None
        self.response: httpx.Response | None = None

    def abort(self) -> None:
        self.cancelled = True
        pending, self.pending = self.pending, None
        if pending is not None and not pending.done():
            # Still connecting or waiting for headers.
            pending.cancel()

    async def cancel(self) -> None:
        self.abort()
        response, self.response = self.response, None
        if response is not None:
            await response.aclose()


class StreamController:
    """Runs one streaming call at a time; starting a new one cancels the previous."""

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        *,
        oauth: OAuthManager | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._owns_client = client is None
        self._client = client or create_streaming_client(settings)
        self._oauth = oauth
        self._active: _StreamCall | None = None

    async def aclose(self) -> None:
        await self.cancel()
        if self._owns_client:
            await self._client.aclose()

    async def cancel(self) -> None:
        """Stop the active stream; no event is delivered after this returns."""
        call = self._active
        if call is not None:
            await call.cancel()

    def stream(
        self, request: ChatRequest, credentials: Credentials | None = None
    ) -> AsyncIterator[StreamEvent]:
        """Return a single-pass async iterator of events for the request."""
        previous = self._active
        call = _StreamCall()
        self._active = call
        if previous is not None:
            previous.abort()

        async def _gen() -> AsyncIterator[StreamEvent]:
            try:
                if previous is not None:
                    await previous.cancel()
                async with aclosing(self._run(call, request, credentials)) as events:
                    async for event in events:
                        if call.cancelled:
                            return
                        yield event
            finally:
                if self._active is call:
                    self._active = None

        return _gen()

    async def _run(
        self, call: _StreamCall, request: ChatRequest, credentials: Credentials | None
    ) -> AsyncIterator[StreamEvent]:
        config = request.provider
        dialect = dialect_for(config.kind)

        try:
            access = await resolve_access(config, credentials, self._oauth)
            if call.cancelled:
                return
            route = dialect.build_route(config, request.model, access, stream=True)
            payload = dialect.build_payload(request, stream=True, access=access)
        except AuthRequiredError as exc:
            yield ErrorEvent(message=str(exc), code=AUTH_REQUIRED, recoverable=True)
            return
        except MultichatError as exc:
            yield ErrorEvent(message=str(exc), recoverable=exc.recoverable)
            return

        logger.debug("Opening %s stream to %s", dialect.name, route.url)
        http_request = self._client.build_request(
            "POST", route.url, headers=route.headers, json=payload
        )
        try:
            response = await self._send(call, http_request)
            if response is None:
                return
            try:
                if response.status_code >= 400:
                    body = await response.aread()
                    yield self._http_error(request, response.status_code, body.decode(errors="replace"))
                    return

                yield CONNECTED
                async with aclosing(self._read_events(call, dialect, response)) as events:
                    async for event in events:
                        yield event
            finally:
                call.response = None
                await response.aclose()
        except (httpx.HTTPError, httpx.StreamError) as exc:
            if call.cancelled:
                # Closing the response from cancel() surfaces here as a read error.
                return
            logger.debug("Stream to %s failed: %s", route.url, exc)
            yield error_event_from_exception(exc)

    async def _send(self, call: _StreamCall, http_request: httpx.Request) -> httpx.Response | None:
        """Send inside a task so cancel() can abort the call before response headers arrive."""
        pending = asyncio.ensure_future(self._client.send(http_request, stream=True))
        call.pending = pending
        try:
            response = await pending
        except asyncio.CancelledError:
            if call.cancelled and pending.cancelled():
                return None
            raise
        finally:
            call.pending = None
        if call.cancelled:
            await response.aclose()
            return None
        call.response = response
        return response

    async def _read_events(
        self, call: _StreamCall, dialect: Dialect, response: httpx.Response
    ) -> AsyncIterator[StreamEvent]:
        saw_content = False
        finish_reason: str | None = None
        last_failure: ParseFailureError | None = None

        async for line in response.aiter_lines():
            if call.cancelled:
                return
            try:
                event = dialect.parse_line(line)
            except ParseFailureError as exc:
                logger.debug("Skipping malformed %s line: %s", dialect.name, exc.payload)
                last_failure = exc
                continue
            if event is None or isinstance(event, (KeepAliveEvent, ConnectedEvent)):
                continue

            last_failure = None
            if isinstance(event, ContentEvent):
                finish_reason = event.finish_reason or finish_reason
                yield event.model_copy(update={"is_first": not saw_content})
                saw_content = True
                continue
            if isinstance(event, DoneEvent) and event.finish_reason is None and finish_reason:
                event = event.model_copy(update={"finish_reason": finish_reason})
            yield event
            return

        if not call.cancelled:
            yield resolve_stream_end(
                saw_content=saw_content,
                implicit_done=dialect.implicit_done,
                last_failure=last_failure,
                finish_reason=finish_reason,
            )

    def _http_error(self, request: ChatRequest, status_code: int, body: str) -> ErrorEvent:
        message = extract_error_message(body, status_code)
        logger.debug("%s answered HTTP %s: %s", request.provider.name, status_code, message)
        if (
            status_code in (401, 403)
            and self._oauth is not None
            and request.provider.kind is ProviderKind.ANTIGRAVITY
        ):
            self._oauth.invalidate_project()
        return ErrorEvent.from_http_status(status_code, message)
