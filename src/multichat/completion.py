"""One-shot, non-streaming completions (titles, summaries and similar short jobs)."""

from __future__ import annotations

import logging

import httpx

from multichat.access import AccessContext, resolve_access
from multichat.auth.manager import OAuthManager
from multichat.dialects import Dialect, dialect_for
from multichat.errors import EmptyStreamError, ParseFailureError, ProviderError
from multichat.events import ContentEvent, DoneEvent, ErrorEvent
from multichat.transport import classify_exception, extract_error_message, json_or_error
from multichat.types import (
    ChatRequest,
    ConversationMessage,
    Credentials,
    ProviderConfig,
    ProviderKind,
    ReasoningEffort,
)

logger = logging.getLogger(__name__)

COMPLETION_TEMPERATURE = 0.7
COMPLETION_MAX_TOKENS = 1024


async def generate_simple_completion(
    config: ProviderConfig,
    prompt: str,
    model: str,
    credentials: Credentials | None = None,
    *,
    client: httpx.AsyncClient,
    oauth: OAuthManager | None = None,
) -> str:
    """Send ``prompt`` as a single user message and return the stripped answer.

    Raises EmptyStreamError when the provider answers with no text.
    """
    request = ChatRequest(
        provider=config,
        model=model,
        messages=[ConversationMessage(role="user", content=prompt)],
        temperature=COMPLETION_TEMPERATURE,
        max_tokens=COMPLETION_MAX_TOKENS,
        reasoning_effort=ReasoningEffort.NONE,
    )
    dialect = dialect_for(config.kind)
    access = await resolve_access(config, credentials, oauth)

    if dialect.collect_completion:
        text = await _collect_stream(client, dialect, request, access)
    else:
        route = dialect.build_route(config, model, access, stream=False)
        payload = dialect.build_payload(request, stream=False, access=access)
        try:
            response = await client.post(route.url, headers=route.headers, json=payload)
        except httpx.HTTPError as exc:
            raise classify_exception(exc) from exc
        try:
            data = json_or_error(config.name, response)
        except ProviderError as exc:
            if exc.is_auth_error and oauth is not None and config.kind is ProviderKind.ANTIGRAVITY:
                oauth.invalidate_project()
            raise
        text = dialect.extract_text(data)

    text = text.strip()
    if not text:
        raise EmptyStreamError(f"{config.name} returned an empty completion")
    return text


async def _collect_stream(
    client: httpx.AsyncClient, dialect: Dialect, request: ChatRequest, access: AccessContext
) -> str:
    # Some Ollama proxies reject stream=false, so read the stream and join the deltas.
    config = request.provider
    route = dialect.build_route(config, request.model, access, stream=True)
    payload = dialect.build_payload(request, stream=True, access=access)
    chunks: list[str] = []
    try:
        async with client.stream("POST", route.url, headers=route.headers, json=payload) as response:
            if response.status_code >= 400:
                body = (await response.aread()).decode(errors="replace")
                raise ProviderError(
                    config.name,
                    extract_error_message(body, response.status_code),
                    status_code=response.status_code,
                )
            async for line in response.aiter_lines():
                try:
                    event = dialect.parse_line(line)
                except ParseFailureError as exc:
                    logger.debug("Skipping malformed completion line: %s", exc.payload)
                    continue
                if isinstance(event, ContentEvent):
                    chunks.append(event.text)
                elif isinstance(event, ErrorEvent):
                    status = int(event.code) if event.code and event.code.isdigit() else None
                    raise ProviderError(config.name, event.message, status_code=status)
                elif isinstance(event, DoneEvent):
                    break
    except httpx.HTTPError as exc:
        raise classify_exception(exc) from exc
    return "".join(chunks)
