"""Antigravity (Google OAuth gated Code Assist backend) constants and project resolution."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Sequence
from dataclasses import dataclass

import httpx

from multichat.types import AiModel

logger = logging.getLogger(__name__)

AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
TOKEN_URL = "https://oauth2.googleapis.com/token"
USERINFO_URL = "https://www.googleapis.com/oauth2/v1/userinfo"

SCOPES = (
    "https://www.googleapis.com/auth/cloud-platform",
    "https://www.googleapis.com/auth/userinfo.email",
    "https://www.googleapis.com/auth/userinfo.profile",
    "https://www.googleapis.com/auth/cclog",
    "https://www.googleapis.com/auth/experimentsandconfigs",
)
EXTRA_AUTH_PARAMS = {"access_type": "offline", "prompt": "consent"}

ENDPOINT_DAILY = "https://daily-cloudcode-pa.sandbox.googleapis.com"
ENDPOINT_AUTOPUSH = "https://autopush-cloudcode-pa.sandbox.googleapis.com"
ENDPOINT_PROD = "https://cloudcode-pa.googleapis.com"
ENDPOINT_FALLBACKS = (ENDPOINT_DAILY, ENDPOINT_AUTOPUSH, ENDPOINT_PROD)

VERSION = "1.15.8"
CLIENT_METADATA = {
    "ideType": "IDE_UNSPECIFIED",
    "platform": "PLATFORM_UNSPECIFIED",
    "pluginType": "GEMINI",
}
REQUEST_HEADERS = {
    "User-Agent": f"Mozilla/5.0 (Linux; Android) Antigravity/{VERSION}",
    "X-Goog-Api-Client": "google-cloud-sdk vscode_cloudshelleditor/0.1",
    "Client-Metadata": json.dumps(CLIENT_METADATA, separators=(",", ":")),
}

SYSTEM_INSTRUCTION = (
    "You are Antigravity, a powerful agentic AI coding assistant designed by the Google "
    "DeepMind team working on Advanced Agentic Coding.\n"
    "You are pair programming with a USER to solve their coding task. The task may require "
    "creating a new codebase, modifying or debugging an existing codebase, or simply "
    "answering a question.\n"
    "**Absolute paths only**\n"
    "**Proactiveness**"
)

_MODEL_ALIASES = (
    ("claude-opus-4-5-thinking", "claude-opus-4-5-20251101"),
    ("claude-sonnet-4-5-thinking", "claude-sonnet-4-5-20251022"),
    ("claude-sonnet-4-5", "claude-sonnet-4-5-20251022"),
    ("gemini-3-pro", "gemini-3.0-pro"),
    ("gemini-3-flash", "gemini-3.0-flash"),
)

BUILTIN_MODELS = (
    ("antigravity-claude-opus-4-5-thinking", "Claude Opus 4.5 Thinking"),
    ("antigravity-claude-sonnet-4-5-thinking", "Claude Sonnet 4.5 Thinking"),
    ("antigravity-claude-sonnet-4-5", "Claude Sonnet 4.5"),
    ("antigravity-gemini-3-pro", "Gemini 3 Pro"),
    ("antigravity-gemini-3-flash", "Gemini 3 Flash"),
)


def map_model_id(model: str) -> str:
    """Translate an app-facing model id to the backend's name; unknown ids pass through."""
    lowered = model.lower()
    for marker, api_name in _MODEL_ALIASES:
        if marker in lowered:
            return api_name
    return model


def builtin_models(provider_id: str) -> list[AiModel]:
    return [AiModel(id=model_id, name=name, provider_id=provider_id) for model_id, name in BUILTIN_MODELS]


def request_headers(access_token: str, project_id: str) -> dict[str, str]:
    headers = {
        "Authorization": f"Bearer {access_token}",
        "X-Goog-User-Project": project_id,
    }
    headers.update(REQUEST_HEADERS)
    return headers


@dataclass(frozen=True)
class ProjectInfo:
    endpoint: str
    project_id: str


def _project_id_from(data: object) -> str | None:
    if not isinstance(data, dict):
        return None
    project = data.get("cloudaicompanionProject")
    if isinstance(project, dict):
        project = project.get("id")
    if isinstance(project, str) and project.strip():
        return project.strip()
    return None


class ProjectResolver:
    """Finds the Code Assist endpoint and project id for an access token.

    Endpoints are probed in order and the first one that reports a project wins. Resolution
    never fails: when every probe fails the default project is paired with the last endpoint
    tried. A stored project hint skips probing and is paired with the production endpoint.
    The result is cached until ``invalidate`` is called; a hint that was in use when the cache
    was invalidated is not trusted again and the next call probes.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        default_project_id: str,
        endpoints: Sequence[str] = ENDPOINT_FALLBACKS,
        hint_endpoint: str = ENDPOINT_PROD,
    ) -> None:
        if not endpoints:
            raise ValueError("at least one endpoint is required")
        self._client = client
        self._default_project_id = default_project_id
        self._endpoints = tuple(endpoints)
        self._hint_endpoint = hint_endpoint
        self._cached: ProjectInfo | None = None
        self._cached_from_hint = False
        self._rejected_hints: set[str] = set()
        self._lock = asyncio.Lock()

    @property
    def cached(self) -> ProjectInfo | None:
        return self._cached

    def invalidate(self) -> None:
        if self._cached is not None:
            logger.debug("Dropping cached project info for %s", self._cached.endpoint)
            if self._cached_from_hint:
                self._rejected_hints.add(self._cached.project_id)
        self._cached = None
        self._cached_from_hint = False

    async def resolve(self, access_token: str, hint: str | None = None) -> ProjectInfo:
        if self._cached is not None:
            return self._cached
        async with self._lock:
            if self._cached is not None:
                return self._cached
            if hint and hint not in self._rejected_hints:
                info = ProjectInfo(endpoint=self._hint_endpoint, project_id=hint)
                self._cached_from_hint = True
            else:
                if hint:
                    logger.debug("Ignoring rejected project hint; probing endpoints")
                info = await self._probe_all(access_token)
                self._cached_from_hint = False
            self._cached = info
            return info

    async def _probe_all(self, access_token: str) -> ProjectInfo:
        endpoint = self._endpoints[0]
        for endpoint in self._endpoints:
            project_id = await self._probe(endpoint, access_token)
            if project_id is not None:
                logger.debug("Resolved project via %s", endpoint)
                return ProjectInfo(endpoint=endpoint, project_id=project_id)
        logger.warning("Project resolution failed on all endpoints; using default project")
        return ProjectInfo(endpoint=endpoint, project_id=self._default_project_id)

    async def _probe(self, endpoint: str, access_token: str) -> str | None:
        headers = {"Authorization": f"Bearer {access_token}", "Content-Type": "application/json"}
        headers.update(REQUEST_HEADERS)
        try:
            response = await self._client.post(
                f"{endpoint}/v1internal:loadCodeAssist",
                headers=headers,
                json={"metadata": CLIENT_METADATA},
            )
        except httpx.HTTPError as exc:
            logger.debug("Project probe to %s failed: %s", endpoint, exc)
            return None
        if response.status_code >= 400:
            logger.debug("Project probe to %s returned %s", endpoint, response.status_code)
            return None
        try:
            return _project_id_from(response.json())
        except ValueError:
            return None
