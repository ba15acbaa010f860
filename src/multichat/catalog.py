"""Model listing across provider kinds."""

from __future__ import annotations

import logging
from urllib.parse import urlsplit

import httpx

from multichat.access import resolve_access
from multichat.auth.manager import OAuthManager
from multichat.config import Settings
from multichat.dialects import dialect_for
from multichat.transport import classify_exception, create_request_client, json_or_error
from multichat.types import AiModel, Credentials, ProviderConfig

logger = logging.getLogger(__name__)


class ModelCatalog:
    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        *,
        oauth: OAuthManager | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._owns_client = client is None
        self._client = client or create_request_client(settings)
        self._oauth = oauth

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def fetch_models(
        self, config: ProviderConfig, credentials: Credentials | None = None
    ) -> list[AiModel]:
        """Return the provider's models sorted by id.

        Raises AuthRequiredError, TransportFailure, ProviderError (NonJsonResponseError when
        the server answers with an HTML page) or ParseFailureError.
        """
        dialect = dialect_for(config.kind)
        builtin = dialect.builtin_models(config)
        if builtin:
            return sorted(builtin, key=lambda m: m.id)

        access = await resolve_access(config, credentials, self._oauth)
        route = dialect.models_route(config, access)
        if route is None:
            return []

        logger.debug("Listing models from %s", route.url)
        try:
            response = await self._client.get(route.url, headers=route.headers)
        except httpx.HTTPError as exc:
            raise classify_exception(exc) from exc

        path = urlsplit(route.url).path
        data = json_or_error(
            config.name,
            response,
            hint=(
                "Server returned HTML instead of JSON. Check that the base URL is correct "
                f"and that {path} is reachable."
            ),
        )
        return sorted(dialect.parse_models(data, config), key=lambda m: m.id)
