import asyncio
import unittest

import httpx

from multichat.catalog import ModelCatalog
from multichat.errors import AuthRequiredError, NonJsonResponseError, ProviderError, TransportFailure
from multichat.events import CONNECTION_FAILED
from multichat.types import Credentials, ProviderConfig

KEY = Credentials(api_key="sk-test")


class ModelCatalogTests(unittest.TestCase):
    def test_openai_models_sorted_by_id(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(
                200, json={"object": "list", "data": [{"id": "gpt-4o"}, {"id": "gpt-4.1"}, {"id": "o3"}]}
            )

        models = asyncio.run(_fetch(handler, ProviderConfig.openrouter_template(), KEY))
        self.assertEqual([m.id for m in models], ["gpt-4.1", "gpt-4o", "o3"])
        self.assertEqual(models[0].provider_id, "openrouter-default")
        self.assertEqual(str(seen[0].url), "https://openrouter.ai/api/v1/models")
        self.assertEqual(seen[0].headers["Authorization"], "Bearer sk-test")

    def test_ollama_tags_drop_latest_suffix(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            self.assertEqual(request.url.path, "/api/tags")
            return httpx.Response(200, json={"models": [{"name": "qwen3:latest"}, {"name": "llama3.2:3b"}]})

        models = asyncio.run(_fetch(handler, ProviderConfig.ollama_local_template()))
        self.assertEqual([(m.id, m.name) for m in models], [("llama3.2:3b", "llama3.2:3b"), ("qwen3:latest", "qwen3")])

    def test_gemini_and_anthropic_lists(self) -> None:
        def gemini(request: httpx.Request) -> httpx.Response:
            self.assertEqual(request.headers["x-goog-api-key"], "sk-test")
            return httpx.Response(
                200,
                json={
                    "models": [
                        {
                            "name": "models/gemini-2.0-flash",
                            "displayName": "Gemini 2.0 Flash",
                            "supportedGenerationMethods": ["generateContent"],
                        },
                        {"name": "models/embedding-001", "supportedGenerationMethods": ["embedContent"]},
                    ]
                },
            )

        models = asyncio.run(_fetch(gemini, ProviderConfig.gemini_template(), KEY))
        self.assertEqual([(m.id, m.name) for m in models], [("gemini-2.0-flash", "Gemini 2.0 Flash")])

        def anthropic(request: httpx.Request) -> httpx.Response:
            self.assertEqual(request.headers["x-api-key"], "sk-test")
            return httpx.Response(200, json={"data": [{"id": "claude-x", "display_name": "Claude X"}]})

        models = asyncio.run(_fetch(anthropic, ProviderConfig.anthropic_template(), KEY))
        self.assertEqual(models[0].name, "Claude X")

    def test_antigravity_uses_builtin_list(self) -> None:
        models = asyncio.run(_fetch(_unexpected, ProviderConfig.antigravity_template()))
        ids = [m.id for m in models]
        self.assertIn("antigravity-claude-sonnet-4-5", ids)
        self.assertEqual(ids, sorted(ids))

    def test_html_body_is_reported(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, text="<!DOCTYPE html><html></html>", headers={"content-type": "text/html"})

        with self.assertRaises(NonJsonResponseError) as ctx:
            asyncio.run(_fetch(handler, ProviderConfig.openai_template(), KEY))
        self.assertIn("/v1/models", str(ctx.exception))

    def test_errors(self) -> None:
        with self.assertRaises(ProviderError) as ctx:
            asyncio.run(_fetch(lambda r: httpx.Response(503, text="down"), ProviderConfig.openai_template(), KEY))
        self.assertEqual(ctx.exception.status_code, 503)
        self.assertTrue(ctx.exception.recoverable)

        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        with self.assertRaises(TransportFailure) as ctx:
            asyncio.run(_fetch(refuse, ProviderConfig.openai_template(), KEY))
        self.assertEqual(ctx.exception.code, CONNECTION_FAILED)

        with self.assertRaises(AuthRequiredError):
            asyncio.run(_fetch(_unexpected, ProviderConfig.openai_template()))


async def _fetch(handler, config: ProviderConfig, credentials: Credentials | None = None):
    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        return await ModelCatalog(client).fetch_models(config, credentials)


def _unexpected(request: httpx.Request) -> httpx.Response:
    raise AssertionError(f"unexpected request to {request.url}")


if __name__ == "__main__":
    unittest.main()
