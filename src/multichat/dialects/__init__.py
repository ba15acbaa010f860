"""Wire dialects for multichat."""

from multichat.types import ProviderKind

from .anthropic import AnthropicDialect
from .base import Dialect, Route, ensure_capabilities
from .gemini import AntigravityDialect, GeminiDialect
from .ollama import OllamaDialect
from .openai import OpenAIDialect

_DIALECTS: dict[ProviderKind, Dialect] = {
    ProviderKind.OPENAI_COMPATIBLE: OpenAIDialect(),
    ProviderKind.GITHUB_COPILOT: OpenAIDialect(),
    ProviderKind.OLLAMA: OllamaDialect(),
    ProviderKind.ANTHROPIC: AnthropicDialect(),
    ProviderKind.GEMINI: GeminiDialect(),
    ProviderKind.ANTIGRAVITY: AntigravityDialect(),
}


def dialect_for(kind: ProviderKind) -> Dialect:
    """Return the dialect that speaks to a provider kind."""
    return _DIALECTS[kind]


__all__ = [
    "Dialect",
    "Route",
    "ensure_capabilities",
    "dialect_for",
    "OpenAIDialect",
    "OllamaDialect",
    "GeminiDialect",
    "AntigravityDialect",
    "AnthropicDialect",
]
