"""Provider-agnostic domain records shared by encoders, parsers and the client."""

from __future__ import annotations

from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

Role = Literal["system", "user", "assistant"]


class ProviderKind(str, Enum):
    """Closed set of backend families; each maps to exactly one dialect."""

    OPENAI_COMPATIBLE = "openai_compatible"
    OLLAMA = "ollama"
    ANTHROPIC = "anthropic"
    GEMINI = "gemini"
    ANTIGRAVITY = "antigravity"
    GITHUB_COPILOT = "github_copilot"


class AuthKind(str, Enum):
    NONE = "none"
    API_KEY = "api_key"
    OAUTH = "oauth"


class ReasoningEffort(str, Enum):
    """Reasoning effort for models that support extended thinking."""

    NONE = "none"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    XHIGH = "xhigh"

    @property
    def enables_thinking(self) -> bool:
        return self is not ReasoningEffort.NONE

    @property
    def thinking_budget(self) -> int | None:
        return _THINKING_BUDGETS.get(self)


_THINKING_BUDGETS = {
    ReasoningEffort.LOW: 8192,
    ReasoningEffort.MEDIUM: 16384,
    ReasoningEffort.HIGH: 32768,
    ReasoningEffort.XHIGH: 32768,
}


class Capabilities(BaseModel):
    """Feature flags advertised by a provider configuration."""

    model_config = ConfigDict(frozen=True)

    streaming: bool = True
    images: bool = False
    pdf: bool = False
    reasoning: bool = False


class ProviderConfig(BaseModel):
    """Immutable provider record; never mutated by the streaming layer."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    kind: ProviderKind
    auth: AuthKind = AuthKind.API_KEY
    base_url: str
    default_model: str
    system_prompt: str | None = None
    headers: dict[str, str] = Field(default_factory=dict)
    capabilities: Capabilities = Field(default_factory=Capabilities)

    @classmethod
    def openai_template(cls) -> "ProviderConfig":
        return cls(
            id="openai-default",
            name="OpenAI",
            kind=ProviderKind.OPENAI_COMPATIBLE,
            base_url="https://api.openai.com",
            default_model="gpt-4o",
            capabilities=Capabilities(images=True, reasoning=True),
        )

    @classmethod
    def ollama_local_template(cls) -> "ProviderConfig":
        return cls(
            id="ollama-local",
            name="Local Ollama",
            kind=ProviderKind.OLLAMA,
            auth=AuthKind.NONE,
            base_url="http://localhost:11434",
            default_model="llama3.2",
            capabilities=Capabilities(images=True, reasoning=True),
        )

    @classmethod
    def openrouter_template(cls) -> "ProviderConfig":
        return cls(
            id="openrouter-default",
            name="OpenRouter",
            kind=ProviderKind.OPENAI_COMPATIBLE,
            base_url="https://openrouter.ai/api/v1",
            default_model="openai/gpt-4o",
            headers={"HTTP-Referer": "https://multichat.app"},
            capabilities=Capabilities(images=True, reasoning=True),
        )

    @classmethod
    def anthropic_template(cls) -> "ProviderConfig":
        return cls(
            id="anthropic-default",
            name="Anthropic",
            kind=ProviderKind.ANTHROPIC,
            base_url="https://api.anthropic.com",
            default_model="claude-sonnet-4-20250514",
            headers={"anthropic-beta": "output-128k-2025-02-19"},
            capabilities=Capabilities(images=True, reasoning=True),
        )

    @classmethod
    def gemini_template(cls) -> "ProviderConfig":
        return cls(
            id="gemini-default",
            name="Google Gemini",
            kind=ProviderKind.GEMINI,
            base_url="https://generativelanguage.googleapis.com",
            default_model="gemini-2.0-flash",
            capabilities=Capabilities(images=True, reasoning=True),
        )

    @classmethod
    def antigravity_template(cls) -> "ProviderConfig":
        # Imported lazily: the auth package depends on this module.
        from multichat.auth.google import ENDPOINT_PROD

        return cls(
            id="antigravity-default",
            name="Antigravity",
            kind=ProviderKind.ANTIGRAVITY,
            auth=AuthKind.OAUTH,
            base_url=ENDPOINT_PROD,
            default_model="antigravity-claude-sonnet-4-5",
            capabilities=Capabilities(images=True, pdf=True, reasoning=True),
        )


class Attachment(BaseModel):
    """Binary attachment carried as base64."""

    model_config = ConfigDict(frozen=True)

    mime_type: str
    data: str

    @property
    def is_image(self) -> bool:
        return self.mime_type.lower().startswith("image/")

    @property
    def data_url(self) -> str:
        return f"data:{self.mime_type};base64,{self.data}"


class ConversationMessage(BaseModel):
    """Single chat message."""

    model_config = ConfigDict(frozen=True)

    role: Role
    content: str
    attachments: tuple[Attachment, ...] = ()


class Credentials(BaseModel):
    """Caller-held secrets for API-key providers; OAuth tokens live in the token store."""

    model_config = ConfigDict(frozen=True)

    api_key: str | None = None


class ChatRequest(BaseModel):
    """Normalized request shared by all dialect encoders."""

    provider: ProviderConfig
    model: str
    messages: list[ConversationMessage]
    system_prompt: str | None = None
    temperature: float | None = 0.7
    reasoning_effort: ReasoningEffort = ReasoningEffort.HIGH
    max_tokens: int | None = None

    @property
    def thinking_enabled(self) -> bool:
        return self.provider.capabilities.reasoning and self.reasoning_effort.enables_thinking


class AiModel(BaseModel):
    """Model entry returned by the model-list fetcher."""

    id: str
    name: str
    provider_id: str
