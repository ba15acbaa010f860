"""Runtime configuration read from the environment."""

from __future__ import annotations

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="MULTICHAT_", env_file=".env", extra="ignore")

    connect_timeout_s: float = 30.0
    # Thinking models can stay silent for minutes before the first token.
    stream_read_timeout_s: float = 300.0
    write_timeout_s: float = 30.0
    pool_timeout_s: float = 30.0
    request_timeout_s: float = 30.0

    redirect_scheme: str = "multichat"
    pending_auth_ttl_s: float = 600.0

    antigravity_client_id: str = Field(default="")
    antigravity_client_secret: str = Field(default="")
    antigravity_default_project_id: str = "rising-fact-p41fc"


@lru_cache
def get_settings() -> Settings:
    return Settings()
