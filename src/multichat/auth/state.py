"""Pending authorization state and its redirect-safe encoding.

The encoded token is plain base64 of JSON. It correlates the callback with the flow that
started it; it is not signed, and the manager only trusts a callback whose nonce it issued
itself and has not consumed yet.
"""

from __future__ import annotations

import base64
import binascii
import json
import time

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from multichat.errors import InvalidCallbackError

DEFAULT_MAX_AGE_S = 10 * 60


class OAuthState(BaseModel):
    """One in-flight authorization round-trip."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    verifier: str = Field(alias="v")
    provider_id: str = Field(alias="p")
    nonce: str = Field(alias="n")
    project_id_hint: str | None = Field(default=None, alias="h")
    created_at: float = Field(default_factory=time.time, alias="t")

    def is_expired(self, max_age_s: float = DEFAULT_MAX_AGE_S, now: float | None = None) -> bool:
        now = time.time() if now is None else now
        return now - self.created_at > max_age_s


def encode(state: OAuthState) -> str:
    payload = state.model_dump_json(by_alias=True, exclude_none=True).encode("utf-8")
    return base64.urlsafe_b64encode(payload).rstrip(b"=").decode("ascii")


def decode(token: str) -> OAuthState:
    """Decode a state token; raises InvalidCallbackError on anything malformed."""
    if not token:
        raise InvalidCallbackError("empty state parameter")
    padded = token + "=" * (-len(token) % 4)
    try:
        raw = base64.urlsafe_b64decode(padded.encode("ascii"))
        data = json.loads(raw.decode("utf-8"))
        return OAuthState.model_validate(data)
    except (binascii.Error, UnicodeError, ValueError, ValidationError) as exc:
        raise InvalidCallbackError("malformed state parameter") from exc
