"""PKCE (RFC 7636) verifier and challenge generation."""

from __future__ import annotations

import base64
import hashlib
import secrets
from dataclasses import dataclass

CODE_CHALLENGE_METHOD = "S256"

# 64 bytes encode to 86 characters, inside the 43-128 range the RFC allows.
VERIFIER_BYTES = 64
NONCE_BYTES = 32


@dataclass(frozen=True)
class PkcePair:
    verifier: str
    challenge: str


def base64url(data: bytes) -> str:
    """URL-safe base64 without padding."""
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def generate_verifier() -> str:
    return base64url(secrets.token_bytes(VERIFIER_BYTES))


def challenge_for(verifier: str) -> str:
    return base64url(hashlib.sha256(verifier.encode("ascii")).digest())


def generate() -> PkcePair:
    """Return a fresh verifier with its S256 challenge."""
    verifier = generate_verifier()
    return PkcePair(verifier=verifier, challenge=challenge_for(verifier))


def generate_nonce() -> str:
    return base64url(secrets.token_bytes(NONCE_BYTES))
