"""OAuth authorization-code + PKCE support."""

from .clients import OAuthClientConfig, oauth_client_for
from .google import ProjectInfo, ProjectResolver
from .manager import AuthorizationRequest, OAuthManager
from .store import InMemoryTokenStore, TokenField, TokenStore
from .tokens import AuthPhase, AuthStatus, OAuthTokens

__all__ = [
    "AuthorizationRequest",
    "AuthPhase",
    "AuthStatus",
    "InMemoryTokenStore",
    "OAuthClientConfig",
    "OAuthManager",
    "OAuthTokens",
    "ProjectInfo",
    "ProjectResolver",
    "TokenField",
    "TokenStore",
    "oauth_client_for",
]
