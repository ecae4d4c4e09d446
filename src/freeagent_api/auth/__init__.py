"""
Authentication and token management for the FreeAgent API.

Provides the OAuth2 authorization-code flow, token storage, and refresh.
"""

from freeagent_api.auth.oauth2 import (
    OAuth2TokenManager,
    OAuthCallbackServer,
    TokenData,
    TokenStore,
)

__all__ = [
    "OAuth2TokenManager",
    "OAuthCallbackServer",
    "TokenData",
    "TokenStore",
]
