"""
OAuth token broker for ABAP cloud connections.

This package provides:
- An in-memory token store and the pending login registry
- Secret store persistence of stripped tokens
- Token refresh against the cloud platform UAA
- The login orchestration with dedup and logon timeout
"""

from .errors import (
    GrantError, LoginProviderUnavailable, LogonTimeoutError, OAuthError, TokenRefreshError
)
from .login_server import LoginProvider, LoginServerHandle, ServerCloser, load_login_provider
from .models import OAuthConfig, RemoteConfig, Token, format_key
from .oauth_client import OAuthClient, TokenHandle
from .oauth_manager import LOGON_TIMEOUT_SECONDS, OAuthManager
from .pending_grants import PendingGrantRegistry
from .secret_vault import SecretVault, deserialize_token, serialize_token, vault_id
from .token_store import TokenStore, strip

__all__ = [
    "GrantError", "LoginProviderUnavailable", "LogonTimeoutError", "OAuthError", "TokenRefreshError",
    "LoginProvider", "LoginServerHandle", "ServerCloser", "load_login_provider",
    "OAuthConfig", "RemoteConfig", "Token", "format_key",
    "OAuthClient", "TokenHandle",
    "LOGON_TIMEOUT_SECONDS", "OAuthManager",
    "PendingGrantRegistry",
    "SecretVault", "deserialize_token", "serialize_token", "vault_id",
    "TokenStore", "strip",
]
