"""Errors raised while obtaining OAuth tokens."""

from typing import Optional


class OAuthError(Exception):
    """Base class for token acquisition failures."""


class LogonTimeoutError(OAuthError):
    """The interactive login did not complete before the logon timeout."""

    def __init__(self, conn_id: str, timeout: float):
        super().__init__("User logon timed out")
        self.conn_id = conn_id
        self.timeout = timeout


class GrantError(OAuthError):
    """The code grant exchange failed or produced an unusable token."""


class TokenRefreshError(OAuthError):
    """The refresh exchange against the token endpoint failed."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class LoginProviderUnavailable(OAuthError):
    """A fresh grant is needed but no login provider was configured."""
