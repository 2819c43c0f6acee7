"""
OAuth provider client.

Only the pieces the token broker needs: wrapping stored credentials in a
handle and refreshing them against the provider's token endpoint.
"""

from typing import Any, Dict, Optional

import httpx

from log_utils import LogEvent, LogRecord, debug, error, info, mask_sensitive_string

from .errors import TokenRefreshError
from .models import Token

DEFAULT_TIMEOUT = 30


class TokenHandle:
    """A token bound to the client that can refresh it."""

    def __init__(self, client: "OAuthClient", token: Token):
        self.client = client
        self.token = token

    async def refresh(self) -> Token:
        return await self.client.refresh_token(self.token)


class OAuthClient:
    def __init__(
        self,
        authorization_uri: str,
        access_token_uri: str,
        redirect_uri: str,
        client_id: str,
        client_secret: str,
        proxy: Optional[str] = None,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        self.authorization_uri = authorization_uri
        self.access_token_uri = access_token_uri
        self.redirect_uri = redirect_uri
        self.client_id = client_id
        self.client_secret = client_secret
        self.proxy = proxy
        self.timeout = timeout

    @classmethod
    def for_login_url(cls, login_url: str, client_id: str, client_secret: str) -> "OAuthClient":
        """Client for a cloud platform UAA rooted at ``login_url``."""
        base = login_url.rstrip("/")
        return cls(
            authorization_uri=f"{base}/oauth/authorize",
            access_token_uri=f"{base}/oauth/token",
            redirect_uri="http://localhost/notfound",
            client_id=client_id,
            client_secret=client_secret,
        )

    def create_token(
        self,
        access_token: str,
        refresh_token: str,
        token_type: str,
        extra: Optional[Dict[str, Any]] = None,
    ) -> TokenHandle:
        token = Token(
            access_token=access_token,
            refresh_token=refresh_token,
            token_type=token_type,
            data=dict(extra or {}),
        )
        return TokenHandle(self, token)

    async def refresh_token(self, token: Token) -> Token:
        """Exchange the refresh token for a new access token."""
        if not token.refresh_token:
            raise TokenRefreshError("No refresh token available")

        params = {
            "grant_type": "refresh_token",
            "refresh_token": token.refresh_token,
        }
        headers = {
            "Content-Type": "application/x-www-form-urlencoded",
            "Accept": "application/json, application/x-www-form-urlencoded",
        }

        debug(LogRecord(
            event=LogEvent.OAUTH_REFRESH_REQUEST.value,
            message=f"Token refresh request to {self.access_token_uri}",
        ))

        client_kwargs = {"timeout": self.timeout}
        if self.proxy:
            client_kwargs["proxy"] = self.proxy

        try:
            async with httpx.AsyncClient(**client_kwargs) as client:
                response = await client.post(
                    self.access_token_uri,
                    data=params,
                    headers=headers,
                    auth=(self.client_id, self.client_secret),
                )
        except httpx.HTTPError as e:
            error(LogRecord(
                event=LogEvent.OAUTH_REFRESH_FAILED.value,
                message=f"Token refresh request failed: {e}",
            ))
            raise TokenRefreshError(f"Token refresh request failed: {e}") from e

        if not response.is_success:
            error_text = mask_sensitive_string(response.text[:200])
            error(LogRecord(
                event=LogEvent.OAUTH_REFRESH_FAILED.value,
                message=f"Token refresh failed: HTTP {response.status_code}",
                data={"status_code": response.status_code, "response": error_text},
            ))
            raise TokenRefreshError(
                f"HTTP {response.status_code}: {error_text}",
                status_code=response.status_code,
            )

        try:
            payload = response.json()
        except ValueError as e:
            raise TokenRefreshError("Token endpoint returned a non-JSON body") from e

        refreshed = Token.from_response(payload, previous=token)
        if not refreshed.is_usable():
            raise TokenRefreshError("Token endpoint returned an incomplete token")

        info(LogRecord(
            event=LogEvent.OAUTH_TOKEN_REFRESHED.value,
            message="Successfully refreshed access token",
        ))
        return refreshed
