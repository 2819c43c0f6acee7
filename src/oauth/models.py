"""
Token and connection configuration models.

Tokens are plain dataclasses (they are produced by the grant and refresh
exchanges and never validated from user input); connection configuration
comes from ``config.yaml`` and is validated with pydantic.
"""

import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


def format_key(name: str) -> str:
    """Normalize a connection name into the id used by every token map.

    The function is idempotent, so both raw names and ids can be passed.
    """
    return name.strip().lower()


@dataclass(frozen=True)
class Token:
    """Bearer credential for one remote connection."""
    access_token: str
    refresh_token: str
    token_type: str
    expires_at: Optional[int] = None  # Unix timestamp
    scope: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    def is_usable(self) -> bool:
        return bool(self.access_token and self.refresh_token and self.token_type)

    def to_record(self) -> Dict[str, Any]:
        """Camel-cased mapping used for the vault record."""
        record = {
            "accessToken": self.access_token,
            "refreshToken": self.refresh_token,
            "tokenType": self.token_type,
        }
        if self.expires_at is not None:
            record["expiresAt"] = self.expires_at
        return record

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "Token":
        expires_at = record.get("expiresAt")
        return cls(
            access_token=record["accessToken"],
            refresh_token=record["refreshToken"],
            token_type=record["tokenType"],
            expires_at=int(expires_at) if isinstance(expires_at, (int, float)) else None,
        )

    @classmethod
    def from_response(cls, payload: Dict[str, Any], previous: Optional["Token"] = None) -> "Token":
        """Build a token from an OAuth token endpoint response.

        Providers may omit ``refresh_token`` or ``token_type`` on refresh;
        those are carried over from ``previous``.
        """
        expires_in = payload.get("expires_in")
        expires_at = None
        if expires_in is not None:
            expires_at = int(time.time()) + int(expires_in)
        return cls(
            access_token=payload.get("access_token", ""),
            refresh_token=payload.get("refresh_token") or (previous.refresh_token if previous else ""),
            token_type=payload.get("token_type") or (previous.token_type if previous else ""),
            expires_at=expires_at,
            scope=payload.get("scope"),
            data=dict(payload),
        )


class OAuthConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    client_id: str = Field(alias="clientId")
    client_secret: str = Field(alias="clientSecret")
    login_url: str = Field(alias="loginUrl")
    save_credentials: bool = Field(default=False, alias="saveCredentials")

    def is_complete(self) -> bool:
        return bool(self.client_id and self.client_secret and self.login_url)


class RemoteConfig(BaseModel):
    """One remote ABAP connection as configured by the user."""
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    name: str
    url: str = ""
    username: Optional[str] = None
    oauth: Optional[OAuthConfig] = None

    @property
    def conn_id(self) -> str:
        return format_key(self.name)
