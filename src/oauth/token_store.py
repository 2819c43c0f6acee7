"""In-memory map of connection ids to the last known valid token."""

from typing import Dict, Optional

from .models import Token


def strip(token: Token) -> Token:
    """Minimal projection of a token, enough to rebuild it after a restart."""
    return Token(
        access_token=token.access_token,
        refresh_token=token.refresh_token,
        token_type=token.token_type,
        expires_at=token.expires_at,
    )


class TokenStore:
    def __init__(self):
        self._tokens: Dict[str, Token] = {}

    def get(self, conn_id: str) -> Optional[Token]:
        return self._tokens.get(conn_id)

    def set(self, conn_id: str, token: Token) -> None:
        self._tokens[conn_id] = token

    def delete(self, conn_id: str) -> bool:
        return self._tokens.pop(conn_id, None) is not None

    def clear(self) -> None:
        self._tokens.clear()

    def __contains__(self, conn_id: str) -> bool:
        return conn_id in self._tokens

    def __len__(self) -> int:
        return len(self._tokens)
