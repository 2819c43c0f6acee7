"""
Durable per-connection token storage in the OS secret store.

Records live under ``vscode_git_<escaped connection name>`` with the OAuth
client id as the account name, so concurrent logins for different
connections never touch each other's entries.
"""

import asyncio
import json
from typing import Callable, Optional
from urllib.parse import quote

import keyring
from keyring.errors import PasswordDeleteError

from log_utils import LogEvent, LogRecord, debug, info, warning

from .models import OAuthConfig, RemoteConfig, Token, format_key
from .oauth_client import OAuthClient
from .token_store import strip

VAULT_NAMESPACE = "vscode_git_"

ClientFactory = Callable[[OAuthConfig], OAuthClient]


def vault_id(name: str) -> str:
    return f"{VAULT_NAMESPACE}{quote(format_key(name), safe='')}"


def serialize_token(token: Token) -> str:
    return json.dumps(strip(token).to_record())


def deserialize_token(text: Optional[str]) -> Optional[Token]:
    """Parse a vault record; anything unusable is treated as absent."""
    if not text:
        return None
    try:
        data = json.loads(text)
    except ValueError:
        return None
    if not isinstance(data, dict):
        return None
    for field in ("accessToken", "refreshToken", "tokenType"):
        value = data.get(field)
        if not value or not isinstance(value, str):
            return None
    return strip(Token.from_record(data))


def _default_client_factory(oauth: OAuthConfig) -> OAuthClient:
    return OAuthClient.for_login_url(oauth.login_url, oauth.client_id, oauth.client_secret)


class SecretVault:
    def __init__(self, client_factory: Optional[ClientFactory] = None):
        self._client_factory = client_factory or _default_client_factory

    async def save(self, conf: RemoteConfig, token: Token) -> None:
        oauth = conf.oauth
        if oauth is None or not oauth.is_complete():
            debug(LogRecord(
                event=LogEvent.OAUTH_VAULT_SAVE_SKIPPED.value,
                message="OAuth not configured, token not persisted",
                conn_id=conf.conn_id,
            ))
            return

        serialized = serialize_token(token)
        await asyncio.to_thread(keyring.set_password, vault_id(conf.name), oauth.client_id, serialized)
        info(LogRecord(
            event=LogEvent.OAUTH_VAULT_SAVED.value,
            message=f"Saved token for {conf.name} to the secret store",
            conn_id=conf.conn_id,
        ))

    async def load(self, conf: RemoteConfig) -> Optional[Token]:
        """Restore a stored token and refresh it before handing it back.

        Any failure along the way is a cache miss, so a stale or corrupt
        record degrades to an interactive login instead of an error.
        """
        oauth = conf.oauth
        if oauth is None or not oauth.is_complete():
            return None

        try:
            stored = await asyncio.to_thread(keyring.get_password, vault_id(conf.name), oauth.client_id)
            token = deserialize_token(stored)
            if token is None:
                debug(LogRecord(
                    event=LogEvent.OAUTH_VAULT_MISS.value,
                    message=f"No usable token stored for {conf.name}",
                    conn_id=conf.conn_id,
                ))
                return None

            client = self._client_factory(oauth)
            handle = client.create_token(token.access_token, token.refresh_token, token.token_type, {})
            refreshed = await handle.refresh()
        except Exception as e:
            warning(LogRecord(
                event=LogEvent.OAUTH_VAULT_RESTORE_FAILED.value,
                message=f"Failed to restore token for {conf.name} from the secret store",
                conn_id=conf.conn_id,
            ), exc=e)
            return None

        info(LogRecord(
            event=LogEvent.OAUTH_VAULT_RESTORED.value,
            message=f"Restored and refreshed token for {conf.name}",
            conn_id=conf.conn_id,
        ))
        return strip(refreshed)

    async def delete(self, conf: RemoteConfig) -> bool:
        oauth = conf.oauth
        if oauth is None or not oauth.is_complete():
            return False
        try:
            await asyncio.to_thread(keyring.delete_password, vault_id(conf.name), oauth.client_id)
        except PasswordDeleteError:
            return False
        info(LogRecord(
            event=LogEvent.OAUTH_VAULT_DELETED.value,
            message=f"Removed stored token for {conf.name}",
            conn_id=conf.conn_id,
        ))
        return True
