"""
OAuth Manager for ABAP cloud connections.

Hands out access tokens per connection. Each login walks a fallback chain
and the first step that yields a token wins:

1. the in-memory token store,
2. a login already in flight for the same connection,
3. the secret store (restored tokens are always refreshed first),
4. a fresh interactive code grant, bounded by the logon timeout.

Fresh tokens are written back to the store and, when the connection asks
for it, persisted to the secret store by a supervised background task.
"""

import asyncio
from typing import Awaitable, Callable, Optional, Set

from log_utils import LogEvent, LogRecord, debug, error, info, warning

from .errors import GrantError, LoginProviderUnavailable, LogonTimeoutError, OAuthError
from .login_server import LoginProvider, ServerCloser
from .models import RemoteConfig, Token, format_key
from .pending_grants import PendingGrantRegistry
from .secret_vault import SecretVault
from .token_store import TokenStore

LOGON_TIMEOUT_SECONDS = 60.0

LoginFunction = Callable[[], Awaitable[str]]


class OAuthManager:
    """Owns the token store, the pending grants and the background saves."""

    def __init__(
        self,
        login_provider: Optional[LoginProvider] = None,
        token_store: Optional[TokenStore] = None,
        vault: Optional[SecretVault] = None,
        pending: Optional[PendingGrantRegistry] = None,
        logon_timeout: float = LOGON_TIMEOUT_SECONDS,
    ):
        self.login_provider = login_provider
        self.token_store = token_store if token_store is not None else TokenStore()
        self.vault = vault if vault is not None else SecretVault()
        self.pending = pending if pending is not None else PendingGrantRegistry()
        self.logon_timeout = logon_timeout
        self._background: Set[asyncio.Task] = set()

    def login(self, conf: RemoteConfig) -> Optional[LoginFunction]:
        """Deferred login for one connection, or None if it has no OAuth setup.

        The returned coroutine function can be awaited any number of times.
        """
        if conf.oauth is None:
            debug(LogRecord(
                event=LogEvent.OAUTH_NOT_CONFIGURED.value,
                message=f"Connection {conf.name} does not use OAuth",
                conn_id=conf.conn_id,
            ))
            return None

        async def do_login() -> str:
            token = await self.acquire(conf)
            return token.access_token

        return do_login

    async def acquire(self, conf: RemoteConfig) -> Token:
        if conf.oauth is None:
            raise OAuthError(f"Connection {conf.name} has no OAuth configuration")
        conn_id = conf.conn_id

        token = self._cached(conn_id)
        if token is not None:
            debug(LogRecord(
                event=LogEvent.OAUTH_TOKEN_CACHE_HIT.value,
                message="Using the token already held for this connection",
                conn_id=conn_id,
            ))
            return token

        pending = self.pending.get(conn_id)
        if pending is not None:
            return await self._join(conn_id, pending)

        return await asyncio.shield(self._start_login(conf))

    async def future_token(self, name: str) -> Optional[str]:
        """Access token if one exists or is being obtained; never starts a login."""
        conn_id = format_key(name)
        token = self._cached(conn_id)
        if token is not None:
            return token.access_token
        pending = self.pending.get(conn_id)
        if pending is None:
            return None
        token = await asyncio.shield(pending)
        return token.access_token

    def has_token(self, name: str) -> bool:
        return self._cached(format_key(name)) is not None

    def is_pending(self, name: str) -> bool:
        return format_key(name) in self.pending

    async def logout(self, conf: RemoteConfig) -> bool:
        removed = self.token_store.delete(conf.conn_id)
        if conf.oauth is not None and conf.oauth.save_credentials:
            removed = await self.vault.delete(conf) or removed
        info(LogRecord(
            event=LogEvent.OAUTH_LOGOUT.value,
            message=f"Logged out of {conf.name}",
            conn_id=conf.conn_id,
            data={"removed": removed},
        ))
        return removed

    async def wait_for_background(self) -> None:
        """Wait for secret store writes scheduled by earlier logins."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def shutdown(self) -> None:
        cancelled = self.pending.cancel_all()
        await self.wait_for_background()
        self.token_store.clear()
        info(LogRecord(
            event=LogEvent.OAUTH_MANAGER_SHUTDOWN.value,
            message="OAuth manager shut down",
            data={"cancelled_grants": cancelled},
        ))

    def _cached(self, conn_id: str) -> Optional[Token]:
        token = self.token_store.get(conn_id)
        if token is not None and token.is_usable():
            return token
        return None

    async def _join(self, conn_id: str, pending: "asyncio.Future[Token]") -> Token:
        debug(LogRecord(
            event=LogEvent.OAUTH_GRANT_JOINED.value,
            message="Waiting for the login already in progress",
            conn_id=conn_id,
        ))
        return await asyncio.shield(pending)

    async def _restore(self, conf: RemoteConfig) -> Optional[Token]:
        token = await self.vault.load(conf)
        if token is None:
            return None
        self.token_store.set(conf.conn_id, token)
        # The refresh may have rotated the refresh token.
        self._persist_in_background(conf, token)
        return token

    def _start_login(self, conf: RemoteConfig) -> "asyncio.Future[Token]":
        conn_id = conf.conn_id
        login = asyncio.ensure_future(self._obtain(conf))
        self.pending.register(conn_id, login)
        login.add_done_callback(lambda future: self._login_settled(conn_id, future))
        return login

    def _login_settled(self, conn_id: str, future: "asyncio.Future[Token]") -> None:
        self.pending.clear(conn_id, future)
        if not future.cancelled():
            # Mark the outcome as retrieved even if every waiter went away.
            future.exception()

    async def _obtain(self, conf: RemoteConfig) -> Token:
        """Vault restore, then a fresh grant; runs once per pending login."""
        if conf.oauth.save_credentials:
            token = await self._restore(conf)
            if token is not None:
                return token
        return await self._grant(conf)

    async def _grant(self, conf: RemoteConfig) -> Token:
        oauth = conf.oauth
        conn_id = conf.conn_id
        if self.login_provider is None:
            raise LoginProviderUnavailable(
                f"No login provider configured, cannot log on to {conf.name}"
            )

        try:
            handle = self.login_provider.login_server()
        except Exception as e:
            error(LogRecord(
                event=LogEvent.OAUTH_GRANT_FAILED.value,
                message=f"Could not start the login server for {conf.name}",
                conn_id=conn_id,
            ), exc=e)
            raise GrantError(f"Could not start the login server for {conf.name}: {e}") from e
        closer = ServerCloser(handle.server, conn_id)
        info(LogRecord(
            event=LogEvent.OAUTH_GRANT_STARTED.value,
            message=f"Starting interactive login for {conf.name}",
            conn_id=conn_id,
            data={"login_url": oauth.login_url, "timeout": self.logon_timeout},
        ))
        task = asyncio.ensure_future(self.login_provider.code_grant(
            oauth.login_url, oauth.client_id, oauth.client_secret, handle
        ))

        try:
            done, _ = await asyncio.wait({task}, timeout=self.logon_timeout)
        except asyncio.CancelledError:
            task.cancel()
            closer.close()
            raise

        if not done:
            closer.close()
            task.add_done_callback(self._grant_abandoned(conn_id))
            task.cancel()
            error(LogRecord(
                event=LogEvent.OAUTH_LOGON_TIMEOUT.value,
                message=f"User logon to {conf.name} timed out",
                conn_id=conn_id,
                data={"timeout": self.logon_timeout, "login_url": oauth.login_url},
            ))
            raise LogonTimeoutError(conn_id, self.logon_timeout)

        try:
            result = task.result()
        except OAuthError as e:
            error(LogRecord(
                event=LogEvent.OAUTH_GRANT_FAILED.value,
                message=f"Login to {conf.name} failed",
                conn_id=conn_id,
            ), exc=e)
            raise
        except Exception as e:
            error(LogRecord(
                event=LogEvent.OAUTH_GRANT_FAILED.value,
                message=f"Login to {conf.name} failed",
                conn_id=conn_id,
            ), exc=e)
            raise GrantError(f"Login to {conf.name} failed: {e}") from e

        token = Token.from_response(result) if isinstance(result, dict) else result
        if not isinstance(token, Token) or not token.is_usable():
            error(LogRecord(
                event=LogEvent.OAUTH_GRANT_FAILED.value,
                message=f"Login to {conf.name} returned an incomplete token",
                conn_id=conn_id,
            ))
            raise GrantError(f"Login to {conf.name} returned an incomplete token")

        self.token_store.set(conn_id, token)
        info(LogRecord(
            event=LogEvent.OAUTH_GRANT_SUCCEEDED.value,
            message=f"Logged on to {conf.name}",
            conn_id=conn_id,
        ))
        if oauth.save_credentials:
            self._persist_in_background(conf, token)
        return token

    @staticmethod
    def _grant_abandoned(conn_id: str) -> Callable[["asyncio.Future[Token]"], None]:
        def callback(task: "asyncio.Future[Token]") -> None:
            if task.cancelled():
                outcome = "cancelled"
            elif task.exception() is not None:
                outcome = type(task.exception()).__name__
            else:
                outcome = "token discarded"
            debug(LogRecord(
                event=LogEvent.OAUTH_GRANT_ABANDONED.value,
                message=f"Timed out login finished late: {outcome}",
                conn_id=conn_id,
            ))
        return callback

    def _persist_in_background(self, conf: RemoteConfig, token: Token) -> None:
        task = asyncio.ensure_future(self._safe_save(conf, token))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _safe_save(self, conf: RemoteConfig, token: Token) -> None:
        try:
            await self.vault.save(conf, token)
        except Exception as e:
            warning(LogRecord(
                event=LogEvent.OAUTH_VAULT_SAVE_FAILED.value,
                message=f"Failed to save token for {conf.name} to the secret store",
                conn_id=conf.conn_id,
            ), exc=e)
