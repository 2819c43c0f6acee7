"""
Interfaces of the interactive login collaborator.

The browser consent flow itself lives outside this package. A login
provider hands out a local callback server and runs the code grant
against it; the manager only needs to be able to close that server.
"""

import importlib
from typing import Any, Optional, Protocol, runtime_checkable

from log_utils import LogEvent, LogRecord, debug

from .models import Token


@runtime_checkable
class Closeable(Protocol):
    def close(self) -> Any: ...


@runtime_checkable
class LoginServerHandle(Protocol):
    server: Closeable


@runtime_checkable
class LoginProvider(Protocol):
    def login_server(self) -> LoginServerHandle: ...

    async def code_grant(
        self,
        login_url: str,
        client_id: str,
        client_secret: str,
        handle: LoginServerHandle,
    ) -> Token: ...


class ServerCloser:
    """Closes a login server at most once."""

    def __init__(self, server: Closeable, conn_id: Optional[str] = None):
        self._server = server
        self._conn_id = conn_id
        self.closed = False

    def close(self) -> bool:
        if self.closed:
            return False
        self.closed = True
        self._server.close()
        debug(LogRecord(
            event=LogEvent.OAUTH_LOGIN_SERVER_CLOSED.value,
            message="Closed login callback server",
            conn_id=self._conn_id,
        ))
        return True


def load_login_provider(path: str) -> LoginProvider:
    """Resolve a ``module:attribute`` path to a login provider.

    A class or factory function is called without arguments.
    """
    module_name, _, attribute = path.partition(":")
    if not module_name or not attribute:
        raise ValueError(f"Login provider path must look like 'module:attribute', got '{path}'")
    target = getattr(importlib.import_module(module_name), attribute)
    if isinstance(target, type) or (callable(target) and not isinstance(target, LoginProvider)):
        provider = target()
    else:
        provider = target
    if not isinstance(provider, LoginProvider):
        raise TypeError(f"'{path}' does not provide login_server() and code_grant()")
    return provider
