"""Registry of in-flight interactive logins, at most one per connection."""

import asyncio
from typing import Dict, Optional

from .models import Token


class PendingGrantRegistry:
    def __init__(self):
        self._pending: Dict[str, "asyncio.Future[Token]"] = {}

    def register(self, conn_id: str, future: "asyncio.Future[Token]") -> None:
        current = self._pending.get(conn_id)
        if current is not None and current is not future and not current.done():
            raise RuntimeError(f"A login for connection '{conn_id}' is already in progress")
        self._pending[conn_id] = future

    def get(self, conn_id: str) -> Optional["asyncio.Future[Token]"]:
        return self._pending.get(conn_id)

    def clear(self, conn_id: str, future: Optional["asyncio.Future[Token]"] = None) -> None:
        """Remove the entry for ``conn_id``.

        When ``future`` is given the entry is only removed if it still
        refers to that future, so a late callback from a settled grant
        never drops its successor.
        """
        current = self._pending.get(conn_id)
        if current is None:
            return
        if future is None or current is future:
            del self._pending[conn_id]

    def cancel_all(self) -> int:
        cancelled = 0
        for future in self._pending.values():
            if not future.done():
                future.cancel()
                cancelled += 1
        self._pending.clear()
        return cancelled

    def __contains__(self, conn_id: str) -> bool:
        return conn_id in self._pending

    def __len__(self) -> int:
        return len(self._pending)
