"""
OAuth routes used by IDE-side collaborators to obtain and drop tokens.
"""

import asyncio
from typing import Dict, Optional

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from log_utils import LogEvent, LogRecord, error
from oauth import (
    LoginProviderUnavailable,
    LogonTimeoutError,
    OAuthError,
    OAuthManager,
    RemoteConfig,
    format_key,
)
from scm import RepoStore


def create_oauth_router(
    oauth_manager: OAuthManager,
    connections: Dict[str, RemoteConfig],
    repo_store: Optional[RepoStore] = None,
) -> APIRouter:
    """Create OAuth router over the configured connections (keyed by connection id)."""
    router = APIRouter(prefix="/oauth", tags=["OAuth"])

    def _unknown(name: str) -> JSONResponse:
        return JSONResponse(status_code=404, content={"error": f"Connection '{name}' not found"})

    @router.get("/status")
    async def oauth_status() -> JSONResponse:
        repos = await asyncio.to_thread(repo_store.load) if repo_store is not None else []
        items = []
        for conn_id, conf in connections.items():
            items.append({
                "name": conf.name,
                "conn_id": conn_id,
                "oauth": conf.oauth is not None,
                "save_credentials": bool(conf.oauth and conf.oauth.save_credentials),
                "has_token": oauth_manager.has_token(conn_id),
                "pending": oauth_manager.is_pending(conn_id),
                "abapgit_repos": sum(1 for repo in repos if repo.conn_id == conn_id),
            })
        return JSONResponse(content={
            "connections": items,
            "summary": {
                "total": len(items),
                "oauth": sum(1 for item in items if item["oauth"]),
                "logged_on": sum(1 for item in items if item["has_token"]),
            },
        })

    @router.get("/token/{name}")
    async def future_token(name: str) -> JSONResponse:
        """Token if one exists or a login is running; never starts a login."""
        if format_key(name) not in connections:
            return _unknown(name)
        try:
            access_token = await oauth_manager.future_token(name)
        except OAuthError as e:
            return JSONResponse(status_code=502, content={"error": str(e)})
        if access_token is None:
            return JSONResponse(content={"status": "none"})
        return JSONResponse(content={"status": "success", "access_token": access_token})

    @router.post("/login/{name}")
    async def login(name: str) -> JSONResponse:
        conf = connections.get(format_key(name))
        if conf is None:
            return _unknown(name)
        do_login = oauth_manager.login(conf)
        if do_login is None:
            return JSONResponse(
                status_code=400,
                content={"error": f"Connection '{conf.name}' has no OAuth configuration"},
            )
        try:
            access_token = await do_login()
        except LogonTimeoutError as e:
            return JSONResponse(status_code=504, content={"error": str(e)})
        except LoginProviderUnavailable as e:
            return JSONResponse(status_code=503, content={"error": str(e)})
        except OAuthError as e:
            error(LogRecord(
                event=LogEvent.REQUEST_FAILURE.value,
                message=f"Login request for {conf.name} failed",
                conn_id=conf.conn_id,
            ), exc=e)
            return JSONResponse(status_code=502, content={"error": str(e)})
        return JSONResponse(content={"status": "success", "access_token": access_token})

    @router.delete("/tokens/{name}")
    async def logout(name: str) -> JSONResponse:
        conf = connections.get(format_key(name))
        if conf is None:
            return _unknown(name)
        removed = await oauth_manager.logout(conf)
        return JSONResponse(content={"status": "success", "removed": removed})

    return router
