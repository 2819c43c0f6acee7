"""
abapGit repository routes backed by the workspace state.
"""

import asyncio
from typing import Dict, Optional

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from log_utils import LogEvent, LogRecord, info
from oauth import RemoteConfig, format_key
from scm import RepoStore, StoredRepo, scm_key


class RepoRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    repo_key: str = Field(alias="repoKey", min_length=1)
    user: Optional[str] = None


def _repo_content(repo: StoredRepo) -> dict:
    return {"scm_id": scm_key(repo.conn_id, repo.repo_key), **repo.to_dict()}


def create_scm_router(repo_store: RepoStore, connections: Dict[str, RemoteConfig]) -> APIRouter:
    router = APIRouter(prefix="/scm", tags=["abapGit"])

    def _unknown(name: str) -> JSONResponse:
        return JSONResponse(status_code=404, content={"error": f"Connection '{name}' not found"})

    @router.get("/repos/{name}")
    async def list_repos(name: str) -> JSONResponse:
        conn_id = format_key(name)
        if conn_id not in connections:
            return _unknown(name)
        repos = await asyncio.to_thread(repo_store.repos_for, conn_id)
        return JSONResponse(content={"repos": [_repo_content(repo) for repo in repos]})

    @router.post("/repos/{name}")
    async def add_repo(name: str, request: RepoRequest) -> JSONResponse:
        conn_id = format_key(name)
        if conn_id not in connections:
            return _unknown(name)
        repo = StoredRepo(conn_id=conn_id, repo_key=request.repo_key, user=request.user)
        await asyncio.to_thread(repo_store.add, repo)
        info(LogRecord(
            event=LogEvent.REPO_STATE_UPDATED.value,
            message=f"Attached abapGit repository {repo.repo_key}",
            conn_id=conn_id,
        ))
        return JSONResponse(content=_repo_content(repo))

    @router.delete("/repos/{name}/{repo_key}")
    async def remove_repo(name: str, repo_key: str) -> JSONResponse:
        conn_id = format_key(name)
        if conn_id not in connections:
            return _unknown(name)
        removed = await asyncio.to_thread(repo_store.remove, conn_id, repo_key)
        if removed:
            info(LogRecord(
                event=LogEvent.REPO_STATE_UPDATED.value,
                message=f"Detached abapGit repository {repo_key}",
                conn_id=conn_id,
            ))
        return JSONResponse(content={"status": "success", "removed": removed})

    return router
