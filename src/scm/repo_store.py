"""Workspace persistence of the abapGit repositories open in the IDE."""

import os
import threading
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import yaml

from log_utils import LogEvent, LogRecord, warning

REPOS_STORAGE_KEY = "abapGitRepos"


def scm_key(conn_id: str, repo_key: str) -> str:
    return f"abapGit_{conn_id}_{repo_key}"


@dataclass(frozen=True)
class StoredRepo:
    conn_id: str
    repo_key: str
    user: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {"connId": self.conn_id, "repoKey": self.repo_key}
        if self.user:
            data["user"] = self.user
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StoredRepo":
        return cls(conn_id=data["connId"], repo_key=data["repoKey"], user=data.get("user"))


class WorkspaceState:
    """Key-value state kept in a YAML file."""

    def __init__(self, path: str):
        self.path = Path(path)
        self._lock = threading.Lock()

    def _read(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        with open(self.path, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f)
        return data if isinstance(data, dict) else {}

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            return self._read().get(key, default)

    def update(self, key: str, value: Any) -> None:
        with self._lock:
            data = self._read()
            data[key] = value
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
            with open(tmp_path, 'w', encoding='utf-8') as f:
                yaml.safe_dump(data, f, sort_keys=True, allow_unicode=True)
            os.replace(tmp_path, self.path)


class RepoStore:
    """abapGit repositories attached to the workspace, one per ``scm_key``."""

    def __init__(self, state: WorkspaceState):
        self.state = state
        self._lock = threading.Lock()

    def load(self) -> List[StoredRepo]:
        repos = []
        for entry in self.state.get(REPOS_STORAGE_KEY, []) or []:
            try:
                repos.append(StoredRepo.from_dict(entry))
            except (KeyError, TypeError) as e:
                warning(LogRecord(
                    event=LogEvent.REPO_STATE_ENTRY_INVALID.value,
                    message=f"Skipping malformed abapGit repository entry: {entry!r}",
                ), exc=e)
        return repos

    def save(self, repos: Iterable[StoredRepo]) -> None:
        self.state.update(REPOS_STORAGE_KEY, [repo.to_dict() for repo in repos])

    def repos_for(self, conn_id: str) -> List[StoredRepo]:
        return [repo for repo in self.load() if repo.conn_id == conn_id]

    def add(self, repo: StoredRepo) -> None:
        """Attach a repository, replacing the entry with the same key."""
        key = scm_key(repo.conn_id, repo.repo_key)
        with self._lock:
            repos = {scm_key(r.conn_id, r.repo_key): r for r in self.load()}
            repos[key] = repo
            self.save(repos.values())

    def remove(self, conn_id: str, repo_key: str) -> bool:
        key = scm_key(conn_id, repo_key)
        with self._lock:
            repos = self.load()
            kept = [r for r in repos if scm_key(r.conn_id, r.repo_key) != key]
            if len(kept) == len(repos):
                return False
            self.save(kept)
        return True
