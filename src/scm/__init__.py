"""abapGit source control state kept for the workspace."""

from .repo_store import REPOS_STORAGE_KEY, RepoStore, StoredRepo, WorkspaceState, scm_key

__all__ = ["REPOS_STORAGE_KEY", "RepoStore", "StoredRepo", "WorkspaceState", "scm_key"]
