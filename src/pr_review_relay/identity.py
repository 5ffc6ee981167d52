"""Map a working directory to its registered repo and active review session."""

from __future__ import annotations

from dataclasses import dataclass

from pr_review_relay.errors import RepoNotFoundError, SessionNotFoundError
from pr_review_relay.models import Repo, RepoPath, ReviewSession
from pr_review_relay.storage import Storage


@dataclass(frozen=True)
class ResolvedRepo:
    repo: Repo
    repo_path: RepoPath
    session: ReviewSession


async def active_session(storage: Storage, repo_id: str) -> ReviewSession | None:
    """The most recently created session for a repo; sessions are never closed."""
    row = await storage.query_one(
        """SELECT * FROM review_sessions
           WHERE repo_id = ?
           ORDER BY created_at DESC, rowid DESC
           LIMIT 1""",
        (repo_id,),
    )
    return ReviewSession.model_validate(row) if row is not None else None


async def resolve_repo(storage: Storage, path: str) -> tuple[Repo, RepoPath]:
    """Exact-match lookup of a registered path. Raises RepoNotFoundError."""
    row = await storage.query_one(
        """SELECT rp.id AS path_id, rp.path, rp.last_accessed_at,
                  rp.created_at AS path_created_at, r.*
           FROM repo_paths rp
           JOIN repos r ON rp.repo_id = r.id
           WHERE rp.path = ?""",
        (path,),
    )
    if row is None:
        raise RepoNotFoundError(path)
    repo_path = RepoPath(
        id=row["path_id"],
        repo_id=row["id"],
        path=row["path"],
        last_accessed_at=row["last_accessed_at"],
        created_at=row["path_created_at"],
    )
    repo = Repo(
        id=row["id"],
        remote_url=row["remote_url"],
        name=row["name"],
        base_branch=row["base_branch"],
        created_at=row["created_at"],
    )
    return repo, repo_path


async def resolve(storage: Storage, path: str) -> ResolvedRepo:
    """Resolve ``path`` to its repo and active session.

    Raises RepoNotFoundError when the path was never registered and
    SessionNotFoundError when the repo has no session yet. Both mean the
    reviewer UI has not been opened for this repo.
    """
    repo, repo_path = await resolve_repo(storage, path)
    session = await active_session(storage, repo.id)
    if session is None:
        raise SessionNotFoundError(repo.name)
    return ResolvedRepo(repo=repo, repo_path=repo_path, session=session)
