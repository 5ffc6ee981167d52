"""Repo, repo path and review session registration."""

from __future__ import annotations

import logging
import os
import re
import uuid
from typing import TYPE_CHECKING

from pr_review_relay.models import Repo, RepoPath, ReviewSession
from pr_review_relay.storage import NOW_SQL, Storage

if TYPE_CHECKING:
    from pr_review_relay.signals import SignalCoordinator

logger = logging.getLogger("pr_review_relay")

# Matches "git@host:owner/repo.git", "https://host/owner/repo" and similar.
_REMOTE_RE = re.compile(r"[/:]([\w.-]+)/([\w.-]+?)(?:\.git)?/?$")


def parse_remote(remote_url: str | None) -> tuple[str, str] | None:
    """Extract ``(owner, repo)`` from a git remote URL."""
    if not remote_url:
        return None
    match = _REMOTE_RE.search(remote_url.strip())
    if match is None:
        return None
    return match.group(1), match.group(2)


def repo_display_name(repo_path: str, remote_url: str | None) -> str:
    """``owner/repo`` when the remote parses, else the path's base name."""
    parsed = parse_remote(remote_url)
    if parsed is not None:
        return f"{parsed[0]}/{parsed[1]}"
    return os.path.basename(repo_path.rstrip("/\\")) or repo_path


async def get_repo(storage: Storage, repo_id: str) -> Repo | None:
    row = await storage.query_one("SELECT * FROM repos WHERE id = ?", (repo_id,))
    return Repo.model_validate(row) if row is not None else None


async def repo_paths(storage: Storage, repo_id: str) -> list[RepoPath]:
    rows = await storage.query_many(
        "SELECT * FROM repo_paths WHERE repo_id = ? ORDER BY created_at, path",
        (repo_id,),
    )
    return [RepoPath.model_validate(row) for row in rows]


async def register_repo(
    storage: Storage,
    path: str,
    *,
    name: str | None = None,
    remote_url: str | None = None,
    base_branch: str = "main",
    signals: SignalCoordinator | None = None,
) -> tuple[Repo, RepoPath]:
    """Register a working directory, creating its logical repo when needed.

    Worktrees that share a remote URL resolve to the same repo. A path that is
    already registered keeps its repo and only has last_accessed_at refreshed.
    A newly added path gets the repo's signal file when ``signals`` is given.
    """
    existing_path = await storage.query_one("SELECT * FROM repo_paths WHERE path = ?", (path,))
    repo_row = None
    if existing_path is not None:
        repo_row = await storage.query_one(
            "SELECT * FROM repos WHERE id = ?", (existing_path["repo_id"],)
        )
    if repo_row is None and remote_url:
        repo_row = await storage.query_one(
            "SELECT * FROM repos WHERE remote_url = ?", (remote_url,)
        )

    if repo_row is None:
        repo_id = str(uuid.uuid4())
        await storage.execute(
            f"""INSERT INTO repos (id, remote_url, name, base_branch, created_at)
                VALUES (?, ?, ?, ?, {NOW_SQL})""",
            (repo_id, remote_url, name or repo_display_name(path, remote_url), base_branch),
        )
        repo_row = await storage.query_one("SELECT * FROM repos WHERE id = ?", (repo_id,))
        logger.info("register_repo -> new repo %s (%s)", repo_row["name"], path)
    repo = Repo.model_validate(repo_row)

    if existing_path is None:
        await storage.execute(
            f"""INSERT INTO repo_paths (id, repo_id, path, last_accessed_at, created_at)
                VALUES (?, ?, ?, {NOW_SQL}, {NOW_SQL})""",
            (str(uuid.uuid4()), repo.id, path),
        )
        logger.info("register_repo -> path %s added to %s", path, repo.name)
        if signals is not None:
            await signals.refresh_repo(repo.id)
    else:
        await storage.execute(
            f"UPDATE repo_paths SET last_accessed_at = {NOW_SQL} WHERE id = ?",
            (existing_path["id"],),
        )
    path_row = await storage.query_one("SELECT * FROM repo_paths WHERE path = ?", (path,))
    return repo, RepoPath.model_validate(path_row)


async def open_session(
    storage: Storage,
    repo_id: str,
    branch: str,
    base_branch: str | None = None,
    *,
    signals: SignalCoordinator | None = None,
) -> ReviewSession:
    """Get or create the review session for ``(repo_id, branch)``.

    A new session becomes the repo's active session, so the repo's signal
    files are recomputed when ``signals`` is given.
    """
    result = await storage.execute(
        f"""INSERT OR IGNORE INTO review_sessions (id, repo_id, branch, base_branch, created_at)
            VALUES (?, ?, ?, ?, {NOW_SQL})""",
        (str(uuid.uuid4()), repo_id, branch, base_branch),
    )
    row = await storage.query_one(
        "SELECT * FROM review_sessions WHERE repo_id = ? AND branch = ?",
        (repo_id, branch),
    )
    session = ReviewSession.model_validate(row)
    if result.changes:
        logger.info("open_session -> new session %s on %s", session.id[:8], branch)
        if signals is not None:
            await signals.refresh_repo(repo_id)
    return session
