"""Per-repo signal files: a filesystem hint that a repo has outstanding comments.

The database is always authoritative. A signal file only tells a watcher in
another process that it is worth querying the database; it is rewritten
whenever the outstanding count changes and removed when the count reaches
zero. Files live in one shared directory, named ``<slug>-<hash>.json``.
"""

from __future__ import annotations

import contextlib
import hashlib
import logging
import os
import re
from datetime import UTC, datetime, timedelta
from pathlib import Path

from pydantic import ValidationError

from pr_review_relay.errors import (
    CoordinationError,
    RepoNotFoundError,
    SessionNotFoundError,
    StorageError,
)
from pr_review_relay.identity import resolve
from pr_review_relay.models import OUTSTANDING_STATUSES, PendingReview, SignalRecord
from pr_review_relay.repos import get_repo, parse_remote, repo_display_name, repo_paths
from pr_review_relay.storage import Storage, parse_timestamp, utc_now

logger = logging.getLogger("pr_review_relay")

STALE_THRESHOLD_DAYS = 7
_UNSAFE_CHARS_RE = re.compile(r"[^\w.-]+")


def signal_file_name(repo_path: str, remote_url: str | None) -> str:
    """Deterministic file name for a (repo path, remote URL) pair."""
    parsed = parse_remote(remote_url)
    if parsed is not None:
        slug = f"{parsed[0]}-{parsed[1]}"
    else:
        slug = os.path.basename(repo_path.rstrip("/\\")) or "unknown-repo"
    slug = _UNSAFE_CHARS_RE.sub("-", slug).strip("-") or "unknown-repo"
    digest = hashlib.sha256(repo_path.encode("utf-8")).hexdigest()[:6]
    return f"{slug}-{digest}.json"


def parse_signal(text: str) -> SignalRecord:
    """Parse signal file content. Raises ValueError on malformed content."""
    try:
        return SignalRecord.model_validate_json(text)
    except ValidationError as exc:
        raise ValueError(str(exc)) from exc


def write_atomic(path: Path, content: str) -> None:
    """Write content to path atomically via temp file + os.replace()."""
    tmp = path.with_name(f".{path.name}.{os.getpid()}.tmp")
    try:
        tmp.write_text(content, encoding="utf-8")
        os.replace(tmp, path)
    except BaseException:
        with contextlib.suppress(OSError):
            tmp.unlink()
        raise


class SignalCoordinator:
    """Keeps signal files in step with the outstanding-comment count."""

    def __init__(
        self,
        storage: Storage,
        signals_dir: Path,
        stale_after: timedelta = timedelta(days=STALE_THRESHOLD_DAYS),
    ) -> None:
        self.storage = storage
        self.signals_dir = Path(signals_dir)
        self.stale_after = stale_after

    def signal_path(self, repo_path: str, remote_url: str | None) -> Path:
        return self.signals_dir / signal_file_name(repo_path, remote_url)

    # ---- file operations ----

    def read_signal(self, repo_path: str, remote_url: str | None) -> SignalRecord | None:
        """Return the current record, or None when absent or unreadable."""
        path = self.signal_path(repo_path, remote_url)
        try:
            return parse_signal(path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            return None

    def write_signal(self, record: SignalRecord, remote_url: str | None) -> bool:
        """Persist a record. Returns False when the file already held identical content."""
        path = self.signal_path(record.repo_path, remote_url)
        content = record.to_json()
        try:
            self.signals_dir.mkdir(parents=True, exist_ok=True)
            with contextlib.suppress(FileNotFoundError):
                if path.read_text(encoding="utf-8") == content:
                    return False
            write_atomic(path, content)
        except OSError as exc:
            raise CoordinationError("write", exc) from exc
        logger.debug("signal written: %s (pending=%d)", path.name, record.pending_count)
        return True

    def delete_signal(self, repo_path: str, remote_url: str | None) -> bool:
        """Remove the signal file. Idempotent; returns True if a file was removed."""
        path = self.signal_path(repo_path, remote_url)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError as exc:
            raise CoordinationError("delete", exc) from exc
        logger.debug("signal deleted: %s", path.name)
        return True

    # ---- recompute from database state ----

    async def pending_count(self, session_id: str) -> int:
        placeholders = ", ".join("?" for _ in OUTSTANDING_STATUSES)
        return await self.storage.count(
            f"""SELECT COUNT(*) AS n FROM comments
                WHERE session_id = ? AND status IN ({placeholders})""",
            (session_id, *[str(status) for status in OUTSTANDING_STATUSES]),
        )

    async def recompute(self, repo_path: str, remote_url: str | None) -> SignalRecord | None:
        """Rewrite or delete the signal for ``repo_path`` from current DB state.

        Returns the record now on disk, or None when the file was removed.
        Raises CoordinationError on filesystem failures and StorageError on
        database failures.
        """
        try:
            resolved = await resolve(self.storage, repo_path)
        except (RepoNotFoundError, SessionNotFoundError):
            self.delete_signal(repo_path, remote_url)
            return None

        count = await self.pending_count(resolved.session.id)
        if count == 0:
            self.delete_signal(repo_path, remote_url)
            return None

        previous = self.read_signal(repo_path, remote_url)
        record = SignalRecord(
            repo_path=repo_path,
            session_id=resolved.session.id,
            pending_count=count,
            created_at=previous.created_at if previous is not None else utc_now(),
            remote_url=remote_url,
        )
        self.write_signal(record, remote_url)
        return record

    async def refresh_repo(self, repo_id: str) -> None:
        """Recompute the signal of every registered path of a repo.

        Failures are logged and swallowed: the comment mutation that triggered
        the refresh has already been committed.
        """
        try:
            repo = await get_repo(self.storage, repo_id)
            if repo is None:
                return
            for repo_path in await repo_paths(self.storage, repo_id):
                try:
                    await self.recompute(repo_path.path, repo.remote_url)
                except CoordinationError as exc:
                    logger.warning("signal refresh failed for %s: %s", repo_path.path, exc)
        except StorageError as exc:
            logger.warning("signal refresh skipped for repo %s: %s", repo_id, exc)

    async def refresh_session(self, session_id: str) -> None:
        try:
            row = await self.storage.query_one(
                "SELECT repo_id FROM review_sessions WHERE id = ?", (session_id,)
            )
        except StorageError as exc:
            logger.warning("signal refresh skipped for session %s: %s", session_id, exc)
            return
        if row is not None:
            await self.refresh_repo(row["repo_id"])

    # ---- directory scan ----

    def _is_stale(self, record: SignalRecord, now: datetime) -> bool:
        try:
            created = parse_timestamp(record.created_at)
        except ValueError:
            return False
        return created < now - self.stale_after

    def _scan(self) -> tuple[list[SignalRecord], int]:
        """Read every signal file, deleting stale ones. Invalid files are skipped."""
        try:
            names = sorted(os.listdir(self.signals_dir))
        except FileNotFoundError:
            return [], 0
        except OSError as exc:
            logger.warning("cannot list signals dir %s: %s", self.signals_dir, exc)
            return [], 0

        now = datetime.now(UTC)
        records: list[SignalRecord] = []
        removed = 0
        for name in names:
            if not name.endswith(".json") or name.startswith("."):
                continue
            path = self.signals_dir / name
            try:
                record = parse_signal(path.read_text(encoding="utf-8"))
            except (OSError, ValueError):
                continue
            if self._is_stale(record, now):
                try:
                    path.unlink()
                except OSError as exc:
                    logger.warning("cannot remove stale signal %s: %s", name, exc)
                else:
                    removed += 1
                    logger.info("stale signal removed: %s", name)
                continue
            records.append(record)
        return records, removed

    def read_all_pending(self) -> list[PendingReview]:
        records, _ = self._scan()
        return [
            PendingReview(
                repo_path=record.repo_path,
                repo_name=repo_display_name(record.repo_path, record.remote_url),
                pending_count=record.pending_count,
                waiting_since=record.created_at,
                session_id=record.session_id,
            )
            for record in records
        ]

    def cleanup_stale(self) -> int:
        """Delete signal files older than the staleness threshold; return how many."""
        _, removed = self._scan()
        return removed
