"""Comment store: CRUD and lifecycle transitions for review comments.

Every operation that moves a comment into or out of sent, resolved or
cancelled (and every create/delete) refreshes the owning repo's signal file
after the database write. The refresh is best-effort; the database write is
what counts.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Sequence

from pr_review_relay.errors import CommentNotFoundError
from pr_review_relay.models import Comment, CommentPatch, CommentSide, CommentStatus
from pr_review_relay.signals import SignalCoordinator
from pr_review_relay.state_machine import refreshes_signal, sources_for, validate_transition
from pr_review_relay.storage import NOW_SQL, Storage

logger = logging.getLogger("pr_review_relay")

_ORDER_BY_LOCATION = "ORDER BY file_path ASC, line_start ASC NULLS FIRST, created_at ASC"


def _require_content(content: str) -> str:
    if content is None or content.strip() == "":
        raise ValueError("Comment content cannot be empty")
    return content


def _placeholders(values: Sequence[object]) -> str:
    return ", ".join("?" for _ in values)


def _short(comment_id: str | None) -> str:
    if not comment_id:
        return "unknown"
    return comment_id[:8]


class CommentStore:
    def __init__(self, storage: Storage, signals: SignalCoordinator) -> None:
        self.storage = storage
        self.signals = signals

    # ---- reads ----

    async def by_id(self, comment_id: str) -> Comment | None:
        row = await self.storage.query_one("SELECT * FROM comments WHERE id = ?", (comment_id,))
        return Comment.model_validate(row) if row is not None else None

    async def get(self, comment_id: str) -> Comment:
        comment = await self.by_id(comment_id)
        if comment is None:
            raise CommentNotFoundError(comment_id)
        return comment

    async def by_session(self, session_id: str) -> list[Comment]:
        rows = await self.storage.query_many(
            f"SELECT * FROM comments WHERE session_id = ? {_ORDER_BY_LOCATION}",
            (session_id,),
        )
        return [Comment.model_validate(row) for row in rows]

    async def by_session_and_status(
        self, session_id: str, status: CommentStatus
    ) -> list[Comment]:
        rows = await self.storage.query_many(
            f"SELECT * FROM comments WHERE session_id = ? AND status = ? {_ORDER_BY_LOCATION}",
            (session_id, str(status)),
        )
        return [Comment.model_validate(row) for row in rows]

    async def counts(self, session_id: str) -> dict[str, int]:
        """Comment totals per status for a session; every status is present."""
        rows = await self.storage.query_many(
            """SELECT status, COUNT(*) AS n
               FROM comments
               WHERE session_id = ?
               GROUP BY status""",
            (session_id,),
        )
        counts = {str(status): 0 for status in CommentStatus}
        for row in rows:
            counts[row["status"]] = int(row["n"])
        return counts

    # ---- writes ----

    async def create(
        self,
        session_id: str,
        file_path: str,
        content: str,
        line_start: int | None = None,
        line_end: int | None = None,
        side: CommentSide | str | None = None,
    ) -> Comment:
        """Create a queued comment."""
        _require_content(content)
        if line_start is not None and line_end is not None and line_end < line_start:
            raise ValueError("line_end must not be before line_start")
        side_value = str(CommentSide(side)) if side is not None else None

        comment_id = str(uuid.uuid4())
        await self.storage.execute(
            f"""INSERT INTO comments (id, session_id, file_path, line_start, line_end,
                                      side, content, status, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, {NOW_SQL})""",
            (
                comment_id,
                session_id,
                file_path,
                line_start,
                line_end,
                side_value,
                content,
                str(CommentStatus.QUEUED),
            ),
        )
        comment = await self.get(comment_id)
        logger.info("comment %s created (%s)", _short(comment_id), comment.location)
        await self.signals.refresh_session(session_id)
        return comment

    async def update(self, comment_id: str, patch: CommentPatch) -> Comment:
        """Apply a content and/or status change.

        Raises CommentNotFoundError for unknown ids and ValueError for empty
        content or an invalid transition.
        """
        existing = await self.get(comment_id)
        if patch.content is not None:
            _require_content(patch.content)
            await self.storage.execute(
                "UPDATE comments SET content = ? WHERE id = ?", (patch.content, comment_id)
            )

        if patch.status is not None and patch.status != existing.status:
            target = CommentStatus(patch.status)
            if target == CommentStatus.RESOLVED:
                return await self.mark_resolved(comment_id, resolved_by="reviewer")
            validate_transition(existing.status, target)
            sent_at = f"COALESCE(sent_at, {NOW_SQL})" if target == CommentStatus.SENT else "sent_at"
            result = await self.storage.execute(
                f"UPDATE comments SET status = ?, sent_at = {sent_at} WHERE id = ? AND status = ?",
                (str(target), comment_id, str(existing.status)),
            )
            if result.changes:
                logger.info(
                    "comment %s %s -> %s", _short(comment_id), existing.status, target
                )
                if refreshes_signal(existing.status, target):
                    await self.signals.refresh_session(existing.session_id)

        return await self.get(comment_id)

    async def delete(self, comment_id: str) -> bool:
        """Physically delete a comment. Only queued comments may be deleted."""
        row = await self.storage.query_one(
            "SELECT session_id FROM comments WHERE id = ?", (comment_id,)
        )
        if row is None:
            return False
        result = await self.storage.execute(
            "DELETE FROM comments WHERE id = ? AND status = ?",
            (comment_id, str(CommentStatus.QUEUED)),
        )
        if result.changes == 0:
            logger.info("comment %s not deleted: no longer queued", _short(comment_id))
            return False
        logger.info("comment %s deleted", _short(comment_id))
        await self.signals.refresh_session(row["session_id"])
        return True

    async def _transition_many(
        self,
        comment_ids: Sequence[str],
        target: CommentStatus,
        extra_set: str = "",
    ) -> int:
        ids = list(dict.fromkeys(comment_ids))
        if not ids:
            return 0
        sources = [str(status) for status in sources_for(target)]
        sessions = await self.storage.query_many(
            f"SELECT DISTINCT session_id FROM comments WHERE id IN ({_placeholders(ids)})",
            ids,
        )
        result = await self.storage.execute(
            f"""UPDATE comments SET status = ?{extra_set}
                WHERE id IN ({_placeholders(ids)})
                  AND status IN ({_placeholders(sources)})""",
            (str(target), *ids, *sources),
        )
        logger.info("%d comment(s) -> %s", result.changes, target)
        if result.changes and target != CommentStatus.STAGED:
            for row in sessions:
                await self.signals.refresh_session(row["session_id"])
        return result.changes

    async def stage(self, comment_ids: Sequence[str]) -> int:
        """Move queued comments to staged; returns how many moved."""
        return await self._transition_many(comment_ids, CommentStatus.STAGED)

    async def mark_sent(self, comment_ids: Sequence[str]) -> int:
        """Send queued or staged comments; sent_at is kept if already set."""
        return await self._transition_many(
            comment_ids,
            CommentStatus.SENT,
            extra_set=f", sent_at = COALESCE(sent_at, {NOW_SQL})",
        )

    async def cancel(self, comment_ids: Sequence[str]) -> int:
        return await self._transition_many(comment_ids, CommentStatus.CANCELLED)

    async def mark_resolved(self, comment_id: str, resolved_by: str = "agent") -> Comment:
        """Resolve a sent comment.

        Idempotent: an already-resolved comment is returned unchanged with its
        original resolved_at. Raises CommentNotFoundError for unknown ids and
        ValueError when the comment was never sent or was cancelled.
        """
        result = await self.storage.execute(
            f"""UPDATE comments
                SET status = ?, resolved_at = {NOW_SQL}, resolved_by = ?
                WHERE id = ? AND status = ? AND resolved_at IS NULL""",
            (str(CommentStatus.RESOLVED), resolved_by, comment_id, str(CommentStatus.SENT)),
        )
        comment = await self.get(comment_id)
        if result.changes == 0:
            if comment.resolved_at is not None:
                logger.info(
                    "comment %s already resolved at %s", _short(comment_id), comment.resolved_at
                )
                return comment
            validate_transition(comment.status, CommentStatus.RESOLVED)
        logger.info("comment %s resolved by %s", _short(comment_id), resolved_by)
        await self.signals.refresh_session(comment.session_id)
        return comment
