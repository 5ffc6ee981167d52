"""Delivery ledger: which client has received which sent comment."""

from __future__ import annotations

import asyncio
import logging
import uuid

from pr_review_relay.errors import StorageError
from pr_review_relay.models import Comment, CommentDelivery, CommentStatus
from pr_review_relay.storage import NOW_SQL, Storage

logger = logging.getLogger("pr_review_relay")


class DeliveryLedger:
    """Append-only per-client delivery records.

    Concurrent fetches for the same (comment, client) pair race on the
    unique delivery index; the loser's insert fails, is swallowed, and the
    comment is left out of the loser's result. Fetches by different clients
    never interfere. Across processes the database serializes the inserts.
    """

    def __init__(self, storage: Storage, write_lock: asyncio.Lock | None = None) -> None:
        self.storage = storage
        self.write_lock = write_lock if write_lock is not None else asyncio.Lock()

    async def record_delivery(self, comment_id: str, client_id: str) -> bool:
        """Insert a delivery row. Returns False (never raises) when the insert fails."""
        try:
            result = await self.storage.execute(
                f"""INSERT INTO comment_deliveries (id, comment_id, client_id, delivered_at)
                    VALUES (?, ?, ?, {NOW_SQL})""",
                (str(uuid.uuid4()), comment_id, client_id),
            )
        except StorageError as exc:
            logger.debug(
                "delivery of %s to %s not recorded: %s", comment_id[:8], client_id[:8], exc
            )
            return False
        return result.changes > 0

    async def _deliver_one(self, comment: Comment, client_id: str) -> Comment | None:
        async with self.write_lock:
            if not await self.record_delivery(comment.id, client_id):
                return None
            # Only the first delivery to any client stamps delivered_at.
            await self.storage.execute(
                f"UPDATE comments SET delivered_at = {NOW_SQL} WHERE id = ? AND delivered_at IS NULL",
                (comment.id,),
            )
        row = await self.storage.query_one("SELECT * FROM comments WHERE id = ?", (comment.id,))
        return Comment.model_validate(row) if row is not None else comment

    async def pending_for_client(self, session_id: str, client_id: str) -> list[Comment]:
        """Sent comments of a session that ``client_id`` has not received yet (read-only)."""
        rows = await self.storage.query_many(
            """SELECT c.* FROM comments c
               WHERE c.session_id = ?
                 AND c.status = ?
                 AND NOT EXISTS (
                     SELECT 1 FROM comment_deliveries d
                     WHERE d.comment_id = c.id AND d.client_id = ?
                 )
               ORDER BY c.file_path ASC, c.line_start ASC NULLS FIRST, c.created_at ASC""",
            (session_id, str(CommentStatus.SENT), client_id),
        )
        return [Comment.model_validate(row) for row in rows]

    async def undelivered_for_client(self, session_id: str, client_id: str) -> list[Comment]:
        """Fetch and record delivery of every sent comment the client has not seen.

        Ordered by file path, then line (file-level comments first).
        """
        delivered: list[Comment] = []
        for comment in await self.pending_for_client(session_id, client_id):
            result = await self._deliver_one(comment, client_id)
            if result is not None:
                delivered.append(result)
        if delivered:
            logger.info(
                "delivered %d comment(s) to client %s", len(delivered), client_id[:8]
            )
        return delivered

    async def deliveries_for_comment(self, comment_id: str) -> list[CommentDelivery]:
        rows = await self.storage.query_many(
            """SELECT * FROM comment_deliveries
               WHERE comment_id = ?
               ORDER BY delivered_at, rowid""",
            (comment_id,),
        )
        return [CommentDelivery.model_validate(row) for row in rows]
