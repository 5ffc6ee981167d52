"""Thin query/execute boundary over the shared aiosqlite connection."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

import aiosqlite

from pr_review_relay.errors import StorageError

# SQLite expression producing the same timestamp format as utc_now().
NOW_SQL = "strftime('%Y-%m-%dT%H:%M:%fZ', 'now')"


def utc_now() -> str:
    """Current UTC time as ISO-8601 with milliseconds and a Z suffix."""
    return datetime.now(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_timestamp(value: str) -> datetime:
    """Parse a stored timestamp; naive values are treated as UTC."""
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


@dataclass(frozen=True)
class ExecuteResult:
    changes: int


class Storage:
    """Single-statement access to the relay database.

    Every statement is independently atomic; nothing here opens a
    multi-statement transaction. All driver failures surface as StorageError.
    """

    def __init__(self, db: aiosqlite.Connection) -> None:
        self.db = db

    async def query_many(self, sql: str, params: Sequence[Any] = ()) -> list[dict[str, Any]]:
        try:
            cursor = await self.db.execute(sql, tuple(params))
            rows = await cursor.fetchall()
        except aiosqlite.Error as exc:
            raise StorageError(str(exc)) from exc
        return [dict(row) for row in rows]

    async def query_one(self, sql: str, params: Sequence[Any] = ()) -> dict[str, Any] | None:
        try:
            cursor = await self.db.execute(sql, tuple(params))
            row = await cursor.fetchone()
        except aiosqlite.Error as exc:
            raise StorageError(str(exc)) from exc
        return dict(row) if row is not None else None

    async def execute(self, sql: str, params: Sequence[Any] = ()) -> ExecuteResult:
        try:
            cursor = await self.db.execute(sql, tuple(params))
        except aiosqlite.Error as exc:
            raise StorageError(str(exc)) from exc
        return ExecuteResult(changes=cursor.rowcount if cursor.rowcount > 0 else 0)

    async def count(self, sql: str, params: Sequence[Any] = ()) -> int:
        """Run a ``SELECT COUNT(*) AS n`` style query and return the integer."""
        row = await self.query_one(sql, params)
        if row is None:
            return 0
        return int(next(iter(row.values())) or 0)
