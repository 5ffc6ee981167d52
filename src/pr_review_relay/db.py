"""Database connection, schema management, and lifespan for the PR review relay."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager, suppress
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path

import aiosqlite
from fastmcp import FastMCP

from pr_review_relay.clients import ClientRegistry
from pr_review_relay.comments import CommentStore
from pr_review_relay.config import RelaySettings, load_settings
from pr_review_relay.delivery import DeliveryLedger
from pr_review_relay.errors import RepoNotFoundError, StorageError
from pr_review_relay.identity import resolve_repo
from pr_review_relay.models import SignalRecord
from pr_review_relay.notifications import NotificationBus
from pr_review_relay.signals import SignalCoordinator
from pr_review_relay.storage import Storage
from pr_review_relay.watcher import SignalWatcher

logger = logging.getLogger("pr_review_relay")

SCHEMA_SQL = """\
CREATE TABLE IF NOT EXISTS repos (
    id          TEXT PRIMARY KEY,
    remote_url  TEXT UNIQUE,
    name        TEXT NOT NULL,
    base_branch TEXT NOT NULL DEFAULT 'main',
    created_at  TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
);

CREATE TABLE IF NOT EXISTS repo_paths (
    id               TEXT PRIMARY KEY,
    repo_id          TEXT NOT NULL REFERENCES repos(id) ON DELETE CASCADE,
    path             TEXT UNIQUE NOT NULL,
    last_accessed_at TEXT,
    created_at       TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
);

CREATE TABLE IF NOT EXISTS review_sessions (
    id          TEXT PRIMARY KEY,
    repo_id     TEXT NOT NULL REFERENCES repos(id) ON DELETE CASCADE,
    branch      TEXT NOT NULL,
    base_branch TEXT,
    created_at  TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
    UNIQUE(repo_id, branch)
);

CREATE TABLE IF NOT EXISTS comments (
    id           TEXT PRIMARY KEY,
    session_id   TEXT NOT NULL REFERENCES review_sessions(id) ON DELETE CASCADE,
    file_path    TEXT NOT NULL,
    line_start   INTEGER,
    line_end     INTEGER,
    side         TEXT CHECK(side IN ('old', 'new', 'both')),
    content      TEXT NOT NULL,
    status       TEXT NOT NULL DEFAULT 'queued'
                 CHECK(status IN ('queued', 'staged', 'sent', 'resolved', 'cancelled')),
    created_at   TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
    sent_at      TEXT
);

CREATE TABLE IF NOT EXISTS mcp_clients (
    id             TEXT PRIMARY KEY,
    client_name    TEXT,
    client_version TEXT,
    connected_at   TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
    last_seen_at   TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
    working_dir    TEXT
);

CREATE TABLE IF NOT EXISTS comment_deliveries (
    id           TEXT PRIMARY KEY,
    comment_id   TEXT NOT NULL REFERENCES comments(id) ON DELETE CASCADE,
    client_id    TEXT NOT NULL REFERENCES mcp_clients(id) ON DELETE CASCADE,
    delivered_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
);

CREATE INDEX IF NOT EXISTS idx_repo_paths_repo_id ON repo_paths(repo_id);
CREATE INDEX IF NOT EXISTS idx_review_sessions_repo_id ON review_sessions(repo_id);
CREATE INDEX IF NOT EXISTS idx_comments_session_id ON comments(session_id);
CREATE INDEX IF NOT EXISTS idx_comments_status ON comments(status);
CREATE INDEX IF NOT EXISTS idx_deliveries_client ON comment_deliveries(client_id);
"""

SCHEMA_MIGRATIONS: list[str] = [
    # Agent delivery columns (databases created before MCP delivery existed)
    "ALTER TABLE comments ADD COLUMN delivered_at TEXT",
    "ALTER TABLE comments ADD COLUMN resolved_at TEXT",
    "ALTER TABLE comments ADD COLUMN resolved_by TEXT",
    # One delivery row per (comment, client); drop historical duplicates first.
    """DELETE FROM comment_deliveries
       WHERE rowid NOT IN (
           SELECT MIN(rowid) FROM comment_deliveries GROUP BY comment_id, client_id
       )""",
    """CREATE UNIQUE INDEX IF NOT EXISTS idx_deliveries_comment_client
       ON comment_deliveries(comment_id, client_id)""",
]


@dataclass
class AppContext:
    """Application context: the shared connection plus the coordination components."""

    db: aiosqlite.Connection
    settings: RelaySettings
    write_lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    notifications: NotificationBus = field(default_factory=NotificationBus)
    # Active signal watchers keyed by signal file path (the notification topic).
    watchers: dict[str, SignalWatcher] = field(default_factory=dict)
    storage: Storage = field(init=False)
    signals: SignalCoordinator = field(init=False)
    comments: CommentStore = field(init=False)
    ledger: DeliveryLedger = field(init=False)
    clients: ClientRegistry = field(init=False)

    def __post_init__(self) -> None:
        self.storage = Storage(self.db)
        self.signals = SignalCoordinator(
            self.storage,
            self.settings.signals_dir,
            stale_after=timedelta(days=self.settings.stale_signal_days),
        )
        self.comments = CommentStore(self.storage, self.signals)
        self.ledger = DeliveryLedger(self.storage, self.write_lock)
        self.clients = ClientRegistry(self.settings.client_name, self.settings.working_dir)

    async def stop_watchers(self) -> None:
        for topic, watcher in list(self.watchers.items()):
            await watcher.stop()
            self.notifications.forget(topic)
        self.watchers.clear()


async def ensure_schema(db: aiosqlite.Connection) -> None:
    """Create tables and indexes if they don't exist, then apply migrations."""
    await db.executescript(SCHEMA_SQL)
    for migration in SCHEMA_MIGRATIONS:
        try:
            await db.execute(migration)
        except aiosqlite.OperationalError as exc:
            # Idempotent migration: ignore only duplicate-column errors.
            if "duplicate column name" not in str(exc).lower():
                raise


async def connect_db(db_path: Path | str) -> aiosqlite.Connection:
    """Open the shared SQLite database in WAL mode with the schema applied."""
    if str(db_path) != ":memory:":
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    db = await aiosqlite.connect(
        str(db_path),
        isolation_level=None,  # autocommit: each statement is its own transaction
    )
    db.row_factory = aiosqlite.Row
    await db.execute("PRAGMA journal_mode=WAL")
    await db.execute("PRAGMA busy_timeout=5000")
    await db.execute("PRAGMA synchronous=NORMAL")
    await db.execute("PRAGMA foreign_keys=ON")
    await ensure_schema(db)
    return db


async def ensure_watch(ctx: AppContext, repo_path: str) -> str | None:
    """Make sure the signal file of ``repo_path`` is being watched.

    Watches for other repos are left running. Returns the notification
    topic, or None when the repo is unregistered or has no signal file yet
    (nothing to watch).
    """
    try:
        repo, _ = await resolve_repo(ctx.storage, repo_path)
    except RepoNotFoundError:
        return None
    path = ctx.signals.signal_path(repo_path, repo.remote_url)
    topic = str(path)

    current = ctx.watchers.get(topic)
    if current is not None:
        if current.active:
            return topic
        await current.stop()
        del ctx.watchers[topic]

    async def _on_signal(record: SignalRecord) -> None:
        logger.info(
            "signal: %d pending comment(s) for %s", record.pending_count, record.repo_path
        )
        await ctx.notifications.publish(topic, record)

    watcher = SignalWatcher(path, _on_signal, force_polling=ctx.settings.force_polling)
    if not watcher.start():
        return None
    ctx.watchers[topic] = watcher
    return topic


async def _watch_supervisor(ctx: AppContext) -> None:
    """Keep the working-directory watch running once its signal file appears."""
    while True:
        try:
            await ensure_watch(ctx, ctx.settings.working_dir)
        except asyncio.CancelledError:
            raise
        except StorageError as exc:
            logger.warning("watch check failed: %s", exc)
        except Exception:
            logger.exception("watch check failed")
        await asyncio.sleep(ctx.settings.watch_recheck_seconds)


@asynccontextmanager
async def relay_lifespan(server: FastMCP) -> AsyncIterator[AppContext]:
    """Open the database and start the signal watch supervisor; clean up on shutdown."""
    # Deferred: api imports AppContext from this module.
    from pr_review_relay.api import set_app_context

    del server
    settings = load_settings()
    db = await connect_db(settings.db_path)
    ctx = AppContext(db=db, settings=settings)
    set_app_context(ctx)

    removed = ctx.signals.cleanup_stale()
    if removed:
        logger.info("Removed %d stale signal file(s)", removed)

    supervisor = asyncio.create_task(_watch_supervisor(ctx))
    logger.info(
        "Relay ready - db=%s, signals=%s, cwd=%s, client=%s",
        settings.db_path,
        settings.signals_dir,
        settings.working_dir,
        settings.client_name,
    )
    try:
        yield ctx
    finally:
        supervisor.cancel()
        with suppress(asyncio.CancelledError):
            await supervisor
        await ctx.stop_watchers()
        set_app_context(None)
        if str(settings.db_path) != ":memory:":
            with suppress(aiosqlite.Error):
                await db.execute("PRAGMA wal_checkpoint(TRUNCATE)")
        await db.close()
