"""Shared test fixtures for the PR review relay."""

from __future__ import annotations

from collections.abc import AsyncIterator
from dataclasses import dataclass
from pathlib import Path

import aiosqlite
import pytest

from pr_review_relay.config import RelaySettings
from pr_review_relay.db import AppContext, ensure_schema
from pr_review_relay.models import Comment, Repo, ReviewSession
from pr_review_relay.repos import open_session, register_repo

REMOTE_URL = "git@github.com:acme/widgets.git"


@dataclass
class _MockFastMCP:
    """Stands in for the FastMCP instance so ctx.fastmcp._lifespan_result works."""

    _lifespan_result: AppContext


@dataclass
class MockContext:
    """Minimal mock for fastmcp.Context that provides fastmcp._lifespan_result."""

    fastmcp: _MockFastMCP
    session_id: str | None = None

    @property
    def lifespan_context(self) -> AppContext:
        return self.fastmcp._lifespan_result


@dataclass
class Workspace:
    """A registered repo with an open session at the agent's working directory."""

    app: AppContext
    repo: Repo
    session: ReviewSession
    path: str

    async def comment(
        self,
        content: str = "fix this",
        file_path: str = "file.ts",
        line_start: int | None = 10,
        line_end: int | None = None,
    ) -> Comment:
        return await self.app.comments.create(
            self.session.id, file_path, content, line_start=line_start, line_end=line_end
        )

    async def sent_comment(self, content: str = "fix this", **kwargs) -> Comment:
        comment = await self.comment(content, **kwargs)
        await self.app.comments.mark_sent([comment.id])
        return await self.app.comments.get(comment.id)

    def signal_path(self) -> Path:
        return self.app.signals.signal_path(self.path, self.repo.remote_url)


@pytest.fixture
async def db() -> AsyncIterator[aiosqlite.Connection]:
    """In-memory SQLite database for tests."""
    conn = await aiosqlite.connect(":memory:", isolation_level=None)
    conn.row_factory = aiosqlite.Row
    await conn.execute("PRAGMA foreign_keys=ON")
    await ensure_schema(conn)
    yield conn
    await conn.close()


@pytest.fixture
def settings(tmp_path: Path) -> RelaySettings:
    work_dir = tmp_path / "work" / "widgets"
    work_dir.mkdir(parents=True)
    return RelaySettings(
        config_dir=tmp_path / "config",
        db_path=tmp_path / "config" / "unused.sqlite3",
        working_dir=str(work_dir),
        client_name="Test Agent",
        watch_recheck_seconds=0.1,
        wait_timeout_seconds=1.0,
        wait_poll_seconds=0.05,
        force_polling=True,
    )


@pytest.fixture
async def app(db: aiosqlite.Connection, settings: RelaySettings) -> AsyncIterator[AppContext]:
    app = AppContext(db=db, settings=settings)
    yield app
    await app.stop_watchers()


@pytest.fixture
def ctx(app: AppContext) -> MockContext:
    """Create a MockContext wrapping the in-memory app context."""
    return MockContext(fastmcp=_MockFastMCP(_lifespan_result=app))


@pytest.fixture
async def workspace(app: AppContext) -> Workspace:
    path = app.settings.working_dir
    repo, _ = await register_repo(app.storage, path, remote_url=REMOTE_URL)
    session = await open_session(app.storage, repo.id, "feature/login", "main")
    return Workspace(app=app, repo=repo, session=session, path=path)
