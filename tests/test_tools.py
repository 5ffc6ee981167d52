"""Integration tests for the MCP tool handlers using in-memory SQLite."""

from __future__ import annotations

import asyncio
import json
from dataclasses import replace
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from pr_review_relay.models import CommentStatus, SignalRecord
from pr_review_relay.queries import waiting_time
from pr_review_relay.runtime import write_runtime
from pr_review_relay.tools import (
    check_for_pending_reviews,
    check_pr_comments,
    get_comment_details,
    list_pending_comments,
    list_repo_pending_comments,
    mark_comment_resolved,
    wait_for_pr_comments,
)

if TYPE_CHECKING:
    from conftest import MockContext, Workspace


class TestCheckPrComments:
    async def test_unregistered_path(self, ctx: MockContext) -> None:
        result = await check_pr_comments.fn(repo_path="/unregistered/path", ctx=ctx)
        assert result.startswith("No repository registered at path: /unregistered/path")
        assert "first open the PR Reviewer UI" in result

    async def test_no_session(self, ctx: MockContext) -> None:
        from pr_review_relay.repos import register_repo

        await register_repo(ctx.lifespan_context.storage, "/w/solo", name="Solo")
        result = await check_pr_comments.fn(repo_path="/w/solo", ctx=ctx)
        assert result.startswith("No active review session found for Solo.")

    async def test_nothing_pending(self, ctx: MockContext, workspace: Workspace) -> None:
        await workspace.comment("not sent yet")
        result = await check_pr_comments.fn(ctx=ctx)
        assert result == "No pending PR review comments for this repository."

    async def test_delivers_and_formats(self, ctx: MockContext, workspace: Workspace) -> None:
        a = await workspace.sent_comment("rename this", file_path="src/app.ts", line_start=10)
        b = await workspace.sent_comment("whole file note", file_path="README.md", line_start=None)
        result = await check_pr_comments.fn(ctx=ctx)
        lines = result.splitlines()
        assert lines[0] == "Found 2 PR review comments for acme/widgets (feature/login):"
        assert lines[2] == "1. [README.md]"
        assert lines[3] == "whole file note"
        assert lines[4] == f"   (id: {b.id})"
        assert "2. [src/app.ts:10]" in lines
        assert f"   (id: {a.id})" in lines

        again = await check_pr_comments.fn(ctx=ctx)
        assert again == "No pending PR review comments for this repository."

    async def test_singular_header(self, ctx: MockContext, workspace: Workspace) -> None:
        await workspace.sent_comment()
        result = await check_pr_comments.fn(repo_path=workspace.path, ctx=ctx)
        assert result.startswith("Found 1 PR review comment for acme/widgets")

    async def test_registers_client_once(self, ctx: MockContext, workspace: Workspace) -> None:
        await check_pr_comments.fn(ctx=ctx)
        await list_pending_comments.fn(ctx=ctx)
        rows = await workspace.app.storage.query_many("SELECT * FROM mcp_clients")
        assert len(rows) == 1
        assert rows[0]["client_name"] == "Test Agent"


class TestMarkCommentResolved:
    async def test_resolve(self, ctx: MockContext, workspace: Workspace) -> None:
        comment = await workspace.sent_comment()
        result = await mark_comment_resolved.fn(comment_id=comment.id, ctx=ctx)
        assert result == f"Comment {comment.id} marked as resolved."
        assert not workspace.signal_path().exists()

    async def test_resolve_twice(self, ctx: MockContext, workspace: Workspace) -> None:
        comment = await workspace.sent_comment()
        await mark_comment_resolved.fn(comment_id=comment.id, ctx=ctx)
        resolved = await workspace.app.comments.get(comment.id)
        result = await mark_comment_resolved.fn(comment_id=comment.id, ctx=ctx)
        assert result == (
            f"Comment {comment.id} is already resolved (resolved at {resolved.resolved_at})"
        )

    async def test_unknown(self, ctx: MockContext) -> None:
        result = await mark_comment_resolved.fn(comment_id="nope", ctx=ctx)
        assert result == "Comment not found: nope"

    async def test_not_sent_yet(self, ctx: MockContext, workspace: Workspace) -> None:
        comment = await workspace.comment()
        result = await mark_comment_resolved.fn(comment_id=comment.id, ctx=ctx)
        assert result.startswith("Error: Invalid transition")
        assert (await workspace.app.comments.get(comment.id)).status == CommentStatus.QUEUED


class TestListPending:
    async def test_no_repos(self, ctx: MockContext) -> None:
        result = await list_pending_comments.fn(ctx=ctx)
        assert result.startswith("No repositories registered.")

    async def test_summary(self, ctx: MockContext, workspace: Workspace) -> None:
        from pr_review_relay.repos import register_repo

        await register_repo(workspace.app.storage, "/w/quiet", name="quiet")
        await workspace.sent_comment("a")
        await workspace.sent_comment("b")
        result = await list_pending_comments.fn(ctx=ctx)
        lines = result.splitlines()
        assert lines[0] == "Pending PR comments across repositories:"
        assert lines[2] == "● acme/widgets (2 comments)"
        assert lines[3] == f"  {workspace.path}"
        assert "○ quiet (0 comments)" in lines
        assert lines[-1] == "Total: 2 pending comments"


class TestListRepoPending:
    async def test_grouped_by_file(self, ctx: MockContext, workspace: Workspace) -> None:
        await workspace.sent_comment("x" * 80, file_path="a.py", line_start=3, line_end=5)
        await workspace.sent_comment("file note", file_path="a.py", line_start=None)
        await workspace.sent_comment("b note", file_path="b.py", line_start=1)
        result = await list_repo_pending_comments.fn(ctx=ctx)
        lines = result.splitlines()
        assert lines[0] == "Pending comments for acme/widgets (feature/login):"
        assert lines[2] == "📄 a.py (2 comments)"
        assert lines[3] == "   • Line (file): file note"
        assert lines[4] == "   • Line:3-5: " + "x" * 60 + "..."
        assert "📄 b.py (1 comment)" in lines
        assert "Total: 3 pending comments" in lines
        assert lines[-1] == "Use check_pr_comments to retrieve full comment details."

    async def test_delivered_comments_drop_out(self, ctx: MockContext, workspace: Workspace) -> None:
        await workspace.sent_comment()
        await check_pr_comments.fn(ctx=ctx)
        result = await list_repo_pending_comments.fn(ctx=ctx)
        assert result == "No pending comments for acme/widgets (feature/login)."

    async def test_unregistered(self, ctx: MockContext) -> None:
        result = await list_repo_pending_comments.fn(repo_path="/nowhere", ctx=ctx)
        assert result.startswith("No repository registered at path: /nowhere")


class TestGetCommentDetails:
    async def test_details(self, ctx: MockContext, workspace: Workspace) -> None:
        comment = await workspace.sent_comment("look here", file_path="a.py", line_start=4)
        details = json.loads(await get_comment_details.fn(comment_id=comment.id, ctx=ctx))
        assert details["id"] == comment.id
        assert details["repo"] == "acme/widgets"
        assert details["branch"] == "feature/login"
        assert details["file_path"] == "a.py"
        assert details["line_start"] == 4
        assert details["status"] == "sent"
        assert details["resolved_at"] is None

    async def test_unknown(self, ctx: MockContext) -> None:
        result = await get_comment_details.fn(comment_id="nope", ctx=ctx)
        assert result == "Comment not found: nope"


class TestCheckForPendingReviews:
    async def test_none_pending(self, ctx: MockContext) -> None:
        result = await check_for_pending_reviews.fn(ctx=ctx)
        assert result.startswith("No pending PR review comments.")
        payload = json.loads(result.split("\n\n", 1)[1])
        assert payload["hasPending"] is False
        assert payload["webappUrl"] is None

    async def test_lists_signals_and_webapp(self, ctx: MockContext, workspace: Workspace) -> None:
        await workspace.sent_comment()
        write_runtime(workspace.app.settings.runtime_path, 3847)
        result = await check_for_pending_reviews.fn(ctx=ctx)
        lines = result.splitlines()
        assert lines[0] == "Found 1 repository with pending review comments:"
        assert lines[2] == "- acme/widgets: 1 comment (waiting less than a minute)"
        assert lines[3] == f"  Path: {workspace.path}"
        assert "Use check_pr_comments to fetch details for a specific repository." in lines
        assert lines[-1] == "Webapp: http://localhost:3847"

    async def test_stale_signal_swept(self, ctx: MockContext, workspace: Workspace) -> None:
        old = (datetime.now(UTC) - timedelta(days=10)).isoformat()
        record = SignalRecord(
            repo_path="/old", session_id="s", pending_count=1, created_at=old
        )
        workspace.app.signals.write_signal(record, None)
        result = await check_for_pending_reviews.fn(ctx=ctx)
        assert result.startswith("No pending PR review comments.")
        assert not workspace.app.signals.signal_path("/old", None).exists()


class TestWaitingTime:
    def test_buckets(self) -> None:
        now = datetime(2026, 1, 10, tzinfo=UTC)
        assert waiting_time("2026-01-09T23:59:30.000Z", now) == "less than a minute"
        assert waiting_time("2026-01-09T23:59:00.000Z", now) == "1 minute"
        assert waiting_time("2026-01-09T21:00:00.000Z", now) == "3 hours"
        assert waiting_time("2026-01-08T00:00:00.000Z", now) == "2 days"
        assert waiting_time("garbage", now) == "an unknown time"


class TestWaitForPrComments:
    async def test_returns_immediately_when_pending(
        self, ctx: MockContext, workspace: Workspace
    ) -> None:
        await workspace.sent_comment("ready")
        result = await wait_for_pr_comments.fn(timeout=5, ctx=ctx)
        assert result.startswith("Found 1 PR review comment")

    async def test_times_out(self, ctx: MockContext, workspace: Workspace) -> None:
        result = await wait_for_pr_comments.fn(timeout=0.2, ctx=ctx)
        assert result == "No new PR review comments for acme/widgets after waiting 0.2 seconds."

    async def test_wakes_when_comment_sent(self, ctx: MockContext, workspace: Workspace) -> None:
        queued = await workspace.comment("coming soon")

        async def send_later() -> None:
            await asyncio.sleep(0.3)
            await workspace.app.comments.mark_sent([queued.id])

        task = asyncio.create_task(send_later())
        result = await wait_for_pr_comments.fn(timeout=5, ctx=ctx)
        await task
        assert "coming soon" in result
        assert str(workspace.signal_path()) in workspace.app.watchers

    async def test_unregistered(self, ctx: MockContext) -> None:
        result = await wait_for_pr_comments.fn(repo_path="/nowhere", timeout=0.1, ctx=ctx)
        assert result.startswith("No repository registered at path: /nowhere")


class TestClientPerSession:
    async def test_each_mcp_session_gets_its_own_delivery(
        self, ctx: MockContext, workspace: Workspace
    ) -> None:
        await workspace.sent_comment("shared fix")
        agent_a = replace(ctx, session_id="mcp-session-a")
        agent_b = replace(ctx, session_id="mcp-session-b")

        assert "shared fix" in await check_pr_comments.fn(ctx=agent_a)
        assert "shared fix" in await check_pr_comments.fn(ctx=agent_b)
        assert await check_pr_comments.fn(ctx=agent_a) == (
            "No pending PR review comments for this repository."
        )

        count = await workspace.app.storage.count("SELECT COUNT(*) AS n FROM mcp_clients")
        assert count == 2

    async def test_same_session_keeps_its_client(
        self, ctx: MockContext, workspace: Workspace
    ) -> None:
        agent = replace(ctx, session_id="mcp-session-a")
        await check_pr_comments.fn(ctx=agent)
        await list_pending_comments.fn(ctx=agent)
        first = workspace.app.clients.session_for("mcp-session-a").client_id
        assert first is not None
        await check_pr_comments.fn(ctx=replace(ctx, session_id="mcp-session-a"))
        assert workspace.app.clients.session_for("mcp-session-a").client_id == first
        count = await workspace.app.storage.count("SELECT COUNT(*) AS n FROM mcp_clients")
        assert count == 1

    async def test_without_session_id_uses_process_client(
        self, ctx: MockContext, workspace: Workspace
    ) -> None:
        await check_pr_comments.fn(ctx=ctx)
        assert workspace.app.clients.default.client_id is not None
