"""MCP tool definitions for the PR review relay."""

from __future__ import annotations

import asyncio
import logging
import time

from fastmcp import Context

from pr_review_relay import queries
from pr_review_relay.db import AppContext, ensure_watch
from pr_review_relay.errors import (
    CommentNotFoundError,
    RelayError,
    RepoNotFoundError,
    SessionNotFoundError,
    StorageError,
)
from pr_review_relay.identity import resolve
from pr_review_relay.server import client_tag, mcp

logger = logging.getLogger("pr_review_relay")

MAX_WAIT_SECONDS = 300.0


def mcp_tool(*args, **kwargs):
    """FastMCP tool decorator with legacy `.fn` compatibility for tests/internal calls."""
    raw_tool = mcp.tool

    # Bare decorator usage: @mcp_tool
    if args and callable(args[0]) and len(args) == 1 and not kwargs:
        fn = args[0]
        registered = raw_tool(fn)
        if not hasattr(registered, "fn"):
            registered.fn = registered
        return registered

    decorator = raw_tool(*args, **kwargs)

    def _decorate(fn):
        registered = decorator(fn)
        if not hasattr(registered, "fn"):
            registered.fn = registered
        return registered

    return _decorate


def _app_ctx(ctx: Context) -> AppContext:
    """Resolve the relay AppContext from a FastMCP Context, across versions."""
    if ctx is None:
        raise RuntimeError("Missing MCP context")
    if hasattr(ctx, "lifespan_context"):
        return ctx.lifespan_context
    rc = getattr(ctx, "request_context", None)
    if rc is not None and hasattr(rc, "lifespan_context"):
        return rc.lifespan_context
    fm = getattr(ctx, "fastmcp", None)
    if fm is not None and hasattr(fm, "_lifespan_result"):
        return fm._lifespan_result
    raise RuntimeError("Unable to resolve relay lifespan context")


def _session_key(ctx: Context) -> str | None:
    """MCP session id of the caller, when the transport provides one."""
    try:
        session_id = getattr(ctx, "session_id", None)
    except (RuntimeError, ValueError):
        return None
    return session_id if isinstance(session_id, str) and session_id else None


async def _client_id(app: AppContext, ctx: Context) -> str:
    """Register (or touch) the caller's client and tag subsequent log lines."""
    client_id = await app.clients.ensure(app.storage, _session_key(ctx))
    client_tag.set(client_id[:8])
    return client_id


def _repo_path(app: AppContext, repo_path: str | None) -> str:
    if repo_path is None or repo_path.strip() == "":
        return app.settings.working_dir
    return repo_path


def _error_text(tool_name: str, exc: Exception) -> str:
    """Render an error for the agent. Call from inside the ``except`` block."""
    if isinstance(exc, RepoNotFoundError):
        return (
            f"No repository registered at path: {exc.path}\n\n"
            "To use this tool, first open the PR Reviewer UI and select this repository."
        )
    if isinstance(exc, SessionNotFoundError):
        return (
            f"No active review session found for {exc.repo_name}.\n\n"
            "Open the PR Reviewer UI to start a review session."
        )
    if isinstance(exc, CommentNotFoundError):
        logger.info("%s -> comment %s not found", tool_name, exc.comment_id)
        return str(exc)
    if isinstance(exc, StorageError):
        logger.exception("%s -> database error: %s", tool_name, exc)
    else:
        logger.warning("%s -> %s", tool_name, exc)
    return f"Error: {exc}"


@mcp_tool
async def check_pr_comments(repo_path: str | None = None, ctx: Context = None) -> str:
    """Check for pending PR review comments in the current repository.

    Returns comments that have been sent from the PR Reviewer UI and marks them
    as delivered to this agent. Each comment is returned once per agent.
    """
    app = _app_ctx(ctx)
    path = _repo_path(app, repo_path)
    try:
        client_id = await _client_id(app, ctx)
        return await queries.check_comments(app, path, client_id)
    except (RelayError, ValueError) as exc:
        return _error_text("check_pr_comments", exc)


@mcp_tool
async def mark_comment_resolved(comment_id: str, ctx: Context = None) -> str:
    """Mark a PR review comment as resolved after addressing it.

    Use the comment ID from check_pr_comments. Resolving twice is harmless.
    """
    app = _app_ctx(ctx)
    try:
        await _client_id(app, ctx)
        result = await queries.mark_resolved(app, comment_id)
    except (RelayError, ValueError) as exc:
        return _error_text("mark_comment_resolved", exc)
    logger.info("mark_comment_resolved -> %s", comment_id[:8])
    return result


@mcp_tool
async def list_pending_comments(ctx: Context = None) -> str:
    """List pending PR review comments across all registered repositories.

    Shows a summary of undelivered comments per repository.
    """
    app = _app_ctx(ctx)
    try:
        await _client_id(app, ctx)
        return await queries.list_all_pending(app)
    except (RelayError, ValueError) as exc:
        return _error_text("list_pending_comments", exc)


@mcp_tool
async def list_repo_pending_comments(repo_path: str | None = None, ctx: Context = None) -> str:
    """List pending PR review comments for the current repository only, grouped by file."""
    app = _app_ctx(ctx)
    path = _repo_path(app, repo_path)
    try:
        await _client_id(app, ctx)
        return await queries.list_repo_pending(app, path)
    except (RelayError, ValueError) as exc:
        return _error_text("list_repo_pending_comments", exc)


@mcp_tool
async def get_comment_details(comment_id: str, ctx: Context = None) -> str:
    """Get file path, line numbers, content and status of a specific PR review comment."""
    app = _app_ctx(ctx)
    try:
        await _client_id(app, ctx)
        return await queries.get_details(app, comment_id)
    except (RelayError, ValueError) as exc:
        return _error_text("get_comment_details", exc)


@mcp_tool
async def check_for_pending_reviews(ctx: Context = None) -> str:
    """Lightweight check for pending PR reviews across all repos.

    Reads the signal files only (no database access) and removes signals older
    than the staleness threshold while scanning.
    """
    app = _app_ctx(ctx)
    return queries.check_pending_reviews(app)


@mcp_tool
async def wait_for_pr_comments(
    repo_path: str | None = None,
    timeout: float | None = None,
    ctx: Context = None,
) -> str:
    """Block until new PR review comments arrive for this repository, then return them.

    Wakes early on signal-file changes when the repo has a signal file, and
    otherwise re-checks the database every few seconds. Returns a "no new
    comments" message when the timeout (default 25 seconds, at most 300)
    elapses first. Call again to keep waiting.
    """
    app = _app_ctx(ctx)
    path = _repo_path(app, repo_path)
    budget = app.settings.wait_timeout_seconds if timeout is None else timeout
    budget = min(max(budget, 0.0), MAX_WAIT_SECONDS)
    deadline = time.monotonic() + budget

    try:
        client_id = await _client_id(app, ctx)
        while True:
            topic = await ensure_watch(app, path)
            version = app.notifications.version(topic) if topic else 0

            resolved = await resolve(app.storage, path)
            if await app.ledger.pending_for_client(resolved.session.id, client_id):
                return await queries.check_comments(app, path, client_id)

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                logger.info("wait_for_pr_comments -> timed out after %.1fs", budget)
                return (
                    f"No new PR review comments for {resolved.repo.name} "
                    f"after waiting {budget:g} seconds."
                )

            step = min(remaining, app.settings.wait_poll_seconds)
            if topic is not None:
                # A signal only shortens the wait; the DB check decides.
                record = await app.notifications.wait(topic, since_version=version, timeout=step)
                if record is not None:
                    logger.info(
                        "wait_for_pr_comments -> signal reports %d pending", record.pending_count
                    )
            else:
                await asyncio.sleep(step)
    except (RelayError, ValueError) as exc:
        return _error_text("wait_for_pr_comments", exc)
