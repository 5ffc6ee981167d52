"""Agent-facing queries, rendered as the plain text the MCP tools return.

Each function raises the relay's expected errors (RepoNotFoundError,
SessionNotFoundError, CommentNotFoundError) and StorageError; turning them
into agent-readable text is the tool layer's job.
"""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime

from pr_review_relay.db import AppContext
from pr_review_relay.errors import CoordinationError, StorageError
from pr_review_relay.identity import resolve
from pr_review_relay.models import Comment, CommentStatus
from pr_review_relay.runtime import webapp_url
from pr_review_relay.storage import parse_timestamp

logger = logging.getLogger("pr_review_relay")

PREVIEW_LEN = 60


def _plural(count: int, word: str) -> str:
    return f"{count} {word}" if count == 1 else f"{count} {word}s"


def waiting_time(since: str, now: datetime | None = None) -> str:
    """Human-readable age of an ISO timestamp ("3 minutes", "2 days")."""
    now = now or datetime.now(UTC)
    try:
        elapsed = now - parse_timestamp(since)
    except ValueError:
        return "an unknown time"
    minutes = int(elapsed.total_seconds() // 60)
    if minutes < 1:
        return "less than a minute"
    if minutes < 60:
        return _plural(minutes, "minute")
    hours = minutes // 60
    if hours < 24:
        return _plural(hours, "hour")
    return _plural(hours // 24, "day")


def _preview(content: str) -> str:
    if len(content) > PREVIEW_LEN:
        return content[:PREVIEW_LEN] + "..."
    return content


async def check_comments(app: AppContext, repo_path: str, client_id: str) -> str:
    """Deliver every sent comment this client has not seen yet and format them."""
    resolved = await resolve(app.storage, repo_path)
    comments = await app.ledger.undelivered_for_client(resolved.session.id, client_id)

    try:
        await app.signals.recompute(repo_path, resolved.repo.remote_url)
    except (CoordinationError, StorageError) as exc:
        logger.warning("signal recompute failed for %s: %s", repo_path, exc)

    if not comments:
        logger.info("check_comments -> nothing pending for %s", resolved.repo.name)
        return "No pending PR review comments for this repository."

    lines = [
        f"Found {_plural(len(comments), 'PR review comment')} for "
        f"{resolved.repo.name} ({resolved.session.branch}):",
        "",
    ]
    for index, comment in enumerate(comments, start=1):
        lines.append(f"{index}. [{comment.location}]")
        lines.append(comment.content)
        lines.append(f"   (id: {comment.id})")
        lines.append("")
    return "\n".join(lines)


async def list_all_pending(app: AppContext) -> str:
    """Per-path summary of sent comments nobody has received yet."""
    rows = await app.storage.query_many(
        """SELECT r.name AS repo_name,
                  rp.path AS repo_path,
                  COUNT(CASE WHEN c.status = ? AND c.delivered_at IS NULL THEN 1 END)
                      AS pending_count
           FROM repos r
           JOIN repo_paths rp ON rp.repo_id = r.id
           LEFT JOIN review_sessions rs ON rs.repo_id = r.id
           LEFT JOIN comments c ON c.session_id = rs.id
           GROUP BY r.id, rp.id
           ORDER BY pending_count DESC, r.name, rp.path""",
        (str(CommentStatus.SENT),),
    )
    if not rows:
        return "No repositories registered. Open the PR Reviewer UI to register a repository."

    total = sum(int(row["pending_count"]) for row in rows)
    lines = ["Pending PR comments across repositories:", ""]
    for row in rows:
        count = int(row["pending_count"])
        bullet = "●" if count > 0 else "○"
        lines.append(f"{bullet} {row['repo_name']} ({_plural(count, 'comment')})")
        lines.append(f"  {row['repo_path']}")
    lines.append("")
    lines.append(f"Total: {_plural(total, 'pending comment')}")
    logger.info("list_all_pending -> %d repo path(s), %d pending", len(rows), total)
    return "\n".join(lines)


async def list_repo_pending(app: AppContext, repo_path: str) -> str:
    """Undelivered, unresolved sent comments of one repo, grouped by file."""
    resolved = await resolve(app.storage, repo_path)
    rows = await app.storage.query_many(
        """SELECT * FROM comments
           WHERE session_id = ?
             AND status = ?
             AND delivered_at IS NULL
             AND resolved_at IS NULL
           ORDER BY file_path ASC, line_start ASC NULLS FIRST, created_at ASC""",
        (resolved.session.id, str(CommentStatus.SENT)),
    )
    header = f"{resolved.repo.name} ({resolved.session.branch})"
    if not rows:
        return f"No pending comments for {header}."

    by_file: dict[str, list[Comment]] = {}
    for row in rows:
        comment = Comment.model_validate(row)
        by_file.setdefault(comment.file_path, []).append(comment)

    lines = [f"Pending comments for {header}:", ""]
    for file_path, file_comments in by_file.items():
        lines.append(f"📄 {file_path} ({_plural(len(file_comments), 'comment')})")
        for comment in file_comments:
            line_info = comment.location[len(comment.file_path):] or " (file)"
            lines.append(f"   • Line{line_info}: {_preview(comment.content)}")
        lines.append("")
    lines.append(f"Total: {_plural(len(rows), 'pending comment')}")
    lines.append("")
    lines.append("Use check_pr_comments to retrieve full comment details.")
    return "\n".join(lines)


async def get_details(app: AppContext, comment_id: str) -> str:
    """Full comment record plus repo name and branch, as indented JSON."""
    comment = await app.comments.get(comment_id)
    row = await app.storage.query_one(
        """SELECT r.name AS repo_name, rs.branch
           FROM review_sessions rs
           JOIN repos r ON rs.repo_id = r.id
           WHERE rs.id = ?""",
        (comment.session_id,),
    )
    details = {
        "id": comment.id,
        "repo": row["repo_name"] if row else None,
        "branch": row["branch"] if row else None,
        **comment.model_dump(mode="json", exclude={"id", "session_id"}),
    }
    return json.dumps(details, indent=2, ensure_ascii=False)


async def mark_resolved(app: AppContext, comment_id: str) -> str:
    """Resolve a comment on behalf of the agent; repeated calls are harmless."""
    existing = await app.comments.get(comment_id)
    if existing.resolved_at is not None:
        return f"Comment {comment_id} is already resolved (resolved at {existing.resolved_at})"
    await app.comments.mark_resolved(comment_id, resolved_by="agent")
    return f"Comment {comment_id} marked as resolved."


def check_pending_reviews(app: AppContext) -> str:
    """Scan the signals directory only; never touches the database."""
    url = webapp_url(app.settings.runtime_path)
    pending = app.signals.read_all_pending()

    if not pending:
        result = {
            "configured": app.settings.config_dir.exists(),
            "webappUrl": url,
            "hasPending": False,
            "pending": [],
        }
        return "No pending PR review comments.\n\n" + json.dumps(result, indent=2)

    noun = "repository" if len(pending) == 1 else "repositories"
    lines = [f"Found {len(pending)} {noun} with pending review comments:", ""]
    for review in pending:
        lines.append(
            f"- {review.repo_name}: {_plural(review.pending_count, 'comment')} "
            f"(waiting {waiting_time(review.waiting_since)})"
        )
        lines.append(f"  Path: {review.repo_path}")
    lines.append("")
    lines.append("Use check_pr_comments to fetch details for a specific repository.")
    if url is not None:
        lines.append(f"\nWebapp: {url}")
    return "\n".join(lines)
