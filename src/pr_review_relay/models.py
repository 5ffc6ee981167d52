"""Pydantic models and enums for the PR review relay."""

from __future__ import annotations

from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field


class CommentStatus(StrEnum):
    """Comment lifecycle states."""

    QUEUED = "queued"
    STAGED = "staged"
    SENT = "sent"
    RESOLVED = "resolved"
    CANCELLED = "cancelled"


# Statuses that still need an agent's attention.
OUTSTANDING_STATUSES: tuple[CommentStatus, ...] = (
    CommentStatus.QUEUED,
    CommentStatus.STAGED,
    CommentStatus.SENT,
)


class CommentSide(StrEnum):
    """Which side of the diff a line comment is anchored to."""

    OLD = "old"
    NEW = "new"
    BOTH = "both"


class Comment(BaseModel):
    """A review note anchored to a file (and optionally a line range)."""

    id: str
    session_id: str
    file_path: str
    line_start: int | None = None
    line_end: int | None = None
    side: CommentSide | None = None
    content: str
    status: CommentStatus = CommentStatus.QUEUED
    created_at: str
    sent_at: str | None = None
    delivered_at: str | None = None
    resolved_at: str | None = None
    resolved_by: str | None = None

    @property
    def location(self) -> str:
        """Render ``path``, ``path:10`` or ``path:10-12``."""
        if self.line_start is None:
            return self.file_path
        if self.line_end is not None and self.line_end != self.line_start:
            return f"{self.file_path}:{self.line_start}-{self.line_end}"
        return f"{self.file_path}:{self.line_start}"


class CommentPatch(BaseModel):
    """Partial update for a comment: new content and/or new status."""

    content: str | None = None
    status: CommentStatus | None = None


class McpClient(BaseModel):
    """One long-lived agent connection."""

    id: str
    client_name: str | None = None
    connected_at: str
    last_seen_at: str
    working_dir: str | None = None


class CommentDelivery(BaseModel):
    """Append-only record that a client received a sent comment."""

    id: str
    comment_id: str
    client_id: str
    delivered_at: str


class Repo(BaseModel):
    id: str
    remote_url: str | None = None
    name: str
    base_branch: str = "main"
    created_at: str


class RepoPath(BaseModel):
    id: str
    repo_id: str
    path: str
    last_accessed_at: str | None = None
    created_at: str


class ReviewSession(BaseModel):
    id: str
    repo_id: str
    branch: str
    base_branch: str | None = None
    created_at: str


class SignalRecord(BaseModel):
    """Contents of a per-repo signal file (camelCase on disk)."""

    model_config = ConfigDict(populate_by_name=True)

    repo_path: str = Field(alias="repoPath")
    session_id: str = Field(alias="sessionId")
    pending_count: int = Field(alias="pendingCount", ge=0)
    created_at: str = Field(alias="createdAt")
    remote_url: str | None = Field(default=None, alias="remoteUrl")

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, indent=2)


class PendingReview(BaseModel):
    """Summary of one signal file, as reported by a signal-directory scan."""

    model_config = ConfigDict(populate_by_name=True)

    repo_path: str = Field(alias="repoPath")
    repo_name: str = Field(alias="repoName")
    pending_count: int = Field(alias="pendingCount")
    waiting_since: str = Field(alias="waitingSince")
    session_id: str = Field(alias="sessionId")
