"""Error taxonomy for the PR review relay."""

from __future__ import annotations


class RelayError(Exception):
    """Base class for relay errors."""


class RepoNotFoundError(RelayError):
    """No registered repo path matches the requested path exactly."""

    def __init__(self, path: str) -> None:
        super().__init__(f"No repository registered at path: {path}")
        self.path = path


class SessionNotFoundError(RelayError):
    """The repo exists but has no review session yet."""

    def __init__(self, repo_name: str) -> None:
        super().__init__(f"No active review session found for {repo_name}")
        self.repo_name = repo_name


class CommentNotFoundError(RelayError):
    def __init__(self, comment_id: str) -> None:
        super().__init__(f"Comment not found: {comment_id}")
        self.comment_id = comment_id


class StorageError(RelayError):
    """Any failure reported by the database."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class CoordinationError(RelayError):
    """A signal-file read, write or delete failed."""

    def __init__(self, operation: str, cause: BaseException | None = None) -> None:
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"Signal file {operation} failed{detail}")
        self.operation = operation
        self.cause = cause
