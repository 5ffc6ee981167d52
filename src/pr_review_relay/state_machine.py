"""State machine for comment lifecycle transitions."""

from __future__ import annotations

from pr_review_relay.models import CommentStatus

VALID_TRANSITIONS: dict[CommentStatus, set[CommentStatus]] = {
    CommentStatus.QUEUED: {CommentStatus.STAGED, CommentStatus.SENT, CommentStatus.CANCELLED},
    CommentStatus.STAGED: {
        CommentStatus.QUEUED,  # unstage
        CommentStatus.SENT,
        CommentStatus.CANCELLED,
    },
    CommentStatus.SENT: {CommentStatus.RESOLVED, CommentStatus.CANCELLED},
    CommentStatus.RESOLVED: set(),  # terminal
    CommentStatus.CANCELLED: set(),  # terminal
}


def validate_transition(current: CommentStatus, target: CommentStatus) -> None:
    """Validate a state transition. Raises ValueError if invalid."""
    allowed = VALID_TRANSITIONS.get(current)
    if allowed is None:
        raise ValueError(f"Unknown state: {current}")
    if target not in allowed:
        raise ValueError(
            f"Invalid transition: {current} -> {target}. "
            f"Valid targets from {current}: {sorted(allowed)}"
        )


def sources_for(target: CommentStatus) -> list[CommentStatus]:
    """Return every status that may transition into ``target``."""
    return sorted(status for status, allowed in VALID_TRANSITIONS.items() if target in allowed)


def refreshes_signal(current: CommentStatus, target: CommentStatus) -> bool:
    """True when a transition enters or leaves sent, resolved or cancelled."""
    watched = {CommentStatus.SENT, CommentStatus.RESOLVED, CommentStatus.CANCELLED}
    return current != target and (current in watched or target in watched)
