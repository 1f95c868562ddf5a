"""
Decision Errors

Typed failures reported by the lifecycle engine. Every guard failure raises
one of these; none of them leave a partially applied change behind.
"""

from uuid import UUID


class DecisionError(Exception):
    """Base class for all decision engine errors."""

    code = "decision_error"


class NotFound(DecisionError):
    """Raised when a decision id is unknown."""

    code = "not_found"

    def __init__(self, decision_id: UUID):
        self.decision_id = decision_id
        super().__init__(f"Decision {decision_id} not found")


class InvalidTransition(DecisionError):
    """Raised when a state machine guard fails."""

    code = "invalid_transition"

    def __init__(self, current: str, requested: str, reason: str | None = None):
        self.current = current
        self.requested = requested
        self.reason = reason
        message = f"Cannot move decision from '{current}' to '{requested}'"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class VotingClosed(DecisionError):
    """Raised when a vote is cast while voting is not open."""

    code = "voting_closed"

    def __init__(self, decision_id: UUID):
        self.decision_id = decision_id
        super().__init__(f"Voting is not open for decision {decision_id}")


class AlreadyVoted(DecisionError):
    """Raised when a user votes a second time on the same decision."""

    code = "already_voted"

    def __init__(self, decision_id: UUID, user_id: UUID):
        self.decision_id = decision_id
        self.user_id = user_id
        super().__init__(f"User {user_id} has already voted on decision {decision_id}")


class PermissionDenied(DecisionError):
    """Raised when the actor lacks a required role or permission."""

    code = "permission_denied"


class ValidationError(DecisionError):
    """Raised on malformed input, e.g. a quorum outside 1-100."""

    code = "validation_error"


class Conflict(DecisionError):
    """Raised when a save is based on a stale snapshot."""

    code = "conflict"

    def __init__(self, decision_id: UUID, expected_version: int, actual_version: int | None):
        self.decision_id = decision_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"Decision {decision_id} was modified concurrently "
            f"(expected version {expected_version}, found {actual_version})"
        )


class PersistenceTimeout(DecisionError):
    """Raised when the persistence layer does not answer in time."""

    code = "persistence_timeout"
