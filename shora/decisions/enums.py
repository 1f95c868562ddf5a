"""
Decision Enumerations
"""

from enum import StrEnum


class DecisionStatus(StrEnum):
    """Status of a decision in its lifecycle."""

    DRAFT = "draft"
    PROPOSED = "proposed"  # Open for council voting
    APPROVED = "approved"
    REJECTED = "rejected"  # Terminal
    IMPLEMENTED = "implemented"  # Terminal


class DecisionType(StrEnum):
    """Kind of decision. Informational only."""

    RESOLUTION = "resolution"
    POLICY = "policy"
    APPROVAL = "approval"
    REJECTION = "rejection"


class DecisionPriority(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class DecisionCategory(StrEnum):
    INFRASTRUCTURE = "infrastructure"
    EDUCATION = "education"
    HEALTH = "health"
    SECURITY = "security"
    FINANCE = "finance"
    OTHER = "other"


class VoteChoice(StrEnum):
    """A council member's vote."""

    YES = "yes"
    NO = "no"
    ABSTAIN = "abstain"


class ResolveOutcome(StrEnum):
    """Outcome requested when closing a proposed decision."""

    APPROVE = "approve"
    REJECT = "reject"


ACTIVE_STATUSES = (DecisionStatus.DRAFT, DecisionStatus.PROPOSED)
TERMINAL_STATUSES = (DecisionStatus.REJECTED, DecisionStatus.IMPLEMENTED)
