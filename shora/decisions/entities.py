"""
Decision Entities

Immutable snapshots of a decision and its votes, plus the derived predicates
computed from them. Nothing here is persisted: vote tallies, quorum and
voting-window state are recomputed on demand from a snapshot.

Mutations never happen in place. The lifecycle engine builds a new, fully
validated snapshot from the old one plus the changed fields and hands it to
the repository.
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from shora.decisions.enums import (
    DecisionCategory,
    DecisionPriority,
    DecisionStatus,
    DecisionType,
    ResolveOutcome,
    VoteChoice,
)


class DecisionVote(BaseModel):
    """A single council member's vote."""

    model_config = ConfigDict(frozen=True)

    user_id: UUID
    choice: VoteChoice
    timestamp: datetime
    reason: str | None = None
    reason_persian: str | None = None


class VoteCounts(BaseModel):
    """Tally of votes by choice."""

    model_config = ConfigDict(frozen=True)

    yes: int = 0
    no: int = 0
    abstain: int = 0


def _utc(value: datetime | None) -> datetime | None:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class DecisionBudget(BaseModel):
    """Funds a decision commits, in ``currency`` (Iranian rial by default)."""

    model_config = ConfigDict(frozen=True)

    amount: Decimal | None = Field(None, ge=0)
    currency: str = Field("IRR", min_length=3, max_length=3)
    description: str | None = None


class Milestone(BaseModel):
    model_config = ConfigDict(frozen=True)

    title: str = Field(..., min_length=1)
    title_persian: str | None = None
    date: datetime | None = None
    description: str | None = None
    description_persian: str | None = None
    completed: bool = False

    @field_validator("date")
    @classmethod
    def attach_utc(cls, value: datetime | None) -> datetime | None:
        return _utc(value)


class DecisionTimeline(BaseModel):
    """Planned implementation window and its milestones."""

    model_config = ConfigDict(frozen=True)

    start_date: datetime | None = None
    end_date: datetime | None = None
    milestones: tuple[Milestone, ...] = ()

    @field_validator("start_date", "end_date")
    @classmethod
    def attach_utc(cls, value: datetime | None) -> datetime | None:
        return _utc(value)

    @model_validator(mode="after")
    def check_window(self) -> "DecisionTimeline":
        if self.start_date and self.end_date and self.end_date < self.start_date:
            raise ValueError("end_date must not be before start_date")
        return self


class DecisionAttachment(BaseModel):
    """
    Metadata of a file attached to a decision.

    The file itself lives in external storage; only its location is kept.
    """

    model_config = ConfigDict(frozen=True)

    filename: str = Field(..., min_length=1)
    original_name: str | None = None
    mimetype: str | None = None
    size: int | None = Field(None, ge=0)
    path: str | None = None
    url: str | None = None
    uploaded_by: UUID | None = None
    uploaded_at: datetime | None = None

    @field_validator("uploaded_at")
    @classmethod
    def attach_utc(cls, value: datetime | None) -> datetime | None:
        return _utc(value)


class Decision(BaseModel):
    """
    A council decision (resolution, policy, ...).

    ``votes`` maps user id to that user's vote. Python dicts keep insertion
    order, so iteration yields votes in the order they were cast, and a user
    can appear at most once.
    """

    model_config = ConfigDict(frozen=True)

    id: UUID = Field(default_factory=uuid4)
    place_id: UUID
    shora_id: UUID
    meeting_id: UUID | None = None

    # Display text
    title: str
    title_persian: str = ""
    description: str | None = None
    description_persian: str | None = None

    type: DecisionType = DecisionType.RESOLUTION
    status: DecisionStatus = DecisionStatus.DRAFT
    priority: DecisionPriority = DecisionPriority.MEDIUM
    category: DecisionCategory = DecisionCategory.OTHER

    # Lifecycle
    proposed_by: UUID | None = None
    approved_by: UUID | None = None
    approved_at: datetime | None = None
    implementation_date: datetime | None = None

    # Planning
    budget: DecisionBudget | None = None
    timeline: DecisionTimeline | None = None
    attachments: tuple[DecisionAttachment, ...] = ()

    # Voting
    voting_deadline: datetime | None = None
    quorum_required: int = Field(50, ge=1, le=100)
    eligible_voters: int | None = Field(None, ge=1)  # Council roster size captured at proposal
    votes: dict[UUID, DecisionVote] = Field(default_factory=dict)

    # Metadata
    created_by: UUID | None = None
    updated_by: UUID | None = None
    created_at: datetime
    updated_at: datetime
    version: int = 0

    @field_validator(
        "approved_at", "implementation_date", "voting_deadline", "created_at", "updated_at"
    )
    @classmethod
    def attach_utc(cls, value: datetime | None) -> datetime | None:
        """Naive datetimes are taken to be UTC."""
        return _utc(value)


# =============================================================================
# Derived predicates
# =============================================================================


def total_votes(decision: Decision) -> int:
    return len(decision.votes)


def vote_counts(decision: Decision) -> VoteCounts:
    """Count votes per choice."""
    counts = {choice: 0 for choice in VoteChoice}
    for vote in decision.votes.values():
        counts[vote.choice] += 1
    return VoteCounts(
        yes=counts[VoteChoice.YES],
        no=counts[VoteChoice.NO],
        abstain=counts[VoteChoice.ABSTAIN],
    )


def is_voting_open(decision: Decision, now: datetime) -> bool:
    """Voting is open only for proposed decisions with a deadline still ahead."""
    if decision.voting_deadline is None:
        return False
    return decision.status == DecisionStatus.PROPOSED and now < decision.voting_deadline


def is_lapsed(decision: Decision, now: datetime) -> bool:
    """A proposed decision whose voting deadline has passed but which is not resolved yet."""
    return (
        decision.status == DecisionStatus.PROPOSED
        and decision.voting_deadline is not None
        and now >= decision.voting_deadline
    )


def required_votes(decision: Decision) -> int:
    """
    Number of votes needed for quorum.

    With a roster size recorded, quorum is a percentage of eligible voters.
    Without one, it falls back to a percentage of the votes cast, which any
    non-negative count satisfies.
    """
    base = decision.eligible_voters if decision.eligible_voters else total_votes(decision)
    return (base * decision.quorum_required + 99) // 100


def has_reached_quorum(decision: Decision) -> bool:
    return total_votes(decision) >= required_votes(decision)


def has_user_voted(decision: Decision, user_id: UUID) -> bool:
    return user_id in decision.votes


def get_user_vote(decision: Decision, user_id: UUID) -> DecisionVote | None:
    return decision.votes.get(user_id)


def can_user_vote(decision: Decision, user_id: UUID, now: datetime) -> bool:
    return is_voting_open(decision, now) and not has_user_voted(decision, user_id)


def recommended_outcome(decision: Decision) -> ResolveOutcome:
    """Approve when quorum is reached and yes outweighs no; reject otherwise."""
    counts = vote_counts(decision)
    if has_reached_quorum(decision) and counts.yes > counts.no:
        return ResolveOutcome.APPROVE
    return ResolveOutcome.REJECT


def basic_info(decision: Decision, now: datetime) -> dict[str, Any]:
    """Summary used in listings and event payloads."""
    return {
        "id": decision.id,
        "title": decision.title,
        "title_persian": decision.title_persian,
        "type": decision.type,
        "status": decision.status,
        "place_id": decision.place_id,
        "shora_id": decision.shora_id,
        "proposed_by": decision.proposed_by,
        "total_votes": total_votes(decision),
        "vote_counts": vote_counts(decision).model_dump(),
        "is_voting_open": is_voting_open(decision, now),
        "has_reached_quorum": has_reached_quorum(decision),
    }
