"""
Decision Pydantic Schemas

API request/response schemas for decisions.
"""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, Field, model_validator

from shora.decisions.entities import (
    Decision,
    DecisionAttachment,
    DecisionBudget,
    DecisionTimeline,
    DecisionVote,
    has_reached_quorum,
    is_voting_open,
    required_votes,
    total_votes,
    vote_counts,
)
from shora.decisions.enums import (
    DecisionCategory,
    DecisionPriority,
    DecisionStatus,
    DecisionType,
    ResolveOutcome,
    VoteChoice,
)


# =============================================================================
# Requests
# =============================================================================


class DecisionCreate(BaseModel):
    """Schema for creating a decision."""

    place_id: UUID
    shora_id: UUID
    title: str = Field(..., min_length=1, max_length=300)
    title_persian: str = Field("", max_length=300)
    description: str | None = None
    description_persian: str | None = None
    type: DecisionType = DecisionType.RESOLUTION
    priority: DecisionPriority = DecisionPriority.MEDIUM
    category: DecisionCategory = DecisionCategory.OTHER
    meeting_id: UUID | None = None
    quorum_required: int | None = Field(None, ge=1, le=100)
    voting_deadline: datetime | None = None
    eligible_voters: int | None = Field(None, ge=1)
    budget: DecisionBudget | None = None
    timeline: DecisionTimeline | None = None
    attachments: list[DecisionAttachment] = Field(default_factory=list)


# Fields a draft always has a value for; PATCH may change them but not clear them
REQUIRED_ON_UPDATE = (
    "title",
    "title_persian",
    "type",
    "priority",
    "category",
    "quorum_required",
    "attachments",
)


class DecisionUpdate(BaseModel):
    """Schema for editing a draft. Only set fields are applied."""

    title: str | None = Field(None, min_length=1, max_length=300)
    title_persian: str | None = Field(None, max_length=300)
    description: str | None = None
    description_persian: str | None = None
    type: DecisionType | None = None
    priority: DecisionPriority | None = None
    category: DecisionCategory | None = None
    meeting_id: UUID | None = None
    quorum_required: int | None = Field(None, ge=1, le=100)
    voting_deadline: datetime | None = None
    eligible_voters: int | None = Field(None, ge=1)
    budget: DecisionBudget | None = None
    timeline: DecisionTimeline | None = None
    attachments: list[DecisionAttachment] | None = None

    @model_validator(mode="after")
    def reject_cleared_required(self) -> "DecisionUpdate":
        cleared = [
            name
            for name in REQUIRED_ON_UPDATE
            if name in self.model_fields_set and getattr(self, name) is None
        ]
        if cleared:
            raise ValueError(f"{', '.join(cleared)} cannot be null")
        return self


class ProposeRequest(BaseModel):
    """Open a draft for voting."""

    voting_deadline: datetime | None = None
    eligible_voters: int | None = Field(None, ge=1)


class VoteRequest(BaseModel):
    """Cast a vote."""

    vote: VoteChoice
    reason: str | None = None
    reason_persian: str | None = None


class ResolveRequest(BaseModel):
    """Close voting. Without an outcome the tally decides."""

    outcome: ResolveOutcome | None = None
    override: bool = False


class ImplementRequest(BaseModel):
    implementation_date: datetime | None = None


# =============================================================================
# Responses
# =============================================================================


class VoteCountsResponse(BaseModel):
    yes: int
    no: int
    abstain: int


class VoteResponse(BaseModel):
    user_id: UUID
    vote: VoteChoice
    timestamp: datetime
    reason: str | None = None
    reason_persian: str | None = None

    @classmethod
    def from_entity(cls, vote: DecisionVote) -> "VoteResponse":
        return cls(
            user_id=vote.user_id,
            vote=vote.choice,
            timestamp=vote.timestamp,
            reason=vote.reason,
            reason_persian=vote.reason_persian,
        )


class TallyResponse(BaseModel):
    """Vote tally with quorum state."""

    decision_id: UUID
    vote_counts: VoteCountsResponse
    total_votes: int
    required_votes: int
    has_reached_quorum: bool
    is_voting_open: bool


class UserVoteResponse(BaseModel):
    """The caller's own voting state on a decision."""

    decision_id: UUID
    has_voted: bool
    can_vote: bool
    vote: VoteResponse | None = None


class DecisionResponse(BaseModel):
    """Schema for decision response, including derived voting state."""

    id: UUID
    place_id: UUID
    shora_id: UUID
    meeting_id: UUID | None = None
    title: str
    title_persian: str
    description: str | None = None
    description_persian: str | None = None
    type: DecisionType
    status: DecisionStatus
    priority: DecisionPriority
    category: DecisionCategory
    proposed_by: UUID | None = None
    approved_by: UUID | None = None
    approved_at: datetime | None = None
    implementation_date: datetime | None = None
    voting_deadline: datetime | None = None
    quorum_required: int
    eligible_voters: int | None = None
    budget: DecisionBudget | None = None
    timeline: DecisionTimeline | None = None
    attachments: list[DecisionAttachment]
    votes: list[VoteResponse]
    total_votes: int
    vote_counts: VoteCountsResponse
    is_voting_open: bool
    has_reached_quorum: bool
    created_by: UUID | None = None
    updated_by: UUID | None = None
    created_at: datetime
    updated_at: datetime
    version: int

    @classmethod
    def from_entity(cls, decision: Decision, now: datetime) -> "DecisionResponse":
        data = decision.model_dump(exclude={"votes"})
        return cls(
            **data,
            votes=[VoteResponse.from_entity(v) for v in decision.votes.values()],
            total_votes=total_votes(decision),
            vote_counts=VoteCountsResponse(**vote_counts(decision).model_dump()),
            is_voting_open=is_voting_open(decision, now),
            has_reached_quorum=has_reached_quorum(decision),
        )


def tally_response(decision: Decision, now: datetime) -> TallyResponse:
    return TallyResponse(
        decision_id=decision.id,
        vote_counts=VoteCountsResponse(**vote_counts(decision).model_dump()),
        total_votes=total_votes(decision),
        required_votes=required_votes(decision),
        has_reached_quorum=has_reached_quorum(decision),
        is_voting_open=is_voting_open(decision, now),
    )
