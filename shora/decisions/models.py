"""
Decision Database Models

SQLAlchemy models backing the SQL repository. The unique constraint on
``decision_votes`` makes the database reject a second vote by the same user
even if two writers race past the engine's checks.
"""

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from shora.core.database import Base
from shora.decisions.enums import (
    DecisionCategory,
    DecisionPriority,
    DecisionStatus,
    DecisionType,
    VoteChoice,
)

# JSONB on PostgreSQL, plain JSON elsewhere
Document = JSON().with_variant(JSONB(), "postgresql")


class DecisionRecord(Base):
    """Persisted decision row."""

    __tablename__ = "decisions"
    __table_args__ = (
        Index("ix_decisions_place_created", "place_id", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    place_id: Mapped[uuid.UUID] = mapped_column(Uuid, index=True)
    shora_id: Mapped[uuid.UUID] = mapped_column(Uuid, index=True)
    meeting_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)

    title: Mapped[str] = mapped_column(String(300))
    title_persian: Mapped[str] = mapped_column(String(300), default="")
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    description_persian: Mapped[str | None] = mapped_column(Text, nullable=True)

    type: Mapped[DecisionType] = mapped_column(
        Enum(DecisionType, name="decision_type"), default=DecisionType.RESOLUTION
    )
    status: Mapped[DecisionStatus] = mapped_column(
        Enum(DecisionStatus, name="decision_status"), default=DecisionStatus.DRAFT, index=True
    )
    priority: Mapped[DecisionPriority] = mapped_column(
        Enum(DecisionPriority, name="decision_priority"), default=DecisionPriority.MEDIUM
    )
    category: Mapped[DecisionCategory] = mapped_column(
        Enum(DecisionCategory, name="decision_category"), default=DecisionCategory.OTHER
    )

    proposed_by: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True, index=True)
    approved_by: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    implementation_date: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    budget: Mapped[dict[str, Any] | None] = mapped_column(Document, nullable=True)
    timeline: Mapped[dict[str, Any] | None] = mapped_column(Document, nullable=True)
    attachments: Mapped[list[dict[str, Any]]] = mapped_column(Document, default=list)

    voting_deadline: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    quorum_required: Mapped[int] = mapped_column(Integer, default=50)
    eligible_voters: Mapped[int | None] = mapped_column(Integer, nullable=True)

    created_by: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    updated_by: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    version: Mapped[int] = mapped_column(Integer, default=0)

    votes: Mapped[list["DecisionVoteRecord"]] = relationship(
        back_populates="decision",
        cascade="all, delete-orphan",
        order_by="DecisionVoteRecord.position",
        lazy="selectin",
    )

    # UPDATEs are issued as "... WHERE version = :old" and bump it
    __mapper_args__ = {"version_id_col": version}


class DecisionVoteRecord(Base):
    """A vote row; ``position`` preserves the order votes were cast in."""

    __tablename__ = "decision_votes"
    __table_args__ = (
        UniqueConstraint("decision_id", "user_id", name="uq_decision_votes_decision_user"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    decision_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("decisions.id", ondelete="CASCADE"))
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, index=True)
    position: Mapped[int] = mapped_column(Integer)
    choice: Mapped[VoteChoice] = mapped_column(Enum(VoteChoice, name="vote_choice"))
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    reason_persian: Mapped[str | None] = mapped_column(Text, nullable=True)

    decision: Mapped["DecisionRecord"] = relationship(back_populates="votes")
