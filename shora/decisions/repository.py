"""
Decision Repository

Persistence contract for the lifecycle engine and its two implementations:
SQLAlchemy-backed storage and a dict-backed in-memory store.

Both implementations share the same save semantics:
- a snapshot carries the ``version`` it was loaded at; saving a snapshot whose
  version no longer matches the stored one raises ``Conflict``
- saving an unchanged snapshot is a no-op (nothing drifts)
- otherwise the stored version is bumped and the stored snapshot returned
"""

import itertools
import logging
from collections.abc import Iterable
from datetime import datetime, timezone
from typing import Protocol
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from shora.core.database import Database
from shora.decisions.entities import Decision, DecisionVote
from shora.decisions.enums import DecisionStatus
from shora.decisions.errors import Conflict, NotFound
from shora.decisions.models import DecisionRecord, DecisionVoteRecord

logger = logging.getLogger(__name__)


class DecisionRepository(Protocol):
    """Storage interface consumed by the lifecycle engine."""

    async def load(self, decision_id: UUID) -> Decision: ...

    async def save(self, decision: Decision) -> Decision: ...

    async def query(
        self,
        place_id: UUID | None = None,
        shora_id: UUID | None = None,
        status: DecisionStatus | None = None,
        statuses: Iterable[DecisionStatus] | None = None,
    ) -> list[Decision]: ...


def _status_filter(
    status: DecisionStatus | None, statuses: Iterable[DecisionStatus] | None
) -> set[DecisionStatus] | None:
    wanted: set[DecisionStatus] = set(statuses or ())
    if status is not None:
        wanted.add(status)
    return wanted or None


# =============================================================================
# In-memory
# =============================================================================


class InMemoryDecisionRepository:
    """Dict-backed repository for development and tests."""

    def __init__(self) -> None:
        self._items: dict[UUID, Decision] = {}
        self._sequence: dict[UUID, int] = {}
        self._counter = itertools.count()

    def __len__(self) -> int:
        return len(self._items)

    async def load(self, decision_id: UUID) -> Decision:
        try:
            return self._items[decision_id]
        except KeyError:
            raise NotFound(decision_id) from None

    async def save(self, decision: Decision) -> Decision:
        stored = self._items.get(decision.id)
        stored_version = stored.version if stored else 0
        if stored_version != decision.version:
            raise Conflict(decision.id, decision.version, stored.version if stored else None)
        if stored == decision:
            return stored

        saved = decision.model_copy(update={"version": decision.version + 1})
        self._items[decision.id] = saved
        self._sequence.setdefault(decision.id, next(self._counter))
        return saved

    async def query(
        self,
        place_id: UUID | None = None,
        shora_id: UUID | None = None,
        status: DecisionStatus | None = None,
        statuses: Iterable[DecisionStatus] | None = None,
    ) -> list[Decision]:
        wanted = _status_filter(status, statuses)
        matches = [
            d
            for d in self._items.values()
            if (place_id is None or d.place_id == place_id)
            and (shora_id is None or d.shora_id == shora_id)
            and (wanted is None or d.status in wanted)
        ]
        # Newest first; insertion order breaks ties between equal timestamps
        return sorted(matches, key=lambda d: (d.created_at, self._sequence[d.id]), reverse=True)


# =============================================================================
# SQL
# =============================================================================


def _aware(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes returned by backends without tz support."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def record_to_entity(record: DecisionRecord) -> Decision:
    """Map a database row (with votes loaded) to an immutable snapshot."""
    return Decision(
        id=record.id,
        place_id=record.place_id,
        shora_id=record.shora_id,
        meeting_id=record.meeting_id,
        title=record.title,
        title_persian=record.title_persian,
        description=record.description,
        description_persian=record.description_persian,
        type=record.type,
        status=record.status,
        priority=record.priority,
        category=record.category,
        proposed_by=record.proposed_by,
        approved_by=record.approved_by,
        approved_at=_aware(record.approved_at),
        implementation_date=_aware(record.implementation_date),
        voting_deadline=_aware(record.voting_deadline),
        quorum_required=record.quorum_required,
        eligible_voters=record.eligible_voters,
        budget=record.budget,
        timeline=record.timeline,
        attachments=record.attachments or (),
        votes={
            v.user_id: DecisionVote(
                user_id=v.user_id,
                choice=v.choice,
                timestamp=_aware(v.timestamp),
                reason=v.reason,
                reason_persian=v.reason_persian,
            )
            for v in record.votes
        },
        created_by=record.created_by,
        updated_by=record.updated_by,
        created_at=_aware(record.created_at),
        updated_at=_aware(record.updated_at),
        version=record.version,
    )


_COLUMNS = (
    "place_id",
    "shora_id",
    "meeting_id",
    "title",
    "title_persian",
    "description",
    "description_persian",
    "type",
    "status",
    "priority",
    "category",
    "proposed_by",
    "approved_by",
    "approved_at",
    "implementation_date",
    "voting_deadline",
    "quorum_required",
    "eligible_voters",
    "created_by",
    "updated_by",
    "created_at",
    "updated_at",
)


def apply_entity(record: DecisionRecord, decision: Decision) -> None:
    """Copy snapshot fields onto a row, appending vote rows for new voters."""
    for column in _COLUMNS:
        setattr(record, column, getattr(decision, column))
    record.budget = decision.budget.model_dump(mode="json") if decision.budget else None
    record.timeline = decision.timeline.model_dump(mode="json") if decision.timeline else None
    record.attachments = [a.model_dump(mode="json") for a in decision.attachments]

    existing = {v.user_id: v for v in record.votes}
    for user_id, stale in existing.items():
        if user_id not in decision.votes:
            record.votes.remove(stale)
    for position, (user_id, vote) in enumerate(decision.votes.items()):
        if user_id in existing:
            continue
        record.votes.append(
            DecisionVoteRecord(
                user_id=user_id,
                position=position,
                choice=vote.choice,
                timestamp=vote.timestamp,
                reason=vote.reason,
                reason_persian=vote.reason_persian,
            )
        )


class SqlDecisionRepository:
    """SQLAlchemy-backed repository."""

    def __init__(self, database: Database) -> None:
        self.database = database

    async def load(self, decision_id: UUID) -> Decision:
        async with self.database.session() as session:
            record = await session.get(DecisionRecord, decision_id)
            if record is None:
                raise NotFound(decision_id)
            return record_to_entity(record)

    async def save(self, decision: Decision) -> Decision:
        try:
            async with self.database.session() as session:
                record = await session.get(DecisionRecord, decision.id)
                if record is None:
                    if decision.version != 0:
                        raise Conflict(decision.id, decision.version, None)
                    record = DecisionRecord(id=decision.id, votes=[])
                    apply_entity(record, decision)
                    session.add(record)
                    await session.flush()
                    return record_to_entity(record)

                if record.version != decision.version:
                    raise Conflict(decision.id, decision.version, record.version)
                if record_to_entity(record) == decision:
                    return decision

                apply_entity(record, decision)
                await session.flush()
                return record_to_entity(record)
        except (StaleDataError, IntegrityError) as e:
            logger.warning("Concurrent write rejected for decision %s: %s", decision.id, e)
            raise Conflict(decision.id, decision.version, None) from e

    async def query(
        self,
        place_id: UUID | None = None,
        shora_id: UUID | None = None,
        status: DecisionStatus | None = None,
        statuses: Iterable[DecisionStatus] | None = None,
    ) -> list[Decision]:
        stmt = select(DecisionRecord)
        if place_id is not None:
            stmt = stmt.where(DecisionRecord.place_id == place_id)
        if shora_id is not None:
            stmt = stmt.where(DecisionRecord.shora_id == shora_id)
        wanted = _status_filter(status, statuses)
        if wanted is not None:
            stmt = stmt.where(DecisionRecord.status.in_(wanted))
        stmt = stmt.order_by(DecisionRecord.created_at.desc())

        async with self.database.session() as session:
            result = await session.execute(stmt)
            return [record_to_entity(r) for r in result.scalars().all()]
