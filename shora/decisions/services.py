"""
Decision Lifecycle Service

Owns the decision state machine:

    DRAFT → PROPOSED → APPROVED → IMPLEMENTED
                     ↘ REJECTED

Every write loads a snapshot, checks its guards, builds the new snapshot and
saves it while holding a per-decision lock, so concurrent votes on the same
decision are serialized. A failed guard raises before anything is saved.
Change events are published only after the save succeeded.
"""

import asyncio
import logging
import weakref
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta, timezone
from typing import Any, TypeVar
from uuid import UUID

from pydantic import ValidationError as PydanticValidationError

from shora.auth.dependencies import Actor, Permission
from shora.core.events import DecisionAction, DecisionEvent, Publisher
from shora.decisions.entities import (
    Decision,
    DecisionAttachment,
    DecisionBudget,
    DecisionTimeline,
    DecisionVote,
    VoteCounts,
    can_user_vote,
    get_user_vote,
    has_reached_quorum,
    has_user_voted,
    is_lapsed,
    is_voting_open,
    recommended_outcome,
    required_votes,
    total_votes,
    vote_counts,
)
from shora.decisions.enums import (
    ACTIVE_STATUSES,
    DecisionCategory,
    DecisionPriority,
    DecisionStatus,
    DecisionType,
    ResolveOutcome,
    VoteChoice,
)
from shora.decisions.errors import (
    AlreadyVoted,
    InvalidTransition,
    PermissionDenied,
    PersistenceTimeout,
    ValidationError,
    VotingClosed,
)
from shora.decisions.repository import DecisionRepository

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Fields that may be edited while a decision is still a draft
EDITABLE_FIELDS = frozenset(
    {
        "title",
        "title_persian",
        "description",
        "description_persian",
        "type",
        "priority",
        "category",
        "meeting_id",
        "quorum_required",
        "voting_deadline",
        "eligible_voters",
        "budget",
        "timeline",
        "attachments",
    }
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime | None) -> datetime | None:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def validate_quorum(quorum: Any) -> int:
    if isinstance(quorum, bool) or not isinstance(quorum, int) or not 1 <= quorum <= 100:
        raise ValidationError(f"quorum_required must be an integer between 1 and 100, got {quorum!r}")
    return quorum


def validate_title(title: Any) -> str:
    if not isinstance(title, str) or not title.strip():
        raise ValidationError("title must not be empty")
    return title.strip()


def validate_eligible_voters(count: Any) -> int | None:
    if count is None:
        return None
    if isinstance(count, bool) or not isinstance(count, int) or count < 1:
        raise ValidationError(f"eligible_voters must be a positive integer, got {count!r}")
    return count


def build_snapshot(data: dict[str, Any]) -> Decision:
    """Validate a full set of decision fields into a snapshot."""
    try:
        return Decision.model_validate(data)
    except PydanticValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}"
            for error in e.errors()
        )
        raise ValidationError(f"Invalid decision: {problems}") from e


def attribute_attachments(decision: Decision, user_id: UUID, now: datetime) -> Decision:
    """Credit attachments that carry no uploader to the writing user."""
    if all(a.uploaded_by is not None for a in decision.attachments):
        return decision
    attachments = tuple(
        a
        if a.uploaded_by is not None
        else a.model_copy(update={"uploaded_by": user_id, "uploaded_at": a.uploaded_at or now})
        for a in decision.attachments
    )
    return decision.model_copy(update={"attachments": attachments})


def decision_payload(decision: Decision, now: datetime) -> dict[str, Any]:
    """Serialized snapshot with derived voting state, as sent to subscribers."""
    data = decision.model_dump(mode="json")
    data["votes"] = list(data["votes"].values())
    data["total_votes"] = total_votes(decision)
    data["vote_counts"] = vote_counts(decision).model_dump()
    data["is_voting_open"] = is_voting_open(decision, now)
    data["has_reached_quorum"] = has_reached_quorum(decision)
    return data


class KeyedLocks:
    """One asyncio.Lock per key, released for collection once unused."""

    def __init__(self) -> None:
        self._locks: weakref.WeakValueDictionary[UUID, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    def lock(self, key: UUID) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock


class DecisionLifecycleService:
    """
    Decision lifecycle engine.

    Args:
        repository: Persistence for decision snapshots
        publisher: Notification sink for place channels (optional)
        timeout: Seconds each persistence call may take (None = unbounded)
        clock: Returns the current time; injectable for tests
        default_voting_period: Voting window applied on proposal when
            no deadline was given (None = leave unset)
        default_quorum: Quorum percentage for new decisions
    """

    def __init__(
        self,
        repository: DecisionRepository,
        publisher: Publisher | None = None,
        timeout: float | None = None,
        clock: Callable[[], datetime] = utcnow,
        default_voting_period: timedelta | None = None,
        default_quorum: int = 50,
    ) -> None:
        self.repository = repository
        self.publisher = publisher
        self.timeout = timeout
        self.clock = clock
        self.default_voting_period = default_voting_period
        self.default_quorum = validate_quorum(default_quorum)
        self._locks = KeyedLocks()

    # =========================================================================
    # Plumbing
    # =========================================================================

    async def _call(self, awaitable: Awaitable[T]) -> T:
        """Await a repository call within the configured timeout."""
        try:
            async with asyncio.timeout(self.timeout):
                return await awaitable
        except TimeoutError as e:
            logger.warning("Persistence call exceeded %ss", self.timeout)
            raise PersistenceTimeout(
                f"Persistence did not respond within {self.timeout}s"
            ) from e

    @staticmethod
    def _authorize(actor: Actor, permission: Permission, place_id: UUID) -> None:
        if not actor.can_access_place(place_id):
            raise PermissionDenied(f"User {actor.user_id} has no access to place {place_id}")
        if not actor.has_permission(permission):
            raise PermissionDenied(f"User {actor.user_id} lacks '{permission}' permission")

    async def _notify(self, decision: Decision, action: DecisionAction, actor: Actor) -> None:
        if self.publisher is None:
            return
        event = DecisionEvent(
            place_id=str(decision.place_id),
            decision=decision_payload(decision, self.clock()),
            action=action,
            actor_id=str(actor.user_id),
            timestamp=self.clock().isoformat(),
        )
        try:
            await self.publisher.publish(event)
        except Exception as e:
            # Notifications are best-effort; the write is already committed
            logger.warning("Dropped %s event for decision %s: %s", action, decision.id, e)

    async def _mutate(
        self,
        actor: Actor,
        decision_id: UUID,
        action: DecisionAction | None,
        change: Callable[[Decision, datetime], dict[str, Any]],
    ) -> Decision:
        """
        Load, apply ``change`` (which raises on guard failure), save, then notify.

        The changed fields are validated together with the rest of the
        snapshot, so a malformed value raises ValidationError before the save.
        With ``action`` None the event action is named after the new status.
        """
        async with self._locks.lock(decision_id):
            decision = await self._call(self.repository.load(decision_id))
            now = self.clock()
            updates = change(decision, now)
            updates.update(updated_at=now, updated_by=actor.user_id)
            updated = build_snapshot({**decision.model_dump(), **updates})
            updated = attribute_attachments(updated, actor.user_id, now)
            saved = await self._call(self.repository.save(updated))

        if action is None:
            action = DecisionAction(saved.status.value)
        logger.info(
            "Decision %s %s by %s (status=%s)", saved.id, action, actor.user_id, saved.status
        )
        await self._notify(saved, action, actor)
        return saved

    # =========================================================================
    # Writes
    # =========================================================================

    async def create_decision(
        self,
        actor: Actor,
        *,
        place_id: UUID,
        shora_id: UUID,
        title: str,
        title_persian: str = "",
        description: str | None = None,
        description_persian: str | None = None,
        type: DecisionType = DecisionType.RESOLUTION,
        priority: DecisionPriority = DecisionPriority.MEDIUM,
        category: DecisionCategory = DecisionCategory.OTHER,
        meeting_id: UUID | None = None,
        quorum_required: int | None = None,
        voting_deadline: datetime | None = None,
        eligible_voters: int | None = None,
        budget: DecisionBudget | dict[str, Any] | None = None,
        timeline: DecisionTimeline | dict[str, Any] | None = None,
        attachments: list[DecisionAttachment | dict[str, Any]] | None = None,
    ) -> Decision:
        """Create a new decision in DRAFT."""
        self._authorize(actor, Permission.WRITE, place_id)
        now = self.clock()
        decision = build_snapshot(
            {
                "place_id": place_id,
                "shora_id": shora_id,
                "meeting_id": meeting_id,
                "title": validate_title(title),
                "title_persian": title_persian,
                "description": description,
                "description_persian": description_persian,
                "type": type,
                "priority": priority,
                "category": category,
                "quorum_required": validate_quorum(
                    self.default_quorum if quorum_required is None else quorum_required
                ),
                "voting_deadline": voting_deadline,
                "eligible_voters": validate_eligible_voters(eligible_voters),
                "budget": budget,
                "timeline": timeline,
                "attachments": attachments or (),
                "created_by": actor.user_id,
                "updated_by": actor.user_id,
                "created_at": now,
                "updated_at": now,
            }
        )
        decision = attribute_attachments(decision, actor.user_id, now)
        saved = await self._call(self.repository.save(decision))
        logger.info("Decision %s created in place %s by %s", saved.id, place_id, actor.user_id)
        await self._notify(saved, DecisionAction.CREATED, actor)
        return saved

    async def update_decision(
        self, actor: Actor, decision_id: UUID, **changes: Any
    ) -> Decision:
        """Edit a draft's content."""
        unknown = set(changes) - EDITABLE_FIELDS
        if unknown:
            raise ValidationError(f"Fields cannot be edited: {', '.join(sorted(unknown))}")

        def change(decision: Decision, now: datetime) -> dict[str, Any]:
            self._authorize(actor, Permission.WRITE, decision.place_id)
            if decision.status != DecisionStatus.DRAFT:
                raise InvalidTransition(
                    decision.status, DecisionStatus.DRAFT, "only drafts can be edited"
                )
            updates = dict(changes)
            if "title" in updates:
                updates["title"] = validate_title(updates["title"])
            if "quorum_required" in updates:
                updates["quorum_required"] = validate_quorum(updates["quorum_required"])
            if "eligible_voters" in updates:
                updates["eligible_voters"] = validate_eligible_voters(updates["eligible_voters"])
            return updates

        return await self._mutate(actor, decision_id, DecisionAction.UPDATED, change)

    async def propose(
        self,
        actor: Actor,
        decision_id: UUID,
        voting_deadline: datetime | None = None,
        eligible_voters: int | None = None,
    ) -> Decision:
        """Move a draft to PROPOSED, opening it for votes until the deadline."""

        def change(decision: Decision, now: datetime) -> dict[str, Any]:
            self._authorize(actor, Permission.WRITE, decision.place_id)
            if decision.status != DecisionStatus.DRAFT:
                raise InvalidTransition(decision.status, DecisionStatus.PROPOSED)
            if decision.proposed_by is not None and decision.proposed_by != actor.user_id:
                raise PermissionDenied(
                    f"Decision {decision.id} is reserved for proposer {decision.proposed_by}"
                )
            if not decision.title.strip() or decision.shora_id is None:
                raise InvalidTransition(
                    decision.status, DecisionStatus.PROPOSED, "title and shora are required"
                )

            deadline = _as_utc(voting_deadline) or decision.voting_deadline
            if deadline is None and self.default_voting_period is not None:
                deadline = now + self.default_voting_period
            if deadline is not None and deadline <= now:
                raise ValidationError("voting_deadline must be in the future")

            roster = validate_eligible_voters(eligible_voters)
            return {
                "status": DecisionStatus.PROPOSED,
                "proposed_by": actor.user_id,
                "voting_deadline": deadline,
                "eligible_voters": roster if roster is not None else decision.eligible_voters,
            }

        return await self._mutate(actor, decision_id, DecisionAction.PROPOSED, change)

    async def cast_vote(
        self,
        actor: Actor,
        decision_id: UUID,
        choice: VoteChoice,
        reason: str | None = None,
        reason_persian: str | None = None,
    ) -> VoteCounts:
        """Record the actor's vote and return the updated tally."""
        saved = await self.record_vote(actor, decision_id, choice, reason, reason_persian)
        return vote_counts(saved)

    async def record_vote(
        self,
        actor: Actor,
        decision_id: UUID,
        choice: VoteChoice,
        reason: str | None = None,
        reason_persian: str | None = None,
    ) -> Decision:
        """Record the actor's vote and return the snapshot it was saved in."""

        def change(decision: Decision, now: datetime) -> dict[str, Any]:
            self._authorize(actor, Permission.VOTE, decision.place_id)
            if not is_voting_open(decision, now):
                raise VotingClosed(decision.id)
            if has_user_voted(decision, actor.user_id):
                raise AlreadyVoted(decision.id, actor.user_id)
            vote = DecisionVote(
                user_id=actor.user_id,
                choice=VoteChoice(choice),
                timestamp=now,
                reason=reason,
                reason_persian=reason_persian,
            )
            return {"votes": {**decision.votes, actor.user_id: vote}}

        return await self._mutate(actor, decision_id, DecisionAction.VOTED, change)

    async def resolve(
        self,
        actor: Actor,
        decision_id: UUID,
        outcome: ResolveOutcome | None = None,
        override: bool = False,
    ) -> Decision:
        """
        Close voting on a proposed decision.

        Resolution is allowed once the voting deadline has passed, or earlier
        with an admin override. Approval needs quorum and more yes than no
        votes; rejection is always allowed. Without an explicit outcome the
        tally decides.
        """
        if override and not actor.is_admin:
            raise PermissionDenied("Only administrators may resolve before the voting deadline")

        def change(decision: Decision, now: datetime) -> dict[str, Any]:
            self._authorize(actor, Permission.APPROVE, decision.place_id)
            chosen = ResolveOutcome(outcome) if outcome else recommended_outcome(decision)
            target = (
                DecisionStatus.APPROVED
                if chosen == ResolveOutcome.APPROVE
                else DecisionStatus.REJECTED
            )
            if decision.status != DecisionStatus.PROPOSED:
                raise InvalidTransition(decision.status, target)
            if (
                decision.voting_deadline is not None
                and now < decision.voting_deadline
                and not override
            ):
                raise InvalidTransition(
                    decision.status,
                    target,
                    f"voting is open until {decision.voting_deadline.isoformat()}",
                )

            if target == DecisionStatus.REJECTED:
                return {"status": DecisionStatus.REJECTED}

            if not has_reached_quorum(decision):
                raise InvalidTransition(
                    decision.status,
                    target,
                    f"quorum not reached ({total_votes(decision)} of "
                    f"{required_votes(decision)} votes)",
                )
            counts = vote_counts(decision)
            if counts.yes <= counts.no:
                raise InvalidTransition(
                    decision.status,
                    target,
                    f"majority not in favour (yes={counts.yes}, no={counts.no})",
                )
            return {
                "status": DecisionStatus.APPROVED,
                "approved_by": actor.user_id,
                "approved_at": now,
            }

        return await self._mutate(actor, decision_id, None, change)

    async def implement(
        self,
        actor: Actor,
        decision_id: UUID,
        implementation_date: datetime | None = None,
    ) -> Decision:
        """Mark an approved decision as implemented."""

        def change(decision: Decision, now: datetime) -> dict[str, Any]:
            self._authorize(actor, Permission.MANAGE, decision.place_id)
            if decision.status != DecisionStatus.APPROVED:
                raise InvalidTransition(decision.status, DecisionStatus.IMPLEMENTED)
            return {
                "status": DecisionStatus.IMPLEMENTED,
                "implementation_date": _as_utc(implementation_date) or now,
            }

        return await self._mutate(actor, decision_id, DecisionAction.IMPLEMENTED, change)

    # =========================================================================
    # Reads
    # =========================================================================

    async def get_decision(self, decision_id: UUID) -> Decision:
        return await self._call(self.repository.load(decision_id))

    async def list_decisions(
        self,
        place_id: UUID | None = None,
        shora_id: UUID | None = None,
        status: DecisionStatus | None = None,
    ) -> list[Decision]:
        """Decisions matching the filters, newest first."""
        return await self._call(
            self.repository.query(place_id=place_id, shora_id=shora_id, status=status)
        )

    async def list_active(self, place_id: UUID | None = None) -> list[Decision]:
        """Drafts and open proposals."""
        return await self._call(self.repository.query(place_id=place_id, statuses=ACTIVE_STATUSES))

    async def list_lapsed(self, place_id: UUID | None = None) -> list[Decision]:
        """
        Proposed decisions whose deadline passed without a resolution.

        Report only: status is left untouched until someone calls resolve().
        """
        now = self.clock()
        proposed = await self._call(
            self.repository.query(place_id=place_id, status=DecisionStatus.PROPOSED)
        )
        return [d for d in proposed if is_lapsed(d, now)]

    async def get_vote_counts(self, decision_id: UUID) -> VoteCounts:
        return vote_counts(await self.get_decision(decision_id))

    async def has_user_voted(self, decision_id: UUID, user_id: UUID) -> bool:
        return has_user_voted(await self.get_decision(decision_id), user_id)

    async def get_user_vote(self, decision_id: UUID, user_id: UUID) -> DecisionVote | None:
        return get_user_vote(await self.get_decision(decision_id), user_id)

    async def can_user_vote(self, decision_id: UUID, user_id: UUID) -> bool:
        return can_user_vote(await self.get_decision(decision_id), user_id, self.clock())
