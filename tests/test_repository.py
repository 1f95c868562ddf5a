"""
Tests for decision persistence.

The SQL tests run against SQLite through aiosqlite: in memory for the
repository contract, file-backed where separate engines share one database.
"""

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import timedelta
from decimal import Decimal
from uuid import uuid4

import pytest

from shora.core.database import Database
from shora.decisions.entities import (
    Decision,
    DecisionAttachment,
    DecisionBudget,
    DecisionTimeline,
    DecisionVote,
    Milestone,
)
from shora.decisions.enums import (
    DecisionCategory,
    DecisionStatus,
    ResolveOutcome,
    VoteChoice,
)
from shora.decisions.errors import AlreadyVoted, Conflict, NotFound
from shora.decisions.repository import InMemoryDecisionRepository, SqlDecisionRepository
from shora.decisions.services import DecisionLifecycleService

from tests.conftest import START


def make_decision(**overrides) -> Decision:
    data = {
        "place_id": uuid4(),
        "shora_id": uuid4(),
        "title": "Approve the 1405 budget",
        "title_persian": "تصویب بودجه ۱۴۰۵",
        "category": DecisionCategory.FINANCE,
        "created_at": START,
        "updated_at": START,
    }
    data.update(overrides)
    return Decision(**data)


def add_vote(decision: Decision, choice: VoteChoice, minutes: int = 0) -> Decision:
    user = uuid4()
    vote = DecisionVote(
        user_id=user, choice=choice, timestamp=START + timedelta(minutes=minutes)
    )
    return decision.model_copy(
        update={"votes": {**decision.votes, user: vote}, "updated_at": vote.timestamp}
    )


@asynccontextmanager
async def sql_repository() -> AsyncIterator[SqlDecisionRepository]:
    async with Database("sqlite+aiosqlite:///:memory:", create_tables=True) as database:
        yield SqlDecisionRepository(database)


@asynccontextmanager
async def memory_repository() -> AsyncIterator[InMemoryDecisionRepository]:
    yield InMemoryDecisionRepository()


REPOSITORIES = [
    pytest.param(memory_repository, id="memory"),
    pytest.param(sql_repository, id="sql", marks=pytest.mark.integration),
]


@pytest.mark.parametrize("open_repository", REPOSITORIES)
class TestRepositoryContract:
    """Behaviour shared by every repository implementation."""

    @pytest.mark.asyncio
    async def test_save_assigns_version(self, open_repository) -> None:
        async with open_repository() as repository:
            saved = await repository.save(make_decision())

            assert saved.version == 1

    @pytest.mark.asyncio
    async def test_load_unknown(self, open_repository) -> None:
        async with open_repository() as repository:
            with pytest.raises(NotFound):
                await repository.load(uuid4())

    @pytest.mark.asyncio
    async def test_round_trip_is_idempotent(self, open_repository) -> None:
        """Test save(load(id)) changes nothing."""
        async with open_repository() as repository:
            decision = add_vote(add_vote(make_decision(), VoteChoice.YES), VoteChoice.NO, 1)
            saved = await repository.save(decision)

            loaded = await repository.load(saved.id)
            again = await repository.save(loaded)
            reloaded = await repository.load(saved.id)

            assert loaded == saved
            assert again == saved
            assert reloaded == saved

    @pytest.mark.asyncio
    async def test_votes_keep_order(self, open_repository) -> None:
        async with open_repository() as repository:
            saved = await repository.save(make_decision())
            updated = add_vote(saved, VoteChoice.NO, 1)
            updated = add_vote(updated, VoteChoice.ABSTAIN, 2)
            updated = add_vote(updated, VoteChoice.YES, 3)

            await repository.save(updated)
            loaded = await repository.load(saved.id)

            assert [v.choice for v in loaded.votes.values()] == [
                VoteChoice.NO,
                VoteChoice.ABSTAIN,
                VoteChoice.YES,
            ]
            assert loaded.version == 2

    @pytest.mark.asyncio
    async def test_stale_save_conflicts(self, open_repository) -> None:
        async with open_repository() as repository:
            saved = await repository.save(make_decision())
            first = saved.model_copy(update={"title": "First edit"})
            second = saved.model_copy(update={"title": "Second edit"})

            await repository.save(first)

            with pytest.raises(Conflict):
                await repository.save(second)
            assert (await repository.load(saved.id)).title == "First edit"

    @pytest.mark.asyncio
    async def test_duplicate_insert_conflicts(self, open_repository) -> None:
        async with open_repository() as repository:
            decision = make_decision()
            await repository.save(decision)

            with pytest.raises(Conflict):
                await repository.save(decision.model_copy(update={"title": "Other"}))

    @pytest.mark.asyncio
    async def test_query_filters_and_order(self, open_repository) -> None:
        async with open_repository() as repository:
            place = uuid4()
            shora = uuid4()
            older = await repository.save(make_decision(place_id=place, shora_id=shora))
            newer = await repository.save(
                make_decision(
                    place_id=place,
                    shora_id=shora,
                    status=DecisionStatus.PROPOSED,
                    created_at=START + timedelta(hours=1),
                )
            )
            await repository.save(make_decision())

            by_place = await repository.query(place_id=place)
            by_shora = await repository.query(shora_id=shora, status=DecisionStatus.DRAFT)
            active = await repository.query(
                place_id=place, statuses=[DecisionStatus.DRAFT, DecisionStatus.PROPOSED]
            )

            assert [d.id for d in by_place] == [newer.id, older.id]
            assert [d.id for d in by_shora] == [older.id]
            assert len(active) == 2


class TestSqlRepository:
    """SQL-specific behaviour."""

    @pytest.mark.asyncio
    @pytest.mark.integration
    async def test_timestamps_are_timezone_aware(self) -> None:
        async with sql_repository() as repository:
            saved = await repository.save(
                make_decision(voting_deadline=START + timedelta(days=2))
            )

            loaded = await repository.load(saved.id)

            assert loaded.created_at.tzinfo is not None
            assert loaded.voting_deadline == START + timedelta(days=2)

    @pytest.mark.asyncio
    @pytest.mark.integration
    async def test_planning_data_round_trip(self) -> None:
        async with sql_repository() as repository:
            decision = make_decision(
                budget=DecisionBudget(amount=Decimal("1500000.50"), description="Asphalt"),
                timeline=DecisionTimeline(
                    start_date=START,
                    end_date=START + timedelta(days=90),
                    milestones=(Milestone(title="Tender", date=START + timedelta(days=10)),),
                ),
                attachments=(
                    DecisionAttachment(filename="tender.pdf", size=4096, uploaded_at=START),
                ),
            )
            saved = await repository.save(decision)

            loaded = await repository.load(saved.id)
            again = await repository.save(loaded)

            assert loaded.budget == decision.budget
            assert loaded.timeline == decision.timeline
            assert loaded.attachments == decision.attachments
            assert again.version == saved.version


class PausingRepository(SqlDecisionRepository):
    """Holds every load at a shared barrier so two writers read the same version."""

    def __init__(self, database: Database, barrier: asyncio.Barrier) -> None:
        super().__init__(database)
        self.barrier: asyncio.Barrier | None = barrier

    async def load(self, decision_id):
        decision = await super().load(decision_id)
        if self.barrier is not None:
            await self.barrier.wait()
        return decision


@pytest.mark.integration
class TestSqlLifecycle:
    """The lifecycle engine running on SQL storage."""

    @pytest.mark.asyncio
    async def test_full_lifecycle(
        self, tmp_path, secretary, chairman, members, place_id, shora_id, clock
    ) -> None:
        url = f"sqlite+aiosqlite:///{tmp_path / 'shora.db'}"
        async with Database(url, create_tables=True) as database:
            service = DecisionLifecycleService(
                SqlDecisionRepository(database), timeout=5.0, clock=clock
            )
            draft = await service.create_decision(
                secretary, place_id=place_id, shora_id=shora_id, title="Repave Enghelab square"
            )
            await service.propose(secretary, draft.id, voting_deadline=clock.now + timedelta(days=1))
            for member, choice in zip(members, [VoteChoice.YES, VoteChoice.YES, VoteChoice.NO]):
                await service.cast_vote(member, draft.id, choice)

            with pytest.raises(AlreadyVoted):
                await service.cast_vote(members[0], draft.id, VoteChoice.NO)

            clock.advance(days=1)
            approved = await service.resolve(chairman, draft.id, ResolveOutcome.APPROVE)
            implemented = await service.implement(chairman, draft.id)

            assert approved.status == DecisionStatus.APPROVED
            assert implemented.status == DecisionStatus.IMPLEMENTED
            stored = await service.get_decision(draft.id)
            assert [v.user_id for v in stored.votes.values()] == [m.user_id for m in members[:3]]
            assert stored.version == implemented.version

    @pytest.mark.asyncio
    async def test_writers_racing_across_processes(
        self, tmp_path, secretary, members, place_id, shora_id, clock
    ) -> None:
        """Test two engines sharing a database: one vote lands, the other conflicts."""
        url = f"sqlite+aiosqlite:///{tmp_path / 'shora.db'}"
        async with Database(url, create_tables=True) as first_db, Database(url) as second_db:
            setup = DecisionLifecycleService(SqlDecisionRepository(first_db), clock=clock)
            draft = await setup.create_decision(
                secretary, place_id=place_id, shora_id=shora_id, title="Night bus line"
            )
            await setup.propose(secretary, draft.id, voting_deadline=clock.now + timedelta(days=1))

            barrier = asyncio.Barrier(2)
            first_repo = PausingRepository(first_db, barrier)
            second_repo = PausingRepository(second_db, barrier)
            first = DecisionLifecycleService(first_repo, timeout=10.0, clock=clock)
            second = DecisionLifecycleService(second_repo, timeout=10.0, clock=clock)

            results = await asyncio.gather(
                first.cast_vote(members[0], draft.id, VoteChoice.YES),
                second.cast_vote(members[1], draft.id, VoteChoice.NO),
                return_exceptions=True,
            )

            first_repo.barrier = second_repo.barrier = None
            conflicts = [r for r in results if isinstance(r, Conflict)]
            assert len(conflicts) == 1
            stored = await first.get_decision(draft.id)
            assert len(stored.votes) == 1
            assert stored.version == draft.version + 2
