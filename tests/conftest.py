"""
Pytest configuration and fixtures.
"""

from datetime import datetime, timedelta, timezone
from uuid import UUID, uuid4

import pytest

from shora.auth.dependencies import Actor, Permission, Role
from shora.core.events import InMemoryEventPublisher
from shora.decisions.repository import InMemoryDecisionRepository
from shora.decisions.services import DecisionLifecycleService

START = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    """Controllable clock for deadline tests."""

    def __init__(self, now: datetime = START) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


def make_actor(
    place_id: UUID,
    permissions: list[Permission],
    roles: list[Role] | None = None,
) -> Actor:
    return Actor(
        user_id=uuid4(),
        roles=roles or [Role.REPRESENTATIVE],
        permissions=permissions,
        place_scope=[place_id],
    )


def pytest_configure(config: pytest.Config) -> None:
    """Configure pytest."""
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests"
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def place_id() -> UUID:
    return uuid4()


@pytest.fixture
def shora_id() -> UUID:
    return uuid4()


@pytest.fixture
def repository() -> InMemoryDecisionRepository:
    return InMemoryDecisionRepository()


@pytest.fixture
def publisher() -> InMemoryEventPublisher:
    return InMemoryEventPublisher(channel_prefix="test")


@pytest.fixture
def service(
    repository: InMemoryDecisionRepository,
    publisher: InMemoryEventPublisher,
    clock: FakeClock,
) -> DecisionLifecycleService:
    """Engine wired to in-memory storage, a recording publisher and a fake clock."""
    return DecisionLifecycleService(repository, publisher=publisher, timeout=1.0, clock=clock)


@pytest.fixture
def secretary(place_id: UUID) -> Actor:
    """Drafts and proposes decisions."""
    return make_actor(place_id, [Permission.READ, Permission.WRITE, Permission.VOTE])


@pytest.fixture
def chairman(place_id: UUID) -> Actor:
    """Resolves and implements decisions."""
    return make_actor(
        place_id,
        [Permission.READ, Permission.WRITE, Permission.VOTE, Permission.APPROVE, Permission.MANAGE],
    )


@pytest.fixture
def admin(place_id: UUID) -> Actor:
    return make_actor(place_id, [Permission.APPROVE, Permission.MANAGE], roles=[Role.ADMIN])


@pytest.fixture
def members(place_id: UUID) -> list[Actor]:
    """Council representatives with voting rights."""
    return [make_actor(place_id, [Permission.READ, Permission.VOTE]) for _ in range(5)]


@pytest.fixture
def outsider() -> Actor:
    """Has every permission, but in another place."""
    return make_actor(uuid4(), list(Permission))
