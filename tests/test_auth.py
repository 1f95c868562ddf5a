"""
Tests for the caller identity.
"""

from uuid import uuid4

import pytest
from fastapi import HTTPException

from shora.auth.dependencies import Actor, Permission, Role, parse_actor


class TestActor:
    """Tests for permission and scope checks."""

    def test_listed_permission(self) -> None:
        actor = Actor(user_id=uuid4(), permissions=[Permission.VOTE])

        assert actor.has_permission(Permission.VOTE) is True
        assert actor.has_permission(Permission.APPROVE) is False

    def test_super_permission_grants_all(self) -> None:
        actor = Actor(user_id=uuid4(), permissions=[Permission.SUPER])

        assert all(actor.has_permission(p) for p in Permission)

    def test_super_admin_grants_all_and_every_place(self) -> None:
        actor = Actor(user_id=uuid4(), roles=[Role.SUPER_ADMIN])

        assert actor.has_permission(Permission.MANAGE) is True
        assert actor.can_access_place(uuid4()) is True
        assert actor.is_admin is True

    def test_place_scope(self) -> None:
        place = uuid4()
        actor = Actor(user_id=uuid4(), place_scope=[place])

        assert actor.can_access_place(place) is True
        assert actor.can_access_place(uuid4()) is False

    def test_admin_role(self) -> None:
        assert Actor(user_id=uuid4(), roles=[Role.ADMIN]).is_admin is True
        assert Actor(user_id=uuid4(), roles=[Role.REPRESENTATIVE]).is_admin is False


class TestParseActor:
    """Tests for reading gateway headers."""

    def test_parse_full_identity(self) -> None:
        user = uuid4()
        place_a, place_b = uuid4(), uuid4()

        actor = parse_actor(
            str(user), "representative, admin", "vote,approve", f"{place_a},{place_b}"
        )

        assert actor.user_id == user
        assert actor.roles == [Role.REPRESENTATIVE, Role.ADMIN]
        assert actor.permissions == [Permission.VOTE, Permission.APPROVE]
        assert actor.place_scope == [place_a, place_b]

    def test_missing_user(self) -> None:
        with pytest.raises(HTTPException) as exc_info:
            parse_actor(None)

        assert exc_info.value.status_code == 401

    def test_malformed_values(self) -> None:
        with pytest.raises(HTTPException) as exc_info:
            parse_actor(str(uuid4()), permissions="vote,fly")

        assert exc_info.value.status_code == 401

    def test_malformed_user_id(self) -> None:
        with pytest.raises(HTTPException):
            parse_actor("not-a-uuid")
