"""
Auth Dependencies

FastAPI dependencies for the caller identity. Authentication itself happens
upstream: the gateway verifies the session and forwards the verified user id,
roles, permissions and place scope as request headers.
"""

from enum import StrEnum
from uuid import UUID

from fastapi import Header, HTTPException, status
from pydantic import BaseModel, Field


class Role(StrEnum):
    """Platform roles."""

    USER = "user"
    REPRESENTATIVE = "representative"  # Council member with voting rights
    ADMIN = "admin"
    SUPER_ADMIN = "super-admin"


class Permission(StrEnum):
    """Fine-grained permissions granted to a user."""

    READ = "read"
    WRITE = "write"
    DELETE = "delete"
    APPROVE = "approve"
    VOTE = "vote"
    MANAGE = "manage"
    SUPER = "super"


class Actor(BaseModel):
    """The authenticated identity performing an operation."""

    user_id: UUID
    roles: list[Role] = Field(default_factory=list)
    permissions: list[Permission] = Field(default_factory=list)
    place_scope: list[UUID] = Field(default_factory=list)

    @property
    def is_super_admin(self) -> bool:
        return Role.SUPER_ADMIN in self.roles

    @property
    def is_admin(self) -> bool:
        return Role.ADMIN in self.roles or self.is_super_admin

    def has_role(self, role: Role) -> bool:
        return role in self.roles

    def has_permission(self, permission: Permission) -> bool:
        """Check a permission; super-admins and holders of ``super`` pass every check."""
        return (
            permission in self.permissions
            or Permission.SUPER in self.permissions
            or self.is_super_admin
        )

    def can_access_place(self, place_id: UUID) -> bool:
        return self.is_super_admin or place_id in self.place_scope


def _split(value: str | None) -> list[str]:
    if not value:
        return []
    return [part.strip() for part in value.split(",") if part.strip()]


def parse_actor(
    user_id: str | None,
    roles: str | None = None,
    permissions: str | None = None,
    place_scope: str | None = None,
) -> Actor:
    """
    Build an Actor from gateway header values.

    Raises:
        HTTPException: 401 if the user id is missing or any value is malformed
    """
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
        )
    try:
        return Actor(
            user_id=UUID(user_id),
            roles=[Role(r) for r in _split(roles)],
            permissions=[Permission(p) for p in _split(permissions)],
            place_scope=[UUID(p) for p in _split(place_scope)],
        )
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Invalid identity headers: {e}",
        ) from e


async def get_current_actor(
    x_user_id: str | None = Header(None),
    x_user_roles: str | None = Header(None),
    x_user_permissions: str | None = Header(None),
    x_place_scope: str | None = Header(None),
) -> Actor:
    """Get the current authenticated actor."""
    return parse_actor(x_user_id, x_user_roles, x_user_permissions, x_place_scope)
