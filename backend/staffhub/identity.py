"""Identity & session resolution.

The calling actor is loaded fresh from the ``users`` table for every request;
an inactive user is treated exactly like a missing session.
"""
from __future__ import annotations

import dataclasses
import uuid

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from staffhub.errors import NotAuthenticatedError
from staffhub.rbac import ADMIN, MANAGER, is_global_scope


@dataclasses.dataclass(frozen=True)
class Actor:
    id: uuid.UUID
    email: str
    display_name: str
    role: str
    is_active: bool = True

    @property
    def is_admin(self) -> bool:
        return self.role == ADMIN

    @property
    def is_manager(self) -> bool:
        return self.role == MANAGER

    @property
    def has_global_scope(self) -> bool:
        return is_global_scope(self.role)

    def to_dict(self) -> dict:
        return {
            "user_id": str(self.id),
            "email": self.email,
            "display_name": self.display_name,
            "role": self.role,
        }


def actor_from_user(user) -> Actor:
    return Actor(
        id=user.id,
        email=user.email,
        display_name=user.display_name,
        role=user.role,
        is_active=user.is_active,
    )


async def resolve_actor(db: AsyncSession, user_id: uuid.UUID) -> Actor:
    """Return the active actor for *user_id* or raise ``NotAuthenticatedError``."""
    from staffhub.models.user import User

    result = await db.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()
    if user is None or not user.is_active:
        raise NotAuthenticatedError()
    return actor_from_user(user)
