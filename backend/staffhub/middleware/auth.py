"""Authentication and authorization dependencies for StaffHub.

Provides:
- Password hashing (bcrypt)
- JWT creation / validation
- ``get_current_user()`` dependency (inactive users count as signed out)
- ``get_role_table()`` and ``require_permission()``
"""
from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from passlib.context import CryptContext
from sqlalchemy.ext.asyncio import AsyncSession

from staffhub.config import settings
from staffhub.database import get_db
from staffhub.errors import NotAuthenticatedError
from staffhub.identity import Actor, resolve_actor
from staffhub.rbac import DEFAULT_ROLE_TABLE, RolePermissionTable, split_permission_key

# ---------------------------------------------------------------------------
# Password hashing
# ---------------------------------------------------------------------------

_pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


def verify_password(plain: str, hashed: str) -> bool:
    """Compare a plain-text password against a bcrypt hash."""
    return _pwd_context.verify(plain, hashed)


def hash_password(plain: str) -> str:
    """Return the bcrypt hash of a plain-text password."""
    return _pwd_context.hash(plain)


# ---------------------------------------------------------------------------
# JWT helpers
# ---------------------------------------------------------------------------


def create_access_token(user_id: uuid.UUID, role: str) -> str:
    """Create a signed JWT with *sub* (user id), *role* and *exp*."""
    expire = datetime.now(timezone.utc) + timedelta(minutes=settings.JWT_EXPIRY_MINUTES)
    payload = {"sub": str(user_id), "role": role, "exp": expire}
    return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login")

# ---------------------------------------------------------------------------
# Current-user dependency
# ---------------------------------------------------------------------------


async def get_current_user(
    request: Request,
    token: str = Depends(oauth2_scheme),
    db: AsyncSession = Depends(get_db),
) -> Actor:
    """Decode the JWT and load the actor from the ``users`` table.

    Raises ``HTTPException(401)`` when the token is invalid, or the user is
    missing or deactivated.  Stores the actor on ``request.state`` for the
    read-access audit middleware.
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    try:
        payload = jwt.decode(
            token,
            settings.JWT_SECRET,
            algorithms=[settings.JWT_ALGORITHM],
        )
        subject: str | None = payload.get("sub")
        if subject is None:
            raise credentials_exception
        user_id = uuid.UUID(subject)
    except (JWTError, ValueError):
        raise credentials_exception

    try:
        actor = await resolve_actor(db, user_id)
    except NotAuthenticatedError:
        raise credentials_exception

    request.state._audit_user = actor
    return actor


# ---------------------------------------------------------------------------
# Role table injection
# ---------------------------------------------------------------------------


def get_role_table() -> RolePermissionTable:
    """The role table used by route handlers; override in tests if needed."""
    return DEFAULT_ROLE_TABLE


def client_ip(request: Request) -> str | None:
    return request.client.host if request.client else None


# ---------------------------------------------------------------------------
# Permission-checking dependency factory
# ---------------------------------------------------------------------------


def require_permission(*permissions: str):
    """Return a FastAPI dependency that ensures the actor's role holds ALL
    of the given ``resource:action`` keys.

    Usage::

        @router.get("/audit-log")
        async def audit_log(
            actor: Actor = Depends(require_permission("admin:view_audit_logs")),
        ):
            ...
    """
    required = [split_permission_key(p) for p in permissions]

    async def _check_permission(
        actor: Actor = Depends(get_current_user),
        table: RolePermissionTable = Depends(get_role_table),
    ) -> Actor:
        if not all(table.has(actor.role, r, a) for r, a in required):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="You don't have permission to perform this action",
            )
        return actor

    return _check_permission
