"""Authentication routes."""
from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from staffhub.database import get_db
from staffhub.identity import Actor, actor_from_user
from staffhub.middleware.auth import (
    client_ip,
    create_access_token,
    get_current_user,
    get_role_table,
    verify_password,
)
from staffhub.rbac import RolePermissionTable
from staffhub.services.audit_service import (
    emit_to_file_sink,
    system_event,
    write_audit_log,
)
from staffhub.services.venue_scope import get_active_venue_ids

router = APIRouter(prefix="/api/auth", tags=["auth"])


class LoginRequest(BaseModel):
    email: str
    password: str


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: dict


async def _authenticate(
    db: AsyncSession, email: str, password: str, request: Request
) -> TokenResponse:
    from staffhub.models.user import User

    stmt = select(User).where(User.email == email.strip().lower(), User.is_active.is_(True))
    user = (await db.execute(stmt)).scalar_one_or_none()

    if not user or not verify_password(password, user.password_hash):
        event = system_event("auth.failed", {"email": email, "reason": "invalid_credentials"})
        emit_to_file_sink(event)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid email or password",
        )

    actor = actor_from_user(user)
    await write_audit_log(
        db,
        actor,
        "auth.login",
        resource_type="User",
        resource_id=str(user.id),
        ip_address=client_ip(request),
    )
    return TokenResponse(
        access_token=create_access_token(user.id, user.role),
        user=actor.to_dict(),
    )


@router.post("/login", response_model=TokenResponse)
async def login(body: LoginRequest, request: Request, db: AsyncSession = Depends(get_db)):
    return await _authenticate(db, body.email, body.password, request)


@router.get("/me")
async def get_me(
    actor: Actor = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    table: RolePermissionTable = Depends(get_role_table),
):
    venue_ids = await get_active_venue_ids(db, actor.id)
    return {
        **actor.to_dict(),
        "permissions": sorted(table.permissions_for(actor.role)),
        "venue_ids": sorted(str(v) for v in venue_ids),
        "scope": "global" if actor.has_global_scope else "venue",
    }
