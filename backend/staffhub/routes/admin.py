"""Administration routes --- users, venues, venue assignments, audit log."""
from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel
from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from staffhub.database import commit_or_rollback, get_db
from staffhub.identity import Actor
from staffhub.middleware.auth import (
    client_ip,
    get_current_user,
    hash_password,
    require_permission,
)
from staffhub.rbac import ROLE_PERMISSIONS, VALID_ROLES, permission_description
from staffhub.services.audit_service import write_audit_log
from staffhub.services.venue_scope import (
    get_user_venue_stats,
    get_venue_scope,
    get_venue_user_ids,
    scope_to_venues,
)

router = APIRouter(prefix="/api/admin", tags=["admin"])


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------


class UserCreate(BaseModel):
    email: str
    password: str
    display_name: str
    role: str


class UserUpdate(BaseModel):
    display_name: str | None = None
    role: str | None = None
    is_active: bool | None = None


class UserVenuesUpdate(BaseModel):
    venue_ids: list[uuid.UUID]
    primary_venue_id: uuid.UUID | None = None


class VenueCreate(BaseModel):
    code: str
    name: str


class VenueUpdate(BaseModel):
    name: str | None = None
    is_active: bool | None = None


def _user_to_dict(u, venue_ids: list[str] | None = None) -> dict:
    item = {
        "id": str(u.id),
        "email": u.email,
        "display_name": u.display_name,
        "role": u.role,
        "is_active": u.is_active,
        "created_at": u.created_at.isoformat() if u.created_at else None,
    }
    if venue_ids is not None:
        item["venue_ids"] = venue_ids
    return item


def _venue_to_dict(v) -> dict:
    return {
        "id": str(v.id),
        "code": v.code,
        "name": v.name,
        "is_active": v.is_active,
    }


# ---------------------------------------------------------------------------
# USER MANAGEMENT
# ---------------------------------------------------------------------------


@router.get("/users")
async def list_users(
    include_inactive: bool = Query(True),
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(require_permission("admin:manage_users")),
):
    """List all users with their venue assignments."""
    from staffhub.models.user import User
    from staffhub.models.venue import UserVenue

    stmt = select(User).order_by(User.display_name)
    if not include_inactive:
        stmt = stmt.where(User.is_active.is_(True))
    users = (await db.execute(stmt)).scalars().all()

    venue_rows = await db.execute(select(UserVenue.user_id, UserVenue.venue_id))
    venues_by_user: dict[uuid.UUID, list[str]] = {}
    for user_id, venue_id in venue_rows.all():
        venues_by_user.setdefault(user_id, []).append(str(venue_id))

    items = [_user_to_dict(u, sorted(venues_by_user.get(u.id, []))) for u in users]
    return {"items": items, "total": len(items)}


@router.post("/users", status_code=201)
async def create_user(
    body: UserCreate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(require_permission("admin:manage_users")),
):
    from staffhub.models.user import User

    if body.role not in VALID_ROLES:
        raise HTTPException(status_code=422, detail=f"Invalid role: {body.role}")
    email = body.email.strip().lower()
    existing = await db.execute(select(User.id).where(User.email == email))
    if existing.first() is not None:
        raise HTTPException(status_code=409, detail="A user with this email already exists")

    user = User(
        email=email,
        password_hash=hash_password(body.password),
        display_name=body.display_name,
        role=body.role,
    )
    db.add(user)
    await commit_or_rollback(db)

    await write_audit_log(
        db,
        actor,
        "USER_CREATED",
        resource_type="User",
        resource_id=str(user.id),
        new_value={"email": email, "role": body.role},
        ip_address=client_ip(request),
    )
    return _user_to_dict(user, [])


@router.patch("/users/{user_id}")
async def update_user(
    user_id: uuid.UUID,
    body: UserUpdate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(require_permission("admin:manage_users")),
):
    """Update role, display name, or active flag (deactivation is logical)."""
    from staffhub.models.base import utcnow
    from staffhub.models.user import User

    user = (await db.execute(select(User).where(User.id == user_id))).scalar_one_or_none()
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    if body.role is not None and body.role not in VALID_ROLES:
        raise HTTPException(status_code=422, detail=f"Invalid role: {body.role}")
    if user.id == actor.id and (body.is_active is False or body.role not in (None, user.role)):
        raise HTTPException(status_code=422, detail="You cannot change your own role or status")

    old_value = {"display_name": user.display_name, "role": user.role, "is_active": user.is_active}
    changes = body.model_dump(exclude_unset=True, exclude_none=True)
    for field, value in changes.items():
        setattr(user, field, value)
    user.updated_at = utcnow()
    await commit_or_rollback(db)

    await write_audit_log(
        db,
        actor,
        "USER_UPDATED",
        resource_type="User",
        resource_id=str(user.id),
        old_value=old_value,
        new_value=changes,
        ip_address=client_ip(request),
    )
    return _user_to_dict(user)


@router.put("/users/{user_id}/venues")
async def set_user_venues(
    user_id: uuid.UUID,
    body: UserVenuesUpdate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(require_permission("admin:manage_users")),
):
    """Replace a user's venue assignments.

    Venue grants held at venues the user loses go in the same commit.
    """
    from staffhub.models.permission import VenuePermission
    from staffhub.models.user import User
    from staffhub.models.venue import UserVenue, Venue

    user = (await db.execute(select(User).where(User.id == user_id))).scalar_one_or_none()
    if not user:
        raise HTTPException(status_code=404, detail="User not found")

    wanted = list(dict.fromkeys(body.venue_ids))
    if wanted:
        found = await db.execute(select(Venue.id).where(Venue.id.in_(wanted)))
        if len(set(found.scalars().all())) != len(wanted):
            raise HTTPException(status_code=422, detail="Invalid venue ID")
    if body.primary_venue_id is not None and body.primary_venue_id not in wanted:
        raise HTTPException(status_code=422, detail="Primary venue must be one of the assigned venues")

    old_rows = await db.execute(select(UserVenue.venue_id).where(UserVenue.user_id == user_id))
    old_ids = sorted(str(v) for v in old_rows.scalars().all())

    stale_grants = delete(VenuePermission).where(VenuePermission.user_id == user_id)
    if wanted:
        stale_grants = stale_grants.where(VenuePermission.venue_id.not_in(wanted))
    revoked = (await db.execute(stale_grants)).rowcount
    await db.execute(delete(UserVenue).where(UserVenue.user_id == user_id))
    db.add_all([
        UserVenue(
            user_id=user_id,
            venue_id=venue_id,
            is_primary=venue_id == body.primary_venue_id,
        )
        for venue_id in wanted
    ])
    await commit_or_rollback(db)

    await write_audit_log(
        db,
        actor,
        "USER_VENUES_ASSIGNED",
        resource_type="UserVenue",
        resource_id=str(user_id),
        old_value={"venue_ids": old_ids},
        new_value={
            "venue_ids": sorted(str(v) for v in wanted),
            "venue_permissions_revoked": revoked,
        },
        ip_address=client_ip(request),
    )
    return {
        "user_id": str(user_id),
        "venue_ids": sorted(str(v) for v in wanted),
        "stats": await get_user_venue_stats(db, user_id),
    }


# ---------------------------------------------------------------------------
# VENUES
# ---------------------------------------------------------------------------


@router.get("/venues")
async def list_venues(
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(require_permission("venues:view")),
):
    """Venues in the caller's scope; admins also see inactive venues."""
    from staffhub.models.venue import Venue

    scope = await get_venue_scope(db, actor)
    stmt = scope_to_venues(select(Venue).order_by(Venue.name), Venue.id, scope)
    venues = (await db.execute(stmt)).scalars().all()
    items = [_venue_to_dict(v) for v in venues]
    return {"items": items, "total": len(items)}


@router.post("/venues", status_code=201)
async def create_venue(
    body: VenueCreate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(require_permission("admin:manage_venues")),
):
    from staffhub.models.venue import Venue

    code = body.code.strip().upper()
    existing = await db.execute(select(Venue.id).where(Venue.code == code))
    if existing.first() is not None:
        raise HTTPException(status_code=409, detail=f"Venue code '{code}' already exists")

    venue = Venue(code=code, name=body.name.strip())
    db.add(venue)
    await commit_or_rollback(db)

    await write_audit_log(
        db,
        actor,
        "VENUE_CREATED",
        resource_type="Venue",
        resource_id=str(venue.id),
        new_value={"code": code, "name": venue.name},
        ip_address=client_ip(request),
    )
    return _venue_to_dict(venue)


@router.patch("/venues/{venue_id}")
async def update_venue(
    venue_id: uuid.UUID,
    body: VenueUpdate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(require_permission("admin:manage_venues")),
):
    """Rename, activate or deactivate a venue.

    Deactivation keeps membership rows; inactive venues simply stop counting
    in every visibility computation.
    """
    from staffhub.models.venue import Venue

    venue = (await db.execute(select(Venue).where(Venue.id == venue_id))).scalar_one_or_none()
    if not venue:
        raise HTTPException(status_code=404, detail="Venue not found")

    old_value = {"name": venue.name, "is_active": venue.is_active}
    changes = body.model_dump(exclude_unset=True, exclude_none=True)
    for field, value in changes.items():
        setattr(venue, field, value)
    await commit_or_rollback(db)

    action = "VENUE_UPDATED"
    if "is_active" in changes and changes["is_active"] != old_value["is_active"]:
        action = "VENUE_ACTIVATED" if venue.is_active else "VENUE_DEACTIVATED"
    await write_audit_log(
        db,
        actor,
        action,
        resource_type="Venue",
        resource_id=str(venue.id),
        old_value=old_value,
        new_value=changes,
        ip_address=client_ip(request),
    )
    return _venue_to_dict(venue)


@router.get("/venues/{venue_id}/users")
async def list_venue_users(
    venue_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(require_permission("users:view_team")),
):
    from staffhub.models.user import User

    scope = await get_venue_scope(db, actor)
    if scope is not None and venue_id not in scope:
        raise HTTPException(status_code=404, detail="Venue not found")

    user_ids = await get_venue_user_ids(db, venue_id)
    if not user_ids:
        return {"items": [], "total": 0}
    users = (
        await db.execute(
            select(User).where(User.id.in_(list(user_ids))).order_by(User.display_name)
        )
    ).scalars().all()
    items = [_user_to_dict(u) for u in users]
    return {"items": items, "total": len(items)}


# ---------------------------------------------------------------------------
# ROLES
# ---------------------------------------------------------------------------


@router.get("/roles")
async def list_roles(actor: Actor = Depends(get_current_user)):
    """Role definitions and their permission keys."""
    return {
        "items": [
            {
                "role": role,
                "permissions": [
                    {"key": key, "description": permission_description(key)}
                    for key in sorted(ROLE_PERMISSIONS[role])
                ],
            }
            for role in VALID_ROLES
        ]
    }


# ---------------------------------------------------------------------------
# AUDIT LOG
# ---------------------------------------------------------------------------


@router.get("/audit-log")
async def list_audit_log(
    action_type: str | None = None,
    resource_type: str | None = None,
    user_id: uuid.UUID | None = None,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(require_permission("admin:view_audit_logs")),
):
    from staffhub.models.permission import AuditLog

    stmt = select(AuditLog)
    count_stmt = select(func.count(AuditLog.id))
    filters = []
    if action_type:
        filters.append(AuditLog.action_type == action_type)
    if resource_type:
        filters.append(AuditLog.resource_type == resource_type)
    if user_id:
        filters.append(AuditLog.user_id == user_id)
    if filters:
        stmt = stmt.where(*filters)
        count_stmt = count_stmt.where(*filters)

    total = (await db.execute(count_stmt)).scalar_one()
    rows = (
        await db.execute(
            stmt.order_by(AuditLog.created_at.desc()).limit(limit).offset(offset)
        )
    ).scalars().all()

    items = [
        {
            "id": str(r.id),
            "user_id": str(r.user_id) if r.user_id else None,
            "user_email": r.user_email,
            "action_type": r.action_type,
            "resource_type": r.resource_type,
            "resource_id": r.resource_id,
            "old_value": r.old_value,
            "new_value": r.new_value,
            "ip_address": r.ip_address,
            "event_category": r.event_category,
            "created_at": r.created_at.isoformat() if r.created_at else None,
        }
        for r in rows
    ]
    return {"items": items, "total": total}
