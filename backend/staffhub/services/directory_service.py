"""People-scoped listings: user directory, time off and availability.

Every listing is restricted to users who share an active venue with the
actor; admins with the ``*_all`` grant see everyone.  Time-off requests
from users outside that set cannot be reviewed or cancelled and read as
missing.
"""
from __future__ import annotations

import uuid
from datetime import date, datetime, timezone

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from staffhub.database import commit_or_rollback, contains_pattern
from staffhub.errors import NotFoundError, PermissionDeniedError, ValidationFailedError
from staffhub.identity import Actor
from staffhub.models.scheduling import (
    CANCELLED,
    PENDING,
    REVIEW_DECISIONS,
    AvailabilitySlot,
    TimeOffRequest,
)
from staffhub.models.user import User
from staffhub.rbac import DEFAULT_ROLE_TABLE, RolePermissionTable
from staffhub.services.audit_service import write_audit_log
from staffhub.services.results import guarded
from staffhub.services.venue_permissions import has_venue_permission_in
from staffhub.services.venue_scope import (
    get_shared_venue_ids,
    get_shared_venue_user_ids,
    users_share_venue,
)

TIMEOFF_NOT_FOUND = "Time-off request not found"


async def _visible_user_ids(
    db: AsyncSession,
    actor: Actor,
    resource: str,
    table: RolePermissionTable,
) -> set[uuid.UUID] | None:
    """``None`` when the actor sees everyone, else the shared-venue user set."""
    if table.has(actor.role, resource, "view_all"):
        return None
    if not table.has(actor.role, resource, "view_team"):
        raise PermissionDeniedError(f"You don't have permission to view team {resource}")
    return await get_shared_venue_user_ids(db, actor.id)


def _time_off_to_dict(request: TimeOffRequest) -> dict:
    return {
        "id": str(request.id),
        "user_id": str(request.user_id),
        "start_date": request.start_date.isoformat(),
        "end_date": request.end_date.isoformat(),
        "reason": request.reason,
        "status": request.status,
        "reviewed_by": str(request.reviewed_by) if request.reviewed_by else None,
        "reviewed_at": request.reviewed_at.isoformat() if request.reviewed_at else None,
        "notes": request.notes,
    }


@guarded("Failed to load users")
async def list_directory_users(
    db: AsyncSession,
    actor: Actor,
    *,
    search: str | None = None,
) -> dict:
    """Active colleagues from the actor's venues, excluding the actor."""
    colleagues = await get_shared_venue_user_ids(db, actor.id, include_self=False)
    if not colleagues:
        return {"items": [], "total": 0}

    stmt = (
        select(User)
        .where(User.id.in_(list(colleagues)), User.is_active.is_(True))
        .order_by(User.display_name)
    )
    if search:
        pattern = contains_pattern(search.strip().lower())
        stmt = stmt.where(
            or_(
                func.lower(User.display_name).like(pattern, escape="\\"),
                func.lower(User.email).like(pattern, escape="\\"),
            )
        )
    users = (await db.execute(stmt)).scalars().all()
    items = [
        {
            "id": str(u.id),
            "display_name": u.display_name,
            "email": u.email,
            "role": u.role,
        }
        for u in users
    ]
    return {"items": items, "total": len(items)}


@guarded("Failed to load time off requests")
async def list_time_off_requests(
    db: AsyncSession,
    actor: Actor,
    *,
    status: str | None = None,
    table: RolePermissionTable = DEFAULT_ROLE_TABLE,
) -> dict:
    visible = await _visible_user_ids(db, actor, "timeoff", table)
    if visible is not None and not visible:
        return {"items": [], "total": 0}

    stmt = (
        select(TimeOffRequest, User)
        .join(User, User.id == TimeOffRequest.user_id)
        .order_by(TimeOffRequest.start_date)
    )
    if visible is not None:
        stmt = stmt.where(TimeOffRequest.user_id.in_(list(visible)))
    if status:
        stmt = stmt.where(TimeOffRequest.status == status)

    items = [
        {**_time_off_to_dict(req), "display_name": user.display_name}
        for req, user in (await db.execute(stmt)).all()
    ]
    return {"items": items, "total": len(items)}


@guarded("Failed to create time off request")
async def create_time_off_request(
    db: AsyncSession,
    actor: Actor,
    *,
    start_date: date,
    end_date: date,
    reason: str | None = None,
    table: RolePermissionTable = DEFAULT_ROLE_TABLE,
) -> dict:
    if not table.has(actor.role, "timeoff", "create"):
        raise PermissionDeniedError("You don't have permission to request time off")
    if end_date < start_date:
        raise ValidationFailedError("End date must be on or after start date")

    request = TimeOffRequest(
        user_id=actor.id, start_date=start_date, end_date=end_date, reason=reason
    )
    db.add(request)
    await commit_or_rollback(db)
    return {"id": str(request.id), "status": request.status}


async def _get_time_off_request_in_scope(
    db: AsyncSession, actor: Actor, request_id: uuid.UUID
) -> TimeOffRequest:
    """Requests of users outside the actor's shared venues read as missing."""
    result = await db.execute(select(TimeOffRequest).where(TimeOffRequest.id == request_id))
    request = result.scalar_one_or_none()
    if request is None:
        raise NotFoundError(TIMEOFF_NOT_FOUND)
    if request.user_id != actor.id and not actor.has_global_scope:
        if not await users_share_venue(db, actor.id, request.user_id):
            raise NotFoundError(TIMEOFF_NOT_FOUND)
    return request


@guarded("Failed to review time off request")
async def review_time_off_request(
    db: AsyncSession,
    actor: Actor,
    request_id: uuid.UUID,
    *,
    status: str,
    notes: str | None = None,
    table: RolePermissionTable = DEFAULT_ROLE_TABLE,
    ip_address: str | None = None,
) -> dict:
    """Approve or reject a pending request.

    The reviewer needs ``timeoff:approve`` from their role, or granted at a
    venue they share with the requester.  Both decisions use that one grant.
    """
    if status not in REVIEW_DECISIONS:
        raise ValidationFailedError("Status must be APPROVED or REJECTED")

    request = await _get_time_off_request_in_scope(db, actor, request_id)
    shared = await get_shared_venue_ids(db, actor.id, request.user_id)
    if not await has_venue_permission_in(
        db, actor.id, actor.role, "timeoff", "approve", list(shared), table
    ):
        raise PermissionDeniedError("You don't have permission to review time-off requests")
    if request.status != PENDING:
        raise ValidationFailedError(f"This request has already been {request.status.lower()}")

    request.status = status
    request.reviewed_by = actor.id
    request.reviewed_at = datetime.now(timezone.utc)
    request.notes = notes
    await commit_or_rollback(db)

    await write_audit_log(
        db,
        actor,
        "TIMEOFF_REVIEWED",
        resource_type="TimeOffRequest",
        resource_id=str(request.id),
        old_value={"status": PENDING},
        new_value={"status": status, "notes": notes},
        ip_address=ip_address,
    )
    return _time_off_to_dict(request)


@guarded("Failed to cancel time off request")
async def cancel_time_off_request(
    db: AsyncSession, actor: Actor, request_id: uuid.UUID
) -> dict:
    request = await _get_time_off_request_in_scope(db, actor, request_id)
    if request.user_id != actor.id:
        raise PermissionDeniedError("You can only cancel your own requests")
    if request.status != PENDING:
        raise ValidationFailedError("You can only cancel pending requests")

    request.status = CANCELLED
    await commit_or_rollback(db)
    return _time_off_to_dict(request)


@guarded("Failed to load availability")
async def list_team_availability(
    db: AsyncSession,
    actor: Actor,
    table: RolePermissionTable = DEFAULT_ROLE_TABLE,
) -> dict:
    visible = await _visible_user_ids(db, actor, "availability", table)
    if visible is not None and not visible:
        return {"users": {}, "total": 0}

    stmt = (
        select(AvailabilitySlot)
        .join(User, User.id == AvailabilitySlot.user_id)
        .where(User.is_active.is_(True))
        .order_by(AvailabilitySlot.user_id, AvailabilitySlot.day_of_week)
    )
    if visible is not None:
        stmt = stmt.where(AvailabilitySlot.user_id.in_(list(visible)))

    by_user: dict[str, list[dict]] = {}
    for slot in (await db.execute(stmt)).scalars().all():
        by_user.setdefault(str(slot.user_id), []).append({
            "day_of_week": slot.day_of_week,
            "start_time": slot.start_time,
            "end_time": slot.end_time,
        })
    return {"users": by_user, "total": len(by_user)}
