"""Venue-scoped rosters."""
from __future__ import annotations

import uuid
from datetime import date

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from staffhub.database import commit_or_rollback
from staffhub.errors import PermissionDeniedError, ValidationFailedError
from staffhub.identity import Actor
from staffhub.models.scheduling import Roster
from staffhub.models.venue import Venue
from staffhub.rbac import DEFAULT_ROLE_TABLE, RolePermissionTable
from staffhub.services.audit_service import write_audit_log
from staffhub.services.results import guarded
from staffhub.services.venue_permissions import has_venue_permission
from staffhub.services.venue_scope import get_venue_scope, scope_to_venues


def _roster_to_dict(roster: Roster) -> dict:
    return {
        "id": str(roster.id),
        "venue_id": str(roster.venue_id),
        "name": roster.name,
        "week_start": roster.week_start.isoformat(),
        "status": roster.status,
    }


@guarded("Failed to load rosters")
async def list_rosters(
    db: AsyncSession,
    actor: Actor,
    *,
    venue_id: uuid.UUID | None = None,
) -> dict:
    scope = await get_venue_scope(db, actor)
    stmt = (
        select(Roster)
        .join(Venue, Venue.id == Roster.venue_id)
        .where(Venue.is_active.is_(True))
        .order_by(Roster.week_start.desc(), Roster.name)
    )
    stmt = scope_to_venues(stmt, Roster.venue_id, scope)
    if venue_id is not None:
        stmt = stmt.where(Roster.venue_id == venue_id)

    items = [_roster_to_dict(r) for r in (await db.execute(stmt)).scalars().all()]
    return {"items": items, "total": len(items)}


@guarded("Failed to create roster")
async def create_roster(
    db: AsyncSession,
    actor: Actor,
    *,
    venue_id: uuid.UUID,
    name: str,
    week_start: date,
    table: RolePermissionTable = DEFAULT_ROLE_TABLE,
    ip_address: str | None = None,
) -> dict:
    """Create a draft roster; needs ``rosters:edit_team`` at that venue."""
    scope = await get_venue_scope(db, actor)
    if scope is not None and venue_id not in scope:
        raise PermissionDeniedError("You don't have access to this venue")
    if not await has_venue_permission(db, actor, "rosters", "edit_team", venue_id, table):
        raise PermissionDeniedError("You don't have permission to create rosters")

    result = await db.execute(
        select(Venue).where(Venue.id == venue_id, Venue.is_active.is_(True))
    )
    if result.scalar_one_or_none() is None:
        raise ValidationFailedError("Invalid venue ID")
    name = (name or "").strip()
    if not name:
        raise ValidationFailedError("Roster name is required")

    roster = Roster(venue_id=venue_id, name=name, week_start=week_start, created_by=actor.id)
    db.add(roster)
    await commit_or_rollback(db)

    await write_audit_log(
        db,
        actor,
        "ROSTER_CREATED",
        resource_type="Roster",
        resource_id=str(roster.id),
        new_value=_roster_to_dict(roster),
        ip_address=ip_address,
    )
    return {"roster": _roster_to_dict(roster)}
