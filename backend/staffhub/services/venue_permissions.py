"""Venue-scoped permission overrides.

A user's effective permissions at a venue are their role grants plus any
``VenuePermission`` rows for that (user, venue) pair.  Venue grants only add;
nothing here can take away a role permission.  A grant only counts while the
user is still assigned to the venue.

Who may inspect or edit another user's venue grants:

1. Admins may view anyone and edit anyone except themselves.
2. Everyone may view their own grants; nobody may edit them.
3. Other actors need ``users:edit_team``, may only manage STAFF users, and
   both they and the target must belong to the (active) venue.

Denials always carry the same message, whichever rule failed.
"""
from __future__ import annotations

import dataclasses
import logging
import uuid
from collections.abc import Sequence

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from staffhub.database import commit_or_rollback
from staffhub.errors import NotFoundError, PermissionDeniedError, ValidationFailedError
from staffhub.identity import Actor
from staffhub.models.permission import Permission, VenuePermission
from staffhub.models.user import User
from staffhub.models.venue import UserVenue, Venue
from staffhub.rbac import (
    ADMIN,
    DEFAULT_ROLE_TABLE,
    MANAGER,
    RESOURCE_ACTIONS,
    VALID_ROLES,
    RolePermissionTable,
)
from staffhub.services.audit_service import write_audit_log
from staffhub.services.results import guarded
from staffhub.services.venue_scope import (
    get_active_venue_ids,
    get_venue_scope,
    scope_to_venues,
    user_has_venue_access,
)

logger = logging.getLogger(__name__)

DENIED_MESSAGE = "You don't have permission to manage these permissions"
RESOURCE_TYPE = "VenuePermission"


@dataclasses.dataclass(frozen=True)
class EffectivePermissions:
    user_id: uuid.UUID
    venue_id: uuid.UUID
    role_permissions: frozenset[str]
    venue_permissions: frozenset[str]
    is_read_only: bool = True

    @property
    def effective(self) -> frozenset[str]:
        return self.role_permissions | self.venue_permissions

    def allows(self, resource: str, action: str) -> bool:
        return f"{resource}:{action}" in self.effective

    def to_dict(self) -> dict:
        return {
            "user_id": str(self.user_id),
            "venue_id": str(self.venue_id),
            "role_permissions": sorted(self.role_permissions),
            "venue_permissions": sorted(self.venue_permissions),
            "effective_permissions": sorted(self.effective),
            "is_read_only": self.is_read_only,
        }


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------


async def _get_user(db: AsyncSession, user_id: uuid.UUID) -> User | None:
    result = await db.execute(select(User).where(User.id == user_id))
    return result.scalar_one_or_none()


async def _get_venue(db: AsyncSession, venue_id: uuid.UUID) -> Venue | None:
    result = await db.execute(select(Venue).where(Venue.id == venue_id))
    return result.scalar_one_or_none()


async def load_venue_permission_keys(
    db: AsyncSession, user_id: uuid.UUID, venue_id: uuid.UUID
) -> frozenset[str]:
    """``resource:action`` keys granted to the user at an active venue.

    A grant only counts while the user is still assigned to the venue.
    """
    stmt = (
        select(Permission.resource, Permission.action)
        .join(VenuePermission, VenuePermission.permission_id == Permission.id)
        .join(Venue, Venue.id == VenuePermission.venue_id)
        .join(
            UserVenue,
            (UserVenue.user_id == VenuePermission.user_id)
            & (UserVenue.venue_id == VenuePermission.venue_id),
        )
        .where(
            VenuePermission.user_id == user_id,
            VenuePermission.venue_id == venue_id,
            Venue.is_active.is_(True),
        )
    )
    rows = (await db.execute(stmt)).all()
    return frozenset(f"{resource}:{action}" for resource, action in rows)


async def has_venue_permission_in(
    db: AsyncSession,
    user_id: uuid.UUID,
    role: str,
    resource: str,
    action: str,
    venue_ids: Sequence[uuid.UUID],
    table: RolePermissionTable = DEFAULT_ROLE_TABLE,
) -> bool:
    """Role grant, or a venue grant at any of the given venues.

    Only active venues the user is still assigned to count.
    """
    if table.has(role, resource, action):
        return True
    if action not in RESOURCE_ACTIONS.get(resource, ()) or not venue_ids:
        return False
    stmt = (
        select(VenuePermission.id)
        .join(Permission, Permission.id == VenuePermission.permission_id)
        .join(Venue, Venue.id == VenuePermission.venue_id)
        .join(
            UserVenue,
            (UserVenue.user_id == VenuePermission.user_id)
            & (UserVenue.venue_id == VenuePermission.venue_id),
        )
        .where(
            VenuePermission.user_id == user_id,
            VenuePermission.venue_id.in_(list(venue_ids)),
            Venue.is_active.is_(True),
            Permission.resource == resource,
            Permission.action == action,
        )
        .limit(1)
    )
    return (await db.execute(stmt)).first() is not None


async def has_venue_permission(
    db: AsyncSession,
    actor: Actor,
    resource: str,
    action: str,
    venue_id: uuid.UUID,
    table: RolePermissionTable = DEFAULT_ROLE_TABLE,
) -> bool:
    return await has_venue_permission_in(
        db, actor.id, actor.role, resource, action, [venue_id], table
    )


async def compute_effective_permissions(
    db: AsyncSession,
    actor: Actor,
    user: User,
    venue_id: uuid.UUID,
    table: RolePermissionTable = DEFAULT_ROLE_TABLE,
) -> EffectivePermissions:
    is_read_only = actor.id == user.id or not await can_manage_venue_permissions(
        db, actor, user.id, venue_id, write=True, table=table
    )
    return EffectivePermissions(
        user_id=user.id,
        venue_id=venue_id,
        role_permissions=table.permissions_for(user.role),
        venue_permissions=await load_venue_permission_keys(db, user.id, venue_id),
        is_read_only=is_read_only,
    )


# ---------------------------------------------------------------------------
# Management rule chain
# ---------------------------------------------------------------------------


async def can_manage_venue_permissions(
    db: AsyncSession,
    actor: Actor,
    target_user_id: uuid.UUID,
    venue_id: uuid.UUID,
    *,
    write: bool,
    table: RolePermissionTable = DEFAULT_ROLE_TABLE,
) -> bool:
    """Whether *actor* may view (``write=False``) or edit the target's grants."""
    is_self = actor.id == target_user_id
    if actor.is_admin:
        return not (write and is_self)
    if is_self:
        return not write
    if not table.has(actor.role, "users", "edit_team"):
        return False

    target = await _get_user(db, target_user_id)
    if target is None or target.role in (ADMIN, MANAGER):
        return False
    if venue_id not in await get_active_venue_ids(db, actor.id):
        return False
    return await user_has_venue_access(db, target.id, venue_id)


async def _require_manageable(
    db: AsyncSession,
    actor: Actor,
    user_id: uuid.UUID,
    venue_id: uuid.UUID,
    table: RolePermissionTable,
) -> tuple[User, Venue]:
    """Resolve target user and venue for a write, enforcing the rule chain."""
    if not await can_manage_venue_permissions(
        db, actor, user_id, venue_id, write=True, table=table
    ):
        raise PermissionDeniedError(DENIED_MESSAGE)

    user = await _get_user(db, user_id)
    if user is None:
        raise NotFoundError("User not found")
    if not user.is_active:
        raise ValidationFailedError("Cannot grant permissions to inactive user")

    venue = await _get_venue(db, venue_id)
    if venue is None:
        raise NotFoundError("Venue not found")
    if not venue.is_active:
        raise ValidationFailedError("Cannot grant permissions for inactive venue")
    if not await user_has_venue_access(db, user.id, venue.id):
        raise ValidationFailedError("User is not assigned to this venue")
    return user, venue


async def _existing_permission_ids(
    db: AsyncSession, permission_ids: Sequence[uuid.UUID]
) -> set[uuid.UUID]:
    if not permission_ids:
        return set()
    result = await db.execute(
        select(Permission.id).where(Permission.id.in_(list(permission_ids)))
    )
    return set(result.scalars().all())


# ---------------------------------------------------------------------------
# Entry points
# ---------------------------------------------------------------------------


@guarded("Failed to load permissions")
async def get_effective_permissions(
    db: AsyncSession,
    actor: Actor,
    user_id: uuid.UUID,
    venue_id: uuid.UUID,
    table: RolePermissionTable = DEFAULT_ROLE_TABLE,
) -> dict:
    """Role, venue and combined permissions of a user at a venue."""
    if not await can_manage_venue_permissions(
        db, actor, user_id, venue_id, write=False, table=table
    ):
        raise PermissionDeniedError(DENIED_MESSAGE)

    user = await _get_user(db, user_id)
    if user is None:
        raise NotFoundError("User not found")
    if await _get_venue(db, venue_id) is None:
        raise NotFoundError("Venue not found")

    effective = await compute_effective_permissions(db, actor, user, venue_id, table)
    return effective.to_dict()


@guarded("Failed to update permissions")
async def bulk_update_user_venue_permissions(
    db: AsyncSession,
    actor: Actor,
    user_id: uuid.UUID,
    venue_id: uuid.UUID,
    permission_ids: Sequence[uuid.UUID],
    table: RolePermissionTable = DEFAULT_ROLE_TABLE,
    ip_address: str | None = None,
) -> dict:
    """Replace the user's grants at the venue with exactly *permission_ids*.

    The delete and the inserts commit together or not at all.
    """
    await _require_manageable(db, actor, user_id, venue_id, table)

    wanted = list(dict.fromkeys(permission_ids))
    if len(await _existing_permission_ids(db, wanted)) != len(wanted):
        raise ValidationFailedError("One or more permissions not found")

    result = await db.execute(
        select(VenuePermission.permission_id).where(
            VenuePermission.user_id == user_id,
            VenuePermission.venue_id == venue_id,
        )
    )
    old_ids = set(result.scalars().all())

    await db.execute(
        delete(VenuePermission).where(
            VenuePermission.user_id == user_id,
            VenuePermission.venue_id == venue_id,
        )
    )
    db.add_all([
        VenuePermission(
            user_id=user_id,
            venue_id=venue_id,
            permission_id=permission_id,
            granted_by=actor.id,
        )
        for permission_id in wanted
    ])
    await commit_or_rollback(db)

    new_ids = set(wanted)
    granted = len(new_ids - old_ids)
    revoked = len(old_ids - new_ids)
    logger.info(
        "Venue permissions replaced for user %s at venue %s: +%d -%d",
        user_id, venue_id, granted, revoked,
    )

    await write_audit_log(
        db,
        actor,
        "VENUE_PERMISSIONS_BULK_UPDATED",
        resource_type=RESOURCE_TYPE,
        resource_id=f"{user_id}:{venue_id}",
        old_value={"permission_ids": sorted(str(p) for p in old_ids), "count": len(old_ids)},
        new_value={"permission_ids": sorted(str(p) for p in new_ids), "count": len(new_ids)},
        ip_address=ip_address,
    )
    return {"granted": granted, "revoked": revoked, "total": len(new_ids)}


@guarded("Failed to grant permission")
async def grant_venue_permission(
    db: AsyncSession,
    actor: Actor,
    user_id: uuid.UUID,
    venue_id: uuid.UUID,
    permission_id: uuid.UUID,
    table: RolePermissionTable = DEFAULT_ROLE_TABLE,
    ip_address: str | None = None,
) -> dict:
    await _require_manageable(db, actor, user_id, venue_id, table)

    result = await db.execute(select(Permission).where(Permission.id == permission_id))
    permission = result.scalar_one_or_none()
    if permission is None:
        raise ValidationFailedError("Permission not found")

    result = await db.execute(
        select(VenuePermission.id).where(
            VenuePermission.user_id == user_id,
            VenuePermission.venue_id == venue_id,
            VenuePermission.permission_id == permission_id,
        )
    )
    if result.first() is not None:
        raise ValidationFailedError("Permission already granted")

    grant = VenuePermission(
        user_id=user_id,
        venue_id=venue_id,
        permission_id=permission_id,
        granted_by=actor.id,
    )
    db.add(grant)
    await commit_or_rollback(db)

    await write_audit_log(
        db,
        actor,
        "VENUE_PERMISSION_GRANTED",
        resource_type=RESOURCE_TYPE,
        resource_id=str(grant.id),
        new_value={
            "user_id": str(user_id),
            "venue_id": str(venue_id),
            "permission": permission.key,
        },
        ip_address=ip_address,
    )
    return {"id": str(grant.id), "permission": permission.key}


@guarded("Failed to revoke permission")
async def revoke_venue_permission(
    db: AsyncSession,
    actor: Actor,
    user_id: uuid.UUID,
    venue_id: uuid.UUID,
    permission_id: uuid.UUID,
    table: RolePermissionTable = DEFAULT_ROLE_TABLE,
    ip_address: str | None = None,
) -> dict:
    if not await can_manage_venue_permissions(
        db, actor, user_id, venue_id, write=True, table=table
    ):
        raise PermissionDeniedError(DENIED_MESSAGE)

    result = await db.execute(
        select(VenuePermission).where(
            VenuePermission.user_id == user_id,
            VenuePermission.venue_id == venue_id,
            VenuePermission.permission_id == permission_id,
        )
    )
    grant = result.scalar_one_or_none()
    if grant is None:
        raise ValidationFailedError("Permission not found or already revoked")

    grant_id = grant.id
    await db.delete(grant)
    await commit_or_rollback(db)

    await write_audit_log(
        db,
        actor,
        "VENUE_PERMISSION_REVOKED",
        resource_type=RESOURCE_TYPE,
        resource_id=str(grant_id),
        old_value={
            "user_id": str(user_id),
            "venue_id": str(venue_id),
            "permission_id": str(permission_id),
        },
        ip_address=ip_address,
    )
    return {"id": str(grant_id)}


@guarded("Failed to load permissions")
async def list_available_permissions(db: AsyncSession) -> dict:
    """Permission catalog grouped by resource."""
    result = await db.execute(
        select(Permission).order_by(Permission.resource, Permission.action)
    )
    grouped: dict[str, list[dict]] = {}
    for p in result.scalars().all():
        grouped.setdefault(p.resource, []).append({
            "id": str(p.id),
            "action": p.action,
            "key": p.key,
            "description": p.description,
        })
    return {"resources": grouped}


@guarded("Failed to load venue permissions")
async def list_venue_permission_users(
    db: AsyncSession,
    actor: Actor,
    venue_id: uuid.UUID,
    table: RolePermissionTable = DEFAULT_ROLE_TABLE,
) -> dict:
    """Users holding venue grants at *venue_id*, with their grant keys."""
    if not actor.is_admin:
        if not table.has(actor.role, "users", "edit_team"):
            raise PermissionDeniedError(DENIED_MESSAGE)
        if venue_id not in await get_active_venue_ids(db, actor.id):
            raise PermissionDeniedError("You don't have access to this venue")

    stmt = (
        select(User, Permission.resource, Permission.action)
        .join(VenuePermission, VenuePermission.user_id == User.id)
        .join(Permission, Permission.id == VenuePermission.permission_id)
        .where(VenuePermission.venue_id == venue_id)
        .order_by(User.display_name, Permission.resource, Permission.action)
    )
    users: dict[uuid.UUID, dict] = {}
    for user, resource, action in (await db.execute(stmt)).all():
        entry = users.setdefault(user.id, {
            "user_id": str(user.id),
            "display_name": user.display_name,
            "email": user.email,
            "role": user.role,
            "permissions": [],
        })
        entry["permissions"].append(f"{resource}:{action}")
    return {"items": list(users.values()), "total": len(users)}


@guarded("Failed to count venue permissions")
async def count_venue_permission_assignments(
    db: AsyncSession,
    actor: Actor,
    table: RolePermissionTable = DEFAULT_ROLE_TABLE,
) -> dict:
    """Number of venue grants within the actor's venue scope."""
    if not actor.is_admin and not table.has(actor.role, "users", "edit_team"):
        raise PermissionDeniedError(DENIED_MESSAGE)
    scope = await get_venue_scope(db, actor)
    stmt = scope_to_venues(
        select(func.count(VenuePermission.id)), VenuePermission.venue_id, scope
    )
    total = (await db.execute(stmt)).scalar_one()
    return {"total": total}


@guarded("Failed to grant permissions")
async def bulk_grant_permissions_by_role(
    db: AsyncSession,
    actor: Actor,
    role: str,
    venue_id: uuid.UUID,
    permission_ids: Sequence[uuid.UUID],
    ip_address: str | None = None,
) -> dict:
    """Grant *permission_ids* at a venue to every active member with *role*."""
    if not actor.is_admin:
        raise PermissionDeniedError(DENIED_MESSAGE)
    if role not in VALID_ROLES:
        raise ValidationFailedError("Invalid role")
    if role == ADMIN:
        raise ValidationFailedError("Admins already hold every permission")

    venue = await _get_venue(db, venue_id)
    if venue is None:
        raise NotFoundError("Venue not found")
    if not venue.is_active:
        raise ValidationFailedError("Cannot grant permissions for inactive venue")

    wanted = list(dict.fromkeys(permission_ids))
    if not wanted:
        raise ValidationFailedError("At least one permission is required")
    if len(await _existing_permission_ids(db, wanted)) != len(wanted):
        raise ValidationFailedError("One or more permissions not found")

    result = await db.execute(
        select(User.id)
        .join(UserVenue, UserVenue.user_id == User.id)
        .where(
            UserVenue.venue_id == venue_id,
            User.role == role,
            User.is_active.is_(True),
        )
    )
    user_ids = list(result.scalars().all())

    result = await db.execute(
        select(VenuePermission.user_id, VenuePermission.permission_id).where(
            VenuePermission.venue_id == venue_id,
            VenuePermission.user_id.in_(user_ids),
        )
    )
    existing = {(user_id, permission_id) for user_id, permission_id in result.all()}

    new_grants = [
        VenuePermission(
            user_id=user_id,
            venue_id=venue_id,
            permission_id=permission_id,
            granted_by=actor.id,
        )
        for user_id in user_ids
        for permission_id in wanted
        if (user_id, permission_id) not in existing
    ]
    db.add_all(new_grants)
    await commit_or_rollback(db)

    await write_audit_log(
        db,
        actor,
        "VENUE_PERMISSIONS_GRANTED_BY_ROLE",
        resource_type=RESOURCE_TYPE,
        resource_id=str(venue_id),
        new_value={
            "role": role,
            "permission_ids": [str(p) for p in wanted],
            "users_affected": len(user_ids),
            "granted": len(new_grants),
        },
        ip_address=ip_address,
    )
    return {"users_affected": len(user_ids), "granted": len(new_grants)}


@guarded("Failed to load permissions")
async def list_user_venue_permissions(
    db: AsyncSession,
    actor: Actor,
    user_id: uuid.UUID,
    venue_id: uuid.UUID | None = None,
    table: RolePermissionTable = DEFAULT_ROLE_TABLE,
) -> dict:
    """A user's venue grants, per venue, with who granted each one.

    Without *venue_id* this covers every active venue of the user that the
    actor may view.  Venues the actor may not view are left out.
    """
    if venue_id is not None:
        if not await can_manage_venue_permissions(
            db, actor, user_id, venue_id, write=False, table=table
        ):
            raise PermissionDeniedError(DENIED_MESSAGE)
        venue_ids = [venue_id]
    else:
        venue_ids = [
            v for v in await get_active_venue_ids(db, user_id)
            if await can_manage_venue_permissions(
                db, actor, user_id, v, write=False, table=table
            )
        ]
        if not venue_ids and not (actor.is_admin or actor.id == user_id):
            raise PermissionDeniedError(DENIED_MESSAGE)

    if await _get_user(db, user_id) is None:
        raise NotFoundError("User not found")
    if not venue_ids:
        return {"user_id": str(user_id), "venues": [], "total": 0}

    result = await db.execute(
        select(Venue).where(Venue.id.in_(venue_ids)).order_by(Venue.name)
    )
    venues = {
        v.id: {"venue_id": str(v.id), "venue_name": v.name, "permissions": []}
        for v in result.scalars().all()
    }
    if venue_id is not None and venue_id not in venues:
        raise NotFoundError("Venue not found")

    granter = aliased(User)
    stmt = (
        select(VenuePermission, Permission, granter)
        .join(Permission, Permission.id == VenuePermission.permission_id)
        .join(
            UserVenue,
            (UserVenue.user_id == VenuePermission.user_id)
            & (UserVenue.venue_id == VenuePermission.venue_id),
        )
        .outerjoin(granter, granter.id == VenuePermission.granted_by)
        .where(
            VenuePermission.user_id == user_id,
            VenuePermission.venue_id.in_(list(venues)),
        )
        .order_by(Permission.resource, Permission.action)
    )
    total = 0
    for grant, permission, granted_by in (await db.execute(stmt)).all():
        total += 1
        venues[grant.venue_id]["permissions"].append({
            "id": str(grant.id),
            "permission_id": str(permission.id),
            "key": permission.key,
            "description": permission.description,
            "granted_at": grant.granted_at.isoformat() if grant.granted_at else None,
            "granted_by": (
                {"id": str(granted_by.id), "display_name": granted_by.display_name}
                if granted_by is not None else None
            ),
        })
    return {"user_id": str(user_id), "venues": list(venues.values()), "total": total}


@guarded("Failed to grant permissions")
async def bulk_grant_permissions_to_users(
    db: AsyncSession,
    actor: Actor,
    user_ids: Sequence[uuid.UUID],
    venue_id: uuid.UUID,
    permission_ids: Sequence[uuid.UUID],
    ip_address: str | None = None,
) -> dict:
    """Add *permission_ids* at a venue for each listed user, keeping existing grants."""
    if not actor.is_admin:
        raise PermissionDeniedError(DENIED_MESSAGE)

    users = list(dict.fromkeys(user_ids))
    if not users:
        raise ValidationFailedError("No users specified")
    if actor.id in users:
        raise PermissionDeniedError(DENIED_MESSAGE)

    venue = await _get_venue(db, venue_id)
    if venue is None:
        raise NotFoundError("Venue not found")
    if not venue.is_active:
        raise ValidationFailedError("Cannot grant permissions for inactive venue")

    wanted = list(dict.fromkeys(permission_ids))
    if not wanted:
        raise ValidationFailedError("At least one permission is required")
    if len(await _existing_permission_ids(db, wanted)) != len(wanted):
        raise ValidationFailedError("One or more permissions not found")

    result = await db.execute(
        select(User.id).where(User.id.in_(users), User.is_active.is_(True))
    )
    if len(set(result.scalars().all())) != len(users):
        raise ValidationFailedError("One or more users not found or inactive")
    result = await db.execute(
        select(UserVenue.user_id).where(
            UserVenue.user_id.in_(users), UserVenue.venue_id == venue_id
        )
    )
    if len(set(result.scalars().all())) != len(users):
        raise ValidationFailedError("One or more users are not assigned to this venue")

    result = await db.execute(
        select(VenuePermission.user_id, VenuePermission.permission_id).where(
            VenuePermission.venue_id == venue_id,
            VenuePermission.user_id.in_(users),
        )
    )
    existing = {(u, p) for u, p in result.all()}
    new_grants = [
        VenuePermission(
            user_id=user_id,
            venue_id=venue_id,
            permission_id=permission_id,
            granted_by=actor.id,
        )
        for user_id in users
        for permission_id in wanted
        if (user_id, permission_id) not in existing
    ]
    db.add_all(new_grants)
    await commit_or_rollback(db)

    await write_audit_log(
        db,
        actor,
        "VENUE_PERMISSIONS_BULK_GRANTED_TO_USERS",
        resource_type=RESOURCE_TYPE,
        resource_id=str(venue_id),
        new_value={
            "user_ids": [str(u) for u in users],
            "permission_ids": [str(p) for p in wanted],
            "granted": len(new_grants),
        },
        ip_address=ip_address,
    )
    return {"user_count": len(users), "granted": len(new_grants)}
