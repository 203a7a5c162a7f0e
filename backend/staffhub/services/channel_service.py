"""Channels: venue-scoped visibility, management rights, members and posts.

A channel is visible to the venues it is assigned to.  Looking up a channel
outside the actor's accessible set reads exactly like a missing channel.

``can_manage_channel`` decides who may change membership, first match wins:

1. ``posts:manage`` from the role, or granted at one of the channel's venues.
2. CREATOR or MODERATOR of the channel.
3. A MANAGER whose venues cover every current member of the channel.  Such
   a manager may only add users who share one of their venues.
"""
from __future__ import annotations

import dataclasses
import logging
import re
import uuid
from collections.abc import Iterable, Sequence
from datetime import datetime, timezone

from sqlalchemy import delete, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from staffhub.database import commit_or_rollback, contains_pattern
from staffhub.errors import NotFoundError, PermissionDeniedError, ValidationFailedError
from staffhub.identity import Actor
from staffhub.models.channel import (
    CHANNEL_TYPES,
    CREATOR,
    MEMBER,
    MEMBER_ROLES,
    MODERATOR,
    Channel,
    ChannelMember,
    ChannelVenue,
    Post,
)
from staffhub.models.user import User
from staffhub.models.venue import UserVenue, Venue
from staffhub.rbac import DEFAULT_ROLE_TABLE, RolePermissionTable
from staffhub.services.audit_service import write_audit_log
from staffhub.services.results import guarded
from staffhub.services.venue_permissions import has_venue_permission_in
from staffhub.services.venue_scope import (
    get_accessible_channel_ids,
    get_active_venue_ids,
    get_all_active_venue_ids,
    get_shared_venue_user_ids,
    get_venue_scope,
)

logger = logging.getLogger(__name__)

CHANNEL_NAME_RE = re.compile(r"^[A-Za-z0-9 -]{2,50}$")
MANAGE_DENIED = "You don't have permission to manage this channel"
CHANNEL_NOT_FOUND = "Channel not found"
ADD_OUTSIDE_VENUES = "You can only add users from your venues to the channel"
SELECTION_TYPES = ("all", "by_role", "by_venue", "by_user")
ADDED_VIA = {"by_role": "role_based", "by_venue": "venue_based", "by_user": "bulk_import"}


@dataclasses.dataclass(frozen=True)
class ChannelManageDecision:
    allowed: bool
    reason: str | None = None
    venue_scoped: bool = False


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------


async def _channel_venue_ids(db: AsyncSession, channel_id: uuid.UUID) -> set[uuid.UUID]:
    result = await db.execute(
        select(ChannelVenue.venue_id).where(ChannelVenue.channel_id == channel_id)
    )
    return set(result.scalars().all())


async def _channel_member_ids(db: AsyncSession, channel_id: uuid.UUID) -> set[uuid.UUID]:
    result = await db.execute(
        select(ChannelMember.user_id).where(ChannelMember.channel_id == channel_id)
    )
    return set(result.scalars().all())


async def _creator_count(db: AsyncSession, channel_id: uuid.UUID) -> int:
    result = await db.execute(
        select(func.count(ChannelMember.id)).where(
            ChannelMember.channel_id == channel_id,
            ChannelMember.role == CREATOR,
        )
    )
    return result.scalar_one()


async def _get_visible_channel(
    db: AsyncSession, actor: Actor, channel_id: uuid.UUID
) -> Channel:
    """Load a channel the actor can see (archived included) or raise not-found."""
    accessible = await get_accessible_channel_ids(db, actor, include_archived=True)
    if channel_id not in accessible:
        raise NotFoundError(CHANNEL_NOT_FOUND)
    result = await db.execute(select(Channel).where(Channel.id == channel_id))
    channel = result.scalar_one_or_none()
    if channel is None:
        raise NotFoundError(CHANNEL_NOT_FOUND)
    return channel


async def _venues_by_channel(
    db: AsyncSession, channel_ids: Iterable[uuid.UUID]
) -> dict[uuid.UUID, list[str]]:
    ids = list(channel_ids)
    venues: dict[uuid.UUID, list[str]] = {cid: [] for cid in ids}
    if not ids:
        return venues
    result = await db.execute(
        select(ChannelVenue.channel_id, ChannelVenue.venue_id).where(
            ChannelVenue.channel_id.in_(ids)
        )
    )
    for channel_id, venue_id in result.all():
        venues[channel_id].append(str(venue_id))
    return venues


async def _member_counts(
    db: AsyncSession, channel_ids: Iterable[uuid.UUID]
) -> dict[uuid.UUID, int]:
    ids = list(channel_ids)
    if not ids:
        return {}
    result = await db.execute(
        select(ChannelMember.channel_id, func.count(ChannelMember.id))
        .where(ChannelMember.channel_id.in_(ids))
        .group_by(ChannelMember.channel_id)
    )
    return dict(result.all())


def _channel_to_dict(channel: Channel, venue_ids: list[str], member_count: int) -> dict:
    return {
        "id": str(channel.id),
        "name": channel.name,
        "description": channel.description,
        "channel_type": channel.channel_type,
        "archived": channel.archived,
        "archived_at": channel.archived_at.isoformat() if channel.archived_at else None,
        "venue_ids": sorted(venue_ids),
        "member_count": member_count,
        "created_by": str(channel.created_by) if channel.created_by else None,
        "created_at": channel.created_at.isoformat() if channel.created_at else None,
    }


def _validate_name(name: str) -> str:
    name = name.strip()
    if not CHANNEL_NAME_RE.match(name):
        raise ValidationFailedError(
            "Channel name must be 2-50 characters: letters, numbers, spaces and hyphens"
        )
    return name


async def _ensure_unique_name(
    db: AsyncSession, name: str, exclude_id: uuid.UUID | None = None
) -> None:
    stmt = select(Channel.id).where(func.lower(Channel.name) == name.lower())
    if exclude_id is not None:
        stmt = stmt.where(Channel.id != exclude_id)
    if (await db.execute(stmt)).first() is not None:
        raise ValidationFailedError("A channel with this name already exists")


async def _resolve_channel_venues(
    db: AsyncSession, actor: Actor, venue_ids: Sequence[uuid.UUID] | None
) -> set[uuid.UUID]:
    """Venue assignment for a channel; never empty.

    ``None`` falls back to every venue in the actor's scope.  An explicit
    list must be non-empty and name active venues the actor can reach.
    """
    scope = await get_venue_scope(db, actor)
    if venue_ids is None:
        fallback = scope if scope is not None else await get_all_active_venue_ids(db)
        if not fallback:
            raise ValidationFailedError("At least one venue is required")
        return fallback

    wanted = set(venue_ids)
    if not wanted:
        raise ValidationFailedError("At least one venue is required")
    result = await db.execute(
        select(Venue.id).where(Venue.id.in_(list(wanted)), Venue.is_active.is_(True))
    )
    if set(result.scalars().all()) != wanted:
        raise ValidationFailedError("Invalid venue ID")
    if scope is not None and not wanted <= scope:
        raise PermissionDeniedError("You don't have access to this venue")
    return wanted


# ---------------------------------------------------------------------------
# Management decision
# ---------------------------------------------------------------------------


async def can_manage_channel(
    db: AsyncSession,
    actor: Actor,
    channel_id: uuid.UUID,
    table: RolePermissionTable = DEFAULT_ROLE_TABLE,
) -> ChannelManageDecision:
    channel_venues = await _channel_venue_ids(db, channel_id)
    if await has_venue_permission_in(
        db, actor.id, actor.role, "posts", "manage", list(channel_venues), table
    ):
        return ChannelManageDecision(allowed=True)

    result = await db.execute(
        select(ChannelMember.role).where(
            ChannelMember.channel_id == channel_id,
            ChannelMember.user_id == actor.id,
        )
    )
    member_role = result.scalar_one_or_none()
    if member_role in (CREATOR, MODERATOR):
        return ChannelManageDecision(allowed=True)

    if actor.is_manager:
        manager_venues = await get_active_venue_ids(db, actor.id)
        member_ids = await _channel_member_ids(db, channel_id)
        if manager_venues and member_ids:
            result = await db.execute(
                select(UserVenue.user_id)
                .where(
                    UserVenue.user_id.in_(list(member_ids)),
                    UserVenue.venue_id.in_(list(manager_venues)),
                )
                .distinct()
            )
            covered = set(result.scalars().all())
            if covered >= member_ids:
                return ChannelManageDecision(allowed=True, venue_scoped=True)

    return ChannelManageDecision(allowed=False, reason=MANAGE_DENIED)


async def _require_manageable_channel(
    db: AsyncSession,
    actor: Actor,
    channel_id: uuid.UUID,
    table: RolePermissionTable,
) -> tuple[Channel, ChannelManageDecision]:
    channel = await _get_visible_channel(db, actor, channel_id)
    decision = await can_manage_channel(db, actor, channel_id, table)
    if not decision.allowed:
        raise PermissionDeniedError(decision.reason or MANAGE_DENIED)
    return channel, decision


# ---------------------------------------------------------------------------
# Channel entry points
# ---------------------------------------------------------------------------


@guarded("Failed to load channels")
async def list_channels(
    db: AsyncSession,
    actor: Actor,
    *,
    include_archived: bool = False,
    channel_type: str | None = None,
) -> dict:
    ids = await get_accessible_channel_ids(db, actor, include_archived=include_archived)
    if not ids:
        return {"items": [], "total": 0}

    stmt = select(Channel).where(Channel.id.in_(list(ids))).order_by(Channel.name)
    if channel_type:
        stmt = stmt.where(Channel.channel_type == channel_type)
    channels = (await db.execute(stmt)).scalars().all()

    venues = await _venues_by_channel(db, [c.id for c in channels])
    counts = await _member_counts(db, [c.id for c in channels])
    items = [_channel_to_dict(c, venues[c.id], counts.get(c.id, 0)) for c in channels]
    return {"items": items, "total": len(items)}


@guarded("Failed to load channel")
async def get_channel(db: AsyncSession, actor: Actor, channel_id: uuid.UUID) -> dict:
    channel = await _get_visible_channel(db, actor, channel_id)
    venues = await _venues_by_channel(db, [channel.id])
    counts = await _member_counts(db, [channel.id])
    return {"channel": _channel_to_dict(channel, venues[channel.id], counts.get(channel.id, 0))}


@guarded("Failed to create channel")
async def create_channel(
    db: AsyncSession,
    actor: Actor,
    *,
    name: str,
    description: str | None = None,
    channel_type: str = "ALL_STAFF",
    venue_ids: Sequence[uuid.UUID] | None = None,
    table: RolePermissionTable = DEFAULT_ROLE_TABLE,
    ip_address: str | None = None,
) -> dict:
    if not table.has(actor.role, "channels", "create"):
        raise PermissionDeniedError("You don't have permission to create channels")

    name = _validate_name(name)
    if channel_type not in CHANNEL_TYPES:
        raise ValidationFailedError("Invalid channel type")
    assigned = await _resolve_channel_venues(db, actor, venue_ids)
    await _ensure_unique_name(db, name)

    channel = Channel(
        name=name,
        description=description,
        channel_type=channel_type,
        created_by=actor.id,
    )
    db.add(channel)
    await db.flush()
    db.add_all([ChannelVenue(channel_id=channel.id, venue_id=v) for v in assigned])
    db.add(ChannelMember(
        channel_id=channel.id,
        user_id=actor.id,
        role=CREATOR,
        added_by=actor.id,
        added_via="creator",
    ))
    await commit_or_rollback(db)
    logger.info("Channel %s created by %s", channel.name, actor.email)

    await write_audit_log(
        db,
        actor,
        "CHANNEL_CREATED",
        resource_type="Channel",
        resource_id=str(channel.id),
        new_value={"name": name, "venue_ids": sorted(str(v) for v in assigned)},
        ip_address=ip_address,
    )
    return {"channel": _channel_to_dict(channel, [str(v) for v in assigned], 1)}


@guarded("Failed to update channel")
async def update_channel(
    db: AsyncSession,
    actor: Actor,
    channel_id: uuid.UUID,
    *,
    name: str | None = None,
    description: str | None = None,
    venue_ids: Sequence[uuid.UUID] | None = None,
    table: RolePermissionTable = DEFAULT_ROLE_TABLE,
    ip_address: str | None = None,
) -> dict:
    if not table.has(actor.role, "channels", "edit"):
        raise PermissionDeniedError("You don't have permission to edit channels")

    channel = await _get_visible_channel(db, actor, channel_id)
    old_venues = await _channel_venue_ids(db, channel_id)
    old_value = {
        "name": channel.name,
        "description": channel.description,
        "venue_ids": sorted(str(v) for v in old_venues),
    }

    if name is not None:
        name = _validate_name(name)
        await _ensure_unique_name(db, name, exclude_id=channel.id)
        channel.name = name
    if description is not None:
        channel.description = description

    new_venues = old_venues
    if venue_ids is not None:
        new_venues = await _resolve_channel_venues(db, actor, venue_ids)
        await db.execute(delete(ChannelVenue).where(ChannelVenue.channel_id == channel_id))
        db.add_all([ChannelVenue(channel_id=channel_id, venue_id=v) for v in new_venues])
    await commit_or_rollback(db)

    new_value = {
        "name": channel.name,
        "description": channel.description,
        "venue_ids": sorted(str(v) for v in new_venues),
    }
    await write_audit_log(
        db,
        actor,
        "CHANNEL_UPDATED",
        resource_type="Channel",
        resource_id=str(channel_id),
        old_value=old_value,
        new_value=new_value,
        ip_address=ip_address,
    )
    counts = await _member_counts(db, [channel_id])
    return {
        "channel": _channel_to_dict(
            channel, new_value["venue_ids"], counts.get(channel_id, 0)
        )
    }


@guarded("Failed to archive channel")
async def archive_channel(
    db: AsyncSession,
    actor: Actor,
    channel_id: uuid.UUID,
    *,
    archived: bool = True,
    table: RolePermissionTable = DEFAULT_ROLE_TABLE,
    ip_address: str | None = None,
) -> dict:
    if not table.has(actor.role, "channels", "archive"):
        raise PermissionDeniedError("You don't have permission to archive channels")

    channel = await _get_visible_channel(db, actor, channel_id)
    channel.archived = archived
    channel.archived_at = datetime.now(timezone.utc) if archived else None
    await commit_or_rollback(db)

    await write_audit_log(
        db,
        actor,
        "CHANNEL_ARCHIVED" if archived else "CHANNEL_UNARCHIVED",
        resource_type="Channel",
        resource_id=str(channel_id),
        new_value={"archived": archived},
        ip_address=ip_address,
    )
    return {"id": str(channel_id), "archived": archived}


@guarded("Failed to delete channel")
async def delete_channel(
    db: AsyncSession,
    actor: Actor,
    channel_id: uuid.UUID,
    table: RolePermissionTable = DEFAULT_ROLE_TABLE,
    ip_address: str | None = None,
) -> dict:
    if not table.has(actor.role, "channels", "delete"):
        raise PermissionDeniedError("You don't have permission to delete channels")

    channel = await _get_visible_channel(db, actor, channel_id)
    post_count = (
        await db.execute(select(func.count(Post.id)).where(Post.channel_id == channel_id))
    ).scalar_one()
    if post_count:
        raise ValidationFailedError("Cannot delete channel with posts. Archive it instead.")

    name = channel.name
    await db.execute(delete(ChannelMember).where(ChannelMember.channel_id == channel_id))
    await db.execute(delete(ChannelVenue).where(ChannelVenue.channel_id == channel_id))
    await db.delete(channel)
    await commit_or_rollback(db)

    await write_audit_log(
        db,
        actor,
        "CHANNEL_DELETED",
        resource_type="Channel",
        resource_id=str(channel_id),
        old_value={"name": name},
        ip_address=ip_address,
    )
    return {"id": str(channel_id)}


# ---------------------------------------------------------------------------
# Posts
# ---------------------------------------------------------------------------


@guarded("Failed to load posts")
async def list_channel_posts(
    db: AsyncSession,
    actor: Actor,
    channel_id: uuid.UUID,
    *,
    limit: int = 50,
    table: RolePermissionTable = DEFAULT_ROLE_TABLE,
) -> dict:
    if not table.has(actor.role, "posts", "view"):
        raise PermissionDeniedError("You don't have permission to view posts")
    await _get_visible_channel(db, actor, channel_id)

    result = await db.execute(
        select(Post)
        .where(Post.channel_id == channel_id)
        .order_by(Post.created_at.desc())
        .limit(limit)
    )
    items = [
        {
            "id": str(p.id),
            "author_id": str(p.author_id),
            "content": p.content,
            "created_at": p.created_at.isoformat(),
        }
        for p in result.scalars().all()
    ]
    return {"items": items, "total": len(items)}


@guarded("Failed to create post")
async def create_post(
    db: AsyncSession,
    actor: Actor,
    channel_id: uuid.UUID,
    content: str,
    table: RolePermissionTable = DEFAULT_ROLE_TABLE,
) -> dict:
    if not table.has(actor.role, "posts", "create"):
        raise PermissionDeniedError("You don't have permission to create posts")
    channel = await _get_visible_channel(db, actor, channel_id)
    if channel.archived:
        raise ValidationFailedError("Cannot post to an archived channel")
    content = content.strip()
    if not content:
        raise ValidationFailedError("Post content is required")

    post = Post(channel_id=channel_id, author_id=actor.id, content=content)
    db.add(post)
    await commit_or_rollback(db)
    return {"id": str(post.id)}


# ---------------------------------------------------------------------------
# Members
# ---------------------------------------------------------------------------


@guarded("Failed to load channel members")
async def list_channel_members(
    db: AsyncSession, actor: Actor, channel_id: uuid.UUID
) -> dict:
    await _get_visible_channel(db, actor, channel_id)
    result = await db.execute(
        select(ChannelMember, User)
        .join(User, User.id == ChannelMember.user_id)
        .where(ChannelMember.channel_id == channel_id)
        .order_by(User.display_name)
    )
    items = [
        {
            "user_id": str(user.id),
            "display_name": user.display_name,
            "email": user.email,
            "role": member.role,
            "added_via": member.added_via,
            "added_at": member.added_at.isoformat() if member.added_at else None,
        }
        for member, user in result.all()
    ]
    return {"items": items, "total": len(items)}


@guarded("Failed to load channels")
async def list_manageable_channels(
    db: AsyncSession,
    actor: Actor,
    table: RolePermissionTable = DEFAULT_ROLE_TABLE,
) -> dict:
    ids = await get_accessible_channel_ids(db, actor)
    if not ids:
        return {"items": [], "total": 0}
    result = await db.execute(
        select(Channel).where(Channel.id.in_(list(ids))).order_by(Channel.name)
    )
    items = []
    for channel in result.scalars().all():
        decision = await can_manage_channel(db, actor, channel.id, table)
        if decision.allowed:
            items.append({
                "id": str(channel.id),
                "name": channel.name,
                "venue_scoped": decision.venue_scoped,
            })
    return {"items": items, "total": len(items)}


async def _add_members(
    db: AsyncSession,
    actor: Actor,
    channel: Channel,
    decision: ChannelManageDecision,
    wanted: list[uuid.UUID],
    *,
    role: str,
    added_via: str,
    ip_address: str | None,
) -> dict:
    if channel.archived:
        raise ValidationFailedError("Cannot add members to archived channel")

    result = await db.execute(
        select(User.id).where(User.id.in_(wanted), User.is_active.is_(True))
    )
    if len(set(result.scalars().all())) != len(wanted):
        raise ValidationFailedError("One or more users not found or inactive")
    if decision.venue_scoped:
        # coverage-based rights stop at the manager's venues
        shared = await get_shared_venue_user_ids(db, actor.id)
        if not shared.issuperset(wanted):
            raise PermissionDeniedError(ADD_OUTSIDE_VENUES)

    existing = await _channel_member_ids(db, channel.id)
    to_add = [u for u in wanted if u not in existing]
    db.add_all([
        ChannelMember(
            channel_id=channel.id,
            user_id=user_id,
            role=role,
            added_by=actor.id,
            added_via=added_via,
        )
        for user_id in to_add
    ])
    await commit_or_rollback(db)

    if to_add:
        await write_audit_log(
            db,
            actor,
            "CHANNEL_MEMBERS_ADDED",
            resource_type="ChannelMember",
            resource_id=str(channel.id),
            new_value={
                "user_ids": [str(u) for u in to_add],
                "role": role,
                "added_via": added_via,
                "venue_scoped": decision.venue_scoped,
            },
            ip_address=ip_address,
        )
    return {"added": len(to_add), "skipped": len(wanted) - len(to_add)}


@guarded("Failed to add members")
async def add_channel_members(
    db: AsyncSession,
    actor: Actor,
    channel_id: uuid.UUID,
    user_ids: Sequence[uuid.UUID],
    *,
    role: str = MEMBER,
    added_via: str = "manual",
    table: RolePermissionTable = DEFAULT_ROLE_TABLE,
    ip_address: str | None = None,
) -> dict:
    if role not in MEMBER_ROLES:
        raise ValidationFailedError("Invalid member role")
    wanted = list(dict.fromkeys(user_ids))
    if not wanted:
        raise ValidationFailedError("At least one user is required")

    channel, decision = await _require_manageable_channel(db, actor, channel_id, table)
    return await _add_members(
        db, actor, channel, decision, wanted,
        role=role, added_via=added_via, ip_address=ip_address,
    )


async def _select_candidates(
    db: AsyncSession,
    actor: Actor,
    *,
    selection_type: str,
    roles: Sequence[str] | None,
    venue_ids: Sequence[uuid.UUID] | None,
    user_ids: Sequence[uuid.UUID] | None,
    search: str | None,
    exclude_user_ids: Sequence[uuid.UUID],
    active_only: bool,
) -> list[User]:
    """Users matching a selection, limited to the actor's shared venues.

    Admins select from every user.
    """
    if selection_type not in SELECTION_TYPES:
        raise ValidationFailedError("Invalid selection type")
    if selection_type == "by_role" and not roles:
        raise ValidationFailedError("Roles required for role-based selection")
    if selection_type == "by_venue" and not venue_ids:
        raise ValidationFailedError("Venue IDs required for venue-based selection")
    if selection_type == "by_user" and not user_ids:
        raise ValidationFailedError("User IDs required for user-based selection")

    stmt = select(User).order_by(User.display_name)
    if not actor.has_global_scope:
        shared = await get_shared_venue_user_ids(db, actor.id)
        if not shared:
            return []
        stmt = stmt.where(User.id.in_(list(shared)))
    if active_only:
        stmt = stmt.where(User.is_active.is_(True))

    if selection_type == "by_role":
        stmt = stmt.where(User.role.in_(list(roles)))
    elif selection_type == "by_venue":
        members = (
            select(UserVenue.user_id)
            .join(Venue, Venue.id == UserVenue.venue_id)
            .where(UserVenue.venue_id.in_(list(venue_ids)), Venue.is_active.is_(True))
        )
        stmt = stmt.where(User.id.in_(members))
    elif selection_type == "by_user":
        stmt = stmt.where(User.id.in_(list(user_ids)))

    if exclude_user_ids:
        stmt = stmt.where(User.id.not_in(list(exclude_user_ids)))
    if search and search.strip():
        pattern = contains_pattern(search.strip().lower())
        stmt = stmt.where(
            or_(
                func.lower(User.display_name).like(pattern, escape="\\"),
                func.lower(User.email).like(pattern, escape="\\"),
            )
        )
    return list((await db.execute(stmt)).scalars().all())


@guarded("Failed to load users")
async def list_users_for_channel(
    db: AsyncSession,
    actor: Actor,
    channel_id: uuid.UUID,
    *,
    selection_type: str = "all",
    roles: Sequence[str] | None = None,
    venue_ids: Sequence[uuid.UUID] | None = None,
    user_ids: Sequence[uuid.UUID] | None = None,
    search: str | None = None,
    exclude_user_ids: Sequence[uuid.UUID] = (),
    active_only: bool = True,
    table: RolePermissionTable = DEFAULT_ROLE_TABLE,
) -> dict:
    """Candidates a channel manager can pick from."""
    await _require_manageable_channel(db, actor, channel_id, table)
    users = await _select_candidates(
        db, actor,
        selection_type=selection_type, roles=roles, venue_ids=venue_ids,
        user_ids=user_ids, search=search, exclude_user_ids=exclude_user_ids,
        active_only=active_only,
    )
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


@guarded("Failed to add members")
async def bulk_add_members(
    db: AsyncSession,
    actor: Actor,
    channel_id: uuid.UUID,
    *,
    selection_type: str,
    roles: Sequence[str] | None = None,
    venue_ids: Sequence[uuid.UUID] | None = None,
    user_ids: Sequence[uuid.UUID] | None = None,
    role: str = MEMBER,
    table: RolePermissionTable = DEFAULT_ROLE_TABLE,
    ip_address: str | None = None,
) -> dict:
    """Add every active user matched by a role, venue or id selection."""
    if role not in MEMBER_ROLES:
        raise ValidationFailedError("Invalid member role")
    if selection_type == "all":
        raise ValidationFailedError("Bulk add needs a role, venue or user selection")

    channel, decision = await _require_manageable_channel(db, actor, channel_id, table)
    users = await _select_candidates(
        db, actor,
        selection_type=selection_type, roles=roles, venue_ids=venue_ids,
        user_ids=user_ids, search=None, exclude_user_ids=(), active_only=True,
    )
    if not users:
        raise ValidationFailedError("No users match the selection")
    return await _add_members(
        db, actor, channel, decision, [u.id for u in users],
        role=role, added_via=ADDED_VIA[selection_type], ip_address=ip_address,
    )


@guarded("Failed to remove members")
async def remove_channel_members(
    db: AsyncSession,
    actor: Actor,
    channel_id: uuid.UUID,
    user_ids: Sequence[uuid.UUID],
    table: RolePermissionTable = DEFAULT_ROLE_TABLE,
    ip_address: str | None = None,
) -> dict:
    wanted = list(dict.fromkeys(user_ids))
    if not wanted:
        raise ValidationFailedError("At least one user is required")

    await _require_manageable_channel(db, actor, channel_id, table)

    result = await db.execute(
        select(ChannelMember).where(
            ChannelMember.channel_id == channel_id,
            ChannelMember.user_id.in_(wanted),
        )
    )
    members = result.scalars().all()
    removing_creators = sum(1 for m in members if m.role == CREATOR)
    if removing_creators and await _creator_count(db, channel_id) - removing_creators < 1:
        raise ValidationFailedError("Cannot remove all creators from channel")

    removed = {str(m.user_id): m.role for m in members}
    await db.execute(
        delete(ChannelMember).where(
            ChannelMember.channel_id == channel_id,
            ChannelMember.user_id.in_([m.user_id for m in members]),
        )
    )
    await commit_or_rollback(db)

    if removed:
        await write_audit_log(
            db,
            actor,
            "CHANNEL_MEMBERS_REMOVED",
            resource_type="ChannelMember",
            resource_id=str(channel_id),
            old_value={"members": removed},
            ip_address=ip_address,
        )
    return {"removed": len(removed)}


@guarded("Failed to update member role")
async def update_member_role(
    db: AsyncSession,
    actor: Actor,
    channel_id: uuid.UUID,
    user_id: uuid.UUID,
    role: str,
    table: RolePermissionTable = DEFAULT_ROLE_TABLE,
    ip_address: str | None = None,
) -> dict:
    if role not in MEMBER_ROLES:
        raise ValidationFailedError("Invalid member role")

    await _require_manageable_channel(db, actor, channel_id, table)

    result = await db.execute(
        select(ChannelMember).where(
            ChannelMember.channel_id == channel_id,
            ChannelMember.user_id == user_id,
        )
    )
    member = result.scalar_one_or_none()
    if member is None:
        raise NotFoundError("Member not found in channel")

    old_role = member.role
    if old_role == CREATOR and role != CREATOR and await _creator_count(db, channel_id) <= 1:
        raise ValidationFailedError("Cannot demote the last creator")

    member.role = role
    await commit_or_rollback(db)

    await write_audit_log(
        db,
        actor,
        "CHANNEL_MEMBER_ROLE_UPDATED",
        resource_type="ChannelMember",
        resource_id=str(member.id),
        old_value={"user_id": str(user_id), "role": old_role},
        new_value={"user_id": str(user_id), "role": role},
        ip_address=ip_address,
    )
    return {"user_id": str(user_id), "role": role}
