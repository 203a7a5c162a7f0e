"""Venue membership graph and the two visibility computations built on it.

* Resource scope: an actor sees rows assigned to any of their active venues,
  admins see everything (``get_venue_scope`` + ``scope_to_venues``).
* People scope: an actor sees users who share at least one active venue with
  them (``get_shared_venue_user_ids``).

Inactive venues count as no assignment at all.  A user with no active venue
is a normal state: every helper returns an empty result rather than raising.
Nothing here is cached; each call re-reads the membership tables.
"""
from __future__ import annotations

import uuid
from collections.abc import Iterable

from sqlalchemy import false, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from staffhub.identity import Actor
from staffhub.models.channel import Channel, ChannelVenue
from staffhub.models.venue import UserVenue, Venue

# ---------------------------------------------------------------------------
# Membership lookups
# ---------------------------------------------------------------------------


async def get_active_venue_ids(db: AsyncSession, user_id: uuid.UUID) -> set[uuid.UUID]:
    """Venues the user belongs to that are currently active."""
    stmt = (
        select(UserVenue.venue_id)
        .join(Venue, Venue.id == UserVenue.venue_id)
        .where(UserVenue.user_id == user_id, Venue.is_active.is_(True))
    )
    result = await db.execute(stmt)
    return set(result.scalars().all())


async def get_all_active_venue_ids(db: AsyncSession) -> set[uuid.UUID]:
    result = await db.execute(select(Venue.id).where(Venue.is_active.is_(True)))
    return set(result.scalars().all())


async def user_has_venue_access(
    db: AsyncSession, user_id: uuid.UUID, venue_id: uuid.UUID
) -> bool:
    return venue_id in await get_active_venue_ids(db, user_id)


async def get_shared_venue_ids(
    db: AsyncSession, user_a: uuid.UUID, user_b: uuid.UUID
) -> set[uuid.UUID]:
    """Active venues both users belong to."""
    return await get_active_venue_ids(db, user_a) & await get_active_venue_ids(db, user_b)


async def users_share_venue(
    db: AsyncSession, user_a: uuid.UUID, user_b: uuid.UUID
) -> bool:
    return bool(await get_shared_venue_ids(db, user_a, user_b))


async def get_venue_user_ids(db: AsyncSession, venue_id: uuid.UUID) -> set[uuid.UUID]:
    """Members of *venue_id*; empty when the venue is inactive."""
    stmt = (
        select(UserVenue.user_id)
        .join(Venue, Venue.id == UserVenue.venue_id)
        .where(UserVenue.venue_id == venue_id, Venue.is_active.is_(True))
    )
    result = await db.execute(stmt)
    return set(result.scalars().all())


async def get_user_venue_stats(db: AsyncSession, user_id: uuid.UUID) -> dict[str, int]:
    stmt = (
        select(Venue.is_active, func.count())
        .join(UserVenue, UserVenue.venue_id == Venue.id)
        .where(UserVenue.user_id == user_id)
        .group_by(Venue.is_active)
    )
    counts = {bool(active): count for active, count in (await db.execute(stmt)).all()}
    active = counts.get(True, 0)
    inactive = counts.get(False, 0)
    return {"total": active + inactive, "active": active, "inactive": inactive}


# ---------------------------------------------------------------------------
# Resource scope: admin bypass, else intersect by active venue
# ---------------------------------------------------------------------------


async def get_venue_scope(db: AsyncSession, actor: Actor) -> set[uuid.UUID] | None:
    """Return the venue ids to filter by, or ``None`` for global access."""
    if actor.has_global_scope:
        return None
    return await get_active_venue_ids(db, actor.id)


def scope_to_venues(stmt, venue_column, scope: Iterable[uuid.UUID] | None):
    """Restrict a ``select()`` to rows whose *venue_column* is in *scope*.

    ``None`` means global scope and leaves the statement untouched; an empty
    scope matches nothing.
    """
    if scope is None:
        return stmt
    venue_ids = list(scope)
    if not venue_ids:
        return stmt.where(false())
    return stmt.where(venue_column.in_(venue_ids))


async def get_accessible_channel_ids(
    db: AsyncSession,
    actor: Actor,
    *,
    include_archived: bool = False,
) -> set[uuid.UUID]:
    """Channels visible to *actor*: all for admins, else by active venue."""
    scope = await get_venue_scope(db, actor)
    if scope is not None and not scope:
        return set()

    stmt = select(Channel.id).distinct()
    if scope is not None:
        stmt = stmt.join(ChannelVenue, ChannelVenue.channel_id == Channel.id)
    stmt = scope_to_venues(stmt, ChannelVenue.venue_id, scope)
    if not include_archived:
        stmt = stmt.where(Channel.archived.is_(False))

    result = await db.execute(stmt)
    return set(result.scalars().all())


# ---------------------------------------------------------------------------
# People scope: co-membership of an active venue
# ---------------------------------------------------------------------------


async def get_shared_venue_user_ids(
    db: AsyncSession,
    user_id: uuid.UUID,
    *,
    include_self: bool = True,
) -> set[uuid.UUID]:
    """Users sharing at least one active venue with *user_id*.

    The user is a member of their own venues, so the result contains
    *user_id* unless ``include_self=False``.  A user without active venues
    gets an empty set either way.
    """
    venue_ids = await get_active_venue_ids(db, user_id)
    if not venue_ids:
        return set()

    stmt = (
        select(UserVenue.user_id)
        .join(Venue, Venue.id == UserVenue.venue_id)
        .where(UserVenue.venue_id.in_(venue_ids), Venue.is_active.is_(True))
        .distinct()
    )
    result = await db.execute(stmt)
    shared = set(result.scalars().all())
    if not include_self:
        shared.discard(user_id)
    return shared
