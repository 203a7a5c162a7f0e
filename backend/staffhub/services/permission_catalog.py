"""Keeps the ``permissions`` table in step with the canonical enumeration.

Run once at application startup, or by hand::

    python -m staffhub.services.permission_catalog
"""
from __future__ import annotations

import asyncio
import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from staffhub.database import commit_or_rollback
from staffhub.models.permission import Permission
from staffhub.rbac import ALL_PERMISSIONS, permission_description, split_permission_key

logger = logging.getLogger(__name__)


async def sync_permission_catalog(db: AsyncSession) -> dict[str, int]:
    """Insert missing catalog rows and refresh descriptions.

    Rows no longer in the enumeration are reported, not deleted, since venue
    grants may still reference them.
    """
    result = await db.execute(select(Permission))
    existing = {p.key: p for p in result.scalars().all()}

    created = 0
    updated = 0
    for key in ALL_PERMISSIONS:
        description = permission_description(key)
        row = existing.get(key)
        if row is None:
            resource, action = split_permission_key(key)
            db.add(Permission(resource=resource, action=action, description=description))
            created += 1
        elif row.description != description:
            row.description = description
            updated += 1

    stale = sorted(set(existing) - set(ALL_PERMISSIONS))
    if stale:
        logger.warning("Permission catalog has rows outside the enumeration: %s", stale)

    await commit_or_rollback(db)
    summary = {"created": created, "updated": updated, "stale": len(stale)}
    logger.info("Permission catalog sync done: %s", summary)
    return summary


async def _main() -> None:
    from staffhub.database import AsyncSessionLocal, async_engine

    async with AsyncSessionLocal() as db:
        await sync_permission_catalog(db)
    await async_engine.dispose()


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    asyncio.run(_main())
