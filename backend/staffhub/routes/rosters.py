"""Roster routes."""
from __future__ import annotations

import uuid
from datetime import date

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from staffhub.database import get_db
from staffhub.identity import Actor
from staffhub.middleware.auth import client_ip, get_current_user, get_role_table
from staffhub.rbac import RolePermissionTable
from staffhub.services import roster_service as service
from staffhub.services.results import to_response

router = APIRouter(prefix="/api/rosters", tags=["rosters"])


class RosterCreate(BaseModel):
    venue_id: uuid.UUID
    name: str
    week_start: date


@router.get("")
async def list_rosters(
    venue_id: uuid.UUID | None = None,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_user),
):
    return to_response(await service.list_rosters(db, actor, venue_id=venue_id))


@router.post("", status_code=201)
async def create_roster(
    body: RosterCreate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_user),
    table: RolePermissionTable = Depends(get_role_table),
):
    result = await service.create_roster(
        db,
        actor,
        venue_id=body.venue_id,
        name=body.name,
        week_start=body.week_start,
        table=table,
        ip_address=client_ip(request),
    )
    return to_response(result, success_status=201)
