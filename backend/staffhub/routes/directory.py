"""Staff directory, time off and team availability routes."""
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
from staffhub.services import directory_service as service
from staffhub.services.results import to_response

router = APIRouter(prefix="/api/directory", tags=["directory"])


class TimeOffCreate(BaseModel):
    start_date: date
    end_date: date
    reason: str | None = None


class TimeOffReview(BaseModel):
    status: str
    notes: str | None = None


@router.get("/users")
async def list_users(
    search: str | None = None,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_user),
):
    return to_response(await service.list_directory_users(db, actor, search=search))


@router.get("/time-off")
async def list_time_off(
    status: str | None = None,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_user),
    table: RolePermissionTable = Depends(get_role_table),
):
    return to_response(
        await service.list_time_off_requests(db, actor, status=status, table=table)
    )


@router.post("/time-off", status_code=201)
async def request_time_off(
    body: TimeOffCreate,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_user),
    table: RolePermissionTable = Depends(get_role_table),
):
    result = await service.create_time_off_request(
        db,
        actor,
        start_date=body.start_date,
        end_date=body.end_date,
        reason=body.reason,
        table=table,
    )
    return to_response(result, success_status=201)


@router.post("/time-off/{request_id}/review")
async def review_time_off(
    request_id: uuid.UUID,
    body: TimeOffReview,
    request: Request,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_user),
    table: RolePermissionTable = Depends(get_role_table),
):
    result = await service.review_time_off_request(
        db,
        actor,
        request_id,
        status=body.status,
        notes=body.notes,
        table=table,
        ip_address=client_ip(request),
    )
    return to_response(result)


@router.post("/time-off/{request_id}/cancel")
async def cancel_time_off(
    request_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_user),
):
    return to_response(await service.cancel_time_off_request(db, actor, request_id))


@router.get("/availability")
async def team_availability(
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_user),
    table: RolePermissionTable = Depends(get_role_table),
):
    return to_response(await service.list_team_availability(db, actor, table))
