"""Venue-scoped permission override routes."""
from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from staffhub.database import get_db
from staffhub.identity import Actor
from staffhub.middleware.auth import client_ip, get_current_user, get_role_table
from staffhub.rbac import RolePermissionTable
from staffhub.services import venue_permissions as service
from staffhub.services.results import to_response

router = APIRouter(prefix="/api/venue-permissions", tags=["venue-permissions"])


class PermissionSetUpdate(BaseModel):
    permission_ids: list[uuid.UUID]


class PermissionGrant(BaseModel):
    permission_id: uuid.UUID


class RoleGrant(BaseModel):
    role: str
    permission_ids: list[uuid.UUID]


class UsersGrant(BaseModel):
    user_ids: list[uuid.UUID]
    permission_ids: list[uuid.UUID]


@router.get("/catalog")
async def available_permissions(
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_user),
):
    return to_response(await service.list_available_permissions(db))


@router.get("/count")
async def assignment_count(
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_user),
    table: RolePermissionTable = Depends(get_role_table),
):
    return to_response(await service.count_venue_permission_assignments(db, actor, table))


@router.get("/venues/{venue_id}/users")
async def venue_permission_users(
    venue_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_user),
    table: RolePermissionTable = Depends(get_role_table),
):
    return to_response(await service.list_venue_permission_users(db, actor, venue_id, table))


@router.post("/venues/{venue_id}/by-role")
async def grant_by_role(
    venue_id: uuid.UUID,
    body: RoleGrant,
    request: Request,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_user),
):
    result = await service.bulk_grant_permissions_by_role(
        db, actor, body.role, venue_id, body.permission_ids, ip_address=client_ip(request)
    )
    return to_response(result)


@router.post("/venues/{venue_id}/by-users")
async def grant_to_users(
    venue_id: uuid.UUID,
    body: UsersGrant,
    request: Request,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_user),
):
    result = await service.bulk_grant_permissions_to_users(
        db, actor, body.user_ids, venue_id, body.permission_ids, ip_address=client_ip(request)
    )
    return to_response(result)


@router.get("/users/{user_id}/grants")
async def user_grants(
    user_id: uuid.UUID,
    venue_id: uuid.UUID | None = None,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_user),
    table: RolePermissionTable = Depends(get_role_table),
):
    """Venue grants of a user, across every venue the caller may view."""
    return to_response(
        await service.list_user_venue_permissions(db, actor, user_id, venue_id, table)
    )


@router.get("/users/{user_id}/venues/{venue_id}")
async def effective_permissions(
    user_id: uuid.UUID,
    venue_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_user),
    table: RolePermissionTable = Depends(get_role_table),
):
    return to_response(
        await service.get_effective_permissions(db, actor, user_id, venue_id, table)
    )


@router.put("/users/{user_id}/venues/{venue_id}")
async def replace_permissions(
    user_id: uuid.UUID,
    venue_id: uuid.UUID,
    body: PermissionSetUpdate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_user),
    table: RolePermissionTable = Depends(get_role_table),
):
    """Replace the user's venue grants with exactly ``permission_ids``."""
    result = await service.bulk_update_user_venue_permissions(
        db, actor, user_id, venue_id, body.permission_ids, table,
        ip_address=client_ip(request),
    )
    return to_response(result)


@router.post("/users/{user_id}/venues/{venue_id}")
async def grant_permission(
    user_id: uuid.UUID,
    venue_id: uuid.UUID,
    body: PermissionGrant,
    request: Request,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_user),
    table: RolePermissionTable = Depends(get_role_table),
):
    result = await service.grant_venue_permission(
        db, actor, user_id, venue_id, body.permission_id, table,
        ip_address=client_ip(request),
    )
    return to_response(result, success_status=201)


@router.delete("/users/{user_id}/venues/{venue_id}/{permission_id}")
async def revoke_permission(
    user_id: uuid.UUID,
    venue_id: uuid.UUID,
    permission_id: uuid.UUID,
    request: Request,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_user),
    table: RolePermissionTable = Depends(get_role_table),
):
    result = await service.revoke_venue_permission(
        db, actor, user_id, venue_id, permission_id, table,
        ip_address=client_ip(request),
    )
    return to_response(result)
