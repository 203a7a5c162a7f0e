"""Channel routes --- visibility, management, members, posts."""
from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from staffhub.database import get_db
from staffhub.identity import Actor
from staffhub.middleware.auth import client_ip, get_current_user, get_role_table
from staffhub.models.channel import MEMBER
from staffhub.rbac import RolePermissionTable
from staffhub.services import channel_service as service
from staffhub.services.results import to_response

router = APIRouter(prefix="/api/channels", tags=["channels"])


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------


class ChannelCreate(BaseModel):
    name: str
    description: str | None = None
    channel_type: str = "ALL_STAFF"
    venue_ids: list[uuid.UUID] | None = None


class ChannelUpdate(BaseModel):
    name: str | None = None
    description: str | None = None
    venue_ids: list[uuid.UUID] | None = None


class ArchiveRequest(BaseModel):
    archived: bool = True


class MembersAdd(BaseModel):
    user_ids: list[uuid.UUID]
    role: str = MEMBER


class MembersBulkAdd(BaseModel):
    selection_type: str
    roles: list[str] | None = None
    venue_ids: list[uuid.UUID] | None = None
    user_ids: list[uuid.UUID] | None = None
    role: str = MEMBER


class MembersRemove(BaseModel):
    user_ids: list[uuid.UUID]


class MemberRoleUpdate(BaseModel):
    role: str


class PostCreate(BaseModel):
    content: str


# ---------------------------------------------------------------------------
# CHANNELS
# ---------------------------------------------------------------------------


@router.get("")
async def list_channels(
    include_archived: bool = Query(False),
    channel_type: str | None = None,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_user),
):
    return to_response(await service.list_channels(
        db, actor, include_archived=include_archived, channel_type=channel_type
    ))


@router.get("/manageable")
async def list_manageable_channels(
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_user),
    table: RolePermissionTable = Depends(get_role_table),
):
    return to_response(await service.list_manageable_channels(db, actor, table))


@router.post("", status_code=201)
async def create_channel(
    body: ChannelCreate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_user),
    table: RolePermissionTable = Depends(get_role_table),
):
    result = await service.create_channel(
        db,
        actor,
        name=body.name,
        description=body.description,
        channel_type=body.channel_type,
        venue_ids=body.venue_ids,
        table=table,
        ip_address=client_ip(request),
    )
    return to_response(result, success_status=201)


@router.get("/{channel_id}")
async def get_channel(
    channel_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_user),
):
    return to_response(await service.get_channel(db, actor, channel_id))


@router.patch("/{channel_id}")
async def update_channel(
    channel_id: uuid.UUID,
    body: ChannelUpdate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_user),
    table: RolePermissionTable = Depends(get_role_table),
):
    result = await service.update_channel(
        db,
        actor,
        channel_id,
        name=body.name,
        description=body.description,
        venue_ids=body.venue_ids,
        table=table,
        ip_address=client_ip(request),
    )
    return to_response(result)


@router.post("/{channel_id}/archive")
async def archive_channel(
    channel_id: uuid.UUID,
    body: ArchiveRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_user),
    table: RolePermissionTable = Depends(get_role_table),
):
    result = await service.archive_channel(
        db, actor, channel_id, archived=body.archived, table=table,
        ip_address=client_ip(request),
    )
    return to_response(result)


@router.delete("/{channel_id}")
async def delete_channel(
    channel_id: uuid.UUID,
    request: Request,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_user),
    table: RolePermissionTable = Depends(get_role_table),
):
    result = await service.delete_channel(
        db, actor, channel_id, table, ip_address=client_ip(request)
    )
    return to_response(result)


# ---------------------------------------------------------------------------
# MEMBERS
# ---------------------------------------------------------------------------


@router.get("/{channel_id}/members")
async def list_members(
    channel_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_user),
):
    return to_response(await service.list_channel_members(db, actor, channel_id))


@router.post("/{channel_id}/members")
async def add_members(
    channel_id: uuid.UUID,
    body: MembersAdd,
    request: Request,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_user),
    table: RolePermissionTable = Depends(get_role_table),
):
    result = await service.add_channel_members(
        db, actor, channel_id, body.user_ids, role=body.role, table=table,
        ip_address=client_ip(request),
    )
    return to_response(result)


@router.get("/{channel_id}/candidates")
async def list_candidates(
    channel_id: uuid.UUID,
    selection_type: str = Query("all"),
    roles: list[str] | None = Query(None),
    venue_ids: list[uuid.UUID] | None = Query(None),
    user_ids: list[uuid.UUID] | None = Query(None),
    exclude_user_ids: list[uuid.UUID] | None = Query(None),
    search: str | None = None,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_user),
    table: RolePermissionTable = Depends(get_role_table),
):
    return to_response(await service.list_users_for_channel(
        db, actor, channel_id,
        selection_type=selection_type, roles=roles, venue_ids=venue_ids,
        user_ids=user_ids, search=search, exclude_user_ids=exclude_user_ids or (),
        table=table,
    ))


@router.post("/{channel_id}/members/bulk")
async def bulk_add_members(
    channel_id: uuid.UUID,
    body: MembersBulkAdd,
    request: Request,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_user),
    table: RolePermissionTable = Depends(get_role_table),
):
    result = await service.bulk_add_members(
        db, actor, channel_id,
        selection_type=body.selection_type, roles=body.roles, venue_ids=body.venue_ids,
        user_ids=body.user_ids, role=body.role, table=table,
        ip_address=client_ip(request),
    )
    return to_response(result)


@router.post("/{channel_id}/members/remove")
async def remove_members(
    channel_id: uuid.UUID,
    body: MembersRemove,
    request: Request,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_user),
    table: RolePermissionTable = Depends(get_role_table),
):
    result = await service.remove_channel_members(
        db, actor, channel_id, body.user_ids, table, ip_address=client_ip(request)
    )
    return to_response(result)


@router.patch("/{channel_id}/members/{user_id}")
async def update_member_role(
    channel_id: uuid.UUID,
    user_id: uuid.UUID,
    body: MemberRoleUpdate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_user),
    table: RolePermissionTable = Depends(get_role_table),
):
    result = await service.update_member_role(
        db, actor, channel_id, user_id, body.role, table, ip_address=client_ip(request)
    )
    return to_response(result)


# ---------------------------------------------------------------------------
# POSTS
# ---------------------------------------------------------------------------


@router.get("/{channel_id}/posts")
async def list_posts(
    channel_id: uuid.UUID,
    limit: int = Query(50, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_user),
    table: RolePermissionTable = Depends(get_role_table),
):
    return to_response(
        await service.list_channel_posts(db, actor, channel_id, limit=limit, table=table)
    )


@router.post("/{channel_id}/posts", status_code=201)
async def create_post(
    channel_id: uuid.UUID,
    body: PostCreate,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_user),
    table: RolePermissionTable = Depends(get_role_table),
):
    result = await service.create_post(db, actor, channel_id, body.content, table)
    return to_response(result, success_status=201)
