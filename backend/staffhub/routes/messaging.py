"""Direct and group messaging routes."""
from __future__ import annotations

import uuid
from datetime import datetime

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from staffhub.database import get_db
from staffhub.identity import Actor
from staffhub.middleware.auth import get_current_user, get_role_table
from staffhub.rbac import RolePermissionTable
from staffhub.services import messaging_service as service
from staffhub.services.results import to_response

router = APIRouter(prefix="/api/messaging", tags=["messaging"])


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------


class DirectConversationCreate(BaseModel):
    user_id: uuid.UUID


class GroupConversationCreate(BaseModel):
    name: str
    participant_ids: list[uuid.UUID]


class ParticipantsAdd(BaseModel):
    user_ids: list[uuid.UUID]


class MuteRequest(BaseModel):
    muted_until: datetime | None = None


class MessageBody(BaseModel):
    content: str


# ---------------------------------------------------------------------------
# CONVERSATIONS
# ---------------------------------------------------------------------------


@router.get("/conversations")
async def list_conversations(
    limit: int = Query(50, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_user),
):
    return to_response(await service.list_conversations(db, actor, limit=limit))


@router.post("/conversations/direct")
async def open_direct_conversation(
    body: DirectConversationCreate,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_user),
    table: RolePermissionTable = Depends(get_role_table),
):
    """Return the existing one-on-one conversation or start a new one."""
    result = await service.find_or_create_direct_conversation(db, actor, body.user_id, table)
    created = bool(result.success and result.data and result.data.get("created"))
    return to_response(result, success_status=201 if created else 200)


@router.post("/conversations/group")
async def create_group_conversation(
    body: GroupConversationCreate,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_user),
    table: RolePermissionTable = Depends(get_role_table),
):
    result = await service.create_group_conversation(
        db, actor, body.name, body.participant_ids, table
    )
    return to_response(result, success_status=201)


@router.get("/conversations/{conversation_id}")
async def get_conversation(
    conversation_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_user),
):
    return to_response(await service.get_conversation(db, actor, conversation_id))


@router.post("/conversations/{conversation_id}/mute")
async def mute_conversation(
    conversation_id: uuid.UUID,
    body: MuteRequest,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_user),
):
    return to_response(
        await service.mute_conversation(db, actor, conversation_id, body.muted_until)
    )


@router.post("/conversations/{conversation_id}/read")
async def mark_conversation_read(
    conversation_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_user),
):
    return to_response(await service.mark_conversation_read(db, actor, conversation_id))


@router.post("/conversations/{conversation_id}/participants")
async def add_participants(
    conversation_id: uuid.UUID,
    body: ParticipantsAdd,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_user),
):
    return to_response(
        await service.add_participants(db, actor, conversation_id, body.user_ids)
    )


@router.delete("/conversations/{conversation_id}/participants/{user_id}")
async def remove_participant(
    conversation_id: uuid.UUID,
    user_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_user),
):
    return to_response(
        await service.remove_participant(db, actor, conversation_id, user_id)
    )


@router.post("/conversations/{conversation_id}/leave")
async def leave_conversation(
    conversation_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_user),
):
    return to_response(await service.leave_conversation(db, actor, conversation_id))


@router.get("/unread")
async def unread_count(
    conversation_id: uuid.UUID | None = None,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_user),
):
    return to_response(await service.get_unread_message_count(db, actor, conversation_id))


# ---------------------------------------------------------------------------
# MESSAGES
# ---------------------------------------------------------------------------


@router.get("/conversations/{conversation_id}/messages")
async def list_messages(
    conversation_id: uuid.UUID,
    limit: int = Query(50, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_user),
):
    return to_response(await service.list_messages(db, actor, conversation_id, limit=limit))


@router.post("/conversations/{conversation_id}/messages")
async def send_message(
    conversation_id: uuid.UUID,
    body: MessageBody,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_user),
    table: RolePermissionTable = Depends(get_role_table),
):
    result = await service.send_message(db, actor, conversation_id, body.content, table)
    return to_response(result, success_status=201)


@router.get("/messages/search")
async def search_messages(
    q: str = Query(""),
    limit: int = Query(50, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_user),
):
    return to_response(await service.search_messages(db, actor, q, limit=limit))


@router.patch("/messages/{message_id}")
async def edit_message(
    message_id: uuid.UUID,
    body: MessageBody,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_user),
):
    return to_response(await service.edit_message(db, actor, message_id, body.content))


@router.delete("/messages/{message_id}")
async def delete_message(
    message_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_user),
):
    return to_response(await service.delete_message(db, actor, message_id))


@router.post("/messages/{message_id}/read")
async def mark_message_read(
    message_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_user),
):
    return to_response(await service.mark_message_read(db, actor, message_id))
