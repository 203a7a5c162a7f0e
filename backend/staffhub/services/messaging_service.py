"""Conversations and messages, scoped by shared active venues.

A user may only talk to people who share at least one active venue with
them.  A conversation whose other participants have all drifted out of the
actor's venues is treated as not found.
"""
from __future__ import annotations

import logging
import uuid
from collections.abc import Sequence
from datetime import datetime, timedelta, timezone

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from staffhub.config import settings
from staffhub.database import commit_or_rollback, contains_pattern
from staffhub.errors import NotFoundError, PermissionDeniedError, ValidationFailedError
from staffhub.identity import Actor
from staffhub.models.base import as_utc
from staffhub.models.messaging import (
    GROUP,
    ONE_ON_ONE,
    Conversation,
    ConversationParticipant,
    Message,
    MessageRead,
)
from staffhub.models.user import User
from staffhub.rbac import DEFAULT_ROLE_TABLE, RolePermissionTable
from staffhub.services.results import guarded
from staffhub.services.venue_scope import get_shared_venue_user_ids

logger = logging.getLogger(__name__)

CONVERSATION_NOT_FOUND = "Conversation not found"
MESSAGE_NOT_FOUND = "Message not found"
DIRECT_OUTSIDE_VENUES = "You can only create conversations with users in your venues"
GROUP_OUTSIDE_VENUES = "You can only add users from your venues to the conversation"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


async def _participant_ids(db: AsyncSession, conversation_id: uuid.UUID) -> set[uuid.UUID]:
    result = await db.execute(
        select(ConversationParticipant.user_id).where(
            ConversationParticipant.conversation_id == conversation_id
        )
    )
    return set(result.scalars().all())


def _is_visible(actor_id: uuid.UUID, participants: set[uuid.UUID], shared: set[uuid.UUID]) -> bool:
    others = participants - {actor_id}
    return actor_id in participants and bool(others & shared)


async def _get_visible_conversation(
    db: AsyncSession, actor: Actor, conversation_id: uuid.UUID
) -> tuple[Conversation, set[uuid.UUID]]:
    result = await db.execute(
        select(Conversation).where(Conversation.id == conversation_id)
    )
    conversation = result.scalar_one_or_none()
    if conversation is None:
        raise NotFoundError(CONVERSATION_NOT_FOUND)

    participants = await _participant_ids(db, conversation_id)
    shared = await get_shared_venue_user_ids(db, actor.id)
    if not _is_visible(actor.id, participants, shared):
        raise NotFoundError(CONVERSATION_NOT_FOUND)
    return conversation, participants


async def _get_own_participation(
    db: AsyncSession, actor: Actor, conversation_id: uuid.UUID
) -> ConversationParticipant:
    await _get_visible_conversation(db, actor, conversation_id)
    result = await db.execute(
        select(ConversationParticipant).where(
            ConversationParticipant.conversation_id == conversation_id,
            ConversationParticipant.user_id == actor.id,
        )
    )
    return result.scalar_one()


async def _visible_conversations(
    db: AsyncSession, actor: Actor
) -> list[tuple[Conversation, set[uuid.UUID]]]:
    """The actor's visible conversations with participants, most recent first."""
    shared = await get_shared_venue_user_ids(db, actor.id)
    result = await db.execute(
        select(Conversation)
        .join(
            ConversationParticipant,
            ConversationParticipant.conversation_id == Conversation.id,
        )
        .where(ConversationParticipant.user_id == actor.id)
        .order_by(func.coalesce(Conversation.last_message_at, Conversation.created_at).desc())
    )
    conversations = result.scalars().all()

    participants_by_id: dict[uuid.UUID, set[uuid.UUID]] = {c.id: set() for c in conversations}
    if conversations:
        rows = await db.execute(
            select(
                ConversationParticipant.conversation_id, ConversationParticipant.user_id
            ).where(ConversationParticipant.conversation_id.in_(list(participants_by_id)))
        )
        for conversation_id, user_id in rows.all():
            participants_by_id[conversation_id].add(user_id)

    return [
        (c, participants_by_id[c.id])
        for c in conversations
        if _is_visible(actor.id, participants_by_id[c.id], shared)
    ]


def _conversation_to_dict(conversation: Conversation, participants: set[uuid.UUID]) -> dict:
    return {
        "id": str(conversation.id),
        "conversation_type": conversation.conversation_type,
        "name": conversation.name,
        "participant_ids": sorted(str(p) for p in participants),
        "last_message_at": (
            conversation.last_message_at.isoformat() if conversation.last_message_at else None
        ),
        "created_at": conversation.created_at.isoformat() if conversation.created_at else None,
    }


def _message_to_dict(message: Message) -> dict:
    return {
        "id": str(message.id),
        "conversation_id": str(message.conversation_id),
        "sender_id": str(message.sender_id),
        "content": message.content,
        "is_edited": message.is_edited,
        "edited_at": message.edited_at.isoformat() if message.edited_at else None,
        "created_at": message.created_at.isoformat() if message.created_at else None,
    }


def _require_permission(
    actor: Actor, resource: str, action: str, table: RolePermissionTable, message: str
) -> None:
    if not table.has(actor.role, resource, action):
        raise PermissionDeniedError(message)


# ---------------------------------------------------------------------------
# Conversations
# ---------------------------------------------------------------------------


@guarded("Failed to load conversations")
async def list_conversations(db: AsyncSession, actor: Actor, *, limit: int = 50) -> dict:
    items = [
        _conversation_to_dict(c, participants)
        for c, participants in await _visible_conversations(db, actor)
    ][:limit]
    return {"items": items, "total": len(items)}


@guarded("Failed to load conversation")
async def get_conversation(
    db: AsyncSession, actor: Actor, conversation_id: uuid.UUID
) -> dict:
    conversation, participants = await _get_visible_conversation(db, actor, conversation_id)
    return {"conversation": _conversation_to_dict(conversation, participants)}


@guarded("Failed to create conversation")
async def find_or_create_direct_conversation(
    db: AsyncSession,
    actor: Actor,
    other_user_id: uuid.UUID,
    table: RolePermissionTable = DEFAULT_ROLE_TABLE,
) -> dict:
    _require_permission(
        actor, "messages", "create", table,
        "You don't have permission to create conversations",
    )
    if other_user_id == actor.id:
        raise ValidationFailedError("You cannot start a conversation with yourself")

    shared = await get_shared_venue_user_ids(db, actor.id)
    result = await db.execute(
        select(User.id).where(User.id == other_user_id, User.is_active.is_(True))
    )
    if other_user_id not in shared or result.first() is None:
        raise PermissionDeniedError(DIRECT_OUTSIDE_VENUES)

    mine = (
        select(ConversationParticipant.conversation_id)
        .where(ConversationParticipant.user_id == actor.id)
    )
    theirs = (
        select(ConversationParticipant.conversation_id)
        .where(ConversationParticipant.user_id == other_user_id)
    )
    result = await db.execute(
        select(Conversation).where(
            Conversation.conversation_type == ONE_ON_ONE,
            Conversation.id.in_(mine),
            Conversation.id.in_(theirs),
        )
    )
    existing = result.scalars().first()
    if existing is not None:
        return {
            "conversation": _conversation_to_dict(existing, {actor.id, other_user_id}),
            "created": False,
        }

    conversation = Conversation(conversation_type=ONE_ON_ONE, created_by=actor.id)
    db.add(conversation)
    await db.flush()
    db.add_all([
        ConversationParticipant(conversation_id=conversation.id, user_id=actor.id),
        ConversationParticipant(conversation_id=conversation.id, user_id=other_user_id),
    ])
    await commit_or_rollback(db)
    return {
        "conversation": _conversation_to_dict(conversation, {actor.id, other_user_id}),
        "created": True,
    }


@guarded("Failed to create conversation")
async def create_group_conversation(
    db: AsyncSession,
    actor: Actor,
    name: str,
    participant_ids: Sequence[uuid.UUID],
    table: RolePermissionTable = DEFAULT_ROLE_TABLE,
) -> dict:
    _require_permission(
        actor, "messages", "create", table,
        "You don't have permission to create conversations",
    )
    name = (name or "").strip()
    if not name:
        raise ValidationFailedError("Group conversations need a name")
    if len(name) > 100:
        raise ValidationFailedError("Conversation name must be at most 100 characters")

    others = set(participant_ids) - {actor.id}
    if not others:
        raise ValidationFailedError("Add at least one other participant")

    shared = await get_shared_venue_user_ids(db, actor.id)
    result = await db.execute(
        select(User.id).where(User.id.in_(list(others)), User.is_active.is_(True))
    )
    active = set(result.scalars().all())
    if not others <= shared or active != others:
        raise PermissionDeniedError(GROUP_OUTSIDE_VENUES)

    conversation = Conversation(conversation_type=GROUP, name=name, created_by=actor.id)
    db.add(conversation)
    await db.flush()
    members = others | {actor.id}
    db.add_all([
        ConversationParticipant(conversation_id=conversation.id, user_id=user_id)
        for user_id in members
    ])
    await commit_or_rollback(db)
    return {"conversation": _conversation_to_dict(conversation, members)}


@guarded("Failed to mute conversation")
async def mute_conversation(
    db: AsyncSession,
    actor: Actor,
    conversation_id: uuid.UUID,
    muted_until: datetime | None,
) -> dict:
    participation = await _get_own_participation(db, actor, conversation_id)
    participation.muted_until = muted_until
    await commit_or_rollback(db)
    return {
        "conversation_id": str(conversation_id),
        "muted_until": muted_until.isoformat() if muted_until else None,
    }


@guarded("Failed to mark conversation as read")
async def mark_conversation_read(
    db: AsyncSession, actor: Actor, conversation_id: uuid.UUID
) -> dict:
    """Set the actor's read marker and add them to every unread message."""
    participation = await _get_own_participation(db, actor, conversation_id)
    now = datetime.now(timezone.utc)
    participation.last_read_at = now

    already_read = select(MessageRead.message_id).where(MessageRead.user_id == actor.id)
    result = await db.execute(
        select(Message.id).where(
            Message.conversation_id == conversation_id,
            Message.sender_id != actor.id,
            Message.id.not_in(already_read),
        )
    )
    unread = list(result.scalars().all())
    db.add_all([
        MessageRead(message_id=message_id, user_id=actor.id, read_at=now)
        for message_id in unread
    ])
    await commit_or_rollback(db)
    return {"conversation_id": str(conversation_id), "marked": len(unread)}


@guarded("Failed to add participants")
async def add_participants(
    db: AsyncSession,
    actor: Actor,
    conversation_id: uuid.UUID,
    user_ids: Sequence[uuid.UUID],
) -> dict:
    """Add shared-venue colleagues to a group conversation the actor is in."""
    wanted = list(dict.fromkeys(user_ids))
    if not wanted:
        raise ValidationFailedError("At least one user is required")

    conversation, participants = await _get_visible_conversation(db, actor, conversation_id)
    if conversation.conversation_type != GROUP:
        raise ValidationFailedError("Can only add participants to group conversations")

    shared = await get_shared_venue_user_ids(db, actor.id)
    result = await db.execute(
        select(User.id).where(User.id.in_(wanted), User.is_active.is_(True))
    )
    active = set(result.scalars().all())
    if not set(wanted) <= shared or active != set(wanted):
        raise PermissionDeniedError(GROUP_OUTSIDE_VENUES)

    to_add = [u for u in wanted if u not in participants]
    if not to_add:
        raise ValidationFailedError("All users are already participants")

    db.add_all([
        ConversationParticipant(conversation_id=conversation_id, user_id=user_id)
        for user_id in to_add
    ])
    await commit_or_rollback(db)
    return {
        "conversation": _conversation_to_dict(conversation, participants | set(to_add)),
        "added": len(to_add),
    }


@guarded("Failed to remove participant")
async def remove_participant(
    db: AsyncSession,
    actor: Actor,
    conversation_id: uuid.UUID,
    user_id: uuid.UUID,
) -> dict:
    """The group's creator may remove anyone; everyone else only themselves."""
    conversation, participants = await _get_visible_conversation(db, actor, conversation_id)
    if conversation.conversation_type != GROUP:
        raise ValidationFailedError("Can only remove participants from group conversations")
    if user_id != actor.id and conversation.created_by != actor.id:
        raise PermissionDeniedError("You don't have permission to remove this participant")
    if user_id not in participants:
        raise NotFoundError("Participant not found")

    await db.execute(
        delete(ConversationParticipant).where(
            ConversationParticipant.conversation_id == conversation_id,
            ConversationParticipant.user_id == user_id,
        )
    )
    await commit_or_rollback(db)
    return {"conversation_id": str(conversation_id), "user_id": str(user_id)}


@guarded("Failed to leave conversation")
async def leave_conversation(
    db: AsyncSession, actor: Actor, conversation_id: uuid.UUID
) -> dict:
    # Own participation only; a drifted conversation can still be left.
    result = await db.execute(
        select(ConversationParticipant).where(
            ConversationParticipant.conversation_id == conversation_id,
            ConversationParticipant.user_id == actor.id,
        )
    )
    participation = result.scalar_one_or_none()
    if participation is None:
        raise NotFoundError(CONVERSATION_NOT_FOUND)

    await db.delete(participation)
    await commit_or_rollback(db)
    logger.info("User %s left conversation %s", actor.email, conversation_id)
    return {"conversation_id": str(conversation_id)}


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------


@guarded("Failed to load messages")
async def list_messages(
    db: AsyncSession,
    actor: Actor,
    conversation_id: uuid.UUID,
    *,
    limit: int = 50,
) -> dict:
    await _get_visible_conversation(db, actor, conversation_id)
    result = await db.execute(
        select(Message)
        .where(Message.conversation_id == conversation_id)
        .order_by(Message.created_at.desc())
        .limit(limit)
    )
    items = [_message_to_dict(m) for m in result.scalars().all()]
    return {"items": items, "total": len(items)}


@guarded("Failed to send message")
async def send_message(
    db: AsyncSession,
    actor: Actor,
    conversation_id: uuid.UUID,
    content: str,
    table: RolePermissionTable = DEFAULT_ROLE_TABLE,
) -> dict:
    _require_permission(
        actor, "messages", "send", table, "You don't have permission to send messages"
    )
    content = (content or "").strip()
    if not content:
        raise ValidationFailedError("Message content is required")
    if len(content) > settings.MAX_MESSAGE_LENGTH:
        raise ValidationFailedError(
            f"Message must be at most {settings.MAX_MESSAGE_LENGTH} characters"
        )

    conversation, _ = await _get_visible_conversation(db, actor, conversation_id)
    now = datetime.now(timezone.utc)
    message = Message(
        conversation_id=conversation_id,
        sender_id=actor.id,
        content=content,
        created_at=now,
    )
    db.add(message)
    conversation.last_message_at = now
    await commit_or_rollback(db)
    return {"message": _message_to_dict(message)}


async def _get_message_in_scope(
    db: AsyncSession, actor: Actor, message_id: uuid.UUID
) -> Message:
    result = await db.execute(select(Message).where(Message.id == message_id))
    message = result.scalar_one_or_none()
    if message is None:
        raise NotFoundError(MESSAGE_NOT_FOUND)
    try:
        await _get_visible_conversation(db, actor, message.conversation_id)
    except NotFoundError:
        raise NotFoundError(MESSAGE_NOT_FOUND) from None
    return message


@guarded("Failed to edit message")
async def edit_message(
    db: AsyncSession,
    actor: Actor,
    message_id: uuid.UUID,
    content: str,
) -> dict:
    """Author-only edit inside the edit window, with a cap on edits."""
    content = (content or "").strip()
    if not content:
        raise ValidationFailedError("Message content is required")
    if len(content) > settings.MAX_MESSAGE_LENGTH:
        raise ValidationFailedError(
            f"Message must be at most {settings.MAX_MESSAGE_LENGTH} characters"
        )

    message = await _get_message_in_scope(db, actor, message_id)
    if message.sender_id != actor.id:
        raise PermissionDeniedError("You can only edit your own messages")
    if message.edit_count >= settings.MAX_EDITS_PER_MESSAGE:
        raise ValidationFailedError(
            f"Maximum {settings.MAX_EDITS_PER_MESSAGE} edits allowed"
        )
    window = timedelta(minutes=settings.MESSAGE_EDIT_WINDOW_MINUTES)
    if datetime.now(timezone.utc) > as_utc(message.created_at) + window:
        raise ValidationFailedError(
            f"Messages can only be edited within "
            f"{settings.MESSAGE_EDIT_WINDOW_MINUTES} minutes"
        )

    message.content = content
    message.is_edited = True
    message.edit_count += 1
    message.edited_at = datetime.now(timezone.utc)
    await commit_or_rollback(db)
    return {"message": _message_to_dict(message)}


@guarded("Failed to delete message")
async def delete_message(db: AsyncSession, actor: Actor, message_id: uuid.UUID) -> dict:
    """Hard-delete one of the actor's own messages and its read receipts."""
    message = await _get_message_in_scope(db, actor, message_id)
    if message.sender_id != actor.id:
        raise PermissionDeniedError("You can only delete your own messages")

    await db.execute(delete(MessageRead).where(MessageRead.message_id == message_id))
    await db.delete(message)
    await commit_or_rollback(db)
    logger.info("Message %s deleted by %s", message_id, actor.email)
    return {"id": str(message_id)}


@guarded("Failed to mark message as read")
async def mark_message_read(db: AsyncSession, actor: Actor, message_id: uuid.UUID) -> dict:
    message = await _get_message_in_scope(db, actor, message_id)
    result = await db.execute(
        select(MessageRead.id).where(
            MessageRead.message_id == message_id,
            MessageRead.user_id == actor.id,
        )
    )
    if result.first() is None:
        db.add(MessageRead(message_id=message.id, user_id=actor.id))
        await commit_or_rollback(db)

    result = await db.execute(
        select(MessageRead.user_id).where(MessageRead.message_id == message_id)
    )
    return {"id": str(message_id), "read_by": sorted(str(u) for u in result.scalars().all())}


@guarded("Failed to count unread messages")
async def get_unread_message_count(
    db: AsyncSession,
    actor: Actor,
    conversation_id: uuid.UUID | None = None,
) -> dict:
    """Unread messages from others, in one conversation or across all visible ones.

    A message is read once the actor has a receipt for it, either from
    ``mark_message_read`` or from ``mark_conversation_read``.
    """
    if conversation_id is not None:
        await _get_visible_conversation(db, actor, conversation_id)
        conversation_ids = [conversation_id]
    else:
        conversation_ids = [c.id for c, _ in await _visible_conversations(db, actor)]
    if not conversation_ids:
        return {"total": 0, "conversations": {}}

    already_read = select(MessageRead.message_id).where(MessageRead.user_id == actor.id)
    result = await db.execute(
        select(Message.conversation_id, func.count(Message.id))
        .where(
            Message.conversation_id.in_(conversation_ids),
            Message.sender_id != actor.id,
            Message.id.not_in(already_read),
        )
        .group_by(Message.conversation_id)
    )
    counts = {str(cid): count for cid, count in result.all()}
    return {"total": sum(counts.values()), "conversations": counts}


@guarded("Failed to search messages")
async def search_messages(
    db: AsyncSession,
    actor: Actor,
    query: str,
    *,
    limit: int = 50,
) -> dict:
    """Substring search over the actor's conversations, shared-venue senders only."""
    query = (query or "").strip()
    if len(query) < settings.MIN_SEARCH_QUERY_LENGTH:
        raise ValidationFailedError(
            f"Search query must be at least {settings.MIN_SEARCH_QUERY_LENGTH} characters"
        )

    senders = await get_shared_venue_user_ids(db, actor.id)
    if not senders:
        return {"items": [], "total": 0}

    my_conversations = select(ConversationParticipant.conversation_id).where(
        ConversationParticipant.user_id == actor.id
    )
    pattern = contains_pattern(query.lower())
    result = await db.execute(
        select(Message)
        .where(
            Message.conversation_id.in_(my_conversations),
            Message.sender_id.in_(list(senders)),
            func.lower(Message.content).like(pattern, escape="\\"),
        )
        .order_by(Message.created_at.desc())
        .limit(limit)
    )
    items = [_message_to_dict(m) for m in result.scalars().all()]
    return {"items": items, "total": len(items)}
