"""
Tests 77-98: Conversations and messages

People may only talk to users who share an active venue with them.  Edits
are author-only inside a 15-minute window; deletes are author-only and hard.
"""
import uuid
from datetime import datetime, timedelta, timezone

from sqlalchemy import delete, func, select

from conftest import make_direct_conversation
from staffhub.config import settings
from staffhub.errors import ErrorKind
from staffhub.models import Message, MessageRead, UserVenue
from staffhub.services import messaging_service as ms
from staffhub.services.messaging_service import DIRECT_OUTSIDE_VENUES, GROUP_OUTSIDE_VENUES


async def _first_message(db, conversation_id) -> Message:
    result = await db.execute(
        select(Message).where(Message.conversation_id == conversation_id).limit(1)
    )
    return result.scalar_one()


class TestConversationCreation:

    # ===================================================================
    # Test 77: Direct conversation with a colleague
    # ===================================================================
    async def test_77_direct_with_colleague(self, db, world):
        r = await ms.find_or_create_direct_conversation(
            db, world.actor("staff_north"), world.uid("staff_both")
        )
        assert r.success, r.error
        assert r.data["created"] is True
        participants = set(r.data["conversation"]["participant_ids"])
        assert participants == {str(world.uid("staff_north")), str(world.uid("staff_both"))}

    # ===================================================================
    # Test 78: Second request returns the same conversation
    # ===================================================================
    async def test_78_direct_is_reused(self, db, world):
        first = await ms.find_or_create_direct_conversation(
            db, world.actor("staff_north"), world.uid("staff_both")
        )
        again = await ms.find_or_create_direct_conversation(
            db, world.actor("staff_both"), world.uid("staff_north")
        )
        assert again.data["created"] is False
        assert again.data["conversation"]["id"] == first.data["conversation"]["id"]

    # ===================================================================
    # Test 79: No conversation across venues
    # ===================================================================
    async def test_79_direct_outside_venues(self, db, world):
        r = await ms.find_or_create_direct_conversation(
            db, world.actor("staff_north"), world.uid("staff_south")
        )
        assert not r.success
        assert r.kind == ErrorKind.PERMISSION_DENIED
        assert r.error == DIRECT_OUTSIDE_VENUES

    # ===================================================================
    # Test 80: Unknown and deactivated users read the same
    # ===================================================================
    async def test_80_direct_unknown_or_inactive(self, db, world):
        actor = world.actor("staff_north")
        for target in (world.uid("gone_north"), uuid.uuid4()):
            r = await ms.find_or_create_direct_conversation(db, actor, target)
            assert r.error == DIRECT_OUTSIDE_VENUES

    # ===================================================================
    # Test 81: Talking to yourself is a validation error
    # ===================================================================
    async def test_81_direct_with_self(self, db, world):
        r = await ms.find_or_create_direct_conversation(
            db, world.actor("staff_north"), world.uid("staff_north")
        )
        assert r.kind == ErrorKind.VALIDATION

    # ===================================================================
    # Test 82: Users without venues can start nothing
    # ===================================================================
    async def test_82_no_venues(self, db, world):
        r = await ms.find_or_create_direct_conversation(
            db, world.actor("staff_closed"), world.uid("staff_north")
        )
        assert r.error == DIRECT_OUTSIDE_VENUES

    # ===================================================================
    # Test 83: Group members must all be colleagues
    # ===================================================================
    async def test_83_group_conversation(self, db, world):
        r = await ms.create_group_conversation(
            db, world.actor("staff_both"), "Closing shift",
            [world.uid("staff_north"), world.uid("staff_south")],
        )
        assert r.success, r.error
        assert len(r.data["conversation"]["participant_ids"]) == 3

        r = await ms.create_group_conversation(
            db, world.actor("staff_north"), "Cross venue",
            [world.uid("staff_both"), world.uid("staff_south")],
        )
        assert r.error == GROUP_OUTSIDE_VENUES

        r = await ms.create_group_conversation(
            db, world.actor("staff_north"), "  ", [world.uid("staff_both")]
        )
        assert r.kind == ErrorKind.VALIDATION


class TestConversationVisibility:

    # ===================================================================
    # Test 84: Conversations with no remaining colleague disappear
    # ===================================================================
    async def test_84_drifted_conversation_hidden(self, db, world):
        conv = await make_direct_conversation(db, world, "staff_north", "staff_both", ("staff_both", "hey"))
        listing = await ms.list_conversations(db, world.actor("staff_north"))
        assert [c["id"] for c in listing.data["items"]] == [str(conv.id)]

        await db.execute(
            delete(UserVenue).where(
                UserVenue.user_id == world.uid("staff_both"),
                UserVenue.venue_id == world.vid("north"),
            )
        )
        await db.commit()

        listing = await ms.list_conversations(db, world.actor("staff_north"))
        assert listing.data["items"] == []
        r = await ms.get_conversation(db, world.actor("staff_north"), conv.id)
        assert r.kind == ErrorKind.NOT_FOUND

    # ===================================================================
    # Test 85: Outsiders see neither the conversation nor its messages
    # ===================================================================
    async def test_85_outsider_not_found(self, db, world):
        conv = await make_direct_conversation(db, world, "staff_north", "staff_both", ("staff_north", "psst"))
        message = await _first_message(db, conv.id)

        outsider = world.actor("mgr_north")
        assert (await ms.get_conversation(db, outsider, conv.id)).error == "Conversation not found"
        assert (await ms.list_messages(db, outsider, conv.id)).kind == ErrorKind.NOT_FOUND
        assert (await ms.mark_message_read(db, outsider, message.id)).error == "Message not found"

    # ===================================================================
    # Test 86: Sending updates the conversation's last message time
    # ===================================================================
    async def test_86_send_message(self, db, world):
        conv = await make_direct_conversation(db, world, "staff_north", "staff_both")
        r = await ms.send_message(db, world.actor("staff_north"), conv.id, "  on my way  ")
        assert r.success
        assert r.data["message"]["content"] == "on my way"
        assert (await ms.get_conversation(db, world.actor("staff_both"), conv.id)).data[
            "conversation"]["last_message_at"] is not None

    # ===================================================================
    # Test 87: Message length limits
    # ===================================================================
    async def test_87_send_limits(self, db, world):
        conv = await make_direct_conversation(db, world, "staff_north", "staff_both")
        actor = world.actor("staff_north")
        assert (await ms.send_message(db, actor, conv.id, "   ")).kind == ErrorKind.VALIDATION
        too_long = "x" * (settings.MAX_MESSAGE_LENGTH + 1)
        assert (await ms.send_message(db, actor, conv.id, too_long)).kind == ErrorKind.VALIDATION


class TestMessageEditing:

    # ===================================================================
    # Test 88: Author edits inside the window
    # ===================================================================
    async def test_88_author_edit(self, db, world):
        conv = await make_direct_conversation(db, world, "staff_north", "staff_both", ("staff_north", "typo"))
        message = await _first_message(db, conv.id)
        r = await ms.edit_message(db, world.actor("staff_north"), message.id, "fixed")
        assert r.success, r.error
        assert r.data["message"]["is_edited"] is True
        assert r.data["message"]["content"] == "fixed"

    # ===================================================================
    # Test 89: Only the author may edit
    # ===================================================================
    async def test_89_non_author_edit(self, db, world):
        conv = await make_direct_conversation(db, world, "staff_north", "staff_both", ("staff_north", "mine"))
        message = await _first_message(db, conv.id)
        r = await ms.edit_message(db, world.actor("staff_both"), message.id, "yours")
        assert r.kind == ErrorKind.PERMISSION_DENIED
        assert r.error == "You can only edit your own messages"

    # ===================================================================
    # Test 90: The edit window closes after 15 minutes
    # ===================================================================
    async def test_90_edit_window(self, db, world):
        conv = await make_direct_conversation(db, world, "staff_north", "staff_both")
        old = Message(
            conversation_id=conv.id,
            sender_id=world.uid("staff_north"),
            content="stale",
            created_at=datetime.now(timezone.utc) - timedelta(
                minutes=settings.MESSAGE_EDIT_WINDOW_MINUTES, seconds=30
            ),
        )
        db.add(old)
        await db.commit()

        r = await ms.edit_message(db, world.actor("staff_north"), old.id, "fresh")
        assert r.kind == ErrorKind.VALIDATION
        assert "15 minutes" in r.error

    # ===================================================================
    # Test 91: Edit count is capped
    # ===================================================================
    async def test_91_edit_cap(self, db, world):
        conv = await make_direct_conversation(db, world, "staff_north", "staff_both", ("staff_north", "v0"))
        message = await _first_message(db, conv.id)
        actor = world.actor("staff_north")
        for i in range(settings.MAX_EDITS_PER_MESSAGE):
            assert (await ms.edit_message(db, actor, message.id, f"v{i + 1}")).success
        r = await ms.edit_message(db, actor, message.id, "one more")
        assert r.error == f"Maximum {settings.MAX_EDITS_PER_MESSAGE} edits allowed"


class TestMessageDeletion:

    # ===================================================================
    # Test 92: Only the author may delete
    # ===================================================================
    async def test_92_non_author_delete(self, db, world):
        conv = await make_direct_conversation(db, world, "staff_north", "staff_both", ("staff_north", "keep"))
        message = await _first_message(db, conv.id)
        r = await ms.delete_message(db, world.actor("staff_both"), message.id)
        assert r.error == "You can only delete your own messages"

    # ===================================================================
    # Test 93: Delete is permanent and takes read receipts with it
    # ===================================================================
    async def test_93_hard_delete(self, db, world):
        conv = await make_direct_conversation(db, world, "staff_north", "staff_both", ("staff_north", "oops"))
        message = await _first_message(db, conv.id)
        await ms.mark_message_read(db, world.actor("staff_both"), message.id)

        r = await ms.delete_message(db, world.actor("staff_north"), message.id)
        assert r.success
        remaining = (await db.execute(
            select(func.count(Message.id)).where(Message.id == message.id)
        )).scalar_one()
        receipts = (await db.execute(
            select(func.count(MessageRead.id)).where(MessageRead.message_id == message.id)
        )).scalar_one()
        assert (remaining, receipts) == (0, 0)

    # ===================================================================
    # Test 94: Deleting a missing message is not found
    # ===================================================================
    async def test_94_delete_missing(self, db, world):
        r = await ms.delete_message(db, world.actor("staff_north"), uuid.uuid4())
        assert r.kind == ErrorKind.NOT_FOUND


class TestReadsAndSearch:

    # ===================================================================
    # Test 95: Marking a message read is idempotent
    # ===================================================================
    async def test_95_mark_read_idempotent(self, db, world):
        conv = await make_direct_conversation(db, world, "staff_north", "staff_both", ("staff_north", "hi"))
        message = await _first_message(db, conv.id)
        actor = world.actor("staff_both")
        await ms.mark_message_read(db, actor, message.id)
        r = await ms.mark_message_read(db, actor, message.id)
        assert r.data["read_by"] == [str(world.uid("staff_both"))]

    # ===================================================================
    # Test 96: Marking a conversation read covers others' messages only
    # ===================================================================
    async def test_96_mark_conversation_read(self, db, world):
        conv = await make_direct_conversation(
            db, world, "staff_north", "staff_both",
            ("staff_north", "one"), ("staff_north", "two"), ("staff_both", "three"),
        )
        r = await ms.mark_conversation_read(db, world.actor("staff_both"), conv.id)
        assert r.data["marked"] == 2
        r = await ms.mark_conversation_read(db, world.actor("staff_both"), conv.id)
        assert r.data["marked"] == 0

    # ===================================================================
    # Test 97: Search needs a minimum query length
    # ===================================================================
    async def test_97_search_min_length(self, db, world):
        r = await ms.search_messages(db, world.actor("staff_north"), "a")
        assert r.kind == ErrorKind.VALIDATION

    # ===================================================================
    # Test 98: Search covers only own conversations
    # ===================================================================
    async def test_98_search_scope(self, db, world):
        await make_direct_conversation(db, world, "staff_north", "staff_both", ("staff_both", "Delivery at 6"))
        await make_direct_conversation(db, world, "mgr_north", "staff_both", ("staff_both", "delivery late"))

        r = await ms.search_messages(db, world.actor("staff_north"), "delivery")
        assert [m["content"] for m in r.data["items"]] == ["Delivery at 6"]
