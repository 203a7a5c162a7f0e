"""
Tests 153-176: Group participants, unread counts, time-off review,
channel candidate selection and per-user venue grants

Each operation stays inside the actor's shared venues: out-of-scope rows
read as missing and out-of-scope users are never offered or added.
"""
import uuid
from datetime import date

from sqlalchemy import delete, select

from conftest import make_channel, make_direct_conversation
from staffhub.errors import ErrorKind
from staffhub.models import ChannelMember, Message, UserVenue
from staffhub.models.channel import CREATOR
from staffhub.services import channel_service as cs
from staffhub.services import directory_service as ds
from staffhub.services import messaging_service as ms
from staffhub.services import venue_permissions as vp
from staffhub.services.channel_service import MANAGE_DENIED
from staffhub.services.messaging_service import GROUP_OUTSIDE_VENUES


def _ids(items, key="id"):
    return {item[key] for item in items}


async def _group(db, world, creator, *others, name="Bar team"):
    r = await ms.create_group_conversation(
        db, world.actor(creator), name, [world.uid(o) for o in others]
    )
    assert r.success, r.error
    return uuid.UUID(r.data["conversation"]["id"])


async def _time_off(db, world, name):
    r = await ds.create_time_off_request(
        db, world.actor(name), start_date=date(2026, 7, 1), end_date=date(2026, 7, 2)
    )
    assert r.success, r.error
    return uuid.UUID(r.data["id"])


class TestGroupParticipants:

    # ===================================================================
    # Test 153: Only shared-venue colleagues can be added
    # ===================================================================
    async def test_153_add_participants(self, db, world):
        conversation_id = await _group(db, world, "staff_north", "staff_both")
        actor = world.actor("staff_north")

        r = await ms.add_participants(db, actor, conversation_id, [world.uid("mgr_north")])
        assert r.success, r.error
        assert r.data["added"] == 1
        assert str(world.uid("mgr_north")) in r.data["conversation"]["participant_ids"]

        r = await ms.add_participants(db, actor, conversation_id, [world.uid("staff_south")])
        assert r.kind == ErrorKind.PERMISSION_DENIED
        assert r.error == GROUP_OUTSIDE_VENUES

        r = await ms.add_participants(db, actor, conversation_id, [world.uid("staff_both")])
        assert r.kind == ErrorKind.VALIDATION
        assert r.error == "All users are already participants"

    # ===================================================================
    # Test 154: Direct conversations keep their two participants
    # ===================================================================
    async def test_154_add_to_direct_rejected(self, db, world):
        conversation = await make_direct_conversation(db, world, "staff_north", "staff_both")
        r = await ms.add_participants(
            db, world.actor("staff_north"), conversation.id, [world.uid("mgr_north")]
        )
        assert r.error == "Can only add participants to group conversations"

        r = await ms.add_participants(
            db, world.actor("staff_south"), conversation.id, [world.uid("mgr_south")]
        )
        assert r.kind == ErrorKind.NOT_FOUND

    # ===================================================================
    # Test 155: Creator removes anyone, others only themselves
    # ===================================================================
    async def test_155_remove_participant(self, db, world):
        conversation_id = await _group(db, world, "staff_north", "staff_both", "mgr_north")

        r = await ms.remove_participant(
            db, world.actor("staff_both"), conversation_id, world.uid("mgr_north")
        )
        assert r.kind == ErrorKind.PERMISSION_DENIED
        assert r.error == "You don't have permission to remove this participant"

        r = await ms.remove_participant(
            db, world.actor("staff_north"), conversation_id, world.uid("mgr_north")
        )
        assert r.success, r.error

        r = await ms.remove_participant(
            db, world.actor("staff_both"), conversation_id, world.uid("staff_both")
        )
        assert r.success, r.error

        r = await ms.get_conversation(db, world.actor("mgr_north"), conversation_id)
        assert r.kind == ErrorKind.NOT_FOUND

    # ===================================================================
    # Test 156: Leaving hides the conversation, even a drifted one
    # ===================================================================
    async def test_156_leave_conversation(self, db, world):
        conversation_id = await _group(db, world, "staff_north", "staff_both", "mgr_north")
        actor = world.actor("staff_both")
        r = await ms.leave_conversation(db, actor, conversation_id)
        assert r.success, r.error
        assert (await ms.get_conversation(db, actor, conversation_id)).kind == ErrorKind.NOT_FOUND
        assert (await ms.leave_conversation(db, actor, conversation_id)).kind == ErrorKind.NOT_FOUND

        direct = await make_direct_conversation(db, world, "staff_north", "staff_both")
        await db.execute(
            delete(UserVenue).where(
                UserVenue.user_id == world.uid("staff_both"),
                UserVenue.venue_id == world.vid("north"),
            )
        )
        await db.commit()
        r = await ms.leave_conversation(db, world.actor("staff_north"), direct.id)
        assert r.success, r.error


class TestUnreadCounts:

    # ===================================================================
    # Test 157: Unread counts follow read receipts
    # ===================================================================
    async def test_157_unread_counts(self, db, world):
        conversation = await make_direct_conversation(
            db, world, "staff_north", "staff_both",
            ("staff_both", "Can you swap?"), ("staff_both", "Friday night"),
            ("staff_north", "Sure"),
        )
        actor = world.actor("staff_north")
        r = await ms.get_unread_message_count(db, actor)
        assert r.data == {"total": 2, "conversations": {str(conversation.id): 2}}

        message_id = (await db.execute(
            select(Message.id).where(Message.content == "Friday night")
        )).scalar_one()
        await ms.mark_message_read(db, actor, message_id)
        r = await ms.get_unread_message_count(db, actor, conversation.id)
        assert r.data["total"] == 1

        await ms.mark_conversation_read(db, actor, conversation.id)
        assert (await ms.get_unread_message_count(db, actor)).data["total"] == 0
        assert (await ms.get_unread_message_count(db, world.actor("staff_both"))).data["total"] == 1

    # ===================================================================
    # Test 158: Hidden conversations are not counted
    # ===================================================================
    async def test_158_unread_scope(self, db, world):
        conversation = await make_direct_conversation(
            db, world, "mgr_north", "staff_north", ("mgr_north", "Rota is up")
        )
        r = await ms.get_unread_message_count(db, world.actor("staff_south"), conversation.id)
        assert r.kind == ErrorKind.NOT_FOUND

        await db.execute(
            delete(UserVenue).where(UserVenue.user_id == world.uid("mgr_north"))
        )
        await db.commit()
        r = await ms.get_unread_message_count(db, world.actor("staff_north"))
        assert r.data == {"total": 0, "conversations": {}}


class TestTimeOffReview:

    # ===================================================================
    # Test 159: Manager approves a shared-venue request once
    # ===================================================================
    async def test_159_manager_approves(self, db, world):
        request_id = await _time_off(db, world, "staff_south")
        mgr = world.actor("mgr_south")

        r = await ds.review_time_off_request(
            db, mgr, request_id, status="APPROVED", notes="Enjoy"
        )
        assert r.success, r.error
        assert r.data["status"] == "APPROVED"
        assert r.data["reviewed_by"] == str(mgr.id)
        assert r.data["notes"] == "Enjoy"

        r = await ds.review_time_off_request(db, mgr, request_id, status="REJECTED")
        assert r.kind == ErrorKind.VALIDATION
        assert r.error == "This request has already been approved"

    # ===================================================================
    # Test 160: Requests from other venues read as missing
    # ===================================================================
    async def test_160_review_outside_venues(self, db, world):
        request_id = await _time_off(db, world, "staff_south")
        r = await ds.review_time_off_request(
            db, world.actor("mgr_north"), request_id, status="APPROVED"
        )
        assert r.kind == ErrorKind.NOT_FOUND
        assert r.error == "Time-off request not found"

        r = await ds.review_time_off_request(
            db, world.actor("admin"), request_id, status="REJECTED"
        )
        assert r.success, r.error

    # ===================================================================
    # Test 161: A venue grant of timeoff:approve enables review there
    # ===================================================================
    async def test_161_review_with_venue_grant(self, db, world):
        north_request = await _time_off(db, world, "staff_north")
        south_request = await _time_off(db, world, "staff_south")
        staff = world.actor("staff_both")

        r = await ds.review_time_off_request(db, staff, north_request, status="REJECTED")
        assert r.kind == ErrorKind.PERMISSION_DENIED

        await vp.bulk_update_user_venue_permissions(
            db, world.actor("admin"), staff.id, world.vid("north"),
            [world.permissions["timeoff:approve"]],
        )
        r = await ds.review_time_off_request(db, staff, north_request, status="REJECTED")
        assert r.success, r.error
        assert r.data["status"] == "REJECTED"

        r = await ds.review_time_off_request(db, staff, south_request, status="APPROVED")
        assert r.kind == ErrorKind.PERMISSION_DENIED

    # ===================================================================
    # Test 162: Review decisions are APPROVED or REJECTED only
    # ===================================================================
    async def test_162_review_status_validated(self, db, world):
        request_id = await _time_off(db, world, "staff_north")
        r = await ds.review_time_off_request(
            db, world.actor("mgr_north"), request_id, status="CANCELLED"
        )
        assert r.kind == ErrorKind.VALIDATION

    # ===================================================================
    # Test 163: Own pending requests can be cancelled
    # ===================================================================
    async def test_163_cancel_time_off(self, db, world):
        request_id = await _time_off(db, world, "staff_north")

        r = await ds.cancel_time_off_request(db, world.actor("staff_both"), request_id)
        assert r.error == "You can only cancel your own requests"
        r = await ds.cancel_time_off_request(db, world.actor("staff_south"), request_id)
        assert r.kind == ErrorKind.NOT_FOUND

        r = await ds.cancel_time_off_request(db, world.actor("staff_north"), request_id)
        assert r.success, r.error
        assert r.data["status"] == "CANCELLED"

        r = await ds.cancel_time_off_request(db, world.actor("staff_north"), request_id)
        assert r.error == "You can only cancel pending requests"


class TestChannelCandidates:

    # ===================================================================
    # Test 164: Candidates come from the manager's shared venues
    # ===================================================================
    async def test_164_candidates_all(self, db, world):
        chan = await make_channel(db, world, "bar", ["north"], members={"staff_north": CREATOR})
        r = await cs.list_users_for_channel(db, world.actor("mgr_north"), chan.id)
        assert r.success, r.error
        assert _ids(r.data["items"]) == {
            str(world.uid(name)) for name in ("admin", "mgr_north", "staff_north", "staff_both")
        }

    # ===================================================================
    # Test 165: Role and venue selections
    # ===================================================================
    async def test_165_candidates_by_role_and_venue(self, db, world):
        chan = await make_channel(
            db, world, "joint", ["north", "south"], members={"admin": CREATOR}
        )
        r = await cs.list_users_for_channel(
            db, world.actor("admin"), chan.id, selection_type="by_venue",
            venue_ids=[world.vid("south")],
        )
        assert _ids(r.data["items"]) == {
            str(world.uid(name)) for name in ("mgr_south", "staff_both", "staff_south")
        }

        north = await make_channel(db, world, "bar", ["north"], members={"staff_north": CREATOR})
        mgr = world.actor("mgr_north")
        r = await cs.list_users_for_channel(
            db, mgr, north.id, selection_type="by_role", roles=["STAFF"],
            exclude_user_ids=[world.uid("staff_north")],
        )
        assert _ids(r.data["items"]) == {str(world.uid("staff_both"))}

        r = await cs.list_users_for_channel(
            db, mgr, north.id, selection_type="by_venue", venue_ids=[world.vid("south")],
        )
        assert _ids(r.data["items"]) == {str(world.uid("staff_both"))}

    # ===================================================================
    # Test 166: Selections need their criteria and a channel manager
    # ===================================================================
    async def test_166_candidates_validation(self, db, world):
        chan = await make_channel(db, world, "bar", ["north"], members={"mgr_north": CREATOR})
        mgr = world.actor("mgr_north")

        r = await cs.list_users_for_channel(db, mgr, chan.id, selection_type="by_role")
        assert r.error == "Roles required for role-based selection"
        r = await cs.list_users_for_channel(db, mgr, chan.id, selection_type="by_venue")
        assert r.error == "Venue IDs required for venue-based selection"
        r = await cs.list_users_for_channel(db, mgr, chan.id, selection_type="by_user")
        assert r.error == "User IDs required for user-based selection"
        r = await cs.list_users_for_channel(db, mgr, chan.id, selection_type="everyone")
        assert r.kind == ErrorKind.VALIDATION

        r = await cs.list_users_for_channel(db, world.actor("staff_north"), chan.id)
        assert r.error == MANAGE_DENIED

    # ===================================================================
    # Test 167: Bulk add by venue records how members joined
    # ===================================================================
    async def test_167_bulk_add_by_venue(self, db, world):
        chan = await make_channel(
            db, world, "joint", ["north", "south"], members={"admin": CREATOR}
        )
        r = await cs.bulk_add_members(
            db, world.actor("admin"), chan.id, selection_type="by_venue",
            venue_ids=[world.vid("south")],
        )
        assert r.success, r.error
        assert r.data == {"added": 3, "skipped": 0}

        rows = (await db.execute(
            select(ChannelMember.added_via).where(
                ChannelMember.channel_id == chan.id,
                ChannelMember.user_id != world.uid("admin"),
            )
        )).scalars().all()
        assert set(rows) == {"venue_based"}

    # ===================================================================
    # Test 168: Coverage manager bulk-adds within their venues only
    # ===================================================================
    async def test_168_bulk_add_by_role_scoped(self, db, world):
        chan = await make_channel(db, world, "bar", ["north"], members={"staff_north": CREATOR})
        mgr = world.actor("mgr_north")

        r = await cs.bulk_add_members(
            db, mgr, chan.id, selection_type="by_role", roles=["STAFF"]
        )
        assert r.success, r.error
        assert r.data == {"added": 1, "skipped": 1}

        r = await cs.bulk_add_members(
            db, mgr, chan.id, selection_type="by_user", user_ids=[world.uid("staff_south")]
        )
        assert r.error == "No users match the selection"
        assert (await cs.can_manage_channel(db, mgr, chan.id)).allowed

        r = await cs.bulk_add_members(db, mgr, chan.id, selection_type="all")
        assert r.kind == ErrorKind.VALIDATION


class TestUserVenueGrants:

    # ===================================================================
    # Test 169: Grants listed per venue with the granting user
    # ===================================================================
    async def test_169_grants_across_venues(self, db, world):
        admin, uid = world.actor("admin"), world.uid("staff_both")
        p = world.permissions
        await vp.bulk_update_user_venue_permissions(db, admin, uid, world.vid("north"), [p["posts:manage"]])
        await vp.bulk_update_user_venue_permissions(db, admin, uid, world.vid("south"), [p["rosters:edit_team"]])

        r = await vp.list_user_venue_permissions(db, admin, uid)
        assert r.success, r.error
        assert r.data["total"] == 2
        venues = r.data["venues"]
        assert [v["venue_name"] for v in venues] == ["North Bar", "South Kitchen"]
        assert [g["key"] for g in venues[0]["permissions"]] == ["posts:manage"]
        assert [g["key"] for g in venues[1]["permissions"]] == ["rosters:edit_team"]
        assert venues[0]["permissions"][0]["granted_by"]["display_name"] == "Admin"

    # ===================================================================
    # Test 170: Viewers see only the venues they may inspect
    # ===================================================================
    async def test_170_grants_view_scope(self, db, world):
        uid = world.uid("staff_both")
        r = await vp.list_user_venue_permissions(db, world.actor("mgr_north"), uid)
        assert [v["venue_id"] for v in r.data["venues"]] == [str(world.vid("north"))]

        r = await vp.list_user_venue_permissions(db, world.actor("staff_both"), uid)
        assert len(r.data["venues"]) == 2

        r = await vp.list_user_venue_permissions(
            db, world.actor("mgr_north"), world.uid("staff_south")
        )
        assert r.kind == ErrorKind.PERMISSION_DENIED
        r = await vp.list_user_venue_permissions(
            db, world.actor("mgr_north"), uid, world.vid("south")
        )
        assert r.error == vp.DENIED_MESSAGE

    # ===================================================================
    # Test 171: Bulk grant to listed users skips existing grants
    # ===================================================================
    async def test_171_bulk_grant_to_users(self, db, world):
        admin, vid = world.actor("admin"), world.vid("north")
        users = [world.uid("staff_north"), world.uid("staff_both")]
        perms = [world.permissions["posts:manage"]]

        r = await vp.bulk_grant_permissions_to_users(db, admin, users, vid, perms)
        assert r.data == {"user_count": 2, "granted": 2}
        r = await vp.bulk_grant_permissions_to_users(db, admin, users, vid, perms)
        assert r.data == {"user_count": 2, "granted": 0}
        assert await vp.load_venue_permission_keys(db, users[1], vid) == frozenset({"posts:manage"})

    # ===================================================================
    # Test 172: Bulk grant validation
    # ===================================================================
    async def test_172_bulk_grant_validation(self, db, world):
        admin, vid = world.actor("admin"), world.vid("north")
        perms = [world.permissions["posts:manage"]]

        r = await vp.bulk_grant_permissions_to_users(
            db, world.actor("mgr_north"), [world.uid("staff_north")], vid, perms
        )
        assert r.error == vp.DENIED_MESSAGE
        r = await vp.bulk_grant_permissions_to_users(db, admin, [], vid, perms)
        assert r.error == "No users specified"
        r = await vp.bulk_grant_permissions_to_users(
            db, admin, [world.uid("staff_south")], vid, perms
        )
        assert r.error == "One or more users are not assigned to this venue"
        r = await vp.bulk_grant_permissions_to_users(
            db, admin, [world.uid("gone_north")], vid, perms
        )
        assert r.error == "One or more users not found or inactive"
        r = await vp.bulk_grant_permissions_to_users(
            db, admin, [world.uid("staff_closed")], world.vid("closed"), perms
        )
        assert r.error == "Cannot grant permissions for inactive venue"


class TestTeamEndpoints:

    # ===================================================================
    # Test 173: Review and cancel over HTTP
    # ===================================================================
    async def test_173_time_off_endpoints(self, client, db, world, headers):
        request_id = await _time_off(db, world, "staff_north")
        r = await client.post(
            f"/api/directory/time-off/{request_id}/review",
            json={"status": "APPROVED"},
            headers=headers("mgr_north"),
        )
        assert r.status_code == 200, r.text
        assert r.json()["status"] == "APPROVED"

        r = await client.post(
            f"/api/directory/time-off/{request_id}/cancel", headers=headers("staff_north")
        )
        assert r.status_code == 422
        assert r.json() == {"success": False, "error": "You can only cancel pending requests"}

    # ===================================================================
    # Test 174: Participants and unread counts over HTTP
    # ===================================================================
    async def test_174_messaging_endpoints(self, client, db, world, headers):
        conversation_id = await _group(db, world, "staff_north", "staff_both")
        r = await client.post(
            f"/api/messaging/conversations/{conversation_id}/participants",
            json={"user_ids": [str(world.uid("staff_south"))]},
            headers=headers("staff_north"),
        )
        assert r.status_code == 403

        r = await client.get("/api/messaging/unread", headers=headers("staff_both"))
        assert r.status_code == 200
        assert r.json()["total"] == 0

        r = await client.post(
            f"/api/messaging/conversations/{conversation_id}/leave",
            headers=headers("staff_both"),
        )
        assert r.status_code == 200

    # ===================================================================
    # Test 175: Candidate listing and bulk add over HTTP
    # ===================================================================
    async def test_175_channel_endpoints(self, client, db, world, headers):
        chan = await make_channel(db, world, "bar", ["north"], members={"staff_north": CREATOR})
        r = await client.get(
            f"/api/channels/{chan.id}/candidates",
            params={"selection_type": "by_role", "roles": "STAFF"},
            headers=headers("mgr_north"),
        )
        assert r.status_code == 200, r.text
        assert _ids(r.json()["items"]) == {
            str(world.uid("staff_north")), str(world.uid("staff_both")),
        }

        r = await client.post(
            f"/api/channels/{chan.id}/members/bulk",
            json={"selection_type": "by_role", "roles": ["STAFF"]},
            headers=headers("mgr_north"),
        )
        assert r.status_code == 200, r.text
        assert r.json()["added"] == 1

    # ===================================================================
    # Test 176: Per-user grants and bulk grant over HTTP
    # ===================================================================
    async def test_176_venue_permission_endpoints(self, client, world, headers):
        vid = world.vid("north")
        r = await client.post(
            f"/api/venue-permissions/venues/{vid}/by-users",
            json={
                "user_ids": [str(world.uid("staff_north"))],
                "permission_ids": [str(world.permissions["rosters:edit_team"])],
            },
            headers=headers("admin"),
        )
        assert r.status_code == 200, r.text
        assert r.json()["granted"] == 1

        r = await client.get(
            f"/api/venue-permissions/users/{world.uid('staff_north')}/grants",
            headers=headers("mgr_north"),
        )
        assert r.status_code == 200, r.text
        keys = [g["key"] for v in r.json()["venues"] for g in v["permissions"]]
        assert keys == ["rosters:edit_team"]
