"""
Tests 31-52: Venue permission overrides

Effective permissions are role grants plus venue grants.  Only admins, and
managers for STAFF at their own venues, may change a user's venue grants;
nobody may change their own.
"""
import uuid

from sqlalchemy import func, select, update

from staffhub.errors import ErrorKind
from staffhub.models import AuditLog, Venue, VenuePermission
from staffhub.rbac import RolePermissionTable
from staffhub.services import venue_permissions as vp
from staffhub.services.venue_permissions import DENIED_MESSAGE


async def _grant_count(db, user_id, venue_id) -> int:
    result = await db.execute(
        select(func.count(VenuePermission.id)).where(
            VenuePermission.user_id == user_id,
            VenuePermission.venue_id == venue_id,
        )
    )
    return result.scalar_one()


class TestEffectivePermissions:

    # ===================================================================
    # Test 31: Effective = role ∪ venue
    # ===================================================================
    async def test_31_effective_is_union(self, db, world):
        """A venue grant adds to, never replaces, the role grants."""
        perm = world.permissions["posts:manage"]
        r = await vp.bulk_update_user_venue_permissions(
            db, world.actor("admin"), world.uid("staff_north"), world.vid("north"), [perm]
        )
        assert r.success, r.error

        r = await vp.get_effective_permissions(
            db, world.actor("admin"), world.uid("staff_north"), world.vid("north")
        )
        assert r.success
        data = r.data
        assert "posts:manage" in data["venue_permissions"]
        assert "posts:create" in data["role_permissions"]
        assert set(data["effective_permissions"]) == (
            set(data["role_permissions"]) | set(data["venue_permissions"])
        )
        assert data["is_read_only"] is False

    # ===================================================================
    # Test 32: A user may view their own permissions, read-only
    # ===================================================================
    async def test_32_self_view_is_read_only(self, db, world):
        """Self inspection always succeeds and is always read-only."""
        for name in ("staff_north", "mgr_north", "admin"):
            r = await vp.get_effective_permissions(
                db, world.actor(name), world.uid(name), world.vid("north")
            )
            assert r.success, (name, r.error)
            assert r.data["is_read_only"] is True

    # ===================================================================
    # Test 33: Venue grants at one venue do not leak into another
    # ===================================================================
    async def test_33_grants_are_per_venue(self, db, world):
        """staff_both's north grant is absent at south."""
        perm = world.permissions["rosters:edit_team"]
        await vp.bulk_update_user_venue_permissions(
            db, world.actor("admin"), world.uid("staff_both"), world.vid("north"), [perm]
        )
        actor = world.actor("staff_both")
        assert await vp.has_venue_permission(db, actor, "rosters", "edit_team", world.vid("north"))
        assert not await vp.has_venue_permission(db, actor, "rosters", "edit_team", world.vid("south"))

    # ===================================================================
    # Test 34: Grants at a deactivated venue stop counting
    # ===================================================================
    async def test_34_inactive_venue_grants_ignored(self, db, world):
        """Deactivating the venue silences its grants without deleting them."""
        perm = world.permissions["posts:manage"]
        await vp.bulk_update_user_venue_permissions(
            db, world.actor("admin"), world.uid("staff_south"), world.vid("south"), [perm]
        )
        await db.execute(update(Venue).where(Venue.code == "south").values(is_active=False))
        await db.commit()

        keys = await vp.load_venue_permission_keys(db, world.uid("staff_south"), world.vid("south"))
        assert keys == frozenset()
        assert await _grant_count(db, world.uid("staff_south"), world.vid("south")) == 1


class TestManageRules:

    # ===================================================================
    # Test 35: Admin may edit anyone else
    # ===================================================================
    async def test_35_admin_edits_others(self, db, world):
        admin = world.actor("admin")
        assert await vp.can_manage_venue_permissions(
            db, admin, world.uid("mgr_south"), world.vid("south"), write=True
        )

    # ===================================================================
    # Test 36: Nobody edits their own permissions
    # ===================================================================
    async def test_36_no_self_edit(self, db, world):
        """Admins included: self-escalation is refused."""
        for name in ("admin", "mgr_north", "staff_north"):
            r = await vp.bulk_update_user_venue_permissions(
                db, world.actor(name), world.uid(name), world.vid("north"),
                [world.permissions["posts:manage"]],
            )
            assert not r.success
            assert r.kind == ErrorKind.PERMISSION_DENIED
            assert r.error == DENIED_MESSAGE
        assert await _grant_count(db, world.uid("admin"), world.vid("north")) == 0

    # ===================================================================
    # Test 37: Manager manages STAFF at a shared venue
    # ===================================================================
    async def test_37_manager_manages_local_staff(self, db, world):
        r = await vp.bulk_update_user_venue_permissions(
            db, world.actor("mgr_north"), world.uid("staff_north"), world.vid("north"),
            [world.permissions["posts:manage"]],
        )
        assert r.success, r.error
        assert r.data == {"granted": 1, "revoked": 0, "total": 1}

    # ===================================================================
    # Test 38: Manager cannot manage another manager or an admin
    # ===================================================================
    async def test_38_manager_cannot_manage_peers(self, db, world):
        """Only STAFF targets are manageable by a manager."""
        mgr = world.actor("mgr_north")
        assert not await vp.can_manage_venue_permissions(
            db, mgr, world.uid("admin"), world.vid("north"), write=True
        )
        r = await vp.get_effective_permissions(
            db, mgr, world.uid("admin"), world.vid("north")
        )
        assert r.kind == ErrorKind.PERMISSION_DENIED

    # ===================================================================
    # Test 39: Manager cannot reach staff at a venue they don't belong to
    # ===================================================================
    async def test_39_manager_other_venue(self, db, world):
        """mgr_north cannot manage staff_both's south grants."""
        r = await vp.bulk_update_user_venue_permissions(
            db, world.actor("mgr_north"), world.uid("staff_both"), world.vid("south"),
            [world.permissions["posts:manage"]],
        )
        assert not r.success
        assert r.error == DENIED_MESSAGE

    # ===================================================================
    # Test 40: Target must belong to the venue too
    # ===================================================================
    async def test_40_target_outside_venue(self, db, world):
        """mgr_south cannot grant staff_north anything at south."""
        assert not await vp.can_manage_venue_permissions(
            db, world.actor("mgr_south"), world.uid("staff_north"), world.vid("south"), write=True
        )

    # ===================================================================
    # Test 41: Staff cannot manage anyone
    # ===================================================================
    async def test_41_staff_denied(self, db, world):
        r = await vp.get_effective_permissions(
            db, world.actor("staff_north"), world.uid("staff_both"), world.vid("north")
        )
        assert not r.success
        assert r.kind == ErrorKind.PERMISSION_DENIED

    # ===================================================================
    # Test 42: Unknown target is indistinguishable from a forbidden one
    # ===================================================================
    async def test_42_uniform_denial_for_missing_target(self, db, world):
        """Non-admins learn nothing about whether a user exists."""
        r = await vp.get_effective_permissions(
            db, world.actor("mgr_north"), uuid.uuid4(), world.vid("north")
        )
        assert r.error == DENIED_MESSAGE

    # ===================================================================
    # Test 43: Injected role table drives the rule chain
    # ===================================================================
    async def test_43_injected_table(self, db, world):
        """Without users:edit_team a MANAGER is an ordinary user."""
        table = RolePermissionTable.from_mapping({"MANAGER": []})
        assert not await vp.can_manage_venue_permissions(
            db, world.actor("mgr_north"), world.uid("staff_north"), world.vid("north"),
            write=True, table=table,
        )


class TestBulkUpdate:

    # ===================================================================
    # Test 44: Bulk update replaces the whole set
    # ===================================================================
    async def test_44_replaces_set(self, db, world):
        admin, uid, vid = world.actor("admin"), world.uid("staff_north"), world.vid("north")
        p = world.permissions
        await vp.bulk_update_user_venue_permissions(
            db, admin, uid, vid, [p["posts:manage"], p["rosters:edit_team"]]
        )
        r = await vp.bulk_update_user_venue_permissions(
            db, admin, uid, vid, [p["rosters:edit_team"], p["timeoff:approve"]]
        )
        assert r.data == {"granted": 1, "revoked": 1, "total": 2}
        keys = await vp.load_venue_permission_keys(db, uid, vid)
        assert keys == frozenset({"rosters:edit_team", "timeoff:approve"})

    # ===================================================================
    # Test 45: Empty list clears everything
    # ===================================================================
    async def test_45_empty_clears(self, db, world):
        admin, uid, vid = world.actor("admin"), world.uid("staff_north"), world.vid("north")
        await vp.bulk_update_user_venue_permissions(
            db, admin, uid, vid, [world.permissions["posts:manage"]]
        )
        r = await vp.bulk_update_user_venue_permissions(db, admin, uid, vid, [])
        assert r.data == {"granted": 0, "revoked": 1, "total": 0}
        assert await _grant_count(db, uid, vid) == 0

    # ===================================================================
    # Test 46: Duplicates in the request collapse
    # ===================================================================
    async def test_46_duplicates_collapse(self, db, world):
        perm = world.permissions["posts:manage"]
        r = await vp.bulk_update_user_venue_permissions(
            db, world.actor("admin"), world.uid("staff_north"), world.vid("north"),
            [perm, perm, perm],
        )
        assert r.data["total"] == 1

    # ===================================================================
    # Test 47: Unknown permission leaves the old set intact
    # ===================================================================
    async def test_47_invalid_permission_is_all_or_nothing(self, db, world):
        admin, uid, vid = world.actor("admin"), world.uid("staff_north"), world.vid("north")
        await vp.bulk_update_user_venue_permissions(
            db, admin, uid, vid, [world.permissions["posts:manage"]]
        )
        r = await vp.bulk_update_user_venue_permissions(
            db, admin, uid, vid, [world.permissions["rosters:edit_team"], uuid.uuid4()]
        )
        assert not r.success
        assert r.kind == ErrorKind.VALIDATION
        assert r.error == "One or more permissions not found"
        keys = await vp.load_venue_permission_keys(db, uid, vid)
        assert keys == frozenset({"posts:manage"})

    # ===================================================================
    # Test 48: Inactive targets and venues are rejected
    # ===================================================================
    async def test_48_inactive_target_or_venue(self, db, world):
        admin = world.actor("admin")
        r = await vp.bulk_update_user_venue_permissions(
            db, admin, world.uid("gone_north"), world.vid("north"), []
        )
        assert r.error == "Cannot grant permissions to inactive user"
        r = await vp.bulk_update_user_venue_permissions(
            db, admin, world.uid("staff_closed"), world.vid("closed"), []
        )
        assert r.error == "Cannot grant permissions for inactive venue"

    # ===================================================================
    # Test 49: Bulk update writes one audit row
    # ===================================================================
    async def test_49_bulk_update_audited(self, db, world):
        await vp.bulk_update_user_venue_permissions(
            db, world.actor("admin"), world.uid("staff_north"), world.vid("north"),
            [world.permissions["posts:manage"]],
        )
        rows = (await db.execute(
            select(AuditLog).where(AuditLog.action_type == "VENUE_PERMISSIONS_BULK_UPDATED")
        )).scalars().all()
        assert len(rows) == 1
        assert rows[0].new_value["count"] == 1
        assert rows[0].event_category == "mutation"


class TestSingleGrants:

    # ===================================================================
    # Test 50: Grant then revoke a single permission
    # ===================================================================
    async def test_50_grant_and_revoke(self, db, world):
        admin, uid, vid = world.actor("admin"), world.uid("staff_both"), world.vid("south")
        perm = world.permissions["timeoff:approve"]

        r = await vp.grant_venue_permission(db, admin, uid, vid, perm)
        assert r.success and r.data["permission"] == "timeoff:approve"

        r = await vp.grant_venue_permission(db, admin, uid, vid, perm)
        assert r.error == "Permission already granted"

        r = await vp.revoke_venue_permission(db, admin, uid, vid, perm)
        assert r.success
        r = await vp.revoke_venue_permission(db, admin, uid, vid, perm)
        assert r.error == "Permission not found or already revoked"

    # ===================================================================
    # Test 51: Grant by role reaches every active member with that role
    # ===================================================================
    async def test_51_grant_by_role(self, db, world):
        """Only admins; active STAFF at north get the grant."""
        perm = world.permissions["posts:manage"]
        r = await vp.bulk_grant_permissions_by_role(
            db, world.actor("mgr_north"), "STAFF", world.vid("north"), [perm]
        )
        assert r.kind == ErrorKind.PERMISSION_DENIED

        r = await vp.bulk_grant_permissions_by_role(
            db, world.actor("admin"), "STAFF", world.vid("north"), [perm]
        )
        assert r.success
        assert r.data == {"users_affected": 2, "granted": 2}

        r = await vp.bulk_grant_permissions_by_role(
            db, world.actor("admin"), "ADMIN", world.vid("north"), [perm]
        )
        assert r.kind == ErrorKind.VALIDATION

    # ===================================================================
    # Test 52: Catalog and counts
    # ===================================================================
    async def test_52_catalog_and_count(self, db, world):
        r = await vp.list_available_permissions(db)
        assert {a["action"] for a in r.data["resources"]["posts"]} >= {"manage", "create"}

        await vp.bulk_update_user_venue_permissions(
            db, world.actor("admin"), world.uid("staff_south"), world.vid("south"),
            [world.permissions["posts:manage"]],
        )
        north = await vp.count_venue_permission_assignments(db, world.actor("mgr_north"))
        south = await vp.count_venue_permission_assignments(db, world.actor("mgr_south"))
        everyone = await vp.count_venue_permission_assignments(db, world.actor("admin"))
        assert (north.data["total"], south.data["total"], everyone.data["total"]) == (0, 1, 1)

        users = await vp.list_venue_permission_users(db, world.actor("mgr_south"), world.vid("south"))
        assert [u["permissions"] for u in users.data["items"]] == [["posts:manage"]]
