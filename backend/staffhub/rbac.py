"""
RBAC Permission Registry for StaffHub

Defines the canonical resource/action enumeration and the role-to-permission
mapping. Role permissions are global and never edited at runtime; per-venue
grants layered on top of them live in the ``venue_permissions`` table.

Permission key format: {resource}:{action}
"""
from __future__ import annotations

import dataclasses
from collections.abc import Iterable, Mapping
from types import MappingProxyType

# ---------------------------------------------------------------------------
# Roles
# ---------------------------------------------------------------------------

ADMIN = "ADMIN"
MANAGER = "MANAGER"
STAFF = "STAFF"

# ---------------------------------------------------------------------------
# Canonical resource → actions enumeration
# ---------------------------------------------------------------------------

RESOURCE_ACTIONS: Mapping[str, tuple[str, ...]] = MappingProxyType({
    "availability": (
        "view_own", "edit_own", "view_team", "edit_team", "view_all", "edit_all",
    ),
    "timeoff": (
        "create", "view_own", "view_team", "approve", "reject", "cancel",
        "view_all", "edit_all",
    ),
    "posts": (
        "create", "view", "edit_own", "delete_own", "moderate", "edit_all",
        "delete_all", "manage",
    ),
    "messages": ("view", "send", "create", "delete_own", "view_all"),
    "channels": ("create", "edit", "archive", "delete", "moderate"),
    "users": ("view_team", "edit_team", "create", "view_all", "edit_all", "delete"),
    "rosters": ("view_own", "view_team", "edit_team", "publish"),
    "reports": ("view_team", "export_team", "view_ai", "view_all", "export_all"),
    "venues": ("view", "manage"),
    "admin": (
        "manage_users", "manage_roles", "manage_venues", "manage_permissions",
        "view_audit_logs", "manage_settings",
    ),
})


def permission_key(resource: str, action: str) -> str:
    """Return the ``resource:action`` key for a grant."""
    return f"{resource}:{action}"


def split_permission_key(key: str) -> tuple[str, str]:
    resource, _, action = key.partition(":")
    return resource, action


ALL_PERMISSIONS: list[str] = sorted(
    permission_key(resource, action)
    for resource, actions in RESOURCE_ACTIONS.items()
    for action in actions
)

_ACTION_LABELS: dict[str, str] = {
    "view": "View",
    "view_own": "View own",
    "view_team": "View team",
    "view_all": "View all",
    "edit": "Edit",
    "edit_own": "Edit own",
    "edit_team": "Edit team",
    "edit_all": "Edit all",
    "create": "Create",
    "send": "Send",
    "delete": "Delete",
    "delete_own": "Delete own",
    "delete_all": "Delete all",
    "approve": "Approve",
    "reject": "Reject",
    "cancel": "Cancel",
    "moderate": "Moderate",
    "manage": "Manage",
    "archive": "Archive",
    "publish": "Publish",
    "export_team": "Export team",
    "export_all": "Export all",
    "view_ai": "View AI insights for",
}


def permission_description(key: str) -> str:
    """Return a human-readable description for a permission key."""
    resource, action = split_permission_key(key)
    if resource == "admin":
        return action.replace("_", " ").capitalize()
    label = _ACTION_LABELS.get(action, action.replace("_", " ").capitalize())
    return f"{label} {resource}"


# ---------------------------------------------------------------------------
# Role → Permissions mapping (source of truth)
# ---------------------------------------------------------------------------

_MANAGER_PERMISSIONS: frozenset[str] = frozenset({
    "availability:view_own",
    "availability:edit_own",
    "availability:view_team",
    "availability:edit_team",
    "timeoff:create",
    "timeoff:view_own",
    "timeoff:view_team",
    "timeoff:approve",
    "posts:create",
    "posts:view",
    "posts:edit_own",
    "posts:delete_own",
    "posts:moderate",
    "messages:view",
    "messages:send",
    "messages:create",
    "messages:delete_own",
    "channels:create",
    "channels:edit",
    "channels:moderate",
    "users:view_team",
    "users:edit_team",
    "rosters:view_own",
    "rosters:view_team",
    "rosters:edit_team",
    "rosters:publish",
    "reports:view_team",
    "reports:export_team",
    "reports:view_ai",
    "venues:view",
})

_STAFF_PERMISSIONS: frozenset[str] = frozenset({
    "availability:view_own",
    "availability:edit_own",
    "timeoff:create",
    "timeoff:view_own",
    "posts:create",
    "posts:view",
    "posts:edit_own",
    "posts:delete_own",
    "messages:view",
    "messages:send",
    "messages:create",
    "messages:delete_own",
    "rosters:view_own",
    "venues:view",
})

ROLE_PERMISSIONS: Mapping[str, frozenset[str]] = MappingProxyType({
    # Admins hold every grant in the enumeration
    ADMIN: frozenset(ALL_PERMISSIONS),
    MANAGER: _MANAGER_PERMISSIONS,
    STAFF: _STAFF_PERMISSIONS,
})

VALID_ROLES: list[str] = sorted(ROLE_PERMISSIONS.keys())

# ---------------------------------------------------------------------------
# Roles whose data scope spans every venue
# ---------------------------------------------------------------------------

GLOBAL_SCOPE_ROLES: frozenset[str] = frozenset({ADMIN})


# ---------------------------------------------------------------------------
# Immutable role table (injected into evaluators)
# ---------------------------------------------------------------------------


@dataclasses.dataclass(frozen=True)
class RolePermissionTable:
    """Read-only role → grant mapping.

    Built once at import and passed to anything that evaluates role grants,
    so tests can inject an alternative table without touching module state.
    """

    grants: Mapping[str, frozenset[str]]

    @classmethod
    def from_mapping(
        cls, mapping: Mapping[str, Iterable[str]]
    ) -> RolePermissionTable:
        frozen = {role: frozenset(keys) for role, keys in mapping.items()}
        return cls(grants=MappingProxyType(frozen))

    def permissions_for(self, role: str) -> frozenset[str]:
        return self.grants.get(role, frozenset())

    def has(self, role: str, resource: str, action: str) -> bool:
        if action not in RESOURCE_ACTIONS.get(resource, ()):
            return False
        return permission_key(resource, action) in self.permissions_for(role)

    @property
    def roles(self) -> list[str]:
        return sorted(self.grants)


DEFAULT_ROLE_TABLE = RolePermissionTable.from_mapping(ROLE_PERMISSIONS)


def get_role_permissions(
    role: str, table: RolePermissionTable = DEFAULT_ROLE_TABLE
) -> frozenset[str]:
    """Return the permission keys for *role* (empty for unknown roles)."""
    return table.permissions_for(role)


def has_role_permission(
    role: str,
    resource: str,
    action: str,
    table: RolePermissionTable = DEFAULT_ROLE_TABLE,
) -> bool:
    """Pure lookup; anything outside the enumeration is simply not granted."""
    return table.has(role, resource, action)


def is_global_scope(role: str) -> bool:
    return role in GLOBAL_SCOPE_ROLES
