"""Role to permission mapping.

Each role grants its own permissions plus everything granted to the roles
below it, so ``guest <= user <= moderator <= admin <= super_admin`` holds as a
set relation.
"""

from __future__ import annotations

from enum import Enum
from typing import Iterable

from .account import Role


class Permission(str, Enum):
    # accounts
    read_users = "read_users"
    create_users = "create_users"
    update_users = "update_users"
    delete_users = "delete_users"
    manage_user_roles = "manage_user_roles"
    suspend_users = "suspend_users"
    unlock_users = "unlock_users"

    # profiles
    read_own_profile = "read_own_profile"
    update_own_profile = "update_own_profile"
    read_profiles = "read_profiles"
    update_profiles = "update_profiles"
    delete_profiles = "delete_profiles"

    # credentials
    change_password = "change_password"
    revoke_token = "revoke_token"

    # content
    read_content = "read_content"
    search_content = "search_content"
    flag_content = "flag_content"
    moderate_content = "moderate_content"
    approve_content = "approve_content"
    reject_content = "reject_content"

    # notifications
    read_notifications = "read_notifications"
    send_notifications = "send_notifications"
    manage_notifications = "manage_notifications"

    # administration
    view_audit_logs = "view_audit_logs"
    view_analytics = "view_analytics"
    export_data = "export_data"
    manage_tenants = "manage_tenants"
    manage_api_keys = "manage_api_keys"
    manage_billing = "manage_billing"
    manage_system_settings = "manage_system_settings"


_ROLE_GRANTS: dict[Role, frozenset[Permission]] = {
    Role.guest: frozenset(
        {
            Permission.read_content,
            Permission.search_content,
        }
    ),
    Role.user: frozenset(
        {
            Permission.read_own_profile,
            Permission.update_own_profile,
            Permission.change_password,
            Permission.revoke_token,
            Permission.flag_content,
            Permission.read_notifications,
        }
    ),
    Role.moderator: frozenset(
        {
            Permission.read_users,
            Permission.read_profiles,
            Permission.update_profiles,
            Permission.moderate_content,
            Permission.approve_content,
            Permission.reject_content,
            Permission.view_audit_logs,
        }
    ),
    Role.admin: frozenset(
        {
            Permission.create_users,
            Permission.update_users,
            Permission.delete_users,
            Permission.manage_user_roles,
            Permission.suspend_users,
            Permission.unlock_users,
            Permission.delete_profiles,
            Permission.send_notifications,
            Permission.manage_notifications,
            Permission.view_analytics,
            Permission.export_data,
            Permission.manage_tenants,
        }
    ),
    Role.super_admin: frozenset(
        {
            Permission.manage_api_keys,
            Permission.manage_billing,
            Permission.manage_system_settings,
        }
    ),
}


def _build_role_table() -> dict[Role, frozenset[Permission]]:
    table: dict[Role, frozenset[Permission]] = {}
    inherited: frozenset[Permission] = frozenset()
    for role in sorted(Role, key=lambda r: r.rank):
        inherited = inherited | _ROLE_GRANTS[role]
        table[role] = inherited
    return table


ROLE_PERMISSIONS = _build_role_table()


def permissions_for(role: Role | str) -> frozenset[Permission]:
    """Return the full permission set granted to ``role``."""
    return ROLE_PERMISSIONS[Role(role)]


def role_satisfies(role: Role | str, permission: Permission | str) -> bool:
    """Return ``True`` when ``role`` grants ``permission``; super admins satisfy every known permission."""
    role = Role(role)
    try:
        permission = Permission(permission)
    except ValueError:
        return False
    if role == Role.super_admin:
        return True
    return permission in ROLE_PERMISSIONS[role]


def role_satisfies_any(role: Role | str, permissions: Iterable[Permission | str]) -> bool:
    return any(role_satisfies(role, permission) for permission in permissions)


def role_satisfies_all(role: Role | str, permissions: Iterable[Permission | str]) -> bool:
    return all(role_satisfies(role, permission) for permission in permissions)
