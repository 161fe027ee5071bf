from __future__ import annotations

from typing import Any, Dict, List

ROLES = ["admin", "tenantAdmin", "manager", "user", "guest"]

ROLE_PERMISSIONS: Dict[str, List[str]] = {
    "admin": [
        "read:all",
        "write:all",
        "manage:users",
        "manage:tenants",
        "manage:companies",
        "manage:subscriptions",
        "manage:plans",
        "manage:settings",
        "access:admin",
    ],
    "tenantAdmin": [
        "read:tenant",
        "write:tenant",
        "manage:tenant_users",
        "manage:tenant_settings",
        "access:tenant_admin",
    ],
    "manager": [
        "read:tenant",
        "create:leads",
        "update:leads",
        "read:leads",
        "create:customers",
        "update:customers",
        "read:customers",
        "manage:assigned_users",
    ],
    "user": [
        "read:tenant",
        "create:leads",
        "update:leads",
        "read:leads",
        "create:customers",
        "update:customers",
        "read:customers",
    ],
    "guest": [
        "read:tenant",
    ],
}

# Tenant-level settings that only admins may change.
SETTINGS_PERMISSIONS = {"manage:tenant_settings", "manage:settings"}


def normalize_role(raw_role: str | None) -> str:
    role = str(raw_role or "").strip()
    lowered = role.lower().replace("_", "").replace("-", "")
    if lowered in {"admin", "superadmin", "owner"}:
        return "admin"
    if lowered in {"tenantadmin"}:
        return "tenantAdmin"
    if lowered in {"manager", "lead"}:
        return "manager"
    if lowered in {"user", "member", "editor"}:
        return "user"
    return "guest"


def permissions_for(role: str) -> List[str]:
    return list(ROLE_PERMISSIONS.get(normalize_role(role), []))


def has_permission(role: str, permission: str) -> bool:
    granted = set(permissions_for(role))
    if "write:all" in granted:
        return True
    if permission in granted:
        return True
    action = permission.split(":", 1)[0]
    if "write:tenant" in granted and action in {"read", "create", "update", "delete", "manage"}:
        return permission not in {"manage:tenants", "manage:plans", "access:admin"}
    if action == "read" and ("read:all" in granted or "read:tenant" in granted):
        return True
    return False


def can_manage_all(role: str) -> bool:
    return normalize_role(role) in {"admin", "tenantAdmin", "manager"}


def can_manage_settings(role: str) -> bool:
    return any(has_permission(role, perm) for perm in SETTINGS_PERMISSIONS)


def can_delete_records(role: str) -> bool:
    return normalize_role(role) in {"admin", "tenantAdmin"}


def can_write_entity(role: str, entity_type: str) -> bool:
    resource = f"{entity_type}s" if not entity_type.endswith("s") else entity_type
    return has_permission(role, f"update:{resource}") or has_permission(role, f"create:{resource}")


def can_view_record(role: str, actor_user_id: str | None, record: Dict[str, Any]) -> bool:
    """Managers and admins see every record; other roles see unassigned or their own."""
    if can_manage_all(role):
        return True
    assigned = str(record.get("assignedTo") or "").strip()
    if not assigned:
        return True
    return bool(actor_user_id) and assigned == str(actor_user_id)
