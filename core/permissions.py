# core/permissions.py

import json
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from core.logging_config import logger
from models.admin import Permission
from models.enums import PermissionScope


# ============================================
# CENTRALIZED ROLE → PERMISSIONS MAP
# "resource:action" grants are society-scoped unless suffixed "@global".
# ============================================
ROLE_PERMISSIONS: Dict[str, List[str]] = {

    # =====================================================
    # SUPER ADMIN: Full access to everything
    # =====================================================
    "super_admin": ["*:*@global"],

    # =====================================================
    # COMMUNITY MANAGER: runs day-to-day society operations
    # =====================================================
    "community_manager": [
        "residents:create", "residents:read",
        "residents:update", "residents:delete",
        "billing:create", "billing:read", "billing:update",
        "maintenance:approve",
        "emergency:declare",
    ],

    # =====================================================
    # FINANCIAL MANAGER
    # =====================================================
    "financial_manager": [
        "billing:create", "billing:read",
        "billing:update", "billing:generate",
    ],

    # =====================================================
    # SECURITY ADMIN: gate / visitor management
    # =====================================================
    "security_admin": [
        "visitors:create", "visitors:read",
        "visitors:approve", "visitors:bulk_actions",
    ],

    # =====================================================
    # MAINTENANCE ADMIN
    # =====================================================
    "maintenance_admin": [
        "maintenance:create", "maintenance:read",
        "maintenance:update", "maintenance:assign",
    ],
}

PolicyTable = Dict[str, Tuple[Permission, ...]]
RawGrant = Union[str, Dict[str, Any]]


def parse_permission(raw: RawGrant) -> Permission:
    """
    Accepts either "resource:action[@scope]" or
    {"resource": ..., "action": ..., "scope": ...}.
    """
    if isinstance(raw, dict):
        return Permission(**raw)

    text = (raw or "").strip()
    scope = PermissionScope.society
    if "@" in text:
        text, scope_raw = text.rsplit("@", 1)
        scope = PermissionScope(scope_raw.strip())

    resource, sep, action = text.partition(":")
    if not sep or not resource or not action:
        raise ValueError(f"Malformed permission grant: {raw!r}")
    return Permission(resource=resource.strip(), action=action.strip(), scope=scope)


def build_policy_table(raw_table: Dict[str, Iterable[RawGrant]]) -> PolicyTable:
    table: PolicyTable = {}
    for role, grants in raw_table.items():
        table[role] = tuple(parse_permission(g) for g in grants)
    return table


def load_policy_table(path: Optional[str] = None) -> PolicyTable:
    """
    Load the role → permission table from a JSON file, or fall back to
    ROLE_PERMISSIONS when no path is configured.
    """
    if not path:
        return build_policy_table(ROLE_PERMISSIONS)

    with open(path, "r", encoding="utf-8") as f:
        raw = json.load(f)

    if not isinstance(raw, dict):
        raise ValueError(f"Policy file {path} must contain a JSON object")

    table = build_policy_table(raw)
    logger.info(f"Loaded admin policy for {len(table)} roles from {path}")
    return table


def permissions_for_role(table: PolicyTable, role: str) -> Tuple[Permission, ...]:
    # Unknown roles get no grants
    return table.get(str(role), ())
