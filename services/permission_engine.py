# services/permission_engine.py

from typing import Iterable, Optional, Tuple

from core.permissions import PolicyTable, load_policy_table, permissions_for_role
from models.admin import Permission
from models.enums import AdminRole, PermissionScope

WILDCARD = "*"


def check(
    permissions: Iterable[Permission],
    resource: str,
    action: str,
    active_tenant_id: Optional[str],
    role: AdminRole,
) -> bool:
    """
    Pure allow/deny decision.

    - super_admin is allowed without looking at the grant list.
    - Otherwise the first grant whose resource, action and scope all match wins.
    - A society-scoped grant never matches without an active tenant id.
    """
    if role == AdminRole.super_admin:
        return True

    for permission in permissions:
        if permission.resource != WILDCARD and permission.resource != resource:
            continue
        if permission.action != WILDCARD and permission.action != action:
            continue
        if permission.scope == PermissionScope.global_ or active_tenant_id:
            return True
    return False


class PermissionEngine:
    """Resolves role grants from the policy table and evaluates them with check()."""

    def __init__(self, policy: Optional[PolicyTable] = None):
        self._policy = policy if policy is not None else load_policy_table()

    @classmethod
    def from_path(cls, path: Optional[str]) -> "PermissionEngine":
        return cls(load_policy_table(path))

    def permissions_for(self, role: AdminRole) -> Tuple[Permission, ...]:
        return permissions_for_role(self._policy, role)

    def check(
        self,
        permissions: Iterable[Permission],
        resource: str,
        action: str,
        active_tenant_id: Optional[str],
        role: AdminRole,
    ) -> bool:
        return check(permissions, resource, action, active_tenant_id, role)
