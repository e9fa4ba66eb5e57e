# services/escalation.py

from typing import Dict, List, Tuple

from models.enums import AdminRole

# Chains end at super_admin; super_admin itself has nobody to escalate to.
ESCALATION_PATHS: Dict[AdminRole, Tuple[AdminRole, ...]] = {
    AdminRole.financial_manager: (AdminRole.community_manager, AdminRole.super_admin),
    AdminRole.security_admin: (AdminRole.community_manager, AdminRole.super_admin),
    AdminRole.maintenance_admin: (AdminRole.community_manager, AdminRole.super_admin),
    AdminRole.community_manager: (AdminRole.super_admin,),
    AdminRole.super_admin: (),
}


class EscalationResolver:
    """Who to notify when a role cannot resolve an issue within its own scope."""

    def __init__(self, paths: Dict[AdminRole, Tuple[AdminRole, ...]] = ESCALATION_PATHS):
        self._paths = paths

    def path_for(self, role: AdminRole) -> List[AdminRole]:
        return list(self._paths.get(AdminRole(role), ()))
