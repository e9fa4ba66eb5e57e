from enum import Enum


class BaseStrEnum(str, Enum):
    """
    Base enum that serializes cleanly to a string
    and provides a .list() method for UI dropdowns.
    """

    def __str__(self):
        return str(self.value)

    @classmethod
    def list(cls):
        return [item.value for item in cls]


# -----------------------------------------------------
# ADMIN ROLE
# -----------------------------------------------------
class AdminRole(BaseStrEnum):
    """Closed set of admin roles. Residents hold none of these."""

    super_admin = "super_admin"
    community_manager = "community_manager"
    financial_manager = "financial_manager"
    security_admin = "security_admin"
    maintenance_admin = "maintenance_admin"


# -----------------------------------------------------
# APP MODE
# -----------------------------------------------------
class AppMode(BaseStrEnum):
    resident = "resident"
    admin = "admin"


# -----------------------------------------------------
# SESSION STATE
# -----------------------------------------------------
class SessionState(BaseStrEnum):
    """States of the session manager; switching_tenant is a sub-state of admin_active."""

    resident = "resident"
    admin_active = "admin_active"
    switching_tenant = "switching_tenant"


# -----------------------------------------------------
# PERMISSION SCOPE
# -----------------------------------------------------
class PermissionScope(BaseStrEnum):
    """global matches any active tenant; society only the session's active tenant."""

    global_ = "global"
    society = "society"


# -----------------------------------------------------
# TENANT (SOCIETY) STATUS
# -----------------------------------------------------
class TenantStatus(BaseStrEnum):
    active = "active"
    inactive = "inactive"
    suspended = "suspended"


# -----------------------------------------------------
# AUDIT EVENT TYPE
# -----------------------------------------------------
class AuditEventType(BaseStrEnum):
    mode_switched = "mode_switched"
    tenant_switched = "tenant_switched"
    permission_denied = "permission_denied"
    admin_logout = "admin_logout"
    tenant_access_revoked = "tenant_access_revoked"
