# -------------------------
# Enums
# -------------------------
from .enums import (
    BaseStrEnum,
    AdminRole,
    AppMode,
    SessionState,
    PermissionScope,
    TenantStatus,
    AuditEventType,
)

# -------------------------
# Admin / Session Models
# -------------------------
from .admin import (
    Permission,
    TenantAccess,
    AdminUser,
    Tenant,
    DeviceInfo,
    Session,
    SwitchRecord,
    SessionChange,
)

# -------------------------
# Audit Models
# -------------------------
from .audit import AuditEntry
