# models/admin.py

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from .enums import AdminRole, AppMode, PermissionScope, TenantStatus


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ===============================================================
# PERMISSIONS
# ===============================================================
class Permission(BaseModel):
    """
    A single (resource, action, scope) grant.
    "*" in resource or action matches any value.
    """
    model_config = ConfigDict(frozen=True)

    resource: str
    action: str
    scope: PermissionScope = PermissionScope.society
    id: Optional[str] = None


# ===============================================================
# TENANT ACCESS / ADMIN USER
# ===============================================================
class TenantAccess(BaseModel):
    """Grant of one role to one user within one tenant (society)."""

    tenant_id: str
    role: AdminRole
    assigned_by: Optional[str] = None
    assigned_at: datetime = Field(default_factory=utcnow)
    is_active: bool = True
    tenant_name: Optional[str] = None


class AdminUser(BaseModel):
    id: str
    role: AdminRole                 # primary role
    tenant_access: List[TenantAccess] = []
    is_active: bool = True

    name: Optional[str] = None
    email: Optional[str] = None
    phone_number: Optional[str] = None

    def active_access(self) -> List[TenantAccess]:
        if not self.is_active:
            return []
        return [a for a in self.tenant_access if a.is_active]

    def access_for(self, tenant_id: str) -> Optional[TenantAccess]:
        """Active grant for tenant_id, if any."""
        for access in self.active_access():
            if access.tenant_id == tenant_id:
                return access
        return None

    def role_for(self, tenant_id: Optional[str]) -> AdminRole:
        """
        Effective role inside a tenant. A primary super_admin stays
        super_admin everywhere; otherwise the tenant grant's role wins.
        """
        if self.role == AdminRole.super_admin or not tenant_id:
            return self.role
        access = self.access_for(tenant_id)
        return access.role if access else self.role

    def with_access_revoked(self, tenant_id: str) -> "AdminUser":
        access = [
            a.model_copy(update={"is_active": False}) if a.tenant_id == tenant_id else a
            for a in self.tenant_access
        ]
        return self.model_copy(update={"tenant_access": access})

    def deactivated(self) -> "AdminUser":
        return self.model_copy(update={"is_active": False})


# ===============================================================
# TENANT (SOCIETY)
# ===============================================================
class Tenant(BaseModel):
    id: str
    name: str
    code: Optional[str] = None
    status: TenantStatus = TenantStatus.active
    settings: Dict[str, Any] = {}

    @property
    def is_active(self) -> bool:
        return self.status == TenantStatus.active


# ===============================================================
# SESSION
# ===============================================================
class DeviceInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    platform: str = "unknown"
    version: str = ""
    app_version: str = ""
    model: Optional[str] = None


class Session(BaseModel):
    """
    Immutable snapshot of the admin session. Every change produces a new
    instance, so readers holding a reference never see a torn update.
    """
    model_config = ConfigDict(frozen=True)

    session_id: str
    user_id: str
    mode: AppMode = AppMode.admin
    active_tenant_id: Optional[str] = None
    role: AdminRole
    permissions: Tuple[Permission, ...] = ()
    start_time: datetime = Field(default_factory=utcnow)
    last_activity: datetime = Field(default_factory=utcnow)
    device: Optional[DeviceInfo] = None
    ip_address: Optional[str] = None

    def touched(self, **changes: Any) -> "Session":
        changes.setdefault("last_activity", utcnow())
        return self.model_copy(update=changes)


class SwitchRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    from_tenant_id: Optional[str] = None
    to_tenant_id: str
    timestamp: datetime = Field(default_factory=utcnow)


class SessionChange(BaseModel):
    """Payload handed to session observers after a committed transition."""
    model_config = ConfigDict(frozen=True)

    event: str
    mode: AppMode
    active_tenant_id: Optional[str] = None
    session: Optional[Session] = None
