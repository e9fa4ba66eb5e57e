# services/supabase_adapters.py

"""
Supabase-backed collaborators for the admin session layer, and the factory
that wires a SessionManager over them.
"""

from typing import Any, Dict, List, Optional, Sequence

from supabase import Client

from core.cache import TenantDataCache
from core.config import settings
from core.errors import FetchError, extract_supabase_error
from core.logging_config import get_logger
from core.storage import SupabaseKeyValueStore
from models.admin import AdminUser, DeviceInfo, Tenant, TenantAccess
from models.enums import AdminRole, TenantStatus
from services.audit_log import AuditLog, SupabaseAuditSink
from services.escalation import EscalationResolver
from services.permission_engine import PermissionEngine
from services.session_manager import SessionManager
from services.tenant_registry import TenantRegistry

logger = get_logger("supabase")


# -----------------------------------------------------
# Admin directory
# -----------------------------------------------------
class SupabaseAdminDirectory:
    """
    admin_users            (id, role, is_active, name, email, phone_number)
    admin_society_access   (admin_user_id, society_id, role, assigned_by,
                            assigned_at, is_active, society_name)
    """

    def __init__(self, client: Client):
        self._client = client

    def resolve_admin_user(self, user_id: str) -> Optional[AdminUser]:
        try:
            user_res = (
                self._client.table(settings.ADMIN_USERS_TABLE)
                .select("*")
                .eq("id", user_id)
                .limit(1)
                .execute()
            )
        except Exception as e:
            raise FetchError(f"Admin lookup failed: {extract_supabase_error(e)}")

        rows = user_res.data or []
        if not rows:
            return None
        row = rows[0]

        try:
            access_res = (
                self._client.table(settings.ADMIN_ACCESS_TABLE)
                .select("*")
                .eq("admin_user_id", user_id)
                .execute()
            )
        except Exception as e:
            raise FetchError(f"Society access lookup failed: {extract_supabase_error(e)}")

        access: List[TenantAccess] = []
        for a in access_res.data or []:
            try:
                fields = {
                    "tenant_id": a["society_id"],
                    "role": AdminRole(a["role"]),
                    "assigned_by": a.get("assigned_by"),
                    "is_active": a.get("is_active", True),
                    "tenant_name": a.get("society_name"),
                }
                if a.get("assigned_at"):
                    fields["assigned_at"] = a["assigned_at"]
                access.append(TenantAccess(**fields))
            except (KeyError, ValueError) as e:
                logger.warning(f"Skipping malformed society grant for {user_id}: {e}")

        try:
            role = AdminRole(row.get("role"))
        except ValueError:
            logger.warning(f"User {user_id} has unknown admin role {row.get('role')!r}")
            return None

        return AdminUser(
            id=row["id"],
            role=role,
            tenant_access=access,
            is_active=row.get("is_active", True),
            name=row.get("name"),
            email=row.get("email"),
            phone_number=row.get("phone_number"),
        )


# -----------------------------------------------------
# Tenant metadata
# -----------------------------------------------------
class SupabaseTenantMetadataService:
    def __init__(self, client: Client):
        self._client = client

    def fetch_tenants(self, tenant_ids: Sequence[str]) -> List[Tenant]:
        if not tenant_ids:
            return []
        try:
            res = (
                self._client.table(settings.SOCIETIES_TABLE)
                .select("*")
                .in_("id", list(tenant_ids))
                .execute()
            )
        except Exception as e:
            raise FetchError(f"Society metadata fetch failed: {extract_supabase_error(e)}")

        tenants = []
        for row in res.data or []:
            status = row.get("status") or TenantStatus.active.value
            if status not in TenantStatus.list():
                status = TenantStatus.inactive.value
            tenants.append(
                Tenant(
                    id=row["id"],
                    name=row.get("name") or row["id"],
                    code=row.get("code"),
                    status=status,
                    settings=row.get("settings") or {},
                )
            )
        return tenants


# -----------------------------------------------------
# Tenant data
# -----------------------------------------------------
class SupabaseTenantDataService:
    """Reads the per-society overview row the admin dashboard works from."""

    def __init__(self, client: Client):
        self._client = client

    def fetch_tenant_data(self, tenant_id: str) -> Dict[str, Any]:
        try:
            res = (
                self._client.table(settings.SOCIETY_OVERVIEW_TABLE)
                .select("*")
                .eq("society_id", tenant_id)
                .limit(1)
                .execute()
            )
        except Exception as e:
            raise FetchError(
                f"Society data fetch failed: {extract_supabase_error(e)}",
                tenant_id=tenant_id,
            )

        rows = res.data or []
        return rows[0] if rows else {}


# -----------------------------------------------------
# Factory
# -----------------------------------------------------
def build_session_manager(
    client: Client,
    engine: Optional[PermissionEngine] = None,
    device: Optional[DeviceInfo] = None,
    ip_address: Optional[str] = None,
) -> SessionManager:
    store = SupabaseKeyValueStore(client)
    return SessionManager(
        directory=SupabaseAdminDirectory(client),
        registry=TenantRegistry(SupabaseTenantMetadataService(client)),
        cache=TenantDataCache(SupabaseTenantDataService(client), store),
        audit_log=AuditLog(SupabaseAuditSink(client)),
        store=store,
        engine=engine,
        escalation=EscalationResolver(),
        device=device,
        ip_address=ip_address,
    )
