# services/tenant_registry.py

from threading import RLock
from typing import Iterable, List, Optional, Tuple

from core.errors import AccessDenied, FetchError
from core.logging_config import get_logger
from models.admin import AdminUser, Tenant
from services.interfaces import TenantMetadataService

logger = get_logger("tenants")


class TenantRegistry:
    """
    Tenants (societies) an admin user may access.

    The last successfully loaded list is kept so callers can keep working
    from last-known-good metadata when the metadata service is unreachable.
    """

    def __init__(self, metadata_service: TenantMetadataService):
        self._metadata = metadata_service
        self._lock = RLock()
        self._tenants: Tuple[Tenant, ...] = ()

    @property
    def available_tenants(self) -> List[Tenant]:
        with self._lock:
            return list(self._tenants)

    def get(self, tenant_id: str) -> Optional[Tenant]:
        with self._lock:
            for tenant in self._tenants:
                if tenant.id == tenant_id:
                    return tenant
            return None

    # -----------------------------------------------------
    # Loading
    # -----------------------------------------------------
    def load(self, user: AdminUser) -> List[Tenant]:
        """
        Fetch metadata for every active grant the user holds.
        Raises FetchError if the metadata service fails; the previous list
        stays in place.
        """
        tenant_ids = [a.tenant_id for a in user.active_access()]
        if not tenant_ids:
            with self._lock:
                self._tenants = ()
            return []

        try:
            fetched = self._metadata.fetch_tenants(tenant_ids)
        except FetchError:
            raise
        except Exception as e:
            logger.warning(f"Tenant metadata fetch failed for user {user.id}: {e}")
            raise FetchError(f"Tenant metadata unavailable: {e}") from e

        # Keep the grant order, drop anything the service returned that was not asked for
        by_id = {t.id: t for t in fetched}
        ordered = tuple(by_id[tid] for tid in tenant_ids if tid in by_id)

        missing = [tid for tid in tenant_ids if tid not in by_id]
        if missing:
            logger.warning(f"No metadata for granted tenants: {', '.join(missing)}")

        with self._lock:
            self._tenants = ordered
        return list(ordered)

    def refresh(self, user: AdminUser) -> List[Tenant]:
        """Reload, keeping the last-known list on failure."""
        try:
            return self.load(user)
        except FetchError as e:
            logger.warning(f"Tenant refresh failed, keeping last-known list: {e}")
            return self.available_tenants

    def reset(self) -> None:
        with self._lock:
            self._tenants = ()

    # -----------------------------------------------------
    # Access checks
    # -----------------------------------------------------
    def validate_access(self, user: Optional[AdminUser], tenant_id: str) -> bool:
        if user is None or not tenant_id:
            return False
        if user.access_for(tenant_id) is None:
            return False
        tenant = self.get(tenant_id)
        return tenant is not None and tenant.is_active

    def default_tenant(
        self, user: AdminUser, last_selected_tenant_id: Optional[str] = None
    ) -> Optional[Tenant]:
        """
        Last selected tenant if still valid, else the first active tenant,
        else the first tenant at all.
        """
        tenants = self.available_tenants
        if not tenants:
            return None

        if last_selected_tenant_id and self.validate_access(user, last_selected_tenant_id):
            return self.get(last_selected_tenant_id)

        for tenant in tenants:
            if tenant.is_active:
                return tenant
        return tenants[0]

    def can_switch(self, user: Optional[AdminUser]) -> bool:
        """More than one active grant to choose between."""
        return user is not None and len(user.active_access()) > 1

    def accessible_ids(
        self, user: AdminUser, tenant_ids: Optional[Iterable[str]] = None
    ) -> List[str]:
        """
        Subset of tenant_ids (default: every loaded tenant) the user may act
        on. Used for bulk and cross-society operations.
        """
        candidates = list(tenant_ids) if tenant_ids is not None else [t.id for t in self.available_tenants]
        accessible = [tid for tid in candidates if self.validate_access(user, tid)]
        if not accessible:
            raise AccessDenied("No accessible societies for this operation")
        return accessible
