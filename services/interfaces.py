# services/interfaces.py

"""
Collaborators the admin session layer consumes. Concrete adapters live in
services/supabase_adapters.py and core/storage.py; tests supply fakes.
"""

from typing import Any, Dict, List, Optional, Protocol, Sequence

from models.admin import AdminUser, Tenant
from models.audit import AuditEntry


class Authenticator(Protocol):
    def current_user(self) -> str:
        """Id of the already-authenticated user."""
        ...


class AdminDirectory(Protocol):
    def resolve_admin_user(self, user_id: str) -> Optional[AdminUser]:
        """AdminUser with tenant grants, or None for a plain resident."""
        ...


class TenantMetadataService(Protocol):
    def fetch_tenants(self, tenant_ids: Sequence[str]) -> List[Tenant]:
        ...


class TenantDataService(Protocol):
    def fetch_tenant_data(self, tenant_id: str) -> Dict[str, Any]:
        ...


class KeyValueStore(Protocol):
    def get(self, key: str) -> Optional[bytes]:
        ...

    def set(self, key: str, value: bytes) -> None:
        ...

    def delete(self, key: str) -> None:
        ...


class AuditSink(Protocol):
    def write(self, entry: AuditEntry) -> None:
        ...
