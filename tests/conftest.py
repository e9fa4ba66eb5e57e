# tests/conftest.py

"""
Pytest configuration and shared fixtures for testing.
"""

from typing import Dict

import pytest
from fastapi.testclient import TestClient
from unittest.mock import Mock

from core.cache import TenantDataCache
from core.storage import MemoryKeyValueStore
from models.admin import AdminUser, Tenant, TenantAccess
from models.enums import AdminRole, TenantStatus
from services.audit_log import AuditLog, MemoryAuditSink
from services.escalation import EscalationResolver
from services.permission_engine import PermissionEngine
from services.session_manager import SessionManager
from services.tenant_registry import TenantRegistry
from tests.fakes import FakeDataService, FakeDirectory, FakeMetadataService


# -----------------------------------------------------
# Domain fixtures
# -----------------------------------------------------
@pytest.fixture
def tenants() -> Dict[str, Tenant]:
    return {
        "T1": Tenant(id="T1", name="Green Meadows", code="GM"),
        "T2": Tenant(id="T2", name="Lake View", code="LV"),
        "T3": Tenant(id="T3", name="Old Towers", code="OT", status=TenantStatus.suspended),
    }


@pytest.fixture
def admin_users() -> Dict[str, AdminUser]:
    return {
        # single society community manager
        "u-cm": AdminUser(
            id="u-cm",
            role=AdminRole.community_manager,
            tenant_access=[TenantAccess(tenant_id="T1", role=AdminRole.community_manager)],
        ),
        # two societies, different roles in each
        "u-multi": AdminUser(
            id="u-multi",
            role=AdminRole.community_manager,
            tenant_access=[
                TenantAccess(tenant_id="T1", role=AdminRole.community_manager),
                TenantAccess(tenant_id="T2", role=AdminRole.financial_manager),
                TenantAccess(tenant_id="T3", role=AdminRole.community_manager),
            ],
        ),
        "u-super": AdminUser(
            id="u-super",
            role=AdminRole.super_admin,
            tenant_access=[TenantAccess(tenant_id="T1", role=AdminRole.super_admin)],
        ),
        "u-lapsed": AdminUser(
            id="u-lapsed",
            role=AdminRole.security_admin,
            tenant_access=[
                TenantAccess(tenant_id="T1", role=AdminRole.security_admin, is_active=False)
            ],
        ),
    }


@pytest.fixture
def metadata_service(tenants) -> FakeMetadataService:
    return FakeMetadataService(tenants)


@pytest.fixture
def data_service() -> FakeDataService:
    return FakeDataService()


@pytest.fixture
def store() -> MemoryKeyValueStore:
    return MemoryKeyValueStore()


@pytest.fixture
def audit_sink() -> MemoryAuditSink:
    return MemoryAuditSink()


@pytest.fixture
def audit_log(audit_sink) -> AuditLog:
    return AuditLog(audit_sink, capacity=8, retry_backoff_seconds=0, sleep=lambda s: None)


@pytest.fixture
def tenant_cache(data_service, store):
    cache = TenantDataCache(data_service, store)
    yield cache
    cache.shutdown()


@pytest.fixture
def make_manager(admin_users, metadata_service, data_service, store, audit_log):
    """Build (and initialize) a SessionManager for one of the fixture users."""
    caches = []

    def _make(user_id: str = "u-cm", initialize: bool = True, manager_store=None) -> SessionManager:
        kv = manager_store if manager_store is not None else store
        cache = TenantDataCache(data_service, kv)
        caches.append(cache)
        manager = SessionManager(
            directory=FakeDirectory(admin_users),
            registry=TenantRegistry(metadata_service),
            cache=cache,
            audit_log=audit_log,
            store=kv,
            engine=PermissionEngine(),
            escalation=EscalationResolver(),
            preference_retry_backoff_seconds=0,
            sleep=lambda s: None,
        )
        if initialize:
            manager.initialize(user_id)
        return manager

    yield _make

    for cache in caches:
        cache.shutdown()


# -----------------------------------------------------
# HTTP fixtures
# -----------------------------------------------------
@pytest.fixture(scope="function")
def app():
    """Create a test FastAPI application instance."""
    from main import create_app
    return create_app()


@pytest.fixture(scope="function")
def client(app) -> TestClient:
    """Create a test client for the FastAPI application."""
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def mock_supabase_client():
    """Create a mock Supabase client."""
    mock_client = Mock()
    mock_table = Mock()
    mock_client.table.return_value = mock_table
    return mock_client


@pytest.fixture(autouse=True)
def reset_session_managers():
    """Drop per-user managers between tests."""
    from dependencies import auth
    for registry in (auth._managers, auth._last_seen, auth._user_locks):
        registry.clear()
    yield
    for registry in (auth._managers, auth._last_seen, auth._user_locks):
        registry.clear()
