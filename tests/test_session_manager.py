# tests/test_session_manager.py

"""
Tests for the admin session state machine.
"""

import time
from concurrent.futures import ThreadPoolExecutor
from threading import Event

import pytest

from core.cache import TENANT_DATA_KEY
from core.errors import (
    AccessDenied,
    InvalidTransition,
    NotAuthorized,
    SwitchCancelled,
    SwitchInProgress,
)
from models.enums import AdminRole, AppMode, AuditEventType, SessionState
from services.audit_log import AuditLog
from services.session_manager import last_tenant_key, preferred_mode_key
from tests.fakes import BlockingSink, FlakyStore


def events(audit_log):
    return [e.event_type for e in audit_log.entries()]


# -----------------------------------------------------
# Initialization
# -----------------------------------------------------
def test_resident_user_has_no_admin_capability(make_manager):
    manager = make_manager("someone-else")

    assert manager.admin_user is None
    assert manager.can_enter_admin_mode() is False
    assert manager.current_mode == AppMode.resident
    with pytest.raises(NotAuthorized):
        manager.enter_admin_mode()


def test_inactive_grants_block_admin_mode(make_manager, audit_log):
    manager = make_manager("u-lapsed")

    assert manager.can_enter_admin_mode() is False
    with pytest.raises(NotAuthorized):
        manager.enter_admin_mode()
    assert audit_log.entries() == []


def test_initialize_restores_preferred_admin_mode(make_manager, store):
    store.set(preferred_mode_key("u-multi"), b"admin")
    store.set(last_tenant_key("u-multi"), b"T2")

    manager = make_manager("u-multi")

    assert manager.current_mode == AppMode.admin
    assert manager.session.active_tenant_id == "T2"


# -----------------------------------------------------
# Enter / exit
# -----------------------------------------------------
def test_enter_admin_mode_single_grant(make_manager, audit_log):
    manager = make_manager("u-cm")

    session = manager.enter_admin_mode()

    assert manager.current_mode == AppMode.admin
    assert manager.state == SessionState.admin_active
    assert session.active_tenant_id == "T1"
    assert session.session_id.startswith("admin_session_")
    assert events(audit_log) == [AuditEventType.mode_switched]
    assert audit_log.entries()[0].details == {"from": "resident", "to": "admin"}


def test_enter_loads_cache_and_persists_preferences(make_manager, store):
    manager = make_manager("u-cm")
    manager.enter_admin_mode()

    assert manager._cache.get("T1", TENANT_DATA_KEY)[1] is True
    assert store.get(preferred_mode_key("u-cm")) == b"admin"
    assert store.get(last_tenant_key("u-cm")) == b"T1"


def test_enter_then_exit_produces_two_audits_and_keeps_tenants(make_manager, audit_log):
    manager = make_manager("u-multi")
    before = [t.id for t in manager.available_tenants]

    manager.enter_admin_mode()
    manager.exit_admin_mode()

    assert len(audit_log.entries()) == 2
    assert [t.id for t in manager.available_tenants] == before
    assert manager.session is None
    assert manager.state == SessionState.resident


def test_enter_twice_is_invalid(make_manager):
    manager = make_manager("u-cm")
    manager.enter_admin_mode()
    with pytest.raises(InvalidTransition):
        manager.enter_admin_mode()


def test_exit_from_resident_is_invalid(make_manager):
    manager = make_manager("u-cm")
    with pytest.raises(InvalidTransition):
        manager.exit_admin_mode()


def test_enter_tolerates_data_fetch_failure(make_manager, data_service):
    data_service.failing.add("T1")
    manager = make_manager("u-cm")

    manager.enter_admin_mode()

    assert manager.current_mode == AppMode.admin
    assert manager.last_load_error is not None


# -----------------------------------------------------
# Permissions
# -----------------------------------------------------
def test_check_permission_allows_matching_grant_without_audit(make_manager, audit_log):
    manager = make_manager("u-cm")
    manager.enter_admin_mode()

    assert manager.check_permission("billing", "read") is True
    assert events(audit_log) == [AuditEventType.mode_switched]


def test_check_permission_denial_is_audited(make_manager, audit_log):
    manager = make_manager("u-cm")
    manager.enter_admin_mode()

    assert manager.check_permission("visitors", "approve") is False

    denial = audit_log.entries()[-1]
    assert denial.event_type == AuditEventType.permission_denied
    assert denial.details["resource"] == "visitors"
    assert denial.tenant_id == "T1"


def test_check_permission_false_in_resident_mode(make_manager, audit_log):
    manager = make_manager("u-super")

    assert manager.check_permission("billing", "read") is False
    assert audit_log.entries() == []


def test_other_tenant_excludes_society_grants(make_manager):
    manager = make_manager("u-multi")
    manager.enter_admin_mode()

    assert manager.check_permission("residents", "read", "T1") is True
    assert manager.check_permission("residents", "read", "T2") is False


def test_super_admin_allowed_everywhere(make_manager):
    manager = make_manager("u-super")
    manager.enter_admin_mode()

    assert manager.session.role == AdminRole.super_admin
    assert manager.check_permission("anything", "delete") is True
    assert manager.check_permission("billing", "read", "T9") is True


def test_refresh_permissions_swaps_snapshot(make_manager):
    manager = make_manager("u-cm")
    old = manager.enter_admin_mode()

    refreshed = manager.refresh_permissions()

    assert refreshed is not old
    assert refreshed.permissions == old.permissions
    assert refreshed.last_activity >= old.last_activity


# -----------------------------------------------------
# Switching
# -----------------------------------------------------
def test_switch_to_ungranted_tenant_is_denied(make_manager, audit_log):
    manager = make_manager("u-cm")
    manager.enter_admin_mode()

    with pytest.raises(AccessDenied):
        manager.switch_tenant("T2")

    assert manager.session.active_tenant_id == "T1"
    assert manager.state == SessionState.admin_active
    assert events(audit_log) == [AuditEventType.mode_switched]


def test_switch_to_inactive_tenant_is_denied(make_manager):
    manager = make_manager("u-multi")
    manager.enter_admin_mode()

    with pytest.raises(AccessDenied):
        manager.switch_tenant("T3")


def test_switch_commits_tenant_role_and_audit(make_manager, audit_log, store):
    manager = make_manager("u-multi")
    manager.enter_admin_mode()

    session = manager.switch_tenant("T2")

    assert session.active_tenant_id == "T2"
    assert session.role == AdminRole.financial_manager
    assert manager.check_permission("billing", "generate") is True
    assert manager.check_permission("residents", "delete") is False
    assert audit_log.entries()[1].event_type == AuditEventType.tenant_switched
    assert audit_log.entries()[1].details == {"from": "T1", "to": "T2"}
    assert [r.to_tenant_id for r in manager.switch_history] == ["T2"]
    assert store.get(last_tenant_key("u-multi")) == b"T2"


def test_switch_to_active_tenant_is_noop(make_manager, audit_log, data_service):
    manager = make_manager("u-multi")
    first = manager.enter_admin_mode()
    loads = list(data_service.calls)

    session = manager.switch_tenant("T1")

    assert session.active_tenant_id == "T1"
    assert session.session_id == first.session_id
    assert data_service.calls == loads
    assert len(audit_log.entries()) == 1


def test_switch_from_resident_is_invalid(make_manager):
    manager = make_manager("u-multi")
    with pytest.raises(InvalidTransition):
        manager.switch_tenant("T2")


def test_failed_load_leaves_prior_state(make_manager, data_service, audit_log):
    from core.errors import FetchError

    manager = make_manager("u-multi")
    before = manager.enter_admin_mode()
    data_service.failing.add("T2")

    with pytest.raises(FetchError):
        manager.switch_tenant("T2")

    assert manager.session == before
    assert manager.state == SessionState.admin_active
    assert len(audit_log.entries()) == 1


def test_concurrent_switch_fails_fast(make_manager, data_service):
    manager = make_manager("u-multi")
    manager.enter_admin_mode()

    gate = Event()
    data_service.gates["T2"] = gate

    with ThreadPoolExecutor(max_workers=1) as pool:
        first = pool.submit(manager.switch_tenant, "T2")
        assert data_service.started.wait(timeout=5)
        assert manager.state == SessionState.switching_tenant

        with pytest.raises(SwitchInProgress):
            manager.switch_tenant("T1")

        gate.set()
        first.result(timeout=5)

    assert manager.session.active_tenant_id == "T2"
    assert manager.state == SessionState.admin_active


def test_logout_cancels_inflight_switch(make_manager, data_service, audit_log):
    manager = make_manager("u-multi")
    manager.enter_admin_mode()

    gate = Event()
    data_service.gates["T2"] = gate

    with ThreadPoolExecutor(max_workers=1) as pool:
        pending = pool.submit(manager.switch_tenant, "T2")
        assert data_service.started.wait(timeout=5)

        manager.logout()
        gate.set()

        with pytest.raises(SwitchCancelled):
            pending.result(timeout=5)

    assert manager.session is None
    assert manager.state == SessionState.resident
    assert AuditEventType.tenant_switched not in events(audit_log)


# -----------------------------------------------------
# Revocation / bulk
# -----------------------------------------------------
def test_revoking_active_tenant_moves_to_next_valid(make_manager, audit_log):
    manager = make_manager("u-multi")
    manager.enter_admin_mode()

    assert manager.revoke_tenant_access("T1") is True

    assert manager.session.active_tenant_id == "T2"
    assert manager._cache.get("T1", TENANT_DATA_KEY) == (None, False)
    assert AuditEventType.tenant_access_revoked in events(audit_log)


def test_revoking_last_tenant_exits_admin_mode(make_manager):
    manager = make_manager("u-cm")
    manager.enter_admin_mode()

    manager.revoke_tenant_access("T1")

    assert manager.current_mode == AppMode.resident
    assert manager.can_enter_admin_mode() is False


def test_revoking_unknown_grant_is_noop(make_manager, audit_log):
    manager = make_manager("u-cm")
    assert manager.revoke_tenant_access("T9") is False
    assert audit_log.entries() == []


def test_bulk_targets(make_manager):
    manager = make_manager("u-multi")
    assert manager.bulk_targets() == ["T1", "T2"]
    with pytest.raises(AccessDenied):
        manager.bulk_targets(["T3"])


def test_can_switch_tenant(make_manager):
    assert make_manager("u-multi").can_switch_tenant() is True
    assert make_manager("u-cm").can_switch_tenant() is False


# -----------------------------------------------------
# Escalation
# -----------------------------------------------------
def test_escalation_uses_session_role(make_manager):
    manager = make_manager("u-multi")
    assert manager.get_escalation_path() == [AdminRole.super_admin]

    manager.enter_admin_mode()
    manager.switch_tenant("T2")
    assert manager.get_escalation_path() == [AdminRole.community_manager, AdminRole.super_admin]


def test_escalation_empty_without_admin(make_manager):
    assert make_manager("someone-else").get_escalation_path() == []


# -----------------------------------------------------
# Logout / observers / preferences
# -----------------------------------------------------
def test_logout_audits_and_clears_state(make_manager, audit_log, store):
    manager = make_manager("u-cm")
    session = manager.enter_admin_mode()

    manager.logout()

    last = audit_log.entries()[-1]
    assert last.event_type == AuditEventType.admin_logout
    assert last.details["session_id"] == session.session_id
    assert last.details["duration_seconds"] >= 0
    assert manager.admin_user is None
    assert manager.available_tenants == []
    assert store.get(preferred_mode_key("u-cm")) is None


def test_logout_without_session_does_not_audit(make_manager, audit_log):
    manager = make_manager("u-cm")
    manager.logout()
    assert audit_log.entries() == []


def test_subscribers_notified_after_commit(make_manager):
    manager = make_manager("u-multi")
    seen = []
    unsubscribe = manager.subscribe(lambda change: seen.append((change.event, change.active_tenant_id)))

    manager.enter_admin_mode()
    manager.switch_tenant("T2")
    unsubscribe()
    manager.exit_admin_mode()

    assert seen == [("mode_switched", "T1"), ("tenant_switched", "T2")]


def test_failing_subscriber_does_not_break_transition(make_manager):
    manager = make_manager("u-cm")

    def broken(change):
        raise RuntimeError("listener bug")

    manager.subscribe(broken)
    manager.enter_admin_mode()
    assert manager.current_mode == AppMode.admin


def test_preference_write_failure_is_not_fatal(make_manager):
    flaky = FlakyStore(failures=10)
    manager = make_manager("u-cm", manager_store=flaky)

    manager.enter_admin_mode()

    assert manager.current_mode == AppMode.admin


def wait_until(condition, timeout=5.0):
    deadline = time.monotonic() + timeout
    while not condition():
        if time.monotonic() > deadline:
            return False
        time.sleep(0.01)
    return True


# -----------------------------------------------------
# Revocation while data is loading
# -----------------------------------------------------
def test_revoked_tenant_grants_are_dropped_before_fallback_loads(make_manager, data_service):
    manager = make_manager("u-multi")
    manager.enter_admin_mode()
    assert manager.check_permission("residents", "delete") is True

    gate = Event()
    data_service.gates["T2"] = gate

    with ThreadPoolExecutor(max_workers=1) as pool:
        revoking = pool.submit(manager.revoke_tenant_access, "T1")
        assert data_service.started.wait(timeout=5)

        # Fallback to T2 is still loading: nothing from T1 may be granted
        assert manager.session.active_tenant_id is None
        assert manager.check_permission("residents", "delete") is False
        assert manager.check_permission("residents", "read", "T1") is False

        gate.set()
        assert revoking.result(timeout=5) is True

    assert manager.session.active_tenant_id == "T2"
    assert manager.session.role == AdminRole.financial_manager


def test_revocation_defers_to_inflight_switch(make_manager, data_service, audit_log):
    manager = make_manager("u-multi")
    manager.enter_admin_mode()

    gate = Event()
    data_service.gates["T2"] = gate

    with ThreadPoolExecutor(max_workers=2) as pool:
        switching = pool.submit(manager.switch_tenant, "T2")
        assert data_service.started.wait(timeout=5)

        revoking = pool.submit(manager.revoke_tenant_access, "T1")
        assert wait_until(lambda: manager.session.active_tenant_id is None)

        gate.set()
        assert switching.result(timeout=5).active_tenant_id == "T2"
        assert revoking.result(timeout=5) is True

    assert manager.current_mode == AppMode.admin
    assert manager.state == SessionState.admin_active
    assert manager.session.active_tenant_id == "T2"
    assert events(audit_log).count(AuditEventType.tenant_switched) == 1


def test_revoking_switch_target_keeps_current_tenant(make_manager, data_service):
    manager = make_manager("u-multi")
    manager.enter_admin_mode()

    gate = Event()
    data_service.gates["T2"] = gate

    with ThreadPoolExecutor(max_workers=1) as pool:
        switching = pool.submit(manager.switch_tenant, "T2")
        assert data_service.started.wait(timeout=5)

        assert manager.revoke_tenant_access("T2") is True
        gate.set()

        with pytest.raises(AccessDenied):
            switching.result(timeout=5)

    assert manager.session.active_tenant_id == "T1"
    assert manager.state == SessionState.admin_active


# -----------------------------------------------------
# Entering admin mode while data is loading
# -----------------------------------------------------
def test_logout_cancels_admin_entry_while_loading(make_manager, data_service, audit_log):
    manager = make_manager("u-multi")

    gate = Event()
    data_service.gates["T1"] = gate

    with ThreadPoolExecutor(max_workers=1) as pool:
        entering = pool.submit(manager.enter_admin_mode)
        assert data_service.started.wait(timeout=5)

        # The transition lock is free while loading
        assert manager.state == SessionState.resident
        with pytest.raises(InvalidTransition):
            manager.enter_admin_mode()

        manager.logout()
        gate.set()

        with pytest.raises(SwitchCancelled):
            entering.result(timeout=5)

    assert manager.session is None
    assert manager.current_mode == AppMode.resident
    assert AuditEventType.mode_switched not in events(audit_log)


# -----------------------------------------------------
# Audit writes never stall permission checks
# -----------------------------------------------------
def test_permission_check_does_not_wait_on_slow_audit_write(make_manager):
    manager = make_manager("u-multi")
    manager.enter_admin_mode()

    sink = BlockingSink(blocking_events={AuditEventType.tenant_switched})
    slow_log = AuditLog(sink, capacity=8, retry_backoff_seconds=0, sleep=lambda s: None)
    manager._audit_log = slow_log

    with ThreadPoolExecutor(max_workers=2) as pool:
        switching = pool.submit(manager.switch_tenant, "T2")
        assert sink.blocked.wait(timeout=5)

        checking = pool.submit(manager.check_permission, "visitors", "approve")
        assert checking.result(timeout=1) is False

        sink.gate.set()
        switching.result(timeout=5)

    assert slow_log.flush() is True
    assert [e.event_type for e in sink.entries] == [
        AuditEventType.tenant_switched,
        AuditEventType.permission_denied,
    ]


# -----------------------------------------------------
# Society data
# -----------------------------------------------------
def test_tenant_data_is_scoped_to_active_tenant(make_manager):
    manager = make_manager("u-multi")
    manager.enter_admin_mode()

    manager.set_tenant_data("notice_board", ["water off at 10"])
    assert manager.get_tenant_data("notice_board") == (["water off at 10"], True)

    manager.switch_tenant("T2")

    assert manager.get_tenant_data("notice_board") == (None, False)
    value, found = manager.get_tenant_data()
    assert found is True
    assert value["society_id"] == "T2"

    manager.switch_tenant("T1")
    assert manager.get_tenant_data("notice_board") == (["water off at 10"], True)


def test_tenant_data_denied_in_resident_mode(make_manager):
    manager = make_manager("u-multi")

    with pytest.raises(NotAuthorized):
        manager.get_tenant_data()
    with pytest.raises(NotAuthorized):
        manager.set_tenant_data("notice_board", [])


def test_tenant_data_unreachable_after_revocation(make_manager):
    manager = make_manager("u-cm")
    manager.enter_admin_mode()
    manager.set_tenant_data("notice_board", ["lift service"])

    manager.revoke_tenant_access("T1")

    with pytest.raises(NotAuthorized):
        manager.get_tenant_data("notice_board")
