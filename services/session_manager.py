# services/session_manager.py

"""
Admin session orchestration: resident/admin mode, the active tenant, the
permission snapshot and the audit trail of privileged transitions.

State machine:

    resident --enter_admin_mode()--> admin_active
    admin_active --exit_admin_mode()--> resident
    admin_active --switch_tenant(id)--> switching_tenant --> admin_active
    any --logout()--> resident

All state mutation happens under one transition lock. A second lock,
acquired without blocking, marks a tenant switch as in flight so a
concurrent switch fails fast instead of queuing. The transition lock is
released while the tenant cache loads, which lets logout/exit cancel the
switch through its cancel event.

check_permission never takes a lock: it reads a single reference to an
immutable Session, so it sees either the old or the new snapshot.
"""

import time
from collections import deque
from threading import Event, Lock
from typing import Any, Callable, Dict, List, Optional, Tuple
from uuid import uuid4

from core.cache import TENANT_DATA_KEY, TenantDataCache
from core.config import settings
from core.errors import (
    AccessDenied,
    FetchError,
    InvalidTransition,
    NotAuthorized,
    SwitchCancelled,
    SwitchInProgress,
)
from core.logging_config import get_logger
from models.admin import (
    AdminUser,
    DeviceInfo,
    Session,
    SessionChange,
    SwitchRecord,
    Tenant,
    utcnow,
)
from models.audit import AuditEntry
from models.enums import AdminRole, AppMode, AuditEventType, SessionState
from services.audit_log import AuditLog
from services.escalation import EscalationResolver
from services.interfaces import AdminDirectory, KeyValueStore
from services.permission_engine import PermissionEngine
from services.tenant_registry import TenantRegistry

logger = get_logger("session")

SessionListener = Callable[[SessionChange], None]


def preferred_mode_key(user_id: str) -> str:
    return f"{user_id}_preferred_mode"


def last_tenant_key(user_id: str) -> str:
    return f"last_selected_society_{user_id}"


class SessionManager:
    def __init__(
        self,
        directory: AdminDirectory,
        registry: TenantRegistry,
        cache: TenantDataCache,
        audit_log: AuditLog,
        store: KeyValueStore,
        engine: Optional[PermissionEngine] = None,
        escalation: Optional[EscalationResolver] = None,
        device: Optional[DeviceInfo] = None,
        ip_address: Optional[str] = None,
        preference_retry_backoff_seconds: Optional[float] = None,
        switch_history_limit: Optional[int] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._directory = directory
        self._registry = registry
        self._cache = cache
        self._audit_log = audit_log
        self._store = store
        self._engine = engine or PermissionEngine.from_path(settings.ADMIN_POLICY_PATH)
        self._escalation = escalation or EscalationResolver()
        self._device = device
        self._ip_address = ip_address
        self._pref_backoff = (
            preference_retry_backoff_seconds
            if preference_retry_backoff_seconds is not None
            else settings.PREFERENCE_RETRY_BACKOFF_SECONDS
        )
        self._sleep = sleep

        self._transition_lock = Lock()
        self._switch_lock = Lock()
        self._state = SessionState.resident
        self._session: Optional[Session] = None
        self._admin_user: Optional[AdminUser] = None
        self._user_id: Optional[str] = None
        self._cancel_event: Optional[Event] = None
        self._last_load_error: Optional[FetchError] = None
        self._switch_history = deque(maxlen=switch_history_limit or settings.SWITCH_HISTORY_LIMIT)
        self._listeners: List[SessionListener] = []

    # =====================================================
    # Read accessors
    # =====================================================
    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def current_mode(self) -> AppMode:
        session = self._session
        return session.mode if session else AppMode.resident

    @property
    def session(self) -> Optional[Session]:
        return self._session

    @property
    def admin_user(self) -> Optional[AdminUser]:
        return self._admin_user

    @property
    def is_admin(self) -> bool:
        return self._admin_user is not None

    @property
    def active_tenant(self) -> Optional[Tenant]:
        session = self._session
        if session is None or not session.active_tenant_id:
            return None
        return self._registry.get(session.active_tenant_id)

    @property
    def available_tenants(self) -> List[Tenant]:
        return self._registry.available_tenants

    @property
    def switch_history(self) -> List[SwitchRecord]:
        return list(self._switch_history)

    @property
    def last_load_error(self) -> Optional[FetchError]:
        """Set when the tenant cache could only serve stale data on admin entry."""
        return self._last_load_error

    @property
    def audit_degraded(self) -> bool:
        return self._audit_log.degraded

    def can_enter_admin_mode(self) -> bool:
        user = self._admin_user
        return user is not None and bool(user.active_access())

    def can_switch_tenant(self) -> bool:
        return self._registry.can_switch(self._admin_user)

    # =====================================================
    # Observers
    # =====================================================
    def subscribe(self, listener: SessionListener) -> Callable[[], None]:
        """Register for committed transitions. Returns an unsubscribe callable."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, event: str) -> None:
        session = self._session
        change = SessionChange(
            event=event,
            mode=session.mode if session else AppMode.resident,
            active_tenant_id=session.active_tenant_id if session else None,
            session=session,
        )
        for listener in list(self._listeners):
            try:
                listener(change)
            except Exception:
                logger.exception(f"Session listener failed on {event}")

    # =====================================================
    # Initialization
    # =====================================================
    def initialize(self, user_id: str) -> Optional[AdminUser]:
        """
        Resolve the admin profile of an authenticated user and load their
        tenants. Returns None for plain residents. Restores admin mode when
        that was the persisted preference.
        """
        if self._state != SessionState.resident:
            raise InvalidTransition("initialize() called with an admin session active")

        try:
            admin_user = self._directory.resolve_admin_user(user_id)
        except FetchError:
            raise
        except Exception as e:
            raise FetchError(f"Admin directory unavailable: {e}") from e

        with self._transition_lock:
            self._user_id = user_id
            self._admin_user = admin_user

        if admin_user is None:
            self._registry.reset()
            return None

        try:
            self._registry.load(admin_user)
        except FetchError:
            if not self._registry.available_tenants:
                raise
            logger.warning(f"Using last-known tenant list for {user_id}")

        if self._read_preference(preferred_mode_key(user_id)) == AppMode.admin.value:
            if self.can_enter_admin_mode():
                try:
                    self.enter_admin_mode()
                except NotAuthorized as e:
                    logger.warning(f"Could not restore admin mode for {user_id}: {e}")

        return admin_user

    # =====================================================
    # Mode transitions
    # =====================================================
    def enter_admin_mode(self) -> Session:
        """
        Raises SwitchCancelled if logout happens while the society data is
        still loading.
        """
        with self._transition_lock:
            if self._state != SessionState.resident or self._cancel_event is not None:
                raise InvalidTransition(f"Cannot enter admin mode from {self._state}")

            user = self._admin_user
            if user is None or not user.active_access():
                raise NotAuthorized("No active society grant; admin mode unavailable")

            tenant = self._registry.default_tenant(
                user, self._read_preference(last_tenant_key(user.id))
            )
            if tenant is None or user.access_for(tenant.id) is None:
                raise NotAuthorized("No accessible society for admin mode")

            cancel = Event()
            self._cancel_event = cancel

        try:
            load_error = None
            try:
                self._cache.load(tenant.id, cancel_event=cancel)
            except FetchError as e:
                load_error = e
                logger.warning(f"Entering admin mode with cached data for {tenant.id}: {e}")

            with self._transition_lock:
                if cancel.is_set():
                    raise SwitchCancelled("Entering admin mode was cancelled", tenant_id=tenant.id)

                user = self._admin_user
                if user is None or user.access_for(tenant.id) is None:
                    raise NotAuthorized(f"Access to society {tenant.id} was revoked")

                role = user.role_for(tenant.id)
                now = utcnow()
                self._session = Session(
                    session_id=f"admin_session_{uuid4().hex}",
                    user_id=user.id,
                    mode=AppMode.admin,
                    active_tenant_id=tenant.id,
                    role=role,
                    permissions=self._engine.permissions_for(role),
                    start_time=now,
                    last_activity=now,
                    device=self._device,
                    ip_address=self._ip_address,
                )
                self._state = SessionState.admin_active
                self._last_load_error = load_error
                self._audit(
                    AuditEventType.mode_switched,
                    user.id,
                    tenant.id,
                    {"from": AppMode.resident.value, "to": AppMode.admin.value},
                )
                session = self._session
        finally:
            with self._transition_lock:
                if self._cancel_event is cancel:
                    self._cancel_event = None

        logger.info(f"User {user.id} entered admin mode in society {tenant.id}")
        self._write_preference(preferred_mode_key(user.id), AppMode.admin.value)
        self._write_preference(last_tenant_key(user.id), tenant.id)
        self._notify(AuditEventType.mode_switched.value)
        return session

    def exit_admin_mode(self) -> None:
        with self._transition_lock:
            if self._state == SessionState.resident:
                raise InvalidTransition("Cannot exit admin mode while in resident mode")

            self._cancel_inflight_switch()
            old = self._session
            self._session = None
            self._state = SessionState.resident
            self._audit(
                AuditEventType.mode_switched,
                old.user_id,
                old.active_tenant_id,
                {"from": AppMode.admin.value, "to": AppMode.resident.value},
            )

        logger.info(f"User {old.user_id} returned to resident mode")
        self._write_preference(preferred_mode_key(old.user_id), AppMode.resident.value)
        self._notify(AuditEventType.mode_switched.value)

    # =====================================================
    # Tenant switching
    # =====================================================
    def switch_tenant(self, tenant_id: str) -> Session:
        if not self._switch_lock.acquire(blocking=False):
            raise SwitchInProgress("A society switch is already in progress", tenant_id=tenant_id)
        try:
            return self._switch_tenant(tenant_id)
        finally:
            self._switch_lock.release()

    def _switch_tenant(self, tenant_id: str) -> Session:
        with self._transition_lock:
            if self._state != SessionState.admin_active:
                raise InvalidTransition(f"Cannot switch society from {self._state}")

            session = self._session
            if tenant_id == session.active_tenant_id:
                self._session = session.touched()
                return self._session

            if not self._registry.validate_access(self._admin_user, tenant_id):
                raise AccessDenied(f"Access denied to society {tenant_id}", tenant_id=tenant_id)

            cancel = Event()
            self._cancel_event = cancel
            self._state = SessionState.switching_tenant

        committed = False
        try:
            self._cache.load(tenant_id, cancel_event=cancel)

            with self._transition_lock:
                current = self._session
                if cancel.is_set() or current is None or current.session_id != session.session_id:
                    raise SwitchCancelled(f"Switch to {tenant_id} was superseded", tenant_id=tenant_id)

                # Grants may have been revoked while the cache was loading
                if not self._registry.validate_access(self._admin_user, tenant_id):
                    raise AccessDenied(f"Access denied to society {tenant_id}", tenant_id=tenant_id)

                role = self._admin_user.role_for(tenant_id)
                updated = current.touched(
                    active_tenant_id=tenant_id,
                    role=role,
                    permissions=self._engine.permissions_for(role),
                )
                self._session = updated
                self._state = SessionState.admin_active
                self._cancel_event = None
                committed = True

                self._switch_history.append(
                    SwitchRecord(from_tenant_id=current.active_tenant_id, to_tenant_id=tenant_id)
                )
                self._audit(
                    AuditEventType.tenant_switched,
                    updated.user_id,
                    tenant_id,
                    {"from": current.active_tenant_id, "to": tenant_id},
                )
        finally:
            if not committed:
                self._rollback_switch(cancel)

        logger.info(f"User {updated.user_id} switched society {current.active_tenant_id} -> {tenant_id}")
        self._write_preference(last_tenant_key(updated.user_id), tenant_id)
        self._notify(AuditEventType.tenant_switched.value)
        return updated

    def _rollback_switch(self, cancel: Event) -> None:
        with self._transition_lock:
            # Logout/exit may already have moved us to resident; leave that alone
            if self._state == SessionState.switching_tenant and self._cancel_event is cancel:
                self._state = SessionState.admin_active
                self._cancel_event = None

    def _cancel_inflight_switch(self) -> None:
        if self._cancel_event is not None:
            self._cancel_event.set()
            self._cancel_event = None

    # =====================================================
    # Permissions
    # =====================================================
    def check_permission(self, resource: str, action: str, tenant_id: Optional[str] = None) -> bool:
        """
        Allow/deny against the current session snapshot. Always False in
        resident mode. Naming a tenant other than the active one leaves only
        global grants in play. Denials in admin mode are audited.
        """
        session = self._session
        if session is None or session.mode != AppMode.admin:
            return False

        active = session.active_tenant_id
        if not active:
            # No society in force (its grant was just revoked): deny everything
            allowed = False
        else:
            scope_tenant = active if tenant_id is None or tenant_id == active else None
            allowed = self._engine.check(session.permissions, resource, action, scope_tenant, session.role)

        if not allowed:
            self._audit(
                AuditEventType.permission_denied,
                session.user_id,
                active,
                {"resource": resource, "action": action, "requested_tenant_id": tenant_id or active},
            )
        return allowed

    def refresh_permissions(self) -> Optional[Session]:
        """Re-read the policy for the active tenant and swap in a new snapshot."""
        with self._transition_lock:
            if self._state != SessionState.admin_active:
                return None
            session = self._session
            if not session.active_tenant_id:
                return session
            role = self._admin_user.role_for(session.active_tenant_id)
            self._session = session.touched(role=role, permissions=self._engine.permissions_for(role))
            return self._session

    def get_escalation_path(self) -> List[AdminRole]:
        session = self._session
        if session is not None:
            return self._escalation.path_for(session.role)
        if self._admin_user is not None:
            return self._escalation.path_for(self._admin_user.role)
        return []

    # =====================================================
    # Grants
    # =====================================================
    def revoke_tenant_access(self, tenant_id: str) -> bool:
        """
        Deactivate the user's grant for a tenant and drop its cached data.
        If it was the active tenant, move to the next valid one or leave
        admin mode when none is left.

        Until that move commits, the session has no active tenant and no
        grants, so check_permission denies everything.
        """
        with self._transition_lock:
            user = self._admin_user
            if user is None or user.access_for(tenant_id) is None:
                return False

            self._admin_user = user.with_access_revoked(tenant_id)
            session = self._session
            was_active = session is not None and session.active_tenant_id == tenant_id
            if was_active:
                self._session = session.touched(active_tenant_id=None, permissions=())
            self._audit(AuditEventType.tenant_access_revoked, user.id, tenant_id, {})

        self._cache.clear(tenant_id)
        logger.info(f"Revoked society {tenant_id} for user {user.id}")

        if was_active:
            self._settle_after_revocation()
        return True

    def _settle_after_revocation(self) -> None:
        # Waits for any in-flight switch; it revalidates grants and owns the outcome
        with self._switch_lock:
            with self._transition_lock:
                session = self._session
                if session is None or session.active_tenant_id:
                    return

            fallback = self._next_valid_tenant()
            if fallback is not None:
                try:
                    self._switch_tenant(fallback.id)
                    return
                except (AccessDenied, FetchError, SwitchCancelled, InvalidTransition) as e:
                    logger.warning(f"Could not move to society {fallback.id} after revocation: {e}")

            if self._state != SessionState.resident:
                self.exit_admin_mode()

    def _next_valid_tenant(self) -> Optional[Tenant]:
        for tenant in self._registry.available_tenants:
            if self._registry.validate_access(self._admin_user, tenant.id):
                return tenant
        return None

    def bulk_targets(self, tenant_ids: Optional[List[str]] = None) -> List[str]:
        """Tenants a bulk or cross-society operation may touch."""
        if self._admin_user is None:
            raise NotAuthorized("Bulk operations require an admin user")
        return self._registry.accessible_ids(self._admin_user, tenant_ids)

    # =====================================================
    # Society data
    # =====================================================
    def get_tenant_data(self, key: str = TENANT_DATA_KEY) -> Tuple[Any, bool]:
        """
        Read a cached value of the active society. Returns (value, found).
        Other societies' entries are never reachable from here.
        """
        tenant_id = self._require_active_tenant()
        return self._cache.get(tenant_id, key)

    def set_tenant_data(self, key: str, value: Any) -> None:
        tenant_id = self._require_active_tenant()
        self._cache.set(tenant_id, key, value)

    def _require_active_tenant(self) -> str:
        session = self._session
        if session is None or session.mode != AppMode.admin:
            raise NotAuthorized("Society data is only available in admin mode")
        if not session.active_tenant_id:
            raise NotAuthorized("No active society")
        return session.active_tenant_id

    # =====================================================
    # Logout
    # =====================================================
    def logout(self) -> None:
        with self._transition_lock:
            self._cancel_inflight_switch()
            session = self._session
            user_id = self._user_id or (self._admin_user.id if self._admin_user else None)

            self._session = None
            self._state = SessionState.resident
            self._admin_user = None
            self._switch_history.clear()

            if session is not None:
                duration = (utcnow() - session.start_time).total_seconds()
                self._audit(
                    AuditEventType.admin_logout,
                    session.user_id,
                    session.active_tenant_id,
                    {"session_id": session.session_id, "duration_seconds": duration},
                )

        self._registry.reset()
        self._cache.reset()
        if user_id:
            self._write_preference(preferred_mode_key(user_id), None)
        self._notify(AuditEventType.admin_logout.value)

    # =====================================================
    # Helpers
    # =====================================================
    def _audit(
        self,
        event_type: AuditEventType,
        user_id: str,
        tenant_id: Optional[str],
        details: Dict[str, Any],
    ) -> None:
        # AuditLog never raises; degraded mode is exposed via audit_degraded
        self._audit_log.append(
            AuditEntry(event_type=event_type, user_id=user_id, tenant_id=tenant_id, details=details)
        )

    def _read_preference(self, key: str) -> Optional[str]:
        try:
            raw = self._store.get(key)
        except Exception as e:
            logger.warning(f"Reading preference {key} failed: {e}")
            return None
        return raw.decode("utf-8") if raw else None

    def _write_preference(self, key: str, value: Optional[str]) -> None:
        """Best effort: one retry, then dropped. Value None deletes the key."""
        for attempt in (1, 2):
            try:
                if value is None:
                    self._store.delete(key)
                else:
                    self._store.set(key, value.encode("utf-8"))
                return
            except Exception as e:
                if attempt == 1:
                    self._sleep(self._pref_backoff)
                    continue
                logger.warning(f"Dropping preference write for {key}: {e}")

    def close(self) -> None:
        """Release the cache worker once this manager is discarded."""
        self._cache.shutdown()
