import time
from threading import Lock
from typing import Dict, List, Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel
from supabase import Client

from core.config import settings
from core.errors import AdminCoreError, to_http_exception
from core.logging_config import logger
from core.supabase_client import get_supabase_client
from models.admin import DeviceInfo
from services.session_manager import SessionManager
from services.supabase_adapters import build_session_manager


bearer_scheme = HTTPBearer()


# ============================================================
# Current User Model (identity only; admin profile is resolved
# by the SessionManager)
# ============================================================
class CurrentUser(BaseModel):
    id: str
    email: Optional[str] = None
    full_name: Optional[str] = None


# ============================================================
# AUTHENTICATOR (Supabase GoTrue validates the JWT)
# ============================================================
class SupabaseAuthenticator:
    def __init__(self, client: Client, token: str):
        self._client = client
        self._token = token
        self._user = None

    def current_user(self) -> str:
        return self.resolve().id

    def resolve(self) -> CurrentUser:
        if self._user is None:
            auth_resp = self._client.auth.get_user(self._token)
            if not auth_resp or not auth_resp.user:
                raise ValueError("No user for token")
            auth_user = auth_resp.user
            metadata = auth_user.user_metadata or {}
            self._user = CurrentUser(
                id=auth_user.id,
                email=auth_user.email,
                full_name=metadata.get("full_name"),
            )
        return self._user


def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(bearer_scheme),
) -> CurrentUser:

    unauthorized = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Invalid or expired authentication token",
        headers={"WWW-Authenticate": "Bearer"},
    )

    client: Client = get_supabase_client()
    if not client:
        raise HTTPException(500, "Supabase client not configured")

    try:
        return SupabaseAuthenticator(client, credentials.credentials).resolve()
    except Exception:
        raise unauthorized


# ============================================================
# SESSION MANAGERS (one per authenticated user, in-process)
# ============================================================
_managers: Dict[str, SessionManager] = {}
_last_seen: Dict[str, float] = {}
_user_locks: Dict[str, Lock] = {}
_managers_lock = Lock()


def device_from_request(request: Request) -> DeviceInfo:
    headers = request.headers
    return DeviceInfo(
        platform=headers.get("X-Device-Platform", "unknown"),
        version=headers.get("X-Device-OS-Version", ""),
        app_version=headers.get("X-App-Version", ""),
        model=headers.get("X-Device-Model"),
    )


def _user_lock(user_id: str) -> Lock:
    with _managers_lock:
        return _user_locks.setdefault(user_id, Lock())


def _cached_manager(user_id: str) -> Optional[SessionManager]:
    with _managers_lock:
        manager = _managers.get(user_id)
        if manager is not None:
            _last_seen[user_id] = time.monotonic()
        return manager


def get_session_manager(
    request: Request,
    current_user: CurrentUser = Depends(get_current_user),
) -> SessionManager:
    evict_idle_managers()

    manager = _cached_manager(current_user.id)
    if manager is not None:
        return manager

    # Serialize the first request per user so only one manager is built
    with _user_lock(current_user.id):
        manager = _cached_manager(current_user.id)
        if manager is not None:
            return manager

        client = get_supabase_client()
        if not client:
            raise HTTPException(500, "Supabase client not configured")

        manager = build_session_manager(
            client,
            device=device_from_request(request),
            ip_address=request.client.host if request.client else None,
        )
        try:
            manager.initialize(current_user.id)
        except AdminCoreError as e:
            manager.close()
            raise to_http_exception(e)
        except Exception:
            manager.close()
            raise

        with _managers_lock:
            existing = _managers.get(current_user.id)
            if existing is None:
                _managers[current_user.id] = manager
            _last_seen[current_user.id] = time.monotonic()

    if existing is not None:
        # Built alongside an eviction sweep; keep the registered one
        manager.close()
        return existing

    logger.info(f"Session manager ready for user {current_user.id}")
    return manager


def evict_idle_managers(now: Optional[float] = None, max_idle: Optional[float] = None) -> List[str]:
    """
    Log out and close managers unused for `max_idle` seconds.
    Returns the evicted user ids.
    """
    now = now if now is not None else time.monotonic()
    max_idle = max_idle if max_idle is not None else settings.SESSION_IDLE_TIMEOUT_SECONDS

    evicted = []
    with _managers_lock:
        for user_id, seen in list(_last_seen.items()):
            if now - seen < max_idle:
                continue
            manager = _managers.pop(user_id, None)
            _last_seen.pop(user_id, None)
            _user_locks.pop(user_id, None)
            if manager is not None:
                evicted.append((user_id, manager))

    for user_id, manager in evicted:
        try:
            manager.logout()
        finally:
            manager.close()
        logger.info(f"Evicted idle session manager for user {user_id}")

    return [user_id for user_id, _ in evicted]


def drop_session_manager(user_id: str) -> None:
    with _managers_lock:
        _managers.pop(user_id, None)
        _last_seen.pop(user_id, None)
        _user_locks.pop(user_id, None)
