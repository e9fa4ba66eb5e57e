# routers/admin_session.py

from typing import Any, List, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Query
from pydantic import BaseModel

from core.errors import AdminCoreError, InvalidTransition, to_http_exception
from core.logging_config import logger
from dependencies.auth import (
    CurrentUser,
    drop_session_manager,
    get_current_user,
    get_session_manager,
)
from models.admin import Session, Tenant
from models.enums import AdminRole, AppMode, SessionState
from services.session_manager import SessionManager


router = APIRouter(
    prefix="/admin",
    tags=["Admin Session"],
)


# -----------------------------------------------------
# Payloads
# -----------------------------------------------------
class SessionStatus(BaseModel):
    mode: AppMode
    state: SessionState
    is_admin: bool
    can_enter_admin_mode: bool
    can_switch_tenant: bool
    session: Optional[Session] = None
    active_tenant: Optional[Tenant] = None
    available_tenants: List[Tenant] = []
    audit_degraded: bool = False
    last_load_error: Optional[str] = None


class PermissionCheck(BaseModel):
    resource: str
    action: str
    tenant_id: Optional[str] = None
    allowed: bool


class EscalationPath(BaseModel):
    path: List[AdminRole]


class TenantDataItem(BaseModel):
    tenant_id: str
    key: str
    value: Any = None


def session_status(manager: SessionManager) -> SessionStatus:
    load_error = manager.last_load_error
    return SessionStatus(
        mode=manager.current_mode,
        state=manager.state,
        is_admin=manager.is_admin,
        can_enter_admin_mode=manager.can_enter_admin_mode(),
        can_switch_tenant=manager.can_switch_tenant(),
        session=manager.session,
        active_tenant=manager.active_tenant,
        available_tenants=manager.available_tenants,
        audit_degraded=manager.audit_degraded,
        last_load_error=str(load_error) if load_error else None,
    )


# -----------------------------------------------------
# GET /admin/session
# -----------------------------------------------------
@router.get("/session", response_model=SessionStatus, summary="Current admin session")
def get_session(manager: SessionManager = Depends(get_session_manager)):
    return session_status(manager)


# -----------------------------------------------------
# POST /admin/mode/enter
# -----------------------------------------------------
@router.post("/mode/enter", response_model=SessionStatus, summary="Enter admin mode")
def enter_admin_mode(manager: SessionManager = Depends(get_session_manager)):
    try:
        manager.enter_admin_mode()
    except (AdminCoreError, InvalidTransition) as e:
        raise to_http_exception(e)
    return session_status(manager)


# -----------------------------------------------------
# POST /admin/mode/exit
# -----------------------------------------------------
@router.post("/mode/exit", response_model=SessionStatus, summary="Return to resident mode")
def exit_admin_mode(manager: SessionManager = Depends(get_session_manager)):
    try:
        manager.exit_admin_mode()
    except (AdminCoreError, InvalidTransition) as e:
        raise to_http_exception(e)
    return session_status(manager)


# -----------------------------------------------------
# POST /admin/tenants/{tenant_id}/switch
# -----------------------------------------------------
@router.post(
    "/tenants/{tenant_id}/switch",
    response_model=SessionStatus,
    summary="Switch the active society",
)
def switch_tenant(tenant_id: str, manager: SessionManager = Depends(get_session_manager)):
    try:
        manager.switch_tenant(tenant_id)
    except (AdminCoreError, InvalidTransition) as e:
        raise to_http_exception(e)
    return session_status(manager)


# -----------------------------------------------------
# GET /admin/permissions/check
# -----------------------------------------------------
@router.get("/permissions/check", response_model=PermissionCheck, summary="Check a permission")
def check_permission(
    resource: str = Query(...),
    action: str = Query(...),
    tenant_id: Optional[str] = Query(None),
    manager: SessionManager = Depends(get_session_manager),
):
    allowed = manager.check_permission(resource, action, tenant_id)
    return PermissionCheck(resource=resource, action=action, tenant_id=tenant_id, allowed=allowed)


# -----------------------------------------------------
# GET /admin/escalation-path
# -----------------------------------------------------
@router.get("/escalation-path", response_model=EscalationPath, summary="Escalation chain")
def escalation_path(manager: SessionManager = Depends(get_session_manager)):
    return EscalationPath(path=manager.get_escalation_path())


# -----------------------------------------------------
# GET /admin/tenant-data/{key}
# -----------------------------------------------------
@router.get("/tenant-data/{key}", response_model=TenantDataItem, summary="Read active society data")
def get_tenant_data(key: str, manager: SessionManager = Depends(get_session_manager)):
    session = manager.session
    try:
        value, found = manager.get_tenant_data(key)
    except AdminCoreError as e:
        raise to_http_exception(e)
    if not found:
        raise HTTPException(status_code=404, detail=f"No '{key}' cached for the active society")
    return TenantDataItem(tenant_id=session.active_tenant_id, key=key, value=value)


# -----------------------------------------------------
# PUT /admin/tenant-data/{key}
# -----------------------------------------------------
@router.put("/tenant-data/{key}", response_model=TenantDataItem, summary="Write active society data")
def put_tenant_data(
    key: str,
    value: Any = Body(..., embed=True),
    manager: SessionManager = Depends(get_session_manager),
):
    session = manager.session
    try:
        manager.set_tenant_data(key, value)
    except AdminCoreError as e:
        raise to_http_exception(e)
    return TenantDataItem(tenant_id=session.active_tenant_id, key=key, value=value)


# -----------------------------------------------------
# POST /admin/logout
# -----------------------------------------------------
@router.post("/logout", summary="End the admin session")
def logout(
    current_user: CurrentUser = Depends(get_current_user),
    manager: SessionManager = Depends(get_session_manager),
):
    manager.logout()
    drop_session_manager(current_user.id)
    manager.close()
    logger.info(f"User {current_user.id} logged out of admin session")
    return {"status": "logged_out"}
