# core/errors.py

from typing import Optional

from fastapi import HTTPException


# ============================================================
# Error taxonomy for the admin session layer
# ============================================================
class AdminCoreError(Exception):
    """Base class for recoverable admin-layer failures."""

    def __init__(self, message: str, tenant_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.tenant_id = tenant_id


class NotAuthorized(AdminCoreError):
    """User holds no active tenant grant; admin mode is unavailable."""


class AccessDenied(AdminCoreError):
    """Tenant is not in the user's active grant set, or is itself inactive."""


class SwitchInProgress(AdminCoreError):
    """Another tenant switch is already in flight. Retry once it resolves."""


class SwitchCancelled(AdminCoreError):
    """An in-flight switch was superseded by logout or leaving admin mode."""


class FetchError(AdminCoreError):
    """Upstream metadata or data service could not be reached."""


class PersistenceFailure(AdminCoreError):
    """Writing cache snapshots, preferences or audit entries failed."""


class InvalidTransition(RuntimeError):
    """
    Raised for calls the session state machine does not allow
    (e.g. switching tenant while in resident mode). These are programmer
    errors and are never swallowed.
    """


# ============================================================
# Supabase helpers
# ============================================================
def extract_supabase_error(error: Exception) -> str:
    """
    Safely extract readable details from Supabase Python client errors.
    Handles:
      • PostgREST errors
      • GoTrue (Auth) errors
      • Generic Python exceptions
    """

    # Case 1: Supabase Auth / GoTrue errors
    if hasattr(error, "message"):
        try:
            return str(error.message)
        except Exception:
            pass

    # Case 2: Supabase errors with args (common)
    if hasattr(error, "args") and error.args:
        try:
            return str(error.args[0])
        except Exception:
            pass

    # Case 3: Plain string fallback
    try:
        return str(error)
    except Exception:
        return "Unknown Supabase error"


# ============================================================
# HTTP mapping
# ============================================================
_STATUS_CODES = {
    NotAuthorized: 403,
    AccessDenied: 403,
    SwitchInProgress: 409,
    SwitchCancelled: 409,
    FetchError: 503,
    PersistenceFailure: 500,
}


def to_http_exception(error: Exception) -> HTTPException:
    """
    Convert admin-layer errors into HTTPExceptions.
    Returns HTTPException (doesn't raise) so caller can customize or re-raise.
    """
    from core.logging_config import logger

    if isinstance(error, InvalidTransition):
        return HTTPException(status_code=409, detail=f"Invalid session state: {error}")

    for error_type, status_code in _STATUS_CODES.items():
        if isinstance(error, error_type):
            if status_code >= 500:
                logger.error(f"{error_type.__name__}: {error}")
            return HTTPException(status_code=status_code, detail=str(error))

    logger.error(f"Unhandled admin error: {error}")
    return HTTPException(status_code=500, detail="Admin operation failed")
