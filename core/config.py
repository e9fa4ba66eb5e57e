from typing import List, Optional
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # -------------------------------------------------
    # General
    # -------------------------------------------------
    PROJECT_NAME: str = "Society Admin API"
    ENV: str = "development"
    APP_VERSION: str = "1.0.0"

    # Frontends allowed to call the API (admin console, resident app web build)
    BACKEND_CORS_ORIGINS: List[str] = [
        "http://localhost:3000",
        "http://localhost:8081",
    ]

    # -------------------------------------------------
    # Supabase (tenant metadata, admin directory, audit)
    # -------------------------------------------------
    SUPABASE_URL: Optional[str] = None
    SUPABASE_ANON_KEY: Optional[str] = None
    SUPABASE_SERVICE_ROLE_KEY: Optional[str] = None

    ADMIN_USERS_TABLE: str = "admin_users"
    ADMIN_ACCESS_TABLE: str = "admin_society_access"
    SOCIETIES_TABLE: str = "societies"
    SOCIETY_OVERVIEW_TABLE: str = "society_overview"
    AUDIT_TABLE: str = "admin_audit_logs"
    KV_STORE_TABLE: str = "admin_kv_store"

    # -------------------------------------------------
    # Permission policy
    # -------------------------------------------------
    # JSON file: {"role": ["resource:action@scope", ...]}
    # Falls back to core.permissions.ROLE_PERMISSIONS when unset.
    ADMIN_POLICY_PATH: Optional[str] = None

    # -------------------------------------------------
    # Audit log
    # -------------------------------------------------
    AUDIT_BUFFER_CAPACITY: int = 256
    AUDIT_RETRY_BACKOFF_SECONDS: float = 0.2
    # In-memory history served by AuditLog.entries()
    AUDIT_HISTORY_LIMIT: int = 1000

    # -------------------------------------------------
    # Session
    # -------------------------------------------------
    PREFERENCE_RETRY_BACKOFF_SECONDS: float = 0.1
    SWITCH_HISTORY_LIMIT: int = 10
    # Per-user managers unused for this long are logged out and closed
    SESSION_IDLE_TIMEOUT_SECONDS: float = 1800

    # -------------------------------------------------
    # Model Config
    # -------------------------------------------------
    model_config = SettingsConfigDict(
        case_sensitive=True,
        extra="ignore",
    )


# Instantiate settings
settings = Settings()
