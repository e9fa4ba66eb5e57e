# models/audit.py

from datetime import datetime
from typing import Any, Dict, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

from .admin import utcnow
from .enums import AuditEventType


class AuditEntry(BaseModel):
    """Append-only record of a privileged event. Never mutated once built."""
    model_config = ConfigDict(frozen=True)

    entry_id: str = Field(default_factory=lambda: uuid4().hex)
    event_type: AuditEventType
    user_id: str
    tenant_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)
    details: Dict[str, Any] = {}

    def to_row(self) -> Dict[str, Any]:
        """Flat dict for storage sinks (Supabase insert, JSON log line)."""
        return self.model_dump(mode="json")
