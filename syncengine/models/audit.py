"""Audit log models."""

from datetime import datetime
from typing import Optional, Dict, Any
from pydantic import BaseModel, Field
from enum import Enum
import uuid


class AuditAction(str, Enum):
    """Audited actions."""
    SYNC_STARTED = "sync_started"
    SYNC_COMPLETED = "sync_completed"
    SYNC_FAILED = "sync_failed"
    CONFIG_UPDATED = "config_updated"
    CONNECTION_TEST = "connection_test"


class AuditLogEntry(BaseModel):
    """Append-only audit record."""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()), alias="_id")
    integration_id: str
    tenant_id: str = ""
    action: AuditAction
    details: Dict[str, Any] = Field(default_factory=dict)
    user_id: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    
    class Config:
        populate_by_name = True
        use_enum_values = True
