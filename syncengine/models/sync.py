"""Sync job, record mapping and adapter result models."""

from datetime import datetime
from typing import Optional, Dict, Any, List
from pydantic import BaseModel, Field
from enum import Enum
import uuid

from .integration import DataType


class SyncStatus(str, Enum):
    """Sync job status."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = (SyncStatus.COMPLETED.value, SyncStatus.FAILED.value)


class SyncJobType(str, Enum):
    """Direction of data flow."""
    IMPORT = "import"
    EXPORT = "export"
    SYNC = "sync"


class SyncJob(BaseModel):
    """Sync job model."""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()), alias="_id")
    integration_id: str
    tenant_id: str
    
    # Job details
    job_type: SyncJobType = SyncJobType.SYNC
    data_type: DataType
    status: SyncStatus = SyncStatus.PENDING
    
    # Progress
    records_processed: int = 0
    records_successful: int = 0
    records_failed: int = 0
    
    # Timing
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    
    # Error handling
    error_message: Optional[str] = None
    record_errors: List[Dict[str, Any]] = Field(default_factory=list)
    cancel_requested: bool = False
    
    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES
    
    class Config:
        populate_by_name = True
        use_enum_values = True


class ExternalRecordMapping(BaseModel):
    """Local entity to external identifier correspondence."""
    tenant_id: str
    local_entity_type: str
    local_entity_id: str
    external_system: str
    external_identifier: str
    integration_id: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class ExternalRef(BaseModel):
    """Result of a successful push to an external system."""
    external_id: str
    external_system: str
    action: str = "created"  # created | updated
    details: Dict[str, Any] = Field(default_factory=dict)


class ConnectionResult(BaseModel):
    """Outcome of a connection test."""
    success: bool
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)
    tested_at: datetime = Field(default_factory=datetime.utcnow)
