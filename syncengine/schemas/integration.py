"""Integration API schemas."""

from datetime import datetime
from typing import Optional, Dict, Any, List
from pydantic import BaseModel, Field

from syncengine.models import (
    IntegrationConfig,
    IntegrationType,
    SyncFrequency,
    DataType,
    SyncJob,
    SyncJobType,
    AuditLogEntry,
)

REDACTED = "********"


class IntegrationCreate(BaseModel):
    """Schema for creating an integration."""
    integration_type: IntegrationType
    name: Optional[str] = None
    config_data: Dict[str, Any]
    is_active: bool = True
    sync_frequency: SyncFrequency = SyncFrequency.DAILY


class IntegrationUpdate(BaseModel):
    """Schema for updating an integration. ``config_data`` keys are merged."""
    name: Optional[str] = None
    is_active: Optional[bool] = None
    config_data: Optional[Dict[str, Any]] = None
    sync_frequency: Optional[SyncFrequency] = None


class IntegrationResponse(BaseModel):
    """Integration response schema. Secret credential fields are redacted."""
    id: str
    tenant_id: str
    name: Optional[str] = None
    integration_type: IntegrationType
    is_active: bool
    config_data: Dict[str, Any]
    sync_frequency: SyncFrequency
    created_at: datetime
    updated_at: datetime
    last_sync_at: Optional[datetime] = None
    
    @classmethod
    def from_integration(cls, integration: IntegrationConfig) -> "IntegrationResponse":
        config_data = integration.config_data.model_dump(mode="json")
        for field in type(integration.config_data).SECRET_FIELDS:
            if config_data.get(field):
                config_data[field] = REDACTED
        return cls(
            id=integration.id,
            tenant_id=integration.tenant_id,
            name=integration.name,
            integration_type=integration.integration_type,
            is_active=integration.is_active,
            config_data=config_data,
            sync_frequency=integration.sync_frequency,
            created_at=integration.created_at,
            updated_at=integration.updated_at,
            last_sync_at=integration.last_sync_at,
        )


class IntegrationListResponse(BaseModel):
    """List of integrations response."""
    items: List[IntegrationResponse]
    total: int


class ConnectionTestResponse(BaseModel):
    """Connection test response."""
    success: bool
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)
    tested_at: datetime


class SyncRequest(BaseModel):
    """Sync request schema."""
    data_type: DataType
    job_type: Optional[SyncJobType] = None


class SyncJobResponse(BaseModel):
    """Sync job response schema."""
    id: str
    integration_id: str
    tenant_id: str
    job_type: SyncJobType
    data_type: DataType
    status: str
    records_processed: int
    records_successful: int
    records_failed: int
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: datetime
    error_message: Optional[str] = None
    record_errors: List[Dict[str, Any]] = Field(default_factory=list)
    cancel_requested: bool = False
    
    @classmethod
    def from_job(cls, job: SyncJob) -> "SyncJobResponse":
        return cls(**job.model_dump())


class AuditLogResponse(BaseModel):
    """Audit log entry response schema."""
    id: str
    integration_id: str
    tenant_id: str
    action: str
    details: Dict[str, Any]
    user_id: Optional[str] = None
    created_at: datetime
    
    @classmethod
    def from_entry(cls, entry: AuditLogEntry) -> "AuditLogResponse":
        return cls(**entry.model_dump())
