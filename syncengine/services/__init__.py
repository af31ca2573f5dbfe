"""Sync engine services."""

from .audit_service import AuditLogService
from .integration_service import IntegrationService
from .mapping_service import MappingStore
from .record_source import TenantRecordSource
from .locks import JobLock, RedisJobLock, LocalJobLock, get_job_lock
from .sync_service import SyncService
from .connection_service import ConnectionTester
from .scheduler import SyncScheduler

__all__ = [
    "AuditLogService",
    "IntegrationService",
    "MappingStore",
    "TenantRecordSource",
    "JobLock",
    "RedisJobLock",
    "LocalJobLock",
    "get_job_lock",
    "SyncService",
    "ConnectionTester",
    "SyncScheduler",
]
