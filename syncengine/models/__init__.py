"""Domain models for the sync engine."""

from .integration import (
    IntegrationConfig,
    IntegrationType,
    SyncFrequency,
    DataType,
    BaseConfigData,
    AccountingPlatformConfig,
    TaxGatewayConfig,
    PaymentGatewayConfig,
    CustomConfig,
    CONFIG_SCHEMAS,
    parse_config_data,
)
from .sync import SyncJob, SyncStatus, SyncJobType, ExternalRecordMapping, ExternalRef, ConnectionResult
from .audit import AuditLogEntry, AuditAction

__all__ = [
    "IntegrationConfig",
    "IntegrationType",
    "SyncFrequency",
    "DataType",
    "BaseConfigData",
    "AccountingPlatformConfig",
    "TaxGatewayConfig",
    "PaymentGatewayConfig",
    "CustomConfig",
    "CONFIG_SCHEMAS",
    "parse_config_data",
    "SyncJob",
    "SyncStatus",
    "SyncJobType",
    "ExternalRecordMapping",
    "ExternalRef",
    "ConnectionResult",
    "AuditLogEntry",
    "AuditAction",
]
