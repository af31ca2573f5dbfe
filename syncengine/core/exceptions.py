"""Error taxonomy for the sync engine.

Validation and precondition errors are raised before anything is persisted.
Adapter errors split into contained errors (one record rejected, the job
continues) and fatal errors (the whole job aborts and ends ``failed``).
"""

from typing import Any, Dict, List, Optional


class SyncEngineError(Exception):
    """Base sync engine error."""
    pass


class ValidationError(SyncEngineError):
    """Malformed configuration or request input."""

    def __init__(self, message: str, errors: Optional[List[Dict[str, Any]]] = None):
        super().__init__(message)
        self.errors = errors or []


class UnsupportedDataTypeError(ValidationError):
    """Data type not supported or not enabled for the integration."""
    pass


class NotFoundError(SyncEngineError):
    """Integration or sync job does not exist."""
    pass


class ConfigInactiveError(SyncEngineError):
    """Integration is disabled."""
    pass


class SyncInProgressError(SyncEngineError):
    """A sync for the same integration and data type is already running."""
    pass


class AdapterError(SyncEngineError):
    """Base adapter error."""
    pass


class ContainedRecordError(AdapterError):
    """A single record was rejected; the job continues."""

    def __init__(self, message: str, record_id: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.record_id = record_id
        self.details = details or {}


class FatalSyncError(AdapterError):
    """The job cannot continue."""
    pass


class AuthenticationError(FatalSyncError):
    """Credentials are missing, invalid or expired."""
    pass


class ConnectivityError(FatalSyncError):
    """External endpoint unreachable."""
    pass


class SyncCancelledError(FatalSyncError):
    """The job was asked to cancel."""

    def __init__(self, message: str = "Sync job cancelled"):
        super().__init__(message)
