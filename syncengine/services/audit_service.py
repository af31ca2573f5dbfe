"""Append-only audit log for integration activity."""

from typing import Any, Dict, List, Optional
import logging

from syncengine.core.config import get_settings
from syncengine.core.database import COLLECTIONS
from syncengine.models import AuditAction, AuditLogEntry

logger = logging.getLogger(__name__)


class AuditLogService:
    """Writes and reads integration audit entries.
    
    Writes are best effort: a failing audit backend is logged and never
    raised to the caller, so it cannot fail a sync or a config change.
    """
    
    def __init__(self, db):
        self.db = db
    
    async def append(
        self,
        integration_id: str,
        tenant_id: Optional[str],
        action: AuditAction,
        details: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None,
    ) -> Optional[AuditLogEntry]:
        """Append an audit entry. Returns None when the write failed."""
        try:
            entry = AuditLogEntry(
                integration_id=integration_id,
                tenant_id=tenant_id or "",
                action=action,
                details=details or {},
                user_id=user_id,
            )
            collection = self.db.get_collection(COLLECTIONS["audit_logs"])
            await collection.insert_one(entry.model_dump(by_alias=True))
            return entry
        except Exception as e:
            logger.error(
                f"Error logging audit event {action} for integration {integration_id}: {e}",
                extra={"integration_id": integration_id, "audit_action": str(action)},
            )
            return None
    
    async def get_audit_logs(self, integration_id: str, limit: Optional[int] = None) -> List[AuditLogEntry]:
        """Audit entries for an integration, newest first."""
        limit = limit or get_settings().audit_logs_page_size
        collection = self.db.get_collection(COLLECTIONS["audit_logs"])
        cursor = collection.find({"integration_id": integration_id}).sort("created_at", -1).limit(limit)
        
        entries = []
        async for doc in cursor:
            entries.append(AuditLogEntry.model_validate(doc))
        return entries
