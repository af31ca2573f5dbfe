"""Integration configuration store."""

from typing import List, Dict, Any, Optional
from datetime import datetime
import logging

from pydantic import ValidationError as PydanticValidationError

from syncengine.core.config import get_settings
from syncengine.core.database import COLLECTIONS
from syncengine.core.exceptions import ValidationError, NotFoundError
from syncengine.models import (
    IntegrationConfig,
    IntegrationType,
    AuditAction,
    CONFIG_SCHEMAS,
)
from syncengine.services.audit_service import AuditLogService
from syncengine.utils.crypto import seal_secrets, unseal_secrets

logger = logging.getLogger(__name__)

CREATABLE_FIELDS = {"name", "integration_type", "is_active", "config_data", "sync_frequency"}
UPDATABLE_FIELDS = {"name", "is_active", "config_data", "sync_frequency"}


def _error_list(error: PydanticValidationError) -> List[Dict[str, Any]]:
    """Flatten pydantic errors into JSON-safe dicts."""
    return [
        {"field": ".".join(str(part) for part in err["loc"]), "message": err["msg"]}
        for err in error.errors()
    ]


class IntegrationService:
    """CRUD for per-tenant integration configurations.
    
    Secret credential fields are encrypted before they reach MongoDB and
    decrypted when a configuration is loaded.
    """
    
    def __init__(self, db, audit: Optional[AuditLogService] = None):
        self.db = db
        self.audit = audit or AuditLogService(db)
        self.settings = get_settings()
    
    def _collection(self):
        return self.db.get_collection(COLLECTIONS["integrations"])
    
    def _secret_fields(self, integration_type) -> set:
        return CONFIG_SCHEMAS[IntegrationType(integration_type)].SECRET_FIELDS
    
    def _to_document(self, integration: IntegrationConfig) -> Dict[str, Any]:
        doc = integration.model_dump(by_alias=True)
        doc["config_data"] = seal_secrets(
            doc["config_data"],
            self._secret_fields(integration.integration_type),
            self.settings.encryption_key,
            self.settings.encryption_salt,
        )
        return doc
    
    def _from_document(self, doc: Dict[str, Any]) -> IntegrationConfig:
        doc = dict(doc)
        doc["config_data"] = unseal_secrets(
            doc.get("config_data") or {},
            self._secret_fields(doc["integration_type"]),
            self.settings.encryption_key,
            self.settings.encryption_salt,
        )
        return IntegrationConfig.model_validate(doc)
    
    async def create_integration(self, tenant_id: str, data: Dict[str, Any]) -> IntegrationConfig:
        """Validate and persist a new configuration."""
        if not tenant_id:
            raise ValidationError("tenant_id is required")
        if not data.get("integration_type"):
            raise ValidationError("integration_type is required")
        unknown = set(data) - CREATABLE_FIELDS
        if unknown:
            raise ValidationError(f"Unknown field(s): {', '.join(sorted(unknown))}")
        
        try:
            integration = IntegrationConfig(tenant_id=tenant_id, **data)
        except PydanticValidationError as e:
            raise ValidationError("Invalid integration configuration", errors=_error_list(e)) from e
        
        await self._collection().insert_one(self._to_document(integration))
        logger.info(
            f"Created integration {integration.id} of type {integration.integration_type}",
            extra={"integration_id": integration.id, "tenant_id": tenant_id},
        )
        
        await self.audit.append(
            integration.id,
            tenant_id,
            AuditAction.CONFIG_UPDATED,
            {"action": "integration_created", "integration_type": integration.integration_type},
        )
        return integration
    
    async def get_integration(self, integration_id: str) -> Optional[IntegrationConfig]:
        doc = await self._collection().find_one({"_id": integration_id})
        return self._from_document(doc) if doc else None
    
    async def get_integration_or_raise(self, integration_id: str) -> IntegrationConfig:
        integration = await self.get_integration(integration_id)
        if integration is None:
            raise NotFoundError(f"Integration {integration_id} not found")
        return integration
    
    async def list_integrations(self, tenant_id: str) -> List[IntegrationConfig]:
        """All configurations for a tenant, newest first."""
        cursor = self._collection().find({"tenant_id": tenant_id}).sort("created_at", -1)
        integrations = []
        async for doc in cursor:
            integrations.append(self._from_document(doc))
        return integrations
    
    async def list_active_integrations(self) -> List[IntegrationConfig]:
        """Active configurations across all tenants."""
        integrations = []
        async for doc in self._collection().find({"is_active": True}):
            integrations.append(self._from_document(doc))
        return integrations
    
    async def update_integration(self, integration_id: str, patch: Dict[str, Any]) -> IntegrationConfig:
        """Apply a partial update.
        
        Only supplied fields change. ``config_data`` is merged key by key into
        the stored blob and the result re-validated against the schema for the
        integration type. ``updated_at`` is refreshed on every update.
        """
        current = await self.get_integration_or_raise(integration_id)
        
        if "integration_type" in patch and patch["integration_type"] != current.integration_type:
            raise ValidationError("integration_type cannot be changed")
        patch = {k: v for k, v in patch.items() if k != "integration_type"}
        unknown = set(patch) - UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(f"Unknown field(s): {', '.join(sorted(unknown))}")
        
        merged = current.model_dump(by_alias=True)
        updated_fields = []
        for field, value in patch.items():
            if field == "config_data":
                if not isinstance(value, dict):
                    raise ValidationError("config_data must be an object")
                merged["config_data"] = {**merged["config_data"], **value}
                updated_fields.extend(f"config_data.{key}" for key in value)
            else:
                merged[field] = value
                updated_fields.append(field)
        merged["updated_at"] = datetime.utcnow()
        
        try:
            integration = IntegrationConfig.model_validate(merged)
        except PydanticValidationError as e:
            raise ValidationError("Invalid integration configuration", errors=_error_list(e)) from e
        
        doc = self._to_document(integration)
        doc.pop("_id")
        await self._collection().update_one({"_id": integration_id}, {"$set": doc})
        
        await self.audit.append(
            integration_id,
            integration.tenant_id,
            AuditAction.CONFIG_UPDATED,
            {"action": "integration_updated", "updated_fields": updated_fields},
        )
        return integration
    
    async def delete_integration(self, integration_id: str) -> bool:
        """Delete a configuration. Deleting a missing one is a no-op success."""
        doc = await self._collection().find_one({"_id": integration_id})
        result = await self._collection().delete_one({"_id": integration_id})
        
        if result.deleted_count > 0:
            logger.info(f"Deleted integration {integration_id}")
        
        await self.audit.append(
            integration_id,
            doc.get("tenant_id", "") if doc else "",
            AuditAction.CONFIG_UPDATED,
            {"action": "integration_deleted"},
        )
        return result.deleted_count > 0
    
    async def mark_synced(self, integration_id: str, synced_at: datetime) -> None:
        """Record the completion time of the latest sync."""
        await self._collection().update_one(
            {"_id": integration_id},
            {"$set": {"last_sync_at": synced_at}},
        )
    
    async def store_refreshed_credentials(self, integration: IntegrationConfig) -> None:
        """Persist credentials an adapter refreshed during a job."""
        doc = self._to_document(integration)
        await self._collection().update_one(
            {"_id": integration.id},
            {"$set": {"config_data": doc["config_data"], "updated_at": datetime.utcnow()}},
        )
        logger.info(f"Stored refreshed credentials for integration {integration.id}")
