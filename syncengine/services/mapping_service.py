"""External record mapping store."""

from datetime import datetime
from typing import List, Optional
import logging

from syncengine.core.database import COLLECTIONS
from syncengine.models import ExternalRecordMapping

logger = logging.getLogger(__name__)


class MappingStore:
    """Persists local entity -> external identifier correspondences.
    
    One row per (tenant_id, local_entity_type, local_entity_id, external_system),
    enforced by a unique index and written with a single atomic upsert.
    """
    
    def __init__(self, db):
        self.db = db
    
    def _collection(self):
        return self.db.get_collection(COLLECTIONS["mappings"])
    
    @staticmethod
    def _key(tenant_id: str, entity_type: str, entity_id: str, external_system: str) -> dict:
        return {
            "tenant_id": tenant_id,
            "local_entity_type": entity_type,
            "local_entity_id": entity_id,
            "external_system": external_system,
        }
    
    async def get(
        self,
        tenant_id: str,
        entity_type: str,
        entity_id: str,
        external_system: str,
    ) -> Optional[ExternalRecordMapping]:
        doc = await self._collection().find_one(self._key(tenant_id, entity_type, entity_id, external_system))
        return ExternalRecordMapping.model_validate(doc) if doc else None
    
    async def get_external_id(
        self,
        tenant_id: str,
        entity_type: str,
        entity_id: str,
        external_system: str,
    ) -> Optional[str]:
        mapping = await self.get(tenant_id, entity_type, entity_id, external_system)
        return mapping.external_identifier if mapping else None
    
    async def upsert(
        self,
        tenant_id: str,
        entity_type: str,
        entity_id: str,
        external_system: str,
        external_identifier: str,
        integration_id: Optional[str] = None,
    ) -> None:
        """Insert or update the mapping for a key in one operation."""
        now = datetime.utcnow()
        await self._collection().update_one(
            self._key(tenant_id, entity_type, entity_id, external_system),
            {
                "$set": {
                    "external_identifier": external_identifier,
                    "integration_id": integration_id,
                    "updated_at": now,
                },
                "$setOnInsert": {"created_at": now},
            },
            upsert=True,
        )
    
    async def list_for_system(
        self,
        tenant_id: str,
        external_system: str,
        entity_type: Optional[str] = None,
    ) -> List[ExternalRecordMapping]:
        filters = {"tenant_id": tenant_id, "external_system": external_system}
        if entity_type:
            filters["local_entity_type"] = entity_type
        
        mappings = []
        async for doc in self._collection().find(filters):
            mappings.append(ExternalRecordMapping.model_validate(doc))
        return mappings
