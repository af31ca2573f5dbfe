"""Read access to tenant business records."""

from typing import Any, Dict, List, Tuple
import logging

from syncengine.core.database import TENANT_COLLECTIONS
from syncengine.models import DataType

logger = logging.getLogger(__name__)

# Data type -> (tenant collection, extra filter)
RECORD_SOURCES: Dict[DataType, Tuple[str, Dict[str, Any]]] = {
    DataType.CUSTOMERS: (TENANT_COLLECTIONS["customers"], {}),
    DataType.PRODUCTS: (TENANT_COLLECTIONS["products"], {}),
    DataType.INVOICES: (TENANT_COLLECTIONS["invoices"], {}),
    DataType.PAYMENTS: (TENANT_COLLECTIONS["payments"], {}),
    DataType.SALES: (TENANT_COLLECTIONS["orders"], {"status": "completed"}),
    DataType.PURCHASES: (TENANT_COLLECTIONS["purchases"], {}),
    DataType.INVENTORY: (TENANT_COLLECTIONS["products"], {}),
}

# Share a collection with another data type; never stamped
UNSTAMPED_DATA_TYPES = {DataType.INVENTORY}


class TenantRecordSource:
    """Loads tenant-scoped records per data type and stamps external references back."""
    
    def __init__(self, db, stamp_records: bool = True):
        self.db = db
        self.stamp_records = stamp_records
    
    async def load(self, tenant_id: str, data_type) -> List[Dict[str, Any]]:
        """All records of a data type for one tenant."""
        collection_name, extra_filter = RECORD_SOURCES[DataType(data_type)]
        collection = self.db.get_collection(collection_name)
        
        records = []
        async for doc in collection.find({"tenant_id": tenant_id, **extra_filter}):
            record = dict(doc)
            if record.get("id") is None:
                if record.get("_id") is None:
                    logger.warning(f"Skipping {collection_name} record without an id for tenant {tenant_id}")
                    continue
                record["id"] = str(record["_id"])
            records.append(record)
        return records
    
    async def stamp_external_ref(
        self,
        tenant_id: str,
        data_type,
        record: Dict[str, Any],
        external_id: str,
        external_system: str,
    ) -> None:
        """Write external_id/external_system onto the local record. Best effort.
        
        Inventory syncs are not stamped: they share the products collection
        and would overwrite the products sync stamp. Their references live
        only in the mapping table.
        """
        data_type = DataType(data_type)
        if not self.stamp_records or data_type in UNSTAMPED_DATA_TYPES:
            return
        collection_name, _ = RECORD_SOURCES[data_type]
        key = {"_id": record["_id"]} if "_id" in record else {"id": record.get("id")}
        try:
            await self.db.get_collection(collection_name).update_one(
                {**key, "tenant_id": tenant_id},
                {"$set": {"external_id": external_id, "external_system": external_system}},
            )
        except Exception as e:
            logger.warning(f"Could not stamp external reference on {collection_name} {record.get('id')}: {e}")
