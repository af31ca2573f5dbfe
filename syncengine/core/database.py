"""Database connections and utilities."""

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING
from typing import Optional
import logging

from syncengine.core.config import get_settings

logger = logging.getLogger(__name__)


class Database:
    """Database connection manager."""
    
    client: Optional[AsyncIOMotorClient] = None
    db: Optional[AsyncIOMotorDatabase] = None
    
    async def connect(self):
        """Connect to MongoDB."""
        settings = get_settings()
        try:
            self.client = AsyncIOMotorClient(settings.mongodb_url)
            self.db = self.client[settings.mongodb_db_name]
            
            # Test connection
            await self.client.admin.command("ping")
            logger.info("Connected to MongoDB")
        except Exception as e:
            logger.error(f"Failed to connect to MongoDB: {e}")
            raise
    
    async def disconnect(self):
        """Disconnect from MongoDB."""
        if self.client:
            self.client.close()
            logger.info("Disconnected from MongoDB")
    
    def get_collection(self, name: str):
        """Get a collection."""
        if self.db is None:
            raise RuntimeError("Database not connected")
        return self.db[name]
    
    async def ensure_indexes(self):
        """Create the indexes the sync engine relies on."""
        mappings = self.get_collection(COLLECTIONS["mappings"])
        await mappings.create_index(
            [
                ("tenant_id", ASCENDING),
                ("local_entity_type", ASCENDING),
                ("local_entity_id", ASCENDING),
                ("external_system", ASCENDING),
            ],
            unique=True,
            name="uniq_mapping_key",
        )
        
        jobs = self.get_collection(COLLECTIONS["sync_jobs"])
        await jobs.create_index([("integration_id", ASCENDING), ("created_at", DESCENDING)])
        await jobs.create_index([("status", ASCENDING), ("started_at", ASCENDING)])
        
        audit_logs = self.get_collection(COLLECTIONS["audit_logs"])
        await audit_logs.create_index([("integration_id", ASCENDING), ("created_at", DESCENDING)])
        
        integrations = self.get_collection(COLLECTIONS["integrations"])
        await integrations.create_index([("tenant_id", ASCENDING), ("created_at", DESCENDING)])
        
        logger.info("MongoDB indexes ensured")


# Global database instance
database = Database()


# Collection names
COLLECTIONS = {
    "integrations": "integrations",
    "sync_jobs": "sync_jobs",
    "mappings": "external_record_mappings",
    "audit_logs": "integration_audit_logs",
}

# Tenant data collections read by the record source
TENANT_COLLECTIONS = {
    "customers": "customers",
    "products": "products",
    "invoices": "invoices",
    "payments": "payments",
    "orders": "orders",
    "purchases": "purchases",
}
