"""Pytest configuration and fixtures for sync engine tests."""

import copy
import os
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

os.environ.setdefault("ENCRYPTION_KEY", "test-encryption-key")
os.environ.setdefault("LOCK_BACKEND", "local")

import httpx
import pytest
from pymongo.errors import DuplicateKeyError

from syncengine.services import (
    AuditLogService,
    IntegrationService,
    LocalJobLock,
    MappingStore,
    SyncService,
)


# Adapter profile overrides: no backoff sleeps, no rate limiting
FAST_ADAPTER_PROFILE = {
    "retry_multiplier": 0,
    "retry_wait_min": 0,
    "retry_wait_max": 0,
    "rate_limit": {"calls": 10000, "window": 1},
}

CUSTOM_BASE_URL = "https://hooks.example.com/api"


@dataclass
class UpdateResult:
    matched_count: int
    modified_count: int
    upserted_id: Any = None


@dataclass
class DeleteResult:
    deleted_count: int


@dataclass
class InsertOneResult:
    inserted_id: Any


def _matches(doc: Dict[str, Any], filters: Dict[str, Any]) -> bool:
    for key, condition in filters.items():
        value = doc.get(key)
        if isinstance(condition, dict) and any(k.startswith("$") for k in condition):
            for op, operand in condition.items():
                if op == "$lt" and not (value is not None and value < operand):
                    return False
                if op == "$lte" and not (value is not None and value <= operand):
                    return False
                if op == "$gt" and not (value is not None and value > operand):
                    return False
                if op == "$gte" and not (value is not None and value >= operand):
                    return False
                if op == "$in" and value not in operand:
                    return False
                if op == "$ne" and value == operand:
                    return False
        elif value != condition:
            return False
    return True


class FakeCursor:
    """Async cursor over a snapshot of matching documents."""

    def __init__(self, docs: List[Dict[str, Any]]):
        self._docs = docs

    def sort(self, key: str, direction: int = 1):
        self._docs.sort(key=lambda d: (d.get(key) is None, d.get(key)), reverse=direction < 0)
        return self

    def limit(self, count: int):
        if count:
            self._docs = self._docs[:count]
        return self

    def __aiter__(self):
        self._iter = iter(self._docs)
        return self

    async def __anext__(self):
        try:
            return next(self._iter)
        except StopIteration:
            raise StopAsyncIteration


class FakeCollection:
    """In-memory stand-in for a Motor collection."""

    def __init__(self, name: str):
        self.name = name
        self.docs: List[Dict[str, Any]] = []

    async def insert_one(self, doc: Dict[str, Any]) -> InsertOneResult:
        doc = copy.deepcopy(doc)
        doc.setdefault("_id", str(uuid.uuid4()))
        if any(existing["_id"] == doc["_id"] for existing in self.docs):
            raise DuplicateKeyError(f"duplicate _id {doc['_id']}")
        self.docs.append(doc)
        return InsertOneResult(inserted_id=doc["_id"])

    async def find_one(self, filters: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        for doc in self.docs:
            if _matches(doc, filters):
                return copy.deepcopy(doc)
        return None

    def find(self, filters: Optional[Dict[str, Any]] = None) -> FakeCursor:
        return FakeCursor([copy.deepcopy(d) for d in self.docs if _matches(d, filters or {})])

    async def update_one(self, filters: Dict[str, Any], update: Dict[str, Any], upsert: bool = False) -> UpdateResult:
        for doc in self.docs:
            if _matches(doc, filters):
                doc.update(copy.deepcopy(update.get("$set", {})))
                for key, amount in update.get("$inc", {}).items():
                    doc[key] = doc.get(key, 0) + amount
                return UpdateResult(matched_count=1, modified_count=1)

        if not upsert:
            return UpdateResult(matched_count=0, modified_count=0)

        doc = {k: v for k, v in filters.items() if not isinstance(v, dict)}
        doc.update(copy.deepcopy(update.get("$setOnInsert", {})))
        doc.update(copy.deepcopy(update.get("$set", {})))
        for key, amount in update.get("$inc", {}).items():
            doc[key] = doc.get(key, 0) + amount
        result = await self.insert_one(doc)
        return UpdateResult(matched_count=0, modified_count=0, upserted_id=result.inserted_id)

    async def delete_one(self, filters: Dict[str, Any]) -> DeleteResult:
        for i, doc in enumerate(self.docs):
            if _matches(doc, filters):
                del self.docs[i]
                return DeleteResult(deleted_count=1)
        return DeleteResult(deleted_count=0)

    async def count_documents(self, filters: Dict[str, Any]) -> int:
        return len([d for d in self.docs if _matches(d, filters)])

    async def create_index(self, *args, **kwargs) -> str:
        return kwargs.get("name", "index")


class FakeDatabase:
    """Drop-in for ``syncengine.core.database.Database``."""

    def __init__(self):
        self.collections: Dict[str, FakeCollection] = {}

    def get_collection(self, name: str) -> FakeCollection:
        if name not in self.collections:
            self.collections[name] = FakeCollection(name)
        return self.collections[name]


def mock_client(handler: Callable[[httpx.Request], httpx.Response]) -> httpx.AsyncClient:
    """HTTP client whose requests are answered by ``handler``."""
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.fixture
def fake_db():
    """Empty in-memory database."""
    return FakeDatabase()


@pytest.fixture
def audit_service(fake_db):
    return AuditLogService(fake_db)


@pytest.fixture
def integration_service(fake_db, audit_service):
    return IntegrationService(fake_db, audit_service)


@pytest.fixture
def mapping_store(fake_db):
    return MappingStore(fake_db)


@pytest.fixture
def job_lock():
    return LocalJobLock()


@pytest.fixture
def make_sync_service(fake_db, audit_service, integration_service, mapping_store, job_lock):
    """Build a SyncService whose adapters talk to ``handler``."""

    def factory(handler: Callable[[httpx.Request], httpx.Response], **kwargs) -> SyncService:
        options = {
            "audit": audit_service,
            "integration_service": integration_service,
            "mapping_store": mapping_store,
            "job_lock": job_lock,
            "http_client": mock_client(handler),
            "adapter_overrides": dict(FAST_ADAPTER_PROFILE),
            "cancel_poll_seconds": 0.01,
        }
        options.update(kwargs)
        return SyncService(fake_db, **options)

    return factory


def custom_config(**overrides) -> Dict[str, Any]:
    """Integration payload for the custom webhook adapter."""
    config_data = {
        "base_url": CUSTOM_BASE_URL,
        "api_key": "hook-secret",
        "supported_data_types": ["customers", "products"],
    }
    config_data.update(overrides.pop("config_data", {}))
    data = {
        "name": "Webhook",
        "integration_type": "custom",
        "config_data": config_data,
    }
    data.update(overrides)
    return data


def seed_records(fake_db: FakeDatabase, collection: str, tenant_id: str, count: int, **fields) -> List[Dict[str, Any]]:
    """Insert ``count`` tenant records with ids rec-1..rec-N."""
    docs = []
    for i in range(1, count + 1):
        doc = {"_id": f"rec-{i}", "id": f"rec-{i}", "tenant_id": tenant_id, "name": f"Record {i}"}
        doc.update(fields)
        fake_db.get_collection(collection).docs.append(doc)
        docs.append(doc)
    return docs
