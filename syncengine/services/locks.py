"""Single-flight locks for (integration, data type) sync jobs."""

from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import Dict, Optional
import logging
import uuid

import redis.asyncio as redis

from syncengine.core.config import get_settings, Settings
from syncengine.core.exceptions import SyncInProgressError

logger = logging.getLogger(__name__)

# Delete the key only if it still holds our token
RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""


class JobLock(ABC):
    """At most one holder per (integration_id, data_type)."""
    
    @staticmethod
    def key_for(integration_id: str, data_type: str) -> str:
        return f"sync_lock:{integration_id}:{data_type}"
    
    @abstractmethod
    async def acquire(self, key: str) -> Optional[str]:
        """Return an owner token, or None if the key is already held."""
        pass
    
    @abstractmethod
    async def release(self, key: str, token: str) -> None:
        pass
    
    @asynccontextmanager
    async def hold(self, integration_id: str, data_type: str):
        """Hold the lock for a sync, or raise SyncInProgressError."""
        key = self.key_for(integration_id, data_type)
        token = await self.acquire(key)
        if token is None:
            raise SyncInProgressError(
                f"A {data_type} sync is already running for integration {integration_id}"
            )
        try:
            yield token
        finally:
            await self.release(key, token)


class RedisJobLock(JobLock):
    """Lock shared by every process pointed at the same Redis."""
    
    def __init__(self, redis_client, ttl_seconds: int):
        self.redis_client = redis_client
        self.ttl_seconds = ttl_seconds
    
    async def acquire(self, key: str) -> Optional[str]:
        token = uuid.uuid4().hex
        acquired = await self.redis_client.set(key, token, nx=True, ex=self.ttl_seconds)
        return token if acquired else None
    
    async def release(self, key: str, token: str) -> None:
        try:
            await self.redis_client.eval(RELEASE_SCRIPT, 1, key, token)
        except redis.RedisError as e:
            # The TTL frees the key eventually
            logger.warning(f"Failed to release sync lock {key}: {e}")


class LocalJobLock(JobLock):
    """In-process lock for single-instance deployments and tests.
    
    Check-and-set runs without awaiting, so it is atomic on the event loop.
    """
    
    def __init__(self):
        self._held: Dict[str, str] = {}
    
    async def acquire(self, key: str) -> Optional[str]:
        if key in self._held:
            return None
        token = uuid.uuid4().hex
        self._held[key] = token
        return token
    
    async def release(self, key: str, token: str) -> None:
        if self._held.get(key) == token:
            del self._held[key]


_local_lock = LocalJobLock()


def get_job_lock(settings: Optional[Settings] = None) -> JobLock:
    """Lock backend selected by ``lock_backend``."""
    settings = settings or get_settings()
    if settings.lock_backend == "local":
        return _local_lock
    return RedisJobLock(
        redis.from_url(settings.redis_url, decode_responses=True),
        settings.lock_ttl_seconds,
    )
