"""Periodic sync trigger driven by each configuration's sync_frequency."""

from datetime import datetime, timedelta
from typing import Callable, List, Optional
import asyncio
import logging

from syncengine.core.config import get_settings
from syncengine.core.database import COLLECTIONS
from syncengine.core.exceptions import SyncEngineError, SyncInProgressError
from syncengine.models import DataType, IntegrationConfig, SyncFrequency, SyncJob
from syncengine.services.integration_service import IntegrationService
from syncengine.services.sync_service import SyncService

logger = logging.getLogger(__name__)

FREQUENCY_INTERVALS = {
    SyncFrequency.HOURLY: timedelta(hours=1),
    SyncFrequency.DAILY: timedelta(days=1),
    SyncFrequency.WEEKLY: timedelta(weeks=1),
}


def is_due(integration: IntegrationConfig, now: datetime, last_attempt_at: Optional[datetime] = None) -> bool:
    """Whether a scheduled sync should run now. Manual configurations never are.

    The cadence counts from the later of ``last_sync_at`` and the last job
    attempt, so a sync that fails without progress waits a full interval
    before it is retried.
    """
    if not integration.is_active:
        return False
    interval = FREQUENCY_INTERVALS.get(SyncFrequency(integration.sync_frequency))
    if interval is None:
        return False
    last_run = max(
        (t for t in (integration.last_sync_at, last_attempt_at) if t is not None),
        default=None,
    )
    return last_run is None or last_run + interval <= now


class SyncScheduler:
    """Runs due syncs on an interval and reclaims orphaned jobs."""
    
    def __init__(
        self,
        db,
        sync_service_factory: Optional[Callable[[], SyncService]] = None,
        interval_seconds: Optional[float] = None,
    ):
        self.db = db
        self.integrations = IntegrationService(db)
        self.sync_service_factory = sync_service_factory or (lambda: SyncService(db))
        self.interval_seconds = interval_seconds or get_settings().scheduler_interval_seconds
        self._shutdown = False
    
    async def due_integrations(self, now: Optional[datetime] = None) -> List[IntegrationConfig]:
        now = now or datetime.utcnow()
        return [i for i in await self.integrations.list_active_integrations() if is_due(i, now)]
    
    async def last_attempt_at(self, integration_id: str, data_type) -> Optional[datetime]:
        """Start time of the newest job for this integration and data type."""
        cursor = (
            self.db.get_collection(COLLECTIONS["sync_jobs"])
            .find({"integration_id": integration_id, "data_type": DataType(data_type).value})
            .sort("created_at", -1)
            .limit(1)
        )
        async for doc in cursor:
            return doc.get("started_at") or doc.get("created_at")
        return None
    
    async def run_once(self, now: Optional[datetime] = None) -> List[SyncJob]:
        """One scheduling pass. Returns the jobs it ran."""
        service = self.sync_service_factory()
        recovered = await service.recover_orphaned_jobs(now)
        if recovered:
            logger.warning(f"Recovered {len(recovered)} orphaned sync jobs")
        
        now = now or datetime.utcnow()
        jobs = []
        for integration in await self.due_integrations(now):
            for data_type in integration.enabled_data_types():
                if not is_due(integration, now, await self.last_attempt_at(integration.id, data_type)):
                    continue
                try:
                    jobs.append(await service.run_sync(integration.id, data_type))
                except SyncInProgressError:
                    logger.info(f"Skipping {data_type} for integration {integration.id}: sync already running")
                except SyncEngineError as e:
                    logger.warning(f"Scheduled {data_type} sync for integration {integration.id} not started: {e}")
        return jobs
    
    async def run_forever(self):
        """Scheduling loop; stop with ``stop()`` or task cancellation."""
        logger.info("Sync scheduler started")
        
        while not self._shutdown:
            try:
                jobs = await self.run_once()
                if jobs:
                    logger.info(f"Scheduler ran {len(jobs)} sync jobs")
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Scheduler error: {e}")
            
            await asyncio.sleep(self.interval_seconds)
        
        logger.info("Sync scheduler stopped")
    
    def stop(self):
        self._shutdown = True
