"""Synchronization service: runs sync jobs for one integration and data type."""

import asyncio
from contextlib import suppress
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from functools import partial
from typing import Dict, Any, List, Optional, Type
import logging

import httpx

from syncengine.adapters import AdapterRegistry, BaseAdapter
from syncengine.adapters.base import record_id_of
from syncengine.core.config import get_settings
from syncengine.core.database import COLLECTIONS
from syncengine.core.exceptions import (
    ConfigInactiveError,
    ContainedRecordError,
    FatalSyncError,
    NotFoundError,
    SyncCancelledError,
    SyncInProgressError,
    UnsupportedDataTypeError,
    ValidationError,
)
from syncengine.models import (
    AuditAction,
    DataType,
    IntegrationConfig,
    SyncJob,
    SyncJobType,
    SyncStatus,
)
from syncengine.services.audit_service import AuditLogService
from syncengine.services.integration_service import IntegrationService
from syncengine.services.locks import JobLock, get_job_lock
from syncengine.services.mapping_service import MappingStore
from syncengine.services.record_source import TenantRecordSource

logger = logging.getLogger(__name__)


class JobProgress:
    """Counters for a running job, shared by its workers.

    Every update happens under one lock so that
    records_processed == records_successful + records_failed holds for
    every snapshot taken.
    """

    def __init__(self, job: SyncJob, max_recorded_errors: int):
        self.job = job
        self.max_recorded_errors = max_recorded_errors
        self._lock = asyncio.Lock()

    async def record_success(self) -> int:
        async with self._lock:
            self.job.records_processed += 1
            self.job.records_successful += 1
            return self.job.records_processed

    async def record_failure(self, record_id: str, error: str) -> int:
        async with self._lock:
            self.job.records_processed += 1
            self.job.records_failed += 1
            if len(self.job.record_errors) < self.max_recorded_errors:
                self.job.record_errors.append({"record_id": record_id, "error": error})
            return self.job.records_processed

    async def snapshot(self) -> Dict[str, Any]:
        async with self._lock:
            return {
                "records_processed": self.job.records_processed,
                "records_successful": self.job.records_successful,
                "records_failed": self.job.records_failed,
                "record_errors": list(self.job.record_errors),
            }


@dataclass
class JobContext:
    """Everything the workers of one job share."""
    integration: IntegrationConfig
    adapter: BaseAdapter
    job: SyncJob
    progress: JobProgress
    queue: asyncio.Queue
    stop: asyncio.Event = field(default_factory=asyncio.Event)
    cancelled: asyncio.Event = field(default_factory=asyncio.Event)
    flush_lock: asyncio.Lock = field(default_factory=asyncio.Lock)


class SyncService:
    """Orchestrates sync jobs.

    A job pushes every tenant record of one data type through the adapter
    for the integration's external system. Records are processed by a
    bounded pool of workers. A rejected record is counted as failed and the
    job continues. Authentication and connectivity failures abort the job.
    Every job ends ``completed`` or ``failed`` and writes exactly one
    ``sync_started`` and one terminal audit entry.
    """

    def __init__(
        self,
        db,
        audit: Optional[AuditLogService] = None,
        integration_service: Optional[IntegrationService] = None,
        mapping_store: Optional[MappingStore] = None,
        record_source: Optional[TenantRecordSource] = None,
        job_lock: Optional[JobLock] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        adapter_overrides: Optional[Dict[str, Any]] = None,
        cancel_poll_seconds: Optional[float] = None,
    ):
        self.db = db
        self.settings = get_settings()
        self.audit = audit or AuditLogService(db)
        self.integrations = integration_service or IntegrationService(db, self.audit)
        self.mappings = mapping_store or MappingStore(db)
        self.records = record_source or TenantRecordSource(db, self.settings.stamp_local_records)
        self.job_lock = job_lock or get_job_lock(self.settings)
        self.http_client = http_client
        self.adapter_overrides = adapter_overrides
        self.cancel_poll_seconds = (
            cancel_poll_seconds if cancel_poll_seconds is not None else self.settings.cancel_poll_seconds
        )

    def _jobs(self):
        return self.db.get_collection(COLLECTIONS["sync_jobs"])

    async def run_sync(
        self,
        integration_id: str,
        data_type,
        job_type: Optional[SyncJobType] = None,
    ) -> SyncJob:
        """Run a sync job to completion and return its final state.

        Raises NotFoundError, ConfigInactiveError, UnsupportedDataTypeError or
        SyncInProgressError before any job is created. Once the job exists,
        failures end it ``failed`` instead of being raised.
        """
        integration = await self.integrations.get_integration_or_raise(integration_id)
        if not integration.is_active:
            raise ConfigInactiveError(f"Integration {integration_id} is not active")

        try:
            data_type = DataType(data_type)
        except ValueError:
            raise UnsupportedDataTypeError(f"Unknown data type '{data_type}'")
        if data_type not in [DataType(d) for d in integration.enabled_data_types()]:
            raise UnsupportedDataTypeError(
                f"Data type '{data_type.value}' is not enabled for integration {integration_id}"
            )

        adapter_class = AdapterRegistry.get(integration.integration_type)
        if adapter_class is None:
            raise ValidationError(f"No adapter for integration type {integration.integration_type}")

        async with self.job_lock.hold(integration.id, data_type.value):
            await self._ensure_not_running(integration.id, data_type)

            now = datetime.utcnow()
            job = SyncJob(
                integration_id=integration.id,
                tenant_id=integration.tenant_id,
                job_type=job_type or adapter_class.default_job_type,
                data_type=data_type,
                status=SyncStatus.RUNNING,
                started_at=now,
                created_at=now,
            )
            await self._jobs().insert_one(job.model_dump(by_alias=True))
            logger.info(
                f"Started {job.data_type} sync job {job.id} for integration {integration.id}",
                extra={"job_id": job.id, "integration_id": integration.id, "tenant_id": integration.tenant_id},
            )
            await self.audit.append(
                integration.id,
                integration.tenant_id,
                AuditAction.SYNC_STARTED,
                {"data_type": job.data_type, "sync_job_id": job.id, "job_type": job.job_type},
            )

            progress = JobProgress(job, self.settings.max_recorded_record_errors)
            try:
                await self._execute(integration, adapter_class, job, progress)
            except asyncio.CancelledError:
                await asyncio.shield(self._fail_job(integration, job, SyncCancelledError()))
                raise
            except Exception as e:
                return await self._fail_job(integration, job, e)

            return await self._complete_job(integration, job)

    async def _execute(
        self,
        integration: IntegrationConfig,
        adapter_class: Type[BaseAdapter],
        job: SyncJob,
        progress: JobProgress,
    ) -> None:
        mapping_lookup = partial(
            self.mappings.get_external_id, integration.tenant_id, external_system=adapter_class.external_system
        )

        async with adapter_class(
            integration,
            http_client=self.http_client,
            mapping_lookup=mapping_lookup,
            profile_overrides=self.adapter_overrides,
        ) as adapter:
            await adapter.authenticate()
            if adapter.credentials_refreshed:
                await self.integrations.store_refreshed_credentials(integration)

            if not adapter.supports(job.data_type):
                raise FatalSyncError(f"{adapter.display_name} does not support data type '{job.data_type}'")

            records = await self.records.load(integration.tenant_id, job.data_type)
            logger.info(f"Sync job {job.id} loaded {len(records)} {job.data_type} records")

            queue: asyncio.Queue = asyncio.Queue()
            for record in records:
                queue.put_nowait(record)

            ctx = JobContext(integration=integration, adapter=adapter, job=job, progress=progress, queue=queue)
            try:
                await self._run_workers(ctx, len(records))
            finally:
                # Rotated tokens are persisted on failure too
                if adapter.credentials_refreshed:
                    await self.integrations.store_refreshed_credentials(integration)

    async def _run_workers(self, ctx: JobContext, record_count: int) -> None:
        """Drain the queue with a bounded worker pool; re-raise the first fatal error."""
        watcher = asyncio.create_task(self._watch_cancellation(ctx))
        worker_count = max(1, min(ctx.adapter.concurrency, record_count))
        workers = [
            asyncio.create_task(self._worker(ctx, f"{ctx.job.id}-worker-{i}"))
            for i in range(worker_count)
        ]
        try:
            results = await asyncio.gather(*workers, return_exceptions=True)
        finally:
            ctx.stop.set()
            watcher.cancel()
            with suppress(asyncio.CancelledError):
                await watcher

        errors = [result for result in results if isinstance(result, BaseException)]
        if errors:
            raise errors[0]

        # Cancellation that arrived after the last record still ends the job failed
        if ctx.cancelled.is_set():
            raise SyncCancelledError()

    async def _worker(self, ctx: JobContext, worker_name: str) -> None:
        while True:
            if ctx.stop.is_set():
                return
            if ctx.cancelled.is_set():
                ctx.stop.set()
                raise SyncCancelledError()
            try:
                record = ctx.queue.get_nowait()
            except asyncio.QueueEmpty:
                return

            try:
                await self._sync_record(ctx, record)
            except Exception:
                ctx.stop.set()
                raise

    async def _sync_record(self, ctx: JobContext, record: Dict[str, Any]) -> None:
        """Push one record. Contained errors are counted; fatal errors propagate."""
        adapter = ctx.adapter
        tenant_id = ctx.integration.tenant_id
        data_type = ctx.job.data_type
        record_id = record_id_of(record)

        external_id = await self.mappings.get_external_id(
            tenant_id, data_type, record_id, adapter.external_system
        )

        try:
            if external_id:
                push = adapter.upsert(data_type, record, external_id)
            else:
                push = adapter.create(data_type, record)
            ref = await asyncio.wait_for(push, timeout=adapter.record_timeout)
        except FatalSyncError:
            raise
        except asyncio.TimeoutError:
            await self._record_failed(ctx, record_id, f"{adapter.display_name} call timed out after {adapter.record_timeout:g}s")
            return
        except ContainedRecordError as e:
            await self._record_failed(ctx, record_id, str(e))
            return
        except Exception as e:
            logger.error(f"Unexpected error syncing {data_type} record {record_id}: {e}", exc_info=True)
            await self._record_failed(ctx, record_id, str(e) or e.__class__.__name__)
            return

        await self.mappings.upsert(
            tenant_id,
            data_type,
            record_id,
            ref.external_system,
            ref.external_id,
            integration_id=ctx.integration.id,
        )
        await self.records.stamp_external_ref(tenant_id, data_type, record, ref.external_id, ref.external_system)

        processed = await ctx.progress.record_success()
        await self._maybe_flush(ctx, processed)

    async def _record_failed(self, ctx: JobContext, record_id: str, error: str) -> None:
        logger.warning(
            f"Sync job {ctx.job.id} rejected {ctx.job.data_type} record {record_id}: {error}",
            extra={"job_id": ctx.job.id, "record_id": record_id},
        )
        processed = await ctx.progress.record_failure(record_id, error)
        await self._maybe_flush(ctx, processed)

    async def _maybe_flush(self, ctx: JobContext, processed: int) -> None:
        if processed % max(1, self.settings.progress_flush_every) == 0:
            await self._flush_progress(ctx)

    async def _flush_progress(self, ctx: JobContext) -> None:
        """Persist counters. Serialized so the stored counters never move backwards."""
        async with ctx.flush_lock:
            snapshot = await ctx.progress.snapshot()
            await self._jobs().update_one({"_id": ctx.job.id}, {"$set": snapshot})

    async def _watch_cancellation(self, ctx: JobContext) -> None:
        """Poll the job document for a cancel request."""
        while not ctx.stop.is_set():
            doc = await self._jobs().find_one({"_id": ctx.job.id})
            if doc and doc.get("cancel_requested"):
                logger.info(f"Cancellation requested for sync job {ctx.job.id}")
                ctx.cancelled.set()
                return
            await asyncio.sleep(self.cancel_poll_seconds)

    async def _complete_job(self, integration: IntegrationConfig, job: SyncJob) -> SyncJob:
        now = datetime.utcnow()
        job.status = SyncStatus.COMPLETED.value
        job.completed_at = now
        await self._save_job(job)
        await self._mark_synced(integration, now)

        await self.audit.append(
            integration.id,
            integration.tenant_id,
            AuditAction.SYNC_COMPLETED,
            {
                "data_type": job.data_type,
                "sync_job_id": job.id,
                "records_processed": job.records_processed,
                "records_successful": job.records_successful,
                "records_failed": job.records_failed,
            },
        )
        logger.info(
            f"Sync job {job.id} completed: {job.records_successful}/{job.records_processed} records synced",
            extra={"job_id": job.id, "integration_id": integration.id},
        )
        return job

    async def _fail_job(self, integration: IntegrationConfig, job: SyncJob, error: BaseException) -> SyncJob:
        message = str(error) or error.__class__.__name__
        now = datetime.utcnow()
        job.status = SyncStatus.FAILED.value
        job.completed_at = now
        job.error_message = message

        try:
            await self._save_job(job)
        except Exception as e:
            logger.error(f"Could not persist failed state of sync job {job.id}: {e}")

        if job.records_processed > 0:
            await self._mark_synced(integration, now)

        await self.audit.append(
            integration.id,
            integration.tenant_id,
            AuditAction.SYNC_FAILED,
            {
                "data_type": job.data_type,
                "sync_job_id": job.id,
                "error": message,
                "records_processed": job.records_processed,
                "records_successful": job.records_successful,
                "records_failed": job.records_failed,
            },
        )
        logger.error(
            f"Sync job {job.id} failed: {message}",
            extra={"job_id": job.id, "integration_id": integration.id},
        )
        return job

    async def _save_job(self, job: SyncJob) -> None:
        doc = job.model_dump(by_alias=True)
        doc.pop("_id")
        # cancel_requested is written only by cancel_sync_job
        doc.pop("cancel_requested")
        await self._jobs().update_one({"_id": job.id}, {"$set": doc})

    async def _mark_synced(self, integration: IntegrationConfig, synced_at: datetime) -> None:
        try:
            await self.integrations.mark_synced(integration.id, synced_at)
        except Exception as e:
            logger.error(f"Failed to update last_sync_at for integration {integration.id}: {e}")

    async def _ensure_not_running(self, integration_id: str, data_type: DataType) -> None:
        """Reject a second job while a live one is running; reclaim an orphaned one."""
        doc = await self._jobs().find_one({
            "integration_id": integration_id,
            "data_type": data_type.value,
            "status": SyncStatus.RUNNING.value,
        })
        if not doc:
            return

        job = SyncJob.model_validate(doc)
        if self._is_orphaned(job, datetime.utcnow()):
            await self._fail_orphan(job)
            return
        raise SyncInProgressError(
            f"A {data_type.value} sync is already running for integration {integration_id} (job {job.id})"
        )

    def _is_orphaned(self, job: SyncJob, now: datetime) -> bool:
        deadline = now - timedelta(seconds=self.settings.job_liveness_seconds)
        return job.started_at is None or job.started_at < deadline

    async def _fail_orphan(self, job: SyncJob) -> bool:
        message = "Sync job exceeded liveness deadline"
        result = await self._jobs().update_one(
            {"_id": job.id, "status": SyncStatus.RUNNING.value},
            {"$set": {
                "status": SyncStatus.FAILED.value,
                "completed_at": datetime.utcnow(),
                "error_message": message,
            }},
        )
        if result.modified_count == 0:
            return False

        logger.warning(f"Marked orphaned sync job {job.id} as failed")
        await self.audit.append(
            job.integration_id,
            job.tenant_id,
            AuditAction.SYNC_FAILED,
            {
                "data_type": job.data_type,
                "sync_job_id": job.id,
                "error": message,
                "records_processed": job.records_processed,
                "records_successful": job.records_successful,
                "records_failed": job.records_failed,
                "recovered": True,
            },
        )
        return True

    async def recover_orphaned_jobs(self, now: Optional[datetime] = None) -> List[SyncJob]:
        """Fail running jobs whose start is older than the liveness deadline."""
        now = now or datetime.utcnow()
        deadline = now - timedelta(seconds=self.settings.job_liveness_seconds)
        cursor = self._jobs().find({
            "status": SyncStatus.RUNNING.value,
            "started_at": {"$lt": deadline},
        })

        stale = []
        async for doc in cursor:
            stale.append(SyncJob.model_validate(doc))

        recovered = []
        for job in stale:
            if await self._fail_orphan(job):
                recovered.append(job)
        return recovered

    async def get_sync_job(self, job_id: str) -> Optional[SyncJob]:
        doc = await self._jobs().find_one({"_id": job_id})
        return SyncJob.model_validate(doc) if doc else None

    async def get_sync_jobs(self, integration_id: str, limit: Optional[int] = None) -> List[SyncJob]:
        """Jobs for an integration, newest first."""
        limit = limit or self.settings.sync_jobs_page_size
        cursor = self._jobs().find({"integration_id": integration_id}).sort("created_at", -1).limit(limit)

        jobs = []
        async for doc in cursor:
            jobs.append(SyncJob.model_validate(doc))
        return jobs

    async def cancel_sync_job(self, job_id: str) -> SyncJob:
        """Ask a running job to stop after its in-flight records. No-op on terminal jobs."""
        job = await self.get_sync_job(job_id)
        if job is None:
            raise NotFoundError(f"Sync job {job_id} not found")
        if job.is_terminal:
            return job

        await self._jobs().update_one({"_id": job_id}, {"$set": {"cancel_requested": True}})
        job.cancel_requested = True
        logger.info(f"Cancel requested for sync job {job_id}")
        return job
