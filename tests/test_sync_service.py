"""Tests for the sync orchestrator."""

import asyncio
import json
from datetime import datetime, timedelta
from unittest.mock import AsyncMock, patch

import httpx
import pytest
import pytest_asyncio

from conftest import custom_config, seed_records
from syncengine.core.database import COLLECTIONS
from syncengine.core.exceptions import (
    ConfigInactiveError,
    NotFoundError,
    SyncInProgressError,
    UnsupportedDataTypeError,
)
from syncengine.models import SyncJob, SyncStatus

TENANT = "tenant-1"


def audit_actions(fake_db, integration_id):
    return [
        doc["action"]
        for doc in fake_db.get_collection(COLLECTIONS["audit_logs"]).docs
        if doc["integration_id"] == integration_id and doc["action"].startswith("sync_")
    ]


def mappings(fake_db):
    return fake_db.get_collection(COLLECTIONS["mappings"]).docs


def echo_handler(request: httpx.Request) -> httpx.Response:
    """Custom endpoint that accepts every record."""
    if request.method == "PUT":
        return httpx.Response(200, json={"id": request.url.path.rsplit("/", 1)[-1]})
    record = json.loads(request.content)
    return httpx.Response(201, json={"id": f"ext-{record['id']}"})


@pytest_asyncio.fixture
async def integration(integration_service):
    return await integration_service.create_integration(TENANT, custom_config())


class TestRunSync:
    """Job lifecycle and counters."""

    @pytest.mark.asyncio
    async def test_all_records_succeed(self, fake_db, integration, integration_service, make_sync_service):
        """Three customers, empty mapping table, adapter always succeeds."""
        seed_records(fake_db, "customers", TENANT, 3)
        service = make_sync_service(echo_handler)

        job = await service.run_sync(integration.id, "customers")

        assert job.status == SyncStatus.COMPLETED.value
        assert (job.records_processed, job.records_successful, job.records_failed) == (3, 3, 0)
        assert job.started_at is not None and job.completed_at is not None
        assert len(mappings(fake_db)) == 3
        assert {m["external_identifier"] for m in mappings(fake_db)} == {"ext-rec-1", "ext-rec-2", "ext-rec-3"}

        stored = await integration_service.get_integration(integration.id)
        assert stored.last_sync_at is not None
        assert audit_actions(fake_db, integration.id) == ["sync_started", "sync_completed"]

    @pytest.mark.asyncio
    async def test_contained_error_rejects_one_record(self, fake_db, integration, make_sync_service):
        """Customer #2 is rejected; the job still completes."""
        seed_records(fake_db, "customers", TENANT, 3)

        def handler(request):
            if json.loads(request.content)["id"] == "rec-2":
                return httpx.Response(400, json={"error": "invalid email"})
            return echo_handler(request)

        job = await make_sync_service(handler).run_sync(integration.id, "customers")

        assert job.status == SyncStatus.COMPLETED.value
        assert (job.records_processed, job.records_successful, job.records_failed) == (3, 2, 1)
        assert len(mappings(fake_db)) == 2
        assert job.record_errors[0]["record_id"] == "rec-2"
        assert "HTTP 400" in job.record_errors[0]["error"]

    @pytest.mark.asyncio
    async def test_expired_credentials_fail_job(self, fake_db, integration_service, make_sync_service):
        """Token refresh rejected before any record is processed."""
        integration = await integration_service.create_integration(TENANT, {
            "integration_type": "accounting_platform",
            "config_data": {
                "client_id": "client",
                "client_secret": "secret",
                "refresh_token": "revoked-token",
                "realm_id": "9130",
            },
        })
        seed_records(fake_db, "customers", TENANT, 2)

        def handler(request):
            assert "oauth" in request.url.host
            return httpx.Response(400, json={"error": "invalid_grant"})

        job = await make_sync_service(handler).run_sync(integration.id, "customers")

        assert job.status == SyncStatus.FAILED.value
        assert job.records_processed == 0
        assert "credentials" in job.error_message
        assert audit_actions(fake_db, integration.id) == ["sync_started", "sync_failed"]
        stored = await integration_service.get_integration(integration.id)
        assert stored.last_sync_at is None

    @pytest.mark.asyncio
    async def test_token_rotated_mid_job_is_kept_when_job_fails(self, fake_db, integration_service, make_sync_service):
        integration = await integration_service.create_integration(TENANT, {
            "integration_type": "accounting_platform",
            "config_data": {
                "client_id": "client",
                "client_secret": "secret",
                "refresh_token": "refresh",
                "access_token": "stale",
                "token_expires_at": datetime.utcnow() + timedelta(hours=1),
                "realm_id": "9130",
            },
        })
        seed_records(fake_db, "customers", TENANT, 1)

        def handler(request):
            if "oauth" in request.url.host:
                return httpx.Response(200, json={"access_token": "fresh", "refresh_token": "rotated"})
            if request.headers["Authorization"] == "Bearer stale":
                return httpx.Response(401)
            return httpx.Response(403)

        job = await make_sync_service(handler).run_sync(integration.id, "customers")

        assert job.status == SyncStatus.FAILED.value
        stored = await integration_service.get_integration(integration.id)
        assert stored.config_data.access_token == "fresh"
        assert stored.config_data.refresh_token == "rotated"

    @pytest.mark.asyncio
    async def test_rerun_updates_instead_of_duplicating(self, fake_db, integration, make_sync_service):
        seed_records(fake_db, "customers", TENANT, 3)
        methods = []

        def handler(request):
            methods.append(request.method)
            return echo_handler(request)

        service = make_sync_service(handler)
        await service.run_sync(integration.id, "customers")
        second = await service.run_sync(integration.id, "customers")

        assert second.status == SyncStatus.COMPLETED.value
        assert methods == ["POST"] * 3 + ["PUT"] * 3
        assert len(mappings(fake_db)) == 3

    @pytest.mark.asyncio
    async def test_fatal_error_after_some_records(self, fake_db, integration, make_sync_service):
        seed_records(fake_db, "customers", TENANT, 5)
        calls = {"count": 0}

        def handler(request):
            calls["count"] += 1
            if calls["count"] > 2:
                raise httpx.ConnectError("connection refused", request=request)
            return echo_handler(request)

        service = make_sync_service(handler, adapter_overrides={
            "concurrency": 1,
            "retry_attempts": 2,
            "retry_multiplier": 0,
            "retry_wait_min": 0,
            "retry_wait_max": 0,
            "rate_limit": {"calls": 10000, "window": 1},
        })
        job = await service.run_sync(integration.id, "customers")

        assert job.status == SyncStatus.FAILED.value
        assert job.records_processed == 2
        assert job.records_successful == 2
        assert "unreachable" in job.error_message
        assert len(mappings(fake_db)) == 2
        assert audit_actions(fake_db, integration.id) == ["sync_started", "sync_failed"]

    @pytest.mark.asyncio
    async def test_audit_outage_does_not_fail_sync(self, fake_db, integration, integration_service, make_sync_service):
        seed_records(fake_db, "customers", TENANT, 4)
        audit_logs = fake_db.get_collection(COLLECTIONS["audit_logs"])
        entries_before = len(audit_logs.docs)
        service = make_sync_service(echo_handler)

        with patch.object(audit_logs, "insert_one", AsyncMock(side_effect=RuntimeError("audit store down"))):
            job = await service.run_sync(integration.id, "customers")

        assert job.status == SyncStatus.COMPLETED.value
        assert (job.records_processed, job.records_successful, job.records_failed) == (4, 4, 0)
        stored_job = await service.get_sync_job(job.id)
        assert stored_job.status == SyncStatus.COMPLETED.value
        assert stored_job.records_successful == 4
        assert len(mappings(fake_db)) == 4
        assert (await integration_service.get_integration(integration.id)).last_sync_at is not None
        assert len(audit_logs.docs) == entries_before

    @pytest.mark.asyncio
    async def test_partial_failure_still_updates_last_sync_at(
        self, fake_db, integration, integration_service, make_sync_service
    ):
        seed_records(fake_db, "customers", TENANT, 3)
        calls = {"count": 0}

        def handler(request):
            calls["count"] += 1
            if calls["count"] > 1:
                return httpx.Response(401)
            return echo_handler(request)

        service = make_sync_service(handler, adapter_overrides={
            "concurrency": 1,
            "rate_limit": {"calls": 10000, "window": 1},
        })
        job = await service.run_sync(integration.id, "customers")

        assert job.status == SyncStatus.FAILED.value
        assert job.records_processed == 1
        stored = await integration_service.get_integration(integration.id)
        assert stored.last_sync_at is not None

    @pytest.mark.asyncio
    async def test_counters_consistent_under_concurrency(self, fake_db, integration, make_sync_service):
        seed_records(fake_db, "customers", TENANT, 40)

        async def handler(request):
            await asyncio.sleep(0)
            record_id = json.loads(request.content)["id"]
            if int(record_id.split("-")[1]) % 3 == 0:
                return httpx.Response(422, json={"error": "rejected"})
            return echo_handler(request)

        job = await make_sync_service(handler).run_sync(integration.id, "customers")

        assert job.records_processed == 40
        assert job.records_failed == 13
        assert job.records_processed == job.records_successful + job.records_failed

        stored = await fake_db.get_collection(COLLECTIONS["sync_jobs"]).find_one({"_id": job.id})
        assert stored["records_processed"] == stored["records_successful"] + stored["records_failed"] == 40

    @pytest.mark.asyncio
    async def test_server_error_retried_then_succeeds(self, fake_db, integration, make_sync_service):
        seed_records(fake_db, "customers", TENANT, 1)
        calls = {"count": 0}

        def handler(request):
            calls["count"] += 1
            if calls["count"] == 1:
                return httpx.Response(503)
            return echo_handler(request)

        job = await make_sync_service(handler).run_sync(integration.id, "customers")

        assert calls["count"] == 2
        assert job.records_successful == 1

    @pytest.mark.asyncio
    async def test_rate_limit_exhausted_is_contained(self, fake_db, integration, make_sync_service):
        seed_records(fake_db, "customers", TENANT, 2)

        job = await make_sync_service(lambda request: httpx.Response(429)).run_sync(integration.id, "customers")

        assert job.status == SyncStatus.COMPLETED.value
        assert job.records_failed == 2

    @pytest.mark.asyncio
    async def test_slow_adapter_call_is_contained(self, fake_db, integration, make_sync_service):
        seed_records(fake_db, "customers", TENANT, 1)

        async def handler(request):
            await asyncio.sleep(1)
            return echo_handler(request)

        service = make_sync_service(handler, adapter_overrides={
            "timeout": 0.05,
            "retry_wait_min": 0,
            "retry_wait_max": 0,
            "rate_limit": {"calls": 10000, "window": 1},
        })
        job = await service.run_sync(integration.id, "customers")

        assert job.status == SyncStatus.COMPLETED.value
        assert job.records_failed == 1
        assert "timed out" in job.record_errors[0]["error"]

    @pytest.mark.asyncio
    async def test_timed_out_request_is_retried_within_record_budget(self, fake_db, integration, make_sync_service):
        seed_records(fake_db, "customers", TENANT, 1)
        attempts = []

        async def handler(request):
            attempts.append(request.url.path)
            if len(attempts) == 1:
                await asyncio.sleep(0.2)
                raise httpx.ReadTimeout("read timed out", request=request)
            return echo_handler(request)

        service = make_sync_service(handler, adapter_overrides={
            "timeout": 0.2,
            "retry_attempts": 3,
            "retry_multiplier": 0,
            "retry_wait_min": 0,
            "retry_wait_max": 0,
            "rate_limit": {"calls": 10000, "window": 1},
        })
        job = await service.run_sync(integration.id, "customers")

        assert len(attempts) == 2
        assert job.status == SyncStatus.COMPLETED.value
        assert (job.records_successful, job.records_failed) == (1, 0)

    @pytest.mark.asyncio
    async def test_mapping_store_failure_fails_job(self, fake_db, integration, mapping_store, make_sync_service):
        seed_records(fake_db, "customers", TENANT, 2)
        service = make_sync_service(echo_handler)

        with patch.object(mapping_store, "upsert", AsyncMock(side_effect=RuntimeError("mongo down"))):
            job = await service.run_sync(integration.id, "customers")

        assert job.status == SyncStatus.FAILED.value
        assert "mongo down" in job.error_message
        assert audit_actions(fake_db, integration.id) == ["sync_started", "sync_failed"]

    @pytest.mark.asyncio
    async def test_empty_record_set_completes(self, fake_db, integration, make_sync_service):
        job = await make_sync_service(echo_handler).run_sync(integration.id, "customers")

        assert job.status == SyncStatus.COMPLETED.value
        assert job.records_processed == 0

    @pytest.mark.asyncio
    async def test_local_record_stamped_with_external_ref(self, fake_db, integration, make_sync_service):
        seed_records(fake_db, "customers", TENANT, 1)

        await make_sync_service(echo_handler).run_sync(integration.id, "customers")

        customer = fake_db.get_collection("customers").docs[0]
        assert customer["external_id"] == "ext-rec-1"
        assert customer["external_system"] == "custom"

    @pytest.mark.asyncio
    async def test_other_tenants_records_are_not_synced(self, fake_db, integration, make_sync_service):
        seed_records(fake_db, "customers", TENANT, 2)
        fake_db.get_collection("customers").docs.append(
            {"_id": "foreign", "id": "foreign", "tenant_id": "tenant-2", "name": "Other"}
        )

        job = await make_sync_service(echo_handler).run_sync(integration.id, "customers")

        assert job.records_processed == 2


class TestPreconditions:
    """Requests rejected before a job is created."""

    @pytest.mark.asyncio
    async def test_unknown_integration(self, make_sync_service):
        with pytest.raises(NotFoundError):
            await make_sync_service(echo_handler).run_sync("missing", "customers")

    @pytest.mark.asyncio
    async def test_inactive_integration(self, fake_db, integration_service, make_sync_service):
        integration = await integration_service.create_integration(TENANT, custom_config(is_active=False))

        with pytest.raises(ConfigInactiveError):
            await make_sync_service(echo_handler).run_sync(integration.id, "customers")
        assert fake_db.get_collection(COLLECTIONS["sync_jobs"]).docs == []

    @pytest.mark.asyncio
    async def test_data_type_not_enabled(self, integration, make_sync_service):
        with pytest.raises(UnsupportedDataTypeError):
            await make_sync_service(echo_handler).run_sync(integration.id, "invoices")

    @pytest.mark.asyncio
    async def test_unknown_data_type(self, integration, make_sync_service):
        with pytest.raises(UnsupportedDataTypeError):
            await make_sync_service(echo_handler).run_sync(integration.id, "widgets")


class TestMutualExclusion:
    """At most one running job per integration and data type."""

    @pytest.mark.asyncio
    async def test_held_lock_rejects_second_sync(self, fake_db, integration, job_lock, make_sync_service):
        service = make_sync_service(echo_handler)

        async with job_lock.hold(integration.id, "customers"):
            with pytest.raises(SyncInProgressError):
                await service.run_sync(integration.id, "customers")

        assert fake_db.get_collection(COLLECTIONS["sync_jobs"]).docs == []

    @pytest.mark.asyncio
    async def test_other_data_type_not_blocked(self, fake_db, integration, job_lock, make_sync_service):
        seed_records(fake_db, "products", TENANT, 1)
        service = make_sync_service(echo_handler)

        async with job_lock.hold(integration.id, "customers"):
            job = await service.run_sync(integration.id, "products")

        assert job.status == SyncStatus.COMPLETED.value

    @pytest.mark.asyncio
    async def test_concurrent_requests_one_wins(self, fake_db, integration, make_sync_service):
        seed_records(fake_db, "customers", TENANT, 3)

        async def handler(request):
            await asyncio.sleep(0.01)
            return echo_handler(request)

        service = make_sync_service(handler)
        results = await asyncio.gather(
            service.run_sync(integration.id, "customers"),
            service.run_sync(integration.id, "customers"),
            return_exceptions=True,
        )

        jobs = [r for r in results if isinstance(r, SyncJob)]
        errors = [r for r in results if isinstance(r, SyncInProgressError)]
        assert len(jobs) == 1 and len(errors) == 1
        assert len(fake_db.get_collection(COLLECTIONS["sync_jobs"]).docs) == 1

    @pytest.mark.asyncio
    async def test_live_running_job_in_store_rejects_sync(self, fake_db, integration, make_sync_service):
        running = SyncJob(
            integration_id=integration.id,
            tenant_id=TENANT,
            data_type="customers",
            status="running",
            started_at=datetime.utcnow(),
        )
        await fake_db.get_collection(COLLECTIONS["sync_jobs"]).insert_one(running.model_dump(by_alias=True))

        with pytest.raises(SyncInProgressError):
            await make_sync_service(echo_handler).run_sync(integration.id, "customers")

    @pytest.mark.asyncio
    async def test_orphaned_running_job_is_reclaimed(self, fake_db, integration, make_sync_service):
        orphan = SyncJob(
            integration_id=integration.id,
            tenant_id=TENANT,
            data_type="customers",
            status="running",
            started_at=datetime.utcnow() - timedelta(days=1),
        )
        await fake_db.get_collection(COLLECTIONS["sync_jobs"]).insert_one(orphan.model_dump(by_alias=True))

        job = await make_sync_service(echo_handler).run_sync(integration.id, "customers")

        assert job.status == SyncStatus.COMPLETED.value
        stored = await fake_db.get_collection(COLLECTIONS["sync_jobs"]).find_one({"_id": orphan.id})
        assert stored["status"] == SyncStatus.FAILED.value


class TestCancellation:

    @pytest.mark.asyncio
    async def test_cancel_stops_between_records(self, fake_db, integration, make_sync_service):
        seed_records(fake_db, "customers", TENANT, 5)
        jobs = fake_db.get_collection(COLLECTIONS["sync_jobs"])

        async def handler(request):
            for doc in jobs.docs:
                doc["cancel_requested"] = True
            await asyncio.sleep(0.1)
            return echo_handler(request)

        service = make_sync_service(handler, adapter_overrides={
            "concurrency": 1,
            "rate_limit": {"calls": 10000, "window": 1},
        })
        job = await service.run_sync(integration.id, "customers")

        assert job.status == SyncStatus.FAILED.value
        assert job.error_message == "Sync job cancelled"
        assert job.records_processed == 1
        assert audit_actions(fake_db, integration.id) == ["sync_started", "sync_failed"]

    @pytest.mark.asyncio
    async def test_cancel_terminal_job_is_noop(self, fake_db, integration, make_sync_service):
        service = make_sync_service(echo_handler)
        job = await service.run_sync(integration.id, "customers")

        result = await service.cancel_sync_job(job.id)

        assert result.status == SyncStatus.COMPLETED.value
        assert result.cancel_requested is False

    @pytest.mark.asyncio
    async def test_cancel_unknown_job(self, make_sync_service):
        with pytest.raises(NotFoundError):
            await make_sync_service(echo_handler).cancel_sync_job("missing")


class TestJobQueries:

    @pytest.mark.asyncio
    async def test_jobs_newest_first_and_limited(self, fake_db, integration, make_sync_service):
        collection = fake_db.get_collection(COLLECTIONS["sync_jobs"])
        base = datetime(2024, 1, 1)
        for i in range(60):
            job = SyncJob(
                integration_id=integration.id,
                tenant_id=TENANT,
                data_type="customers",
                status="completed",
                created_at=base + timedelta(minutes=i),
            )
            await collection.insert_one(job.model_dump(by_alias=True))

        jobs = await make_sync_service(echo_handler).get_sync_jobs(integration.id)

        assert len(jobs) == 50
        assert jobs[0].created_at == base + timedelta(minutes=59)
        assert jobs[0].created_at > jobs[-1].created_at

    @pytest.mark.asyncio
    async def test_recover_orphaned_jobs(self, fake_db, integration, make_sync_service):
        collection = fake_db.get_collection(COLLECTIONS["sync_jobs"])
        stale = SyncJob(
            integration_id=integration.id,
            tenant_id=TENANT,
            data_type="customers",
            status="running",
            started_at=datetime.utcnow() - timedelta(hours=3),
        )
        fresh = SyncJob(
            integration_id=integration.id,
            tenant_id=TENANT,
            data_type="products",
            status="running",
            started_at=datetime.utcnow(),
        )
        await collection.insert_one(stale.model_dump(by_alias=True))
        await collection.insert_one(fresh.model_dump(by_alias=True))

        recovered = await make_sync_service(echo_handler).recover_orphaned_jobs()

        assert [job.id for job in recovered] == [stale.id]
        assert (await collection.find_one({"_id": stale.id}))["status"] == "failed"
        assert (await collection.find_one({"_id": fresh.id}))["status"] == "running"
        assert audit_actions(fake_db, integration.id) == ["sync_failed"]
