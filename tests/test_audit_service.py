"""Tests for the audit log service."""

from datetime import datetime, timedelta
from unittest.mock import AsyncMock, patch

import pytest

from syncengine.core.database import COLLECTIONS
from syncengine.models import AuditAction


class TestAuditLogService:

    @pytest.mark.asyncio
    async def test_append_and_list(self, audit_service):
        entry = await audit_service.append("int-1", "tenant-1", AuditAction.SYNC_STARTED, {"data_type": "customers"})

        entries = await audit_service.get_audit_logs("int-1")

        assert entry is not None
        assert [e.id for e in entries] == [entry.id]
        assert entries[0].action == "sync_started"
        assert entries[0].details == {"data_type": "customers"}

    @pytest.mark.asyncio
    async def test_list_newest_first_limited(self, fake_db, audit_service):
        for _ in range(105):
            await audit_service.append("int-1", "tenant-1", AuditAction.CONNECTION_TEST)
        base = datetime(2024, 1, 1)
        for i, doc in enumerate(fake_db.get_collection(COLLECTIONS["audit_logs"]).docs):
            doc["created_at"] = base + timedelta(seconds=i)

        entries = await audit_service.get_audit_logs("int-1")

        assert len(entries) == 100
        assert entries[0].created_at == base + timedelta(seconds=104)

    @pytest.mark.asyncio
    async def test_write_failure_is_not_raised(self, fake_db, audit_service):
        collection = fake_db.get_collection(COLLECTIONS["audit_logs"])

        with patch.object(collection, "insert_one", AsyncMock(side_effect=RuntimeError("disk full"))):
            entry = await audit_service.append("int-1", "tenant-1", AuditAction.SYNC_FAILED)

        assert entry is None

    @pytest.mark.asyncio
    async def test_missing_tenant_recorded_as_empty(self, audit_service):
        entry = await audit_service.append("int-1", None, AuditAction.CONFIG_UPDATED)

        assert entry.tenant_id == ""
