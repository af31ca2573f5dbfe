"""Integration management API endpoints."""

from fastapi import APIRouter, HTTPException, status, Depends, Response
from typing import List, Dict, Any
import logging

from syncengine.models import IntegrationConfig
from syncengine.schemas.integration import (
    IntegrationCreate,
    IntegrationUpdate,
    IntegrationResponse,
    IntegrationListResponse,
    ConnectionTestResponse,
    SyncRequest,
    SyncJobResponse,
    AuditLogResponse,
)
from syncengine.services import AuditLogService, ConnectionTester, IntegrationService, SyncService
from syncengine.api.dependencies import (
    get_current_user,
    get_tenant_id,
    get_audit_service,
    get_integration_service,
    get_sync_service,
    get_connection_tester,
)

logger = logging.getLogger(__name__)
router = APIRouter()


async def _get_owned_integration(
    integration_id: str,
    tenant_id: str,
    service: IntegrationService,
) -> IntegrationConfig:
    """Load an integration of the caller's tenant. Other tenants' configs read as missing."""
    integration = await service.get_integration(integration_id)
    if not integration or integration.tenant_id != tenant_id:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Integration not found"
        )
    return integration


@router.get("/", response_model=IntegrationListResponse)
async def list_integrations(
    tenant_id: str = Depends(get_tenant_id),
    service: IntegrationService = Depends(get_integration_service),
):
    """List the tenant's integrations, newest first."""
    integrations = await service.list_integrations(tenant_id)
    return IntegrationListResponse(
        items=[IntegrationResponse.from_integration(i) for i in integrations],
        total=len(integrations),
    )


@router.post("/", response_model=IntegrationResponse, status_code=status.HTTP_201_CREATED)
async def create_integration(
    integration: IntegrationCreate,
    tenant_id: str = Depends(get_tenant_id),
    service: IntegrationService = Depends(get_integration_service),
):
    """Create a new integration."""
    created = await service.create_integration(tenant_id, integration.model_dump())
    return IntegrationResponse.from_integration(created)


@router.get("/{integration_id}", response_model=IntegrationResponse)
async def get_integration(
    integration_id: str,
    tenant_id: str = Depends(get_tenant_id),
    service: IntegrationService = Depends(get_integration_service),
):
    """Get integration details."""
    integration = await _get_owned_integration(integration_id, tenant_id, service)
    return IntegrationResponse.from_integration(integration)


@router.patch("/{integration_id}", response_model=IntegrationResponse)
async def update_integration(
    integration_id: str,
    update: IntegrationUpdate,
    tenant_id: str = Depends(get_tenant_id),
    service: IntegrationService = Depends(get_integration_service),
):
    """Update an integration. Only supplied fields change."""
    await _get_owned_integration(integration_id, tenant_id, service)
    updated = await service.update_integration(integration_id, update.model_dump(exclude_unset=True))
    return IntegrationResponse.from_integration(updated)


@router.delete("/{integration_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_integration(
    integration_id: str,
    tenant_id: str = Depends(get_tenant_id),
    service: IntegrationService = Depends(get_integration_service),
):
    """Delete an integration. Deleting one that no longer exists succeeds."""
    integration = await service.get_integration(integration_id)
    if integration and integration.tenant_id != tenant_id:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Integration not found"
        )
    await service.delete_integration(integration_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{integration_id}/test", response_model=ConnectionTestResponse)
async def test_connection(
    integration_id: str,
    current_user: Dict[str, Any] = Depends(get_current_user),
    tenant_id: str = Depends(get_tenant_id),
    service: IntegrationService = Depends(get_integration_service),
    tester: ConnectionTester = Depends(get_connection_tester),
):
    """Test the integration's credentials without syncing data."""
    await _get_owned_integration(integration_id, tenant_id, service)
    result = await tester.test_connection(integration_id, user_id=current_user.get("id"))
    return ConnectionTestResponse(**result.model_dump())


@router.post("/{integration_id}/sync", response_model=SyncJobResponse)
async def trigger_sync(
    integration_id: str,
    sync_request: SyncRequest,
    tenant_id: str = Depends(get_tenant_id),
    service: IntegrationService = Depends(get_integration_service),
    sync_service: SyncService = Depends(get_sync_service),
):
    """Run a sync for one data type and return the finished job."""
    await _get_owned_integration(integration_id, tenant_id, service)
    job = await sync_service.run_sync(integration_id, sync_request.data_type, sync_request.job_type)
    return SyncJobResponse.from_job(job)


@router.get("/{integration_id}/jobs", response_model=List[SyncJobResponse])
async def list_sync_jobs(
    integration_id: str,
    tenant_id: str = Depends(get_tenant_id),
    service: IntegrationService = Depends(get_integration_service),
    sync_service: SyncService = Depends(get_sync_service),
):
    """Recent sync jobs for the integration, newest first."""
    await _get_owned_integration(integration_id, tenant_id, service)
    jobs = await sync_service.get_sync_jobs(integration_id)
    return [SyncJobResponse.from_job(job) for job in jobs]


@router.get("/{integration_id}/jobs/{job_id}", response_model=SyncJobResponse)
async def get_sync_job(
    integration_id: str,
    job_id: str,
    tenant_id: str = Depends(get_tenant_id),
    service: IntegrationService = Depends(get_integration_service),
    sync_service: SyncService = Depends(get_sync_service),
):
    """Get one sync job."""
    await _get_owned_integration(integration_id, tenant_id, service)
    job = await sync_service.get_sync_job(job_id)
    if not job or job.integration_id != integration_id:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Sync job not found"
        )
    return SyncJobResponse.from_job(job)


@router.post("/{integration_id}/jobs/{job_id}/cancel", response_model=SyncJobResponse)
async def cancel_sync_job(
    integration_id: str,
    job_id: str,
    tenant_id: str = Depends(get_tenant_id),
    service: IntegrationService = Depends(get_integration_service),
    sync_service: SyncService = Depends(get_sync_service),
):
    """Ask a running job to stop. Finished jobs are returned unchanged."""
    await _get_owned_integration(integration_id, tenant_id, service)
    job = await sync_service.get_sync_job(job_id)
    if not job or job.integration_id != integration_id:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Sync job not found"
        )
    job = await sync_service.cancel_sync_job(job_id)
    return SyncJobResponse.from_job(job)


@router.get("/{integration_id}/audit-logs", response_model=List[AuditLogResponse])
async def list_audit_logs(
    integration_id: str,
    tenant_id: str = Depends(get_tenant_id),
    service: IntegrationService = Depends(get_integration_service),
    audit: AuditLogService = Depends(get_audit_service),
):
    """Recent audit entries for the integration, newest first."""
    await _get_owned_integration(integration_id, tenant_id, service)
    entries = await audit.get_audit_logs(integration_id)
    return [AuditLogResponse.from_entry(entry) for entry in entries]
