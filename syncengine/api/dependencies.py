"""API dependencies."""

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from typing import Dict, Any
import httpx
import logging

from syncengine.core.config import get_settings
from syncengine.core.database import database
from syncengine.services import (
    AuditLogService,
    ConnectionTester,
    IntegrationService,
    SyncService,
)

logger = logging.getLogger(__name__)
settings = get_settings()

# Security
security = HTTPBearer()


async def get_current_user(credentials: HTTPAuthorizationCredentials = Depends(security)) -> Dict[str, Any]:
    """Get current user from auth service."""
    token = credentials.credentials
    
    try:
        # Verify token with auth service
        async with httpx.AsyncClient() as client:
            response = await client.get(
                f"{settings.auth_service_url}/api/v1/users/me",
                headers={"Authorization": f"Bearer {token}"}
            )
            
            if response.status_code != 200:
                raise HTTPException(
                    status_code=status.HTTP_401_UNAUTHORIZED,
                    detail="Invalid authentication credentials",
                    headers={"WWW-Authenticate": "Bearer"},
                )
            
            return response.json()
    except httpx.RequestError as e:
        logger.error(f"Auth service request failed: {e}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Authentication service unavailable"
        )


async def get_tenant_id(current_user: Dict[str, Any] = Depends(get_current_user)) -> str:
    """Tenant scope of the caller: their organization."""
    tenant_id = current_user.get("organization_id")
    if not tenant_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="User is not a member of an organization",
        )
    return tenant_id


# Service dependencies
def get_audit_service() -> AuditLogService:
    return AuditLogService(database)


def get_integration_service() -> IntegrationService:
    """Get integration service instance."""
    return IntegrationService(database)


def get_sync_service() -> SyncService:
    """Get sync service instance."""
    return SyncService(database)


def get_connection_tester() -> ConnectionTester:
    return ConnectionTester(database)
