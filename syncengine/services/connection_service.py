"""Connection testing for integration configurations."""

from typing import Any, Dict, Optional
import asyncio
import logging

import httpx

from syncengine.adapters import AdapterRegistry
from syncengine.core.exceptions import SyncEngineError
from syncengine.models import AuditAction, ConnectionResult
from syncengine.services.audit_service import AuditLogService
from syncengine.services.integration_service import IntegrationService

logger = logging.getLogger(__name__)


class ConnectionTester:
    """Checks whether a configuration's credentials work, without syncing data.
    
    Always returns an explicit result and always writes a ``connection_test``
    audit entry, whether the test passed, failed or timed out. Inactive
    configurations can be tested so they can be verified before enabling.
    """
    
    def __init__(
        self,
        db,
        audit: Optional[AuditLogService] = None,
        integration_service: Optional[IntegrationService] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        adapter_overrides: Optional[Dict[str, Any]] = None,
    ):
        self.audit = audit or AuditLogService(db)
        self.integrations = integration_service or IntegrationService(db, self.audit)
        self.http_client = http_client
        self.adapter_overrides = adapter_overrides
    
    async def test_connection(self, integration_id: str, user_id: Optional[str] = None) -> ConnectionResult:
        """Raises NotFoundError for an unknown integration; otherwise never raises."""
        integration = await self.integrations.get_integration_or_raise(integration_id)
        adapter_class = AdapterRegistry.get(integration.integration_type)
        
        if adapter_class is None:
            result = ConnectionResult(
                success=False,
                message=f"Unsupported integration type: {integration.integration_type}",
            )
        else:
            result = await self._run_test(integration, adapter_class)
        
        await self.audit.append(
            integration.id,
            integration.tenant_id,
            AuditAction.CONNECTION_TEST,
            {"success": result.success, "message": result.message, "details": result.details},
            user_id=user_id,
        )
        logger.info(
            f"Connection test for integration {integration.id}: {'ok' if result.success else 'failed'}",
            extra={"integration_id": integration.id, "tenant_id": integration.tenant_id},
        )
        return result
    
    async def _run_test(self, integration, adapter_class) -> ConnectionResult:
        name = adapter_class.external_system
        try:
            async with adapter_class(
                integration,
                http_client=self.http_client,
                profile_overrides=self.adapter_overrides,
            ) as adapter:
                name = adapter.display_name
                result = await asyncio.wait_for(adapter.test_connection(), timeout=adapter.record_timeout)
                if adapter.credentials_refreshed:
                    await self.integrations.store_refreshed_credentials(integration)
                return result
        except asyncio.TimeoutError:
            return ConnectionResult(success=False, message=f"{name} connection test timed out")
        except SyncEngineError as e:
            return ConnectionResult(
                success=False,
                message=f"{name} connection failed",
                details={"error": str(e)},
            )
        except Exception as e:
            logger.error(f"Unexpected error testing {name} connection: {e}", exc_info=True)
            return ConnectionResult(
                success=False,
                message=f"{name} connection failed",
                details={"error": str(e) or e.__class__.__name__},
            )
