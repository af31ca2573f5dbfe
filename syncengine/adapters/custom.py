"""Generic JSON webhook adapter for custom integrations."""

from typing import Dict, Any, Optional
from functools import partial
import json
import logging

from syncengine.adapters.base import BaseAdapter, SyncRoutine, record_id_of
from syncengine.adapters.registry import AdapterRegistry
from syncengine.core.exceptions import ContainedRecordError
from syncengine.models import IntegrationType, DataType, SyncJobType, ExternalRef, ConnectionResult

logger = logging.getLogger(__name__)


@AdapterRegistry.register(IntegrationType.CUSTOM)
class CustomWebhookAdapter(BaseAdapter):
    """Pushes records as JSON to ``{base_url}/{data_type}``."""
    
    external_system = "custom"
    default_job_type = SyncJobType.SYNC
    
    def profile_overrides_for(self, integration) -> Dict[str, Any]:
        return {"timeout": integration.config_data.timeout_seconds}
    
    def sync_routines(self) -> Dict[DataType, SyncRoutine]:
        return {
            DataType(data_type): partial(self.send_record, DataType(data_type))
            for data_type in self.config.supported_data_types
        }
    
    async def auth_headers(self) -> Dict[str, str]:
        if not self.config.api_key:
            return {}
        if self.config.auth_header.lower() == "authorization":
            return {"Authorization": f"Bearer {self.config.api_key}"}
        return {self.config.auth_header: self.config.api_key}
    
    async def test_connection(self) -> ConnectionResult:
        response = await self.request("GET", self.config.base_url)
        return ConnectionResult(
            success=True,
            message="Custom endpoint reachable",
            details={"status_code": response.status_code},
        )
    
    async def send_record(self, data_type: DataType, record: Dict[str, Any], external_id: Optional[str]) -> ExternalRef:
        record_id = record_id_of(record)
        url = f"{self.config.base_url}/{data_type.value}"
        method = "POST"
        if external_id:
            url = f"{url}/{external_id}"
            method = "PUT"
        
        response = await self.request(method, url, json=_jsonable(record), record_id=record_id)
        body = response.json() if response.content else {}
        remote_id = body.get("id") or body.get("external_id") or external_id
        if not remote_id:
            raise ContainedRecordError("Custom endpoint response did not include an id", record_id=record_id)
        
        return ExternalRef(
            external_id=str(remote_id),
            external_system=self.external_system,
            action="updated" if external_id else "created",
        )


def _jsonable(record: Dict[str, Any]) -> Dict[str, Any]:
    return json.loads(json.dumps({k: v for k, v in record.items() if k != "_id"}, default=str))
