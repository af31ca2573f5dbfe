"""Base adapter class and utilities."""

from abc import ABC, abstractmethod
from typing import Optional, Dict, Any, List, Callable, Awaitable, ClassVar
import logging

import httpx
from aiolimiter import AsyncLimiter
from tenacity import AsyncRetrying, stop_after_attempt, wait_exponential, retry_if_exception_type

from syncengine.core.config import get_adapter_config
from syncengine.core.exceptions import (
    AuthenticationError,
    ConnectivityError,
    ContainedRecordError,
    UnsupportedDataTypeError,
)
from syncengine.models import (
    IntegrationConfig,
    IntegrationType,
    DataType,
    SyncJobType,
    ExternalRef,
    ConnectionResult,
)


logger = logging.getLogger(__name__)

# (local_entity_type, local_entity_id) -> external id, or None when never pushed
MappingLookup = Callable[[str, str], Awaitable[Optional[str]]]

SyncRoutine = Callable[[Dict[str, Any], Optional[str]], Awaitable[ExternalRef]]


class RetryableResponse(Exception):
    """Raised inside the retry loop for 429 and 5xx responses."""
    
    def __init__(self, response: httpx.Response):
        super().__init__(f"HTTP {response.status_code}")
        self.response = response


class BaseAdapter(ABC):
    """Base class for all external system adapters."""
    
    integration_type: ClassVar[IntegrationType]
    external_system: ClassVar[str]
    default_job_type: ClassVar[SyncJobType] = SyncJobType.SYNC
    # Sequential HTTP requests one record may need
    requests_per_record: ClassVar[int] = 1
    
    def __init__(
        self,
        integration: IntegrationConfig,
        http_client: Optional[httpx.AsyncClient] = None,
        mapping_lookup: Optional[MappingLookup] = None,
        profile_overrides: Optional[Dict[str, Any]] = None,
    ):
        self.integration = integration
        self.config = integration.config_data
        overrides = self.profile_overrides_for(integration)
        overrides.update(profile_overrides or {})
        self.profile = get_adapter_config(integration.integration_type, overrides)
        self.display_name = self.profile["name"]
        self.timeout = float(self.profile["timeout"])
        self.retry_attempts = max(1, int(self.profile.get("retry_attempts", 3)))
        self.concurrency = max(1, int(self.profile["concurrency"]))
        self.http_client = http_client or httpx.AsyncClient(timeout=self.timeout)
        self._owns_client = http_client is None
        self.mapping_lookup = mapping_lookup
        rate_limit = self.profile["rate_limit"]
        self.rate_limiter = AsyncLimiter(rate_limit["calls"], rate_limit["window"])
        self.credentials_refreshed = False
    
    @property
    def record_timeout(self) -> float:
        """Time budget for pushing one record.

        Covers every retry attempt of each request the record needs, plus
        the backoff between attempts. Each attempt is bounded by ``timeout``.
        """
        longest_wait = max(self.profile.get("retry_wait_min", 1), self.profile.get("retry_wait_max", 10))
        backoff = float(longest_wait) * (self.retry_attempts - 1)
        return (self.timeout * self.retry_attempts + backoff) * self.requests_per_record
    
    async def __aenter__(self):
        return self
    
    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self._owns_client:
            await self.http_client.aclose()
    
    # Abstract methods that must be implemented
    
    @abstractmethod
    def sync_routines(self) -> Dict[DataType, SyncRoutine]:
        """Per data type push routines, called with (record, external_id)."""
        pass
    
    @abstractmethod
    async def test_connection(self) -> ConnectionResult:
        """Verify credentials against the external system without syncing data."""
        pass
    
    # Capability surface used by the orchestrator

    def profile_overrides_for(self, integration: IntegrationConfig) -> Dict[str, Any]:
        """Adapter profile values taken from the integration's own config (override if needed)."""
        return {}

    async def authenticate(self) -> None:
        """Validate or refresh credentials before a job iterates. Override for OAuth adapters."""
        pass
    
    async def auth_headers(self) -> Dict[str, str]:
        """Authentication headers for API requests."""
        return {}
    
    def supported_data_types(self) -> List[DataType]:
        """Data types both implemented by the adapter and enabled in its config."""
        enabled = {DataType(d) for d in self.config.enabled_data_types()}
        return [data_type for data_type in self.sync_routines() if data_type in enabled]
    
    def supports(self, data_type) -> bool:
        return DataType(data_type) in self.supported_data_types()
    
    async def create(self, data_type, record: Dict[str, Any]) -> ExternalRef:
        """Push a record that has never been sent to the external system."""
        return await self.push(data_type, record)
    
    async def upsert(self, data_type, record: Dict[str, Any], external_id: str) -> ExternalRef:
        """Update a record already known to the external system."""
        return await self.push(data_type, record, external_id)
    
    async def push(self, data_type, record: Dict[str, Any], external_id: Optional[str] = None) -> ExternalRef:
        data_type = DataType(data_type)
        routine = self.sync_routines().get(data_type)
        if routine is None or not self.supports(data_type):
            raise UnsupportedDataTypeError(
                f"{self.display_name} does not support data type '{data_type.value}'"
            )
        return await routine(record, external_id)
    
    # Common utility methods
    
    async def request(
        self,
        method: str,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
        data: Optional[Dict[str, Any]] = None,
        record_id: Optional[str] = None,
    ) -> httpx.Response:
        """Make API request with rate limiting and retries.
        
        Timeouts, 429 and 5xx responses are retried with exponential backoff.
        Once retries are exhausted they are contained to the current record.
        401/403 abort the job, other 4xx reject the record, and transport
        failures (refused connection, DNS, TLS) abort the job.
        """
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.retry_attempts),
            wait=wait_exponential(
                multiplier=self.profile.get("retry_multiplier", 1),
                min=self.profile.get("retry_wait_min", 1),
                max=self.profile.get("retry_wait_max", 10),
            ),
            retry=retry_if_exception_type((httpx.TransportError, RetryableResponse)),
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    response = await self._send(method, url, headers, params, json, data)
        except RetryableResponse as e:
            response = e.response
        except httpx.TimeoutException as e:
            raise ContainedRecordError(
                f"{self.display_name} request timed out", record_id=record_id
            ) from e
        except httpx.TransportError as e:
            raise ConnectivityError(f"{self.display_name} is unreachable: {e}") from e
        
        return self._check_response(response, record_id)
    
    async def _send(
        self,
        method: str,
        url: str,
        headers: Optional[Dict[str, str]],
        params: Optional[Dict[str, Any]],
        json: Optional[Dict[str, Any]],
        data: Optional[Dict[str, Any]],
    ) -> httpx.Response:
        request_headers = {"Accept": "application/json"}
        request_headers.update(await self.auth_headers())
        request_headers.update(headers or {})
        
        async with self.rate_limiter:
            response = await self.http_client.request(
                method=method,
                url=url,
                headers=request_headers,
                params=params,
                json=json,
                data=data,
                timeout=self.timeout,
            )
        
        if response.status_code == 429 or response.status_code >= 500:
            raise RetryableResponse(response)
        return response
    
    def _check_response(self, response: httpx.Response, record_id: Optional[str]) -> httpx.Response:
        status_code = response.status_code
        if status_code in (401, 403):
            raise AuthenticationError(
                f"{self.display_name} rejected the configured credentials (HTTP {status_code})"
            )
        if status_code >= 400:
            raise ContainedRecordError(
                f"{self.display_name} rejected the record (HTTP {status_code}): {self.error_text(response)}",
                record_id=record_id,
                details={"status_code": status_code},
            )
        return response
    
    def error_text(self, response: httpx.Response) -> str:
        """Extract a short error description from a response (override if needed)."""
        return response.text[:300]
    
    async def resolve_external_id(self, entity_type: DataType, local_id: Any, record_id: Optional[str] = None) -> str:
        """External id of a related entity that must already have been synced."""
        external_id = None
        if local_id is not None and self.mapping_lookup:
            external_id = await self.mapping_lookup(DataType(entity_type).value, str(local_id))
        if not external_id:
            raise ContainedRecordError(
                f"Related {DataType(entity_type).value} record {local_id} has not been synced to {self.display_name}",
                record_id=record_id,
            )
        return external_id
    
    async def find_external_id(self, entity_type: DataType, local_id: Any) -> Optional[str]:
        """External id of a related entity, or None when it has not been synced."""
        if local_id is None or not self.mapping_lookup:
            return None
        return await self.mapping_lookup(DataType(entity_type).value, str(local_id))


def record_id_of(record: Dict[str, Any]) -> str:
    """Local identifier of a tenant record."""
    value = record.get("id", record.get("_id"))
    return str(value) if value is not None else ""


def require_fields(record: Dict[str, Any], *fields: str) -> None:
    """Reject a record that is missing any of the given fields."""
    missing = [field for field in fields if record.get(field) in (None, "", [])]
    if missing:
        raise ContainedRecordError(
            f"Record is missing required field(s): {', '.join(missing)}",
            record_id=record_id_of(record),
        )


def positive_amount(record: Dict[str, Any], field: str) -> float:
    """Read a strictly positive amount from a record."""
    try:
        amount = float(record.get(field) or 0)
    except (TypeError, ValueError):
        amount = 0.0
    if amount <= 0:
        raise ContainedRecordError(
            f"Record has no positive {field}",
            record_id=record_id_of(record),
        )
    return amount
