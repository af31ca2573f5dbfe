"""QuickBooks Online accounting platform adapter."""

from typing import Dict, Any, List, Optional
from datetime import datetime, timedelta
import asyncio
import logging

import httpx

from syncengine.adapters.base import (
    BaseAdapter,
    SyncRoutine,
    record_id_of,
    require_fields,
    positive_amount,
)
from syncengine.adapters.registry import AdapterRegistry
from syncengine.core.exceptions import AuthenticationError, ConnectivityError, ContainedRecordError
from syncengine.models import IntegrationType, DataType, SyncJobType, ExternalRef, ConnectionResult

logger = logging.getLogger(__name__)

# Local data type -> QuickBooks entity name
ENTITY_NAMES = {
    DataType.CUSTOMERS: "Customer",
    DataType.PRODUCTS: "Item",
    DataType.INVOICES: "Invoice",
    DataType.PAYMENTS: "Payment",
}


@AdapterRegistry.register(IntegrationType.ACCOUNTING_PLATFORM)
class QuickBooksAdapter(BaseAdapter):
    """QuickBooks Online integration."""
    
    external_system = "quickbooks"
    default_job_type = SyncJobType.SYNC
    requests_per_record = 2
    
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        base_url = self.profile["api_base_url"][self.config.environment]
        self.company_url = f"{base_url}/{self.config.realm_id}"
        self.params = {"minorversion": self.profile.get("minor_version", "65")}
        self._refresh_lock = asyncio.Lock()
    
    def sync_routines(self) -> Dict[DataType, SyncRoutine]:
        return {
            DataType.CUSTOMERS: self.sync_customer,
            DataType.PRODUCTS: self.sync_product,
            DataType.INVOICES: self.sync_invoice,
            DataType.PAYMENTS: self.sync_payment,
        }
    
    # Authentication
    
    def _token_expired(self) -> bool:
        if not self.config.access_token:
            return True
        if self.config.token_expires_at is None:
            return False
        return datetime.utcnow() >= self.config.token_expires_at - timedelta(minutes=5)
    
    async def authenticate(self) -> None:
        """Refresh the access token when it is missing or about to expire."""
        if self._token_expired():
            await self.refresh_access_token()
    
    async def refresh_access_token(self) -> None:
        """Exchange the refresh token for a new access token."""
        try:
            response = await self.http_client.post(
                self.profile["token_url"],
                data={
                    "grant_type": "refresh_token",
                    "refresh_token": self.config.refresh_token,
                },
                auth=(self.config.client_id, self.config.client_secret),
                headers={"Accept": "application/json"},
            )
        except httpx.TransportError as e:
            raise ConnectivityError(f"QuickBooks token endpoint is unreachable: {e}") from e
        
        if response.status_code != 200:
            raise AuthenticationError(
                f"QuickBooks credentials expired or revoked; token refresh failed (HTTP {response.status_code})"
            )
        
        token_data = response.json()
        self.config.access_token = token_data["access_token"]
        self.config.refresh_token = token_data.get("refresh_token", self.config.refresh_token)
        if "expires_in" in token_data:
            self.config.token_expires_at = datetime.utcnow() + timedelta(seconds=int(token_data["expires_in"]))
        self.credentials_refreshed = True
        logger.info(f"Refreshed QuickBooks access token for integration {self.integration.id}")
    
    async def auth_headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.config.access_token}"}
    
    async def request(self, *args, **kwargs) -> httpx.Response:
        """Refresh the access token once when QuickBooks rejects it mid-job."""
        token = self.config.access_token
        try:
            return await super().request(*args, **kwargs)
        except AuthenticationError:
            async with self._refresh_lock:
                # Another worker may already have refreshed it
                if self.config.access_token == token:
                    logger.info(f"QuickBooks rejected the access token for integration {self.integration.id}; refreshing")
                    await self.refresh_access_token()
        return await super().request(*args, **kwargs)
    
    # Connection test
    
    async def test_connection(self) -> ConnectionResult:
        """Test QuickBooks connection by reading company info."""
        await self.authenticate()
        response = await self.request(
            "GET",
            f"{self.company_url}/companyinfo/{self.config.realm_id}",
            params=self.params,
        )
        info = response.json().get("CompanyInfo", {})
        return ConnectionResult(
            success=True,
            message="QuickBooks connection successful",
            details={
                "company_info": {
                    "name": info.get("CompanyName"),
                    "id": self.config.realm_id,
                },
            },
        )
    
    # Sync routines
    
    async def sync_customer(self, record: Dict[str, Any], external_id: Optional[str]) -> ExternalRef:
        require_fields(record, "name")
        payload: Dict[str, Any] = {"DisplayName": record["name"]}
        if record.get("company_name"):
            payload["CompanyName"] = record["company_name"]
        if record.get("email"):
            payload["PrimaryEmailAddr"] = {"Address": record["email"]}
        if record.get("phone"):
            payload["PrimaryPhone"] = {"FreeFormNumber": record["phone"]}
        if record.get("address"):
            payload["BillAddr"] = {"Line1": record["address"]}
        return await self._save_entity(DataType.CUSTOMERS, record, payload, external_id)
    
    async def sync_product(self, record: Dict[str, Any], external_id: Optional[str]) -> ExternalRef:
        require_fields(record, "name")
        payload: Dict[str, Any] = {
            "Name": record["name"],
            "Type": "NonInventory",
            "IncomeAccountRef": {"value": self.config.income_account_ref},
        }
        if record.get("price") is not None:
            payload["UnitPrice"] = float(record["price"])
        if record.get("sku"):
            payload["Sku"] = record["sku"]
        if record.get("description"):
            payload["Description"] = record["description"]
        return await self._save_entity(DataType.PRODUCTS, record, payload, external_id)
    
    async def sync_invoice(self, record: Dict[str, Any], external_id: Optional[str]) -> ExternalRef:
        record_id = record_id_of(record)
        require_fields(record, "customer_id")
        customer_ref = await self.resolve_external_id(DataType.CUSTOMERS, record["customer_id"], record_id)
        
        lines = await self._invoice_lines(record)
        payload: Dict[str, Any] = {
            "CustomerRef": {"value": customer_ref},
            "Line": lines,
        }
        if record.get("invoice_number"):
            payload["DocNumber"] = str(record["invoice_number"])
        if record.get("invoice_date"):
            payload["TxnDate"] = _as_date(record["invoice_date"])
        if record.get("due_date"):
            payload["DueDate"] = _as_date(record["due_date"])
        return await self._save_entity(DataType.INVOICES, record, payload, external_id)
    
    async def sync_payment(self, record: Dict[str, Any], external_id: Optional[str]) -> ExternalRef:
        record_id = record_id_of(record)
        require_fields(record, "customer_id")
        amount = positive_amount(record, "amount")
        customer_ref = await self.resolve_external_id(DataType.CUSTOMERS, record["customer_id"], record_id)
        
        payload: Dict[str, Any] = {
            "CustomerRef": {"value": customer_ref},
            "TotalAmt": amount,
        }
        if record.get("payment_date"):
            payload["TxnDate"] = _as_date(record["payment_date"])
        if record.get("reference"):
            payload["PaymentRefNum"] = str(record["reference"])[:21]
        
        invoice_ref = await self.find_external_id(DataType.INVOICES, record.get("invoice_id"))
        if invoice_ref:
            payload["Line"] = [{
                "Amount": amount,
                "LinkedTxn": [{"TxnId": invoice_ref, "TxnType": "Invoice"}],
            }]
        return await self._save_entity(DataType.PAYMENTS, record, payload, external_id)
    
    # Helpers
    
    async def _invoice_lines(self, record: Dict[str, Any]) -> List[Dict[str, Any]]:
        lines = []
        for item in record.get("items") or []:
            quantity = float(item.get("quantity") or 1)
            unit_price = float(item.get("unit_price") or 0)
            detail: Dict[str, Any] = {"Qty": quantity, "UnitPrice": unit_price}
            item_ref = await self.find_external_id(DataType.PRODUCTS, item.get("product_id"))
            if item_ref:
                detail["ItemRef"] = {"value": item_ref}
            line = {
                "Amount": round(quantity * unit_price, 2),
                "DetailType": "SalesItemLineDetail",
                "SalesItemLineDetail": detail,
            }
            if item.get("description") or item.get("name"):
                line["Description"] = item.get("description") or item.get("name")
            lines.append(line)
        
        if not lines:
            total = positive_amount(record, "total_amount")
            lines.append({
                "Amount": total,
                "DetailType": "SalesItemLineDetail",
                "SalesItemLineDetail": {"Qty": 1, "UnitPrice": total},
            })
        return lines
    
    async def _save_entity(
        self,
        data_type: DataType,
        record: Dict[str, Any],
        payload: Dict[str, Any],
        external_id: Optional[str],
    ) -> ExternalRef:
        """Create an entity, or sparse-update it when it already exists in QuickBooks."""
        entity = ENTITY_NAMES[data_type]
        record_id = record_id_of(record)
        action = "created"
        
        if external_id:
            payload = dict(payload)
            payload.update({
                "Id": external_id,
                "SyncToken": await self._sync_token(entity, external_id, record_id),
                "sparse": True,
            })
            action = "updated"
        
        response = await self.request(
            "POST",
            f"{self.company_url}/{entity.lower()}",
            params=self.params,
            json=payload,
            record_id=record_id,
        )
        saved = response.json().get(entity) or {}
        if not saved.get("Id"):
            raise ContainedRecordError(f"QuickBooks response did not include a {entity} Id", record_id=record_id)
        
        return ExternalRef(
            external_id=str(saved["Id"]),
            external_system=self.external_system,
            action=action,
            details={"sync_token": saved.get("SyncToken")},
        )
    
    async def _sync_token(self, entity: str, external_id: str, record_id: str) -> str:
        response = await self.request(
            "GET",
            f"{self.company_url}/{entity.lower()}/{external_id}",
            params=self.params,
            record_id=record_id,
        )
        return str(response.json().get(entity, {}).get("SyncToken", "0"))
    
    def error_text(self, response: httpx.Response) -> str:
        try:
            errors = response.json()["Fault"]["Error"]
            return "; ".join(e.get("Detail") or e.get("Message", "") for e in errors)
        except (ValueError, KeyError, TypeError):
            return super().error_text(response)


def _as_date(value: Any) -> str:
    if isinstance(value, datetime):
        return value.date().isoformat()
    return str(value)[:10]
