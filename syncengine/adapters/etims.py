"""KRA e-TIMS tax gateway adapter."""

from typing import Dict, Any, List, Optional
from datetime import datetime
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
from syncengine.core.exceptions import ContainedRecordError
from syncengine.models import IntegrationType, DataType, SyncJobType, ExternalRef, ConnectionResult

logger = logging.getLogger(__name__)

SUCCESS_CODE = "000"


@AdapterRegistry.register(IntegrationType.TAX_GATEWAY)
class ETIMSAdapter(BaseAdapter):
    """KRA e-TIMS electronic tax invoicing integration.
    
    Sales, purchases and inventory are exported to the gateway. The gateway
    answers every call with HTTP 200 and a ``resultCd``; anything other than
    ``000`` rejects that record only.
    """
    
    external_system = "kra_etims"
    default_job_type = SyncJobType.EXPORT
    requests_per_record = 2
    
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.api_base_url = self.profile["api_base_url"][self.config.environment]
    
    def sync_routines(self) -> Dict[DataType, SyncRoutine]:
        return {
            DataType.SALES: self.sync_sale,
            DataType.PURCHASES: self.sync_purchase,
            DataType.INVENTORY: self.sync_inventory_item,
        }
    
    async def auth_headers(self) -> Dict[str, str]:
        return {
            "tin": self.config.business_pin,
            "bhfId": self.config.branch_id,
            "cmcKey": self.config.api_key,
            "apiSecret": self.config.api_secret,
        }
    
    async def test_connection(self) -> ConnectionResult:
        """Test e-TIMS connection by fetching the device/business info."""
        body = await self._call(
            "selectInitOsdcInfo",
            {"tin": self.config.business_pin, "bhfId": self.config.branch_id},
        )
        info = body.get("data") or {}
        return ConnectionResult(
            success=True,
            message="KRA e-TIMS connection successful",
            details={
                "business_info": {
                    "business_name": info.get("taxprNm"),
                    "pin": self.config.business_pin,
                },
            },
        )
    
    # Sync routines
    
    async def sync_sale(self, record: Dict[str, Any], external_id: Optional[str]) -> ExternalRef:
        record_id = record_id_of(record)
        total = positive_amount(record, "total_amount")
        items = self._require_items(record, "order_items", "items")
        invoice_number = external_id or f"KRA_{record_id}"
        
        payload = {
            "invcNo": invoice_number,
            "tin": self.config.business_pin,
            "bhfId": self.config.branch_id,
            "custNm": record.get("customer_name") or "Walk-in Customer",
            "custTin": record.get("customer_pin"),
            "salesDt": _as_compact_date(record.get("completed_at") or record.get("created_at")),
            "totAmt": total,
            "totTaxblAmt": total,
            "totTaxAmt": self.tax_amount(total),
            "itemList": self._item_list(items),
        }
        await self._call("saveTrnsSalesOsdc", payload, record_id)
        return self._ref(invoice_number, external_id, {"tax_amount": payload["totTaxAmt"]})
    
    async def sync_purchase(self, record: Dict[str, Any], external_id: Optional[str]) -> ExternalRef:
        record_id = record_id_of(record)
        require_fields(record, "supplier_name")
        total = positive_amount(record, "total_amount")
        items = self._require_items(record, "items")
        purchase_number = external_id or f"KRA_PUR_{record_id}"
        
        payload = {
            "invcNo": purchase_number,
            "tin": self.config.business_pin,
            "bhfId": self.config.branch_id,
            "spplrNm": record["supplier_name"],
            "spplrTin": record.get("supplier_pin"),
            "pchsDt": _as_compact_date(record.get("purchase_date") or record.get("created_at")),
            "totAmt": total,
            "totTaxblAmt": total,
            "totTaxAmt": self.tax_amount(total),
            "itemList": self._item_list(items),
        }
        await self._call("insertTrnsPurchase", payload, record_id)
        return self._ref(purchase_number, external_id, {"tax_amount": payload["totTaxAmt"]})
    
    async def sync_inventory_item(self, record: Dict[str, Any], external_id: Optional[str]) -> ExternalRef:
        record_id = record_id_of(record)
        require_fields(record, "sku", "name")
        product_code = external_id or f"KRA_{record['sku']}"
        
        await self._call(
            "saveItem",
            {
                "itemCd": product_code,
                "itemNm": record["name"],
                "dftPrc": float(record.get("price") or 0),
                "useYn": "Y",
            },
            record_id,
        )
        await self._call(
            "saveStockMaster",
            {
                "itemCd": product_code,
                "rsdQty": float(record.get("stock_quantity") or 0),
            },
            record_id,
        )
        return self._ref(product_code, external_id)
    
    # Helpers
    
    def tax_amount(self, taxable_amount: float) -> float:
        return round(taxable_amount * self.config.vat_rate, 2)
    
    def _require_items(self, record: Dict[str, Any], *fields: str) -> List[Dict[str, Any]]:
        """Line items of a sale or purchase; e-TIMS rejects documents without any."""
        for field in fields:
            if record.get(field):
                return record[field]
        raise ContainedRecordError(
            "Record has no line items to declare",
            record_id=record_id_of(record),
        )
    
    def _item_list(self, items: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        item_list = []
        for seq, item in enumerate(items, start=1):
            quantity = float(item.get("quantity") or 1)
            unit_price = float(item.get("unit_price") or item.get("price") or 0)
            amount = round(quantity * unit_price, 2)
            item_list.append({
                "itemSeq": seq,
                "itemCd": item.get("sku") or item.get("product_id"),
                "itemNm": item.get("name") or item.get("description"),
                "qty": quantity,
                "prc": unit_price,
                "totAmt": amount,
                "taxAmt": self.tax_amount(amount),
            })
        return item_list
    
    def _ref(self, number: str, external_id: Optional[str], details: Optional[Dict[str, Any]] = None) -> ExternalRef:
        return ExternalRef(
            external_id=number,
            external_system=self.external_system,
            action="updated" if external_id else "created",
            details=details or {},
        )
    
    async def _call(self, endpoint: str, payload: Dict[str, Any], record_id: Optional[str] = None) -> Dict[str, Any]:
        response = await self.request(
            "POST",
            f"{self.api_base_url}/{endpoint}",
            json=payload,
            record_id=record_id,
        )
        body = response.json()
        if str(body.get("resultCd")) != SUCCESS_CODE:
            raise ContainedRecordError(
                f"KRA e-TIMS rejected {endpoint}: {body.get('resultMsg', 'unknown error')}",
                record_id=record_id,
                details={"result_code": body.get("resultCd")},
            )
        return body
    
    def error_text(self, response: httpx.Response) -> str:
        try:
            return response.json().get("resultMsg") or super().error_text(response)
        except ValueError:
            return super().error_text(response)


def _as_compact_date(value: Any) -> str:
    """e-TIMS dates are yyyyMMdd."""
    if isinstance(value, datetime):
        return value.strftime("%Y%m%d")
    if value:
        return str(value)[:10].replace("-", "")
    return datetime.utcnow().strftime("%Y%m%d")
