"""Paystack payment gateway adapter."""

from typing import Dict, Any, Optional
import logging

import httpx

from syncengine.adapters.base import BaseAdapter, SyncRoutine, record_id_of, positive_amount
from syncengine.adapters.registry import AdapterRegistry
from syncengine.core.exceptions import ContainedRecordError
from syncengine.models import IntegrationType, DataType, SyncJobType, ExternalRef, ConnectionResult

logger = logging.getLogger(__name__)


@AdapterRegistry.register(IntegrationType.PAYMENT_GATEWAY)
class PaystackAdapter(BaseAdapter):
    """Reconciles local payments against Paystack transactions."""
    
    external_system = "paystack"
    default_job_type = SyncJobType.SYNC
    
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.api_base_url = self.profile["api_base_url"][self.config.environment]
    
    def sync_routines(self) -> Dict[DataType, SyncRoutine]:
        return {DataType.PAYMENTS: self.verify_payment}
    
    async def auth_headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.config.secret_key}"}
    
    async def test_connection(self) -> ConnectionResult:
        response = await self.request("GET", f"{self.api_base_url}/balance")
        body = response.json()
        if not body.get("status"):
            return ConnectionResult(
                success=False,
                message="Paystack connection failed",
                details={"error": body.get("message")},
            )
        return ConnectionResult(
            success=True,
            message="Paystack connection successful",
            details={"balances": body.get("data") or []},
        )
    
    async def verify_payment(self, record: Dict[str, Any], external_id: Optional[str]) -> ExternalRef:
        """Verify a local payment against its gateway transaction."""
        record_id = record_id_of(record)
        reference = record.get("reference") or record.get("transaction_reference")
        if not reference:
            raise ContainedRecordError("Payment has no gateway reference", record_id=record_id)
        amount = positive_amount(record, "amount")
        
        response = await self.request(
            "GET",
            f"{self.api_base_url}/transaction/verify/{reference}",
            record_id=record_id,
        )
        transaction = response.json().get("data") or {}
        
        if transaction.get("status") != "success":
            raise ContainedRecordError(
                f"Paystack transaction {reference} is {transaction.get('status', 'unknown')}",
                record_id=record_id,
            )
        # Paystack amounts are in the currency subunit
        if int(round(amount * 100)) != int(transaction.get("amount") or 0):
            raise ContainedRecordError(
                f"Paystack amount for {reference} does not match the local payment",
                record_id=record_id,
                details={"local_amount": amount, "gateway_amount": transaction.get("amount")},
            )
        
        return ExternalRef(
            external_id=str(transaction["id"]),
            external_system=self.external_system,
            action="updated" if external_id else "created",
            details={"reference": reference, "currency": transaction.get("currency")},
        )
    
    def error_text(self, response: httpx.Response) -> str:
        try:
            return response.json().get("message") or super().error_text(response)
        except ValueError:
            return super().error_text(response)
