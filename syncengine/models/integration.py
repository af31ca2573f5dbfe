"""Integration configuration models."""

from datetime import datetime
from typing import Optional, Dict, Any, List, Union, ClassVar, Set, Literal, Type
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator
from enum import Enum
import re
import uuid


class IntegrationType(str, Enum):
    """Types of integrations."""
    ACCOUNTING_PLATFORM = "accounting_platform"
    TAX_GATEWAY = "tax_gateway"
    PAYMENT_GATEWAY = "payment_gateway"
    CUSTOM = "custom"


class SyncFrequency(str, Enum):
    """Sync cadence, consumed by the scheduler."""
    HOURLY = "hourly"
    DAILY = "daily"
    WEEKLY = "weekly"
    MANUAL = "manual"


class DataType(str, Enum):
    """Business record categories that can be synchronized."""
    CUSTOMERS = "customers"
    PRODUCTS = "products"
    INVOICES = "invoices"
    PAYMENTS = "payments"
    SALES = "sales"
    PURCHASES = "purchases"
    INVENTORY = "inventory"


class BaseConfigData(BaseModel):
    """Common base for per-type credential and settings blobs."""
    
    # Fields encrypted at rest and never written to audit entries
    SECRET_FIELDS: ClassVar[Set[str]] = set()
    
    def enabled_data_types(self) -> List[DataType]:
        """Data categories enabled by this configuration."""
        return []
    
    class Config:
        extra = "forbid"
        use_enum_values = True


class AccountingPlatformConfig(BaseConfigData):
    """QuickBooks Online credentials and category switches."""
    
    SECRET_FIELDS: ClassVar[Set[str]] = {"client_secret", "refresh_token", "access_token"}
    
    client_id: str = Field(min_length=1)
    client_secret: str = Field(min_length=1)
    refresh_token: str = Field(min_length=1)
    access_token: Optional[str] = None
    token_expires_at: Optional[datetime] = None
    realm_id: str = Field(min_length=1)
    environment: Literal["sandbox", "production"] = "sandbox"
    income_account_ref: str = "1"
    sync_customers: bool = True
    sync_products: bool = True
    sync_invoices: bool = True
    sync_payments: bool = True
    
    def enabled_data_types(self) -> List[DataType]:
        flags = [
            (self.sync_customers, DataType.CUSTOMERS),
            (self.sync_products, DataType.PRODUCTS),
            (self.sync_invoices, DataType.INVOICES),
            (self.sync_payments, DataType.PAYMENTS),
        ]
        return [data_type for enabled, data_type in flags if enabled]


KRA_PIN_PATTERN = re.compile(r"^[A-Z]\d{9}[A-Z]$")


class TaxGatewayConfig(BaseConfigData):
    """KRA e-TIMS credentials and category switches."""
    
    SECRET_FIELDS: ClassVar[Set[str]] = {"api_secret"}
    
    api_key: str = Field(min_length=1)
    api_secret: str = Field(min_length=1)
    business_pin: str
    branch_id: str = "00"
    environment: Literal["sandbox", "production"] = "sandbox"
    sync_sales: bool = True
    sync_purchases: bool = True
    sync_inventory: bool = True
    vat_rate: float = Field(default=0.16, ge=0, le=1)
    
    @field_validator("business_pin")
    @classmethod
    def validate_business_pin(cls, v: str) -> str:
        v = v.strip().upper()
        if not KRA_PIN_PATTERN.match(v):
            raise ValueError("business_pin must look like A123456789B")
        return v
    
    def enabled_data_types(self) -> List[DataType]:
        flags = [
            (self.sync_sales, DataType.SALES),
            (self.sync_purchases, DataType.PURCHASES),
            (self.sync_inventory, DataType.INVENTORY),
        ]
        return [data_type for enabled, data_type in flags if enabled]


class PaymentGatewayConfig(BaseConfigData):
    """Payment gateway credentials."""
    
    SECRET_FIELDS: ClassVar[Set[str]] = {"secret_key"}
    
    provider: Literal["paystack"] = "paystack"
    secret_key: str = Field(min_length=1)
    public_key: Optional[str] = None
    environment: Literal["sandbox", "production"] = "sandbox"
    sync_payments: bool = True
    
    def enabled_data_types(self) -> List[DataType]:
        return [DataType.PAYMENTS] if self.sync_payments else []


class CustomConfig(BaseConfigData):
    """Generic JSON webhook endpoint."""
    
    SECRET_FIELDS: ClassVar[Set[str]] = {"api_key"}
    
    base_url: str
    api_key: Optional[str] = None
    auth_header: str = "Authorization"
    supported_data_types: List[DataType] = Field(min_length=1)
    timeout_seconds: Optional[float] = Field(default=None, gt=0)
    
    @field_validator("base_url")
    @classmethod
    def validate_base_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError("base_url must be an http(s) URL")
        return v.rstrip("/")
    
    def enabled_data_types(self) -> List[DataType]:
        return [DataType(d) for d in self.supported_data_types]


ConfigData = Union[AccountingPlatformConfig, TaxGatewayConfig, PaymentGatewayConfig, CustomConfig]

CONFIG_SCHEMAS: Dict[IntegrationType, Type[BaseConfigData]] = {
    IntegrationType.ACCOUNTING_PLATFORM: AccountingPlatformConfig,
    IntegrationType.TAX_GATEWAY: TaxGatewayConfig,
    IntegrationType.PAYMENT_GATEWAY: PaymentGatewayConfig,
    IntegrationType.CUSTOM: CustomConfig,
}


def parse_config_data(integration_type: Union[IntegrationType, str], data: Any) -> BaseConfigData:
    """Validate a raw config blob against the schema for its integration type."""
    schema = CONFIG_SCHEMAS[IntegrationType(integration_type)]
    if isinstance(data, schema):
        return data
    if isinstance(data, BaseConfigData):
        raise ValueError(
            f"config_data of type {type(data).__name__} does not match integration type {integration_type}"
        )
    return schema.model_validate(data)


class IntegrationConfig(BaseModel):
    """Per-tenant integration configuration."""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()), alias="_id")
    tenant_id: str
    name: Optional[str] = None
    integration_type: IntegrationType
    is_active: bool = True
    config_data: ConfigData
    sync_frequency: SyncFrequency = SyncFrequency.DAILY
    
    # Metadata
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)
    last_sync_at: Optional[datetime] = None
    
    @model_validator(mode="before")
    @classmethod
    def _parse_config_data(cls, values: Any) -> Any:
        if isinstance(values, dict) and values.get("integration_type") is not None:
            values = dict(values)
            try:
                values["config_data"] = parse_config_data(
                    values["integration_type"], values.get("config_data")
                )
            except ValidationError as e:
                raise ValueError(f"invalid config_data: {e}") from e
        return values
    
    def enabled_data_types(self) -> List[DataType]:
        return self.config_data.enabled_data_types()
    
    class Config:
        populate_by_name = True
        use_enum_values = True
