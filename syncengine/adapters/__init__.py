"""External system adapters."""

from .base import BaseAdapter, MappingLookup
from .registry import AdapterRegistry
from .quickbooks import QuickBooksAdapter
from .etims import ETIMSAdapter
from .paystack import PaystackAdapter
from .custom import CustomWebhookAdapter

__all__ = [
    "BaseAdapter",
    "MappingLookup",
    "AdapterRegistry",
    "QuickBooksAdapter",
    "ETIMSAdapter",
    "PaystackAdapter",
    "CustomWebhookAdapter",
]
