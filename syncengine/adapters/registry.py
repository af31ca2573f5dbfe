"""Adapter registry for resolving adapters by integration type."""

from typing import Dict, Type, Optional
from syncengine.adapters.base import BaseAdapter
from syncengine.models import IntegrationType


class AdapterRegistry:
    """Registry for adapter implementations."""
    
    _adapters: Dict[IntegrationType, Type[BaseAdapter]] = {}
    
    @classmethod
    def register(cls, integration_type: IntegrationType):
        """Decorator to register an adapter class."""
        def decorator(adapter_class: Type[BaseAdapter]):
            adapter_class.integration_type = integration_type
            cls._adapters[IntegrationType(integration_type)] = adapter_class
            return adapter_class
        return decorator
    
    @classmethod
    def get(cls, integration_type) -> Optional[Type[BaseAdapter]]:
        """Get adapter class by integration type."""
        try:
            return cls._adapters.get(IntegrationType(integration_type))
        except ValueError:
            return None
    
    @classmethod
    def list_types(cls) -> list[IntegrationType]:
        """List all registered integration types."""
        return list(cls._adapters.keys())
