"""
Schema adapter registry for mapping protocol families to adapters.
"""

from typing import Dict, Optional, Type

from lending_history.services.endpoints import ProtocolFamily, parse_protocol
from lending_history.services.graphql_client import SubgraphClient

from .base import SchemaAdapter


class AdapterRegistry:
    """Registry of schema adapter classes by protocol family"""

    _adapters: Dict[ProtocolFamily, Type[SchemaAdapter]] = {}

    @classmethod
    def register(cls, family: ProtocolFamily, adapter_cls: Type[SchemaAdapter]) -> None:
        """Register an adapter class"""
        cls._adapters[family] = adapter_cls

    @classmethod
    def get_adapter_class(cls, protocol) -> Optional[Type[SchemaAdapter]]:
        """Get adapter class by protocol family or name"""
        family = parse_protocol(protocol)
        return cls._adapters.get(family) if family else None

    @classmethod
    def create(cls, protocol, client: SubgraphClient) -> Optional[SchemaAdapter]:
        """Instantiate the adapter for a protocol family"""
        adapter_cls = cls.get_adapter_class(protocol)
        return adapter_cls(client) if adapter_cls else None


# Import and register adapters
from .aave import AaveSchemaAdapter
from .compound import CompoundSchemaAdapter

AdapterRegistry.register(ProtocolFamily.AAVE, AaveSchemaAdapter)
AdapterRegistry.register(ProtocolFamily.COMPOUND, CompoundSchemaAdapter)

__all__ = [
    "AdapterRegistry",
    "SchemaAdapter",
    "AaveSchemaAdapter",
    "CompoundSchemaAdapter",
]
