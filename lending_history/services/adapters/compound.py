"""
Compound-style schema adapter.

Compound subgraphs expose one unified stream of account events with the
asset attached directly to each event, so discovery yields a single config.
"""

from typing import Any, Dict, List

from lending_history.services.endpoints import ProtocolFamily
from lending_history.services.introspection import pick_field, find_field
from lending_history.services.schema_config import (
    ASSET_FLAT,
    ROLE_AMOUNT,
    ROLE_BLOCK_NUMBER,
    ROLE_EVENT_LABEL,
    ROLE_ID,
    ROLE_LOG_INDEX,
    ROLE_TIMESTAMP,
    ROLE_TX_HASH,
    AssetPath,
)
from .base import SchemaAdapter, list_root_fields

ROOT_FIELD_CANDIDATES = ("accountEvents", "userEvents", "events")


class CompoundSchemaAdapter(SchemaAdapter):
    """Discovers the account events collection of a Compound-style subgraph"""

    asset_strategies = (ASSET_FLAT,)

    fallback_field_map = {
        ROLE_ID: ("id",),
        ROLE_TIMESTAMP: ("timestamp",),
        ROLE_TX_HASH: ("transactionHash",),
        ROLE_LOG_INDEX: ("logIndex",),
        ROLE_BLOCK_NUMBER: ("blockNumber",),
        ROLE_EVENT_LABEL: ("eventType",),
        ROLE_AMOUNT: ("amount",),
    }
    fallback_asset_path = AssetPath(
        shape=ASSET_FLAT,
        segments=("asset",),
        symbol_field="symbol",
        address_field="id",
        decimals_field="decimals",
    )

    @property
    def protocol_family(self) -> ProtocolFamily:
        return ProtocolFamily.COMPOUND

    def select_root_fields(self, root_fields: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        collections = list_root_fields(root_fields)
        name = pick_field(collections, ROOT_FIELD_CANDIDATES)
        if name:
            return [find_field(collections, name)]
        for field in collections:
            if "event" in field["name"].lower():
                return [field]
        return []
