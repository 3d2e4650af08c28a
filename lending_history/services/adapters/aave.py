"""
Aave-style schema adapter.

Aave subgraphs expose lending history as several independent collections
(`borrows`, `repays`, `supplies`, `redeemUnderlyings`, `liquidationCalls`,
or a combined `userTransactions` interface), and different deployments name
and nest them differently. Each usable collection becomes its own
SchemaConfig; borrows and repays are always tried and always queried first.
"""

import logging
from typing import Any, Dict, List

from lending_history.services.endpoints import ProtocolFamily
from lending_history.services.schema_config import (
    ASSET_FLAT,
    ASSET_POSITION_MARKET_TOKEN,
    ASSET_RESERVE_NESTED,
    ROLE_AMOUNT,
    ROLE_EVENT_LABEL,
    ROLE_ID,
    ROLE_TIMESTAMP,
    ROLE_TX_HASH,
    AssetPath,
    SchemaConfig,
)
from .base import SchemaAdapter, list_root_fields

logger = logging.getLogger(__name__)

# Exact collection names seen on Aave and Messari lending subgraphs
ACTIVITY_VOCABULARY = (
    "userTransactions",
    "borrows",
    "repays",
    "supplies",
    "deposits",
    "withdraws",
    "redeemUnderlyings",
    "liquidationCalls",
    "liquidates",
)

# Name fragments that suggest an activity collection
ACTIVITY_TOKENS = (
    "transaction",
    "borrow",
    "repay",
    "suppl",
    "deposit",
    "withdraw",
    "redeem",
    "liquidat",
)

# Collections that loan history cannot do without
DEBT_MOVEMENT_SUFFIXES = ("borrows", "repays")

# Which collections are queried first; lower index wins
HISTORY_FIELD_PRIORITY = ("borrow", "repay")

MAX_RANKED_FIELDS = 6


def activity_score(name: str) -> int:
    if name in ACTIVITY_VOCABULARY:
        return 2
    lowered = name.lower()
    return 1 if any(token in lowered for token in ACTIVITY_TOKENS) else 0


def is_debt_movement_field(name: str) -> bool:
    return name.lower().endswith(DEBT_MOVEMENT_SUFFIXES)


def history_priority(name: str) -> int:
    lowered = name.lower()
    for index, token in enumerate(HISTORY_FIELD_PRIORITY):
        if token in lowered:
            return index
    return len(HISTORY_FIELD_PRIORITY)


class AaveSchemaAdapter(SchemaAdapter):
    """Discovers the event collections of an Aave-style subgraph"""

    asset_strategies = (ASSET_FLAT, ASSET_RESERVE_NESTED, ASSET_POSITION_MARKET_TOKEN)

    fallback_field_map = {
        ROLE_ID: ("id",),
        ROLE_TIMESTAMP: ("timestamp",),
        ROLE_TX_HASH: ("txHash",),
        ROLE_EVENT_LABEL: ("action",),
        ROLE_AMOUNT: ("amount",),
    }
    fallback_asset_path = AssetPath(
        shape=ASSET_FLAT,
        segments=("reserve",),
        symbol_field="symbol",
        address_field="underlyingAsset",
        decimals_field="decimals",
    )

    @property
    def protocol_family(self) -> ProtocolFamily:
        return ProtocolFamily.AAVE

    def select_root_fields(self, root_fields: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        collections = list_root_fields(root_fields)
        scored = [(activity_score(f["name"]), f) for f in collections]
        ranked = [f for score, f in sorted(scored, key=lambda pair: -pair[0]) if score > 0]

        selected = ranked[:MAX_RANKED_FIELDS]
        selected_names = {f["name"] for f in selected}
        for field in collections:
            if is_debt_movement_field(field["name"]) and field["name"] not in selected_names:
                selected.append(field)
                selected_names.add(field["name"])

        logger.debug(f"Aave candidate root fields: {[f['name'] for f in selected]}")
        return selected

    def order_configs(self, configs: List[SchemaConfig]) -> List[SchemaConfig]:
        # sorted() is stable, so ranking order is kept within a priority bucket
        return sorted(configs, key=lambda c: history_priority(c.query_field))
