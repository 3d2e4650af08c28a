"""
Resolved description of how to query one event collection on one subgraph.
"""

from dataclasses import dataclass, field, asdict
from typing import Any, Dict, Optional, Tuple

# Logical roles mapped to concrete field paths
ROLE_ID = "id"
ROLE_TIMESTAMP = "timestamp"
ROLE_TX_HASH = "tx_hash"
ROLE_LOG_INDEX = "log_index"
ROLE_BLOCK_NUMBER = "block_number"
ROLE_EVENT_LABEL = "event_label"
ROLE_AMOUNT = "amount"
ROLE_AMOUNT_USD = "amount_usd"

ALL_ROLES = (
    ROLE_ID,
    ROLE_TIMESTAMP,
    ROLE_TX_HASH,
    ROLE_LOG_INDEX,
    ROLE_BLOCK_NUMBER,
    ROLE_EVENT_LABEL,
    ROLE_AMOUNT,
    ROLE_AMOUNT_USD,
)

# Asset metadata shapes
ASSET_FLAT = "flat"                                    # event.asset { symbol }
ASSET_RESERVE_NESTED = "reserve_nested"                # event.reserve.token { symbol }
ASSET_POSITION_MARKET_TOKEN = "position_market_token"  # event.position.market.inputToken { symbol }
ASSET_NONE = "none"


@dataclass(frozen=True)
class FilterArgs:
    """How the user and from-timestamp filters are passed to the root field"""
    user_arg_name: Optional[str] = None
    user_arg_type: str = "String"
    user_in_where: bool = False
    timestamp_arg_name: Optional[str] = None
    timestamp_arg_type: str = "Int"
    timestamp_in_where: bool = False
    has_where: bool = False
    requires_empty_where_object: bool = False


@dataclass(frozen=True)
class AssetPath:
    """Where symbol/address/decimals live relative to the event object"""
    shape: str = ASSET_NONE
    segments: Tuple[str, ...] = ()
    symbol_field: Optional[str] = None
    address_field: Optional[str] = None
    decimals_field: Optional[str] = None

    @property
    def leaf_fields(self) -> Tuple[str, ...]:
        names = (self.symbol_field, self.address_field, self.decimals_field)
        seen = []
        for name in names:
            if name and name not in seen:
                seen.append(name)
        return tuple(seen)


@dataclass(frozen=True)
class SchemaConfig:
    query_field: str
    event_type_name: str
    field_map: Dict[str, Tuple[str, ...]] = field(default_factory=dict)
    filter_args: FilterArgs = field(default_factory=FilterArgs)
    ordering_field: Optional[str] = None
    has_order_direction: bool = False
    asset_path: AssetPath = field(default_factory=AssetPath)
    fallback_event_label: str = ""

    def path_for(self, role: str) -> Optional[Tuple[str, ...]]:
        return self.field_map.get(role)

    @property
    def event_label(self) -> str:
        return self.fallback_event_label or self.query_field

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["field_map"] = {role: ".".join(path) for role, path in self.field_map.items()}
        return data
