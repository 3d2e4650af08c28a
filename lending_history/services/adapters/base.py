"""
Base adapter for subgraph schema discovery.

An adapter introspects one endpoint and produces the SchemaConfigs that tell
the query builder and normalizer how that deployment names its event fields.
Subclasses choose which root fields to try, which asset metadata shapes to
look for and in what order the resulting configs are queried.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Optional, Tuple

from lending_history.core.errors import SchemaDiscoveryError
from lending_history.services.endpoints import ProtocolFamily
from lending_history.services.graphql_client import SubgraphClient
from lending_history.services.introspection import (
    SchemaIntrospector,
    find_field,
    is_leaf_field,
    is_list_type,
    is_required_arg,
    pick_field,
    unwrap_type_kind,
    unwrap_type_name,
)
from lending_history.services.schema_config import (
    ASSET_FLAT,
    ASSET_NONE,
    ASSET_POSITION_MARKET_TOKEN,
    ASSET_RESERVE_NESTED,
    ROLE_AMOUNT,
    ROLE_AMOUNT_USD,
    ROLE_BLOCK_NUMBER,
    ROLE_EVENT_LABEL,
    ROLE_ID,
    ROLE_LOG_INDEX,
    ROLE_TIMESTAMP,
    ROLE_TX_HASH,
    AssetPath,
    FilterArgs,
    SchemaConfig,
)

logger = logging.getLogger(__name__)

# Candidate field names per role, in priority order
ROLE_CANDIDATES: Dict[str, Tuple[str, ...]] = {
    ROLE_ID: ("id",),
    ROLE_TIMESTAMP: ("timestamp", "blockTimestamp", "createdAt", "time"),
    ROLE_TX_HASH: ("txHash", "transactionHash", "hash"),
    ROLE_LOG_INDEX: ("logIndex", "eventIndex", "logIdx"),
    ROLE_BLOCK_NUMBER: ("blockNumber", "block", "blockNum"),
    ROLE_EVENT_LABEL: ("action", "eventType", "type", "event"),
    ROLE_AMOUNT: ("amount", "amountRaw", "value", "assets"),
    ROLE_AMOUNT_USD: ("amountUSD", "amountUsd", "amountInUSD", "usdAmount"),
}

# Roles that may live on a nested transaction object instead of the event
TRANSACTION_OBJECT_CANDIDATES = ("transaction", "tx")
TRANSACTION_ROLE_CANDIDATES: Dict[str, Tuple[str, ...]] = {
    ROLE_TX_HASH: ("hash", "txHash", "id"),
    ROLE_TIMESTAMP: ("timestamp", "blockTimestamp"),
    ROLE_BLOCK_NUMBER: ("blockNumber", "block"),
    ROLE_LOG_INDEX: ("logIndex",),
}

# Asset metadata lookup
ASSET_OBJECT_CANDIDATES = ("asset", "reserve", "token", "underlyingToken", "inputToken")
RESERVE_OBJECT_CANDIDATES = ("reserve", "market", "vault", "asset")
NESTED_TOKEN_CANDIDATES = ("underlyingToken", "inputToken", "asset", "token", "underlying")
POSITION_OBJECT_CANDIDATES = ("position", "accountPosition")
MARKET_OBJECT_CANDIDATES = ("market", "reserve")
INPUT_TOKEN_CANDIDATES = ("inputToken", "inputTokens", "underlyingToken", "token")
SYMBOL_CANDIDATES = ("symbol",)
DECIMALS_CANDIDATES = ("decimals",)
ADDRESS_CANDIDATES = ("underlyingAsset", "address", "id")

# Arguments the engine knows how to supply
USER_ARG_CANDIDATES = ("user", "account", "userAddress", "owner", "address")
TIMESTAMP_ARG_CANDIDATES = ("timestamp_gte", "fromTimestamp", "from", "since")
USER_WHERE_CANDIDATES = ("user", "account", "onBehalfOf", "owner", "userAddress")
TIMESTAMP_WHERE_CANDIDATES = ("timestamp_gte", "blockTimestamp_gte", "createdAt_gte", "time_gte")
WHERE_ARG = "where"
PAGINATION_ARGS = ("skip", "first")
ORDERING_ARGS = ("orderBy", "orderDirection")
SUPPORTED_ARGS = frozenset(
    USER_ARG_CANDIDATES + TIMESTAMP_ARG_CANDIDATES + PAGINATION_ARGS + ORDERING_ARGS + (WHERE_ARG,)
)

OBJECT_KINDS = ("OBJECT", "INTERFACE")


def unsupported_required_args(root_field: Dict[str, Any]) -> List[str]:
    """Names of required arguments the engine cannot supply"""
    return [
        arg.get("name")
        for arg in root_field.get("args") or []
        if is_required_arg(arg) and arg.get("name") not in SUPPORTED_ARGS
    ]


def list_root_fields(root_fields: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return [f for f in root_fields if is_list_type(f.get("type"))]


def _object_field(
    fields: List[Dict[str, Any]],
    candidates: Iterable[str]
) -> Optional[Dict[str, Any]]:
    objects = [f for f in fields if unwrap_type_kind(f.get("type")) in OBJECT_KINDS]
    name = pick_field(objects, candidates)
    return find_field(objects, name) if name else None


class SchemaAdapter(ABC):
    """Abstract base class for protocol-family schema discovery"""

    # Asset shapes tried in order
    asset_strategies: Tuple[str, ...] = (ASSET_FLAT,)

    # Guess used when an event type introspects to zero fields
    fallback_field_map: Dict[str, Tuple[str, ...]] = {}
    fallback_asset_path: AssetPath = AssetPath()

    def __init__(self, client: SubgraphClient):
        self.client = client

    @property
    @abstractmethod
    def protocol_family(self) -> ProtocolFamily:
        """Return the protocol family this adapter understands"""
        pass

    @abstractmethod
    def select_root_fields(self, root_fields: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Pick candidate event collections from the root query fields"""
        pass

    def order_configs(self, configs: List[SchemaConfig]) -> List[SchemaConfig]:
        return configs

    async def discover(self, endpoint_url: str) -> List[SchemaConfig]:
        """
        Introspect an endpoint and return one SchemaConfig per usable event collection.

        Raises:
            SchemaDiscoveryError: no candidate root field could be turned into a config
            TransportError: an introspection request failed
        """
        introspector = SchemaIntrospector(self.client, endpoint_url)
        root_fields = await introspector.root_fields()
        candidates = self.select_root_fields(root_fields)

        configs: List[SchemaConfig] = []
        unusable: Dict[str, str] = {}
        for root_field in candidates:
            name = root_field.get("name")
            unsupported = unsupported_required_args(root_field)
            if unsupported:
                reason = f"requires unsupported argument(s) {', '.join(unsupported)}"
                logger.warning(f"Skipping root field {name}: {reason}")
                unusable[name] = reason
                continue

            config, reason = await self._build_config(introspector, root_field)
            if config is None:
                logger.warning(f"Skipping root field {name}: {reason}")
                unusable[name] = reason
                continue
            configs.append(config)

        if not configs:
            raise SchemaDiscoveryError(
                endpoint_url,
                [f.get("name") for f in root_fields],
                unusable
            )

        ordered = self.order_configs(configs)
        logger.info(
            f"Discovered {len(ordered)} {self.protocol_family.value} event field(s): "
            f"{[c.query_field for c in ordered]}"
        )
        return ordered

    async def _build_config(
        self,
        introspector: SchemaIntrospector,
        root_field: Dict[str, Any]
    ) -> Tuple[Optional[SchemaConfig], Optional[str]]:
        name = root_field.get("name")
        filter_args = await self._resolve_filter_args(introspector, root_field)
        if not filter_args.user_arg_name:
            return None, "no user/account filter argument"

        event_type_name = unwrap_type_name(root_field.get("type")) or ""
        event_fields = await introspector.type_fields(event_type_name)
        has_order_by = find_field(root_field.get("args") or [], "orderBy") is not None
        has_order_direction = find_field(root_field.get("args") or [], "orderDirection") is not None

        if not event_fields:
            logger.warning(f"Type {event_type_name or '?'} of {name} has no introspectable fields, using guessed fields")
            return SchemaConfig(
                query_field=name,
                event_type_name=event_type_name,
                field_map=dict(self.fallback_field_map),
                filter_args=filter_args,
                ordering_field="timestamp" if has_order_by else None,
                has_order_direction=has_order_direction,
                asset_path=self.fallback_asset_path,
                fallback_event_label=name,
            ), None

        field_map = await self._resolve_field_map(introspector, event_fields)
        if ROLE_TIMESTAMP not in field_map:
            return None, f"type {event_type_name} has no timestamp field"
        if ROLE_TX_HASH not in field_map and ROLE_ID not in field_map:
            return None, f"type {event_type_name} has no transaction identity field"

        asset_path = await self._resolve_asset_path(introspector, event_fields)
        if asset_path.shape == ASSET_NONE:
            logger.info(f"No asset metadata found on {event_type_name}")

        return SchemaConfig(
            query_field=name,
            event_type_name=event_type_name,
            field_map=field_map,
            filter_args=filter_args,
            # The Graph orders by one level of nesting as parent__child
            ordering_field="__".join(field_map[ROLE_TIMESTAMP][:2]) if has_order_by else None,
            has_order_direction=has_order_direction,
            asset_path=asset_path,
            fallback_event_label=name,
        ), None

    async def _resolve_field_map(
        self,
        introspector: SchemaIntrospector,
        event_fields: List[Dict[str, Any]]
    ) -> Dict[str, Tuple[str, ...]]:
        leaves = [f for f in event_fields if is_leaf_field(f)]
        field_map: Dict[str, Tuple[str, ...]] = {}
        for role, candidates in ROLE_CANDIDATES.items():
            name = pick_field(leaves, candidates)
            if name:
                field_map[role] = (name,)

        missing = [role for role in TRANSACTION_ROLE_CANDIDATES if role not in field_map]
        if missing:
            tx_field = _object_field(event_fields, TRANSACTION_OBJECT_CANDIDATES)
            if tx_field:
                tx_fields = await introspector.type_fields(unwrap_type_name(tx_field.get("type")))
                tx_leaves = [f for f in tx_fields if is_leaf_field(f)]
                for role in missing:
                    name = pick_field(tx_leaves, TRANSACTION_ROLE_CANDIDATES[role])
                    if name:
                        field_map[role] = (tx_field["name"], name)
        return field_map

    async def _resolve_filter_args(
        self,
        introspector: SchemaIntrospector,
        root_field: Dict[str, Any]
    ) -> FilterArgs:
        args = root_field.get("args") or []
        values: Dict[str, Any] = {}

        user_arg = pick_field(args, USER_ARG_CANDIDATES)
        if user_arg:
            values["user_arg_name"] = user_arg
            values["user_arg_type"] = unwrap_type_name(find_field(args, user_arg).get("type")) or "String"

        timestamp_arg = pick_field(args, TIMESTAMP_ARG_CANDIDATES)

        where_arg = find_field(args, WHERE_ARG)
        if where_arg:
            values["has_where"] = True
            values["requires_empty_where_object"] = is_required_arg(where_arg)
            input_fields = await introspector.input_fields(unwrap_type_name(where_arg.get("type")))
            leaves = [f for f in input_fields if is_leaf_field(f)]
            if not user_arg:
                user_key = pick_field(leaves, USER_WHERE_CANDIDATES)
                if user_key:
                    values["user_arg_name"] = user_key
                    values["user_arg_type"] = unwrap_type_name(find_field(leaves, user_key).get("type")) or "String"
                    values["user_in_where"] = True
            timestamp_key = pick_field(leaves, TIMESTAMP_WHERE_CANDIDATES)
            if timestamp_key:
                values["timestamp_arg_name"] = timestamp_key
                values["timestamp_arg_type"] = unwrap_type_name(find_field(leaves, timestamp_key).get("type")) or "Int"
                values["timestamp_in_where"] = True

        if timestamp_arg and "timestamp_arg_name" not in values:
            values["timestamp_arg_name"] = timestamp_arg
            values["timestamp_arg_type"] = unwrap_type_name(find_field(args, timestamp_arg).get("type")) or "Int"

        return FilterArgs(**values)

    async def _resolve_asset_path(
        self,
        introspector: SchemaIntrospector,
        event_fields: List[Dict[str, Any]]
    ) -> AssetPath:
        resolvers = {
            ASSET_FLAT: self._flat_asset,
            ASSET_RESERVE_NESTED: self._reserve_nested_asset,
            ASSET_POSITION_MARKET_TOKEN: self._position_market_asset,
        }
        for shape in self.asset_strategies:
            path = await resolvers[shape](introspector, event_fields)
            if path is not None:
                return path
        return AssetPath()

    async def _walk(
        self,
        introspector: SchemaIntrospector,
        fields: List[Dict[str, Any]],
        steps: Tuple[Tuple[str, ...], ...]
    ) -> Optional[Tuple[Tuple[str, ...], List[Dict[str, Any]]]]:
        """Follow object fields by candidate names; returns (segments, fields of the last type)"""
        segments: List[str] = []
        current = fields
        for candidates in steps:
            field = _object_field(current, candidates)
            if field is None:
                return None
            segments.append(field["name"])
            current = await introspector.type_fields(unwrap_type_name(field.get("type")))
        return tuple(segments), current

    def _asset_metadata(
        self,
        shape: str,
        walked,
    ) -> Optional[AssetPath]:
        if walked is None:
            return None
        segments, fields = walked
        leaves = [f for f in fields if is_leaf_field(f)]
        symbol = pick_field(leaves, SYMBOL_CANDIDATES)
        decimals = pick_field(leaves, DECIMALS_CANDIDATES)
        if not symbol and not decimals:
            return None
        return AssetPath(
            shape=shape,
            segments=segments,
            symbol_field=symbol,
            address_field=pick_field(leaves, ADDRESS_CANDIDATES),
            decimals_field=decimals,
        )

    async def _flat_asset(self, introspector, event_fields) -> Optional[AssetPath]:
        for candidate in ASSET_OBJECT_CANDIDATES:
            walked = await self._walk(introspector, event_fields, ((candidate,),))
            path = self._asset_metadata(ASSET_FLAT, walked)
            if path:
                return path
        return None

    async def _reserve_nested_asset(self, introspector, event_fields) -> Optional[AssetPath]:
        for candidate in RESERVE_OBJECT_CANDIDATES:
            walked = await self._walk(
                introspector, event_fields, ((candidate,), NESTED_TOKEN_CANDIDATES)
            )
            path = self._asset_metadata(ASSET_RESERVE_NESTED, walked)
            if path:
                return path
        return None

    async def _position_market_asset(self, introspector, event_fields) -> Optional[AssetPath]:
        walked = await self._walk(
            introspector,
            event_fields,
            (POSITION_OBJECT_CANDIDATES, MARKET_OBJECT_CANDIDATES, INPUT_TOKEN_CANDIDATES)
        )
        return self._asset_metadata(ASSET_POSITION_MARKET_TOKEN, walked)
