"""
Retrieval orchestrator for lending-protocol event history.

Resolves the subgraph for (protocol, chain), discovers how that deployment
exposes its events (cached per endpoint), then pages through every usable
event collection for one wallet and normalizes the rows.

Architecture:
- Discovery: schema introspection via protocol-family adapters (once per endpoint)
- Retrieval: sequential skip-based paging per event collection
- Normalization: one canonical NormalizedEvent per row, bad rows dropped
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from lending_history.core.config import Settings, settings as default_settings
from lending_history.core.errors import MissingEndpointConfigError
from lending_history.services.adapters import AdapterRegistry
from lending_history.services.endpoints import ProtocolFamily, parse_protocol, resolve_endpoint
from lending_history.services.graphql_client import SubgraphClient
from lending_history.services.normalizer import NormalizedEvent, normalize_event
from lending_history.services.paginator import paginate
from lending_history.services.query_builder import build_filter_variables, build_query
from lending_history.services.schema_cache import SchemaCache
from lending_history.services.schema_config import SchemaConfig

logger = logging.getLogger(__name__)


@dataclass
class EventHistory:
    """Events from every collection, each read up to its own cap"""
    events: List[NormalizedEvent]
    # Latest timestamp below which no collection was cut short (None = all read to the end)
    complete_through: Optional[int] = None


class EventFetcher:
    """
    Fetches normalized lending events for a wallet.

    Safe to call concurrently for different wallets; the schema caches are
    the only state shared between calls.
    """

    def __init__(
        self,
        client: Optional[SubgraphClient] = None,
        config: Optional[Settings] = None
    ):
        self.config = config or default_settings
        self.client = client or SubgraphClient(
            timeout=self.config.subgraph_timeout,
            retry_attempts=self.config.subgraph_retry_attempts
        )
        self.page_size = self.config.subgraph_page_size
        self._caches: Dict[ProtocolFamily, SchemaCache] = {}

    async def close(self):
        await self.client.close()

    def _cache_for(self, family: ProtocolFamily) -> SchemaCache:
        cache = self._caches.get(family)
        if cache is None:
            adapter = AdapterRegistry.create(family, self.client)
            cache = self._caches[family] = SchemaCache(adapter.discover)
        return cache

    async def get_schema_configs(self, protocol_family, chain: str) -> List[SchemaConfig]:
        """
        Resolve (and cache) the SchemaConfigs for a protocol family and chain.

        Raises:
            MissingEndpointConfigError: no subgraph configured
            SchemaDiscoveryError: no usable event collection on the subgraph
        """
        family, endpoint = self._endpoint(protocol_family, chain)
        return await self._cache_for(family).resolve(endpoint)

    async def describe_schema(
        self,
        protocol_family,
        chain: str,
        refresh: bool = False
    ) -> List[Dict[str, Any]]:
        """Discovered configs as plain dicts (debugging unfamiliar subgraphs)"""
        family, endpoint = self._endpoint(protocol_family, chain)
        cache = self._cache_for(family)
        if refresh:
            cache.invalidate(endpoint)
        return [config.to_dict() for config in await cache.resolve(endpoint)]

    async def fetch_events(
        self,
        protocol_family,
        chain: str,
        address: str,
        from_timestamp_sec: int = 0,
        max_events: Optional[int] = None
    ) -> List[NormalizedEvent]:
        """
        Fetch all events for a wallet since a timestamp.

        Each event collection is returned oldest-first; collections are
        concatenated in priority order, not merged chronologically.

        Args:
            protocol_family: "aave" or "compound"
            chain: Chain name (polygon, arbitrum, base, ...)
            address: Wallet address, matched case-insensitively
            from_timestamp_sec: Lower bound on event timestamp
            max_events: Cap on returned events (None = unbounded)

        Raises:
            MissingEndpointConfigError: no subgraph configured for protocol/chain
            SchemaDiscoveryError: subgraph exposes no usable event collection
            TransportError: a page or introspection request failed
        """
        family, endpoint = self._endpoint(protocol_family, chain)
        wallet = address.lower()
        from_ts = max(0, int(from_timestamp_sec or 0))

        if max_events is not None and max_events <= 0:
            return []

        configs = await self._cache_for(family).resolve(endpoint)

        events: List[NormalizedEvent] = []
        for config in configs:
            remaining = None if max_events is None else max_events - len(events)
            events.extend(await self._fetch_collection(endpoint, config, wallet, from_ts, remaining))
            if max_events is not None and len(events) >= max_events:
                logger.info(
                    f"Hit cap of {max_events} events for {wallet[:10]}... on {config.query_field}"
                )
                return events

        return events

    async def fetch_history(
        self,
        protocol_family,
        chain: str,
        address: str,
        from_timestamp_sec: int = 0,
        max_events_per_collection: Optional[int] = None
    ) -> EventHistory:
        """
        Fetch events from every collection, capping each one separately.

        Unlike fetch_events, a cap on one collection never hides the others,
        and the result says how far the history is known to be complete.
        Collections capped without a server-side ordering count as complete
        only up to from_timestamp_sec.
        """
        family, endpoint = self._endpoint(protocol_family, chain)
        wallet = address.lower()
        from_ts = max(0, int(from_timestamp_sec or 0))

        if max_events_per_collection is not None and max_events_per_collection <= 0:
            return EventHistory([], from_ts)

        configs = await self._cache_for(family).resolve(endpoint)

        events: List[NormalizedEvent] = []
        complete_through: Optional[int] = None
        for config in configs:
            batch = await self._fetch_collection(endpoint, config, wallet, from_ts, max_events_per_collection)
            events.extend(batch)
            if max_events_per_collection is None or len(batch) < max_events_per_collection:
                continue

            last_seen = batch[-1].timestamp_sec if config.ordering_field else from_ts
            logger.info(
                f"Hit cap of {max_events_per_collection} events on {config.query_field} "
                f"for {wallet[:10]}..., complete through {last_seen}"
            )
            complete_through = last_seen if complete_through is None else min(complete_through, last_seen)

        return EventHistory(events, complete_through)

    def _endpoint(self, protocol_family, chain: str) -> Tuple[ProtocolFamily, str]:
        family = parse_protocol(protocol_family)
        if family is None:
            raise MissingEndpointConfigError(str(protocol_family), str(chain))
        return family, resolve_endpoint(family, chain, self.config)

    async def _fetch_collection(
        self,
        endpoint: str,
        config: SchemaConfig,
        wallet: str,
        from_ts: int,
        max_events: Optional[int]
    ) -> List[NormalizedEvent]:
        """Normalized events of one collection; dropped rows never use up the cap"""
        rows_seen = 0

        def accept(raw: Dict[str, Any]) -> Optional[NormalizedEvent]:
            nonlocal rows_seen
            rows_seen += 1
            event = normalize_event(raw, config)
            if event is None:
                return None
            # No server-side timestamp filter on this collection
            if not config.filter_args.timestamp_arg_name and event.timestamp_sec < from_ts:
                return None
            return event

        events = await paginate(
            self.client,
            endpoint,
            config.query_field,
            build_query(config, self.page_size),
            build_filter_variables(config, wallet, from_ts),
            self.page_size,
            max_events,
            accept
        )

        dropped = rows_seen - len(events)
        logger.info(
            f"{len(events)} events from {config.query_field} for {wallet[:10]}..."
            + (f" ({dropped} rows dropped)" if dropped else "")
        )
        return events


# Global service instance
_event_fetcher: Optional[EventFetcher] = None


async def get_event_fetcher() -> EventFetcher:
    """Dependency injection for EventFetcher"""
    global _event_fetcher
    if _event_fetcher is None:
        _event_fetcher = EventFetcher()
    return _event_fetcher


async def close_event_fetcher():
    """Cleanup on shutdown"""
    global _event_fetcher
    if _event_fetcher:
        await _event_fetcher.close()
        _event_fetcher = None
