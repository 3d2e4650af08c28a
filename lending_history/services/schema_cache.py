"""
Per-endpoint memoized schema discovery with single-flight semantics.
"""
import asyncio
import logging
from typing import Awaitable, Callable, Dict, List, Optional

from lending_history.services.graphql_client import redact_url
from lending_history.services.schema_config import SchemaConfig

logger = logging.getLogger(__name__)

DiscoverFn = Callable[[str], Awaitable[List[SchemaConfig]]]


class SchemaCache:
    """
    Resolves and caches SchemaConfigs by endpoint URL.

    Concurrent callers for the same URL share one in-flight discovery.
    Failed discoveries are not cached; the next call starts a fresh one.
    Entries never expire: a deployment's schema does not change.
    """

    def __init__(self, discover: DiscoverFn):
        self._discover = discover
        self._resolved: Dict[str, List[SchemaConfig]] = {}
        self._inflight: Dict[str, "asyncio.Future[List[SchemaConfig]]"] = {}

    async def resolve(self, endpoint_url: str) -> List[SchemaConfig]:
        cached = self._resolved.get(endpoint_url)
        if cached is not None:
            return list(cached)

        future = self._inflight.get(endpoint_url)
        if future is None:
            logger.info(f"Schema cache MISS for {redact_url(endpoint_url)} - discovering")
            future = asyncio.ensure_future(self._discover(endpoint_url))
            self._inflight[endpoint_url] = future
            future.add_done_callback(
                lambda done, url=endpoint_url: self._settle(url, done)
            )

        # One caller being cancelled must not cancel the shared discovery
        configs = await asyncio.shield(future)
        return list(configs)

    def _settle(self, endpoint_url: str, future: "asyncio.Future[List[SchemaConfig]]"):
        if self._inflight.get(endpoint_url) is future:
            del self._inflight[endpoint_url]
        if future.cancelled():
            return
        error = future.exception()
        if error is not None:
            logger.warning(f"Schema discovery failed for {redact_url(endpoint_url)}: {error}")
            return
        self._resolved[endpoint_url] = list(future.result())

    def peek(self, endpoint_url: str) -> Optional[List[SchemaConfig]]:
        cached = self._resolved.get(endpoint_url)
        return list(cached) if cached is not None else None

    def invalidate(self, endpoint_url: Optional[str] = None):
        if endpoint_url is None:
            self._resolved.clear()
        else:
            self._resolved.pop(endpoint_url, None)
