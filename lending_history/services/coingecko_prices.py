import httpx
from typing import Dict, List, Optional, Tuple
import logging
import asyncio
import math

from lending_history.core.config import settings
from lending_history.services.endpoints import CHAIN_ALIASES

logger = logging.getLogger(__name__)

# Chain name to CoinGecko platform mapping
CHAIN_TO_PLATFORM = {
    "ethereum": "ethereum",
    "eth": "ethereum",
    "polygon": "polygon-pos",
    "arbitrum": "arbitrum-one",
    "optimism": "optimistic-ethereum",
    "base": "base",
    "avalanche": "avalanche",
    "bsc": "binance-smart-chain",
}

# Prices are cached per hour bucket
BUCKET_SECONDS = 3600


def pick_closest(prices: List[List[float]], target_ms: float) -> Optional[float]:
    """Price of the [timestamp_ms, price] point nearest to target_ms"""
    best: Optional[Tuple[float, float]] = None
    for point in prices:
        if not isinstance(point, (list, tuple)) or len(point) < 2:
            continue
        diff = abs(point[0] - target_ms)
        if best is None or diff < best[0]:
            best = (diff, point[1])
    return best[1] if best else None


class CoinGeckoPriceService:
    """
    Historical USD prices by token contract address.
    Best effort: every failure is logged and reported as None.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None
    ):
        self.api_key = settings.coingecko_api_key if api_key is None else api_key
        self.client = http_client or httpx.AsyncClient(
            base_url=base_url or settings.coingecko_base_url,
            headers={"x-cg-pro-api-key": self.api_key} if self.api_key else {},
            timeout=30.0
        )
        # In-memory cache: (platform, address, hour_bucket) -> price
        self._price_cache: Dict[Tuple[str, str, int], float] = {}
        # Rate limiting
        self._last_request_time = 0.0
        self._min_request_interval = 0.5  # 500ms between requests (demo tier)

    async def close(self):
        await self.client.aclose()

    async def _rate_limit(self):
        """Enforce rate limiting between requests"""
        loop = asyncio.get_running_loop()
        elapsed = loop.time() - self._last_request_time
        if elapsed < self._min_request_interval:
            await asyncio.sleep(self._min_request_interval - elapsed)
        self._last_request_time = loop.time()

    def _platform(self, chain: str) -> Optional[str]:
        chain = (chain or "").lower()
        return CHAIN_TO_PLATFORM.get(CHAIN_ALIASES.get(chain, chain))

    async def price_at_timestamp(
        self,
        chain: str,
        token_address: str,
        timestamp_sec: int
    ) -> Optional[float]:
        """
        Get the USD price of a token closest to a timestamp.

        Args:
            chain: Chain name (polygon, arbitrum, base, ...)
            token_address: Token contract address
            timestamp_sec: Unix timestamp

        Returns:
            Price in USD or None if unknown
        """
        platform = self._platform(chain)
        if not platform:
            logger.warning(f"Unknown chain for CoinGecko lookup: {chain}")
            return None
        if not token_address or not timestamp_sec:
            return None

        address = token_address.lower()
        cache_key = (platform, address, int(timestamp_sec) // BUCKET_SECONDS)
        if cache_key in self._price_cache:
            return self._price_cache[cache_key]

        try:
            await self._rate_limit()
            response = await self.client.get(
                f"/coins/{platform}/contract/{address}/market_chart/range",
                params={
                    "vs_currency": "usd",
                    "from": max(0, int(timestamp_sec) - BUCKET_SECONDS),
                    "to": int(timestamp_sec) + BUCKET_SECONDS,
                }
            )
            if response.status_code == 404:
                logger.debug(f"Token not found on CoinGecko: {address} on {platform}")
                return None
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"Error fetching historical price for {address} on {platform}: {e}")
            return None

        price = pick_closest(data.get("prices") or [], int(timestamp_sec) * 1000) if isinstance(data, dict) else None
        if price is None:
            return None
        try:
            price = float(price)
        except (TypeError, ValueError):
            return None
        if not math.isfinite(price):
            return None

        self._price_cache[cache_key] = price
        logger.debug(f"Historical price for {address} at {timestamp_sec}: ${price:.4f}")
        return price


# Global service instance
_price_service: Optional[CoinGeckoPriceService] = None


def get_price_service() -> CoinGeckoPriceService:
    """Get or create the global price service instance"""
    global _price_service
    if _price_service is None:
        _price_service = CoinGeckoPriceService()
    return _price_service


async def close_price_service():
    """Close the global price service"""
    global _price_service
    if _price_service:
        await _price_service.close()
        _price_service = None
