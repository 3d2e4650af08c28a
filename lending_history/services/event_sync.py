"""
Event sync job.

Pulls new lending events for tracked wallets, optionally prices them in USD,
upserts them into an event sink and advances each wallet's watermark. The
watermark only moves after every row of the batch has been written, so a
failed sync can simply be retried.
"""

import asyncio
import logging
import math
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple

from lending_history.core.config import settings
from lending_history.core.errors import HistoryError
from lending_history.services.event_fetcher import EventFetcher
from lending_history.services.event_store import SyncWatermark
from lending_history.services.normalizer import NormalizedEvent

logger = logging.getLogger(__name__)

DEFAULT_MAX_DAYS = 90
DEFAULT_MAX_EVENTS = 2000
MIN_MAX_EVENTS = 100
MAX_MAX_EVENTS = 10000
UPSERT_BATCH_SIZE = 500
PRICE_CONCURRENCY = 2
SECONDS_PER_DAY = 24 * 60 * 60

# One sink row per event, keyed by (wallet_id, tx_hash, log_index)
EventRecord = Dict[str, Any]


class UsdPolicy(str, Enum):
    PREFER_DIRECT = "prefer_direct"      # subgraph USD amount, else external price
    PREFER_EXTERNAL = "prefer_external"  # external price, else subgraph USD amount


class PriceLookup(Protocol):
    async def price_at_timestamp(
        self, chain: str, token_address: str, timestamp_sec: int
    ) -> Optional[float]:
        ...


class EventSink(Protocol):
    async def upsert_events(self, rows: Sequence[EventRecord]) -> int:
        ...

    async def get_watermark(self, wallet_id: str) -> Optional[SyncWatermark]:
        ...

    async def set_watermark(
        self,
        wallet_id: str,
        watermark: SyncWatermark,
        protocol: Optional[str] = None,
        chain: Optional[str] = None
    ):
        ...

    async def delete_wallet(self, wallet_id: str):
        ...


@dataclass
class WalletRef:
    id: str
    address: str
    protocol: str
    chain: str


@dataclass
class SyncResult:
    wallet_id: str
    synced: int = 0
    last_timestamp: int = 0
    event_type_counts: Dict[str, int] = field(default_factory=dict)
    skipped: bool = False
    error: Optional[str] = None
    error_code: Optional[str] = None
    # Some collection hit the cap; another sync continues from last_timestamp
    truncated: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None


def clamp_max_events(value: Optional[int]) -> int:
    if value is None:
        return DEFAULT_MAX_EVENTS
    return max(MIN_MAX_EVENTS, min(MAX_MAX_EVENTS, int(value)))


def _to_float(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def resolve_usd(
    amount: Optional[str],
    direct_amount_usd: Optional[str],
    external_price: Optional[float],
    policy: UsdPolicy = UsdPolicy.PREFER_DIRECT,
    tolerance: float = 0.05
) -> Tuple[Optional[float], Optional[float], bool]:
    """
    Pick the USD value of an event from the subgraph amount and an external price.

    Returns:
        (price_usd, amount_usd, needs_review); needs_review is set when both
        sources are present and differ by more than tolerance (relative).
    """
    amount_num = _to_float(amount)
    direct = _to_float(direct_amount_usd)
    external = _to_float(external_price)
    external_usd = amount_num * external if amount_num is not None and external is not None else None

    # A zero subgraph USD amount means the indexer had no price
    direct_usable = direct if direct else None
    if policy == UsdPolicy.PREFER_EXTERNAL:
        chosen_external = external_usd is not None
    else:
        chosen_external = direct_usable is None and external_usd is not None

    if chosen_external:
        amount_usd = external_usd
        price_usd = external
    else:
        amount_usd = direct
        price_usd = direct / amount_num if direct is not None and amount_num else None

    needs_review = False
    if direct_usable is not None and external_usd is not None:
        scale = max(abs(direct_usable), abs(external_usd))
        needs_review = scale > 0 and abs(direct_usable - external_usd) / scale > tolerance

    return price_usd, amount_usd, needs_review


def next_watermark(
    watermark: SyncWatermark,
    events: Sequence[NormalizedEvent],
    complete_through: Optional[int] = None
) -> SyncWatermark:
    """
    Watermark after storing `events`.

    Never moves past complete_through, the point up to which every collection
    was read, so events a capped fetch left unread are picked up next time.
    """
    timestamp = max([watermark.last_synced_timestamp] + [e.timestamp_sec for e in events])
    if complete_through is not None:
        timestamp = max(watermark.last_synced_timestamp, min(timestamp, complete_through))
    block = max(
        [watermark.last_synced_block] + [e.block_number for e in events if e.timestamp_sec <= timestamp]
    )
    return SyncWatermark(last_synced_timestamp=timestamp, last_synced_block=block)


def build_event_row(wallet: WalletRef, event: NormalizedEvent) -> EventRecord:
    """Sink row for one event, without external pricing"""
    price_usd, amount_usd, _ = resolve_usd(event.amount, event.amount_usd_raw, None)
    return {
        "wallet_id": wallet.id,
        "protocol": wallet.protocol,
        "chain": wallet.chain,
        "tx_hash": event.transaction_id,
        "log_index": event.log_index,
        "block_number": event.block_number,
        "block_timestamp": datetime.fromtimestamp(event.timestamp_sec, tz=timezone.utc).isoformat(),
        "event_type": event.event_kind,
        "asset_address": event.asset_address,
        "asset_symbol": event.asset_symbol,
        "asset_decimals": event.asset_decimals,
        "amount_raw": event.amount_raw,
        "amount": event.amount,
        "amount_usd_raw": event.amount_usd_raw,
        "timestamp_sec": event.timestamp_sec,
        "price_usd": price_usd,
        "amount_usd": amount_usd,
        "needs_review": False,
    }


class EventSyncService:
    """Syncs lending events for wallets into an EventSink"""

    def __init__(
        self,
        fetcher: EventFetcher,
        sink: EventSink,
        price_lookup: Optional[PriceLookup] = None,
        usd_policy: Optional[UsdPolicy] = None,
        disagreement_tolerance: Optional[float] = None
    ):
        self.fetcher = fetcher
        self.sink = sink
        self.price_lookup = price_lookup
        self.usd_policy = UsdPolicy(usd_policy or settings.usd_policy)
        self.tolerance = (
            settings.usd_disagreement_tolerance if disagreement_tolerance is None else disagreement_tolerance
        )

    async def _price(self, chain: str, token_address: str, timestamp_sec: int) -> Optional[float]:
        """External price lookup; a failing price source only costs the USD value"""
        try:
            return await self.price_lookup.price_at_timestamp(chain, token_address, timestamp_sec)
        except Exception as e:
            logger.warning(f"Price lookup failed for {token_address} on {chain}: {e}")
            return None

    async def _enrich_row(self, wallet: WalletRef, row: EventRecord) -> EventRecord:
        if not row.get("asset_address"):
            return row
        external = await self._price(wallet.chain, row["asset_address"], row["timestamp_sec"])
        if external is None:
            return row
        price_usd, amount_usd, needs_review = resolve_usd(
            row.get("amount"), row.get("amount_usd_raw"), external, self.usd_policy, self.tolerance
        )
        if needs_review:
            logger.warning(
                f"USD mismatch on {row['tx_hash']}:{row['log_index']} "
                f"(subgraph {row.get('amount_usd_raw')}, external price {external})"
            )
        return {**row, "price_usd": price_usd, "amount_usd": amount_usd, "needs_review": needs_review}

    async def _enrich(self, wallet: WalletRef, rows: List[EventRecord]) -> List[EventRecord]:
        enriched: List[EventRecord] = []
        for i in range(0, len(rows), PRICE_CONCURRENCY):
            batch = rows[i:i + PRICE_CONCURRENCY]
            enriched.extend(await asyncio.gather(*(self._enrich_row(wallet, row) for row in batch)))
        return enriched

    async def sync_wallet(
        self,
        wallet: WalletRef,
        max_days: int = DEFAULT_MAX_DAYS,
        max_events: Optional[int] = DEFAULT_MAX_EVENTS,
        from_timestamp: Optional[int] = None,
        force_from_timestamp: bool = False,
        include_prices: bool = False,
        reset: bool = False,
        now: Optional[int] = None
    ) -> SyncResult:
        """
        Sync one wallet's events since its watermark.

        Args:
            wallet: Wallet to sync
            max_days: Never look further back than this many days
            max_events: Cap per event collection, clamped to [100, 10000]
            from_timestamp: Explicit start, overrides watermark and window
            force_from_timestamp: Start at the window start, ignoring the watermark
            include_prices: Price rows with the external price lookup
            reset: Delete stored events and watermark first

        Returns:
            SyncResult; failures are reported in .error, never raised
        """
        now = int(now if now is not None else time.time())
        try:
            if reset:
                await self.sink.delete_wallet(wallet.id)

            watermark = await self.sink.get_watermark(wallet.id) or SyncWatermark()
            window_start = now - max(1, int(max_days)) * SECONDS_PER_DAY
            if from_timestamp is not None:
                start = max(0, int(from_timestamp))
            elif force_from_timestamp:
                start = window_start
            else:
                start = max(watermark.last_synced_timestamp, window_start)

            if start >= now:
                return SyncResult(wallet.id, last_timestamp=watermark.last_synced_timestamp, skipped=True)

            history = await self.fetcher.fetch_history(
                wallet.protocol,
                wallet.chain,
                wallet.address,
                start,
                clamp_max_events(max_events)
            )
            events = history.events

            rows = [build_event_row(wallet, event) for event in events]
            if include_prices and self.price_lookup is not None:
                rows = await self._enrich(wallet, rows)

            for i in range(0, len(rows), UPSERT_BATCH_SIZE):
                await self.sink.upsert_events(rows[i:i + UPSERT_BATCH_SIZE])

            new_watermark = next_watermark(watermark, events, history.complete_through)
            if history.complete_through is not None and new_watermark.last_synced_timestamp <= start:
                logger.warning(
                    f"Capped sync of wallet {wallet.id} made no progress past {start}; "
                    f"raise max_events above {clamp_max_events(max_events)}"
                )
            await self.sink.set_watermark(wallet.id, new_watermark, wallet.protocol, wallet.chain)

        except HistoryError as e:
            logger.error(f"Sync failed for wallet {wallet.id}: {e}")
            return SyncResult(wallet.id, error=str(e), error_code=e.code.value)

        counts: Dict[str, int] = {}
        for row in rows:
            kind = row["event_type"] or "unknown"
            counts[kind] = counts.get(kind, 0) + 1

        logger.info(f"Synced {len(rows)} events for wallet {wallet.id} up to {new_watermark.last_synced_timestamp}")
        return SyncResult(
            wallet.id,
            synced=len(rows),
            last_timestamp=new_watermark.last_synced_timestamp,
            event_type_counts=counts,
            truncated=history.complete_through is not None,
        )

    async def sync_wallets(
        self,
        wallets: Sequence[WalletRef],
        concurrency: Optional[int] = None,
        batch_delay: float = 0.0,
        **options
    ) -> List[SyncResult]:
        """
        Sync many wallets in fixed-size concurrent batches.
        One wallet failing does not affect the others.
        """
        concurrency = max(1, concurrency or settings.sync_concurrency)
        results: List[SyncResult] = []
        for i in range(0, len(wallets), concurrency):
            if i and batch_delay > 0:
                await asyncio.sleep(batch_delay)
            batch = wallets[i:i + concurrency]
            outcomes = await asyncio.gather(
                *(self.sync_wallet(wallet, **options) for wallet in batch),
                return_exceptions=True
            )
            for wallet, outcome in zip(batch, outcomes):
                if isinstance(outcome, BaseException):
                    logger.exception(f"Unexpected error syncing wallet {wallet.id}", exc_info=outcome)
                    outcome = SyncResult(wallet.id, error=str(outcome) or outcome.__class__.__name__)
                results.append(outcome)

        failed = sum(1 for r in results if not r.ok)
        logger.info(f"Synced {len(results)} wallets ({failed} failed)")
        return results
