import pytest

from lending_history.core.errors import EventStoreError, TransportError
from lending_history.services.event_fetcher import EventFetcher, EventHistory
from lending_history.services.event_store import EventStore, SyncWatermark
from lending_history.services.event_sync import (
    EventSyncService,
    UsdPolicy,
    WalletRef,
    clamp_max_events,
    resolve_usd,
)
from lending_history.services.normalizer import NormalizedEvent

NOW = 1700000000
DAY = 86400
WALLET = WalletRef(id="w1", address="0x1111111111111111111111111111111111111111", protocol="aave", chain="polygon")


def _event(n, timestamp=None, kind="borrow", amount="1.5", amount_usd_raw=None, asset_address="0xusdc"):
    return NormalizedEvent(
        transaction_id=f"0x{n:04x}",
        log_index=n,
        block_number=1000 + n,
        timestamp_sec=timestamp or NOW - DAY + n,
        event_kind=kind,
        asset_address=asset_address,
        asset_symbol="USDC",
        asset_decimals=6,
        amount_raw="1500000",
        amount=amount,
        amount_usd_raw=amount_usd_raw,
    )


class FakeFetcher:
    def __init__(self, events=None, error=None, complete_through=None):
        self.events = events or []
        self.error = error
        self.complete_through = complete_through
        self.calls = []

    async def fetch_history(self, protocol_family, chain, address, from_timestamp_sec=0, max_events_per_collection=None):
        self.calls.append({
            "protocol": protocol_family,
            "chain": chain,
            "address": address,
            "from": from_timestamp_sec,
            "max_events": max_events_per_collection,
        })
        if self.error:
            raise self.error
        return EventHistory(list(self.events), self.complete_through)


class MemorySink:
    def __init__(self, fail_upsert=False):
        self.rows = {}
        self.watermarks = {}
        self.upsert_batches = []
        self.fail_upsert = fail_upsert
        self.deleted = []

    async def upsert_events(self, rows):
        if self.fail_upsert:
            raise EventStoreError("insert events", "disk full")
        self.upsert_batches.append(len(rows))
        for row in rows:
            self.rows[(row["wallet_id"], row["tx_hash"], row["log_index"])] = row
        return len(rows)

    async def get_watermark(self, wallet_id):
        return self.watermarks.get(wallet_id)

    async def set_watermark(self, wallet_id, watermark, protocol=None, chain=None):
        self.watermarks[wallet_id] = watermark

    async def delete_wallet(self, wallet_id):
        self.deleted.append(wallet_id)
        self.watermarks.pop(wallet_id, None)
        self.rows = {k: v for k, v in self.rows.items() if k[0] != wallet_id}


class FixedPrice:
    def __init__(self, price=None, error=None):
        self.price = price
        self.error = error
        self.calls = []

    async def price_at_timestamp(self, chain, token_address, timestamp_sec):
        self.calls.append((chain, token_address, timestamp_sec))
        if self.error:
            raise self.error
        return self.price


def _service(fetcher, sink, prices=None, policy=UsdPolicy.PREFER_DIRECT):
    return EventSyncService(fetcher, sink, price_lookup=prices, usd_policy=policy, disagreement_tolerance=0.05)


def test_clamp_max_events():
    assert clamp_max_events(5) == 100
    assert clamp_max_events(2000) == 2000
    assert clamp_max_events(50000) == 10000
    assert clamp_max_events(None) == 2000


def test_resolve_usd_prefers_direct_amount():
    price, amount_usd, review = resolve_usd("2", "3.0", None)
    assert (price, amount_usd, review) == (1.5, 3.0, False)


def test_resolve_usd_zero_direct_falls_back_to_external():
    price, amount_usd, review = resolve_usd("2", "0", 1.25)
    assert (price, amount_usd, review) == (1.25, 2.5, False)


def test_resolve_usd_flags_disagreement():
    price, amount_usd, review = resolve_usd("1.5", "3.0", 2.5, UsdPolicy.PREFER_DIRECT, 0.05)
    assert amount_usd == 3.0
    assert review is True

    price, amount_usd, review = resolve_usd("1.5", "3.0", 2.5, UsdPolicy.PREFER_EXTERNAL, 0.05)
    assert amount_usd == pytest.approx(3.75)
    assert price == 2.5
    assert review is True


def test_resolve_usd_within_tolerance():
    _, _, review = resolve_usd("1", "100", 102.0, tolerance=0.05)
    assert review is False


def test_resolve_usd_nothing_known():
    assert resolve_usd("1.5", None, None) == (None, None, False)
    assert resolve_usd(None, None, 2.0) == (None, None, False)


@pytest.mark.asyncio
async def test_first_sync_uses_window_and_sets_watermark():
    events = [_event(1), _event(2, kind="repay"), _event(3)]
    fetcher, sink = FakeFetcher(events), MemorySink()

    result = await _service(fetcher, sink).sync_wallet(WALLET, now=NOW)

    assert result.ok
    assert result.synced == 3
    assert result.event_type_counts == {"borrow": 2, "repay": 1}
    assert fetcher.calls[0]["from"] == NOW - 90 * DAY
    assert fetcher.calls[0]["max_events"] == 2000
    assert fetcher.calls[0]["address"] == WALLET.address
    assert sink.watermarks["w1"] == SyncWatermark(NOW - DAY + 3, 1003)
    assert result.last_timestamp == NOW - DAY + 3

    row = sink.rows[("w1", "0x0001", 1)]
    assert row["protocol"] == "aave"
    assert row["block_timestamp"] == "2023-11-13T22:13:21+00:00"
    assert row["amount"] == "1.5"
    assert row["amount_usd"] is None
    assert row["needs_review"] is False


@pytest.mark.asyncio
async def test_next_sync_starts_at_watermark():
    fetcher, sink = FakeFetcher([]), MemorySink()
    sink.watermarks["w1"] = SyncWatermark(NOW - 3600, 1234)

    result = await _service(fetcher, sink).sync_wallet(WALLET, now=NOW, max_events=5)

    assert fetcher.calls[0]["from"] == NOW - 3600
    assert fetcher.calls[0]["max_events"] == 100
    # Nothing new: watermark is kept
    assert sink.watermarks["w1"] == SyncWatermark(NOW - 3600, 1234)
    assert result.synced == 0


@pytest.mark.asyncio
async def test_watermark_older_than_window_is_ignored():
    fetcher, sink = FakeFetcher([]), MemorySink()
    sink.watermarks["w1"] = SyncWatermark(NOW - 400 * DAY, 1)

    await _service(fetcher, sink).sync_wallet(WALLET, now=NOW, max_days=30)

    assert fetcher.calls[0]["from"] == NOW - 30 * DAY


@pytest.mark.asyncio
async def test_forced_and_explicit_start():
    fetcher, sink = FakeFetcher([]), MemorySink()
    sink.watermarks["w1"] = SyncWatermark(NOW - 3600, 1234)
    service = _service(fetcher, sink)

    await service.sync_wallet(WALLET, now=NOW, max_days=7, force_from_timestamp=True)
    await service.sync_wallet(WALLET, now=NOW, from_timestamp=NOW - 60)

    assert [c["from"] for c in fetcher.calls] == [NOW - 7 * DAY, NOW - 60]


@pytest.mark.asyncio
async def test_start_in_future_is_skipped():
    fetcher, sink = FakeFetcher([_event(1)]), MemorySink()

    result = await _service(fetcher, sink).sync_wallet(WALLET, now=NOW, from_timestamp=NOW + 10)

    assert result.skipped is True
    assert result.ok
    assert fetcher.calls == []


@pytest.mark.asyncio
async def test_upserts_in_batches():
    events = [_event(n) for n in range(1, 1202)]
    sink = MemorySink()

    result = await _service(FakeFetcher(events), sink).sync_wallet(WALLET, now=NOW, max_events=5000)

    assert sink.upsert_batches == [500, 500, 201]
    assert result.synced == 1201


@pytest.mark.asyncio
async def test_store_failure_keeps_watermark():
    sink = MemorySink(fail_upsert=True)

    result = await _service(FakeFetcher([_event(1)]), sink).sync_wallet(WALLET, now=NOW)

    assert not result.ok
    assert result.error_code == "STORE_FAILED"
    assert "disk full" in result.error
    assert "w1" not in sink.watermarks


@pytest.mark.asyncio
async def test_fetch_failure_is_reported():
    sink = MemorySink()
    fetcher = FakeFetcher(error=TransportError("https://x.test", "HTTP 503", 503))

    result = await _service(fetcher, sink).sync_wallet(WALLET, now=NOW)

    assert result.error_code == "TRANSPORT_FAILED"
    assert sink.upsert_batches == []
    assert sink.watermarks == {}


@pytest.mark.asyncio
async def test_reset_clears_wallet_first():
    sink = MemorySink()
    sink.watermarks["w1"] = SyncWatermark(NOW - 60, 1)
    sink.rows[("w1", "0xold", 0)] = {"wallet_id": "w1"}
    fetcher = FakeFetcher([_event(1)])

    await _service(fetcher, sink).sync_wallet(WALLET, now=NOW, reset=True)

    assert sink.deleted == ["w1"]
    assert ("w1", "0xold", 0) not in sink.rows
    assert fetcher.calls[0]["from"] == NOW - 90 * DAY


@pytest.mark.asyncio
async def test_prices_fill_missing_usd():
    prices = FixedPrice(2.0)
    sink = MemorySink()
    events = [_event(1), _event(2, asset_address=None)]

    await _service(FakeFetcher(events), sink, prices).sync_wallet(WALLET, now=NOW, include_prices=True)

    priced = sink.rows[("w1", "0x0001", 1)]
    assert priced["price_usd"] == 2.0
    assert priced["amount_usd"] == 3.0
    assert sink.rows[("w1", "0x0002", 2)]["amount_usd"] is None
    assert prices.calls == [("polygon", "0xusdc", NOW - DAY + 1)]


@pytest.mark.asyncio
async def test_price_disagreement_marks_row_for_review():
    sink = MemorySink()
    events = [_event(1, amount_usd_raw="3.0")]

    await _service(FakeFetcher(events), sink, FixedPrice(2.5)).sync_wallet(WALLET, now=NOW, include_prices=True)

    row = sink.rows[("w1", "0x0001", 1)]
    assert row["amount_usd"] == 3.0
    assert row["needs_review"] is True


@pytest.mark.asyncio
async def test_price_source_failure_is_not_a_sync_failure():
    sink = MemorySink()
    prices = FixedPrice(error=RuntimeError("rate limited"))

    result = await _service(FakeFetcher([_event(1)]), sink, prices).sync_wallet(WALLET, now=NOW, include_prices=True)

    assert result.ok
    assert sink.rows[("w1", "0x0001", 1)]["amount_usd"] is None


@pytest.mark.asyncio
async def test_prices_not_requested_unless_asked():
    prices = FixedPrice(2.0)
    await _service(FakeFetcher([_event(1)]), MemorySink(), prices).sync_wallet(WALLET, now=NOW)
    assert prices.calls == []


@pytest.mark.asyncio
async def test_sync_wallets_isolates_failures():
    class PerWalletFetcher(FakeFetcher):
        async def fetch_history(self, protocol_family, chain, address, from_timestamp_sec=0, max_events_per_collection=None):
            self.calls.append(address)
            if address.endswith("2"):
                raise TransportError("https://x.test", "HTTP 500", 500)
            if address.endswith("3"):
                raise RuntimeError("unexpected")
            return EventHistory([_event(1)])

    wallets = [
        WalletRef(id=f"w{i}", address=f"0x{str(i) * 40}", protocol="aave", chain="polygon")
        for i in range(1, 5)
    ]
    fetcher, sink = PerWalletFetcher(), MemorySink()

    results = await _service(fetcher, sink).sync_wallets(wallets, concurrency=2, now=NOW)

    assert [r.wallet_id for r in results] == ["w1", "w2", "w3", "w4"]
    assert [r.ok for r in results] == [True, False, False, True]
    assert results[1].error_code == "TRANSPORT_FAILED"
    assert "unexpected" in results[2].error
    assert set(sink.watermarks) == {"w1", "w4"}


@pytest.mark.asyncio
async def test_sync_into_sqlite_store_is_idempotent(tmp_path):
    store = EventStore(str(tmp_path / "events.db"))
    service = _service(FakeFetcher([_event(1), _event(2)]), store)

    await service.sync_wallet(WALLET, now=NOW)
    await service.sync_wallet(WALLET, now=NOW)

    stored = await store.list_events("w1")
    assert [e["tx_hash"] for e in stored] == ["0x0001", "0x0002"]
    assert (await store.get_watermark("w1")).last_synced_block == 1002


def _reserve_row(event_id, timestamp, action):
    return {
        "id": event_id,
        "txHash": f"0x{event_id}",
        "action": action,
        "amount": "1000000",
        "timestamp": timestamp,
        "reserve": {"symbol": "USDC", "underlyingAsset": "0xusdc", "decimals": 6},
    }


@pytest.mark.asyncio
async def test_capped_borrows_do_not_hide_older_repay(gql, subgraph_client_for, test_settings):
    fake = gql.FakeSubgraph(*gql.aave_schema(), data={
        "borrows": [_reserve_row(f"b{i}", 1700000000 + 100 * i, "Borrow") for i in range(150)],
        "repays": [_reserve_row("r1", 1700005001, "Repay")],
    })
    sink = MemorySink()
    service = _service(EventFetcher(subgraph_client_for(fake), test_settings), sink)
    now = 1700100000

    first = await service.sync_wallet(WALLET, max_events=100, now=now)

    assert first.synced == 101
    assert first.truncated
    assert first.event_type_counts == {"borrow": 100, "repay": 1}
    assert first.last_timestamp == 1700009900

    second = await service.sync_wallet(WALLET, max_events=100, now=now)

    assert second.synced == 51
    assert not second.truncated
    assert second.last_timestamp == 1700014900
    assert len(sink.rows) == 151
    assert ("w1", "0xr1", 0) in sink.rows


@pytest.mark.asyncio
async def test_watermark_stops_at_capped_collection():
    events = [_event(1, timestamp=NOW - 500), _event(2, timestamp=NOW - 100)]
    sink = MemorySink()

    result = await _service(FakeFetcher(events, complete_through=NOW - 300), sink).sync_wallet(WALLET, now=NOW)

    assert result.synced == 2
    assert result.truncated
    assert sink.watermarks["w1"] == SyncWatermark(last_synced_timestamp=NOW - 300, last_synced_block=1001)


@pytest.mark.asyncio
async def test_capped_sync_never_moves_watermark_back():
    sink = MemorySink()
    sink.watermarks["w1"] = SyncWatermark(last_synced_timestamp=NOW - 200, last_synced_block=7)
    fetcher = FakeFetcher([_event(1, timestamp=NOW - 100)], complete_through=NOW - 400)

    result = await _service(fetcher, sink).sync_wallet(WALLET, now=NOW)

    assert result.last_timestamp == NOW - 200
    assert sink.watermarks["w1"].last_synced_block == 7


@pytest.mark.asyncio
async def test_flagged_row_keeps_subgraph_usd_in_store(tmp_path):
    store = EventStore(str(tmp_path / "events.db"))
    service = _service(FakeFetcher([_event(1, amount_usd_raw="3.0")]), store, FixedPrice(2.5))

    await service.sync_wallet(WALLET, now=NOW, include_prices=True)

    stored = (await store.list_events("w1"))[0]
    assert stored["needs_review"] is True
    assert stored["amount_usd_raw"] == "3.0"
    assert stored["amount_usd"] == 3.0
