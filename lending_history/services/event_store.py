"""
Event Store

Persists normalized lending events and per-wallet sync watermarks in SQLite.
Events are upserted on (wallet_id, tx_hash, log_index), so re-syncing an
overlapping window never duplicates rows.

Storage: single SQLite database at settings.event_store_path
"""

import sqlite3
import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from lending_history.core.config import settings
from lending_history.core.errors import EventStoreError

logger = logging.getLogger(__name__)

EVENT_COLUMNS = (
    "wallet_id",
    "protocol",
    "chain",
    "tx_hash",
    "log_index",
    "block_number",
    "block_timestamp",
    "event_type",
    "asset_address",
    "asset_symbol",
    "asset_decimals",
    "amount_raw",
    "amount",
    "amount_usd_raw",
    "price_usd",
    "amount_usd",
    "needs_review",
)


@dataclass
class SyncWatermark:
    """Last event seen for a wallet"""
    last_synced_timestamp: int = 0
    last_synced_block: int = 0


class EventStore:
    """
    SQLite-backed sink for normalized events.
    """

    def __init__(self, db_path: Optional[str] = None):
        self.db_path = Path(db_path or settings.event_store_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self):
        """Initialize database schema"""
        try:
            with self._connect() as conn:
                conn.execute("""
                    CREATE TABLE IF NOT EXISTS strategy_events (
                        wallet_id TEXT NOT NULL,
                        protocol TEXT NOT NULL,
                        chain TEXT NOT NULL,
                        tx_hash TEXT NOT NULL,
                        log_index INTEGER NOT NULL,
                        block_number INTEGER NOT NULL,
                        block_timestamp TEXT NOT NULL,
                        event_type TEXT NOT NULL,
                        asset_address TEXT,
                        asset_symbol TEXT,
                        asset_decimals INTEGER,
                        amount_raw TEXT,
                        amount TEXT,
                        amount_usd_raw TEXT,
                        price_usd REAL,
                        amount_usd REAL,
                        needs_review INTEGER NOT NULL DEFAULT 0,
                        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                        UNIQUE (wallet_id, tx_hash, log_index)
                    )
                """)
                columns = {row["name"] for row in conn.execute("PRAGMA table_info(strategy_events)")}
                if "amount_usd_raw" not in columns:
                    # Databases created before the subgraph USD amount was stored
                    conn.execute("ALTER TABLE strategy_events ADD COLUMN amount_usd_raw TEXT")
                conn.execute("""
                    CREATE INDEX IF NOT EXISTS idx_events_wallet_time
                    ON strategy_events(wallet_id, block_timestamp)
                """)
                conn.execute("""
                    CREATE TABLE IF NOT EXISTS strategy_event_sync (
                        wallet_id TEXT PRIMARY KEY,
                        protocol TEXT,
                        chain TEXT,
                        last_synced_timestamp INTEGER NOT NULL DEFAULT 0,
                        last_synced_block INTEGER NOT NULL DEFAULT 0,
                        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                    )
                """)
        except sqlite3.Error as e:
            raise EventStoreError("initialize event store", str(e))

    async def upsert_events(self, rows: Sequence[Dict[str, Any]]) -> int:
        """Insert or update event rows; returns number of rows written"""
        if not rows:
            return 0
        placeholders = ", ".join("?" for _ in EVENT_COLUMNS)
        updates = ", ".join(
            f"{col} = excluded.{col}"
            for col in EVENT_COLUMNS
            if col not in ("wallet_id", "tx_hash", "log_index")
        )
        sql = (
            f"INSERT INTO strategy_events ({', '.join(EVENT_COLUMNS)}) VALUES ({placeholders}) "
            f"ON CONFLICT(wallet_id, tx_hash, log_index) DO UPDATE SET {updates}"
        )
        values = [
            tuple(int(row.get(col) or 0) if col == "needs_review" else row.get(col) for col in EVENT_COLUMNS)
            for row in rows
        ]
        try:
            with self._connect() as conn:
                conn.executemany(sql, values)
        except sqlite3.Error as e:
            logger.error(f"Failed to upsert {len(rows)} events: {e}")
            raise EventStoreError("insert events", str(e))
        return len(values)

    async def get_watermark(self, wallet_id: str) -> Optional[SyncWatermark]:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT last_synced_timestamp, last_synced_block FROM strategy_event_sync WHERE wallet_id = ?",
                    (wallet_id,)
                ).fetchone()
        except sqlite3.Error as e:
            raise EventStoreError("load sync state", str(e))
        if row is None:
            return None
        return SyncWatermark(
            last_synced_timestamp=int(row["last_synced_timestamp"] or 0),
            last_synced_block=int(row["last_synced_block"] or 0),
        )

    async def set_watermark(
        self,
        wallet_id: str,
        watermark: SyncWatermark,
        protocol: Optional[str] = None,
        chain: Optional[str] = None
    ):
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO strategy_event_sync
                        (wallet_id, protocol, chain, last_synced_timestamp, last_synced_block, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    ON CONFLICT(wallet_id) DO UPDATE SET
                        protocol = COALESCE(excluded.protocol, protocol),
                        chain = COALESCE(excluded.chain, chain),
                        last_synced_timestamp = excluded.last_synced_timestamp,
                        last_synced_block = excluded.last_synced_block,
                        updated_at = excluded.updated_at
                    """,
                    (
                        wallet_id,
                        protocol,
                        chain,
                        watermark.last_synced_timestamp,
                        watermark.last_synced_block,
                        datetime.utcnow().isoformat(),
                    )
                )
        except sqlite3.Error as e:
            raise EventStoreError("update sync state", str(e))

    async def delete_wallet(self, wallet_id: str):
        """Remove all events and the watermark for a wallet"""
        try:
            with self._connect() as conn:
                conn.execute("DELETE FROM strategy_events WHERE wallet_id = ?", (wallet_id,))
                conn.execute("DELETE FROM strategy_event_sync WHERE wallet_id = ?", (wallet_id,))
        except sqlite3.Error as e:
            raise EventStoreError("reset events", str(e))
        logger.info(f"Reset stored events for wallet {wallet_id}")

    async def list_events(self, wallet_id: str, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """Stored events for a wallet, oldest first"""
        sql = (
            f"SELECT {', '.join(EVENT_COLUMNS)} FROM strategy_events WHERE wallet_id = ? "
            "ORDER BY block_timestamp ASC, log_index ASC"
        )
        params: List[Any] = [wallet_id]
        if limit:
            sql += " LIMIT ?"
            params.append(int(limit))
        try:
            with self._connect() as conn:
                rows = conn.execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise EventStoreError("load events", str(e))
        events = []
        for row in rows:
            event = dict(row)
            event["needs_review"] = bool(event["needs_review"])
            events.append(event)
        return events


# Global store instance
_event_store: Optional[EventStore] = None


def get_event_store() -> EventStore:
    """Get or create the global event store"""
    global _event_store
    if _event_store is None:
        _event_store = EventStore()
    return _event_store
