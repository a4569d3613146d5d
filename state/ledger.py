"""
Durable idempotency ledger for the bridge. SQLite-backed.

Three tables:
  - credited_transfers: deposit tx hashes already credited on the BalanceVault
  - dead_letters: transfers whose credit failed, kept for operator replay;
    pending_tx_hash holds a creditDeposit tx that was broadcast but never
    confirmed, which must be settled before any new credit is signed
  - minted_orders: venue order ids already mirrored as share mints

Each write is atomic (single SQLite transaction). A credit row is written only
after the creditDeposit receipt confirmed, and resolves any open dead letter
for the same transfer in the same transaction.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from bridge.models import TransferEvent

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS credited_transfers (
    tx_hash TEXT PRIMARY KEY,
    sender TEXT NOT NULL,
    amount TEXT NOT NULL,
    block_number INTEGER NOT NULL,
    credit_tx_hash TEXT NOT NULL,
    credited_at REAL NOT NULL
);
CREATE TABLE IF NOT EXISTS dead_letters (
    tx_hash TEXT PRIMARY KEY,
    sender TEXT NOT NULL,
    recipient TEXT NOT NULL,
    amount TEXT NOT NULL,
    block_number INTEGER NOT NULL,
    log_index INTEGER NOT NULL DEFAULT 0,
    error TEXT NOT NULL,
    attempts INTEGER NOT NULL DEFAULT 1,
    first_failed_at REAL NOT NULL,
    last_failed_at REAL NOT NULL,
    resolved_at REAL,
    pending_tx_hash TEXT
);
CREATE TABLE IF NOT EXISTS minted_orders (
    order_id TEXT PRIMARY KEY,
    recipient TEXT NOT NULL,
    side TEXT NOT NULL,
    count INTEGER NOT NULL,
    mint_tx_hash TEXT NOT NULL,
    minted_at REAL NOT NULL
);
"""

DEFAULT_DB_PATH = Path("bridge_state.db")


@dataclass(frozen=True)
class DeadLetter:
    event: TransferEvent
    error: str
    attempts: int
    first_failed_at: float
    last_failed_at: float
    pending_tx_hash: str | None = None


class BridgeLedger:
    """
    Persistent record of credited deposits, failed credits and minted orders.

    Usage:
        ledger = BridgeLedger("bridge_state.db")
        if not ledger.is_credited(tx_hash):
            ...submit + confirm...
            ledger.record_credit(event, credit_tx_hash)
    """

    def __init__(self, db_path: str | Path = DEFAULT_DB_PATH) -> None:
        self._db_path = str(db_path)
        self._lock = threading.Lock()
        self._conn: sqlite3.Connection | None = None
        self._init_db()

    def _get_conn(self) -> sqlite3.Connection:
        if self._conn is None:
            self._conn = sqlite3.connect(self._db_path, check_same_thread=False)
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA busy_timeout=5000")
        return self._conn

    def _init_db(self) -> None:
        conn = self._get_conn()
        conn.executescript(_SCHEMA)
        columns = {r[1] for r in conn.execute("PRAGMA table_info(dead_letters)")}
        if "pending_tx_hash" not in columns:
            conn.execute("ALTER TABLE dead_letters ADD COLUMN pending_tx_hash TEXT")
        conn.commit()

    # -- Credits --

    def is_credited(self, tx_hash: str) -> bool:
        with self._lock:
            row = self._get_conn().execute(
                "SELECT 1 FROM credited_transfers WHERE tx_hash = ?", (tx_hash,),
            ).fetchone()
        return row is not None

    def credited_hashes(self) -> set[str]:
        """All credited deposit tx hashes (used to warm the in-memory set)."""
        with self._lock:
            rows = self._get_conn().execute("SELECT tx_hash FROM credited_transfers").fetchall()
        return {r[0] for r in rows}

    def record_credit(self, event: TransferEvent, credit_tx_hash: str) -> bool:
        """
        Mark a transfer credited and resolve its dead letter, atomically.
        Returns False if the transfer was already recorded.
        """
        now = time.time()
        with self._lock:
            conn = self._get_conn()
            with conn:
                cur = conn.execute(
                    "INSERT OR IGNORE INTO credited_transfers "
                    "(tx_hash, sender, amount, block_number, credit_tx_hash, credited_at) "
                    "VALUES (?, ?, ?, ?, ?, ?)",
                    (event.tx_hash, event.from_address, str(event.amount),
                     event.block_number, credit_tx_hash, now),
                )
                conn.execute(
                    "UPDATE dead_letters SET resolved_at = ? "
                    "WHERE tx_hash = ? AND resolved_at IS NULL",
                    (now, event.tx_hash),
                )
        inserted = cur.rowcount > 0
        if not inserted:
            logger.warning("Credit for %s was already recorded", event.tx_hash)
        return inserted

    # -- Dead letters --

    def record_failure(self, event: TransferEvent, error: str, pending_tx_hash: str | None = None) -> int:
        """
        Upsert a dead letter for a failed credit. Returns the attempt count.

        pending_tx_hash replaces the stored one: pass the broadcast-but-unconfirmed
        creditDeposit hash, or None once that transaction is known to be dead.
        """
        now = time.time()
        with self._lock:
            conn = self._get_conn()
            with conn:
                conn.execute(
                    "INSERT INTO dead_letters "
                    "(tx_hash, sender, recipient, amount, block_number, log_index, "
                    " error, attempts, first_failed_at, last_failed_at, resolved_at, pending_tx_hash) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, 1, ?, ?, NULL, ?) "
                    "ON CONFLICT(tx_hash) DO UPDATE SET "
                    "error = excluded.error, attempts = attempts + 1, "
                    "last_failed_at = excluded.last_failed_at, resolved_at = NULL, "
                    "pending_tx_hash = excluded.pending_tx_hash",
                    (event.tx_hash, event.from_address, event.to_address, str(event.amount),
                     event.block_number, event.log_index, error, now, now, pending_tx_hash),
                )
                row = conn.execute(
                    "SELECT attempts FROM dead_letters WHERE tx_hash = ?", (event.tx_hash,),
                ).fetchone()
        return row[0]

    def open_dead_letters(self) -> list[DeadLetter]:
        """Unresolved dead letters, oldest failure first."""
        with self._lock:
            rows = self._get_conn().execute(
                "SELECT tx_hash, sender, recipient, amount, block_number, log_index, "
                "error, attempts, first_failed_at, last_failed_at, pending_tx_hash "
                "FROM dead_letters WHERE resolved_at IS NULL "
                "ORDER BY first_failed_at, block_number, log_index"
            ).fetchall()
        return [
            DeadLetter(
                event=TransferEvent(
                    tx_hash=r[0], from_address=r[1], to_address=r[2],
                    amount=int(r[3]), block_number=r[4], log_index=r[5],
                ),
                error=r[6],
                attempts=r[7],
                first_failed_at=r[8],
                last_failed_at=r[9],
                pending_tx_hash=r[10],
            )
            for r in rows
        ]

    def pending_credits(self) -> dict[str, str]:
        """Open dead letters with an unsettled creditDeposit: transfer hash -> credit tx hash."""
        with self._lock:
            rows = self._get_conn().execute(
                "SELECT tx_hash, pending_tx_hash FROM dead_letters "
                "WHERE resolved_at IS NULL AND pending_tx_hash IS NOT NULL"
            ).fetchall()
        return {r[0]: r[1] for r in rows}

    # -- Mints --

    def get_mint(self, order_id: str) -> dict[str, Any] | None:
        with self._lock:
            row = self._get_conn().execute(
                "SELECT recipient, side, count, mint_tx_hash, minted_at "
                "FROM minted_orders WHERE order_id = ?",
                (order_id,),
            ).fetchone()
        if row is None:
            return None
        return {
            "order_id": order_id,
            "recipient": row[0],
            "side": row[1],
            "count": row[2],
            "tx_hash": row[3],
            "minted_at": row[4],
        }

    def record_mint(self, order_id: str, recipient: str, side: str, count: int, mint_tx_hash: str) -> bool:
        """Record a confirmed mint for an order. Returns False if already recorded."""
        with self._lock:
            conn = self._get_conn()
            with conn:
                cur = conn.execute(
                    "INSERT OR IGNORE INTO minted_orders "
                    "(order_id, recipient, side, count, mint_tx_hash, minted_at) "
                    "VALUES (?, ?, ?, ?, ?, ?)",
                    (order_id, recipient, side, count, mint_tx_hash, time.time()),
                )
        return cur.rowcount > 0

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    @property
    def stats(self) -> dict[str, Any]:
        with self._lock:
            conn = self._get_conn()
            credited = conn.execute("SELECT COUNT(*) FROM credited_transfers").fetchone()[0]
            open_dl = conn.execute(
                "SELECT COUNT(*) FROM dead_letters WHERE resolved_at IS NULL"
            ).fetchone()[0]
            minted = conn.execute("SELECT COUNT(*) FROM minted_orders").fetchone()[0]
        return {
            "db_path": self._db_path,
            "credited": credited,
            "open_dead_letters": open_dl,
            "minted_orders": minted,
        }
