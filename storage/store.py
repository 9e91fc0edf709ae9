"""
SQLite persistence for the borrower registry mirror and liquidation history.
WAL mode so an external reader (dashboard, second instance) can share the file.

The in-process registry stays authoritative; this store is a write-behind
mirror. Every sqlite error surfaces as StorageError so callers can log and
carry on.
"""

from __future__ import annotations

import sqlite3
import threading
from decimal import Decimal
from pathlib import Path
from typing import Any, Optional, Protocol

from core.exceptions import StorageError
from core.logging import get_logger
from core.models import LiquidationRecord, Position
from core.time import now_ms

logger = get_logger("liqbot.store")

_MS_PER_DAY = 24 * 60 * 60 * 1000

_SCHEMA = """
CREATE TABLE IF NOT EXISTS borrowers (
    address        TEXT PRIMARY KEY,
    first_seen     INTEGER NOT NULL,
    last_seen      INTEGER NOT NULL,
    last_checked   INTEGER,
    has_balance    INTEGER NOT NULL DEFAULT 1,
    last_block     INTEGER,
    evicted_block  INTEGER
);

CREATE INDEX IF NOT EXISTS idx_borrowers_active ON borrowers(has_balance, last_seen);

CREATE TABLE IF NOT EXISTS liquidations (
    id                 INTEGER PRIMARY KEY AUTOINCREMENT,
    tx_hash            TEXT NOT NULL UNIQUE,
    borrower_address   TEXT NOT NULL,
    debt_token         TEXT NOT NULL,
    collateral_token   TEXT NOT NULL,
    repay_amount       TEXT NOT NULL,
    profit_native      TEXT NOT NULL,
    gas_used           INTEGER,
    timestamp          INTEGER NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_liquidations_borrower ON liquidations(borrower_address);
"""


def _dict_factory(cursor: sqlite3.Cursor, row: tuple) -> dict[str, Any]:
    return {col[0]: row[i] for i, col in enumerate(cursor.description)}


class BorrowerStore(Protocol):
    """Persistence capability the registry and controller depend on."""

    def load_active_borrowers(self) -> list[Position]: ...

    def load_eviction_blocks(self) -> dict[str, int]: ...

    def upsert_borrower(self, address: str, block: Optional[int] = None) -> None: ...

    def mark_zero_balance(self, address: str, block: Optional[int] = None) -> None: ...

    def mark_checked(self, address: str) -> None: ...

    def add_liquidation(self, record: LiquidationRecord) -> bool: ...

    def get_stats(self) -> dict[str, Any]: ...

    def cleanup_old_borrowers(self, days: int) -> int: ...

    def close(self) -> None: ...


class NullStore:
    """Stand-in when persistence is disabled. Remembers nothing."""

    def load_active_borrowers(self) -> list[Position]:
        return []

    def load_eviction_blocks(self) -> dict[str, int]:
        return {}

    def upsert_borrower(self, address: str, block: Optional[int] = None) -> None:
        pass

    def mark_zero_balance(self, address: str, block: Optional[int] = None) -> None:
        pass

    def mark_checked(self, address: str) -> None:
        pass

    def add_liquidation(self, record: LiquidationRecord) -> bool:
        return False

    def get_stats(self) -> dict[str, Any]:
        return {"enabled": False}

    def cleanup_old_borrowers(self, days: int) -> int:
        return 0

    def close(self) -> None:
        pass


class SQLiteStore:
    """Thread-safe SQLite store for borrowers and liquidations."""

    def __init__(self, db_path: str | Path) -> None:
        self._db_path = str(db_path)
        self._local = threading.local()
        self._connections: list[sqlite3.Connection] = []
        self._lock = threading.Lock()
        try:
            if self._db_path != ":memory:":
                Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
            self._init_schema()
        except (sqlite3.Error, OSError) as e:
            raise StorageError(
                f"Cannot open store: {e}",
                details={"path": self._db_path},
            ) from e
        logger.info("Store opened", extra={"context": {"path": self._db_path}})

    @property
    def _conn(self) -> sqlite3.Connection:
        conn = getattr(self._local, "conn", None)
        if conn is None:
            conn = sqlite3.connect(self._db_path, check_same_thread=False)
            conn.row_factory = _dict_factory
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA busy_timeout=5000")
            self._local.conn = conn
            with self._lock:
                self._connections.append(conn)
        return conn

    def _init_schema(self) -> None:
        conn = self._conn
        conn.executescript(_SCHEMA)
        conn.commit()

    def _write(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        try:
            cur = self._conn.execute(sql, params)
            self._conn.commit()
            return cur
        except sqlite3.Error as e:
            raise StorageError(f"Write failed: {e}", details={"sql": sql.split()[0]}) from e

    def _read(self, sql: str, params: tuple = ()) -> list[dict[str, Any]]:
        try:
            return self._conn.execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise StorageError(f"Read failed: {e}", details={"sql": sql.split()[0]}) from e

    # ── Borrowers ──

    def load_active_borrowers(self) -> list[Position]:
        rows = self._read(
            "SELECT address, first_seen, last_seen, last_checked FROM borrowers "
            "WHERE has_balance = 1 ORDER BY first_seen, address"
        )
        return [
            Position(
                address=row["address"],
                has_debt=True,
                first_seen_ms=row["first_seen"],
                last_seen_ms=row["last_seen"],
                last_verified_ms=row["last_checked"],
            )
            for row in rows
        ]

    def load_eviction_blocks(self) -> dict[str, int]:
        rows = self._read(
            "SELECT address, evicted_block FROM borrowers "
            "WHERE has_balance = 0 AND evicted_block IS NOT NULL"
        )
        return {row["address"]: row["evicted_block"] for row in rows}

    def upsert_borrower(self, address: str, block: Optional[int] = None) -> None:
        ts = now_ms()
        self._write(
            """
            INSERT INTO borrowers (address, first_seen, last_seen, has_balance, last_block)
            VALUES (?, ?, ?, 1, ?)
            ON CONFLICT(address) DO UPDATE SET
                last_seen = excluded.last_seen,
                has_balance = 1,
                last_block = COALESCE(excluded.last_block, borrowers.last_block),
                evicted_block = NULL
            """,
            (address, ts, ts, block),
        )

    def mark_zero_balance(self, address: str, block: Optional[int] = None) -> None:
        ts = now_ms()
        self._write(
            """
            INSERT INTO borrowers (address, first_seen, last_seen, last_checked, has_balance, evicted_block)
            VALUES (?, ?, ?, ?, 0, ?)
            ON CONFLICT(address) DO UPDATE SET
                has_balance = 0,
                last_checked = excluded.last_checked,
                evicted_block = excluded.evicted_block
            """,
            (address, ts, ts, ts, block),
        )

    def mark_checked(self, address: str) -> None:
        self._write(
            "UPDATE borrowers SET last_checked = ? WHERE address = ?",
            (now_ms(), address),
        )

    def borrower_count(self, active_only: bool = True) -> int:
        sql = "SELECT COUNT(*) AS n FROM borrowers"
        if active_only:
            sql += " WHERE has_balance = 1"
        return self._read(sql)[0]["n"]

    def cleanup_old_borrowers(self, days: int) -> int:
        """Hard-delete zero-balance borrowers not seen for `days` days."""
        cutoff = now_ms() - days * _MS_PER_DAY
        cur = self._write(
            "DELETE FROM borrowers WHERE has_balance = 0 AND last_seen < ?",
            (cutoff,),
        )
        removed = cur.rowcount
        if removed:
            logger.info(
                "Old borrowers purged",
                extra={"context": {"removed": removed, "days": days}},
            )
        return removed

    # ── Liquidations ──

    def add_liquidation(self, record: LiquidationRecord) -> bool:
        """Insert a liquidation. Returns False if tx_hash was already recorded."""
        cur = self._write(
            """
            INSERT INTO liquidations (
                tx_hash, borrower_address, debt_token, collateral_token,
                repay_amount, profit_native, gas_used, timestamp
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(tx_hash) DO NOTHING
            """,
            (
                record.tx_hash,
                record.borrower,
                record.debt_market,
                record.collateral_market,
                record.repay_amount,
                record.profit_native,
                record.gas_used,
                record.timestamp_ms,
            ),
        )
        return cur.rowcount == 1

    def liquidation_count(self) -> int:
        return self._read("SELECT COUNT(*) AS n FROM liquidations")[0]["n"]

    def total_profit(self) -> Decimal:
        # Stored as TEXT to keep Decimal precision; sum in Python.
        rows = self._read("SELECT profit_native FROM liquidations")
        return sum((Decimal(row["profit_native"]) for row in rows), Decimal("0"))

    def get_stats(self) -> dict[str, Any]:
        return {
            "enabled": True,
            "active_borrowers": self.borrower_count(),
            "total_borrowers": self.borrower_count(active_only=False),
            "liquidations": self.liquidation_count(),
            "total_profit_native": str(self.total_profit()),
        }

    def close(self) -> None:
        with self._lock:
            for conn in self._connections:
                conn.close()
            self._connections.clear()
        self._local = threading.local()


def open_store(db_path: Optional[str]) -> BorrowerStore:
    """Open SQLite store at db_path, or a NullStore when disabled or unavailable."""
    if not db_path:
        return NullStore()
    try:
        return SQLiteStore(db_path)
    except StorageError as e:
        logger.error(f"Store unavailable, continuing in memory: {e}")
        return NullStore()
