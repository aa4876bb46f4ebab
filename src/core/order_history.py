"""
Idempotency ledger for mirrored source orders.

The ledger is the durable record of which source-position events already
produced a follower order. ``source_order_id`` is the table's primary key,
so a second record for the same source event is rejected by the database
itself and reported as a duplicate rather than overwriting the first row.

Retention and cleanup are left to the operator; this module never updates
or deletes rows.
"""

import sqlite3
from contextlib import closing
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import List, Optional, Union

from loguru import logger

from .models import OrderSide, ProcessedOrderRecord


class LedgerWriteStatus(str, Enum):
    """Outcome of a ledger write attempt, as seen by the dispatcher."""

    RECORDED = "recorded"
    DUPLICATE = "duplicate"
    FAILED = "failed"
    SKIPPED = "skipped"


class LedgerError(Exception):
    """Raised when the ledger cannot be read or written."""
    pass


class LedgerWriteError(LedgerError):
    """
    Raised when the ledger could not persist a record.

    Distinct from a duplicate: the source event is NOT known to be handled.
    """
    pass


def _utc_iso(ts: datetime) -> str:
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc).isoformat()


class OrderHistoryLedger:
    """
    SQLite-backed record of processed source orders.

    One ledger instance should be shared by the analyzer and the execution
    engine so there is a single source of truth for idempotency.

    Examples:
        >>> ledger = OrderHistoryLedger("data/order_history.db")
        >>> ledger.record("abc123", "BTCUSDT", "gpt-5", "BUY", 0.5, 45000.0, "9001")
        <LedgerWriteStatus.RECORDED: 'recorded'>
        >>> ledger.record("abc123", "BTCUSDT", "gpt-5", "BUY", 0.5, 45000.0, "9002")
        <LedgerWriteStatus.DUPLICATE: 'duplicate'>
        >>> ledger.get("abc123").follower_order_id
        '9001'
    """

    def __init__(self, path: Union[str, Path]):
        """
        Open (and create if needed) the ledger database.

        Args:
            path: SQLite database file. Parent directories are created.
        """
        self._path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()

    @property
    def path(self) -> Path:
        return self._path

    def _conn(self) -> sqlite3.Connection:
        return sqlite3.connect(str(self._path))

    def _init_schema(self) -> None:
        with closing(self._conn()) as conn, conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS processed_orders (
                    source_order_id TEXT PRIMARY KEY,
                    symbol TEXT NOT NULL,
                    agent_name TEXT NOT NULL,
                    side TEXT NOT NULL,
                    quantity REAL NOT NULL,
                    entry_price REAL,
                    follower_order_id TEXT NOT NULL,
                    recorded_at TEXT NOT NULL
                )
                """
            )

    def record(
        self,
        source_order_id: str,
        symbol: str,
        agent_name: str,
        side: Union[OrderSide, str],
        quantity: float,
        entry_price: Optional[float],
        follower_order_id: str,
    ) -> LedgerWriteStatus:
        """
        Record that a source order produced a follower order.

        Args:
            source_order_id: The followed agent's entry order id
            symbol: Trading pair
            agent_name: Followed agent
            side: Order direction
            quantity: Source quantity
            entry_price: Source entry price, if known
            follower_order_id: Exchange order id of the follower order

        Returns:
            LedgerWriteStatus.RECORDED for a new row,
            LedgerWriteStatus.DUPLICATE if the id was already recorded
            (the stored row is left unchanged).

        Raises:
            LedgerWriteError: If the record is invalid or storage fails
        """
        try:
            entry = ProcessedOrderRecord(
                source_order_id=str(source_order_id),
                symbol=symbol,
                agent_name=agent_name,
                side=side,
                quantity=quantity,
                entry_price=entry_price,
                follower_order_id=str(follower_order_id),
            )
        except ValueError as e:
            raise LedgerWriteError(f"Invalid ledger record for {source_order_id}: {e}") from e

        try:
            with closing(self._conn()) as conn, conn:
                conn.execute(
                    """
                    INSERT INTO processed_orders (
                        source_order_id, symbol, agent_name, side, quantity,
                        entry_price, follower_order_id, recorded_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        entry.source_order_id,
                        entry.symbol,
                        entry.agent_name,
                        entry.side.value,
                        entry.quantity,
                        entry.entry_price,
                        entry.follower_order_id,
                        _utc_iso(entry.recorded_at),
                    ),
                )
        except sqlite3.IntegrityError:
            logger.info(
                f"Source order {entry.source_order_id} already recorded, keeping original entry"
            )
            return LedgerWriteStatus.DUPLICATE
        except sqlite3.Error as e:
            raise LedgerWriteError(
                f"Failed to record source order {entry.source_order_id}: {e}"
            ) from e

        logger.debug(
            f"Recorded source order {entry.source_order_id} -> "
            f"follower order {entry.follower_order_id} ({entry.symbol})"
        )
        return LedgerWriteStatus.RECORDED

    def is_processed(self, source_order_id: str) -> bool:
        """Return True if the source order id is already in the ledger."""
        with closing(self._conn()) as conn:
            row = conn.execute(
                "SELECT 1 FROM processed_orders WHERE source_order_id = ?",
                (str(source_order_id),),
            ).fetchone()
        return row is not None

    def get(self, source_order_id: str) -> Optional[ProcessedOrderRecord]:
        with closing(self._conn()) as conn:
            row = conn.execute(
                "SELECT * FROM processed_orders WHERE source_order_id = ?",
                (str(source_order_id),),
            ).fetchone()
        return self._row_to_record(row) if row else None

    def list_records(self, agent_name: Optional[str] = None) -> List[ProcessedOrderRecord]:
        """Return records in the order they were recorded, optionally for one agent."""
        query = "SELECT * FROM processed_orders"
        params: list = []
        if agent_name is not None:
            query += " WHERE agent_name = ?"
            params.append(agent_name)
        query += " ORDER BY recorded_at ASC, rowid ASC"

        with closing(self._conn()) as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_record(row) for row in rows]

    def count(self) -> int:
        with closing(self._conn()) as conn:
            row = conn.execute("SELECT COUNT(*) FROM processed_orders").fetchone()
        return row[0] if row else 0

    @staticmethod
    def _row_to_record(row: tuple) -> ProcessedOrderRecord:
        (source_order_id, symbol, agent_name, side, quantity,
         entry_price, follower_order_id, recorded_at) = row
        return ProcessedOrderRecord(
            source_order_id=source_order_id,
            symbol=symbol,
            agent_name=agent_name,
            side=side,
            quantity=quantity,
            entry_price=entry_price,
            follower_order_id=follower_order_id,
            recorded_at=datetime.fromisoformat(recorded_at),
        )
