"""
SQLite data access for checkout state.

Holds the two external collaborators the checkout core relies on:

 - the order/payment store, where ``order_reference`` uniqueness is the
   idempotency boundary for dispatch and PaymentAttempt creation
 - cart persistence, a key/value table of serialized carts keyed by session
"""

from __future__ import annotations

import json
import logging
import os
import sqlite3
import threading
from dataclasses import dataclass
from datetime import datetime, UTC
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from orders import OrderStatus

logger = logging.getLogger(__name__)

_thread_local = threading.local()

_THIS_FILE = Path(__file__).resolve()
_DEFAULT_DB_PATH = (_THIS_FILE.parent / ".." / "db" / "checkout.db").resolve()

ATTEMPT_INITIATED = "initiated"
ATTEMPT_POLLING = "polling"
ATTEMPT_COMPLETED = "completed"
ATTEMPT_FAILED = "failed"
ATTEMPT_STATUSES = (ATTEMPT_INITIATED, ATTEMPT_POLLING, ATTEMPT_COMPLETED, ATTEMPT_FAILED)


# ------------------------------------------------------------------------------
# Connection management
# ------------------------------------------------------------------------------
def _ensure_parent_dir(path: str) -> None:
    if path == ":memory:":
        return
    parent = os.path.dirname(os.path.abspath(path))
    if parent and not os.path.exists(parent):
        os.makedirs(parent, exist_ok=True)


def _resolve_db_path() -> str:
    return os.environ.get("PHARMACY_DB_PATH", str(_DEFAULT_DB_PATH))


def _now() -> str:
    return datetime.now(UTC).isoformat()


def connect(db_path: Optional[str] = None) -> sqlite3.Connection:
    """Open a configured SQLite connection.

    Sets a busy timeout and, for file databases, WAL journaling so the
    polling callbacks and the UI thread can share the file without
    ``database is locked`` errors.

    Args:
        db_path: Database file, or ``":memory:"``.  Defaults to
            ``PHARMACY_DB_PATH`` or ``db/checkout.db`` next to the sources.

    Returns:
        A :class:`sqlite3.Connection` with ``sqlite3.Row`` rows.
    """
    path = db_path or _resolve_db_path()
    _ensure_parent_dir(path)
    try:
        conn = sqlite3.connect(path, check_same_thread=False, timeout=10.0)
    except sqlite3.OperationalError as e:
        logger.error(f"DB open failed ({path}): {e}")
        raise
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA busy_timeout = 10000;")
    if path != ":memory:":
        try:
            conn.execute("PRAGMA journal_mode = WAL;")
        except sqlite3.OperationalError:
            pass
    return conn


def get_request_connection() -> sqlite3.Connection:
    """Return the per-thread connection, opening it on first use."""
    conn = getattr(_thread_local, "conn", None)
    if conn is None:
        conn = connect()
        _thread_local.conn = conn
    return conn


def reset_request_connection() -> None:
    """Close and forget the per-thread connection (used when the DB path changes)."""
    conn = getattr(_thread_local, "conn", None)
    if conn is not None:
        conn.close()
        _thread_local.conn = None


# ------------------------------------------------------------------------------
# Records
# ------------------------------------------------------------------------------

@dataclass
class OrderRecord:
    order_reference: str
    payment_method: str
    total: str
    status: str
    customer: Dict[str, Any]
    items: List[Dict[str, Any]]
    created_at: str
    updated_at: str

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "OrderRecord":
        return cls(
            order_reference=row["order_reference"],
            payment_method=row["payment_method"],
            total=row["total"],
            status=row["status"],
            customer=json.loads(row["customer_json"]),
            items=json.loads(row["items_json"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


@dataclass
class PaymentAttempt:
    order_reference: str
    provider_transaction_id: str
    status: str
    attempts_counter: int
    last_checked_at: str | None
    closed_at: str | None = None
    failure_reason: str | None = None
    receipt: str | None = None

    @property
    def is_open(self) -> bool:
        return self.closed_at is None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "PaymentAttempt":
        return cls(
            order_reference=row["order_reference"],
            provider_transaction_id=row["provider_transaction_id"],
            status=row["status"],
            attempts_counter=row["attempts_counter"],
            last_checked_at=row["last_checked_at"],
            closed_at=row["closed_at"],
            failure_reason=row["failure_reason"],
            receipt=row["receipt"],
        )


# ------------------------------------------------------------------------------
# Base DAO
# ------------------------------------------------------------------------------

class BaseDAO:
    """
    Base class for all DAOs.

    An explicit connection (tests pass ``connect(":memory:")``) wins over
    the per-thread request connection.  Tables are created on construction
    with IF NOT EXISTS.
    """

    def __init__(self, conn: Optional[sqlite3.Connection] = None) -> None:
        self._conn_explicit = conn
        self.create_table()

    def _conn(self) -> sqlite3.Connection:
        return self._conn_explicit if self._conn_explicit is not None else get_request_connection()

    def create_table(self) -> None:
        return


# ------------------------------------------------------------------------------
# Order DAO
# ------------------------------------------------------------------------------

class OrderDAO(BaseDAO):
    """Orders keyed by the merchant-side order reference."""

    def create_table(self) -> None:
        conn = self._conn()
        with conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS CheckoutOrder (
                    order_reference TEXT PRIMARY KEY,
                    payment_method TEXT NOT NULL,
                    total TEXT NOT NULL,
                    status TEXT NOT NULL,
                    customer_json TEXT NOT NULL,
                    items_json TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );
                """
            )

    def create_or_get_order(
        self,
        order_reference: str,
        payment_method: str,
        total: str,
        status: str,
        customer: Dict[str, Any],
        items: List[Dict[str, Any]],
    ) -> Tuple[OrderRecord, bool]:
        """
        Insert the order unless the reference already exists.

        Returns (record, created).  When ``created`` is False the stored
        record is returned untouched, whatever the caller passed in.
        """
        conn = self._conn()
        ts = _now()
        with conn:
            cur = conn.execute(
                "INSERT OR IGNORE INTO CheckoutOrder (order_reference, payment_method, total, status,"
                " customer_json, items_json, created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?);",
                (order_reference, payment_method, total, status, json.dumps(customer), json.dumps(items), ts, ts),
            )
        created = cur.rowcount > 0
        record = self.get_order(order_reference)
        assert record is not None
        return record, created

    def get_order(self, order_reference: str) -> Optional[OrderRecord]:
        row = self._conn().execute(
            "SELECT * FROM CheckoutOrder WHERE order_reference = ?;", (order_reference,)
        ).fetchone()
        return OrderRecord.from_row(row) if row else None

    def update_order_status(self, order_reference: str, status: str) -> bool:
        """
        Move the order to ``status`` if the stored status allows it.

        Returns False when the order is missing or the move would go
        backwards (e.g. ``failed`` -> ``confirmed``); the row is untouched.
        """
        target = OrderStatus(status)
        allowed = [target.value] + [s.value for s in target.predecessors]
        placeholders = ", ".join("?" for _ in allowed)
        conn = self._conn()
        with conn:
            cur = conn.execute(
                "UPDATE CheckoutOrder SET status = ?, updated_at = ?"
                f" WHERE order_reference = ? AND status IN ({placeholders});",
                (target.value, _now(), order_reference, *allowed),
            )
        if cur.rowcount == 0:
            logger.warning(
                f"Order status not moved to {target.value}",
                extra={"request_id": order_reference, "extra": {"status": target.value}},
            )
        return cur.rowcount > 0

    def list_orders(self, status: str | None = None) -> List[OrderRecord]:
        conn = self._conn()
        if status is None:
            rows = conn.execute("SELECT * FROM CheckoutOrder ORDER BY created_at;").fetchall()
        else:
            rows = conn.execute(
                "SELECT * FROM CheckoutOrder WHERE status = ? ORDER BY created_at;", (status,)
            ).fetchall()
        return [OrderRecord.from_row(r) for r in rows]


# ------------------------------------------------------------------------------
# Payment attempt DAO
# ------------------------------------------------------------------------------

class PaymentAttemptDAO(BaseDAO):
    """One pending provider transaction per order reference."""

    def create_table(self) -> None:
        conn = self._conn()
        with conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS PaymentAttempt (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    order_reference TEXT NOT NULL UNIQUE,
                    provider_transaction_id TEXT NOT NULL,
                    status TEXT NOT NULL,
                    attempts_counter INTEGER NOT NULL DEFAULT 0,
                    last_checked_at TEXT,
                    closed_at TEXT,
                    failure_reason TEXT,
                    receipt TEXT
                );
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_attempt_txn ON PaymentAttempt (provider_transaction_id);"
            )

    def create_attempt(self, order_reference: str, provider_transaction_id: str) -> Tuple[PaymentAttempt, bool]:
        """Create the attempt for an order, or return the one already there."""
        conn = self._conn()
        with conn:
            cur = conn.execute(
                "INSERT OR IGNORE INTO PaymentAttempt (order_reference, provider_transaction_id, status)"
                " VALUES (?, ?, ?);",
                (order_reference, provider_transaction_id, ATTEMPT_INITIATED),
            )
        created = cur.rowcount > 0
        if not created:
            logger.warning(
                "Payment attempt already exists; not creating another",
                extra={"extra": {"order_reference": order_reference}},
            )
        attempt = self.get_by_order_reference(order_reference)
        assert attempt is not None
        return attempt, created

    def get_by_order_reference(self, order_reference: str) -> Optional[PaymentAttempt]:
        row = self._conn().execute(
            "SELECT * FROM PaymentAttempt WHERE order_reference = ?;", (order_reference,)
        ).fetchone()
        return PaymentAttempt.from_row(row) if row else None

    def get_by_transaction_id(self, provider_transaction_id: str) -> Optional[PaymentAttempt]:
        row = self._conn().execute(
            "SELECT * FROM PaymentAttempt WHERE provider_transaction_id = ? ORDER BY id DESC LIMIT 1;",
            (provider_transaction_id,),
        ).fetchone()
        return PaymentAttempt.from_row(row) if row else None

    def record_poll(self, order_reference: str, attempts_counter: int) -> bool:
        """Mark the attempt as polling and store the attempt count."""
        conn = self._conn()
        with conn:
            cur = conn.execute(
                "UPDATE PaymentAttempt SET status = ?, attempts_counter = ?, last_checked_at = ?"
                " WHERE order_reference = ? AND closed_at IS NULL AND status IN (?, ?);",
                (ATTEMPT_POLLING, attempts_counter, _now(), order_reference, ATTEMPT_INITIATED, ATTEMPT_POLLING),
            )
        return cur.rowcount > 0

    def update_status_by_transaction_id(
        self,
        provider_transaction_id: str,
        status: str,
        failure_reason: str | None = None,
        receipt: str | None = None,
    ) -> bool:
        if status not in ATTEMPT_STATUSES:
            raise ValueError(f"Unknown payment attempt status: {status}")
        conn = self._conn()
        with conn:
            cur = conn.execute(
                "UPDATE PaymentAttempt SET status = ?, failure_reason = COALESCE(?, failure_reason),"
                " receipt = COALESCE(?, receipt) WHERE provider_transaction_id = ?;",
                (status, failure_reason, receipt, provider_transaction_id),
            )
        return cur.rowcount > 0

    def close_attempt(self, order_reference: str) -> bool:
        """Logically destroy the attempt; later polls for it are ignored."""
        conn = self._conn()
        with conn:
            cur = conn.execute(
                "UPDATE PaymentAttempt SET closed_at = ? WHERE order_reference = ? AND closed_at IS NULL;",
                (_now(), order_reference),
            )
        return cur.rowcount > 0

    def count_attempts(self, order_reference: str | None = None) -> int:
        conn = self._conn()
        if order_reference is None:
            (n,) = conn.execute("SELECT COUNT(*) FROM PaymentAttempt;").fetchone()
        else:
            (n,) = conn.execute(
                "SELECT COUNT(*) FROM PaymentAttempt WHERE order_reference = ?;", (order_reference,)
            ).fetchone()
        return int(n)


# ------------------------------------------------------------------------------
# Cart persistence
# ------------------------------------------------------------------------------

class CartStoreDAO(BaseDAO):
    """Serialized cart contents keyed by session identity."""

    def create_table(self) -> None:
        conn = self._conn()
        with conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS CartSession (
                    session_id TEXT PRIMARY KEY,
                    items_json TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );
                """
            )

    def put(self, session_id: str, items_json: str) -> None:
        conn = self._conn()
        with conn:
            conn.execute(
                "INSERT INTO CartSession (session_id, items_json, updated_at) VALUES (?, ?, ?)"
                " ON CONFLICT(session_id) DO UPDATE SET items_json = excluded.items_json,"
                " updated_at = excluded.updated_at;",
                (session_id, items_json, _now()),
            )

    def get(self, session_id: str) -> Optional[str]:
        row = self._conn().execute(
            "SELECT items_json FROM CartSession WHERE session_id = ?;", (session_id,)
        ).fetchone()
        return row["items_json"] if row else None

    def delete(self, session_id: str) -> None:
        conn = self._conn()
        with conn:
            conn.execute("DELETE FROM CartSession WHERE session_id = ?;", (session_id,))


class CheckoutStore:
    """Order and payment-attempt DAOs sharing one connection."""

    def __init__(self, conn: Optional[sqlite3.Connection] = None) -> None:
        self.orders = OrderDAO(conn)
        self.attempts = PaymentAttemptDAO(conn)

    # Thin delegations so callers can treat the store as one collaborator
    def create_or_get_order(self, **fields: Any) -> Tuple[OrderRecord, bool]:
        return self.orders.create_or_get_order(**fields)

    def update_order_status(self, order_reference: str, status: str) -> bool:
        return self.orders.update_order_status(order_reference, status)

    def create_attempt(self, order_reference: str, provider_transaction_id: str) -> Tuple[PaymentAttempt, bool]:
        return self.attempts.create_attempt(order_reference, provider_transaction_id)

    def update_status_by_transaction_id(self, provider_transaction_id: str, status: str, **kwargs: Any) -> bool:
        return self.attempts.update_status_by_transaction_id(provider_transaction_id, status, **kwargs)
