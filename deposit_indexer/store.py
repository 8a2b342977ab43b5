import asyncio
import sqlite3
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Mapping, Optional

from deposit_indexer.errors import StaleAdvance, StorageError
from deposit_indexer.models import (
    ORDER_STATUSES,
    PENDING,
    CanonicalEvent,
    can_transition,
    canonical_amount,
)
from deposit_indexer.order_id import derive_order_id
from deposit_indexer.util import json_dumps, now_ts

RETRY_WAITING = "waiting"
RETRY_NEEDS_REVIEW = "needs_review"

_STATUS_CHECK = ", ".join(f"'{s}'" for s in ORDER_STATUSES)

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS chain_cursors (
        chain_id TEXT NOT NULL,
        contract_address TEXT NOT NULL,
        position INTEGER NOT NULL,
        updated_at INTEGER NOT NULL,
        PRIMARY KEY (chain_id, contract_address)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS deposit_events (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        chain_id TEXT NOT NULL,
        contract_address TEXT NOT NULL,
        payer TEXT NOT NULL,
        order_id TEXT NOT NULL,
        amount TEXT NOT NULL,
        tx_id TEXT NOT NULL,
        event_index INTEGER NOT NULL,
        position INTEGER NOT NULL,
        timestamp INTEGER,
        processed INTEGER NOT NULL DEFAULT 0,
        created_at INTEGER NOT NULL,
        UNIQUE(chain_id, tx_id, event_index)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_deposit_events_order ON deposit_events(order_id)",
    "CREATE INDEX IF NOT EXISTS idx_deposit_events_chain_pos ON deposit_events(chain_id, position)",
    """
    CREATE TABLE IF NOT EXISTS vault_events (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        chain_id TEXT NOT NULL,
        contract_address TEXT NOT NULL,
        kind TEXT NOT NULL,
        tx_id TEXT NOT NULL,
        event_index INTEGER NOT NULL,
        position INTEGER NOT NULL,
        timestamp INTEGER,
        amount TEXT,
        payload TEXT,
        created_at INTEGER NOT NULL,
        UNIQUE(chain_id, tx_id, event_index)
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS orders (
        order_id TEXT PRIMARY KEY,
        broker_id TEXT NOT NULL,
        account_id TEXT NOT NULL,
        amount TEXT NOT NULL,
        token_address TEXT NOT NULL,
        chain_id TEXT,
        status TEXT NOT NULL DEFAULT 'pending' CHECK (status IN ({_STATUS_CHECK})),
        created_at INTEGER NOT NULL,
        updated_at INTEGER NOT NULL,
        transaction_hash TEXT,
        notified INTEGER NOT NULL DEFAULT 0,
        notify_attempts INTEGER NOT NULL DEFAULT 0,
        next_notify_at INTEGER NOT NULL DEFAULT 0
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_orders_status ON orders(status)",
    """
    CREATE TABLE IF NOT EXISTS anomalies (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        chain_id TEXT NOT NULL,
        tx_id TEXT NOT NULL,
        event_index INTEGER NOT NULL,
        order_id TEXT,
        kind TEXT NOT NULL,
        detail TEXT,
        created_at INTEGER NOT NULL,
        UNIQUE(chain_id, tx_id, event_index, kind)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS reconcile_retries (
        event_id INTEGER PRIMARY KEY REFERENCES deposit_events(id),
        attempts INTEGER NOT NULL DEFAULT 0,
        first_seen_at INTEGER NOT NULL,
        next_attempt_at INTEGER NOT NULL,
        state TEXT NOT NULL DEFAULT 'waiting'
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_reconcile_retries_due ON reconcile_retries(state, next_attempt_at)",
    """
    CREATE TABLE IF NOT EXISTS balances (
        account_id TEXT NOT NULL,
        token_address TEXT NOT NULL,
        amount TEXT NOT NULL,
        updated_at INTEGER NOT NULL,
        PRIMARY KEY (account_id, token_address)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS chain_status (
        chain_id TEXT NOT NULL,
        contract_address TEXT NOT NULL,
        name TEXT,
        status TEXT NOT NULL,
        position INTEGER,
        head INTEGER,
        consecutive_failures INTEGER NOT NULL DEFAULT 0,
        last_error TEXT,
        updated_at INTEGER NOT NULL,
        PRIMARY KEY (chain_id, contract_address)
    )
    """,
]


def _db_addr(addr: str) -> str:
    return addr.lower()


class DepositStore:
    """sqlite-backed cursor table, deduplicating event ledger and order book.

    One connection is shared by every task in the process; callers that need
    several statements to commit together hold ``lock`` and wrap them in
    ``transaction()``. Everything else runs in autocommit mode.
    """

    def __init__(self, db_path: str, busy_timeout: float = 30.0):
        self.db_path = db_path
        self.busy_timeout = busy_timeout
        self.conn: Optional[sqlite3.Connection] = None
        self.lock = asyncio.Lock()
        self._in_tx = False

    def init_db(self) -> None:
        try:
            self.conn = sqlite3.connect(
                self.db_path,
                timeout=self.busy_timeout,
                isolation_level=None,
                check_same_thread=False,
            )
        except sqlite3.DatabaseError as exc:
            raise StorageError(f"cannot open {self.db_path}: {exc}") from exc
        self.conn.row_factory = sqlite3.Row
        cur = self.conn.cursor()
        if self.db_path != ":memory:":
            cur.execute("PRAGMA journal_mode=WAL")
        cur.execute("PRAGMA foreign_keys=ON")
        with self.transaction():
            for statement in SCHEMA:
                cur.execute(statement)

    def close(self) -> None:
        if self.conn is not None:
            self.conn.close()
            self.conn = None

    def _cur(self) -> sqlite3.Cursor:
        if not self.conn:
            raise RuntimeError("DB not initialized")
        return self.conn.cursor()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Cursor]:
        cur = self._cur()
        if self._in_tx:
            yield cur
            return
        cur.execute("BEGIN IMMEDIATE")
        self._in_tx = True
        try:
            yield cur
        except (sqlite3.IntegrityError, sqlite3.OperationalError):
            self._in_tx = False
            self.conn.rollback()
            raise
        except sqlite3.DatabaseError as exc:
            # malformed image, disk failure: nothing a retry can repair
            self._in_tx = False
            self.conn.rollback()
            raise StorageError(f"storage failure: {exc}") from exc
        except BaseException:
            self._in_tx = False
            self.conn.rollback()
            raise
        try:
            cur.execute("COMMIT")
        except sqlite3.OperationalError:
            self.conn.rollback()
            raise
        except sqlite3.DatabaseError as exc:
            self.conn.rollback()
            raise StorageError(f"commit failed: {exc}") from exc
        finally:
            self._in_tx = False

    # -- chain cursors -------------------------------------------------

    def get_position(self, chain_id: str, contract: str, start_position: int = 0) -> int:
        """Last committed position; created at ``start_position - 1`` on first use."""
        cur = self._cur()
        row = cur.execute(
            "SELECT position FROM chain_cursors WHERE chain_id = ? AND contract_address = ?",
            (chain_id, _db_addr(contract)),
        ).fetchone()
        if row is not None:
            return int(row["position"])
        initial = start_position - 1
        cur.execute(
            "INSERT OR IGNORE INTO chain_cursors (chain_id, contract_address, position, updated_at) "
            "VALUES (?, ?, ?, ?)",
            (chain_id, _db_addr(contract), initial, now_ts()),
        )
        return initial

    def advance(self, chain_id: str, contract: str, new_position: int) -> None:
        cur = self._cur()
        row = cur.execute(
            "SELECT position FROM chain_cursors WHERE chain_id = ? AND contract_address = ?",
            (chain_id, _db_addr(contract)),
        ).fetchone()
        if row is None:
            cur.execute(
                "INSERT INTO chain_cursors (chain_id, contract_address, position, updated_at) "
                "VALUES (?, ?, ?, ?)",
                (chain_id, _db_addr(contract), new_position, now_ts()),
            )
            return
        current = int(row["position"])
        if new_position <= current:
            raise StaleAdvance(chain_id, contract, current, new_position)
        cur.execute(
            "UPDATE chain_cursors SET position = ?, updated_at = ? "
            "WHERE chain_id = ? AND contract_address = ? AND position = ?",
            (new_position, now_ts(), chain_id, _db_addr(contract), current),
        )

    def list_cursors(self) -> List[sqlite3.Row]:
        return self._cur().execute(
            "SELECT chain_id, contract_address, position, updated_at FROM chain_cursors "
            "ORDER BY chain_id, contract_address"
        ).fetchall()

    # -- event ledger --------------------------------------------------

    def insert_deposit_if_new(self, event: CanonicalEvent) -> Optional[int]:
        """Store a deposit unless its (chain, tx, index) is known; return the new row id."""
        cur = self._cur()
        cur.execute(
            """
            INSERT OR IGNORE INTO deposit_events (
                chain_id, contract_address, payer, order_id, amount, tx_id,
                event_index, position, timestamp, processed, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 0, ?)
            """,
            (
                event.chain_id,
                _db_addr(event.contract_address),
                event.payer,
                event.order_id,
                event.amount,
                event.tx_id,
                event.event_index,
                event.position,
                event.timestamp,
                now_ts(),
            ),
        )
        if cur.rowcount == 1:
            return cur.lastrowid
        return None

    def insert_vault_event_if_new(self, event: CanonicalEvent) -> bool:
        cur = self._cur()
        cur.execute(
            """
            INSERT OR IGNORE INTO vault_events (
                chain_id, contract_address, kind, tx_id, event_index,
                position, timestamp, amount, payload, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                event.chain_id,
                _db_addr(event.contract_address),
                event.kind,
                event.tx_id,
                event.event_index,
                event.position,
                event.timestamp,
                event.amount,
                json_dumps(event.extra),
                now_ts(),
            ),
        )
        return cur.rowcount == 1

    def get_deposit(self, event_id: int) -> Optional[sqlite3.Row]:
        return self._cur().execute("SELECT * FROM deposit_events WHERE id = ?", (event_id,)).fetchone()

    def mark_processed(self, event_id: int) -> None:
        self._cur().execute("UPDATE deposit_events SET processed = 1 WHERE id = ?", (event_id,))

    def count_deposits(self, chain_id: Optional[str] = None) -> int:
        if chain_id is None:
            row = self._cur().execute("SELECT COUNT(*) AS n FROM deposit_events").fetchone()
        else:
            row = self._cur().execute(
                "SELECT COUNT(*) AS n FROM deposit_events WHERE chain_id = ?", (chain_id,)
            ).fetchone()
        return int(row["n"])

    def recent_deposits(self, limit: int = 50, chain_id: Optional[str] = None) -> List[sqlite3.Row]:
        params: List[Any] = []
        where = ""
        if chain_id:
            where = "WHERE chain_id = ?"
            params.append(chain_id)
        params.append(limit)
        return self._cur().execute(
            f"SELECT * FROM deposit_events {where} ORDER BY position DESC, event_index DESC LIMIT ?",
            params,
        ).fetchall()

    # -- orders --------------------------------------------------------

    def create_order(
        self,
        broker_id: str,
        account_id: str,
        order_num: int,
        amount: Any,
        token_address: str,
        chain_id: Optional[str] = None,
        now: Optional[int] = None,
    ) -> str:
        order_id = derive_order_id(broker_id, account_id, order_num)
        ts = now if now is not None else now_ts()
        self._cur().execute(
            """
            INSERT INTO orders (
                order_id, broker_id, account_id, amount, token_address, chain_id,
                status, created_at, updated_at, notified
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 0)
            """,
            (
                order_id,
                broker_id,
                account_id,
                canonical_amount(amount),
                _db_addr(token_address),
                chain_id,
                PENDING,
                ts,
                ts,
            ),
        )
        return order_id

    def get_order(self, order_id: str) -> Optional[sqlite3.Row]:
        return self._cur().execute("SELECT * FROM orders WHERE order_id = ?", (order_id,)).fetchone()

    def transition_order(
        self,
        order_id: str,
        from_status: str,
        to_status: str,
        transaction_hash: Optional[str] = None,
        now: Optional[int] = None,
    ) -> bool:
        """Conditionally move an order; False when it was no longer in ``from_status``."""
        if not can_transition(from_status, to_status):
            raise ValueError(f"illegal order transition {from_status} -> {to_status}")
        cur = self._cur()
        cur.execute(
            """
            UPDATE orders
            SET status = ?, transaction_hash = COALESCE(?, transaction_hash), updated_at = ?
            WHERE order_id = ? AND status = ?
            """,
            (to_status, transaction_hash, now if now is not None else now_ts(), order_id, from_status),
        )
        return cur.rowcount == 1

    def orders_with_status(self, status: str, limit: int = 500) -> List[sqlite3.Row]:
        return self._cur().execute(
            "SELECT * FROM orders WHERE status = ? ORDER BY updated_at ASC LIMIT ?",
            (status, limit),
        ).fetchall()

    def pending_orders_created_before(self, cutoff: int, limit: int = 500) -> List[sqlite3.Row]:
        return self._cur().execute(
            "SELECT * FROM orders WHERE status = ? AND created_at < ? ORDER BY created_at ASC LIMIT ?",
            (PENDING, cutoff, limit),
        ).fetchall()

    def orders_to_notify(self, statuses, now: int, limit: int = 100) -> List[sqlite3.Row]:
        """Un-notified orders in ``statuses`` whose next delivery attempt is due."""
        marks = ", ".join("?" for _ in statuses)
        return self._cur().execute(
            f"SELECT * FROM orders WHERE notified = 0 AND status IN ({marks}) AND next_notify_at <= ? "
            "ORDER BY next_notify_at ASC, updated_at ASC LIMIT ?",
            (*statuses, now, limit),
        ).fetchall()

    def defer_notification(self, order_id: str, attempts: int, next_notify_at: int) -> None:
        self._cur().execute(
            "UPDATE orders SET notify_attempts = ?, next_notify_at = ? WHERE order_id = ?",
            (attempts, next_notify_at, order_id),
        )

    def mark_notified(self, order_id: str, status: str) -> bool:
        cur = self._cur()
        cur.execute(
            "UPDATE orders SET notified = 1 WHERE order_id = ? AND status = ? AND notified = 0",
            (order_id, status),
        )
        return cur.rowcount == 1

    # -- settlement bookkeeping ----------------------------------------

    def credit_balance(self, account_id: str, token_address: str, amount: str, now: Optional[int] = None) -> str:
        cur = self._cur()
        token = _db_addr(token_address)
        row = cur.execute(
            "SELECT amount FROM balances WHERE account_id = ? AND token_address = ?",
            (account_id, token),
        ).fetchone()
        total = int(amount) + (int(row["amount"]) if row else 0)
        cur.execute(
            """
            INSERT INTO balances (account_id, token_address, amount, updated_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(account_id, token_address)
            DO UPDATE SET amount = excluded.amount, updated_at = excluded.updated_at
            """,
            (account_id, token, str(total), now if now is not None else now_ts()),
        )
        return str(total)

    def get_balance(self, account_id: str, token_address: str) -> str:
        row = self._cur().execute(
            "SELECT amount FROM balances WHERE account_id = ? AND token_address = ?",
            (account_id, _db_addr(token_address)),
        ).fetchone()
        return row["amount"] if row else "0"

    # -- anomalies and reconciliation retries --------------------------

    def record_anomaly(self, deposit: Mapping[str, Any], kind: str, detail: str, now: Optional[int] = None) -> bool:
        cur = self._cur()
        cur.execute(
            """
            INSERT OR IGNORE INTO anomalies (chain_id, tx_id, event_index, order_id, kind, detail, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                deposit["chain_id"],
                deposit["tx_id"],
                deposit["event_index"],
                deposit["order_id"],
                kind,
                detail,
                now if now is not None else now_ts(),
            ),
        )
        return cur.rowcount == 1

    def list_anomalies(self, limit: int = 100, kind: Optional[str] = None) -> List[sqlite3.Row]:
        if kind:
            return self._cur().execute(
                "SELECT * FROM anomalies WHERE kind = ? ORDER BY id DESC LIMIT ?", (kind, limit)
            ).fetchall()
        return self._cur().execute("SELECT * FROM anomalies ORDER BY id DESC LIMIT ?", (limit,)).fetchall()

    def queue_retry(self, event_id: int, next_attempt_at: int, now: Optional[int] = None) -> None:
        self._cur().execute(
            """
            INSERT OR IGNORE INTO reconcile_retries (event_id, attempts, first_seen_at, next_attempt_at, state)
            VALUES (?, 0, ?, ?, ?)
            """,
            (event_id, now if now is not None else now_ts(), next_attempt_at, RETRY_WAITING),
        )

    def get_retry(self, event_id: int) -> Optional[sqlite3.Row]:
        return self._cur().execute(
            "SELECT * FROM reconcile_retries WHERE event_id = ?", (event_id,)
        ).fetchone()

    def due_retries(self, now: int, limit: int = 100) -> List[sqlite3.Row]:
        return self._cur().execute(
            "SELECT * FROM reconcile_retries WHERE state = ? AND next_attempt_at <= ? "
            "ORDER BY next_attempt_at ASC LIMIT ?",
            (RETRY_WAITING, now, limit),
        ).fetchall()

    def reschedule_retry(self, event_id: int, attempts: int, next_attempt_at: int) -> None:
        self._cur().execute(
            "UPDATE reconcile_retries SET attempts = ?, next_attempt_at = ? WHERE event_id = ?",
            (attempts, next_attempt_at, event_id),
        )

    def flag_for_review(self, event_id: int) -> None:
        self._cur().execute(
            "UPDATE reconcile_retries SET state = ? WHERE event_id = ?", (RETRY_NEEDS_REVIEW, event_id)
        )

    def clear_retry(self, event_id: int) -> None:
        self._cur().execute("DELETE FROM reconcile_retries WHERE event_id = ?", (event_id,))

    def list_retries(self, state: Optional[str] = None, limit: int = 100) -> List[sqlite3.Row]:
        sql = (
            "SELECT r.*, d.chain_id, d.tx_id, d.event_index, d.order_id, d.amount, d.payer "
            "FROM reconcile_retries r JOIN deposit_events d ON d.id = r.event_id"
        )
        params: List[Any] = []
        if state:
            sql += " WHERE r.state = ?"
            params.append(state)
        sql += " ORDER BY r.first_seen_at ASC LIMIT ?"
        params.append(limit)
        return self._cur().execute(sql, params).fetchall()

    # -- chain health --------------------------------------------------

    def record_chain_status(self, snapshot: Dict[str, Any]) -> None:
        self._cur().execute(
            """
            INSERT INTO chain_status (
                chain_id, contract_address, name, status, position, head,
                consecutive_failures, last_error, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(chain_id, contract_address) DO UPDATE SET
                name = excluded.name,
                status = excluded.status,
                position = excluded.position,
                head = excluded.head,
                consecutive_failures = excluded.consecutive_failures,
                last_error = excluded.last_error,
                updated_at = excluded.updated_at
            """,
            (
                snapshot["chain_id"],
                _db_addr(snapshot["contract_address"]),
                snapshot.get("name"),
                snapshot["status"],
                snapshot.get("position"),
                snapshot.get("head"),
                snapshot.get("consecutive_failures", 0),
                snapshot.get("last_error"),
                snapshot.get("updated_at") or now_ts(),
            ),
        )

    def list_chain_status(self) -> List[sqlite3.Row]:
        return self._cur().execute(
            "SELECT * FROM chain_status ORDER BY chain_id, contract_address"
        ).fetchall()
