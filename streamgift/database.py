"""
Database module for cl-streamgift

Handles SQLite persistence for:
- Stream ledger (append-only, rows are never deleted)
- Identity bindings (identity hash <-> address)
- Escrow pool (pooled balance and collected fees)
- Account balances
- Event log (audit trail)
- Claim receipts (idempotency keys)

Thread Safety:
- Uses threading.local() to provide each thread with its own SQLite connection
- State-changing operations run inside transaction() (BEGIN IMMEDIATE), so
  writers from different threads or processes are serialized by SQLite
"""

import sqlite3
import os
import time
import json
import threading
from contextlib import contextmanager
from typing import Dict, List, Optional, Any, Iterator


# Statuses whose escrow is still held in the pool
OPEN_STATUSES = ('ACTIVE', 'PAUSED')


class StreamDatabase:
    """
    SQLite database manager for the stream engine.

    Provides persistence for:
    - Streams (sender, recipient, amounts, timing, status)
    - Identity bindings and their reverse index
    - The single escrow pool row
    - Per-address token balances
    - Emitted events and claim receipts

    Thread Safety:
    - Each thread gets its own isolated SQLite connection via threading.local()
    - WAL mode enabled for better concurrent read/write performance
    """

    def __init__(self, db_path: str, plugin, busy_timeout: float = 10.0):
        """
        Initialize the database manager.

        Args:
            db_path: Path to SQLite database file
            plugin: Reference to the pyln Plugin (or proxy) for logging
            busy_timeout: Seconds to wait on a locked database
        """
        self.db_path = os.path.expanduser(db_path)
        self.plugin = plugin
        self.busy_timeout = busy_timeout
        # Thread-local storage for connections
        self._local = threading.local()

    def _get_connection(self) -> sqlite3.Connection:
        """
        Get or create a thread-local database connection.

        Returns:
            sqlite3.Connection: Thread-local database connection
        """
        if not hasattr(self._local, 'conn') or self._local.conn is None:
            directory = os.path.dirname(self.db_path)
            if directory:
                os.makedirs(directory, exist_ok=True)

            self._local.conn = sqlite3.connect(
                self.db_path,
                timeout=self.busy_timeout,
                isolation_level=None  # Autocommit mode; transactions are explicit
            )
            self._local.conn.row_factory = sqlite3.Row
            self._local.conn.execute("PRAGMA journal_mode=WAL;")
            self._local.depth = 0

            self.plugin.log(
                f"StreamDatabase: Created thread-local connection (thread={threading.current_thread().name})",
                level='debug'
            )
        return self._local.conn

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """
        Run a block as a single atomic unit.

        Nested calls on the same thread join the outermost transaction.
        Any exception rolls back every write made inside the block.
        """
        conn = self._get_connection()
        if self._local.depth > 0:
            self._local.depth += 1
            try:
                yield conn
            finally:
                self._local.depth -= 1
            return

        conn.execute("BEGIN IMMEDIATE")
        self._local.depth = 1
        try:
            yield conn
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        else:
            conn.execute("COMMIT")
        finally:
            self._local.depth = 0

    def initialize(self):
        """Create database tables if they don't exist."""
        conn = self._get_connection()

        # =====================================================================
        # STREAMS TABLE
        # =====================================================================
        conn.execute("""
            CREATE TABLE IF NOT EXISTS streams (
                stream_id INTEGER PRIMARY KEY AUTOINCREMENT,
                sender TEXT NOT NULL,
                recipient TEXT NOT NULL,
                recipient_identity_hash TEXT NOT NULL DEFAULT '',
                recipient_kind TEXT NOT NULL DEFAULT 'wallet',
                total_amount INTEGER NOT NULL,
                claimed_amount INTEGER NOT NULL DEFAULT 0,
                fee_amount INTEGER NOT NULL DEFAULT 0,
                rate_per_second INTEGER NOT NULL,
                start_time INTEGER NOT NULL,
                end_time INTEGER NOT NULL,
                last_claim_time INTEGER NOT NULL,
                status TEXT NOT NULL DEFAULT 'ACTIVE',
                message TEXT NOT NULL DEFAULT '',
                created_at INTEGER NOT NULL,
                CHECK (claimed_amount >= 0 AND claimed_amount <= total_amount),
                CHECK (start_time <= end_time)
            )
        """)

        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_streams_sender
            ON streams(sender)
        """)
        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_streams_recipient
            ON streams(recipient)
        """)
        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_streams_identity
            ON streams(recipient_identity_hash)
        """)

        # =====================================================================
        # IDENTITY BINDINGS (forward and reverse)
        # =====================================================================
        conn.execute("""
            CREATE TABLE IF NOT EXISTS identity_bindings (
                identity_hash TEXT PRIMARY KEY,
                address TEXT NOT NULL,
                claimed INTEGER NOT NULL DEFAULT 0,
                created_at INTEGER NOT NULL,
                claimed_at INTEGER
            )
        """)

        conn.execute("""
            CREATE TABLE IF NOT EXISTS address_identities (
                address TEXT PRIMARY KEY,
                identity_hash TEXT NOT NULL
            )
        """)

        # =====================================================================
        # ESCROW POOL (single row)
        # =====================================================================
        conn.execute("""
            CREATE TABLE IF NOT EXISTS escrow_pool (
                id INTEGER PRIMARY KEY CHECK (id = 1),
                pooled_balance INTEGER NOT NULL DEFAULT 0,
                fee_collected INTEGER NOT NULL DEFAULT 0,
                initialized_at INTEGER NOT NULL,
                CHECK (pooled_balance >= 0 AND fee_collected >= 0)
            )
        """)
        conn.execute("""
            INSERT OR IGNORE INTO escrow_pool (id, pooled_balance, fee_collected, initialized_at)
            VALUES (1, 0, 0, ?)
        """, (int(time.time()),))

        # =====================================================================
        # ACCOUNTS
        # =====================================================================
        conn.execute("""
            CREATE TABLE IF NOT EXISTS accounts (
                address TEXT PRIMARY KEY,
                balance INTEGER NOT NULL DEFAULT 0,
                updated_at INTEGER NOT NULL,
                CHECK (balance >= 0)
            )
        """)

        # =====================================================================
        # EVENT LOG
        # =====================================================================
        conn.execute("""
            CREATE TABLE IF NOT EXISTS stream_events (
                event_id INTEGER PRIMARY KEY AUTOINCREMENT,
                event_type TEXT NOT NULL,
                stream_id INTEGER,
                authority TEXT NOT NULL DEFAULT '',
                payload TEXT NOT NULL,
                created_at INTEGER NOT NULL
            )
        """)
        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_stream_events_stream
            ON stream_events(stream_id, event_id)
        """)

        # =====================================================================
        # CLAIM RECEIPTS (idempotency)
        # =====================================================================
        conn.execute("""
            CREATE TABLE IF NOT EXISTS claim_receipts (
                idempotency_key TEXT PRIMARY KEY,
                stream_id INTEGER NOT NULL,
                caller TEXT NOT NULL,
                amount INTEGER NOT NULL,
                claimed_at INTEGER NOT NULL
            )
        """)

        self.plugin.log("StreamDatabase: Tables initialized")

    # =========================================================================
    # STREAMS
    # =========================================================================

    def insert_stream(self, sender: str, recipient: str, recipient_identity_hash: str,
                      recipient_kind: str, total_amount: int, fee_amount: int,
                      rate_per_second: int, start_time: int, end_time: int,
                      message: str, created_at: int) -> int:
        """Append a new ACTIVE stream and return its id."""
        conn = self._get_connection()
        cursor = conn.execute("""
            INSERT INTO streams
            (sender, recipient, recipient_identity_hash, recipient_kind,
             total_amount, claimed_amount, fee_amount, rate_per_second,
             start_time, end_time, last_claim_time, status, message, created_at)
            VALUES (?, ?, ?, ?, ?, 0, ?, ?, ?, ?, ?, 'ACTIVE', ?, ?)
        """, (sender, recipient, recipient_identity_hash, recipient_kind,
              total_amount, fee_amount, rate_per_second,
              start_time, end_time, start_time, message, created_at))
        return cursor.lastrowid

    def get_stream(self, stream_id: int) -> Optional[Dict[str, Any]]:
        """Get a stream row by id."""
        conn = self._get_connection()
        row = conn.execute(
            "SELECT * FROM streams WHERE stream_id = ?",
            (stream_id,)
        ).fetchone()
        return dict(row) if row else None

    def update_stream_claim(self, stream_id: int, claimed_amount: int,
                            last_claim_time: int, status: str) -> bool:
        """Record a claim: new cumulative amount, claim time and status."""
        conn = self._get_connection()
        cursor = conn.execute("""
            UPDATE streams
            SET claimed_amount = ?, last_claim_time = ?, status = ?
            WHERE stream_id = ?
        """, (claimed_amount, last_claim_time, status, stream_id))
        return cursor.rowcount > 0

    def update_stream_status(self, stream_id: int, status: str) -> bool:
        """Set stream status."""
        conn = self._get_connection()
        cursor = conn.execute(
            "UPDATE streams SET status = ? WHERE stream_id = ?",
            (status, stream_id)
        )
        return cursor.rowcount > 0

    def retarget_identity_streams(self, identity_hash: str, old_address: str,
                                  new_address: str) -> int:
        """Point every stream addressed to `identity_hash` at `new_address`."""
        conn = self._get_connection()
        cursor = conn.execute("""
            UPDATE streams SET recipient = ?
            WHERE recipient_identity_hash = ? AND recipient = ?
        """, (new_address, identity_hash, old_address))
        return cursor.rowcount

    def get_stream_ids_by_sender(self, address: str) -> List[int]:
        """Stream ids funded by `address`, oldest first."""
        conn = self._get_connection()
        rows = conn.execute(
            "SELECT stream_id FROM streams WHERE sender = ? ORDER BY stream_id",
            (address,)
        ).fetchall()
        return [row['stream_id'] for row in rows]

    def get_stream_ids_by_recipient(self, address: str) -> List[int]:
        """Stream ids currently payable to `address`, oldest first."""
        conn = self._get_connection()
        rows = conn.execute(
            "SELECT stream_id FROM streams WHERE recipient = ? ORDER BY stream_id",
            (address,)
        ).fetchall()
        return [row['stream_id'] for row in rows]

    def get_stream_ids_by_identity(self, identity_hash: str) -> List[int]:
        """Stream ids addressed to an identity hash, oldest first."""
        conn = self._get_connection()
        rows = conn.execute(
            "SELECT stream_id FROM streams WHERE recipient_identity_hash = ? ORDER BY stream_id",
            (identity_hash,)
        ).fetchall()
        return [row['stream_id'] for row in rows]

    def count_streams(self) -> int:
        """Total streams ever created."""
        conn = self._get_connection()
        row = conn.execute("SELECT COUNT(*) AS n FROM streams").fetchone()
        return row['n']

    def sum_outstanding(self) -> int:
        """Undisbursed escrow owed to open streams."""
        conn = self._get_connection()
        row = conn.execute(f"""
            SELECT COALESCE(SUM(total_amount - claimed_amount), 0) AS outstanding
            FROM streams WHERE status IN ({','.join('?' * len(OPEN_STATUSES))})
        """, OPEN_STATUSES).fetchone()
        return row['outstanding']

    # =========================================================================
    # IDENTITY BINDINGS
    # =========================================================================

    def get_binding(self, identity_hash: str) -> Optional[Dict[str, Any]]:
        """Get the binding for an identity hash."""
        conn = self._get_connection()
        row = conn.execute(
            "SELECT * FROM identity_bindings WHERE identity_hash = ?",
            (identity_hash,)
        ).fetchone()
        return dict(row) if row else None

    def get_identity_for_address(self, address: str) -> Optional[str]:
        """Reverse lookup: identity hash bound to `address`."""
        conn = self._get_connection()
        row = conn.execute(
            "SELECT identity_hash FROM address_identities WHERE address = ?",
            (address,)
        ).fetchone()
        return row['identity_hash'] if row else None

    def insert_binding(self, identity_hash: str, address: str, claimed: bool,
                       now: int) -> None:
        """Insert forward and reverse entries for a new binding."""
        conn = self._get_connection()
        conn.execute("""
            INSERT INTO identity_bindings
            (identity_hash, address, claimed, created_at, claimed_at)
            VALUES (?, ?, ?, ?, ?)
        """, (identity_hash, address, 1 if claimed else 0, now,
              now if claimed else None))
        conn.execute("""
            INSERT OR REPLACE INTO address_identities (address, identity_hash)
            VALUES (?, ?)
        """, (address, identity_hash))

    def replace_binding(self, identity_hash: str, old_address: Optional[str],
                        new_address: str, now: int) -> None:
        """
        Move a binding from `old_address` to `new_address` and mark it claimed.

        The reverse entry for `old_address` is only removed if it still
        points at this identity.
        """
        conn = self._get_connection()
        if old_address:
            conn.execute("""
                DELETE FROM address_identities
                WHERE address = ? AND identity_hash = ?
            """, (old_address, identity_hash))
        conn.execute("""
            INSERT INTO identity_bindings
            (identity_hash, address, claimed, created_at, claimed_at)
            VALUES (?, ?, 1, ?, ?)
            ON CONFLICT(identity_hash) DO UPDATE SET
                address = excluded.address,
                claimed = 1,
                claimed_at = excluded.claimed_at
        """, (identity_hash, new_address, now, now))
        conn.execute("""
            INSERT OR REPLACE INTO address_identities (address, identity_hash)
            VALUES (?, ?)
        """, (new_address, identity_hash))

    # =========================================================================
    # ESCROW POOL
    # =========================================================================

    def get_pool(self) -> Dict[str, Any]:
        """Get the escrow pool row."""
        conn = self._get_connection()
        row = conn.execute("SELECT * FROM escrow_pool WHERE id = 1").fetchone()
        return dict(row) if row else {}

    def adjust_pool(self, balance_delta: int, fee_delta: int = 0) -> None:
        """Apply signed deltas to the pooled balance and collected fees."""
        conn = self._get_connection()
        conn.execute("""
            UPDATE escrow_pool
            SET pooled_balance = pooled_balance + ?,
                fee_collected = fee_collected + ?
            WHERE id = 1
        """, (balance_delta, fee_delta))

    # =========================================================================
    # ACCOUNTS
    # =========================================================================

    def get_balance(self, address: str) -> int:
        """Token balance held by `address` (0 if unknown)."""
        conn = self._get_connection()
        row = conn.execute(
            "SELECT balance FROM accounts WHERE address = ?",
            (address,)
        ).fetchone()
        return row['balance'] if row else 0

    def credit_account(self, address: str, amount: int, now: int) -> None:
        """Add `amount` to an account, creating it if needed."""
        conn = self._get_connection()
        conn.execute("""
            INSERT INTO accounts (address, balance, updated_at)
            VALUES (?, ?, ?)
            ON CONFLICT(address) DO UPDATE SET
                balance = balance + excluded.balance,
                updated_at = excluded.updated_at
        """, (address, amount, now))

    def debit_account(self, address: str, amount: int, now: int) -> bool:
        """
        Subtract `amount` from an account.

        Returns:
            False (and changes nothing) if the balance is insufficient
        """
        conn = self._get_connection()
        cursor = conn.execute("""
            UPDATE accounts SET balance = balance - ?, updated_at = ?
            WHERE address = ? AND balance >= ?
        """, (amount, now, address, amount))
        return cursor.rowcount > 0

    def sum_balances(self) -> int:
        """Total tokens held in accounts."""
        conn = self._get_connection()
        row = conn.execute(
            "SELECT COALESCE(SUM(balance), 0) AS total FROM accounts"
        ).fetchone()
        return row['total']

    # =========================================================================
    # EVENT LOG
    # =========================================================================

    def add_event(self, event_type: str, stream_id: Optional[int],
                  payload: Dict[str, Any], authority: str, created_at: int) -> int:
        """Append an event and return its id."""
        conn = self._get_connection()
        cursor = conn.execute("""
            INSERT INTO stream_events (event_type, stream_id, authority, payload, created_at)
            VALUES (?, ?, ?, ?, ?)
        """, (event_type, stream_id, authority, json.dumps(payload), created_at))
        return cursor.lastrowid

    def get_events(self, stream_id: Optional[int] = None,
                   limit: int = 100) -> List[Dict[str, Any]]:
        """Get events, newest first, optionally for one stream."""
        conn = self._get_connection()
        if stream_id is None:
            rows = conn.execute("""
                SELECT * FROM stream_events ORDER BY event_id DESC LIMIT ?
            """, (limit,)).fetchall()
        else:
            rows = conn.execute("""
                SELECT * FROM stream_events WHERE stream_id = ?
                ORDER BY event_id DESC LIMIT ?
            """, (stream_id, limit)).fetchall()
        events = []
        for row in rows:
            event = dict(row)
            event['payload'] = json.loads(event['payload'])
            events.append(event)
        return events

    # =========================================================================
    # CLAIM RECEIPTS
    # =========================================================================

    def get_claim_receipt(self, idempotency_key: str) -> Optional[Dict[str, Any]]:
        """Get the recorded result of an earlier keyed claim."""
        conn = self._get_connection()
        row = conn.execute(
            "SELECT * FROM claim_receipts WHERE idempotency_key = ?",
            (idempotency_key,)
        ).fetchone()
        return dict(row) if row else None

    def add_claim_receipt(self, idempotency_key: str, stream_id: int, caller: str,
                          amount: int, claimed_at: int) -> None:
        """Record the result of a keyed claim."""
        conn = self._get_connection()
        conn.execute("""
            INSERT INTO claim_receipts (idempotency_key, stream_id, caller, amount, claimed_at)
            VALUES (?, ?, ?, ?, ?)
        """, (idempotency_key, stream_id, caller, amount, claimed_at))

    def close(self):
        """Close this thread's connection."""
        conn = getattr(self._local, 'conn', None)
        if conn is not None:
            conn.close()
            self._local.conn = None
