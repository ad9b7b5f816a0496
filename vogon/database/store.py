"""Ordered key/value store on SQLite with transactional scopes.

Keys and values are BLOBs in a single WITHOUT ROWID table; BLOB keys
compare bytewise, so range scans come back in lexicographic key order.

Two scopes are exposed:

    store.view(body)    read-only, consistent snapshot
    store.update(body)  read-write, serialized against other updates

Each scope calls body(txn) with a Txn handle and returns body's result.
The scope commits when body returns and rolls back when it raises; the
exception propagates. A scope opened while another one is active on the
same thread joins the outer transaction instead of starting a new one.

File databases use one connection per thread with WAL enabled so readers
see a snapshot while a writer is active. ":memory:" databases share one
connection guarded by the store lock.
"""

from __future__ import annotations

import logging
import sqlite3
import struct
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import TypeVar

from vogon.errors import CancelledError, StorageError

logger = logging.getLogger(__name__)

T = TypeVar("T")

_SEQUENCE = struct.Struct(">Q")
_SCHEMA = (
    "CREATE TABLE IF NOT EXISTS kv ("
    "  key BLOB PRIMARY KEY,"
    "  value BLOB NOT NULL"
    ") WITHOUT ROWID"
)


def prefix_successor(prefix: bytes) -> bytes | None:
    """Smallest key greater than every key starting with prefix.

    Returns None when no such key exists (prefix is all 0xff bytes).
    """
    trimmed = prefix.rstrip(b"\xff")
    if not trimmed:
        return None
    return trimmed[:-1] + bytes([trimmed[-1] + 1])


def _rollback(conn: sqlite3.Connection) -> None:
    try:
        conn.execute("ROLLBACK")
    except sqlite3.Error as e:
        logger.warning("Rollback failed: %s", e)


class CancellationToken:
    """Cooperative cancellation with an optional deadline.

    Checked between store calls; a cancelled token makes the next call
    raise CancelledError so the enclosing update rolls back.
    """

    def __init__(self, timeout: float | None = None):
        self._event = threading.Event()
        self._deadline = time.monotonic() + timeout if timeout is not None else None

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        return self._deadline is not None and time.monotonic() >= self._deadline

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise CancelledError("Operation cancelled")
        if self._deadline is not None and time.monotonic() >= self._deadline:
            raise CancelledError("Operation deadline exceeded")


class Txn:
    """Handle for one store transaction; valid only inside its scope."""

    def __init__(self, conn: sqlite3.Connection, writable: bool,
                 token: CancellationToken | None = None):
        self._conn = conn
        self.writable = writable
        self.token = token

    def _check(self, write: bool = False) -> None:
        if self.token is not None:
            self.token.raise_if_cancelled()
        if write and not self.writable:
            raise StorageError("Cannot write in a read-only transaction")

    def get(self, key: bytes) -> bytes | None:
        self._check()
        try:
            row = self._conn.execute(
                "SELECT value FROM kv WHERE key = ?", (key,)
            ).fetchone()
        except sqlite3.Error as e:
            raise StorageError(f"Failed to get {key!r}: {e}") from e
        return bytes(row[0]) if row else None

    def has(self, key: bytes) -> bool:
        self._check()
        try:
            row = self._conn.execute(
                "SELECT 1 FROM kv WHERE key = ?", (key,)
            ).fetchone()
        except sqlite3.Error as e:
            raise StorageError(f"Failed to check {key!r}: {e}") from e
        return row is not None

    def put(self, key: bytes, value: bytes) -> None:
        self._check(write=True)
        try:
            self._conn.execute(
                "INSERT INTO kv (key, value) VALUES (?, ?)"
                " ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                (key, value),
            )
        except sqlite3.Error as e:
            raise StorageError(f"Failed to put {key!r}: {e}") from e

    def delete(self, key: bytes) -> None:
        self._check(write=True)
        try:
            self._conn.execute("DELETE FROM kv WHERE key = ?", (key,))
        except sqlite3.Error as e:
            raise StorageError(f"Failed to delete {key!r}: {e}") from e

    def prefix_iter(self, prefix: bytes) -> Iterator[tuple[bytes, bytes]]:
        """Yield (key, value) pairs under prefix in ascending key order.

        Rows are fetched eagerly so callers may write while iterating.
        """
        self._check()
        end = prefix_successor(prefix)
        try:
            if end is None:
                rows = self._conn.execute(
                    "SELECT key, value FROM kv WHERE key >= ? ORDER BY key",
                    (prefix,),
                ).fetchall()
            else:
                rows = self._conn.execute(
                    "SELECT key, value FROM kv WHERE key >= ? AND key < ? ORDER BY key",
                    (prefix, end),
                ).fetchall()
        except sqlite3.Error as e:
            raise StorageError(f"Failed to scan {prefix!r}: {e}") from e
        for key, value in rows:
            self._check()
            yield bytes(key), bytes(value)

    def delete_prefix(self, prefix: bytes) -> int:
        """Delete every key under prefix; returns the number of keys removed."""
        keys = [key for key, _ in self.prefix_iter(prefix)]
        for key in keys:
            self.delete(key)
        return len(keys)

    def next_sequence(self, key: bytes, n: int = 1) -> int:
        """Reserve n consecutive values from the counter at key.

        Returns the first reserved value; the first allocation is 0.
        """
        if n < 1:
            raise ValueError("Sequence bandwidth must be positive")
        current = self.get(key)
        start = _SEQUENCE.unpack(current)[0] if current else 0
        self.put(key, _SEQUENCE.pack(start + n))
        return start


class Store:
    def __init__(self, db_path: str | Path = ":memory:"):
        self.db_path = str(db_path)
        self._memory = self.db_path == ":memory:"
        self._lock = threading.RLock()
        self._local = threading.local()
        self._shared_conn: sqlite3.Connection | None = None
        # (owning thread, connection); closed once the thread has exited
        self._connections: list[tuple[threading.Thread, sqlite3.Connection]] = []
        logger.info("Opening database %s", self.db_path)
        with self._lock:
            self._connect().execute(_SCHEMA)

    def _connect(self) -> sqlite3.Connection:
        if self._memory:
            if self._shared_conn is None:
                self._shared_conn = self._open()
            return self._shared_conn
        conn = getattr(self._local, "conn", None)
        if conn is None:
            conn = self._open()
            self._local.conn = conn
        return conn

    def _open(self) -> sqlite3.Connection:
        try:
            conn = sqlite3.connect(
                self.db_path,
                timeout=30.0,
                isolation_level=None,
                check_same_thread=False,
            )
            if not self._memory:
                conn.execute("PRAGMA journal_mode = WAL")
                conn.execute("PRAGMA busy_timeout = 30000")
        except sqlite3.Error as e:
            raise StorageError(f"Cannot open database {self.db_path}: {e}") from e
        with self._lock:
            self._connections.append((threading.current_thread(), conn))
        return conn

    def _release_dead_connections(self) -> None:
        """Close connections opened by threads that have since exited."""
        with self._lock:
            alive = []
            for thread, conn in self._connections:
                if thread.is_alive():
                    alive.append((thread, conn))
                else:
                    conn.close()
            if len(alive) != len(self._connections):
                logger.debug(
                    "Closed %d connections of finished threads",
                    len(self._connections) - len(alive),
                )
            self._connections = alive

    def close(self):
        logger.info("Closing database %s", self.db_path)
        with self._lock:
            for _, conn in self._connections:
                conn.close()
            self._connections.clear()
            self._shared_conn = None
            self._local = threading.local()

    # ── Scopes ──────────────────────────────────────────────

    @contextmanager
    def _scope(self, writable: bool, token: CancellationToken | None) -> Iterator[Txn]:
        outer: Txn | None = getattr(self._local, "txn", None)
        if outer is not None:
            if writable and not outer.writable:
                raise StorageError("Cannot open an update scope inside a view scope")
            saved = outer.token
            if token is not None:
                outer.token = token
            try:
                yield outer
            finally:
                outer.token = saved
            return

        if token is not None:
            token.raise_if_cancelled()

        if not self._memory:
            self._release_dead_connections()

        # Memory databases share one connection, so readers take the lock too.
        locked = writable or self._memory
        if locked:
            self._lock.acquire()
        try:
            conn = self._connect()
            txn = Txn(conn, writable, token)
            try:
                conn.execute("BEGIN IMMEDIATE" if writable else "BEGIN")
            except sqlite3.Error as e:
                raise StorageError(f"Cannot begin transaction: {e}") from e
            self._local.txn = txn
            try:
                yield txn
            except BaseException:
                _rollback(conn)
                raise
            else:
                try:
                    conn.execute("COMMIT")
                except sqlite3.Error as e:
                    _rollback(conn)
                    raise StorageError(f"Cannot commit transaction: {e}") from e
            finally:
                self._local.txn = None
        finally:
            if locked:
                self._lock.release()

    def view(self, body: Callable[[Txn], T],
             token: CancellationToken | None = None) -> T:
        with self._scope(False, token) as txn:
            return body(txn)

    def update(self, body: Callable[[Txn], T],
               token: CancellationToken | None = None) -> T:
        with self._scope(True, token) as txn:
            return body(txn)
