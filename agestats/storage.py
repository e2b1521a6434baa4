"""
storage.py

SQLite-backed ciphertext store. Rows are opaque base64 strings; nothing here
ever sees a plaintext age.

Tables:
    encrypted_ages       (user_id PK, encrypted_age, created_at)  append-only
    encrypted_aggregates (threshold PK, encrypted_sum, record_count, updated_at)
                         running sums for the incremental stats mode
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from contextlib import contextmanager
from typing import Callable, Dict, Iterator, List, Optional, Tuple

from agestats.errors import DuplicateRecord, StorageError

logger = logging.getLogger(__name__)

# threshold -> (encoded encrypted sum, number of stored rows it covers)
Aggregates = Dict[int, Tuple[str, int]]

_SCHEMA = """
CREATE TABLE IF NOT EXISTS encrypted_ages (
    user_id       TEXT PRIMARY KEY,
    encrypted_age TEXT NOT NULL,
    created_at    TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
);
CREATE TABLE IF NOT EXISTS encrypted_aggregates (
    threshold     INTEGER PRIMARY KEY,
    encrypted_sum TEXT NOT NULL,
    record_count  INTEGER NOT NULL,
    updated_at    TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
);
"""


class CiphertextStore:
    """
    Thread-safe wrapper around one SQLite connection.

    Writes are serialized by a lock and each runs in its own transaction;
    `path=":memory:"` gives a private in-process store (used by tests).
    """

    def __init__(self, path: str = ":memory:") -> None:
        self.path = path
        self._lock = threading.Lock()
        try:
            self._conn = sqlite3.connect(path, check_same_thread=False, isolation_level=None)
            self._conn.executescript(_SCHEMA)
        except sqlite3.Error as e:
            raise StorageError(f"cannot open ciphertext store {path}: {e}") from e
        logger.info("Ciphertext store ready at %s", path)

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Cursor]:
        with self._lock:
            cur = self._conn.cursor()
            try:
                cur.execute("BEGIN IMMEDIATE")
                yield cur
                cur.execute("COMMIT")
            except BaseException:
                if self._conn.in_transaction:
                    cur.execute("ROLLBACK")
                raise
            finally:
                cur.close()

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------
    def insert(self, user_id: str, encrypted_age: str) -> None:
        self.insert_with_aggregates(user_id, encrypted_age, update=None)

    def insert_with_aggregates(
        self,
        user_id: str,
        encrypted_age: str,
        update: Optional[Callable[[Aggregates], Aggregates]],
    ) -> None:
        """
        Insert one record and, if `update` is given, replace the running
        aggregates with update(current) in the same transaction.
        """
        try:
            with self._transaction() as cur:
                cur.execute(
                    "INSERT INTO encrypted_ages (user_id, encrypted_age) VALUES (?, ?)",
                    (user_id, encrypted_age),
                )
                if update is not None:
                    self._write_aggregates(cur, update(self._read_aggregates(cur)))
        except sqlite3.IntegrityError as e:
            raise DuplicateRecord(f"user id {user_id!r} already submitted") from e
        except sqlite3.Error as e:
            raise StorageError(f"insert failed: {e}") from e

    def count(self) -> int:
        try:
            with self._lock:
                row = self._conn.execute("SELECT COUNT(*) FROM encrypted_ages").fetchone()
        except sqlite3.Error as e:
            raise StorageError(f"count failed: {e}") from e
        return int(row[0]) if row else 0

    def records(self) -> List[Tuple[str, str]]:
        """All (user_id, encrypted_age) rows in insertion order."""
        return self.snapshot()[1]

    def snapshot(self) -> Tuple[int, List[Tuple[str, str]]]:
        """Count and rows read under one lock, so they always agree."""
        try:
            with self._lock:
                rows = self._conn.execute(
                    "SELECT user_id, encrypted_age FROM encrypted_ages ORDER BY rowid"
                ).fetchall()
        except sqlite3.Error as e:
            raise StorageError(f"read failed: {e}") from e
        return len(rows), [(str(uid), str(blob)) for uid, blob in rows]

    # ------------------------------------------------------------------
    # Running aggregates
    # ------------------------------------------------------------------
    def aggregates(self) -> Tuple[int, Aggregates]:
        """Current record count and running aggregates, read consistently."""
        try:
            with self._lock:
                total = self._conn.execute("SELECT COUNT(*) FROM encrypted_ages").fetchone()[0]
                cur = self._conn.cursor()
                try:
                    current = self._read_aggregates(cur)
                finally:
                    cur.close()
        except sqlite3.Error as e:
            raise StorageError(f"read failed: {e}") from e
        return int(total), current

    def rebuild_aggregates(self, compute: Callable[[List[Tuple[str, str]]], Aggregates]) -> Aggregates:
        """Recompute every running aggregate from the stored rows, atomically."""
        try:
            with self._transaction() as cur:
                rows = cur.execute(
                    "SELECT user_id, encrypted_age FROM encrypted_ages ORDER BY rowid"
                ).fetchall()
                fresh = compute([(str(uid), str(blob)) for uid, blob in rows])
                cur.execute("DELETE FROM encrypted_aggregates")
                self._write_aggregates(cur, fresh)
        except sqlite3.Error as e:
            raise StorageError(f"aggregate rebuild failed: {e}") from e
        return fresh

    @staticmethod
    def _read_aggregates(cur: sqlite3.Cursor) -> Aggregates:
        rows = cur.execute(
            "SELECT threshold, encrypted_sum, record_count FROM encrypted_aggregates"
        ).fetchall()
        return {int(t): (str(s), int(n)) for t, s, n in rows}

    @staticmethod
    def _write_aggregates(cur: sqlite3.Cursor, aggregates: Aggregates) -> None:
        cur.executemany(
            "INSERT INTO encrypted_aggregates (threshold, encrypted_sum, record_count) "
            "VALUES (?, ?, ?) "
            "ON CONFLICT(threshold) DO UPDATE SET "
            "encrypted_sum = excluded.encrypted_sum, "
            "record_count = excluded.record_count, "
            "updated_at = CURRENT_TIMESTAMP",
            [(t, s, n) for t, (s, n) in aggregates.items()],
        )

    def close(self) -> None:
        with self._lock:
            self._conn.close()
