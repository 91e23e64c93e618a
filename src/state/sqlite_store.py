from __future__ import annotations

import contextlib
import json
import logging
import os
import sqlite3
import threading
import time
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional
from uuid import uuid4

from .models import MutationAction, QueuedMutation, Record, SyncStatus


logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1
STATUS_ID = "lastSync"

# Statements applied to reach each schema version, in order.
_MIGRATIONS: Dict[int, List[str]] = {
    1: [
        """
        CREATE TABLE IF NOT EXISTS records (
            id          INTEGER PRIMARY KEY,
            username    TEXT NOT NULL,
            password    TEXT NOT NULL DEFAULT '',
            first_name  TEXT NOT NULL DEFAULT '',
            last_name   TEXT NOT NULL DEFAULT '',
            email       TEXT NOT NULL DEFAULT ''
        )
        """,
        "CREATE UNIQUE INDEX IF NOT EXISTS records_by_username ON records (username)",
        """
        CREATE TABLE IF NOT EXISTS sync_status (
            id             TEXT PRIMARY KEY,
            last_sync      INTEGER NOT NULL,
            total_records  INTEGER NOT NULL,
            is_online      INTEGER NOT NULL
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS mutation_queue (
            seq        INTEGER PRIMARY KEY AUTOINCREMENT,
            key        TEXT NOT NULL UNIQUE,
            action     TEXT NOT NULL,
            payload    TEXT NOT NULL,
            timestamp  INTEGER NOT NULL
        )
        """,
    ],
}


class StorageError(RuntimeError):
    """Base error for the local store."""


class NotInitialized(StorageError):
    """An operation was attempted before `init()` (or after `close()`)."""


class ConstraintViolation(StorageError):
    """A write broke a uniqueness constraint (e.g. duplicate username)."""


class StorageUnavailable(StorageError):
    """The database file could not be opened or created."""


def _now_ms() -> int:
    return int(time.time() * 1000)


class SqliteStore:
    """
    SQLite-backed mirror of remote records plus sync metadata and the offline
    mutation queue.

    Usage
    - `init()` opens (or creates) the database and upgrades its schema. It is
      safe to call more than once.
    - Every public method runs in its own transaction; a failing call leaves
      the database as it was before the call.
    - One connection is shared across threads and serialized with a lock, so
      `":memory:"` works for tests.

    Schema versions are tracked with `PRAGMA user_version`; `_MIGRATIONS`
    holds the statements needed to reach each version.
    """

    def __init__(
        self,
        path: os.PathLike[str] | str = ":memory:",
        *,
        clock: Callable[[], int] = _now_ms,
    ) -> None:
        self._path = str(path)
        self._clock = clock
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()
        self._drained_through: Optional[int] = None

    @property
    def path(self) -> str:
        return self._path

    @property
    def initialized(self) -> bool:
        return self._conn is not None

    # -------- Lifecycle --------
    def init(self, *, online: bool = False) -> None:
        """Open the database, apply pending migrations, seed the status row.

        The status singleton is written with `(0, online)` only when it does
        not exist yet; an existing status survives re-initialization.
        Raises StorageUnavailable when the file cannot be opened.
        """
        with self._lock:
            if self._conn is not None:
                return
            try:
                if self._path != ":memory:":
                    Path(self._path).parent.mkdir(parents=True, exist_ok=True)
                conn = sqlite3.connect(self._path, check_same_thread=False)
            except (OSError, sqlite3.Error) as exc:
                raise StorageUnavailable(f"Cannot open database at {self._path}: {exc}") from exc

            try:
                conn.row_factory = sqlite3.Row
                self._upgrade(conn)
                with conn:
                    conn.execute(
                        "INSERT OR IGNORE INTO sync_status (id, last_sync, total_records, is_online) "
                        "VALUES (?, ?, 0, ?)",
                        (STATUS_ID, self._clock(), int(online)),
                    )
            except sqlite3.Error as exc:
                conn.close()
                raise StorageUnavailable(f"Cannot initialize database at {self._path}: {exc}") from exc

            self._conn = conn
            logger.debug("Opened store at %s (schema v%d)", self._path, SCHEMA_VERSION)

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    def schema_version(self) -> int:
        with self._transaction() as conn:
            return int(conn.execute("PRAGMA user_version").fetchone()[0])

    @staticmethod
    def _upgrade(conn: sqlite3.Connection) -> None:
        current = int(conn.execute("PRAGMA user_version").fetchone()[0])
        for version in range(current + 1, SCHEMA_VERSION + 1):
            logger.info("Upgrading store schema to v%d", version)
            with conn:
                for stmt in _MIGRATIONS[version]:
                    conn.execute(stmt)
                conn.execute(f"PRAGMA user_version = {version:d}")

    @contextlib.contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            conn = self._conn
            if conn is None:
                raise NotInitialized("Database not initialized")
            try:
                with conn:
                    yield conn
            except sqlite3.IntegrityError as exc:
                raise ConstraintViolation(str(exc)) from exc
            except sqlite3.Error as exc:
                raise StorageError(str(exc)) from exc

    # -------- Records --------
    def save_records(self, records: Iterable[Record]) -> int:
        """Upsert records by id in a single transaction; returns rows written.

        Raises ConstraintViolation (and writes nothing) when a username is
        already held by a different id.
        """
        rows = [
            (r.id, r.username, r.password, r.first_name, r.last_name, r.email)
            for r in records
        ]
        with self._transaction() as conn:
            conn.executemany(
                """
                INSERT INTO records (id, username, password, first_name, last_name, email)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    username = excluded.username,
                    password = excluded.password,
                    first_name = excluded.first_name,
                    last_name = excluded.last_name,
                    email = excluded.email
                """,
                rows,
            )
        return len(rows)

    def get_all(self) -> List[Record]:
        with self._transaction() as conn:
            rows = conn.execute("SELECT * FROM records ORDER BY id").fetchall()
        return [self._row_to_record(r) for r in rows]

    def get_by_id(self, record_id: int) -> Optional[Record]:
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM records WHERE id = ?", (record_id,)).fetchone()
        return self._row_to_record(row) if row else None

    def get_by_username(self, username: str) -> Optional[Record]:
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM records WHERE username = ?", (username,)).fetchone()
        return self._row_to_record(row) if row else None

    def count(self) -> int:
        with self._transaction() as conn:
            return int(conn.execute("SELECT COUNT(*) FROM records").fetchone()[0])

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> Record:
        return Record(
            id=row["id"],
            username=row["username"],
            password=row["password"],
            first_name=row["first_name"],
            last_name=row["last_name"],
            email=row["email"],
        )

    # -------- Sync status --------
    def update_sync_status(self, total_records: int, online: bool) -> SyncStatus:
        status = SyncStatus(last_sync=self._clock(), total_records=total_records, is_online=online)
        with self._transaction() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO sync_status (id, last_sync, total_records, is_online) "
                "VALUES (?, ?, ?, ?)",
                (STATUS_ID, status.last_sync, status.total_records, int(status.is_online)),
            )
        return status

    def get_sync_status(self) -> Optional[SyncStatus]:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT last_sync, total_records, is_online FROM sync_status WHERE id = ?",
                (STATUS_ID,),
            ).fetchone()
        if row is None:
            return None
        return SyncStatus(
            last_sync=row["last_sync"],
            total_records=row["total_records"],
            is_online=bool(row["is_online"]),
        )

    # -------- Offline mutation queue --------
    def enqueue_mutation(self, action: MutationAction | str, payload: Dict[str, Any]) -> QueuedMutation:
        action = MutationAction(action)
        ts = self._clock()
        key = f"{action.value}-{ts}-{uuid4().hex[:8]}"
        body = json.dumps(payload, separators=(",", ":"), sort_keys=True)
        with self._transaction() as conn:
            cur = conn.execute(
                "INSERT INTO mutation_queue (key, action, payload, timestamp) VALUES (?, ?, ?, ?)",
                (key, action.value, body, ts),
            )
            seq = cur.lastrowid
        logger.info("Queued offline %s mutation %s", action.value, key)
        return QueuedMutation(key=key, action=action, payload=payload, timestamp=ts, seq=seq)

    def drain_queue(self) -> List[QueuedMutation]:
        """Return every queued mutation in enqueue order without removing any.

        Remembers the last entry returned so that `clear_queue()` removes
        exactly this generation.
        """
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT seq, key, action, payload, timestamp FROM mutation_queue ORDER BY seq"
            ).fetchall()
            items = [
                QueuedMutation(
                    key=r["key"],
                    action=MutationAction(r["action"]),
                    payload=json.loads(r["payload"]),
                    timestamp=r["timestamp"],
                    seq=r["seq"],
                )
                for r in rows
            ]
            self._drained_through = items[-1].seq if items else 0
        return items

    def clear_queue(self) -> int:
        """Remove the drained generation; returns the number of entries removed.

        Without a preceding `drain_queue()` the whole queue is cleared.
        """
        with self._transaction() as conn:
            if self._drained_through is None:
                cur = conn.execute("DELETE FROM mutation_queue")
            else:
                cur = conn.execute("DELETE FROM mutation_queue WHERE seq <= ?", (self._drained_through,))
            self._drained_through = None
            return cur.rowcount

    def queue_length(self) -> int:
        with self._transaction() as conn:
            return int(conn.execute("SELECT COUNT(*) FROM mutation_queue").fetchone()[0])


__all__ = [
    "SCHEMA_VERSION",
    "ConstraintViolation",
    "NotInitialized",
    "SqliteStore",
    "StorageError",
    "StorageUnavailable",
]
