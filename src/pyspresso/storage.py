"""Durable on-device queue of pending outbound records.

The dispatcher worker is the only writer; nothing here is shared across
threads.  :class:`SqliteMessageStore` is the default implementation, other
backends only need to satisfy :class:`MessageStore`.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import time
from enum import StrEnum
from pathlib import Path
from typing import Any, Protocol

from pyspresso.exceptions import SpressoStorageError
from pyspresso.models import QueuedBatch

_logger = logging.getLogger(__name__)


class Table(StrEnum):
    EVENTS = "events"
    PEOPLE = "people"


class MessageStore(Protocol):
    """Append-only per-table store consumed by the dispatcher."""

    def open(self) -> None:
        ...

    def append(self, entry: dict[str, Any], table: Table) -> int:
        """Persist *entry* and return the table's new depth."""
        ...

    def read_batch(self, table: Table) -> QueuedBatch | None:
        ...

    def delete_up_to(self, last_id: int, table: Table) -> None:
        ...

    def delete_all(self, table: Table) -> None:
        ...

    def purge_older_than(self, timestamp_ms: int, table: Table) -> None:
        ...

    def count(self, table: Table) -> int:
        ...

    def close(self) -> None:
        ...


class SqliteMessageStore:
    """SQLite-backed :class:`MessageStore`.

    One table per :class:`Table` member with columns ``id`` (monotonic
    rowid), ``data`` (the JSON record) and ``created_at`` (epoch ms).
    Every mutation commits before returning.
    """

    def __init__(self, path: Path | str, *, batch_limit: int = 50) -> None:
        self._path = path
        self._batch_limit = batch_limit
        self._conn: sqlite3.Connection | None = None

    @property
    def is_open(self) -> bool:
        return self._conn is not None

    def open(self) -> None:
        if self._conn is not None:
            return
        if isinstance(self._path, Path):
            self._path.parent.mkdir(parents=True, exist_ok=True)
        try:
            conn = sqlite3.connect(str(self._path), check_same_thread=False)
            with conn:
                for table in Table:
                    conn.execute(
                        f"CREATE TABLE IF NOT EXISTS {table.value} ("
                        "id INTEGER PRIMARY KEY AUTOINCREMENT, "
                        "data TEXT NOT NULL, "
                        "created_at INTEGER NOT NULL)"
                    )
                    conn.execute(
                        f"CREATE INDEX IF NOT EXISTS {table.value}_time_idx ON {table.value} (created_at)"
                    )
        except sqlite3.Error as exc:
            raise SpressoStorageError(f"Cannot open queue database {self._path}: {exc}") from exc
        self._conn = conn
        _logger.debug("Opened queue database %s", self._path)

    def _require_conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise SpressoStorageError("Queue database is not open")
        return self._conn

    def append(self, entry: dict[str, Any], table: Table) -> int:
        conn = self._require_conn()
        data = json.dumps(entry, separators=(",", ":"))
        now_ms = int(time.time() * 1000)
        with conn:
            conn.execute(
                f"INSERT INTO {table.value} (data, created_at) VALUES (?, ?)",
                (data, now_ms),
            )
        return self.count(table)

    def count(self, table: Table) -> int:
        conn = self._require_conn()
        row = conn.execute(f"SELECT COUNT(*) FROM {table.value}").fetchone()
        return int(row[0])

    def read_batch(self, table: Table) -> QueuedBatch | None:
        """Oldest rows first, at most ``batch_limit`` of them, as one JSON array."""
        conn = self._require_conn()
        rows = conn.execute(
            f"SELECT id, data FROM {table.value} ORDER BY id ASC LIMIT ?",
            (self._batch_limit,),
        ).fetchall()
        if not rows:
            return None

        records: list[str] = []
        for row_id, data in rows:
            try:
                json.loads(data)
            except json.JSONDecodeError:
                # Still covered by last_id, so it is dropped with the batch.
                _logger.error("Skipping unreadable queued record id=%s in %s", row_id, table.value)
                continue
            records.append(data)

        payload = "[" + ",".join(records) + "]"
        return QueuedBatch(last_id=int(rows[-1][0]), payload=payload, count=len(records))

    def delete_up_to(self, last_id: int, table: Table) -> None:
        conn = self._require_conn()
        with conn:
            conn.execute(f"DELETE FROM {table.value} WHERE id <= ?", (last_id,))

    def delete_all(self, table: Table) -> None:
        conn = self._require_conn()
        with conn:
            conn.execute(f"DELETE FROM {table.value}")

    def purge_older_than(self, timestamp_ms: int, table: Table) -> None:
        conn = self._require_conn()
        with conn:
            cursor = conn.execute(f"DELETE FROM {table.value} WHERE created_at <= ?", (timestamp_ms,))
        if cursor.rowcount:
            _logger.debug("Purged %d expired records from %s", cursor.rowcount, table.value)

    def close(self) -> None:
        conn = self._conn
        self._conn = None
        if conn is not None:
            conn.close()
