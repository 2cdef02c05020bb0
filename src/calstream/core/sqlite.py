"""
SQLite change log backend.

One table, ``change_log``, with an AUTOINCREMENT primary key so ids are
strictly increasing and never reused, even after every row has been deleted.
Payloads are stored as msgpack blobs captured at append time.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import aiosqlite

from calstream._util.clock import SYSTEM_CLOCK, Clock
from calstream._util.serialization import freeze_payload, unpack
from calstream.core.store import ChangeLogStore, check_limit
from calstream.core.types import ChangeRecord, LogStats, RetentionPolicy, validate_event_type
from calstream.exceptions import (
    ChangeLogReadError,
    ChangeLogWriteError,
    StoreNotReadyError,
)

logger = logging.getLogger(__name__)


_CREATE_TABLE_SQL = """
    CREATE TABLE IF NOT EXISTS change_log (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        event_type TEXT NOT NULL,
        payload BLOB NOT NULL,
        created_at REAL NOT NULL
    )
"""

_CREATE_INDEX_SQL = "CREATE INDEX IF NOT EXISTS idx_change_log_created ON change_log(created_at)"

# A file, so ids keep growing across restarts; ":memory:" is for tests only.
DEFAULT_DB_PATH = "calstream.db"


@dataclass
class SQLiteConfig:
    """Configuration for the SQLite change log."""

    db_path: str | Path = DEFAULT_DB_PATH
    busy_timeout_ms: int = 5000

    @classmethod
    def from_env(cls) -> SQLiteConfig:
        """Create config from environment variables."""
        db_path = os.environ.get("CALSTREAM_SQLITE_PATH") or DEFAULT_DB_PATH
        busy_timeout = os.environ.get("CALSTREAM_SQLITE_BUSY_TIMEOUT_MS", "5000")
        try:
            busy_timeout_ms = int(busy_timeout)
        except ValueError as exc:
            raise ValueError(f"CALSTREAM_SQLITE_BUSY_TIMEOUT_MS must be an int, got {busy_timeout!r}") from exc
        return cls(db_path=db_path, busy_timeout_ms=busy_timeout_ms)


class SQLiteChangeLog(ChangeLogStore):
    """Change log persisted in SQLite through aiosqlite.

    Pass ``connection`` to share a handle owned by the CRUD layer; the store then
    never closes it.
    """

    name = "sqlite"

    def __init__(
        self,
        config: SQLiteConfig | None = None,
        *,
        connection: aiosqlite.Connection | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.config = config or SQLiteConfig()
        self.conn: aiosqlite.Connection | None = connection
        self._owns_connection = connection is None
        self._clock = clock or SYSTEM_CLOCK
        self._initialized = False

    @classmethod
    async def create(
        cls,
        config: SQLiteConfig | None = None,
        *,
        connection: aiosqlite.Connection | None = None,
        clock: Clock | None = None,
    ) -> SQLiteChangeLog:
        """Create and open a SQLite change log."""
        if config is None and connection is None:
            config = SQLiteConfig.from_env()
        store = cls(config, connection=connection, clock=clock)
        await store.open()
        return store

    async def open(self) -> None:
        if self._initialized:
            return
        try:
            if self.conn is None:
                self.conn = await aiosqlite.connect(str(self.config.db_path))
                await self.conn.execute(f"PRAGMA busy_timeout = {int(self.config.busy_timeout_ms)}")
            await self.conn.execute(_CREATE_TABLE_SQL)
            await self.conn.execute(_CREATE_INDEX_SQL)
            await self.conn.commit()
        except Exception as exc:
            raise ChangeLogWriteError("initialize", exc) from exc
        self._initialized = True
        logger.info("SQLite change log initialized: %s", self.config.db_path)

    async def close(self) -> None:
        if self.conn is not None and self._owns_connection:
            await self.conn.close()
            self.conn = None
        self._initialized = False

    async def _rollback(self, conn: aiosqlite.Connection) -> None:
        # A failed statement leaves the implicit transaction open.
        try:
            await conn.rollback()
        except Exception:
            logger.exception("rollback after failed change log write failed")

    def _require_conn(self) -> aiosqlite.Connection:
        if self.conn is None or not self._initialized:
            raise StoreNotReadyError(str(self.config.db_path))
        return self.conn

    async def append(self, event_type: str, payload: Any, *, created_at: float | None = None) -> int:
        event_type = validate_event_type(event_type)
        frozen = freeze_payload(payload)
        conn = self._require_conn()
        timestamp = self._clock.now() if created_at is None else created_at
        try:
            cursor = await conn.execute(
                "INSERT INTO change_log (event_type, payload, created_at) VALUES (?, ?, ?)",
                (event_type, frozen, timestamp),
            )
            record_id = cursor.lastrowid
            await conn.commit()
        except Exception as exc:
            await self._rollback(conn)
            raise ChangeLogWriteError("append", exc) from exc
        logger.debug("appended change log record id=%s type=%s", record_id, event_type)
        return int(record_id)

    async def read_since(self, last_id: int, limit: int) -> list[ChangeRecord]:
        check_limit(limit)
        conn = self._require_conn()
        try:
            async with conn.execute(
                "SELECT id, event_type, payload, created_at FROM change_log "
                "WHERE id > ? ORDER BY id ASC LIMIT ?",
                (int(last_id), limit),
            ) as cursor:
                rows = await cursor.fetchall()
        except Exception as exc:
            raise ChangeLogReadError(last_id, exc) from exc
        return [
            ChangeRecord(id=row[0], event_type=row[1], payload=unpack(row[2]), created_at=row[3])
            for row in rows
        ]

    async def trim(self, policy: RetentionPolicy, *, now: float | None = None) -> int:
        if policy.is_noop:
            return 0
        conn = self._require_conn()
        deleted = 0
        try:
            if policy.max_age is not None:
                threshold = (self._clock.now() if now is None else now) - policy.max_age
                cursor = await conn.execute("DELETE FROM change_log WHERE created_at < ?", (threshold,))
                deleted += max(cursor.rowcount, 0)
            if policy.max_records is not None:
                # NULL threshold (fewer rows than the limit) deletes nothing.
                cursor = await conn.execute(
                    "DELETE FROM change_log WHERE id <= "
                    "(SELECT id FROM change_log ORDER BY id DESC LIMIT 1 OFFSET ?)",
                    (policy.max_records,),
                )
                deleted += max(cursor.rowcount, 0)
            await conn.commit()
        except Exception as exc:
            await self._rollback(conn)
            raise ChangeLogWriteError("trim", exc) from exc
        if deleted:
            logger.info("trimmed %s change log records", deleted)
        return deleted

    async def latest_id(self) -> int:
        conn = self._require_conn()
        try:
            # sqlite_sequence survives deletes, so this never goes backwards.
            async with conn.execute("SELECT seq FROM sqlite_sequence WHERE name = 'change_log'") as cursor:
                row = await cursor.fetchone()
        except Exception as exc:
            raise ChangeLogReadError(0, exc) from exc
        return int(row[0]) if row and row[0] is not None else 0

    async def stats(self) -> LogStats:
        conn = self._require_conn()
        try:
            async with conn.execute("SELECT COUNT(*), MIN(created_at), MAX(created_at) FROM change_log") as cursor:
                total, oldest, newest = await cursor.fetchone()
            async with conn.execute(
                "SELECT event_type, COUNT(*) FROM change_log GROUP BY event_type ORDER BY COUNT(*) DESC"
            ) as cursor:
                by_type = {row[0]: row[1] for row in await cursor.fetchall()}
        except Exception as exc:
            raise ChangeLogReadError(0, exc) from exc
        return LogStats(
            total=total,
            latest_id=await self.latest_id(),
            oldest=oldest,
            newest=newest,
            by_type=by_type,
        )

    async def count_older_than(self, seconds: float, *, now: float | None = None) -> int:
        """Number of records older than ``seconds``; used by the maintenance report."""
        conn = self._require_conn()
        threshold = (self._clock.now() if now is None else now) - seconds
        async with conn.execute("SELECT COUNT(*) FROM change_log WHERE created_at < ?", (threshold,)) as cursor:
            row = await cursor.fetchone()
        return int(row[0])

    async def clear(self) -> int:
        conn = self._require_conn()
        try:
            cursor = await conn.execute("DELETE FROM change_log")
            await conn.commit()
        except Exception as exc:
            await self._rollback(conn)
            raise ChangeLogWriteError("clear", exc) from exc
        deleted = max(cursor.rowcount, 0)
        logger.info("cleared all change log records: %s", deleted)
        return deleted
