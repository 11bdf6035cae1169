"""
SQLite persistence for the order event broker.

One database file holds the event log, the delivery-state table, the
subscription table and the dispatcher's tail cursor, so a fan-out and its
cursor advance commit in a single transaction.

Design decisions:
- WAL journal so readers never block the writer
- Two connections: a writer guarded by an asyncio lock (one transaction at a
  time) and a reader for queries and log tailing
- synchronous=FULL by default: a commit returns only after fsync
- sqlite3 errors are re-raised as StorageError so callers see one taxonomy
"""

import asyncio
import logging
import sqlite3
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Iterable, Optional

import aiosqlite

from shared.errors import StorageError

logger = logging.getLogger("storage")

_SCHEMA = """
CREATE TABLE IF NOT EXISTS events (
    position        INTEGER PRIMARY KEY AUTOINCREMENT,
    event_id        TEXT    NOT NULL UNIQUE,
    order_id        TEXT    NOT NULL,
    kind            TEXT    NOT NULL,
    sequence        INTEGER NOT NULL,
    payload         BLOB    NOT NULL,
    occurred_at     REAL    NOT NULL,
    UNIQUE (order_id, sequence)
);

CREATE TABLE IF NOT EXISTS subscriptions (
    handler_id      TEXT    PRIMARY KEY,
    event_kinds     TEXT    NOT NULL,
    max_attempts    INTEGER NOT NULL,
    backoff_base    REAL    NOT NULL,
    backoff_cap     REAL    NOT NULL,
    registered_at   REAL    NOT NULL
);

CREATE TABLE IF NOT EXISTS deliveries (
    event_id        TEXT    NOT NULL,
    handler_id      TEXT    NOT NULL,
    order_id        TEXT    NOT NULL,
    sequence        INTEGER NOT NULL,
    state           TEXT    NOT NULL DEFAULT 'Pending',
    attempts        INTEGER NOT NULL DEFAULT 0,
    next_attempt_at REAL    NOT NULL,
    last_error      TEXT,
    idempotency_key TEXT,
    in_flight_since REAL,
    updated_at      REAL    NOT NULL,
    PRIMARY KEY (event_id, handler_id)
);

CREATE INDEX IF NOT EXISTS idx_deliveries_ready ON deliveries(state, next_attempt_at);
CREATE INDEX IF NOT EXISTS idx_deliveries_lane ON deliveries(order_id, handler_id, sequence);

CREATE TABLE IF NOT EXISTS cursors (
    name            TEXT    PRIMARY KEY,
    position        INTEGER NOT NULL
);
"""


class Database:
    """
    Connection pair for the broker's SQLite file.

    Example:
        db = Database(Path("data/order_broker.db"))
        await db.open()
        async with db.transaction() as conn:
            await conn.execute("INSERT ...", params)
        rows = await db.fetchall("SELECT ...")
        await db.close()
    """

    def __init__(
        self,
        path: Path,
        busy_timeout: int = 5000,
        synchronous: str = "FULL",
    ) -> None:
        self.path = Path(path)
        self._busy_timeout = busy_timeout
        self._synchronous = synchronous
        self._writer: Optional[aiosqlite.Connection] = None
        self._reader: Optional[aiosqlite.Connection] = None
        self._write_lock = asyncio.Lock()

    @property
    def is_open(self) -> bool:
        return self._writer is not None

    async def open(self) -> None:
        """Open both connections and create the schema if needed."""
        if self._writer is not None:
            return
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._writer = await self._connect()
            await self._writer.execute("PRAGMA journal_mode=WAL")
            await self._writer.executescript(_SCHEMA)
            self._reader = await self._connect()
            await self._reader.execute("PRAGMA query_only=ON")
        except (sqlite3.Error, OSError) as e:
            await self.close()
            raise StorageError(f"Cannot open database {self.path}: {e}") from e
        logger.info(f"Opened database {self.path}")

    async def _connect(self) -> aiosqlite.Connection:
        conn = await aiosqlite.connect(str(self.path), isolation_level=None)
        conn.row_factory = aiosqlite.Row
        await conn.execute(f"PRAGMA busy_timeout={int(self._busy_timeout)}")
        await conn.execute(f"PRAGMA synchronous={self._synchronous}")
        return conn

    async def close(self) -> None:
        """Close both connections. Safe to call more than once."""
        for conn in (self._reader, self._writer):
            if conn is not None:
                await conn.close()
        self._reader = None
        self._writer = None

    def _require(self, conn: Optional[aiosqlite.Connection]) -> aiosqlite.Connection:
        if conn is None:
            raise StorageError("Database is not open")
        return conn

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """
        Run a write transaction (BEGIN IMMEDIATE ... COMMIT).

        Rolls back on any exception, including cancellation. sqlite3 errors
        raised inside the block surface as StorageError unless the block
        handles them itself.
        """
        conn = self._require(self._writer)
        async with self._write_lock:
            try:
                await conn.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as e:
                raise StorageError(f"Cannot begin transaction: {e}") from e
            try:
                yield conn
            except sqlite3.Error as e:
                await self._rollback(conn)
                raise StorageError(str(e)) from e
            except BaseException:
                await self._rollback(conn)
                raise
            try:
                await conn.execute("COMMIT")
            except sqlite3.Error as e:
                await self._rollback(conn)
                raise StorageError(f"Commit failed: {e}") from e

    async def _rollback(self, conn: aiosqlite.Connection) -> None:
        try:
            await conn.execute("ROLLBACK")
        except sqlite3.Error as e:
            logger.error(f"Rollback failed on {self.path}: {e}")

    async def fetchall(self, sql: str, params: Iterable[Any] = ()) -> list[aiosqlite.Row]:
        """Run a read query on the reader connection."""
        conn = self._require(self._reader)
        try:
            cursor = await conn.execute(sql, tuple(params))
            rows = await cursor.fetchall()
            await cursor.close()
            return list(rows)
        except sqlite3.Error as e:
            raise StorageError(str(e)) from e

    async def fetchone(self, sql: str, params: Iterable[Any] = ()) -> Optional[aiosqlite.Row]:
        rows = await self.fetchall(sql, params)
        return rows[0] if rows else None
