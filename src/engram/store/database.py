"""SQLite database handle shared by the Engram stores."""

from __future__ import annotations

import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path

import aiosqlite
import structlog

from engram.models.config import StoreConfig
from engram.store.pool import StorePool

# ── Exceptions ─────────────────────────────────────────────────────────────────


class EngramStoreError(Exception):
    """Base class for store errors."""


class StoreNotInitializedError(EngramStoreError):
    """Raised when a store is used before ``Database.initialize()``."""

    def __init__(self) -> None:
        super().__init__("Store is not initialized. Call initialize() first.")


class SessionNotFoundError(EngramStoreError):
    """Raised when a session row does not exist."""

    def __init__(self, session_ref: int | str) -> None:
        super().__init__(f"Session not found: {session_ref!r}")
        self.session_ref = session_ref


class MessageNotFoundError(EngramStoreError):
    """Raised when a pending-message row does not exist."""

    def __init__(self, message_id: int) -> None:
        super().__init__(f"Message not found: {message_id!r}")
        self.message_id = message_id


class ImmutableFieldError(EngramStoreError):
    """Raised when attempting to modify an immutable field."""


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


# ── Database ───────────────────────────────────────────────────────────────────


class Database:
    """
    Owns the schema and hands the shared connection to the individual stores.

    The connection is borrowed from a ``StorePool`` (a private one when none
    is supplied) and released by ``close()``; the pool closes it once its
    last borrower is gone.

    All writes go through ``transaction()``, which holds the pool's per-path
    write lock for the duration of the statement batch and commits or rolls
    back as a unit.
    """

    def __init__(self, config: StoreConfig, pool: StorePool | None = None) -> None:
        self._config = config
        self._db_path = str(Path(config.db_path).expanduser())
        self._pool = pool or StorePool()
        self._conn: aiosqlite.Connection | None = None
        self._logger = structlog.get_logger("engram.store")

    @property
    def db_path(self) -> str:
        return self._db_path

    @property
    def is_initialized(self) -> bool:
        return self._conn is not None

    async def initialize(self) -> None:
        """
        Open (or borrow) the connection and apply the schema idempotently.

        Raises:
            aiosqlite.Error: If the database cannot be opened or the schema fails.
        """
        if self._conn is not None:
            return
        conn = await self._pool.acquire(
            self._db_path,
            wal_mode=self._config.wal_mode,
            connection_timeout=self._config.connection_timeout,
        )
        schema = (Path(__file__).parent / "schema.sql").read_text()
        async with self._pool.write_lock(self._db_path):
            await conn.executescript(schema)
            await conn.commit()
        self._conn = conn
        self._logger.info("store_initialized", db_path=self._db_path)

    async def close(self) -> None:
        """Release the borrowed connection. Idempotent."""
        if self._conn is None:
            return
        self._conn = None
        await self._pool.release(self._db_path)

    def conn(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise StoreNotInitializedError()
        return self._conn

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """
        Serialise a write batch on the shared connection.

        Usage::

            async with db.transaction() as conn:
                await conn.execute("UPDATE ...")
                await conn.execute("INSERT ...")
            # committed here; rolled back if the block raised
        """
        conn = self.conn()
        async with self._pool.write_lock(self._db_path):
            try:
                yield conn
            except BaseException:
                await conn.rollback()
                raise
            await conn.commit()
