"""
Reference-counted SQLite connection pool shared by the Engram stores.

The worker, the CLI and tests may each open a ``Database`` on the same file.
They all borrow one ``aiosqlite.Connection`` per resolved path, and the
connection is closed when the last borrower releases it.

Usage::

    pool = StorePool()
    db = Database(StoreConfig(db_path="/tmp/engram.db"), pool=pool)
    await db.initialize()        # borrows (and opens) the connection
    ...
    await db.close()             # releases; closes once nobody borrows it
    await pool.close_all()       # force-close anything left at shutdown
"""

from __future__ import annotations

import asyncio
import time
from pathlib import Path

import aiosqlite
import structlog

_logger = structlog.get_logger("engram.store.pool")


def _resolve(db_path: str) -> str:
    return str(Path(db_path).expanduser().resolve())


class _Entry:
    """One open connection plus its write lock and borrower count."""

    __slots__ = ("borrowers", "conn", "opened_at", "write_lock")

    def __init__(self, conn: aiosqlite.Connection) -> None:
        self.conn = conn
        self.write_lock = asyncio.Lock()
        self.borrowers = 0
        self.opened_at = time.monotonic()


class StorePool:
    """
    Process-scoped map of ``resolved path → shared connection``.

    Only safe to use from a single asyncio event loop.

    Every write transaction runs under the path's write lock: the connection
    is shared between consumer tasks, so an unguarded ``commit()`` from one
    task would commit another task's half-finished batch.
    """

    def __init__(self) -> None:
        self._entries: dict[str, _Entry] = {}
        self._open_lock = asyncio.Lock()

    async def acquire(
        self,
        db_path: str,
        *,
        wal_mode: bool = True,
        connection_timeout: float = 30.0,
    ) -> aiosqlite.Connection:
        """
        Borrow the connection for *db_path*, opening it on first use.

        Every successful call must be paired with ``release()``.
        """
        resolved = _resolve(db_path)
        async with self._open_lock:
            entry = self._entries.get(resolved)
            if entry is None:
                entry = _Entry(await self._open(resolved, wal_mode, connection_timeout))
                self._entries[resolved] = entry
                _logger.debug("pool_connection_opened", db_path=resolved)
            entry.borrowers += 1
            return entry.conn

    async def release(self, db_path: str) -> None:
        """Return a borrowed connection; the last release closes it."""
        resolved = _resolve(db_path)
        entry = self._entries.get(resolved)
        if entry is None:
            return
        entry.borrowers -= 1
        if entry.borrowers <= 0:
            await self._close(resolved)

    def write_lock(self, db_path: str) -> asyncio.Lock:
        """
        Raises:
            KeyError: If no connection is open for *db_path*.
        """
        return self._entries[_resolve(db_path)].write_lock

    def is_open(self, db_path: str) -> bool:
        return _resolve(db_path) in self._entries

    def borrowers(self, db_path: str) -> int:
        entry = self._entries.get(_resolve(db_path))
        return entry.borrowers if entry is not None else 0

    async def close_all(self) -> None:
        """Close every connection regardless of outstanding borrowers."""
        for resolved in list(self._entries):
            await self._close(resolved)

    # ── Internals ──────────────────────────────────────────────────────────────

    @staticmethod
    async def _open(resolved: str, wal_mode: bool, timeout: float) -> aiosqlite.Connection:
        Path(resolved).parent.mkdir(parents=True, exist_ok=True)
        conn = await aiosqlite.connect(resolved, timeout=timeout)
        try:
            conn.row_factory = aiosqlite.Row
            if wal_mode:
                await conn.execute("PRAGMA journal_mode=WAL")
            await conn.execute("PRAGMA foreign_keys=ON")
            await conn.execute("PRAGMA synchronous=NORMAL")
        except Exception:
            await conn.close()
            raise
        return conn

    async def _close(self, resolved: str) -> None:
        entry = self._entries.pop(resolved, None)
        if entry is None:
            return
        await entry.conn.close()
        _logger.debug(
            "pool_connection_closed",
            db_path=resolved,
            open_for_s=round(time.monotonic() - entry.opened_at, 3),
        )
