"""Durable record of live helper processes (``helper_processes``)."""

from __future__ import annotations

import os

import aiosqlite

from engram.store.database import Database, now_ms


class HelperProcessRow:
    """One helper spawned by a worker; removed when the helper call returns."""

    __slots__ = ("command", "pid", "session_db_id", "started_at_epoch", "worker_pid")

    def __init__(
        self,
        pid: int,
        session_db_id: int,
        worker_pid: int,
        command: str,
        started_at_epoch: int,
    ) -> None:
        self.pid = pid
        self.session_db_id = session_db_id
        self.worker_pid = worker_pid
        self.command = command
        self.started_at_epoch = started_at_epoch


def _row_to_helper(row: aiosqlite.Row) -> HelperProcessRow:
    return HelperProcessRow(
        pid=row["pid"],
        session_db_id=row["session_db_id"],
        worker_pid=row["worker_pid"],
        command=row["command"],
        started_at_epoch=row["started_at_epoch"],
    )


class HelperProcessStore:
    """
    Rows survive a worker crash, so the next worker can find helpers the
    dead one left behind. Pids are reused by the OS, so a recorded pid is
    replaced rather than rejected.
    """

    def __init__(self, db: Database) -> None:
        self._db = db

    async def record(
        self,
        pid: int,
        session_db_id: int,
        command: str,
        *,
        worker_pid: int | None = None,
    ) -> None:
        async with self._db.transaction() as conn:
            await conn.execute(
                """
                INSERT OR REPLACE INTO helper_processes
                    (pid, session_db_id, worker_pid, command, started_at_epoch)
                VALUES (?, ?, ?, ?, ?)
                """,
                (pid, session_db_id, worker_pid or os.getpid(), command, now_ms()),
            )

    async def forget(self, pid: int) -> None:
        async with self._db.transaction() as conn:
            await conn.execute("DELETE FROM helper_processes WHERE pid = ?", (pid,))

    async def list_all(self) -> list[HelperProcessRow]:
        conn = self._db.conn()
        async with conn.execute(
            "SELECT * FROM helper_processes ORDER BY started_at_epoch, pid"
        ) as cursor:
            rows = await cursor.fetchall()
        return [_row_to_helper(r) for r in rows]

    async def list_foreign(self) -> list[HelperProcessRow]:
        """Rows recorded by any worker process other than this one."""
        conn = self._db.conn()
        async with conn.execute(
            "SELECT * FROM helper_processes WHERE worker_pid != ? ORDER BY started_at_epoch, pid",
            (os.getpid(),),
        ) as cursor:
            rows = await cursor.fetchall()
        return [_row_to_helper(r) for r in rows]
