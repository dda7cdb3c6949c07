"""Tracks helper OS processes spawned by CLI-backed extraction agents."""

from __future__ import annotations

import asyncio
import os
import signal
from collections.abc import AsyncIterator, Collection
from contextlib import asynccontextmanager
from pathlib import Path
from typing import TYPE_CHECKING

import structlog

if TYPE_CHECKING:
    from engram.store.helpers import HelperProcessStore

_logger = structlog.get_logger("engram.processes")

_PROC = Path("/proc")


def pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but belongs to another user
        return True
    return True


def pid_runs(pid: int, command: str) -> bool:
    """
    Whether *pid* is alive and still runs *command*.

    Compared by basename against every argv entry, since a script helper
    shows up as ``sh /path/to/script``. Without ``/proc`` only liveness is
    checked.
    """
    if not pid_alive(pid):
        return False
    if not command or not _PROC.is_dir():
        return True
    try:
        raw = (_PROC / str(pid) / "cmdline").read_bytes()
    except OSError:
        return False
    argv = [Path(arg.decode(errors="replace")).name for arg in raw.split(b"\0") if arg]
    return command in argv


class ProcessRegistry:
    """
    Map of ``session_db_id → live helper processes``.

    Helpers are short-lived (one per model call) and normally unregister
    themselves when the call returns. Anything still registered for a session
    that left the session registry is an orphan and gets reaped.

    With a ``HelperProcessStore`` every tracked helper is also written to the
    database, so helpers left behind by a crashed worker are found and
    terminated by ``reap_recorded()`` in the next worker.
    """

    def __init__(self, store: HelperProcessStore | None = None) -> None:
        self._processes: dict[int, set[asyncio.subprocess.Process]] = {}
        self._store = store

    def register(self, session_db_id: int, process: asyncio.subprocess.Process) -> None:
        self._processes.setdefault(session_db_id, set()).add(process)
        _logger.debug("helper_registered", session_db_id=session_db_id, pid=process.pid)

    def unregister(self, session_db_id: int, process: asyncio.subprocess.Process) -> None:
        procs = self._processes.get(session_db_id)
        if procs is None:
            return
        procs.discard(process)
        if not procs:
            del self._processes[session_db_id]

    @asynccontextmanager
    async def track(
        self,
        session_db_id: int,
        process: asyncio.subprocess.Process,
        command: str = "",
    ) -> AsyncIterator[asyncio.subprocess.Process]:
        """Register *process* for the duration of the block."""
        self.register(session_db_id, process)
        try:
            if self._store is not None:
                await self._store.record(process.pid, session_db_id, Path(command).name)
            yield process
        finally:
            self.unregister(session_db_id, process)
            if self._store is not None:
                await self._store.forget(process.pid)

    def session_ids(self) -> set[int]:
        return set(self._processes)

    def count(self) -> int:
        return sum(len(p) for p in self._processes.values())

    async def reap(self, active_session_ids: Collection[int], *, grace_s: float = 5.0) -> int:
        """
        Terminate helpers whose session is not in *active_session_ids*.

        Returns:
            Number of processes terminated.
        """
        orphaned = [sid for sid in self._processes if sid not in active_session_ids]
        reaped = 0
        for session_db_id in orphaned:
            procs = self._processes.pop(session_db_id, set())
            for process in procs:
                if await self._terminate(process, grace_s):
                    reaped += 1
                    _logger.warning(
                        "orphan_helper_reaped", session_db_id=session_db_id, pid=process.pid
                    )
        return reaped

    async def reap_recorded(self, *, grace_s: float = 5.0) -> int:
        """
        Terminate helpers recorded by worker processes that are no longer alive.

        Every such row is removed; the helper is only signalled when its pid
        still runs the recorded command.

        Returns:
            Number of processes terminated.
        """
        if self._store is None:
            return 0
        reaped = 0
        for row in await self._store.list_foreign():
            if pid_alive(row.worker_pid):
                continue
            if pid_runs(row.pid, row.command) and await self._terminate_pid(row.pid, grace_s):
                reaped += 1
                _logger.warning(
                    "crashed_worker_helper_reaped",
                    session_db_id=row.session_db_id,
                    pid=row.pid,
                    worker_pid=row.worker_pid,
                    command=row.command,
                )
            await self._store.forget(row.pid)
        return reaped

    async def terminate_all(self, *, grace_s: float = 5.0) -> int:
        """Terminate every tracked helper. Used at shutdown."""
        return await self.reap((), grace_s=grace_s)

    @staticmethod
    async def _terminate(process: asyncio.subprocess.Process, grace_s: float) -> bool:
        if process.returncode is not None:
            return False
        try:
            process.terminate()
        except ProcessLookupError:
            return False
        try:
            await asyncio.wait_for(process.wait(), timeout=grace_s)
        except TimeoutError:
            # Still alive after SIGTERM
            try:
                process.kill()
            except ProcessLookupError:
                return True
            await process.wait()
        return True

    @staticmethod
    async def _terminate_pid(pid: int, grace_s: float) -> bool:
        """SIGTERM then SIGKILL a process this worker did not spawn."""
        try:
            os.kill(pid, signal.SIGTERM)
        except (ProcessLookupError, PermissionError):
            return False
        loop = asyncio.get_running_loop()
        deadline = loop.time() + grace_s
        while loop.time() < deadline:
            if not pid_alive(pid):
                return True
            await asyncio.sleep(0.05)
        try:
            os.kill(pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
        return True
