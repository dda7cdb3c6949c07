"""
Exclusive owner lock for a queue database.

Only one worker may own a database's queue: startup recovery demotes every
``processing`` row, which is only safe when no other process holds them.
The lock is an ``fcntl.flock`` on ``<db_path>.lock`` and the holder writes its
pid into the file so a refused caller can say who owns the queue.
"""

from __future__ import annotations

import fcntl
import os
from pathlib import Path
from typing import IO

import structlog

_logger = structlog.get_logger("engram.store.lock")


def lock_path_for(db_path: str) -> Path:
    path = Path(db_path).expanduser()
    return path.with_name(path.name + ".lock")


class WorkerLockedError(Exception):
    """Raised when another process already owns the queue database."""

    def __init__(self, lock_path: Path, holder_pid: int | None) -> None:
        owner = f"pid {holder_pid}" if holder_pid is not None else "another process"
        super().__init__(f"Queue database is owned by {owner} (lock: {lock_path})")
        self.lock_path = lock_path
        self.holder_pid = holder_pid


class WorkerLock:
    """
    Non-blocking exclusive lock on a database's owner file.

    Usage::

        lock = WorkerLock("~/.engram/engram.db")
        lock.acquire()          # raises WorkerLockedError when held elsewhere
        try:
            ...
        finally:
            lock.release()
    """

    def __init__(self, db_path: str) -> None:
        self.path = lock_path_for(db_path)
        self._file: IO[str] | None = None

    @property
    def held(self) -> bool:
        return self._file is not None

    def acquire(self) -> None:
        """
        Raises:
            WorkerLockedError: If another holder has the lock.
        """
        if self._file is not None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        lock_file = self.path.open("a+")
        try:
            fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            holder = self._read_pid(lock_file)
            lock_file.close()
            raise WorkerLockedError(self.path, holder) from None
        lock_file.seek(0)
        lock_file.truncate()
        lock_file.write(str(os.getpid()))
        lock_file.flush()
        self._file = lock_file
        _logger.debug("worker_lock_acquired", lock_path=str(self.path), pid=os.getpid())

    def release(self) -> None:
        if self._file is None:
            return
        lock_file, self._file = self._file, None
        lock_file.seek(0)
        lock_file.truncate()
        fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)
        lock_file.close()
        _logger.debug("worker_lock_released", lock_path=str(self.path))

    def is_locked(self) -> bool:
        """Check whether some holder (including this one) owns the lock."""
        if self._file is not None:
            return True
        if not self.path.exists():
            return False
        with self.path.open("a+") as check:
            try:
                fcntl.flock(check.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
            except BlockingIOError:
                return True
            fcntl.flock(check.fileno(), fcntl.LOCK_UN)
        return False

    @staticmethod
    def _read_pid(lock_file: IO[str]) -> int | None:
        lock_file.seek(0)
        text = lock_file.read().strip()
        return int(text) if text.isdigit() else None
