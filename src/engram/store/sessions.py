"""Persistent session rows (``sdk_sessions``)."""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any

import aiosqlite
import structlog

from engram.models.message import SessionStatus
from engram.store.database import (
    Database,
    ImmutableFieldError,
    SessionNotFoundError,
    now_ms,
)


class SessionRow:
    """Thin data class for session rows (not Pydantic; avoids validation on reads)."""

    __slots__ = (
        "completed_at_epoch",
        "content_session_id",
        "id",
        "memory_session_id",
        "project",
        "prompt_counter",
        "started_at_epoch",
        "status",
        "user_prompt",
    )

    def __init__(
        self,
        id: int,
        content_session_id: str,
        memory_session_id: str | None,
        project: str,
        user_prompt: str | None,
        prompt_counter: int,
        status: SessionStatus,
        started_at_epoch: int,
        completed_at_epoch: int | None,
    ) -> None:
        self.id = id
        self.content_session_id = content_session_id
        self.memory_session_id = memory_session_id
        self.project = project
        self.user_prompt = user_prompt
        self.prompt_counter = prompt_counter
        self.status = status
        self.started_at_epoch = started_at_epoch
        self.completed_at_epoch = completed_at_epoch


def _row_to_session(row: aiosqlite.Row) -> SessionRow:
    return SessionRow(
        id=row["id"],
        content_session_id=row["content_session_id"],
        memory_session_id=row["memory_session_id"],
        project=row["project"],
        user_prompt=row["user_prompt"],
        prompt_counter=row["prompt_counter"],
        status=row["status"],
        started_at_epoch=row["started_at_epoch"],
        completed_at_epoch=row["completed_at_epoch"],
    )


class SessionStore:
    """
    CRUD over ``sdk_sessions``.

    ``content_session_id`` is unique and supplied by the producer.
    ``memory_session_id`` is minted by the first successful extraction and is
    immutable once set.
    """

    def __init__(self, db: Database) -> None:
        self._db = db
        self._logger = structlog.get_logger("engram.store.sessions")

    async def create_or_get(
        self,
        content_session_id: str,
        *,
        project: str = "",
        user_prompt: str | None = None,
    ) -> SessionRow:
        """
        Return the session row for *content_session_id*, inserting it if needed.

        An existing row keeps its project; a missing ``user_prompt`` is filled
        in when one is supplied.
        """
        async with self._db.transaction() as conn:
            await conn.execute(
                """
                INSERT OR IGNORE INTO sdk_sessions
                    (content_session_id, project, user_prompt, prompt_counter,
                     status, started_at_epoch)
                VALUES (?, ?, ?, 0, 'active', ?)
                """,
                (content_session_id, project, user_prompt, now_ms()),
            )
            if user_prompt is not None:
                await conn.execute(
                    """
                    UPDATE sdk_sessions SET user_prompt = ?
                    WHERE content_session_id = ? AND user_prompt IS NULL
                    """,
                    (user_prompt, content_session_id),
                )
        return await self.get_by_content_id(content_session_id)

    async def get(self, session_db_id: int) -> SessionRow:
        """
        Raises:
            SessionNotFoundError: If no session with this id exists.
        """
        conn = self._db.conn()
        async with conn.execute(
            "SELECT * FROM sdk_sessions WHERE id = ?", (session_db_id,)
        ) as cursor:
            row = await cursor.fetchone()
        if row is None:
            raise SessionNotFoundError(session_db_id)
        return _row_to_session(row)

    async def get_by_content_id(self, content_session_id: str) -> SessionRow:
        """
        Raises:
            SessionNotFoundError: If no session with this content id exists.
        """
        conn = self._db.conn()
        async with conn.execute(
            "SELECT * FROM sdk_sessions WHERE content_session_id = ?", (content_session_id,)
        ) as cursor:
            row = await cursor.fetchone()
        if row is None:
            raise SessionNotFoundError(content_session_id)
        return _row_to_session(row)

    async def increment_prompt_counter(self, session_db_id: int) -> int:
        """Bump the prompt counter and return its new value."""
        async with self._db.transaction() as conn:
            async with conn.execute(
                """
                UPDATE sdk_sessions SET prompt_counter = prompt_counter + 1
                WHERE id = ?
                RETURNING prompt_counter
                """,
                (session_db_id,),
            ) as cursor:
                rows = await cursor.fetchall()
        if not rows:
            raise SessionNotFoundError(session_db_id)
        return int(rows[0]["prompt_counter"])

    async def update_memory_session_id(self, session_db_id: int, memory_session_id: str) -> None:
        """
        Assign the memory-session id.

        Re-assigning the same value is a no-op.

        Raises:
            SessionNotFoundError: If no session with this id exists.
            ImmutableFieldError: If a different memory-session id is already set.
        """
        async with self._db.transaction() as conn:
            async with conn.execute(
                "SELECT memory_session_id FROM sdk_sessions WHERE id = ?", (session_db_id,)
            ) as cursor:
                row = await cursor.fetchone()
            if row is None:
                raise SessionNotFoundError(session_db_id)
            current = row["memory_session_id"]
            if current == memory_session_id:
                return
            if current is not None:
                raise ImmutableFieldError(
                    f"memory_session_id of session {session_db_id} is already {current!r}"
                )
            await conn.execute(
                "UPDATE sdk_sessions SET memory_session_id = ? WHERE id = ?",
                (memory_session_id, session_db_id),
            )
        self._logger.info(
            "memory_session_id_assigned",
            session_db_id=session_db_id,
            memory_session_id=memory_session_id,
        )

    async def mark_completed(self, session_db_id: int) -> bool:
        """Move an ``active`` session to ``completed``. Returns False if it was not active."""
        async with self._db.transaction() as conn:
            cursor = await conn.execute(
                """
                UPDATE sdk_sessions SET status = 'completed', completed_at_epoch = ?
                WHERE id = ? AND status = 'active'
                """,
                (now_ms(), session_db_id),
            )
            return cursor.rowcount == 1

    async def fail_stale(
        self,
        older_than_ms: int,
        exclude_session_ids: Iterable[int] = (),
    ) -> list[int]:
        """
        Mark ``active`` sessions started more than *older_than_ms* ago as ``failed``.

        Returns:
            The ids of the sessions that were failed.
        """
        excluded = list(exclude_session_ids)
        params: list[Any] = [now_ms(), now_ms() - older_than_ms]
        extra = ""
        if excluded:
            extra = f" AND id NOT IN ({','.join('?' for _ in excluded)})"
            params.extend(excluded)
        async with self._db.transaction() as conn:
            async with conn.execute(
                f"""
                UPDATE sdk_sessions SET status = 'failed', completed_at_epoch = ?
                WHERE status = 'active' AND started_at_epoch < ?{extra}
                RETURNING id
                """,
                params,
            ) as cursor:
                rows = await cursor.fetchall()
        return sorted(int(r["id"]) for r in rows)

    async def status_counts(self) -> dict[str, int]:
        """Session counts keyed by status."""
        conn = self._db.conn()
        counts = {"active": 0, "completed": 0, "failed": 0}
        async with conn.execute(
            "SELECT status, COUNT(*) AS n FROM sdk_sessions GROUP BY status"
        ) as cursor:
            rows = await cursor.fetchall()
        for row in rows:
            counts[row["status"]] = int(row["n"])
        return counts
