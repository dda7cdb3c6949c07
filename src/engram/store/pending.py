"""Durable per-session work queue backed by the ``pending_messages`` table."""

from __future__ import annotations

import json
from collections.abc import Iterable, Sequence
from typing import Any

import aiosqlite
import structlog

from engram.models.message import MessageKind, MessagePayload
from engram.store.database import Database, MessageNotFoundError, now_ms

_PAYLOAD_COLUMNS = ("tool_name", "tool_input", "tool_response", "cwd", "last_assistant_message")


class PendingMessage:
    """Thin data class for ``pending_messages`` rows."""

    __slots__ = (
        "completed_at_epoch",
        "content_session_id",
        "created_at_epoch",
        "cwd",
        "failed_at_epoch",
        "id",
        "last_assistant_message",
        "message_type",
        "prompt_number",
        "retry_count",
        "session_db_id",
        "started_processing_at_epoch",
        "status",
        "tool_input",
        "tool_name",
        "tool_response",
    )

    def __init__(
        self,
        id: int,
        session_db_id: int,
        content_session_id: str,
        message_type: MessageKind,
        status: str,
        created_at_epoch: int,
        *,
        tool_name: str | None = None,
        tool_input: str | None = None,
        tool_response: str | None = None,
        cwd: str | None = None,
        last_assistant_message: str | None = None,
        prompt_number: int | None = None,
        retry_count: int = 0,
        started_processing_at_epoch: int | None = None,
        completed_at_epoch: int | None = None,
        failed_at_epoch: int | None = None,
    ) -> None:
        self.id = id
        self.session_db_id = session_db_id
        self.content_session_id = content_session_id
        self.message_type = message_type
        self.status = status
        self.created_at_epoch = created_at_epoch
        self.tool_name = tool_name
        self.tool_input = tool_input
        self.tool_response = tool_response
        self.cwd = cwd
        self.last_assistant_message = last_assistant_message
        self.prompt_number = prompt_number
        self.retry_count = retry_count
        self.started_processing_at_epoch = started_processing_at_epoch
        self.completed_at_epoch = completed_at_epoch
        self.failed_at_epoch = failed_at_epoch

    def __repr__(self) -> str:
        return (
            f"PendingMessage(id={self.id}, session_db_id={self.session_db_id}, "
            f"type={self.message_type!r}, status={self.status!r}, retries={self.retry_count})"
        )


def _encode(value: Any) -> str | None:
    if value is None or isinstance(value, str):
        return value
    return json.dumps(value, default=str)


def _row_to_message(row: aiosqlite.Row) -> PendingMessage:
    return PendingMessage(
        id=row["id"],
        session_db_id=row["session_db_id"],
        content_session_id=row["content_session_id"],
        message_type=row["message_type"],
        status=row["status"],
        created_at_epoch=row["created_at_epoch"],
        tool_name=row["tool_name"],
        tool_input=row["tool_input"],
        tool_response=row["tool_response"],
        cwd=row["cwd"],
        last_assistant_message=row["last_assistant_message"],
        prompt_number=row["prompt_number"],
        retry_count=row["retry_count"],
        started_processing_at_epoch=row["started_processing_at_epoch"],
        completed_at_epoch=row["completed_at_epoch"],
        failed_at_epoch=row["failed_at_epoch"],
    )


def _placeholders(count: int) -> str:
    return ",".join("?" for _ in range(count))


class PendingMessageStore:
    """
    Queue operations over ``pending_messages``.

    Status transitions are ``pending → processing → {processed | failed}``.
    The only backward edge is ``processing → pending`` through
    ``reset_stale_processing()``, which the recovery pass owns.

    At most one row per session is ``processing`` at any instant; the claim
    statement refuses to claim while the session already holds one.
    """

    def __init__(self, db: Database) -> None:
        self._db = db
        self._logger = structlog.get_logger("engram.store.pending")

    # ── Producer side ──────────────────────────────────────────────────────────

    async def enqueue(
        self,
        session_db_id: int,
        content_session_id: str,
        kind: MessageKind,
        payload: MessagePayload,
    ) -> int:
        """
        Append a message in ``pending`` status.

        Returns:
            The new message id.
        """
        now = now_ms()
        async with self._db.transaction() as conn:
            cursor = await conn.execute(
                """
                INSERT INTO pending_messages
                    (session_db_id, content_session_id, message_type,
                     tool_name, tool_input, tool_response, cwd,
                     last_assistant_message, prompt_number,
                     status, retry_count, created_at_epoch)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 'pending', 0, ?)
                """,
                (
                    session_db_id,
                    content_session_id,
                    kind,
                    payload.tool_name,
                    _encode(payload.tool_input),
                    _encode(payload.tool_response),
                    payload.cwd,
                    payload.last_assistant_message,
                    payload.prompt_number,
                    now,
                ),
            )
            message_id = int(cursor.lastrowid or 0)
        self._logger.debug(
            "message_enqueued",
            message_id=message_id,
            session_db_id=session_db_id,
            kind=kind,
        )
        return message_id

    # ── Consumer side ──────────────────────────────────────────────────────────

    async def claim_next(self, session_db_id: int) -> PendingMessage | None:
        """
        Atomically move the oldest ``pending`` message of a session to ``processing``.

        Returns None when the queue is empty or when the session already has
        a message in ``processing``.
        """
        async with self._db.transaction() as conn:
            async with conn.execute(
                """
                UPDATE pending_messages
                SET status = 'processing', started_processing_at_epoch = ?
                WHERE id = (
                    SELECT id FROM pending_messages
                    WHERE session_db_id = ? AND status = 'pending'
                    ORDER BY id ASC
                    LIMIT 1
                )
                AND NOT EXISTS (
                    SELECT 1 FROM pending_messages
                    WHERE session_db_id = ? AND status = 'processing'
                )
                RETURNING *
                """,
                (now_ms(), session_db_id, session_db_id),
            ) as cursor:
                rows = await cursor.fetchall()
        if not rows:
            return None
        message = _row_to_message(rows[0])
        self._logger.debug("message_claimed", message_id=message.id, session_db_id=session_db_id)
        return message

    async def complete(self, message_id: int) -> bool:
        """
        Mark a ``processing`` message ``processed`` and clear its payload.

        Idempotent: returns False (and changes nothing) when the message is
        not currently ``processing``.
        """
        async with self._db.transaction() as conn:
            return await self.complete_in(conn, [message_id]) == 1

    async def complete_in(self, conn: aiosqlite.Connection, message_ids: Sequence[int]) -> int:
        """Complete messages inside a caller-held transaction. Returns rows changed."""
        if not message_ids:
            return 0
        cleared = ", ".join(f"{col} = NULL" for col in _PAYLOAD_COLUMNS)
        cursor = await conn.execute(
            f"""
            UPDATE pending_messages
            SET status = 'processed', completed_at_epoch = ?, {cleared}
            WHERE id IN ({_placeholders(len(message_ids))}) AND status = 'processing'
            """,
            (now_ms(), *message_ids),
        )
        return cursor.rowcount

    async def fail(self, message_id: int) -> int:
        """
        Mark a message ``failed`` and bump its retry count.

        Messages already in a terminal status are left untouched.

        Returns:
            The message's retry count after the call.

        Raises:
            MessageNotFoundError: If the message does not exist.
        """
        async with self._db.transaction() as conn:
            async with conn.execute(
                """
                UPDATE pending_messages
                SET status = 'failed', retry_count = retry_count + 1, failed_at_epoch = ?
                WHERE id = ? AND status IN ('pending', 'processing')
                RETURNING retry_count
                """,
                (now_ms(), message_id),
            ) as cursor:
                rows = await cursor.fetchall()
        if not rows:
            return (await self.get(message_id)).retry_count
        retry_count = int(rows[0]["retry_count"])
        self._logger.info("message_failed", message_id=message_id, retry_count=retry_count)
        return retry_count

    async def record_retry(self, message_id: int) -> int:
        """
        Count one failed delivery of a message the consumer still holds.

        The message stays ``processing`` so the same consumer re-delivers it
        before claiming anything newer.

        Returns:
            The new retry count.

        Raises:
            MessageNotFoundError: If the message does not exist.
        """
        async with self._db.transaction() as conn:
            async with conn.execute(
                """
                UPDATE pending_messages
                SET retry_count = retry_count + 1
                WHERE id = ?
                RETURNING retry_count
                """,
                (message_id,),
            ) as cursor:
                rows = await cursor.fetchall()
        if not rows:
            raise MessageNotFoundError(message_id)
        return int(rows[0]["retry_count"])

    async def get(self, message_id: int) -> PendingMessage:
        """
        Raises:
            MessageNotFoundError: If the message does not exist.
        """
        conn = self._db.conn()
        async with conn.execute(
            "SELECT * FROM pending_messages WHERE id = ?", (message_id,)
        ) as cursor:
            row = await cursor.fetchone()
        if row is None:
            raise MessageNotFoundError(message_id)
        return _row_to_message(row)

    async def list_for_session(
        self, session_db_id: int, *, statuses: Iterable[str] | None = None
    ) -> list[PendingMessage]:
        """Return a session's messages oldest-first, optionally filtered by status."""
        conn = self._db.conn()
        params: list[Any] = [session_db_id]
        where = "session_db_id = ?"
        if statuses is not None:
            status_list = list(statuses)
            where += f" AND status IN ({_placeholders(len(status_list))})"
            params.extend(status_list)
        async with conn.execute(
            f"SELECT * FROM pending_messages WHERE {where} ORDER BY id ASC", params
        ) as cursor:
            rows = await cursor.fetchall()
        return [_row_to_message(r) for r in rows]

    # ── Recovery side ──────────────────────────────────────────────────────────

    async def reset_stale_processing(
        self,
        older_than_ms: int,
        exclude_session_ids: Iterable[int] = (),
    ) -> int:
        """
        Demote ``processing`` rows back to ``pending``.

        Args:
            older_than_ms: Only rows whose processing started more than this
                many milliseconds ago are reset. 0 resets every row.
            exclude_session_ids: Sessions whose rows must be left alone,
                normally those with a live context in this process.

        Returns:
            Number of rows reset.
        """
        excluded = list(exclude_session_ids)
        conditions = ["status = 'processing'"]
        params: list[Any] = []
        if older_than_ms > 0:
            conditions.append("started_processing_at_epoch < ?")
            params.append(now_ms() - older_than_ms)
        if excluded:
            conditions.append(f"session_db_id NOT IN ({_placeholders(len(excluded))})")
            params.extend(excluded)
        async with self._db.transaction() as conn:
            cursor = await conn.execute(
                f"""
                UPDATE pending_messages
                SET status = 'pending', started_processing_at_epoch = NULL
                WHERE {' AND '.join(conditions)}
                """,
                params,
            )
            count = cursor.rowcount
        if count:
            self._logger.info("stale_processing_reset", count=count, older_than_ms=older_than_ms)
        return count

    async def mark_all_abandoned(self, session_db_id: int) -> int:
        """Fail every remaining ``pending``/``processing`` message of a session."""
        async with self._db.transaction() as conn:
            cursor = await conn.execute(
                """
                UPDATE pending_messages
                SET status = 'failed', failed_at_epoch = ?
                WHERE session_db_id = ? AND status IN ('pending', 'processing')
                """,
                (now_ms(), session_db_id),
            )
            count = cursor.rowcount
        self._logger.warning("messages_abandoned", session_db_id=session_db_id, count=count)
        return count

    async def fail_pending_for_sessions(self, session_db_ids: Sequence[int]) -> int:
        """Fail the still-``pending`` messages of the given sessions."""
        if not session_db_ids:
            return 0
        async with self._db.transaction() as conn:
            cursor = await conn.execute(
                f"""
                UPDATE pending_messages
                SET status = 'failed', failed_at_epoch = ?
                WHERE status = 'pending'
                  AND session_db_id IN ({_placeholders(len(session_db_ids))})
                """,
                (now_ms(), *session_db_ids),
            )
            return cursor.rowcount

    # ── Read-only queries ──────────────────────────────────────────────────────

    async def pending_count(self, session_db_id: int) -> int:
        """Messages of a session still owed work (``pending`` + ``processing``)."""
        conn = self._db.conn()
        async with conn.execute(
            """
            SELECT COUNT(*) AS n FROM pending_messages
            WHERE session_db_id = ? AND status IN ('pending', 'processing')
            """,
            (session_db_id,),
        ) as cursor:
            row = await cursor.fetchone()
        return int(row["n"]) if row else 0

    async def sessions_with_pending_work(self) -> list[int]:
        """Session ids owning at least one ``pending`` or ``processing`` row, oldest first."""
        conn = self._db.conn()
        async with conn.execute(
            """
            SELECT session_db_id FROM pending_messages
            WHERE status IN ('pending', 'processing')
            GROUP BY session_db_id
            ORDER BY MIN(id) ASC
            """
        ) as cursor:
            rows = await cursor.fetchall()
        return [int(r["session_db_id"]) for r in rows]

    async def total_queue_depth(self, session_db_ids: Iterable[int] | None = None) -> int:
        """Total ``pending`` + ``processing`` rows, optionally limited to some sessions."""
        conn = self._db.conn()
        params: list[Any] = []
        where = "status IN ('pending', 'processing')"
        if session_db_ids is not None:
            ids = list(session_db_ids)
            if not ids:
                return 0
            where += f" AND session_db_id IN ({_placeholders(len(ids))})"
            params.extend(ids)
        async with conn.execute(
            f"SELECT COUNT(*) AS n FROM pending_messages WHERE {where}", params
        ) as cursor:
            row = await cursor.fetchone()
        return int(row["n"]) if row else 0

    async def status_counts(self) -> dict[str, int]:
        """Row counts keyed by status (every status present, zero when absent)."""
        conn = self._db.conn()
        counts = {"pending": 0, "processing": 0, "processed": 0, "failed": 0}
        async with conn.execute(
            "SELECT status, COUNT(*) AS n FROM pending_messages GROUP BY status"
        ) as cursor:
            rows = await cursor.fetchall()
        for row in rows:
            counts[row["status"]] = int(row["n"])
        return counts
