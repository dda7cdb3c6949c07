"""Write-once extraction output: ``observations`` and ``session_summaries``."""

from __future__ import annotations

import json
from collections.abc import Sequence
from typing import Any

import structlog

from engram.models.message import ParsedObservation, ParsedSummary, StoredRecords
from engram.store.database import Database, now_ms
from engram.store.pending import PendingMessageStore


class RecordStore:
    """
    Inserts observations and summaries together with completing their source messages.

    Records reference ``sdk_sessions.memory_session_id``; the id must be
    persisted before ``store_results()`` is called.
    """

    def __init__(self, db: Database, pending: PendingMessageStore) -> None:
        self._db = db
        self._pending = pending
        self._logger = structlog.get_logger("engram.store.records")

    async def store_results(
        self,
        *,
        memory_session_id: str,
        project: str,
        observations: Sequence[ParsedObservation],
        summary: ParsedSummary | None,
        message_ids: Sequence[int],
        prompt_number: int | None = None,
        discovery_tokens: int = 0,
    ) -> StoredRecords:
        """
        Atomically insert records and mark the source messages ``processed``.

        When every source message is already past ``processing`` (a duplicate
        delivery) nothing is inserted and an empty result is returned.
        """
        now = now_ms()
        result = StoredRecords()
        async with self._db.transaction() as conn:
            if message_ids:
                completed = await self._pending.complete_in(conn, message_ids)
                if completed == 0:
                    self._logger.info(
                        "duplicate_delivery_skipped",
                        memory_session_id=memory_session_id,
                        message_ids=list(message_ids),
                    )
                    return result
            for obs in observations:
                cursor = await conn.execute(
                    """
                    INSERT INTO observations
                        (memory_session_id, project, type, title, subtitle, narrative,
                         facts, concepts, files_read, files_modified,
                         prompt_number, discovery_tokens, created_at_epoch)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        memory_session_id,
                        project,
                        obs.type,
                        obs.title,
                        obs.subtitle,
                        obs.narrative,
                        json.dumps(obs.facts),
                        json.dumps(obs.concepts),
                        json.dumps(obs.files_read),
                        json.dumps(obs.files_modified),
                        prompt_number,
                        discovery_tokens,
                        now,
                    ),
                )
                result.observation_ids.append(int(cursor.lastrowid or 0))
            if summary is not None:
                cursor = await conn.execute(
                    """
                    INSERT INTO session_summaries
                        (memory_session_id, project, request, investigated, learned,
                         completed, next_steps, notes, files_read, files_modified,
                         prompt_number, discovery_tokens, created_at_epoch)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        memory_session_id,
                        project,
                        summary.request,
                        summary.investigated,
                        summary.learned,
                        summary.completed,
                        summary.next_steps,
                        summary.notes,
                        json.dumps(summary.files_read),
                        json.dumps(summary.files_modified),
                        prompt_number,
                        discovery_tokens,
                        now,
                    ),
                )
                result.summary_id = int(cursor.lastrowid or 0)
            result.completed_message_ids = list(message_ids)
        return result

    async def list_observations(self, memory_session_id: str) -> list[dict[str, Any]]:
        """Observations of a session, oldest first, JSON columns decoded."""
        return await self._list("observations", memory_session_id)

    async def list_summaries(self, memory_session_id: str) -> list[dict[str, Any]]:
        """Summaries of a session, oldest first, JSON columns decoded."""
        return await self._list("session_summaries", memory_session_id)

    async def _list(self, table: str, memory_session_id: str) -> list[dict[str, Any]]:
        conn = self._db.conn()
        async with conn.execute(
            f"SELECT * FROM {table} WHERE memory_session_id = ? ORDER BY id ASC",
            (memory_session_id,),
        ) as cursor:
            rows = await cursor.fetchall()
        records = []
        for row in rows:
            record = dict(row)
            for key in ("facts", "concepts", "files_read", "files_modified"):
                if key in record:
                    record[key] = json.loads(record[key])
            records.append(record)
        return records
