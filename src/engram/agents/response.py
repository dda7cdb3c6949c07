"""Persist one model response: memory id first, then records plus message completion."""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog

from engram.agents.parser import parse_response
from engram.events.bus import EngramEvent
from engram.ids import make_id
from engram.models.message import StoredRecords

if TYPE_CHECKING:
    from engram.agents.base import WorkerRef
    from engram.session.context import SessionContext
    from engram.store.pending import PendingMessage

_logger = structlog.get_logger("engram.agents.response")


async def ensure_memory_session_id(ctx: SessionContext, worker: WorkerRef) -> str:
    """Mint and persist the memory-session id on the first successful call."""
    if ctx.memory_session_id is None:
        memory_session_id = make_id("mem")
        await worker.session_store.update_memory_session_id(ctx.session_db_id, memory_session_id)
        ctx.memory_session_id = memory_session_id
    return ctx.memory_session_id


async def process_response(
    ctx: SessionContext,
    worker: WorkerRef,
    message: PendingMessage,
    text: str,
    *,
    discovery_tokens: int = 0,
) -> StoredRecords:
    """
    Parse *text* and commit its records together with completing *message*.

    Responses without any record still complete the message.
    """
    parsed = parse_response(text)
    memory_session_id = await ensure_memory_session_id(ctx, worker)
    stored = await worker.record_store.store_results(
        memory_session_id=memory_session_id,
        project=ctx.project,
        observations=parsed.observations,
        summary=parsed.summary,
        message_ids=[message.id],
        prompt_number=message.prompt_number or ctx.prompt_number or None,
        discovery_tokens=discovery_tokens,
    )
    if message.id in ctx.processing_message_ids:
        ctx.processing_message_ids.remove(message.id)

    for obs, record_id in zip(parsed.observations, stored.observation_ids, strict=False):
        worker.event_bus.publish(
            EngramEvent.OBSERVATION_STORED,
            {
                "session_db_id": ctx.session_db_id,
                "memory_session_id": memory_session_id,
                "record_id": record_id,
                "title": obs.title,
            },
        )
    if stored.summary_id is not None:
        worker.event_bus.publish(
            EngramEvent.SUMMARY_STORED,
            {
                "session_db_id": ctx.session_db_id,
                "memory_session_id": memory_session_id,
                "record_id": stored.summary_id,
            },
        )
    _logger.info(
        "response_processed",
        session_db_id=ctx.session_db_id,
        message_id=message.id,
        observations=len(stored.observation_ids),
        summary=stored.summary_id is not None,
        skip_summary_reason=parsed.skip_summary_reason,
    )
    await worker.broadcast_processing_status()
    return stored
