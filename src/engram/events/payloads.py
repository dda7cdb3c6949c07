"""Typed payload definitions for each EngramEvent.

Usage example::

    from engram.events.bus import EventBus, EngramEvent
    from engram.events.payloads import ProcessingStatusPayload

    def on_status(event: EngramEvent, payload: ProcessingStatusPayload) -> None:
        if not payload["is_processing"]:
            print("idle")

    bus.subscribe(EngramEvent.PROCESSING_STATUS, on_status)  # type: ignore[arg-type]
"""

from __future__ import annotations

from typing import NotRequired, TypedDict

# ── Aggregate status ──────────────────────────────────────────────────────────


class ProcessingStatusPayload(TypedDict):
    """Payload for :attr:`EngramEvent.PROCESSING_STATUS`."""

    is_processing: bool
    """True while any session has queued or in-flight work."""
    queue_depth: int
    """Total ``pending`` + ``processing`` messages across live sessions."""
    active_sessions: int
    """Number of contexts currently in the registry."""


# ── Session lifecycle ─────────────────────────────────────────────────────────


class SessionEventPayload(TypedDict):
    """Payload for the ``session.*`` events."""

    session_db_id: int
    content_session_id: str
    reason: NotRequired[str]
    """Why the session left the registry (``completed``, ``abandoned``, ``stale``, ``shutdown``)."""


# ── Processor lifecycle ───────────────────────────────────────────────────────


class ProcessorEventPayload(TypedDict):
    """Payload for :attr:`EngramEvent.PROCESSOR_STARTED` / ``PROCESSOR_STOPPED``."""

    session_db_id: int
    agent: str
    source: NotRequired[str]
    """What started the processor (``enqueue``, ``complete``, ``recovery``, ``restart``)."""
    state: NotRequired[str]
    """Terminal :class:`~engram.session.context.ProcessorState` value on stop."""
    restarts: NotRequired[int]
    """Restarts so far for this context, reported on stop."""
    error: NotRequired[str]


class FallbackPayload(TypedDict):
    """Payload for :attr:`EngramEvent.FALLBACK_TRIGGERED`."""

    session_db_id: int
    failed_agent: str
    fallback_agent: str


class MessagesAbandonedPayload(TypedDict):
    """Payload for :attr:`EngramEvent.MESSAGES_ABANDONED`."""

    session_db_id: int
    count: int


# ── Extraction output ─────────────────────────────────────────────────────────


class RecordStoredPayload(TypedDict):
    """Payload for :attr:`EngramEvent.OBSERVATION_STORED` / ``SUMMARY_STORED``."""

    session_db_id: int
    memory_session_id: str
    record_id: int
    title: NotRequired[str]


# ── Recovery ──────────────────────────────────────────────────────────────────


class RecoveryCompletedPayload(TypedDict):
    """Payload for :attr:`EngramEvent.RECOVERY_COMPLETED`.

    ``model_dump()`` of :class:`engram.models.message.RecoveryResult` plus
    the pass kind.
    """

    kind: str
    """``startup`` or ``periodic``."""
    reset_messages: int
    stale_sessions_failed: int
    stale_messages_failed: int
    orphans_reaped: int
    total_pending_sessions: int
    sessions_started: int
    sessions_skipped: int
    started_session_ids: list[int]


__all__ = [
    "FallbackPayload",
    "MessagesAbandonedPayload",
    "ProcessingStatusPayload",
    "ProcessorEventPayload",
    "RecordStoredPayload",
    "RecoveryCompletedPayload",
    "SessionEventPayload",
]
