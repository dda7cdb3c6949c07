"""In-process pub/sub event bus for Engram worker and session lifecycle events."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from enum import StrEnum
from typing import Any

import structlog

Handler = Callable[["EngramEvent", dict[str, Any]], None | Awaitable[None]]


class EngramEvent(StrEnum):
    """All event types published by Engram components.

    Typed payload definitions for each event live in
    :mod:`engram.events.payloads`.

    **Payload schemas by event:**

    ``PROCESSING_STATUS``
        :class:`~engram.events.payloads.ProcessingStatusPayload`:
        ``is_processing: bool``, ``queue_depth: int``, ``active_sessions: int``.
        Published after every processor terminal transition and whenever a
        session leaves the registry.

    ``SESSION_INITIALIZED``, ``SESSION_COMPLETED``, ``SESSION_REMOVED``
        :class:`~engram.events.payloads.SessionEventPayload`

    ``PROCESSOR_STARTED``, ``PROCESSOR_STOPPED``
        :class:`~engram.events.payloads.ProcessorEventPayload`

    ``FALLBACK_TRIGGERED``
        :class:`~engram.events.payloads.FallbackPayload`

    ``MESSAGES_ABANDONED``
        :class:`~engram.events.payloads.MessagesAbandonedPayload`

    ``OBSERVATION_STORED``, ``SUMMARY_STORED``
        :class:`~engram.events.payloads.RecordStoredPayload`

    ``RECOVERY_COMPLETED``
        :class:`~engram.events.payloads.RecoveryCompletedPayload`
    """

    # Aggregate status
    PROCESSING_STATUS = "processing.status"

    # Session lifecycle
    SESSION_INITIALIZED = "session.initialized"
    SESSION_COMPLETED = "session.completed"
    SESSION_REMOVED = "session.removed"

    # Processor lifecycle
    PROCESSOR_STARTED = "processor.started"
    PROCESSOR_STOPPED = "processor.stopped"
    FALLBACK_TRIGGERED = "processor.fallback"
    MESSAGES_ABANDONED = "messages.abandoned"

    # Extraction output
    OBSERVATION_STORED = "observation.stored"
    SUMMARY_STORED = "summary.stored"

    # Recovery
    RECOVERY_COMPLETED = "recovery.completed"


class EventBus:
    """
    In-process fan-out of worker events to observers.

    Handlers receive ``(event, payload)``. Sync handlers run inline inside
    ``publish()``; coroutine handlers are scheduled on the running loop and
    tracked until they finish so ``drain()`` can wait for them at shutdown.
    A failing handler is logged and never reaches the publisher, which keeps
    status broadcasts fire-and-forget.

    Example::

        bus = EventBus()

        def on_status(event, payload):
            print(f"{payload['queue_depth']} messages queued")

        bus.subscribe(EngramEvent.PROCESSING_STATUS, on_status)
    """

    def __init__(self, logger: structlog.BoundLogger | None = None) -> None:
        # None keys the wildcard subscribers
        self._subscribers: dict[EngramEvent | None, list[Handler]] = {}
        self._pending: set[asyncio.Task[Any]] = set()
        self._logger = logger or structlog.get_logger("engram.events")

    def subscribe(self, event: EngramEvent, handler: Handler) -> None:
        self._subscribers.setdefault(event, []).append(handler)

    def subscribe_all(self, handler: Handler) -> None:
        """Register *handler* for every event type."""
        self._subscribers.setdefault(None, []).append(handler)

    def unsubscribe(self, event: EngramEvent, handler: Handler) -> None:
        """No-op if *handler* is not subscribed to *event*."""
        handlers = self._subscribers.get(event)
        if handlers and handler in handlers:
            handlers.remove(handler)

    def subscriber_count(self, event: EngramEvent) -> int:
        return len(self._subscribers.get(event, ())) + len(self._subscribers.get(None, ()))

    def publish(self, event: EngramEvent, payload: dict[str, Any]) -> None:
        """
        Deliver *payload* to the event's subscribers, then to wildcard ones.

        Coroutine handlers published outside a running loop are closed
        without running.
        """
        targets = [*self._subscribers.get(event, ()), *self._subscribers.get(None, ())]
        for handler in targets:
            try:
                outcome = handler(event, payload)
            except Exception as exc:
                self._logger.error(
                    "event_handler_error",
                    event=str(event),
                    handler=getattr(handler, "__qualname__", repr(handler)),
                    error=str(exc),
                )
                continue
            if asyncio.iscoroutine(outcome):
                self._schedule(event, outcome)

    async def drain(self, timeout: float | None = None) -> None:
        """Wait for scheduled coroutine handlers to finish."""
        if self._pending:
            await asyncio.wait(set(self._pending), timeout=timeout)

    def _schedule(self, event: EngramEvent, coro: Any) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            coro.close()
            return
        task = loop.create_task(coro, name=f"engram-event-{event.value}")
        self._pending.add(task)
        task.add_done_callback(self._handler_finished)

    def _handler_finished(self, task: asyncio.Task[Any]) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self._logger.error("event_handler_error", handler=task.get_name(), error=str(exc))
