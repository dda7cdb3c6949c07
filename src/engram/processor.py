"""Per-session consumer: runs an agent over the queue and decides what happens next."""

from __future__ import annotations

import asyncio
from collections.abc import Mapping
from typing import Any

import structlog

from engram.agents.base import ExtractionAgent, WorkerRef
from engram.agents.selection import fallback_chain, select_agent
from engram.errors import ErrorKind, classify_error
from engram.events.bus import EngramEvent
from engram.models.config import QueueConfig
from engram.session.context import ProcessorState, SessionContext
from engram.store.pending import PendingMessageStore


class SessionProcessor:
    """
    State machine driving one consumer task per session.

    ``idle → running → {completed | failed | cancelled}``, then either back
    to ``running`` (self-restart) or idle/removed:

    - drained: ``completed``
    - fatal error: ``failed`` with a stop reason; never restarted
    - session terminated: the fallback chain runs in the same task; when every
      fallback fails the remaining work is abandoned and the session removed
    - cancelled: never restarted
    - anything else: a single ``pending_count`` read decides whether to
      restart with a fresh cancellation token

    A message enqueued after that read but before the task finishes is not
    picked up by this task: the enqueue sees a running consumer and only
    wakes it. It waits for the next enqueue or recovery pass.

    Restarts are unbounded; poison messages are contained by the per-message
    retry cap (``QueueConfig.max_retries``), charged to the messages the
    consumer held when a run failed.
    """

    def __init__(
        self,
        worker: WorkerRef,
        pending: PendingMessageStore,
        agents: Mapping[str, ExtractionAgent],
        *,
        provider: str = "auto",
        queue_config: QueueConfig | None = None,
    ) -> None:
        self._worker = worker
        self._pending = pending
        self._agents = agents
        self._provider = provider
        self._config = queue_config or QueueConfig()
        self._logger = structlog.get_logger("engram.processor")

    # ── Public API ─────────────────────────────────────────────────────────────

    def start(
        self,
        ctx: SessionContext,
        *,
        source: str = "enqueue",
        agent: ExtractionAgent | None = None,
    ) -> bool:
        """
        Attach a consumer task to *ctx* unless one is already running.

        Returns:
            True if a new task was started.
        """
        log = self._logger.bind(session_db_id=ctx.session_db_id)
        if ctx.is_running:
            return False
        if ctx.is_stopped:
            log.info("processor_start_skipped", reason="stopped", stop_reason=ctx.stop_reason)
            return False
        if self._worker.registry.get(ctx.session_db_id) is not ctx:
            log.info("processor_start_skipped", reason="not_registered")
            return False
        if ctx.token.cancelled:
            ctx.renew_token()

        chosen = agent or self.select_agent()
        self._mark_running(ctx, chosen, source)
        ctx.task = asyncio.create_task(
            self._run(ctx, chosen), name=f"engram-session-{ctx.session_db_id}"
        )
        ctx.task.add_done_callback(self._on_task_done)
        return True

    def select_agent(self) -> ExtractionAgent:
        return select_agent(self._provider, self._agents)

    # ── Run loop ───────────────────────────────────────────────────────────────

    async def _run(self, ctx: SessionContext, agent: ExtractionAgent) -> None:
        while True:
            try:
                await self._run_agent(ctx, agent)
            except asyncio.CancelledError:
                ctx.state = ProcessorState.CANCELLED
                raise
            if not await self._settle(ctx):
                return
            ctx.renew_token()
            ctx.restarts += 1
            agent = self.select_agent()
            self._mark_running(ctx, agent, "restart")

    async def _run_agent(self, ctx: SessionContext, agent: ExtractionAgent) -> None:
        """One consume run plus, on session termination, the fallback chain."""
        log = self._logger.bind(session_db_id=ctx.session_db_id, agent=agent.name)
        token = ctx.token
        try:
            await agent.start_session(ctx, self._worker)
        except Exception as exc:
            kind = classify_error(exc)
            log.warning("agent_failed", error=str(exc), error_kind=kind.value)
            if kind is ErrorKind.SESSION_TERMINATED:
                await self._charge_held(ctx)
                await self._fallback(ctx, agent, exc)
            else:
                await self._handle_failure(ctx, exc, kind)
            return
        ctx.state = ProcessorState.CANCELLED if token.cancelled else ProcessorState.COMPLETED

    async def _handle_failure(self, ctx: SessionContext, exc: Exception, kind: ErrorKind) -> None:
        log = self._logger.bind(session_db_id=ctx.session_db_id)
        if kind is ErrorKind.CANCELLED:
            ctx.state = ProcessorState.CANCELLED
            return
        ctx.state = ProcessorState.FAILED
        if kind is ErrorKind.FATAL:
            ctx.stop_reason = str(exc)
            log.error("processor_stopped_fatal", error=str(exc))
            return
        charged = await self._charge_held(ctx)
        if not charged and self._config.restart_backoff_s > 0:
            await asyncio.sleep(self._config.restart_backoff_s)

    async def _fallback(self, ctx: SessionContext, failed: ExtractionAgent, exc: Exception) -> None:
        log = self._logger.bind(session_db_id=ctx.session_db_id)
        failed_name = failed.name
        for candidate in fallback_chain(failed.name, self._agents):
            self._worker.event_bus.publish(
                EngramEvent.FALLBACK_TRIGGERED,
                {
                    "session_db_id": ctx.session_db_id,
                    "failed_agent": failed_name,
                    "fallback_agent": candidate.name,
                },
            )
            log.info("fallback_started", failed_agent=failed_name, fallback_agent=candidate.name)
            ctx.agent_name = candidate.name
            token = ctx.token
            try:
                await candidate.start_session(ctx, self._worker)
            except Exception as fallback_exc:
                kind = classify_error(fallback_exc)
                if kind is ErrorKind.CANCELLED:
                    ctx.state = ProcessorState.CANCELLED
                    return
                log.warning(
                    "fallback_failed",
                    fallback_agent=candidate.name,
                    error=str(fallback_exc),
                    error_kind=kind.value,
                )
                await self._charge_held(ctx)
                failed_name = candidate.name
                continue
            ctx.state = ProcessorState.CANCELLED if token.cancelled else ProcessorState.COMPLETED
            return
        await self._abandon(ctx, exc)

    async def _abandon(self, ctx: SessionContext, exc: Exception) -> None:
        count = await self._pending.mark_all_abandoned(ctx.session_db_id)
        ctx.processing_message_ids.clear()
        ctx.state = ProcessorState.FAILED
        ctx.stop_reason = f"all agents failed: {exc}"
        self._logger.error(
            "session_abandoned",
            session_db_id=ctx.session_db_id,
            abandoned_messages=count,
            error=str(exc),
        )
        self._worker.event_bus.publish(
            EngramEvent.MESSAGES_ABANDONED,
            {"session_db_id": ctx.session_db_id, "count": count},
        )
        self._worker.registry.remove(ctx.session_db_id, "abandoned")

    async def _charge_held(self, ctx: SessionContext) -> bool:
        """
        Count a failed delivery against every message the consumer held.

        Messages reaching the retry cap are failed; the rest stay
        ``processing`` and are re-delivered first on the next run.

        Returns:
            True if any message was held.
        """
        held = await self._pending.list_for_session(ctx.session_db_id, statuses=("processing",))
        for message in held:
            if message.retry_count + 1 >= self._config.max_retries:
                await self._pending.fail(message.id)
                self._logger.warning(
                    "message_exhausted",
                    session_db_id=ctx.session_db_id,
                    message_id=message.id,
                    retries=message.retry_count + 1,
                )
            else:
                await self._pending.record_retry(message.id)
        ctx.processing_message_ids = []
        return bool(held)

    async def _settle(self, ctx: SessionContext) -> bool:
        """
        Terminal-state bookkeeping. Returns True when the consumer should restart.
        """
        log = self._logger.bind(session_db_id=ctx.session_db_id)
        self._worker.event_bus.publish(
            EngramEvent.PROCESSOR_STOPPED,
            {
                "session_db_id": ctx.session_db_id,
                "agent": ctx.agent_name or "",
                "state": ctx.state.value,
                "restarts": ctx.restarts,
                **({"error": ctx.stop_reason} if ctx.stop_reason else {}),
            },
        )
        restart = False
        registered = self._worker.registry.get(ctx.session_db_id) is ctx
        if registered and ctx.state is not ProcessorState.CANCELLED and not ctx.is_stopped:
            remaining = await self._pending.pending_count(ctx.session_db_id)
            if remaining > 0 and ctx.draining:
                log.info("processor_left_pending_work", pending=remaining)
            elif remaining > 0:
                restart = True
                log.info("processor_restarting", pending=remaining, state=ctx.state.value)
            elif ctx.closing:
                await self._worker.session_store.mark_completed(ctx.session_db_id)
                self._worker.event_bus.publish(
                    EngramEvent.SESSION_COMPLETED,
                    {
                        "session_db_id": ctx.session_db_id,
                        "content_session_id": ctx.content_session_id,
                    },
                )
                self._worker.registry.remove(ctx.session_db_id, "completed")
        await self._worker.broadcast_processing_status()
        return restart

    # ── Helpers ────────────────────────────────────────────────────────────────

    def _mark_running(self, ctx: SessionContext, agent: ExtractionAgent, source: str) -> None:
        ctx.state = ProcessorState.RUNNING
        ctx.agent_name = agent.name
        self._logger.info(
            "processor_started",
            session_db_id=ctx.session_db_id,
            agent=agent.name,
            source=source,
        )
        self._worker.event_bus.publish(
            EngramEvent.PROCESSOR_STARTED,
            {"session_db_id": ctx.session_db_id, "agent": agent.name, "source": source},
        )

    def _on_task_done(self, task: asyncio.Task[Any]) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self._logger.error("processor_task_crashed", task=task.get_name(), error=str(exc))
