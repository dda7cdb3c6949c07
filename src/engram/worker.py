"""The worker service: owns the stores, the registry, the processor and recovery."""

from __future__ import annotations

import asyncio
import os
from collections.abc import Mapping
from typing import Any

import structlog

from engram.agents import build_agents
from engram.agents.base import ExtractionAgent
from engram.errors import WorkerNotRunningError
from engram.events.bus import EngramEvent, EventBus
from engram.models.config import EngramConfig
from engram.models.message import MessageKind, MessagePayload, WorkerStatus
from engram.processes.registry import ProcessRegistry
from engram.processor import SessionProcessor
from engram.recovery import RecoveryCoordinator
from engram.session.context import ProcessorState, SessionContext
from engram.session.registry import SessionRegistry
from engram.store.database import Database, now_ms
from engram.store.helpers import HelperProcessStore
from engram.store.lock import WorkerLock
from engram.store.pending import PendingMessageStore
from engram.store.pool import StorePool
from engram.store.records import RecordStore
from engram.store.sessions import SessionStore
from engram.tokens.estimator import TokenEstimator


class WorkerService:
    """
    Single-process host for session processing.

    Usage::

        worker = WorkerService(EngramConfig.load("~/.engram/settings.json"))
        await worker.start()
        await worker.init_session("content-1", project="demo", user_prompt="fix the bug")
        await worker.enqueue_observation("content-1", tool_name="Read", tool_input={...})
        await worker.complete_session("content-1")
        await worker.stop()
    """

    def __init__(
        self,
        config: EngramConfig | None = None,
        *,
        pool: StorePool | None = None,
        agents: Mapping[str, ExtractionAgent] | None = None,
        event_bus: EventBus | None = None,
    ) -> None:
        self.config = config or EngramConfig.default()
        self.db = Database(self.config.store, pool=pool)
        self.pending_store = PendingMessageStore(self.db)
        self.session_store = SessionStore(self.db)
        self.record_store = RecordStore(self.db, self.pending_store)
        self.estimator = TokenEstimator()
        self.event_bus = event_bus or EventBus()
        self.process_registry = ProcessRegistry(HelperProcessStore(self.db))
        self.registry = SessionRegistry(self.session_store, self.pending_store, self.config.queue)
        self.agents = dict(agents) if agents is not None else build_agents(
            self.config.providers, self.estimator
        )
        self.processor = SessionProcessor(
            self,
            self.pending_store,
            self.agents,
            provider=self.config.providers.provider,
            queue_config=self.config.queue,
        )
        self.recovery = RecoveryCoordinator(
            registry=self.registry,
            pending=self.pending_store,
            sessions=self.session_store,
            processor=self.processor,
            processes=self.process_registry,
            event_bus=self.event_bus,
            config=self.config.recovery,
        )
        self.registry.on_session_removed(self._on_session_removed)

        self._lock = WorkerLock(self.db.db_path)
        self._accepting = False
        self._started_at: int | None = None
        self._stop_event = asyncio.Event()
        self._recovery_task: asyncio.Task[None] | None = None
        self._background: set[asyncio.Task[Any]] = set()
        self._logger = structlog.get_logger("engram.worker")

    # ── Lifecycle ──────────────────────────────────────────────────────────────

    @property
    def is_running(self) -> bool:
        return self._accepting

    async def start(self) -> None:
        """
        Take ownership of the queue database, run startup recovery, then begin
        accepting work.

        Raises:
            WorkerLockedError: If another worker process owns the database.
        """
        if self._accepting:
            return
        self._lock.acquire()
        try:
            await self.db.initialize()
            self._stop_event = asyncio.Event()
            await self.recovery.startup()
        except BaseException:
            await self.db.close()
            self._lock.release()
            raise
        self._recovery_task = asyncio.create_task(
            self.recovery.run_periodic(self._stop_event), name="engram-recovery"
        )
        self._accepting = True
        self._started_at = now_ms()
        self._logger.info(
            "worker_started",
            pid=os.getpid(),
            db_path=self.db.db_path,
            provider=self.config.providers.provider,
        )

    async def stop(self, timeout: float | None = None) -> None:
        """
        Stop accepting work, let consumers drain for up to *timeout* seconds,
        then cancel whatever is still running.
        """
        if not self._accepting and self._recovery_task is None:
            return
        timeout = self.config.worker.shutdown_timeout_s if timeout is None else timeout
        self._accepting = False
        self._stop_event.set()
        if self._recovery_task is not None:
            await self._recovery_task
            self._recovery_task = None

        contexts = list(self.registry)
        for ctx in contexts:
            ctx.draining = True
            ctx.wake()
        tasks = [ctx.task for ctx in contexts if ctx.task is not None and not ctx.task.done()]
        if tasks and timeout > 0:
            await asyncio.wait(tasks, timeout=timeout)

        for ctx in contexts:
            ctx.token.cancel("shutdown")
            ctx.wake()
        remaining = [t for t in tasks if not t.done()]
        if remaining and self.config.worker.cancel_grace_s > 0:
            await asyncio.wait(remaining, timeout=self.config.worker.cancel_grace_s)
        for task in remaining:
            if not task.done():
                task.cancel()
        if remaining:
            await asyncio.gather(*remaining, return_exceptions=True)
        if remaining:
            self._logger.warning("consumers_cancelled", count=sum(1 for t in remaining if t.cancelled()))

        reaped = await self.process_registry.terminate_all(grace_s=self.config.recovery.reap_grace_s)
        await self.broadcast_processing_status()
        await self.event_bus.drain(timeout=self.config.worker.cancel_grace_s)
        for task in list(self._background):
            task.cancel()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        for ctx in contexts:
            self.registry.remove(ctx.session_db_id, "shutdown")
        await self.db.close()
        self._lock.release()
        self._started_at = None
        self._logger.info("worker_stopped", helpers_terminated=reaped)

    async def restart(self) -> None:
        await self.stop()
        await self.start()

    async def status(self) -> WorkerStatus:
        """Liveness and aggregate queue state."""
        if not self.db.is_initialized:
            return WorkerStatus(running=False, pid=os.getpid())
        depth = await self.pending_store.total_queue_depth(self.registry.active_ids())
        return WorkerStatus(
            running=self._accepting,
            pid=os.getpid(),
            started_at=self._started_at,
            active_sessions=len(self.registry),
            is_processing=self._is_processing(depth),
            queue_depth=depth,
        )

    # ── Producer API ───────────────────────────────────────────────────────────

    async def init_session(
        self,
        content_session_id: str,
        *,
        project: str = "",
        user_prompt: str | None = None,
    ) -> SessionContext:
        """Register a new user prompt for a session, creating the session if needed."""
        self._require_running()
        ctx = await self.registry.get_or_create(
            content_session_id, project=project, user_prompt=user_prompt
        )
        if user_prompt is not None:
            ctx.prompt_number = await self.session_store.increment_prompt_counter(ctx.session_db_id)
        ctx.closing = False
        self.event_bus.publish(
            EngramEvent.SESSION_INITIALIZED,
            {"session_db_id": ctx.session_db_id, "content_session_id": content_session_id},
        )
        return ctx

    async def enqueue(
        self,
        content_session_id: str,
        kind: MessageKind,
        payload: MessagePayload,
    ) -> int:
        """
        Append work for a session and make sure a consumer is on it.

        Raises:
            WorkerNotRunningError: If the worker is not accepting work.
        """
        self._require_running()
        ctx = await self.registry.get_or_create(content_session_id)
        if payload.prompt_number is None and ctx.prompt_number:
            payload = payload.model_copy(update={"prompt_number": ctx.prompt_number})
        message_id = await self.pending_store.enqueue(
            ctx.session_db_id, ctx.content_session_id, kind, payload
        )
        ctx.wake()
        self.processor.start(ctx, source="enqueue")
        return message_id

    async def enqueue_observation(
        self,
        content_session_id: str,
        *,
        tool_name: str,
        tool_input: Any = None,
        tool_response: Any = None,
        cwd: str | None = None,
        prompt_number: int | None = None,
    ) -> int:
        payload = MessagePayload(
            tool_name=tool_name,
            tool_input=tool_input,
            tool_response=tool_response,
            cwd=cwd,
            prompt_number=prompt_number,
        )
        return await self.enqueue(content_session_id, "observation", payload)

    async def enqueue_summarize(
        self,
        content_session_id: str,
        *,
        last_assistant_message: str | None = None,
        cwd: str | None = None,
        prompt_number: int | None = None,
    ) -> int:
        payload = MessagePayload(
            last_assistant_message=last_assistant_message,
            cwd=cwd,
            prompt_number=prompt_number,
        )
        return await self.enqueue(content_session_id, "summarize", payload)

    async def complete_session(self, content_session_id: str) -> None:
        """
        Close a session: its consumer finishes the queue, then the session is
        marked completed and leaves the registry.
        """
        self._require_running()
        ctx = await self.registry.get_or_create(content_session_id)
        ctx.closing = True
        ctx.wake()
        if not self.processor.start(ctx, source="complete") and not ctx.is_running:
            # Stopped by a fatal error: nothing will drain it
            self._logger.warning(
                "complete_session_without_consumer",
                session_db_id=ctx.session_db_id,
                stop_reason=ctx.stop_reason,
            )

    # ── WorkerRef ──────────────────────────────────────────────────────────────

    async def broadcast_processing_status(self) -> None:
        """Publish ``{is_processing, queue_depth, active_sessions}`` on the event bus."""
        if not self.db.is_initialized:
            return
        active = self.registry.active_ids()
        depth = await self.pending_store.total_queue_depth(active)
        payload = {
            "is_processing": self._is_processing(depth),
            "queue_depth": depth,
            "active_sessions": len(active),
        }
        self._logger.debug("processing_status", **payload)
        self.event_bus.publish(EngramEvent.PROCESSING_STATUS, payload)

    # ── Internals ──────────────────────────────────────────────────────────────

    def _is_processing(self, depth: int) -> bool:
        # A settling consumer still owns its task but is no longer RUNNING
        return depth > 0 or any(
            ctx.is_running and ctx.state is ProcessorState.RUNNING for ctx in self.registry
        )

    def _require_running(self) -> None:
        if not self._accepting:
            raise WorkerNotRunningError("Worker is not running. Call start() first.")

    def _on_session_removed(self, ctx: SessionContext, reason: str) -> None:
        self.event_bus.publish(
            EngramEvent.SESSION_REMOVED,
            {
                "session_db_id": ctx.session_db_id,
                "content_session_id": ctx.content_session_id,
                "reason": reason,
            },
        )
        if reason == "shutdown":
            return
        task = asyncio.get_running_loop().create_task(self.broadcast_processing_status())
        self._background.add(task)
        task.add_done_callback(self._background.discard)
