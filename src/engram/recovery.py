"""Startup and periodic recovery of queued work."""

from __future__ import annotations

import asyncio

import structlog

from engram.events.bus import EngramEvent, EventBus
from engram.models.config import RecoveryConfig
from engram.models.message import RecoveryResult
from engram.processes.registry import ProcessRegistry
from engram.processor import SessionProcessor
from engram.session.registry import SessionRegistry
from engram.store.pending import PendingMessageStore
from engram.store.sessions import SessionStore


class RecoveryCoordinator:
    """
    Guarantees queued work is not silently lost across restarts.

    Each pass runs four steps in order:

    1. Demote stale ``processing`` rows back to ``pending``. The startup pass
       resets every row; periodic passes only touch rows older than
       ``stale_processing_ms`` belonging to sessions with no live context.
    2. Fail ``active`` sessions older than ``stale_session_ms`` together with
       their still-``pending`` messages. Sessions with a running consumer are
       skipped.
    3. Terminate helper processes whose session left the registry, and
       helpers recorded by a worker process that has since died.
    4. Start processors for up to ``auto_recover_limit`` sessions with
       pending work, ``start_delay_s`` apart.
    """

    def __init__(
        self,
        *,
        registry: SessionRegistry,
        pending: PendingMessageStore,
        sessions: SessionStore,
        processor: SessionProcessor,
        processes: ProcessRegistry,
        event_bus: EventBus,
        config: RecoveryConfig | None = None,
    ) -> None:
        self._registry = registry
        self._pending = pending
        self._sessions = sessions
        self._processor = processor
        self._processes = processes
        self._event_bus = event_bus
        self._config = config or RecoveryConfig()
        self._logger = structlog.get_logger("engram.recovery")

    # ── Passes ─────────────────────────────────────────────────────────────────

    async def startup(self) -> RecoveryResult:
        """Cold-start pass. Must run before any processor claims work."""
        result = RecoveryResult()
        result.reset_messages = await self._pending.reset_stale_processing(0)
        return await self._finish_pass(result, "startup")

    async def run_once(self) -> RecoveryResult:
        """One periodic pass."""
        result = RecoveryResult()
        result.reset_messages = await self._pending.reset_stale_processing(
            self._config.stale_processing_ms,
            exclude_session_ids=self._registry.active_ids(),
        )
        return await self._finish_pass(result, "periodic")

    async def run_periodic(self, stop: asyncio.Event) -> None:
        """Run ``run_once()`` every ``interval_s`` until *stop* is set."""
        while not stop.is_set():
            try:
                await asyncio.wait_for(stop.wait(), timeout=self._config.interval_s)
                return
            except TimeoutError:
                pass
            try:
                await self.run_once()
            except Exception as exc:
                self._logger.error("recovery_pass_failed", error=str(exc))

    async def _finish_pass(self, result: RecoveryResult, kind: str) -> RecoveryResult:
        result.stale_sessions_failed, result.stale_messages_failed = await self.fail_stale_sessions()
        result.orphans_reaped = await self.reap_orphans()
        await self.auto_recover(result)
        self._logger.info("recovery_pass_completed", kind=kind, **result.model_dump())
        self._event_bus.publish(EngramEvent.RECOVERY_COMPLETED, {"kind": kind, **result.model_dump()})
        return result

    # ── Steps ──────────────────────────────────────────────────────────────────

    async def fail_stale_sessions(self) -> tuple[int, int]:
        """
        Returns:
            ``(sessions_failed, messages_failed)``.
        """
        failed_ids = await self._sessions.fail_stale(
            self._config.stale_session_ms,
            exclude_session_ids=self._registry.running_ids(),
        )
        if not failed_ids:
            return 0, 0
        messages = await self._pending.fail_pending_for_sessions(failed_ids)
        for session_db_id in failed_ids:
            self._registry.remove(session_db_id, "stale")
        self._logger.warning(
            "stale_sessions_failed",
            session_ids=failed_ids,
            messages_failed=messages,
        )
        return len(failed_ids), messages

    async def reap_orphans(self) -> int:
        """Reap this worker's orphaned helpers, then any left by a crashed worker."""
        reaped = await self._processes.reap(
            self._registry.active_ids(), grace_s=self._config.reap_grace_s
        )
        return reaped + await self._processes.reap_recorded(grace_s=self._config.reap_grace_s)

    async def auto_recover(self, result: RecoveryResult | None = None) -> RecoveryResult:
        """Start processors for orphaned queues, up to the per-pass cap."""
        result = result or RecoveryResult()
        session_ids = await self._pending.sessions_with_pending_work()
        result.total_pending_sessions = len(session_ids)
        for session_db_id in session_ids:
            if result.sessions_started >= self._config.auto_recover_limit:
                break
            log = self._logger.bind(session_db_id=session_db_id)
            ctx = self._registry.get(session_db_id)
            if ctx is not None and (ctx.is_running or ctx.is_stopped):
                result.sessions_skipped += 1
                continue
            try:
                if ctx is None:
                    ctx = await self._registry.initialize_session(session_db_id)
                started = self._processor.start(ctx, source="recovery")
            except Exception as exc:
                log.error("auto_recover_failed", error=str(exc))
                result.sessions_skipped += 1
                continue
            if not started:
                result.sessions_skipped += 1
                continue
            result.sessions_started += 1
            result.started_session_ids.append(session_db_id)
            log.info("session_recovered")
            if self._config.start_delay_s > 0:
                await asyncio.sleep(self._config.start_delay_s)
        return result
