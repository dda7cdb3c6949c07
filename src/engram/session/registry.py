"""Registry of live session contexts and the per-session message sequence."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable, Iterator

import structlog

from engram.errors import DuplicateSessionError
from engram.models.config import QueueConfig
from engram.session.cancellation import CancellationToken
from engram.session.context import SessionContext
from engram.store.pending import PendingMessage, PendingMessageStore
from engram.store.sessions import SessionStore

RemovedCallback = Callable[[SessionContext, str], None]


class SessionRegistry:
    """
    Explicitly owned map of ``session_db_id → SessionContext``.

    Exactly one context may exist per session id. The registry never touches
    persisted rows on removal; it cancels the context's token, wakes its
    consumer and notifies ``on_session_removed`` subscribers.

    Example::

        registry = SessionRegistry(sessions, pending, QueueConfig())
        ctx = await registry.get_or_create("content-123", project="demo")
        async for message in registry.iter_messages(ctx, ctx.token):
            ...
    """

    def __init__(
        self,
        sessions: SessionStore,
        pending: PendingMessageStore,
        queue_config: QueueConfig | None = None,
    ) -> None:
        self._sessions = sessions
        self._pending = pending
        self._config = queue_config or QueueConfig()
        self._contexts: dict[int, SessionContext] = {}
        self._removed_callbacks: list[RemovedCallback] = []
        self._logger = structlog.get_logger("engram.registry")

    # ── Lookup ─────────────────────────────────────────────────────────────────

    def get(self, session_db_id: int) -> SessionContext | None:
        return self._contexts.get(session_db_id)

    def __contains__(self, session_db_id: object) -> bool:
        return session_db_id in self._contexts

    def __len__(self) -> int:
        return len(self._contexts)

    def __iter__(self) -> Iterator[SessionContext]:
        return iter(list(self._contexts.values()))

    def active_ids(self) -> set[int]:
        return set(self._contexts)

    def running_ids(self) -> set[int]:
        return {sid for sid, ctx in self._contexts.items() if ctx.is_running}

    # ── Lifecycle ──────────────────────────────────────────────────────────────

    async def get_or_create(
        self,
        content_session_id: str,
        *,
        project: str = "",
        user_prompt: str | None = None,
    ) -> SessionContext:
        """
        Return the live context for *content_session_id*, creating the session row
        and the context when needed.
        """
        row = await self._sessions.create_or_get(
            content_session_id, project=project, user_prompt=user_prompt
        )
        existing = self._contexts.get(row.id)
        if existing is not None:
            if user_prompt is not None:
                existing.user_prompt = user_prompt
            return existing
        ctx = SessionContext.from_row(row)
        self.register(ctx)
        return ctx

    async def initialize_session(self, session_db_id: int) -> SessionContext:
        """
        Return the live context for a stored session, loading it if needed.

        Used by recovery for sessions whose work survived a restart.

        Raises:
            SessionNotFoundError: If the session row does not exist.
        """
        existing = self._contexts.get(session_db_id)
        if existing is not None:
            return existing
        row = await self._sessions.get(session_db_id)
        existing = self._contexts.get(session_db_id)
        if existing is not None:
            return existing
        ctx = SessionContext.from_row(row)
        self.register(ctx)
        return ctx

    def register(self, ctx: SessionContext) -> None:
        """
        Raises:
            DuplicateSessionError: If another context is live for the same id.
        """
        current = self._contexts.get(ctx.session_db_id)
        if current is not None and current is not ctx:
            raise DuplicateSessionError(ctx.session_db_id)
        self._contexts[ctx.session_db_id] = ctx
        self._logger.debug(
            "session_registered",
            session_db_id=ctx.session_db_id,
            content_session_id=ctx.content_session_id,
        )

    def remove(self, session_db_id: int, reason: str = "removed") -> SessionContext | None:
        """Drop a context, cancel its token and notify subscribers. No-op if absent."""
        ctx = self._contexts.pop(session_db_id, None)
        if ctx is None:
            return None
        ctx.token.cancel(reason)
        ctx.wake()
        self._logger.info("session_removed", session_db_id=session_db_id, reason=reason)
        for callback in list(self._removed_callbacks):
            try:
                callback(ctx, reason)
            except Exception as exc:
                self._logger.error(
                    "session_removed_callback_error",
                    session_db_id=session_db_id,
                    callback=getattr(callback, "__qualname__", repr(callback)),
                    error=str(exc),
                )
        return ctx

    def on_session_removed(self, callback: RemovedCallback) -> None:
        self._removed_callbacks.append(callback)

    def wake(self, session_db_id: int) -> None:
        """Resume a suspended consumer. No-op for unknown ids."""
        ctx = self._contexts.get(session_db_id)
        if ctx is not None:
            ctx.wake()

    # ── Message sequence ───────────────────────────────────────────────────────

    async def iter_messages(
        self, ctx: SessionContext, token: CancellationToken
    ) -> AsyncIterator[PendingMessage]:
        """
        Yield a session's queued messages one at a time, oldest first.

        Messages the session already holds in ``processing`` are re-delivered
        before anything new is claimed. The consumer must complete or fail
        every yielded message before asking for the next one.

        The sequence ends when *token* is cancelled (checked at least once
        per ``poll_interval_s``), when the session is closing or draining and
        the queue is empty, or after ``idle_timeout_s`` with an empty queue.
        """
        held = await self._pending.list_for_session(ctx.session_db_id, statuses=("processing",))
        ctx.processing_message_ids = [m.id for m in held]
        for message in held:
            if token.cancelled:
                return
            yield message

        loop = asyncio.get_running_loop()
        idle_since: float | None = None
        while not token.cancelled:
            ctx.wake_event.clear()
            message = await self._pending.claim_next(ctx.session_db_id)
            if message is not None:
                idle_since = None
                ctx.processing_message_ids.append(message.id)
                yield message
                continue

            if ctx.closing or ctx.draining:
                return
            now = loop.time()
            if idle_since is None:
                idle_since = now
            remaining = self._config.idle_timeout_s - (now - idle_since)
            if remaining <= 0:
                self._logger.debug("queue_idle_timeout", session_db_id=ctx.session_db_id)
                return
            await self._wait_for_work(ctx, token, min(self._config.poll_interval_s, remaining))

    async def _wait_for_work(
        self, ctx: SessionContext, token: CancellationToken, timeout: float
    ) -> None:
        wake = asyncio.ensure_future(ctx.wake_event.wait())
        cancelled = asyncio.ensure_future(token.wait())
        try:
            await asyncio.wait({wake, cancelled}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        finally:
            wake.cancel()
            cancelled.cancel()
