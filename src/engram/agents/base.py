"""Extraction agent contract and the shared conversational consume loop."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Protocol

import structlog

from engram.agents.prompts import build_message_prompt, build_session_prompt
from engram.agents.response import process_response
from engram.models.config import ProviderConfig
from engram.models.message import ConversationMessage
from engram.tokens.estimator import TokenEstimator

if TYPE_CHECKING:
    from engram.events.bus import EventBus
    from engram.processes.registry import ProcessRegistry
    from engram.session.context import SessionContext
    from engram.session.registry import SessionRegistry
    from engram.store.records import RecordStore
    from engram.store.sessions import SessionStore


class WorkerRef(Protocol):
    """What an agent may use from the worker that hosts it."""

    registry: SessionRegistry
    session_store: SessionStore
    record_store: RecordStore
    event_bus: EventBus
    process_registry: ProcessRegistry
    estimator: TokenEstimator

    async def broadcast_processing_status(self) -> None: ...


class ExtractionAgent(ABC):
    """
    A pluggable extraction backend.

    ``start_session()`` consumes the session's message sequence until it ends
    and returns normally. Failures are raised as ``AgentError`` subclasses
    (or foreign exceptions, which ``classify_error`` maps).
    """

    name: str = "agent"

    def __init__(self, config: ProviderConfig, estimator: TokenEstimator | None = None) -> None:
        self._config = config
        self._estimator = estimator or TokenEstimator()

    @abstractmethod
    def is_available(self) -> bool:
        """Whether the backend can be used at all (executable present, key set)."""

    @abstractmethod
    async def start_session(self, ctx: SessionContext, worker: WorkerRef) -> None:
        """Drain the session's queue through this backend."""

    def estimate_tokens(self, text: str) -> int:
        return self._estimator.estimate(text)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r})"


class ConversationalAgent(ExtractionAgent):
    """
    Agent for stateless backends that are re-sent the (truncated) conversation
    on every call.

    The first call of every run carries the init or continuation prompt
    together with the first message, so every model call is charged to a
    message the consumer holds.
    """

    async def start_session(self, ctx: SessionContext, worker: WorkerRef) -> None:
        log = structlog.get_logger(f"engram.agents.{self.name}").bind(
            session_db_id=ctx.session_db_id
        )
        token = ctx.token
        first_call = True
        async for message in worker.registry.iter_messages(ctx, token):
            prompt = build_message_prompt(ctx, message)
            if first_call:
                prompt = f"{build_session_prompt(ctx)}\n\n{prompt}"
            ctx.history.append(ConversationMessage(role="user", content=prompt))
            try:
                history = self.context_window(ctx.history)
                response = await token.guard(self._query(ctx, worker, history))
            except BaseException:
                ctx.history.pop()
                raise
            first_call = False

            input_tokens = self._estimator.estimate_history(history)
            output_tokens = self.estimate_tokens(response)
            ctx.input_tokens += input_tokens
            ctx.output_tokens += output_tokens
            ctx.history.append(ConversationMessage(role="assistant", content=response))
            log.debug(
                "model_call_completed",
                message_id=message.id,
                input_tokens=input_tokens,
                output_tokens=output_tokens,
            )
            await process_response(
                ctx,
                worker,
                message,
                response,
                discovery_tokens=input_tokens + output_tokens,
            )

    def context_window(self, history: list[ConversationMessage]) -> list[ConversationMessage]:
        """The slice of history sent to the backend on the next call."""
        return self._estimator.truncate_history(
            history,
            max_messages=self._config.max_context_messages,
            max_tokens=self._config.max_estimated_tokens,
        )

    @abstractmethod
    async def _query(
        self,
        ctx: SessionContext,
        worker: WorkerRef,
        history: list[ConversationMessage],
    ) -> str:
        """Send *history* to the backend and return the response text."""


def format_history(history: list[ConversationMessage]) -> str:
    """Render a conversation as a single prompt for text-in/text-out CLIs."""
    parts = []
    for message in history:
        role = "Assistant" if message.role == "assistant" else "User"
        parts.append(f"{role}:\n{message.content}")
    return "\n\n".join(parts)
