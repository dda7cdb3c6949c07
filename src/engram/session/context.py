"""In-memory working state of one live session consumer."""

from __future__ import annotations

import asyncio
from enum import StrEnum
from typing import Any

from engram.models.message import ConversationMessage
from engram.session.cancellation import CancellationToken
from engram.store.sessions import SessionRow


class ProcessorState(StrEnum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class SessionContext:
    """
    Live consumer state for one session, owned by the ``SessionRegistry``.

    ``task`` doubles as the consumer lock: while it is set and not done no
    other component may start a processor for this session.
    """

    def __init__(
        self,
        session_db_id: int,
        content_session_id: str,
        *,
        project: str = "",
        user_prompt: str | None = None,
        memory_session_id: str | None = None,
        prompt_number: int = 0,
    ) -> None:
        self.session_db_id = session_db_id
        self.content_session_id = content_session_id
        self.project = project
        self.user_prompt = user_prompt
        self.memory_session_id = memory_session_id
        self.prompt_number = prompt_number

        self.history: list[ConversationMessage] = []
        self.input_tokens = 0
        self.output_tokens = 0

        self.token = CancellationToken()
        self.task: asyncio.Task[Any] | None = None
        self.processing_message_ids: list[int] = []

        self.state = ProcessorState.IDLE
        self.agent_name: str | None = None
        self.stop_reason: str | None = None
        self.closing = False
        """Set by the owner: finish the queue, then mark the session completed."""
        self.draining = False
        """Set at worker shutdown: finish the queue without completing the session."""
        self.restarts = 0

        self.wake_event = asyncio.Event()

    @classmethod
    def from_row(cls, row: SessionRow) -> SessionContext:
        return cls(
            row.id,
            row.content_session_id,
            project=row.project,
            user_prompt=row.user_prompt,
            memory_session_id=row.memory_session_id,
            prompt_number=row.prompt_counter,
        )

    @property
    def is_running(self) -> bool:
        return self.task is not None and not self.task.done()

    @property
    def is_stopped(self) -> bool:
        """True after a fatal failure; nothing restarts this context."""
        return self.state is ProcessorState.FAILED and self.stop_reason is not None

    def renew_token(self) -> CancellationToken:
        """Replace the token with a fresh one. The old token stays cancelled."""
        self.token = CancellationToken()
        return self.token

    def wake(self) -> None:
        self.wake_event.set()

    def __repr__(self) -> str:
        return (
            f"SessionContext(session_db_id={self.session_db_id}, state={self.state.value!r}, "
            f"running={self.is_running}, held={self.processing_message_ids})"
        )
