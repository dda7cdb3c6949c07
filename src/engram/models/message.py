"""Queue payload, conversation and extraction-result data models."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field

MessageKind = Literal["observation", "summarize"]
MessageStatus = Literal["pending", "processing", "processed", "failed"]
SessionStatus = Literal["active", "completed", "failed"]


class MessagePayload(BaseModel):
    """
    The producer-supplied body of one queued unit of work.

    Observation messages carry the tool call; summarize messages carry the
    last assistant message of the turn. ``cwd`` is recorded for both.
    """

    tool_name: str | None = None
    tool_input: Any = None
    tool_response: Any = None
    last_assistant_message: str | None = None
    cwd: str | None = None
    prompt_number: int | None = None


class ConversationMessage(BaseModel):
    """One turn of the agent-side conversation kept in a SessionContext."""

    role: Literal["user", "assistant"]
    content: str


class ParsedObservation(BaseModel):
    """A structured observation extracted from model output."""

    type: str = ""
    title: str = ""
    subtitle: str | None = None
    narrative: str = ""
    facts: list[str] = Field(default_factory=list)
    concepts: list[str] = Field(default_factory=list)
    files_read: list[str] = Field(default_factory=list)
    files_modified: list[str] = Field(default_factory=list)


class ParsedSummary(BaseModel):
    """A structured end-of-turn summary extracted from model output."""

    request: str = ""
    investigated: str = ""
    learned: str = ""
    completed: str = ""
    next_steps: str = ""
    notes: str = ""
    files_read: list[str] = Field(default_factory=list)
    files_modified: list[str] = Field(default_factory=list)


class ParsedOutput(BaseModel):
    """Everything recovered from a single model response."""

    observations: list[ParsedObservation] = Field(default_factory=list)
    summary: ParsedSummary | None = None
    skip_summary_reason: str | None = None


class StoredRecords(BaseModel):
    """Row ids written by one atomic extraction commit."""

    observation_ids: list[int] = Field(default_factory=list)
    summary_id: int | None = None
    completed_message_ids: list[int] = Field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.observation_ids and self.summary_id is None


class ProcessingStatus(BaseModel):
    """Aggregate processing status broadcast to observers."""

    is_processing: bool
    queue_depth: int
    active_sessions: int


class RecoveryResult(BaseModel):
    """Counters describing what one recovery pass did."""

    reset_messages: int = 0
    stale_sessions_failed: int = 0
    stale_messages_failed: int = 0
    orphans_reaped: int = 0
    total_pending_sessions: int = 0
    sessions_started: int = 0
    sessions_skipped: int = 0
    started_session_ids: list[int] = Field(default_factory=list)


class WorkerStatus(BaseModel):
    """Liveness report returned by ``WorkerService.status()``."""

    running: bool
    pid: int
    started_at: int | None = None
    active_sessions: int = 0
    is_processing: bool = False
    queue_depth: int = 0
