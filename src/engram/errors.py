"""Error taxonomy shared by extraction agents, the processor and the worker."""

from __future__ import annotations

import asyncio
from enum import StrEnum

# Substrings that mean the agent can never succeed with the current setup.
UNRECOVERABLE_PATTERNS: tuple[str, ...] = (
    "claude executable not found",
    "claude_code_path",
    "enoent",
    "spawn",
    "executable not found",
)

# Substrings that mean the agent's conversational context is gone.
SESSION_TERMINATED_PATTERNS: tuple[str, ...] = (
    "process aborted by user",
    "processtransport",
    "not ready for writing",
    "session generator failed",
    "claude code process",
)


class ErrorKind(StrEnum):
    """How the processor reacts to a failed run."""

    FATAL = "fatal"
    """Misconfiguration; no retry, no restart."""
    SESSION_TERMINATED = "session_terminated"
    """Underlying context lost; try the fallback chain."""
    TRANSIENT = "transient"
    """Network or process hiccup; restart with a fresh token."""
    CANCELLED = "cancelled"
    """Cooperative cancellation; never retried."""


class AgentError(Exception):
    """Base class for errors raised by extraction agents."""

    kind: ErrorKind = ErrorKind.TRANSIENT

    def __init__(self, message: str, *, agent: str | None = None) -> None:
        super().__init__(message)
        self.agent = agent


class FatalAgentError(AgentError):
    """The agent cannot possibly succeed (missing executable, bad credentials)."""

    kind = ErrorKind.FATAL


class SessionTerminatedError(AgentError):
    """The agent's underlying session or helper process died."""

    kind = ErrorKind.SESSION_TERMINATED


class TransientAgentError(AgentError):
    """A provider or process hiccup worth a same-agent restart."""

    kind = ErrorKind.TRANSIENT


class ExtractionCancelledError(AgentError):
    """Raised from a suspending call when the session's token was cancelled."""

    kind = ErrorKind.CANCELLED


class DuplicateSessionError(Exception):
    """Raised when a second live context is registered for the same session id."""

    def __init__(self, session_db_id: int) -> None:
        super().__init__(f"Session {session_db_id} already has a live context")
        self.session_db_id = session_db_id


class WorkerNotRunningError(Exception):
    """Raised when work is submitted to a worker that is not accepting it."""


def classify_error(exc: BaseException) -> ErrorKind:
    """
    Map any exception raised out of an agent run onto an ``ErrorKind``.

    Typed ``AgentError`` subclasses keep their declared kind. Foreign
    exceptions are classified by type and by message substrings.
    """
    if isinstance(exc, AgentError):
        return exc.kind
    if isinstance(exc, asyncio.CancelledError):
        return ErrorKind.CANCELLED
    if isinstance(exc, FileNotFoundError | PermissionError):
        return ErrorKind.FATAL
    message = str(exc).lower()
    if any(pattern in message for pattern in UNRECOVERABLE_PATTERNS):
        return ErrorKind.FATAL
    if any(pattern in message for pattern in SESSION_TERMINATED_PATTERNS):
        return ErrorKind.SESSION_TERMINATED
    return ErrorKind.TRANSIENT
