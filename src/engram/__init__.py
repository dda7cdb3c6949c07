"""
Engram: durable session processing that turns coding-session events into structured memory.

Primary entry point::

    from engram import WorkerService, EngramConfig

    worker = WorkerService(EngramConfig.load())
    await worker.start()
    await worker.enqueue_observation("content-1", tool_name="Edit", tool_input={...})
    await worker.stop()
"""

from engram.agents import (
    ClaudeCliAgent,
    CodexAgent,
    ExtractionAgent,
    GeminiAgent,
    OpenRouterAgent,
    build_agents,
    select_agent,
)
from engram.errors import (
    AgentError,
    DuplicateSessionError,
    ErrorKind,
    ExtractionCancelledError,
    FatalAgentError,
    SessionTerminatedError,
    TransientAgentError,
    WorkerNotRunningError,
    classify_error,
)
from engram.events.bus import EngramEvent, EventBus
from engram.ids import make_id
from engram.models import (
    EngramConfig,
    MessagePayload,
    ProviderConfig,
    QueueConfig,
    RecoveryConfig,
    StoreConfig,
    WorkerConfig,
)
from engram.processor import SessionProcessor
from engram.recovery import RecoveryCoordinator
from engram.session import CancellationToken, ProcessorState, SessionContext, SessionRegistry
from engram.store import PendingMessageStore, SessionStore, StorePool, WorkerLockedError
from engram.worker import WorkerService

__version__ = "0.1.0"

__all__ = [
    # Core
    "WorkerService",
    "SessionProcessor",
    "RecoveryCoordinator",
    "SessionRegistry",
    "SessionContext",
    "ProcessorState",
    "CancellationToken",
    "make_id",
    # Config
    "EngramConfig",
    "ProviderConfig",
    "QueueConfig",
    "RecoveryConfig",
    "StoreConfig",
    "WorkerConfig",
    "MessagePayload",
    # Store
    "PendingMessageStore",
    "SessionStore",
    "StorePool",
    "WorkerLockedError",
    # Agents
    "ExtractionAgent",
    "ClaudeCliAgent",
    "CodexAgent",
    "GeminiAgent",
    "OpenRouterAgent",
    "build_agents",
    "select_agent",
    # Errors
    "AgentError",
    "DuplicateSessionError",
    "ErrorKind",
    "ExtractionCancelledError",
    "FatalAgentError",
    "SessionTerminatedError",
    "TransientAgentError",
    "WorkerNotRunningError",
    "classify_error",
    # Events
    "EngramEvent",
    "EventBus",
]
