"""Engram data models."""

from engram.models.config import (
    EngramConfig,
    ProviderConfig,
    ProviderName,
    QueueConfig,
    RecoveryConfig,
    StoreConfig,
    WorkerConfig,
)
from engram.models.message import (
    ConversationMessage,
    MessageKind,
    MessagePayload,
    MessageStatus,
    ParsedObservation,
    ParsedOutput,
    ParsedSummary,
    ProcessingStatus,
    RecoveryResult,
    SessionStatus,
    StoredRecords,
    WorkerStatus,
)

__all__ = [
    # Config
    "EngramConfig",
    "ProviderConfig",
    "ProviderName",
    "QueueConfig",
    "RecoveryConfig",
    "StoreConfig",
    "WorkerConfig",
    # Queue
    "MessageKind",
    "MessagePayload",
    "MessageStatus",
    "SessionStatus",
    # Conversation and extraction
    "ConversationMessage",
    "ParsedObservation",
    "ParsedOutput",
    "ParsedSummary",
    "StoredRecords",
    # Status
    "ProcessingStatus",
    "RecoveryResult",
    "WorkerStatus",
]
