"""Engram event bus."""

from engram.events.bus import EngramEvent, EventBus, Handler
from engram.events.payloads import (
    FallbackPayload,
    MessagesAbandonedPayload,
    ProcessingStatusPayload,
    ProcessorEventPayload,
    RecordStoredPayload,
    RecoveryCompletedPayload,
    SessionEventPayload,
)

__all__ = [
    "EngramEvent",
    "EventBus",
    "FallbackPayload",
    "Handler",
    "MessagesAbandonedPayload",
    "ProcessingStatusPayload",
    "ProcessorEventPayload",
    "RecordStoredPayload",
    "RecoveryCompletedPayload",
    "SessionEventPayload",
]
