"""Engram persistence layer."""

from engram.store.database import (
    Database,
    EngramStoreError,
    ImmutableFieldError,
    MessageNotFoundError,
    SessionNotFoundError,
    StoreNotInitializedError,
    now_ms,
)
from engram.store.helpers import HelperProcessRow, HelperProcessStore
from engram.store.lock import WorkerLock, WorkerLockedError
from engram.store.pending import PendingMessage, PendingMessageStore
from engram.store.pool import StorePool
from engram.store.records import RecordStore
from engram.store.sessions import SessionRow, SessionStore

__all__ = [
    "Database",
    "EngramStoreError",
    "HelperProcessRow",
    "HelperProcessStore",
    "ImmutableFieldError",
    "MessageNotFoundError",
    "PendingMessage",
    "PendingMessageStore",
    "RecordStore",
    "SessionNotFoundError",
    "SessionRow",
    "SessionStore",
    "StoreNotInitializedError",
    "StorePool",
    "WorkerLock",
    "WorkerLockedError",
    "now_ms",
]
