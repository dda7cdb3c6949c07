"""Live session state: contexts, cancellation tokens and the registry."""

from engram.session.cancellation import CancellationToken
from engram.session.context import ProcessorState, SessionContext
from engram.session.registry import SessionRegistry

__all__ = [
    "CancellationToken",
    "ProcessorState",
    "SessionContext",
    "SessionRegistry",
]
