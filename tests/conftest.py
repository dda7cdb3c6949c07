"""Shared fixtures for Engram tests."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

import pytest
import pytest_asyncio

from engram.agents.base import ConversationalAgent
from engram.events.bus import EngramEvent, EventBus
from engram.models.config import (
    EngramConfig,
    ProviderConfig,
    QueueConfig,
    RecoveryConfig,
    StoreConfig,
    WorkerConfig,
)
from engram.models.message import ConversationMessage, MessagePayload
from engram.store.database import Database
from engram.store.pending import PendingMessageStore
from engram.store.pool import StorePool
from engram.store.records import RecordStore
from engram.store.sessions import SessionStore
from engram.worker import WorkerService

OBSERVATION_XML = """\
<observation>
  <type>discovery</type>
  <title>Read the config loader</title>
  <narrative>The loader merges a JSON file with environment overrides.</narrative>
  <facts><fact>ENGRAM_DB_PATH wins over ENGRAM_DATA_DIR</fact></facts>
  <files_read><file>src/config.py</file></files_read>
</observation>
"""


class ScriptedAgent(ConversationalAgent):
    """
    Agent whose model calls are scripted.

    ``responses`` is consumed one entry per call: a string is returned, an
    exception is raised. Once empty, every call returns ``OBSERVATION_XML``.
    ``fail_on_start`` exceptions are raised by successive ``start_session``
    calls before any message is consumed.
    """

    def __init__(
        self,
        name: str,
        *,
        available: bool = True,
        responses: list[Any] | None = None,
        fail_on_start: list[BaseException] | None = None,
        delay: float = 0.0,
    ) -> None:
        super().__init__(ProviderConfig())
        self.name = name
        self.available = available
        self.responses = list(responses or [])
        self.fail_on_start = list(fail_on_start or [])
        self.delay = delay
        self.starts = 0
        self.prompts: list[str] = []

    def is_available(self) -> bool:
        return self.available

    async def start_session(self, ctx, worker) -> None:
        self.starts += 1
        if self.fail_on_start:
            raise self.fail_on_start.pop(0)
        await super().start_session(ctx, worker)

    async def _query(self, ctx, worker, history: list[ConversationMessage]) -> str:
        self.prompts.append(history[-1].content)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.responses:
            response = self.responses.pop(0)
            if isinstance(response, BaseException):
                raise response
            return response
        return OBSERVATION_XML


@pytest.fixture
def config(tmp_path):
    """EngramConfig with a temp database and short timings."""
    return EngramConfig(
        store=StoreConfig(db_path=str(tmp_path / "engram.db")),
        queue=QueueConfig(poll_interval_s=0.05, idle_timeout_s=0.3, restart_backoff_s=0.0),
        recovery=RecoveryConfig(start_delay_s=0.0, reap_grace_s=0.5),
        providers=ProviderConfig(provider="claude", observer_dir=str(tmp_path / "observer")),
        worker=WorkerConfig(shutdown_timeout_s=2.0, cancel_grace_s=0.5),
    )


@pytest_asyncio.fixture
async def pool(config):
    """StorePool for the test database. Closed after each test."""
    p = StorePool()
    yield p
    await p.close_all()


@pytest_asyncio.fixture
async def db(config, pool):
    """Initialized Database backed by a temp SQLite file (pool-managed)."""
    d = Database(config.store, pool=pool)
    await d.initialize()
    yield d
    await d.close()


@pytest.fixture
def pending(db):
    return PendingMessageStore(db)


@pytest.fixture
def sessions(db):
    return SessionStore(db)


@pytest.fixture
def records(db, pending):
    return RecordStore(db, pending)


@pytest_asyncio.fixture
async def session_row(sessions):
    """A pre-created active session."""
    return await sessions.create_or_get("content-1", project="demo", user_prompt="fix the bug")


@pytest.fixture
def payload():
    """Factory for observation payloads."""

    def _make(tool_name: str = "Read", **kwargs: Any) -> MessagePayload:
        return MessagePayload(
            tool_name=tool_name,
            tool_input=kwargs.pop("tool_input", {"path": "src/app.py"}),
            tool_response=kwargs.pop("tool_response", "file contents"),
            cwd=kwargs.pop("cwd", "/repo"),
            **kwargs,
        )

    return _make


@pytest.fixture
def event_bus():
    """EventBus with a .collected list for asserting events."""
    bus = EventBus()
    collected: list[tuple[EngramEvent, dict[str, Any]]] = []

    def _collect(event: EngramEvent, payload: dict[str, Any]) -> None:
        collected.append((event, payload))

    bus.subscribe_all(_collect)
    bus.collected = collected  # type: ignore[attr-defined]
    return bus


@pytest.fixture
def make_agent():
    """Factory for ScriptedAgent instances."""
    return ScriptedAgent


@pytest.fixture
def agents():
    """Default agent set: a working primary, both secondaries unavailable."""
    return {
        "claude": ScriptedAgent("claude"),
        "gemini": ScriptedAgent("gemini", available=False),
        "openrouter": ScriptedAgent("openrouter", available=False),
    }


@pytest_asyncio.fixture
async def make_worker(config, pool, event_bus):
    """Factory for WorkerService instances; every worker is stopped after the test."""
    created: list[WorkerService] = []

    def _make(agents: dict[str, Any], cfg: EngramConfig | None = None) -> WorkerService:
        worker = WorkerService(cfg or config, pool=pool, agents=agents, event_bus=event_bus)
        created.append(worker)
        return worker

    yield _make
    for worker in created:
        await worker.stop(timeout=0.5)


@pytest_asyncio.fixture
async def worker(make_worker, agents):
    """A started WorkerService using the default scripted agents."""
    w = make_worker(agents)
    await w.start()
    return w


@pytest.fixture
def eventually():
    """Poll an async predicate until it is truthy or the timeout expires."""

    async def _eventually(
        check: Callable[[], Awaitable[Any]], *, timeout: float = 5.0, interval: float = 0.02
    ) -> Any:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            result = await check()
            if result:
                return result
            if loop.time() >= deadline:
                raise AssertionError(f"condition not met within {timeout}s")
            await asyncio.sleep(interval)

    return _eventually
