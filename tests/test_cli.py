"""Tests for the ``engram`` command line."""

from __future__ import annotations

import asyncio
import json

import pytest
from typer.testing import CliRunner

from engram.cli import app
from engram.models.config import EngramConfig
from engram.models.message import MessagePayload
from engram.store.database import Database
from engram.store.lock import WorkerLock
from engram.store.pending import PendingMessageStore
from engram.store.sessions import SessionStore

runner = CliRunner()


@pytest.fixture(autouse=True)
def _isolate(monkeypatch):
    for name in ("ENGRAM_DATA_DIR", "ENGRAM_DB_PATH", "ENGRAM_PROVIDER"):
        monkeypatch.delenv(name, raising=False)
    # configure_logging would bind structlog to the runner's captured stderr
    monkeypatch.setattr("engram.cli.configure_logging", lambda *args, **kwargs: None)


@pytest.fixture
def settings(tmp_path):
    path = tmp_path / "settings.json"
    path.write_text(
        json.dumps(
            {
                "store": {"db_path": str(tmp_path / "engram.db")},
                "queue": {"poll_interval_s": 0.05, "idle_timeout_s": 0.3},
                "recovery": {"start_delay_s": 0.0, "reap_grace_s": 0.5},
                "providers": {"provider": "claude", "observer_dir": str(tmp_path / "observer")},
                "worker": {"shutdown_timeout_s": 3.0, "cancel_grace_s": 0.5},
            }
        )
    )
    return path


async def _seed(settings_path, *, claim: bool) -> list[int]:
    """Create one session with three queued messages, the first optionally in flight."""
    db = Database(EngramConfig.load(settings_path).store)
    await db.initialize()
    try:
        sessions = SessionStore(db)
        pending = PendingMessageStore(db)
        row = await sessions.create_or_get("content-1", project="demo")
        ids = [
            await pending.enqueue(row.id, "content-1", "observation", MessagePayload(tool_name="Read"))
            for _ in range(3)
        ]
        if claim:
            await pending.claim_next(row.id)
        return ids
    finally:
        await db.close()


async def _statuses(settings_path, ids: list[int]) -> list[str]:
    db = Database(EngramConfig.load(settings_path).store)
    await db.initialize()
    try:
        pending = PendingMessageStore(db)
        return [(await pending.get(i)).status for i in ids]
    finally:
        await db.close()


class TestStatus:
    def test_counts_on_seeded_database(self, settings):
        asyncio.run(_seed(settings, claim=True))

        result = runner.invoke(app, ["status", "--settings", str(settings)])

        assert result.exit_code == 0, result.output
        assert "Message queue" in result.output
        lines = result.output.splitlines()
        assert any("pending" in line and "2" in line for line in lines)
        assert any("processing" in line and "1" in line for line in lines)
        assert any("active" in line and "1" in line for line in lines)
        assert "Sessions with undrained queues: 1" in result.output
        assert "Worker: not running" in result.output

    def test_reports_running_owner(self, settings, tmp_path):
        asyncio.run(_seed(settings, claim=False))
        lock = WorkerLock(str(tmp_path / "engram.db"))
        lock.acquire()
        try:
            result = runner.invoke(app, ["status", "--settings", str(settings)])
        finally:
            lock.release()
        assert result.exit_code == 0, result.output
        assert "Worker: running" in result.output


class TestRecover:
    def test_drains_leftover_processing_row(self, settings, agents, monkeypatch):
        monkeypatch.setattr("engram.worker.build_agents", lambda *args, **kwargs: agents)
        ids = asyncio.run(_seed(settings, claim=True))

        result = runner.invoke(app, ["recover", "--settings", str(settings)])

        assert result.exit_code == 0, result.output
        assert "Recovered 1 session(s)" in result.output
        assert asyncio.run(_statuses(settings, ids)) == ["processed"] * 3
        assert len(agents["claude"].prompts) == 3

    def test_refuses_while_queue_is_owned(self, settings, tmp_path, agents, monkeypatch):
        monkeypatch.setattr("engram.worker.build_agents", lambda *args, **kwargs: agents)
        ids = asyncio.run(_seed(settings, claim=True))
        lock = WorkerLock(str(tmp_path / "engram.db"))
        lock.acquire()
        try:
            result = runner.invoke(app, ["recover", "--settings", str(settings)])
        finally:
            lock.release()

        assert result.exit_code == 1
        assert "owned by pid" in result.output
        assert agents["claude"].prompts == []
        assert asyncio.run(_statuses(settings, ids)) == ["processing", "pending", "pending"]


class TestHelp:
    def test_lists_commands(self):
        result = runner.invoke(app, ["--help"])
        assert result.exit_code == 0
        for command in ("run", "status", "recover"):
            assert command in result.output
