"""Tests for prompts, agent selection, error classification and the CLI helper."""

from __future__ import annotations

import asyncio
import stat
from types import SimpleNamespace

import pytest

from engram.agents import build_agents
from engram.agents.base import format_history
from engram.agents.claude import ClaudeCliAgent
from engram.agents.helper import run_helper
from engram.agents.litellm_agent import GeminiAgent, LiteLLMAgent, OpenRouterAgent
from engram.agents.prompts import (
    build_message_prompt,
    build_session_prompt,
)
from engram.agents.selection import fallback_chain, select_agent
from engram.errors import (
    ErrorKind,
    ExtractionCancelledError,
    FatalAgentError,
    SessionTerminatedError,
    TransientAgentError,
    classify_error,
)
from engram.models.config import ProviderConfig
from engram.models.message import ConversationMessage
from engram.processes.registry import ProcessRegistry
from engram.session.cancellation import CancellationToken
from engram.session.context import SessionContext
from engram.store.pending import PendingMessage


def _script(tmp_path, name: str, body: str) -> str:
    path = tmp_path / name
    path.write_text("#!/bin/sh\n" + body)
    path.chmod(path.stat().st_mode | stat.S_IEXEC)
    return str(path)


def _message(kind: str = "observation", **kwargs) -> PendingMessage:
    return PendingMessage(1, 1, "content-1", kind, "processing", 1_700_000_000_000, **kwargs)


# ── Prompts ────────────────────────────────────────────────────────────────────


class TestPrompts:
    def test_fresh_session_gets_init_prompt(self):
        ctx = SessionContext(1, "content-1", project="demo", user_prompt="fix login", prompt_number=1)
        prompt = build_session_prompt(ctx)
        assert "memory observer" in prompt
        assert "fix login" in prompt
        assert 'project "demo"' in prompt

    def test_later_prompt_gets_continuation(self):
        ctx = SessionContext(1, "content-1", project="demo", user_prompt="now tests", prompt_number=3)
        prompt = build_session_prompt(ctx)
        assert "prompt #3" in prompt
        assert "now tests" in prompt

    def test_existing_history_gets_continuation(self):
        ctx = SessionContext(1, "content-1", prompt_number=1)
        ctx.history.append(ConversationMessage(role="user", content="earlier"))
        assert "prompt #1" in build_session_prompt(ctx)

    def test_observation_prompt_renders_tool_call(self):
        ctx = SessionContext(1, "content-1")
        prompt = build_message_prompt(
            ctx,
            _message(tool_name="Edit", tool_input='{"path": "a.py"}', tool_response="ok", cwd="/repo"),
        )
        assert "<what_happened>Edit</what_happened>" in prompt
        assert "<working_directory>/repo</working_directory>" in prompt
        assert '{"path": "a.py"}' in prompt
        assert "2023-11-14" in prompt

    def test_observation_prompt_without_cwd(self):
        prompt = build_message_prompt(SessionContext(1, "c"), _message(tool_name="Read"))
        assert "working_directory" not in prompt

    def test_summarize_prompt(self):
        ctx = SessionContext(1, "content-1", project="demo", user_prompt="ship it")
        prompt = build_message_prompt(
            ctx, _message("summarize", last_assistant_message="All tests pass.")
        )
        assert "<summary>" in prompt
        assert "All tests pass." in prompt
        assert "skip_summary" in prompt

    def test_format_history(self):
        text = format_history(
            [
                ConversationMessage(role="user", content="hi"),
                ConversationMessage(role="assistant", content="hello"),
            ]
        )
        assert text == "User:\nhi\n\nAssistant:\nhello"


# ── Selection ──────────────────────────────────────────────────────────────────


class TestSelection:
    @pytest.fixture
    def agents(self, make_agent):
        return {
            "claude": make_agent("claude"),
            "gemini": make_agent("gemini"),
            "openrouter": make_agent("openrouter"),
            "codex": make_agent("codex", available=False),
        }

    def test_explicit_provider(self, agents):
        assert select_agent("gemini", agents).name == "gemini"
        assert select_agent("openrouter", agents).name == "openrouter"

    def test_unavailable_provider_falls_back_to_primary(self, agents):
        assert select_agent("codex", agents).name == "claude"

    def test_auto_prefers_openrouter_then_gemini(self, agents):
        assert select_agent("auto", agents).name == "openrouter"
        agents["openrouter"].available = False
        assert select_agent("auto", agents).name == "gemini"
        agents["gemini"].available = False
        assert select_agent("auto", agents).name == "claude"

    def test_claude_provider(self, agents):
        assert select_agent("claude", agents).name == "claude"

    def test_fallback_chain_order(self, agents):
        assert [a.name for a in fallback_chain("claude", agents)] == ["gemini", "openrouter"]

    def test_fallback_chain_excludes_failed_and_unavailable(self, agents):
        assert [a.name for a in fallback_chain("gemini", agents)] == ["openrouter"]
        agents["openrouter"].available = False
        assert fallback_chain("gemini", agents) == []

    def test_build_agents_names(self):
        assert set(build_agents(ProviderConfig())) == {"claude", "gemini", "openrouter", "codex"}


# ── Error classification ───────────────────────────────────────────────────────


class TestClassifyError:
    @pytest.mark.parametrize(
        ("exc", "kind"),
        [
            (FatalAgentError("x"), ErrorKind.FATAL),
            (SessionTerminatedError("x"), ErrorKind.SESSION_TERMINATED),
            (TransientAgentError("x"), ErrorKind.TRANSIENT),
            (ExtractionCancelledError("x"), ErrorKind.CANCELLED),
            (asyncio.CancelledError(), ErrorKind.CANCELLED),
            (FileNotFoundError("claude"), ErrorKind.FATAL),
            (RuntimeError("Claude executable not found"), ErrorKind.FATAL),
            (RuntimeError("spawn claude ENOENT"), ErrorKind.FATAL),
            (RuntimeError("ProcessTransport is not ready for writing"), ErrorKind.SESSION_TERMINATED),
            (RuntimeError("Process aborted by user"), ErrorKind.SESSION_TERMINATED),
            (RuntimeError("connection reset by peer"), ErrorKind.TRANSIENT),
            (ValueError("rate limited"), ErrorKind.TRANSIENT),
        ],
    )
    def test_kinds(self, exc, kind):
        assert classify_error(exc) is kind


# ── Cancellation ───────────────────────────────────────────────────────────────


class TestCancellationToken:
    async def test_guard_returns_result(self):
        token = CancellationToken()

        async def work():
            return 42

        assert await token.guard(work()) == 42

    async def test_guard_interrupts_in_flight_work(self):
        token = CancellationToken()
        interrupted = asyncio.Event()

        async def slow():
            try:
                await asyncio.sleep(10)
            except asyncio.CancelledError:
                interrupted.set()
                raise

        asyncio.get_running_loop().call_later(0.05, token.cancel, "shutdown")
        with pytest.raises(ExtractionCancelledError):
            await token.guard(slow())
        assert interrupted.is_set()
        assert token.reason == "shutdown"

    async def test_guard_on_cancelled_token_raises_immediately(self):
        token = CancellationToken()
        token.cancel()

        async def work():
            return 1

        coro = work()
        with pytest.raises(ExtractionCancelledError):
            await token.guard(coro)
        coro.close()

    def test_first_reason_sticks(self):
        token = CancellationToken()
        token.cancel("stale")
        token.cancel("shutdown")
        assert token.reason == "stale"
        assert token.cancelled


# ── CLI helper ─────────────────────────────────────────────────────────────────


class TestRunHelper:
    async def test_stdout_returned_and_process_untracked(self, tmp_path):
        processes = ProcessRegistry()
        script = _script(tmp_path, "echo.sh", "cat\n")
        out = await run_helper(
            [script], "hello", agent="test", session_db_id=1, processes=processes
        )
        assert out == "hello"
        assert processes.count() == 0

    async def test_missing_executable_is_fatal(self, tmp_path):
        with pytest.raises(FatalAgentError):
            await run_helper(
                [str(tmp_path / "missing")],
                "x",
                agent="test",
                session_db_id=1,
                processes=ProcessRegistry(),
            )

    async def test_nonzero_exit_is_transient(self, tmp_path):
        script = _script(tmp_path, "fail.sh", "echo 'overloaded' >&2\nexit 1\n")
        with pytest.raises(TransientAgentError):
            await run_helper([script], "x", agent="test", session_db_id=1, processes=ProcessRegistry())

    async def test_stderr_terminated_pattern(self, tmp_path):
        script = _script(tmp_path, "dead.sh", "echo 'ProcessTransport is not ready for writing' >&2\nexit 1\n")
        with pytest.raises(SessionTerminatedError):
            await run_helper([script], "x", agent="test", session_db_id=1, processes=ProcessRegistry())

    async def test_killed_by_signal_is_session_terminated(self, tmp_path):
        script = _script(tmp_path, "kill.sh", "kill -9 $$\n")
        with pytest.raises(SessionTerminatedError):
            await run_helper([script], "x", agent="test", session_db_id=1, processes=ProcessRegistry())

    async def test_timeout_is_transient(self, tmp_path):
        script = _script(tmp_path, "slow.sh", "sleep 5\n")
        with pytest.raises(TransientAgentError, match="timed out"):
            await run_helper(
                [script], "x", agent="test", session_db_id=1, processes=ProcessRegistry(), timeout=0.2
            )

    async def test_process_tracked_while_running(self, tmp_path):
        processes = ProcessRegistry()
        script = _script(tmp_path, "slow.sh", "sleep 0.5\ncat\n")
        task = asyncio.ensure_future(
            run_helper([script], "x", agent="test", session_db_id=7, processes=processes)
        )
        for _ in range(100):
            if processes.count():
                break
            await asyncio.sleep(0.01)
        assert processes.session_ids() == {7}
        await task
        assert processes.count() == 0


class TestClaudeCliAgent:
    def test_unavailable_with_missing_path(self, tmp_path):
        agent = ClaudeCliAgent(ProviderConfig(claude_path=str(tmp_path / "nope")))
        assert not agent.is_available()

    async def test_query_runs_configured_executable(self, tmp_path):
        script = _script(tmp_path, "claude", 'cat >/dev/null\necho "$@"\n')
        config = ProviderConfig(claude_path=script, observer_dir=str(tmp_path / "observer"))
        agent = ClaudeCliAgent(config)
        worker = SimpleNamespace(process_registry=ProcessRegistry())
        history = [ConversationMessage(role="user", content="hi")]
        out = await agent._query(SessionContext(1, "c"), worker, history)
        assert out.strip() == f"-p --model {config.claude_model} --output-format text"
        assert (tmp_path / "observer").is_dir()

    async def test_query_without_executable_is_fatal(self, tmp_path):
        agent = ClaudeCliAgent(ProviderConfig(claude_path=str(tmp_path / "nope")))
        worker = SimpleNamespace(process_registry=ProcessRegistry())
        with pytest.raises(FatalAgentError):
            await agent._query(SessionContext(1, "c"), worker, [])


class TestLiteLLMAgents:
    def test_base_class_cannot_be_instantiated(self):
        with pytest.raises(TypeError):
            LiteLLMAgent(ProviderConfig())

    def test_availability_follows_api_key(self):
        assert not GeminiAgent(ProviderConfig()).is_available()
        assert GeminiAgent(ProviderConfig(gemini_api_key="k")).is_available()
        assert OpenRouterAgent(ProviderConfig(openrouter_api_key="k")).is_available()

    def test_model_names(self):
        config = ProviderConfig(gemini_model="g", openrouter_model="vendor/m")
        assert GeminiAgent(config).model() == "gemini/g"
        assert OpenRouterAgent(config).model() == "openrouter/vendor/m"

    async def test_query_returns_content(self, monkeypatch):
        import litellm

        calls = []

        async def fake_acompletion(**kwargs):
            calls.append(kwargs)
            return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content="ok"))])

        monkeypatch.setattr(litellm, "acompletion", fake_acompletion)
        agent = GeminiAgent(ProviderConfig(gemini_api_key="k"))
        history = [ConversationMessage(role="user", content="hi")]
        assert await agent._query(SessionContext(1, "c"), SimpleNamespace(), history) == "ok"
        assert calls[0]["messages"] == [{"role": "user", "content": "hi"}]
        assert calls[0]["api_key"] == "k"

    async def test_empty_response_is_transient(self, monkeypatch):
        import litellm

        async def fake_acompletion(**kwargs):
            return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=""))])

        monkeypatch.setattr(litellm, "acompletion", fake_acompletion)
        agent = OpenRouterAgent(ProviderConfig(openrouter_api_key="k"))
        with pytest.raises(TransientAgentError):
            await agent._query(SessionContext(1, "c"), SimpleNamespace(), [])

    async def test_missing_key_is_fatal(self):
        with pytest.raises(FatalAgentError):
            await GeminiAgent(ProviderConfig())._query(SessionContext(1, "c"), SimpleNamespace(), [])
