"""Primary agent: the Claude CLI in print mode."""

from __future__ import annotations

import shutil
from pathlib import Path
from typing import TYPE_CHECKING

from engram.agents.base import ConversationalAgent, format_history
from engram.agents.helper import run_helper
from engram.errors import FatalAgentError
from engram.models.message import ConversationMessage

if TYPE_CHECKING:
    from engram.agents.base import WorkerRef
    from engram.session.context import SessionContext


class ClaudeCliAgent(ConversationalAgent):
    """
    Runs ``claude -p`` once per message with the conversation on stdin.

    The helper runs inside ``observer_dir`` so it never reads or writes the
    user's working tree.
    """

    name = "claude"

    def executable(self) -> str | None:
        if self._config.claude_path:
            path = Path(self._config.claude_path).expanduser()
            return str(path) if path.exists() else None
        return shutil.which("claude")

    def is_available(self) -> bool:
        return self.executable() is not None

    async def _query(
        self,
        ctx: SessionContext,
        worker: WorkerRef,
        history: list[ConversationMessage],
    ) -> str:
        executable = self.executable()
        if executable is None:
            raise FatalAgentError(
                "Claude executable not found. Set CLAUDE_CODE_PATH or ENGRAM_CLAUDE_PATH.",
                agent=self.name,
            )
        return await run_helper(
            [executable, "-p", "--model", self._config.claude_model, "--output-format", "text"],
            format_history(history),
            agent=self.name,
            session_db_id=ctx.session_db_id,
            processes=worker.process_registry,
            cwd=str(Path(self._config.observer_dir).expanduser()),
            timeout=self._config.call_timeout_s,
        )
