"""Codex CLI agent (``codex exec``), selectable with ``provider = "codex"``."""

from __future__ import annotations

import shutil
import tempfile
from pathlib import Path
from typing import TYPE_CHECKING

from engram.agents.base import ConversationalAgent, format_history
from engram.agents.helper import run_helper
from engram.errors import FatalAgentError
from engram.models.message import ConversationMessage

if TYPE_CHECKING:
    from engram.agents.base import WorkerRef
    from engram.session.context import SessionContext


class CodexAgent(ConversationalAgent):
    """
    Stateless: every call re-sends the truncated conversation, and the final
    message is read back from the file ``--output-last-message`` writes.
    """

    name = "codex"

    def executable(self) -> str | None:
        if self._config.codex_path:
            path = Path(self._config.codex_path).expanduser()
            return str(path) if path.exists() else None
        return shutil.which("codex")

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
            raise FatalAgentError("Codex executable not found", agent=self.name)
        observer_dir = str(Path(self._config.observer_dir).expanduser())
        with tempfile.TemporaryDirectory(prefix="engram-codex-") as tmp:
            output_file = Path(tmp) / "last-message.txt"
            stdout = await run_helper(
                [
                    executable,
                    "exec",
                    "--skip-git-repo-check",
                    "--sandbox",
                    "read-only",
                    "--output-last-message",
                    str(output_file),
                    "-C",
                    observer_dir,
                    "-",
                ],
                format_history(history),
                agent=self.name,
                session_db_id=ctx.session_db_id,
                processes=worker.process_registry,
                cwd=observer_dir,
                timeout=self._config.call_timeout_s,
            )
            if output_file.exists():
                return output_file.read_text()
            return stdout
