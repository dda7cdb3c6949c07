"""Run a text-in/text-out CLI helper for one model call."""

from __future__ import annotations

import asyncio
import os

import structlog

from engram.errors import (
    ErrorKind,
    FatalAgentError,
    SessionTerminatedError,
    TransientAgentError,
    classify_error,
)
from engram.processes.registry import ProcessRegistry

_logger = structlog.get_logger("engram.agents.helper")

_ERRORS_BY_KIND = {
    ErrorKind.FATAL: FatalAgentError,
    ErrorKind.SESSION_TERMINATED: SessionTerminatedError,
}


async def run_helper(
    args: list[str],
    prompt: str,
    *,
    agent: str,
    session_db_id: int,
    processes: ProcessRegistry,
    cwd: str | None = None,
    timeout: float = 300.0,
    env: dict[str, str] | None = None,
) -> str:
    """
    Spawn *args*, write *prompt* to stdin and return stdout.

    The process is tracked in *processes* while it runs so the recovery pass
    can reap it if its session disappears.

    Raises:
        FatalAgentError: The executable does not exist or cannot be run.
        SessionTerminatedError: The helper was killed by a signal, or its
            stderr says the underlying session is gone.
        TransientAgentError: Timeout or any other non-zero exit.
    """
    if cwd is not None:
        os.makedirs(cwd, exist_ok=True)
    try:
        process = await asyncio.create_subprocess_exec(
            *args,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=cwd,
            env={**os.environ, **(env or {})},
        )
    except (FileNotFoundError, PermissionError) as exc:
        raise FatalAgentError(f"{agent} executable not found: {args[0]} ({exc})", agent=agent) from exc

    async with processes.track(session_db_id, process, args[0]):
        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(prompt.encode()), timeout=timeout
            )
        except TimeoutError as exc:
            if process.returncode is None:
                process.kill()
                await process.wait()
            raise TransientAgentError(f"{agent} timed out after {timeout}s", agent=agent) from exc
        except asyncio.CancelledError:
            if process.returncode is None:
                process.kill()
                await process.wait()
            raise

    stderr_text = stderr.decode(errors="replace").strip()
    returncode = process.returncode or 0
    if returncode < 0:
        raise SessionTerminatedError(
            f"{agent} process killed by signal {-returncode}", agent=agent
        )
    if returncode != 0:
        message = f"{agent} exited with code {returncode}: {stderr_text[:500]}"
        error_cls = _ERRORS_BY_KIND.get(classify_error(Exception(stderr_text)), TransientAgentError)
        _logger.warning(
            "helper_failed",
            agent=agent,
            session_db_id=session_db_id,
            returncode=returncode,
            error_kind=error_cls.kind.value,
        )
        raise error_cls(message, agent=agent)
    return stdout.decode(errors="replace")
