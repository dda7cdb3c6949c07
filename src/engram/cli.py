"""``engram`` command line: run the worker, inspect the queue, force recovery."""

from __future__ import annotations

import asyncio
import signal
from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from engram.logging import configure_logging
from engram.models.config import EngramConfig
from engram.store.database import Database
from engram.store.pending import PendingMessageStore
from engram.store.lock import WorkerLock, WorkerLockedError
from engram.store.sessions import SessionStore
from engram.worker import WorkerService

app = typer.Typer(
    name="engram",
    help="Turn coding-session events into structured memory.",
    add_completion=False,
    no_args_is_help=True,
)
console = Console()

DEFAULT_SETTINGS = Path("~/.engram/settings.json")


def _load_config(settings: Path | None) -> EngramConfig:
    return EngramConfig.load(settings if settings is not None else DEFAULT_SETTINGS)


def _run_owner(main) -> None:
    """Run a coroutine that starts a worker; exit 1 if another process owns the queue."""
    try:
        asyncio.run(main)
    except WorkerLockedError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1) from exc


@app.callback()
def main(
    log_level: str = typer.Option("INFO", "--log-level", help="Minimum log level."),
    json_logs: bool = typer.Option(False, "--json-logs", help="Emit JSON log lines."),
) -> None:
    configure_logging(log_level, json_output=json_logs)


@app.command()
def run(
    settings: Path | None = typer.Option(None, "--settings", "-s", help="Settings JSON file."),
) -> None:
    """Run the worker until SIGINT/SIGTERM, then shut down gracefully."""
    config = _load_config(settings)

    async def _serve() -> None:
        worker = WorkerService(config)
        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop.set)
        await worker.start()
        console.print(f"[green]engram worker running[/green] (db: {worker.db.db_path})")
        try:
            await stop.wait()
        finally:
            console.print("[yellow]Shutting down...[/yellow]")
            await worker.stop()

    _run_owner(_serve())


@app.command()
def status(
    settings: Path | None = typer.Option(None, "--settings", "-s", help="Settings JSON file."),
) -> None:
    """Show queue and session counts."""
    config = _load_config(settings)

    async def _collect() -> tuple[dict[str, int], dict[str, int], list[int]]:
        db = Database(config.store)
        await db.initialize()
        try:
            pending = PendingMessageStore(db)
            sessions = SessionStore(db)
            return (
                await pending.status_counts(),
                await sessions.status_counts(),
                await pending.sessions_with_pending_work(),
            )
        finally:
            await db.close()

    message_counts, session_counts, waiting = asyncio.run(_collect())

    table = Table(title="Message queue")
    table.add_column("Status")
    table.add_column("Messages", justify="right")
    for name, count in message_counts.items():
        table.add_row(name, str(count))
    console.print(table)

    table = Table(title="Sessions")
    table.add_column("Status")
    table.add_column("Sessions", justify="right")
    for name, count in session_counts.items():
        table.add_row(name, str(count))
    console.print(table)

    console.print(f"Sessions with undrained queues: [bold]{len(waiting)}[/bold]")
    owner = "running" if WorkerLock(config.store.db_path).is_locked() else "not running"
    console.print(f"Worker: [bold]{owner}[/bold]")


@app.command()
def recover(
    settings: Path | None = typer.Option(None, "--settings", "-s", help="Settings JSON file."),
) -> None:
    """
    Run one startup recovery pass and drain what it finds, then exit.

    Refuses to run while another worker owns the queue.
    """
    config = _load_config(settings)

    async def _recover() -> None:
        worker = WorkerService(config)
        await worker.start()
        try:
            console.print(
                f"Recovered [bold]{len(worker.registry.running_ids())}[/bold] session(s); draining..."
            )
        finally:
            await worker.stop()

    _run_owner(_recover())


if __name__ == "__main__":
    app()
