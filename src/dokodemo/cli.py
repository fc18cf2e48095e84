"""CLI entry point for dokodemo."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import signal
from pathlib import Path

import typer

from dokodemo.config import DokodemoConfig
from dokodemo.model import Provider, SessionRecord
from dokodemo.pty.buffer import HistoryBuffer
from dokodemo.store import (
    AUTOMODE_CONFIGS,
    AUTOMODE_STATES,
    SHORTCUTS,
    TERMINALS,
    JsonStore,
)

app = typer.Typer(
    name="dokodemo",
    help="Run and inspect long-lived AI CLI and shell sessions per repository.",
    no_args_is_help=True,
)


def setup_logging(verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def _store(config: DokodemoConfig) -> JsonStore:
    return JsonStore(config.processes_path, debounce=config.store.debounce)


@app.command()
def run(
    repository: list[str] = typer.Option(
        [],
        "--repo",
        "-r",
        help="Repository to open an AI session in (repeatable).",
    ),
    provider: Provider = typer.Option(
        Provider.CLAUDE, "--provider", "-p", help="AI CLI to launch."
    ),
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Enable debug logging."
    ),
    config_file: str | None = typer.Option(
        None, "--config", "-c", help="Config file path."
    ),
) -> None:
    """Start the manager and stream its events as JSON lines until interrupted."""
    setup_logging(verbose)
    config = DokodemoConfig.load(config_file)
    typer.echo(f"State: {config.processes_path}", err=True)
    asyncio.run(_run(config, repository, provider))


async def _run(
    config: DokodemoConfig, repositories: list[str], provider: Provider
) -> None:
    from dokodemo.manager import Manager

    manager = Manager(config)
    restored = await manager.initialize()
    typer.echo(f"Restored {restored} session(s)", err=True)

    queue = manager.wire.subscribe()

    async def _consume_wire() -> None:
        while True:
            event = await queue.get()
            if event is None:
                break
            line = {"type": event.type.value, **event.data}
            print(json.dumps(line, ensure_ascii=False, default=str), flush=True)

    consumer = asyncio.create_task(_consume_wire())

    for repo in repositories:
        path = os.path.abspath(repo)
        session = await manager.ensure_ai_session(path, Path(path).name, provider)
        if session is None:
            typer.echo(f"Error: could not start {provider} in {path}", err=True)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    await stop.wait()
    typer.echo("Shutting down...", err=True)
    await manager.shutdown_all()
    await consumer


@app.command()
def sessions(
    config_file: str | None = typer.Option(
        None, "--config", "-c", help="Config file path."
    ),
) -> None:
    """List persisted AI sessions and terminals."""
    config = DokodemoConfig.load(config_file)
    records = asyncio.run(_load_sessions(_store(config)))
    if not records:
        typer.echo("No sessions.")
        return
    for r in records:
        label = r.provider or r.name or r.kind
        typer.echo(
            f"{r.id[:8]}  {r.kind:<5}  {label:<12}  pid={r.pid:<7} "
            f"lines={len(r.output_history):<4} {r.repository_path}"
        )


async def _load_sessions(store: JsonStore) -> list[SessionRecord]:
    records = await store.load_session_records()
    records += await store.load_models(TERMINALS, SessionRecord)
    return records


@app.command()
def history(
    repository: str = typer.Argument(help="Repository path."),
    provider: Provider = typer.Option(Provider.CLAUDE, "--provider", "-p"),
    tail: int = typer.Option(50, "--tail", "-n", help="Entries to show."),
    config_file: str | None = typer.Option(
        None, "--config", "-c", help="Config file path."
    ),
) -> None:
    """Print the persisted output history of an AI session."""
    config = DokodemoConfig.load(config_file)
    path = os.path.abspath(repository)
    records = asyncio.run(_store(config).load_session_records())
    matching = [
        r for r in records if r.repository_path == path and r.provider == provider
    ]
    if not matching:
        typer.echo(f"No history for {provider} in {path}", err=True)
        raise typer.Exit(1)
    latest = max(matching, key=lambda r: r.last_accessed_at)
    buffer = HistoryBuffer(config.session.history_limit)
    buffer.extend(latest.output_history)
    for line in buffer.tail(tail):
        typer.echo(line.content, nl=False)
    typer.echo()


@app.command()
def shortcuts(
    repository: str = typer.Argument(help="Repository path."),
    config_file: str | None = typer.Option(
        None, "--config", "-c", help="Config file path."
    ),
) -> None:
    """List saved command shortcuts of a repository."""
    config = DokodemoConfig.load(config_file)
    path = os.path.abspath(repository)
    items = asyncio.run(_store(config).load(SHORTCUTS))
    found = [s for s in items if s.get("repositoryPath") == path]
    if not found:
        typer.echo("No shortcuts.")
        return
    for s in sorted(found, key=lambda s: s.get("createdAt", 0)):
        typer.echo(f"{s.get('name') or s.get('command')}: {s.get('command')}")


@app.command()
def automode(
    repository: str = typer.Argument(help="Repository path."),
    config_file: str | None = typer.Option(
        None, "--config", "-c", help="Config file path."
    ),
) -> None:
    """Show auto-mode configs and state of a repository."""
    config = DokodemoConfig.load(config_file)
    path = os.path.abspath(repository)
    store = _store(config)
    configs = asyncio.run(store.load(AUTOMODE_CONFIGS))
    states = asyncio.run(store.load(AUTOMODE_STATES))

    state = next((s for s in states if s.get("repositoryPath") == path), None)
    running = bool(state and state.get("isRunning"))
    current = state.get("currentConfigId") if state else None
    typer.echo(f"Auto-mode: {'running' if running else 'idle'}")
    for c in configs:
        if c.get("repositoryPath") != path:
            continue
        marker = "*" if c.get("id") == current else " "
        enabled = "" if c.get("isEnabled", True) else " (disabled)"
        typer.echo(f"{marker} {c.get('name')}{enabled}: {c.get('prompt')}")


def main() -> None:
    app()


if __name__ == "__main__":
    main()
