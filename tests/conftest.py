"""Shared fixtures: an in-memory process handle and a wired-up registry."""

from __future__ import annotations

import asyncio
import itertools
import signal
from pathlib import Path

import pytest

from dokodemo.config import (
    AutoModeSettings,
    DokodemoConfig,
    ReviewSettings,
    SessionSettings,
    StoreSettings,
)
from dokodemo.pty.registry import SessionRegistry
from dokodemo.session.wire import Wire, WireEvent
from dokodemo.store import JsonStore

_pids = itertools.count(900_000)


class FakeProcess:
    """ProcessHandle stand-in recording writes and signals."""

    def __init__(
        self,
        command: list[str],
        cwd: str,
        cols: int,
        rows: int,
        ignore_term: bool = False,
        ignore_kill: bool = False,
    ) -> None:
        self.command = command
        self.cwd = cwd
        self.cols = cols
        self.rows = rows
        self.ignore_term = ignore_term
        self.ignore_kill = ignore_kill
        self.writes: list[str] = []
        self.signals: list[int] = []
        self._pid = next(_pids)
        self._alive = True
        self._on_data = None
        self._on_exit = None

    @property
    def pid(self) -> int:
        return self._pid

    @property
    def alive(self) -> bool:
        return self._alive

    @property
    def written(self) -> str:
        return "".join(self.writes)

    def attach(self, on_data, on_exit) -> None:
        self._on_data = on_data
        self._on_exit = on_exit

    def write(self, data: str) -> None:
        if not self._alive:
            raise OSError("process exited")
        self.writes.append(data)

    def resize(self, cols: int, rows: int) -> None:
        if not self._alive:
            raise OSError("process exited")
        self.cols, self.rows = cols, rows

    def kill(self, sig: int = signal.SIGTERM) -> None:
        if not self._alive:
            raise ProcessLookupError(self._pid)
        self.signals.append(sig)
        if sig == signal.SIGTERM and self.ignore_term:
            return
        if sig == signal.SIGKILL and self.ignore_kill:
            return
        asyncio.get_running_loop().call_soon(self.finish, None, int(sig))

    def emit(self, text: str) -> None:
        assert self._on_data is not None
        self._on_data(text)

    def finish(self, exit_code: int | None = 0, sig: int | None = None) -> None:
        if not self._alive:
            return
        self._alive = False
        if self._on_exit is not None:
            self._on_exit(exit_code, sig)


class FakeSpawner:
    """Async spawner producing FakeProcess handles."""

    def __init__(self) -> None:
        self.processes: list[FakeProcess] = []
        self.fail = False
        self.delay = 0.0
        self.ignore_term = False
        self.ignore_kill = False

    async def __call__(
        self,
        command: list[str],
        cwd: str,
        env: dict[str, str] | None = None,
        cols: int = 80,
        rows: int = 24,
    ) -> FakeProcess:
        if self.delay:
            await asyncio.sleep(self.delay)
        else:
            await asyncio.sleep(0)
        if self.fail:
            raise OSError("spawn failed")
        process = FakeProcess(
            command,
            cwd,
            cols,
            rows,
            ignore_term=self.ignore_term,
            ignore_kill=self.ignore_kill,
        )
        self.processes.append(process)
        return process

    @property
    def last(self) -> FakeProcess:
        return self.processes[-1]


def drain_events(queue: asyncio.Queue) -> list[WireEvent]:
    """Everything currently queued for a wire subscriber."""
    events = []
    while not queue.empty():
        event = queue.get_nowait()
        if event is not None:
            events.append(event)
    return events


@pytest.fixture
def config(tmp_path: Path) -> DokodemoConfig:
    return DokodemoConfig(
        processes_dir=str(tmp_path / "state"),
        repos_dir=str(tmp_path / "repos"),
        session=SessionSettings(
            grace_period=0.05,
            close_timeout=0.3,
            monitor_interval=60.0,
            shell="bash",
        ),
        automode=AutoModeSettings(
            startup_delay=0.0,
            clear_enter_delay=0.0,
            clear_settle_delay=0.0,
            enter_delay=0.0,
        ),
        review=ReviewSettings(startup_timeout=0.2, port_release_timeout=0.1),
        store=StoreSettings(debounce=0.01),
    )


@pytest.fixture
def spawner() -> FakeSpawner:
    return FakeSpawner()


@pytest.fixture
def wire() -> Wire:
    return Wire()


@pytest.fixture
def alive_pids() -> set[int]:
    return set()


@pytest.fixture
def store(config: DokodemoConfig) -> JsonStore:
    s = JsonStore(config.processes_path, debounce=config.store.debounce)
    s.ensure_dir()
    return s


@pytest.fixture
def registry(
    wire: Wire,
    store: JsonStore,
    config: DokodemoConfig,
    spawner: FakeSpawner,
    alive_pids: set[int],
) -> SessionRegistry:
    return SessionRegistry(
        wire,
        store,
        config.session,
        spawner=spawner,
        prober=lambda pid: pid in alive_pids,
    )
