"""Manager — the single context object owning every dokodemo component.

One ``Manager`` is built at process start and handed to the transport
layer. It wires the registry, lifecycle controller, scheduler, review
supervisor and shortcut store to one ``Wire`` and one ``JsonStore``;
nothing is held in module-level state.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from dokodemo.automode import AutoModeScheduler, HookResponse, handle_hook
from dokodemo.config import DokodemoConfig
from dokodemo.model import Provider
from dokodemo.pty.lifecycle import LifecycleController, PidTerminator
from dokodemo.pty.liveness import is_process_alive, terminate_pid
from dokodemo.pty.process import PTYProcess
from dokodemo.pty.registry import Prober, SessionRegistry, Spawner
from dokodemo.pty.session import Session
from dokodemo.review import ReviewServerSupervisor
from dokodemo.session.wire import Wire
from dokodemo.shortcut import ShortcutStore
from dokodemo.store import JsonStore

logger = logging.getLogger(__name__)


class Manager:
    """Owns the lifecycle of all sessions, timers and review servers.

    - ``initialize`` restores persisted state and starts the ghost monitor
    - ``cleanup_repository`` tears down everything tied to one repository
    - ``shutdown_all`` closes every session and flushes state to disk
    """

    def __init__(
        self,
        config: DokodemoConfig,
        wire: Wire | None = None,
        spawner: Spawner = PTYProcess.spawn,
        prober: Prober = is_process_alive,
        pid_terminator: PidTerminator = terminate_pid,
    ) -> None:
        self.config = config
        self.wire = wire or Wire()
        self.store = JsonStore(config.processes_path, debounce=config.store.debounce)
        self.registry = SessionRegistry(
            self.wire, self.store, config.session, spawner=spawner, prober=prober
        )
        self.lifecycle = LifecycleController(
            self.registry, self.wire, config.session, pid_terminator=pid_terminator
        )
        self.automode = AutoModeScheduler(
            self.wire, self.registry, self.store, config.automode
        )
        self.review = ReviewServerSupervisor(
            self.wire,
            config.review,
            shell=config.session.shell,
            grace_period=config.session.grace_period,
            spawner=spawner,
        )
        self.shortcuts = ShortcutStore(self.registry, self.store)
        self._monitor: asyncio.Task | None = None

    async def initialize(self) -> int:
        """Load persisted state. Returns the number of ghost sessions restored."""
        self.store.ensure_dir()
        await self.store.migrate()
        restored = await self.registry.restore()
        await self.shortcuts.restore()
        await self.automode.restore()
        self._monitor = asyncio.create_task(self._monitor_ghosts())
        logger.info("Manager initialized from %s", self.store.root)
        return restored

    async def _monitor_ghosts(self) -> None:
        while True:
            await asyncio.sleep(self.config.session.monitor_interval)
            self.registry.sweep_dead_ghosts()

    # ----- sessions ---------------------------------------------------------

    async def ensure_ai_session(
        self,
        repository_path: str,
        repository_name: str,
        provider: Provider = Provider.CLAUDE,
        size: tuple[int, int] | None = None,
    ) -> Session | None:
        return await self.registry.ensure_ai_session(
            repository_path, repository_name, provider, size
        )

    async def create_terminal(
        self,
        repository_path: str,
        repository_name: str,
        terminal_name: str | None = None,
        size: tuple[int, int] | None = None,
    ) -> Session | None:
        """Spawn a terminal; the repository's first one seeds default shortcuts."""
        first = not self.registry.terminals(repository_path)
        terminal = await self.registry.create_terminal(
            repository_path, repository_name, terminal_name, size
        )
        if terminal is not None and first:
            self.shortcuts.ensure_defaults(repository_path)
        return terminal

    async def recreate_ai_session(
        self,
        repository_path: str,
        repository_name: str,
        provider: Provider = Provider.CLAUDE,
        size: tuple[int, int] | None = None,
    ) -> Session | None:
        """Replace the (repository, provider) session with a fresh one and no history."""
        existing = self.registry.active_ai_session(repository_path, provider)
        if existing is not None:
            await self.lifecycle.close(existing.id)
        self.registry.clear_ai_history(repository_path, provider)
        return await self.registry.ensure_ai_session(
            repository_path, repository_name, provider, size
        )

    async def close_session(self, session_id: str) -> bool:
        return await self.lifecycle.close(session_id)

    def handle_hook(self, payload: dict[str, Any]) -> HookResponse:
        return handle_hook(self.automode, payload, self.config.repos_path)

    # ----- teardown ---------------------------------------------------------

    async def cleanup_repository(self, repository_path: str) -> None:
        """Close and forget everything belonging to ``repository_path``."""
        self.automode.cleanup_repository(repository_path)
        await asyncio.gather(
            self.lifecycle.close_repository(repository_path),
            self.review.cleanup_repository(repository_path),
        )
        for provider in Provider:
            self.registry.clear_ai_history(repository_path, provider)
        self.shortcuts.cleanup_repository(repository_path)
        self.registry.persist()
        await self.store.flush()
        logger.info("Cleaned up repository %s", repository_path)

    async def shutdown_all(self) -> None:
        """Stop everything. Called once on process shutdown."""
        if self._monitor is not None:
            self._monitor.cancel()
            try:
                await self._monitor
            except asyncio.CancelledError:
                pass
            self._monitor = None

        await self.automode.shutdown()
        closed, _ = await asyncio.gather(
            self.lifecycle.close_all(), self.review.shutdown()
        )
        self.lifecycle.shutdown()
        self.registry.persist()
        await self.store.flush()
        self.wire.close()
        logger.info("Shutdown complete (%d session(s) closed)", closed)
