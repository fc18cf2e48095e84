"""Auto-mode — re-prompts an assistant session whenever it finishes a turn.

Each repository is either Idle or Running with one current config. Hook
events arriving sooner than ``min_interval`` after the previous dispatch
are deferred by a single per-repository timer; a new hook replaces the
pending timer rather than adding a second one.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import math
import time
from dataclasses import asdict, dataclass
from functools import partial
from pathlib import Path
from typing import Any, Callable, Coroutine

from pydantic import ValidationError

from dokodemo.config import AutoModeSettings
from dokodemo.model import AutoModeConfig, AutoModeState, Provider
from dokodemo.pty.registry import SessionRegistry
from dokodemo.session.wire import Wire
from dokodemo.store import AUTOMODE_CONFIGS, AUTOMODE_STATES, JsonStore
from dokodemo.timers import KeyedTimers

logger = logging.getLogger(__name__)

Clock = Callable[[], float]

_UPDATABLE = frozenset(
    {"name", "prompt", "is_enabled", "send_clear_command", "provider"}
)


class HookOutcome(enum.StrEnum):
    IGNORED = "ignored"
    WAITING = "waiting"
    DISPATCHED = "dispatched"


@dataclass
class AutoModeStatus:
    is_running: bool
    config_id: str | None = None
    is_waiting: bool = False
    remaining_time: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class AutoModeScheduler:
    """Per-repository auto-mode state machine."""

    def __init__(
        self,
        wire: Wire,
        registry: SessionRegistry,
        store: JsonStore,
        settings: AutoModeSettings,
        clock: Clock = time.time,
    ) -> None:
        self._wire = wire
        self._registry = registry
        self._store = store
        self._settings = settings
        self._clock = clock

        self._configs: dict[str, AutoModeConfig] = {}
        self._states: dict[str, AutoModeState] = {}
        self._timers = KeyedTimers()
        self._tasks: set[asyncio.Task] = set()
        self._dispatch_locks: dict[str, asyncio.Lock] = {}

    @property
    def pending_waits(self) -> int:
        return len(self._timers)

    # ----- configs ----------------------------------------------------------

    def create_config(
        self,
        name: str,
        prompt: str,
        repository_path: str,
        send_clear_command: bool = True,
        provider: Provider = Provider.CLAUDE,
        is_enabled: bool = True,
    ) -> AutoModeConfig:
        now = self._clock()
        config = AutoModeConfig(
            name=name,
            prompt=prompt,
            repository_path=repository_path,
            send_clear_command=send_clear_command,
            provider=provider,
            is_enabled=is_enabled,
            created_at=now,
            updated_at=now,
        )
        self._configs[config.id] = config
        logger.info("Created auto-mode config %s for %s", config.id, repository_path)
        self._configs_changed(repository_path)
        return config

    def update_config(self, config_id: str, **updates: Any) -> AutoModeConfig | None:
        """Apply ``updates`` to a config. Returns None if it does not exist.

        Raises ValueError for fields that cannot be changed or invalid values.
        """
        config = self._configs.get(config_id)
        if config is None:
            return None
        unknown = set(updates) - _UPDATABLE
        if unknown:
            raise ValueError(f"cannot update {', '.join(sorted(unknown))}")

        data = config.model_dump()
        data.update(updates)
        data["updated_at"] = max(self._clock(), config.updated_at)
        try:
            updated = AutoModeConfig.model_validate(data)
        except ValidationError as e:
            raise ValueError(str(e)) from e

        self._configs[config_id] = updated
        self._configs_changed(updated.repository_path)
        return updated

    def delete_config(self, config_id: str) -> bool:
        config = self._configs.pop(config_id, None)
        if config is None:
            return False
        for state in self._states.values():
            if state.current_config_id == config_id:
                logger.info(
                    "Config %s deleted while current; stopping auto-mode for %s",
                    config_id,
                    state.repository_path,
                )
                self._go_idle(state)
        self._configs_changed(config.repository_path)
        return True

    def get_config(self, config_id: str) -> AutoModeConfig | None:
        return self._configs.get(config_id)

    def list_configs(self, repository_path: str | None = None) -> list[AutoModeConfig]:
        """Configs, most recently updated first."""
        configs = [
            c
            for c in self._configs.values()
            if repository_path is None or c.repository_path == repository_path
        ]
        return sorted(configs, key=lambda c: c.updated_at, reverse=True)

    def _configs_changed(self, repository_path: str) -> None:
        self._persist_configs()
        self._wire.send_automode_configs(
            repository_path, [c.to_json() for c in self.list_configs(repository_path)]
        )

    # ----- state machine ----------------------------------------------------

    def get_state(self, repository_path: str) -> AutoModeState | None:
        return self._states.get(repository_path)

    def start(self, repository_path: str, config_id: str) -> bool:
        """Enter Running with ``config_id``. No prompt is sent."""
        config = self._configs.get(config_id)
        if config is None or config.repository_path != repository_path:
            logger.warning("Auto-mode config %s not found for %s", config_id, repository_path)
            return False
        if not config.is_enabled:
            logger.warning("Auto-mode config %s is disabled", config_id)
            return False

        self._timers.cancel(repository_path)
        self._states[repository_path] = AutoModeState(
            repository_path=repository_path,
            is_running=True,
            current_config_id=config_id,
            last_execution_time=self._clock(),
        )
        logger.info("Auto-mode started for %s with config %s", repository_path, config_id)
        self._persist_states()
        self._emit_status(repository_path)
        self._track(self._warm(repository_path, config.provider))
        return True

    async def _warm(self, repository_path: str, provider: Provider) -> None:
        await self._registry.ensure_ai_session(
            repository_path, Path(repository_path).name, provider
        )

    def stop(self, repository_path: str) -> bool:
        state = self._states.get(repository_path)
        if state is None or not state.is_running:
            return False
        self._go_idle(state)
        logger.info("Auto-mode stopped for %s", repository_path)
        return True

    def _go_idle(self, state: AutoModeState) -> None:
        self._timers.cancel(state.repository_path)
        state.is_running = False
        state.current_config_id = None
        self._persist_states()
        self._emit_status(state.repository_path)

    def _running_config(self, repository_path: str) -> AutoModeConfig | None:
        state = self._states.get(repository_path)
        if state is None or not state.is_running or state.current_config_id is None:
            return None
        config = self._configs.get(state.current_config_id)
        if config is None or not config.is_enabled:
            return None
        return config

    def on_hook_event(self, repository_path: str) -> HookOutcome:
        """The assistant in ``repository_path`` finished a turn."""
        config = self._running_config(repository_path)
        if config is None:
            return HookOutcome.IGNORED

        state = self._states[repository_path]
        now = self._clock()
        elapsed = now - (state.last_execution_time or 0.0)
        remaining = self._settings.min_interval - elapsed
        if remaining > 0:
            self._timers.schedule(
                repository_path, remaining, partial(self.on_hook_event, repository_path)
            )
            logger.info(
                "Auto-mode for %s waiting %.0fs before next prompt",
                repository_path,
                remaining,
            )
            self._wire.send_automode_waiting(
                repository_path, math.ceil(remaining), now + remaining
            )
            self._emit_status(repository_path)
            return HookOutcome.WAITING

        self._dispatch(repository_path, config)
        return HookOutcome.DISPATCHED

    def force_execute(self, repository_path: str) -> bool:
        """Dispatch now, dropping any pending wait."""
        config = self._running_config(repository_path)
        if config is None:
            return False
        self._timers.cancel(repository_path)
        self._dispatch(repository_path, config)
        return True

    def send_manual_prompt(self, repository_path: str) -> bool:
        """Send the running config's prompt once, ignoring the interval.

        Unlike ``force_execute`` a pending wait is left armed.
        """
        config = self._running_config(repository_path)
        if config is None:
            return False
        self._dispatch(repository_path, config)
        return True

    def status(self, repository_path: str) -> AutoModeStatus:
        state = self._states.get(repository_path)
        if state is None:
            return AutoModeStatus(is_running=False)
        remaining = self._timers.remaining(repository_path)
        return AutoModeStatus(
            is_running=state.is_running,
            config_id=state.current_config_id,
            is_waiting=remaining is not None,
            remaining_time=math.ceil(remaining) if remaining is not None else None,
        )

    def _emit_status(self, repository_path: str) -> None:
        status = self.status(repository_path)
        self._wire.send_automode_status(
            repository_path,
            status.is_running,
            config_id=status.config_id,
            is_waiting=status.is_waiting,
            remaining_time=status.remaining_time,
        )

    # ----- dispatch ---------------------------------------------------------

    def _dispatch(self, repository_path: str, config: AutoModeConfig) -> None:
        state = self._states.get(repository_path)
        if state is not None:
            state.last_execution_time = self._clock()
            self._persist_states()
        self._emit_status(repository_path)
        self._track(self._run_prompt(repository_path, config))

    async def _run_prompt(self, repository_path: str, config: AutoModeConfig) -> None:
        lock = self._dispatch_locks.setdefault(repository_path, asyncio.Lock())
        async with lock:
            session = self._registry.active_ai_session(repository_path, config.provider)
            if session is None:
                session = await self._registry.ensure_ai_session(
                    repository_path, Path(repository_path).name, config.provider
                )
                if session is None:
                    logger.error("Auto-mode could not start a session for %s", repository_path)
                    return
                await asyncio.sleep(self._settings.startup_delay)
            session_id = session.id

            if config.send_clear_command:
                if not self._registry.send(session_id, "/clear"):
                    self._abort(session_id)
                    return
                await asyncio.sleep(self._settings.clear_enter_delay)
                self._registry.send(session_id, "\r")
                await asyncio.sleep(self._settings.clear_settle_delay)

            if not self._registry.send(session_id, config.prompt):
                self._abort(session_id)
                return
            self._wire.send_automode_prompt_sent(
                session_id, repository_path, config.id, config.prompt
            )
            await asyncio.sleep(self._settings.enter_delay)
            self._registry.send(session_id, "\r")
            logger.info("Auto-mode prompt sent to %s", session_id)

    def _abort(self, session_id: str) -> None:
        logger.warning("Auto-mode dispatch aborted: session %s unavailable", session_id)

    def _track(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Auto-mode task failed", exc_info=task.exception())

    async def drain(self) -> None:
        """Wait for in-flight dispatches."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ----- persistence and teardown -----------------------------------------

    def _persist_configs(self) -> None:
        self._store.schedule(
            AUTOMODE_CONFIGS, lambda: [c.to_json() for c in self._configs.values()]
        )

    def _persist_states(self) -> None:
        self._store.schedule(
            AUTOMODE_STATES, lambda: [s.to_json() for s in self._states.values()]
        )

    async def restore(self) -> None:
        for config in await self._store.load_models(AUTOMODE_CONFIGS, AutoModeConfig):
            self._configs[config.id] = config
        for state in await self._store.load_models(AUTOMODE_STATES, AutoModeState):
            if state.current_config_id and state.current_config_id not in self._configs:
                state.is_running = False
                state.current_config_id = None
            self._states[state.repository_path] = state
        logger.info(
            "Restored %d auto-mode config(s), %d state(s)",
            len(self._configs),
            len(self._states),
        )

    def cleanup_repository(self, repository_path: str) -> None:
        self._timers.cancel(repository_path)
        self._states.pop(repository_path, None)
        for config_id in [
            c.id for c in self._configs.values() if c.repository_path == repository_path
        ]:
            del self._configs[config_id]
        self._persist_configs()
        self._persist_states()

    async def shutdown(self) -> None:
        self._timers.cancel_all()
        for task in list(self._tasks):
            task.cancel()
        await self.drain()

    def repository_for(self, path: Path) -> str | None:
        """The auto-mode repository containing ``path``, if any."""
        for repository_path in self._states:
            root = Path(repository_path).resolve()
            if path == root or path.is_relative_to(root):
                return repository_path
        return None
