"""Command shortcuts — saved per-repository command lines for terminals."""

from __future__ import annotations

import logging

from dokodemo.model import CommandShortcut, SessionKind
from dokodemo.pty.registry import SessionRegistry
from dokodemo.store import SHORTCUTS, JsonStore

logger = logging.getLogger(__name__)

DEFAULT_COMMANDS: tuple[str, ...] = ("git pull", "npm run dev", "npm install", "git status")


class ShortcutStore:
    def __init__(self, registry: SessionRegistry, store: JsonStore) -> None:
        self._registry = registry
        self._store = store
        self._shortcuts: dict[str, CommandShortcut] = {}

    def create(
        self, name: str | None, command: str, repository_path: str
    ) -> CommandShortcut:
        shortcut = CommandShortcut(
            name=name or None, command=command, repository_path=repository_path
        )
        self._shortcuts[shortcut.id] = shortcut
        self._persist()
        return shortcut

    def delete(self, shortcut_id: str) -> bool:
        if self._shortcuts.pop(shortcut_id, None) is None:
            return False
        self._persist()
        return True

    def get(self, shortcut_id: str) -> CommandShortcut | None:
        return self._shortcuts.get(shortcut_id)

    def list(self, repository_path: str) -> list[CommandShortcut]:
        """Shortcuts of one repository, oldest first."""
        return sorted(
            (s for s in self._shortcuts.values() if s.repository_path == repository_path),
            key=lambda s: s.created_at,
        )

    def execute(self, shortcut_id: str, terminal_id: str) -> bool:
        """Type the shortcut's command into a terminal and press Enter."""
        shortcut = self._shortcuts.get(shortcut_id)
        if shortcut is None:
            return False
        terminal = self._registry.get(terminal_id)
        if terminal is None or terminal.kind != SessionKind.SHELL:
            logger.warning("Shortcut %s needs a terminal, got %s", shortcut_id, terminal_id)
            return False
        command = shortcut.command
        if not command.endswith("\n"):
            command += "\n"
        return self._registry.send(terminal.id, command)

    def ensure_defaults(self, repository_path: str) -> list[CommandShortcut]:
        """Seed the default shortcuts if the repository has none."""
        if self.list(repository_path):
            return []
        created: list[CommandShortcut] = []
        for command in DEFAULT_COMMANDS:
            shortcut = CommandShortcut(command=command, repository_path=repository_path)
            self._shortcuts[shortcut.id] = shortcut
            created.append(shortcut)
        logger.info("Created default shortcuts for %s", repository_path)
        self._persist()
        return created

    def cleanup_repository(self, repository_path: str) -> int:
        doomed = [s.id for s in self._shortcuts.values() if s.repository_path == repository_path]
        for shortcut_id in doomed:
            del self._shortcuts[shortcut_id]
        if doomed:
            self._persist()
        return len(doomed)

    async def restore(self) -> int:
        for shortcut in await self._store.load_models(SHORTCUTS, CommandShortcut):
            self._shortcuts[shortcut.id] = shortcut
        return len(self._shortcuts)

    def _persist(self) -> None:
        self._store.schedule(
            SHORTCUTS, lambda: [s.to_json() for s in self._shortcuts.values()]
        )
