"""JSON document store — one whole-file JSON array per entity class.

Writes are best-effort overwrites: a failed write is logged and the
in-memory state stays authoritative. Bursts of updates (every output
chunk marks the session documents dirty) are coalesced by a background
writer that serializes the latest snapshot once per debounce window.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from pathlib import Path
from typing import Any, Callable, TypeVar

import aiofiles
from pydantic import BaseModel, ValidationError

from dokodemo.model import Provider, SessionKind, SessionRecord

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)

AI_SESSIONS = "ai-sessions.json"
LEGACY_SESSIONS = "claude-sessions.json"  # pre-provider format, claude only
TERMINALS = "terminals.json"
OUTPUT_HISTORY = "output-history.json"
SHORTCUTS = "command-shortcuts.json"
AUTOMODE_CONFIGS = "automode-configs.json"
AUTOMODE_STATES = "automode-states.json"

Snapshot = Callable[[], list[dict[str, Any]]]


class JsonStore:
    """Reads and writes the JSON documents under ``root``.

    Missing or corrupt documents read as empty collections; elements that
    fail validation are skipped individually.
    """

    def __init__(self, root: Path, debounce: float = 0.25) -> None:
        self.root = Path(root)
        self._debounce = debounce
        self._dirty: dict[str, Snapshot] = {}
        self._writer: asyncio.Task | None = None
        self._flush_now = asyncio.Event()
        self._write_lock = asyncio.Lock()

    def path(self, name: str) -> Path:
        return self.root / name

    def ensure_dir(self) -> None:
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.warning("Cannot create %s: %s", self.root, e)

    async def load(self, name: str) -> list[dict[str, Any]]:
        """Read a document as a list of dicts."""
        path = self.path(name)
        try:
            async with aiofiles.open(path, "r", encoding="utf-8") as f:
                raw = await f.read()
        except FileNotFoundError:
            return []
        except OSError as e:
            logger.warning("Cannot read %s: %s", path, e)
            return []

        try:
            data = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError):
            logger.warning("Ignoring corrupt document %s", path)
            return []
        if not isinstance(data, list):
            logger.warning("Ignoring %s: expected a JSON array", path)
            return []
        return [item for item in data if isinstance(item, dict)]

    async def load_models(self, name: str, model: type[M]) -> list[M]:
        """Read a document and validate each element against ``model``."""
        result: list[M] = []
        for item in await self.load(name):
            try:
                result.append(model.model_validate(item))
            except ValidationError as e:
                logger.warning(
                    "Skipping invalid %s entry in %s: %s",
                    model.__name__,
                    name,
                    e.error_count(),
                )
        return result

    async def write(self, name: str, items: list[dict[str, Any]]) -> bool:
        """Overwrite a document. Returns False (and logs) on failure."""
        path = self.path(name)
        payload = json.dumps(items, indent=2, ensure_ascii=False)
        async with self._write_lock:
            try:
                async with aiofiles.open(path, "w", encoding="utf-8") as f:
                    await f.write(payload)
            except OSError as e:
                logger.warning("Failed to persist %s: %s", path, e)
                return False
        return True

    def schedule(self, name: str, snapshot: Snapshot) -> None:
        """Mark ``name`` dirty; ``snapshot`` is evaluated when the write runs.

        Returns immediately. Several calls within one debounce window
        result in a single write of the latest state.
        """
        self._dirty[name] = snapshot
        if self._writer is None or self._writer.done():
            self._writer = asyncio.create_task(self._drain())

    async def _drain(self) -> None:
        try:
            await asyncio.wait_for(self._flush_now.wait(), timeout=self._debounce)
        except asyncio.TimeoutError:
            pass
        await self._write_dirty()

    async def _write_dirty(self) -> None:
        while self._dirty:
            pending, self._dirty = self._dirty, {}
            for name, snapshot in pending.items():
                try:
                    items = snapshot()
                except Exception:
                    logger.exception("Snapshot for %s failed", name)
                    continue
                await self.write(name, items)

    async def flush(self) -> None:
        """Write every dirty document now and wait for it."""
        self._flush_now.set()
        try:
            if self._writer is not None and not self._writer.done():
                await self._writer
            await self._write_dirty()
        finally:
            self._flush_now.clear()

    # ----- sessions ---------------------------------------------------------

    async def migrate(self) -> bool:
        """One-time upgrade of the claude-only session document.

        Runs only when the provider-aware document is absent and the
        legacy one exists. Legacy entries are tagged with the claude
        provider and written under the new name; the legacy file is left
        in place and still consulted by ``load_session_records``.
        """
        if self.path(AI_SESSIONS).exists() or not self.path(LEGACY_SESSIONS).exists():
            return False
        legacy = await self.load(LEGACY_SESSIONS)
        migrated = [
            {**item, "provider": item.get("provider") or Provider.CLAUDE.value,
             "kind": SessionKind.AI.value}
            for item in legacy
        ]
        if not await self.write(AI_SESSIONS, migrated):
            return False
        logger.info("Migrated %d legacy session(s) to %s", len(migrated), AI_SESSIONS)
        return True

    async def load_session_records(self) -> list[SessionRecord]:
        """AI session records, including legacy entries not yet rewritten."""
        records = await self.load_models(AI_SESSIONS, SessionRecord)
        seen = {r.id for r in records}
        for legacy in await self.load_models(LEGACY_SESSIONS, SessionRecord):
            if legacy.id in seen:
                continue
            legacy.provider = legacy.provider or Provider.CLAUDE
            legacy.kind = SessionKind.AI
            records.append(legacy)
        return records

    async def find_session_record(
        self,
        repository_path: str,
        provider: Provider,
        ttl: float,
        now: float | None = None,
    ) -> SessionRecord | None:
        """Most recently used, non-expired record for (repository, provider)."""
        now = time.time() if now is None else now
        candidates = [
            r
            for r in await self.load_session_records()
            if r.repository_path == repository_path
            and r.provider == provider
            and now - r.last_accessed_at <= ttl
        ]
        if not candidates:
            return None
        return max(candidates, key=lambda r: r.last_accessed_at)
