"""Keyed single-shot timers.

At most one pending timer exists per key: scheduling again replaces the
previous entry instead of stacking a second one. Used for auto-mode
wait timers (keyed by repository) and kill escalation (keyed by session).
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Hashable
from typing import Any, Callable

logger = logging.getLogger(__name__)


class KeyedTimers:
    """Single-owner delayed callbacks, cancelable and replaceable by key."""

    def __init__(self) -> None:
        self._handles: dict[Hashable, asyncio.TimerHandle] = {}
        self._deadlines: dict[Hashable, float] = {}
        self._tasks: set[asyncio.Task] = set()

    def schedule(
        self, key: Hashable, delay: float, callback: Callable[[], Any]
    ) -> None:
        """Run ``callback`` after ``delay`` seconds, replacing any pending timer.

        ``callback`` may be a plain function or a coroutine function; the
        latter is run as a task owned by this object.
        """
        self.cancel(key)
        loop = asyncio.get_running_loop()
        handle = loop.call_later(max(delay, 0.0), self._fire, key, callback)
        self._handles[key] = handle
        self._deadlines[key] = loop.time() + max(delay, 0.0)

    def _fire(self, key: Hashable, callback: Callable[[], Any]) -> None:
        self._handles.pop(key, None)
        self._deadlines.pop(key, None)
        try:
            result = callback()
        except Exception:
            logger.exception("Timer callback for %r failed", key)
            return
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._tasks.add(task)
            task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Timer task failed", exc_info=task.exception())

    def cancel(self, key: Hashable) -> bool:
        """Cancel the pending timer for ``key``. Returns True if one existed."""
        handle = self._handles.pop(key, None)
        self._deadlines.pop(key, None)
        if handle is None:
            return False
        handle.cancel()
        return True

    def cancel_all(self) -> None:
        for key in list(self._handles):
            self.cancel(key)

    def pending(self, key: Hashable) -> bool:
        return key in self._handles

    def remaining(self, key: Hashable) -> float | None:
        """Seconds until the timer for ``key`` fires, or None if none is pending."""
        deadline = self._deadlines.get(key)
        if deadline is None:
            return None
        return max(deadline - asyncio.get_running_loop().time(), 0.0)

    async def drain(self) -> None:
        """Wait for callbacks that already fired and are still running."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def __len__(self) -> int:
        return len(self._handles)
