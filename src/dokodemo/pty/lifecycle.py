"""Process lifecycle — graceful-then-forceful termination and bounded close."""

from __future__ import annotations

import asyncio
import logging
import signal
from typing import Callable

from dokodemo.config import SessionSettings
from dokodemo.model import SessionKind
from dokodemo.pty.liveness import terminate_pid
from dokodemo.pty.registry import SessionRegistry
from dokodemo.pty.session import Detached, Session
from dokodemo.session.wire import Wire
from dokodemo.timers import KeyedTimers

logger = logging.getLogger(__name__)

PidTerminator = Callable[[int], bool]


class LifecycleController:
    """Terminates sessions and removes them from the registry.

    SIGTERM is followed by SIGKILL after ``grace_period`` unless the exit
    callback fires first. ``close`` additionally bounds the wait for the
    exit by ``close_timeout`` so a process that ignores both signals
    cannot stall a batch shutdown.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        wire: Wire,
        settings: SessionSettings,
        pid_terminator: PidTerminator = terminate_pid,
    ) -> None:
        self._registry = registry
        self._terminate_pid = pid_terminator
        self._wire = wire
        self._settings = settings
        self._kill_timers = KeyedTimers()
        registry.add_exit_listener(self._on_exit)

    def _on_exit(self, session: Session) -> None:
        self._kill_timers.cancel(session.id)

    @property
    def pending_kills(self) -> int:
        return len(self._kill_timers)

    def terminate(self, session: Session) -> bool:
        """Send SIGTERM now and SIGKILL after the grace period.

        Returns False if the process was already gone.
        """
        process = session.process
        if process is None:
            return False
        try:
            process.kill(signal.SIGTERM)
        except ProcessLookupError:
            logger.debug("Session %s already exited", session.id)
            return False

        def _escalate() -> None:
            if not process.alive:
                return
            logger.warning(
                "Session %s (pid %d) ignored SIGTERM; sending SIGKILL",
                session.id,
                session.pid,
            )
            try:
                process.kill(signal.SIGKILL)
            except ProcessLookupError:
                pass

        self._kill_timers.schedule(session.id, self._settings.grace_period, _escalate)
        return True

    async def close(self, session_id: str) -> bool:
        """Terminate a session and remove it from the registry.

        Returns False for unknown ids. Completes within ``close_timeout``
        whether the process exits, is killed, or never responds.
        """
        session = self._registry.get(session_id)
        if session is None:
            return False

        if session.kind == SessionKind.SHELL:
            self._registry.add_system_line(session.id, "\r\n[SYSTEM] Terminal closed\r\n")

        if isinstance(session.link, Detached):
            if self._registry.probe(session.pid):
                self._terminate_pid(session.pid)
            self._registry.discard(session.id)
        else:
            exited = self._registry.exit_waiter(session.id)
            try:
                if self.terminate(session) and exited is not None:
                    await asyncio.wait_for(
                        exited.wait(), timeout=self._settings.close_timeout
                    )
            except asyncio.TimeoutError:
                logger.warning(
                    "Session %s did not exit within %.1fs; dropping it",
                    session.id,
                    self._settings.close_timeout,
                )
            finally:
                self._kill_timers.cancel(session.id)
            # Exit callback normally removed it already
            self._registry.discard(session.id)

        if session.kind == SessionKind.SHELL:
            self._registry.forget_terminal(session.id)
            self._wire.send_terminal_closed(session.id, session.repository_path)
        logger.info("Closed session %s", session.id)
        return True

    async def close_many(self, session_ids: list[str]) -> list[bool]:
        """Close sessions concurrently and wait for all of them."""
        if not session_ids:
            return []
        results = await asyncio.gather(
            *(self.close(sid) for sid in session_ids), return_exceptions=True
        )
        closed: list[bool] = []
        for sid, result in zip(session_ids, results):
            if isinstance(result, BaseException):
                logger.error("Closing session %s failed: %s", sid, result)
                closed.append(False)
            else:
                closed.append(result)
        return closed

    async def close_repository(self, repository_path: str) -> int:
        ids = [
            s.id
            for s in self._registry.sessions()
            if s.repository_path == repository_path
        ]
        return sum(await self.close_many(ids))

    async def close_all(self) -> int:
        ids = [s.id for s in self._registry.sessions()]
        return sum(await self.close_many(ids))

    def shutdown(self) -> None:
        self._kill_timers.cancel_all()
