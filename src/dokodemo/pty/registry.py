"""Session registry — owns every AI and shell session of the manager.

AI sessions are indexed by (repository path, provider) with at most one
active session per key; terminals are indexed by id only. All mutation
happens on the event loop, and callbacks from the PTY layer are
delivered there too, so the maps need no locking. The per-key
``asyncio.Lock`` only serializes the await points inside
``ensure_ai_session`` and ghost respawns.
"""

from __future__ import annotations

import asyncio
import logging
import shlex
import signal as signals
import subprocess
import time
from functools import partial
from typing import Awaitable, Callable

from dokodemo.config import SessionSettings
from dokodemo.model import (
    HistoryRecord,
    OutputKind,
    OutputLine,
    Provider,
    SessionKind,
    SessionRecord,
)
from dokodemo.pty.buffer import HistoryBuffer
from dokodemo.pty.filter import filter_for
from dokodemo.pty.liveness import is_process_alive
from dokodemo.pty.process import ProcessHandle, PTYProcess
from dokodemo.pty.session import Attached, Detached, Session
from dokodemo.session.wire import Wire
from dokodemo.store import AI_SESSIONS, OUTPUT_HISTORY, TERMINALS, JsonStore

logger = logging.getLogger(__name__)

Spawner = Callable[..., Awaitable[ProcessHandle]]
Prober = Callable[[int], bool]
ExitListener = Callable[[Session], None]
AiKey = tuple[str, Provider]

# Signals delivered as control characters through the terminal so they
# reach the foreground job the way a keypress would.
_CONTROL_CHARS: dict[str, str] = {
    "SIGINT": "\x03",
    "SIGTSTP": "\x1a",
    "ESC": "\x1b",
}

# Histories kept for terminals that went away on their own
RETIRED_TERMINAL_LIMIT = 32


class SessionRegistry:
    """In-memory maps of sessions plus their output and exit plumbing."""

    def __init__(
        self,
        wire: Wire,
        store: JsonStore,
        settings: SessionSettings,
        spawner: Spawner = PTYProcess.spawn,
        prober: Prober = is_process_alive,
    ) -> None:
        self._wire = wire
        self._store = store
        self._settings = settings
        self._spawner = spawner
        self._prober = prober

        self._sessions: dict[str, Session] = {}
        self._ai_index: dict[AiKey, str] = {}
        self._locks: dict[AiKey, asyncio.Lock] = {}
        self._exit_events: dict[str, asyncio.Event] = {}
        self._exit_listeners: list[ExitListener] = []

        # Transcripts of sessions that went away
        self._retired: dict[AiKey, list[OutputLine]] = {}
        self._retired_terminals: dict[str, list[OutputLine]] = {}

        self._respawns: dict[str, asyncio.Task] = {}
        self._queued: dict[str, list[str]] = {}
        self._aliases: dict[str, str] = {}  # ghost id -> replacement id
        self._discarded: dict[str, float] = {}  # id -> time discarded

    def probe(self, pid: int) -> bool:
        return self._prober(pid)

    @property
    def history_limit(self) -> int:
        return self._settings.history_limit

    # ----- lookup -----------------------------------------------------------

    def get(self, session_id: str) -> Session | None:
        session = self._sessions.get(session_id)
        if session is None and session_id in self._aliases:
            session = self._sessions.get(self._aliases[session_id])
        return session

    def active_ai_session(
        self, repository_path: str, provider: Provider
    ) -> Session | None:
        session_id = self._ai_index.get((repository_path, provider))
        if session_id is None:
            return None
        session = self._sessions.get(session_id)
        if session is None or not session.is_active:
            return None
        return session

    def sessions(self) -> list[Session]:
        return list(self._sessions.values())

    def ai_sessions(self, repository_path: str | None = None) -> list[Session]:
        return [
            s
            for s in self._sessions.values()
            if s.kind == SessionKind.AI
            and (repository_path is None or s.repository_path == repository_path)
        ]

    def terminals(self, repository_path: str | None = None) -> list[Session]:
        return [
            s
            for s in self._sessions.values()
            if s.kind == SessionKind.SHELL
            and (repository_path is None or s.repository_path == repository_path)
        ]

    # ----- creation ---------------------------------------------------------

    def _lock_for(self, key: AiKey) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    async def ensure_ai_session(
        self,
        repository_path: str,
        repository_name: str,
        provider: Provider = Provider.CLAUDE,
        size: tuple[int, int] | None = None,
    ) -> Session | None:
        """Return the session for (repository, provider), creating it if needed.

        Preference order: the active in-memory session, a ghost rebuilt
        from a persisted record whose process is still alive, then a
        freshly spawned process. Returns None if spawning fails.
        """
        key = (repository_path, provider)
        async with self._lock_for(key):
            existing = self.active_ai_session(repository_path, provider)
            if existing is not None:
                existing.touch()
                if size is not None and existing.is_attached:
                    self._resize_session(existing, *size)
                return existing

            record = await self._store.find_session_record(
                repository_path, provider, self._settings.record_ttl
            )
            if (
                record is not None
                and record.id not in self._discarded
                and record.id not in self._sessions
                and self._prober(record.pid)
            ):
                ghost = Session.ghost(record, self.history_limit)
                self._add(ghost)
                logger.info(
                    "Reattached ghost session %s (pid %d) for %s",
                    ghost.id,
                    ghost.pid,
                    repository_path,
                )
                self._wire.send_session_created(ghost.summary())
                self.persist()
                return ghost

            return await self._spawn(
                SessionKind.AI,
                repository_path,
                repository_name,
                provider=provider,
                size=size,
                history=self._retired.get(key),
            )

    async def create_terminal(
        self,
        repository_path: str,
        repository_name: str,
        terminal_name: str | None = None,
        size: tuple[int, int] | None = None,
    ) -> Session | None:
        """Spawn a new shell terminal. Returns None if spawning fails."""
        if not terminal_name:
            terminal_name = f"Terminal {len(self.terminals(repository_path)) + 1}"
        return await self._spawn(
            SessionKind.SHELL,
            repository_path,
            repository_name,
            name=terminal_name,
            size=size,
        )

    def _command_for(self, kind: SessionKind, provider: Provider | None) -> list[str]:
        if kind == SessionKind.SHELL:
            return shlex.split(self._settings.shell)
        command = self._settings.provider_commands.get(str(provider))
        if not command:
            raise OSError(f"no launch command configured for {provider}")
        return list(command)

    def _default_size(self, kind: SessionKind) -> tuple[int, int]:
        if kind == SessionKind.SHELL:
            return self._settings.terminal_cols, self._settings.terminal_rows
        return self._settings.cols, self._settings.rows

    async def _launch(
        self,
        kind: SessionKind,
        repository_path: str,
        provider: Provider | None,
        cols: int,
        rows: int,
    ) -> ProcessHandle | None:
        try:
            command = self._command_for(kind, provider)
            return await self._spawner(command, cwd=repository_path, cols=cols, rows=rows)
        except (OSError, subprocess.SubprocessError) as e:
            logger.error(
                "Failed to spawn %s session in %s: %s",
                provider or kind,
                repository_path,
                e,
            )
            return None

    async def _spawn(
        self,
        kind: SessionKind,
        repository_path: str,
        repository_name: str,
        provider: Provider | None = None,
        name: str | None = None,
        size: tuple[int, int] | None = None,
        history: list[OutputLine] | None = None,
    ) -> Session | None:
        cols, rows = size or self._default_size(kind)
        process = await self._launch(kind, repository_path, provider, cols, rows)
        if process is None:
            return None
        session = self._build(
            kind, repository_path, repository_name, process, provider, name, cols, rows, history
        )
        self._start(session)
        return session

    def _build(
        self,
        kind: SessionKind,
        repository_path: str,
        repository_name: str,
        process: ProcessHandle,
        provider: Provider | None,
        name: str | None,
        cols: int,
        rows: int,
        history: list[OutputLine] | None,
    ) -> Session:
        buffer = HistoryBuffer(self.history_limit)
        if history:
            buffer.extend(history[-self.history_limit :])
        return Session(
            kind=kind,
            repository_path=repository_path,
            repository_name=repository_name,
            link=Attached(process),
            provider=provider,
            name=name,
            cols=cols,
            rows=rows,
            history=buffer,
            output_filter=filter_for(provider),
        )

    def _start(self, session: Session) -> None:
        self._add(session)
        process = session.process
        assert process is not None
        process.attach(
            partial(self._on_output, session), partial(self._on_exit, session)
        )
        logger.info(
            "Session %s started (%s, pid %d) in %s",
            session.id,
            session.provider or session.kind,
            session.pid,
            session.repository_path,
        )
        self._wire.send_session_created(session.summary())
        self.persist()

    def _add(self, session: Session) -> None:
        self._sessions[session.id] = session
        if session.kind == SessionKind.AI and session.provider is not None:
            self._ai_index[(session.repository_path, session.provider)] = session.id

    def _remove(self, session: Session) -> None:
        """Drop ``session`` from the maps and keep its transcript."""
        if self._sessions.get(session.id) is not session:
            return
        del self._sessions[session.id]
        if session.kind == SessionKind.AI and session.provider is not None:
            key = (session.repository_path, session.provider)
            if self._ai_index.get(key) == session.id:
                del self._ai_index[key]
            self._retired[key] = session.history.snapshot()
        else:
            self._retired_terminals[session.id] = session.history.snapshot()
            while len(self._retired_terminals) > RETIRED_TERMINAL_LIMIT:
                del self._retired_terminals[next(iter(self._retired_terminals))]
        for alias in [a for a, target in self._aliases.items() if target == session.id]:
            del self._aliases[alias]

    # ----- callbacks --------------------------------------------------------

    def _is_current(self, session: Session) -> bool:
        return self._sessions.get(session.id) is session

    def _on_output(self, session: Session, chunk: str) -> None:
        if not self._is_current(session):
            return

        def respond(reply: str) -> None:
            process = session.process
            if process is None or not process.alive:
                return
            try:
                process.write(reply)
            except OSError as e:
                logger.debug("Could not answer terminal query for %s: %s", session.id, e)

        text = session.output_filter.apply(chunk, respond)
        if text:
            self._record(session, text, OutputKind.STDOUT)

    def _record(self, session: Session, text: str, kind: OutputKind) -> OutputLine:
        line = session.history.append(text, kind)
        session.touch()
        self._schedule_docs(session)
        self._wire.send_output(
            session.id,
            session.repository_path,
            line.to_json(),
            provider=str(session.provider) if session.kind == SessionKind.AI else None,
        )
        return line

    def add_system_line(self, session_id: str, text: str) -> bool:
        """Append a ``system`` entry to a session's history and emit it."""
        session = self.get(session_id)
        if session is None:
            return False
        self._record(session, text, OutputKind.SYSTEM)
        return True

    def _on_exit(
        self, session: Session, exit_code: int | None, term_signal: int | None
    ) -> None:
        current = self._is_current(session)
        if current:
            tail = session.output_filter.flush()
            if tail:
                self._record(session, tail, OutputKind.STDOUT)

        session.is_active = False
        self._wire.send_exit(
            session.id,
            session.repository_path,
            exit_code,
            term_signal,
            provider=str(session.provider) if session.kind == SessionKind.AI else None,
        )
        if current:
            self._remove(session)

        event = self._exit_events.pop(session.id, None)
        if event is not None:
            event.set()
        for listener in list(self._exit_listeners):
            try:
                listener(session)
            except Exception:
                logger.exception("Exit listener failed for %s", session.id)
        self.persist()

    def add_exit_listener(self, listener: ExitListener) -> None:
        self._exit_listeners.append(listener)

    def exit_waiter(self, session_id: str) -> asyncio.Event | None:
        """Event set when the attached process of ``session_id`` exits."""
        session = self.get(session_id)
        if session is None:
            return None
        event = self._exit_events.get(session.id)
        if event is None:
            event = self._exit_events[session.id] = asyncio.Event()
        return event

    # ----- input ------------------------------------------------------------

    def send(self, session_id: str, data: str) -> bool:
        """Write ``data`` to the session's terminal.

        Writing to a ghost schedules exactly one respawn and queues the
        data for the replacement; the call returns True without waiting.
        """
        session = self.get(session_id)
        if session is None or not session.is_active:
            return False

        link = session.link
        if isinstance(link, Detached):
            self._queued.setdefault(session.id, []).append(data)
            if session.id not in self._respawns:
                task = asyncio.create_task(self._respawn(session))
                self._respawns[session.id] = task
                task.add_done_callback(lambda _t, sid=session.id: self._respawns.pop(sid, None))
            return True

        try:
            link.process.write(data)
        except OSError as e:
            logger.warning("Write to session %s failed: %s", session.id, e)
            return False
        session.touch()
        self._schedule_docs(session)
        return True

    async def _respawn(self, ghost: Session) -> None:
        if ghost.kind == SessionKind.AI and ghost.provider is not None:
            async with self._lock_for((ghost.repository_path, ghost.provider)):
                await self._replace_ghost(ghost)
        else:
            await self._replace_ghost(ghost)

    async def _replace_ghost(self, ghost: Session) -> None:
        default_cols, default_rows = self._default_size(ghost.kind)
        cols = ghost.cols or default_cols
        rows = ghost.rows or default_rows
        process = await self._launch(
            ghost.kind, ghost.repository_path, ghost.provider, cols, rows
        )

        if not self._is_current(ghost):
            # Closed while we were spawning
            self._queued.pop(ghost.id, None)
            if process is not None:
                try:
                    process.kill()
                except ProcessLookupError:
                    pass
            return

        if process is None:
            self._queued.pop(ghost.id, None)
            self._record(ghost, "[SYSTEM] Failed to restart session\n", OutputKind.SYSTEM)
            return

        replacement = self._build(
            ghost.kind,
            ghost.repository_path,
            ghost.repository_name,
            process,
            ghost.provider,
            ghost.name,
            cols,
            rows,
            ghost.history.snapshot(),
        )
        del self._sessions[ghost.id]
        self._aliases[ghost.id] = replacement.id
        self._start(replacement)
        self._wire.send_respawned(ghost.id, replacement.id, ghost.repository_path)
        logger.info("Ghost session %s replaced by %s", ghost.id, replacement.id)

        for data in self._queued.pop(ghost.id, []):
            try:
                process.write(data)
            except OSError as e:
                logger.warning("Write to session %s failed: %s", replacement.id, e)
                break

    def _resize_session(self, session: Session, cols: int, rows: int) -> bool:
        process = session.process
        if process is None:
            return False
        try:
            process.resize(cols, rows)
        except OSError as e:
            logger.debug("Resize of %s failed: %s", session.id, e)
            return False
        session.cols, session.rows = cols, rows
        self._schedule_docs(session)
        return True

    def resize(self, session_id: str, cols: int, rows: int) -> bool:
        session = self.get(session_id)
        if session is None or not session.is_active:
            return False
        return self._resize_session(session, cols, rows)

    def resize_ai(
        self, repository_path: str, provider: Provider, cols: int, rows: int
    ) -> bool:
        session = self.active_ai_session(repository_path, provider)
        if session is None:
            return False
        return self._resize_session(session, cols, rows)

    def signal(self, session_id: str, sig: str) -> bool:
        """Deliver ``sig`` (e.g. ``SIGINT``, ``TERM``, ``ESC``) to a session."""
        session = self.get(session_id)
        if session is None or not session.is_active:
            return False
        process = session.process
        if process is None:
            return False

        name = sig.upper()
        if name != "ESC" and not name.startswith("SIG"):
            name = "SIG" + name

        control = _CONTROL_CHARS.get(name)
        if control is not None:
            try:
                process.write(control)
            except OSError as e:
                logger.warning("Signal %s to %s failed: %s", name, session.id, e)
                return False
            return True

        try:
            signum = signals.Signals[name]
        except KeyError:
            logger.warning("Unknown signal %r", sig)
            return False
        try:
            process.kill(signum)
        except (ProcessLookupError, PermissionError) as e:
            logger.warning("Signal %s to %s failed: %s", name, session.id, e)
            return False
        return True

    # ----- history ----------------------------------------------------------

    def ai_history(self, repository_path: str, provider: Provider) -> list[OutputLine]:
        session = self.active_ai_session(repository_path, provider)
        if session is not None:
            return session.history.snapshot()
        return self._retired.get((repository_path, provider), [])[-self.history_limit :]

    def terminal_history(self, terminal_id: str) -> list[OutputLine]:
        session = self.get(terminal_id)
        if session is not None:
            return session.history.snapshot()
        return self._retired_terminals.get(terminal_id, [])[-self.history_limit :]

    def clear_ai_history(self, repository_path: str, provider: Provider) -> bool:
        key = (repository_path, provider)
        session = self.active_ai_session(repository_path, provider)
        found = self._retired.pop(key, None) is not None
        if session is not None:
            session.history.clear()
            found = True
        if found:
            self.persist()
        return found

    def clear_terminal_history(self, terminal_id: str) -> bool:
        session = self.get(terminal_id)
        found = self._retired_terminals.pop(terminal_id, None) is not None
        if session is not None:
            session.history.clear()
            found = True
        if found:
            self.persist()
        return found

    def forget_terminal(self, terminal_id: str) -> None:
        self._retired_terminals.pop(terminal_id, None)

    # ----- removal and restore ----------------------------------------------

    def discard(self, session_id: str) -> Session | None:
        """Remove a session without waiting for its process."""
        session = self.get(session_id)
        if session is None:
            return None
        self._remove(session)
        self._discarded[session.id] = time.time()
        self._prune_discarded()
        self._queued.pop(session.id, None)
        event = self._exit_events.pop(session.id, None)
        if event is not None:
            event.set()
        self.persist()
        return session

    def _prune_discarded(self) -> None:
        # Records last touched before the discard are past their TTL by now
        cutoff = time.time() - self._settings.record_ttl
        for session_id in [s for s, at in self._discarded.items() if at < cutoff]:
            del self._discarded[session_id]

    async def restore(self) -> int:
        """Rebuild ghosts from persisted records. Returns how many."""
        for item in await self._store.load_models(OUTPUT_HISTORY, HistoryRecord):
            if item.provider is not None and item.terminal_id is None:
                key = (item.repository_path, item.provider)
                self._retired[key] = item.output_history[-self.history_limit :]

        records = await self._store.load_session_records()
        records += await self._store.load_models(TERMINALS, SessionRecord)
        records.sort(key=lambda r: r.last_accessed_at, reverse=True)

        now = time.time()
        restored = 0
        for record in records:
            if record.id in self._sessions:
                continue
            fresh = now - record.last_accessed_at <= self._settings.record_ttl
            key = (record.repository_path, record.provider)
            if record.kind == SessionKind.AI and (
                record.provider is None or key in self._ai_index
            ):
                continue
            if fresh and self._prober(record.pid):
                self._add(Session.ghost(record, self.history_limit))
                restored += 1
            elif record.kind == SessionKind.AI and key not in self._retired:
                self._retired[key] = record.output_history[-self.history_limit :]

        if restored:
            logger.info("Restored %d ghost session(s)", restored)
        self.persist()
        return restored

    def sweep_dead_ghosts(self) -> list[str]:
        """Remove ghosts whose remembered process has gone away."""
        self._prune_discarded()
        cleaned: list[str] = []
        for session in list(self._sessions.values()):
            if session.is_attached or self._prober(session.pid):
                continue
            if session.id in self._respawns:
                continue
            self._remove(session)
            self._wire.send_cleaned(session.id, session.repository_path)
            cleaned.append(session.id)
        if cleaned:
            logger.info("Removed %d dead ghost session(s)", len(cleaned))
            self.persist()
        return cleaned

    # ----- persistence ------------------------------------------------------

    def _ai_snapshot(self) -> list[dict]:
        return [s.to_record().to_json() for s in self.ai_sessions()]

    def _terminal_snapshot(self) -> list[dict]:
        return [s.to_record().to_json() for s in self.terminals()]

    def _history_snapshot(self) -> list[dict]:
        histories = dict(self._retired)
        for session in self.ai_sessions():
            if session.provider is not None:
                key = (session.repository_path, session.provider)
                histories[key] = session.history.snapshot()
        return [
            HistoryRecord(
                repository_path=repo, provider=provider, output_history=lines
            ).to_json()
            for (repo, provider), lines in histories.items()
        ]

    def _schedule_docs(self, session: Session) -> None:
        if session.kind == SessionKind.AI:
            self._store.schedule(AI_SESSIONS, self._ai_snapshot)
            self._store.schedule(OUTPUT_HISTORY, self._history_snapshot)
        else:
            self._store.schedule(TERMINALS, self._terminal_snapshot)

    def persist(self) -> None:
        """Mark every session document dirty."""
        self._store.schedule(AI_SESSIONS, self._ai_snapshot)
        self._store.schedule(TERMINALS, self._terminal_snapshot)
        self._store.schedule(OUTPUT_HISTORY, self._history_snapshot)
