"""Wire protocol — decouples the process manager from its transport.

Events flow from the manager to subscribers. The transport layer (a
WebSocket broadcaster, the CLI pipe mode, tests) subscribes to the wire
and forwards events. Nothing in the manager knows who is listening.
"""

from __future__ import annotations

import asyncio
import enum
from dataclasses import dataclass, field
from typing import Any


class EventType(enum.Enum):
    SESSION_CREATED = "session_created"
    SESSION_OUTPUT = "session_output"
    SESSION_EXIT = "session_exit"
    SESSION_RESPAWNED = "session_respawned"
    SESSION_CLEANED = "session_cleaned"
    TERMINAL_CREATED = "terminal_created"
    TERMINAL_OUTPUT = "terminal_output"
    TERMINAL_EXIT = "terminal_exit"
    TERMINAL_CLOSED = "terminal_closed"
    AUTOMODE_WAITING = "automode_waiting"
    AUTOMODE_PROMPT_SENT = "automode_prompt_sent"
    AUTOMODE_STATUS_CHANGED = "automode_status_changed"
    AUTOMODE_CONFIGS_CHANGED = "automode_configs_changed"
    REVIEW_SERVER_STARTED = "review_server_started"
    REVIEW_SERVER_STOPPED = "review_server_stopped"


@dataclass
class WireEvent:
    """An event on the wire."""

    type: EventType
    data: dict[str, Any] = field(default_factory=dict)


class Wire:
    """Async message bus: manager -> transport subscribers.

    Single-producer, multi-consumer broadcast.
    """

    def __init__(self) -> None:
        self._subscribers: list[asyncio.Queue[WireEvent | None]] = []
        self._closed: bool = False

    def send(self, event: WireEvent) -> None:
        """Send an event to all subscribers.

        Silently drops events after ``close()`` has been called.
        """
        if self._closed:
            return
        for q in self._subscribers:
            q.put_nowait(event)

    def send_session_created(self, session: dict[str, Any]) -> None:
        event_type = (
            EventType.TERMINAL_CREATED
            if session.get("kind") == "shell"
            else EventType.SESSION_CREATED
        )
        self.send(WireEvent(type=event_type, data=session))

    def send_output(
        self,
        session_id: str,
        repository_path: str,
        line: dict[str, Any],
        provider: str | None = None,
    ) -> None:
        """Forward one stored output chunk.

        AI sessions carry a provider; terminal output does not.
        """
        if provider is None:
            event_type = EventType.TERMINAL_OUTPUT
            data = {
                "terminal_id": session_id,
                "repository_path": repository_path,
                "line": line,
            }
        else:
            event_type = EventType.SESSION_OUTPUT
            data = {
                "session_id": session_id,
                "repository_path": repository_path,
                "provider": provider,
                "line": line,
            }
        self.send(WireEvent(type=event_type, data=data))

    def send_exit(
        self,
        session_id: str,
        repository_path: str,
        exit_code: int | None,
        signal: int | None,
        provider: str | None = None,
    ) -> None:
        """Notify subscribers that a session's process exited."""
        if provider is None:
            self.send(
                WireEvent(
                    type=EventType.TERMINAL_EXIT,
                    data={
                        "terminal_id": session_id,
                        "repository_path": repository_path,
                        "exit_code": exit_code,
                        "signal": signal,
                    },
                )
            )
        else:
            self.send(
                WireEvent(
                    type=EventType.SESSION_EXIT,
                    data={
                        "session_id": session_id,
                        "repository_path": repository_path,
                        "provider": provider,
                        "exit_code": exit_code,
                        "signal": signal,
                    },
                )
            )

    def send_terminal_closed(self, terminal_id: str, repository_path: str) -> None:
        self.send(
            WireEvent(
                type=EventType.TERMINAL_CLOSED,
                data={"terminal_id": terminal_id, "repository_path": repository_path},
            )
        )

    def send_respawned(self, old_id: str, new_id: str, repository_path: str) -> None:
        self.send(
            WireEvent(
                type=EventType.SESSION_RESPAWNED,
                data={
                    "old_session_id": old_id,
                    "session_id": new_id,
                    "repository_path": repository_path,
                },
            )
        )

    def send_cleaned(self, session_id: str, repository_path: str) -> None:
        self.send(
            WireEvent(
                type=EventType.SESSION_CLEANED,
                data={"session_id": session_id, "repository_path": repository_path},
            )
        )

    def send_automode_waiting(
        self, repository_path: str, remaining_time: int, next_execution_time: float
    ) -> None:
        self.send(
            WireEvent(
                type=EventType.AUTOMODE_WAITING,
                data={
                    "repository_path": repository_path,
                    "remaining_time": remaining_time,
                    "next_execution_time": next_execution_time,
                },
            )
        )

    def send_automode_prompt_sent(
        self, session_id: str, repository_path: str, config_id: str, prompt: str
    ) -> None:
        self.send(
            WireEvent(
                type=EventType.AUTOMODE_PROMPT_SENT,
                data={
                    "session_id": session_id,
                    "repository_path": repository_path,
                    "config_id": config_id,
                    "prompt": prompt,
                },
            )
        )

    def send_automode_status(
        self,
        repository_path: str,
        is_running: bool,
        config_id: str | None = None,
        is_waiting: bool = False,
        remaining_time: int | None = None,
    ) -> None:
        self.send(
            WireEvent(
                type=EventType.AUTOMODE_STATUS_CHANGED,
                data={
                    "repository_path": repository_path,
                    "is_running": is_running,
                    "config_id": config_id,
                    "is_waiting": is_waiting,
                    "remaining_time": remaining_time,
                },
            )
        )

    def send_automode_configs(
        self, repository_path: str, configs: list[dict[str, Any]]
    ) -> None:
        self.send(
            WireEvent(
                type=EventType.AUTOMODE_CONFIGS_CHANGED,
                data={"repository_path": repository_path, "configs": configs},
            )
        )

    def send_review_server_started(self, server: dict[str, Any]) -> None:
        self.send(WireEvent(type=EventType.REVIEW_SERVER_STARTED, data=server))

    def send_review_server_stopped(self, repository_path: str) -> None:
        self.send(
            WireEvent(
                type=EventType.REVIEW_SERVER_STOPPED,
                data={"repository_path": repository_path},
            )
        )

    def subscribe(self) -> asyncio.Queue[WireEvent | None]:
        """Subscribe to events. Returns a queue to read from."""
        q: asyncio.Queue[WireEvent | None] = asyncio.Queue()
        self._subscribers.append(q)
        return q

    def unsubscribe(self, q: asyncio.Queue) -> None:
        """Unsubscribe from events."""
        if q in self._subscribers:
            self._subscribers.remove(q)

    def close(self) -> None:
        """Signal all subscribers that the wire is closing."""
        self._closed = True
        for q in self._subscribers:
            q.put_nowait(None)
