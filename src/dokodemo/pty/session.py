"""Session — a registry entry for an AI CLI or a shell terminal."""

from __future__ import annotations

import time
from dataclasses import dataclass, field

from dokodemo.model import Provider, SessionKind, SessionRecord, gen_id
from dokodemo.pty.buffer import HistoryBuffer
from dokodemo.pty.filter import OutputFilter, PassthroughFilter
from dokodemo.pty.process import ProcessHandle


@dataclass
class Attached:
    """The registry owns a live PTY handle for this session."""

    process: ProcessHandle

    @property
    def pid(self) -> int:
        return self.process.pid


@dataclass
class Detached:
    """Restored from disk; the process may still run but we hold no handle."""

    pid: int


SessionLink = Attached | Detached


@dataclass
class Session:
    """A managed session.

    ``link`` is a tagged variant: handle-only operations (write, resize,
    signal) need an ``Attached`` link and callers must check for it.
    Detached ("ghost") sessions are reported active until the next write
    replaces them with a freshly spawned session.
    """

    kind: SessionKind
    repository_path: str
    repository_name: str
    link: SessionLink
    provider: Provider | None = None
    name: str | None = None
    id: str = field(default_factory=gen_id)
    cols: int | None = None
    rows: int | None = None
    is_active: bool = True
    created_at: float = field(default_factory=time.time)
    last_accessed_at: float = field(default_factory=time.time)
    history: HistoryBuffer = field(default_factory=HistoryBuffer)
    output_filter: OutputFilter = field(default_factory=PassthroughFilter)

    @property
    def pid(self) -> int:
        return self.link.pid

    @property
    def is_attached(self) -> bool:
        return isinstance(self.link, Attached)

    @property
    def process(self) -> ProcessHandle | None:
        if isinstance(self.link, Attached):
            return self.link.process
        return None

    def touch(self) -> None:
        # max() keeps the timestamp non-decreasing across clock steps
        self.last_accessed_at = max(self.last_accessed_at, time.time())

    def to_record(self) -> SessionRecord:
        return SessionRecord(
            id=self.id,
            kind=self.kind,
            repository_path=self.repository_path,
            repository_name=self.repository_name,
            provider=self.provider,
            name=self.name,
            pid=self.pid,
            is_active=self.is_active,
            created_at=self.created_at,
            last_accessed_at=self.last_accessed_at,
            cols=self.cols,
            rows=self.rows,
            output_history=self.history.snapshot(),
        )

    def summary(self) -> dict:
        """Wire-friendly description, without history."""
        return {
            "id": self.id,
            "kind": str(self.kind),
            "repository_path": self.repository_path,
            "repository_name": self.repository_name,
            "provider": str(self.provider) if self.provider else None,
            "name": self.name,
            "pid": self.pid,
            "is_active": self.is_active,
            "is_attached": self.is_attached,
            "history_lines": len(self.history),
            "total_lines": self.history.total_lines,
            "created_at": self.created_at,
        }

    @classmethod
    def ghost(cls, record: SessionRecord, history_limit: int = 500) -> Session:
        """Rebuild a detached session from its persisted record."""
        history = HistoryBuffer(history_limit)
        history.extend(record.output_history[-history_limit:])
        return cls(
            kind=record.kind,
            repository_path=record.repository_path,
            repository_name=record.repository_name,
            link=Detached(pid=record.pid),
            provider=record.provider,
            name=record.name,
            id=record.id,
            cols=record.cols,
            rows=record.rows,
            is_active=True,
            created_at=record.created_at,
            last_accessed_at=max(record.last_accessed_at, time.time()),
            history=history,
        )
