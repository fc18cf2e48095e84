"""Serializable records — the JSON-facing shape of every persisted entity.

Each record mirrors the serializable subset of a live object (no OS
handles). Field names are snake_case in Python and camelCase on disk so
documents written by earlier releases keep loading.
"""

from __future__ import annotations

import enum
import time
import uuid
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def gen_id() -> str:
    return uuid.uuid4().hex


class Provider(enum.StrEnum):
    CLAUDE = "claude"
    CODEX = "codex"


class SessionKind(enum.StrEnum):
    AI = "ai"
    SHELL = "shell"


class OutputKind(enum.StrEnum):
    STDOUT = "stdout"
    STDERR = "stderr"
    SYSTEM = "system"


class ReviewStatus(enum.StrEnum):
    STARTING = "starting"
    RUNNING = "running"
    STOPPED = "stopped"
    ERROR = "error"


class DiffType(enum.StrEnum):
    HEAD = "HEAD"
    STAGED = "staged"
    WORKING = "working"
    ALL = "all"
    CUSTOM = "custom"


class Record(BaseModel):
    """Base for persisted records: camelCase on disk, snake_case in code."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class OutputLine(Record):
    """One chunk of process output as stored in a history buffer."""

    id: str = Field(default_factory=gen_id)
    content: str = ""
    timestamp: float = Field(default_factory=time.time)
    kind: OutputKind = Field(default=OutputKind.STDOUT, alias="type")


class SessionRecord(Record):
    """Persisted snapshot of an AI session or a shell terminal."""

    id: str
    kind: SessionKind = SessionKind.AI
    repository_path: str
    repository_name: str = ""
    provider: Provider | None = None
    name: str | None = None  # terminal display name
    pid: int = 0
    is_active: bool = True
    created_at: float = Field(default_factory=time.time)
    last_accessed_at: float = Field(default_factory=time.time)
    cols: int | None = None
    rows: int | None = None
    output_history: list[OutputLine] = Field(default_factory=list)


class HistoryRecord(Record):
    """Output history retained after its session went away.

    AI histories are keyed by (repository, provider); terminal histories
    by terminal id.
    """

    repository_path: str
    provider: Provider | None = None
    terminal_id: str | None = None
    output_history: list[OutputLine] = Field(default_factory=list)


class CommandShortcut(Record):
    id: str = Field(default_factory=gen_id)
    name: str | None = None  # display falls back to the command
    command: str
    repository_path: str
    created_at: float = Field(default_factory=time.time)


class AutoModeConfig(Record):
    """A saved auto-mode prompt for one repository."""

    id: str = Field(default_factory=gen_id)
    name: str
    prompt: str
    repository_path: str
    is_enabled: bool = True
    trigger_mode: Literal["hook"] = "hook"
    send_clear_command: bool = True
    provider: Provider = Provider.CLAUDE
    created_at: float = Field(default_factory=time.time)
    updated_at: float = Field(default_factory=time.time)


class AutoModeState(Record):
    repository_path: str
    is_running: bool = False
    current_config_id: str | None = None
    last_execution_time: float | None = None


class DiffSpec(Record):
    type: DiffType = DiffType.HEAD
    custom_value: str | None = None


class ReviewServer(Record):
    repository_path: str
    port: int
    status: ReviewStatus = ReviewStatus.STARTING
    pid: int | None = None
    url: str = ""
    diff_target: str = "HEAD"
    diff_spec: DiffSpec | None = None
    started_at: float = Field(default_factory=time.time)
