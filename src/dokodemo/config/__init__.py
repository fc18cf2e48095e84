"""Configuration — Pydantic models for dokodemo settings."""

from __future__ import annotations

import json
import os
import shlex
from pathlib import Path
from typing import Any

from dotenv import load_dotenv
from pydantic import BaseModel, Field


def _default_shell() -> str:
    return os.environ.get("SHELL") or "bash"


class SessionSettings(BaseModel):
    """PTY session configuration.

    Provider commands are argv lists; the first element is resolved on
    ``PATH`` by the OS when the session is spawned.
    """

    history_limit: int = Field(default=500, description="Output lines kept per session")
    cols: int = Field(default=80)
    rows: int = Field(default=24)
    terminal_cols: int = Field(default=120)
    terminal_rows: int = Field(default=30)
    grace_period: float = Field(
        default=2.0, description="Seconds between SIGTERM and SIGKILL"
    )
    close_timeout: float = Field(
        default=3.0, description="Upper bound on a single close, in seconds"
    )
    record_ttl: float = Field(
        default=24 * 60 * 60,
        description="Persisted session records idle longer than this are ignored",
    )
    monitor_interval: float = Field(
        default=30.0, description="Period of the dead ghost session sweep"
    )
    provider_commands: dict[str, list[str]] = Field(
        default_factory=lambda: {"claude": ["claude"], "codex": ["codex"]}
    )
    shell: str = Field(default_factory=_default_shell)


class AutoModeSettings(BaseModel):
    """Auto-mode timing.

    The delays around the ``/clear`` command give the assistant CLI time
    to redraw before the next keystrokes arrive.
    """

    min_interval: float = Field(
        default=300.0, description="Minimum seconds between two prompt dispatches"
    )
    startup_delay: float = Field(
        default=2.0, description="Wait before prompting a freshly spawned session"
    )
    clear_enter_delay: float = Field(default=0.5)
    clear_settle_delay: float = Field(default=1.5)
    enter_delay: float = Field(default=0.5)


class ReviewSettings(BaseModel):
    """Diff review server configuration."""

    port: int = Field(default=3100, description="Shared well-known port")
    host: str = Field(default="localhost", description="Host used in reported URLs")
    command: str = Field(
        default="npx difit {target} --port {port} --host 0.0.0.0 --no-open",
        description="Invocation line written into the review shell",
    )
    startup_timeout: float = Field(default=10.0)
    port_release_timeout: float = Field(default=2.0)


class StoreSettings(BaseModel):
    debounce: float = Field(
        default=0.25, description="Coalescing window for background writes"
    )


class DokodemoConfig(BaseModel):
    """Top-level dokodemo configuration."""

    processes_dir: str = Field(
        default="~/.dokodemo/processes",
        description="Directory holding the persisted JSON documents",
    )
    repos_dir: str = Field(
        default="repositories", description="Managed repository root"
    )
    session: SessionSettings = Field(default_factory=SessionSettings)
    automode: AutoModeSettings = Field(default_factory=AutoModeSettings)
    review: ReviewSettings = Field(default_factory=ReviewSettings)
    store: StoreSettings = Field(default_factory=StoreSettings)

    @property
    def processes_path(self) -> Path:
        return Path(os.path.expanduser(self.processes_dir))

    @property
    def repos_path(self) -> Path:
        return Path(os.path.expanduser(self.repos_dir)).resolve()

    @classmethod
    def load(cls, config_path: str | None = None) -> DokodemoConfig:
        """Load config from file, env vars, or defaults.

        Priority: env vars > config file > defaults.

        Env vars:
            DOKODEMO_PROCESSES_DIR   - Directory for persisted state
            DOKODEMO_REPOS_DIR       - Managed repository root
            DOKODEMO_HISTORY_LIMIT   - Output history lines kept per session
            DOKODEMO_MIN_INTERVAL    - Auto-mode minimum interval in seconds
            DOKODEMO_REVIEW_PORT     - Shared review server port
            DOKODEMO_CLAUDE_COMMAND  - Claude launch command (shell syntax)
            DOKODEMO_CODEX_COMMAND   - Codex launch command (shell syntax)
        """
        load_dotenv(override=True)

        config_data: dict[str, Any] = {}

        if config_path and os.path.exists(config_path):
            with open(config_path) as f:
                config_data = json.load(f)

        env_processes_dir = os.environ.get("DOKODEMO_PROCESSES_DIR")
        if env_processes_dir:
            config_data["processes_dir"] = env_processes_dir

        env_repos_dir = os.environ.get("DOKODEMO_REPOS_DIR")
        if env_repos_dir:
            config_data["repos_dir"] = env_repos_dir

        session = config_data.get("session", {})

        env_history_limit = os.environ.get("DOKODEMO_HISTORY_LIMIT")
        if env_history_limit:
            session["history_limit"] = int(env_history_limit)

        commands = dict(session.get("provider_commands", {}))
        for provider in ("claude", "codex"):
            env_command = os.environ.get(f"DOKODEMO_{provider.upper()}_COMMAND")
            if env_command:
                commands[provider] = shlex.split(env_command)
        if commands:
            defaults = SessionSettings().provider_commands
            session["provider_commands"] = {**defaults, **commands}

        if session:
            config_data["session"] = session

        env_min_interval = os.environ.get("DOKODEMO_MIN_INTERVAL")
        if env_min_interval:
            automode = config_data.get("automode", {})
            automode["min_interval"] = float(env_min_interval)
            config_data["automode"] = automode

        env_review_port = os.environ.get("DOKODEMO_REVIEW_PORT")
        if env_review_port:
            review = config_data.get("review", {})
            review["port"] = int(env_review_port)
            config_data["review"] = review

        return cls.model_validate(config_data)
