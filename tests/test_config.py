"""Tests for dokodemo.config."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from dokodemo.config import DokodemoConfig

_ENV = (
    "DOKODEMO_PROCESSES_DIR",
    "DOKODEMO_REPOS_DIR",
    "DOKODEMO_HISTORY_LIMIT",
    "DOKODEMO_MIN_INTERVAL",
    "DOKODEMO_REVIEW_PORT",
    "DOKODEMO_CLAUDE_COMMAND",
    "DOKODEMO_CODEX_COMMAND",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    for name in _ENV:
        monkeypatch.delenv(name, raising=False)
    # Keep load_dotenv from picking up a developer's .env
    monkeypatch.chdir(tmp_path)


class TestDefaults:
    def test_defaults(self) -> None:
        config = DokodemoConfig.load()
        assert config.session.history_limit == 500
        assert config.session.grace_period == 2.0
        assert config.session.close_timeout == 3.0
        assert config.automode.min_interval == 300.0
        assert config.review.port == 3100
        assert config.session.provider_commands["claude"] == ["claude"]
        assert config.session.provider_commands["codex"] == ["codex"]

    def test_processes_path_expands_home(self) -> None:
        config = DokodemoConfig()
        assert "~" not in str(config.processes_path)


class TestFileAndEnv:
    def test_config_file(self, tmp_path: Path) -> None:
        path = tmp_path / "dokodemo.json"
        path.write_text(json.dumps({"automode": {"min_interval": 60}}))
        config = DokodemoConfig.load(str(path))
        assert config.automode.min_interval == 60

    def test_env_overrides_file(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        path = tmp_path / "dokodemo.json"
        path.write_text(json.dumps({"review": {"port": 4000}}))
        monkeypatch.setenv("DOKODEMO_REVIEW_PORT", "4100")
        monkeypatch.setenv("DOKODEMO_HISTORY_LIMIT", "50")
        config = DokodemoConfig.load(str(path))
        assert config.review.port == 4100
        assert config.session.history_limit == 50

    def test_command_env_is_shell_split(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("DOKODEMO_CODEX_COMMAND", "codex --model 'o4 mini'")
        config = DokodemoConfig.load()
        assert config.session.provider_commands["codex"] == ["codex", "--model", "o4 mini"]
        assert config.session.provider_commands["claude"] == ["claude"]

    def test_missing_file_uses_defaults(self, tmp_path: Path) -> None:
        config = DokodemoConfig.load(str(tmp_path / "missing.json"))
        assert config.review.port == 3100
