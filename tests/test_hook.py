"""Tests for dokodemo.automode.hook.handle_hook."""

from __future__ import annotations

from pathlib import Path

import pytest

from dokodemo.automode import AutoModeScheduler, HookOutcome, handle_hook


class RecordingScheduler:
    """Captures hook dispatches without running the state machine."""

    def __init__(self, outcome: HookOutcome = HookOutcome.DISPATCHED, known: str | None = None) -> None:
        self.outcome = outcome
        self.known = known
        self.calls: list[str] = []

    def repository_for(self, path: Path) -> str | None:
        if self.known and (path == Path(self.known) or path.is_relative_to(self.known)):
            return self.known
        return None

    def on_hook_event(self, repository_path: str) -> HookOutcome:
        self.calls.append(repository_path)
        return self.outcome


@pytest.fixture
def root(tmp_path: Path) -> Path:
    repo = tmp_path / "repos" / "app" / "src"
    repo.mkdir(parents=True)
    return (tmp_path / "repos").resolve()


def _payload(cwd: str, event: str = "Stop") -> dict:
    return {"event": event, "metadata": {"cwd": cwd}}


class TestHandleHook:
    def test_stop_event_dispatches(self, root: Path) -> None:
        scheduler = RecordingScheduler()
        response = handle_hook(scheduler, _payload(str(root / "app")), root)
        assert response.status == "success"
        assert scheduler.calls == [str(root / "app")]

    def test_subdirectory_maps_to_repository(self, root: Path) -> None:
        scheduler = RecordingScheduler()
        handle_hook(scheduler, _payload(str(root / "app" / "src")), root)
        assert scheduler.calls == [str(root / "app")]

    def test_known_repository_preferred(self, root: Path) -> None:
        known = str(root / "app")
        scheduler = RecordingScheduler(known=known)
        handle_hook(scheduler, _payload(str(root / "app" / "src")), root)
        assert scheduler.calls == [known]

    def test_other_events_ignored(self, root: Path) -> None:
        scheduler = RecordingScheduler()
        response = handle_hook(scheduler, _payload(str(root / "app"), "Notification"), root)
        assert response.status == "ignored"
        assert scheduler.calls == []

    def test_outside_root_ignored(self, root: Path, tmp_path: Path) -> None:
        scheduler = RecordingScheduler()
        response = handle_hook(scheduler, _payload(str(tmp_path)), root)
        assert response.status == "ignored"
        assert scheduler.calls == []

    def test_traversal_outside_root_ignored(self, root: Path) -> None:
        scheduler = RecordingScheduler()
        response = handle_hook(scheduler, _payload(str(root / "app" / ".." / "..")), root)
        assert response.status == "ignored"
        assert scheduler.calls == []

    def test_root_itself_ignored(self, root: Path) -> None:
        scheduler = RecordingScheduler()
        assert handle_hook(scheduler, _payload(str(root)), root).status == "ignored"

    def test_invalid_payload(self, root: Path) -> None:
        scheduler = RecordingScheduler()
        response = handle_hook(scheduler, {"event": "Stop"}, root)
        assert response.status == "error"

    def test_not_running_reported_ignored(self, root: Path) -> None:
        scheduler = RecordingScheduler(outcome=HookOutcome.IGNORED)
        response = handle_hook(scheduler, _payload(str(root / "app")), root)
        assert response.status == "ignored"

    def test_waiting_is_success(self, root: Path) -> None:
        scheduler = RecordingScheduler(outcome=HookOutcome.WAITING)
        response = handle_hook(scheduler, _payload(str(root / "app")), root)
        assert response.status == "success"


class TestWithScheduler:
    async def test_drives_real_scheduler(self, root: Path, wire, registry, store, config) -> None:
        scheduler = AutoModeScheduler(wire, registry, store, config.automode)
        repo = str(root / "app")
        cfg = scheduler.create_config("loop", "continue", repo)
        scheduler.start(repo, cfg.id)

        response = handle_hook(scheduler, _payload(repo), root)
        assert response.status == "success"
        assert scheduler.status(repo).is_waiting is True
        await scheduler.shutdown()
