"""Tests for dokodemo.session.wire (Wire, WireEvent, EventType)."""

from __future__ import annotations

import asyncio

from dokodemo.session.wire import EventType, Wire, WireEvent


# ---------------------------------------------------------------------------
# EventType
# ---------------------------------------------------------------------------


class TestEventType:
    def test_all_variants_exist(self) -> None:
        expected = {
            "SESSION_CREATED",
            "SESSION_OUTPUT",
            "SESSION_EXIT",
            "SESSION_RESPAWNED",
            "SESSION_CLEANED",
            "TERMINAL_CREATED",
            "TERMINAL_OUTPUT",
            "TERMINAL_EXIT",
            "TERMINAL_CLOSED",
            "AUTOMODE_WAITING",
            "AUTOMODE_PROMPT_SENT",
            "AUTOMODE_STATUS_CHANGED",
            "AUTOMODE_CONFIGS_CHANGED",
            "REVIEW_SERVER_STARTED",
            "REVIEW_SERVER_STOPPED",
        }
        assert {e.name for e in EventType} == expected

    def test_values_are_lowercase(self) -> None:
        for e in EventType:
            assert e.value == e.name.lower()


# ---------------------------------------------------------------------------
# Wire — basic send/subscribe
# ---------------------------------------------------------------------------


class TestWire:
    def test_defaults(self) -> None:
        event = WireEvent(type=EventType.SESSION_CLEANED)
        assert event.data == {}

    def test_send_to_multiple_subscribers(self) -> None:
        wire = Wire()
        q1 = wire.subscribe()
        q2 = wire.subscribe()
        wire.send(WireEvent(type=EventType.SESSION_CLEANED, data={"session_id": "s"}))
        e1 = q1.get_nowait()
        e2 = q2.get_nowait()
        assert e1 is not None and e2 is not None
        assert e1.type == e2.type == EventType.SESSION_CLEANED

    def test_unsubscribe(self) -> None:
        wire = Wire()
        q = wire.subscribe()
        wire.unsubscribe(q)
        wire.send_cleaned("s", "/repo")
        assert q.empty()

    def test_unsubscribe_nonexistent_is_safe(self) -> None:
        wire = Wire()
        q: asyncio.Queue[WireEvent | None] = asyncio.Queue()
        wire.unsubscribe(q)

    def test_send_after_close_is_dropped(self) -> None:
        wire = Wire()
        q = wire.subscribe()
        wire.close()
        assert q.get_nowait() is None
        wire.send_terminal_closed("t", "/repo")
        wire.send_review_server_stopped("/repo")
        assert q.empty()


# ---------------------------------------------------------------------------
# Wire — session events
# ---------------------------------------------------------------------------


class TestSessionEvents:
    def test_created_ai_vs_terminal(self) -> None:
        wire = Wire()
        q = wire.subscribe()
        wire.send_session_created({"id": "a", "kind": "ai"})
        wire.send_session_created({"id": "t", "kind": "shell"})
        assert q.get_nowait().type == EventType.SESSION_CREATED
        assert q.get_nowait().type == EventType.TERMINAL_CREATED

    def test_output_with_provider(self) -> None:
        wire = Wire()
        q = wire.subscribe()
        wire.send_output("s1", "/repo", {"content": "hi"}, provider="claude")
        event = q.get_nowait()
        assert event.type == EventType.SESSION_OUTPUT
        assert event.data["session_id"] == "s1"
        assert event.data["provider"] == "claude"
        assert event.data["line"]["content"] == "hi"

    def test_output_without_provider_is_terminal(self) -> None:
        wire = Wire()
        q = wire.subscribe()
        wire.send_output("t1", "/repo", {"content": "$ "})
        event = q.get_nowait()
        assert event.type == EventType.TERMINAL_OUTPUT
        assert event.data["terminal_id"] == "t1"
        assert "provider" not in event.data

    def test_exit(self) -> None:
        wire = Wire()
        q = wire.subscribe()
        wire.send_exit("s1", "/repo", 0, None, provider="codex")
        wire.send_exit("t1", "/repo", None, 9)
        ai = q.get_nowait()
        term = q.get_nowait()
        assert ai.type == EventType.SESSION_EXIT
        assert ai.data["exit_code"] == 0
        assert term.type == EventType.TERMINAL_EXIT
        assert term.data["signal"] == 9

    def test_respawned(self) -> None:
        wire = Wire()
        q = wire.subscribe()
        wire.send_respawned("old", "new", "/repo")
        event = q.get_nowait()
        assert event.data == {
            "old_session_id": "old",
            "session_id": "new",
            "repository_path": "/repo",
        }


# ---------------------------------------------------------------------------
# Wire — auto-mode and review events
# ---------------------------------------------------------------------------


class TestAutoModeEvents:
    def test_waiting(self) -> None:
        wire = Wire()
        q = wire.subscribe()
        wire.send_automode_waiting("/repo", 290, 1000.0)
        event = q.get_nowait()
        assert event.type == EventType.AUTOMODE_WAITING
        assert event.data["remaining_time"] == 290

    def test_status(self) -> None:
        wire = Wire()
        q = wire.subscribe()
        wire.send_automode_status("/repo", True, config_id="c1")
        event = q.get_nowait()
        assert event.type == EventType.AUTOMODE_STATUS_CHANGED
        assert event.data["is_running"] is True
        assert event.data["config_id"] == "c1"
        assert event.data["is_waiting"] is False

    def test_prompt_sent(self) -> None:
        wire = Wire()
        q = wire.subscribe()
        wire.send_automode_prompt_sent("s1", "/repo", "c1", "continue")
        event = q.get_nowait()
        assert event.type == EventType.AUTOMODE_PROMPT_SENT
        assert event.data["prompt"] == "continue"


class TestReviewEvents:
    def test_started_and_stopped(self) -> None:
        wire = Wire()
        q = wire.subscribe()
        wire.send_review_server_started({"repositoryPath": "/repo", "url": "http://localhost:3100"})
        wire.send_review_server_stopped("/repo")
        started = q.get_nowait()
        stopped = q.get_nowait()
        assert started.type == EventType.REVIEW_SERVER_STARTED
        assert started.data["url"] == "http://localhost:3100"
        assert stopped.type == EventType.REVIEW_SERVER_STOPPED
