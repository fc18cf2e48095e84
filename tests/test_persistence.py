"""Tests for dokodemo.store.JsonStore."""

from __future__ import annotations

import asyncio
import json
import time
from pathlib import Path

from dokodemo.model import CommandShortcut, OutputLine, Provider, SessionKind, SessionRecord
from dokodemo.store import AI_SESSIONS, LEGACY_SESSIONS, SHORTCUTS, JsonStore


def _record(repo: str, provider: Provider | None = Provider.CLAUDE, **kw) -> dict:
    data = SessionRecord(
        id=kw.pop("id", f"id-{repo}-{provider}"),
        repository_path=repo,
        provider=provider,
        pid=kw.pop("pid", 4242),
        **kw,
    ).to_json()
    return data


# ---------------------------------------------------------------------------
# Reading
# ---------------------------------------------------------------------------


class TestLoad:
    async def test_missing_document_is_empty(self, tmp_path: Path) -> None:
        store = JsonStore(tmp_path)
        assert await store.load(AI_SESSIONS) == []

    async def test_corrupt_document_is_empty(self, tmp_path: Path) -> None:
        (tmp_path / AI_SESSIONS).write_text("{not json")
        store = JsonStore(tmp_path)
        assert await store.load(AI_SESSIONS) == []

    async def test_non_array_document_is_empty(self, tmp_path: Path) -> None:
        (tmp_path / AI_SESSIONS).write_text('{"a": 1}')
        store = JsonStore(tmp_path)
        assert await store.load(AI_SESSIONS) == []

    async def test_invalid_elements_skipped(self, tmp_path: Path) -> None:
        good = CommandShortcut(command="ls", repository_path="/r").to_json()
        (tmp_path / SHORTCUTS).write_text(json.dumps([good, {"bogus": True}, 3]))
        store = JsonStore(tmp_path)
        shortcuts = await store.load_models(SHORTCUTS, CommandShortcut)
        assert [s.command for s in shortcuts] == ["ls"]


# ---------------------------------------------------------------------------
# Writing
# ---------------------------------------------------------------------------


class TestWrite:
    async def test_write_uses_camel_case_on_disk(self, tmp_path: Path) -> None:
        store = JsonStore(tmp_path)
        assert await store.write(AI_SESSIONS, [_record("/r")])
        raw = json.loads((tmp_path / AI_SESSIONS).read_text())
        assert raw[0]["repositoryPath"] == "/r"
        assert raw[0]["provider"] == "claude"

    async def test_write_failure_returns_false(self, tmp_path: Path) -> None:
        store = JsonStore(tmp_path / "missing" / "dir")
        assert await store.write(AI_SESSIONS, []) is False

    async def test_schedule_coalesces(self, tmp_path: Path) -> None:
        store = JsonStore(tmp_path, debounce=0.02)
        calls = 0
        items: list[dict] = []

        def snapshot() -> list[dict]:
            nonlocal calls
            calls += 1
            return list(items)

        for i in range(20):
            items.append({"n": i})
            store.schedule("doc.json", snapshot)
        await asyncio.sleep(0.1)
        assert calls == 1
        assert len(json.loads((tmp_path / "doc.json").read_text())) == 20

    async def test_flush_writes_immediately(self, tmp_path: Path) -> None:
        store = JsonStore(tmp_path, debounce=60.0)
        store.schedule("doc.json", lambda: [{"ok": True}])
        await store.flush()
        assert json.loads((tmp_path / "doc.json").read_text()) == [{"ok": True}]

    async def test_failing_snapshot_is_logged_not_raised(self, tmp_path: Path) -> None:
        store = JsonStore(tmp_path, debounce=0.0)

        def broken() -> list[dict]:
            raise RuntimeError("boom")

        store.schedule("bad.json", broken)
        store.schedule("good.json", lambda: [])
        await store.flush()
        assert not (tmp_path / "bad.json").exists()
        assert (tmp_path / "good.json").exists()


# ---------------------------------------------------------------------------
# Sessions and migration
# ---------------------------------------------------------------------------


class TestMigration:
    async def test_legacy_document_migrated(self, tmp_path: Path) -> None:
        legacy = _record("/r", provider=None)
        (tmp_path / LEGACY_SESSIONS).write_text(json.dumps([legacy]))
        store = JsonStore(tmp_path)

        assert await store.migrate() is True
        migrated = json.loads((tmp_path / AI_SESSIONS).read_text())
        assert migrated[0]["provider"] == "claude"
        assert migrated[0]["kind"] == "ai"
        assert (tmp_path / LEGACY_SESSIONS).exists()

    async def test_migration_runs_once(self, tmp_path: Path) -> None:
        (tmp_path / LEGACY_SESSIONS).write_text(json.dumps([_record("/r", provider=None)]))
        store = JsonStore(tmp_path)
        assert await store.migrate() is True
        assert await store.migrate() is False

    async def test_no_legacy_document(self, tmp_path: Path) -> None:
        store = JsonStore(tmp_path)
        assert await store.migrate() is False
        assert not (tmp_path / AI_SESSIONS).exists()

    async def test_legacy_records_still_consulted(self, tmp_path: Path) -> None:
        (tmp_path / AI_SESSIONS).write_text(json.dumps([_record("/a", id="a")]))
        (tmp_path / LEGACY_SESSIONS).write_text(
            json.dumps([_record("/b", provider=None, id="b")])
        )
        store = JsonStore(tmp_path)
        records = await store.load_session_records()
        by_id = {r.id: r for r in records}
        assert set(by_id) == {"a", "b"}
        assert by_id["b"].provider == Provider.CLAUDE
        assert by_id["b"].kind == SessionKind.AI


class TestFindSessionRecord:
    async def test_matches_repo_and_provider(self, tmp_path: Path) -> None:
        now = time.time()
        docs = [
            _record("/r", Provider.CLAUDE, id="old", last_accessed_at=now - 100),
            _record("/r", Provider.CLAUDE, id="new", last_accessed_at=now - 10),
            _record("/r", Provider.CODEX, id="codex", last_accessed_at=now),
        ]
        (tmp_path / AI_SESSIONS).write_text(json.dumps(docs))
        store = JsonStore(tmp_path)
        found = await store.find_session_record("/r", Provider.CLAUDE, ttl=3600)
        assert found is not None and found.id == "new"

    async def test_expired_records_ignored(self, tmp_path: Path) -> None:
        doc = _record("/r", last_accessed_at=time.time() - 7200)
        (tmp_path / AI_SESSIONS).write_text(json.dumps([doc]))
        store = JsonStore(tmp_path)
        assert await store.find_session_record("/r", Provider.CLAUDE, ttl=3600) is None

    async def test_history_preserved(self, tmp_path: Path) -> None:
        lines = [OutputLine(content=f"{i}").to_json() for i in range(3)]
        doc = _record("/r")
        doc["outputHistory"] = lines
        (tmp_path / AI_SESSIONS).write_text(json.dumps([doc]))
        store = JsonStore(tmp_path)
        found = await store.find_session_record("/r", Provider.CLAUDE, ttl=3600)
        assert found is not None
        assert [l.content for l in found.output_history] == ["0", "1", "2"]
