"""Tests for dokodemo.pty.process.PTYProcess against real pseudo-terminals."""

from __future__ import annotations

import asyncio
import signal
import sys

import pytest

from dokodemo.pty.process import PTYProcess

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="POSIX PTYs only")


class Collector:
    def __init__(self) -> None:
        self.chunks: list[str] = []
        self.exit: tuple[int | None, int | None] | None = None
        self.exited = asyncio.Event()

    @property
    def text(self) -> str:
        return "".join(self.chunks)

    def on_data(self, chunk: str) -> None:
        self.chunks.append(chunk)

    def on_exit(self, exit_code: int | None, term_signal: int | None) -> None:
        self.exit = (exit_code, term_signal)
        self.exited.set()


async def _start(command: list[str], tmp_path) -> tuple[PTYProcess, Collector]:
    process = await PTYProcess.spawn(command, cwd=str(tmp_path), cols=100, rows=40)
    collector = Collector()
    process.attach(collector.on_data, collector.on_exit)
    return process, collector


class TestPTYProcess:
    async def test_output_and_exit_code(self, tmp_path) -> None:
        process, out = await _start(["/bin/sh", "-c", "echo hello; exit 3"], tmp_path)
        await asyncio.wait_for(out.exited.wait(), timeout=5)
        assert "hello" in out.text
        assert out.exit == (3, None)
        assert process.alive is False

    async def test_runs_in_cwd(self, tmp_path) -> None:
        _, out = await _start(["/bin/sh", "-c", "pwd"], tmp_path)
        await asyncio.wait_for(out.exited.wait(), timeout=5)
        assert tmp_path.name in out.text

    async def test_terminal_size(self, tmp_path) -> None:
        _, out = await _start(["/bin/sh", "-c", "stty size"], tmp_path)
        await asyncio.wait_for(out.exited.wait(), timeout=5)
        assert "40 100" in out.text

    async def test_write_echoes(self, tmp_path) -> None:
        process, out = await _start(["cat"], tmp_path)
        process.write("ping\n")
        for _ in range(100):
            if "ping" in out.text:
                break
            await asyncio.sleep(0.02)
        assert "ping" in out.text
        process.kill(signal.SIGKILL)
        await asyncio.wait_for(out.exited.wait(), timeout=5)

    async def test_kill_reports_signal(self, tmp_path) -> None:
        process, out = await _start(["sleep", "30"], tmp_path)
        assert process.alive is True
        process.kill(signal.SIGTERM)
        await asyncio.wait_for(out.exited.wait(), timeout=5)
        assert out.exit == (None, signal.SIGTERM)

    async def test_write_after_exit_raises(self, tmp_path) -> None:
        process, out = await _start(["/bin/sh", "-c", "exit 0"], tmp_path)
        await asyncio.wait_for(out.exited.wait(), timeout=5)
        with pytest.raises(OSError):
            process.write("x")
        with pytest.raises(ProcessLookupError):
            process.kill()

    async def test_missing_command(self, tmp_path) -> None:
        with pytest.raises(OSError):
            await PTYProcess.spawn(["definitely-not-a-command-xyz"], cwd=str(tmp_path))
