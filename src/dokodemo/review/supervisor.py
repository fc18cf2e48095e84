"""Review-server supervisor — one diff viewer process per repository.

The viewer is launched by typing its command line into a fresh shell
PTY. Its real port is learned from the startup banner since the tool may
move off the requested port; without a banner the requested port is
assumed.
"""

from __future__ import annotations

import asyncio
import logging
import re
import shlex
import signal
import subprocess
from dataclasses import dataclass, field
from functools import partial

from dokodemo.config import ReviewSettings
from dokodemo.model import DiffSpec, DiffType, ReviewServer, ReviewStatus
from dokodemo.pty.process import ProcessHandle, PTYProcess
from dokodemo.pty.registry import Spawner
from dokodemo.review import ports
from dokodemo.session.wire import Wire

logger = logging.getLogger(__name__)

_ANSI_RE = re.compile(r"\x1b\[[0-9;?]*[A-Za-z]")
_PORT_MARKERS = (
    re.compile(r"(?:started|listening|running)\b[^\n]*?:(\d{2,5})\b", re.IGNORECASE),
    re.compile(r"\b(?:on|at) port (\d{2,5})\b", re.IGNORECASE),
)
_OUTPUT_TAIL = 4096


def resolve_diff_target(diff: DiffSpec | None) -> str:
    """Map a diff selection to the argument passed to the viewer."""
    if diff is None:
        return "HEAD"
    if diff.type == DiffType.STAGED:
        return "staged"
    if diff.type == DiffType.WORKING:
        return "working"
    if diff.type == DiffType.ALL:
        return "."
    if diff.type == DiffType.CUSTOM and diff.custom_value and diff.custom_value.strip():
        return diff.custom_value.strip()
    return "HEAD"


def find_port(text: str) -> int | None:
    """Port announced in viewer output, if any."""
    clean = _ANSI_RE.sub("", text)
    for pattern in _PORT_MARKERS:
        match = pattern.search(clean)
        if match:
            return int(match.group(1))
    return None


@dataclass
class _Entry:
    server: ReviewServer
    process: ProcessHandle
    output: str = ""
    detected_port: int | None = None
    announced: asyncio.Event = field(default_factory=asyncio.Event)
    exited: asyncio.Event = field(default_factory=asyncio.Event)


class ReviewServerSupervisor:
    def __init__(
        self,
        wire: Wire,
        settings: ReviewSettings,
        shell: str = "bash",
        grace_period: float = 2.0,
        spawner: Spawner = PTYProcess.spawn,
    ) -> None:
        self._wire = wire
        self._settings = settings
        self._shell = shell
        self._grace_period = grace_period
        self._spawner = spawner
        self._servers: dict[str, _Entry] = {}

    def _url(self, port: int) -> str:
        return f"http://{self._settings.host}:{port}"

    def get(self, repository_path: str) -> ReviewServer | None:
        entry = self._servers.get(repository_path)
        return entry.server if entry else None

    def list(self) -> list[ReviewServer]:
        return [entry.server for entry in self._servers.values()]

    async def start(
        self, repository_path: str, diff: DiffSpec | None = None
    ) -> ReviewServer | None:
        """Launch the viewer for ``repository_path``.

        Replaces a server already running for the repository and reclaims
        the shared port from whoever holds it. Returns None if the shell
        cannot be spawned or dies during startup.
        """
        existing = self._servers.get(repository_path)
        if existing and existing.server.status in (
            ReviewStatus.STARTING,
            ReviewStatus.RUNNING,
        ):
            await self.stop(repository_path)

        port = self._settings.port
        loop = asyncio.get_running_loop()
        if await loop.run_in_executor(None, ports.is_port_in_use, port):
            logger.warning("Port %d is in use; reclaiming it", port)
            await loop.run_in_executor(None, ports.kill_port_owners, port)
            if not await ports.wait_for_port_release(
                port, self._settings.port_release_timeout
            ):
                logger.warning("Port %d still in use after reclaim", port)

        target = resolve_diff_target(diff)
        server = ReviewServer(
            repository_path=repository_path,
            port=port,
            url=self._url(port),
            diff_target=target,
            diff_spec=diff,
        )
        try:
            process = await self._spawner(
                shlex.split(self._shell), cwd=repository_path, cols=120, rows=30
            )
        except (OSError, subprocess.SubprocessError) as e:
            logger.error("Failed to start review shell in %s: %s", repository_path, e)
            return None

        server.pid = process.pid
        entry = _Entry(server=server, process=process)
        self._servers[repository_path] = entry
        process.attach(partial(self._on_output, entry), partial(self._on_exit, entry))

        command = self._settings.command.format(target=shlex.quote(target), port=port)
        try:
            process.write(command + "\r")
        except OSError as e:
            logger.error("Failed to launch review server: %s", e)
            server.status = ReviewStatus.ERROR
            return None

        try:
            await asyncio.wait_for(
                entry.announced.wait(), timeout=self._settings.startup_timeout
            )
        except asyncio.TimeoutError:
            logger.warning(
                "No startup banner from review server within %.0fs; assuming port %d",
                self._settings.startup_timeout,
                port,
            )

        if entry.exited.is_set() or self._servers.get(repository_path) is not entry:
            logger.error("Review server for %s exited during startup", repository_path)
            return None

        server.port = entry.detected_port or port
        server.url = self._url(server.port)
        server.status = ReviewStatus.RUNNING
        logger.info("Review server for %s running at %s", repository_path, server.url)
        self._wire.send_review_server_started(server.to_json())
        return server

    def _on_output(self, entry: _Entry, chunk: str) -> None:
        if entry.announced.is_set():
            return
        entry.output = (entry.output + chunk)[-_OUTPUT_TAIL:]
        port = find_port(entry.output)
        if port is not None:
            entry.detected_port = port
            entry.announced.set()

    def _on_exit(self, entry: _Entry, exit_code: int | None, term_signal: int | None) -> None:
        entry.exited.set()
        entry.announced.set()
        server = entry.server
        if server.status == ReviewStatus.STOPPED:
            return
        server.status = ReviewStatus.STOPPED if exit_code == 0 else ReviewStatus.ERROR
        logger.info(
            "Review server for %s exited (code=%s signal=%s)",
            server.repository_path,
            exit_code,
            term_signal,
        )
        if self._servers.get(server.repository_path) is entry:
            self._wire.send_review_server_stopped(server.repository_path)

    async def stop(self, repository_path: str) -> bool:
        entry = self._servers.pop(repository_path, None)
        if entry is None:
            return False
        server = entry.server
        server.status = ReviewStatus.STOPPED

        process = entry.process
        if not entry.exited.is_set():
            for sig in (signal.SIGTERM, signal.SIGKILL):
                try:
                    process.kill(sig)
                except ProcessLookupError:
                    break
                try:
                    await asyncio.wait_for(entry.exited.wait(), timeout=self._grace_period)
                    break
                except asyncio.TimeoutError:
                    continue

        # The viewer runs as a job of the shell, outside its process group
        loop = asyncio.get_running_loop()
        for port in {self._settings.port, server.port}:
            if await loop.run_in_executor(None, ports.is_port_in_use, port):
                await loop.run_in_executor(None, ports.kill_port_owners, port)

        logger.info("Review server for %s stopped", repository_path)
        self._wire.send_review_server_stopped(repository_path)
        return True

    async def cleanup_repository(self, repository_path: str) -> bool:
        return await self.stop(repository_path)

    async def shutdown(self) -> None:
        await asyncio.gather(
            *(self.stop(repo) for repo in list(self._servers)), return_exceptions=True
        )
