"""PTY process — an OS process attached to a pseudo-terminal."""

from __future__ import annotations

import asyncio
import codecs
import fcntl
import logging
import os
import pty
import signal
import struct
import subprocess
import termios
from typing import Callable, Protocol

logger = logging.getLogger(__name__)

DataCallback = Callable[[str], None]
ExitCallback = Callable[[int | None, int | None], None]

_POLL_INTERVAL = 0.1


class ProcessHandle(Protocol):
    """What the registry needs from a live process.

    ``PTYProcess`` is the production implementation; tests substitute
    an in-memory fake.
    """

    @property
    def pid(self) -> int: ...

    @property
    def alive(self) -> bool: ...

    def attach(self, on_data: DataCallback, on_exit: ExitCallback) -> None: ...

    def write(self, data: str) -> None: ...

    def resize(self, cols: int, rows: int) -> None: ...

    def kill(self, sig: int = signal.SIGTERM) -> None: ...


def _set_winsize(fd: int, cols: int, rows: int) -> None:
    fcntl.ioctl(fd, termios.TIOCSWINSZ, struct.pack("HHHH", rows, cols, 0, 0))


def _acquire_controlling_tty() -> None:
    # Runs in the child after setsid(); fd 0 is the PTY slave.
    fcntl.ioctl(0, termios.TIOCSCTTY, 0)


class PTYProcess:
    """A child process whose stdio is the slave end of a fresh PTY.

    The child gets its own session (``start_new_session``) with the PTY
    as controlling terminal, so Ctrl+C written to the master reaches its
    foreground job and signals can target the whole process group.

    Output is read from the master fd via ``loop.add_reader`` and handed
    to ``on_data`` as decoded text. A watcher task polls for exit and
    fires ``on_exit(exit_code, signal)`` exactly once after reaping.
    """

    def __init__(
        self, proc: subprocess.Popen, master_fd: int, command: list[str]
    ) -> None:
        self._proc = proc
        self._master_fd = master_fd
        self.command = command
        self._pid = proc.pid
        self._pgid = os.getpgid(proc.pid)
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._on_data: DataCallback | None = None
        self._on_exit: ExitCallback | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._reading = False
        self._watcher: asyncio.Task | None = None
        self._exited = False

    @classmethod
    async def spawn(
        cls,
        command: list[str],
        cwd: str,
        env: dict[str, str] | None = None,
        cols: int = 80,
        rows: int = 24,
    ) -> PTYProcess:
        """Spawn ``command`` in a new PTY sized ``cols`` x ``rows``.

        Raises OSError if the PTY cannot be allocated or the program
        cannot be executed.
        """
        master_fd, slave_fd = pty.openpty()

        full_env = {**os.environ, **(env or {})}
        full_env["TERM"] = "xterm-256color"
        full_env["COLORTERM"] = "truecolor"

        try:
            _set_winsize(slave_fd, cols, rows)
            # subprocess.Popen rather than os.fork: forking from inside a
            # running event loop is not safe.
            proc = subprocess.Popen(
                command,
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                start_new_session=True,
                preexec_fn=_acquire_controlling_tty,
                env=full_env,
                cwd=cwd,
            )
        except OSError:
            os.close(master_fd)
            raise
        finally:
            # Parent always closes slave fd
            os.close(slave_fd)

        logger.info(
            "PTY process started: pid=%d cwd=%s cmd=%s",
            proc.pid,
            cwd,
            " ".join(command),
        )
        return cls(proc, master_fd, command)

    def attach(self, on_data: DataCallback, on_exit: ExitCallback) -> None:
        """Start delivering output and the exit notification."""
        self._on_data = on_data
        self._on_exit = on_exit
        self._loop = asyncio.get_running_loop()
        self._loop.add_reader(self._master_fd, self._on_readable)
        self._reading = True
        self._watcher = asyncio.create_task(self._watch_exit())

    def _on_readable(self) -> None:
        try:
            data = os.read(self._master_fd, 4096)
        except BlockingIOError:
            return
        except OSError:
            # EIO once every slave fd is closed
            data = b""
        if not data:
            self._stop_reading()
            return
        self._deliver(self._decoder.decode(data))

    def _deliver(self, text: str) -> None:
        if not text or self._on_data is None:
            return
        try:
            self._on_data(text)
        except Exception:
            logger.exception("Error in on_data callback for pid %d", self._pid)

    def _stop_reading(self) -> None:
        if self._reading and self._loop is not None:
            self._loop.remove_reader(self._master_fd)
            self._reading = False

    async def _watch_exit(self) -> None:
        while self._proc.poll() is None:
            await asyncio.sleep(_POLL_INTERVAL)
        # Give the reader one more turn to pick up trailing output
        await asyncio.sleep(0)
        self._stop_reading()
        self._deliver(self._decoder.decode(b"", final=True))
        try:
            os.close(self._master_fd)
        except OSError:
            pass

        returncode = self._proc.returncode
        exit_code = returncode if returncode >= 0 else None
        term_signal = -returncode if returncode < 0 else None
        self._exited = True
        logger.info(
            "PTY process %d exited (code=%s signal=%s)",
            self._pid,
            exit_code,
            term_signal,
        )
        if self._on_exit is not None:
            try:
                self._on_exit(exit_code, term_signal)
            except Exception:
                logger.exception("Error in on_exit callback for pid %d", self._pid)

    def write(self, data: str) -> None:
        """Write raw input to the terminal. Raises OSError if it is gone."""
        if self._exited:
            raise OSError(f"process {self._pid} has exited")
        os.write(self._master_fd, data.encode("utf-8"))

    def resize(self, cols: int, rows: int) -> None:
        if self._exited:
            raise OSError(f"process {self._pid} has exited")
        _set_winsize(self._master_fd, cols, rows)

    def kill(self, sig: int = signal.SIGTERM) -> None:
        """Signal the whole process group.

        Raises ProcessLookupError if the group no longer exists.
        """
        if self._exited:
            raise ProcessLookupError(self._pid)
        os.killpg(self._pgid, sig)

    @property
    def pid(self) -> int:
        return self._pid

    @property
    def alive(self) -> bool:
        return not self._exited and self._proc.poll() is None
