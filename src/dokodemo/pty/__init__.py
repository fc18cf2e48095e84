"""PTY sessions — processes, history buffers, the registry and lifecycle."""

from dokodemo.pty.buffer import HistoryBuffer
from dokodemo.pty.filter import (
    OutputFilter,
    PassthroughFilter,
    TerminalQueryResponder,
    filter_for,
)
from dokodemo.pty.lifecycle import LifecycleController
from dokodemo.pty.liveness import is_process_alive, terminate_pid
from dokodemo.pty.process import ProcessHandle, PTYProcess
from dokodemo.pty.registry import SessionRegistry
from dokodemo.pty.session import Attached, Detached, Session

__all__ = [
    "Attached",
    "Detached",
    "HistoryBuffer",
    "LifecycleController",
    "OutputFilter",
    "PassthroughFilter",
    "PTYProcess",
    "ProcessHandle",
    "Session",
    "SessionRegistry",
    "TerminalQueryResponder",
    "filter_for",
    "is_process_alive",
    "terminate_pid",
]
