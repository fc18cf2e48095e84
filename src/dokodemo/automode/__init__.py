"""Auto-mode — hook-driven prompt re-dispatch."""

from dokodemo.automode.hook import HookPayload, HookResponse, handle_hook
from dokodemo.automode.scheduler import AutoModeScheduler, AutoModeStatus, HookOutcome

__all__ = [
    "AutoModeScheduler",
    "AutoModeStatus",
    "HookOutcome",
    "HookPayload",
    "HookResponse",
    "handle_hook",
]
