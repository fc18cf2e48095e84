"""Persistence — JSON documents mirroring the manager's state on disk."""

from dokodemo.store.persistence import (
    AI_SESSIONS,
    AUTOMODE_CONFIGS,
    AUTOMODE_STATES,
    LEGACY_SESSIONS,
    OUTPUT_HISTORY,
    SHORTCUTS,
    TERMINALS,
    JsonStore,
)

__all__ = [
    "AI_SESSIONS",
    "AUTOMODE_CONFIGS",
    "AUTOMODE_STATES",
    "LEGACY_SESSIONS",
    "OUTPUT_HISTORY",
    "SHORTCUTS",
    "TERMINALS",
    "JsonStore",
]
