"""Liveness probe for remembered process ids."""

from __future__ import annotations

import logging

import psutil

logger = logging.getLogger(__name__)


def is_process_alive(pid: int | None) -> bool:
    """True if ``pid`` names a running (non-zombie) process."""
    if not pid or pid <= 0:
        return False
    try:
        return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False
    except psutil.AccessDenied:
        # Exists, owned by someone else
        return True


def terminate_pid(pid: int) -> bool:
    """Best-effort SIGTERM to a process we hold no handle for."""
    try:
        psutil.Process(pid).terminate()
        return True
    except psutil.NoSuchProcess:
        logger.debug("Process %d already gone", pid)
    except psutil.AccessDenied:
        logger.warning("Not permitted to terminate process %d", pid)
    return False
