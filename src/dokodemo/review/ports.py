"""TCP port probing and reclamation for the shared review port."""

from __future__ import annotations

import asyncio
import logging
import os
import socket

import psutil

logger = logging.getLogger(__name__)


def is_port_in_use(port: int, host: str = "127.0.0.1") -> bool:
    """True if something accepts connections on ``host:port``."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.settimeout(0.5)
        return sock.connect_ex((host, port)) == 0


def port_owners(port: int) -> list[int]:
    """Pids listening on ``port``. Empty if the OS will not tell us."""
    try:
        connections = psutil.net_connections(kind="tcp")
    except psutil.AccessDenied:
        logger.warning("Not permitted to list connections for port %d", port)
        return []
    return sorted(
        {
            conn.pid
            for conn in connections
            if conn.pid
            and conn.laddr
            and conn.laddr.port == port
            and conn.status == psutil.CONN_LISTEN
        }
    )


def kill_port_owners(port: int) -> list[int]:
    """SIGKILL every process listening on ``port``; returns the pids killed."""
    killed: list[int] = []
    for pid in port_owners(port):
        if pid == os.getpid():
            continue
        try:
            psutil.Process(pid).kill()
            killed.append(pid)
        except psutil.NoSuchProcess:
            pass
        except psutil.AccessDenied:
            logger.warning("Not permitted to kill pid %d holding port %d", pid, port)
    if killed:
        logger.info("Killed %s holding port %d", killed, port)
    return killed


async def wait_for_port_release(
    port: int, timeout: float, interval: float = 0.1
) -> bool:
    """Poll until ``port`` is free. Returns False if it is still taken.

    Probes run in the default executor so the event loop keeps serving
    session output meanwhile.
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while await loop.run_in_executor(None, is_port_in_use, port):
        if loop.time() >= deadline:
            return False
        await asyncio.sleep(interval)
    return True
