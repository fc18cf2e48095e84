"""Webhook boundary — turns assistant "turn ended" notifications into hook events."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, ValidationError

from dokodemo.automode.scheduler import AutoModeScheduler, HookOutcome

logger = logging.getLogger(__name__)

STOP_EVENT = "Stop"


class HookMetadata(BaseModel):
    model_config = ConfigDict(extra="allow")

    cwd: str


class HookPayload(BaseModel):
    model_config = ConfigDict(extra="allow")

    event: str
    metadata: HookMetadata


class HookResponse(BaseModel):
    status: Literal["success", "ignored", "error"]
    message: str


def handle_hook(
    scheduler: AutoModeScheduler, payload: dict[str, Any], repos_root: Path
) -> HookResponse:
    """Route one webhook payload to the scheduler.

    Only ``Stop`` events from a working directory inside ``repos_root``
    are considered; everything else is ignored.
    """
    try:
        hook = HookPayload.model_validate(payload)
    except ValidationError as e:
        logger.warning("Rejected hook payload: %d validation error(s)", e.error_count())
        return HookResponse(status="error", message="Invalid hook payload")

    if hook.event != STOP_EVENT:
        return HookResponse(status="ignored", message=f"Event {hook.event} ignored")

    cwd = Path(hook.metadata.cwd).expanduser().resolve()
    root = Path(repos_root).expanduser().resolve()
    if cwd == root or not cwd.is_relative_to(root):
        logger.debug("Hook from %s is outside %s", cwd, root)
        return HookResponse(status="ignored", message="Outside managed repositories")

    repository_path = scheduler.repository_for(cwd)
    if repository_path is None:
        repository_path = str(root / cwd.relative_to(root).parts[0])

    outcome = scheduler.on_hook_event(repository_path)
    if outcome == HookOutcome.DISPATCHED:
        return HookResponse(status="success", message="Prompt dispatched")
    if outcome == HookOutcome.WAITING:
        return HookResponse(status="success", message="Prompt scheduled")
    return HookResponse(status="ignored", message="Auto-mode is not running")
