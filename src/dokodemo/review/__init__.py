"""Review servers — per-repository diff viewer processes."""

from dokodemo.review.supervisor import (
    ReviewServerSupervisor,
    find_port,
    resolve_diff_target,
)

__all__ = ["ReviewServerSupervisor", "find_port", "resolve_diff_target"]
