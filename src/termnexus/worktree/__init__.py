"""Git worktree isolation for sessions."""

from .provisioner import (
    WorktreeInfo,
    WorktreeProvisioner,
    WorktreeRecord,
    WorktreeResult,
    parse_worktree_porcelain,
    sanitize_branch,
)

__all__ = [
    "parse_worktree_porcelain",
    "sanitize_branch",
    "WorktreeInfo",
    "WorktreeProvisioner",
    "WorktreeRecord",
    "WorktreeResult",
]
