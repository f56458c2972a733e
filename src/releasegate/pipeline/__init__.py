"""Local working copy management."""

from releasegate.pipeline.worktree import WorktreeCleaner, WorktreeInfo

__all__ = ["WorktreeCleaner", "WorktreeInfo"]
