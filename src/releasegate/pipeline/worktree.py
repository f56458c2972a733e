"""Git worktree management for work item working copies.

Every work item gets its own worktree under the configured base path,
checked out on the work item's source branch. After a merge the worktree,
its local branch and any stale worktree metadata are removed.

GitPython calls block, so the async methods run them in a worker thread.

Example usage:
    >>> from pathlib import Path
    >>> from releasegate.pipeline.worktree import WorktreeCleaner
    >>>
    >>> cleaner = WorktreeCleaner(Path("/repo"), Path("/workspace"))
    >>> info = await cleaner.create_working_copy("WI-1", "feature/wi-1")
    >>> # ... work happens in info.path ...
    >>> await cleaner.cleanup_working_copy("WI-1")
"""

from __future__ import annotations

import asyncio
import re
from datetime import datetime, timezone
from pathlib import Path

from git import Repo
from pydantic import BaseModel, Field

from releasegate.logging import get_logger

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


class WorktreeInfo(BaseModel):
    """Information about a work item's git worktree.

    Attributes:
        work_item_id: Work item the worktree belongs to
        path: Filesystem path to the worktree directory
        branch: Git branch checked out in the worktree
        created_at: UTC timestamp when the worktree was created
    """

    work_item_id: str
    path: Path
    branch: str
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class WorktreeCleaner:
    """Creates and removes per-work-item git worktrees.

    Attributes:
        repo_path: Path of the main repository
        base_path: Directory where worktrees are created
        logger: Structured logger instance
        worktrees: Worktrees created by this instance, keyed by work item id
    """

    def __init__(self, repo_path: Path, base_path: Path) -> None:
        self.repo_path = Path(repo_path)
        self.base_path = Path(base_path)
        self.logger = get_logger(__name__)
        self.worktrees: dict[str, WorktreeInfo] = {}
        self._repo: Repo | None = None

    @property
    def repo(self) -> Repo:
        if self._repo is None:
            self._repo = Repo(self.repo_path)
        return self._repo

    def path_for(self, work_item_id: str) -> Path:
        """Worktree directory for a work item."""
        return self.base_path / _UNSAFE_CHARS.sub("-", work_item_id)

    async def create_working_copy(self, work_item_id: str, branch: str) -> WorktreeInfo:
        """Create a worktree for the work item on a new branch from HEAD.

        Raises:
            ValueError: If the work item already has a worktree.
            GitCommandError: If git refuses to create the worktree.
        """
        return await asyncio.to_thread(self._create, work_item_id, branch)

    async def cleanup_working_copy(self, work_item_id: str) -> bool:
        """Remove the work item's worktree and local branch.

        Returns:
            True if a worktree was removed, False if none existed.

        Raises:
            RuntimeError: If git fails to remove an existing worktree.
        """
        return await asyncio.to_thread(self._cleanup, work_item_id)

    def _create(self, work_item_id: str, branch: str) -> WorktreeInfo:
        path = self.path_for(work_item_id)
        if work_item_id in self.worktrees or path.exists():
            raise ValueError(f"Worktree for '{work_item_id}' already exists")

        self.base_path.mkdir(parents=True, exist_ok=True)
        if branch not in self.repo.heads:
            self.repo.create_head(branch)
        self.repo.git.worktree("add", str(path), branch)

        info = WorktreeInfo(work_item_id=work_item_id, path=path, branch=branch)
        self.worktrees[work_item_id] = info
        self.logger.info(
            "worktree_created",
            work_item_id=work_item_id,
            path=str(path),
            branch=branch,
        )
        return info

    def _cleanup(self, work_item_id: str) -> bool:
        info = self.worktrees.get(work_item_id)
        path = info.path if info else self.path_for(work_item_id)
        if not path.exists():
            self.logger.info("worktree_not_found", work_item_id=work_item_id, path=str(path))
            self.worktrees.pop(work_item_id, None)
            return False

        try:
            branch = info.branch if info else self._branch_at(path)
            # --force handles uncommitted changes
            self.repo.git.worktree("remove", "--force", str(path))
            if branch is not None and branch in self.repo.heads:
                self.repo.delete_head(branch, force=True)
            self.repo.git.worktree("prune")
        except Exception as e:
            self.logger.error(
                "worktree_cleanup_failed",
                work_item_id=work_item_id,
                path=str(path),
                error=str(e),
                error_type=type(e).__name__,
            )
            raise RuntimeError(f"Failed to clean up worktree for '{work_item_id}': {e}") from e

        self.worktrees.pop(work_item_id, None)
        self.logger.info("worktree_cleaned", work_item_id=work_item_id, path=str(path))
        return True

    def _branch_at(self, path: Path) -> str | None:
        """Branch checked out in the worktree at path, per git's worktree list."""
        target = path.resolve()
        current: Path | None = None
        for line in self.repo.git.worktree("list", "--porcelain").splitlines():
            if line.startswith("worktree "):
                current = Path(line.split(" ", 1)[1]).resolve()
            elif line.startswith("branch ") and current == target:
                return line.split(" ", 1)[1].removeprefix("refs/heads/")
        return None
