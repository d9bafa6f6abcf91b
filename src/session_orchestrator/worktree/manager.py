"""Git worktree management for session isolation."""

from __future__ import annotations

import logging
import shlex
import shutil
from dataclasses import dataclass
from pathlib import Path

from session_orchestrator.utils.git import (
    CommandResult,
    branch_exists,
    create_branch,
    delete_branch,
    get_repo_root,
    run_command,
)

logger = logging.getLogger(__name__)


@dataclass
class WorktreeInfo:
    """Information about a git worktree."""

    path: Path
    branch: str
    commit: str
    is_main: bool = False
    prunable: bool = False


class WorktreeManager:
    """Manages the git worktrees that back sessions."""

    def __init__(self, repo_root: Path | None = None, timeout: int = 120):
        """Initialize worktree manager.

        Args:
            repo_root: Root of the main git worktree
            timeout: Timeout in seconds for `git worktree add`
        """
        self.repo_root = (repo_root or get_repo_root() or Path.cwd()).resolve()
        self.timeout = timeout

    def create_worktree(self, path: Path, branch: str) -> tuple[CommandResult, bool]:
        """Create a worktree for branch at path, creating the branch if needed.

        On failure the partial directory is removed, stale worktree metadata
        is pruned and a branch created by this call is deleted again.

        Args:
            path: Destination directory (must not exist)
            branch: Branch to check out

        Returns:
            Tuple of (CommandResult, branch_created)
        """
        branch_created = False
        existed = path.exists()
        if not branch_exists(branch, cwd=self.repo_root):
            result = create_branch(branch, cwd=self.repo_root)
            if result.returncode != 0:
                return result, False
            branch_created = True

        result = run_command(
            f"git worktree add {shlex.quote(str(path))} {shlex.quote(branch)}",
            cwd=self.repo_root,
            timeout=self.timeout,
        )

        if result.returncode != 0:
            logger.warning("git worktree add %s failed: %s", path, result.stderr.strip())
            if path.exists() and not existed:
                shutil.rmtree(path, ignore_errors=True)
            self.prune()
            if branch_created:
                delete_branch(branch, cwd=self.repo_root)
            branch_created = False

        return result, branch_created

    def remove_worktree(self, path: Path, force: bool = False) -> CommandResult:
        """Remove a worktree.

        Args:
            path: Worktree directory
            force: Force removal even with uncommitted changes

        Returns:
            CommandResult from git worktree remove
        """
        force_flag = "--force " if force else ""
        return run_command(
            f"git worktree remove {force_flag}{shlex.quote(str(path))}",
            cwd=self.repo_root,
        )

    def remove_worktree_forcing(self, path: Path) -> CommandResult:
        """Remove a worktree, retrying with --force if a clean removal fails."""
        result = self.remove_worktree(path)
        if result.returncode != 0:
            logger.info("Retrying removal of %s with --force", path)
            result = self.remove_worktree(path, force=True)
        return result

    def prune(self) -> CommandResult:
        """Prune metadata of worktrees whose directories are gone."""
        return run_command("git worktree prune", cwd=self.repo_root)

    def list_worktrees(self) -> list[WorktreeInfo]:
        """List all worktrees.

        Returns:
            List of WorktreeInfo for all worktrees
        """
        result = run_command(
            "git worktree list --porcelain",
            cwd=self.repo_root,
        )

        if result.returncode != 0:
            return []

        worktrees: list[WorktreeInfo] = []
        current_wt: dict[str, str] = {}

        for line in result.stdout.split("\n"):
            if not line.strip():
                if current_wt:
                    worktrees.append(self._to_info(current_wt))
                    current_wt = {}
            elif line.startswith("worktree "):
                current_wt["worktree"] = line[9:]
            elif line.startswith("HEAD "):
                current_wt["HEAD"] = line[5:]
            elif line.startswith("branch "):
                current_wt["branch"] = line[7:]
            elif line.startswith("prunable"):
                current_wt["prunable"] = "1"

        # Handle last entry
        if current_wt:
            worktrees.append(self._to_info(current_wt))

        return worktrees

    def _to_info(self, entry: dict[str, str]) -> WorktreeInfo:
        wt_path = Path(entry.get("worktree", "")).resolve()
        return WorktreeInfo(
            path=wt_path,
            branch=entry.get("branch", "").replace("refs/heads/", ""),
            commit=entry.get("HEAD", ""),
            is_main=wt_path == self.repo_root,
            prunable="prunable" in entry,
        )

    def get_worktree(self, path: Path) -> WorktreeInfo | None:
        """Get worktree info for a directory.

        Args:
            path: Worktree directory

        Returns:
            WorktreeInfo if found, None otherwise
        """
        resolved = Path(path).resolve()
        for wt in self.list_worktrees():
            if wt.path == resolved:
                return wt
        return None
