"""Git operations utility functions."""

from __future__ import annotations

import shlex
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path


@dataclass
class CommandResult:
    """Result of a shell command execution."""

    returncode: int
    stdout: str
    stderr: str
    duration_ms: int = 0

    @property
    def ok(self) -> bool:
        return self.returncode == 0


def run_command(
    command: str,
    cwd: str | Path | None = None,
    timeout: int = 60,
) -> CommandResult:
    """Run a shell command and return the result.

    Args:
        command: Shell command to execute
        cwd: Working directory for the command
        timeout: Timeout in seconds

    Returns:
        CommandResult with returncode, stdout, stderr
    """
    start = time.time()

    try:
        result = subprocess.run(
            command,
            shell=True,
            cwd=cwd,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
        duration_ms = int((time.time() - start) * 1000)

        return CommandResult(
            returncode=result.returncode,
            stdout=result.stdout,
            stderr=result.stderr,
            duration_ms=duration_ms,
        )
    except subprocess.TimeoutExpired:
        duration_ms = int((time.time() - start) * 1000)
        return CommandResult(
            returncode=-1,
            stdout="",
            stderr=f"Command timed out after {timeout} seconds",
            duration_ms=duration_ms,
        )
    except OSError as e:
        duration_ms = int((time.time() - start) * 1000)
        return CommandResult(
            returncode=-1,
            stdout="",
            stderr=str(e),
            duration_ms=duration_ms,
        )


def _lines(output: str) -> list[str]:
    return [line for line in output.splitlines() if line.strip()]


def get_repo_root(path: str | Path | None = None) -> Path | None:
    """Get the root directory of the worktree containing path.

    Args:
        path: Path within the repository (defaults to cwd)

    Returns:
        Path to the worktree root, or None if not in a repo
    """
    result = run_command("git rev-parse --show-toplevel", cwd=path)
    if result.returncode == 0:
        return Path(result.stdout.strip()).resolve()
    return None


def get_git_common_dir(path: str | Path | None = None) -> Path | None:
    """Get the git directory shared by all worktrees of a repository."""
    result = run_command("git rev-parse --git-common-dir", cwd=path)
    if result.returncode != 0:
        return None

    common_dir = Path(result.stdout.strip())
    if not common_dir.is_absolute():
        common_dir = Path(path or Path.cwd()) / common_dir
    return common_dir.resolve()


def get_main_repo_root(path: str | Path | None = None) -> Path | None:
    """Get the root of the main worktree, even from a linked worktree.

    Args:
        path: Path within the repository (defaults to cwd)

    Returns:
        Path to the main repository root, or None if not in a repo
    """
    common_dir = get_git_common_dir(path)
    return common_dir.parent if common_dir else None


def is_linked_worktree(path: str | Path) -> bool:
    """Check whether path is the root of a linked (non-main) worktree.

    Linked worktrees carry a `.git` file pointing at the main repository,
    the main worktree carries a `.git` directory.
    """
    return (Path(path) / ".git").is_file()


def get_current_branch(cwd: str | Path | None = None) -> str | None:
    """Get the current git branch name.

    Args:
        cwd: Working directory

    Returns:
        Branch name, or None if detached or not in a repo
    """
    result = run_command("git rev-parse --abbrev-ref HEAD", cwd=cwd)
    if result.returncode == 0:
        branch = result.stdout.strip()
        return None if branch == "HEAD" else branch
    return None


def branch_exists(branch_name: str, cwd: str | Path | None = None) -> bool:
    """Check whether a local branch exists."""
    result = run_command(
        f"git show-ref --verify --quiet {shlex.quote('refs/heads/' + branch_name)}",
        cwd=cwd,
    )
    return result.returncode == 0


def detect_main_branch(cwd: str | Path | None = None) -> str:
    """Detect the integration branch: main, else master, else main."""
    for candidate in ("main", "master"):
        if branch_exists(candidate, cwd=cwd):
            return candidate
    return "main"


def get_changed_paths(cwd: str | Path) -> list[str] | None:
    """Get uncommitted changes as `git status --porcelain` lines.

    Args:
        cwd: Working directory

    Returns:
        One entry per changed path, e.g. ` M src/app.py`, or None if git
        could not read the working tree (callers must not treat that as clean)
    """
    result = run_command("git status --porcelain", cwd=cwd)
    if result.returncode != 0:
        return None
    return [line.rstrip() for line in result.stdout.splitlines() if line.strip()]


def count_ahead_behind(
    target: str,
    branch: str,
    cwd: str | Path | None = None,
) -> tuple[int, int]:
    """Count commits of branch relative to target.

    Args:
        target: Integration branch
        branch: Session branch
        cwd: Working directory

    Returns:
        Tuple of (behind, ahead); (0, 0) if the comparison fails
    """
    result = run_command(
        f"git rev-list --left-right --count {shlex.quote(target + '...' + branch)}",
        cwd=cwd,
    )
    if result.returncode != 0:
        return 0, 0

    parts = result.stdout.split()
    if len(parts) != 2:
        return 0, 0
    try:
        return int(parts[0]), int(parts[1])
    except ValueError:
        return 0, 0


def predict_conflicts(
    target: str,
    branch: str,
    cwd: str | Path | None = None,
) -> bool | None:
    """Predict whether merging branch into target conflicts.

    Uses `git merge-tree --write-tree`, which never touches a worktree.

    Returns:
        True on conflicts, False on a clean merge, None if git cannot tell
    """
    result = run_command(
        f"git merge-tree --write-tree --no-messages {shlex.quote(target)} {shlex.quote(branch)}",
        cwd=cwd,
    )
    if result.returncode == 0:
        return False
    if result.returncode == 1:
        return True
    return None


def get_commit_log(base: str, branch: str, cwd: str | Path | None = None) -> list[str]:
    """Get one-line commits on branch that are not on base."""
    result = run_command(
        f"git log --oneline {shlex.quote(base + '..' + branch)}",
        cwd=cwd,
    )
    return _lines(result.stdout) if result.returncode == 0 else []


def get_changed_files(base: str, branch: str, cwd: str | Path | None = None) -> list[str]:
    """Get `--name-status` lines for files changed on branch since base."""
    result = run_command(
        f"git diff --name-status {shlex.quote(base + '...' + branch)}",
        cwd=cwd,
    )
    return _lines(result.stdout) if result.returncode == 0 else []


def get_merge_base(a: str, b: str, cwd: str | Path | None = None) -> str | None:
    """Get the best common ancestor commit of two refs."""
    result = run_command(f"git merge-base {shlex.quote(a)} {shlex.quote(b)}", cwd=cwd)
    if result.returncode != 0:
        return None
    return result.stdout.strip() or None


def get_files_changed_on_both_sides(
    target: str,
    branch: str,
    cwd: str | Path | None = None,
) -> list[str] | None:
    """Files modified on both target and branch since they diverged.

    These are the paths a merge may conflict on; git decides per hunk
    whether they actually do.

    Returns:
        Sorted paths, or None if the refs share no merge base
    """
    base = get_merge_base(target, branch, cwd=cwd)
    if base is None:
        return None

    changed: list[set[str]] = []
    for ref in (target, branch):
        result = run_command(f"git diff --name-only {base} {shlex.quote(ref)}", cwd=cwd)
        if result.returncode != 0:
            return None
        changed.append(set(_lines(result.stdout)))
    return sorted(changed[0] & changed[1])


def get_unmerged_paths(cwd: str | Path | None = None) -> list[str]:
    """Paths left conflicted by an in-progress merge."""
    result = run_command("git diff --name-only --diff-filter=U", cwd=cwd)
    if result.returncode != 0:
        return []
    return list(dict.fromkeys(_lines(result.stdout)))


def read_index_stage(path: str, stage: int, cwd: str | Path | None = None) -> bytes | None:
    """Read one side of a conflicted path from the index.

    Args:
        path: Repository-relative path
        stage: 1 = common ancestor, 2 = ours, 3 = theirs
        cwd: Working directory

    Returns:
        Raw file content, or None if that stage does not exist
    """
    try:
        result = subprocess.run(
            ["git", "show", f":{stage}:{path}"],
            cwd=cwd,
            capture_output=True,
            timeout=60,
        )
    except (OSError, subprocess.TimeoutExpired):
        return None
    return result.stdout if result.returncode == 0 else None


def merge_file_union(ours: Path, base: Path, theirs: Path) -> CommandResult:
    """Three-way merge of plain files keeping both sides of every conflict.

    The result is written into ours.
    """
    return run_command(
        "git merge-file --union "
        f"{shlex.quote(str(ours))} {shlex.quote(str(base))} {shlex.quote(str(theirs))}"
    )


def checkout_conflict_side(path: str, side: str, cwd: str | Path | None = None) -> CommandResult:
    """Resolve a conflicted path to one side ("ours" or "theirs")."""
    return run_command(f"git checkout --{side} -- {shlex.quote(path)}", cwd=cwd)


def stage_paths(paths: list[str], cwd: str | Path | None = None) -> CommandResult:
    return run_command("git add -- " + " ".join(shlex.quote(p) for p in paths), cwd=cwd)


def commit_index(message: str, cwd: str | Path | None = None) -> CommandResult:
    """Commit what is staged, e.g. a merge whose conflicts were resolved."""
    return run_command(f"git commit -m {shlex.quote(message)}", cwd=cwd)


def stash_changes(cwd: str | Path, message: str) -> CommandResult:
    """Stash tracked and untracked changes of a working directory."""
    return run_command(
        f"git stash push --include-untracked -m {shlex.quote(message)}", cwd=cwd
    )


def discard_changes(cwd: str | Path) -> CommandResult:
    """Throw away every uncommitted change, untracked files included.

    Ignored files are kept.
    """
    result = run_command("git reset --hard HEAD", cwd=cwd)
    if result.returncode != 0:
        return result
    return run_command("git clean -fd", cwd=cwd)


def commit_changes(
    cwd: str | Path,
    message: str,
    files: list[str] | None = None,
) -> CommandResult:
    """Commit changes in a working directory.

    Args:
        cwd: Working directory
        message: Commit message
        files: Specific files to stage (None stages everything)

    Returns:
        CommandResult from git commit
    """
    if files:
        result = stage_paths(files, cwd=cwd)
    else:
        result = run_command("git add -A", cwd=cwd)
    if result.returncode != 0:
        return result

    return commit_index(message, cwd=cwd)


def create_branch(
    branch_name: str,
    cwd: str | Path | None = None,
    start_point: str | None = None,
) -> CommandResult:
    """Create a new branch without checking it out.

    Args:
        branch_name: Name for the new branch
        cwd: Working directory
        start_point: Starting commit/branch (defaults to HEAD)

    Returns:
        CommandResult from git branch
    """
    cmd = f"git branch {shlex.quote(branch_name)}"
    if start_point:
        cmd += f" {shlex.quote(start_point)}"
    return run_command(cmd, cwd=cwd)


def checkout_branch(branch_name: str, cwd: str | Path | None = None) -> CommandResult:
    """Checkout an existing branch.

    Args:
        branch_name: Branch to checkout
        cwd: Working directory

    Returns:
        CommandResult from git checkout
    """
    return run_command(f"git checkout {shlex.quote(branch_name)}", cwd=cwd)


def merge_branch(
    branch_name: str,
    cwd: str | Path | None = None,
    message: str | None = None,
    squash: bool = False,
) -> CommandResult:
    """Merge a branch into the current branch.

    A squash merge stages the combined changes and commits them with
    message; otherwise a merge commit is always created (`--no-ff`).

    Args:
        branch_name: Branch to merge
        cwd: Working directory
        message: Commit message
        squash: Squash all commits into one

    Returns:
        CommandResult from the merge (or the squash commit)
    """
    message = message or f"Merge {branch_name}"
    if squash:
        result = run_command(f"git merge --squash {shlex.quote(branch_name)}", cwd=cwd)
        if result.returncode != 0:
            return result
        return run_command(f"git commit -m {shlex.quote(message)}", cwd=cwd)

    return run_command(
        f"git merge --no-ff {shlex.quote(branch_name)} -m {shlex.quote(message)}",
        cwd=cwd,
    )


def abort_merge(cwd: str | Path | None = None) -> CommandResult:
    """Abandon an in-progress merge, restoring the pre-merge state.

    `git merge --abort` only works when MERGE_HEAD exists, which a squash
    merge never writes, so fall back to `git reset --merge`.
    """
    result = run_command("git merge --abort", cwd=cwd)
    if result.returncode != 0:
        result = run_command("git reset --merge", cwd=cwd)
    return result


def delete_branch(
    branch_name: str,
    cwd: str | Path | None = None,
    force: bool = False,
) -> CommandResult:
    """Delete a branch.

    Args:
        branch_name: Branch to delete
        cwd: Working directory
        force: Force delete even if not merged

    Returns:
        CommandResult from git branch -d/-D
    """
    flag = "-D" if force else "-d"
    return run_command(f"git branch {flag} {shlex.quote(branch_name)}", cwd=cwd)


def ensure_excluded(pattern: str, cwd: str | Path | None = None) -> bool:
    """Add pattern to the repository's shared info/exclude file.

    info/exclude lives in the common git directory, so the pattern applies
    to the main worktree and every linked worktree.

    Returns:
        True if the pattern is (now) excluded
    """
    common_dir = get_git_common_dir(cwd)
    if common_dir is None:
        return False
    exclude_file = common_dir / "info" / "exclude"

    content = exclude_file.read_text() if exclude_file.exists() else ""
    if pattern in content.splitlines():
        return True

    exclude_file.parent.mkdir(parents=True, exist_ok=True)
    with open(exclude_file, "a") as f:
        if content and not content.endswith("\n"):
            f.write("\n")
        f.write(pattern + "\n")
    return True
