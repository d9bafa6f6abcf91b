"""Session lifecycle: create, switch, merge, end and spawn sessions.

Each session is a git worktree next to the main repository. Shared
project state (the sessions directory and configured shared folders) is
linked into every worktree so status files stay a single source of truth.
"""

from __future__ import annotations

import json
import logging
import os
import re
import shutil
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from session_orchestrator.core.errors import ErrorCode
from session_orchestrator.core.locks import remove_lock
from session_orchestrator.core.paths import ProjectPaths
from session_orchestrator.core.results import OperationResult
from session_orchestrator.core.store import AtomicStore, Document
from session_orchestrator.schemas.config import ProjectConfig
from session_orchestrator.schemas.registry import Session, ThreadType, utc_now
from session_orchestrator.sessions.conflicts import plan_resolution, resolve_conflict
from session_orchestrator.sessions.registry import (
    ListResult,
    RegisterResult,
    SessionInfo,
    SessionRegistry,
    is_valid_nickname,
)
from session_orchestrator.utils import tmux
from session_orchestrator.utils.git import (
    abort_merge,
    checkout_branch,
    commit_changes,
    commit_index,
    count_ahead_behind,
    delete_branch,
    detect_main_branch,
    discard_changes,
    ensure_excluded,
    get_changed_files,
    get_changed_paths,
    get_commit_log,
    get_current_branch,
    get_files_changed_on_both_sides,
    get_unmerged_paths,
    merge_branch,
    predict_conflicts,
    stash_changes,
)
from session_orchestrator.worktree.manager import WorktreeManager

logger = logging.getLogger(__name__)

BRANCH_PATTERN = re.compile(r"^[A-Za-z0-9._/-]+$")


class MergeStrategy(str, Enum):
    """How a session branch is integrated."""

    SQUASH = "squash"
    MERGE = "merge"


class UncommittedAction(str, Enum):
    """What to do with uncommitted changes that block a merge."""

    STASH = "stash"
    DISCARD = "discard"


def validate_branch_name(branch: str) -> str | None:
    """Check a branch name against the allowed character set.

    Returns:
        An error message, or None if the name is acceptable
    """
    if not branch or not BRANCH_PATTERN.match(branch):
        return (
            f"Invalid branch name: {branch!r}. "
            "Use letters, numbers, dots, underscores, hyphens and slashes."
        )
    if ".." in branch or branch.startswith(("-", "/")) or branch.endswith(("/", ".lock")):
        return f"Invalid branch name: {branch!r}."
    return None


@dataclass
class CreateResult(OperationResult):
    session_id: str | None = None
    path: str | None = None
    branch: str | None = None
    nickname: str | None = None
    thread_type: ThreadType | None = None
    command: str | None = None
    branch_created: bool = False
    env_files_copied: list[str] = field(default_factory=list)
    folders_copied: list[str] = field(default_factory=list)
    folders_symlinked: list[str] = field(default_factory=list)


@dataclass
class SwitchResult(OperationResult):
    session_id: str | None = None
    path: str | None = None
    command: str | None = None
    active_session: dict[str, Any] | None = None


@dataclass
class MergeabilityResult(OperationResult):
    session_id: str | None = None
    branch: str | None = None
    target_branch: str | None = None
    mergeable: bool = False
    reason: str | None = None
    details: dict[str, Any] | None = None
    commits_ahead: int = 0
    commits_behind: int = 0
    has_conflicts: bool | None = None


@dataclass
class MergePreview(OperationResult):
    session_id: str | None = None
    branch: str | None = None
    target_branch: str | None = None
    commits: list[str] = field(default_factory=list)
    files_changed: list[str] = field(default_factory=list)


@dataclass
class IntegrateResult(OperationResult):
    session_id: str | None = None
    branch: str | None = None
    target_branch: str | None = None
    strategy: MergeStrategy | None = None
    commit_message: str | None = None
    commits_count: int = 0
    has_conflicts: bool = False
    worktree_deleted: bool = False
    worktree_error: str | None = None
    branch_deleted: bool = False
    auto_resolved: list[dict[str, str]] = field(default_factory=list)
    unresolved: list[dict[str, str]] = field(default_factory=list)



@dataclass
class ConflictFilesResult(OperationResult):
    session_id: str | None = None
    branch: str | None = None
    target_branch: str | None = None
    files: list[str] = field(default_factory=list)
    plan: list[dict[str, str]] = field(default_factory=list)


@dataclass
class ChangesResult(OperationResult):
    """Outcome of stashing or discarding a session's uncommitted changes."""

    session_id: str | None = None
    action: UncommittedAction | None = None
    changed: bool = False
    message: str | None = None


@dataclass
class EndResult(OperationResult):
    session_id: str | None = None
    merged: bool = False
    mergeability: MergeabilityResult | None = None
    integration: IntegrateResult | None = None
    changes: ChangesResult | None = None


@dataclass
class SpawnResult(OperationResult):
    created: list[CreateResult] = field(default_factory=list)
    failed: list[CreateResult] = field(default_factory=list)
    tmux_session: str | None = None


@dataclass
class StatusResult(OperationResult):
    current: dict[str, Any] | None = None
    is_new: bool = False
    total: int = 0
    active: int = 0
    sessions: list[dict[str, Any]] = field(default_factory=list)
    cleaned: int = 0


class SessionLifecycle:
    """Creates, switches, merges and ends sessions."""

    def __init__(
        self,
        paths: ProjectPaths,
        config: ProjectConfig | None = None,
        registry: SessionRegistry | None = None,
        worktrees: WorktreeManager | None = None,
        state_store: AtomicStore | None = None,
        merge_log_store: AtomicStore | None = None,
    ):
        """Initialize the lifecycle manager.

        Args:
            paths: Resolved project paths
            config: Project configuration
            registry: Session registry (built from paths if omitted)
            worktrees: Worktree manager for the main repository
            state_store: Session-state document of the calling worktree
            merge_log_store: Merge-history document
        """
        self.paths = paths
        self.config = config or ProjectConfig()
        settings = self.config.sessions
        self.worktrees = worktrees or WorktreeManager(
            paths.main_root, timeout=settings.worktree_timeout_seconds
        )
        self.registry = registry or SessionRegistry(
            paths, settings=self.config.store, worktrees=self.worktrees
        )
        self.state_store = state_store or AtomicStore.for_file(
            paths.session_state_path, self.config.store
        )
        self.merge_log_store = merge_log_store or AtomicStore.for_file(
            paths.merge_log_path, self.config.store, default=lambda: {"merges": []}
        )

    @property
    def target_branch(self) -> str:
        return self.config.sessions.target_branch or detect_main_branch(self.paths.main_root)

    def launch_command(self, path: str | Path) -> str:
        return f'cd "{path}" && {self.config.sessions.agent_command}'

    def _find(self, identifier: str) -> Session | None:
        return self.registry.find(str(identifier))

    # -- create ------------------------------------------------------------

    def create_session(
        self,
        branch: str | None = None,
        nickname: str | None = None,
        thread_type: ThreadType = ThreadType.PARALLEL,
        story: str | None = None,
    ) -> CreateResult:
        """Create a worktree-backed session.

        Args:
            branch: Branch to check out (created if missing, defaults to
                `session-<id>`)
            nickname: Optional human-friendly name, also used for the
                worktree directory
            thread_type: Thread type recorded for the session
            story: Optional story the session works on

        Returns:
            CreateResult with the session ID, path and launch command
        """
        if branch is not None:
            error = validate_branch_name(branch)
            if error:
                return CreateResult.failure(error, ErrorCode.INVALID_NAME)
        if nickname is not None:
            if not is_valid_nickname(nickname):
                return CreateResult.failure(
                    f"Invalid nickname: {nickname!r}. "
                    "Use letters, numbers, hyphens and underscores.",
                    ErrorCode.INVALID_NAME,
                )
            if self._find(nickname) is not None:
                return CreateResult.failure(
                    f"Nickname {nickname!r} is already in use", ErrorCode.INVALID_NAME
                )

        project = self.paths.project_name
        parent = self.paths.main_root.parent
        if nickname:
            worktree_path = parent / f"{project}-{nickname}"
            if worktree_path.exists():
                return CreateResult.failure(
                    f"Path already exists: {worktree_path}", ErrorCode.PATH_EXISTS,
                    path=str(worktree_path),
                )

        session_id = self.registry.reserve_id()
        worktree_path = parent / f"{project}-{nickname or session_id}"
        if worktree_path.exists():
            return CreateResult.failure(
                f"Path already exists: {worktree_path}", ErrorCode.PATH_EXISTS,
                path=str(worktree_path),
            )
        branch = branch or f"session-{session_id}"

        ensure_excluded(f"/{self.config.sessions.state_dir}/", cwd=self.paths.main_root)
        self.paths.sessions_dir.mkdir(parents=True, exist_ok=True)

        result, branch_created = self.worktrees.create_worktree(worktree_path, branch)
        if result.returncode != 0:
            return CreateResult.failure(
                f"Failed to create worktree: {result.stderr.strip()}",
                ErrorCode.WORKTREE_FAILED,
                session_id=session_id,
                branch=branch,
            )

        outcome = CreateResult(
            session_id=session_id,
            path=str(worktree_path),
            branch=branch,
            nickname=nickname,
            thread_type=thread_type,
            command=self.launch_command(worktree_path),
            branch_created=branch_created,
        )
        self._provision_worktree(worktree_path, outcome)

        self.registry.add_session(
            Session(
                id=session_id,
                path=str(worktree_path),
                branch=branch,
                nickname=nickname,
                is_main=False,
                thread_type=thread_type,
                story=story,
            )
        )
        logger.info("Created session %s at %s on %s", session_id, worktree_path, branch)
        return outcome

    def _provision_worktree(self, worktree_path: Path, outcome: CreateResult) -> None:
        """Copy private config into a new worktree and link shared state."""
        root = self.paths.main_root
        settings = self.config.sessions

        for env_file in settings.env_files:
            src, dest = root / env_file, worktree_path / env_file
            if src.is_file() and not dest.exists():
                try:
                    shutil.copy2(src, dest)
                    outcome.env_files_copied.append(env_file)
                except OSError as e:
                    logger.warning("Could not copy %s: %s", env_file, e)

        for folder in settings.config_dirs:
            src, dest = root / folder, worktree_path / folder
            if src.is_dir():
                try:
                    shutil.copytree(src, dest, symlinks=True, dirs_exist_ok=True)
                    outcome.folders_copied.append(folder)
                except OSError as e:
                    logger.warning("Could not copy %s: %s", folder, e)

        # The sessions directory must be shared, never a private copy.
        sessions_dest = worktree_path / settings.state_dir / "sessions"
        if sessions_dest.is_symlink() or sessions_dest.is_file():
            sessions_dest.unlink()
        elif sessions_dest.is_dir():
            shutil.rmtree(sessions_dest)
        if not self._link_shared(self.paths.sessions_dir, sessions_dest):
            logger.warning("Sessions directory copied, not linked, into %s", worktree_path)

        for folder in settings.shared_dirs:
            src, dest = root / folder, worktree_path / folder
            if not src.exists():
                continue
            if self._link_shared(src, dest):
                outcome.folders_symlinked.append(folder)
            elif dest.exists():
                outcome.folders_copied.append(folder)

    def _link_shared(self, src: Path, dest: Path) -> bool:
        """Symlink dest to src with a relative target, else copy src.

        Returns:
            True if a symlink was created
        """
        dest.parent.mkdir(parents=True, exist_ok=True)
        try:
            os.symlink(os.path.relpath(src, dest.parent), dest, target_is_directory=True)
            return True
        except OSError as e:
            logger.info("Could not symlink %s (%s), copying instead", dest, e)

        try:
            shutil.copytree(src, dest, symlinks=True, dirs_exist_ok=True)
        except OSError as e:
            logger.warning("Could not copy %s to %s: %s", src, dest, e)
        return False

    # -- switch ------------------------------------------------------------

    def switch_session(self, identifier: str) -> SwitchResult:
        """Make a session the active one for this worktree.

        Writes `active_session` into the session-state document and
        refreshes the session's last_active.
        """
        session = self._find(identifier)
        if session is None:
            return SwitchResult.failure(
                f"Session {identifier} not found", ErrorCode.SESSION_NOT_FOUND
            )
        if not Path(session.path).exists():
            return SwitchResult.failure(
                f"Session directory does not exist: {session.path}",
                ErrorCode.PATH_MISSING,
                session_id=session.id,
                path=session.path,
            )

        active = {
            "id": session.id,
            "nickname": session.nickname,
            "path": session.path,
            "branch": session.branch,
            "switched_at": utc_now(),
            "original_cwd": str(self.paths.worktree_root),
        }

        def update(document: Document) -> None:
            document["active_session"] = active

        stored = self.state_store.read_modify_write(update)
        if not stored.success:
            return SwitchResult.failure(
                f"Could not update session state: {stored.error}",
                ErrorCode.REGISTRY_BUSY if stored.busy else ErrorCode.STORE_FAILED,
                session_id=session.id,
            )

        self.registry.touch(session.id)
        return SwitchResult(
            session_id=session.id,
            path=session.path,
            command=self.launch_command(session.path),
            active_session=active,
        )

    def clear_active_session(self) -> bool:
        """Forget the active session of this worktree.

        Returns:
            True if an active session was cleared
        """
        cleared: dict[str, bool] = {}

        def update(document: Document) -> None:
            cleared["value"] = document.pop("active_session", None) is not None

        result = self.state_store.read_modify_write(update)
        return result.success and cleared.get("value", False)

    def get_active_session(self) -> dict[str, Any] | None:
        """Return the active session recorded for this worktree."""
        return self.state_store.load(fresh=True).get("active_session")

    # -- merge -------------------------------------------------------------

    def _merge_target(self, identifier: str) -> tuple[Session | None, OperationResult | None]:
        session = self._find(identifier)
        if session is None:
            return None, OperationResult.failure(
                f"Session {identifier} not found", ErrorCode.SESSION_NOT_FOUND
            )
        if session.is_main:
            return None, OperationResult.failure(
                "Cannot merge the main session", ErrorCode.CANNOT_MERGE_MAIN
            )
        if not Path(session.path).exists():
            return None, OperationResult.failure(
                f"Session directory does not exist: {session.path}", ErrorCode.PATH_MISSING
            )
        if not session.branch:
            session.branch = get_current_branch(session.path)
        if not session.branch:
            return None, OperationResult.failure(
                f"Session {session.id} has no branch (detached HEAD)", ErrorCode.MERGE_FAILED
            )
        return session, None

    def check_mergeability(self, identifier: str) -> MergeabilityResult:
        """Decide whether a session can be integrated.

        Not mergeable when the worktree has uncommitted changes or the
        branch has no commits ahead of the target. Conflicts are predicted
        without touching any worktree.
        """
        session, failure = self._merge_target(identifier)
        if failure is not None:
            return MergeabilityResult.failure(failure.error, failure.code)

        target = self.target_branch
        outcome = MergeabilityResult(
            session_id=session.id, branch=session.branch, target_branch=target
        )

        changes = get_changed_paths(session.path)
        if changes is None:
            return MergeabilityResult.failure(
                f"Could not read git status of {session.path}", ErrorCode.WORKTREE_FAILED
            )
        if changes:
            outcome.reason = ErrorCode.UNCOMMITTED_CHANGES.value
            outcome.details = {"files": changes}
            return outcome

        behind, ahead = count_ahead_behind(target, session.branch, cwd=self.paths.main_root)
        outcome.commits_ahead = ahead
        outcome.commits_behind = behind
        if ahead == 0:
            outcome.reason = ErrorCode.NO_CHANGES.value
            return outcome

        outcome.mergeable = True
        outcome.has_conflicts = predict_conflicts(
            target, session.branch, cwd=self.paths.main_root
        )
        return outcome

    def get_merge_preview(self, identifier: str) -> MergePreview:
        """List the commits and files a merge would bring in."""
        session, failure = self._merge_target(identifier)
        if failure is not None:
            return MergePreview.failure(failure.error, failure.code)

        target = self.target_branch
        return MergePreview(
            session_id=session.id,
            branch=session.branch,
            target_branch=target,
            commits=get_commit_log(target, session.branch, cwd=self.paths.main_root),
            files_changed=get_changed_files(target, session.branch, cwd=self.paths.main_root),
        )

    def integrate_session(
        self,
        identifier: str,
        strategy: MergeStrategy | str | None = None,
        delete_branch_after: bool = True,
        delete_worktree: bool = True,
        message: str | None = None,
        auto_resolve: bool = False,
    ) -> IntegrateResult:
        """Merge a session branch into the target branch.

        On conflict the merge is aborted and the worktree, branch and
        registry entry are left exactly as they were, unless auto_resolve
        settles every conflicted file by its category.

        Args:
            identifier: Session ID or nickname
            strategy: squash (one commit) or merge (merge commit)
            delete_branch_after: Delete the session branch after merging
            delete_worktree: Remove the worktree and its registry entry
            message: Commit message (defaults to a generated one)
            auto_resolve: Resolve conflicts by file category instead of aborting

        Returns:
            IntegrateResult
        """
        strategy = MergeStrategy(strategy or self.config.sessions.merge_strategy)
        check = self.check_mergeability(identifier)
        if not check.success:
            return IntegrateResult.failure(check.error, check.code)
        if not check.mergeable:
            code = ErrorCode(check.reason)
            if code == ErrorCode.UNCOMMITTED_CHANGES:
                detail = "uncommitted changes"
            else:
                detail = "no commits to merge"
            return IntegrateResult.failure(
                f"Session {check.session_id} is not mergeable: {detail}",
                code,
                session_id=check.session_id,
                branch=check.branch,
                target_branch=check.target_branch,
            )

        session = self._find(check.session_id)
        session.branch = check.branch
        root = self.paths.main_root
        commit_message = message or (
            f'Merge session {session.id} "{session.nickname or session.id}": {session.branch}'
        )
        outcome = IntegrateResult(
            session_id=session.id,
            branch=session.branch,
            target_branch=check.target_branch,
            strategy=strategy,
            commit_message=commit_message,
            commits_count=check.commits_ahead,
        )

        checkout = checkout_branch(check.target_branch, cwd=root)
        if checkout.returncode != 0:
            outcome.success = False
            outcome.code = ErrorCode.MERGE_FAILED
            outcome.error = f"Failed to checkout {check.target_branch}: {checkout.stderr.strip()}"
            return outcome

        merged = merge_branch(
            session.branch,
            cwd=root,
            message=commit_message,
            squash=strategy == MergeStrategy.SQUASH,
        )
        if merged.returncode != 0:
            output = merged.stdout + merged.stderr
            outcome.has_conflicts = "CONFLICT" in output or bool(check.has_conflicts)
            resolved = False
            if outcome.has_conflicts and auto_resolve:
                resolved = self._resolve_conflicts(outcome, default_message=message is None)
            if not resolved:
                abort_merge(cwd=root)
                outcome.success = False
                if outcome.has_conflicts:
                    outcome.code = ErrorCode.MERGE_CONFLICT
                else:
                    outcome.code = ErrorCode.MERGE_FAILED
                if outcome.error is None:
                    detail = merged.stderr.strip() or merged.stdout.strip()
                    outcome.error = f"Merge failed: {detail}"
                self._append_merge_log(outcome, session)
                return outcome

        self._write_merge_notice(outcome)

        session_path = Path(session.path)
        if delete_worktree and session_path != root and session_path.exists():
            removal = self.worktrees.remove_worktree_forcing(session_path)
            outcome.worktree_deleted = removal.returncode == 0
            if not outcome.worktree_deleted:
                outcome.worktree_error = removal.stderr.strip()

        if delete_branch_after:
            deleted = delete_branch(session.branch, cwd=root)
            if deleted.returncode != 0:
                deleted = delete_branch(session.branch, cwd=root, force=True)
            outcome.branch_deleted = deleted.returncode == 0

        remove_lock(self.paths.lock_path(session.id))
        if delete_worktree:
            self.registry.remove_entry(session.id)
        else:
            self.registry.update_session(session.id, merged_at=utc_now())

        self._append_merge_log(outcome, session)
        logger.info(
            "Integrated session %s (%s) into %s", session.id, session.branch, check.target_branch
        )
        return outcome

    def _resolve_conflicts(self, outcome: IntegrateResult, default_message: bool) -> bool:
        """Settle every conflicted path of the in-progress merge and commit it.

        Returns:
            True if the merge was committed; False leaves the merge for the
            caller to abort, with outcome.error and outcome.unresolved set
        """
        root = self.paths.main_root
        conflicted = get_unmerged_paths(cwd=root)
        if not conflicted:
            outcome.error = "Merge conflicted but git reports no unmerged paths"
            return False

        logger.info("Auto-resolving %d conflicted file(s)", len(conflicted))
        for path in conflicted:
            plan = plan_resolution(path)
            result = resolve_conflict(plan, cwd=root)
            if result.returncode == 0:
                outcome.auto_resolved.append(plan.to_dict())
            else:
                outcome.unresolved.append({**plan.to_dict(), "error": result.stderr.strip()})

        if outcome.unresolved:
            outcome.error = (
                f"{len(outcome.unresolved)} conflict(s) could not be auto-resolved: "
                + ", ".join(u["file"] for u in outcome.unresolved)
            )
            return False

        if default_message:
            outcome.commit_message += " (auto-resolved)"
        committed = commit_index(outcome.commit_message, cwd=root)
        if committed.returncode != 0:
            outcome.error = f"Failed to commit resolved merge: {committed.stderr.strip()}"
            return False
        return True

    def smart_merge(
        self,
        identifier: str,
        strategy: MergeStrategy | str | None = None,
        delete_branch_after: bool = True,
        delete_worktree: bool = True,
        message: str | None = None,
    ) -> IntegrateResult:
        """Integrate a session, resolving conflicts by file category.

        Docs and tests keep both sides, schema files and conflicting source
        hunks take the session version, config files keep the target
        version. If any path cannot be resolved the merge is aborted and
        nothing changes.
        """
        return self.integrate_session(
            identifier,
            strategy=strategy,
            delete_branch_after=delete_branch_after,
            delete_worktree=delete_worktree,
            message=message,
            auto_resolve=True,
        )

    def get_conflicting_files(self, identifier: str) -> ConflictFilesResult:
        """Files changed on both the session branch and the target branch.

        Each file comes with the resolution smart_merge would apply if it
        conflicts.
        """
        session, failure = self._merge_target(identifier)
        if failure is not None:
            return ConflictFilesResult.failure(failure.error, failure.code)

        target = self.target_branch
        files = get_files_changed_on_both_sides(target, session.branch, cwd=self.paths.main_root)
        if files is None:
            return ConflictFilesResult.failure(
                f"Could not find a merge base of {target} and {session.branch}",
                ErrorCode.MERGE_FAILED,
            )
        return ConflictFilesResult(
            session_id=session.id,
            branch=session.branch,
            target_branch=target,
            files=files,
            plan=[plan_resolution(path).to_dict() for path in files],
        )

    def _write_merge_notice(self, outcome: IntegrateResult) -> None:
        notice = AtomicStore.for_file(self.paths.last_merge_path, self.config.store)
        result = notice.save(
            {
                "merged_at": utc_now(),
                "session_id": outcome.session_id,
                "branch": outcome.branch,
                "strategy": outcome.strategy.value,
                "commit_message": outcome.commit_message,
            }
        )
        if not result.success:
            logger.warning("Could not write merge notice: %s", result.error)

    def _append_merge_log(self, outcome: IntegrateResult, session: Session) -> None:
        entry = {
            "session_id": outcome.session_id,
            "nickname": session.nickname,
            "branch": outcome.branch,
            "target_branch": outcome.target_branch,
            "strategy": outcome.strategy.value if outcome.strategy else None,
            "commits_count": outcome.commits_count,
            "timestamp": utc_now(),
            "success": outcome.success,
            "has_conflicts": outcome.has_conflicts,
        }
        if outcome.auto_resolved:
            entry["auto_resolved"] = [r["file"] for r in outcome.auto_resolved]
        limit = self.config.sessions.merge_log_limit

        def update(document: Document) -> None:
            merges = document.setdefault("merges", [])
            merges.append(entry)
            del merges[:-limit]

        result = self.merge_log_store.read_modify_write(update)
        if not result.success:
            logger.warning("Could not append to merge log: %s", result.error)

    def get_merge_history(self, limit: int | None = None) -> list[dict[str, Any]]:
        """Return merge-log entries, oldest first (the most recent `limit`)."""
        merges = self.merge_log_store.load(fresh=True).get("merges", [])
        if limit is not None:
            merges = merges[-limit:] if limit > 0 else []
        return merges

    def commit_session_changes(self, identifier: str, message: str) -> OperationResult:
        """Stage and commit everything in a session's worktree."""
        session = self._find(identifier)
        if session is None:
            return OperationResult.failure(
                f"Session {identifier} not found", ErrorCode.SESSION_NOT_FOUND
            )
        if not Path(session.path).exists():
            return OperationResult.failure(
                f"Session directory does not exist: {session.path}", ErrorCode.PATH_MISSING
            )

        result = commit_changes(session.path, message)
        if result.returncode != 0:
            return OperationResult.failure(
                f"Commit failed: {result.stderr.strip() or result.stdout.strip()}",
                ErrorCode.MERGE_FAILED,
            )
        return OperationResult()

    def stash_session_changes(self, identifier: str) -> ChangesResult:
        """Stash a session's uncommitted changes (untracked files included).

        The stash lives in the repository's shared stash list; restore it
        with `git stash pop` in any worktree.
        """
        return self._clear_changes(identifier, UncommittedAction.STASH)

    def discard_session_changes(self, identifier: str) -> ChangesResult:
        """Throw away a session's uncommitted changes."""
        return self._clear_changes(identifier, UncommittedAction.DISCARD)

    def _clear_changes(self, identifier: str, action: UncommittedAction) -> ChangesResult:
        session = self._find(identifier)
        if session is None:
            return ChangesResult.failure(
                f"Session {identifier} not found", ErrorCode.SESSION_NOT_FOUND
            )
        if not Path(session.path).exists():
            return ChangesResult.failure(
                f"Session directory does not exist: {session.path}", ErrorCode.PATH_MISSING
            )

        changes = get_changed_paths(session.path)
        if changes is None:
            return ChangesResult.failure(
                f"Could not read git status of {session.path}", ErrorCode.WORKTREE_FAILED
            )
        outcome = ChangesResult(session_id=session.id, action=action)
        if not changes:
            return outcome

        if action == UncommittedAction.STASH:
            outcome.message = f"session-orchestrator: session {session.id} merge prep"
            result = stash_changes(session.path, outcome.message)
        else:
            result = discard_changes(session.path)
        if result.returncode != 0:
            return ChangesResult.failure(
                f"Failed to {action.value} changes: {result.stderr.strip()}",
                ErrorCode.WORKTREE_FAILED,
                session_id=session.id,
                action=action,
            )

        outcome.changed = True
        logger.info(
            "Cleared %d change(s) in session %s (%s)", len(changes), session.id, action.value
        )
        return outcome

    # -- end / delete ------------------------------------------------------

    def end_session(
        self,
        identifier: str,
        merge: bool = False,
        strategy: MergeStrategy | str | None = None,
        delete_worktree: bool = True,
        auto_resolve: bool = False,
        uncommitted: UncommittedAction | str | None = None,
    ) -> EndResult:
        """End a session, optionally integrating it first.

        Without merge the session is unregistered (marked inactive). With
        merge its mergeability is checked and, if mergeable, it is
        integrated; an unmergeable session is reported, not ended.

        Args:
            identifier: Session ID or nickname
            merge: Integrate the session branch before ending
            strategy: squash or merge
            delete_worktree: Remove the worktree after merging
            auto_resolve: Resolve merge conflicts by file category
            uncommitted: Stash or discard uncommitted changes before the
                mergeability check instead of refusing to merge
        """
        session = self._find(identifier)
        if session is None:
            return EndResult.failure(
                f"Session {identifier} not found", ErrorCode.SESSION_NOT_FOUND
            )

        if not merge:
            self.registry.unregister(session.id)
            return EndResult(session_id=session.id)

        changes = None
        if uncommitted is not None:
            changes = self._clear_changes(session.id, UncommittedAction(uncommitted))
            if not changes.success:
                return EndResult(
                    success=False,
                    error=changes.error,
                    code=changes.code,
                    session_id=session.id,
                    changes=changes,
                )

        check = self.check_mergeability(session.id)
        if not check.success or not check.mergeable:
            return EndResult(
                success=check.success,
                error=check.error,
                code=check.code,
                session_id=session.id,
                mergeability=check,
                changes=changes,
            )

        integration = self.integrate_session(
            session.id,
            strategy=strategy,
            delete_worktree=delete_worktree,
            auto_resolve=auto_resolve,
        )
        return EndResult(
            success=integration.success,
            error=integration.error,
            code=integration.code,
            session_id=session.id,
            merged=integration.success,
            mergeability=check,
            integration=integration,
            changes=changes,
        )

    def delete_session(self, identifier: str, delete_worktree: bool = False) -> OperationResult:
        """Delete a session by ID or nickname."""
        session = self._find(identifier)
        if session is None:
            return OperationResult.failure(
                f"Session {identifier} not found", ErrorCode.SESSION_NOT_FOUND
            )
        return self.registry.delete(session.id, delete_worktree=delete_worktree)

    # -- spawn / status ----------------------------------------------------

    def ready_stories(self, epic_id: str) -> list[dict[str, Any]] | None:
        """Stories with status `ready` in an epic of the status file.

        Returns:
            List of `{id, title}` dicts, or None if the epic is unknown
        """
        status_path = self.paths.main_root / self.config.sessions.status_file
        try:
            status = json.loads(status_path.read_text())
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Could not read %s: %s", status_path, e)
            return None

        epic = (status.get("epics") or {}).get(epic_id)
        if epic is None:
            return None

        stories = status.get("stories") or {}
        ready: list[dict[str, Any]] = []
        for story_id in epic.get("stories", []):
            story = stories.get(story_id)
            if story and story.get("status") == "ready":
                ready.append({"id": story_id, "title": story.get("title")})
        return ready

    def spawn(
        self,
        count: int | None = None,
        branches: list[str] | None = None,
        from_epic: str | None = None,
        use_tmux: bool = False,
    ) -> SpawnResult:
        """Create several parallel sessions at once.

        Exactly one of count, branches or from_epic selects what to create:
        `parallel-<i>` sessions, one `feature/<name>` session per name, or
        one session per ready story of an epic.

        Args:
            count: Number of generic sessions
            branches: Names of feature sessions
            from_epic: Epic whose ready stories get a session each
            use_tmux: Launch each created session in a tmux window

        Returns:
            SpawnResult with created and failed sessions
        """
        specs: list[dict[str, str | None]] = []
        if from_epic:
            stories = self.ready_stories(from_epic)
            if stories is None:
                return SpawnResult.failure(f"Epic {from_epic} not found", ErrorCode.EPIC_NOT_FOUND)
            for story in stories:
                key = story["id"].lower()
                specs.append({"nickname": key, "branch": f"feature/{key}", "story": story["id"]})
        elif branches:
            for name in branches:
                name = name.strip()
                if name:
                    specs.append({"nickname": name, "branch": f"feature/{name}", "story": None})
        elif count:
            for i in range(1, count + 1):
                name = f"parallel-{i}"
                specs.append({"nickname": name, "branch": name, "story": None})
        else:
            return SpawnResult.failure(
                "Specify a count, branches or an epic", ErrorCode.INVALID_NAME
            )

        outcome = SpawnResult()
        for spec in specs:
            created = self.create_session(
                branch=spec["branch"], nickname=spec["nickname"], story=spec["story"]
            )
            (outcome.created if created.success else outcome.failed).append(created)

        if use_tmux and outcome.created:
            outcome.tmux_session = self._launch_in_tmux(outcome.created)
        outcome.success = bool(outcome.created) or not specs
        return outcome

    def _launch_in_tmux(self, sessions: list[CreateResult]) -> str | None:
        """Open one tmux window per session running the agent command."""
        if not tmux.is_tmux_available():
            logger.warning("tmux is not available, sessions were not launched")
            return None

        session_name = f"{self.paths.project_name}-parallel-{int(time.time())}"
        agent = self.config.sessions.agent_command
        for index, created in enumerate(sessions):
            window = created.nickname or f"session-{created.session_id}"
            if index == 0:
                result = tmux.create_session(
                    session_name, working_dir=created.path, command=agent, window_name=window
                )
            else:
                result = tmux.new_window(
                    session_name, window, working_dir=created.path, command=agent
                )
            if result.returncode != 0:
                logger.warning("Could not open tmux window %s: %s", window, result.stderr.strip())
                if index == 0:
                    return None
        return session_name

    def register(
        self,
        cwd: str | Path | None = None,
        nickname: str | None = None,
    ) -> RegisterResult:
        return self.registry.register(cwd=cwd, nickname=nickname)

    def list_sessions(self, cwd: str | Path | None = None) -> ListResult:
        return self.registry.list(cwd=cwd or self.paths.worktree_root)

    def full_status(self, cwd: str | Path | None = None) -> StatusResult:
        """Register the caller's session and summarize all sessions."""
        cwd = Path(cwd or self.paths.worktree_root)
        registered = self.registry.register(cwd=cwd)
        if not registered.success:
            return StatusResult.failure(registered.error, registered.code)

        listing = self.registry.list(cwd=cwd)
        current: SessionInfo | None = next(
            (info for info in listing.sessions if info.id == registered.id), None
        )
        return StatusResult(
            current=current.to_dict() if current else None,
            is_new=registered.is_new,
            total=len(listing.sessions),
            active=sum(1 for info in listing.sessions if info.active),
            sessions=[info.to_dict() for info in listing.sessions],
            cleaned=listing.cleaned,
        )
