"""The shared session registry.

Every mutation goes through AtomicStore.read_modify_write, so concurrent
processes registering or deleting sessions never lose each other's
updates. Lock files next to the registry record which process drives
each session and are only used to tell live sessions from dead ones.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, TypeVar

from pydantic import ValidationError

from session_orchestrator.core.errors import (
    ErrorCode,
    PreconditionError,
    RegistryError,
    StoreCorruptError,
)
from session_orchestrator.core.locks import (
    is_pid_alive,
    is_session_active,
    read_lock,
    remove_lock,
    write_lock,
)
from session_orchestrator.core.paths import ProjectPaths
from session_orchestrator.core.results import OperationResult
from session_orchestrator.core.state import decide_transition, parse_thread_type
from session_orchestrator.core.store import AtomicStore, Document
from session_orchestrator.schemas.config import StoreSettings
from session_orchestrator.schemas.registry import Registry, Session, ThreadType, utc_now
from session_orchestrator.utils.git import get_current_branch, is_linked_worktree
from session_orchestrator.worktree.manager import WorktreeManager

logger = logging.getLogger(__name__)

T = TypeVar("T")

NICKNAME_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")


def is_valid_nickname(nickname: str) -> bool:
    return bool(NICKNAME_PATTERN.match(nickname))


class _Unchanged(Exception):
    """Aborts a registry transaction without writing, carrying its value."""

    def __init__(self, value: Any):
        super().__init__("unchanged")
        self.value = value


@dataclass
class SessionInfo:
    """A session plus liveness details for display."""

    session: Session
    active: bool = False
    current: bool = False

    @property
    def id(self) -> str:
        return self.session.id

    def to_dict(self) -> dict[str, Any]:
        data = self.session.model_dump(mode="json", exclude_none=True)
        data["thread_type"] = self.session.effective_thread_type.value
        data["active"] = self.active
        data["current"] = self.current
        return data


@dataclass
class RegisterResult(OperationResult):
    id: str | None = None
    is_new: bool = False
    thread_type: ThreadType | None = None


@dataclass
class CleanedLock:
    """A lock file removed because its process no longer exists."""

    id: str
    pid: int
    path: str
    nickname: str | None = None
    branch: str | None = None
    reason: str = "pid_dead"


@dataclass
class ListResult(OperationResult):
    sessions: list[SessionInfo] = field(default_factory=list)
    cleaned: int = 0
    cleaned_sessions: list[CleanedLock] = field(default_factory=list)


@dataclass
class DeleteResult(OperationResult):
    session_id: str | None = None
    worktree_removed: bool = False
    worktree_error: str | None = None


@dataclass
class TransitionResult(OperationResult):
    session_id: str | None = None
    from_type: ThreadType | None = None
    to_type: ThreadType | None = None
    noop: bool = False
    forced: bool = False


class SessionRegistry:
    """Canonical list of sessions for one repository."""

    def __init__(
        self,
        paths: ProjectPaths,
        store: AtomicStore | None = None,
        settings: StoreSettings | None = None,
        worktrees: WorktreeManager | None = None,
    ):
        """Initialize the registry.

        Args:
            paths: Resolved project paths
            store: Store holding the registry document (file store by default)
            settings: Lock and cache settings for the default file store
            worktrees: Worktree manager used when deleting worktrees
        """
        self.paths = paths
        self.store = store or AtomicStore.for_file(
            paths.registry_path, settings, default=self._empty_document
        )
        self._worktrees = worktrees

    @property
    def worktrees(self) -> WorktreeManager:
        if self._worktrees is None:
            self._worktrees = WorktreeManager(self.paths.main_root)
        return self._worktrees

    def _empty_document(self) -> Document:
        return Registry(project_name=self.paths.project_name).model_dump(mode="json")

    def _validate(self, document: Document) -> Registry:
        try:
            registry = Registry.model_validate(document)
        except ValidationError as e:
            raise RegistryError(f"Malformed registry at {self.store.location}: {e}") from e
        if not registry.project_name:
            registry.project_name = self.paths.project_name
        return registry

    def load(self, fresh: bool = False) -> Registry:
        """Load the registry, creating and saving it on first use.

        Raises:
            RegistryError: If the registry cannot be read or initialized
        """
        try:
            if not self.store.exists():
                self._transact(lambda registry: None)
            return self._validate(self.store.load(fresh=fresh))
        except StoreCorruptError as e:
            raise RegistryError(str(e)) from e

    def _transact(self, fn: Callable[[Registry], T]) -> T:
        """Run fn against the freshest registry and persist the result.

        fn may raise PreconditionError to abort without writing, or
        _Unchanged to return a value without writing.

        Raises:
            RegistryError: If the store is busy or the write fails
            PreconditionError: Propagated from fn
        """
        outcome: dict[str, Any] = {}

        def update(document: Document) -> Document:
            registry = self._validate(document)
            outcome["value"] = fn(registry)
            registry.updated = utc_now()
            return registry.model_dump(mode="json", exclude_none=True)

        try:
            result = self.store.read_modify_write(update)
        except _Unchanged as unchanged:
            return unchanged.value

        if not result.success:
            if result.busy:
                raise RegistryError(f"Registry busy, retry: {result.error}")
            raise RegistryError(result.error or f"Failed to update {self.store.location}")
        return outcome["value"]

    def register(
        self,
        cwd: str | Path | None = None,
        nickname: str | None = None,
        thread_type: str | ThreadType | None = None,
        pid: int | None = None,
    ) -> RegisterResult:
        """Register the session for a working directory.

        A directory that already has a session keeps its ID; its branch,
        last_active and (when given) nickname and thread type are refreshed.
        Otherwise the next ID is allocated. Either way the session's lock
        file is written for pid.

        Args:
            cwd: Session directory (defaults to the worktree root)
            nickname: Optional human-friendly name
            thread_type: Optional thread type (inferred when omitted)
            pid: Owning process (defaults to this process)

        Returns:
            RegisterResult with the session ID and whether it is new
        """
        if nickname is not None and not is_valid_nickname(nickname):
            return RegisterResult.failure(
                f"Invalid nickname: {nickname!r}. Use letters, numbers, hyphens and underscores.",
                ErrorCode.INVALID_NAME,
            )

        requested_type: ThreadType | None = None
        if thread_type is not None:
            requested_type = parse_thread_type(thread_type)
            if requested_type is None:
                return RegisterResult.failure(
                    f"Invalid thread type: {thread_type}", ErrorCode.INVALID_THREAD_TYPE
                )

        path = Path(cwd or self.paths.worktree_root).resolve()
        branch = get_current_branch(path)
        is_main = path == self.paths.main_root and not is_linked_worktree(path)

        def update(registry: Registry) -> RegisterResult:
            existing = registry.find_by_path(str(path))
            if existing is not None:
                existing.last_active = utc_now()
                if branch:
                    existing.branch = branch
                if nickname:
                    existing.nickname = nickname
                if requested_type is not None:
                    existing.thread_type = requested_type
                return RegisterResult(
                    id=existing.id,
                    is_new=False,
                    thread_type=existing.effective_thread_type,
                )

            session_id = str(registry.next_id)
            registry.next_id += 1
            resolved_type = requested_type or (
                ThreadType.BASE if is_main else ThreadType.PARALLEL
            )
            registry.sessions[session_id] = Session(
                id=session_id,
                path=str(path),
                branch=branch,
                nickname=nickname,
                is_main=is_main and registry.main_session() is None,
                thread_type=resolved_type,
            )
            return RegisterResult(id=session_id, is_new=True, thread_type=resolved_type)

        result = self._transact(update)
        try:
            write_lock(self.paths.lock_path(result.id), pid=pid)
        except OSError as e:
            logger.warning("Could not write lock for session %s: %s", result.id, e)
        return result

    def reserve_id(self) -> str:
        """Allocate a session ID ahead of creating its worktree."""

        def update(registry: Registry) -> str:
            session_id = str(registry.next_id)
            registry.next_id += 1
            return session_id

        return self._transact(update)

    def add_session(self, session: Session) -> Session:
        """Store a fully built session under its (reserved) ID."""

        def update(registry: Registry) -> Session:
            registry.sessions[session.id] = session
            if int(session.id) >= registry.next_id:
                registry.next_id = int(session.id) + 1
            return session

        return self._transact(update)

    def list(self, cwd: str | Path | None = None) -> ListResult:
        """List sessions sorted by numeric ID, removing dead lock files.

        Args:
            cwd: Caller's directory, used to flag the current session

        Returns:
            ListResult with sessions and the lock files that were cleaned
        """
        registry = self.load()
        current_path = str(Path(cwd).resolve()) if cwd else None

        infos: list[SessionInfo] = []
        cleaned: list[CleanedLock] = []
        for session in sorted(registry.sessions.values(), key=lambda s: int(s.id)):
            lock_path = self.paths.lock_path(session.id)
            lock = read_lock(lock_path)
            active = False
            if lock is not None:
                if is_pid_alive(lock.pid):
                    active = True
                elif remove_lock(lock_path):
                    logger.info("Removed stale lock for session %s (pid %d)", session.id, lock.pid)
                    cleaned.append(
                        CleanedLock(
                            id=session.id,
                            pid=lock.pid,
                            path=session.path,
                            nickname=session.nickname,
                            branch=session.branch,
                        )
                    )

            infos.append(
                SessionInfo(
                    session=session,
                    active=active,
                    current=current_path is not None and session.path == current_path,
                )
            )

        return ListResult(sessions=infos, cleaned=len(cleaned), cleaned_sessions=cleaned)

    def get(self, session_id: str) -> SessionInfo | None:
        """Get one session by ID, with legacy thread type inferred."""
        session = self.load().sessions.get(str(session_id))
        if session is None:
            return None
        return SessionInfo(
            session=session,
            active=is_session_active(self.paths.lock_path(session.id)),
        )

    def find(self, identifier: str) -> Session | None:
        """Find a session by ID or nickname."""
        registry = self.load()
        session = registry.sessions.get(str(identifier))
        if session is not None:
            return session
        for candidate in registry.sessions.values():
            if candidate.nickname and candidate.nickname == identifier:
                return candidate
        return None

    def delete(self, session_id: str, delete_worktree: bool = False) -> DeleteResult:
        """Delete a session, optionally removing its worktree.

        The main session can never be deleted. next_id is left untouched so
        the ID is never reissued.

        Args:
            session_id: Session to delete
            delete_worktree: Also remove the session's git worktree

        Returns:
            DeleteResult
        """
        session_id = str(session_id)
        session = self.load(fresh=True).sessions.get(session_id)
        if session is None:
            return DeleteResult.failure(
                f"Session {session_id} not found", ErrorCode.SESSION_NOT_FOUND,
                session_id=session_id,
            )
        if session.is_main:
            return DeleteResult.failure(
                "Cannot delete main session", ErrorCode.CANNOT_DELETE_MAIN,
                session_id=session_id,
            )

        result = DeleteResult(session_id=session_id)
        remove_lock(self.paths.lock_path(session_id))

        session_path = Path(session.path)
        if delete_worktree and session_path.exists() and session_path != self.paths.main_root:
            if self.worktrees.get_worktree(session_path) is None:
                result.worktree_error = f"{session_path} is not a worktree of this repository"
            else:
                removal = self.worktrees.remove_worktree_forcing(session_path)
                result.worktree_removed = removal.returncode == 0
                if not result.worktree_removed:
                    result.worktree_error = removal.stderr.strip()
            if result.worktree_error:
                logger.warning(
                    "Could not remove worktree %s: %s", session_path, result.worktree_error
                )

        def update(registry: Registry) -> None:
            current = registry.sessions.get(session_id)
            if current is not None and current.is_main:
                raise PreconditionError("Cannot delete main session", ErrorCode.CANNOT_DELETE_MAIN)
            registry.sessions.pop(session_id, None)

        try:
            self._transact(update)
        except PreconditionError as e:
            return DeleteResult.failure(str(e), e.code, session_id=session_id)
        return result

    def remove_entry(self, session_id: str) -> bool:
        """Drop a registry entry without touching git or the filesystem."""

        def update(registry: Registry) -> bool:
            session = registry.sessions.get(str(session_id))
            if session is None:
                raise _Unchanged(False)
            if session.is_main:
                raise PreconditionError("Cannot delete main session", ErrorCode.CANNOT_DELETE_MAIN)
            del registry.sessions[str(session_id)]
            return True

        removed = self._transact(update)
        remove_lock(self.paths.lock_path(str(session_id)))
        return removed

    def update_session(self, session_id: str, **changes: Any) -> Session | None:
        """Apply field changes to a session.

        Returns:
            The updated session, or None if it does not exist
        """

        def update(registry: Registry) -> Session:
            session = registry.sessions.get(str(session_id))
            if session is None:
                raise _Unchanged(None)
            for key, value in changes.items():
                setattr(session, key, value)
            return session

        return self._transact(update)

    def touch(self, session_id: str) -> bool:
        """Update a session's last_active timestamp."""
        return self.update_session(session_id, last_active=utc_now()) is not None

    def unregister(self, session_id: str) -> bool:
        """Mark a session inactive: touch it and drop its lock file."""
        touched = self.touch(session_id)
        remove_lock(self.paths.lock_path(str(session_id)))
        return touched

    def transition_thread(
        self,
        session_id: str,
        new_type: str | ThreadType,
        force: bool = False,
    ) -> TransitionResult:
        """Change a session's thread type through the transition table.

        Args:
            session_id: Session to update
            new_type: Target thread type
            force: Allow transitions missing from the table

        Returns:
            TransitionResult; noop when the type is unchanged, forced when
            force was needed
        """
        session_id = str(session_id)

        def update(registry: Registry) -> TransitionResult:
            session = registry.sessions.get(session_id)
            if session is None:
                raise PreconditionError(
                    f"Session {session_id} not found", ErrorCode.SESSION_NOT_FOUND
                )

            decision = decide_transition(session.effective_thread_type, new_type, force=force)
            if not decision.allowed:
                raise PreconditionError(decision.error or "Invalid transition", decision.code)

            outcome = TransitionResult(
                session_id=session_id,
                from_type=decision.from_type,
                to_type=decision.to_type,
                noop=decision.noop,
                forced=decision.forced,
            )
            if decision.noop:
                raise _Unchanged(outcome)

            session.thread_type = decision.to_type
            session.last_active = utc_now()
            if decision.forced:
                logger.warning(
                    "Forced thread transition for session %s: %s -> %s",
                    session_id,
                    decision.from_type.value,
                    decision.to_type.value,
                )
            return outcome

        try:
            return self._transact(update)
        except PreconditionError as e:
            return TransitionResult.failure(str(e), e.code, session_id=session_id)
