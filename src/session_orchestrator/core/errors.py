"""Exception hierarchy and structured failure codes."""

from __future__ import annotations

from enum import Enum


class ErrorCode(str, Enum):
    """Codes carried by structured failure results."""

    INVALID_NAME = "invalid_name"
    SESSION_NOT_FOUND = "session_not_found"
    CANNOT_DELETE_MAIN = "cannot_delete_main"
    CANNOT_MERGE_MAIN = "cannot_merge_main"
    INVALID_THREAD_TYPE = "invalid_thread_type"
    INVALID_TRANSITION = "invalid_transition"
    PATH_EXISTS = "path_exists"
    PATH_MISSING = "path_missing"
    WORKTREE_FAILED = "worktree_failed"
    UNCOMMITTED_CHANGES = "uncommitted_changes"
    NO_CHANGES = "no_changes"
    MERGE_CONFLICT = "merge_conflict"
    MERGE_FAILED = "merge_failed"
    NO_ACTIVE_TEAM = "no_active_team"
    TEAM_ALREADY_ACTIVE = "team_already_active"
    TEMPLATE_NOT_FOUND = "template_not_found"
    EPIC_NOT_FOUND = "epic_not_found"
    REGISTRY_BUSY = "registry_busy"
    STORE_FAILED = "store_failed"


class OrchestratorError(Exception):
    """Base class for errors raised by the orchestrator."""

    pass


class StoreError(OrchestratorError):
    """A shared document could not be read or written."""

    pass


class LockTimeoutError(StoreError):
    """The document lock could not be acquired before the deadline."""

    def __init__(self, lock_path: str, timeout_ms: int):
        super().__init__(
            f"Timed out after {timeout_ms}ms waiting for lock {lock_path} (store busy, retry)"
        )
        self.lock_path = lock_path
        self.timeout_ms = timeout_ms


class StoreCorruptError(StoreError):
    """The on-disk document is not valid JSON."""

    def __init__(self, path: str, reason: str):
        super().__init__(f"Malformed document at {path}: {reason}")
        self.path = path


class RegistryError(OrchestratorError):
    """The session registry could not be loaded or persisted."""

    pass


class PreconditionError(OrchestratorError):
    """An operation's precondition does not hold.

    Raised inside read-modify-write transactions to abort them without
    writing; callers translate it into a failure result.
    """

    def __init__(self, message: str, code: ErrorCode):
        super().__init__(message)
        self.code = code
