"""Atomic read-modify-write store for shared JSON documents.

Every shared document (the session registry, session state, merge log,
wave status) is written through an AtomicStore. Writers serialize on a
lock file next to the document, write to a temporary file and rename it
into place, so readers never observe a half-written document.
"""

from __future__ import annotations

import copy
import fcntl
import json
import logging
import os
import random
import secrets
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from session_orchestrator.core.errors import (
    LockTimeoutError,
    StoreCorruptError,
    StoreError,
)
from session_orchestrator.core.locks import is_pid_alive
from session_orchestrator.schemas.config import StoreSettings

logger = logging.getLogger(__name__)

Document = dict[str, Any]
UpdateFn = Callable[[Document], "Document | None"]

# Unparseable lock files younger than this may belong to a writer that has
# created the file but not yet written its PID.
LOCK_GRACE_SECONDS = 1.0


@dataclass
class StoreResult:
    """Outcome of a save or read-modify-write."""

    success: bool
    data: Document | None = None
    error: str | None = None
    busy: bool = False


class FileLock:
    """Exclusive lock file holding the owner's PID.

    The lock is created with O_EXCL. A lock whose owner PID is dead (or whose
    content is unreadable past a short grace period) is stale and reclaimed
    under the `.reclaim` guard; a live owner is waited for with jittered
    exponential backoff until the timeout.
    """

    def __init__(
        self,
        path: str | Path,
        timeout_ms: int = 5000,
        retry_ms: int = 50,
        backoff_max_ms: int = 400,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.path = Path(path)
        self.timeout_ms = timeout_ms
        self.retry_ms = retry_ms
        self.backoff_max_ms = backoff_max_ms
        self._sleep = sleep
        self._held = False

    @property
    def held(self) -> bool:
        return self._held

    @property
    def guard_path(self) -> Path:
        return self.path.with_name(self.path.name + ".reclaim")

    def acquire(self) -> None:
        """Acquire the lock.

        Raises:
            LockTimeoutError: If the lock is still held by a live process
                when the timeout expires
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)
        deadline = time.monotonic() + self.timeout_ms / 1000
        delay_ms = float(self.retry_ms)

        while True:
            try:
                fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            except FileExistsError:
                if self._reclaim_if_stale():
                    continue

                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise LockTimeoutError(str(self.path), self.timeout_ms)

                jitter = random.uniform(0.5, 1.5)
                self._sleep(min(delay_ms * jitter / 1000, remaining))
                delay_ms = min(delay_ms * 2, self.backoff_max_ms)
                continue

            with os.fdopen(fd, "w") as f:
                f.write(str(os.getpid()))
            self._held = True
            return

    def release(self) -> None:
        """Release the lock if this instance holds it."""
        if not self._held:
            return
        self._held = False
        try:
            self.path.unlink()
        except FileNotFoundError:
            logger.warning("Lock file %s vanished before release", self.path)

    def _reclaim_if_stale(self) -> bool:
        """Remove the lock file if its owner is gone.

        Reclaimers serialize on a flock'd guard file next to the lock and
        re-read the lock under it, so a lock that another reclaimer created
        after our first look is never removed. The kernel drops the guard if
        its holder dies.
        """
        if self._stale_reason() is None:
            return False

        with open(self.guard_path, "a") as guard:
            fcntl.flock(guard, fcntl.LOCK_EX)
            try:
                reason = self._stale_reason()
                if reason is None:
                    return False
                self.path.unlink(missing_ok=True)
            finally:
                fcntl.flock(guard, fcntl.LOCK_UN)

        if reason:
            logger.info("Reclaimed lock %s (%s)", self.path, reason)
        return True

    def _stale_reason(self) -> str | None:
        """Why the lock may be taken over, "" if it is gone, None if it is live."""
        try:
            content = self.path.read_text().strip()
            age = time.time() - self.path.stat().st_mtime
        except FileNotFoundError:
            return ""

        try:
            owner = int(content)
        except ValueError:
            if age < LOCK_GRACE_SECONDS:
                return None
            return "corrupt content"

        if is_pid_alive(owner):
            return None
        return f"dead pid {owner}"

    def __enter__(self) -> "FileLock":
        self.acquire()
        return self

    def __exit__(self, *exc: object) -> None:
        self.release()


@runtime_checkable
class StoreBackend(Protocol):
    """Storage behind an AtomicStore."""

    @property
    def location(self) -> str:
        """Human-readable location, used in error messages."""
        ...

    def read(self) -> Document | None:
        """Read the document, or None if it does not exist.

        Raises:
            StoreCorruptError: If the stored document cannot be decoded
        """
        ...

    def write(self, document: Document) -> None:
        """Replace the document atomically."""
        ...

    def lock(self) -> Any:
        """Return a context manager holding the writer lock."""
        ...


class FileBackend:
    """JSON document on the local filesystem."""

    def __init__(self, path: str | Path, settings: StoreSettings | None = None):
        self.path = Path(path)
        self.settings = settings or StoreSettings()

    @property
    def location(self) -> str:
        return str(self.path)

    @property
    def lock_path(self) -> Path:
        return self.path.with_name(self.path.name + ".lock")

    def read(self) -> Document | None:
        if not self.path.exists():
            return None

        try:
            with open(self.path) as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise StoreCorruptError(str(self.path), str(e)) from e

        if not isinstance(data, dict):
            raise StoreCorruptError(str(self.path), "top-level value is not an object")
        return data

    def write(self, document: Document) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_name(f"{self.path.name}.tmp.{secrets.token_hex(6)}")

        try:
            with open(tmp_path, "w") as f:
                json.dump(document, f, indent=2)
                f.write("\n")
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.path)
        except BaseException:
            tmp_path.unlink(missing_ok=True)
            raise

    def lock(self) -> FileLock:
        return FileLock(
            self.lock_path,
            timeout_ms=self.settings.lock_timeout_ms,
            retry_ms=self.settings.lock_retry_ms,
            backoff_max_ms=self.settings.lock_backoff_max_ms,
        )


class MemoryBackend:
    """In-process document, for tests and single-process embedding.

    Documents are copied through JSON on the way in and out so callers see
    the same value semantics as the file backend.
    """

    def __init__(self, document: Document | None = None, lock_timeout_ms: int = 5000):
        self._document = self._copy(document) if document is not None else None
        self._lock = threading.Lock()
        self.lock_timeout_ms = lock_timeout_ms
        self.writes = 0

    @staticmethod
    def _copy(document: Document) -> Document:
        return json.loads(json.dumps(document))

    @property
    def location(self) -> str:
        return f"memory:{id(self):x}"

    def read(self) -> Document | None:
        if self._document is None:
            return None
        return self._copy(self._document)

    def write(self, document: Document) -> None:
        self._document = self._copy(document)
        self.writes += 1

    @contextmanager
    def lock(self) -> Iterator[None]:
        if not self._lock.acquire(timeout=self.lock_timeout_ms / 1000):
            raise LockTimeoutError(self.location, self.lock_timeout_ms)
        try:
            yield
        finally:
            self._lock.release()


class AtomicStore:
    """Lock-guarded read-modify-write access to one JSON document."""

    def __init__(
        self,
        backend: StoreBackend,
        default: Callable[[], Document] | None = None,
        cache_ttl: float = 10.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize the store.

        Args:
            backend: Where the document lives
            default: Factory for the document when none is stored yet
            cache_ttl: Seconds a loaded document may be served from memory
            clock: Monotonic clock, injectable for tests
        """
        self.backend = backend
        self.default = default or dict
        self.cache_ttl = cache_ttl
        self._clock = clock
        self._cache: Document | None = None
        self._cached_at = 0.0

    @classmethod
    def for_file(
        cls,
        path: str | Path,
        settings: StoreSettings | None = None,
        default: Callable[[], Document] | None = None,
    ) -> "AtomicStore":
        """Create a store over a JSON file using the configured lock settings."""
        settings = settings or StoreSettings()
        return cls(
            FileBackend(path, settings),
            default=default,
            cache_ttl=settings.cache_ttl_seconds,
        )

    @property
    def location(self) -> str:
        return self.backend.location

    def exists(self) -> bool:
        """Check whether a document has been stored yet."""
        try:
            return self.backend.read() is not None
        except StoreCorruptError:
            return True

    def load(self, fresh: bool = False) -> Document:
        """Load the document, serving it from cache within the TTL.

        Args:
            fresh: Bypass the cache

        Returns:
            A copy of the document (the default document if none is stored)

        Raises:
            StoreCorruptError: If the stored document cannot be decoded
        """
        now = self._clock()
        if not fresh and self._cache is not None and now - self._cached_at < self.cache_ttl:
            return copy.deepcopy(self._cache)

        document = self.backend.read()
        if document is None:
            document = self.default()

        self._cache = document
        self._cached_at = now
        return copy.deepcopy(document)

    def save(self, document: Document) -> StoreResult:
        """Replace the document under the writer lock."""
        try:
            with self.backend.lock():
                self.backend.write(document)
        except LockTimeoutError as e:
            return StoreResult(success=False, error=str(e), busy=True)
        except (StoreError, OSError, TypeError, ValueError) as e:
            logger.error("Failed to save %s: %s", self.location, e)
            return StoreResult(success=False, error=f"Failed to save {self.location}: {e}")

        self._cache = copy.deepcopy(document)
        self._cached_at = self._clock()
        return StoreResult(success=True, data=copy.deepcopy(document))

    def read_modify_write(self, update_fn: UpdateFn) -> StoreResult:
        """Apply update_fn to the freshest stored document and write it back.

        update_fn may mutate the document in place and return None, or return
        a replacement document. If it raises, nothing is written and the
        exception propagates to the caller.

        Args:
            update_fn: Transformation applied under the writer lock

        Returns:
            StoreResult with the written document, or busy/error details
        """
        try:
            with self.backend.lock():
                try:
                    current = self.backend.read()
                except StoreError as e:
                    logger.error("Read-modify-write of %s failed: %s", self.location, e)
                    return StoreResult(success=False, error=str(e))
                if current is None:
                    current = self.default()

                updated = update_fn(current)
                if updated is None:
                    updated = current

                try:
                    self.backend.write(updated)
                except (OSError, TypeError, ValueError) as e:
                    logger.error("Failed to write %s: %s", self.location, e)
                    return StoreResult(
                        success=False, error=f"Failed to write {self.location}: {e}"
                    )
        except LockTimeoutError as e:
            return StoreResult(success=False, error=str(e), busy=True)
        finally:
            self.invalidate_cache()

        return StoreResult(success=True, data=copy.deepcopy(updated))

    def invalidate_cache(self) -> None:
        """Drop the cached document so the next load reads storage."""
        self._cache = None
        self._cached_at = 0.0
