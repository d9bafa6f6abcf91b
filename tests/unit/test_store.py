"""Tests for the atomic read-modify-write store."""

import json
import multiprocessing
import os
import subprocess
import threading
import time
from pathlib import Path

import pytest

from session_orchestrator.core import store as store_module
from session_orchestrator.core.errors import LockTimeoutError, StoreCorruptError
from session_orchestrator.core.store import (
    AtomicStore,
    FileBackend,
    FileLock,
    MemoryBackend,
    StoreBackend,
)
from session_orchestrator.schemas.config import StoreSettings


def dead_pid() -> int:
    """PID of a process that has already exited and been reaped."""
    proc = subprocess.Popen(["true"])
    proc.wait()
    return proc.pid


def increment(doc: dict) -> None:
    doc["count"] += 1


def increment_in_process(path: str, times: int) -> None:
    """Worker run in a child process; a failed write makes the exit code non-zero."""
    store = AtomicStore.for_file(path)
    for _ in range(times):
        assert store.read_modify_write(increment).success


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class TestFileLock:
    """Tests for the PID lock file."""

    def test_acquire_writes_pid_and_release_removes(self, tmp_path: Path) -> None:
        """The lock file holds our PID while held and is gone afterwards."""
        lock_path = tmp_path / "doc.json.lock"
        with FileLock(lock_path) as lock:
            assert lock.held
            assert lock_path.read_text() == str(os.getpid())
        assert not lock_path.exists()

    def test_live_owner_times_out(self, tmp_path: Path) -> None:
        """A lock held by a live process is never reclaimed."""
        lock_path = tmp_path / "doc.json.lock"
        lock_path.write_text(str(os.getpid()))

        lock = FileLock(lock_path, timeout_ms=100, retry_ms=10, backoff_max_ms=20)
        with pytest.raises(LockTimeoutError):
            lock.acquire()
        assert lock_path.read_text() == str(os.getpid())

    def test_dead_owner_is_reclaimed(self, tmp_path: Path) -> None:
        """A lock whose PID no longer exists is taken over."""
        lock_path = tmp_path / "doc.json.lock"
        lock_path.write_text(str(dead_pid()))

        with FileLock(lock_path, timeout_ms=200):
            assert lock_path.read_text() == str(os.getpid())

    def test_corrupt_lock_reclaimed_after_grace(self, tmp_path: Path) -> None:
        """Unparseable lock content is removed once older than the grace period."""
        lock_path = tmp_path / "doc.json.lock"
        lock_path.write_text("not-a-pid")
        old = time.time() - 10
        os.utime(lock_path, (old, old))

        with FileLock(lock_path, timeout_ms=200):
            assert lock_path.read_text() == str(os.getpid())

    def test_reclaimers_racing_on_same_stale_lock(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """A lock another reclaimer took over between our look and our removal survives.

        Both lockers see the same dead PID; the first takes the lock while the
        second is still deciding, and the second must then wait instead of
        deleting the new owner's file.
        """
        lock_path = tmp_path / "doc.json.lock"
        stale = dead_pid()
        lock_path.write_text(str(stale))
        first = FileLock(lock_path, timeout_ms=200)
        second = FileLock(lock_path, timeout_ms=100, retry_ms=10, backoff_max_ms=20)
        real_is_pid_alive = store_module.is_pid_alive
        interleaved = []

        def is_pid_alive(pid: int) -> bool:
            if pid == stale and not interleaved:
                interleaved.append(pid)
                first.acquire()
                return False
            return real_is_pid_alive(pid)

        monkeypatch.setattr(store_module, "is_pid_alive", is_pid_alive)

        with pytest.raises(LockTimeoutError):
            second.acquire()

        assert interleaved == [stale]
        assert first.held
        assert not second.held
        assert lock_path.read_text() == str(os.getpid())
        first.release()
        assert not lock_path.exists()


    def test_release_without_acquire_is_noop(self, tmp_path: Path) -> None:
        """Releasing an unheld lock leaves other owners' files alone."""
        lock_path = tmp_path / "doc.json.lock"
        lock_path.write_text("12345")
        FileLock(lock_path).release()
        assert lock_path.exists()


class TestAtomicStore:
    """Tests for AtomicStore over files."""

    def test_round_trip(self, tmp_path: Path) -> None:
        """A saved document reloads deep-equal with the cache bypassed."""
        store = AtomicStore.for_file(tmp_path / "doc.json")
        document = {"a": 1, "nested": {"list": [1, 2, {"b": None}]}}

        assert store.save(document).success
        assert store.load(fresh=True) == document

    def test_missing_document_uses_default(self, tmp_path: Path) -> None:
        """Loading before any write returns the default document."""
        store = AtomicStore.for_file(tmp_path / "doc.json", default=lambda: {"items": []})
        assert store.load() == {"items": []}
        assert not store.exists()

    def test_write_is_atomic_rename(self, tmp_path: Path) -> None:
        """No temporary files are left next to the document."""
        path = tmp_path / "doc.json"
        store = AtomicStore.for_file(path)
        store.save({"x": 1})
        store.read_modify_write(lambda doc: doc.update(x=2))

        assert sorted(p.name for p in tmp_path.iterdir()) == ["doc.json"]
        assert json.loads(path.read_text()) == {"x": 2}

    def test_cache_served_within_ttl(self, tmp_path: Path) -> None:
        """Within the TTL a load is served from memory."""
        path = tmp_path / "doc.json"
        clock = FakeClock()
        store = AtomicStore(FileBackend(path), cache_ttl=10.0, clock=clock)
        store.save({"v": 1})

        path.write_text(json.dumps({"v": 2}))
        clock.now = 5.0
        assert store.load() == {"v": 1}

        clock.now = 11.0
        assert store.load() == {"v": 2}

    def test_fresh_and_invalidate_bypass_cache(self, tmp_path: Path) -> None:
        """fresh=True and invalidate_cache() both force a storage read."""
        path = tmp_path / "doc.json"
        store = AtomicStore(FileBackend(path), clock=FakeClock())
        store.save({"v": 1})

        path.write_text(json.dumps({"v": 2}))
        assert store.load(fresh=True) == {"v": 2}

        path.write_text(json.dumps({"v": 3}))
        store.invalidate_cache()
        assert store.load() == {"v": 3}

    def test_loaded_document_is_a_copy(self, tmp_path: Path) -> None:
        """Mutating a loaded document does not touch the cache."""
        store = AtomicStore.for_file(tmp_path / "doc.json")
        store.save({"items": [1]})

        loaded = store.load()
        loaded["items"].append(2)
        assert store.load() == {"items": [1]}

    def test_rmw_returning_replacement(self, tmp_path: Path) -> None:
        """update_fn may return a new document instead of mutating."""
        store = AtomicStore.for_file(tmp_path / "doc.json")
        store.save({"old": True})

        result = store.read_modify_write(lambda doc: {"new": True})
        assert result.success
        assert result.data == {"new": True}
        assert store.load(fresh=True) == {"new": True}

    def test_update_fn_error_leaves_document(self, tmp_path: Path) -> None:
        """An exception in update_fn propagates and nothing is written."""
        store = AtomicStore.for_file(tmp_path / "doc.json")
        store.save({"count": 1})

        def explode(doc: dict) -> None:
            doc["count"] = 99
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            store.read_modify_write(explode)
        assert store.load(fresh=True) == {"count": 1}
        assert not (tmp_path / "doc.json.lock").exists()

    def test_busy_when_lock_held_by_live_process(self, tmp_path: Path) -> None:
        """Lock timeout is reported as a busy result, not an exception."""
        path = tmp_path / "doc.json"
        settings = StoreSettings(lock_timeout_ms=100, lock_retry_ms=10, lock_backoff_max_ms=20)
        store = AtomicStore.for_file(path, settings)
        store.save({"v": 1})
        (tmp_path / "doc.json.lock").write_text(str(os.getpid()))

        result = store.read_modify_write(lambda doc: doc.update(v=2))
        assert not result.success
        assert result.busy
        assert json.loads(path.read_text()) == {"v": 1}

    def test_stale_lock_from_dead_process_is_reclaimed(self, tmp_path: Path) -> None:
        """A crashed writer's lock does not block the next writer."""
        path = tmp_path / "doc.json"
        store = AtomicStore.for_file(path)
        (tmp_path / "doc.json.lock").write_text(str(dead_pid()))

        result = store.read_modify_write(lambda doc: doc.update(v=1))
        assert result.success
        assert store.load(fresh=True) == {"v": 1}

    def test_corrupt_document(self, tmp_path: Path) -> None:
        """Corrupt JSON raises on load and fails read-modify-write cleanly."""
        path = tmp_path / "doc.json"
        path.write_text("{not json")
        store = AtomicStore.for_file(path)

        with pytest.raises(StoreCorruptError):
            store.load()
        assert store.exists()

        result = store.read_modify_write(lambda doc: doc.update(v=1))
        assert not result.success
        assert not result.busy
        assert path.read_text() == "{not json"

    def test_concurrent_increments_are_not_lost(self, tmp_path: Path) -> None:
        """Parallel read-modify-writes serialize on the lock file."""
        path = tmp_path / "doc.json"
        AtomicStore.for_file(path).save({"count": 0})

        threads = [
            threading.Thread(target=increment_in_process, args=(str(path), 10))
            for _ in range(4)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert AtomicStore.for_file(path).load(fresh=True) == {"count": 40}

    def test_increments_from_separate_processes_are_not_lost(self, tmp_path: Path) -> None:
        """Writers in different processes serialize on the same lock file."""
        path = tmp_path / "doc.json"
        AtomicStore.for_file(path).save({"count": 0})
        context = multiprocessing.get_context("fork")

        workers = [
            context.Process(target=increment_in_process, args=(str(path), 25))
            for _ in range(4)
        ]
        for p in workers:
            p.start()
        for p in workers:
            p.join(timeout=60)

        assert [p.exitcode for p in workers] == [0, 0, 0, 0]
        assert AtomicStore.for_file(path).load(fresh=True) == {"count": 100}
        assert not (tmp_path / "doc.json.lock").exists()


class TestMemoryBackend:
    """Tests for the in-memory backend."""

    def test_satisfies_backend_protocol(self) -> None:
        """MemoryBackend and FileBackend are interchangeable."""
        assert isinstance(MemoryBackend(), StoreBackend)
        assert isinstance(FileBackend("x.json"), StoreBackend)

    def test_value_semantics(self) -> None:
        """Documents are copied in and out of the backend."""
        original = {"items": [1]}
        backend = MemoryBackend(original)
        original["items"].append(2)

        store = AtomicStore(backend)
        assert store.load() == {"items": [1]}

        store.read_modify_write(lambda doc: doc["items"].append(3))
        assert backend.read() == {"items": [1, 3]}
        assert backend.writes == 1

    def test_update_fn_error_does_not_write(self) -> None:
        """A failing update leaves the write counter untouched."""
        backend = MemoryBackend({"v": 1})
        store = AtomicStore(backend)

        with pytest.raises(KeyError):
            store.read_modify_write(lambda doc: doc["missing"])
        assert backend.writes == 0
