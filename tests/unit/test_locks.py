"""Tests for session lock files."""

import os
import subprocess
from pathlib import Path

from session_orchestrator.core.locks import (
    SessionLock,
    is_pid_alive,
    is_session_active,
    parse_lock,
    read_lock,
    remove_lock,
    write_lock,
)


def dead_pid() -> int:
    proc = subprocess.Popen(["true"])
    proc.wait()
    return proc.pid


class TestParseLock:
    """Tests for lock file parsing."""

    def test_parse_valid(self) -> None:
        """Both lines are parsed."""
        assert parse_lock("pid=123\nstarted=1700000000\n") == SessionLock(123, 1700000000)

    def test_missing_started_defaults_to_zero(self) -> None:
        """A lock without a start time is still usable."""
        assert parse_lock("pid=42") == SessionLock(42, 0)

    def test_invalid_pid(self) -> None:
        """Locks without an integer pid are rejected."""
        assert parse_lock("pid=abc\nstarted=1") is None
        assert parse_lock("started=1") is None
        assert parse_lock("") is None

    def test_render_round_trip(self) -> None:
        """Rendered content parses back to the same lock."""
        lock = SessionLock(pid=7, started=99)
        assert parse_lock(lock.render()) == lock


class TestLockFiles:
    """Tests for reading and writing lock files."""

    def test_write_and_read(self, tmp_path: Path) -> None:
        """write_lock defaults to this process."""
        path = tmp_path / "sessions" / "1.lock"
        written = write_lock(path)

        assert written.pid == os.getpid()
        assert read_lock(path) == written
        assert path.read_text().startswith(f"pid={os.getpid()}\n")

    def test_read_missing(self, tmp_path: Path) -> None:
        """A missing lock reads as None."""
        assert read_lock(tmp_path / "none.lock") is None

    def test_remove(self, tmp_path: Path) -> None:
        """remove_lock reports whether a file was removed."""
        path = tmp_path / "1.lock"
        write_lock(path)
        assert remove_lock(path)
        assert not remove_lock(path)

    def test_session_activity_follows_pid(self, tmp_path: Path) -> None:
        """A session is active only while its lock names a live process."""
        live = tmp_path / "1.lock"
        dead = tmp_path / "2.lock"
        write_lock(live, pid=os.getpid())
        write_lock(dead, pid=dead_pid())

        assert is_session_active(live)
        assert not is_session_active(dead)
        assert not is_session_active(tmp_path / "3.lock")


class TestPidLiveness:
    """Tests for PID liveness checks."""

    def test_own_pid_is_alive(self) -> None:
        assert is_pid_alive(os.getpid())

    def test_exited_pid_is_dead(self) -> None:
        assert not is_pid_alive(dead_pid())

    def test_non_positive_pid_is_dead(self) -> None:
        assert not is_pid_alive(0)
        assert not is_pid_alive(-1)
