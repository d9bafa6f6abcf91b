"""Session lock files used for liveness detection.

A lock file is plain text with two lines, `pid=<integer>` and
`started=<unix-epoch-seconds>`. It marks which process currently drives a
session; it never guards the registry itself.
"""

from __future__ import annotations

import logging
import os
import secrets
import time
from dataclasses import dataclass
from pathlib import Path

import psutil

logger = logging.getLogger(__name__)


@dataclass
class SessionLock:
    """Parsed contents of a session lock file."""

    pid: int
    started: int

    def render(self) -> str:
        return f"pid={self.pid}\nstarted={self.started}\n"


def is_pid_alive(pid: int) -> bool:
    """Check whether a process with this PID is running.

    Zombies count as dead. A process we may not inspect still exists, so
    AccessDenied counts as alive.
    """
    if pid <= 0:
        return False
    try:
        process = psutil.Process(pid)
        return process.is_running() and process.status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False
    except psutil.AccessDenied:
        return True


def parse_lock(text: str) -> SessionLock | None:
    """Parse `key=value` lock file content.

    Returns:
        SessionLock, or None if the pid line is missing or not an integer
    """
    values: dict[str, str] = {}
    for line in text.splitlines():
        key, sep, value = line.partition("=")
        if sep:
            values[key.strip()] = value.strip()

    try:
        pid = int(values["pid"])
    except (KeyError, ValueError):
        return None

    try:
        started = int(values.get("started", "0"))
    except ValueError:
        started = 0
    return SessionLock(pid=pid, started=started)


def read_lock(path: str | Path) -> SessionLock | None:
    """Read a session lock file, or None if absent or unreadable."""
    try:
        return parse_lock(Path(path).read_text())
    except FileNotFoundError:
        return None
    except OSError as e:
        logger.warning("Could not read lock file %s: %s", path, e)
        return None


def write_lock(
    path: str | Path,
    pid: int | None = None,
    started: int | None = None,
) -> SessionLock:
    """Write a session lock file for pid (defaults to this process).

    Args:
        path: Lock file path
        pid: Owning process ID
        started: Start time in epoch seconds (defaults to now)

    Returns:
        The SessionLock that was written
    """
    path = Path(path)
    lock = SessionLock(
        pid=pid if pid is not None else os.getpid(),
        started=started if started is not None else int(time.time()),
    )
    path.parent.mkdir(parents=True, exist_ok=True)

    tmp_path = path.with_name(f"{path.name}.tmp.{secrets.token_hex(6)}")
    try:
        tmp_path.write_text(lock.render())
        os.replace(tmp_path, path)
    except OSError:
        tmp_path.unlink(missing_ok=True)
        raise
    return lock


def remove_lock(path: str | Path) -> bool:
    """Remove a session lock file.

    Returns:
        True if a file was removed
    """
    try:
        Path(path).unlink()
        return True
    except FileNotFoundError:
        return False


def is_session_active(path: str | Path) -> bool:
    """A session is active when its lock file names a live process."""
    lock = read_lock(path)
    return lock is not None and is_pid_alive(lock.pid)
