"""tmux session management for agent and analyzer workers."""

from __future__ import annotations

import shlex
from dataclasses import dataclass
from pathlib import Path

from session_orchestrator.utils.git import CommandResult, run_command


@dataclass
class TmuxSession:
    """Information about a tmux session."""

    name: str
    windows: int = 1
    attached: bool = False
    live_panes: int = 0


def is_tmux_available() -> bool:
    """Check if tmux is available on the system.

    Returns:
        True if tmux is installed and accessible
    """
    result = run_command("which tmux")
    return result.returncode == 0


def create_session(
    session_name: str,
    working_dir: str | Path | None = None,
    command: str | None = None,
    window_name: str | None = None,
) -> CommandResult:
    """Create a new detached tmux session.

    Args:
        session_name: Name for the session
        working_dir: Working directory for the session
        command: Initial command to run (optional)
        window_name: Name of the first window (optional)

    Returns:
        CommandResult from tmux new-session
    """
    cmd_parts = ["tmux", "new-session", "-d", "-s", shlex.quote(session_name)]

    if window_name:
        cmd_parts.extend(["-n", shlex.quote(window_name)])

    if working_dir:
        cmd_parts.extend(["-c", shlex.quote(str(working_dir))])

    if command:
        cmd_parts.append(shlex.quote(command))

    return run_command(" ".join(cmd_parts))


def new_window(
    session_name: str,
    window_name: str,
    working_dir: str | Path | None = None,
    command: str | None = None,
) -> CommandResult:
    """Add a window to an existing tmux session.

    Args:
        session_name: Target session
        window_name: Name for the window
        working_dir: Working directory for the window
        command: Command to run in the window (optional)

    Returns:
        CommandResult from tmux new-window
    """
    cmd_parts = [
        "tmux", "new-window", "-t", shlex.quote(session_name), "-n", shlex.quote(window_name)
    ]

    if working_dir:
        cmd_parts.extend(["-c", shlex.quote(str(working_dir))])

    if command:
        cmd_parts.append(shlex.quote(command))

    return run_command(" ".join(cmd_parts))


def kill_session(session_name: str) -> CommandResult:
    """Kill a tmux session.

    Args:
        session_name: Name of session to kill

    Returns:
        CommandResult from tmux kill-session
    """
    return run_command(f"tmux kill-session -t {shlex.quote(session_name)}")


def session_exists(session_name: str) -> bool:
    """Check if a tmux session exists.

    Args:
        session_name: Name of session to check

    Returns:
        True if session exists
    """
    result = run_command(f"tmux has-session -t {shlex.quote(session_name)} 2>/dev/null")
    return result.returncode == 0


def count_live_panes() -> dict[str, int]:
    """Count panes whose process is still running, per session.

    Returns:
        Map of session name to live pane count (sessions with only dead
        panes map to 0)
    """
    result = run_command('tmux list-panes -a -F "#{session_name}\t#{pane_dead}"')
    if result.returncode != 0:
        return {}

    counts: dict[str, int] = {}
    for line in result.stdout.strip().split("\n"):
        name, sep, dead = line.rpartition("\t")
        if not sep:
            continue
        counts.setdefault(name, 0)
        if dead.strip() != "1":
            counts[name] += 1
    return counts


def list_sessions() -> list[TmuxSession]:
    """List all tmux sessions.

    Returns:
        List of TmuxSession objects
    """
    result = run_command(
        'tmux list-sessions -F "#{session_name}\t#{session_windows}\t#{session_attached}"'
    )

    if result.returncode != 0:
        return []

    live = count_live_panes()
    sessions: list[TmuxSession] = []
    for line in result.stdout.strip().split("\n"):
        if not line:
            continue
        parts = line.split("\t")
        if len(parts) >= 3:
            sessions.append(
                TmuxSession(
                    name=parts[0],
                    windows=int(parts[1]) if parts[1].isdigit() else 1,
                    attached=parts[2] not in ("", "0"),
                    live_panes=live.get(parts[0], 0),
                )
            )

    return sessions


def send_keys(target: str, keys: str, enter: bool = True) -> CommandResult:
    """Send keys to a tmux session or window.

    Args:
        target: Target session or `session:window`
        keys: Keys/command to send
        enter: Whether to send Enter key after

    Returns:
        CommandResult from tmux send-keys
    """
    cmd = f"tmux send-keys -t {shlex.quote(target)} {shlex.quote(keys)}"

    if enter:
        cmd += " Enter"

    return run_command(cmd)
