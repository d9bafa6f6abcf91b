"""Cleanup wizard for orphaned and stale session resources.

A scan produces findings, each with a suggested action. Nothing is acted
on unless the caller passes auto=True or confirms the finding.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path

from session_orchestrator.core.results import OperationResult
from session_orchestrator.sessions.lifecycle import SessionLifecycle
from session_orchestrator.utils import tmux
from session_orchestrator.utils.git import get_changed_paths

logger = logging.getLogger(__name__)


class FindingKind(str, Enum):
    """Problem classes detected by a cleanup scan."""

    ORPHANED_WORKTREE = "orphaned_worktree"
    MISSING_PATH = "missing_path"
    STALE_SESSION = "stale_session"
    UNCOMMITTED_CHANGES = "uncommitted_changes"
    UNREADABLE_WORKTREE = "unreadable_worktree"
    DEAD_TMUX_SESSION = "dead_tmux_session"


class CleanupAction(str, Enum):
    """Remedial action suggested for a finding."""

    REMOVE_WORKTREE = "remove_worktree"
    REMOVE_REGISTRY_ENTRY = "remove_registry_entry"
    DELETE_SESSION = "delete_session"
    KILL_TMUX_SESSION = "kill_tmux_session"
    NONE = "none"


@dataclass
class CleanupFinding:
    """One detected problem and how to fix it."""

    kind: FindingKind
    action: CleanupAction
    target: str
    detail: str
    session_id: str | None = None

    @property
    def actionable(self) -> bool:
        return self.action != CleanupAction.NONE


@dataclass
class AppliedAction:
    finding: CleanupFinding
    success: bool
    error: str | None = None


@dataclass
class CleanupReport(OperationResult):
    findings: list[CleanupFinding] = field(default_factory=list)
    applied: list[AppliedAction] = field(default_factory=list)
    skipped: list[CleanupFinding] = field(default_factory=list)


def _parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.astimezone()


class CleanupWizard:
    """Finds and removes orphaned worktrees, stale sessions and dead tmux sessions."""

    def __init__(
        self,
        lifecycle: SessionLifecycle,
        stale_days: int | None = None,
        tmux_prefixes: tuple[str, ...] | None = None,
    ):
        """Initialize the wizard.

        Args:
            lifecycle: Lifecycle manager of the repository
            stale_days: Inactivity threshold (defaults to configuration)
            tmux_prefixes: Only tmux sessions starting with one of these
                names are inspected (defaults to this project's and audit
                sessions)
        """
        self.lifecycle = lifecycle
        self.stale_days = (
            stale_days if stale_days is not None else lifecycle.config.sessions.stale_days
        )
        project = lifecycle.paths.project_name
        self.tmux_prefixes = tmux_prefixes or (f"{project}-", "audit-")

    def scan(self, now: datetime | None = None) -> list[CleanupFinding]:
        """Detect every problem class.

        Args:
            now: Reference time for staleness (defaults to now)

        Returns:
            Findings in detection order
        """
        now = now or datetime.now().astimezone()
        findings: list[CleanupFinding] = []
        findings.extend(self._scan_sessions(now))
        findings.extend(self._scan_orphaned_worktrees())
        findings.extend(self._scan_tmux())
        return findings

    def _scan_sessions(self, now: datetime) -> list[CleanupFinding]:
        findings: list[CleanupFinding] = []
        threshold = timedelta(days=self.stale_days)
        registry = self.lifecycle.registry.load(fresh=True)

        for session in sorted(registry.sessions.values(), key=lambda s: int(s.id)):
            if session.is_main:
                continue
            label = f"session {session.id}"
            if session.nickname:
                label += f" ({session.nickname})"

            if not Path(session.path).exists():
                findings.append(
                    CleanupFinding(
                        kind=FindingKind.MISSING_PATH,
                        action=CleanupAction.REMOVE_REGISTRY_ENTRY,
                        target=session.path,
                        detail=f"{label} points at a missing directory",
                        session_id=session.id,
                    )
                )
                continue

            changes = get_changed_paths(session.path)
            if changes is None:
                findings.append(
                    CleanupFinding(
                        kind=FindingKind.UNREADABLE_WORKTREE,
                        action=CleanupAction.NONE,
                        target=session.path,
                        detail=f"{label}: git status failed, left untouched",
                        session_id=session.id,
                    )
                )
                continue
            if changes:
                findings.append(
                    CleanupFinding(
                        kind=FindingKind.UNCOMMITTED_CHANGES,
                        action=CleanupAction.NONE,
                        target=session.path,
                        detail=f"{label} has {len(changes)} uncommitted change(s)",
                        session_id=session.id,
                    )
                )
                continue

            last_active = _parse_timestamp(session.last_active)
            if last_active is not None and now - last_active > threshold:
                days = (now - last_active).days
                findings.append(
                    CleanupFinding(
                        kind=FindingKind.STALE_SESSION,
                        action=CleanupAction.DELETE_SESSION,
                        target=session.path,
                        detail=f"{label} inactive for {days} days with a clean tree",
                        session_id=session.id,
                    )
                )
        return findings

    def _scan_orphaned_worktrees(self) -> list[CleanupFinding]:
        registry = self.lifecycle.registry.load(fresh=True)
        registered = {Path(s.path).resolve() for s in registry.sessions.values()}

        findings: list[CleanupFinding] = []
        for wt in self.lifecycle.worktrees.list_worktrees():
            if wt.is_main or wt.path in registered:
                continue
            findings.append(
                CleanupFinding(
                    kind=FindingKind.ORPHANED_WORKTREE,
                    action=CleanupAction.REMOVE_WORKTREE,
                    target=str(wt.path),
                    detail=f"worktree on {wt.branch or 'detached HEAD'} is not registered",
                )
            )
        return findings

    def _scan_tmux(self) -> list[CleanupFinding]:
        findings: list[CleanupFinding] = []
        for session in tmux.list_sessions():
            if not session.name.startswith(self.tmux_prefixes):
                continue
            if session.live_panes == 0:
                findings.append(
                    CleanupFinding(
                        kind=FindingKind.DEAD_TMUX_SESSION,
                        action=CleanupAction.KILL_TMUX_SESSION,
                        target=session.name,
                        detail=f"tmux session {session.name} has no live panes",
                    )
                )
        return findings

    def apply(
        self,
        findings: list[CleanupFinding],
        auto: bool = False,
        confirm: Callable[[CleanupFinding], bool] | None = None,
    ) -> CleanupReport:
        """Act on findings that are auto-approved or confirmed.

        Args:
            findings: Findings from scan()
            auto: Act on every actionable finding without asking
            confirm: Asked once per actionable finding when not auto

        Returns:
            CleanupReport of applied and skipped findings
        """
        report = CleanupReport(findings=list(findings))
        for finding in findings:
            if not finding.actionable:
                report.skipped.append(finding)
                continue
            approved = auto or (confirm is not None and confirm(finding))
            if not approved:
                report.skipped.append(finding)
                continue
            report.applied.append(self._apply_one(finding))
        report.success = all(a.success for a in report.applied)
        return report

    def run(
        self,
        auto: bool = False,
        confirm: Callable[[CleanupFinding], bool] | None = None,
    ) -> CleanupReport:
        """Scan, then apply."""
        return self.apply(self.scan(), auto=auto, confirm=confirm)

    def _apply_one(self, finding: CleanupFinding) -> AppliedAction:
        if finding.action == CleanupAction.REMOVE_WORKTREE:
            # No --force: a dirty orphan stays untouched.
            result = self.lifecycle.worktrees.remove_worktree(Path(finding.target))
            if result.returncode != 0:
                return AppliedAction(finding, False, result.stderr.strip())
            return AppliedAction(finding, True)

        if finding.action == CleanupAction.REMOVE_REGISTRY_ENTRY:
            self.lifecycle.registry.remove_entry(finding.session_id)
            self.lifecycle.worktrees.prune()
            return AppliedAction(finding, True)

        if finding.action == CleanupAction.DELETE_SESSION:
            changes = get_changed_paths(finding.target)
            if changes is None:
                return AppliedAction(finding, False, "could not read git status")
            if changes:
                return AppliedAction(finding, False, "working tree is no longer clean")
            result = self.lifecycle.registry.delete(finding.session_id, delete_worktree=True)
            return AppliedAction(finding, result.success, result.error or result.worktree_error)

        if finding.action == CleanupAction.KILL_TMUX_SESSION:
            result = tmux.kill_session(finding.target)
            return AppliedAction(finding, result.returncode == 0, result.stderr.strip() or None)

        return AppliedAction(finding, False, f"Unsupported action {finding.action.value}")
