"""Integration tests for the cleanup wizard.

These tests require git to be installed and available.
"""

import shutil
from pathlib import Path

import pytest

from session_orchestrator.sessions.cleanup import (
    CleanupAction,
    CleanupFinding,
    CleanupWizard,
    FindingKind,
)
from session_orchestrator.sessions.lifecycle import SessionLifecycle


@pytest.fixture
def wizard(lifecycle: SessionLifecycle) -> CleanupWizard:
    return CleanupWizard(lifecycle, tmux_prefixes=("cleanup-test-none-",))


def kinds(wizard: CleanupWizard) -> list[FindingKind]:
    return [f.kind for f in wizard.scan()]


def make_unreadable(worktree: str) -> None:
    """Drop the worktree's .git file so git status fails inside it."""
    (Path(worktree) / ".git").unlink()


class TestScan:
    """Tests for problem detection."""

    def test_healthy_repository(
        self, lifecycle: SessionLifecycle, wizard: CleanupWizard
    ) -> None:
        lifecycle.create_session(nickname="auth")
        assert wizard.scan() == []

    def test_missing_path(self, lifecycle: SessionLifecycle, wizard: CleanupWizard) -> None:
        created = lifecycle.create_session(nickname="auth")
        shutil.rmtree(created.path)

        [finding] = wizard.scan()

        assert finding.kind == FindingKind.MISSING_PATH
        assert finding.action == CleanupAction.REMOVE_REGISTRY_ENTRY
        assert finding.session_id == created.session_id

    def test_orphaned_worktree(
        self, lifecycle: SessionLifecycle, wizard: CleanupWizard, git_repo: Path
    ) -> None:
        """A worktree git knows about but the registry does not is an orphan."""
        orphan = git_repo.parent / "stray"
        lifecycle.worktrees.create_worktree(orphan, "stray")

        [finding] = wizard.scan()

        assert finding.kind == FindingKind.ORPHANED_WORKTREE
        assert finding.target == str(orphan)

    def test_uncommitted_changes_are_informational(
        self, lifecycle: SessionLifecycle, wizard: CleanupWizard
    ) -> None:
        created = lifecycle.create_session(nickname="auth")
        (Path(created.path) / "wip.txt").write_text("draft")

        [finding] = wizard.scan()

        assert finding.kind == FindingKind.UNCOMMITTED_CHANGES
        assert not finding.actionable

    def test_stale_session(self, lifecycle: SessionLifecycle, wizard: CleanupWizard) -> None:
        created = lifecycle.create_session(nickname="auth")
        lifecycle.registry.update_session(
            created.session_id, last_active="2000-01-01T00:00:00+00:00"
        )

        assert kinds(wizard) == [FindingKind.STALE_SESSION]

    def test_unreadable_worktree_is_never_stale(
        self, lifecycle: SessionLifecycle, wizard: CleanupWizard
    ) -> None:
        """A tree git cannot read is reported but not offered for deletion."""
        created = lifecycle.create_session(nickname="auth")
        lifecycle.registry.update_session(
            created.session_id, last_active="2000-01-01T00:00:00+00:00"
        )
        make_unreadable(created.path)

        [finding] = wizard.scan()

        assert finding.kind == FindingKind.UNREADABLE_WORKTREE
        assert not finding.actionable

        report = wizard.run(auto=True)

        assert report.applied == []
        assert Path(created.path).exists()
        assert lifecycle.registry.find("auth") is not None

    def test_stale_threshold(self, lifecycle: SessionLifecycle) -> None:
        created = lifecycle.create_session(nickname="auth")
        lifecycle.registry.update_session(
            created.session_id, last_active="2000-01-01T00:00:00+00:00"
        )
        wizard = CleanupWizard(
            lifecycle, stale_days=100000, tmux_prefixes=("cleanup-test-none-",)
        )

        assert wizard.scan() == []


class TestApply:
    """Tests for acting on findings."""

    def test_nothing_applied_without_approval(
        self, lifecycle: SessionLifecycle, wizard: CleanupWizard
    ) -> None:
        created = lifecycle.create_session(nickname="auth")
        shutil.rmtree(created.path)

        report = wizard.run(confirm=lambda finding: False)

        assert report.applied == []
        assert len(report.skipped) == 1
        assert lifecycle.registry.find("auth") is not None

    def test_missing_path_entry_removed(
        self, lifecycle: SessionLifecycle, wizard: CleanupWizard
    ) -> None:
        created = lifecycle.create_session(nickname="auth")
        shutil.rmtree(created.path)

        report = wizard.run(auto=True)

        assert report.success
        assert len(report.applied) == 1
        assert lifecycle.registry.find("auth") is None
        assert lifecycle.worktrees.get_worktree(Path(created.path)) is None

    def test_orphan_removed_when_confirmed(
        self, lifecycle: SessionLifecycle, wizard: CleanupWizard, git_repo: Path
    ) -> None:
        orphan = git_repo.parent / "stray"
        lifecycle.worktrees.create_worktree(orphan, "stray")
        asked: list[str] = []

        def confirm(finding) -> bool:
            asked.append(finding.target)
            return True

        report = wizard.run(confirm=confirm)

        assert asked == [str(orphan)]
        assert report.success
        assert not orphan.exists()

    def test_stale_session_deleted_with_worktree(
        self, lifecycle: SessionLifecycle, wizard: CleanupWizard
    ) -> None:
        created = lifecycle.create_session(nickname="auth")
        lifecycle.registry.update_session(
            created.session_id, last_active="2000-01-01T00:00:00+00:00"
        )

        report = wizard.run(auto=True)

        assert report.success
        assert not Path(created.path).exists()
        assert lifecycle.registry.find("auth") is None

    def test_delete_refused_when_status_unreadable(
        self, lifecycle: SessionLifecycle, wizard: CleanupWizard
    ) -> None:
        """A stale finding is not acted on once git can no longer read the tree."""
        created = lifecycle.create_session(nickname="auth")
        finding = CleanupFinding(
            kind=FindingKind.STALE_SESSION,
            action=CleanupAction.DELETE_SESSION,
            target=created.path,
            detail="inactive",
            session_id=created.session_id,
        )
        make_unreadable(created.path)

        report = wizard.apply([finding], auto=True)

        assert not report.success
        [applied] = report.applied
        assert applied.error == "could not read git status"
        assert (Path(created.path) / "README.md").exists()
        assert lifecycle.registry.find("auth") is not None
