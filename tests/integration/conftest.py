"""Fixtures for tests that drive a real git repository."""

import subprocess
from pathlib import Path

import pytest

from session_orchestrator.core.paths import ProjectPaths
from session_orchestrator.sessions.lifecycle import SessionLifecycle


def git(repo: Path, *args: str) -> str:
    """Run a git command in repo and return its stdout."""
    result = subprocess.run(
        ["git", *args], cwd=repo, capture_output=True, text=True, check=True
    )
    return result.stdout


def commit_file(repo: Path, name: str, content: str, message: str | None = None) -> None:
    """Write a file and commit it."""
    (repo / name).write_text(content)
    git(repo, "add", name)
    git(repo, "commit", "-m", message or f"Update {name}")


@pytest.fixture
def git_repo(tmp_path: Path) -> Path:
    """Create a temporary git repository for testing."""
    repo_path = tmp_path / "test_repo"
    repo_path.mkdir()

    git(repo_path, "init")
    git(repo_path, "config", "user.email", "test@test.com")
    git(repo_path, "config", "user.name", "Test User")

    (repo_path / "README.md").write_text("# Test Repo")
    git(repo_path, "add", "README.md")
    git(repo_path, "commit", "-m", "Initial commit")

    # Create main branch if not exists
    subprocess.run(["git", "branch", "-M", "main"], cwd=repo_path, capture_output=True)

    return repo_path.resolve()


@pytest.fixture
def paths(git_repo: Path) -> ProjectPaths:
    return ProjectPaths(main_root=git_repo, worktree_root=git_repo)


@pytest.fixture
def lifecycle(paths: ProjectPaths) -> SessionLifecycle:
    return SessionLifecycle(paths)


@pytest.fixture
def commit():
    """Commit a file in a repository or worktree."""
    return commit_file


@pytest.fixture
def run_git():
    """Run a git command in a repository or worktree."""
    return git
