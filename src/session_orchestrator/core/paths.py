"""Locations of the shared state documents."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from session_orchestrator.schemas.config import ProjectConfig
from session_orchestrator.utils.git import get_main_repo_root, get_repo_root


@dataclass
class ProjectPaths:
    """Resolved paths for one repository and one worktree inside it.

    Shared documents (registry, locks, merge log, event bus, waves) live in
    the main repository's state directory. The session-state document is
    per worktree.
    """

    main_root: Path
    worktree_root: Path
    state_dir_name: str = ".orchestrator"
    templates_dir_name: str = "teams"

    @classmethod
    def discover(
        cls,
        cwd: str | Path | None = None,
        config: ProjectConfig | None = None,
    ) -> "ProjectPaths":
        """Resolve paths from a working directory.

        Args:
            cwd: Directory inside the repository (defaults to cwd)
            config: Project configuration (loaded from the main root if omitted)

        Returns:
            ProjectPaths for the repository containing cwd
        """
        start = Path(cwd or Path.cwd()).resolve()
        worktree_root = get_repo_root(start) or start
        main_root = get_main_repo_root(start) or worktree_root
        config = config or ProjectConfig.for_root(main_root)
        return cls(
            main_root=main_root,
            worktree_root=worktree_root,
            state_dir_name=config.sessions.state_dir,
            templates_dir_name=config.teams.templates_dir,
        )

    @property
    def project_name(self) -> str:
        return self.main_root.name

    @property
    def state_dir(self) -> Path:
        return self.main_root / self.state_dir_name

    @property
    def sessions_dir(self) -> Path:
        return self.state_dir / "sessions"

    @property
    def registry_path(self) -> Path:
        return self.sessions_dir / "registry.json"

    @property
    def merge_log_path(self) -> Path:
        return self.sessions_dir / "merge-log.json"

    @property
    def last_merge_path(self) -> Path:
        return self.sessions_dir / "last-merge.json"

    @property
    def session_state_path(self) -> Path:
        return self.worktree_root / self.state_dir_name / "session-state.json"

    @property
    def bus_path(self) -> Path:
        return self.state_dir / "bus" / "log.jsonl"

    @property
    def teams_dir(self) -> Path:
        return self.state_dir / self.templates_dir_name

    @property
    def waves_dir(self) -> Path:
        return self.state_dir / "waves"

    def lock_path(self, session_id: str) -> Path:
        """Path of a session's liveness lock file."""
        return self.sessions_dir / f"{session_id}.lock"
