"""Pydantic models for .session-orchestrator.yaml configuration."""

from __future__ import annotations

from pathlib import Path

import yaml
from pydantic import BaseModel, Field

CONFIG_FILENAME = ".session-orchestrator.yaml"


class SessionSettings(BaseModel):
    """Session lifecycle settings."""

    state_dir: str = Field(
        default=".orchestrator", description="Directory holding shared state documents"
    )
    shared_dirs: list[str] = Field(
        default_factory=lambda: ["docs"],
        description="Directories linked into every new worktree",
    )
    env_files: list[str] = Field(
        default_factory=lambda: [
            ".env",
            ".env.local",
            ".env.development",
            ".env.test",
            ".env.production",
        ]
    )
    config_dirs: list[str] = Field(default_factory=lambda: [".claude"])
    stale_days: int = Field(default=7, description="Inactivity threshold for cleanup")
    worktree_timeout_seconds: int = Field(default=120)
    agent_command: str = Field(default="claude")
    target_branch: str | None = Field(
        default=None, description="Integration branch (auto-detected when unset)"
    )
    merge_strategy: str = Field(default="squash")
    merge_log_limit: int = Field(default=50)
    status_file: str = Field(default="docs/status.json")
    conventions_file: str = Field(default="CLAUDE.md")


class StoreSettings(BaseModel):
    """Atomic store lock and cache settings."""

    lock_timeout_ms: int = Field(default=5000)
    lock_retry_ms: int = Field(default=50)
    lock_backoff_max_ms: int = Field(default=400)
    cache_ttl_seconds: float = Field(default=10.0)


class TeamSettings(BaseModel):
    """Team coordinator settings."""

    templates_dir: str = Field(default="teams", description="Relative to state_dir")
    native_enabled: bool = Field(default=False)


class WaveSettings(BaseModel):
    """Wave orchestrator admission-control settings."""

    stagger_seconds: float = Field(default=3.0)
    max_concurrent: int = Field(default=0, description="0 means unbounded")
    poll_interval_seconds: float = Field(default=3.0)
    timeout_minutes: float = Field(default=30.0)
    max_analyzers: int = Field(default=20)
    max_trace_age_minutes: int = Field(default=60)
    model: str | None = Field(default=None)


class LoggingSettings(BaseModel):
    """Logging settings."""

    level: str = Field(default="WARNING")
    file: str | None = Field(default=None)


class ProjectConfig(BaseModel):
    """Complete configuration for .session-orchestrator.yaml."""

    sessions: SessionSettings = Field(default_factory=SessionSettings)
    store: StoreSettings = Field(default_factory=StoreSettings)
    teams: TeamSettings = Field(default_factory=TeamSettings)
    waves: WaveSettings = Field(default_factory=WaveSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    @classmethod
    def load(cls, path: str | Path) -> "ProjectConfig":
        """Load configuration from a YAML file."""
        path = Path(path)
        if not path.exists():
            return cls()

        with open(path) as f:
            data = yaml.safe_load(f) or {}

        return cls.model_validate(data)

    @classmethod
    def for_root(cls, root: str | Path) -> "ProjectConfig":
        """Load the configuration file of a repository root."""
        return cls.load(Path(root) / CONFIG_FILENAME)

    def save(self, path: str | Path) -> None:
        """Save configuration to a YAML file."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)

        with open(path, "w") as f:
            yaml.dump(
                self.model_dump(exclude_none=True),
                f,
                default_flow_style=False,
                sort_keys=False,
            )
