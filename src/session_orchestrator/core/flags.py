"""Feature-flag provider selecting the team execution mode."""

from __future__ import annotations

import os
from collections.abc import Mapping
from typing import Protocol, runtime_checkable

from session_orchestrator.schemas.config import ProjectConfig
from session_orchestrator.schemas.team import TeamMode

AGENT_TEAMS_ENV_VAR = "CLAUDE_CODE_EXPERIMENTAL_AGENT_TEAMS"
_TRUTHY = {"1", "true", "yes"}


@runtime_checkable
class FeatureFlagProvider(Protocol):
    """Supplies the team execution mode, consulted on every team start."""

    def team_mode(self) -> TeamMode:
        ...


class EnvFeatureFlags:
    """Native mode when the agent-teams env var or config flag is on."""

    def __init__(
        self,
        config: ProjectConfig | None = None,
        environ: Mapping[str, str] | None = None,
    ):
        self.config = config or ProjectConfig()
        self.environ = environ if environ is not None else os.environ

    def team_mode(self) -> TeamMode:
        value = self.environ.get(AGENT_TEAMS_ENV_VAR, "").strip().lower()
        if value in _TRUTHY:
            return TeamMode.NATIVE
        if self.config.teams.native_enabled:
            return TeamMode.NATIVE
        return TeamMode.SUBAGENT


class StaticFeatureFlags:
    """Fixed mode, for tests and explicit overrides."""

    def __init__(self, mode: TeamMode):
        self.mode = mode

    def team_mode(self) -> TeamMode:
        return self.mode
