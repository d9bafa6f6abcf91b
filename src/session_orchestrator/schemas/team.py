"""Pydantic models for team templates and team state."""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class TeamMode(str, Enum):
    """Execution mode of a team."""

    NATIVE = "native"
    SUBAGENT = "subagent"


class TeammateSpec(BaseModel):
    """A teammate entry in a team template."""

    model_config = ConfigDict(extra="allow")

    agent: str = Field(..., description="Agent identifier")
    role: str | None = Field(default=None)
    domain: str | None = Field(default=None)
    instructions: str | None = Field(default=None)
    description: str | None = Field(default=None)


class IdleGates(BaseModel):
    """Checks a teammate must pass before going idle."""

    tests: bool = Field(default=False)
    lint: bool = Field(default=False)
    types: bool = Field(default=False)


class CompletionGates(BaseModel):
    """Checks required before a task counts as completed."""

    require_validator_approval: bool = Field(default=False)


class QualityGates(BaseModel):
    """Quality gates declared by a template."""

    teammate_idle: IdleGates = Field(default_factory=IdleGates)
    task_completed: CompletionGates = Field(default_factory=CompletionGates)

    def any_declared(self) -> bool:
        """Whether any gate is switched on."""
        idle = self.teammate_idle
        return (
            idle.tests
            or idle.lint
            or idle.types
            or self.task_completed.require_validator_approval
        )


class TeamTemplate(BaseModel):
    """Declarative team template loaded from the templates directory."""

    model_config = ConfigDict(extra="allow")

    name: str | None = Field(default=None)
    description: str | None = Field(default=None)
    lead: str | None = Field(default=None, description="Lead agent identifier")
    teammates: list[TeammateSpec] = Field(default_factory=list)
    delegate_mode: bool | None = Field(default=None)
    quality_gates: QualityGates = Field(default_factory=QualityGates)


class TeammateState(BaseModel):
    """Runtime state of a teammate in an active team."""

    agent: str
    role: str | None = None
    domain: str | None = None
    status: str = "pending"


class ActiveTeam(BaseModel):
    """The running team recorded in the session-state document."""

    model_config = ConfigDict(extra="allow")

    template: str
    mode: TeamMode
    trace_id: str
    started_at: str
    lead: str | None = None
    teammates: list[TeammateState] = Field(default_factory=list)
    quality_gates: QualityGates = Field(default_factory=QualityGates)
    native_payload: dict[str, Any] | None = None


class TeamMetrics(BaseModel):
    """Accumulated metrics for the most recent team run."""

    model_config = ConfigDict(extra="allow")

    started_at: str | None = None
    template: str | None = None
    mode: TeamMode | None = None
    trace_id: str | None = None
    teammate_count: int = 0
    tasks_assigned: int = 0
    tasks_completed: int = 0
    messages_sent: int = 0
    gate_runs: list[dict[str, Any]] = Field(default_factory=list)
    completed_at: str | None = None
    duration_ms: int | None = None
    summary: dict[str, Any] | None = None
