"""Pydantic models for wave status and findings documents."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field

ANALYZER_KEY_PATTERN = r"^[A-Za-z0-9_-]+$"


class Analyzer(BaseModel):
    """One independent analysis worker in a wave."""

    key: str = Field(..., pattern=ANALYZER_KEY_PATTERN)
    label: str | None = Field(default=None)
    subagent_type: str | None = Field(
        default=None, description="Specialist the coordinator dispatches to"
    )
    focus: str | None = Field(default=None, description="What to look for")

    @property
    def display_name(self) -> str:
        return self.label or self.key


class WaveStatus(BaseModel):
    """Status document written at wave start, updated by pollers."""

    model_config = ConfigDict(extra="allow")

    audit_type: str
    analyzers: list[str]
    completed: list[str] = Field(default_factory=list)
    failed: list[str] = Field(default_factory=list)
    started_at: str
    trace_id: str | None = None
    target: str | None = None
    model: str | None = None
    stagger_ms: int | None = None
    max_concurrent: int | None = None
    timeout_minutes: float | None = None


class Finding(BaseModel):
    """A single finding reported by an analyzer."""

    model_config = ConfigDict(extra="allow")

    id: str
    severity: str
    title: str


class FindingsDocument(BaseModel):
    """Contents of one analyzer's sentinel file."""

    model_config = ConfigDict(extra="allow")

    analyzer: str
    findings: list[Finding] = Field(default_factory=list)

    def to_result(self) -> dict[str, Any]:
        return self.model_dump(mode="json")
