"""Team coordinator: start and stop short-lived teams of agents.

A team runs in one of two modes chosen per call by the feature-flag
provider: `native` builds a create-team payload for the agent runtime,
`subagent` leaves orchestration to a single coordinating agent. In both
modes the team state lives in the worktree's session-state document and
lifecycle events go to the event bus.
"""

from __future__ import annotations

import json
import logging
import secrets
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from session_orchestrator.core import events
from session_orchestrator.core.errors import ErrorCode, PreconditionError
from session_orchestrator.core.events import EventBus
from session_orchestrator.core.flags import EnvFeatureFlags, FeatureFlagProvider
from session_orchestrator.core.paths import ProjectPaths
from session_orchestrator.core.results import OperationResult
from session_orchestrator.core.store import AtomicStore, Document
from session_orchestrator.schemas.config import ProjectConfig
from session_orchestrator.schemas.registry import utc_now
from session_orchestrator.schemas.team import (
    ActiveTeam,
    QualityGates,
    TeammateSpec,
    TeammateState,
    TeamMetrics,
    TeamMode,
    TeamTemplate,
)

logger = logging.getLogger(__name__)

TEMPLATE_SUFFIXES = (".yaml", ".yml", ".json")


def new_trace_id() -> str:
    """Correlation key for one team run: `trace-<epoch ms>-<6 hex>`."""
    return f"trace-{int(time.time() * 1000)}-{secrets.token_hex(3)}"


def _describe(teammate: TeammateSpec) -> str:
    return f"{teammate.role or 'teammate'} agent for {teammate.domain or 'general'}"


def build_native_team_payload(
    template: TeamTemplate | None,
    fallback_name: str,
) -> dict[str, Any]:
    """Map a template to a native create-team request.

    Every field has a deterministic fallback: a missing name becomes
    fallback_name, missing teammate instructions become
    "<role> agent for <domain>".

    Args:
        template: Team template (None yields an empty team)
        fallback_name: Name used when the template has none

    Returns:
        Payload dict with name, description, teammates and delegate_mode
    """
    template = template or TeamTemplate()
    name = template.name or fallback_name
    return {
        "name": name,
        "description": template.description or f"Team: {name}",
        "teammates": [
            {
                "name": teammate.agent,
                "role": teammate.role or teammate.domain or "teammate",
                "instructions": teammate.instructions or _describe(teammate),
            }
            for teammate in template.teammates
        ],
        "delegate_mode": template.delegate_mode is not False,
    }


def build_teammate_prompt(
    teammate: TeammateSpec,
    template: TeamTemplate | None = None,
    conventions_file: str = "CLAUDE.md",
    status_file: str = "docs/status.json",
) -> str:
    """Compose the prompt a teammate starts with.

    Sections: role, quality gates (only when the template declares any)
    and shared context.
    """
    sections: list[str] = []

    role = f"## Role: {teammate.role or 'teammate'} ({teammate.domain or 'general'})"
    body = teammate.instructions or teammate.description or _describe(teammate)
    sections.append(f"{role}\n\n{body}")

    gates = template.quality_gates if template else QualityGates()
    if gates.any_declared():
        lines: list[str] = []
        if gates.teammate_idle.tests:
            lines.append("- Before going idle: tests must pass")
        if gates.teammate_idle.lint:
            lines.append("- Before going idle: linting must pass")
        if gates.teammate_idle.types:
            lines.append("- Before going idle: type checking must pass")
        if gates.task_completed.require_validator_approval:
            lines.append("- Before completing a task: validator approval required")
        sections.append("## Quality Gates\n\n" + "\n".join(lines))

    sections.append(
        "## Context\n\n"
        f"- Follow the project conventions in {conventions_file}\n"
        f"- Track story progress in {status_file}"
    )
    return "\n\n".join(sections)


@dataclass
class TeamStartResult(OperationResult):
    mode: TeamMode | None = None
    trace_id: str | None = None
    template: str | None = None
    lead: str | None = None
    teammates: list[dict[str, Any]] = field(default_factory=list)
    teammate_count: int = 0
    quality_gates: dict[str, Any] | None = None
    native_payload: dict[str, Any] | None = None


@dataclass
class TeamStopResult(OperationResult):
    template: str | None = None
    trace_id: str | None = None
    duration_ms: int = 0
    tasks_completed: int = 0


@dataclass
class TeamStatus(OperationResult):
    active: bool = False
    team: dict[str, Any] | None = None
    metrics: dict[str, Any] | None = None


class TeamCoordinator:
    """Starts, tracks and stops the team of one worktree."""

    def __init__(
        self,
        paths: ProjectPaths,
        config: ProjectConfig | None = None,
        state_store: AtomicStore | None = None,
        bus: EventBus | None = None,
        flags: FeatureFlagProvider | None = None,
    ):
        """Initialize the coordinator.

        Args:
            paths: Resolved project paths
            config: Project configuration
            state_store: Session-state document holding team state
            bus: Event bus receiving lifecycle events
            flags: Provider deciding native vs subagent mode
        """
        self.paths = paths
        self.config = config or ProjectConfig()
        self.state_store = state_store or AtomicStore.for_file(
            paths.session_state_path, self.config.store
        )
        self.bus = bus or EventBus(paths.bus_path)
        self.flags = flags or EnvFeatureFlags(self.config)

    # -- templates ---------------------------------------------------------

    def list_templates(self) -> list[str]:
        """Names of the templates in the templates directory."""
        if not self.paths.teams_dir.is_dir():
            return []
        return sorted(
            {p.stem for p in self.paths.teams_dir.iterdir() if p.suffix in TEMPLATE_SUFFIXES}
        )

    def get_template(self, name: str) -> TeamTemplate | None:
        """Load a template by name.

        Returns:
            TeamTemplate, or None if no readable template has that name
        """
        for suffix in TEMPLATE_SUFFIXES:
            path = self.paths.teams_dir / f"{name}{suffix}"
            if path.is_file():
                return self._load_template(path)
        return None

    def _load_template(self, path: Path) -> TeamTemplate | None:
        try:
            with open(path) as f:
                data = json.load(f) if path.suffix == ".json" else yaml.safe_load(f)
            return TeamTemplate.model_validate(data or {})
        except (OSError, json.JSONDecodeError, yaml.YAMLError, ValidationError) as e:
            logger.warning("Could not load team template %s: %s", path, e)
            return None

    # -- lifecycle ---------------------------------------------------------

    def start_team(self, template_name: str) -> TeamStartResult:
        """Start a team from a template.

        Rejected while another team is active. The native payload is only
        built in native mode. The team_created event is best-effort: a bus
        failure does not undo the recorded team state.

        Args:
            template_name: Template to instantiate

        Returns:
            TeamStartResult
        """
        template = self.get_template(template_name)
        if template is None:
            return TeamStartResult.failure(
                f"Team template {template_name!r} not found", ErrorCode.TEMPLATE_NOT_FOUND
            )

        mode = self.flags.team_mode()
        trace_id = new_trace_id()
        started_at = utc_now()
        native_payload = (
            build_native_team_payload(template, template_name)
            if mode == TeamMode.NATIVE
            else None
        )
        teammates = [
            TeammateState(agent=t.agent, role=t.role, domain=t.domain) for t in template.teammates
        ]
        active = ActiveTeam(
            template=template_name,
            mode=mode,
            trace_id=trace_id,
            started_at=started_at,
            lead=template.lead,
            teammates=teammates,
            quality_gates=template.quality_gates,
            native_payload=native_payload,
        )
        metrics = TeamMetrics(
            started_at=started_at,
            template=template_name,
            mode=mode,
            trace_id=trace_id,
            teammate_count=len(teammates),
        )

        def update(document: Document) -> None:
            if document.get("active_team"):
                current = document["active_team"].get("template", "unknown")
                raise PreconditionError(
                    f"Team already active: {current}. Stop it before starting another.",
                    ErrorCode.TEAM_ALREADY_ACTIVE,
                )
            document["active_team"] = active.model_dump(mode="json")
            document["team_metrics"] = metrics.model_dump(mode="json")

        try:
            stored = self.state_store.read_modify_write(update)
        except PreconditionError as e:
            return TeamStartResult.failure(str(e), e.code, template=template_name)
        if not stored.success:
            return TeamStartResult.failure(
                f"Could not record team state: {stored.error}",
                ErrorCode.REGISTRY_BUSY if stored.busy else ErrorCode.STORE_FAILED,
                template=template_name,
            )

        self.bus.emit(
            events.TEAM_CREATED,
            trace_id=trace_id,
            template=template_name,
            mode=mode.value,
            teammate_count=len(teammates),
        )
        logger.info("Started team %s in %s mode (%s)", template_name, mode.value, trace_id)

        return TeamStartResult(
            mode=mode,
            trace_id=trace_id,
            template=template_name,
            lead=template.lead,
            teammates=[t.model_dump(mode="json") for t in teammates],
            teammate_count=len(teammates),
            quality_gates=template.quality_gates.model_dump(mode="json"),
            native_payload=native_payload,
        )

    def get_team_status(self) -> TeamStatus:
        """Report the active team, if any, and the latest metrics."""
        document = self.state_store.load(fresh=True)
        team = document.get("active_team")
        return TeamStatus(
            active=bool(team),
            team=team or None,
            metrics=document.get("team_metrics"),
        )

    def stop_team(self) -> TeamStopResult:
        """Stop the active team.

        Clears active_team and folds completion time and duration into
        team_metrics; every other session-state field is preserved. Emits
        team_stopped then team_completed with the team's trace_id.

        Returns:
            TeamStopResult, a failure with "No active team" when idle
        """
        stopped: dict[str, Any] = {}

        def update(document: Document) -> None:
            team = document.get("active_team")
            if not team:
                raise PreconditionError("No active team", ErrorCode.NO_ACTIVE_TEAM)

            completed_at = datetime.now().astimezone()
            duration_ms = 0
            try:
                started = datetime.fromisoformat(team["started_at"])
                duration_ms = max(0, int((completed_at - started).total_seconds() * 1000))
            except (KeyError, TypeError, ValueError):
                logger.warning("Active team has no usable started_at, duration set to 0")

            metrics = document.get("team_metrics") or {}
            metrics["completed_at"] = completed_at.isoformat()
            metrics["duration_ms"] = duration_ms
            document["team_metrics"] = metrics
            del document["active_team"]

            stopped.update(
                template=team.get("template"),
                trace_id=team.get("trace_id"),
                duration_ms=duration_ms,
                tasks_completed=int(metrics.get("tasks_completed", 0)),
            )

        try:
            stored = self.state_store.read_modify_write(update)
        except PreconditionError as e:
            return TeamStopResult.failure(str(e), e.code)
        if not stored.success:
            return TeamStopResult.failure(
                f"Could not update team state: {stored.error}",
                ErrorCode.REGISTRY_BUSY if stored.busy else ErrorCode.STORE_FAILED,
            )

        trace_id = stopped["trace_id"]
        self.bus.emit(
            events.TEAM_STOPPED,
            trace_id=trace_id,
            template=stopped["template"],
            duration_ms=stopped["duration_ms"],
        )
        self.bus.emit(
            events.TEAM_COMPLETED,
            trace_id=trace_id,
            template=stopped["template"],
            duration_ms=stopped["duration_ms"],
            tasks_completed=stopped["tasks_completed"],
        )
        if trace_id:
            self._fold_summary(trace_id)

        return TeamStopResult(**stopped)

    def _fold_summary(self, trace_id: str) -> None:
        """Store aggregated bus metrics for the run (best effort)."""
        try:
            summary = self.bus.aggregate_metrics(trace_id)
        except (OSError, ValueError) as e:
            logger.warning("Could not aggregate metrics for %s: %s", trace_id, e)
            return

        def update(document: Document) -> None:
            metrics = document.get("team_metrics")
            if isinstance(metrics, dict) and metrics.get("trace_id") == trace_id:
                metrics["summary"] = summary

        result = self.state_store.read_modify_write(update)
        if not result.success:
            logger.warning("Could not store metrics summary for %s: %s", trace_id, result.error)

    def track(self, event_type: str, **fields: Any) -> bool:
        """Emit an event for the active team, attaching its trace_id.

        task_assigned and task_completed also bump the matching counter in
        team_metrics.

        Returns:
            True if the event was written
        """
        document = self.state_store.load(fresh=True)
        team = document.get("active_team") or {}
        trace_id = fields.pop("trace_id", None) or team.get("trace_id")

        counter = {
            events.TASK_ASSIGNED: "tasks_assigned",
            events.TASK_COMPLETED: "tasks_completed",
        }.get(event_type)
        if counter and team:

            def update(doc: Document) -> None:
                metrics = doc.setdefault("team_metrics", {})
                metrics[counter] = int(metrics.get(counter, 0)) + 1

            result = self.state_store.read_modify_write(update)
            if not result.success:
                logger.warning("Could not update %s: %s", counter, result.error)

        return self.bus.emit(event_type, trace_id=trace_id, **fields)
