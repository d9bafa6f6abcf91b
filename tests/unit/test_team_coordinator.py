"""Tests for the team coordinator."""

import json
from pathlib import Path

import pytest
import yaml

from session_orchestrator.core import events
from session_orchestrator.core.errors import ErrorCode
from session_orchestrator.core.events import EventBus
from session_orchestrator.core.flags import EnvFeatureFlags, StaticFeatureFlags
from session_orchestrator.core.paths import ProjectPaths
from session_orchestrator.core.store import AtomicStore, MemoryBackend
from session_orchestrator.schemas.config import ProjectConfig
from session_orchestrator.schemas.team import TeammateSpec, TeamMode, TeamTemplate
from session_orchestrator.teams.coordinator import (
    TeamCoordinator,
    build_native_team_payload,
    build_teammate_prompt,
)

FULLSTACK = {
    "name": "fullstack",
    "description": "API and UI pair",
    "lead": "team-lead",
    "teammates": [
        {"agent": "api", "role": "backend", "domain": "api", "instructions": "Own the API"},
        {"agent": "ui", "domain": "frontend"},
    ],
    "quality_gates": {"teammate_idle": {"tests": True}},
}


@pytest.fixture
def paths(tmp_path: Path) -> ProjectPaths:
    root = tmp_path / "proj"
    root.mkdir()
    paths = ProjectPaths(main_root=root, worktree_root=root)
    paths.teams_dir.mkdir(parents=True)
    (paths.teams_dir / "fullstack.yaml").write_text(yaml.safe_dump(FULLSTACK))
    return paths


def make_coordinator(
    paths: ProjectPaths,
    mode: TeamMode = TeamMode.SUBAGENT,
    backend: MemoryBackend | None = None,
    bus: EventBus | None = None,
) -> TeamCoordinator:
    return TeamCoordinator(
        paths,
        state_store=AtomicStore(backend or MemoryBackend()),
        bus=bus or EventBus(paths.bus_path),
        flags=StaticFeatureFlags(mode),
    )


class TestTemplates:
    """Tests for template loading."""

    def test_list_and_get(self, paths: ProjectPaths) -> None:
        (paths.teams_dir / "solo.json").write_text(json.dumps({"teammates": []}))
        (paths.teams_dir / "notes.txt").write_text("ignored")
        coordinator = make_coordinator(paths)

        assert coordinator.list_templates() == ["fullstack", "solo"]
        template = coordinator.get_template("fullstack")
        assert template is not None
        assert [t.agent for t in template.teammates] == ["api", "ui"]

    def test_unknown_or_invalid_template(self, paths: ProjectPaths) -> None:
        (paths.teams_dir / "broken.yaml").write_text("teammates: [{role: x}]")
        coordinator = make_coordinator(paths)

        assert coordinator.get_template("nope") is None
        assert coordinator.get_template("broken") is None


class TestNativePayload:
    """Tests for the native create-team payload."""

    def test_payload_from_template(self) -> None:
        template = TeamTemplate.model_validate(FULLSTACK)
        payload = build_native_team_payload(template, "fallback")

        assert payload["name"] == "fullstack"
        assert payload["description"] == "API and UI pair"
        assert payload["delegate_mode"] is True
        assert payload["teammates"] == [
            {"name": "api", "role": "backend", "instructions": "Own the API"},
            {"name": "ui", "role": "frontend", "instructions": "teammate agent for frontend"},
        ]

    def test_fallbacks(self) -> None:
        """Missing fields get deterministic defaults."""
        template = TeamTemplate(delegate_mode=False)
        payload = build_native_team_payload(template, "quick")

        assert payload["name"] == "quick"
        assert payload["description"] == "Team: quick"
        assert payload["teammates"] == []
        assert payload["delegate_mode"] is False

    def test_no_template(self) -> None:
        assert build_native_team_payload(None, "x")["name"] == "x"


class TestTeammatePrompt:
    """Tests for teammate prompt composition."""

    def test_sections(self) -> None:
        template = TeamTemplate.model_validate(FULLSTACK)
        prompt = build_teammate_prompt(template.teammates[0], template)

        assert prompt.startswith("## Role: backend (api)\n\nOwn the API")
        assert "## Quality Gates" in prompt
        assert "tests must pass" in prompt
        assert "linting must pass" not in prompt
        assert "## Context" in prompt
        assert "CLAUDE.md" in prompt

    def test_no_gates_section_without_gates(self) -> None:
        prompt = build_teammate_prompt(TeammateSpec(agent="solo"))
        assert prompt.startswith("## Role: teammate (general)")
        assert "teammate agent for general" in prompt
        assert "## Quality Gates" not in prompt


class TestStartTeam:
    """Tests for starting a team."""

    def test_native_mode_builds_payload(self, paths: ProjectPaths) -> None:
        backend = MemoryBackend()
        coordinator = make_coordinator(paths, TeamMode.NATIVE, backend)

        result = coordinator.start_team("fullstack")

        assert result.success
        assert result.mode == TeamMode.NATIVE
        assert len(result.native_payload["teammates"]) == 2
        stored = backend.read()
        assert stored["active_team"]["trace_id"] == result.trace_id
        assert stored["active_team"]["native_payload"]["name"] == "fullstack"

    def test_subagent_mode_has_no_payload(self, paths: ProjectPaths) -> None:
        backend = MemoryBackend()
        result = make_coordinator(paths, TeamMode.SUBAGENT, backend).start_team("fullstack")

        assert result.success
        assert result.native_payload is None
        assert backend.read()["active_team"]["native_payload"] is None
        assert result.teammate_count == 2

    def test_emits_team_created(self, paths: ProjectPaths) -> None:
        bus = EventBus(paths.bus_path)
        result = make_coordinator(paths, bus=bus).start_team("fullstack")

        [event] = bus.read(event_type=events.TEAM_CREATED)
        assert event["trace_id"] == result.trace_id
        assert event["mode"] == "subagent"
        assert event["teammate_count"] == 2

    def test_bus_failure_does_not_fail_start(self, paths: ProjectPaths, tmp_path: Path) -> None:
        """Team state is kept even when the event cannot be written."""
        unwritable = tmp_path / "bus-dir"
        unwritable.mkdir()
        backend = MemoryBackend()
        coordinator = make_coordinator(paths, backend=backend, bus=EventBus(unwritable))

        result = coordinator.start_team("fullstack")

        assert result.success
        assert backend.read()["active_team"]["template"] == "fullstack"

    def test_second_start_rejected(self, paths: ProjectPaths) -> None:
        backend = MemoryBackend()
        coordinator = make_coordinator(paths, backend=backend)
        first = coordinator.start_team("fullstack")

        second = coordinator.start_team("fullstack")

        assert not second.success
        assert second.code == ErrorCode.TEAM_ALREADY_ACTIVE
        assert backend.read()["active_team"]["trace_id"] == first.trace_id

    def test_unknown_template(self, paths: ProjectPaths) -> None:
        result = make_coordinator(paths).start_team("ghost")
        assert result.code == ErrorCode.TEMPLATE_NOT_FOUND

    def test_mode_chosen_per_call(self, paths: ProjectPaths) -> None:
        """The flag provider is consulted on every start."""
        environ: dict[str, str] = {}
        backend = MemoryBackend()
        coordinator = TeamCoordinator(
            paths,
            state_store=AtomicStore(backend),
            bus=EventBus(paths.bus_path),
            flags=EnvFeatureFlags(ProjectConfig(), environ),
        )

        assert coordinator.start_team("fullstack").mode == TeamMode.SUBAGENT
        coordinator.stop_team()
        environ["CLAUDE_CODE_EXPERIMENTAL_AGENT_TEAMS"] = "1"
        assert coordinator.start_team("fullstack").mode == TeamMode.NATIVE


class TestStopTeam:
    """Tests for stopping a team."""

    def test_no_active_team(self, paths: ProjectPaths) -> None:
        """Stopping with nothing running leaves metrics untouched."""
        backend = MemoryBackend({"team_metrics": {"tasks_completed": 4}})
        result = make_coordinator(paths, backend=backend).stop_team()

        assert not result.success
        assert result.error == "No active team"
        assert result.code == ErrorCode.NO_ACTIVE_TEAM
        assert backend.read() == {"team_metrics": {"tasks_completed": 4}}

    def test_stop_clears_team_and_keeps_other_fields(self, paths: ProjectPaths) -> None:
        backend = MemoryBackend({"active_session": {"id": "3"}, "custom": [1, 2]})
        coordinator = make_coordinator(paths, backend=backend)
        coordinator.start_team("fullstack")

        result = coordinator.stop_team()

        assert result.success
        stored = backend.read()
        assert "active_team" not in stored
        assert stored["active_session"] == {"id": "3"}
        assert stored["custom"] == [1, 2]
        metrics = stored["team_metrics"]
        assert metrics["completed_at"]
        assert metrics["duration_ms"] >= 0
        assert metrics["template"] == "fullstack"

    def test_stop_events_share_trace(self, paths: ProjectPaths) -> None:
        bus = EventBus(paths.bus_path)
        coordinator = make_coordinator(paths, bus=bus)
        started = coordinator.start_team("fullstack")
        coordinator.stop_team()

        types = [e["type"] for e in bus.read(trace_id=started.trace_id)]
        assert types == ["team_created", "team_stopped", "team_completed"]

    def test_summary_folded_into_metrics(self, paths: ProjectPaths) -> None:
        backend = MemoryBackend()
        bus = EventBus(paths.bus_path)
        coordinator = make_coordinator(paths, backend=backend, bus=bus)
        coordinator.start_team("fullstack")
        coordinator.track(events.TASK_ASSIGNED, agent="api")
        coordinator.track(events.TASK_COMPLETED, agent="api", duration_ms=50)

        result = coordinator.stop_team()

        assert result.tasks_completed == 1
        summary = backend.read()["team_metrics"]["summary"]
        assert summary["per_agent"]["api"]["tasks_completed"] == 1
        assert summary["team_completion_ms"] is not None


class TestStatus:
    """Tests for team status."""

    def test_status_roundtrip(self, paths: ProjectPaths) -> None:
        coordinator = make_coordinator(paths)
        assert not coordinator.get_team_status().active

        coordinator.start_team("fullstack")
        status = coordinator.get_team_status()
        assert status.active
        assert status.team["template"] == "fullstack"
        assert status.metrics["teammate_count"] == 2
