"""Tests for the append-only event bus."""

import json
from pathlib import Path

from session_orchestrator.core import events
from session_orchestrator.core.events import EventBus


class TestEmit:
    """Tests for writing events."""

    def test_emit_appends_one_line_per_event(self, tmp_path: Path) -> None:
        """Each event is one JSON object on its own line."""
        bus = EventBus(tmp_path / "bus" / "log.jsonl")
        assert bus.emit(events.TEAM_CREATED, trace_id="t1", mode="subagent")
        assert bus.emit(events.TEAM_STOPPED, trace_id="t1", duration_ms=5)

        lines = (tmp_path / "bus" / "log.jsonl").read_text().splitlines()
        assert [json.loads(line)["type"] for line in lines] == ["team_created", "team_stopped"]

    def test_none_fields_dropped_and_timestamp_added(self, tmp_path: Path) -> None:
        bus = EventBus(tmp_path / "log.jsonl")
        bus.emit(events.TASK_ASSIGNED, agent="api", trace_id=None)

        [event] = bus.read()
        assert "trace_id" not in event
        assert event["agent"] == "api"
        assert "at" in event

    def test_write_failure_returns_false(self, tmp_path: Path) -> None:
        """An unwritable log never raises."""
        log_dir = tmp_path / "log.jsonl"
        log_dir.mkdir()
        bus = EventBus(log_dir)

        assert bus.emit(events.TEAM_CREATED, trace_id="t1") is False

    def test_listeners_notified_and_isolated(self, tmp_path: Path) -> None:
        """A failing listener does not stop the others or the write."""
        bus = EventBus(tmp_path / "log.jsonl")
        seen: list[str] = []

        def broken(event: dict) -> None:
            raise RuntimeError("listener down")

        bus.subscribe(broken)
        bus.subscribe(lambda event: seen.append(event["type"]))

        assert bus.emit(events.GATE_PASSED, gate="tests")
        assert seen == ["gate_passed"]


class TestRead:
    """Tests for replaying events."""

    def test_filters(self, tmp_path: Path) -> None:
        bus = EventBus(tmp_path / "log.jsonl")
        bus.emit(events.TASK_ASSIGNED, agent="api", trace_id="t1")
        bus.emit(events.TASK_ASSIGNED, agent="ui", trace_id="t1")
        bus.emit(events.TASK_COMPLETED, agent="api", trace_id="t2")

        assert len(bus.read(event_type=events.TASK_ASSIGNED)) == 2
        assert len(bus.read(agent="api")) == 2
        assert len(bus.read(trace_id="t2")) == 1
        assert [e["agent"] for e in bus.read(limit=1)] == ["api"]
        assert bus.read(limit=0) == []

    def test_since_filter(self, tmp_path: Path) -> None:
        bus = EventBus(tmp_path / "log.jsonl")
        bus.emit(events.TASK_ASSIGNED, agent="api")

        assert len(bus.read(since="2000-01-01T00:00:00+00:00")) == 1
        assert bus.read(since="2999-01-01T00:00:00+00:00") == []

    def test_malformed_lines_skipped(self, tmp_path: Path) -> None:
        path = tmp_path / "log.jsonl"
        bus = EventBus(path)
        bus.emit(events.TASK_ASSIGNED, agent="api")
        with open(path, "a") as f:
            f.write("{broken\n[1, 2]\n")
        bus.emit(events.TASK_COMPLETED, agent="api")

        assert [e["type"] for e in bus.read()] == ["task_assigned", "task_completed"]

    def test_undecodable_line_skipped(self, tmp_path: Path) -> None:
        """A line that is not UTF-8 is dropped without losing the rest of the log."""
        path = tmp_path / "log.jsonl"
        bus = EventBus(path)
        bus.emit(events.TASK_ASSIGNED, agent="api", trace_id="t1")
        with open(path, "ab") as f:
            f.write(b"\xff\xfe garbage\n")
        bus.emit(events.TASK_COMPLETED, agent="api", trace_id="t1")

        replayed = bus.read(trace_id="t1")

        assert [e["type"] for e in replayed] == ["task_assigned", "task_completed"]
        stats = bus.aggregate_metrics("t1")["per_agent"]["api"]
        assert stats["tasks_assigned"] == 1
        assert stats["tasks_completed"] == 1

    def test_missing_log(self, tmp_path: Path) -> None:
        assert EventBus(tmp_path / "none.jsonl").read() == []


class TestAggregateMetrics:
    """Tests for per-trace metrics."""

    def test_aggregate(self, tmp_path: Path) -> None:
        """Counters are grouped per agent and per gate for one trace."""
        bus = EventBus(tmp_path / "log.jsonl")
        bus.emit(events.TASK_ASSIGNED, trace_id="t1", agent="api")
        bus.emit(events.TASK_COMPLETED, trace_id="t1", agent="api", duration_ms=120)
        bus.emit(events.TASK_COMPLETED, trace_id="t1", agent="api", duration_ms=30)
        bus.emit(events.AGENT_ERROR, trace_id="t1", agent="ui")
        bus.emit(events.GATE_PASSED, trace_id="t1", gate="tests")
        bus.emit(events.GATE_FAILED, trace_id="t1", gate="tests")
        bus.emit(events.TEAM_COMPLETED, trace_id="t1", duration_ms=900)
        bus.emit(events.TASK_COMPLETED, trace_id="other", agent="api")

        metrics = bus.aggregate_metrics("t1")

        assert metrics["per_agent"]["api"]["tasks_assigned"] == 1
        assert metrics["per_agent"]["api"]["tasks_completed"] == 2
        assert metrics["per_agent"]["api"]["total_duration_ms"] == 150
        assert metrics["per_agent"]["ui"]["errors"] == 1
        assert metrics["per_gate"]["tests"] == {"passed": 1, "failed": 1}
        assert metrics["team_completion_ms"] == 900

    def test_unknown_trace(self, tmp_path: Path) -> None:
        metrics = EventBus(tmp_path / "log.jsonl").aggregate_metrics("none")
        assert metrics["per_agent"] == {}
        assert metrics["team_completion_ms"] is None
