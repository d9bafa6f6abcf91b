"""Append-only event bus backed by a newline-delimited JSON log.

Events are write-once records used for metrics and audit. Writing an event
is best-effort: failures are logged and never propagate to the operation
that emitted the event.
"""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Callable
from datetime import datetime
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

Event = dict[str, Any]
Listener = Callable[[Event], None]

TEAM_CREATED = "team_created"
TEAM_STOPPED = "team_stopped"
TEAM_COMPLETED = "team_completed"
TASK_ASSIGNED = "task_assigned"
TASK_COMPLETED = "task_completed"
AGENT_ERROR = "agent_error"
AGENT_TIMEOUT = "agent_timeout"
GATE_PASSED = "gate_passed"
GATE_FAILED = "gate_failed"
TOOL_INVOCATION = "tool_invocation"

EVENT_TYPES = frozenset(
    {
        TEAM_CREATED,
        TEAM_STOPPED,
        TEAM_COMPLETED,
        TASK_ASSIGNED,
        TASK_COMPLETED,
        AGENT_ERROR,
        AGENT_TIMEOUT,
        GATE_PASSED,
        GATE_FAILED,
        TOOL_INVOCATION,
    }
)


def _parse_time(value: str) -> datetime | None:
    try:
        parsed = datetime.fromisoformat(value)
    except (TypeError, ValueError):
        return None
    return parsed if parsed.tzinfo else parsed.astimezone()


class EventBus:
    """Append-only JSONL event log with notify listeners."""

    def __init__(self, log_path: str | Path):
        """Initialize the bus.

        Args:
            log_path: Path of the JSONL log file
        """
        self.log_path = Path(log_path)
        self._listeners: list[Listener] = []

    def subscribe(self, listener: Listener) -> None:
        """Register a callback invoked with every emitted event."""
        self._listeners.append(listener)

    def emit(self, event_type: str, **fields: Any) -> bool:
        """Append an event to the log.

        Never raises. Fields with None values are dropped.

        Args:
            event_type: Event type name
            **fields: Type-specific fields (trace_id, template, agent, ...)

        Returns:
            True if the event was written
        """
        if event_type not in EVENT_TYPES:
            logger.debug("Emitting unregistered event type %s", event_type)

        event: Event = {"type": event_type}
        event.update({k: v for k, v in fields.items() if v is not None})
        event["at"] = datetime.now().astimezone().isoformat()

        try:
            line = json.dumps(event, default=str) + "\n"
            self.log_path.parent.mkdir(parents=True, exist_ok=True)
            # One write() per record on an O_APPEND descriptor keeps
            # concurrent appenders from interleaving within a line.
            fd = os.open(self.log_path, os.O_WRONLY | os.O_CREAT | os.O_APPEND, 0o644)
            try:
                os.write(fd, line.encode())
            finally:
                os.close(fd)
        except (OSError, TypeError, ValueError) as e:
            logger.warning("Failed to write %s event to %s: %s", event_type, self.log_path, e)
            return False

        self._notify(event)
        return True

    def _notify(self, event: Event) -> None:
        for listener in self._listeners:
            try:
                listener(event)
            except Exception as e:
                logger.warning("Event listener %r failed: %s", listener, e)

    def read(
        self,
        event_type: str | None = None,
        agent: str | None = None,
        trace_id: str | None = None,
        since: str | datetime | None = None,
        limit: int | None = None,
    ) -> list[Event]:
        """Replay events from the log, oldest first.

        Malformed lines are skipped.

        Args:
            event_type: Only events of this type
            agent: Only events for this agent
            trace_id: Only events for this trace
            since: Only events at or after this time
            limit: Keep only the most recent N matches

        Returns:
            Matching events in log order
        """
        if not self.log_path.exists():
            return []

        since_dt = _parse_time(since) if isinstance(since, str) else since
        if since_dt is not None and since_dt.tzinfo is None:
            since_dt = since_dt.astimezone()

        events: list[Event] = []
        with open(self.log_path, "rb") as f:
            for raw in f:
                try:
                    line = raw.decode("utf-8").strip()
                    if not line:
                        continue
                    event = json.loads(line)
                except (UnicodeDecodeError, json.JSONDecodeError):
                    continue
                if not isinstance(event, dict):
                    continue

                if event_type and event.get("type") != event_type:
                    continue
                if agent and event.get("agent") != agent:
                    continue
                if trace_id and event.get("trace_id") != trace_id:
                    continue
                if since_dt is not None:
                    at = _parse_time(event.get("at", ""))
                    if at is None or at < since_dt:
                        continue
                events.append(event)

        if limit is not None and limit >= 0:
            events = events[-limit:] if limit else []
        return events

    def aggregate_metrics(self, trace_id: str) -> dict[str, Any]:
        """Summarize one team run from its events.

        Args:
            trace_id: Trace to summarize

        Returns:
            Dict with per_agent and per_gate counters and team_completion_ms
        """
        per_agent: dict[str, dict[str, int]] = {}
        per_gate: dict[str, dict[str, int]] = {}
        team_completion_ms: int | None = None

        for event in self.read(trace_id=trace_id):
            kind = event.get("type")
            agent = event.get("agent")

            if agent:
                stats = per_agent.setdefault(
                    agent,
                    {
                        "tasks_assigned": 0,
                        "tasks_completed": 0,
                        "errors": 0,
                        "timeouts": 0,
                        "total_duration_ms": 0,
                    },
                )
                if kind == TASK_ASSIGNED:
                    stats["tasks_assigned"] += 1
                elif kind == TASK_COMPLETED:
                    stats["tasks_completed"] += 1
                    stats["total_duration_ms"] += int(event.get("duration_ms") or 0)
                elif kind == AGENT_ERROR:
                    stats["errors"] += 1
                elif kind == AGENT_TIMEOUT:
                    stats["timeouts"] += 1

            if kind in (GATE_PASSED, GATE_FAILED):
                gate = str(event.get("gate", "unknown"))
                gate_stats = per_gate.setdefault(gate, {"passed": 0, "failed": 0})
                gate_stats["passed" if kind == GATE_PASSED else "failed"] += 1

            if kind == TEAM_COMPLETED and event.get("duration_ms") is not None:
                team_completion_ms = int(event["duration_ms"])

        return {
            "trace_id": trace_id,
            "per_agent": per_agent,
            "per_gate": per_gate,
            "team_completion_ms": team_completion_ms,
        }
