"""Wave orchestrator: run a bounded set of independent analyzer workers.

Workers are fire-and-forget processes. Each one signals completion by
writing its findings file (the sentinel) into the wave directory:

    <state_dir>/waves/<trace_id>/
        _status.json
        <analyzer>.findings.json
        <analyzer>.prompt.md

The orchestrator never learns about completion any other way, so waiting
is a bounded polling loop.
"""

from __future__ import annotations

import json
import logging
import secrets
import shlex
import shutil
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

from pydantic import ValidationError

from session_orchestrator.core.errors import ErrorCode, StoreCorruptError
from session_orchestrator.core.paths import ProjectPaths
from session_orchestrator.core.results import OperationResult
from session_orchestrator.core.store import AtomicStore, Document
from session_orchestrator.schemas.config import ProjectConfig
from session_orchestrator.schemas.registry import utc_now
from session_orchestrator.schemas.wave import Analyzer, FindingsDocument, WaveStatus
from session_orchestrator.utils import tmux
from session_orchestrator.utils.git import CommandResult

logger = logging.getLogger(__name__)

STATUS_FILENAME = "_status.json"
FINDINGS_SUFFIX = ".findings.json"
PROMPT_SUFFIX = ".prompt.md"
DEFAULT_STAGGER_MS = 3000
AUDIT_SESSION_PREFIX = "audit-"

AnalyzerRef = Analyzer | str


def new_wave_trace_id() -> str:
    return secrets.token_hex(8)


def audit_session_name(audit_type: str, trace_id: str) -> str:
    """tmux session hosting the workers of one wave."""
    return f"{AUDIT_SESSION_PREFIX}{audit_type}-{trace_id[:8]}"


def _keys(analyzers: Iterable[AnalyzerRef]) -> list[str]:
    return [a.key if isinstance(a, Analyzer) else a for a in analyzers]


@dataclass
class AnalyzerTask:
    """A planned worker: its prompt and where it must report."""

    key: str
    label: str
    prompt: str
    findings_path: Path
    prompt_path: Path


class WorkerLauncher(Protocol):
    """Starts one analyzer worker. Must not wait for it to finish."""

    def launch(self, task: AnalyzerTask) -> CommandResult: ...


class TmuxLauncher:
    """Runs each worker in its own window of a shared tmux session."""

    def __init__(
        self,
        session_name: str,
        cwd: str | Path,
        agent_command: str = "claude",
        model: str | None = None,
    ):
        self.session_name = session_name
        self.cwd = Path(cwd)
        self.agent_command = agent_command
        self.model = model

    def command_for(self, task: AnalyzerTask) -> str:
        command = f"cat {shlex.quote(str(task.prompt_path))} | {self.agent_command}"
        if self.model:
            command += f" --model {shlex.quote(self.model)}"
        return command

    def launch(self, task: AnalyzerTask) -> CommandResult:
        if tmux.session_exists(self.session_name):
            result = tmux.new_window(self.session_name, task.key, self.cwd)
        else:
            result = tmux.create_session(self.session_name, self.cwd, window_name=task.key)
        if result.returncode != 0:
            return result
        return tmux.send_keys(f"{self.session_name}:{task.key}", self.command_for(task))


@dataclass
class WaveRunResult(OperationResult):
    trace_id: str | None = None
    sentinel_dir: str | None = None
    launched: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    stagger_ms: int = 0
    max_concurrent: int = 0


@dataclass
class PollResult:
    complete: bool
    completed: list[str] = field(default_factory=list)
    missing: list[str] = field(default_factory=list)
    results: list[dict[str, Any]] = field(default_factory=list)


@dataclass
class OrphanCleanupResult(OperationResult):
    killed_sessions: list[str] = field(default_factory=list)
    removed_traces: list[str] = field(default_factory=list)


class WaveOrchestrator:
    """Plans, launches, polls and collects one wave of analyzers."""

    def __init__(
        self,
        paths: ProjectPaths,
        config: ProjectConfig | None = None,
        trace_id: str | None = None,
        launcher: WorkerLauncher | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize the orchestrator.

        Args:
            paths: Resolved project paths
            config: Project configuration
            trace_id: Wave to operate on (a new one is generated if None)
            launcher: Worker launcher (defaults to a TmuxLauncher created
                by run_wave)
            sleep: Sleep function, injectable for tests
            clock: Monotonic clock, injectable for tests
        """
        self.paths = paths
        self.config = config or ProjectConfig()
        self.settings = self.config.waves
        self.trace_id = trace_id or new_wave_trace_id()
        self.launcher = launcher
        self.sleep = sleep
        self.clock = clock
        self._status_store = AtomicStore.for_file(
            self.status_path, self.config.store, default=None
        )

    @property
    def sentinel_dir(self) -> Path:
        return self.paths.waves_dir / self.trace_id

    @property
    def status_path(self) -> Path:
        return self.sentinel_dir / STATUS_FILENAME

    def findings_path(self, key: str) -> Path:
        return self.sentinel_dir / f"{key}{FINDINGS_SUFFIX}"

    def build_prompt(self, analyzer: Analyzer, target: str, audit_type: str) -> str:
        """Prompt for one worker.

        The worker coordinates: it hands the analysis to a single specialist
        sub-agent and only writes the returned findings to its sentinel.
        """
        findings_file = self.findings_path(analyzer.key)
        specialist = analyzer.subagent_type or f"{analyzer.key}-analyzer"
        focus = analyzer.focus or f"{analyzer.display_name}-related issues"
        model_line = f"\n- model: {self.settings.model}" if self.settings.model else ""
        shape = json.dumps(
            {
                "analyzer": analyzer.key,
                "findings": [
                    {
                        "id": f"{analyzer.key}-001",
                        "severity": "P0|P1|P2|P3",
                        "title": "Short description",
                        "file": "path/to/file",
                        "line": 1,
                        "recommendation": "How to fix",
                    }
                ],
            },
            indent=2,
        )
        return (
            f"You are a {audit_type} audit coordinator dispatching to one "
            "specialist sub-agent.\n\n"
            "## Task\n\n"
            f"1. Spawn exactly one sub-agent of type {specialist!r} to analyze {target}\n"
            "2. When it returns, convert its output into the findings document below\n"
            "3. Write that document to the sentinel file\n\n"
            "## Sub-agent\n\n"
            f"- description: {analyzer.display_name} analysis of {target}\n"
            f"- focus: {focus}{model_line}\n"
            f"- TRACE_ID: {self.trace_id}\n"
            f"- ANALYZER: {analyzer.key}\n\n"
            "## Output\n\n"
            f"Write JSON to: {findings_file}\n\n"
            f"{shape}\n\n"
            "Every finding needs id, severity and title. Write the file exactly once, "
            "when the sub-agent is done; the orchestrator treats its existence as completion."
        )

    def plan_wave(
        self,
        analyzers: list[Analyzer],
        target: str,
        audit_type: str,
    ) -> list[AnalyzerTask]:
        """Build one isolated task per analyzer.

        Raises:
            ValueError: More analyzers than allowed, or duplicate keys
        """
        if len(analyzers) > self.settings.max_analyzers:
            raise ValueError(
                f"A wave allows at most {self.settings.max_analyzers} analyzers, "
                f"got {len(analyzers)}"
            )
        keys = _keys(analyzers)
        if len(set(keys)) != len(keys):
            raise ValueError("Analyzer keys must be unique within a wave")

        return [
            AnalyzerTask(
                key=analyzer.key,
                label=analyzer.display_name,
                prompt=self.build_prompt(analyzer, target, audit_type),
                findings_path=self.findings_path(analyzer.key),
                prompt_path=self.sentinel_dir / f"{analyzer.key}{PROMPT_SUFFIX}",
            )
            for analyzer in analyzers
        ]

    def run_wave(
        self,
        analyzers: list[Analyzer],
        target: str,
        audit_type: str,
        stagger_ms: int | None = None,
        max_concurrent: int | None = None,
        timeout_minutes: float | None = None,
    ) -> WaveRunResult:
        """Launch the wave's workers without waiting for them to finish.

        Workers start stagger_ms apart. With max_concurrent > 0 a worker is
        only admitted while fewer than max_concurrent launched workers are
        still missing their sentinel; analyzers not admitted before the
        timeout are recorded as failed.

        Args:
            analyzers: Analyzers to run
            target: Path the analyzers inspect
            audit_type: Audit kind, recorded in the status document
            stagger_ms: Delay between launches (defaults to configuration)
            max_concurrent: Cap on running workers, 0 is unbounded
            timeout_minutes: Admission deadline (defaults to configuration)

        Returns:
            WaveRunResult
        """
        try:
            tasks = self.plan_wave(analyzers, target, audit_type)
        except ValueError as e:
            return WaveRunResult.failure(str(e), ErrorCode.INVALID_NAME, trace_id=self.trace_id)

        if stagger_ms is None:
            stagger_ms = int(self.settings.stagger_seconds * 1000)
        if stagger_ms < 0:
            stagger_ms = DEFAULT_STAGGER_MS
        if max_concurrent is None:
            max_concurrent = self.settings.max_concurrent
        timeout_minutes = timeout_minutes or self.settings.timeout_minutes

        self.sentinel_dir.mkdir(parents=True, exist_ok=True)
        status = WaveStatus(
            audit_type=audit_type,
            analyzers=[t.key for t in tasks],
            started_at=utc_now(),
            trace_id=self.trace_id,
            target=target,
            model=self.settings.model,
            stagger_ms=stagger_ms,
            max_concurrent=max_concurrent,
            timeout_minutes=timeout_minutes,
        )
        saved = self._status_store.save(status.model_dump(mode="json"))
        if not saved.success:
            return WaveRunResult.failure(
                f"Could not write wave status: {saved.error}",
                ErrorCode.STORE_FAILED,
                trace_id=self.trace_id,
            )

        launcher = self.launcher or TmuxLauncher(
            audit_session_name(audit_type, self.trace_id),
            self.paths.worktree_root,
            agent_command=self.config.sessions.agent_command,
            model=self.settings.model,
        )
        deadline = self.clock() + timeout_minutes * 60
        launched: list[str] = []
        failed: list[str] = []

        for index, task in enumerate(tasks):
            if not self._admit(launched, max_concurrent, deadline):
                rest = [t.key for t in tasks[index:]]
                logger.warning("Admission timed out, not launching %s", ", ".join(rest))
                failed.extend(rest)
                break
            if index and stagger_ms:
                self.sleep(stagger_ms / 1000)

            task.prompt_path.write_text(task.prompt)
            result = launcher.launch(task)
            if result.returncode == 0:
                launched.append(task.key)
                logger.info("Launched analyzer %s (%s)", task.key, self.trace_id)
            else:
                failed.append(task.key)
                logger.warning("Could not launch analyzer %s: %s", task.key, result.stderr.strip())

        if failed:
            self._update_status(lambda doc: doc.update(failed=failed))

        return WaveRunResult(
            success=bool(launched) or not tasks,
            error=None if launched or not tasks else "No analyzer could be launched",
            trace_id=self.trace_id,
            sentinel_dir=str(self.sentinel_dir),
            launched=launched,
            failed=failed,
            stagger_ms=stagger_ms,
            max_concurrent=max_concurrent,
        )

    def _admit(self, launched: list[str], max_concurrent: int, deadline: float) -> bool:
        if max_concurrent <= 0:
            return True
        while sum(not self.findings_path(k).exists() for k in launched) >= max_concurrent:
            if self.clock() >= deadline:
                return False
            self.sleep(self.settings.poll_interval_seconds)
        return True

    def _wait_for(
        self,
        keys: list[str],
        timeout_minutes: float | None,
        interval: float | None,
        on_tick: Callable[[list[str]], None] | None = None,
    ) -> bool:
        timeout_minutes = (
            timeout_minutes if timeout_minutes is not None else self.settings.timeout_minutes
        )
        interval = interval if interval is not None else self.settings.poll_interval_seconds
        deadline = self.clock() + timeout_minutes * 60

        while True:
            done = [k for k in keys if self.findings_path(k).exists()]
            if on_tick is not None:
                on_tick(done)
            if len(done) == len(keys):
                return True
            remaining = deadline - self.clock()
            if remaining <= 0:
                return False
            self.sleep(min(interval, remaining))

    def poll_wave_completion(
        self,
        analyzers: Iterable[AnalyzerRef],
        timeout_minutes: float | None = None,
        interval: float | None = None,
    ) -> bool:
        """Wait until every analyzer has written its sentinel.

        Returns:
            True once all sentinels exist, False if the timeout passes first
        """
        return self._wait_for(_keys(analyzers), timeout_minutes, interval)

    def poll_for_completion(
        self,
        analyzers: Iterable[AnalyzerRef] | None = None,
        timeout_minutes: float | None = None,
        interval: float | None = None,
    ) -> PollResult:
        """Like poll_wave_completion, recording progress in the status document.

        Args:
            analyzers: Analyzers to wait for (defaults to the wave's own)
        """
        if analyzers is None:
            status = self.read_status()
            keys = list(status.analyzers) if status else []
        else:
            keys = _keys(analyzers)

        def record(done: list[str]) -> None:
            self._update_status(
                lambda doc: doc.update(completed=list(done), last_checked=utc_now())
            )

        complete = self._wait_for(keys, timeout_minutes, interval, on_tick=record)
        results = self.collect_results(keys)
        finished = {r["analyzer"] for r in results}
        return PollResult(
            complete=complete,
            completed=[k for k in keys if k in finished],
            missing=[k for k in keys if k not in finished],
            results=results,
        )

    def collect_results(
        self, analyzers: Iterable[AnalyzerRef] | None = None
    ) -> list[dict[str, Any]]:
        """Read every sentinel that exists.

        Missing sentinels are omitted. A malformed one yields an entry with
        an error message and no findings.
        """
        if analyzers is None:
            status = self.read_status()
            keys = list(status.analyzers) if status else []
        else:
            keys = _keys(analyzers)

        results: list[dict[str, Any]] = []
        for key in keys:
            path = self.findings_path(key)
            if not path.exists():
                continue
            try:
                with open(path) as f:
                    data = json.load(f)
                if not isinstance(data, dict):
                    raise ValueError("findings document is not an object")
                data.setdefault("analyzer", key)
                results.append(FindingsDocument.model_validate(data).to_result())
            except (OSError, ValueError, ValidationError) as e:
                logger.warning("Malformed findings for %s: %s", key, e)
                results.append(
                    {"analyzer": key, "error": f"Failed to parse findings: {e}", "findings": []}
                )
        return results

    def read_status(self) -> WaveStatus | None:
        """Load the wave's status document, None if absent or unreadable."""
        if not self.status_path.exists():
            return None
        try:
            return WaveStatus.model_validate(self._status_store.load(fresh=True))
        except (StoreCorruptError, ValidationError) as e:
            logger.warning("Invalid wave status %s: %s", self.status_path, e)
            return None

    def _update_status(self, mutate: Callable[[Document], None]) -> None:
        if not self.status_path.exists():
            return
        result = self._status_store.read_modify_write(mutate)
        if not result.success:
            logger.warning("Could not update wave status: %s", result.error)

    def cleanup_orphans(self, now: float | None = None) -> OrphanCleanupResult:
        """Kill audit tmux sessions of finished waves and drop old trace directories.

        A wave is finished when every analyzer has a sentinel or is marked
        failed. Trace directories are removed once older than
        max_trace_age_minutes.

        Args:
            now: Wall-clock reference in epoch seconds (defaults to now)
        """
        now = now if now is not None else time.time()
        max_age = self.settings.max_trace_age_minutes * 60
        report = OrphanCleanupResult()
        if not self.paths.waves_dir.is_dir():
            return report

        live = {s.name for s in tmux.list_sessions()}
        for trace_dir in sorted(p for p in self.paths.waves_dir.iterdir() if p.is_dir()):
            wave = WaveOrchestrator(self.paths, self.config, trace_id=trace_dir.name)
            status = wave.read_status()
            if status is not None and wave.is_finished(status):
                name = audit_session_name(status.audit_type, trace_dir.name)
                if name in live:
                    result = tmux.kill_session(name)
                    if result.returncode == 0:
                        report.killed_sessions.append(name)

            if now - trace_dir.stat().st_mtime > max_age:
                shutil.rmtree(trace_dir, ignore_errors=True)
                report.removed_traces.append(trace_dir.name)
        return report

    def is_finished(self, status: WaveStatus) -> bool:
        failed = set(status.failed)
        return all(k in failed or self.findings_path(k).exists() for k in status.analyzers)
