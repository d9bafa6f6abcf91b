"""CLI interface for the Session Orchestrator."""

from __future__ import annotations

import json
import os
import sys
from collections.abc import Callable
from pathlib import Path
from typing import Any

import click
import yaml
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from session_orchestrator import __version__
from session_orchestrator.core.errors import ErrorCode, OrchestratorError
from session_orchestrator.core.events import EventBus
from session_orchestrator.core.flags import EnvFeatureFlags
from session_orchestrator.core.paths import ProjectPaths
from session_orchestrator.core.results import OperationResult, to_jsonable
from session_orchestrator.schemas.config import CONFIG_FILENAME, ProjectConfig
from session_orchestrator.schemas.registry import ThreadType
from session_orchestrator.schemas.wave import Analyzer
from session_orchestrator.sessions.cleanup import CleanupFinding, CleanupWizard
from session_orchestrator.sessions.lifecycle import (
    MergeStrategy,
    SessionLifecycle,
    UncommittedAction,
)
from session_orchestrator.teams.coordinator import TeamCoordinator
from session_orchestrator.utils import tmux
from session_orchestrator.utils.logging import configure_logging
from session_orchestrator.waves.orchestrator import WaveOrchestrator

console = Console()

# Failures that mean the command itself could not run.
FATAL_CODES = {ErrorCode.REGISTRY_BUSY, ErrorCode.STORE_FAILED}

json_option = click.option("--json", "as_json", is_flag=True, help="Output as JSON")


class AppContext:
    """Lazily built services for one CLI invocation."""

    def __init__(self, directory: str | None = None):
        self.cwd = Path(directory or os.getcwd()).resolve()
        self._paths: ProjectPaths | None = None
        self._config: ProjectConfig | None = None
        self._lifecycle: SessionLifecycle | None = None

    @property
    def paths(self) -> ProjectPaths:
        if self._paths is None:
            self._paths = ProjectPaths.discover(self.cwd, self.config)
        return self._paths

    @property
    def config(self) -> ProjectConfig:
        if self._config is None:
            main_root = ProjectPaths.discover(self.cwd, ProjectConfig()).main_root
            self._config = ProjectConfig.for_root(main_root)
        return self._config

    @property
    def lifecycle(self) -> SessionLifecycle:
        if self._lifecycle is None:
            self._lifecycle = SessionLifecycle(self.paths, self.config)
        return self._lifecycle

    def teams(self) -> TeamCoordinator:
        return TeamCoordinator(
            self.paths,
            self.config,
            state_store=self.lifecycle.state_store,
            bus=EventBus(self.paths.bus_path),
            flags=EnvFeatureFlags(self.config),
        )

    def wave(self, trace_id: str | None = None) -> WaveOrchestrator:
        return WaveOrchestrator(self.paths, self.config, trace_id=trace_id)


pass_app = click.make_pass_decorator(AppContext)


def _emit(
    result: OperationResult,
    as_json: bool,
    render: Callable[[Any], None] | None = None,
) -> None:
    """Print a result and exit non-zero only on fatal failures."""
    if as_json:
        click.echo(json.dumps(to_jsonable(result), indent=2))
    elif not result.success:
        console.print(f"[red]Error:[/red] {result.error}")
    elif render is not None:
        render(result)

    if not result.success and result.code in FATAL_CODES:
        sys.exit(1)


def _echo_json(data: Any) -> None:
    click.echo(json.dumps(to_jsonable(data), indent=2))


@click.group()
@click.version_option(version=__version__)
@click.option(
    "--directory",
    "-C",
    type=click.Path(exists=True, file_okay=False),
    help="Run as if started in this directory",
)
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.pass_context
def main(ctx: click.Context, directory: str | None, verbose: bool) -> None:
    """Session Orchestrator.

    Run parallel agent sessions in isolated git worktrees, coordinate
    agent teams and fan out analyzer waves.
    """
    app = AppContext(directory)
    ctx.obj = app
    if ctx.invoked_subcommand in ("version", None):
        return
    try:
        settings = app.config.logging
    except (OSError, yaml.YAMLError, ValueError) as e:
        raise click.ClickException(f"Invalid {CONFIG_FILENAME}: {e}") from e
    configure_logging("DEBUG" if verbose else settings.level, settings.file)


def run() -> None:
    """Console entry point: report orchestrator errors without a traceback."""
    try:
        main(standalone_mode=True)
    except OrchestratorError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)


@main.command()
def version() -> None:
    """Show the version."""
    click.echo(__version__)


@main.command()
@json_option
@pass_app
def init(app: AppContext, as_json: bool) -> None:
    """Create the configuration file, state directory and registry."""
    paths = app.paths
    config_path = paths.main_root / CONFIG_FILENAME
    created_config = not config_path.exists()
    if created_config:
        app.config.save(config_path)

    paths.sessions_dir.mkdir(parents=True, exist_ok=True)
    paths.teams_dir.mkdir(parents=True, exist_ok=True)
    registry = app.lifecycle.registry.load(fresh=True)
    registered = app.lifecycle.register(cwd=paths.main_root)

    data = {
        "success": registered.success,
        "config": str(config_path),
        "config_created": created_config,
        "state_dir": str(paths.state_dir),
        "project_name": registry.project_name,
        "main_session": registered.id,
    }
    if as_json:
        _echo_json(data)
        return
    if created_config:
        console.print(f"[green]Created {config_path}[/green]")
    console.print(f"State directory: {paths.state_dir}")
    console.print(f"Main session: {registered.id}")


# -- sessions ---------------------------------------------------------------


@main.command()
@click.option("--nickname", "-n", help="Human-friendly session name")
@click.option("--thread-type", "-t", help="Thread type of the session")
@click.option("--pid", type=int, help="Owning process (defaults to the parent process)")
@json_option
@pass_app
def register(
    app: AppContext,
    nickname: str | None,
    thread_type: str | None,
    pid: int | None,
    as_json: bool,
) -> None:
    """Register the session of the current directory."""
    result = app.lifecycle.registry.register(
        cwd=app.paths.worktree_root,
        nickname=nickname,
        thread_type=thread_type,
        pid=pid or os.getppid(),
    )

    def render(r: Any) -> None:
        label = "Registered new session" if r.is_new else "Session"
        console.print(f"{label} [cyan]{r.id}[/cyan] ({r.thread_type.value})")

    _emit(result, as_json, render)


@main.command()
@click.argument("session_id", required=False)
@json_option
@pass_app
def unregister(app: AppContext, session_id: str | None, as_json: bool) -> None:
    """Mark a session inactive (defaults to the current directory's)."""
    registry = app.lifecycle.registry
    if session_id is None:
        root = app.paths.worktree_root
        session = registry.load(fresh=True).find_by_path(str(root))
        if session is None:
            _emit(
                OperationResult.failure(
                    f"No session registered for {root}", ErrorCode.SESSION_NOT_FOUND
                ),
                as_json,
            )
            return
        session_id = session.id

    if registry.unregister(session_id):
        result = OperationResult()
    else:
        result = OperationResult.failure(
            f"Session {session_id} not found", ErrorCode.SESSION_NOT_FOUND
        )
    _emit(result, as_json, lambda _: console.print(f"Unregistered session {session_id}"))


def _sessions_table(sessions: list[dict[str, Any]], title: str = "Sessions") -> Table:
    table = Table(title=title)
    table.add_column("ID", style="cyan")
    table.add_column("Nickname")
    table.add_column("Branch", style="magenta")
    table.add_column("Thread")
    table.add_column("Active")
    table.add_column("Path", style="dim")

    for session in sessions:
        marker = " *" if session.get("current") else ""
        table.add_row(
            f"{session['id']}{marker}",
            session.get("nickname") or "-",
            session.get("branch") or "-",
            session.get("thread_type") or "-",
            "[green]yes[/green]" if session.get("active") else "[dim]no[/dim]",
            session.get("path", ""),
        )
    return table


@main.command("list")
@json_option
@pass_app
def list_cmd(app: AppContext, as_json: bool) -> None:
    """List sessions, cleaning locks of dead processes."""
    result = app.lifecycle.list_sessions(cwd=app.paths.worktree_root)

    def render(r: Any) -> None:
        console.print(_sessions_table([info.to_dict() for info in r.sessions]))
        if r.cleaned:
            console.print(f"[dim]Cleaned {r.cleaned} stale lock(s)[/dim]")

    if as_json:
        _echo_json(
            {
                "success": result.success,
                "sessions": [info.to_dict() for info in result.sessions],
                "cleaned": result.cleaned,
                "cleaned_sessions": result.cleaned_sessions,
            }
        )
        return
    _emit(result, as_json, render)


@main.command()
@click.argument("session_id")
@json_option
@pass_app
def get(app: AppContext, session_id: str, as_json: bool) -> None:
    """Show one session."""
    info = app.lifecycle.registry.get(session_id)
    if info is None:
        _emit(
            OperationResult.failure(
                f"Session {session_id} not found", ErrorCode.SESSION_NOT_FOUND
            ),
            as_json,
        )
        return

    data = info.to_dict()
    if as_json:
        _echo_json({"success": True, **data})
        return
    lines = [f"{key}: {value}" for key, value in data.items()]
    console.print(Panel("\n".join(lines), title=f"Session {session_id}"))


@main.command()
@click.argument("session_id")
@click.option("--delete-worktree", is_flag=True, help="Also remove the worktree directory")
@json_option
@pass_app
def delete(app: AppContext, session_id: str, delete_worktree: bool, as_json: bool) -> None:
    """Delete a session (the main session cannot be deleted)."""
    result = app.lifecycle.delete_session(session_id, delete_worktree=delete_worktree)

    def render(r: Any) -> None:
        console.print(f"[green]Deleted session {session_id}[/green]")
        worktree_error = getattr(r, "worktree_error", None)
        if worktree_error:
            console.print(f"[yellow]Worktree not removed:[/yellow] {worktree_error}")

    _emit(result, as_json, render)


@main.command()
@click.option("--branch", "-b", help="Branch to check out (created if missing)")
@click.option("--nickname", "-n", help="Session nickname, also names the directory")
@click.option(
    "--thread-type",
    "-t",
    type=click.Choice([t.value for t in ThreadType]),
    default=ThreadType.PARALLEL.value,
    show_default=True,
)
@click.option("--story", help="Story the session works on")
@json_option
@pass_app
def create(
    app: AppContext,
    branch: str | None,
    nickname: str | None,
    thread_type: str,
    story: str | None,
    as_json: bool,
) -> None:
    """Create a session in a new worktree."""
    result = app.lifecycle.create_session(
        branch=branch, nickname=nickname, thread_type=ThreadType(thread_type), story=story
    )

    def render(r: Any) -> None:
        console.print(f"[green]Created session {r.session_id}[/green] on {r.branch}")
        console.print(f"  Path: {r.path}")
        if r.folders_symlinked:
            console.print(f"  Shared: {', '.join(r.folders_symlinked)}")
        console.print(f"\nStart working with:\n  {r.command}")

    _emit(result, as_json, render)


@main.command()
@click.argument("identifier")
@json_option
@pass_app
def switch(app: AppContext, identifier: str, as_json: bool) -> None:
    """Make a session (ID or nickname) the active one."""
    result = app.lifecycle.switch_session(identifier)
    _emit(
        result,
        as_json,
        lambda r: console.print(f"Switched to session {r.session_id}\n  {r.command}"),
    )


@main.command()
@click.argument("identifier")
@click.option("--merge", is_flag=True, help="Integrate the session branch before ending")
@click.option(
    "--strategy",
    type=click.Choice([s.value for s in MergeStrategy]),
    default=None,
    help="Merge strategy (defaults to configuration)",
)
@click.option("--keep-worktree", is_flag=True, help="Keep the worktree after merging")
@click.option("--smart", is_flag=True, help="Resolve merge conflicts by file category")
@click.option("--stash", is_flag=True, help="Stash uncommitted changes before merging")
@click.option("--discard", is_flag=True, help="Discard uncommitted changes before merging")
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation")
@json_option
@pass_app
def end(
    app: AppContext,
    identifier: str,
    merge: bool,
    strategy: str | None,
    keep_worktree: bool,
    smart: bool,
    stash: bool,
    discard: bool,
    yes: bool,
    as_json: bool,
) -> None:
    """End a session, optionally merging it into the target branch."""
    if stash and discard:
        raise click.UsageError("--stash and --discard are mutually exclusive")
    if (smart or stash or discard) and not merge:
        raise click.UsageError("--smart, --stash and --discard need --merge")
    uncommitted = None
    if stash:
        uncommitted = UncommittedAction.STASH
    elif discard:
        uncommitted = UncommittedAction.DISCARD

    lifecycle = app.lifecycle
    if merge and not yes and not as_json:
        preview = lifecycle.get_merge_preview(identifier)
        if preview.success:
            console.print(
                f"Merging {preview.branch} into {preview.target_branch}: "
                f"{len(preview.commits)} commit(s), {len(preview.files_changed)} file(s)"
            )
            for line in preview.commits[:10]:
                console.print(f"  [dim]{line}[/dim]")
            if not click.confirm("Proceed?", default=True):
                console.print("[yellow]Aborted[/yellow]")
                return

    result = lifecycle.end_session(
        identifier,
        merge=merge,
        strategy=strategy,
        delete_worktree=not keep_worktree,
        auto_resolve=smart,
        uncommitted=uncommitted,
    )

    def render(r: Any) -> None:
        if r.changes is not None and r.changes.changed:
            note = f" as {r.changes.message!r}" if r.changes.message else ""
            console.print(f"[dim]Uncommitted changes {r.changes.action.value}ed{note}[/dim]")
        if r.merged and r.integration is not None:
            console.print(
                f"[green]Merged session {r.session_id}[/green] "
                f"({r.integration.commits_count} commit(s), {r.integration.strategy.value})"
            )
            for resolved in r.integration.auto_resolved:
                console.print(
                    f"  [dim]auto-resolved {resolved['file']} "
                    f"({resolved['resolution']}: {resolved['description']})[/dim]"
                )
        elif merge and r.mergeability is not None and not r.mergeability.mergeable:
            console.print(
                f"[yellow]Not mergeable:[/yellow] {r.mergeability.reason}"
            )
        else:
            console.print(f"Ended session {r.session_id}")

    if not result.success and result.integration is not None and not as_json:
        if result.integration.has_conflicts:
            for unresolved in result.integration.unresolved:
                console.print(f"  [red]unresolved[/red] {unresolved['file']}")
            hint = "" if smart else " or retry with --smart"
            console.print(
                "[red]Merge conflict.[/red] The session was left untouched; "
                f"resolve the conflict manually{hint}."
            )
    _emit(result, as_json, render)


@main.command()
@click.argument("identifier")
@json_option
@pass_app
def conflicts(app: AppContext, identifier: str, as_json: bool) -> None:
    """List files changed on both a session and the target branch."""
    result = app.lifecycle.get_conflicting_files(identifier)

    def render(r: Any) -> None:
        if not r.files:
            console.print(f"[green]No overlapping changes with {r.target_branch}[/green]")
            return
        table = Table(title=f"{r.branch} vs {r.target_branch}")
        table.add_column("File", style="cyan")
        table.add_column("Category")
        table.add_column("Smart merge")
        for entry in r.plan:
            table.add_row(entry["file"], entry["category"], entry["description"])
        console.print(table)

    _emit(result, as_json, render)


@main.command()
@click.option("--count", type=int, help="Number of generic parallel sessions")
@click.option("--branches", help="Comma separated feature names")
@click.option("--from-epic", help="Create one session per ready story of an epic")
@click.option("--tmux", "use_tmux", is_flag=True, help="Launch each session in tmux")
@json_option
@pass_app
def spawn(
    app: AppContext,
    count: int | None,
    branches: str | None,
    from_epic: str | None,
    use_tmux: bool,
    as_json: bool,
) -> None:
    """Create several parallel sessions."""
    result = app.lifecycle.spawn(
        count=count,
        branches=branches.split(",") if branches else None,
        from_epic=from_epic,
        use_tmux=use_tmux,
    )

    def render(r: Any) -> None:
        for created in r.created:
            console.print(f"[green]+[/green] {created.session_id} {created.branch} {created.path}")
        for failed in r.failed:
            console.print(f"[red]x[/red] {failed.error}")
        if r.tmux_session:
            console.print(f"\nAttach with: tmux attach -t {r.tmux_session}")

    _emit(result, as_json, render)


@main.command()
@click.option("--yes", "-y", is_flag=True, help="Apply every suggested action")
@click.option("--stale-days", type=int, help="Inactivity threshold in days")
@json_option
@pass_app
def cleanup(app: AppContext, yes: bool, stale_days: int | None, as_json: bool) -> None:
    """Find and remove orphaned worktrees, stale sessions and dead tmux sessions."""
    wizard = CleanupWizard(app.lifecycle, stale_days=stale_days)
    findings = wizard.scan()

    if not findings:
        if as_json:
            _echo_json({"success": True, "findings": [], "applied": [], "skipped": []})
        else:
            console.print("[green]Nothing to clean up[/green]")
        return

    if not as_json:
        table = Table(title="Cleanup findings")
        table.add_column("Kind", style="yellow")
        table.add_column("Action", style="cyan")
        table.add_column("Detail")
        for finding in findings:
            table.add_row(finding.kind.value, finding.action.value, finding.detail)
        console.print(table)

    def confirm(finding: CleanupFinding) -> bool:
        return click.confirm(f"{finding.action.value}: {finding.target}?", default=False)

    report = wizard.apply(findings, auto=yes, confirm=None if as_json else confirm)

    def render(r: Any) -> None:
        for applied in r.applied:
            mark = "[green]done[/green]" if applied.success else f"[red]{applied.error}[/red]"
            console.print(f"{applied.finding.action.value} {applied.finding.target}: {mark}")
        if r.skipped:
            console.print(f"[dim]Skipped {len(r.skipped)} finding(s)[/dim]")

    _emit(report, as_json, render)


@main.command()
@click.option("--limit", type=int, default=10, show_default=True)
@json_option
@pass_app
def history(app: AppContext, limit: int, as_json: bool) -> None:
    """Show recent merges, newest first."""
    merges = list(reversed(app.lifecycle.get_merge_history(limit)))
    if as_json:
        _echo_json({"success": True, "merges": merges})
        return
    if not merges:
        console.print("[dim]No merges recorded[/dim]")
        return

    table = Table(title="Merge history")
    table.add_column("When", style="dim")
    table.add_column("Session", style="cyan")
    table.add_column("Branch", style="magenta")
    table.add_column("Strategy")
    table.add_column("Commits", justify="right")
    table.add_column("Result")
    for entry in merges:
        result = (
            "[green]merged[/green]"
            if entry.get("success")
            else "[red]conflict[/red]" if entry.get("has_conflicts") else "[red]failed[/red]"
        )
        table.add_row(
            entry.get("timestamp", ""),
            str(entry.get("session_id", "")),
            entry.get("branch", ""),
            entry.get("strategy", ""),
            str(entry.get("commits_count", 0)),
            result,
        )
    console.print(table)


@main.command()
@json_option
@pass_app
def status(app: AppContext, as_json: bool) -> None:
    """Register this directory's session and summarize all sessions."""
    result = app.lifecycle.full_status(cwd=app.paths.worktree_root)

    def render(r: Any) -> None:
        current = r.current or {}
        label = "new" if r.is_new else "existing"
        console.print(
            Panel(
                f"Session [cyan]{current.get('id', '?')}[/cyan] ({label}) "
                f"on {current.get('branch') or '-'}\n"
                f"{r.active} active of {r.total} session(s)",
                title=app.paths.project_name,
            )
        )
        console.print(_sessions_table(r.sessions))
        if r.cleaned:
            console.print(f"[dim]Cleaned {r.cleaned} stale lock(s)[/dim]")

    _emit(result, as_json, render)


@main.command()
@click.argument("session_id")
@click.argument("thread_type")
@click.option("--force", is_flag=True, help="Allow a transition outside the table")
@json_option
@pass_app
def thread(
    app: AppContext, session_id: str, thread_type: str, force: bool, as_json: bool
) -> None:
    """Change a session's thread type."""
    result = app.lifecycle.registry.transition_thread(session_id, thread_type, force=force)

    def render(r: Any) -> None:
        if r.noop:
            console.print(f"Session {r.session_id} is already {r.to_type.value}")
            return
        note = " [yellow](forced)[/yellow]" if r.forced else ""
        console.print(f"Session {r.session_id}: {r.from_type.value} -> {r.to_type.value}{note}")

    _emit(result, as_json, render)


# -- teams ------------------------------------------------------------------


@main.group()
def team() -> None:
    """Start, inspect and stop agent teams."""


@team.command("list")
@json_option
@pass_app
def team_list(app: AppContext, as_json: bool) -> None:
    """List team templates."""
    names = app.teams().list_templates()
    if as_json:
        _echo_json({"success": True, "templates": names})
        return
    if not names:
        console.print(f"[dim]No templates in {app.paths.teams_dir}[/dim]")
    for name in names:
        console.print(f"  {name}")


@team.command("start")
@click.argument("template")
@json_option
@pass_app
def team_start(app: AppContext, template: str, as_json: bool) -> None:
    """Start a team from a template."""
    result = app.teams().start_team(template)

    def render(r: Any) -> None:
        console.print(
            f"[green]Started team {r.template}[/green] in {r.mode.value} mode "
            f"with {r.teammate_count} teammate(s)"
        )
        console.print(f"  Trace: {r.trace_id}")

    _emit(result, as_json, render)


@team.command("stop")
@json_option
@pass_app
def team_stop(app: AppContext, as_json: bool) -> None:
    """Stop the active team."""
    result = app.teams().stop_team()
    _emit(
        result,
        as_json,
        lambda r: console.print(f"Stopped team {r.template} after {r.duration_ms} ms"),
    )


@team.command("status")
@json_option
@pass_app
def team_status(app: AppContext, as_json: bool) -> None:
    """Show the active team."""
    result = app.teams().get_team_status()

    def render(r: Any) -> None:
        if not r.active:
            console.print("[dim]No active team[/dim]")
            return
        team_data = r.team
        table = Table(title=f"Team {team_data.get('template')} ({team_data.get('mode')})")
        table.add_column("Agent", style="cyan")
        table.add_column("Role")
        table.add_column("Domain")
        table.add_column("Status")
        for mate in team_data.get("teammates", []):
            table.add_row(
                mate.get("agent", ""),
                mate.get("role") or "-",
                mate.get("domain") or "-",
                mate.get("status", ""),
            )
        console.print(table)
        console.print(f"Trace: {team_data.get('trace_id')}")

    _emit(result, as_json, render)


# -- waves ------------------------------------------------------------------


def _parse_analyzer(spec: str) -> Analyzer:
    key, _, subagent_type = spec.partition(":")
    return Analyzer(key=key, subagent_type=subagent_type or None)


def _load_analyzers(path: str) -> list[Analyzer]:
    with open(path) as f:
        data = yaml.safe_load(f) or []
    if isinstance(data, dict):
        data = data.get("analyzers", [])
    return [Analyzer.model_validate(item) for item in data]


@main.group()
def wave() -> None:
    """Fan out analyzer waves and collect their findings."""


@wave.command("run")
@click.option("--type", "audit_type", required=True, help="Audit type, e.g. security")
@click.option("--target", default=".", show_default=True, help="Path to analyze")
@click.option(
    "--analyzer",
    "-a",
    "analyzer_specs",
    multiple=True,
    help="Analyzer as key or key:subagent_type (repeatable)",
)
@click.option(
    "--analyzers-file",
    type=click.Path(exists=True, dir_okay=False),
    help="YAML list of analyzers",
)
@click.option("--stagger-ms", type=int, help="Delay between worker launches")
@click.option("--max-concurrent", type=int, help="Cap on running workers (0 is unbounded)")
@click.option("--timeout", "timeout_minutes", type=float, help="Timeout in minutes")
@click.option("--wait", is_flag=True, help="Wait for the wave and collect its findings")
@json_option
@pass_app
def wave_run(
    app: AppContext,
    audit_type: str,
    target: str,
    analyzer_specs: tuple[str, ...],
    analyzers_file: str | None,
    stagger_ms: int | None,
    max_concurrent: int | None,
    timeout_minutes: float | None,
    wait: bool,
    as_json: bool,
) -> None:
    """Launch one worker per analyzer in tmux."""
    try:
        analyzers = [_parse_analyzer(s) for s in analyzer_specs]
        if analyzers_file:
            analyzers.extend(_load_analyzers(analyzers_file))
    except (OSError, yaml.YAMLError, ValueError) as e:
        raise click.BadParameter(str(e)) from e
    if not analyzers:
        raise click.UsageError("Give at least one --analyzer or --analyzers-file")
    if not tmux.is_tmux_available():
        raise click.ClickException("tmux is required to run a wave")

    orchestrator = app.wave()
    result = orchestrator.run_wave(
        analyzers,
        target,
        audit_type,
        stagger_ms=stagger_ms,
        max_concurrent=max_concurrent,
        timeout_minutes=timeout_minutes,
    )
    if not result.success or not wait:
        _emit(
            result,
            as_json,
            lambda r: console.print(
                f"Launched {len(r.launched)} analyzer(s), trace [cyan]{r.trace_id}[/cyan]\n"
                f"  Sentinels: {r.sentinel_dir}"
            ),
        )
        return

    poll = orchestrator.poll_for_completion(result.launched, timeout_minutes=timeout_minutes)
    if as_json:
        _echo_json({**result.to_dict(), "poll": poll})
        return
    state = "[green]complete[/green]" if poll.complete else "[yellow]timed out[/yellow]"
    console.print(f"Wave {result.trace_id} {state}; missing: {', '.join(poll.missing) or '-'}")
    _print_findings(poll.results)


@wave.command("status")
@click.argument("trace_id")
@json_option
@pass_app
def wave_status(app: AppContext, trace_id: str, as_json: bool) -> None:
    """Show a wave's status document."""
    status_doc = app.wave(trace_id).read_status()
    if status_doc is None:
        raise click.ClickException(f"No wave {trace_id}")
    if as_json:
        _echo_json(status_doc)
        return
    done = len(status_doc.completed)
    console.print(
        Panel(
            f"{status_doc.audit_type} audit of {status_doc.target or '-'}\n"
            f"{done}/{len(status_doc.analyzers)} complete, {len(status_doc.failed)} failed",
            title=trace_id,
        )
    )


@wave.command("collect")
@click.argument("trace_id")
@json_option
@pass_app
def wave_collect(app: AppContext, trace_id: str, as_json: bool) -> None:
    """Collect the findings written so far."""
    results = app.wave(trace_id).collect_results()
    if as_json:
        _echo_json({"success": True, "trace_id": trace_id, "results": results})
        return
    _print_findings(results)


@wave.command("cleanup")
@json_option
@pass_app
def wave_cleanup(app: AppContext, as_json: bool) -> None:
    """Kill audit tmux sessions of finished waves and drop old traces."""
    result = app.wave().cleanup_orphans()
    _emit(
        result,
        as_json,
        lambda r: console.print(
            f"Killed {len(r.killed_sessions)} session(s), "
            f"removed {len(r.removed_traces)} trace(s)"
        ),
    )


def _print_findings(results: list[dict[str, Any]]) -> None:
    table = Table(title="Findings")
    table.add_column("Analyzer", style="cyan")
    table.add_column("ID")
    table.add_column("Severity", style="magenta")
    table.add_column("Title")
    for entry in results:
        if entry.get("error"):
            table.add_row(entry["analyzer"], "-", "[red]error[/red]", entry["error"])
            continue
        for finding in entry.get("findings", []):
            table.add_row(
                entry["analyzer"],
                finding.get("id", ""),
                finding.get("severity", ""),
                finding.get("title", ""),
            )
    console.print(table)


if __name__ == "__main__":
    run()
