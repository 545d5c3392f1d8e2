"""
LONGRUN CLI — The Interface

Everyday commands:
  longrun init [path] --spec spec.yaml   (bootstrap a project)
  longrun status                          (where things stand)
  longrun next / prompt                   (what the next session should do)
  longrun run                             (one workflow: init, select, code, verify)

Plus the stores:
  - longrun features / sessions / note
  - longrun state   show | pause | continue | once | cleanup | terminate
  - longrun backlog list | add | next | comment | start | block | done | report
  - longrun tests   list | pass | fail | validate | report
"""

from __future__ import annotations

from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

import typer
from dotenv import load_dotenv
from loguru import logger
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from longrun.agents import CodingAgent, CommandAgent, NullAgent
from longrun.audit_logger import AuditLogger
from longrun.config_loader import PROJECT_CONFIG_DIR
from longrun.controller import WorkflowController
from longrun.coordinator import Coordinator
from longrun.errors import LongrunError
from longrun.event_bus import EventBus, LongrunEvent
from longrun.features import ProjectSpec, generate_features
from longrun.identity import BANNER, __codename__, __tagline__, __version__
from longrun.project import Project

load_dotenv()

app = typer.Typer(
    name="longrun",
    help=f"{__codename__} — {__tagline__}\nHarness for long-running coding agents.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)
state_app = typer.Typer(help="Read or change the agent run state.", no_args_is_help=True)
backlog_app = typer.Typer(help="Human requests that pre-empt the feature list.", no_args_is_help=True)
tests_app = typer.Typer(help="Evidence-gated test cases.", no_args_is_help=True)
app.add_typer(state_app, name="state")
app.add_typer(backlog_app, name="backlog")
app.add_typer(tests_app, name="tests")

console = Console()

ProjectOption = typer.Option(None, "--project", "-p", help="Project directory (default: cwd)")


def version_callback(value: bool):
    if value:
        console.print(f"{__codename__} v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Optional[bool] = typer.Option(
        None,
        "--version",
        callback=version_callback,
        is_eager=True,
        help="Show the version and exit.",
    ),
):
    pass


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _print_banner():
    console.print(f"[bright_cyan]{escape(BANNER)}[/]")
    console.print(f"  [dim]v{__version__} — {__tagline__}[/]\n")


def _configure_logging(verbose: bool) -> None:
    logger.remove()
    if verbose:
        logger.add(
            lambda msg: console.print(f"[dim]{escape(str(msg))}[/]", highlight=False),
            level="DEBUG",
            format="{time:HH:mm:ss} | {level:<7} | {message}",
        )
    else:
        logger.add(
            lambda msg: console.print(f"[dim]{escape(str(msg))}[/]", highlight=False),
            level="WARNING",
            format="{message}",
        )


def _open(project: Optional[Path]) -> Project:
    return Project((project or Path.cwd()))


@contextmanager
def _guard() -> Iterator[None]:
    """Turn LONGRUN errors into a red message and exit code 1."""
    try:
        yield
    except LongrunError as e:
        console.print(f"[red]✗ {escape(str(e))}[/]")
        raise typer.Exit(1)


def _check(ok: bool) -> str:
    return "[green]✓[/]" if ok else "[red]✗[/]"


PROJECT_CONFIG_TEMPLATE = """\
# LONGRUN project-level config overrides
# These merge with the built-in defaults.

# environment:
#   start_command: "./init.sh"
#   base_url: "http://localhost:3000"

# verification:
#   lint_command: "npm run lint"
#   build_command: "npm run build"
#   behavior_command: null
#   parallel: false

# workflow:
#   max_iterations: 3

# agent:
#   command: "my-agent --stdin"
"""


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

@app.command()
def init(
    path: Optional[Path] = typer.Argument(None, help="Project directory"),
    spec: Optional[Path] = typer.Option(None, "--spec", "-s", exists=True, dir_okay=False, help="Project spec YAML to expand into features"),
    name: Optional[str] = typer.Option(None, "--name", "-n", help="Project name (default: directory name)"),
    force: bool = typer.Option(False, "--force", help="Overwrite an existing feature list"),
):
    """Initialize LONGRUN bookkeeping in a project directory."""
    _print_banner()

    root = (path or Path.cwd()).resolve()
    root.mkdir(parents=True, exist_ok=True)
    config_dir = root / PROJECT_CONFIG_DIR
    config_dir.mkdir(exist_ok=True)
    config_path = config_dir / "config.yaml"
    if not config_path.exists():
        config_path.write_text(PROJECT_CONFIG_TEMPLATE)

    with _guard():
        project = Project(root)
        project.log_dir.mkdir(parents=True, exist_ok=True)
        project_name = name or root.name

        if not project.state.path.exists():
            project.state.pause(note="Initialized", set_by="human")
        if project.progress.initialize(project_name):
            console.print(f"  [green]+[/] {project.progress.journal_path.name}")
        if not project.ledger.path.exists():
            project.ledger.initialize()
            console.print(f"  [green]+[/] {project.ledger.path.name}")

        if spec:
            project_spec = ProjectSpec.from_yaml(spec)
            features = generate_features(project_spec)
            project.features.initialize(project_spec.name or project_name, features, overwrite=force)
            console.print(f"  [green]+[/] {project.features.path.name} ({len(features)} features)")

    console.print(f"\n[bold green]✓ LONGRUN initialized in {escape(str(root))}[/]")


@app.command()
def status(project: Optional[Path] = ProjectOption):
    """Show features, backlog, state and recent progress."""
    _print_banner()

    with _guard():
        proj = _open(project)
        summary = proj.features.summary()
        coordinator = Coordinator(proj)

        table = Table(title="Features", border_style="cyan")
        table.add_column("Category")
        table.add_column("Done", justify="right")
        table.add_column("Total", justify="right")
        for category, progress in sorted(summary.by_category.items()):
            table.add_row(category, str(progress.completed), str(progress.total))
        table.add_row(
            "[bold]all[/]",
            f"[bold]{summary.completed}[/]",
            f"[bold]{summary.total}[/] ({summary.percentage}%)",
        )
        console.print(table)

        backlog = proj.backlog.summary()
        snapshot = proj.progress.snapshot()
        state = proj.state.read()

        info = Table(title="Project", border_style="magenta", show_header=False)
        info.add_column("Property")
        info.add_column("Value")
        info.add_row("Phase", coordinator.determine_phase())
        info.add_row("Agent state", escape(proj.state.summary_of(state)))
        info.add_row("Human backlog", f"{backlog.total - backlog.completed} open / {backlog.total}")
        info.add_row("Sessions", str(snapshot.total_sessions))
        info.add_row("Current streak", str(snapshot.current_streak))
        if snapshot.last_session_at:
            info.add_row("Last session", snapshot.last_session_at.isoformat(timespec="seconds"))
        console.print(info)

        for warning in proj.state.last_warnings:
            console.print(f"[yellow]⚠ {escape(warning)}[/]")


@app.command()
def features(
    project: Optional[Path] = ProjectOption,
    incomplete: bool = typer.Option(False, "--incomplete", "-i", help="Only failing features"),
    category: Optional[str] = typer.Option(None, "--category", "-c", help="Filter by category"),
):
    """List features in priority order."""
    with _guard():
        proj = _open(project)
        items = proj.features.by_category(category) if category else proj.features.all()

    if incomplete:
        items = [f for f in items if not f.passes]
    if not items:
        console.print("[dim]No features.[/]")
        return

    table = Table(title="Features", border_style="cyan")
    table.add_column("ID")
    table.add_column("Pri", justify="right")
    table.add_column("Category")
    table.add_column("Description")
    table.add_column("Passes")
    for f in sorted(items, key=lambda f: f.priority):
        table.add_row(f.id, str(f.priority), f.category, escape(f.description), _check(f.passes))
    console.print(table)


@app.command("next")
def next_(project: Optional[Path] = ProjectOption):
    """Show what the next session should work on."""
    with _guard():
        proj = _open(project)
        directive = Coordinator(proj).directive()

    color = "green" if directive.action == "run" else "yellow"
    lines = [
        f"[bold]Action:[/] [{color}]{directive.action}[/]",
        f"[bold]Role:[/] {directive.role or '-'}",
        f"[bold]Source:[/] {directive.source}",
        f"[bold]Phase:[/] {directive.phase}",
    ]
    if directive.item_id:
        lines.append(f"[bold]Backlog item:[/] {directive.item_id}")
    if directive.feature_id:
        lines.append(f"[bold]Feature:[/] {directive.feature_id}")
    lines.append(f"[bold]Reason:[/] {escape(directive.reason)}")
    console.print(Panel("\n".join(lines), title="Next Session", border_style=color))


@app.command()
def prompt(
    project: Optional[Path] = ProjectOption,
    agent_type: Optional[str] = typer.Option(
        None, "--type", "-t", help="initializer | coding | testing | cleanup (default: derived)"
    ),
):
    """Print the session prompt for an agent role."""
    if agent_type and agent_type not in ("initializer", "coding", "testing", "cleanup"):
        console.print(f"[red]Unknown agent type: {escape(agent_type)}[/]")
        raise typer.Exit(1)
    with _guard():
        text = Coordinator(_open(project)).build_prompt(agent_type)
    typer.echo(text)


@app.command()
def sessions(
    project: Optional[Path] = ProjectOption,
    count: int = typer.Option(10, "--count", "-n", help="Number of sessions to show"),
    stats: bool = typer.Option(False, "--stats", "-s", help="Show aggregate statistics"),
):
    """View recent sessions and statistics."""
    with _guard():
        store = _open(project).sessions

        if stats:
            s = store.statistics()
            if s.total_sessions == 0:
                console.print("[dim]No sessions yet.[/]")
                return
            table = Table(title="Session Statistics", border_style="cyan")
            table.add_column("Metric")
            table.add_column("Value")
            table.add_row("Total sessions", str(s.total_sessions))
            table.add_row("Completed", str(s.completed_sessions))
            table.add_row("Failed", str(s.failed_sessions))
            table.add_row("Features completed", str(s.total_features_completed))
            table.add_row("Checks passed", f"{s.total_tests_passed}/{s.total_tests_run} ({s.test_pass_rate}%)")
            table.add_row("Avg duration", f"{s.average_session_duration_ms / 1000:.1f}s")
            for agent_type, n in s.sessions_by_type.items():
                table.add_row(f"  {agent_type}", str(n))
            console.print(table)
            return

        recent = store.recent(count)

    if not recent:
        console.print("[dim]No sessions yet.[/]")
        return

    table = Table(title=f"Recent Sessions (last {count})", border_style="cyan")
    table.add_column("Started", style="dim")
    table.add_column("Session")
    table.add_column("Status")
    table.add_column("Feature")
    table.add_column("Summary")
    for s in recent:
        color = {"completed": "green", "running": "cyan", "pending": "dim"}.get(s.status, "red")
        summary = s.result.summary if s.result else ""
        table.add_row(
            s.start_time.isoformat(timespec="seconds"),
            s.id,
            f"[{color}]{s.status}[/]",
            s.feature_id or "",
            escape(summary[:60]),
        )
    console.print(table)


def _print_step(event: LongrunEvent) -> None:
    if event.event_type != "step_completed":
        return
    step = event.payload
    mark = "[green]✓[/]" if step.get("success") else "[red]✗[/]"
    detail = step.get("output") if step.get("success") else step.get("error")
    first_line = (detail or "").splitlines()[0] if detail else ""
    console.print(f"  {mark} [bold]{step.get('name')}[/] [dim]{escape(first_line[:100])}[/]")


@app.command()
def run(
    project: Optional[Path] = ProjectOption,
    agent_command: Optional[str] = typer.Option(
        None, "--agent", "-a", help="Shell command for the coding agent (prompt on stdin)"
    ),
    max_iterations: Optional[int] = typer.Option(
        None, "--max-iterations", "-m", min=1, help="Code/verify attempts before giving up"
    ),
    force: bool = typer.Option(False, "--force", "-f", help="Run even if the agent state says pause"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """Run one workflow: init environment, select, code, verify."""
    _print_banner()
    _configure_logging(verbose)

    with _guard():
        proj = _open(project)
        if proj.state.should_pause() and not force:
            console.print(
                f"[yellow]⏸ Agent state says stop ({escape(proj.state.summary())}). "
                "Use `longrun state continue` or --force.[/]"
            )
            return

        config = proj.config
        if max_iterations:
            config.workflow.max_iterations = max_iterations
        command = agent_command or config.agent.command
        agent: CodingAgent = CommandAgent(command, config.agent.timeout) if command else NullAgent()

        bus = EventBus()
        AuditLogger(proj.log_dir / "events.jsonl", bus)
        bus.subscribe(_print_step)

        console.print(Panel(
            f"[bold]Project:[/] {escape(str(proj.root))}\n"
            f"[bold]Agent:[/] {escape(command or 'none (external)')}\n"
            f"[bold]Max iterations:[/] {config.workflow.max_iterations}",
            title=f"{__codename__} run",
            border_style="cyan",
        ))

        result = WorkflowController(proj, agent, bus=bus).run()

    color = {"completed": "green", "nothing_to_do": "cyan"}.get(result.status, "red")
    body = [
        f"[bold]Status:[/] [{color}]{result.status}[/]",
        f"[bold]Feature:[/] {result.feature_id or '-'}",
        f"[bold]Iterations:[/] {result.iterations}",
    ]
    if result.failed_checks:
        body.append("[bold]Failed checks:[/]")
        for name in result.failed_checks:
            check = result.verification.get(name) if result.verification else None
            detail = f": {escape(check.error)}" if check and check.error else ""
            body.append(f"  [red]✗[/] {name}{detail}")
    console.print(Panel("\n".join(body), title="Result", border_style=color))

    if not result.success:
        if result.last_output:
            console.print(Panel(escape(result.last_output[-2000:]), title="Last output", border_style="dim"))
        raise typer.Exit(1)


@app.command()
def note(
    text: str = typer.Argument(..., help="Note text"),
    project: Optional[Path] = ProjectOption,
):
    """Append a free-form note to the progress journal."""
    with _guard():
        _open(project).progress.add_note(text)
    console.print("[green]✓ Note added[/]")


# ---------------------------------------------------------------------------
# State
# ---------------------------------------------------------------------------

NoteOption = typer.Option(None, "--note", help="Reason recorded with the change")


def _show_state(proj: Project) -> None:
    record = proj.state.read()
    table = Table(title="Agent State", border_style="cyan", show_header=False)
    table.add_column("Field")
    table.add_column("Value")
    table.add_row("desired_state", record.desired_state.value)
    table.add_row("current_state", record.current_state.value)
    table.add_row("phase", record.phase or "-")
    table.add_row("set by", record.set_by)
    table.add_row("note", escape(record.note))
    table.add_row("timestamp", record.timestamp.isoformat(timespec="seconds"))
    console.print(table)
    for warning in proj.state.last_warnings:
        console.print(f"[yellow]⚠ {escape(warning)}[/]")


@state_app.command("show")
def state_show(project: Optional[Path] = ProjectOption):
    """Show the agent state."""
    with _guard():
        _show_state(_open(project))


@state_app.command("pause")
def state_pause(project: Optional[Path] = ProjectOption, note: Optional[str] = NoteOption):
    """Stop after the current session."""
    with _guard():
        proj = _open(project)
        proj.state.pause(note, set_by="human")
    _show_state(proj)


@state_app.command("continue")
def state_continue(project: Optional[Path] = ProjectOption, note: Optional[str] = NoteOption):
    """Keep running sessions back to back."""
    with _guard():
        proj = _open(project)
        proj.state.start_continuous(note, set_by="human")
    _show_state(proj)


@state_app.command("once")
def state_once(project: Optional[Path] = ProjectOption, note: Optional[str] = NoteOption):
    """Run a single session, then pause."""
    with _guard():
        proj = _open(project)
        proj.state.request_run_once(note, set_by="human")
    _show_state(proj)


@state_app.command("cleanup")
def state_cleanup(project: Optional[Path] = ProjectOption, note: Optional[str] = NoteOption):
    """Make the next session a cleanup session."""
    with _guard():
        proj = _open(project)
        proj.state.request_cleanup(note, set_by="human")
    _show_state(proj)


@state_app.command("terminate")
def state_terminate(project: Optional[Path] = ProjectOption, note: Optional[str] = NoteOption):
    """Stop for good."""
    with _guard():
        proj = _open(project)
        proj.state.terminate(note, set_by="human")
    _show_state(proj)


# ---------------------------------------------------------------------------
# Human backlog
# ---------------------------------------------------------------------------

@backlog_app.command("list")
def backlog_list(
    project: Optional[Path] = ProjectOption,
    all_items: bool = typer.Option(False, "--all", help="Include completed items"),
    priority: Optional[str] = typer.Option(None, "--priority", "-P", help="Only items with this priority"),
):
    """List backlog items."""
    with _guard():
        backlog = _open(project).backlog
        items = backlog.by_priority(priority) if priority else backlog.load()
    if not all_items:
        items = [i for i in items if not i.completed]
    if not items:
        console.print("[dim]Backlog is empty.[/]")
        return

    table = Table(title="Human Backlog", border_style="cyan")
    table.add_column("ID")
    table.add_column("Type")
    table.add_column("Priority")
    table.add_column("Status")
    table.add_column("Votes", justify="right")
    table.add_column("Description")
    for item in items:
        table.add_row(
            item.id, item.type, item.priority, item.status,
            str(item.vote_count), escape(item.description),
        )
    console.print(table)


@backlog_app.command("add")
def backlog_add(
    description: str = typer.Argument(..., help="What needs doing"),
    project: Optional[Path] = ProjectOption,
    item_type: str = typer.Option("feature", "--type", "-t", help="bug | feature | idea"),
    priority: str = typer.Option("medium", "--priority", "-P", help="critical | high | medium | low"),
    details: str = typer.Option("", "--details", "-d"),
    issue: Optional[int] = typer.Option(None, "--issue", help="External issue number"),
):
    """Add a human request."""
    if item_type not in ("bug", "feature", "idea"):
        console.print(f"[red]Unknown type: {escape(item_type)}[/]")
        raise typer.Exit(1)
    if priority not in ("critical", "high", "medium", "low"):
        console.print(f"[red]Unknown priority: {escape(priority)}[/]")
        raise typer.Exit(1)
    with _guard():
        item = _open(project).backlog.add_item(item_type, priority, description, details, issue)
    console.print(f"[green]✓ Added {item.id}[/]")


@backlog_app.command("next")
def backlog_next(project: Optional[Path] = ProjectOption):
    """Show the backlog item to work on next."""
    with _guard():
        item = _open(project).backlog.next_item()
    if item is None:
        console.print("[dim]Nothing open in the backlog.[/]")
        return
    console.print(Panel(
        f"[bold]{escape(item.description)}[/]\n{escape(item.details)}\n\n"
        f"{item.type} · {item.priority} · {item.status}",
        title=item.id,
        border_style="cyan",
    ))


@backlog_app.command("comment")
def backlog_comment(
    item_id: str = typer.Argument(...),
    text: str = typer.Argument(...),
    project: Optional[Path] = ProjectOption,
    author: str = typer.Option("human", "--author", help="agent | human"),
):
    """Comment on a backlog item."""
    if author not in ("agent", "human"):
        console.print(f"[red]Unknown author: {escape(author)}[/]")
        raise typer.Exit(1)
    with _guard():
        _open(project).backlog.add_comment(item_id, author, text)
    console.print("[green]✓ Comment added[/]")


@backlog_app.command("start")
def backlog_start(item_id: str = typer.Argument(...), project: Optional[Path] = ProjectOption):
    """Mark an item in progress."""
    with _guard():
        _open(project).backlog.mark_in_progress(item_id)
    console.print(f"[green]✓ {item_id} in progress[/]")


@backlog_app.command("block")
def backlog_block(
    item_id: str = typer.Argument(...),
    reason: str = typer.Argument(...),
    project: Optional[Path] = ProjectOption,
):
    """Mark an item blocked, recording why."""
    with _guard():
        _open(project).backlog.mark_blocked(item_id, reason)
    console.print(f"[yellow]{item_id} blocked[/]")


@backlog_app.command("done")
def backlog_done(item_id: str = typer.Argument(...), project: Optional[Path] = ProjectOption):
    """Mark an item done."""
    with _guard():
        _open(project).backlog.mark_complete(item_id)
    console.print(f"[green]✓ {item_id} done[/]")


@backlog_app.command("report")
def backlog_report(project: Optional[Path] = ProjectOption):
    """Print the backlog as markdown."""
    with _guard():
        report = _open(project).backlog.export_report()
    typer.echo(report)


# ---------------------------------------------------------------------------
# Test ledger
# ---------------------------------------------------------------------------

@tests_app.command("list")
def tests_list(
    project: Optional[Path] = ProjectOption,
    failing: bool = typer.Option(False, "--failing", help="Only failing tests"),
):
    """List test cases."""
    with _guard():
        ledger = _open(project).ledger
        tests = ledger.failing() if failing else ledger.load().tests
    if not tests:
        console.print("[dim]No tests.[/]")
        return
    table = Table(title="Tests", border_style="cyan")
    table.add_column("ID")
    table.add_column("Priority")
    table.add_column("Category")
    table.add_column("Description")
    table.add_column("Passes")
    for t in tests:
        table.add_row(t.id, t.priority, t.category, escape(t.description), _check(t.passes))
    console.print(table)


@tests_app.command("pass")
def tests_pass(
    test_id: str = typer.Argument(...),
    screenshot: str = typer.Option(..., "--screenshot", help="Path to the screenshot evidence"),
    console_log: str = typer.Option(..., "--console-log", help="Path to the captured console log"),
    notes: Optional[str] = typer.Option(None, "--notes"),
    project: Optional[Path] = ProjectOption,
):
    """Mark a test passing. Requires evidence on disk."""
    with _guard():
        _open(project).ledger.mark_passing(test_id, screenshot, console_log, notes)
    console.print(f"[green]✓ {test_id} passing[/]")


@tests_app.command("fail")
def tests_fail(
    test_id: str = typer.Argument(...),
    reason: Optional[str] = typer.Option(None, "--reason"),
    project: Optional[Path] = ProjectOption,
):
    """Mark a test failing."""
    with _guard():
        _open(project).ledger.mark_failing(test_id, reason)
    console.print(f"[yellow]{test_id} failing[/]")


@tests_app.command("validate")
def tests_validate(project: Optional[Path] = ProjectOption):
    """Check the test ledger and feature list for integrity issues."""
    with _guard():
        proj = _open(project)
        issues = proj.ledger.validate() + proj.features.validate()
    if not issues:
        console.print("[green]✓ No issues found[/]")
        return
    for issue in issues:
        console.print(f"[red]✗ {escape(issue)}[/]")
    raise typer.Exit(1)


@tests_app.command("report")
def tests_report(project: Optional[Path] = ProjectOption):
    """Print the test ledger as markdown."""
    with _guard():
        report = _open(project).ledger.export_report()
    typer.echo(report)


# ---------------------------------------------------------------------------
# Entry
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    app()
