"""CLI entry point for the flowwatch workflow supervisor."""

from __future__ import annotations

import asyncio
import json
import signal
from typing import Optional

import typer
from rich.console import Console

app = typer.Typer(help="flowwatch workflow supervisor", no_args_is_help=True)
console = Console()

STATUS_COLORS = {
    "pending": "yellow",
    "in_progress": "blue",
    "done": "green",
    "failed": "red",
}

RESPONSE_COLORS = {
    "auto_remediate": "red",
    "notify_suggest": "yellow",
    "notify_only": "dim",
}


def _open_queue():
    from flowwatch.config import get_settings
    from flowwatch.supervisor.task_queue import TaskQueue

    settings = get_settings()
    settings.ensure_workspace()
    return TaskQueue(
        settings.queue_path,
        settings.archive_path,
        expiry_hours=settings.queue_expiry_hours,
        max_size=settings.queue_max_size,
    )


@app.command()
def run(
    from_start: bool = typer.Option(False, "--from-start", help="Discard saved state and replay the whole log"),
) -> None:
    """Tail the workflow log and supervise it until interrupted."""
    from flowwatch.config import get_settings
    from flowwatch.errors import WorkspaceError
    from flowwatch.logging_config import setup_logging
    from flowwatch.supervisor.engine import SupervisionLoop

    setup_logging()
    settings = get_settings()
    try:
        engine = SupervisionLoop.from_settings(settings)
    except WorkspaceError as exc:
        console.print(f"[bold red]Cannot start:[/bold red] {exc}")
        raise typer.Exit(code=1)

    if from_start:
        from flowwatch.supervisor.persistence import SnapshotStore
        SnapshotStore(settings.state_path).clear()

    console.print("\n[bold cyan]🔭 flowwatch supervisor[/bold cyan]\n")
    console.print(f"  Log:        {settings.log_path}")
    console.print(f"  Queue:      {settings.queue_path}")
    console.print(f"  Thresholds: auto > {settings.auto_remediate_threshold}, "
                  f"suggest >= {settings.notify_suggest_threshold}")
    console.print(f"  Notify:     {settings.notify_verbosity}"
                  f"{' + ' + settings.notify_webhook_url if settings.notify_webhook_url else ''}")
    console.print()

    async def _run() -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, lambda: asyncio.ensure_future(engine.stop()))
        await engine.run()

    asyncio.run(_run())
    console.print("[yellow]Supervisor stopped.[/yellow]")


@app.command()
def status() -> None:
    """Show the persisted workflow state and queue summary."""
    from flowwatch.config import get_settings
    from flowwatch.errors import StateInconsistencyError
    from flowwatch.supervisor.persistence import SnapshotStore

    settings = get_settings()
    console.print("\n[bold cyan]🔭 Supervisor Status[/bold cyan]\n")

    try:
        snapshot = SnapshotStore(settings.state_path).load()
    except StateInconsistencyError as exc:
        console.print(f"[dim]No usable state snapshot ({exc})[/dim]")
    else:
        state = snapshot.state
        console.print("[bold]Workflow:[/bold]")
        console.print(f"  Command:        {state.current_command or '-'}"
                      f"{' (closed)' if state.command_closed else ''}")
        console.print(f"  Phase:          {state.current_phase or '-'}")
        console.print(f"  Last activity:  {state.last_activity_time or '-'}")
        console.print(f"  Milestones:     {len(state.milestone_timestamps)}")
        console.print(f"  Active workers: {len(state.active_workers)}")
        console.print(f"  Log offset:     {snapshot.log_offset}")
        console.print(f"  Malformed:      {snapshot.malformed_lines}")
        console.print(f"  Saved at:       {snapshot.saved_at}")
        if state.chain_progress:
            chain = ", ".join(f"{cmd}={st.value}" for cmd, st in state.chain_progress.items())
            console.print(f"  Chain:          {chain}")

    stats = _open_queue().stats()
    console.print()
    console.print("[bold]Queue:[/bold]")
    for name, count in stats["by_status"].items():
        console.print(f"  {name:14s}  {count}")
    console.print(f"  {'expired':14s}  {stats['expired']}")
    console.print()


@app.command()
def queue(
    status_filter: Optional[str] = typer.Option(None, "--status", "-s", help="Only tasks with this status"),
    limit: int = typer.Option(20, "--limit", "-n", help="Number of tasks to show"),
    purge: bool = typer.Option(False, "--purge", help="Remove done and failed tasks first"),
) -> None:
    """List remediation tasks, highest priority first."""
    q = _open_queue()
    if purge:
        removed = q.purge_finished()
        console.print(f"[dim]Purged {removed} finished tasks[/dim]")

    try:
        tasks = q.get_tasks(status_filter)
    except ValueError:
        console.print(f"[red]Unknown status: {status_filter}[/red]")
        raise typer.Exit(code=1)

    stats = q.stats()
    console.print("\n[bold cyan]🔭 Remediation Queue[/bold cyan]\n")
    console.print(f"  Total:    {stats['total']}")
    console.print(f"  Pending:  {stats['by_status']['pending']}")
    by_priority = ", ".join(f"{p}={n}" for p, n in stats["pending_by_priority"].items() if n)
    if by_priority:
        console.print(f"  Priority: {by_priority}")
    console.print()

    if not tasks:
        console.print("[dim]No tasks[/dim]\n")
        return
    for task in tasks[:limit]:
        color = STATUS_COLORS.get(task.status.value, "white")
        first_line = task.prompt.strip().splitlines()[0] if task.prompt.strip() else ""
        console.print(
            f"  [{color}]{task.status.value:11s}[/{color}] [dim]{task.id}[/dim] "
            f"{task.priority.value:8s} {task.anomaly_type:24s} x{task.occurrences} "
            f"{first_line[:60]}"
        )
    console.print()


@app.command()
def mark(
    task_id: str = typer.Argument(..., help="Task id"),
    new_status: str = typer.Argument(..., help="in_progress, done or failed"),
    result: Optional[str] = typer.Option(None, "--result", "-r", help="Outcome note"),
) -> None:
    """Move a task forward in its lifecycle."""
    from flowwatch.errors import InvalidTransitionError, TaskNotFoundError

    q = _open_queue()
    try:
        task = q.mark_status(task_id, new_status, result=result)
    except TaskNotFoundError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1)
    except InvalidTransitionError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1)
    except ValueError:
        console.print(f"[red]Unknown status: {new_status}[/red]")
        raise typer.Exit(code=1)
    console.print(f"[green]{task.id}[/green] -> {task.status.value}")


@app.command()
def query(
    command: str = typer.Argument(..., help="Command name, e.g. plan"),
    event: Optional[str] = typer.Option("COMPLETE", "--event", "-e", help="Event kind to match"),
    phase: Optional[str] = typer.Option(None, "--phase", "-p", help="Phase to match"),
) -> None:
    """Print the payload of the most recent matching log entry."""
    from flowwatch.config import get_settings
    from flowwatch.supervisor.log_reader import LogReader

    settings = get_settings()
    reader = LogReader(settings.log_path, max_read_bytes=settings.max_read_bytes)
    try:
        entry = reader.query_last(command, event=event or None, phase=phase)
    except ValueError:
        console.print(f"[red]Unknown event kind: {event}[/red]")
        raise typer.Exit(code=1)
    if entry is None:
        console.print(f"[yellow]No {event or 'entry'} found for {command}[/yellow]")
        raise typer.Exit(code=1)
    console.print_json(json.dumps(entry.data, default=str))


@app.command()
def analyze(
    at: Optional[str] = typer.Option(None, "--at", help="Evaluate absence detectors at this ISO time (default: now)"),
) -> None:
    """Dry run: replay the log and print every issue, without queueing anything."""
    from flowwatch.config import get_settings
    from flowwatch.supervisor.analyzer import WorkflowAnalyzer
    from flowwatch.supervisor.interventions import InterventionGenerator
    from flowwatch.supervisor.log_reader import LogReader
    from flowwatch.supervisor.models import parse_timestamp, utcnow
    from flowwatch.supervisor.rules import DetectionRules

    settings = get_settings()
    reader = LogReader(settings.log_path, max_read_bytes=settings.max_read_bytes)
    analyzer = WorkflowAnalyzer(
        DetectionRules.from_settings(settings),
        critical_threshold=settings.auto_remediate_threshold,
        warning_threshold=settings.notify_suggest_threshold,
    )
    generator = InterventionGenerator.from_settings(settings)

    batch = reader.read_through()
    issues = []
    for entry in batch.entries:
        issues.extend(analyzer.process(entry))
    now = parse_timestamp(at) if at else utcnow()
    issues.extend(analyzer.evaluate_timer(now))

    console.print("\n[bold cyan]🔭 Log Analysis[/bold cyan]\n")
    console.print(f"  Entries:   {len(batch.entries)}")
    console.print(f"  Malformed: {batch.malformed}")
    console.print(f"  Health:    {analyzer.health(issues).value}")
    console.print()

    if not issues:
        console.print("[green]No issues detected[/green]\n")
        return
    seen: set[str] = set()
    for issue in issues:
        intervention = generator.generate(issue)
        if intervention.signature in seen:
            continue
        seen.add(intervention.signature)
        color = RESPONSE_COLORS[intervention.response.value]
        console.print(
            f"  [{color}]{intervention.response.value:15s}[/{color}] "
            f"{issue.kind.value:18s} {issue.confidence:.2f}  {issue.description}"
        )
    console.print()


@app.command()
def webhook(
    host: Optional[str] = typer.Option(None, "--host", help="Bind address"),
    port: Optional[int] = typer.Option(None, "--port", help="Bind port"),
) -> None:
    """Serve the webhook ingress that feeds review events into the queue."""
    import uvicorn

    from flowwatch.api.app import create_app
    from flowwatch.config import get_settings
    from flowwatch.logging_config import setup_logging

    setup_logging()
    settings = get_settings()
    if not settings.webhook_secret:
        console.print("[yellow]FLOWWATCH_WEBHOOK_SECRET is not set; deliveries must be signed with an empty key[/yellow]")
    uvicorn.run(
        create_app(),
        host=host or settings.webhook_host,
        port=port or settings.webhook_port,
    )


if __name__ == "__main__":
    app()
