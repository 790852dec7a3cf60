import json
from pathlib import Path
from typing import List, Optional

import typer
from rich import print
from rich.console import Console
from rich.table import Table

from .config import get_config, set_config
from .engine import JobQueue
from .errors import JobQueueError
from .models import Job
from .storage import JobStore
from .utils import configure_logging
from .worker import run_engine

app = typer.Typer(help="jobqueue - persistent job queue with priorities, retries and per-queue concurrency.")
config_app = typer.Typer(help="Read and write engine settings.")
app.add_typer(config_app, name="config")

_state = {"db": None}


def _store() -> JobStore:
    return JobStore(_state["db"])


def _engine() -> JobQueue:
    return JobQueue(_store())


@app.callback()
def main(
    db: Optional[Path] = typer.Option(None, "--db", envvar="JOBQUEUE_DB", help="Database file (default: $JOBQUEUE_HOME/jobs.db)"),
    log_level: str = typer.Option("WARNING", "--log-level", help="Logging level"),
):
    _state["db"] = db
    configure_logging(log_level)


# -----------------------------
# Producer commands
# -----------------------------
@app.command()
def enqueue(
    job_type: str = typer.Argument(..., help="Handler type, e.g. email"),
    payload: Optional[str] = typer.Argument(None, help="JSON payload, e.g. '{\"to\":\"a@b.c\"}'"),
    json_file: Optional[Path] = typer.Option(None, "--json-file", help="Read the JSON payload from a file"),
    queue: str = typer.Option("default", "--queue", "-q"),
    priority: int = typer.Option(0, help="Higher runs first"),
    delay_ms: int = typer.Option(0, "--delay-ms", help="Earliest run, in milliseconds from now"),
    max_attempts: Optional[int] = typer.Option(None, "--max-attempts"),
    unique: bool = typer.Option(False, "--unique", help="Reuse an in-flight job with the same type and payload"),
):
    """Add a job to a queue."""
    if json_file:
        payload = json_file.read_text(encoding="utf-8").strip()
    try:
        data = json.loads(payload) if payload else {}
    except json.JSONDecodeError as e:
        raise typer.BadParameter(f"Invalid JSON: {e.msg}")
    try:
        job_id = _engine().add_job(
            job_type, data, queue=queue, priority=priority,
            delay_ms=delay_ms, max_attempts=max_attempts, unique=unique,
        )
    except (ValueError, JobQueueError) as e:
        print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)
    print(f"[green]Enqueued[/green] job [bold]{job_id}[/bold]")


@app.command()
def get(job_id: str):
    """Show one job as JSON."""
    job = _engine().get_job(job_id)
    if job is None:
        print(f"[red]Not found:[/red] {job_id}")
        raise typer.Exit(1)
    Console(soft_wrap=True).print_json(job.model_dump_json())


@app.command()
def cancel(job_id: str):
    """Cancel a pending job."""
    try:
        _engine().cancel_job(job_id)
    except JobQueueError as e:
        print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)
    print(f"[yellow]Cancelled[/yellow] {job_id}")


# -----------------------------
# Status & listing
# -----------------------------
@app.command("list")
def list_cmd(
    queue: Optional[str] = typer.Option(None, "--queue", "-q"),
    status: Optional[str] = typer.Option(None, "--status", help="pending | processing | completed | failed | cancelled"),
    limit: int = typer.Option(50, "--limit"),
):
    """List recent jobs, newest first."""
    try:
        rows: List[Job] = _engine().list_jobs(queue=queue, status=status, limit=limit)
    except ValueError as e:
        raise typer.BadParameter(str(e))
    t = Table(title="Jobs")
    for c in ["id", "queue", "type", "status", "attempts", "priority", "scheduled_at", "error"]:
        t.add_column(c)
    for r in rows:
        t.add_row(
            r.id, r.queue, r.type, r.status,
            f"{r.attempts}/{r.max_attempts}", str(r.priority),
            r.scheduled_at.isoformat(), (r.error or "")[:80],
        )
    Console().print(t)


@app.command()
def stats(queue: Optional[str] = typer.Argument(None, help="Queue name (all queues with jobs if omitted)")):
    """Job counts over the stats window."""
    engine = _engine()
    names = [queue] if queue else sorted(set(engine.store.queue_names()) | {"default"})
    t = Table(title=f"Last {engine.settings.stats_window_hours:g}h")
    for c in ["queue", "pending", "processing", "completed", "failed", "cancelled", "avg ms"]:
        t.add_column(c)
    for name in names:
        s = engine.get_queue_stats(name)
        avg = f"{s.avg_processing_time_ms:.0f}" if s.avg_processing_time_ms is not None else ""
        t.add_row(name, str(s.pending), str(s.processing), str(s.completed), str(s.failed), str(s.cancelled), avg)
    Console().print(t)


# -----------------------------
# Maintenance
# -----------------------------
@app.command()
def cleanup(days: Optional[float] = typer.Option(None, "--days", help="Age threshold (default: cleanup_days setting)")):
    """Delete completed and failed jobs older than --days."""
    deleted = _engine().cleanup_jobs(days)
    print(f"Deleted {deleted} job(s)")


@app.command()
def recover(grace_seconds: Optional[float] = typer.Option(None, "--grace-seconds")):
    """Requeue jobs left 'processing' by an engine that is no longer running."""
    requeued, failed = _engine().recover_stale(grace_seconds)
    print(f"Requeued {requeued}, failed {failed}")


# -----------------------------
# Engine process
# -----------------------------
def _parse_queues(specs: List[str]):
    queues = {}
    for spec in specs:
        name, sep, concurrency = spec.partition("=")
        if not sep or not name:
            raise typer.BadParameter(f"Expected name=concurrency, got {spec!r}")
        try:
            queues[name] = int(concurrency)
        except ValueError:
            raise typer.BadParameter(f"Concurrency must be an integer: {spec!r}")
    return queues


@app.command()
def run(
    queue: Optional[List[str]] = typer.Option(None, "--queue", "-q", help="name=concurrency, repeatable (default queues if omitted)"),
    app_target: Optional[str] = typer.Option(None, "--app", help="module:function that registers handlers"),
):
    """Run the scheduler until Ctrl+C or `jobqueue stop`."""
    queues = _parse_queues(queue) if queue else None
    print("Starting scheduler. Ctrl+C to stop.")
    run_engine(_store(), queues=queues, app=app_target)


@app.command()
def stop():
    """Ask a running engine to stop after its in-flight jobs finish."""
    set_config(_store(), "shutdown", "true")
    print("[yellow]Set shutdown=true. The engine exits once in-flight jobs finish.[/yellow]")


# -----------------------------
# Config
# -----------------------------
@config_app.command("get")
def config_get_cmd(key: Optional[str] = typer.Argument(None, help="Config key (all if omitted)")):
    store = _store()
    if key is None:
        print(json.dumps(store.config_all(), indent=2))
        return
    try:
        print(get_config(store, key))
    except ValueError as e:
        print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)


@config_app.command("set")
def config_set_cmd(key: str = typer.Argument(..., help="Config key"), value: str = typer.Argument(..., help="Value")):
    try:
        set_config(_store(), key, value)
    except ValueError as e:
        print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)
    print(f"set {key}={value}")
