"""Trace inspection CLI commands.

Commands:
- trace list: List persisted traces
- trace show: Print a persisted trace as a span tree
"""

from typing import Optional

import typer
from typer import Typer

from joule.cli.app import app, fail
from joule.config import config
from joule.kernel.models import TraceSpan

trace_app = Typer(help="Execution trace commands")
app.add_typer(trace_app, name="trace")


def _repository():
    from joule.storage.traces import SQLiteTraceRepository

    if not config.db_path.exists():
        fail(f"No trace database at {config.db_path} (set JOULE_PERSIST_TRACES=true)")
    return SQLiteTraceRepository(config.db_path)


def _echo_span(span: TraceSpan, depth: int = 0) -> None:
    indent = "  " * depth
    duration = (span.end_time - span.start_time) if span.end_time is not None else 0.0
    typer.echo(f"{indent}▸ {span.name} ({duration:.0f} ms)")
    for event in span.events:
        typer.echo(f"{indent}    · {event.type.value} {event.data}")
    for child in span.children:
        _echo_span(child, depth + 1)


@trace_app.command(name="list")
def trace_list(
    limit: int = typer.Option(20, "--limit", "-l", help="Maximum traces"),
    task_id: Optional[str] = typer.Option(None, "--task", help="Only traces for this task"),
):
    """List persisted traces, newest first."""
    with _repository() as repo:
        rows = repo.list_traces(limit=limit, task_id=task_id)
    if not rows:
        typer.echo("No traces found")
        return
    for row in rows:
        typer.echo(
            f"  [{row['trace_id']}] task={row['task_id']} "
            f"duration={row['total_duration_ms']:.0f} ms"
        )


@trace_app.command(name="show")
def trace_show(trace_id: str = typer.Argument(..., help="Trace id")):
    """Print a trace as a span tree with its events."""
    with _repository() as repo:
        trace = repo.load(trace_id)
    if trace is None:
        fail(f"Trace not found: {trace_id}")

    typer.echo(f"🧭 Trace {trace.trace_id} (task {trace.task_id})")
    typer.echo(f"   Duration: {trace.total_duration_ms:.0f} ms")
    for key, value in trace.budget.used.summary().items():
        typer.echo(f"   {key}: {value}")
    for span in trace.spans:
        _echo_span(span)
