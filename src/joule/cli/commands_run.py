"""Task execution CLI commands.

Commands:
- run: Execute a task and print the result
- budget presets: Show the budget presets
"""

import json

import typer
from typer import Typer

from joule.cli.app import app, build_engine, fail
from joule.kernel.models import BUDGET_PRESETS, TaskStatus

STATUS_ICONS = {
    TaskStatus.COMPLETED: "✅",
    TaskStatus.FAILED: "❌",
    TaskStatus.BUDGET_EXHAUSTED: "⚠️",
}

budget_app = Typer(help="Budget commands")
app.add_typer(budget_app, name="budget")


@app.command()
def run(
    task: str = typer.Argument(..., help="Task description"),
    budget: str = typer.Option("medium", "--budget", "-b", help="Budget preset"),
    fake: bool = typer.Option(False, "--fake", help="Use the deterministic fake provider"),
    as_json: bool = typer.Option(False, "--json", help="Print the full result as JSON"),
):
    """Execute a task.

    Examples:
        joule run "What is the capital of France?"
        joule run "Summarize the release notes" --budget high
    """
    if budget not in BUDGET_PRESETS:
        fail(f"Unknown budget preset '{budget}'. Choose from: {', '.join(BUDGET_PRESETS)}")

    engine = build_engine(fake=fake)
    result = engine.run(task, budget=budget)

    if as_json:
        typer.echo(json.dumps(result.model_dump(mode="json", exclude={"trace"}), indent=2))
    else:
        typer.echo(f"{STATUS_ICONS[result.status]} {result.status.value}")
        if result.result:
            typer.echo(result.result)
        if result.error:
            typer.echo(f"   Error: {result.error}")
        for step in result.step_results:
            mark = "✓" if step.success else "✗"
            typer.echo(f"   {mark} step {step.step_index + 1}: {step.tool_name}")
        usage = result.budget_used.summary()
        typer.echo("📊 " + ", ".join(f"{k}={v}" for k, v in usage.items()))
        typer.echo(f"🧭 Trace: {result.trace_id}")

    if result.status != TaskStatus.COMPLETED:
        raise typer.Exit(1)


@budget_app.command(name="presets")
def budget_presets():
    """Show the limits of each budget preset."""
    for name, envelope in BUDGET_PRESETS.items():
        typer.echo(f"{name}:")
        for key, value in envelope.model_dump().items():
            if value is not None:
                typer.echo(f"  {key}: {value}")
