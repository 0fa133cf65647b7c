"""CLI app setup and common utilities.

This module creates the main Typer app and the helpers shared by command
modules for building a Joule instance and reporting errors.
"""

from typing import Optional

import typer
from typer import Typer

from joule.config import config, setup_logging
from joule.errors import JouleError

# Initialize Typer app
app = Typer(
    name="joule",
    help="Joule: budget-aware task orchestration for agentic AI.",
)


@app.callback()
def init_app(
    log_level: Optional[str] = typer.Option(
        None, "--log-level", help="Logging level (default: JOULE_LOG_LEVEL)"
    ),
):
    """Configure logging before any command runs."""
    setup_logging(log_level or config.log_level)


def fail(message: str) -> None:
    """Print an error line and exit with status 1."""
    typer.echo(f"❌ {message}", err=True)
    raise typer.Exit(1)


def build_engine(fake: bool = False):
    """Create a Joule instance from configuration.

    Args:
        fake: Use the deterministic fake provider instead of real ones
    """
    from joule.engine import Joule
    from joule.kernel.policy import PolicyEnforcer
    from joule.llm.providers import FakeProvider
    from joule.llm.registry import ModelProviderRegistry

    try:
        if not fake:
            return Joule.from_config(config)
        return Joule(
            providers=ModelProviderRegistry().register(FakeProvider()),
            routing=config.routing.model_copy(
                update={"provider_priority": {"slm": ["fake"], "llm": ["fake"]}}
            ),
            energy=config.energy,
            policy=PolicyEnforcer(),
            default_budget=config.default_budget,
        )
    except JouleError as e:
        fail(str(e))
