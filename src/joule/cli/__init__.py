"""CLI package for Joule.

The main Typer app is created in app.py and commands are registered from
each commands_* module on import.
"""

# Import command modules to register commands with the app
import joule.cli.commands_run  # noqa: F401, E402
import joule.cli.commands_trace  # noqa: F401, E402
from joule.cli.app import app

__all__ = ["app"]
