"""Error taxonomy for the Joule kernel.

All kernel errors derive from JouleError so callers (the CLI, host
services) can catch one base class. Budget exhaustion carries the
exhausted dimension and a usage snapshot so the executor can surface a
partial result.
"""

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from joule.kernel.models import BudgetUsage


class JouleError(Exception):
    """Base exception for kernel errors."""

    def __init__(self, message: str, code: str = "JOULE_ERROR"):
        super().__init__(message)
        self.code = code


class BudgetExhaustedError(JouleError):
    """A tracked budget dimension has run out."""

    def __init__(self, dimension: str, usage: "BudgetUsage"):
        super().__init__(f"Budget exhausted: {dimension}", code="BUDGET_EXHAUSTED")
        self.dimension = dimension
        self.usage = usage


class ToolNotFoundError(JouleError):
    """The requested tool is not registered."""

    def __init__(self, tool_name: str):
        super().__init__(f"Tool not found: {tool_name}", code="TOOL_NOT_FOUND")
        self.tool_name = tool_name


class ToolExecutionError(JouleError):
    """A tool raised, timed out, or rejected its arguments."""

    def __init__(
        self,
        tool_name: str,
        message: str,
        original_error: Optional[Exception] = None,
    ):
        super().__init__(
            f"Tool '{tool_name}' failed: {message}", code="TOOL_EXECUTION_ERROR"
        )
        self.tool_name = tool_name
        self.original_error = original_error


class ProviderNotAvailableError(JouleError):
    """No model provider can serve the requested tier."""

    def __init__(self, provider: str):
        super().__init__(
            f"Provider not available: {provider}", code="PROVIDER_NOT_AVAILABLE"
        )
        self.provider = provider


class ConfigError(JouleError):
    """Invalid configuration value."""

    def __init__(self, message: str):
        super().__init__(message, code="CONFIG_ERROR")


class ConstitutionViolationError(JouleError):
    """A critical policy rule was violated."""

    def __init__(self, rule_id: str, rule_name: str, message: str):
        super().__init__(
            f"Constitution violation [{rule_id}] {rule_name}: {message}",
            code="CONSTITUTION_VIOLATION",
        )
        self.rule_id = rule_id
        self.rule_name = rule_name
