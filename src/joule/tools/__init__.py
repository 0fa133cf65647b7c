"""Tool registry used by the task executor."""

from joule.tools.registry import ToolDefinition, ToolRegistry

__all__ = ["ToolDefinition", "ToolRegistry"]
