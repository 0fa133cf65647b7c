"""Tool registry for plan execution.

Tools are plain callables registered under a name, with an optional
pydantic model describing their arguments. The registry validates
arguments against that model before invoking the tool and wraps every
failure in a ToolExecutionError so the executor can record it per step.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, Type

from pydantic import BaseModel, ValidationError

from joule.errors import ToolExecutionError, ToolNotFoundError

logger = logging.getLogger(__name__)


@dataclass
class ToolDefinition:
    """A named tool and how to call it."""

    name: str
    description: str
    fn: Callable[..., Any]
    input_model: Optional[Type[BaseModel]] = None
    timeout_s: Optional[float] = None

    def describe(self) -> str:
        """One-line description including argument names, for prompts."""
        if self.input_model is None:
            return f"{self.name}: {self.description}"
        fields = ", ".join(
            f"{field_name}{'' if info.is_required() else '?'}"
            for field_name, info in self.input_model.model_fields.items()
        )
        return f"{self.name}({fields}): {self.description}"


class ToolRegistry:
    """Registry of executable tools.

    Usage:
        tools = ToolRegistry()

        @tools.tool("echo", "Return the given text")
        def echo(text: str) -> str:
            return text

        tools.execute("echo", {"text": "hi"})
    """

    def __init__(self):
        self._tools: Dict[str, ToolDefinition] = {}

    def register(self, definition: ToolDefinition) -> "ToolRegistry":
        """Register (or replace) a tool definition."""
        self._tools[definition.name] = definition
        return self

    def tool(
        self,
        name: str,
        description: str,
        input_model: Optional[Type[BaseModel]] = None,
        timeout_s: Optional[float] = None,
    ) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
        """Decorator to register a function as a tool."""

        def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
            self.register(
                ToolDefinition(
                    name=name,
                    description=description,
                    fn=fn,
                    input_model=input_model,
                    timeout_s=timeout_s,
                )
            )
            return fn

        return decorator

    def get(self, name: str) -> Optional[ToolDefinition]:
        return self._tools.get(name)

    def has(self, name: str) -> bool:
        return name in self._tools

    def list_names(self) -> List[str]:
        return list(self._tools)

    def describe(self) -> str:
        """Tool catalogue, one line per tool, for planner prompts."""
        return "\n".join(f"- {t.describe()}" for t in self._tools.values())

    def create_filtered(self, allowed: Iterable[str]) -> "ToolRegistry":
        """Return a registry holding only the allowed tools that exist."""
        filtered = ToolRegistry()
        for name in allowed:
            definition = self._tools.get(name)
            if definition is not None:
                filtered.register(definition)
        return filtered

    def execute(self, name: str, args: Optional[Dict[str, Any]] = None) -> Any:
        """Validate arguments and run a tool.

        Args:
            name: Registered tool name
            args: Keyword arguments for the tool

        Returns:
            Whatever the tool returns

        Raises:
            ToolNotFoundError: If the tool is not registered
            ToolExecutionError: On invalid arguments, timeout, or tool failure
        """
        definition = self._tools.get(name)
        if definition is None:
            raise ToolNotFoundError(name)

        kwargs = dict(args or {})
        if definition.input_model is not None:
            try:
                kwargs = definition.input_model.model_validate(kwargs).model_dump()
            except ValidationError as e:
                raise ToolExecutionError(name, f"invalid arguments: {e}", e)

        try:
            if definition.timeout_s is None:
                return definition.fn(**kwargs)
            return self._run_with_timeout(definition, kwargs)
        except ToolExecutionError:
            raise
        except Exception as e:
            logger.debug("Tool %s raised %s: %s", name, type(e).__name__, e)
            raise ToolExecutionError(name, str(e), e)

    def _run_with_timeout(self, definition: ToolDefinition, kwargs: Dict[str, Any]) -> Any:
        pool = ThreadPoolExecutor(max_workers=1)
        try:
            future = pool.submit(definition.fn, **kwargs)
            try:
                return future.result(timeout=definition.timeout_s)
            except FutureTimeoutError:
                raise ToolExecutionError(
                    definition.name, f"timed out after {definition.timeout_s}s"
                )
        finally:
            # The worker thread is abandoned, not killed, on timeout
            pool.shutdown(wait=False)
