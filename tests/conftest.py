"""Test configuration and fixtures."""

import logging
from typing import Any, Dict, List

import pytest
from pydantic import BaseModel

from joule.config import RoutingConfig
from joule.kernel.budget import BudgetManager
from joule.kernel.executor import TaskExecutor
from joule.kernel.orchestrator import SubTaskOrchestrator
from joule.kernel.planner import Planner
from joule.kernel.router import ModelRouter
from joule.kernel.trace import TraceLogger
from joule.llm.providers import FakeProvider
from joule.llm.registry import ModelProviderRegistry
from joule.tools.registry import ToolRegistry


@pytest.fixture(autouse=True)
def _quiet_loggers():
    """Keep kernel logging out of test output."""
    logging.getLogger("joule").setLevel(logging.WARNING)
    yield


class EchoArgs(BaseModel):
    text: str


@pytest.fixture
def fake_provider() -> FakeProvider:
    """Provide a fake provider serving both tiers."""
    return FakeProvider()


@pytest.fixture
def providers(fake_provider: FakeProvider) -> ModelProviderRegistry:
    return ModelProviderRegistry().register(fake_provider)


@pytest.fixture
def routing() -> RoutingConfig:
    """Routing that sends both tiers to the fake provider."""
    return RoutingConfig(provider_priority={"slm": ["fake"], "llm": ["fake"]})


@pytest.fixture
def budgets() -> BudgetManager:
    return BudgetManager()


@pytest.fixture
def tracer() -> TraceLogger:
    return TraceLogger()


@pytest.fixture
def tool_calls() -> List[str]:
    """Names of tools invoked, in order."""
    return []


@pytest.fixture
def tools(tool_calls: List[str]) -> ToolRegistry:
    """Provide a registry with echo, fail and file_write tools."""
    registry = ToolRegistry()

    @registry.tool("echo", "Return the given text", input_model=EchoArgs)
    def echo(text: str) -> str:
        tool_calls.append("echo")
        return text

    @registry.tool("fail", "Always raises")
    def fail() -> str:
        tool_calls.append("fail")
        raise RuntimeError("tool exploded")

    @registry.tool("file_write", "Write a file")
    def file_write(path: str, content: str = "") -> Dict[str, Any]:
        tool_calls.append("file_write")
        return {"path": path, "bytes": len(content)}

    return registry


@pytest.fixture
def router(providers, budgets, tracer, routing) -> ModelRouter:
    return ModelRouter(providers, budgets, tracer, routing)


@pytest.fixture
def planner(router, tools, budgets, tracer) -> Planner:
    return Planner(router, tools, budgets, tracer)


@pytest.fixture
def executor(budgets, router, tracer, tools, planner, routing) -> TaskExecutor:
    return TaskExecutor(budgets, router, tracer, tools, planner, routing=routing)


@pytest.fixture
def orchestrator(budgets, router, tracer, tools, planner, routing) -> SubTaskOrchestrator:
    return SubTaskOrchestrator(budgets, router, tracer, tools, planner, routing=routing)
