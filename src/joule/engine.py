"""The Joule facade.

Wires budgets, tracing, routing, planning, execution and decomposition
together and decides, per task, between direct execution and
decomposed execution.
"""

import logging
from typing import Iterator, List, Optional, Union

from joule.config import Config, EnergyConfig, RoutingConfig
from joule.errors import BudgetExhaustedError, JouleError
from joule.kernel.budget import BudgetManager
from joule.kernel.executor import ProgressCallback, TaskExecutor, partial_result
from joule.kernel.models import (
    StreamEvent,
    Task,
    TaskResult,
    TaskStatus,
    TraceEventType,
)
from joule.kernel.orchestrator import (
    MIN_DESCRIPTION_LENGTH,
    SubTaskOrchestrator,
    aggregate_results,
    has_compound_structure,
)
from joule.kernel.planner import Planner
from joule.kernel.policy import PolicyEnforcer
from joule.kernel.router import ModelRouter
from joule.kernel.trace import TraceLogger
from joule.llm.providers.base import ProviderError
from joule.llm.registry import ModelProviderRegistry
from joule.storage.traces import SQLiteTraceRepository, TraceRepository
from joule.tools.registry import ToolRegistry

logger = logging.getLogger(__name__)


class Joule:
    """Run tasks end to end.

    Usage:
        joule = Joule(providers, tools)
        result = joule.run("Fetch the status page and summarize it", budget="high")
    """

    def __init__(
        self,
        providers: ModelProviderRegistry,
        tools: Optional[ToolRegistry] = None,
        routing: Optional[RoutingConfig] = None,
        energy: Optional[EnergyConfig] = None,
        repository: Optional[TraceRepository] = None,
        policy: Optional[PolicyEnforcer] = None,
        default_budget: str = "medium",
    ):
        self.providers = providers
        self.tools = tools or ToolRegistry()
        self.routing = routing or RoutingConfig()
        self.energy = energy
        self.policy = policy
        self.budgets = BudgetManager(default_budget)
        self.tracer = TraceLogger(repository)
        self.router = ModelRouter(providers, self.budgets, self.tracer, self.routing, energy)
        self.planner = Planner(self.router, self.tools, self.budgets, self.tracer, energy, policy)
        self.executor = TaskExecutor(
            self.budgets,
            self.router,
            self.tracer,
            self.tools,
            self.planner,
            routing=self.routing,
            energy=energy,
            policy=policy,
        )
        self.orchestrator = SubTaskOrchestrator(
            self.budgets,
            self.router,
            self.tracer,
            self.tools,
            self.planner,
            routing=self.routing,
            energy=energy,
            policy=policy,
        )

    @classmethod
    def from_config(
        cls,
        cfg: Optional[Config] = None,
        tools: Optional[ToolRegistry] = None,
        providers: Optional[ModelProviderRegistry] = None,
    ) -> "Joule":
        """Build an instance from environment configuration."""
        if cfg is None:
            from joule.config import config as cfg

        repository = None
        if cfg.persist_traces:
            cfg.ensure_directories()
            repository = SQLiteTraceRepository(cfg.db_path)

        return cls(
            providers=providers or ModelProviderRegistry.from_config(cfg),
            tools=tools,
            routing=cfg.routing,
            energy=cfg.energy,
            repository=repository,
            policy=PolicyEnforcer(),
            default_budget=cfg.default_budget,
        )

    def run(
        self,
        task: Union[Task, str],
        budget: Optional[str] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> TaskResult:
        """Execute a task directly, or decomposed when it is compound.

        Args:
            task: Task, or a description to wrap in one
            budget: Preset name used when a description is given
            on_progress: Progress callback for direct execution

        Returns:
            TaskResult
        """
        if isinstance(task, str):
            task = Task(description=task, budget=budget)

        if len(task.description) > MIN_DESCRIPTION_LENGTH and has_compound_structure(
            task.description
        ):
            return self._run_compound(task, on_progress)
        return self.executor.execute(task, on_progress=on_progress)

    def run_stream(self, task: Union[Task, str], budget: Optional[str] = None) -> Iterator[StreamEvent]:
        """Stream a task's progress, answer chunks and final result."""
        if isinstance(task, str):
            task = Task(description=task, budget=budget)
        return self.executor.execute_stream(task)

    def _run_compound(
        self, task: Task, on_progress: Optional[ProgressCallback]
    ) -> TaskResult:
        envelope_id = self.budgets.create_envelope(task.budget)
        trace_id = self.tracer.create_trace(None, task.id, self.budgets.get_envelope(envelope_id))
        root = self.tracer.start_span(
            trace_id, "task-decomposition", {"taskId": task.id, "description": task.description}
        )
        results: List[TaskResult] = []
        error = None
        try:
            complexity = self.planner.classify_complexity(task, envelope_id, trace_id)
            if not self.orchestrator.should_decompose(task, complexity):
                # The direct run opens its own trace and reuses the score
                self.tracer.discard_trace(trace_id)
                try:
                    return self.executor.execute(
                        task, envelope_id, on_progress=on_progress, complexity=complexity
                    )
                finally:
                    self.budgets.release(envelope_id)

            plan = self.orchestrator.decompose(task, envelope_id, trace_id)
            results = self.orchestrator.execute_decomposed(task, plan, envelope_id, trace_id)
            status = self._combined_status(results)
            text = aggregate_results(results, plan.aggregation)
        except BudgetExhaustedError as e:
            status = TaskStatus.BUDGET_EXHAUSTED
            text = partial_result(e.dimension, [])
            error = str(e)
            self.tracer.log_event(
                trace_id,
                TraceEventType.ERROR,
                {"type": "budget_exhausted", "dimension": e.dimension, "completedSteps": 0},
            )
        except (JouleError, ProviderError) as e:
            status = TaskStatus.FAILED
            text = None
            error = str(e)
            self.tracer.log_event(
                trace_id, TraceEventType.ERROR, {"type": "execution_error", "message": error}
            )
            logger.warning("Task %s failed: %s", task.id, error)

        self.tracer.log_budget_checkpoint(trace_id, self.budgets.checkpoint(envelope_id, "final"))
        self.tracer.end_span(trace_id, root)
        usage = self.budgets.get_usage(envelope_id)
        trace = self.tracer.get_trace(trace_id, usage)
        self.budgets.release(envelope_id)

        step_results = [r for sub in results for r in sub.step_results]
        return TaskResult(
            task_id=task.id,
            trace_id=trace_id,
            status=status,
            result=text,
            step_results=step_results,
            budget_used=usage,
            trace=trace,
            error=error or self._first_error(results),
        )

    def _combined_status(self, results: List[TaskResult]) -> TaskStatus:
        statuses = [r.status for r in results]
        if TaskStatus.BUDGET_EXHAUSTED in statuses:
            return TaskStatus.BUDGET_EXHAUSTED
        if statuses and all(s == TaskStatus.FAILED for s in statuses):
            return TaskStatus.FAILED
        return TaskStatus.COMPLETED

    def _first_error(self, results: List[TaskResult]) -> Optional[str]:
        for r in results:
            if r.error:
                return r.error
        return None
