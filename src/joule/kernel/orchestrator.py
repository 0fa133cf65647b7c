"""Compound-task decomposition and dependency-ordered execution.

A long, complex task with visible multi-part structure is split by one
model call into sub-tasks with budget shares and dependencies. Sub-tasks
run in topological order, each through a fresh TaskExecutor charged to its
own sub-envelope, and see the (truncated) results of the sub-tasks they
depend on. Under the parallel strategy, sub-tasks whose dependencies are
all done run together on a thread pool.
"""

import logging
import re
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, List, Optional

from joule.config import EnergyConfig, RoutingConfig
from joule.errors import ProviderNotAvailableError
from joule.kernel.budget import BudgetManager
from joule.kernel.executor import TaskExecutor
from joule.kernel.models import (
    DecompositionPlan,
    SubTaskDefinition,
    Task,
    TaskResult,
    TaskStatus,
    TraceEventType,
    generate_id,
)
from joule.kernel.planner import Planner
from joule.kernel.policy import PolicyEnforcer
from joule.kernel.router import ModelRouter
from joule.kernel.trace import TraceLogger
from joule.llm.providers.base import ProviderError
from joule.llm.structured import ParseOutcome, parse_json_object
from joule.prompts import build_decompose_prompt
from joule.tools.registry import ToolRegistry

logger = logging.getLogger(__name__)

DECOMPOSE_COMPLEXITY = 0.85
MIN_DESCRIPTION_LENGTH = 200
DEPENDENCY_RESULT_CHARS = 300
MAX_PARALLEL_SUBTASKS = 4

COMPOUND_PATTERNS = [
    re.compile(r"\band then\b", re.I),
    re.compile(r"\bafter that\b", re.I),
    re.compile(r"\bfirst\b.*\bthen\b", re.I | re.S),
    re.compile(r"\bnext\b", re.I),
    re.compile(r"\bfinally\b", re.I),
    re.compile(r"\b(step|task)\s*\d+", re.I),
    re.compile(r"(^|\s)\d+[.)]\s", re.M),
    re.compile(r"^\s*[-*•]\s", re.M),
]


def has_compound_structure(description: str) -> bool:
    """Two or more multi-part markers, or at least four real sentences."""
    hits = sum(1 for pattern in COMPOUND_PATTERNS if pattern.search(description))
    if hits >= 2:
        return True
    sentences = [s for s in re.split(r"[.!?]+", description) if len(s.strip()) > 10]
    return len(sentences) >= 4


def aggregate_results(results: List[TaskResult], hint: Optional[str] = None) -> str:
    """Combine sub-task results in execution order.

    Args:
        results: Sub-task results, in the order they ran
        hint: Aggregation hint from the decomposition (informational)

    Returns:
        The single result verbatim, or one "[Sub-task N]" block per result
    """
    if not results:
        return "No sub-tasks executed."

    def text(result: TaskResult) -> str:
        if result.result:
            return result.result
        if result.status == TaskStatus.COMPLETED:
            return "Completed."
        return f"Failed: {result.error or result.status.value}"

    if len(results) == 1:
        return text(results[0])
    return "\n\n".join(f"[Sub-task {i + 1}]: {text(r)}" for i, r in enumerate(results))


class SubTaskOrchestrator:
    """Decide on, produce and run decompositions.

    Usage:
        orchestrator = SubTaskOrchestrator(budgets, router, tracer, tools, planner)
        if orchestrator.should_decompose(task, complexity):
            plan = orchestrator.decompose(task, envelope_id, trace_id)
            results = orchestrator.execute_decomposed(task, plan, envelope_id, trace_id)
            answer = aggregate_results(results, plan.aggregation)
    """

    def __init__(
        self,
        budgets: BudgetManager,
        router: ModelRouter,
        tracer: TraceLogger,
        tools: ToolRegistry,
        planner: Planner,
        routing: Optional[RoutingConfig] = None,
        energy: Optional[EnergyConfig] = None,
        policy: Optional[PolicyEnforcer] = None,
        max_workers: int = MAX_PARALLEL_SUBTASKS,
    ):
        self.budgets = budgets
        self.router = router
        self.tracer = tracer
        self.tools = tools
        self.planner = planner
        self.routing = routing
        self.energy = energy
        self.policy = policy
        self.max_workers = max_workers

    def should_decompose(self, task: Task, complexity: float) -> bool:
        return (
            complexity > DECOMPOSE_COMPLEXITY
            and len(task.description) > MIN_DESCRIPTION_LENGTH
            and has_compound_structure(task.description)
        )

    def aggregate_results(self, results: List[TaskResult], hint: Optional[str] = None) -> str:
        return aggregate_results(results, hint)

    # -------------------------------------------------------------------------
    # Decomposition
    # -------------------------------------------------------------------------

    def decompose(
        self, task: Task, envelope_id: str, trace_id: Optional[str] = None
    ) -> DecompositionPlan:
        """Split a task into sub-tasks with one model call.

        Shares are normalized to sum to 1.0 and numeric dependency
        references resolved to sibling ids. Model failures, unparseable
        output and empty lists give one sub-task covering the whole task.
        """
        system, user = build_decompose_prompt(task.description)
        try:
            decision = self.router.route(
                "plan", envelope_id, complexity=DECOMPOSE_COMPLEXITY, trace_id=trace_id
            )
            response = self.planner.call_model(
                decision, system, user, envelope_id, "decompose", trace_id
            )
            outcome = parse_json_object(response.content)
        except (ProviderError, ProviderNotAvailableError) as e:
            logger.warning("Decomposition failed, running task whole: %s", e)
            outcome = ParseOutcome.failed(f"model call failed: {e}")

        plan = self._plan_from(outcome, task)
        if trace_id:
            self.tracer.log_event(
                trace_id,
                TraceEventType.DECOMPOSITION,
                {
                    "subTaskCount": len(plan.sub_tasks),
                    "strategy": plan.strategy,
                    "fallback": outcome.fallback,
                },
            )
        return plan

    def _plan_from(self, outcome: ParseOutcome, task: Task) -> DecompositionPlan:
        raw_subtasks = [] if outcome.fallback else outcome.value.get("subTasks")
        if not isinstance(raw_subtasks, list):
            raw_subtasks = []
        raw_subtasks = [
            s for s in raw_subtasks if isinstance(s, dict) and isinstance(s.get("description"), str)
        ]
        if not raw_subtasks:
            return self._fallback_plan(task)

        ids = [generate_id("sub") for _ in raw_subtasks]
        shares = []
        for raw in raw_subtasks:
            share = raw.get("budgetShare")
            valid = not isinstance(share, bool) and isinstance(share, (int, float)) and share > 0
            shares.append(float(share) if valid else 0.0)
        total = sum(shares)
        if total > 0:
            shares = [s / total for s in shares]
        else:
            shares = [1.0 / len(raw_subtasks)] * len(raw_subtasks)

        sub_tasks = []
        for i, raw in enumerate(raw_subtasks):
            sub_tasks.append(
                SubTaskDefinition(
                    id=ids[i],
                    description=raw["description"],
                    parent_task_id=task.id,
                    depends_on=self._resolve_dependencies(raw.get("dependsOn"), ids, i),
                    budget_share=min(1.0, shares[i]),
                )
            )

        strategy = outcome.value.get("strategy")
        if strategy not in ("sequential", "parallel", "mixed"):
            strategy = "sequential"
        aggregation = outcome.value.get("aggregation")
        return DecompositionPlan(
            sub_tasks=sub_tasks,
            strategy=strategy,
            aggregation=aggregation if isinstance(aggregation, str) else "",
        )

    def _resolve_dependencies(self, raw: object, ids: List[str], own_index: int) -> List[str]:
        """Map positional references ("0", 1) to sibling ids; drop the rest."""
        if not isinstance(raw, list):
            return []
        resolved = []
        for ref in raw:
            if isinstance(ref, str) and ref in ids:
                dep = ref
            else:
                if isinstance(ref, str) and ref.strip().isdigit():
                    index = int(ref)
                elif isinstance(ref, int) and not isinstance(ref, bool):
                    index = ref
                else:
                    continue
                if not 0 <= index < len(ids):
                    continue
                dep = ids[index]
            if dep != ids[own_index] and dep not in resolved:
                resolved.append(dep)
        return resolved

    def _fallback_plan(self, task: Task) -> DecompositionPlan:
        return DecompositionPlan(
            sub_tasks=[
                SubTaskDefinition(
                    id=generate_id("sub"),
                    description=task.description,
                    parent_task_id=task.id,
                    budget_share=1.0,
                )
            ],
            strategy="sequential",
            aggregation="",
        )

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------

    def execute_decomposed(
        self,
        task: Task,
        plan: DecompositionPlan,
        envelope_id: str,
        trace_id: Optional[str] = None,
    ) -> List[TaskResult]:
        """Run sub-tasks in dependency order.

        Returns:
            Sub-task results in the order they were executed
        """
        ordered = self.topological_sort(plan.sub_tasks)
        results: Dict[str, TaskResult] = {}
        order: List[str] = []

        if plan.strategy == "parallel" and len(ordered) > 1:
            for wave in self._waves(ordered):
                with ThreadPoolExecutor(max_workers=min(self.max_workers, len(wave))) as pool:
                    futures = [
                        (sub.id, pool.submit(self._run_subtask, task, sub, results, envelope_id))
                        for sub in wave
                    ]
                    for sub_id, future in futures:
                        results[sub_id] = future.result()
                        order.append(sub_id)
        else:
            for sub in ordered:
                results[sub.id] = self._run_subtask(task, sub, results, envelope_id)
                order.append(sub.id)

        if trace_id:
            self.tracer.log_event(
                trace_id,
                TraceEventType.INFO,
                {
                    "subTasksExecuted": len(order),
                    "statuses": [results[sub_id].status.value for sub_id in order],
                },
            )
        return [results[sub_id] for sub_id in order]

    def topological_sort(self, sub_tasks: List[SubTaskDefinition]) -> List[SubTaskDefinition]:
        """Depth-first order: dependencies before dependents, each once."""
        by_id = {s.id: s for s in sub_tasks}
        visited = set()
        ordered: List[SubTaskDefinition] = []

        def visit(sub: SubTaskDefinition) -> None:
            if sub.id in visited:
                return
            visited.add(sub.id)
            for dep_id in sub.depends_on:
                dep = by_id.get(dep_id)
                if dep is not None:
                    visit(dep)
            ordered.append(sub)

        for sub in sub_tasks:
            visit(sub)
        return ordered

    def _waves(self, ordered: List[SubTaskDefinition]) -> List[List[SubTaskDefinition]]:
        """Group sorted sub-tasks into waves whose dependencies are all earlier."""
        level: Dict[str, int] = {}
        waves: List[List[SubTaskDefinition]] = []
        for sub in ordered:
            depth = 1 + max((level[d] for d in sub.depends_on if d in level), default=-1)
            level[sub.id] = depth
            while len(waves) <= depth:
                waves.append([])
            waves[depth].append(sub)
        return waves

    def _run_subtask(
        self,
        parent: Task,
        sub: SubTaskDefinition,
        completed: Dict[str, TaskResult],
        envelope_id: str,
    ) -> TaskResult:
        sub_task = Task(
            id=sub.id,
            description=self._enrich(sub, completed),
            tools=parent.tools,
            session_id=parent.session_id,
            metadata={**parent.metadata, "parentTaskId": parent.id},
        )
        sub_envelope = self.budgets.create_sub_envelope(envelope_id, sub.budget_share)
        executor = TaskExecutor(
            self.budgets,
            self.router,
            self.tracer,
            self.tools,
            self.planner,
            routing=self.routing,
            energy=self.energy,
            policy=self.policy,
        )
        logger.info("Running sub-task %s (share %.2f)", sub.id, sub.budget_share)
        try:
            return executor.execute(sub_task, envelope_id=sub_envelope)
        finally:
            self.budgets.release(sub_envelope)

    def _enrich(self, sub: SubTaskDefinition, completed: Dict[str, TaskResult]) -> str:
        context = []
        for dep_id in sub.depends_on:
            dep = completed.get(dep_id)
            if dep is not None and dep.result:
                context.append(f"- {dep_id}: {dep.result[:DEPENDENCY_RESULT_CHARS]}")
        if not context:
            return sub.description
        return f"{sub.description}\n\nResults from previous sub-tasks:\n" + "\n".join(context)
