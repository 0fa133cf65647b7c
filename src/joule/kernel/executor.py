"""Task executor: the per-task state machine.

A run moves through spec → classify → plan → critique → execute →
synthesize and ends completed, failed or budget_exhausted:

1. Every phase transition is logged and followed by a budget check
2. Each plan step runs its tool inside its own trace span
3. Steps with an output_check are verified (and optionally retried)
4. A failing tool triggers at most max_replan_depth recovery plans, each
   spending one escalation
5. Synthesis turns the step results into the answer

A single failing step never aborts the run. Only budget exhaustion,
critical policy violations, and planner or synthesis errors end a run
before it completes.
"""

import json
import logging
import queue
import re
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Iterator, List, Optional

from joule.config import EnergyConfig, RoutingConfig
from joule.errors import (
    BudgetExhaustedError,
    ConstitutionViolationError,
    JouleError,
    ToolExecutionError,
    ToolNotFoundError,
)
from joule.kernel.budget import BudgetManager
from joule.kernel.models import (
    AgentState,
    CriterionResult,
    ExecutionPlan,
    PlanStep,
    ProgressEvent,
    StepResult,
    StreamEvent,
    Task,
    TaskResult,
    TaskSpec,
    TaskStatus,
    TraceEventType,
)
from joule.kernel.planner import Planner
from joule.kernel.policy import PolicyEnforcer
from joule.kernel.router import ModelRouter
from joule.kernel.trace import TraceLogger
from joule.llm.providers.base import ProviderError
from joule.pricing import build_efficiency_report
from joule.tools.registry import ToolRegistry

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[ProgressEvent], None]


@dataclass
class _Run:
    """Mutable state of one execute() call."""

    task: Task
    envelope_id: str
    trace_id: str
    tools: ToolRegistry
    on_progress: Optional[ProgressCallback] = None
    on_chunk: Optional[Callable[[str], None]] = None
    state: AgentState = AgentState.IDLE
    spec: Optional[TaskSpec] = None
    step_results: List[StepResult] = field(default_factory=list)
    replan_depth: int = 0
    complexity: Optional[float] = None


def output_text(output: Any) -> str:
    """Render a tool output as text for matching and summaries."""
    if isinstance(output, str):
        return output
    return json.dumps(output, default=str)


def matches_assertion(output: Any, assertion: str) -> bool:
    """Case-insensitive literal substring or regex match."""
    text = output_text(output)
    if assertion.lower() in text.lower():
        return True
    try:
        return re.search(assertion, text, re.IGNORECASE) is not None
    except re.error:
        return False


def evaluate_criteria(
    spec: TaskSpec, result: Optional[str], step_results: List[StepResult]
) -> List[CriterionResult]:
    """Check each success criterion against the result and step outcomes."""
    succeeded = [r for r in step_results if r.success]
    results: List[CriterionResult] = []
    for criterion in spec.success_criteria:
        check = criterion.check
        if criterion.type == "output_contains":
            pattern = str(check.get("pattern", ""))
            met = bool(pattern) and result is not None and matches_assertion(result, pattern)
            evidence = f"pattern '{pattern}' {'found' if met else 'not found'} in result"
        elif criterion.type == "tool_succeeded":
            tool_name = check.get("toolName")
            if tool_name:
                met = any(r.tool_name == tool_name for r in succeeded)
                evidence = f"{tool_name} {'succeeded' if met else 'did not succeed'}"
            else:
                met = bool(succeeded)
                evidence = f"{len(succeeded)} step(s) succeeded"
        elif criterion.type == "file_exists":
            path = str(check.get("path", ""))
            met = bool(path) and any(
                r.tool_name in ("file_write", "file_read")
                and any(path in str(v) for v in r.tool_args.values())
                for r in succeeded
            )
            evidence = f"file step for '{path}' {'found' if met else 'not found'}"
        else:
            met = bool(succeeded) or (not step_results and bool(result))
            evidence = "assumed from successful execution" if met else "no successful step"
        results.append(CriterionResult(criterion=criterion, met=met, evidence=evidence))
    return results


def partial_result(dimension: str, step_results: List[StepResult]) -> str:
    """Summarize successful steps of a run cut short by its budget."""
    lines = [f"[Partial Result - Budget Exhausted ({dimension})]"]
    for i, r in enumerate(step_results):
        if r.success:
            lines.append(f"Step {i + 1} ({r.tool_name}): {output_text(r.output)}")
    return "\n".join(lines)


class TaskExecutor:
    """Run one task through planning, tool execution and synthesis.

    Usage:
        executor = TaskExecutor(budgets, router, tracer, tools, planner)
        result = executor.execute(Task(description="Summarize the report"))
        if result.status == TaskStatus.COMPLETED:
            print(result.result)
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
    ):
        self.budgets = budgets
        self.router = router
        self.tracer = tracer
        self.tools = tools
        self.planner = planner
        self.routing = routing or router.config
        self.energy = energy
        self.policy = policy

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def execute(
        self,
        task: Task,
        envelope_id: Optional[str] = None,
        on_progress: Optional[ProgressCallback] = None,
        on_chunk: Optional[Callable[[str], None]] = None,
        complexity: Optional[float] = None,
    ) -> TaskResult:
        """Execute a task and always return a TaskResult.

        Args:
            task: The task to run
            envelope_id: Existing envelope to charge; a new one is created
                from task.budget (and released afterwards) when None
            on_progress: Called with a ProgressEvent at each phase and step
            on_chunk: Called with each piece of the streamed answer
            complexity: Score already classified by the caller; the
                CLASSIFY phase then makes no model call

        Returns:
            TaskResult with status, answer, step results and the trace
        """
        owns_envelope = envelope_id is None
        if envelope_id is None:
            envelope_id = self.budgets.create_envelope(task.budget)
        trace_id = self.tracer.create_trace(None, task.id, self.budgets.get_envelope(envelope_id))
        root_span = self.tracer.start_span(
            trace_id,
            "task-execution",
            {"taskId": task.id, "description": task.description},
        )
        run = _Run(
            task=task,
            envelope_id=envelope_id,
            trace_id=trace_id,
            tools=self.planner.tools_for(task),
            on_progress=on_progress,
            on_chunk=on_chunk,
            complexity=complexity,
        )
        logger.info("Executing task %s (trace %s)", task.id, trace_id)

        status = TaskStatus.COMPLETED
        result_text: Optional[str] = None
        error: Optional[str] = None

        try:
            result_text = self._run(run)
        except BudgetExhaustedError as e:
            status = TaskStatus.BUDGET_EXHAUSTED
            error = str(e)
            result_text = partial_result(e.dimension, run.step_results)
            self.tracer.log_event(
                trace_id,
                TraceEventType.ERROR,
                {
                    "type": "budget_exhausted",
                    "dimension": e.dimension,
                    "completedSteps": len(run.step_results),
                },
            )
            logger.info("Task %s stopped: %s", task.id, error)
        except ConstitutionViolationError as e:
            status = TaskStatus.FAILED
            error = f"Constitution violation [{e.rule_id}]: {e}"
            self.tracer.log_event(
                trace_id,
                TraceEventType.ERROR,
                {"type": "constitution_violation", "ruleId": e.rule_id, "message": str(e)},
            )
            logger.warning("Task %s blocked by policy rule %s", task.id, e.rule_id)
        except (JouleError, ProviderError) as e:
            status = TaskStatus.FAILED
            error = str(e)
            self.tracer.log_event(
                trace_id,
                TraceEventType.ERROR,
                {"type": "execution_error", "message": error},
            )
            logger.warning("Task %s failed: %s", task.id, error)

        self.tracer.log_budget_checkpoint(
            trace_id, self.budgets.checkpoint(envelope_id, "final")
        )
        efficiency_report = None
        if self.energy is not None and self.energy.enabled:
            energy_wh, carbon = self.budgets.get_energy_totals(envelope_id)
            usage = self.budgets.get_usage(envelope_id)
            efficiency_report = build_efficiency_report(
                energy_wh, carbon, usage.input_tokens, usage.output_tokens, self.energy
            )
            self.tracer.log_energy_report(trace_id, efficiency_report)
        self.tracer.end_span(trace_id, root_span)

        criteria_results = []
        if run.spec is not None and status == TaskStatus.COMPLETED:
            criteria_results = evaluate_criteria(run.spec, result_text, run.step_results)

        self._progress(run, AgentState.DONE, status.value)
        budget_used = self.budgets.get_usage(envelope_id)
        trace = self.tracer.get_trace(trace_id, budget_used)
        if owns_envelope:
            self.budgets.release(envelope_id)

        return TaskResult(
            task_id=task.id,
            trace_id=trace_id,
            status=status,
            result=result_text,
            step_results=run.step_results,
            budget_used=budget_used,
            trace=trace,
            error=error,
            spec=run.spec,
            criteria_results=criteria_results,
            efficiency_report=efficiency_report,
        )

    def execute_stream(
        self, task: Task, envelope_id: Optional[str] = None
    ) -> Iterator[StreamEvent]:
        """Execute a task, yielding progress, answer chunks and the result.

        The run happens on a worker thread; events are handed over through
        a queue in the order they occur. The last event is always the
        result.
        """
        events: "queue.Queue[Optional[StreamEvent]]" = queue.Queue()

        def worker() -> None:
            try:
                result = self.execute(
                    task,
                    envelope_id,
                    on_progress=lambda p: events.put(StreamEvent(type="progress", progress=p)),
                    on_chunk=lambda c: events.put(StreamEvent(type="chunk", chunk=c)),
                )
                events.put(StreamEvent(type="result", result=result))
            finally:
                events.put(None)

        thread = threading.Thread(target=worker, name=f"joule-{task.id}", daemon=True)
        thread.start()
        while True:
            event = events.get()
            if event is None:
                break
            yield event
        thread.join()

    # -------------------------------------------------------------------------
    # Phases
    # -------------------------------------------------------------------------

    def _run(self, run: _Run) -> str:
        task = run.task
        env = run.envelope_id
        trace_id = run.trace_id

        self._guard_task(run)

        self._transition(run, AgentState.SPEC)
        run.spec = self.planner.specify_task(task, env, trace_id)

        self._transition(run, AgentState.CLASSIFY)
        if run.complexity is None:
            complexity = self.planner.classify_complexity(task, env, trace_id)
        else:
            complexity = run.complexity
            self.tracer.log_event(
                trace_id, TraceEventType.INFO, {"complexity": complexity, "precomputed": True}
            )

        self._transition(run, AgentState.PLAN)
        plan = self.planner.plan(task, complexity, env, trace_id, spec=run.spec)

        if plan.steps:
            self._transition(run, AgentState.CRITIQUE)
            score = self.planner.critique_plan(task, plan, env, trace_id, spec=run.spec)
            if score.overall < 0.5 and score.refined_plan:
                logger.info(
                    "Replacing plan (score %.2f) with %d refined steps",
                    score.overall,
                    len(score.refined_plan),
                )
                self.tracer.log_event(
                    trace_id,
                    TraceEventType.INFO,
                    {"planRefined": True, "overall": score.overall, "steps": len(score.refined_plan)},
                )
                plan = plan.model_copy(update={"steps": score.refined_plan})

        self._transition(run, AgentState.EXECUTE)
        self._execute_steps(run, plan)

        self._transition(run, AgentState.SYNTHESIZE)
        result = self.planner.synthesize(
            task, run.step_results, env, trace_id, on_chunk=run.on_chunk
        )
        return self._guard_output(run, result)

    def _transition(self, run: _Run, state: AgentState) -> None:
        run.state = state
        self.tracer.log_event(run.trace_id, TraceEventType.STATE_TRANSITION, {"state": state.value})
        self.budgets.check_budget(run.envelope_id)
        self._progress(run, state)

    def _progress(
        self,
        run: _Run,
        phase: AgentState,
        message: str = "",
        step_index: Optional[int] = None,
        total_steps: Optional[int] = None,
    ) -> None:
        if run.on_progress is None:
            return
        run.on_progress(
            ProgressEvent(
                phase=phase,
                message=message or phase.value,
                step_index=step_index,
                total_steps=total_steps,
                usage=self.budgets.get_usage(run.envelope_id),
            )
        )

    # -------------------------------------------------------------------------
    # Step execution
    # -------------------------------------------------------------------------

    def _execute_steps(self, run: _Run, plan: ExecutionPlan) -> None:
        steps = list(plan.steps)
        i = 0
        while i < len(steps):
            step = steps[i]
            self.budgets.check_budget(run.envelope_id)
            self._progress(
                run, AgentState.EXECUTE, step.description, step_index=i, total_steps=len(steps)
            )

            result = self._invoke(run, i, step)
            if result.success:
                if step.verify is not None and step.verify.type == "output_check":
                    self._verify(run, i, step, result)
                i += 1
                continue

            recovery = self._recover(run, i, step, result.error or "unknown error")
            if recovery is not None:
                steps = steps[: i + 1] + recovery
            i += 1

    def _invoke(self, run: _Run, index: int, step: PlanStep) -> StepResult:
        """Run one tool call inside a step span and record its StepResult."""
        span_id = self.tracer.start_span(
            run.trace_id,
            f"step-{index}",
            {"tool": step.tool_name, "description": step.description},
        )
        started = time.monotonic()
        output = None
        error = self._guard_tool_call(run, step)
        if error is None:
            if not self.budgets.try_deduct_tool_call(run.envelope_id):
                self.tracer.end_span(run.trace_id, span_id)
                raise BudgetExhaustedError(
                    "toolCalls", self.budgets.get_usage(run.envelope_id)
                )
            try:
                output = run.tools.execute(step.tool_name, step.tool_args)
            except (ToolNotFoundError, ToolExecutionError) as e:
                error = str(e)
        duration_ms = (time.monotonic() - started) * 1000
        self.tracer.log_tool_call(
            run.trace_id,
            step.tool_name,
            step.tool_args,
            success=error is None,
            duration_ms=duration_ms,
            output=output,
            error=error,
        )
        self.tracer.end_span(run.trace_id, span_id)

        result = StepResult(
            step_index=index,
            tool_name=step.tool_name,
            tool_args=step.tool_args,
            output=output,
            error=error,
            success=error is None,
            duration_ms=duration_ms,
        )
        run.step_results.append(result)
        if error is not None:
            logger.info("Step %d (%s) failed: %s", index + 1, step.tool_name, error)
        return result

    def _verify(self, run: _Run, index: int, step: PlanStep, result: StepResult) -> None:
        verify = step.verify
        attempt = 1
        passed = matches_assertion(result.output, verify.assertion)
        self._log_verification(run, index, attempt, passed)

        retries = verify.max_retries if verify.retry_on_fail else 0
        while not passed and attempt <= retries:
            self.budgets.check_budget(run.envelope_id)
            attempt += 1
            result = self._invoke(run, index, step)
            passed = result.success and matches_assertion(result.output, verify.assertion)
            self._log_verification(run, index, attempt, passed)

        if not passed:
            self.tracer.log_event(
                run.trace_id,
                TraceEventType.VERIFICATION_FAILED,
                {"stepIndex": index, "assertion": verify.assertion, "attempts": attempt},
            )

    def _log_verification(self, run: _Run, index: int, attempt: int, passed: bool) -> None:
        self.tracer.log_event(
            run.trace_id,
            TraceEventType.STEP_VERIFICATION,
            {"stepIndex": index, "attempt": attempt, "passed": passed},
        )

    def _recover(
        self, run: _Run, index: int, step: PlanStep, error: str
    ) -> Optional[List[PlanStep]]:
        """Replan after a failed tool call, if depth and budget allow.

        Returns:
            Recovery steps to replace the rest of the plan, or None
        """
        max_depth = self.routing.max_replan_depth
        if run.replan_depth >= max_depth:
            logger.info("Step %d failed, no re-plan: max depth reached", index + 1)
            return None
        if not self.budgets.can_afford_escalation(run.envelope_id):
            logger.info("Step %d failed, no re-plan: no escalation budget", index + 1)
            return None

        self.tracer.log_event(
            run.trace_id,
            TraceEventType.ESCALATION,
            {"reason": "step_failure", "failedStep": index, "error": error},
        )
        run.replan_depth += 1
        try:
            recovery = self.planner.replan(
                run.task,
                step,
                index,
                error,
                list(run.step_results),
                run.envelope_id,
                run.trace_id,
            )
        except BudgetExhaustedError:
            raise
        except (ProviderError, JouleError) as e:
            self.tracer.log_event(
                run.trace_id,
                TraceEventType.ERROR,
                {"type": "replan_failed", "replanDepth": run.replan_depth, "message": str(e)},
            )
            logger.warning("Re-plan after step %d failed: %s", index + 1, e)
            return None

        self.tracer.log_event(
            run.trace_id,
            TraceEventType.REPLAN,
            {"failedStep": index, "recoverySteps": len(recovery), "depth": run.replan_depth},
        )
        return recovery

    # -------------------------------------------------------------------------
    # Policy
    # -------------------------------------------------------------------------

    def _guard_task(self, run: _Run) -> None:
        if self.policy is None:
            return
        violation = self.policy.validate_task(run.task.description)
        if violation is not None:
            self.tracer.log_event(
                run.trace_id, TraceEventType.CONSTITUTION_VIOLATION, violation.model_dump()
            )

    def _guard_tool_call(self, run: _Run, step: PlanStep) -> Optional[str]:
        """Return an error message if policy blocks the call."""
        if self.policy is None:
            return None
        violation = self.policy.validate_tool_call(step.tool_name, step.tool_args)
        if violation is None:
            return None
        self.tracer.log_event(
            run.trace_id, TraceEventType.CONSTITUTION_VIOLATION, violation.model_dump()
        )
        return f"Blocked by constitution rule {violation.rule_id}: {violation.rule_name}"

    def _guard_output(self, run: _Run, result: str) -> str:
        if self.policy is None:
            return result
        violation = self.policy.validate_output(result)
        if violation is None:
            return result
        self.tracer.log_event(
            run.trace_id, TraceEventType.CONSTITUTION_OUTPUT_VIOLATION, violation.model_dump()
        )
        return f"[Response filtered by constitution rule {violation.rule_id}: {violation.rule_name}]"
