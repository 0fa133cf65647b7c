"""Model-mediated planning operations.

The Planner turns a Task into:
- a TaskSpec (goal, constraints, success criteria)
- a complexity score
- an ExecutionPlan, a PlanScore critique, and recovery steps on failure
- the final synthesized answer

Every operation makes exactly one model call, charges its tokens, cost
and energy to the task's budget envelope, and records a model_call event.
Model text is parsed into a ParseOutcome; a fallback outcome is turned into
a deterministic default so no parse error leaves this module.
"""

import logging
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, List, Optional

from pydantic import ValidationError

from joule.config import EnergyConfig
from joule.errors import ProviderNotAvailableError
from joule.kernel.budget import BudgetManager
from joule.kernel.models import (
    ExecutionPlan,
    PlanScore,
    PlanStep,
    RoutingDecision,
    StepResult,
    StepVerification,
    SuccessCriterion,
    Task,
    TaskSpec,
    TraceEventType,
)
from joule.kernel.policy import PolicyEnforcer
from joule.kernel.router import ModelRouter
from joule.kernel.trace import TraceLogger
from joule.llm.providers.base import ProviderError
from joule.llm.structured import ParseOutcome, parse_json_object
from joule.llm.types import ChatMessage, ModelRequest, ModelResponse, TokenUsage
from joule.pricing import calculate_carbon, calculate_cost, calculate_energy
from joule.prompts import (
    build_classify_prompt,
    build_critique_prompt,
    build_plan_prompt,
    build_replan_prompt,
    build_spec_prompt,
    build_synthesize_prompt,
    detect_action_floor,
)
from joule.tools.registry import ToolRegistry

logger = logging.getLogger(__name__)

DEFAULT_STEP_CONFIDENCE = 0.7
DEFAULT_CRITIQUE_SCORE = 0.7
CRITERION_TYPES = ("output_contains", "tool_succeeded", "file_exists", "custom")


def clamp_score(value: Any, default: float) -> float:
    """Clamp a model-provided number into [0, 1]; non-numbers give default."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return default
    return min(1.0, max(0.0, float(value)))


class Planner:
    """Spec, classify, plan, critique, replan and synthesize.

    Usage:
        planner = Planner(router, tools, budgets, tracer)
        spec = planner.specify_task(task, envelope_id, trace_id)
        complexity = planner.classify_complexity(task, envelope_id, trace_id)
        plan = planner.plan(task, complexity, envelope_id, trace_id, spec=spec)
    """

    def __init__(
        self,
        router: ModelRouter,
        tools: ToolRegistry,
        budgets: BudgetManager,
        tracer: TraceLogger,
        energy: Optional[EnergyConfig] = None,
        policy: Optional[PolicyEnforcer] = None,
    ):
        self.router = router
        self.tools = tools
        self.budgets = budgets
        self.tracer = tracer
        self.energy = energy
        self.policy = policy

    # -------------------------------------------------------------------------
    # Model calls
    # -------------------------------------------------------------------------

    def tools_for(self, task: Task) -> ToolRegistry:
        """Return the registry a task may use (its allow-list, if any)."""
        if task.tools is None:
            return self.tools
        return self.tools.create_filtered(task.tools)

    def call_model(
        self,
        decision: RoutingDecision,
        system: str,
        user: str,
        envelope_id: str,
        operation: str,
        trace_id: Optional[str] = None,
        history: Optional[List[ChatMessage]] = None,
        temperature: Optional[float] = None,
    ) -> ModelResponse:
        """Send one request to the routed provider and charge it.

        Raises:
            ProviderError: If the provider call fails
            ProviderNotAvailableError: If the routed provider is gone
        """
        provider = self.router.provider_for(decision)
        request = self._build_request(
            decision, system, user, operation, trace_id, history, temperature
        )
        try:
            response = provider.chat(request)
        except ProviderError:
            self.router.report_failure(decision.provider)
            raise
        self.router.report_success(decision.provider)
        self._charge(envelope_id, response)
        if trace_id:
            self.tracer.log_model_call(trace_id, response, decision.intent)
        return response

    def call_model_stream(
        self,
        decision: RoutingDecision,
        system: str,
        user: str,
        envelope_id: str,
        operation: str,
        on_chunk: Callable[[str], None],
        trace_id: Optional[str] = None,
        history: Optional[List[ChatMessage]] = None,
        temperature: Optional[float] = None,
    ) -> ModelResponse:
        """Like call_model, but forwards each content piece to on_chunk."""
        provider = self.router.provider_for(decision)
        request = self._build_request(
            decision, system, user, operation, trace_id, history, temperature
        )
        parts: List[str] = []
        usage = TokenUsage()
        try:
            for chunk in provider.chat_stream(request):
                if chunk.content:
                    parts.append(chunk.content)
                    on_chunk(chunk.content)
                if chunk.done and chunk.token_usage is not None:
                    usage = chunk.token_usage
        except ProviderError:
            self.router.report_failure(decision.provider)
            raise
        self.router.report_success(decision.provider)

        response = ModelResponse(
            content="".join(parts),
            model=decision.model,
            provider=decision.provider,
            tier=decision.tier,
            token_usage=usage,
            cost_usd=calculate_cost(
                decision.model, usage.prompt_tokens, usage.completion_tokens
            ),
        )
        self._charge(envelope_id, response)
        if trace_id:
            self.tracer.log_model_call(trace_id, response, decision.intent)
        return response

    def _build_request(
        self,
        decision: RoutingDecision,
        system: str,
        user: str,
        operation: str,
        trace_id: Optional[str],
        history: Optional[List[ChatMessage]],
        temperature: Optional[float],
    ) -> ModelRequest:
        if self.policy is not None:
            system = f"{self.policy.build_prompt_injection()}\n\n{system}"
        messages = list(history or []) + [ChatMessage(role="user", content=user)]
        return ModelRequest(
            model=decision.model,
            messages=messages,
            system=system,
            temperature=temperature,
            metadata={"operation": operation, "intent": decision.intent, "trace_id": trace_id},
        )

    def _charge(self, envelope_id: str, response: ModelResponse) -> None:
        usage = response.token_usage
        self.budgets.deduct_tokens(envelope_id, usage.prompt_tokens, usage.completion_tokens)
        self.budgets.deduct_cost(envelope_id, response.cost_usd)
        if self.energy is not None and self.energy.enabled:
            energy_wh = calculate_energy(
                response.model, usage.prompt_tokens, usage.completion_tokens
            )
            carbon = calculate_carbon(energy_wh, response.model, self.energy)
            self.budgets.deduct_energy(envelope_id, energy_wh, carbon)

    @contextmanager
    def _span(self, trace_id: Optional[str], name: str) -> Iterator[None]:
        if not trace_id or not self.tracer.has_trace(trace_id):
            yield
            return
        span_id = self.tracer.start_span(trace_id, name)
        try:
            yield
        finally:
            self.tracer.end_span(trace_id, span_id)

    def _event(
        self, trace_id: Optional[str], event_type: TraceEventType, data: Dict[str, Any]
    ) -> None:
        if trace_id:
            self.tracer.log_event(trace_id, event_type, data)

    # -------------------------------------------------------------------------
    # Spec
    # -------------------------------------------------------------------------

    def specify_task(
        self, task: Task, envelope_id: str, trace_id: Optional[str] = None
    ) -> TaskSpec:
        """Derive goal, constraints and success criteria.

        Model failures and unparseable output fall back to a spec whose
        goal is the description and whose single criterion is that some
        tool succeeded.
        """
        with self._span(trace_id, "spec"):
            system, user = build_spec_prompt(task.description)
            try:
                decision = self.router.route("classify", envelope_id, trace_id=trace_id)
                response = self.call_model(
                    decision, system, user, envelope_id, "specify", trace_id
                )
                outcome = parse_json_object(response.content)
            except (ProviderError, ProviderNotAvailableError) as e:
                logger.warning("Spec generation failed, using fallback: %s", e)
                outcome = ParseOutcome.failed(f"model call failed: {e}")

            spec = self._spec_from(outcome, task)
            self._event(
                trace_id,
                TraceEventType.SPEC_GENERATED,
                {
                    "goal": spec.goal,
                    "constraintCount": len(spec.constraints),
                    "criteriaCount": len(spec.success_criteria),
                    "fallback": outcome.fallback,
                },
            )
            return spec

    def _spec_from(self, outcome: ParseOutcome, task: Task) -> TaskSpec:
        data = outcome.value or {}
        goal = data.get("goal")
        if not isinstance(goal, str) or not goal.strip():
            goal = task.description

        constraints = [c for c in data.get("constraints") or [] if isinstance(c, str)]

        criteria: List[SuccessCriterion] = []
        for raw in data.get("successCriteria") or []:
            if not isinstance(raw, dict) or not isinstance(raw.get("description"), str):
                continue
            criteria.append(
                SuccessCriterion(
                    description=raw["description"],
                    type=raw.get("type") if raw.get("type") in CRITERION_TYPES else "custom",
                    check=raw.get("check") if isinstance(raw.get("check"), dict) else {},
                )
            )
        if not criteria:
            criteria.append(
                SuccessCriterion(description="Task completed successfully", type="tool_succeeded")
            )

        return TaskSpec(goal=goal, constraints=constraints, success_criteria=criteria)

    # -------------------------------------------------------------------------
    # Classification
    # -------------------------------------------------------------------------

    def classify_complexity(
        self, task: Task, envelope_id: str, trace_id: Optional[str] = None
    ) -> float:
        """Score task complexity in [0, 1].

        Tasks that name a real-world action never score below the action
        keyword floor. Unparseable output gives max(0.5, floor).

        Raises:
            ProviderError: If the model call fails
        """
        with self._span(trace_id, "classify"):
            floor = detect_action_floor(task.description)
            system, user = build_classify_prompt(task.description)
            decision = self.router.route("classify", envelope_id, trace_id=trace_id)
            response = self.call_model(decision, system, user, envelope_id, "classify", trace_id)
            outcome = parse_json_object(response.content)

            score = None
            if not outcome.fallback:
                raw = outcome.value.get("complexity")
                if not isinstance(raw, bool) and isinstance(raw, (int, float)):
                    score = clamp_score(raw, 0.5)

            if score is None:
                logger.debug("Complexity fallback (%s)", outcome.reason or "missing score")
                return max(0.5, floor)

            if floor > score:
                self._event(
                    trace_id,
                    TraceEventType.COMPLEXITY_BOOSTED,
                    {"slmScore": score, "actionFloor": floor, "finalComplexity": floor},
                )
                return floor
            return score

    # -------------------------------------------------------------------------
    # Planning
    # -------------------------------------------------------------------------

    def plan(
        self,
        task: Task,
        complexity: float,
        envelope_id: str,
        trace_id: Optional[str] = None,
        spec: Optional[TaskSpec] = None,
    ) -> ExecutionPlan:
        """Produce an ordered list of tool steps.

        Steps naming unknown tools are dropped. Unparseable output gives a
        single step for the first tool named in the description, or an
        empty plan.

        Raises:
            ProviderError: If the model call fails
        """
        with self._span(trace_id, "plan"):
            tools = self.tools_for(task)
            criteria = None
            constraints = None
            if spec is not None:
                criteria = [c.model_dump() for c in spec.success_criteria]
                constraints = spec.constraints
            system, user = build_plan_prompt(
                task.description, tools.describe(), criteria, constraints
            )
            decision = self.router.route(
                "plan", envelope_id, complexity=complexity, trace_id=trace_id
            )
            response = self.call_model(
                decision, system, user, envelope_id, "plan", trace_id, history=task.messages
            )
            outcome = parse_json_object(response.content)

            if outcome.fallback:
                logger.debug("Plan fallback: %s", outcome.reason)
                steps = self._fallback_steps(task, tools)
            else:
                steps = self.parse_steps(outcome.value.get("steps"), tools)

            plan = ExecutionPlan(task_id=task.id, steps=steps, complexity=complexity)
            self._event(
                trace_id,
                TraceEventType.PLAN_GENERATED,
                {
                    "steps": len(steps),
                    "complexity": complexity,
                    "tools": [s.tool_name for s in steps],
                    "fallback": outcome.fallback,
                },
            )
            return plan

    def parse_steps(self, raw_steps: Any, tools: ToolRegistry) -> List[PlanStep]:
        """Convert model step dicts into PlanSteps for registered tools."""
        steps: List[PlanStep] = []
        if not isinstance(raw_steps, list):
            return steps
        for raw in raw_steps:
            if not isinstance(raw, dict):
                continue
            tool_name = raw.get("toolName") or raw.get("tool_name")
            if not isinstance(tool_name, str) or not tools.has(tool_name):
                logger.debug("Dropping step with unknown tool: %r", tool_name)
                continue
            args = raw.get("toolArgs") or raw.get("tool_args") or {}
            description = raw.get("description")
            steps.append(
                PlanStep(
                    description=description if isinstance(description, str) else f"Run {tool_name}",
                    tool_name=tool_name,
                    tool_args=args if isinstance(args, dict) else {},
                    verify=self._parse_verify(raw.get("verify")),
                )
            )
        return steps

    def _parse_verify(self, raw: Any) -> Optional[StepVerification]:
        if not isinstance(raw, dict):
            return None
        try:
            return StepVerification(
                type=raw.get("type", "none"),
                assertion=raw.get("assertion") or "",
                retry_on_fail=bool(raw.get("retryOnFail", raw.get("retry_on_fail", False))),
                max_retries=raw.get("maxRetries", raw.get("max_retries", 2)),
            )
        except ValidationError as e:
            logger.debug("Ignoring invalid verify block: %s", e)
            return None

    def _fallback_steps(self, task: Task, tools: ToolRegistry) -> List[PlanStep]:
        description = task.description.lower()
        for name in tools.list_names():
            if name.lower() in description:
                return [PlanStep(description=task.description, tool_name=name)]
        return []

    # -------------------------------------------------------------------------
    # Critique
    # -------------------------------------------------------------------------

    def critique_plan(
        self,
        task: Task,
        plan: ExecutionPlan,
        envelope_id: str,
        trace_id: Optional[str] = None,
        spec: Optional[TaskSpec] = None,
    ) -> PlanScore:
        """Score a plan. Every value is clamped to [0, 1].

        Confidences are padded with 0.7 or truncated to one per step.
        Model failures and unparseable output give 0.7 everywhere.
        """
        with self._span(trace_id, "critique"):
            tools = self.tools_for(task)
            system, user = build_critique_prompt(
                task.description,
                plan.steps,
                tools.list_names(),
                goal=spec.goal if spec else None,
                criteria=[c.description for c in spec.success_criteria] if spec else None,
            )
            try:
                decision = self.router.route(
                    "plan", envelope_id, complexity=0.8, trace_id=trace_id
                )
                response = self.call_model(
                    decision, system, user, envelope_id, "critique", trace_id
                )
                outcome = parse_json_object(response.content)
            except (ProviderError, ProviderNotAvailableError) as e:
                logger.warning("Plan critique failed, using default score: %s", e)
                outcome = ParseOutcome.failed(f"model call failed: {e}")

            score = self._score_from(outcome, plan, tools)
            self._event(
                trace_id,
                TraceEventType.PLAN_CRITIQUE,
                {
                    "overall": score.overall,
                    "issueCount": len(score.issues),
                    "hasRefinedPlan": score.refined_plan is not None,
                    "issues": score.issues,
                },
            )
            return score

    def _score_from(
        self, outcome: ParseOutcome, plan: ExecutionPlan, tools: ToolRegistry
    ) -> PlanScore:
        step_count = len(plan.steps)
        if outcome.fallback:
            return PlanScore(
                overall=DEFAULT_CRITIQUE_SCORE,
                step_confidences=[DEFAULT_STEP_CONFIDENCE] * step_count,
            )

        data = outcome.value
        raw_confidences = data.get("stepConfidences")
        if not isinstance(raw_confidences, list):
            raw_confidences = []
        confidences = [
            clamp_score(c, DEFAULT_STEP_CONFIDENCE) for c in raw_confidences[:step_count]
        ]
        confidences.extend([DEFAULT_STEP_CONFIDENCE] * (step_count - len(confidences)))

        issues = [i for i in data.get("issues") or [] if isinstance(i, str)]

        refined = None
        raw_refined = data.get("refinedPlan")
        if isinstance(raw_refined, dict):
            refined = self.parse_steps(raw_refined.get("steps"), tools) or None

        return PlanScore(
            overall=clamp_score(data.get("overall"), DEFAULT_CRITIQUE_SCORE),
            step_confidences=confidences,
            issues=issues,
            refined_plan=refined,
        )

    # -------------------------------------------------------------------------
    # Recovery
    # -------------------------------------------------------------------------

    def replan(
        self,
        task: Task,
        failed_step: PlanStep,
        failed_index: int,
        error: str,
        completed: List[StepResult],
        envelope_id: str,
        trace_id: Optional[str] = None,
    ) -> List[PlanStep]:
        """Ask the large tier for recovery steps.

        Spends exactly one escalation through the router, however many
        steps come back. Unparseable output gives no steps.

        Raises:
            BudgetExhaustedError: If no escalation is left
            ProviderError: If the model call fails
        """
        with self._span(trace_id, "replan"):
            tools = self.tools_for(task)
            summaries = [
                {
                    "tool_name": r.tool_name,
                    "success": r.success,
                    "summary": str(r.output)[:200] if r.success else r.error,
                }
                for r in completed
            ]
            system, user = build_replan_prompt(
                task.description,
                tools.describe(),
                failed_index,
                failed_step.description,
                failed_step.tool_name,
                error,
                summaries,
            )
            decision = self.router.escalate(
                "plan", envelope_id, reason=f"step {failed_index + 1} failed", trace_id=trace_id
            )
            response = self.call_model(decision, system, user, envelope_id, "replan", trace_id)
            outcome = parse_json_object(response.content)
            if outcome.fallback:
                logger.debug("Replan fallback: %s", outcome.reason)
                return []
            return self.parse_steps(outcome.value.get("steps"), tools)

    # -------------------------------------------------------------------------
    # Synthesis
    # -------------------------------------------------------------------------

    def synthesize(
        self,
        task: Task,
        step_results: List[StepResult],
        envelope_id: str,
        trace_id: Optional[str] = None,
        on_chunk: Optional[Callable[[str], None]] = None,
    ) -> str:
        """Turn step results into the final answer.

        With no step results the task is answered directly, using the
        task's prior messages as history.

        Raises:
            ProviderError: If the model call fails
        """
        with self._span(trace_id, "synthesize"):
            if not step_results:
                complexity = 0.2
            elif any(not r.success for r in step_results):
                complexity = 0.8
            else:
                complexity = 0.3
            system, user = build_synthesize_prompt(task.description, step_results)
            history = task.messages if not step_results else None
            decision = self.router.route(
                "synthesize", envelope_id, complexity=complexity, trace_id=trace_id
            )
            if on_chunk is None:
                response = self.call_model(
                    decision, system, user, envelope_id, "synthesize", trace_id,
                    history=history, temperature=0.3,
                )
            else:
                response = self.call_model_stream(
                    decision, system, user, envelope_id, "synthesize", on_chunk, trace_id,
                    history=history, temperature=0.3,
                )
            return response.content
