"""Kernel models for tasks, budgets, plans, results and traces.

This module defines the pydantic models shared by the kernel:
- Task input (Task) and budgets (BudgetEnvelope, BudgetUsage)
- Planning artifacts (TaskSpec, PlanStep, ExecutionPlan, PlanScore)
- Execution output (StepResult, TaskResult, StreamEvent)
- Decomposition (SubTaskDefinition, DecompositionPlan)
- Provenance (TraceEvent, TraceSpan, ExecutionTrace)
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Union
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

from joule.llm.types import ChatMessage, ModelTier
from joule.pricing import EfficiencyReport


def generate_id(prefix: str) -> str:
    """Return a short unique id such as ``task_1a2b3c4d5e6f``."""
    return f"{prefix}_{uuid4().hex[:12]}"


# =============================================================================
# Budgets
# =============================================================================

BudgetPreset = Literal["low", "medium", "high", "unlimited"]


class BudgetEnvelope(BaseModel):
    """Declared resource limits for one execution."""

    max_tokens: float  # float so the unlimited preset can use inf
    max_tool_calls: int
    max_escalations: int
    cost_ceiling_usd: float
    max_latency_ms: float
    max_energy_wh: Optional[float] = None
    max_carbon_grams: Optional[float] = None


class BudgetOverride(BaseModel):
    """Partial envelope; unset fields come from the medium preset."""

    max_tokens: Optional[float] = None
    max_tool_calls: Optional[int] = None
    max_escalations: Optional[int] = None
    cost_ceiling_usd: Optional[float] = None
    max_latency_ms: Optional[float] = None
    max_energy_wh: Optional[float] = None
    max_carbon_grams: Optional[float] = None


BUDGET_PRESETS: Dict[str, BudgetEnvelope] = {
    "low": BudgetEnvelope(
        max_tokens=4000,
        max_latency_ms=10_000,
        max_tool_calls=3,
        max_escalations=0,
        cost_ceiling_usd=0.01,
        max_energy_wh=0.005,
        max_carbon_grams=0.002,
    ),
    "medium": BudgetEnvelope(
        max_tokens=16_000,
        max_latency_ms=30_000,
        max_tool_calls=10,
        max_escalations=1,
        cost_ceiling_usd=0.10,
        max_energy_wh=0.05,
        max_carbon_grams=0.02,
    ),
    "high": BudgetEnvelope(
        max_tokens=100_000,
        max_latency_ms=300_000,
        max_tool_calls=40,
        max_escalations=5,
        cost_ceiling_usd=1.00,
        max_energy_wh=0.5,
        max_carbon_grams=0.2,
    ),
    "unlimited": BudgetEnvelope(
        max_tokens=float("inf"),
        max_latency_ms=600_000,
        max_tool_calls=100,
        max_escalations=10,
        cost_ceiling_usd=10.00,
    ),
}


class ResourceUsage(BaseModel):
    """Used, limit and remaining amounts for one resource."""

    used: float
    limit: float
    remaining: float


class BudgetUsage(BaseModel):
    """Read-only snapshot of an envelope instance."""

    tokens: ResourceUsage
    latency_ms: ResourceUsage
    tool_calls: ResourceUsage
    escalations: ResourceUsage
    cost_usd: ResourceUsage
    energy_wh: Optional[ResourceUsage] = None
    carbon_grams: Optional[ResourceUsage] = None
    input_tokens: int = 0
    output_tokens: int = 0

    def summary(self) -> Dict[str, Any]:
        """Compact used/limit view for logs and progress events."""
        view = {
            "tokens": f"{int(self.tokens.used)}/{self.tokens.limit}",
            "tool_calls": f"{int(self.tool_calls.used)}/{int(self.tool_calls.limit)}",
            "escalations": f"{int(self.escalations.used)}/{int(self.escalations.limit)}",
            "cost_usd": f"{self.cost_usd.used:.6f}/{self.cost_usd.limit}",
        }
        if self.energy_wh is not None:
            view["energy_wh"] = f"{self.energy_wh.used:.6f}/{self.energy_wh.limit}"
        return view


class BudgetCheckpoint(BaseModel):
    """Labelled usage snapshot for trace annotation."""

    label: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    usage: BudgetUsage


class RoutingDecision(BaseModel):
    """Provider, model and tier selected for one model call."""

    intent: str
    provider: str
    model: str
    tier: ModelTier
    reason: str
    estimated_cost_usd: float = 0.0


# =============================================================================
# Task input
# =============================================================================


class Task(BaseModel):
    """A natural-language task submitted to the kernel. Immutable."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: generate_id("task"))
    description: str
    budget: Union[BudgetPreset, BudgetOverride, None] = None
    messages: List[ChatMessage] = Field(default_factory=list)
    tools: Optional[List[str]] = None  # allow-list
    session_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


# =============================================================================
# Planning
# =============================================================================


class SuccessCriterion(BaseModel):
    """A checkable statement of what a finished task looks like."""

    description: str
    type: Literal["output_contains", "tool_succeeded", "file_exists", "custom"] = "custom"
    check: Dict[str, Any] = Field(default_factory=dict)


class CriterionResult(BaseModel):
    criterion: SuccessCriterion
    met: bool
    evidence: str


class TaskSpec(BaseModel):
    """Goal, constraints and success criteria derived from a task."""

    goal: str
    constraints: List[str] = Field(default_factory=list)
    success_criteria: List[SuccessCriterion] = Field(default_factory=list)


class StepVerification(BaseModel):
    """Optional post-condition on a step's output.

    - none: not verified
    - output_check: output must contain ``assertion`` (literal or regex)
    """

    type: Literal["none", "output_check"] = "none"
    assertion: str = ""
    retry_on_fail: bool = False
    max_retries: int = Field(default=2, ge=0)


class PlanStep(BaseModel):
    """One tool invocation in a plan."""

    description: str
    tool_name: str
    tool_args: Dict[str, Any] = Field(default_factory=dict)
    verify: Optional[StepVerification] = None


class ExecutionPlan(BaseModel):
    task_id: str
    steps: List[PlanStep] = Field(default_factory=list)
    complexity: float = 0.5


class PlanScore(BaseModel):
    """Critique of a plan. All scores are clamped to [0, 1]."""

    overall: float = Field(ge=0.0, le=1.0)
    step_confidences: List[float] = Field(default_factory=list)
    issues: List[str] = Field(default_factory=list)
    refined_plan: Optional[List[PlanStep]] = None


# =============================================================================
# Execution
# =============================================================================


class TaskStatus(str, Enum):
    """Terminal status of a task execution."""

    COMPLETED = "completed"
    FAILED = "failed"
    BUDGET_EXHAUSTED = "budget_exhausted"


class AgentState(str, Enum):
    """States of the task executor, in order."""

    IDLE = "idle"
    SPEC = "spec"
    CLASSIFY = "classify"
    PLAN = "plan"
    CRITIQUE = "critique"
    EXECUTE = "execute"
    SYNTHESIZE = "synthesize"
    DONE = "done"


class StepResult(BaseModel):
    """Outcome of one tool invocation attempt."""

    step_index: int
    tool_name: str
    tool_args: Dict[str, Any] = Field(default_factory=dict)
    output: Any = None
    error: Optional[str] = None
    success: bool
    duration_ms: float = 0.0


class TaskResult(BaseModel):
    """Everything a caller gets back from one execution."""

    id: str = Field(default_factory=lambda: generate_id("result"))
    task_id: str
    trace_id: str
    status: TaskStatus
    result: Optional[str] = None
    step_results: List[StepResult] = Field(default_factory=list)
    budget_used: BudgetUsage
    trace: Optional["ExecutionTrace"] = None
    completed_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    error: Optional[str] = None
    spec: Optional[TaskSpec] = None
    criteria_results: List[CriterionResult] = Field(default_factory=list)
    efficiency_report: Optional[EfficiencyReport] = None


class ProgressEvent(BaseModel):
    """Phase-level progress for streamed execution."""

    phase: AgentState
    message: str = ""
    step_index: Optional[int] = None
    total_steps: Optional[int] = None
    usage: Optional[BudgetUsage] = None


class StreamEvent(BaseModel):
    """One item of a streamed execution."""

    type: Literal["progress", "chunk", "result"]
    progress: Optional[ProgressEvent] = None
    chunk: Optional[str] = None
    result: Optional[TaskResult] = None


# =============================================================================
# Decomposition
# =============================================================================


class SubTaskDefinition(BaseModel):
    id: str
    description: str
    parent_task_id: str
    depends_on: List[str] = Field(default_factory=list)
    budget_share: float = Field(ge=0.0, le=1.0)


class DecompositionPlan(BaseModel):
    sub_tasks: List[SubTaskDefinition]
    strategy: Literal["sequential", "parallel", "mixed"] = "sequential"
    aggregation: str = ""


# =============================================================================
# Trace
# =============================================================================


class TraceEventType(str, Enum):
    """Kinds of trace events."""

    MODEL_CALL = "model_call"
    TOOL_CALL = "tool_call"
    ROUTING_DECISION = "routing_decision"
    BUDGET_CHECKPOINT = "budget_checkpoint"
    ESCALATION = "escalation"
    PLAN_GENERATED = "plan_generated"
    REPLAN = "replan"
    ERROR = "error"
    INFO = "info"
    ENERGY_REPORT = "energy_report"
    CONSTITUTION_VIOLATION = "constitution_violation"
    CONSTITUTION_OUTPUT_VIOLATION = "constitution_output_violation"
    SPEC_GENERATED = "spec_generated"
    COMPLEXITY_BOOSTED = "complexity_boosted"
    STEP_VERIFICATION = "step_verification"
    VERIFICATION_FAILED = "verification_failed"
    STATE_TRANSITION = "state_transition"
    PLAN_CRITIQUE = "plan_critique"
    DECOMPOSITION = "decomposition"


class TraceEvent(BaseModel):
    id: str = Field(default_factory=lambda: generate_id("evt"))
    trace_id: str
    span_id: str
    type: TraceEventType
    timestamp: float  # epoch ms
    duration_ms: Optional[float] = None
    data: Dict[str, Any] = Field(default_factory=dict)


class TraceSpan(BaseModel):
    id: str
    trace_id: str
    parent_id: Optional[str] = None
    name: str
    start_time: float  # epoch ms
    end_time: Optional[float] = None
    events: List[TraceEvent] = Field(default_factory=list)
    children: List["TraceSpan"] = Field(default_factory=list)


class TraceBudget(BaseModel):
    allocated: BudgetEnvelope
    used: BudgetUsage


class ExecutionTrace(BaseModel):
    """A finished trace: the nested span tree plus budget summary."""

    trace_id: str
    task_id: str
    started_at: float
    completed_at: float
    total_duration_ms: float
    budget: TraceBudget
    spans: List[TraceSpan] = Field(default_factory=list)

    def iter_events(self):
        """Yield every event in depth-first span order."""
        stack = list(reversed(self.spans))
        while stack:
            span = stack.pop()
            yield from span.events
            stack.extend(reversed(span.children))

    def events_of(self, event_type: str) -> List[TraceEvent]:
        return [e for e in self.iter_events() if e.type == event_type]


TaskResult.model_rebuild()
TraceSpan.model_rebuild()
