"""Orchestration kernel: budgets, routing, planning, execution and tracing."""

from joule.kernel.budget import BudgetManager, resolve_envelope
from joule.kernel.executor import TaskExecutor, evaluate_criteria
from joule.kernel.models import (
    BUDGET_PRESETS,
    AgentState,
    BudgetEnvelope,
    BudgetOverride,
    BudgetUsage,
    DecompositionPlan,
    ExecutionPlan,
    ExecutionTrace,
    PlanScore,
    PlanStep,
    StepResult,
    StepVerification,
    StreamEvent,
    SubTaskDefinition,
    SuccessCriterion,
    Task,
    TaskResult,
    TaskSpec,
    TaskStatus,
    TraceEventType,
)
from joule.kernel.orchestrator import SubTaskOrchestrator, aggregate_results
from joule.kernel.planner import Planner
from joule.kernel.policy import PolicyEnforcer, PolicyRule, PolicyViolation
from joule.kernel.router import ModelRouter
from joule.kernel.trace import TraceLogger

__all__ = [
    # Components
    "BudgetManager",
    "ModelRouter",
    "Planner",
    "TaskExecutor",
    "SubTaskOrchestrator",
    "TraceLogger",
    "PolicyEnforcer",
    # Helpers
    "resolve_envelope",
    "evaluate_criteria",
    "aggregate_results",
    # Models
    "BUDGET_PRESETS",
    "AgentState",
    "BudgetEnvelope",
    "BudgetOverride",
    "BudgetUsage",
    "DecompositionPlan",
    "ExecutionPlan",
    "ExecutionTrace",
    "PlanScore",
    "PlanStep",
    "PolicyRule",
    "PolicyViolation",
    "StepResult",
    "StepVerification",
    "StreamEvent",
    "SubTaskDefinition",
    "SuccessCriterion",
    "Task",
    "TaskResult",
    "TaskSpec",
    "TaskStatus",
    "TraceEventType",
]
