"""Execution trace recording.

A TraceLogger keeps one in-memory trace per trace id. Each trace owns an
arena of span records (children held as id lists) and a stack of open span
ids; the stack is always a chain of ancestors because a new span is
attached to whatever span is on top when it starts.

Finished traces are assembled into a nested ExecutionTrace, optionally
persisted through a TraceRepository, and evicted from memory.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from joule.kernel.models import (
    BudgetCheckpoint,
    BudgetEnvelope,
    BudgetUsage,
    ExecutionTrace,
    RoutingDecision,
    TraceBudget,
    TraceEvent,
    TraceEventType,
    TraceSpan,
    generate_id,
)
from joule.llm.types import ModelResponse
from joule.pricing import EfficiencyReport
from joule.storage.traces import TraceRepository

logger = logging.getLogger(__name__)


def _now_ms() -> float:
    return time.time() * 1000


@dataclass
class _SpanRecord:
    id: str
    parent_id: Optional[str]
    name: str
    start_time: float
    end_time: Optional[float] = None
    events: List[TraceEvent] = field(default_factory=list)
    child_ids: List[str] = field(default_factory=list)


@dataclass
class _TraceState:
    trace_id: str
    task_id: str
    allocated: BudgetEnvelope
    started_at: float
    spans: Dict[str, _SpanRecord] = field(default_factory=dict)
    root_ids: List[str] = field(default_factory=list)
    stack: List[str] = field(default_factory=list)


class TraceLogger:
    """Record nested spans and typed events for task executions.

    Usage:
        tracer = TraceLogger()
        tracer.create_trace(trace_id, task.id, envelope)
        span = tracer.start_span(trace_id, "plan")
        tracer.log_event(trace_id, TraceEventType.INFO, {"note": "hello"})
        tracer.end_span(trace_id, span)
        trace = tracer.get_trace(trace_id, usage)
    """

    def __init__(self, repository: Optional[TraceRepository] = None):
        """Initialize the logger.

        Args:
            repository: Optional persistence target for finished traces
        """
        self.repository = repository
        self._traces: Dict[str, _TraceState] = {}
        self._lock = threading.Lock()

    def create_trace(
        self,
        trace_id: Optional[str],
        task_id: str,
        budget: BudgetEnvelope,
    ) -> str:
        """Open a trace with an empty span stack.

        Returns:
            The trace id (generated when None is passed)
        """
        trace_id = trace_id or generate_id("trace")
        with self._lock:
            self._traces[trace_id] = _TraceState(
                trace_id=trace_id,
                task_id=task_id,
                allocated=budget,
                started_at=_now_ms(),
            )
        return trace_id

    def has_trace(self, trace_id: str) -> bool:
        with self._lock:
            return trace_id in self._traces

    def active_span(self, trace_id: str) -> Optional[str]:
        with self._lock:
            state = self._traces.get(trace_id)
            if state is None or not state.stack:
                return None
            return state.stack[-1]

    # -------------------------------------------------------------------------
    # Spans
    # -------------------------------------------------------------------------

    def start_span(
        self, trace_id: str, name: str, data: Optional[Dict[str, Any]] = None
    ) -> str:
        """Open a span under the current top of the stack (or as a root).

        Args:
            trace_id: Trace to record into
            name: Span name, e.g. "plan" or "step-0"
            data: If given, logged as an info event on the new span

        Returns:
            The new span id

        Raises:
            KeyError: If the trace does not exist
        """
        span_id = generate_id("span")
        with self._lock:
            state = self._require(trace_id)
            parent_id = state.stack[-1] if state.stack else None
            state.spans[span_id] = _SpanRecord(
                id=span_id, parent_id=parent_id, name=name, start_time=_now_ms()
            )
            if parent_id is None:
                state.root_ids.append(span_id)
            else:
                state.spans[parent_id].child_ids.append(span_id)
            state.stack.append(span_id)

        if data:
            self.log_event(trace_id, TraceEventType.INFO, data, span_id=span_id)
        return span_id

    def end_span(self, trace_id: str, span_id: str) -> None:
        """Close a span and pop it from the stack.

        Spans opened above it and still open are closed with it, so the
        stack stays an ancestor chain. Ending an already closed span is a
        no-op.
        """
        with self._lock:
            state = self._traces.get(trace_id)
            if state is None or span_id not in state.stack:
                return
            now = _now_ms()
            while state.stack:
                top = state.spans[state.stack.pop()]
                top.end_time = max(top.start_time, now)
                if top.id == span_id:
                    break

    # -------------------------------------------------------------------------
    # Events
    # -------------------------------------------------------------------------

    def log_event(
        self,
        trace_id: str,
        event_type: TraceEventType,
        data: Optional[Dict[str, Any]] = None,
        span_id: Optional[str] = None,
        duration_ms: Optional[float] = None,
    ) -> Optional[TraceEvent]:
        """Append an event to an open span.

        Args:
            trace_id: Trace to record into
            event_type: Kind of event
            data: Event payload
            span_id: Explicit target span (defaults to the top of the stack)
            duration_ms: Optional duration of the recorded action

        Returns:
            The recorded event, or None if there was no open span to hold it
        """
        with self._lock:
            state = self._traces.get(trace_id)
            if state is None:
                logger.debug("Dropping %s event for unknown trace %s", event_type, trace_id)
                return None
            target_id = span_id or (state.stack[-1] if state.stack else None)
            span = state.spans.get(target_id) if target_id else None
            if span is None or span.end_time is not None:
                logger.debug("Dropping %s event: no open span in trace %s", event_type, trace_id)
                return None
            event = TraceEvent(
                trace_id=trace_id,
                span_id=span.id,
                type=event_type,
                timestamp=_now_ms(),
                duration_ms=duration_ms,
                data=data or {},
            )
            span.events.append(event)
            return event

    def log_model_call(
        self, trace_id: str, response: ModelResponse, intent: Optional[str] = None
    ) -> Optional[TraceEvent]:
        return self.log_event(
            trace_id,
            TraceEventType.MODEL_CALL,
            {
                "intent": intent,
                "provider": response.provider,
                "model": response.model,
                "tier": response.tier.value,
                "promptTokens": response.token_usage.prompt_tokens,
                "completionTokens": response.token_usage.completion_tokens,
                "costUsd": response.cost_usd,
            },
            duration_ms=response.latency_ms,
        )

    def log_tool_call(
        self,
        trace_id: str,
        tool_name: str,
        tool_args: Dict[str, Any],
        success: bool,
        duration_ms: float,
        output: Any = None,
        error: Optional[str] = None,
    ) -> Optional[TraceEvent]:
        data: Dict[str, Any] = {"toolName": tool_name, "toolArgs": tool_args, "success": success}
        if output is not None:
            data["output"] = str(output)[:500]
        if error is not None:
            data["error"] = error
        return self.log_event(trace_id, TraceEventType.TOOL_CALL, data, duration_ms=duration_ms)

    def log_routing_decision(
        self, trace_id: str, decision: RoutingDecision
    ) -> Optional[TraceEvent]:
        return self.log_event(
            trace_id,
            TraceEventType.ROUTING_DECISION,
            {
                "intent": decision.intent,
                "tier": decision.tier.value,
                "provider": decision.provider,
                "model": decision.model,
                "reason": decision.reason,
                "estimatedCost": decision.estimated_cost_usd,
            },
        )

    def log_budget_checkpoint(
        self, trace_id: str, checkpoint: BudgetCheckpoint
    ) -> Optional[TraceEvent]:
        return self.log_event(
            trace_id,
            TraceEventType.BUDGET_CHECKPOINT,
            {"label": checkpoint.label, "usage": checkpoint.usage.model_dump()},
        )

    def log_energy_report(
        self, trace_id: str, report: EfficiencyReport
    ) -> Optional[TraceEvent]:
        return self.log_event(trace_id, TraceEventType.ENERGY_REPORT, report.model_dump())

    # -------------------------------------------------------------------------
    # Finalization
    # -------------------------------------------------------------------------

    def get_trace(self, trace_id: str, budget_used: BudgetUsage) -> Optional[ExecutionTrace]:
        """Assemble, persist (best effort) and evict a trace.

        Spans still open are closed at completion time.

        Returns:
            The finished trace, or None if the trace id is unknown
        """
        with self._lock:
            state = self._traces.pop(trace_id, None)
        if state is None:
            return None

        completed_at = _now_ms()
        for span_id in state.stack:
            span = state.spans[span_id]
            span.end_time = max(span.start_time, completed_at)
        state.stack.clear()

        trace = ExecutionTrace(
            trace_id=state.trace_id,
            task_id=state.task_id,
            started_at=state.started_at,
            completed_at=completed_at,
            total_duration_ms=completed_at - state.started_at,
            budget=TraceBudget(allocated=state.allocated, used=budget_used),
            spans=[self._build_span(state, span_id) for span_id in state.root_ids],
        )

        if self.repository is not None:
            try:
                self.repository.save(trace)
            except Exception as e:
                logger.warning("Failed to persist trace %s: %s", trace_id, e)

        return trace

    def discard_trace(self, trace_id: str) -> bool:
        """Evict a trace without assembling or persisting it."""
        with self._lock:
            return self._traces.pop(trace_id, None) is not None

    def _build_span(self, state: _TraceState, span_id: str) -> TraceSpan:
        record = state.spans[span_id]
        return TraceSpan(
            id=record.id,
            trace_id=state.trace_id,
            parent_id=record.parent_id,
            name=record.name,
            start_time=record.start_time,
            end_time=record.end_time,
            events=list(record.events),
            children=[self._build_span(state, child) for child in record.child_ids],
        )

    def _require(self, trace_id: str) -> _TraceState:
        state = self._traces.get(trace_id)
        if state is None:
            raise KeyError(f"Unknown trace: {trace_id}")
        return state
