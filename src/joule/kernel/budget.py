"""Hierarchical budget accounting.

The BudgetManager owns every envelope instance in an arena keyed by id,
plus a separate child → parent edge map. A deduction on any instance is
applied to it and then to each ancestor in turn, so a parent always
accounts for at least the sum of its children's usage.

All reads and writes go through one re-entrant lock. Sub-tasks running on
worker threads therefore mirror into a shared parent without losing
updates, and the try_deduct_* methods give an atomic check-and-deduct for
callers that must not over-commit a budget.
"""

import logging
import math
import threading
import time
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Tuple, Union

from joule.errors import BudgetExhaustedError, ConfigError
from joule.kernel.models import (
    BUDGET_PRESETS,
    BudgetCheckpoint,
    BudgetEnvelope,
    BudgetOverride,
    BudgetUsage,
    ResourceUsage,
)

logger = logging.getLogger(__name__)

BudgetSpec = Union[str, BudgetOverride, BudgetEnvelope, None]


@dataclass
class BudgetState:
    """Mutable usage counters for one envelope instance."""

    tokens_used: float = 0
    tool_calls_used: int = 0
    escalations_used: int = 0
    cost_usd: float = 0.0
    energy_wh: float = 0.0
    carbon_grams: float = 0.0
    input_tokens: int = 0
    output_tokens: int = 0
    started_at: float = field(default_factory=time.monotonic)


@dataclass
class EnvelopeInstance:
    id: str
    envelope: BudgetEnvelope
    state: BudgetState = field(default_factory=BudgetState)


def resolve_envelope(budget: BudgetSpec, default_preset: str = "medium") -> BudgetEnvelope:
    """Turn a preset name or partial override into concrete limits.

    Args:
        budget: Preset name, partial override, full envelope, or None
        default_preset: Preset used for None and as the base for overrides

    Returns:
        A full BudgetEnvelope

    Raises:
        ConfigError: If a preset name is unknown
    """
    if isinstance(budget, BudgetEnvelope):
        return budget.model_copy()
    if budget is None:
        budget = default_preset
    if isinstance(budget, str):
        if budget not in BUDGET_PRESETS:
            raise ConfigError(
                f"Unknown budget preset '{budget}'. Choose from: {', '.join(BUDGET_PRESETS)}"
            )
        return BUDGET_PRESETS[budget].model_copy()
    base = BUDGET_PRESETS[default_preset]
    return base.model_copy(update=budget.model_dump(exclude_none=True))


class BudgetManager:
    """Create, deduct from and inspect budget envelope instances.

    Usage:
        budgets = BudgetManager()
        root = budgets.create_envelope("high")
        child = budgets.create_sub_envelope(root, 0.5)
        budgets.deduct_tokens(child, 120, 40)   # mirrored to root
        budgets.check_budget(child)             # raises BudgetExhaustedError
    """

    def __init__(self, default_preset: str = "medium"):
        if default_preset not in BUDGET_PRESETS:
            raise ConfigError(f"Unknown budget preset '{default_preset}'")
        self.default_preset = default_preset
        self._envelopes: Dict[str, EnvelopeInstance] = {}
        self._parents: Dict[str, str] = {}
        self._lock = threading.RLock()
        self._counter = 0

    # -------------------------------------------------------------------------
    # Creation
    # -------------------------------------------------------------------------

    def _new_id(self) -> str:
        self._counter += 1
        return f"env_{self._counter}"

    def create_envelope(self, budget: BudgetSpec = None) -> str:
        """Create a root envelope instance with zeroed usage.

        Args:
            budget: Preset name, partial override (merged over the default
                preset), full envelope, or None for the default preset

        Returns:
            Envelope instance id
        """
        envelope = resolve_envelope(budget, self.default_preset)
        with self._lock:
            envelope_id = self._new_id()
            self._envelopes[envelope_id] = EnvelopeInstance(id=envelope_id, envelope=envelope)
        logger.debug("Created envelope %s: %s", envelope_id, envelope.model_dump())
        return envelope_id

    def create_sub_envelope(self, parent_id: str, share: float) -> str:
        """Carve a child envelope out of the parent's remaining budget.

        Limits are ``share`` of what the parent has left right now, not of
        its original limits. The child is linked to the parent so every
        deduction on it is mirrored upward.

        Args:
            parent_id: Parent envelope instance id
            share: Fraction of the parent's remaining budget, clamped to [0, 1]

        Returns:
            Child envelope instance id
        """
        share = min(1.0, max(0.0, share))
        with self._lock:
            parent = self._get(parent_id)
            usage = self._usage(parent)

            def portion(remaining: float) -> float:
                return max(0.0, remaining) * share

            if math.isinf(usage.tokens.remaining):
                max_tokens = usage.tokens.remaining if share > 0 else 0
            else:
                max_tokens = math.floor(portion(usage.tokens.remaining))

            envelope = BudgetEnvelope(
                max_tokens=max_tokens,
                max_tool_calls=math.floor(portion(usage.tool_calls.remaining)),
                max_escalations=max(1, math.floor(portion(usage.escalations.remaining))),
                cost_ceiling_usd=portion(usage.cost_usd.remaining),
                max_latency_ms=portion(usage.latency_ms.remaining),
                max_energy_wh=(
                    portion(usage.energy_wh.remaining) if usage.energy_wh is not None else None
                ),
                max_carbon_grams=(
                    portion(usage.carbon_grams.remaining)
                    if usage.carbon_grams is not None
                    else None
                ),
            )
            child_id = self._new_id()
            self._envelopes[child_id] = EnvelopeInstance(id=child_id, envelope=envelope)
            self._parents[child_id] = parent_id
        logger.debug("Created sub-envelope %s of %s (share=%.2f)", child_id, parent_id, share)
        return child_id

    def release(self, envelope_id: str) -> None:
        """Drop a finished instance (and its parent edge) from the arena."""
        with self._lock:
            self._envelopes.pop(envelope_id, None)
            self._parents.pop(envelope_id, None)

    # -------------------------------------------------------------------------
    # Lookup
    # -------------------------------------------------------------------------

    def _get(self, envelope_id: str) -> EnvelopeInstance:
        try:
            return self._envelopes[envelope_id]
        except KeyError:
            raise KeyError(f"Unknown budget envelope: {envelope_id}") from None

    def get_envelope(self, envelope_id: str) -> BudgetEnvelope:
        with self._lock:
            return self._get(envelope_id).envelope.model_copy()

    def get_parent(self, envelope_id: str) -> Optional[str]:
        with self._lock:
            return self._parents.get(envelope_id)

    def _lineage(self, envelope_id: str) -> Iterator[EnvelopeInstance]:
        """Yield the instance and then each ancestor up to the root."""
        current: Optional[str] = envelope_id
        while current is not None:
            instance = self._envelopes.get(current)
            if instance is None:
                # Parent already released; nothing further to mirror into
                return
            yield instance
            current = self._parents.get(current)

    # -------------------------------------------------------------------------
    # Deductions (mirrored to every ancestor)
    # -------------------------------------------------------------------------

    def deduct_tokens(self, envelope_id: str, prompt_tokens: int, completion_tokens: int = 0) -> None:
        total = prompt_tokens + completion_tokens
        with self._lock:
            self._get(envelope_id)
            for instance in self._lineage(envelope_id):
                instance.state.tokens_used += total
                instance.state.input_tokens += prompt_tokens
                instance.state.output_tokens += completion_tokens

    def deduct_tool_call(self, envelope_id: str) -> None:
        with self._lock:
            self._get(envelope_id)
            for instance in self._lineage(envelope_id):
                instance.state.tool_calls_used += 1

    def deduct_escalation(self, envelope_id: str) -> None:
        with self._lock:
            self._get(envelope_id)
            for instance in self._lineage(envelope_id):
                instance.state.escalations_used += 1

    def deduct_cost(self, envelope_id: str, cost_usd: float) -> None:
        with self._lock:
            self._get(envelope_id)
            for instance in self._lineage(envelope_id):
                instance.state.cost_usd += cost_usd

    def deduct_energy(self, envelope_id: str, energy_wh: float, carbon_grams: float = 0.0) -> None:
        with self._lock:
            self._get(envelope_id)
            for instance in self._lineage(envelope_id):
                instance.state.energy_wh += energy_wh
                instance.state.carbon_grams += carbon_grams

    # -------------------------------------------------------------------------
    # Affordability
    # -------------------------------------------------------------------------

    def can_afford_escalation(self, envelope_id: str) -> bool:
        with self._lock:
            instance = self._get(envelope_id)
            return instance.state.escalations_used < instance.envelope.max_escalations

    def can_afford_tool_call(self, envelope_id: str) -> bool:
        with self._lock:
            instance = self._get(envelope_id)
            return instance.state.tool_calls_used < instance.envelope.max_tool_calls

    def try_deduct_escalation(self, envelope_id: str) -> bool:
        """Deduct one escalation only if affordable, as one atomic step."""
        with self._lock:
            if not self.can_afford_escalation(envelope_id):
                return False
            self.deduct_escalation(envelope_id)
            return True

    def try_deduct_tool_call(self, envelope_id: str) -> bool:
        """Deduct one tool call only if affordable, as one atomic step."""
        with self._lock:
            if not self.can_afford_tool_call(envelope_id):
                return False
            self.deduct_tool_call(envelope_id)
            return True

    # -------------------------------------------------------------------------
    # Inspection
    # -------------------------------------------------------------------------

    def _usage(self, instance: EnvelopeInstance) -> BudgetUsage:
        env = instance.envelope
        state = instance.state
        elapsed_ms = (time.monotonic() - state.started_at) * 1000

        def resource(used: float, limit: float) -> ResourceUsage:
            return ResourceUsage(used=used, limit=limit, remaining=limit - used)

        return BudgetUsage(
            tokens=resource(state.tokens_used, env.max_tokens),
            latency_ms=resource(elapsed_ms, env.max_latency_ms),
            tool_calls=resource(state.tool_calls_used, env.max_tool_calls),
            escalations=resource(state.escalations_used, env.max_escalations),
            cost_usd=resource(state.cost_usd, env.cost_ceiling_usd),
            energy_wh=(
                resource(state.energy_wh, env.max_energy_wh)
                if env.max_energy_wh is not None
                else None
            ),
            carbon_grams=(
                resource(state.carbon_grams, env.max_carbon_grams)
                if env.max_carbon_grams is not None
                else None
            ),
            input_tokens=state.input_tokens,
            output_tokens=state.output_tokens,
        )

    def get_usage(self, envelope_id: str) -> BudgetUsage:
        """Return a snapshot of used and remaining amounts, including latency."""
        with self._lock:
            return self._usage(self._get(envelope_id))

    def exhausted_dimension(self, usage: BudgetUsage) -> Optional[str]:
        """Return the first exhausted resource, in fixed check order.

        Tokens and latency are exhausted at zero remaining; countable and
        monetary resources only once they go negative.
        """
        checks: List[Tuple[str, bool]] = [
            ("tokens", usage.tokens.remaining <= 0),
            ("latency", usage.latency_ms.remaining <= 0),
            ("toolCalls", usage.tool_calls.remaining < 0),
            ("escalations", usage.escalations.remaining < 0),
            ("cost", usage.cost_usd.remaining < 0),
        ]
        if usage.energy_wh is not None:
            checks.append(("energy", usage.energy_wh.remaining < 0))
        if usage.carbon_grams is not None:
            checks.append(("carbon", usage.carbon_grams.remaining < 0))
        for dimension, exhausted in checks:
            if exhausted:
                return dimension
        return None

    def check_budget(self, envelope_id: str) -> BudgetUsage:
        """Raise if any tracked resource is exhausted.

        Returns:
            The usage snapshot that was checked

        Raises:
            BudgetExhaustedError: Naming the first exhausted resource
        """
        usage = self.get_usage(envelope_id)
        dimension = self.exhausted_dimension(usage)
        if dimension is not None:
            logger.info("Envelope %s exhausted: %s", envelope_id, dimension)
            raise BudgetExhaustedError(dimension, usage)
        return usage

    def checkpoint(self, envelope_id: str, label: str) -> BudgetCheckpoint:
        return BudgetCheckpoint(label=label, usage=self.get_usage(envelope_id))

    def get_energy_totals(self, envelope_id: str) -> Tuple[float, float]:
        """Return (energy_wh, carbon_grams) recorded on an instance."""
        with self._lock:
            state = self._get(envelope_id).state
            return state.energy_wh, state.carbon_grams
