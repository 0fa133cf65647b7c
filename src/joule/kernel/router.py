"""Tiered model routing.

The router picks a (provider, model, tier) for each model call. Small
models are the default; the large tier is chosen for complex or
low-confidence work, but only while the envelope can still afford an
escalation. Routing to the large tier does not itself spend an
escalation: only escalate() does, and the planner's replan goes through it.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

from joule.config import EnergyConfig, RoutingConfig
from joule.errors import BudgetExhaustedError, ProviderNotAvailableError
from joule.kernel.budget import BudgetManager
from joule.kernel.models import RoutingDecision
from joule.kernel.trace import TraceLogger
from joule.llm.providers.base import ModelProvider
from joule.llm.registry import ModelProviderRegistry
from joule.llm.types import ModelTier
from joule.pricing import calculate_cost, calculate_energy

logger = logging.getLogger(__name__)

FAILURE_COOLDOWN_S = 60.0
MAX_FAILURES_BEFORE_COOLDOWN = 3
LOW_ENERGY_WH = 0.01
SLM_ONLY_INTENTS = ("classify", "verify")


@dataclass
class _Candidate:
    provider: ModelProvider
    model: str
    estimated_cost: float
    estimated_energy_wh: float
    score: float = 0.0


class ModelRouter:
    """Select provider, model and tier for an intent under a budget.

    Usage:
        router = ModelRouter(providers, budgets, tracer, RoutingConfig())
        decision = router.route("plan", envelope_id, complexity=0.8, trace_id=trace_id)
        provider = router.provider_for(decision)
    """

    def __init__(
        self,
        providers: ModelProviderRegistry,
        budgets: BudgetManager,
        tracer: Optional[TraceLogger] = None,
        routing: Optional[RoutingConfig] = None,
        energy: Optional[EnergyConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.providers = providers
        self.budgets = budgets
        self.tracer = tracer
        self.config = routing or RoutingConfig()
        self.energy = energy
        self._clock = clock
        self._failures: Dict[str, Tuple[int, float]] = {}
        self._lock = threading.Lock()

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def route(
        self,
        intent: str,
        envelope_id: str,
        complexity: Optional[float] = None,
        confidence: Optional[float] = None,
        trace_id: Optional[str] = None,
    ) -> RoutingDecision:
        """Pick a provider and model for one call.

        Args:
            intent: What the call is for ("plan", "classify", "synthesize", ...)
            envelope_id: Budget envelope the call is charged to
            complexity: Task complexity estimate in [0, 1]
            confidence: Confidence from a previous step in [0, 1]
            trace_id: If given, the decision is logged to this trace

        Returns:
            RoutingDecision

        Raises:
            ProviderNotAvailableError: If no provider can serve any tier
        """
        tier, why = self._decide_tier(intent, envelope_id, complexity, confidence)
        decision = self._select(intent, tier, why, envelope_id, complexity, confidence)
        self._log(trace_id, decision)
        return decision

    def escalate(
        self,
        intent: str,
        envelope_id: str,
        reason: str = "",
        trace_id: Optional[str] = None,
    ) -> RoutingDecision:
        """Spend one escalation and route to the large tier.

        The affordability check and the deduction happen atomically.

        Raises:
            BudgetExhaustedError: If no escalation is left
            ProviderNotAvailableError: If no provider can serve any tier
        """
        if not self.budgets.try_deduct_escalation(envelope_id):
            raise BudgetExhaustedError("escalations", self.budgets.get_usage(envelope_id))
        why = f"escalation: {reason}" if reason else "escalation"
        decision = self._select(intent, ModelTier.LLM, why, envelope_id, 1.0, None)
        self._log(trace_id, decision)
        return decision

    def provider_for(self, decision: RoutingDecision) -> ModelProvider:
        provider = self.providers.get(decision.provider)
        if provider is None:
            raise ProviderNotAvailableError(decision.provider)
        return provider

    def report_failure(self, provider: str) -> None:
        """Count a provider failure; enough in a row trigger a cooldown."""
        with self._lock:
            count, _ = self._failures.get(provider, (0, 0.0))
            self._failures[provider] = (count + 1, self._clock())
            if count + 1 >= MAX_FAILURES_BEFORE_COOLDOWN:
                logger.warning("Provider %s in cooldown after %d failures", provider, count + 1)

    def report_success(self, provider: str) -> None:
        with self._lock:
            self._failures.pop(provider, None)

    def is_in_cooldown(self, provider: str) -> bool:
        with self._lock:
            entry = self._failures.get(provider)
        if entry is None:
            return False
        count, last_failure = entry
        if count < MAX_FAILURES_BEFORE_COOLDOWN:
            return False
        return (self._clock() - last_failure) < FAILURE_COOLDOWN_S

    # -------------------------------------------------------------------------
    # Tier decision
    # -------------------------------------------------------------------------

    def _decide_tier(
        self,
        intent: str,
        envelope_id: str,
        complexity: Optional[float],
        confidence: Optional[float],
    ) -> Tuple[ModelTier, str]:
        if intent in SLM_ONLY_INTENTS:
            return ModelTier.SLM, f"{intent} always uses the small tier"

        if self.energy is not None and self.energy.include_in_routing:
            usage = self.budgets.get_usage(envelope_id)
            if usage.energy_wh is not None and usage.energy_wh.remaining < LOW_ENERGY_WH:
                return ModelTier.SLM, "energy budget nearly exhausted"

        wants_llm = None
        if complexity is not None and complexity > self.config.complexity_threshold:
            wants_llm = f"complexity {complexity:.2f} > {self.config.complexity_threshold:.2f}"
        elif confidence is not None and confidence < self.config.slm_confidence_threshold:
            wants_llm = f"confidence {confidence:.2f} < {self.config.slm_confidence_threshold:.2f}"
        elif not self.config.prefer_local:
            wants_llm = "local preference disabled"

        if wants_llm is None:
            return ModelTier.SLM, "within small-tier thresholds"
        if not self.budgets.can_afford_escalation(envelope_id):
            return ModelTier.SLM, f"{wants_llm}, but no escalation budget left"
        return ModelTier.LLM, wants_llm

    # -------------------------------------------------------------------------
    # Provider selection
    # -------------------------------------------------------------------------

    def _candidates(self, tier: ModelTier) -> List[_Candidate]:
        candidates = []
        for name in self.config.provider_priority.get(tier.value, []):
            if self.is_in_cooldown(name):
                continue
            provider = self.providers.get(name)
            if provider is None or tier not in provider.supported_tiers:
                continue
            if not provider.is_available():
                continue
            model = provider.default_model(tier)
            candidates.append(
                _Candidate(
                    provider=provider,
                    model=model,
                    estimated_cost=calculate_cost(model, 1000, 1000),
                    estimated_energy_wh=calculate_energy(model, 1000, 1000),
                )
            )
        return candidates

    def _select(
        self,
        intent: str,
        tier: ModelTier,
        why: str,
        envelope_id: str,
        complexity: Optional[float],
        confidence: Optional[float],
    ) -> RoutingDecision:
        candidates = self._candidates(tier)
        if not candidates:
            fallback = ModelTier.LLM if tier == ModelTier.SLM else ModelTier.SLM
            candidates = self._candidates(fallback)
            if not candidates:
                raise ProviderNotAvailableError(f"any provider for tier {tier.value}")
            why = f"{why}; no {tier.value} provider available, using {fallback.value}"
            tier = fallback

        best = self._rank(candidates, envelope_id)
        parts = [f"intent={intent}", f"tier={tier.value}", f"provider={best.provider.name}", why]
        if complexity is not None:
            parts.append(f"complexity={complexity:.2f}")
        if confidence is not None:
            parts.append(f"confidence={confidence:.2f}")
        if len(candidates) > 1:
            parts.append(f"candidates={len(candidates)}")

        return RoutingDecision(
            intent=intent,
            provider=best.provider.name,
            model=best.model,
            tier=tier,
            reason=", ".join(parts),
            estimated_cost_usd=best.estimated_cost,
        )

    def _rank(self, candidates: List[_Candidate], envelope_id: str) -> _Candidate:
        """Pick the best candidate.

        Without efficiency ranking the first candidate in priority order
        wins. With it, candidates are scored on cost, energy and priority;
        cost weighs more as the envelope's cost budget tightens.
        """
        if len(candidates) == 1 or not self.config.prefer_efficient_models:
            return candidates[0]

        usage = self.budgets.get_usage(envelope_id)
        ceiling = usage.cost_usd.limit
        tightness = (usage.cost_usd.used / ceiling) if ceiling > 0 else 0.0
        tightness = min(1.0, max(0.0, tightness))

        energy_weight = self.energy.energy_weight if self.energy and self.energy.enabled else 0.0
        cost_weight = 0.5 + tightness * 0.3
        priority_weight = max(0.0, 1.0 - cost_weight - energy_weight)

        max_cost = max(max(c.estimated_cost for c in candidates), 0.001)
        max_energy = max(max(c.estimated_energy_wh for c in candidates), 0.001)
        for i, c in enumerate(candidates):
            c.score = (
                cost_weight * (1 - c.estimated_cost / max_cost)
                + energy_weight * (1 - c.estimated_energy_wh / max_energy)
                + priority_weight * (1 - i / len(candidates))
            )
        return max(candidates, key=lambda c: c.score)

    def _log(self, trace_id: Optional[str], decision: RoutingDecision) -> None:
        logger.debug("Routing decision: %s", decision.reason)
        if trace_id and self.tracer is not None:
            self.tracer.log_routing_decision(trace_id, decision)
