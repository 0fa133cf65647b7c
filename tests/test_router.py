"""Tests for tiered model routing."""

import pytest

from joule.config import EnergyConfig, RoutingConfig
from joule.errors import BudgetExhaustedError, ProviderNotAvailableError
from joule.kernel.budget import BudgetManager
from joule.kernel.models import BudgetOverride, TraceEventType
from joule.kernel.router import ModelRouter
from joule.kernel.trace import TraceLogger
from joule.llm.providers import FakeProvider
from joule.llm.registry import ModelProviderRegistry
from joule.llm.types import ModelTier


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def split_providers() -> ModelProviderRegistry:
    """A local SLM-only provider and a cloud LLM-only provider."""
    return (
        ModelProviderRegistry()
        .register(FakeProvider(name="local", tiers=[ModelTier.SLM], slm_model="local-small"))
        .register(FakeProvider(name="cloud", tiers=[ModelTier.LLM], llm_model="cloud-large"))
    )


@pytest.fixture
def split_routing() -> RoutingConfig:
    return RoutingConfig(provider_priority={"slm": ["local"], "llm": ["cloud"]})


class TestTierDecision:
    """Tests for SLM/LLM selection."""

    def test_classify_always_small(self, router: ModelRouter, budgets: BudgetManager):
        envelope_id = budgets.create_envelope("high")

        decision = router.route("classify", envelope_id, complexity=0.99)

        assert decision.tier == ModelTier.SLM

    def test_simple_plan_stays_small(self, router: ModelRouter, budgets: BudgetManager):
        envelope_id = budgets.create_envelope("high")

        decision = router.route("plan", envelope_id, complexity=0.3)

        assert decision.tier == ModelTier.SLM
        assert "intent=plan" in decision.reason

    def test_complex_plan_goes_large_without_spending(
        self, router: ModelRouter, budgets: BudgetManager
    ):
        """Routing to the large tier does not consume an escalation."""
        envelope_id = budgets.create_envelope("medium")

        decision = router.route("plan", envelope_id, complexity=0.9)

        assert decision.tier == ModelTier.LLM
        assert budgets.get_usage(envelope_id).escalations.used == 0

    def test_low_confidence_goes_large(self, router: ModelRouter, budgets: BudgetManager):
        envelope_id = budgets.create_envelope("medium")

        decision = router.route("synthesize", envelope_id, confidence=0.2)

        assert decision.tier == ModelTier.LLM

    def test_no_escalation_budget_stays_small(
        self, router: ModelRouter, budgets: BudgetManager
    ):
        envelope_id = budgets.create_envelope("low")

        decision = router.route("plan", envelope_id, complexity=0.95)

        assert decision.tier == ModelTier.SLM
        assert "no escalation budget" in decision.reason

    def test_prefer_local_disabled(self, providers, budgets: BudgetManager):
        routing = RoutingConfig(
            prefer_local=False, provider_priority={"slm": ["fake"], "llm": ["fake"]}
        )
        router = ModelRouter(providers, budgets, routing=routing)
        envelope_id = budgets.create_envelope("medium")

        assert router.route("plan", envelope_id, complexity=0.1).tier == ModelTier.LLM

    def test_energy_nearly_exhausted_stays_small(self, providers, budgets: BudgetManager):
        routing = RoutingConfig(provider_priority={"slm": ["fake"], "llm": ["fake"]})
        router = ModelRouter(
            providers, budgets, routing=routing, energy=EnergyConfig(include_in_routing=True)
        )
        envelope_id = budgets.create_envelope(BudgetOverride(max_energy_wh=0.005))

        decision = router.route("plan", envelope_id, complexity=0.95)

        assert decision.tier == ModelTier.SLM
        assert "energy" in decision.reason


class TestProviderSelection:
    """Tests for provider priority and fallback."""

    def test_priority_order_by_tier(self, split_providers, split_routing):
        budgets = BudgetManager()
        router = ModelRouter(split_providers, budgets, routing=split_routing)
        envelope_id = budgets.create_envelope("high")

        small = router.route("plan", envelope_id, complexity=0.1)
        large = router.route("plan", envelope_id, complexity=0.9)

        assert (small.provider, small.model) == ("local", "local-small")
        assert (large.provider, large.model) == ("cloud", "cloud-large")

    def test_unavailable_tier_falls_back(self, split_providers, split_routing):
        """With no small provider available the large tier is used."""
        split_providers.get("local").set_available(False)
        budgets = BudgetManager()
        router = ModelRouter(split_providers, budgets, routing=split_routing)
        envelope_id = budgets.create_envelope("high")

        decision = router.route("classify", envelope_id)

        assert decision.provider == "cloud"
        assert decision.tier == ModelTier.LLM

    def test_no_provider_raises(self, budgets: BudgetManager, routing: RoutingConfig):
        router = ModelRouter(ModelProviderRegistry(), budgets, routing=routing)
        envelope_id = budgets.create_envelope()

        with pytest.raises(ProviderNotAvailableError):
            router.route("plan", envelope_id)

    def test_provider_for_decision(self, router: ModelRouter, budgets, fake_provider):
        envelope_id = budgets.create_envelope()
        decision = router.route("plan", envelope_id)

        assert router.provider_for(decision) is fake_provider

    def test_decision_logged_to_trace(self, router: ModelRouter, budgets, tracer: TraceLogger):
        envelope_id = budgets.create_envelope()
        trace_id = tracer.create_trace(None, "task_1", budgets.get_envelope(envelope_id))
        tracer.start_span(trace_id, "root")

        router.route("plan", envelope_id, trace_id=trace_id)

        trace = tracer.get_trace(trace_id, budgets.get_usage(envelope_id))
        events = trace.events_of(TraceEventType.ROUTING_DECISION)
        assert len(events) == 1
        assert events[0].data["provider"] == "fake"


class TestEscalation:
    """Tests for explicit escalation."""

    def test_escalate_spends_one(self, router: ModelRouter, budgets: BudgetManager):
        envelope_id = budgets.create_envelope("medium")

        decision = router.escalate("plan", envelope_id, reason="step failed")

        assert decision.tier == ModelTier.LLM
        assert "escalation: step failed" in decision.reason
        assert budgets.get_usage(envelope_id).escalations.used == 1

    def test_escalate_without_budget_raises(self, router: ModelRouter, budgets: BudgetManager):
        envelope_id = budgets.create_envelope("medium")
        router.escalate("plan", envelope_id)

        with pytest.raises(BudgetExhaustedError) as exc_info:
            router.escalate("plan", envelope_id)

        assert exc_info.value.dimension == "escalations"
        assert budgets.get_usage(envelope_id).escalations.used == 1


class TestCooldown:
    """Tests for provider failure cooldown."""

    def test_three_failures_trigger_cooldown(self, split_providers, split_routing):
        clock = FakeClock()
        budgets = BudgetManager()
        router = ModelRouter(split_providers, budgets, routing=split_routing, clock=clock)

        for _ in range(3):
            router.report_failure("local")

        assert router.is_in_cooldown("local")
        envelope_id = budgets.create_envelope("high")
        assert router.route("classify", envelope_id).provider == "cloud"

    def test_cooldown_expires(self, split_providers, split_routing):
        clock = FakeClock()
        router = ModelRouter(split_providers, BudgetManager(), routing=split_routing, clock=clock)
        for _ in range(3):
            router.report_failure("local")

        clock.now += 61

        assert not router.is_in_cooldown("local")

    def test_success_resets_failures(self, router: ModelRouter):
        router.report_failure("fake")
        router.report_failure("fake")
        router.report_success("fake")
        router.report_failure("fake")

        assert not router.is_in_cooldown("fake")


class TestEfficientRanking:
    def test_cheaper_model_preferred(self, budgets: BudgetManager):
        """With efficiency ranking on, the cheaper of two providers wins."""
        providers = (
            ModelProviderRegistry()
            .register(FakeProvider(name="pricey", llm_model="gpt-4o"))
            .register(FakeProvider(name="thrifty", llm_model="gpt-4o-mini"))
        )
        routing = RoutingConfig(
            prefer_efficient_models=True,
            provider_priority={"slm": ["pricey", "thrifty"], "llm": ["pricey", "thrifty"]},
        )
        router = ModelRouter(providers, budgets, routing=routing)
        envelope_id = budgets.create_envelope("high")

        decision = router.route("plan", envelope_id, complexity=0.9)

        assert decision.provider == "thrifty"
