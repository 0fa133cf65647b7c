"""Tests for hierarchical budget accounting."""

import threading

import pytest

from joule.errors import BudgetExhaustedError, ConfigError
from joule.kernel.budget import BudgetManager, resolve_envelope
from joule.kernel.models import BUDGET_PRESETS, BudgetOverride


class TestResolveEnvelope:
    """Tests for preset and override resolution."""

    def test_none_uses_medium(self):
        """No budget resolves to the medium preset."""
        assert resolve_envelope(None) == BUDGET_PRESETS["medium"]

    def test_override_merges_over_medium(self):
        """Unset override fields come from the medium preset."""
        envelope = resolve_envelope(BudgetOverride(max_tool_calls=2))

        assert envelope.max_tool_calls == 2
        assert envelope.max_tokens == BUDGET_PRESETS["medium"].max_tokens
        assert envelope.cost_ceiling_usd == BUDGET_PRESETS["medium"].cost_ceiling_usd

    def test_unknown_preset_raises(self):
        with pytest.raises(ConfigError):
            resolve_envelope("enormous")


class TestDeductions:
    """Tests for deductions mirrored to ancestors."""

    def test_tokens_mirror_through_three_levels(self, budgets: BudgetManager):
        """Parent usage grows by exactly the deducted amount at every level."""
        root = budgets.create_envelope("high")
        child = budgets.create_sub_envelope(root, 0.5)
        grandchild = budgets.create_sub_envelope(child, 0.5)

        budgets.deduct_tokens(grandchild, 100, 50)

        for envelope_id in (grandchild, child, root):
            usage = budgets.get_usage(envelope_id)
            assert usage.tokens.used == 150
            assert usage.input_tokens == 100
            assert usage.output_tokens == 50

    def test_every_resource_mirrors(self, budgets: BudgetManager):
        """Tool calls, escalations, cost and energy all reach the root."""
        root = budgets.create_envelope("high")
        child = budgets.create_sub_envelope(root, 0.5)
        budgets.deduct_tokens(root, 10)
        before = budgets.get_usage(root)

        budgets.deduct_tool_call(child)
        budgets.deduct_escalation(child)
        budgets.deduct_cost(child, 0.02)
        budgets.deduct_energy(child, 0.001, 0.0004)

        after = budgets.get_usage(root)
        assert after.tool_calls.used == before.tool_calls.used + 1
        assert after.escalations.used == before.escalations.used + 1
        assert after.cost_usd.used == pytest.approx(before.cost_usd.used + 0.02)
        assert after.energy_wh.used == pytest.approx(before.energy_wh.used + 0.001)
        assert after.carbon_grams.used == pytest.approx(before.carbon_grams.used + 0.0004)
        assert after.tokens.used == before.tokens.used

    def test_sibling_deductions_sum_in_parent(self, budgets: BudgetManager):
        root = budgets.create_envelope("high")
        first = budgets.create_sub_envelope(root, 0.3)
        second = budgets.create_sub_envelope(root, 0.3)

        budgets.deduct_tokens(first, 40)
        budgets.deduct_tokens(second, 60)

        assert budgets.get_usage(root).tokens.used == 100
        assert budgets.get_usage(first).tokens.used == 40

    def test_unknown_envelope_raises(self, budgets: BudgetManager):
        with pytest.raises(KeyError):
            budgets.deduct_tokens("env_missing", 1)

    def test_deduction_after_parent_released(self, budgets: BudgetManager):
        """A child keeps working once its parent is gone."""
        root = budgets.create_envelope("high")
        child = budgets.create_sub_envelope(root, 0.5)
        budgets.release(root)

        budgets.deduct_tokens(child, 5)

        assert budgets.get_usage(child).tokens.used == 5


class TestSubEnvelope:
    """Tests for carving child envelopes out of a parent."""

    def test_tokens_floor_of_remaining_share(self, budgets: BudgetManager):
        """max_tokens is floor(parent remaining × share)."""
        root = budgets.create_envelope("high")
        budgets.deduct_tokens(root, 1001)

        child = budgets.create_sub_envelope(root, 0.5)

        assert budgets.get_envelope(child).max_tokens == 49499

    def test_share_clamped_above_one(self, budgets: BudgetManager):
        root = budgets.create_envelope("high")
        budgets.deduct_tokens(root, 1000)

        child = budgets.create_sub_envelope(root, 1.5)

        assert budgets.get_envelope(child).max_tokens == 99000

    def test_share_clamped_below_zero(self, budgets: BudgetManager):
        """A negative share gives an empty child with one escalation."""
        root = budgets.create_envelope("high")

        child = budgets.create_sub_envelope(root, -0.2)
        envelope = budgets.get_envelope(child)

        assert envelope.max_tokens == 0
        assert envelope.max_tool_calls == 0
        assert envelope.max_escalations == 1
        assert envelope.cost_ceiling_usd == 0

    def test_other_limits(self, budgets: BudgetManager):
        root = budgets.create_envelope("high")

        child = budgets.create_sub_envelope(root, 0.25)
        envelope = budgets.get_envelope(child)

        assert envelope.max_tool_calls == 10
        assert envelope.max_escalations == 1
        assert envelope.cost_ceiling_usd == pytest.approx(0.25)
        assert envelope.max_energy_wh == pytest.approx(0.125)
        assert budgets.get_parent(child) == root

    def test_unlimited_parent_has_no_energy_limits(self, budgets: BudgetManager):
        root = budgets.create_envelope("unlimited")

        child = budgets.create_sub_envelope(root, 0.5)
        envelope = budgets.get_envelope(child)

        assert envelope.max_tokens == float("inf")
        assert envelope.max_energy_wh is None
        assert envelope.max_carbon_grams is None


class TestCheckBudget:
    """Tests for exhaustion thresholds."""

    def test_fresh_envelope_passes(self, budgets: BudgetManager):
        envelope_id = budgets.create_envelope("low")
        usage = budgets.check_budget(envelope_id)

        assert usage.tokens.remaining == 4000

    def test_tokens_exhausted_at_zero_remaining(self, budgets: BudgetManager):
        envelope_id = budgets.create_envelope("low")
        budgets.deduct_tokens(envelope_id, 4000)

        with pytest.raises(BudgetExhaustedError) as exc_info:
            budgets.check_budget(envelope_id)

        assert exc_info.value.dimension == "tokens"
        assert str(exc_info.value) == "Budget exhausted: tokens"

    def test_tool_calls_at_limit_pass(self, budgets: BudgetManager):
        """Countable resources are only exhausted once they go negative."""
        envelope_id = budgets.create_envelope("low")
        for _ in range(3):
            budgets.deduct_tool_call(envelope_id)

        budgets.check_budget(envelope_id)

    def test_tool_calls_over_limit_raise(self, budgets: BudgetManager):
        envelope_id = budgets.create_envelope("low")
        for _ in range(4):
            budgets.deduct_tool_call(envelope_id)

        with pytest.raises(BudgetExhaustedError) as exc_info:
            budgets.check_budget(envelope_id)

        assert exc_info.value.dimension == "toolCalls"

    def test_escalations_over_limit_raise(self, budgets: BudgetManager):
        envelope_id = budgets.create_envelope("low")
        budgets.deduct_escalation(envelope_id)

        with pytest.raises(BudgetExhaustedError) as exc_info:
            budgets.check_budget(envelope_id)

        assert exc_info.value.dimension == "escalations"

    def test_cost_at_ceiling_passes_and_over_raises(self, budgets: BudgetManager):
        envelope_id = budgets.create_envelope(BudgetOverride(cost_ceiling_usd=0.5))
        budgets.deduct_cost(envelope_id, 0.5)
        budgets.check_budget(envelope_id)

        budgets.deduct_cost(envelope_id, 0.25)
        with pytest.raises(BudgetExhaustedError) as exc_info:
            budgets.check_budget(envelope_id)

        assert exc_info.value.dimension == "cost"

    def test_latency_exhausted(self, budgets: BudgetManager):
        envelope_id = budgets.create_envelope(BudgetOverride(max_latency_ms=0))

        with pytest.raises(BudgetExhaustedError) as exc_info:
            budgets.check_budget(envelope_id)

        assert exc_info.value.dimension == "latency"

    def test_energy_over_limit_raises(self, budgets: BudgetManager):
        envelope_id = budgets.create_envelope("low")
        budgets.deduct_energy(envelope_id, 0.01, 0.0)

        with pytest.raises(BudgetExhaustedError) as exc_info:
            budgets.check_budget(envelope_id)

        assert exc_info.value.dimension == "energy"

    def test_first_dimension_in_fixed_order(self, budgets: BudgetManager):
        """Tokens are reported before tool calls when both are exhausted."""
        envelope_id = budgets.create_envelope("low")
        budgets.deduct_tokens(envelope_id, 5000)
        for _ in range(5):
            budgets.deduct_tool_call(envelope_id)

        with pytest.raises(BudgetExhaustedError) as exc_info:
            budgets.check_budget(envelope_id)

        assert exc_info.value.dimension == "tokens"


class TestAffordability:
    """Tests for affordability checks and atomic deductions."""

    def test_can_afford_escalation(self, budgets: BudgetManager):
        envelope_id = budgets.create_envelope("medium")
        assert budgets.can_afford_escalation(envelope_id)

        budgets.deduct_escalation(envelope_id)

        assert not budgets.can_afford_escalation(envelope_id)

    def test_low_preset_has_no_escalations(self, budgets: BudgetManager):
        envelope_id = budgets.create_envelope("low")
        assert not budgets.try_deduct_escalation(envelope_id)
        assert budgets.get_usage(envelope_id).escalations.used == 0

    def test_concurrent_try_deduct_never_overcommits(self, budgets: BudgetManager):
        """Racing threads get exactly as many escalations as the limit."""
        root = budgets.create_envelope("high")
        wins = []
        barrier = threading.Barrier(20)

        def grab():
            barrier.wait()
            if budgets.try_deduct_escalation(root):
                wins.append(1)

        threads = [threading.Thread(target=grab) for _ in range(20)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(wins) == 5
        assert budgets.get_usage(root).escalations.used == 5

    def test_concurrent_children_keep_parent_consistent(self, budgets: BudgetManager):
        root = budgets.create_envelope("unlimited")
        children = [budgets.create_sub_envelope(root, 0.1) for _ in range(8)]

        def work(child):
            for _ in range(250):
                budgets.deduct_tokens(child, 1, 1)

        threads = [threading.Thread(target=work, args=(c,)) for c in children]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert budgets.get_usage(root).tokens.used == 8 * 250 * 2


class TestCheckpoints:
    def test_checkpoint_captures_usage(self, budgets: BudgetManager):
        envelope_id = budgets.create_envelope()
        budgets.deduct_tokens(envelope_id, 12, 3)

        checkpoint = budgets.checkpoint(envelope_id, "after-plan")

        assert checkpoint.label == "after-plan"
        assert checkpoint.usage.tokens.used == 15

    def test_energy_totals(self, budgets: BudgetManager):
        envelope_id = budgets.create_envelope()
        budgets.deduct_energy(envelope_id, 0.002, 0.0008)

        assert budgets.get_energy_totals(envelope_id) == pytest.approx((0.002, 0.0008))

    def test_release_forgets_envelope(self, budgets: BudgetManager):
        envelope_id = budgets.create_envelope()
        budgets.release(envelope_id)

        with pytest.raises(KeyError):
            budgets.get_usage(envelope_id)
