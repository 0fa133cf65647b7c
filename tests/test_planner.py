"""Tests for the Planner's model-mediated operations."""

import json

import pytest

from joule.errors import BudgetExhaustedError
from joule.kernel.models import (
    ExecutionPlan,
    PlanStep,
    StepResult,
    Task,
    TraceEventType,
)
from joule.kernel.planner import Planner, clamp_score
from joule.kernel.policy import PolicyEnforcer
from joule.llm.types import ChatMessage


def steps_json(*tools: str) -> str:
    return json.dumps(
        {
            "steps": [
                {"description": f"use {name}", "toolName": name, "toolArgs": {"text": name}}
                for name in tools
            ]
        }
    )


@pytest.fixture
def envelope_id(budgets) -> str:
    return budgets.create_envelope("medium")


@pytest.fixture
def trace_id(tracer, budgets, envelope_id) -> str:
    trace_id = tracer.create_trace(None, "task_test", budgets.get_envelope(envelope_id))
    tracer.start_span(trace_id, "root")
    return trace_id


def two_step_plan() -> ExecutionPlan:
    return ExecutionPlan(
        task_id="task_test",
        steps=[
            PlanStep(description="first", tool_name="echo", tool_args={"text": "a"}),
            PlanStep(description="second", tool_name="echo", tool_args={"text": "b"}),
        ],
    )


class TestClampScore:
    """Tests for clamp_score."""

    def test_values(self):
        assert clamp_score(1.5, 0.7) == 1.0
        assert clamp_score(-0.2, 0.7) == 0.0
        assert clamp_score(0.4, 0.7) == 0.4

    def test_non_numbers_use_default(self):
        assert clamp_score("high", 0.7) == 0.7
        assert clamp_score(None, 0.7) == 0.7
        assert clamp_score(True, 0.7) == 0.7


class TestSpecifyTask:
    """Tests for spec generation."""

    def test_parsed_spec(self, planner, fake_provider, envelope_id):
        fake_provider.queue_for(
            "specify",
            json.dumps(
                {
                    "goal": "Greet the user",
                    "constraints": ["be brief"],
                    "successCriteria": [
                        {
                            "description": "says hello",
                            "type": "output_contains",
                            "check": {"value": "hello"},
                        },
                        {"description": "odd type", "type": "telepathy"},
                    ],
                }
            ),
        )

        spec = planner.specify_task(Task(description="Say hello"), envelope_id)

        assert spec.goal == "Greet the user"
        assert spec.constraints == ["be brief"]
        assert [c.type for c in spec.success_criteria] == ["output_contains", "custom"]
        assert spec.success_criteria[0].check == {"value": "hello"}

    def test_unparseable_falls_back(self, planner, fake_provider, envelope_id):
        fake_provider.queue_for("specify", "I think the goal is obvious.")

        spec = planner.specify_task(Task(description="Say hello"), envelope_id)

        assert spec.goal == "Say hello"
        assert len(spec.success_criteria) == 1
        assert spec.success_criteria[0].type == "tool_succeeded"

    def test_provider_failure_falls_back(self, planner, fake_provider, envelope_id):
        fake_provider.set_should_fail(True)

        spec = planner.specify_task(Task(description="Say hello"), envelope_id)

        assert spec.goal == "Say hello"

    def test_event_logged(self, planner, fake_provider, tracer, budgets, envelope_id, trace_id):
        fake_provider.queue_for("specify", "nope")

        planner.specify_task(Task(description="Say hello"), envelope_id, trace_id)

        trace = tracer.get_trace(trace_id, budgets.get_usage(envelope_id))
        event = trace.events_of(TraceEventType.SPEC_GENERATED)[0]
        assert event.data["fallback"] is True
        assert event.data["criteriaCount"] == 1


class TestClassifyComplexity:
    """Tests for complexity scoring."""

    def test_parsed_score(self, planner, fake_provider, envelope_id):
        fake_provider.queue_for("classify", '{"complexity": 0.3, "reason": "easy"}')

        assert planner.classify_complexity(Task(description="What is 2+2?"), envelope_id) == 0.3

    def test_score_clamped(self, planner, fake_provider, envelope_id):
        fake_provider.queue_for("classify", '{"complexity": 3}')

        assert planner.classify_complexity(Task(description="Think hard"), envelope_id) == 1.0

    def test_fallback_is_half(self, planner, fake_provider, envelope_id):
        fake_provider.queue_for("classify", "medium-ish")

        assert planner.classify_complexity(Task(description="Tell a joke"), envelope_id) == 0.5

    def test_action_floor_boosts_score(
        self, planner, fake_provider, tracer, budgets, envelope_id, trace_id
    ):
        fake_provider.queue_for("classify", '{"complexity": 0.2}')
        task = Task(description="Send an email to the team about the release")

        complexity = planner.classify_complexity(task, envelope_id, trace_id)

        assert complexity == 0.8
        trace = tracer.get_trace(trace_id, budgets.get_usage(envelope_id))
        boosted = trace.events_of(TraceEventType.COMPLEXITY_BOOSTED)[0]
        assert boosted.data["slmScore"] == 0.2
        assert boosted.data["finalComplexity"] == 0.8

    def test_fallback_respects_floor(self, planner, fake_provider, envelope_id):
        fake_provider.queue_for("classify", "no idea")
        task = Task(description="Create a file with the meeting notes")

        assert planner.classify_complexity(task, envelope_id) == 0.7

    def test_uses_small_tier(self, planner, fake_provider, envelope_id):
        fake_provider.queue_for("classify", '{"complexity": 0.9}')

        planner.classify_complexity(Task(description="Prove the theorem"), envelope_id)

        assert fake_provider.call_history[-1].model == "fake-slm"


class TestPlan:
    """Tests for plan generation."""

    def test_unknown_tools_dropped(self, planner, fake_provider, envelope_id):
        fake_provider.queue_for("plan", steps_json("echo", "teleport", "file_write"))

        plan = planner.plan(Task(description="Do things"), 0.5, envelope_id)

        assert [s.tool_name for s in plan.steps] == ["echo", "file_write"]
        assert plan.complexity == 0.5

    def test_allow_list_applies(self, planner, fake_provider, envelope_id):
        fake_provider.queue_for("plan", steps_json("echo", "file_write"))

        plan = planner.plan(Task(description="Do things", tools=["echo"]), 0.5, envelope_id)

        assert [s.tool_name for s in plan.steps] == ["echo"]
        assert "file_write" not in fake_provider.call_history[-1].system

    def test_verify_block_parsed(self, planner, fake_provider, envelope_id):
        fake_provider.queue_for(
            "plan",
            json.dumps(
                {
                    "steps": [
                        {
                            "description": "echo",
                            "toolName": "echo",
                            "toolArgs": {"text": "hi"},
                            "verify": {
                                "type": "output_check",
                                "assertion": "hi",
                                "retryOnFail": True,
                                "maxRetries": 1,
                            },
                        }
                    ]
                }
            ),
        )

        plan = planner.plan(Task(description="Echo hi"), 0.5, envelope_id)

        verify = plan.steps[0].verify
        assert verify.type == "output_check"
        assert verify.retry_on_fail is True
        assert verify.max_retries == 1

    def test_fallback_uses_named_tool(self, planner, fake_provider, envelope_id):
        fake_provider.queue_for("plan", "First I would echo it.")

        plan = planner.plan(Task(description="Please echo the word banana"), 0.5, envelope_id)

        assert [s.tool_name for s in plan.steps] == ["echo"]

    def test_fallback_without_tool_is_empty(self, planner, fake_provider, envelope_id):
        fake_provider.queue_for("plan", "no plan")

        plan = planner.plan(Task(description="What is the capital of France?"), 0.5, envelope_id)

        assert plan.steps == []

    def test_history_forwarded(self, planner, fake_provider, envelope_id):
        fake_provider.queue_for("plan", '{"steps": []}')
        task = Task(
            description="And now?",
            messages=[
                ChatMessage(role="user", content="Earlier question"),
                ChatMessage(role="assistant", content="Earlier answer"),
            ],
        )

        planner.plan(task, 0.5, envelope_id)

        messages = fake_provider.call_history[-1].messages
        assert [m.content for m in messages] == ["Earlier question", "Earlier answer", "And now?"]

    def test_high_complexity_routes_large_tier(self, planner, fake_provider, budgets, envelope_id):
        fake_provider.queue_for("plan", '{"steps": []}')

        planner.plan(Task(description="Hard"), 0.9, envelope_id)

        assert fake_provider.call_history[-1].model == "fake-llm"
        assert budgets.get_usage(envelope_id).escalations.used == 0


class TestCritiquePlan:
    """Tests for plan critique."""

    def test_scores_clamped(self, planner, fake_provider, envelope_id):
        fake_provider.queue_for(
            "critique", '{"overall": 1.5, "stepConfidences": [-0.5, 2.0], "issues": ["vague"]}'
        )

        score = planner.critique_plan(Task(description="x"), two_step_plan(), envelope_id)

        assert score.overall == 1.0
        assert score.step_confidences == [0.0, 1.0]
        assert score.issues == ["vague"]

    def test_confidences_padded(self, planner, fake_provider, envelope_id):
        fake_provider.queue_for("critique", '{"overall": 0.9, "stepConfidences": [0.8]}')

        score = planner.critique_plan(Task(description="x"), two_step_plan(), envelope_id)

        assert score.step_confidences == [0.8, 0.7]

    def test_confidences_truncated(self, planner, fake_provider, envelope_id):
        fake_provider.queue_for(
            "critique", '{"overall": 0.9, "stepConfidences": [0.8, 0.6, 0.4]}'
        )

        score = planner.critique_plan(Task(description="x"), two_step_plan(), envelope_id)

        assert score.step_confidences == [0.8, 0.6]

    def test_failure_gives_defaults(self, planner, fake_provider, envelope_id):
        fake_provider.set_should_fail(True)

        score = planner.critique_plan(Task(description="x"), two_step_plan(), envelope_id)

        assert score.overall == 0.7
        assert score.step_confidences == [0.7, 0.7]
        assert score.refined_plan is None

    def test_refined_plan_parsed(self, planner, fake_provider, envelope_id):
        fake_provider.queue_for(
            "critique",
            json.dumps({"overall": 0.3, "refinedPlan": json.loads(steps_json("file_write"))}),
        )

        score = planner.critique_plan(Task(description="x"), two_step_plan(), envelope_id)

        assert [s.tool_name for s in score.refined_plan] == ["file_write"]


class TestReplan:
    """Tests for recovery planning."""

    def _replan(self, planner, envelope_id):
        failed = PlanStep(description="explode", tool_name="fail")
        completed = [StepResult(step_index=0, tool_name="echo", output="ok", success=True)]
        return planner.replan(
            Task(description="Try things"), failed, 1, "tool exploded", completed, envelope_id
        )

    def test_spends_one_escalation(self, planner, fake_provider, budgets, envelope_id):
        fake_provider.queue_for("replan", steps_json("echo", "echo", "echo"))

        steps = self._replan(planner, envelope_id)

        assert len(steps) == 3
        assert budgets.get_usage(envelope_id).escalations.used == 1
        assert fake_provider.call_history[-1].model == "fake-llm"

    def test_prompt_mentions_failure(self, planner, fake_provider, envelope_id):
        fake_provider.queue_for("replan", '{"steps": []}')

        self._replan(planner, envelope_id)

        user = fake_provider.call_history[-1].messages[-1].content
        assert "tool exploded" in user
        assert "Failed step 2" in user

    def test_no_escalation_left(self, planner, fake_provider, budgets, envelope_id):
        fake_provider.queue_for("replan", '{"steps": []}')
        self._replan(planner, envelope_id)

        with pytest.raises(BudgetExhaustedError) as exc_info:
            self._replan(planner, envelope_id)

        assert exc_info.value.dimension == "escalations"

    def test_unparseable_gives_no_steps(self, planner, fake_provider, envelope_id):
        fake_provider.queue_for("replan", "give up")

        assert self._replan(planner, envelope_id) == []


class TestSynthesize:
    """Tests for answer synthesis."""

    def test_direct_answer_without_steps(self, planner, fake_provider, envelope_id):
        fake_provider.queue_for("synthesize", "Paris.")
        task = Task(
            description="Capital of France?",
            messages=[ChatMessage(role="user", content="Let's talk geography")],
        )

        answer = planner.synthesize(task, [], envelope_id)

        request = fake_provider.call_history[-1]
        assert answer == "Paris."
        assert request.system.startswith("You are Joule")
        assert len(request.messages) == 2
        assert request.temperature == 0.3

    def test_step_results_in_prompt(self, planner, fake_provider, envelope_id):
        results = [
            StepResult(step_index=0, tool_name="echo", output="alpha", success=True),
            StepResult(step_index=1, tool_name="fail", error="boom", success=False),
        ]

        planner.synthesize(Task(description="Report"), results, envelope_id)

        request = fake_provider.call_history[-1]
        user = request.messages[-1].content
        assert "Step 1 (echo): alpha" in user
        assert "Step 2 (fail): ERROR: boom" in user
        assert request.model == "fake-llm"

    def test_streaming_forwards_chunks(self, planner, fake_provider, envelope_id):
        fake_provider.queue_for("synthesize", "one two three")
        chunks = []

        answer = planner.synthesize(Task(description="Count"), [], envelope_id, on_chunk=chunks.append)

        assert answer == "one two three"
        assert "".join(chunks) == "one two three"
        assert len(chunks) == 3


class TestCharging:
    """Tests for budget charging and policy injection."""

    def test_tokens_charged(self, planner, fake_provider, budgets, envelope_id):
        fake_provider.queue_for("synthesize", "a b c d")

        planner.synthesize(Task(description="one two"), [], envelope_id)

        usage = budgets.get_usage(envelope_id)
        assert usage.input_tokens == 2
        assert usage.output_tokens == 4
        assert usage.tokens.used == 6

    def test_model_call_logged(self, planner, fake_provider, tracer, budgets, envelope_id, trace_id):
        planner.synthesize(Task(description="hi"), [], envelope_id, trace_id)

        trace = tracer.get_trace(trace_id, budgets.get_usage(envelope_id))
        event = trace.events_of(TraceEventType.MODEL_CALL)[0]
        assert event.data["provider"] == "fake"
        assert event.data["intent"] == "synthesize"

    def test_policy_injected_into_system_prompt(
        self, router, tools, budgets, tracer, fake_provider, envelope_id
    ):
        planner = Planner(router, tools, budgets, tracer, policy=PolicyEnforcer())

        planner.synthesize(Task(description="hi"), [], envelope_id)

        assert fake_provider.call_history[-1].system.startswith("[CONSTITUTION")
