"""Tests for compound-task decomposition and sub-task execution."""

import json

import pytest

from joule.kernel.models import (
    DecompositionPlan,
    SubTaskDefinition,
    Task,
    TaskResult,
    TaskStatus,
    TraceEventType,
)
from joule.kernel.orchestrator import aggregate_results, has_compound_structure

COMPOUND = (
    "First, gather the latest sales figures from every regional office and check them for "
    "obvious mistakes. Then compare them with the forecast prepared last quarter by finance. "
    "After that, list the three regions with the largest gaps. Next, draft a short explanation "
    "for each gap. Finally, summarize everything in a memo for the leadership team."
)


@pytest.fixture
def envelope_id(budgets) -> str:
    return budgets.create_envelope("high")


def result_for(budgets, envelope_id, status=TaskStatus.COMPLETED, text=None, error=None):
    return TaskResult(
        task_id="t",
        trace_id="tr",
        status=status,
        result=text,
        error=error,
        budget_used=budgets.get_usage(envelope_id),
    )


def user_content(request) -> str:
    return request.messages[-1].content


class TestShouldDecompose:
    """Tests for the decomposition decision."""

    def test_compound_description(self):
        assert len(COMPOUND) > 200
        assert has_compound_structure(COMPOUND)

    def test_plain_description(self):
        assert not has_compound_structure("Summarize the memo.")

    def test_needs_high_complexity(self, orchestrator):
        task = Task(description=COMPOUND)

        assert orchestrator.should_decompose(task, 0.9)
        assert not orchestrator.should_decompose(task, 0.7)

    def test_needs_long_description(self, orchestrator):
        task = Task(description="First do this, then do that. Finally stop.")

        assert not orchestrator.should_decompose(task, 0.95)


class TestDecompose:
    """Tests for producing a DecompositionPlan."""

    def test_parsed_plan(self, orchestrator, fake_provider, envelope_id):
        fake_provider.queue_for(
            "decompose",
            json.dumps(
                {
                    "subTasks": [
                        {"description": "Gather figures", "dependsOn": [], "budgetShare": 0.3},
                        {"description": "Write memo", "dependsOn": ["0"], "budgetShare": 0.7},
                    ],
                    "strategy": "sequential",
                    "aggregation": "Combine into one memo",
                }
            ),
        )
        task = Task(description=COMPOUND)

        plan = orchestrator.decompose(task, envelope_id)

        first, second = plan.sub_tasks
        assert first.budget_share == pytest.approx(0.3)
        assert second.budget_share == pytest.approx(0.7)
        assert second.depends_on == [first.id]
        assert first.parent_task_id == task.id
        assert plan.aggregation == "Combine into one memo"
        assert fake_provider.call_history[-1].model == "fake-llm"

    def test_shares_normalized(self, orchestrator, fake_provider, envelope_id):
        fake_provider.queue_for(
            "decompose",
            json.dumps(
                {
                    "subTasks": [
                        {"description": "a", "budgetShare": 2},
                        {"description": "b", "budgetShare": 6},
                    ]
                }
            ),
        )

        plan = orchestrator.decompose(Task(description=COMPOUND), envelope_id)

        assert [s.budget_share for s in plan.sub_tasks] == pytest.approx([0.25, 0.75])
        assert plan.strategy == "sequential"

    def test_missing_shares_split_equally(self, orchestrator, fake_provider, envelope_id):
        fake_provider.queue_for(
            "decompose",
            json.dumps({"subTasks": [{"description": d} for d in ("a", "b", "c", "d")]}),
        )

        plan = orchestrator.decompose(Task(description=COMPOUND), envelope_id)

        assert [s.budget_share for s in plan.sub_tasks] == pytest.approx([0.25] * 4)

    def test_dependency_references(self, orchestrator, fake_provider, envelope_id):
        fake_provider.queue_for(
            "decompose",
            json.dumps(
                {
                    "subTasks": [
                        {"description": "a"},
                        {"description": "b", "dependsOn": [0, "0", 1, 7, "x", True]},
                        {"description": "c", "dependsOn": ["1", "0"]},
                    ]
                }
            ),
        )

        plan = orchestrator.decompose(Task(description=COMPOUND), envelope_id)

        a, b, c = plan.sub_tasks
        assert b.depends_on == [a.id]
        assert c.depends_on == [b.id, a.id]

    def test_unparseable_falls_back_to_whole_task(self, orchestrator, fake_provider, envelope_id):
        fake_provider.queue_for("decompose", "This is too hard to split.")
        task = Task(description=COMPOUND)

        plan = orchestrator.decompose(task, envelope_id)

        assert len(plan.sub_tasks) == 1
        assert plan.sub_tasks[0].description == COMPOUND
        assert plan.sub_tasks[0].budget_share == 1.0

    def test_provider_failure_falls_back(self, orchestrator, fake_provider, envelope_id):
        fake_provider.set_should_fail(True)

        plan = orchestrator.decompose(Task(description=COMPOUND), envelope_id)

        assert len(plan.sub_tasks) == 1

    def test_event_logged(self, orchestrator, fake_provider, tracer, budgets, envelope_id):
        trace_id = tracer.create_trace(None, "t", budgets.get_envelope(envelope_id))
        tracer.start_span(trace_id, "root")
        fake_provider.queue_for("decompose", "nope")

        orchestrator.decompose(Task(description=COMPOUND), envelope_id, trace_id)

        trace = tracer.get_trace(trace_id, budgets.get_usage(envelope_id))
        event = trace.events_of(TraceEventType.DECOMPOSITION)[0]
        assert event.data == {"subTaskCount": 1, "strategy": "sequential", "fallback": True}


class TestTopologicalSort:
    def test_dependencies_first(self, orchestrator):
        a = SubTaskDefinition(id="a", description="a", parent_task_id="p", budget_share=0.3)
        b = SubTaskDefinition(
            id="b", description="b", parent_task_id="p", depends_on=["a"], budget_share=0.3
        )
        c = SubTaskDefinition(
            id="c", description="c", parent_task_id="p", depends_on=["b"], budget_share=0.4
        )

        ordered = orchestrator.topological_sort([c, b, a])

        assert [s.id for s in ordered] == ["a", "b", "c"]

    def test_unknown_dependency_ignored(self, orchestrator):
        a = SubTaskDefinition(
            id="a", description="a", parent_task_id="p", depends_on=["ghost"], budget_share=1.0
        )

        assert [s.id for s in orchestrator.topological_sort([a])] == ["a"]


class TestAggregateResults:
    """Tests for combining sub-task results."""

    def test_empty(self):
        assert aggregate_results([]) == "No sub-tasks executed."

    def test_single_verbatim(self, budgets, envelope_id):
        assert aggregate_results([result_for(budgets, envelope_id, text="Only")]) == "Only"

    def test_single_without_text(self, budgets, envelope_id):
        assert aggregate_results([result_for(budgets, envelope_id)]) == "Completed."
        failed = result_for(budgets, envelope_id, TaskStatus.FAILED, error="boom")
        assert aggregate_results([failed]) == "Failed: boom"

    def test_multiple_blocks(self, budgets, envelope_id):
        results = [
            result_for(budgets, envelope_id, text="One"),
            result_for(budgets, envelope_id, TaskStatus.FAILED, error="broke"),
        ]

        assert aggregate_results(results, "join") == "[Sub-task 1]: One\n\n[Sub-task 2]: Failed: broke"


class TestExecuteDecomposed:
    """Tests for running sub-tasks."""

    def test_sequential_passes_dependency_results(
        self, orchestrator, fake_provider, budgets, envelope_id
    ):
        fake_provider.queue_for("synthesize", "Alpha result")
        fake_provider.queue_for("synthesize", "Beta result")
        plan = DecompositionPlan(
            sub_tasks=[
                SubTaskDefinition(id="a", description="Collect alpha", parent_task_id="p", budget_share=0.5),
                SubTaskDefinition(
                    id="b",
                    description="Use alpha",
                    parent_task_id="p",
                    depends_on=["a"],
                    budget_share=0.5,
                ),
            ]
        )

        results = orchestrator.execute_decomposed(Task(description=COMPOUND), plan, envelope_id)

        assert [r.task_id for r in results] == ["a", "b"]
        assert [r.result for r in results] == ["Alpha result", "Beta result"]
        enriched = [
            user_content(r)
            for r in fake_provider.call_history
            if "Results from previous sub-tasks" in user_content(r)
        ]
        assert enriched
        assert "- a: Alpha result" in enriched[0]

    def test_sub_envelopes_charge_parent(self, orchestrator, budgets, envelope_id):
        plan = DecompositionPlan(
            sub_tasks=[
                SubTaskDefinition(id="a", description="Say hi", parent_task_id="p", budget_share=1.0)
            ]
        )

        results = orchestrator.execute_decomposed(Task(description="x"), plan, envelope_id)

        parent_usage = budgets.get_usage(envelope_id)
        assert parent_usage.tokens.used == results[0].budget_used.tokens.used
        assert parent_usage.tokens.used > 0

    def test_parallel_waves(self, orchestrator, fake_provider, envelope_id):
        def respond(request):
            if request.metadata["operation"] == "synthesize":
                return "result of " + user_content(request).splitlines()[0]
            return '{"status": "ok"}'

        fake_provider.set_response_fn(respond)
        plan = DecompositionPlan(
            sub_tasks=[
                SubTaskDefinition(id="a", description="Task A", parent_task_id="p", budget_share=0.3),
                SubTaskDefinition(id="b", description="Task B", parent_task_id="p", budget_share=0.3),
                SubTaskDefinition(
                    id="c",
                    description="Task C",
                    parent_task_id="p",
                    depends_on=["a", "b"],
                    budget_share=0.4,
                ),
            ],
            strategy="parallel",
        )

        results = orchestrator.execute_decomposed(Task(description=COMPOUND), plan, envelope_id)

        assert [r.task_id for r in results] == ["a", "b", "c"]
        assert all(r.status == TaskStatus.COMPLETED for r in results)
        c_prompts = [
            user_content(r) for r in fake_provider.call_history if user_content(r).startswith("Task C")
        ]
        assert "- a: result of Task A" in c_prompts[0]
        assert "- b: result of Task B" in c_prompts[0]
