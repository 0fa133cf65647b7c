"""Prompt builder for plan critique."""

from typing import List, Optional, Tuple

from jinja2 import Template

CRITIQUE_SYSTEM_PROMPT = """You are a plan quality reviewer. Evaluate the execution plan for feasibility, completeness, and correctness.
Respond with ONLY a raw JSON object (no markdown, no code fences, no explanation):
{"overall": <0.0-1.0 overall quality score>, "stepConfidences": [<per-step confidence 0.0-1.0>], "issues": ["<issue description>", ...], "refinedPlan": {"steps": [...]}}

Scoring guidelines:
- 0.9-1.0: Plan is excellent; all steps are correct and complete
- 0.7-0.9: Plan is good; minor improvements possible
- 0.5-0.7: Plan has issues such as missing steps or unclear flow
- 0.0-0.5: Plan is poor, with fundamental flaws or the wrong approach

If overall < 0.5, provide a refinedPlan with corrected steps. Otherwise refinedPlan is optional.
Each stepConfidence should reflect how likely that individual step is to succeed."""

CRITIQUE_USER_TEMPLATE = Template(
    """Task: {{ task }}
{% if goal %}
Goal: {{ goal }}
Success criteria: {{ criteria | join("; ") }}
{% endif %}

Plan to evaluate:
{% for step in steps %}
Step {{ loop.index }}: [{{ step.tool_name }}] {{ step.description }}
{% endfor %}

Available tools: {{ tool_names | join(", ") }}""",
    trim_blocks=True,
    lstrip_blocks=True,
)


def build_critique_prompt(
    description: str,
    steps: list,
    tool_names: List[str],
    goal: Optional[str] = None,
    criteria: Optional[List[str]] = None,
) -> Tuple[str, str]:
    """Build system and user prompts for plan critique.

    Args:
        description: The task description
        steps: PlanStep objects to review
        tool_names: Names of available tools
        goal: Goal from the task spec, if any
        criteria: Success criterion descriptions from the TaskSpec

    Returns:
        Tuple of (system_prompt, user_prompt)
    """
    user_prompt = CRITIQUE_USER_TEMPLATE.render(
        task=description,
        goal=goal,
        criteria=criteria or [],
        steps=steps,
        tool_names=tool_names,
    )
    return CRITIQUE_SYSTEM_PROMPT, user_prompt
