"""Prompt builders for planning and recovery planning."""

from typing import Any, Dict, List, Optional, Tuple

from jinja2 import Template

PLANNER_SYSTEM_TEMPLATE = Template(
    """You are a task planner for an autonomous agent. Given a task and available tools, create an execution plan.
Respond with ONLY a raw JSON object (no markdown, no code fences, no explanation):
{"steps": [{"description": "<what this step does>", "toolName": "<tool_name>", "toolArgs": {<arguments>}}]}

Rules:
- ONLY return {"steps": []} if the task is a pure knowledge question, greeting, or conversation that needs NO real-world action
- Use ONLY the tools listed below; never invent tools
- Each step must use exactly one tool
- Tool arguments must use the argument names shown for each tool

Available tools:
{{ tools }}
{% if criteria %}

SUCCESS CRITERIA (the plan must achieve these goals):
{% for c in criteria %}
{{ loop.index }}. [{{ c.type }}] {{ c.description }}
{% endfor %}
{% if constraints %}
Constraints: {{ constraints | join("; ") }}
{% endif %}

For critical steps you MAY add a "verify" field: {"type": "output_check", "assertion": "<text or regex the output must contain>", "retryOnFail": true, "maxRetries": 2}
{% endif %}""",
    trim_blocks=True,
    lstrip_blocks=True,
)

REPLANNER_SYSTEM_TEMPLATE = Template(
    """You are a recovery planner. A previous execution step failed. Given the original task, the error, and completed steps, create a recovery plan.

Rules:
- Do NOT repeat steps that already succeeded
- Create steps to recover from or work around the failure
- Keep recovery plans minimal
- Use ONLY the tools listed below
- Respond with ONLY a raw JSON object (no markdown, no code fences, no explanation):
{"steps": [{"description": "<what this step does>", "toolName": "<tool_name>", "toolArgs": {<arguments>}}]}

Available tools:
{{ tools }}""",
    trim_blocks=True,
    lstrip_blocks=True,
)

REPLANNER_USER_TEMPLATE = Template(
    """Original task: {{ task }}

Failed step {{ failed_index + 1 }}: {{ failed_description }}
Tool: {{ failed_tool }}
Error: {{ error }}

Completed steps:
{% if completed %}
{% for r in completed %}
Step {{ loop.index }} ({{ r.tool_name }}): {{ "SUCCESS" if r.success else "FAILED" }} - {{ r.summary }}
{% endfor %}
{% else %}
No steps completed yet.
{% endif %}

Create a recovery plan to complete the original task.""",
    trim_blocks=True,
    lstrip_blocks=True,
)


def build_plan_prompt(
    description: str,
    tool_catalogue: str,
    criteria: Optional[List[Dict[str, Any]]] = None,
    constraints: Optional[List[str]] = None,
) -> Tuple[str, str]:
    """Build system and user prompts for plan generation.

    Args:
        description: The task description
        tool_catalogue: One line per available tool
        criteria: Success criteria dicts with "type" and "description"
        constraints: Task constraints from the TaskSpec

    Returns:
        Tuple of (system_prompt, user_prompt)
    """
    system_prompt = PLANNER_SYSTEM_TEMPLATE.render(
        tools=tool_catalogue or "(no tools available)",
        criteria=criteria or [],
        constraints=constraints or [],
    )
    return system_prompt, description


def build_replan_prompt(
    description: str,
    tool_catalogue: str,
    failed_index: int,
    failed_description: str,
    failed_tool: str,
    error: str,
    completed: List[Dict[str, Any]],
) -> Tuple[str, str]:
    """Build system and user prompts for a recovery plan.

    Args:
        description: The original task description
        tool_catalogue: One line per available tool
        failed_index: Zero-based index of the failed step
        failed_description: What the failed step was meant to do
        failed_tool: Tool the failed step used
        error: Error message from the failure
        completed: Dicts with tool_name, success and summary per prior step

    Returns:
        Tuple of (system_prompt, user_prompt)
    """
    system_prompt = REPLANNER_SYSTEM_TEMPLATE.render(tools=tool_catalogue or "(no tools available)")
    user_prompt = REPLANNER_USER_TEMPLATE.render(
        task=description,
        failed_index=failed_index,
        failed_description=failed_description,
        failed_tool=failed_tool,
        error=error,
        completed=completed,
    )
    return system_prompt, user_prompt
