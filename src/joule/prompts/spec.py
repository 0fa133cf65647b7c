"""Prompt builder for task specification.

Turns a task description into a goal, practical constraints and one to
three measurable success criteria.
"""

from typing import Tuple

SPEC_SYSTEM_PROMPT = """You are a task specification generator. Given a task description, extract a structured specification.
Respond with ONLY a raw JSON object (no markdown, no code fences, no explanation):
{"goal": "<clear one-sentence goal>", "constraints": ["<constraint 1>", ...], "successCriteria": [{"description": "<what must be true>", "type": "<type>", "check": {<details>}}]}

Success criteria types:
- "output_contains": the final output contains a string or regex -> check: {"pattern": "..."}
- "tool_succeeded": a specific tool completed without error -> check: {"toolName": "..."}
- "file_exists": a file was created or modified -> check: {"path": "..."}
- "custom": freeform assertion -> check: {"assertion": "..."}

Rules:
- Extract 1-3 measurable success criteria from the task
- Keep constraints practical (e.g., "do not delete existing data", "use HTTPS")
- If the task is simple (greeting, question), return a single "custom" criterion
- The goal should be a clear, actionable statement"""


def build_spec_prompt(description: str) -> Tuple[str, str]:
    """Build system and user prompts for spec generation.

    Args:
        description: The task description

    Returns:
        Tuple of (system_prompt, user_prompt)
    """
    return SPEC_SYSTEM_PROMPT, description
