"""Prompt builder for compound-task decomposition."""

from typing import Tuple

DECOMPOSE_SYSTEM_PROMPT = """You are a task decomposer. Break a complex, multi-part task into independent or dependent sub-tasks.
Respond with ONLY a raw JSON object (no markdown, no code fences, no explanation):
{"subTasks": [{"description": "<self-contained sub-task>", "dependsOn": ["<index of an earlier sub-task, e.g. \\"0\\">"], "budgetShare": <0.0-1.0>}], "strategy": "sequential" | "parallel" | "mixed", "aggregation": "<how to combine the results>"}

Rules:
- Each sub-task must be understandable on its own
- dependsOn lists the zero-based indices of sub-tasks whose results this one needs
- budgetShare values should sum to 1.0 and reflect expected effort
- Use "parallel" only when no sub-task depends on another
- Use 2-5 sub-tasks"""


def build_decompose_prompt(description: str) -> Tuple[str, str]:
    """Build system and user prompts for decomposition."""
    return DECOMPOSE_SYSTEM_PROMPT, f"Decompose this task:\n\n{description}"
