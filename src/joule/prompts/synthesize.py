"""Prompt builder for result synthesis."""

import json
from typing import List, Tuple

SYNTHESIZE_SYSTEM_PROMPT = (
    "You are a result synthesizer. Given a task description and the results of tool "
    "executions, provide a clear, concise answer to the original task. Be direct and factual."
)
DIRECT_ANSWER_SYSTEM_PROMPT = (
    "You are Joule, a helpful AI assistant. Answer the user's question directly and concisely."
)


def format_step_results(step_results: list) -> str:
    """Render step results as ``Step i (tool): output`` lines."""
    lines: List[str] = []
    for i, r in enumerate(step_results):
        if r.success:
            body = r.output if isinstance(r.output, str) else json.dumps(r.output, default=str)
        else:
            body = f"ERROR: {r.error}"
        lines.append(f"Step {i + 1} ({r.tool_name}): {body}")
    return "\n".join(lines)


def build_synthesize_prompt(description: str, step_results: list) -> Tuple[str, str]:
    """Build system and user prompts for the final answer.

    With no step results the task is answered directly.

    Returns:
        Tuple of (system_prompt, user_prompt)
    """
    if not step_results:
        return DIRECT_ANSWER_SYSTEM_PROMPT, description
    user_prompt = (
        f"Task: {description}\n\nExecution Results:\n{format_step_results(step_results)}"
        "\n\nProvide a clear answer based on these results."
    )
    return SYNTHESIZE_SYSTEM_PROMPT, user_prompt
