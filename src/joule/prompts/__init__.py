"""Prompt library for the planner and orchestrator.

This module provides prompt builders for each model-mediated operation:
- spec: Goal, constraints and success criteria
- classify: Complexity score (plus a keyword-based floor)
- plan: Step plans and recovery plans
- critique: Plan quality review
- synthesize: Final answer from step results
- decompose: Sub-task breakdown of compound tasks

Each builder returns a (system_prompt, user_prompt) pair.
"""

from joule.prompts.classify import build_classify_prompt, detect_action_floor
from joule.prompts.critique import build_critique_prompt
from joule.prompts.decompose import build_decompose_prompt
from joule.prompts.plan import build_plan_prompt, build_replan_prompt
from joule.prompts.spec import build_spec_prompt
from joule.prompts.synthesize import build_synthesize_prompt, format_step_results

__all__ = [
    "build_spec_prompt",
    "build_classify_prompt",
    "detect_action_floor",
    "build_plan_prompt",
    "build_replan_prompt",
    "build_critique_prompt",
    "build_synthesize_prompt",
    "format_step_results",
    "build_decompose_prompt",
]
