"""Prompt builder and keyword floor for complexity classification."""

import re
from typing import List, Tuple

CLASSIFIER_SYSTEM_PROMPT = """You are a task complexity classifier. Analyze the given task and respond with ONLY a raw JSON object (no markdown, no code fences, no explanation):
{"complexity": <number between 0.0 and 1.0>, "reason": "<brief reason>"}

Complexity guidelines:
- 0.0-0.3: Simple greetings, pure knowledge questions, or mental math that needs no tools
- 0.3-0.6: Multi-step reasoning tasks that can be answered from knowledge alone
- 0.6-0.8: Tasks requiring one or two tool calls: opening URLs, writing files, fetching data, sending messages
- 0.8-1.0: Tasks requiring multiple tool steps, deep reasoning, or chained actions

Any task that requires a real-world ACTION (browsing, writing a file, making an HTTP request, running a command, sending a message, controlling a device) MUST be rated at least 0.7."""

# Keyword patterns implying real tool use, with the minimum complexity they imply
ACTION_PATTERNS: List[Tuple[re.Pattern, float]] = [
    (re.compile(r"\b(open|navigate|browse|visit|go\s+to)\b.*(\b(url|website|page|browser|link|site)\b|https?://)", re.I), 0.75),
    (re.compile(r"\b(search|look\s+up)\b.*\b(on|in|using)\b.*\b(google|web|browser)\b", re.I), 0.75),
    (re.compile(r"\b(click|fill|submit|screenshot)\b", re.I), 0.7),
    (re.compile(r"\b(send|write|compose)\b.*\b(email|mail)\b", re.I), 0.8),
    (re.compile(r"\b(discord|slack|telegram|whatsapp|teams)\b", re.I), 0.8),
    (re.compile(r"\b(create|write|save|make)\b.*\b(file|document|note)\b", re.I), 0.7),
    (re.compile(r"\b(read|open|load)\b.*\b(file|document)\b", re.I), 0.7),
    (re.compile(r"\b(download|upload)\b", re.I), 0.7),
    (re.compile(r"\b(run|execute|launch|start)\b.*\b(command|script|program|app|application)\b", re.I), 0.7),
    (re.compile(r"\b(install|uninstall|kill|restart)\b", re.I), 0.7),
    (re.compile(r"\b(fetch|request|call|post|get)\b.*\b(api|endpoint|url|http|server)\b", re.I), 0.7),
    (re.compile(r"\b(send|forward)\b.*\b(message|notification|webhook)\b", re.I), 0.7),
    (re.compile(r"\b(turn\s+on|turn\s+off|toggle|control)\b.*\b(light|device|switch|thermostat|sensor)\b", re.I), 0.7),
    (re.compile(r"\buse\s+(?:the\s+)?(?:browser|shell|http|file|tool)\b", re.I), 0.7),
]


def detect_action_floor(description: str) -> float:
    """Return the complexity floor implied by action keywords (0.0 if none)."""
    floor = 0.0
    for pattern, minimum in ACTION_PATTERNS:
        if pattern.search(description):
            floor = max(floor, minimum)
    return floor


def build_classify_prompt(description: str) -> Tuple[str, str]:
    """Build system and user prompts for complexity classification."""
    return CLASSIFIER_SYSTEM_PROMPT, description
