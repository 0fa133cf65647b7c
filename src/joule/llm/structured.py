"""JSON extraction for model output.

This module provides:
- extract_json(): Safely extract JSON from model text
- parse_json_object(): Tagged parse result, never raises

Planner and orchestrator operations each make exactly one model call, so
there is no repair loop here: a malformed response becomes a fallback
outcome and the caller applies its own deterministic default.
"""

import json
import re
from typing import Any, Dict, Generic, Optional, TypeVar

from pydantic import BaseModel

T = TypeVar("T")


class ParseOutcome(BaseModel, Generic[T]):
    """Either a parsed value or an explicit fallback with a reason."""

    value: Optional[T] = None
    fallback: bool = False
    reason: Optional[str] = None

    @classmethod
    def parsed(cls, value: T) -> "ParseOutcome[T]":
        return cls(value=value)

    @classmethod
    def failed(cls, reason: str) -> "ParseOutcome[T]":
        return cls(fallback=True, reason=reason)


def extract_json(text: str) -> str:
    """Extract JSON from model response text.

    Handles common output patterns:
    - JSON wrapped in ```json ... ``` code fences
    - JSON wrapped in ``` ... ``` code fences
    - Plain JSON starting with { or [
    - Text with JSON embedded

    Args:
        text: Raw model response text

    Returns:
        Extracted JSON string

    Raises:
        ValueError: If no JSON found in text
    """
    text = text.strip()

    # JSON code fence, with or without a language tag
    fence_pattern = r"```(?:json)?\s*\n?([\s\S]*?)\n?```"
    for match in re.findall(fence_pattern, text):
        match = match.strip()
        if match.startswith(("{", "[")):
            return match

    if text.startswith(("{", "[")):
        return _extract_balanced_json(text)

    # First balanced object/array that actually parses
    for i, char in enumerate(text):
        if char in "{[":
            try:
                extracted = _extract_balanced_json(text[i:])
                json.loads(extracted)
                return extracted
            except (ValueError, json.JSONDecodeError):
                continue

    raise ValueError(f"No valid JSON found in text: {text[:200]}...")


def _extract_balanced_json(text: str) -> str:
    """Extract balanced JSON from start of text.

    Args:
        text: Text starting with { or [

    Returns:
        Balanced JSON string
    """
    if not text or text[0] not in "{[":
        raise ValueError("Text must start with { or [")

    open_bracket = text[0]
    close_bracket = "}" if open_bracket == "{" else "]"

    depth = 0
    in_string = False
    escape_next = False

    for i, char in enumerate(text):
        if escape_next:
            escape_next = False
            continue

        if char == "\\":
            escape_next = True
            continue

        if char == '"':
            in_string = not in_string
            continue

        if in_string:
            continue

        if char == open_bracket:
            depth += 1
        elif char == close_bracket:
            depth -= 1
            if depth == 0:
                return text[: i + 1]

    # Unbalanced; let the JSON parser report it
    return text


def parse_json_object(text: str) -> ParseOutcome[Dict[str, Any]]:
    """Parse a JSON object out of model text.

    Args:
        text: Raw model response text

    Returns:
        ParseOutcome holding the dict, or a fallback with the reason
    """
    try:
        data = json.loads(extract_json(text))
    except (ValueError, json.JSONDecodeError) as e:
        return ParseOutcome.failed(f"invalid JSON: {e}")
    if not isinstance(data, dict):
        return ParseOutcome.failed(f"expected object, got {type(data).__name__}")
    return ParseOutcome.parsed(data)
