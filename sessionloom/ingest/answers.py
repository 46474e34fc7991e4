"""AskUserQuestion answer recovery from stored tool results."""

from __future__ import annotations

import json
import re
from typing import Any, Dict, Optional

_QUOTED_PAIR = re.compile(r'"([^"]+)"="([^"]*)"')


def extract_resolved_answers(tool_use_result: Any) -> Optional[Dict[str, str]]:
    """Structured ``answers`` map written alongside the tool result."""
    if not isinstance(tool_use_result, dict):
        return None
    answers = tool_use_result.get("answers")
    if not isinstance(answers, dict) or not answers:
        return None
    normalized = {}
    for question, value in answers.items():
        text = _normalize_answer(value)
        if text is not None:
            normalized[str(question)] = text
    return normalized or None


def extract_resolved_answers_from_text(result: Any) -> Optional[Dict[str, str]]:
    """Best-effort parse of answers out of the result text.

    Used when a reloaded log has no structured ``answers``. Accepts an
    embedded JSON object or ``"question"="answer"`` pairs.
    """
    if not isinstance(result, str):
        return None
    trimmed = result.strip()
    if not trimmed:
        return None
    return _from_json_object(trimmed) or _from_quoted_pairs(trimmed)


def _normalize_answer(value: Any) -> Optional[str]:
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, list):
        joined = ", ".join(item if isinstance(item, str) else str(item) for item in value if item)
        return joined or None
    return None


def _from_json_object(text: str) -> Optional[Dict[str, str]]:
    start = text.find("{")
    end = text.rfind("}")
    if start < 0 or end <= start:
        return None
    try:
        parsed = json.loads(text[start:end + 1])
    except (ValueError, RecursionError):
        return None
    if not isinstance(parsed, dict):
        return None

    answers = {}
    for question, value in parsed.items():
        normalized = _normalize_answer(value)
        if normalized:
            answers[question] = normalized
    return answers or None


def _from_quoted_pairs(text: str) -> Optional[Dict[str, str]]:
    answers = {}
    for question, answer in _QUOTED_PAIR.findall(text):
        question = question.strip()
        if question:
            answers[question] = answer
    return answers or None
