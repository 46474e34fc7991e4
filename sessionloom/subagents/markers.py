"""Agent-id and launch/status markers found in Task and agent-output results."""

from __future__ import annotations

import json
import re
from typing import Any, Dict, Optional

from .extract import unwrap_text_payload

_AGENT_ID_PATTERNS = (
    re.compile(r'"agent_id"\s*:\s*"([^"]+)"'),
    re.compile(r'"agentId"\s*:\s*"([^"]+)"'),
    re.compile(r'agent_id[=:]\s*"?([a-zA-Z0-9_-]+)"?', re.IGNORECASE),
    re.compile(r'agentId[=:]\s*"?([a-zA-Z0-9_-]+)"?', re.IGNORECASE),
)
_SHORT_HEX_ID = re.compile(r"\b([a-f0-9]{8})\b")
_STATUS_TAG = re.compile(r"<status>([^<]+)</status>")

_RUNNING_STATUSES = ("not_ready", "running", "pending")


def _json_or_none(text: str) -> Any:
    try:
        return json.loads(text)
    except (TypeError, ValueError, RecursionError):
        return None


def _non_empty_str(value: Any) -> Optional[str]:
    return value if isinstance(value, str) and value else None


def agent_id_from_string(value: str) -> Optional[str]:
    for pattern in _AGENT_ID_PATTERNS:
        match = pattern.search(value)
        if match and match.group(1):
            return match.group(1)
    return None


def parse_agent_id(result: str) -> Optional[str]:
    """Loose agent-id parse of a launch result.

    Also accepts a bare 8-hex-digit token and JSON ``id``; only used once the
    task is already known to be async.
    """
    found = agent_id_from_string(result)
    if found:
        return found
    match = _SHORT_HEX_ID.search(result)
    if match:
        return match.group(1)

    parsed = _json_or_none(result)
    if not isinstance(parsed, dict):
        return None
    found = _non_empty_str(parsed.get("agent_id")) or _non_empty_str(parsed.get("agentId"))
    if found:
        return found
    data = parsed.get("data")
    if isinstance(data, dict) and _non_empty_str(data.get("agent_id")):
        return data["agent_id"]
    return _non_empty_str(parsed.get("id"))


def parse_agent_id_strict(result: str) -> Optional[str]:
    """Agent id from explicit markers only; used to infer async mode."""
    found = agent_id_from_string(result) or agent_id_from_string(unwrap_text_payload(result))
    if found:
        return found

    parsed = _json_or_none(result)
    if isinstance(parsed, list):
        for block in parsed:
            if isinstance(block, dict) and isinstance(block.get("text"), str):
                found = agent_id_from_string(block["text"])
                if found:
                    return found
        return None
    if isinstance(parsed, dict):
        data = parsed.get("data")
        nested = data.get("agent_id") if isinstance(data, dict) else None
        return (
            _non_empty_str(parsed.get("agent_id"))
            or _non_empty_str(parsed.get("agentId"))
            or _non_empty_str(nested)
        )
    return None


def _agent_id_from_content(content: Any) -> Optional[str]:
    if isinstance(content, str):
        return agent_id_from_string(content)
    if not isinstance(content, list):
        return None
    for block in content:
        if isinstance(block, str):
            text = block
        elif isinstance(block, dict) and isinstance(block.get("text"), str):
            text = block["text"]
        else:
            continue
        found = agent_id_from_string(text)
        if found:
            return found
    return None


def agent_id_from_tool_use_result(tool_use_result: Any) -> Optional[str]:
    """Agent id from the structured ``toolUseResult`` of a Task launch."""
    if not isinstance(tool_use_result, dict):
        return None
    direct = tool_use_result.get("agent_id")
    if direct is None:
        direct = tool_use_result.get("agentId")
    if _non_empty_str(direct):
        return direct

    data = tool_use_result.get("data")
    if isinstance(data, dict):
        nested = data.get("agent_id")
        if nested is None:
            nested = data.get("agentId")
        if _non_empty_str(nested):
            return nested

    return _agent_id_from_content(tool_use_result.get("content"))


def has_async_marker(tool_use_result: Any) -> bool:
    """True when a structured Task result shows a background launch."""
    if not isinstance(tool_use_result, dict):
        return False
    if tool_use_result.get("isAsync") is True:
        return True

    status = tool_use_result.get("status")
    if isinstance(status, str) and status.lower() == "async_launched":
        return True
    if _non_empty_str(tool_use_result.get("outputFile")):
        return True

    return agent_id_from_tool_use_result(tool_use_result) is not None


def infer_agent_id_from_result(result: str) -> Optional[str]:
    """First key of an ``agents`` map in an agent-output result."""
    parsed = _json_or_none(result)
    if isinstance(parsed, dict) and isinstance(parsed.get("agents"), dict):
        for key in parsed["agents"]:
            return key
    return None


def is_still_running(result: Optional[str], is_error: bool) -> bool:
    """Whether an agent-output result reports the agent has not finished.

    Non-JSON text is scanned for ``not_ready``/``not ready`` anywhere, so
    a finished result quoting that phrase reads as still running.
    """
    trimmed = (result or "").strip()
    if is_error or not trimmed:
        return False
    payload = unwrap_text_payload(trimmed)

    parsed = _json_or_none(payload)
    if parsed is not None:
        if not isinstance(parsed, dict):
            return False
        status = parsed.get("retrieval_status") or parsed.get("status")
        if status in _RUNNING_STATUSES:
            return True
        agents = parsed.get("agents")
        if isinstance(agents, dict) and agents:
            return any(_agent_status(entry) in _RUNNING_STATUSES for entry in agents.values())
        return False

    lowered = payload.lower()
    if "not_ready" in lowered or "not ready" in lowered:
        return True
    match = _STATUS_TAG.search(lowered)
    return bool(match) and match.group(1).strip() in _RUNNING_STATUSES


def _agent_status(entry: Any) -> str:
    if isinstance(entry, dict) and isinstance(entry.get("status"), str):
        return entry["status"].lower()
    return ""


def agent_id_from_input(tool_input: Dict[str, Any]) -> Optional[str]:
    """Agent id an agent-output tool call is polling."""
    for key in ("task_id", "agentId", "agent_id"):
        value = tool_input.get(key)
        if _non_empty_str(value):
            return value
    return None
