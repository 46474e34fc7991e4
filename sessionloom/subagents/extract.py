"""
Result extraction — pull readable text out of subagent tool results.

Producers emit a handful of incompatible shapes for the same thing:

    {"task": {"result": ...}}                      task envelope
    {"agents": {"<agent id>": {"output": ...}}}    per-agent map
    {"result": ...} / {"output": ...}              flat
    <result>...</result> / <output>...</output>    tagged text
    [Truncated. Full output: /tmp/x.output]        pointer to a sidecar file

Each shape has its own extractor; ``extract_result`` tries them in order
and falls back to the trimmed text. No step raises.
"""

from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import dataclass
from typing import Any, Callable, List, NamedTuple, Optional, Sequence

logger = logging.getLogger(__name__)

DEFAULT_OUTPUT_EXT = ".output"

_TRUNCATED_PATTERN = re.compile(r"\[Truncated\.\s*Full output:\s*([^\]\n]+)\]", re.IGNORECASE)


class Payload(NamedTuple):
    text: str  # unwrapped text form
    parsed: Any  # JSON value of ``text``, or None


@dataclass(frozen=True)
class ExtractContext:
    agent_id: Optional[str] = None
    trusted_roots: Sequence[str] = ()
    output_ext: str = DEFAULT_OUTPUT_EXT


Extractor = Callable[[Payload, ExtractContext], Optional[str]]


def extract_result(
    raw: Any,
    agent_id: Optional[str] = None,
    *,
    trusted_roots: Optional[Sequence[str]] = None,
    output_ext: str = DEFAULT_OUTPUT_EXT,
) -> str:
    """Best human-readable result for a raw tool result payload.

    Args:
        raw: Tool result as stored (string, JSON text, dict or block list)
        agent_id: Agent to prefer when the payload holds a per-agent map
        trusted_roots: Real paths of temp dirs full-output files may live in
        output_ext: Required extension of full-output files
    """
    payload = to_payload(raw)
    ctx = ExtractContext(
        agent_id=agent_id,
        trusted_roots=tuple(trusted_roots) if trusted_roots is not None else default_trusted_roots(),
        output_ext=output_ext,
    )
    for extractor in EXTRACTORS:
        try:
            found = extractor(payload, ctx)
        except (TypeError, ValueError, AttributeError, RecursionError) as e:
            logger.debug(f"{extractor.__name__} failed: {e}")
            continue
        if found:
            return found
    return payload.text.strip()


def extract_structured_result(
    tool_use_result: Any,
    *,
    trusted_roots: Optional[Sequence[str]] = None,
    output_ext: str = DEFAULT_OUTPUT_EXT,
) -> Optional[str]:
    """Result carried by the record-level ``toolUseResult`` object, if any."""
    if not isinstance(tool_use_result, dict):
        return None
    ctx = ExtractContext(
        trusted_roots=tuple(trusted_roots) if trusted_roots is not None else default_trusted_roots(),
        output_ext=output_ext,
    )
    found = (
        _task_object_result(tool_use_result.get("task"), ctx)
        or _candidate(tool_use_result.get("result"), ctx)
        or _candidate(tool_use_result.get("output"), ctx)
    )
    if found:
        return found

    # Subagent shape: {status, content: [{type: "text", text}], agentId}
    content = tool_use_result.get("content")
    if isinstance(content, list):
        for block in content:
            if isinstance(block, dict) and block.get("type") == "text" and isinstance(block.get("text"), str):
                text = block["text"].strip()
                if text:
                    return text
                break
    return None


# ── Payload normalisation ────────────────────────────────────────────────────


def unwrap_text_payload(raw: str) -> str:
    """Unwrap ``[{"type":"text","text":...}]`` or ``{"text":...}`` envelopes."""
    try:
        parsed = json.loads(raw)
    except (TypeError, ValueError, RecursionError):
        return raw
    if isinstance(parsed, list):
        for block in parsed:
            if isinstance(block, dict) and isinstance(block.get("text"), str):
                return block["text"] or raw
    elif isinstance(parsed, dict) and isinstance(parsed.get("text"), str):
        return parsed["text"]
    return raw


def to_payload(raw: Any) -> Payload:
    if raw is None:
        return Payload("", None)
    if isinstance(raw, (dict, list)):
        raw = json.dumps(raw, ensure_ascii=False)
    elif not isinstance(raw, str):
        raw = str(raw)

    text = unwrap_text_payload(raw)
    try:
        parsed = json.loads(text)
    except (ValueError, RecursionError):
        parsed = None
    return Payload(text, parsed)


# ── Extractors, in precedence order ─────────────────────────────────────────


def _from_task_object(payload: Payload, ctx: ExtractContext) -> Optional[str]:
    if not isinstance(payload.parsed, dict):
        return None
    return _task_object_result(payload.parsed.get("task"), ctx)


def _from_agent_map(payload: Payload, ctx: ExtractContext) -> Optional[str]:
    agents = _agents(payload)
    if not agents or not ctx.agent_id or ctx.agent_id not in agents:
        return None
    return _agent_entry_result(agents[ctx.agent_id], ctx)


def _from_first_agent(payload: Payload, ctx: ExtractContext) -> Optional[str]:
    agents = _agents(payload)
    if not agents:
        return None
    first_key = next(iter(agents))
    return _agent_entry_result(agents[first_key], ctx)


def _from_top_level(payload: Payload, ctx: ExtractContext) -> Optional[str]:
    if not isinstance(payload.parsed, dict):
        return None
    return _candidate(payload.parsed.get("result"), ctx) or _candidate(payload.parsed.get("output"), ctx)


def _from_tagged_payload(payload: Payload, ctx: ExtractContext) -> Optional[str]:
    return _tagged_result(payload.text, ctx)


def _from_truncated_pointer(payload: Payload, ctx: ExtractContext) -> Optional[str]:
    return _output_jsonl_result(payload.text, ctx)


EXTRACTORS: List[Extractor] = [
    _from_task_object,
    _from_agent_map,
    _from_first_agent,
    _from_top_level,
    _from_tagged_payload,
    _from_truncated_pointer,
]


# ── Shape helpers ────────────────────────────────────────────────────────────


def _agents(payload: Payload) -> Optional[dict]:
    if not isinstance(payload.parsed, dict):
        return None
    agents = payload.parsed.get("agents")
    return agents if isinstance(agents, dict) and agents else None


def _agent_entry_result(entry: Any, ctx: ExtractContext) -> str:
    if isinstance(entry, dict):
        found = _candidate(entry.get("result"), ctx) or _candidate(entry.get("output"), ctx)
        if found:
            return found
    return json.dumps(entry, indent=2, ensure_ascii=False)


def _task_object_result(task: Any, ctx: ExtractContext) -> Optional[str]:
    if not isinstance(task, dict):
        return None
    return _candidate(task.get("result"), ctx) or _candidate(task.get("output"), ctx)


def _candidate(value: Any, ctx: ExtractContext) -> Optional[str]:
    """A string field that may itself be tagged or point at a full-output file."""
    if not isinstance(value, str):
        return None
    trimmed = value.strip()
    if not trimmed:
        return None
    return _tagged_result(trimmed, ctx) or _output_jsonl_result(trimmed, ctx) or trimmed


def extract_tag_content(text: str, tag: str) -> Optional[str]:
    match = re.search(rf"<{tag}>\s*([\s\S]*?)\s*</{tag}>", text, re.IGNORECASE)
    if not match:
        return None
    content = match.group(1).strip()
    return content or None


def _tagged_result(text: str, ctx: ExtractContext) -> Optional[str]:
    direct = extract_tag_content(text, "result")
    if direct:
        return direct

    output = extract_tag_content(text, "output")
    if not output:
        return None

    return (
        _output_jsonl_result(output, ctx)
        or extract_tag_content(output, "result")
        or output
    )


# ── JSONL transcripts and full-output files ──────────────────────────────────


def _output_jsonl_result(content: str, ctx: ExtractContext) -> Optional[str]:
    inline = assistant_result_from_jsonl(content)
    if inline:
        return inline

    match = _TRUNCATED_PATTERN.search(content)
    if not match:
        return None
    full_output = read_full_output(match.group(1).strip(), ctx.trusted_roots, ctx.output_ext)
    if not full_output:
        return None
    return assistant_result_from_jsonl(full_output)


def assistant_result_from_jsonl(content: str) -> Optional[str]:
    """Last assistant text block in a JSONL transcript, else the last ``result``."""
    last_assistant = None
    last_result = None

    for line in content.split("\n"):
        line = line.strip()
        if not line.startswith("{"):
            continue
        try:
            obj = json.loads(line)
        except (ValueError, RecursionError):
            continue
        if not isinstance(obj, dict):
            continue

        result = obj.get("result")
        if isinstance(result, str) and result.strip():
            last_result = result.strip()

        message = obj.get("message")
        if not isinstance(message, dict) or message.get("role") != "assistant":
            continue
        blocks = message.get("content")
        if not isinstance(blocks, list):
            continue
        for block in blocks:
            if (
                isinstance(block, dict)
                and block.get("type") == "text"
                and isinstance(block.get("text"), str)
                and block["text"].strip()
            ):
                last_assistant = block["text"].strip()

    return last_assistant or last_result


def is_trusted_output_path(path: str, trusted_roots: Sequence[str], output_ext: str = DEFAULT_OUTPUT_EXT) -> bool:
    """Absolute, right extension, and inside an allow-listed temp root after symlinks."""
    if not path or not os.path.isabs(path):
        return False
    if not path.lower().endswith(output_ext.lower()):
        return False
    try:
        resolved = os.path.realpath(path, strict=True)
    except (OSError, ValueError):
        return False
    return any(resolved == root or resolved.startswith(root + os.sep) for root in trusted_roots)


def read_full_output(path: str, trusted_roots: Sequence[str], output_ext: str = DEFAULT_OUTPUT_EXT) -> Optional[str]:
    if not is_trusted_output_path(path, trusted_roots, output_ext):
        logger.debug(f"Refusing untrusted full-output path: {path}")
        return None
    try:
        with open(path, "r", encoding="utf-8") as f:
            text = f.read().strip()
    except (OSError, UnicodeDecodeError) as e:
        logger.debug(f"Cannot read full output {path}: {e}")
        return None
    return text or None


def default_trusted_roots() -> tuple:
    from ..core.config import Config

    return tuple(Config().resolved_trusted_roots)
