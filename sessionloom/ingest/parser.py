"""
Message assembly — turn active-branch Records into display-ready ChatMessages.
"""

from __future__ import annotations

import json
import logging
import re
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence

from ..core.models import (
    ChatMessage,
    ContentBlock,
    ImageAttachment,
    Record,
    RecordKind,
    ToolCallInfo,
)
from .answers import extract_resolved_answers, extract_resolved_answers_from_text

logger = logging.getLogger(__name__)

ASK_USER_QUESTION = "AskUserQuestion"

_NO_CONTENT_PLACEHOLDER = "(no content)"
_INTERRUPT_MARKERS = (
    "[Request interrupted by user]",
    "[Request interrupted by user for tool use]",
)
_COMPACT_CANCELED = re.compile(
    r"<local-command-stderr>\s*Error: Compaction canceled\.?\s*</local-command-stderr>",
    re.IGNORECASE,
)
_LOCAL_COMMAND_PREFIXES = (
    "<local-command-stdout>",
    "<local-command-stderr>",
    "<local-command-caveat>",
)
_REBUILT_HEAD = re.compile(r"^(?:User|Assistant|A):\s")
_REBUILT_TURN = re.compile(r"\n\n(?:User|Assistant|A):\s")
_CONTEXT_TAGS = ("current_note", "editor_selection", "context_files", "canvas_selection")
_CONTEXT_TAG_PATTERN = re.compile(r"<(?:%s)[\s>]" % "|".join(_CONTEXT_TAGS))
_COMMAND_NAME_PATTERN = re.compile(r"<command-name>\s*([^<\n]+?)\s*</command-name>", re.IGNORECASE)
_COMMAND_ARGS_PATTERN = re.compile(r"<command-args>\s*([\s\S]*?)\s*</command-args>", re.IGNORECASE)


def assemble(records: Sequence[Record]) -> List[ChatMessage]:
    """
    Build the message list for one conversation branch.

    Strategy:
    1. Drop injected records (isMeta, with or without sourceToolUseID)
    2. Attach tool_result blocks to the matching call anywhere earlier
    3. Drop records that only carry tool results or local command output
    4. Merge consecutive assistant records into one turn
    5. Sort by timestamp (the producer writes some records out of order)
    """
    messages: List[ChatMessage] = []
    tool_index: Dict[str, ToolCallInfo] = {}
    seen_ids = set()

    for record in records:
        if record.id:
            if record.id in seen_ids:
                continue
            seen_ids.add(record.id)

        if record.kind is RecordKind.USER:
            if record.is_meta:
                continue

            _apply_tool_results(record.content, tool_index, record.tool_use_result)

            if _is_tool_result_only(record.content):
                continue
            if _is_local_command_output(record.content):
                continue

        message = record_to_message(record)
        if message is None:
            continue

        for call in message.tool_calls:
            tool_index[call.id] = call

        previous = messages[-1] if messages else None
        if (
            previous is not None
            and previous.role == "assistant"
            and message.role == "assistant"
            and not previous.is_compact_boundary
            and not message.is_compact_boundary
        ):
            _merge_into(previous, message)
            continue

        messages.append(message)

    messages.sort(key=lambda m: m.timestamp)
    return messages


def record_to_message(record: Record) -> Optional[ChatMessage]:
    """Convert a single record, or None if it has nothing to show."""
    timestamp = _timestamp_ms(record.timestamp)

    if record.kind is RecordKind.SYSTEM:
        if record.subtype != "compact_boundary":
            return None
        return ChatMessage(
            id=record.id or _synthetic_id("compact"),
            role="assistant",
            content="",
            timestamp=timestamp,
            content_blocks=[ContentBlock(type="compact_boundary")],
        )

    if record.kind not in (RecordKind.USER, RecordKind.ASSISTANT):
        return None

    role = record.kind.value
    content = record.content

    if role == "user":
        if content is None:
            return None
        if isinstance(content, str) and not content.strip():
            return None

    text = _extract_text_from_content(content)
    message = ChatMessage(
        id=record.id or _synthetic_id("sdk"),
        role=role,
        content=text,
        timestamp=timestamp,
    )
    if role == "user":
        message.user_record_id = record.id
    else:
        message.assistant_record_id = record.id

    if isinstance(content, list):
        message.content_blocks = _content_blocks(content)
        message.tool_calls = _tool_calls(content)
        _apply_tool_results(
            content,
            {call.id: call for call in message.tool_calls},
            record.tool_use_result,
        )
        if role == "user":
            message.images = _images(content)

    if role == "user" and not text and not message.images and not message.tool_calls:
        return None

    if role == "user":
        message.display_content = _display_content(text)
        message.is_interrupt = _is_interrupt(text)
        message.is_rebuilt_context = _is_rebuilt_context(text)

    return message


# ── Content extraction ───────────────────────────────────────────────────────


def _extract_text_from_content(content: Any) -> str:
    """Extract plain text from message content."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for item in content:
            if isinstance(item, dict) and item.get("type") == "text":
                text = item.get("text")
                if _is_visible_text(text):
                    parts.append(text)
        return "\n".join(parts)
    return ""


def _is_visible_text(text: Any) -> bool:
    return isinstance(text, str) and bool(text.strip()) and text.strip() != _NO_CONTENT_PLACEHOLDER


def _content_blocks(content: List[Any]) -> List[ContentBlock]:
    blocks = []
    for item in content:
        if not isinstance(item, dict):
            continue
        block_type = item.get("type")
        if block_type == "text" and _is_visible_text(item.get("text")):
            blocks.append(ContentBlock(type="text", content=item["text"]))
        elif block_type == "thinking" and item.get("thinking"):
            blocks.append(ContentBlock(type="thinking", content=item["thinking"]))
        elif block_type == "tool_use" and item.get("id"):
            blocks.append(ContentBlock(type="tool_use", tool_id=item["id"]))
    return blocks


def _tool_calls(content: List[Any]) -> List[ToolCallInfo]:
    calls = []
    for item in content:
        if not isinstance(item, dict) or item.get("type") != "tool_use" or not item.get("id"):
            continue
        tool_input = item.get("input")
        calls.append(ToolCallInfo(
            id=item["id"],
            name=item.get("name") or "",
            input=tool_input if isinstance(tool_input, dict) else {},
        ))
    return calls


def _images(content: List[Any]) -> List[ImageAttachment]:
    images = []
    for item in content:
        if not isinstance(item, dict) or item.get("type") != "image":
            continue
        source = item.get("source")
        if not isinstance(source, dict) or source.get("type") != "base64":
            continue
        data = source.get("data") or ""
        index = len(images) + 1
        images.append(ImageAttachment(
            id=_synthetic_id("image"),
            name=f"image-{index}",
            media_type=source.get("media_type") or "image/png",
            data=data,
            size=len(data) * 3 // 4,
        ))
    return images


def tool_result_text(content: Any) -> str:
    """Stringify tool_result content: text-block lists are joined, the rest is JSON."""
    if isinstance(content, str):
        return content
    if content is None:
        return ""
    if isinstance(content, list) and content and all(
        isinstance(b, dict) and b.get("type") == "text" and isinstance(b.get("text"), str)
        for b in content
    ):
        return "\n".join(b["text"] for b in content)
    return json.dumps(content, separators=(",", ":"), ensure_ascii=False)


def _apply_tool_results(
    content: Any,
    tool_index: Dict[str, ToolCallInfo],
    tool_use_result: Any = None,
) -> None:
    if not isinstance(content, list):
        return
    for block in content:
        if not isinstance(block, dict) or block.get("type") != "tool_result":
            continue
        call = tool_index.get(block.get("tool_use_id"))
        if call is None:
            logger.debug(f"tool_result for unknown call {block.get('tool_use_id')}")
            continue
        call.result = tool_result_text(block.get("content"))
        call.status = "error" if block.get("is_error") else "completed"
        if tool_use_result is not None:
            call.tool_use_result = tool_use_result
        if call.name == ASK_USER_QUESTION:
            answers = (
                extract_resolved_answers(tool_use_result)
                or extract_resolved_answers_from_text(call.result)
            )
            if answers:
                call.resolved_answers = answers


# ── Filters and flags ────────────────────────────────────────────────────────


def _is_tool_result_only(content: Any) -> bool:
    return (
        isinstance(content, list)
        and bool(content)
        and all(isinstance(b, dict) and b.get("type") == "tool_result" for b in content)
    )


def _is_local_command_output(content: Any) -> bool:
    text = _extract_text_from_content(content).strip()
    if not text.startswith(_LOCAL_COMMAND_PREFIXES):
        return False
    # A cancelled compaction is shown as an interrupt
    return not _COMPACT_CANCELED.search(text)


def _is_interrupt(text: str) -> bool:
    stripped = text.strip()
    return stripped in _INTERRUPT_MARKERS or bool(_COMPACT_CANCELED.search(stripped))


def _is_rebuilt_context(text: str) -> bool:
    return bool(_REBUILT_HEAD.match(text)) and bool(_REBUILT_TURN.search(text))


def _display_content(text: str) -> Optional[str]:
    """Short form of a user turn: slash command or text before context tags."""
    name_match = _COMMAND_NAME_PATTERN.search(text)
    if name_match:
        command = name_match.group(1).strip()
        if not command.startswith("/"):
            command = "/" + command
        args_match = _COMMAND_ARGS_PATTERN.search(text)
        args = args_match.group(1).strip() if args_match else ""
        return f"{command} {args}" if args else command

    tag_match = _CONTEXT_TAG_PATTERN.search(text)
    if tag_match:
        return text[: tag_match.start()].strip()
    return None


# ── Merging ──────────────────────────────────────────────────────────────────


def _merge_into(target: ChatMessage, source: ChatMessage) -> None:
    target.tool_calls.extend(source.tool_calls)
    target.content_blocks.extend(source.content_blocks)
    if source.content:
        target.content = f"{target.content}\n\n{source.content}" if target.content else source.content
    # Rewind targets the end of the merged turn
    if source.assistant_record_id:
        target.assistant_record_id = source.assistant_record_id


def iter_tool_calls(messages: Iterable[ChatMessage]) -> Iterable[ToolCallInfo]:
    for message in messages:
        yield from message.tool_calls


# ── Ids and timestamps ───────────────────────────────────────────────────────


def _timestamp_ms(ts: Optional[str]) -> int:
    if ts:
        try:
            parsed = datetime.fromisoformat(ts.replace("Z", "+00:00"))
        except ValueError:
            logger.debug(f"Unparseable timestamp {ts!r}, using now")
        else:
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=timezone.utc)
            return int(parsed.timestamp() * 1000)
    return int(time.time() * 1000)


def _synthetic_id(prefix: str) -> str:
    return f"{prefix}-{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}"
