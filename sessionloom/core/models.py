"""Data models for sessionloom."""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class RecordKind(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"
    QUEUE_OPERATION = "queue-operation"
    OTHER = "other"

    @classmethod
    def from_type(cls, raw_type: Any) -> RecordKind:
        for kind in cls:
            if kind.value == raw_type:
                return kind
        return cls.OTHER


@dataclass(frozen=True)
class Record:
    """One raw entry from the append-only conversation log."""

    id: Optional[str]
    parent_id: Optional[str]
    kind: RecordKind
    type: str
    timestamp: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Record:
        raw_type = data.get("type")
        uuid = data.get("uuid")
        parent = data.get("parentUuid")
        ts = data.get("timestamp")
        return cls(
            id=uuid if isinstance(uuid, str) and uuid else None,
            parent_id=parent if isinstance(parent, str) and parent else None,
            kind=RecordKind.from_type(raw_type),
            type=raw_type if isinstance(raw_type, str) else "",
            timestamp=ts if isinstance(ts, str) and ts else None,
            payload=data,
        )

    # ── Payload accessors ─────────────────────────────────────────────────

    @property
    def message(self) -> Dict[str, Any]:
        message = self.payload.get("message")
        return message if isinstance(message, dict) else {}

    @property
    def content(self) -> Any:
        """Message content: a string, a list of blocks, or None."""
        return self.message.get("content")

    @property
    def subtype(self) -> Optional[str]:
        return self.payload.get("subtype")

    @property
    def is_meta(self) -> bool:
        return self.payload.get("isMeta") is True

    @property
    def tool_use_result(self) -> Any:
        return self.payload.get("toolUseResult")

    @property
    def operation(self) -> Optional[str]:
        return self.payload.get("operation")

    @property
    def queue_content(self) -> Any:
        """Top-level content of a queue-operation record."""
        return self.payload.get("content")


@dataclass
class ReadResult:
    records: List[Record] = field(default_factory=list)
    skipped_count: int = 0
    error: Optional[str] = None


@dataclass
class ContentBlock:
    type: str  # "text" | "thinking" | "tool_use" | "compact_boundary"
    content: Optional[str] = None
    tool_id: Optional[str] = None


@dataclass
class ImageAttachment:
    id: str
    name: str
    media_type: str
    data: str
    size: int
    source: str = "paste"


@dataclass
class SubagentInfo:
    id: str  # originating Task tool-call id
    description: str
    prompt: str = ""
    mode: str = "sync"  # sync | async
    status: str = "running"  # running | completed | error
    async_status: Optional[str] = None  # pending | running | completed | error | orphaned
    agent_id: Optional[str] = None
    result: Optional[str] = None
    tool_calls: List[ToolCallInfo] = field(default_factory=list)
    output_tool_id: Optional[str] = None
    started_at: Optional[int] = None
    completed_at: Optional[int] = None

    def snapshot(self) -> SubagentInfo:
        """Detached copy handed to state-change observers."""
        return copy.deepcopy(self)


@dataclass
class ToolCallInfo:
    id: str
    name: str
    input: Dict[str, Any] = field(default_factory=dict)
    status: str = "running"  # running | completed | error | blocked
    result: Optional[str] = None
    resolved_answers: Optional[Dict[str, str]] = None
    subagent: Optional[SubagentInfo] = None
    tool_use_result: Any = None


@dataclass
class ChatMessage:
    id: str
    role: str  # "user" | "assistant"
    content: str
    timestamp: int  # epoch milliseconds
    display_content: Optional[str] = None
    content_blocks: List[ContentBlock] = field(default_factory=list)
    tool_calls: List[ToolCallInfo] = field(default_factory=list)
    images: List[ImageAttachment] = field(default_factory=list)
    is_interrupt: bool = False
    is_rebuilt_context: bool = False
    user_record_id: Optional[str] = None
    assistant_record_id: Optional[str] = None

    @property
    def is_compact_boundary(self) -> bool:
        return any(b.type == "compact_boundary" for b in self.content_blocks)


@dataclass
class AsyncNotification:
    """A completion delivered through the queue-operation channel."""

    task_id: str
    status: str
    result: str
    summary: Optional[str] = None


@dataclass
class LoadResult:
    messages: List[ChatMessage] = field(default_factory=list)
    skipped_lines: int = 0
    error: Optional[str] = None
