"""
Subagent orchestration — track Task tool calls from launch to completion.

A Task is either sync (its result arrives inline as the Task tool result)
or async (the Task result only confirms a background launch; the real
result arrives later through an agent-output tool call or a queue
notification).

Async lifecycle, keyed by the Task tool-call id until an agent id is known:

    pending ──launch ok──▶ running ──output/notification──▶ completed | error
       │                      │
       └──launch failed──▶ error          teardown ──▶ orphaned

One orchestrator is owned by one open conversation. Every change to a
tracked SubagentInfo is reported to ``on_state_change`` as a detached
snapshot, exactly once per change.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from ..core.config import Config
from ..core.models import AsyncNotification, SubagentInfo, ToolCallInfo
from .extract import extract_result, extract_structured_result
from .markers import (
    agent_id_from_input,
    agent_id_from_tool_use_result,
    has_async_marker,
    infer_agent_id_from_result,
    is_still_running,
    parse_agent_id,
    parse_agent_id_strict,
)
from .notifications import normalize_status

logger = logging.getLogger(__name__)

TASK_TOOL = "Task"
AGENT_OUTPUT_TOOLS = ("TaskOutput", "AgentOutputTool")

ORPHANED_MESSAGE = "Conversation ended before task completed"
LAUNCH_FAILED_MESSAGE = "Task failed to start"
DEFAULT_ASYNC_DESCRIPTION = "Background task"
DEFAULT_SYNC_DESCRIPTION = "Subagent task"

StateChangeCallback = Callable[[SubagentInfo], None]


@dataclass
class HandleTaskResult:
    action: str  # buffered | created_sync | created_async | label_updated
    info: Optional[SubagentInfo] = None


@dataclass
class _PendingTask:
    tool_call: ToolCallInfo
    attached: bool = False


@dataclass
class _Tracking:
    sync: Dict[str, SubagentInfo] = field(default_factory=dict)  # task id
    pending_tasks: Dict[str, _PendingTask] = field(default_factory=dict)  # task id
    pending_async: Dict[str, SubagentInfo] = field(default_factory=dict)  # task id
    active_async: Dict[str, SubagentInfo] = field(default_factory=dict)  # agent id
    task_to_agent: Dict[str, str] = field(default_factory=dict)
    output_tool_to_agent: Dict[str, str] = field(default_factory=dict)
    async_by_task: Dict[str, SubagentInfo] = field(default_factory=dict)  # every async ever created


def is_agent_output_tool(name: str) -> bool:
    return name in AGENT_OUTPUT_TOOLS


def _now_ms() -> int:
    return int(time.time() * 1000)


class SubagentOrchestrator:
    """Per-conversation state machine for Task subagents."""

    def __init__(self, on_state_change: StateChangeCallback, config: Optional[Config] = None):
        cfg = config or Config.load()
        self._on_state_change = on_state_change
        self._trusted_roots = tuple(cfg.resolved_trusted_roots)
        self._output_ext = cfg.output_ext
        self._t = _Tracking()
        self._spawned = 0

    def set_callback(self, callback: StateChangeCallback) -> None:
        self._on_state_change = callback

    def __enter__(self) -> SubagentOrchestrator:
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        self.orphan_all_active()
        self.clear()
        return False

    # ── Task entry point ──────────────────────────────────────────────────

    def handle_task_tool_use(
        self,
        task_id: str,
        task_input: Optional[Dict[str, Any]],
        attached: bool = True,
    ) -> HandleTaskResult:
        """
        Register a Task tool_use, or fold a repeated (streamed) input into it.

        Mode is only fixed once ``run_in_background`` is known; until then the
        task is buffered. ``attached`` says whether the caller has a place to
        show the task yet.
        """
        task_input = task_input or {}

        existing = self._t.sync.get(task_id) or self._t.async_by_task.get(task_id)
        if existing is not None:
            if self._update_label(existing, task_input):
                self._emit(existing)
            return HandleTaskResult("label_updated", existing.snapshot())

        pending = self._t.pending_tasks.get(task_id)
        if pending is not None:
            if task_input:
                pending.tool_call.input = {**pending.tool_call.input, **task_input}
            if attached:
                pending.attached = True
            if _resolve_mode(pending.tool_call.input) is not None:
                info = self.render_pending_task(task_id)
                if info is not None:
                    return HandleTaskResult(f"created_{info.mode}", info)
            return HandleTaskResult("buffered")

        mode = _resolve_mode(task_input)
        if not attached or mode is None:
            self._t.pending_tasks[task_id] = _PendingTask(
                tool_call=ToolCallInfo(id=task_id, name=TASK_TOOL, input=dict(task_input)),
                attached=attached,
            )
            return HandleTaskResult("buffered")

        self._spawned += 1
        info = self._create(task_id, task_input, mode)
        return HandleTaskResult(f"created_{mode}", info)

    def has_pending_task(self, task_id: str) -> bool:
        return task_id in self._t.pending_tasks

    def render_pending_task(self, task_id: str) -> Optional[SubagentInfo]:
        """Create a buffered task once its mode is known or child activity shows it is sync."""
        pending = self._t.pending_tasks.get(task_id)
        if pending is None or not pending.attached:
            return None
        del self._t.pending_tasks[task_id]

        mode = "async" if pending.tool_call.input.get("run_in_background") is True else "sync"
        self._spawned += 1
        return self._create(task_id, pending.tool_call.input, mode)

    def render_pending_task_from_result(
        self,
        task_id: str,
        result: str,
        is_error: bool,
        tool_use_result: Any = None,
    ) -> Optional[SubagentInfo]:
        """Create a buffered task when its own result arrives, inferring the mode if needed."""
        pending = self._t.pending_tasks.get(task_id)
        if pending is None or not pending.attached:
            return None
        del self._t.pending_tasks[task_id]

        mode = _resolve_mode(pending.tool_call.input) or _infer_mode(result, is_error, tool_use_result)
        self._spawned += 1
        return self._create(task_id, pending.tool_call.input, mode)

    # ── Sync subagents ────────────────────────────────────────────────────

    def add_sync_tool_call(self, task_id: str, tool_call: ToolCallInfo) -> None:
        info = self._t.sync.get(task_id)
        if info is None:
            return
        info.tool_calls.append(tool_call)
        self._emit(info)

    def update_sync_tool_result(self, task_id: str, tool_id: str, tool_call: ToolCallInfo) -> None:
        info = self._t.sync.get(task_id)
        if info is None:
            return
        for idx, existing in enumerate(info.tool_calls):
            if existing.id == tool_id:
                info.tool_calls[idx] = tool_call
                self._emit(info)
                return

    def finalize_sync_subagent(
        self,
        task_id: str,
        result: str,
        is_error: bool,
        tool_use_result: Any = None,
    ) -> Optional[SubagentInfo]:
        info = self._t.sync.pop(task_id, None)
        if info is None:
            return None
        info.status = "error" if is_error else "completed"
        info.result = self._extract(result, None, tool_use_result)
        info.completed_at = _now_ms()
        self._emit(info)
        return info.snapshot()

    # ── Async subagents ───────────────────────────────────────────────────

    def handle_task_tool_result(
        self,
        task_id: str,
        result: str,
        is_error: bool = False,
        tool_use_result: Any = None,
    ) -> None:
        """Confirm or fail the launch of a pending async task."""
        info = self._t.pending_async.get(task_id)
        if info is None:
            return

        if is_error:
            self._transition_to_error(info, task_id, result or LAUNCH_FAILED_MESSAGE)
            return

        agent_id = agent_id_from_tool_use_result(tool_use_result) or parse_agent_id(result or "")
        if not agent_id:
            text = result or ""
            shown = text[:100] + "..." if len(text) > 100 else text
            self._transition_to_error(info, task_id, f"Failed to parse agent_id. Result: {shown}")
            return

        info.async_status = "running"
        info.agent_id = agent_id
        info.started_at = _now_ms()

        del self._t.pending_async[task_id]
        self._t.active_async[agent_id] = info
        self._t.task_to_agent[task_id] = agent_id
        self._emit(info)

    def handle_agent_output_tool_use(self, tool_call: ToolCallInfo) -> None:
        """Link an agent-output tool call to the running agent it polls."""
        agent_id = agent_id_from_input(tool_call.input)
        if not agent_id:
            return
        info = self._t.active_async.get(agent_id)
        if info is None:
            return
        info.output_tool_id = tool_call.id
        self._t.output_tool_to_agent[tool_call.id] = agent_id

    def handle_agent_output_tool_result(
        self,
        tool_id: str,
        result: str,
        is_error: bool,
        tool_use_result: Any = None,
    ) -> Optional[SubagentInfo]:
        """
        Complete a running agent from an agent-output result.

        A result that says the agent is still working only drops the tool
        link; the agent stays running.
        """
        agent_id = self._t.output_tool_to_agent.get(tool_id)
        info = self._t.active_async.get(agent_id) if agent_id else None

        if info is None:
            inferred = infer_agent_id_from_result(result or "")
            if inferred:
                agent_id = inferred
                info = self._t.active_async.get(inferred)

        if info is None or info.async_status != "running":
            self._t.output_tool_to_agent.pop(tool_id, None)
            return None

        info.agent_id = info.agent_id or agent_id
        self._t.output_tool_to_agent[tool_id] = agent_id

        if is_still_running(result, is_error):
            del self._t.output_tool_to_agent[tool_id]
            return info.snapshot()

        status = "error" if is_error else "completed"
        self._finish(info, status, self._extract(result, agent_id, tool_use_result))
        self._t.output_tool_to_agent.pop(tool_id, None)
        return info.snapshot()

    def handle_task_notification(self, notification: AsyncNotification) -> Optional[SubagentInfo]:
        """Complete a running agent from its queued completion notice."""
        info = self._t.active_async.get(notification.task_id)
        if info is None or info.async_status != "running":
            return None
        self._finish(info, normalize_status(notification.status), notification.result)
        return info.snapshot()

    def hydrate_tool_calls(self, task_id: str, tool_calls: List[ToolCallInfo]) -> Optional[SubagentInfo]:
        """Attach sidecar tool calls to an async subagent. Status is untouched."""
        info = self._t.async_by_task.get(task_id)
        if info is None:
            return None
        info.tool_calls = list(tool_calls)
        self._emit(info)
        return info.snapshot()

    def is_pending_async_task(self, task_id: str) -> bool:
        return task_id in self._t.pending_async

    def is_linked_agent_output_tool(self, tool_id: str) -> bool:
        return tool_id in self._t.output_tool_to_agent

    def get_by_agent_id(self, agent_id: str) -> Optional[SubagentInfo]:
        info = self._t.active_async.get(agent_id)
        return info.snapshot() if info else None

    def get_by_task_id(self, task_id: str) -> Optional[SubagentInfo]:
        info = self._t.pending_async.get(task_id)
        if info is None:
            agent_id = self._t.task_to_agent.get(task_id)
            info = self._t.active_async.get(agent_id) if agent_id else None
        return info.snapshot() if info else None

    def get_all_active(self) -> List[SubagentInfo]:
        return [
            info.snapshot()
            for info in (*self._t.pending_async.values(), *self._t.active_async.values())
        ]

    def has_active_async(self) -> bool:
        return bool(self._t.pending_async or self._t.active_async)

    # ── Lifecycle ─────────────────────────────────────────────────────────

    @property
    def subagents_spawned(self) -> int:
        return self._spawned

    def reset_spawned_count(self) -> None:
        self._spawned = 0

    def reset_streaming_state(self) -> None:
        self._t.sync.clear()
        self._t.pending_tasks.clear()

    def orphan_all_active(self) -> List[SubagentInfo]:
        """Force every pending or running async task to orphaned. Safe to repeat."""
        orphaned = []
        for info in self._t.pending_async.values():
            self._mark_orphaned(info)
            orphaned.append(info.snapshot())
        for info in self._t.active_async.values():
            if info.async_status == "running":
                self._mark_orphaned(info)
                orphaned.append(info.snapshot())

        self._t.pending_async.clear()
        self._t.active_async.clear()
        self._t.task_to_agent.clear()
        self._t.output_tool_to_agent.clear()
        if orphaned:
            logger.info(f"Orphaned {len(orphaned)} background task(s)")
        return orphaned

    def clear(self) -> None:
        self._t = _Tracking()

    # ── Internals ─────────────────────────────────────────────────────────

    def _emit(self, info: SubagentInfo) -> None:
        self._on_state_change(info.snapshot())

    def _extract(self, result: str, agent_id: Optional[str], tool_use_result: Any) -> str:
        return extract_structured_result(
            tool_use_result,
            trusted_roots=self._trusted_roots,
            output_ext=self._output_ext,
        ) or extract_result(
            result,
            agent_id,
            trusted_roots=self._trusted_roots,
            output_ext=self._output_ext,
        )

    def _create(self, task_id: str, task_input: Dict[str, Any], mode: str) -> SubagentInfo:
        if mode == "async":
            info = SubagentInfo(
                id=task_id,
                description=task_input.get("description") or DEFAULT_ASYNC_DESCRIPTION,
                prompt=task_input.get("prompt") or "",
                mode="async",
                async_status="pending",
            )
            self._t.pending_async[task_id] = info
            self._t.async_by_task[task_id] = info
        else:
            info = SubagentInfo(
                id=task_id,
                description=task_input.get("description") or DEFAULT_SYNC_DESCRIPTION,
                prompt=task_input.get("prompt") or "",
                mode="sync",
                started_at=_now_ms(),
            )
            self._t.sync[task_id] = info
        logger.debug(f"Created {mode} subagent for task {task_id}")
        self._emit(info)
        return info.snapshot()

    def _finish(self, info: SubagentInfo, status: str, result: str) -> None:
        info.async_status = status
        info.status = status
        info.result = result
        info.completed_at = _now_ms()
        if info.agent_id:
            self._t.active_async.pop(info.agent_id, None)
        self._emit(info)

    def _transition_to_error(self, info: SubagentInfo, task_id: str, message: str) -> None:
        info.async_status = "error"
        info.status = "error"
        info.result = message
        info.completed_at = _now_ms()
        self._t.pending_async.pop(task_id, None)
        logger.debug(f"Task {task_id} failed to launch: {message}")
        self._emit(info)

    def _mark_orphaned(self, info: SubagentInfo) -> None:
        info.async_status = "orphaned"
        info.status = "error"
        info.result = ORPHANED_MESSAGE
        info.completed_at = _now_ms()
        self._emit(info)

    @staticmethod
    def _update_label(info: SubagentInfo, task_input: Dict[str, Any]) -> bool:
        changed = False
        description = task_input.get("description")
        if isinstance(description, str) and description and description != info.description:
            info.description = description
            changed = True
        prompt = task_input.get("prompt")
        if isinstance(prompt, str) and prompt and prompt != info.prompt:
            info.prompt = prompt
            changed = True
        return changed


def _resolve_mode(task_input: Dict[str, Any]) -> Optional[str]:
    """Mode from an explicit ``run_in_background`` flag, or None while unknown."""
    flag = task_input.get("run_in_background")
    if flag is True:
        return "async"
    if flag is False:
        return "sync"
    return None


def _infer_mode(result: str, is_error: bool, tool_use_result: Any) -> str:
    if is_error:
        return "sync"
    if has_async_marker(tool_use_result):
        return "async"
    return "async" if parse_agent_id_strict(result or "") else "sync"
