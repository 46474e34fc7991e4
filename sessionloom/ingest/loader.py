"""
Session loading — read, resolve, assemble, and replay subagents for one session.

Pipeline:
1. Read the main log
2. Resolve the active branch (optionally truncated at ``resume_at``)
3. Assemble display messages
4. Replay Task tool calls through a SubagentOrchestrator, apply queued
   completion notices, and hydrate async subagents from their sidecar logs
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional, Sequence

from ..core.config import Config
from ..core.models import ChatMessage, LoadResult, Record, SubagentInfo, ToolCallInfo
from ..subagents.notifications import collect_async_results
from ..subagents.orchestrator import TASK_TOOL, SubagentOrchestrator, is_agent_output_tool
from .branch import resolve_active_branch
from .parser import assemble, iter_tool_calls, tool_result_text
from .reader import read_session, read_sidecar

logger = logging.getLogger(__name__)

_TERMINAL_ASYNC = ("completed", "error", "orphaned")


def load_session_messages(
    workspace: str,
    session_id: str,
    resume_at: Optional[str] = None,
    *,
    config: Optional[Config] = None,
) -> LoadResult:
    """
    Load the messages currently shown for a session.

    Args:
        workspace: Workspace path the session belongs to
        session_id: Session id (file stem of the main log)
        resume_at: Record id to truncate the active branch at

    Returns:
        LoadResult. A missing log is an empty result; read failures and
        invalid ids are reported in ``error``.
    """
    cfg = config or Config.load()
    read = read_session(workspace, session_id, cfg)
    if read.error:
        return LoadResult(skipped_lines=read.skipped_count, error=read.error)

    branch = resolve_active_branch(read.records, resume_at)
    messages = assemble(branch)
    _attach_async_subagents(messages, read.records, workspace, session_id, cfg)

    if read.skipped_count:
        logger.warning(f"Session {session_id}: skipped {read.skipped_count} malformed line(s)")
    return LoadResult(messages=messages, skipped_lines=read.skipped_count)


def load_subagent_tool_calls(
    workspace: str,
    session_id: str,
    agent_id: str,
    config: Optional[Config] = None,
) -> List[ToolCallInfo]:
    """Tool calls recorded in an async subagent's sidecar log, in call order."""
    read = read_sidecar(workspace, session_id, agent_id, config)
    if read.error:
        return []
    return pair_tool_calls(read.records)


def pair_tool_calls(records: Sequence[Record]) -> List[ToolCallInfo]:
    """Pair tool_use blocks with later tool_result blocks. Orphan results are ignored."""
    calls: Dict[str, ToolCallInfo] = {}
    for record in records:
        content = record.content
        if not isinstance(content, list):
            continue
        for block in content:
            if not isinstance(block, dict):
                continue
            if block.get("type") == "tool_use" and block.get("id"):
                tool_input = block.get("input")
                calls[block["id"]] = ToolCallInfo(
                    id=block["id"],
                    name=block.get("name") or "",
                    input=tool_input if isinstance(tool_input, dict) else {},
                )
            elif block.get("type") == "tool_result":
                call = calls.get(block.get("tool_use_id"))
                if call is None:
                    continue
                call.result = tool_result_text(block.get("content"))
                call.status = "error" if block.get("is_error") else "completed"
    return list(calls.values())


def _attach_async_subagents(
    messages: List[ChatMessage],
    records: Sequence[Record],
    workspace: str,
    session_id: str,
    config: Config,
) -> None:
    task_calls = [call for call in iter_tool_calls(messages) if call.name == TASK_TOOL]
    if not task_calls:
        return

    latest: Dict[str, SubagentInfo] = {}

    def remember(info: SubagentInfo) -> None:
        latest[info.id] = info

    orchestrator = SubagentOrchestrator(remember, config)
    try:
        _replay(orchestrator, messages)

        for notification in collect_async_results(records).values():
            orchestrator.handle_task_notification(notification)

        for task_id, info in list(latest.items()):
            if info.mode == "async" and info.agent_id:
                tool_calls = load_subagent_tool_calls(workspace, session_id, info.agent_id, config)
                orchestrator.hydrate_tool_calls(task_id, tool_calls)
    finally:
        orchestrator.clear()

    for call in task_calls:
        info = latest.get(call.id)
        if info is None or info.mode != "async":
            continue
        if info.result is None:
            info.result = call.result
        call.subagent = info
        if info.async_status in _TERMINAL_ASYNC:
            call.status = info.status
            call.result = info.result


def _replay(orchestrator: SubagentOrchestrator, messages: List[ChatMessage]) -> None:
    """Feed stored Task and agent-output calls through the orchestrator in log order."""
    for call in iter_tool_calls(messages):
        finished = call.status in ("completed", "error") and call.result is not None
        is_error = call.status == "error"

        if call.name == TASK_TOOL:
            orchestrator.handle_task_tool_use(call.id, call.input)
            if not finished:
                continue
            if orchestrator.has_pending_task(call.id):
                orchestrator.render_pending_task_from_result(
                    call.id, call.result, is_error, call.tool_use_result
                )
            if orchestrator.is_pending_async_task(call.id):
                orchestrator.handle_task_tool_result(call.id, call.result, is_error, call.tool_use_result)
            else:
                orchestrator.finalize_sync_subagent(call.id, call.result, is_error, call.tool_use_result)

        elif is_agent_output_tool(call.name):
            orchestrator.handle_agent_output_tool_use(call)
            if finished:
                orchestrator.handle_agent_output_tool_result(
                    call.id, call.result, is_error, call.tool_use_result
                )
