"""
Out-of-band completion notices for background subagents.

The producer enqueues a ``queue-operation`` record when a background agent
finishes:

    {"type": "queue-operation", "operation": "enqueue",
     "content": "<task-notification><task-id>ae5eb9a</task-id>
                 <status>completed</status><result>...</result>
                 </task-notification>"}

The result here is the full text; the inline Task result is truncated.
"""

from __future__ import annotations

import logging
import re
from typing import Dict, Iterable, Optional

from ..core.models import AsyncNotification, Record, RecordKind

logger = logging.getLogger(__name__)

_NOTIFICATION_MARKER = "<task-notification>"


def _tag(text: str, name: str) -> Optional[str]:
    match = re.search(rf"<{name}>([\s\S]*?)</{name}>", text)
    return match.group(1).strip() if match else None


def parse_task_notification(text: str) -> Optional[AsyncNotification]:
    """Parse one ``<task-notification>`` body; None unless it has an id and a result."""
    if _NOTIFICATION_MARKER not in text:
        return None
    task_id = _tag(text, "task-id")
    result = _tag(text, "result")
    if not task_id or result is None:
        return None
    return AsyncNotification(
        task_id=task_id,
        status=_tag(text, "status") or "completed",
        result=result,
        summary=_tag(text, "summary"),
    )


def collect_async_results(records: Iterable[Record]) -> Dict[str, AsyncNotification]:
    """
    Map agent id to its completion notice.

    Only enqueue operations are read; a later notice for the same agent
    replaces an earlier one.
    """
    results: Dict[str, AsyncNotification] = {}
    for record in records:
        if record.kind is not RecordKind.QUEUE_OPERATION or record.operation != "enqueue":
            continue
        content = record.queue_content
        if not isinstance(content, str):
            continue
        notification = parse_task_notification(content)
        if notification is None:
            continue
        results[notification.task_id] = notification

    logger.debug(f"Collected {len(results)} task notifications")
    return results


def normalize_status(status: str) -> str:
    """Notification status as a terminal subagent status."""
    return "error" if status.lower() in ("error", "failed") else "completed"
