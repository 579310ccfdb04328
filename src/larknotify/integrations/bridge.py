"""Bridge transport: deliver through an out-of-process tool server.

Instead of talking HTTP itself, the bridge hands the notification to an
injected caller that invokes a named tool on a named server (for example
an MCP server that owns the chat integration).
"""
from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Optional

from larknotify.core.errors import TransportError
from larknotify.core.models import EnhancedNotificationData, NotificationData, TaskStatus

logger = logging.getLogger("larknotify.bridge")

# (server_name, tool_name, arguments) -> tool result
BridgeCaller = Callable[[str, str, dict[str, Any]], Awaitable[Any]]

CREATE_TOOL = "create_coding_task"
UPDATE_TOOL = "update_task_progress"

_BRIDGE_STATUS = {
    TaskStatus.CREATED.value: "pending",
    TaskStatus.IN_PROGRESS.value: "running",
    TaskStatus.COMPLETED.value: "completed",
    TaskStatus.FAILED.value: "failed",
}


def _status_value(status: Any) -> str:
    return status.value if isinstance(status, TaskStatus) else str(status)


def tool_for_status(status: Any) -> str:
    return CREATE_TOOL if _status_value(status) == TaskStatus.CREATED.value else UPDATE_TOOL


def args_for_status(data: NotificationData) -> dict[str, Any]:
    if _status_value(data.status) == TaskStatus.CREATED.value:
        enhanced = data if isinstance(data, EnhancedNotificationData) else None
        return {
            "title": data.task_name,
            "description": (enhanced and enhanced.description) or data.message or "",
            "userId": enhanced.user_id if enhanced else None,
        }
    return {
        "taskId": data.task_id,
        "status": _BRIDGE_STATUS.get(_status_value(data.status), "running"),
        "progress": data.progress,
    }


def _extract_message_id(result: Any) -> Optional[str]:
    if isinstance(result, dict):
        return result.get("messageId") or result.get("message_id")
    return getattr(result, "message_id", None)


async def send_via_bridge(caller: BridgeCaller, server_name: str, data: NotificationData) -> Optional[str]:
    """Invoke the tool matching the payload's status. Returns the message id, if any."""
    tool = tool_for_status(data.status)
    try:
        result = await caller(server_name, tool, args_for_status(data))
    except Exception as exc:  # noqa: BLE001
        raise TransportError(f"Bridge call failed: {exc}") from exc
    logger.debug("Bridge %s/%s ok for task %s", server_name, tool, data.task_id)
    return _extract_message_id(result)
