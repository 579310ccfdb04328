"""Interactive card bodies for task notifications.

The output depends only on the notification payload, so the same payload
always renders the same card.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from larknotify.core.models import CodeStats, EnhancedNotificationData, NotificationData, TaskStatus

# status -> (emoji, text, header template colour)
_STATUS_STYLE: dict[str, tuple[str, str, str]] = {
    TaskStatus.CREATED.value: ("🆕", "Created", "blue"),
    TaskStatus.IN_PROGRESS.value: ("⏳", "In progress", "orange"),
    TaskStatus.COMPLETED.value: ("✅", "Completed", "green"),
    TaskStatus.FAILED.value: ("❌", "Failed", "red"),
}
_UNKNOWN_STYLE = ("📋", "Unknown", "blue")

_BAR_WIDTH = 20


def status_style(status: Any) -> tuple[str, str, str]:
    key = status.value if isinstance(status, TaskStatus) else str(status)
    return _STATUS_STYLE.get(key, _UNKNOWN_STYLE)


def progress_bar(progress: Optional[int]) -> str:
    """Fixed-width text bar: one filled cell per 5%."""
    value = max(0, min(100, progress or 0))
    filled = value // 5
    return f"`[{'█' * filled}{'░' * (_BAR_WIDTH - filled)}]`"


def code_stats_text(stats: CodeStats) -> str:
    return "\n".join([
        "**📊 Code stats:**",
        f"• Files created: {stats.files_created}",
        f"• Files modified: {stats.files_modified}",
        f"• Files deleted: {stats.files_deleted}",
        f"• Lines added: +{stats.lines_added}",
        f"• Lines removed: -{stats.lines_removed}",
    ])


def format_timestamp(timestamp_ms: int) -> str:
    return datetime.fromtimestamp(timestamp_ms / 1000).strftime("%Y-%m-%d %H:%M:%S")


def _md(content: str) -> dict[str, Any]:
    return {"tag": "div", "text": {"tag": "lark_md", "content": content}}


def build_card(data: NotificationData) -> dict[str, Any]:
    """Build the card object for a notification payload."""
    emoji, text, template = status_style(data.status)
    description = data.description if isinstance(data, EnhancedNotificationData) else None
    code_stats = data.code_stats if isinstance(data, EnhancedNotificationData) else None
    progress = data.progress or 0

    elements: list[dict[str, Any]] = []

    body = description or data.message
    if body:
        elements.append(_md(body))
        elements.append({"tag": "hr"})

    elements.append({
        "tag": "div",
        "fields": [
            {"is_short": True, "text": {"tag": "lark_md", "content": f"**Status:** {emoji} {text}"}},
            {"is_short": True, "text": {"tag": "lark_md", "content": f"**Progress:** {progress}%"}},
        ],
    })
    elements.append(_md(progress_bar(progress)))
    elements.append(_md(f"**Task ID:** {data.task_id}"))

    if data.error:
        elements.append({"tag": "hr"})
        elements.append(_md(f"⚠️ **Error:** {data.error}"))

    if code_stats:
        elements.append({"tag": "hr"})
        elements.append(_md(code_stats_text(code_stats)))

    elements.append({
        "tag": "note",
        "elements": [{"tag": "plain_text", "content": f"🕐 {format_timestamp(data.timestamp_ms)}"}],
    })

    return {
        "config": {"wide_screen_mode": True, "enable_forward": True},
        "header": {
            "title": {"tag": "plain_text", "content": f"{emoji} {data.task_name}"},
            "template": template,
        },
        "elements": elements,
    }
