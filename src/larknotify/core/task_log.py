"""Per-task diagnostic log held in memory.

Each task gets an ordered, append-only list of entries. Nothing is written
to disk; entries live until cleared explicitly or the owning service is
disposed.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from larknotify.core.models import TaskLogEntry


LOG_LEVELS = ("debug", "info", "warn", "error")


class TaskLog:
    """Append-only diagnostic entries, keyed by task_id."""

    def __init__(self) -> None:
        self._entries: Dict[str, List[TaskLogEntry]] = {}

    def add(
        self,
        task_id: str,
        level: str,
        message: str,
        metadata: Optional[dict[str, Any]] = None,
    ) -> TaskLogEntry:
        """Append an entry. Returns the created entry."""
        if level not in LOG_LEVELS:
            raise ValueError(f"Unsupported log level: {level}. Must be one of {', '.join(LOG_LEVELS)}.")
        entry = TaskLogEntry(
            time_iso=datetime.now(timezone.utc).isoformat(),
            level=level,
            message=message,
            metadata=metadata,
        )
        self._entries.setdefault(task_id, []).append(entry)
        return entry

    def get(self, task_id: str) -> List[TaskLogEntry]:
        return list(self._entries.get(task_id, []))

    def clear(self, task_id: str) -> None:
        self._entries.pop(task_id, None)

    def clear_all(self) -> None:
        self._entries.clear()

    def format_tail(self, task_id: str, n: int = 50) -> str:
        """Human-readable dump of the last N entries."""
        entries = self.get(task_id)[-n:]
        if not entries:
            return "(no log entries)"
        return "\n".join(f"[{e.time_iso}] {e.level.upper()} {e.message}" for e in entries)
