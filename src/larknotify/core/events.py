"""Normalized task lifecycle events.

Each lifecycle signal maps to exactly one frozen dataclass below. All of
them derive from :class:`TaskEvent` and expose their :class:`EventKind` as
the ``kind`` class attribute, so consumers can either match on the class
or look up listeners by kind.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, ClassVar, Dict, Optional


class EventKind(str, Enum):
    TASK_STARTED = "task_started"
    TASK_PROGRESS = "task_progress"
    TASK_TOOL_USE = "task_tool_use"
    TASK_COMPLETED = "task_completed"
    TASK_FAILED = "task_failed"
    TASK_CANCELLED = "task_cancelled"
    TASK_PAUSED = "task_paused"
    TASK_RESUMED = "task_resumed"
    TASK_TOKEN_UPDATED = "task_token_updated"


@dataclass(frozen=True)
class TokenUsage:
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    cache_read_tokens: Optional[int] = None
    cache_write_tokens: Optional[int] = None

    @classmethod
    def from_dict(cls, d: Optional[dict]) -> "TokenUsage":
        """Build from a raw signal payload; accepts camelCase or snake_case keys."""
        d = d or {}

        def pick(snake: str, camel: str) -> Any:
            return d.get(snake, d.get(camel))

        return cls(
            input_tokens=pick("input_tokens", "inputTokens") or 0,
            output_tokens=pick("output_tokens", "outputTokens") or 0,
            total_tokens=pick("total_tokens", "totalTokens") or 0,
            cache_read_tokens=pick("cache_read_tokens", "cacheReadTokens"),
            cache_write_tokens=pick("cache_write_tokens", "cacheWriteTokens"),
        )


@dataclass(frozen=True)
class TaskEvent:
    """Fields shared by every lifecycle event."""
    task_id: str
    timestamp_ms: int

    kind: ClassVar[EventKind]

    def to_dict(self) -> dict:
        d = asdict(self)
        d["event"] = self.kind.value
        return d


@dataclass(frozen=True)
class TaskStarted(TaskEvent):
    kind: ClassVar[EventKind] = EventKind.TASK_STARTED
    task_name: str = "Unknown Task"
    mode: Optional[str] = None
    parent_task_id: Optional[str] = None


@dataclass(frozen=True)
class TaskProgress(TaskEvent):
    kind: ClassVar[EventKind] = EventKind.TASK_PROGRESS
    progress: Optional[int] = None
    current_step: Optional[str] = None
    message: Optional[str] = None


@dataclass(frozen=True)
class TaskToolUse(TaskEvent):
    kind: ClassVar[EventKind] = EventKind.TASK_TOOL_USE
    tool_name: str = "unknown"
    status: str = "started"     # "started" | "completed" | "failed"
    input: Optional[Dict[str, Any]] = None
    output: Optional[str] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class TaskCompleted(TaskEvent):
    kind: ClassVar[EventKind] = EventKind.TASK_COMPLETED
    result: Optional[str] = None
    token_usage: TokenUsage = field(default_factory=TokenUsage)
    tool_usage: Dict[str, int] = field(default_factory=dict)
    duration_ms: int = 0


@dataclass(frozen=True)
class TaskFailed(TaskEvent):
    kind: ClassVar[EventKind] = EventKind.TASK_FAILED
    error: str = "Task aborted"
    error_type: Optional[str] = None
    failed_step: Optional[str] = None


@dataclass(frozen=True)
class TaskCancelled(TaskEvent):
    kind: ClassVar[EventKind] = EventKind.TASK_CANCELLED
    reason: Optional[str] = None
    progress: Optional[int] = None


@dataclass(frozen=True)
class TaskPaused(TaskEvent):
    kind: ClassVar[EventKind] = EventKind.TASK_PAUSED
    reason: Optional[str] = None


@dataclass(frozen=True)
class TaskResumed(TaskEvent):
    kind: ClassVar[EventKind] = EventKind.TASK_RESUMED


@dataclass(frozen=True)
class TaskTokenUpdated(TaskEvent):
    kind: ClassVar[EventKind] = EventKind.TASK_TOKEN_UPDATED
    token_usage: TokenUsage = field(default_factory=TokenUsage)
    estimated_cost: Optional[float] = None


ALL_EVENT_TYPES = (
    TaskStarted,
    TaskProgress,
    TaskToolUse,
    TaskCompleted,
    TaskFailed,
    TaskCancelled,
    TaskPaused,
    TaskResumed,
    TaskTokenUpdated,
)
