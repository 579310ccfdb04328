"""Notification payloads, delivery results and delivery events."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
import time
from typing import Any, Optional, Union


def now_ms() -> int:
    return int(time.time() * 1000)


class TaskStatus(str, Enum):
    CREATED = "created"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class CodeStats:
    files_created: int = 0
    files_modified: int = 0
    files_deleted: int = 0
    lines_added: int = 0
    lines_removed: int = 0
    tokens_used: int = 0
    tokens_total: int = 0


@dataclass(frozen=True)
class NotificationData:
    """The flat payload handed to the delivery service."""
    task_id: str
    task_name: str
    status: TaskStatus
    timestamp_ms: int = 0
    progress: Optional[int] = None
    message: Optional[str] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class EnhancedNotificationData(NotificationData):
    description: Optional[str] = None
    code_stats: Optional[CodeStats] = None
    user_id: Optional[str] = None
    message_id: Optional[str] = None


@dataclass(frozen=True)
class NotificationResult:
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None


CARD_ACTIONS = ("pause", "resume", "modify", "logs", "cancel", "detail", "retry")


@dataclass(frozen=True)
class CardAction:
    """A button press on a delivered card, reported back by the platform."""
    action: str
    task_id: str
    user_id: Optional[str] = None
    open_id: Optional[str] = None
    message_id: Optional[str] = None


class DeliveryEventType(str, Enum):
    SENT = "sent"
    FAILED = "failed"
    RETRY = "retry"
    CARD_ACTION = "card_action"


@dataclass(frozen=True)
class DeliveryEvent:
    type: DeliveryEventType
    data: Union[NotificationData, CardAction]
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    error: Optional[str] = None


@dataclass(frozen=True)
class TaskLogEntry:
    time_iso: str
    level: str          # "debug" | "info" | "warn" | "error"
    message: str
    metadata: Optional[dict[str, Any]] = None
