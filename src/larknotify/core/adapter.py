"""Per-task notification adapter.

Binds to one task's raw signals at a time, converts them into
:mod:`larknotify.core.events` objects, runs them through the filter and
throttle gates, fans them out to local listeners and hands them to the
delivery service.

Signal handlers run synchronously inside the task's emitter and schedule
``notify`` on the running event loop, so attach/detach and signal delivery
must happen on that loop.  Events of one task enter ``notify`` in the order
their signals arrived; anything still queued when the adapter is detached
or re-attached is dropped.
"""
from __future__ import annotations

import asyncio
import dataclasses
import inspect
import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Collection, Dict, List, Optional, Protocol, Set, Union

from larknotify.core.delivery import DeliveryService, get_delivery_service
from larknotify.core.errors import ParseError
from larknotify.core.events import (
    EventKind,
    TaskCancelled,
    TaskCompleted,
    TaskEvent,
    TaskFailed,
    TaskPaused,
    TaskProgress,
    TaskResumed,
    TaskStarted,
    TaskTokenUpdated,
    TaskToolUse,
    TokenUsage,
)
from larknotify.core.models import NotificationData, TaskStatus, now_ms

logger = logging.getLogger("larknotify.adapter")

TaskEventListener = Callable[[TaskEvent], Union[None, Awaitable[None]]]

WILDCARD = "*"
USER_CANCELLED = "user_cancelled"
_EXCERPT_LEN = 200


class TaskSignal(str, Enum):
    COMPLETED = "completed"
    ABORTED = "aborted"
    TOKEN_USAGE_UPDATED = "tokenUsageUpdated"
    TOOL_FAILED = "toolFailed"
    MESSAGE = "message"


class TaskSource(Protocol):
    """The slice of a task the adapter depends on."""
    task_id: str
    parent_task_id: Optional[str]
    display_name: str
    abort_reason: Optional[str]

    def subscribe(self, signal: str, handler: Callable[..., None]) -> None: ...

    def unsubscribe(self, signal: str, handler: Callable[..., None]) -> None: ...


# ── Configuration ────────────────────────────────────────────

@dataclass(frozen=True)
class EventFilter:
    """Empty/None collections mean "everything passes"."""
    event_kinds: Optional[Collection[EventKind]] = None
    task_ids: Optional[Collection[str]] = None
    include_subtasks: Optional[bool] = None


@dataclass(frozen=True)
class ThrottleConfig:
    enabled: bool = True
    interval_ms: int = 2000
    event_kinds: Optional[Collection[EventKind]] = None    # None: throttle every kind


DEFAULT_THROTTLE = ThrottleConfig(
    enabled=True,
    interval_ms=2000,
    event_kinds=frozenset({EventKind.TASK_PROGRESS, EventKind.TASK_TOKEN_UPDATED}),
)


@dataclass(frozen=True)
class AdapterConfig:
    enabled: bool = True
    filter: Optional[EventFilter] = None
    throttle: Optional[ThrottleConfig] = field(default_factory=lambda: DEFAULT_THROTTLE)
    auto_notify: bool = True


# ── Parsing helpers ──────────────────────────────────────────

def parse_tool_call(text: Optional[str]) -> tuple[str, Optional[Dict[str, Any]]]:
    """Decode a ``say == "tool"`` message body into (tool name, params)."""
    if not text:
        return "unknown", None
    try:
        info = json.loads(text)
    except ValueError as exc:
        raise ParseError(f"Malformed tool call: {exc}") from exc
    if not isinstance(info, dict):
        raise ParseError("Tool call is not a JSON object")
    params = info.get("params")
    return info.get("tool") or "unknown", params if isinstance(params, dict) else None


def status_for_event(event: TaskEvent) -> TaskStatus:
    if isinstance(event, TaskStarted):
        return TaskStatus.CREATED
    if isinstance(event, (TaskProgress, TaskToolUse, TaskTokenUpdated, TaskPaused, TaskResumed)):
        return TaskStatus.IN_PROGRESS
    if isinstance(event, TaskCompleted):
        return TaskStatus.COMPLETED
    if isinstance(event, (TaskFailed, TaskCancelled)):
        return TaskStatus.FAILED
    raise TypeError(f"Unhandled event type: {type(event).__name__}")


def to_notification_data(event: TaskEvent, task_name: str) -> NotificationData:
    """Flatten an event into the payload the delivery service sends."""
    base = NotificationData(
        task_id=event.task_id,
        task_name=task_name,
        status=status_for_event(event),
        timestamp_ms=event.timestamp_ms,
    )
    if isinstance(event, TaskProgress):
        return dataclasses.replace(base, progress=event.progress, message=event.message or event.current_step)
    if isinstance(event, TaskCompleted):
        return dataclasses.replace(base, progress=100, message=event.result)
    if isinstance(event, TaskFailed):
        return dataclasses.replace(base, error=event.error, message=f"Error: {event.error}")
    if isinstance(event, TaskCancelled):
        return dataclasses.replace(
            base, progress=event.progress, message=f"Cancelled: {event.reason or 'User cancelled'}"
        )
    if isinstance(event, TaskToolUse):
        return dataclasses.replace(base, message=f"Tool: {event.tool_name} ({event.status})", error=event.error)
    if isinstance(event, TaskPaused):
        return dataclasses.replace(base, message=f"Paused: {event.reason}" if event.reason else "Paused")
    if isinstance(event, TaskResumed):
        return dataclasses.replace(base, message="Resumed")
    if isinstance(event, TaskTokenUpdated):
        return dataclasses.replace(base, message=f"Tokens used: {event.token_usage.total_tokens}")
    if isinstance(event, TaskStarted):
        return base
    raise TypeError(f"Unhandled event type: {type(event).__name__}")


# ── Adapter ──────────────────────────────────────────────────

class TaskNotificationAdapter:
    """Translate one task's raw signals into notifications."""

    def __init__(
        self,
        config: Optional[AdapterConfig] = None,
        delivery: Optional[DeliveryService] = None,
    ) -> None:
        self._config = config or AdapterConfig()
        self._delivery = delivery or get_delivery_service()
        self._task: Optional[TaskSource] = None
        self._task_name = "Unknown Task"
        self._started_at_ms = 0
        self._listeners: Dict[str, List[TaskEventListener]] = {}
        self._handlers: Dict[str, Callable[..., None]] = {}
        self._last_accepted: Dict[EventKind, float] = {}
        self._pending: Dict[EventKind, TaskEvent] = {}
        self._timers: Dict[EventKind, asyncio.TimerHandle] = {}
        self._inflight: Set[asyncio.Task] = set()
        # Bumped on every attach/detach; work scheduled under an older value is dropped.
        self._generation = 0

    # ── Binding ──────────────────────────────────────────

    def attach(self, task: TaskSource) -> None:
        """Bind to ``task``; any previous binding is released first."""
        if self._task is not None:
            self.detach()

        self._task = task
        self._generation += 1
        self._task_name = task.display_name or "Unknown Task"
        self._started_at_ms = now_ms()
        self._bind(task)
        logger.debug("Adapter attached to task %s", task.task_id)

        self._dispatch(TaskStarted(
            task_id=task.task_id,
            timestamp_ms=now_ms(),
            task_name=self._task_name,
            mode=getattr(task, "mode", None),
            parent_task_id=task.parent_task_id,
        ))

    def detach(self) -> None:
        """Release the task binding. No-op when not attached.

        Deliveries already in flight run to completion.
        """
        task = self._task
        if task is None:
            return

        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()

        for signal, handler in self._handlers.items():
            task.unsubscribe(signal, handler)
        self._handlers.clear()

        self._task = None
        self._generation += 1
        self._started_at_ms = 0
        self._last_accepted.clear()
        self._pending.clear()
        logger.debug("Adapter detached from task %s", task.task_id)

    def _bind(self, task: TaskSource) -> None:
        self._handlers = {
            TaskSignal.COMPLETED.value: self._on_completed,
            TaskSignal.ABORTED.value: self._on_aborted,
            TaskSignal.TOKEN_USAGE_UPDATED.value: self._on_token_usage_updated,
            TaskSignal.TOOL_FAILED.value: self._on_tool_failed,
            TaskSignal.MESSAGE.value: self._on_message,
        }
        for signal, handler in self._handlers.items():
            task.subscribe(signal, handler)

    @property
    def is_attached(self) -> bool:
        return self._task is not None

    def get_task_id(self) -> Optional[str]:
        return self._task.task_id if self._task else None

    @property
    def config(self) -> AdapterConfig:
        return self._config

    def update_config(self, **changes: Any) -> AdapterConfig:
        """Shallow-merge ``changes`` over the current config."""
        self._config = dataclasses.replace(self._config, **changes)
        return self._config

    # ── Signal handlers ──────────────────────────────────

    def _on_completed(self, task_id: str, token_usage: Optional[dict] = None, tool_usage: Optional[dict] = None) -> None:
        self._dispatch(TaskCompleted(
            task_id=task_id,
            timestamp_ms=now_ms(),
            token_usage=TokenUsage.from_dict(token_usage),
            tool_usage=dict(tool_usage or {}),
            duration_ms=max(0, now_ms() - self._started_at_ms),
        ))

    def _on_aborted(self, *_: Any) -> None:
        task = self._task
        if task is None:
            return
        reason = getattr(task, "abort_reason", None)
        if reason == USER_CANCELLED:
            self._dispatch(TaskCancelled(task_id=task.task_id, timestamp_ms=now_ms(), reason="User cancelled"))
        else:
            self._dispatch(TaskFailed(
                task_id=task.task_id,
                timestamp_ms=now_ms(),
                error=reason or "Task aborted",
                error_type="abort",
            ))

    def _on_token_usage_updated(self, task_id: str, token_usage: Optional[dict] = None, _tool_usage: Any = None) -> None:
        self._dispatch(TaskTokenUpdated(
            task_id=task_id,
            timestamp_ms=now_ms(),
            token_usage=TokenUsage.from_dict(token_usage),
        ))

    def _on_tool_failed(self, task_id: str, tool: str, error: str) -> None:
        self._dispatch(TaskToolUse(
            task_id=task_id,
            timestamp_ms=now_ms(),
            tool_name=tool,
            status="failed",
            error=error,
        ))

    def _on_message(self, payload: dict) -> None:
        task = self._task
        if task is None or payload.get("action") != "created":
            return
        message = payload.get("message") or {}
        say = message.get("say")

        if say == "api_req_started":
            self._dispatch(TaskProgress(
                task_id=task.task_id,
                timestamp_ms=now_ms(),
                current_step="Processing API request",
                message="Sending request to AI model...",
            ))
        elif say == "tool":
            try:
                tool_name, params = parse_tool_call(message.get("text"))
            except ParseError:
                return
            self._dispatch(TaskToolUse(
                task_id=task.task_id,
                timestamp_ms=now_ms(),
                tool_name=tool_name,
                status="started",
                input=params,
            ))
        elif say == "completion_result":
            text = message.get("text")
            self._dispatch(TaskProgress(
                task_id=task.task_id,
                timestamp_ms=now_ms(),
                progress=100,
                current_step="Task completed",
                message=text[:_EXCERPT_LEN] if text else None,
            ))

    def _dispatch(self, event: TaskEvent) -> None:
        self._track(asyncio.get_running_loop().create_task(self._notify_bound(event, self._generation)))

    async def _notify_bound(self, event: TaskEvent, generation: int) -> None:
        if generation != self._generation:
            logger.debug("Dropping %s for task %s: adapter rebound", event.kind.value, event.task_id)
            return
        await self.notify(event)

    def _track(self, job: asyncio.Task) -> None:
        self._inflight.add(job)
        job.add_done_callback(self._inflight.discard)

    async def drain(self) -> None:
        """Wait for every dispatch scheduled so far to finish."""
        while self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    # ── Gates ────────────────────────────────────────────

    async def notify(self, event: TaskEvent) -> None:
        """Entry point for synthesized and manually injected events."""
        if not self._config.enabled:
            return
        if not self._passes_filter(event):
            logger.debug("Event %s for task %s filtered out", event.kind.value, event.task_id)
            return
        if self._should_throttle(event.kind):
            # Only the latest event of a throttled burst survives.
            self._pending[event.kind] = event
            self._schedule_flush(event.kind)
            return
        await self._accept(event)

    def _passes_filter(self, event: TaskEvent) -> bool:
        f = self._config.filter
        if f is None:
            return True
        if f.event_kinds and event.kind not in f.event_kinds:
            return False
        if f.task_ids and event.task_id not in f.task_ids:
            return False
        if f.include_subtasks is False and self._parent_of(event):
            return False
        return True

    def _parent_of(self, event: TaskEvent) -> Optional[str]:
        if isinstance(event, TaskStarted):
            return event.parent_task_id
        task = self._task
        if task is not None and task.task_id == event.task_id:
            return task.parent_task_id
        return None

    def _should_throttle(self, kind: EventKind) -> bool:
        throttle = self._config.throttle
        if throttle is None or not throttle.enabled:
            return False
        if throttle.event_kinds is not None and kind not in throttle.event_kinds:
            return False
        if kind in self._timers:
            return True
        last = self._last_accepted.get(kind)
        if last is None:
            return False
        return self._clock_ms() - last < throttle.interval_ms

    def _schedule_flush(self, kind: EventKind) -> None:
        throttle = self._config.throttle
        if kind in self._timers or throttle is None:
            return
        loop = asyncio.get_running_loop()
        self._timers[kind] = loop.call_later(throttle.interval_ms / 1000, self._flush_pending, kind)

    def _flush_pending(self, kind: EventKind) -> None:
        self._timers.pop(kind, None)
        event = self._pending.pop(kind, None)
        if event is not None:
            self._track(asyncio.get_running_loop().create_task(self._accept_bound(event, self._generation)))

    async def _accept_bound(self, event: TaskEvent, generation: int) -> None:
        if generation == self._generation:
            await self._accept(event)

    @staticmethod
    def _clock_ms() -> float:
        return asyncio.get_running_loop().time() * 1000

    # ── Fan-out and delivery ─────────────────────────────

    async def _accept(self, event: TaskEvent) -> None:
        self._last_accepted[event.kind] = self._clock_ms()
        await self._emit_to_listeners(event)
        if self._config.auto_notify:
            await self._deliver(event)

    async def _emit_to_listeners(self, event: TaskEvent) -> None:
        targets = list(self._listeners.get(event.kind.value, [])) + list(self._listeners.get(WILDCARD, []))
        for listener in targets:
            try:
                result = listener(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:  # noqa: BLE001
                logger.exception("Listener error for %s on task %s", event.kind.value, event.task_id)

    async def _deliver(self, event: TaskEvent) -> None:
        if not self._delivery.is_enabled():
            return
        try:
            await self._delivery.send(to_notification_data(event, self._task_name))
        except Exception:  # noqa: BLE001
            logger.exception("Failed to send notification for task %s", event.task_id)

    # ── Listeners ────────────────────────────────────────

    def on(self, kind: Union[EventKind, str], listener: TaskEventListener) -> None:
        """Subscribe to one event kind, or to every kind with ``"*"``."""
        listeners = self._listeners.setdefault(_listener_key(kind), [])
        if listener not in listeners:
            listeners.append(listener)

    def off(self, kind: Union[EventKind, str], listener: TaskEventListener) -> None:
        listeners = self._listeners.get(_listener_key(kind), [])
        if listener in listeners:
            listeners.remove(listener)

    def remove_all_listeners(self) -> None:
        self._listeners.clear()


def _listener_key(kind: Union[EventKind, str]) -> str:
    return kind.value if isinstance(kind, EventKind) else str(kind)
