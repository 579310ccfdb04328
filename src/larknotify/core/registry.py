"""Process-wide registry of task adapters.

Keyed by task_id, the registry owns every adapter's lifecycle, keeps the
master enable flag in step with the configuration provider, and
re-broadcasts each adapter's accepted events to global listeners.
"""
from __future__ import annotations

import dataclasses
import inspect
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from larknotify.core.adapter import WILDCARD, AdapterConfig, TaskNotificationAdapter, TaskSource
from larknotify.core.config import NotificationConfig
from larknotify.core.config_manager import ConfigProvider, get_config_manager
from larknotify.core.delivery import DeliveryService, get_delivery_service
from larknotify.core.events import EventKind, TaskEvent
from larknotify.core.models import now_ms

logger = logging.getLogger("larknotify.registry")

GlobalEventListener = Callable[[str, TaskEvent], Union[None, Awaitable[None]]]

DEFAULT_MAX_AGE_MS = 24 * 60 * 60 * 1000


@dataclass
class AdapterRegistration:
    task_id: str
    adapter: TaskNotificationAdapter
    created_at_ms: int


class TaskRegistry:
    _instance: Optional["TaskRegistry"] = None

    def __init__(
        self,
        config_manager: Optional[ConfigProvider] = None,
        delivery: Optional[DeliveryService] = None,
        defaults: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Track adapters for tasks and keep them in step with ``config_manager``.

        Construction pushes the provider's snapshot into ``delivery`` through
        ``apply_config``, replacing anything set earlier with ``configure()``.
        Later provider changes are pushed the same way.
        """
        self._config_manager = config_manager or get_config_manager()
        self._delivery = delivery or get_delivery_service()
        self._defaults: Dict[str, Any] = dict(defaults or {})
        self._registrations: Dict[str, AdapterRegistration] = {}
        self._global_listeners: Dict[str, List[GlobalEventListener]] = {}
        self._enabled = True
        self._enabled_kinds: List[EventKind] = []
        self._unsubscribe: Optional[Callable[[], None]] = None

        try:
            self._sync_from_config(self._config_manager.get_snapshot())
        except Exception:  # noqa: BLE001
            logger.exception("Failed to sync from configuration provider")
        self._unsubscribe = self._config_manager.on_change(self._on_config_change)

    @classmethod
    def get_instance(cls) -> "TaskRegistry":
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        if cls._instance is not None:
            cls._instance.dispose()
            cls._instance = None

    # ── Configuration sync ───────────────────────────────

    def _sync_from_config(self, snapshot: NotificationConfig) -> None:
        self._enabled = snapshot.enabled
        self._enabled_kinds = self._config_manager.get_enabled_event_kinds()
        self._delivery.apply_config(snapshot)

    def _on_config_change(self, snapshot: NotificationConfig) -> None:
        self._sync_from_config(snapshot)
        for registration in self._registrations.values():
            registration.adapter.update_config(enabled=self._enabled)
        logger.info(
            "Configuration changed: enabled=%s, %d adapter(s) updated",
            self._enabled,
            len(self._registrations),
        )

    @property
    def enabled(self) -> bool:
        return self._enabled

    def set_enabled(self, enabled: bool) -> None:
        self._enabled = enabled
        for registration in self._registrations.values():
            registration.adapter.update_config(enabled=enabled)

    def is_event_kind_enabled(self, kind: EventKind) -> bool:
        return self._enabled and kind in self._enabled_kinds

    def update_default_config(self, **changes: Any) -> None:
        self._defaults.update(changes)

    # ── Registration ─────────────────────────────────────

    def register_task(self, task: TaskSource, **overrides: Any) -> TaskNotificationAdapter:
        """Create, wire and attach an adapter for ``task``.

        A task_id that is already registered is unregistered first.
        """
        task_id = task.task_id
        if task_id in self._registrations:
            self.unregister_task(task_id)

        changes = {**self._defaults, **overrides}
        changes["enabled"] = self._enabled and overrides.get("enabled") is not False
        adapter = TaskNotificationAdapter(dataclasses.replace(AdapterConfig(), **changes), delivery=self._delivery)

        async def forward(event: TaskEvent) -> None:
            await self._forward_to_global(task_id, event)

        adapter.on(WILDCARD, forward)
        adapter.attach(task)
        self._registrations[task_id] = AdapterRegistration(task_id=task_id, adapter=adapter, created_at_ms=now_ms())
        logger.info("Registered task %s", task_id)
        return adapter

    def unregister_task(self, task_id: str) -> None:
        registration = self._registrations.pop(task_id, None)
        if registration is None:
            return
        registration.adapter.detach()
        registration.adapter.remove_all_listeners()
        logger.info("Unregistered task %s", task_id)

    def get_adapter(self, task_id: str) -> Optional[TaskNotificationAdapter]:
        registration = self._registrations.get(task_id)
        return registration.adapter if registration else None

    def is_registered(self, task_id: str) -> bool:
        return task_id in self._registrations

    def registered_task_ids(self) -> List[str]:
        return list(self._registrations)

    def __len__(self) -> int:
        return len(self._registrations)

    def detach_all(self) -> None:
        for task_id in list(self._registrations):
            self.unregister_task(task_id)

    def cleanup_stale_adapters(self, max_age_ms: int = DEFAULT_MAX_AGE_MS) -> int:
        """Unregister detached adapters older than ``max_age_ms``. Returns the count removed."""
        now = now_ms()
        stale = [
            task_id
            for task_id, registration in self._registrations.items()
            if not registration.adapter.is_attached and now - registration.created_at_ms > max_age_ms
        ]
        for task_id in stale:
            self.unregister_task(task_id)
        if stale:
            logger.info("Cleaned up %d stale adapter(s)", len(stale))
        return len(stale)

    def get_stats(self) -> Dict[str, Any]:
        now = now_ms()
        ages = [now - r.created_at_ms for r in self._registrations.values()]
        return {
            "total_tasks": len(self._registrations),
            "active_tasks": sum(1 for r in self._registrations.values() if r.adapter.is_attached),
            "oldest_task_age_ms": max(ages) if ages else None,
        }

    async def emit_task_event(self, task_id: str, event: TaskEvent) -> None:
        """Push a manual event through the task's adapter, if registered."""
        adapter = self.get_adapter(task_id)
        if adapter is not None:
            await adapter.notify(event)

    # ── Global listeners ─────────────────────────────────

    def on_global(self, kind: Union[EventKind, str], listener: GlobalEventListener) -> None:
        listeners = self._global_listeners.setdefault(_key(kind), [])
        if listener not in listeners:
            listeners.append(listener)

    def off_global(self, kind: Union[EventKind, str], listener: GlobalEventListener) -> None:
        listeners = self._global_listeners.get(_key(kind), [])
        if listener in listeners:
            listeners.remove(listener)

    def remove_all_global_listeners(self) -> None:
        self._global_listeners.clear()

    async def _forward_to_global(self, task_id: str, event: TaskEvent) -> None:
        targets = list(self._global_listeners.get(event.kind.value, [])) + list(
            self._global_listeners.get(WILDCARD, [])
        )
        for listener in targets:
            try:
                result = listener(task_id, event)
                if inspect.isawaitable(result):
                    await result
            except Exception:  # noqa: BLE001
                logger.exception("Global listener error for %s on task %s", event.kind.value, task_id)

    def dispose(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self.detach_all()
        self.remove_all_global_listeners()


def _key(kind: Union[EventKind, str]) -> str:
    return kind.value if isinstance(kind, EventKind) else str(kind)


def get_task_registry() -> TaskRegistry:
    return TaskRegistry.get_instance()
