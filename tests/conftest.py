from __future__ import annotations

import os
from typing import Any, Callable, Dict, List, Optional

import pytest

from larknotify.core.config_manager import ConfigManager
from larknotify.core.delivery import DeliveryService
from larknotify.core.registry import TaskRegistry

_ENV_PREFIXES = ("LARK_", "LARKNOTIFY_")


class FakeTask:
    """Minimal task source: records subscriptions and lets tests fire signals."""

    def __init__(
        self,
        task_id: str = "task-1",
        display_name: str = "Refactor parser",
        parent_task_id: Optional[str] = None,
        mode: str = "code",
    ) -> None:
        self.task_id = task_id
        self.display_name = display_name
        self.parent_task_id = parent_task_id
        self.abort_reason: Optional[str] = None
        self.mode = mode
        self._handlers: Dict[str, List[Callable[..., None]]] = {}

    def subscribe(self, signal: str, handler: Callable[..., None]) -> None:
        self._handlers.setdefault(signal, []).append(handler)

    def unsubscribe(self, signal: str, handler: Callable[..., None]) -> None:
        handlers = self._handlers.get(signal, [])
        if handler in handlers:
            handlers.remove(handler)

    def emit(self, signal: str, *args: Any) -> None:
        for handler in list(self._handlers.get(signal, [])):
            handler(*args)

    def handler_count(self) -> int:
        return sum(len(h) for h in self._handlers.values())


@pytest.fixture(autouse=True)
def _isolate(monkeypatch):
    for key in list(os.environ):
        if key.startswith(_ENV_PREFIXES):
            monkeypatch.delenv(key, raising=False)
    yield
    TaskRegistry.reset_instance()
    DeliveryService.reset_instance()
    ConfigManager.destroy_instance()


@pytest.fixture
def fake_task() -> FakeTask:
    return FakeTask()
