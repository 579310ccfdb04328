"""Notification configuration provider with change notifications.

Reads :class:`~larknotify.core.config.Settings` from the environment, layers
in-memory overrides on top, and hands out immutable
:class:`~larknotify.core.config.NotificationConfig` snapshots.  ``reload()``
re-reads the environment (and the ``.env`` file, if any) and notifies every
subscriber, which is how a running process picks up edited settings.
"""
from __future__ import annotations

import dataclasses
import logging
from typing import Callable, Dict, List, Optional, Protocol
from urllib.parse import urlparse

from dotenv import load_dotenv

from larknotify.core.config import DirectBotCredentials, NotificationConfig, Settings, Transport
from larknotify.core.events import EventKind

logger = logging.getLogger("larknotify.config")

# Names accepted in LARKNOTIFY_EVENTS; anything else is dropped.
EVENT_NAME_MAP: Dict[str, EventKind] = {
    "task_started": EventKind.TASK_STARTED,
    "task_progress": EventKind.TASK_PROGRESS,
    "task_completed": EventKind.TASK_COMPLETED,
    "task_failed": EventKind.TASK_FAILED,
    "task_cancelled": EventKind.TASK_CANCELLED,
}

ConfigChangeListener = Callable[[NotificationConfig], None]


class ConfigProvider(Protocol):
    """What the registry needs from a configuration store."""

    def get_snapshot(self) -> NotificationConfig: ...

    def get_enabled_event_kinds(self) -> List[EventKind]: ...

    def on_change(self, callback: ConfigChangeListener) -> Callable[[], None]: ...


def _is_valid_url(url: str) -> bool:
    parsed = urlparse(url)
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


class ConfigManager:
    """Environment-backed :class:`ConfigProvider`."""

    _instance: Optional["ConfigManager"] = None

    def __init__(self, settings_loader: Callable[[], Settings] = Settings.from_env) -> None:
        self._loader = settings_loader
        self._settings: Optional[Settings] = None
        self._cached: Optional[NotificationConfig] = None
        self._overrides: Dict[str, object] = {}
        self._events_override: Optional[List[str]] = None
        self._listeners: List[ConfigChangeListener] = []

    @classmethod
    def get_instance(cls) -> "ConfigManager":
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @classmethod
    def destroy_instance(cls) -> None:
        if cls._instance is not None:
            cls._instance.dispose()
            cls._instance = None

    # ── Reading ──────────────────────────────────────────

    @property
    def settings(self) -> Settings:
        if self._settings is None:
            self._settings = self._loader()
        return self._settings

    def get_snapshot(self) -> NotificationConfig:
        if self._cached is None:
            base = self.settings.notification_config()
            self._cached = dataclasses.replace(base, **self._overrides) if self._overrides else base
        return self._cached

    def get_enabled_event_kinds(self) -> List[EventKind]:
        names = self._events_override if self._events_override is not None else self.settings.enabled_events
        return [EVENT_NAME_MAP[name] for name in names if name in EVENT_NAME_MAP]

    def is_enabled(self) -> bool:
        return self.get_snapshot().enabled

    def is_event_enabled(self, kind: EventKind) -> bool:
        if not self.is_enabled():
            return False
        return kind in self.get_enabled_event_kinds()

    def validate(self) -> tuple[bool, List[str]]:
        """Check that the selected transport has what it needs.

        A disabled configuration is always valid.
        """
        config = self.get_snapshot()
        errors: List[str] = []
        if not config.enabled:
            return True, errors

        if config.transport == Transport.WEBHOOK and not config.webhook_url:
            errors.append("Webhook URL is required for webhook transport")
        if config.transport == Transport.DIRECT_BOT:
            creds = config.direct_bot or DirectBotCredentials()
            if not creds.app_id:
                errors.append("App ID is required for direct bot transport")
            if not creds.app_secret:
                errors.append("App Secret is required for direct bot transport")
            if not creds.chat_id:
                errors.append("Chat ID is required for direct bot transport")
        if config.transport == Transport.BRIDGE and not config.bridge_server_name:
            errors.append("Bridge server name is required for bridge transport")
        if config.webhook_url and not _is_valid_url(config.webhook_url):
            errors.append("Invalid webhook URL format")

        return not errors, errors

    # ── Writing ──────────────────────────────────────────

    def update(self, **changes: object) -> NotificationConfig:
        """Apply in-memory overrides and notify subscribers."""
        known = {f.name for f in dataclasses.fields(NotificationConfig)}
        unknown = set(changes) - known
        if unknown:
            raise ValueError(f"Unknown notification setting(s): {', '.join(sorted(unknown))}")
        self._overrides.update(changes)
        self._invalidate()
        self._notify_listeners()
        return self.get_snapshot()

    def update_enabled_events(self, kinds: List[EventKind]) -> None:
        reverse = {kind: name for name, kind in EVENT_NAME_MAP.items()}
        self._events_override = [reverse[k] for k in kinds if k in reverse]
        self._notify_listeners()

    def reload(self, dotenv_path: Optional[str] = None) -> NotificationConfig:
        """Re-read the environment and notify subscribers."""
        load_dotenv(dotenv_path, override=True)
        self._settings = None
        self._invalidate()
        logger.info("Configuration reloaded")
        self._notify_listeners()
        return self.get_snapshot()

    # ── Change subscription ──────────────────────────────

    def on_change(self, callback: ConfigChangeListener) -> Callable[[], None]:
        """Subscribe to changes. Returns a function that unsubscribes."""
        self._listeners.append(callback)

        def unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    def _invalidate(self) -> None:
        self._cached = None

    def _notify_listeners(self) -> None:
        config = self.get_snapshot()
        for listener in list(self._listeners):
            try:
                listener(config)
            except Exception:  # noqa: BLE001
                logger.exception("Error in config change listener")

    def dispose(self) -> None:
        self._listeners.clear()
        self._invalidate()
        self._settings = None


def get_config_manager() -> ConfigManager:
    return ConfigManager.get_instance()
