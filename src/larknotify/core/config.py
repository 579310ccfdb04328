from __future__ import annotations

import os
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional


class Transport(str, Enum):
    BRIDGE = "bridge"
    DIRECT_BOT = "direct_bot"
    WEBHOOK = "webhook"

    @classmethod
    def parse(cls, value: str | None) -> "Transport":
        try:
            return cls((value or cls.BRIDGE.value).strip().lower())
        except ValueError:
            return cls.BRIDGE


@dataclass(frozen=True)
class DirectBotCredentials:
    app_id: str = ""
    app_secret: str = ""
    chat_id: str = ""

    @property
    def complete(self) -> bool:
        return bool(self.app_id and self.app_secret and self.chat_id)

    def missing(self) -> list[str]:
        return [name for name in ("app_id", "app_secret", "chat_id") if not getattr(self, name)]


@dataclass(frozen=True)
class NotificationConfig:
    """Immutable transport snapshot; replaced wholesale on every change."""
    enabled: bool = False
    transport: Transport = Transport.BRIDGE
    webhook_url: Optional[str] = None
    direct_bot: Optional[DirectBotCredentials] = None
    bridge_server_name: Optional[str] = "task-manager"
    retry_count: int = 3
    retry_delay_ms: int = 1000


DEFAULT_EVENTS = "task_started,task_completed,task_failed"


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes"}


@dataclass
class Settings:
    log_level: str
    log_dir: str
    enabled: bool
    transport: Transport
    webhook_url: str | None
    lark_app_id: str | None
    lark_app_secret: str | None
    lark_chat_id: str | None
    bridge_server_name: str
    enabled_events: list[str]
    retry_count: int
    retry_delay_ms: int
    verification_token: str | None
    host: str
    port: int
    stale_max_age_hours: float
    cleanup_interval_seconds: int
    clear_logs_on_launch: bool

    @staticmethod
    def from_env() -> "Settings":
        default_log_dir = str(Path(os.path.expanduser("~")) / ".larknotify" / ".logs")
        events = os.getenv("LARKNOTIFY_EVENTS", DEFAULT_EVENTS)
        return Settings(
            log_level=os.getenv("LARKNOTIFY_LOG_LEVEL", "info"),
            log_dir=os.getenv("LARKNOTIFY_LOG_DIR") or default_log_dir,
            enabled=_flag("LARKNOTIFY_ENABLED", "false"),
            transport=Transport.parse(os.getenv("LARKNOTIFY_TRANSPORT")),
            webhook_url=os.getenv("LARK_WEBHOOK_URL") or None,
            lark_app_id=os.getenv("LARK_APP_ID") or None,
            lark_app_secret=os.getenv("LARK_APP_SECRET") or None,
            lark_chat_id=os.getenv("LARK_CHAT_ID") or None,
            bridge_server_name=os.getenv("LARKNOTIFY_BRIDGE_SERVER", "task-manager"),
            enabled_events=[v.strip() for v in events.split(",") if v.strip()],
            retry_count=max(1, int(os.getenv("LARKNOTIFY_RETRY_COUNT", "3"))),
            retry_delay_ms=max(0, int(os.getenv("LARKNOTIFY_RETRY_DELAY_MS", "1000"))),
            verification_token=os.getenv("LARK_VERIFICATION_TOKEN") or None,
            host=os.getenv("LARKNOTIFY_HOST", "127.0.0.1"),
            port=int(os.getenv("LARKNOTIFY_PORT", "18791")),
            stale_max_age_hours=float(os.getenv("LARKNOTIFY_STALE_MAX_AGE_HOURS", "24")),
            cleanup_interval_seconds=int(os.getenv("LARKNOTIFY_CLEANUP_INTERVAL_SECONDS", "3600")),
            clear_logs_on_launch=_flag("LARKNOTIFY_CLEAR_LOGS_ON_LAUNCH", "false"),
        )

    def notification_config(self) -> NotificationConfig:
        """Project the transport-related settings into a snapshot."""
        direct_bot = None
        if self.lark_app_id or self.lark_app_secret or self.lark_chat_id:
            direct_bot = DirectBotCredentials(
                app_id=self.lark_app_id or "",
                app_secret=self.lark_app_secret or "",
                chat_id=self.lark_chat_id or "",
            )
        return NotificationConfig(
            enabled=self.enabled,
            transport=self.transport,
            webhook_url=self.webhook_url,
            direct_bot=direct_bot,
            bridge_server_name=self.bridge_server_name,
            retry_count=self.retry_count,
            retry_delay_ms=self.retry_delay_ms,
        )
