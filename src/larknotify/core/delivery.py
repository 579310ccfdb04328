"""Notification delivery: transport selection, retries and delivery events.

``DeliveryService.send`` is the single recovery point for transport
failures.  Each attempt picks a transport (bridge, direct bot or webhook),
and failures are retried with linear backoff up to ``retry_count`` times.
The caller always gets a :class:`NotificationResult`; transport errors are
never raised out of ``send``.
"""
from __future__ import annotations

import asyncio
import dataclasses
import logging
from typing import Any, Callable, Dict, List, Optional

from larknotify.core.config import DirectBotCredentials, NotificationConfig, Transport
from larknotify.core.errors import ConfigurationError
from larknotify.core.logging_config import log_delivery
from larknotify.core.models import (
    CardAction,
    DeliveryEvent,
    DeliveryEventType,
    EnhancedNotificationData,
    NotificationData,
    NotificationResult,
    TaskLogEntry,
    TaskStatus,
    now_ms,
)
from larknotify.core.task_log import TaskLog
from larknotify.integrations.bridge import BridgeCaller, send_via_bridge
from larknotify.integrations.lark import LarkBotClient, LarkWebhookClient
from larknotify.integrations.lark_cards import build_card

logger = logging.getLogger("larknotify.delivery")

DeliveryListener = Callable[[DeliveryEvent], Any]

# Listeners registered under this key receive every delivery event.
ALL_EVENTS = "notification"

_DEFAULT_BRIDGE_SERVER = "task-manager"

# Transport priority; the first usable one carries each attempt.
_TRANSPORT_PRIORITY = (Transport.BRIDGE, Transport.DIRECT_BOT, Transport.WEBHOOK)


class DeliveryService:
    _instance: Optional["DeliveryService"] = None

    def __init__(self, config: Optional[NotificationConfig] = None) -> None:
        self._config = config or NotificationConfig()
        self._bridge_caller: Optional[BridgeCaller] = None
        self._bot_client: Optional[LarkBotClient] = None
        self._listeners: Dict[str, List[DeliveryListener]] = {}
        self._task_log = TaskLog()
        self._last_transport: Optional[str] = None

    @classmethod
    def get_instance(cls, config: Optional[NotificationConfig] = None) -> "DeliveryService":
        if cls._instance is None:
            cls._instance = cls(config)
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        if cls._instance is not None:
            cls._instance.dispose()
            cls._instance = None

    # ── Configuration ────────────────────────────────────

    def configure(self, **changes: Any) -> NotificationConfig:
        """Merge changes into the current config; the next send sees them."""
        config = dataclasses.replace(self._config, **changes)
        if config.retry_count < 1:
            raise ValueError("retry_count must be at least 1")
        if config.retry_delay_ms < 0:
            raise ValueError("retry_delay_ms must not be negative")
        self._config = config
        logger.info(
            "Delivery configured: enabled=%s transport=%s",
            config.enabled,
            config.transport.value,
        )
        return config

    def apply_config(self, config: NotificationConfig) -> None:
        """Replace the whole config snapshot."""
        self._config = config

    def get_config(self) -> NotificationConfig:
        return self._config

    def is_enabled(self) -> bool:
        return self._config.enabled

    def set_bridge_caller(self, caller: Optional[BridgeCaller]) -> None:
        self._bridge_caller = caller
        logger.info("Bridge caller %s", "set" if caller else "cleared")

    @property
    def bot_client(self) -> Optional[LarkBotClient]:
        return self._bot_client

    # ── Status helpers ───────────────────────────────────

    async def notify_task_created(self, data: NotificationData) -> NotificationResult:
        return await self.send(self._with_status(data, TaskStatus.CREATED))

    async def notify_task_progress(self, data: NotificationData) -> NotificationResult:
        return await self.send(self._with_status(data, TaskStatus.IN_PROGRESS))

    async def notify_task_completed(self, data: NotificationData) -> NotificationResult:
        return await self.send(self._with_status(data, TaskStatus.COMPLETED))

    async def notify_task_failed(self, data: NotificationData) -> NotificationResult:
        return await self.send(self._with_status(data, TaskStatus.FAILED))

    async def notify_task_enhanced(self, data: EnhancedNotificationData) -> NotificationResult:
        return await self.send(data)

    @staticmethod
    def _with_status(data: NotificationData, status: TaskStatus) -> NotificationData:
        return dataclasses.replace(data, status=status, timestamp_ms=data.timestamp_ms or now_ms())

    # ── Sending ──────────────────────────────────────────

    async def send(self, data: NotificationData) -> NotificationResult:
        config = self._config
        if not config.enabled:
            logger.debug("Notification skipped for task %s: delivery disabled", data.task_id)
            return NotificationResult(success=True)

        status = data.status.value if isinstance(data.status, TaskStatus) else str(data.status)
        last_error: Optional[str] = None
        attempts = 0

        for attempt in range(1, config.retry_count + 1):
            attempts = attempt
            try:
                result = await self.attempt_once(data)
            except ConfigurationError as exc:
                last_error = str(exc)
                logger.error("Notification for task %s not sent: %s", data.task_id, last_error)
                break
            except Exception as exc:  # noqa: BLE001
                last_error = str(exc) or exc.__class__.__name__
                logger.warning(
                    "Notification attempt %d/%d failed for task %s: %s",
                    attempt,
                    config.retry_count,
                    data.task_id,
                    last_error,
                )
                self._task_log.add(data.task_id, "warn", f"Attempt {attempt} failed", {"error": last_error})
                if attempt < config.retry_count:
                    self._emit(DeliveryEventType.RETRY, data, last_error)
                    await asyncio.sleep(config.retry_delay_ms * attempt / 1000)
                continue

            self._emit(DeliveryEventType.SENT, data)
            logger.info("Notification sent for task %s (status=%s, attempt=%d)", data.task_id, status, attempt)
            self._task_log.add(
                data.task_id,
                "info",
                f"Notification sent ({status})",
                {"attempt": attempt, "message_id": result.message_id},
            )
            log_delivery(
                data.task_id,
                status,
                True,
                attempt,
                transport=self._last_transport,
                message_id=result.message_id,
            )
            return result

        self._emit(DeliveryEventType.FAILED, data, last_error)
        logger.error("All notification attempts failed for task %s: %s", data.task_id, last_error)
        self._task_log.add(data.task_id, "error", "All notification attempts failed", {"error": last_error})
        log_delivery(data.task_id, status, False, attempts, error=last_error)
        return NotificationResult(success=False, error=last_error)

    async def attempt_once(self, data: NotificationData) -> NotificationResult:
        """Make a single delivery attempt. Raises on failure."""
        transport = self.select_transport()
        self._last_transport = transport.value
        config = self._config

        if transport == Transport.BRIDGE:
            server = config.bridge_server_name or _DEFAULT_BRIDGE_SERVER
            message_id = await send_via_bridge(self._require_bridge(), server, data)
        elif transport == Transport.DIRECT_BOT:
            message_id = await self._bot(self._require_credentials()).send_card(build_card(data))
        else:
            message_id = await LarkWebhookClient(self._require_webhook_url()).send_card(build_card(data))

        return NotificationResult(success=True, message_id=message_id)

    def select_transport(self) -> Transport:
        """Pick the first usable transport in bridge, direct bot, webhook order."""
        for transport in _TRANSPORT_PRIORITY:
            if self._is_usable(transport):
                return transport
        raise ConfigurationError(self._describe_missing())

    def _require_bridge(self) -> BridgeCaller:
        if self._bridge_caller is None:
            raise ConfigurationError("Bridge caller not set")
        return self._bridge_caller

    def _require_credentials(self) -> DirectBotCredentials:
        creds = self._config.direct_bot
        if creds is None or not creds.complete:
            raise ConfigurationError("Direct bot credentials incomplete")
        return creds

    def _require_webhook_url(self) -> str:
        if not self._config.webhook_url:
            raise ConfigurationError("Webhook URL not set")
        return self._config.webhook_url

    def _is_usable(self, transport: Transport) -> bool:
        config = self._config
        if transport == Transport.BRIDGE:
            return self._bridge_caller is not None
        if transport == Transport.DIRECT_BOT:
            return bool(config.direct_bot and config.direct_bot.complete)
        return bool(config.webhook_url)

    def _describe_missing(self) -> str:
        config = self._config
        creds = config.direct_bot or DirectBotCredentials()
        missing = [
            "bridge caller not set",
            f"direct bot credentials missing {', '.join(creds.missing())}",
            "webhook URL not set",
        ]
        return f"No notification transport configured: {'; '.join(missing)}"

    def _bot(self, creds: DirectBotCredentials) -> LarkBotClient:
        client = self._bot_client
        if client is None or (client.app_id, client.app_secret, client.chat_id) != (
            creds.app_id,
            creds.app_secret,
            creds.chat_id,
        ):
            client = LarkBotClient(app_id=creds.app_id, app_secret=creds.app_secret, chat_id=creds.chat_id)
            self._bot_client = client
        return client

    # ── Delivery events ──────────────────────────────────

    def on(self, event_type: str, listener: DeliveryListener) -> "DeliveryService":
        """Subscribe to ``sent``/``failed``/``retry``/``card_action`` or ``notification`` (all)."""
        key = event_type.value if isinstance(event_type, DeliveryEventType) else event_type
        listeners = self._listeners.setdefault(key, [])
        if listener not in listeners:
            listeners.append(listener)
        return self

    def off(self, event_type: str, listener: DeliveryListener) -> "DeliveryService":
        key = event_type.value if isinstance(event_type, DeliveryEventType) else event_type
        listeners = self._listeners.get(key, [])
        if listener in listeners:
            listeners.remove(listener)
        return self

    def remove_all_listeners(self) -> "DeliveryService":
        self._listeners.clear()
        return self

    def emit_card_action(self, action: CardAction) -> None:
        self._task_log.add(action.task_id, "info", f"Card action: {action.action}", {"user_id": action.user_id})
        self._emit(DeliveryEventType.CARD_ACTION, action)

    def _emit(self, event_type: DeliveryEventType, data: Any, error: Optional[str] = None) -> None:
        event = DeliveryEvent(type=event_type, data=data, error=error)
        targets = list(self._listeners.get(event_type.value, [])) + list(self._listeners.get(ALL_EVENTS, []))
        for listener in targets:
            try:
                listener(event)
            except Exception:  # noqa: BLE001
                logger.exception("Delivery listener failed for %s event", event_type.value)

    # ── Task logs ────────────────────────────────────────

    def add_task_log(
        self,
        task_id: str,
        level: str,
        message: str,
        metadata: Optional[dict[str, Any]] = None,
    ) -> TaskLogEntry:
        return self._task_log.add(task_id, level, message, metadata)

    def get_task_logs(self, task_id: str) -> List[TaskLogEntry]:
        return self._task_log.get(task_id)

    def clear_task_logs(self, task_id: str) -> None:
        self._task_log.clear(task_id)

    def format_task_logs(self, task_id: str, n: int = 50) -> str:
        return self._task_log.format_tail(task_id, n)

    def dispose(self) -> None:
        self.remove_all_listeners()
        self._task_log.clear_all()
        if self._bot_client is not None:
            self._bot_client.invalidate_token()
        self._bot_client = None
        logger.info("Delivery service disposed")


def get_delivery_service() -> DeliveryService:
    return DeliveryService.get_instance()
