"""Tests for the delivery service and its HTTP transports."""
from __future__ import annotations

import dataclasses
import json

import pytest
from pytest_httpx import HTTPXMock

from larknotify.core.config import DirectBotCredentials, NotificationConfig, Transport
from larknotify.core.delivery import ALL_EVENTS, DeliveryService
from larknotify.core.errors import ConfigurationError
from larknotify.core.models import (
    CardAction,
    DeliveryEventType,
    EnhancedNotificationData,
    NotificationData,
    TaskStatus,
    now_ms,
)
from larknotify.integrations.bridge import CREATE_TOOL, UPDATE_TOOL
from larknotify.integrations.lark import TokenCache

WEBHOOK_URL = "https://open.feishu.cn/open-apis/bot/v2/hook/abc"
TOKEN_URL = "https://open.feishu.cn/open-apis/auth/v3/tenant_access_token/internal"
MESSAGE_URL = "https://open.feishu.cn/open-apis/im/v1/messages?receive_id_type=chat_id"


def _data(status: TaskStatus = TaskStatus.CREATED, **kwargs) -> NotificationData:
    return NotificationData(
        task_id=kwargs.pop("task_id", "task-1"),
        task_name=kwargs.pop("task_name", "Refactor parser"),
        status=status,
        timestamp_ms=kwargs.pop("timestamp_ms", 1_700_000_000_000),
        **kwargs,
    )


def _webhook_service(**overrides) -> DeliveryService:
    config = NotificationConfig(
        enabled=True,
        transport=Transport.WEBHOOK,
        webhook_url=WEBHOOK_URL,
        retry_delay_ms=0,
    )
    return DeliveryService(dataclasses.replace(config, **overrides))


def _bot_service(**overrides) -> DeliveryService:
    config = NotificationConfig(
        enabled=True,
        transport=Transport.DIRECT_BOT,
        direct_bot=DirectBotCredentials(app_id="cli_a", app_secret="s3cret", chat_id="oc_123"),
        retry_delay_ms=0,
    )
    return DeliveryService(dataclasses.replace(config, **overrides))


class _Recorder:
    def __init__(self) -> None:
        self.events = []

    def __call__(self, event) -> None:
        self.events.append(event)

    def types(self) -> list[str]:
        return [e.type.value for e in self.events]


# ── Enable gate ──────────────────────────────────────────────

@pytest.mark.asyncio
async def test_disabled_send_is_noop_success(httpx_mock: HTTPXMock) -> None:
    service = DeliveryService(NotificationConfig(enabled=False, webhook_url=WEBHOOK_URL))
    recorder = _Recorder()
    service.on(ALL_EVENTS, recorder)

    result = await service.send(_data())

    assert result.success is True
    assert result.message_id is None
    assert httpx_mock.get_requests() == []
    assert recorder.events == []


def test_configure_rejects_bad_retry_settings() -> None:
    service = DeliveryService()
    with pytest.raises(ValueError):
        service.configure(retry_count=0)
    with pytest.raises(ValueError):
        service.configure(retry_delay_ms=-1)


def test_configure_merges_changes() -> None:
    service = DeliveryService()
    config = service.configure(enabled=True, webhook_url=WEBHOOK_URL)
    assert config.enabled is True
    assert config.transport == Transport.BRIDGE
    assert service.get_config().webhook_url == WEBHOOK_URL
    assert service.is_enabled()


# ── Webhook transport ────────────────────────────────────────

@pytest.mark.asyncio
async def test_webhook_send_returns_message_id(httpx_mock: HTTPXMock) -> None:
    httpx_mock.add_response(url=WEBHOOK_URL, method="POST", json={"code": 0, "data": {"message_id": "m1"}})
    service = _webhook_service()
    recorder = _Recorder()
    service.on(DeliveryEventType.SENT, recorder)

    result = await service.send(_data(progress=0, message="Starting"))

    assert result.success is True
    assert result.message_id == "m1"
    requests = httpx_mock.get_requests()
    assert len(requests) == 1
    body = json.loads(requests[0].content)
    assert body["msg_type"] == "interactive"
    assert body["card"]["header"]["template"] == "blue"
    assert recorder.types() == ["sent"]


@pytest.mark.asyncio
async def test_webhook_retries_until_exhausted(httpx_mock: HTTPXMock) -> None:
    for _ in range(3):
        httpx_mock.add_response(url=WEBHOOK_URL, method="POST", status_code=500)
    service = _webhook_service(retry_count=3)
    recorder = _Recorder()
    service.on(ALL_EVENTS, recorder)

    result = await service.send(_data())

    assert result.success is False
    assert "Webhook request failed: 500" in result.error
    assert len(httpx_mock.get_requests()) == 3
    assert recorder.types() == ["retry", "retry", "failed"]


@pytest.mark.asyncio
async def test_webhook_recovers_on_second_attempt(httpx_mock: HTTPXMock) -> None:
    httpx_mock.add_response(url=WEBHOOK_URL, method="POST", status_code=502)
    httpx_mock.add_response(url=WEBHOOK_URL, method="POST", json={"data": {"message_id": "m2"}})
    service = _webhook_service(retry_count=3)
    recorder = _Recorder()
    service.on(ALL_EVENTS, recorder)

    result = await service.send(_data())

    assert result.success is True
    assert result.message_id == "m2"
    assert recorder.types() == ["retry", "sent"]


@pytest.mark.asyncio
async def test_webhook_nonzero_code_is_failure(httpx_mock: HTTPXMock) -> None:
    httpx_mock.add_response(url=WEBHOOK_URL, method="POST", json={"code": 19021, "msg": "sign match fail"})
    service = _webhook_service(retry_count=1)

    result = await service.send(_data())

    assert result.success is False
    assert "19021" in result.error


# ── Direct bot transport ─────────────────────────────────────

@pytest.mark.asyncio
async def test_bot_auth_failure_makes_no_message_call(httpx_mock: HTTPXMock) -> None:
    httpx_mock.add_response(url=TOKEN_URL, method="POST", json={"code": 99991663, "msg": "app secret invalid"})
    service = _bot_service(retry_count=1)

    result = await service.send(_data())

    assert result.success is False
    assert "Lark auth error" in result.error
    assert "99991663" in result.error
    requests = httpx_mock.get_requests()
    assert [str(r.url) for r in requests] == [TOKEN_URL]


@pytest.mark.asyncio
async def test_bot_token_is_cached_across_sends(httpx_mock: HTTPXMock) -> None:
    httpx_mock.add_response(
        url=TOKEN_URL, method="POST", json={"code": 0, "tenant_access_token": "t-1", "expire": 7200}
    )
    httpx_mock.add_response(url=MESSAGE_URL, method="POST", json={"code": 0, "data": {"message_id": "om_1"}})
    httpx_mock.add_response(url=MESSAGE_URL, method="POST", json={"code": 0, "data": {"message_id": "om_2"}})
    service = _bot_service()

    first = await service.send(_data())
    second = await service.send(_data(TaskStatus.IN_PROGRESS, progress=40))

    assert (first.message_id, second.message_id) == ("om_1", "om_2")
    requests = httpx_mock.get_requests()
    assert len(requests) == 3
    assert len(httpx_mock.get_requests(url=TOKEN_URL)) == 1
    for request in httpx_mock.get_requests(url=MESSAGE_URL):
        assert request.headers["Authorization"] == "Bearer t-1"
        body = json.loads(request.content)
        assert body["receive_id"] == "oc_123"
        assert body["msg_type"] == "interactive"
        assert json.loads(body["content"])["header"]["title"]["content"].endswith("Refactor parser")


@pytest.mark.asyncio
async def test_bot_token_refreshed_near_expiry(httpx_mock: HTTPXMock) -> None:
    httpx_mock.add_response(
        url=TOKEN_URL, method="POST", json={"code": 0, "tenant_access_token": "t-1", "expire": 7200}
    )
    httpx_mock.add_response(url=MESSAGE_URL, method="POST", json={"code": 0, "data": {"message_id": "om_1"}})
    httpx_mock.add_response(
        url=TOKEN_URL, method="POST", json={"code": 0, "tenant_access_token": "t-2", "expire": 7200}
    )
    httpx_mock.add_response(url=MESSAGE_URL, method="POST", json={"code": 0, "data": {"message_id": "om_2"}})
    service = _bot_service()

    await service.send(_data())
    # One minute left is inside the refresh margin.
    service.bot_client.token_cache = TokenCache(token="t-1", expires_at_ms=now_ms() + 60_000)
    await service.send(_data())

    assert len(httpx_mock.get_requests(url=TOKEN_URL)) == 2
    last_message = httpx_mock.get_requests(url=MESSAGE_URL)[-1]
    assert last_message.headers["Authorization"] == "Bearer t-2"


@pytest.mark.asyncio
async def test_bot_api_error_is_reported(httpx_mock: HTTPXMock) -> None:
    httpx_mock.add_response(
        url=TOKEN_URL, method="POST", json={"code": 0, "tenant_access_token": "t-1", "expire": 7200}
    )
    httpx_mock.add_response(url=MESSAGE_URL, method="POST", json={"code": 230002, "msg": "bot not in chat"})
    service = _bot_service(retry_count=1)

    result = await service.send(_data())

    assert result.success is False
    assert result.error.startswith("Lark API error: 230002")


# ── Bridge transport and selection ───────────────────────────

class _FakeBridge:
    def __init__(self, fail_times: int = 0) -> None:
        self.calls = []
        self.fail_times = fail_times

    async def __call__(self, server: str, tool: str, args: dict):
        self.calls.append((server, tool, args))
        if len(self.calls) <= self.fail_times:
            raise RuntimeError("server unavailable")
        return {"messageId": f"b{len(self.calls)}"}


@pytest.mark.asyncio
async def test_bridge_created_uses_create_tool() -> None:
    service = DeliveryService(NotificationConfig(enabled=True, retry_delay_ms=0))
    bridge = _FakeBridge()
    service.set_bridge_caller(bridge)

    data = EnhancedNotificationData(
        task_id="task-1",
        task_name="Refactor parser",
        status=TaskStatus.CREATED,
        description="Split the tokenizer",
        user_id="ou_1",
    )
    result = await service.send(data)

    assert result.success is True
    assert result.message_id == "b1"
    server, tool, args = bridge.calls[0]
    assert server == "task-manager"
    assert tool == CREATE_TOOL
    assert args == {"title": "Refactor parser", "description": "Split the tokenizer", "userId": "ou_1"}


@pytest.mark.asyncio
async def test_bridge_update_maps_status() -> None:
    service = DeliveryService(NotificationConfig(enabled=True, retry_delay_ms=0))
    bridge = _FakeBridge(fail_times=1)
    service.set_bridge_caller(bridge)

    result = await service.notify_task_completed(_data(progress=100))

    assert result.success is True
    assert len(bridge.calls) == 2
    _, tool, args = bridge.calls[-1]
    assert tool == UPDATE_TOOL
    assert args == {"taskId": "task-1", "status": "completed", "progress": 100}


@pytest.mark.asyncio
async def test_bridge_wins_when_every_transport_is_usable(httpx_mock: HTTPXMock) -> None:
    service = DeliveryService(
        NotificationConfig(
            enabled=True,
            transport=Transport.WEBHOOK,
            webhook_url=WEBHOOK_URL,
            direct_bot=DirectBotCredentials(app_id="cli_a", app_secret="s3cret", chat_id="oc_123"),
            retry_delay_ms=0,
        )
    )
    bridge = _FakeBridge()
    service.set_bridge_caller(bridge)

    result = await service.send(_data())

    assert result.success is True
    assert result.message_id == "b1"
    assert len(bridge.calls) == 1
    assert httpx_mock.get_requests() == []


@pytest.mark.asyncio
async def test_direct_bot_preferred_over_webhook(httpx_mock: HTTPXMock) -> None:
    httpx_mock.add_response(
        url=TOKEN_URL, method="POST", json={"code": 0, "tenant_access_token": "t-1", "expire": 7200}
    )
    httpx_mock.add_response(url=MESSAGE_URL, method="POST", json={"code": 0, "data": {"message_id": "om_1"}})
    service = _webhook_service(
        direct_bot=DirectBotCredentials(app_id="cli_a", app_secret="s3cret", chat_id="oc_123"),
    )

    result = await service.send(_data())

    assert result.message_id == "om_1"
    assert httpx_mock.get_requests(url=WEBHOOK_URL) == []


@pytest.mark.asyncio
async def test_webhook_used_when_it_is_the_only_transport(httpx_mock: HTTPXMock) -> None:
    httpx_mock.add_response(url=WEBHOOK_URL, method="POST", json={"data": {"message_id": "m1"}})
    service = DeliveryService(
        NotificationConfig(enabled=True, transport=Transport.DIRECT_BOT, webhook_url=WEBHOOK_URL, retry_delay_ms=0)
    )

    result = await service.send(_data())

    assert result.success is True
    assert result.message_id == "m1"


@pytest.mark.asyncio
async def test_retry_backoff_is_linear(monkeypatch) -> None:
    delays = []

    async def fake_sleep(seconds):
        delays.append(seconds)

    monkeypatch.setattr("larknotify.core.delivery.asyncio.sleep", fake_sleep)
    service = DeliveryService(NotificationConfig(enabled=True, retry_count=3, retry_delay_ms=500))
    bridge = _FakeBridge(fail_times=3)
    service.set_bridge_caller(bridge)
    recorder = _Recorder()
    service.on(ALL_EVENTS, recorder)

    result = await service.send(_data())

    assert result.success is False
    assert len(bridge.calls) == 3
    assert delays == [0.5, 1.0]
    types = recorder.types()
    assert types.count("retry") == 2
    assert types.count("failed") == 1
    assert types[-1] == "failed"


@pytest.mark.asyncio
async def test_no_transport_fails_without_retrying() -> None:
    service = DeliveryService(NotificationConfig(enabled=True, retry_count=3, retry_delay_ms=0))
    recorder = _Recorder()
    service.on(ALL_EVENTS, recorder)

    result = await service.send(_data())

    assert result.success is False
    assert result.error.startswith("No notification transport configured")
    assert "webhook URL not set" in result.error
    assert recorder.types() == ["failed"]


@pytest.mark.asyncio
async def test_attempt_once_raises_configuration_error() -> None:
    service = DeliveryService(NotificationConfig(enabled=True, transport=Transport.DIRECT_BOT))

    with pytest.raises(ConfigurationError, match="No notification transport configured"):
        await service.attempt_once(_data())

    service.set_bridge_caller(None)
    with pytest.raises(ConfigurationError, match="Bridge caller not set"):
        service._require_bridge()
    with pytest.raises(ConfigurationError, match="Webhook URL not set"):
        service._require_webhook_url()
    with pytest.raises(ConfigurationError, match="Direct bot credentials incomplete"):
        service._require_credentials()


# ── Listeners and task logs ──────────────────────────────────

@pytest.mark.asyncio
async def test_listener_errors_are_isolated() -> None:
    service = DeliveryService(NotificationConfig(enabled=True, retry_delay_ms=0))
    service.set_bridge_caller(_FakeBridge())

    def broken(event) -> None:
        raise RuntimeError("listener exploded")

    recorder = _Recorder()
    service.on(DeliveryEventType.SENT, broken)
    service.on(DeliveryEventType.SENT, recorder)

    result = await service.send(_data())

    assert result.success is True
    assert recorder.types() == ["sent"]


def test_off_and_remove_all_listeners() -> None:
    service = DeliveryService()
    recorder = _Recorder()
    service.on("card_action", recorder)
    service.off("card_action", recorder)
    service.emit_card_action(CardAction(action="pause", task_id="task-1"))
    assert recorder.events == []

    service.on(ALL_EVENTS, recorder)
    service.emit_card_action(CardAction(action="logs", task_id="task-1"))
    assert recorder.types() == ["card_action"]

    service.remove_all_listeners()
    service.emit_card_action(CardAction(action="retry", task_id="task-1"))
    assert len(recorder.events) == 1


@pytest.mark.asyncio
async def test_send_records_task_log() -> None:
    service = DeliveryService(NotificationConfig(enabled=True, retry_count=2, retry_delay_ms=0))
    service.set_bridge_caller(_FakeBridge(fail_times=1))

    await service.send(_data())

    messages = [(e.level, e.message) for e in service.get_task_logs("task-1")]
    assert messages == [("warn", "Attempt 1 failed"), ("info", "Notification sent (created)")]
    assert "Notification sent (created)" in service.format_task_logs("task-1")

    service.clear_task_logs("task-1")
    assert service.format_task_logs("task-1") == "(no log entries)"
