"""Lark (Feishu) adapters for the direct bot API and incoming webhooks.

The bot adapter authenticates with an app id/secret, caches the tenant
access token, and posts interactive cards to a chat.  The webhook adapter
posts the same card to a pre-provisioned incoming-webhook URL and needs
no token.

Wire contracts:
    POST {api}/auth/v3/tenant_access_token/internal
        {app_id, app_secret} -> {code, msg, tenant_access_token, expire}
    POST {api}/im/v1/messages?receive_id_type=chat_id   (Bearer token)
        {receive_id, msg_type, content} -> {code, msg, data: {message_id}}
    POST {webhook_url}
        {msg_type, card} -> {data: {message_id}}
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Optional

import httpx

from larknotify.core.errors import AuthError, TransportError
from larknotify.core.models import now_ms

logger = logging.getLogger("larknotify.lark")

_API_BASE = "https://open.feishu.cn/open-apis"
_TIMEOUT = 15.0
# A cached token is only reused while it has more than this left.
TOKEN_REFRESH_MARGIN_MS = 5 * 60 * 1000
_DEFAULT_EXPIRE_SECONDS = 7200


@dataclass
class TokenCache:
    token: str
    expires_at_ms: int

    def usable(self, now: int) -> bool:
        return self.expires_at_ms > now + TOKEN_REFRESH_MARGIN_MS


def _json_or_empty(resp: httpx.Response) -> dict[str, Any]:
    try:
        data = resp.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


@dataclass
class LarkBotClient:
    app_id: str
    app_secret: str
    chat_id: str
    api_base: str = _API_BASE
    # Concurrent callers during expiry may each refresh; the identity
    # provider issues tokens idempotently.
    token_cache: Optional[TokenCache] = field(default=None, init=False, repr=False)

    @property
    def token_url(self) -> str:
        return f"{self.api_base}/auth/v3/tenant_access_token/internal"

    @property
    def message_url(self) -> str:
        return f"{self.api_base}/im/v1/messages"

    async def get_tenant_token(self, client: httpx.AsyncClient) -> str:
        """Return a cached token, or fetch and cache a fresh one."""
        cached = self.token_cache
        if cached and cached.usable(now_ms()):
            return cached.token

        payload = {"app_id": self.app_id, "app_secret": self.app_secret}
        try:
            resp = await client.post(self.token_url, json=payload)
        except httpx.HTTPError as exc:
            raise TransportError(f"Lark token request failed: {exc}") from exc
        data = _json_or_empty(resp)
        code = data.get("code")
        if code is None and not resp.is_success:
            raise TransportError(f"Lark token request failed: {resp.status_code} {resp.reason_phrase}")
        token = data.get("tenant_access_token")
        if code != 0 or not token:
            raise AuthError(f"Lark auth error: {code} {data.get('msg', '')}".rstrip())

        expire = data.get("expire") or _DEFAULT_EXPIRE_SECONDS
        self.token_cache = TokenCache(token=token, expires_at_ms=now_ms() + int(expire) * 1000)
        logger.debug("Fetched Lark tenant token (expires in %ss)", expire)
        return token

    def invalidate_token(self) -> None:
        self.token_cache = None

    async def send_card(self, card: dict[str, Any]) -> Optional[str]:
        """Post an interactive card to the configured chat. Returns the message id."""
        async with httpx.AsyncClient(timeout=_TIMEOUT) as client:
            token = await self.get_tenant_token(client)
            body = {
                "receive_id": self.chat_id,
                "msg_type": "interactive",
                "content": json.dumps(card, ensure_ascii=False),
            }
            headers = {
                "Authorization": f"Bearer {token}",
                "Content-Type": "application/json; charset=utf-8",
            }
            try:
                resp = await client.post(
                    self.message_url,
                    params={"receive_id_type": "chat_id"},
                    json=body,
                    headers=headers,
                )
            except httpx.HTTPError as exc:
                raise TransportError(f"Lark message request failed: {exc}") from exc

        data = _json_or_empty(resp)
        code = data.get("code")
        if code is None and not resp.is_success:
            raise TransportError(f"Lark message request failed: {resp.status_code} {resp.reason_phrase}")
        if code != 0:
            raise TransportError(f"Lark API error: {code} {data.get('msg', '')}".rstrip())
        return (data.get("data") or {}).get("message_id")


@dataclass
class LarkWebhookClient:
    url: str

    async def send_card(self, card: dict[str, Any]) -> Optional[str]:
        """Post an interactive card to the webhook. Returns the message id, if any."""
        payload = {"msg_type": "interactive", "card": card}
        try:
            async with httpx.AsyncClient(timeout=_TIMEOUT) as client:
                resp = await client.post(self.url, json=payload)
        except httpx.HTTPError as exc:
            raise TransportError(f"Webhook request failed: {exc}") from exc

        if not resp.is_success:
            raise TransportError(f"Webhook request failed: {resp.status_code} {resp.reason_phrase}")
        data = _json_or_empty(resp)
        code = data.get("code", data.get("StatusCode", 0))
        if code:
            raise TransportError(f"Webhook error: {code} {data.get('msg', data.get('StatusMessage', ''))}".rstrip())
        return (data.get("data") or {}).get("message_id")
