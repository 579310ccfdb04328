from __future__ import annotations

import asyncio
import hmac
import logging
from contextlib import asynccontextmanager
from typing import Any, Optional

from fastapi import FastAPI, HTTPException, Request
from pydantic import BaseModel, Field, ValidationError

from larknotify import __version__
from larknotify.core.config_manager import ConfigManager, get_config_manager
from larknotify.core.delivery import DeliveryService, get_delivery_service
from larknotify.core.models import CARD_ACTIONS, CardAction
from larknotify.core.registry import TaskRegistry

logger = logging.getLogger("larknotify.gateway")


# ---- models ----

class CardActionValue(BaseModel):
    action: str
    task_id: str = Field(alias="taskId")

    model_config = {"populate_by_name": True}


class CardActionBody(BaseModel):
    value: CardActionValue


class CardCallback(BaseModel):
    """Interactive card callback as posted by the Lark open platform."""
    type: Optional[str] = None
    challenge: Optional[str] = None
    token: Optional[str] = None
    open_id: Optional[str] = None
    user_id: Optional[str] = None
    open_message_id: Optional[str] = None
    action: Optional[CardActionBody] = None


class ReloadRequest(BaseModel):
    dotenv_path: Optional[str] = None


def _token_matches(expected: Optional[str], supplied: Optional[str]) -> bool:
    if not expected:
        return True
    return hmac.compare_digest(expected, supplied or "")


def create_app(
    config_manager: Optional[ConfigManager] = None,
    delivery: Optional[DeliveryService] = None,
    registry: Optional[TaskRegistry] = None,
) -> FastAPI:
    config_manager = config_manager or get_config_manager()
    delivery = delivery or get_delivery_service()
    registry = registry or TaskRegistry(config_manager=config_manager, delivery=delivery)
    settings = config_manager.settings

    ok, errors = config_manager.validate()
    if not ok:
        for error in errors:
            logger.warning("Configuration problem: %s", error)

    async def _cleanup_loop(stop_event: asyncio.Event) -> None:
        interval = max(1, settings.cleanup_interval_seconds)
        max_age_ms = int(settings.stale_max_age_hours * 60 * 60 * 1000)
        while not stop_event.is_set():
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
            if stop_event.is_set():
                break
            try:
                registry.cleanup_stale_adapters(max_age_ms)
            except Exception:  # noqa: BLE001
                logger.exception("Stale adapter cleanup failed")

    # ---- lifespan ----

    @asynccontextmanager
    async def lifespan(application: FastAPI):
        stop_event = asyncio.Event()
        cleanup = asyncio.create_task(_cleanup_loop(stop_event), name="stale-cleanup")
        logger.info(
            "Gateway started: enabled=%s transport=%s",
            config_manager.is_enabled(),
            config_manager.get_snapshot().transport.value,
        )

        yield

        # Shutdown
        stop_event.set()
        await cleanup
        registry.dispose()
        logger.info("Gateway stopped")

    app = FastAPI(title="larknotify", version=__version__, lifespan=lifespan)
    app.state.config_manager = config_manager
    app.state.delivery = delivery
    app.state.registry = registry

    # ---- core routes ----

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/stats")
    def stats() -> dict[str, Any]:
        snapshot = config_manager.get_snapshot()
        return {
            **registry.get_stats(),
            "enabled": registry.enabled,
            "transport": snapshot.transport.value,
        }

    @app.post("/config/reload")
    def reload_config(req: Optional[ReloadRequest] = None) -> dict[str, Any]:
        snapshot = config_manager.reload(req.dotenv_path if req else None)
        ok, errors = config_manager.validate()
        return {
            "enabled": snapshot.enabled,
            "transport": snapshot.transport.value,
            "valid": ok,
            "errors": errors,
        }

    @app.get("/tasks/{task_id}/logs")
    def task_logs(task_id: str, tail: int = 50) -> dict[str, Any]:
        entries = delivery.get_task_logs(task_id)
        return {
            "task_id": task_id,
            "count": len(entries),
            "text": delivery.format_task_logs(task_id, tail),
        }

    # ---- Lark card callbacks ----

    @app.post("/lark/card-action")
    async def lark_card_action(request: Request) -> dict[str, Any]:
        payload = await request.json()
        if not isinstance(payload, dict):
            raise HTTPException(status_code=400, detail="invalid payload")
        try:
            callback = CardCallback.model_validate(payload)
        except ValidationError as exc:
            raise HTTPException(status_code=400, detail="malformed card callback") from exc

        # URL verification handshake
        if callback.type == "url_verification":
            return {"challenge": callback.challenge or ""}

        if not _token_matches(config_manager.settings.verification_token, callback.token):
            raise HTTPException(status_code=403, detail="invalid verification token")

        if callback.action is None:
            raise HTTPException(status_code=400, detail="missing action")
        value = callback.action.value
        if value.action not in CARD_ACTIONS:
            raise HTTPException(status_code=400, detail=f"unknown action: {value.action}")

        action = CardAction(
            action=value.action,
            task_id=value.task_id,
            user_id=callback.user_id,
            open_id=callback.open_id,
            message_id=callback.open_message_id,
        )
        logger.info("Card action %s for task %s", action.action, action.task_id)
        delivery.emit_card_action(action)
        return {"status": "ok"}

    return app
