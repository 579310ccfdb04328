from __future__ import annotations

import asyncio
from typing import Optional

import typer
import uvicorn
from dotenv import load_dotenv

from larknotify.core.models import NotificationData, TaskStatus, now_ms

app = typer.Typer(add_completion=False)

def _load_env(dotenv_path: Optional[str] = None) -> None:
    load_dotenv(dotenv_path)

def _setup_logging() -> None:
    """Configure centralized logging to both stdout and log files."""
    from larknotify.core.config import Settings
    from larknotify.core.logging_config import setup_logging

    settings = Settings.from_env()
    setup_logging(log_dir=settings.log_dir, log_level=settings.log_level, clear_on_launch=settings.clear_logs_on_launch)

@app.command()
def serve(
    host: Optional[str] = typer.Option(None, help="Bind host (default: LARKNOTIFY_HOST)"),
    port: Optional[int] = typer.Option(None, help="Bind port (default: LARKNOTIFY_PORT)"),
    reload: bool = typer.Option(False, help="Enable auto-reload"),
) -> None:
    """Run the notification gateway (health, stats and Lark card callbacks)."""
    _load_env()
    _setup_logging()

    from larknotify.core.config import Settings

    settings = Settings.from_env()
    uvicorn.run(
        "larknotify.core.gateway:create_app",
        host=host or settings.host,
        port=port or settings.port,
        reload=reload,
        factory=True,
    )

@app.command()
def version() -> None:
    from larknotify import __version__

    typer.echo(__version__)

@app.command("check-config")
def check_config(
    env_file: Optional[str] = typer.Option(None, "--env-file", help="Path to a .env file"),
) -> None:
    """Validate the notification configuration."""
    _load_env(env_file)

    from larknotify.core.config_manager import ConfigManager

    manager = ConfigManager()
    snapshot = manager.get_snapshot()
    typer.echo(f"enabled:   {snapshot.enabled}")
    typer.echo(f"transport: {snapshot.transport.value}")
    typer.echo(f"events:    {', '.join(k.value for k in manager.get_enabled_event_kinds()) or '(none)'}")

    ok, errors = manager.validate()
    if not ok:
        for error in errors:
            typer.echo(f"  ✗ {error}", err=True)
        raise typer.Exit(code=1)
    typer.echo("✅ Configuration is valid.")

@app.command("send-test")
def send_test(
    task_name: str = typer.Option("larknotify test", "--name", help="Task name shown on the card"),
    status: TaskStatus = typer.Option(TaskStatus.CREATED, help="Status to render"),
    env_file: Optional[str] = typer.Option(None, "--env-file", help="Path to a .env file"),
) -> None:
    """Send one test notification through the configured transport."""
    _load_env(env_file)
    _setup_logging()

    from larknotify.core.config_manager import ConfigManager
    from larknotify.core.delivery import DeliveryService

    snapshot = ConfigManager().get_snapshot()
    service = DeliveryService(snapshot)
    if not snapshot.enabled:
        typer.echo("Notifications are disabled (LARKNOTIFY_ENABLED); nothing sent.")
        raise typer.Exit(code=1)

    data = NotificationData(
        task_id=f"test-{now_ms()}",
        task_name=task_name,
        status=status,
        timestamp_ms=now_ms(),
        progress=0 if status == TaskStatus.CREATED else 50,
        message="Test notification from larknotify",
    )
    result = asyncio.run(service.send(data))
    if not result.success:
        typer.echo(f"❌ Send failed: {result.error}", err=True)
        raise typer.Exit(code=1)
    typer.echo(f"✅ Sent (message_id={result.message_id or '-'})")

if __name__ == "__main__":
    app()
