"""Centralized logging configuration for larknotify.

Sets up Python's logging system to write to both stdout and a rotating
log file in the configured log directory, plus a dedicated JSONL stream
with one record per delivery outcome.

Log directory structure::

    ~/.larknotify/.logs/
    ├── larknotify.log         # All Python logger output (rotating)
    └── deliveries.log         # One JSON record per send() result
"""
from __future__ import annotations

import glob
import json
import logging
import logging.handlers
import os
import time
from typing import Any

delivery_logger = logging.getLogger("larknotify._deliveries")


def clear_logs(log_dir: str) -> None:
    """Remove ``*.log`` files from the log directory.

    Called before any handlers are attached so there are no open-file
    conflicts.
    """
    if not os.path.isdir(log_dir):
        return
    for path in glob.glob(os.path.join(log_dir, "*.log*")):
        try:
            os.remove(path)
        except OSError:
            pass


def setup_logging(log_dir: str, log_level: str = "info", *, clear_on_launch: bool = False) -> None:
    """Configure the logging system with both stdout and file handlers.

    This should be called once at application startup.
    """
    if clear_on_launch:
        clear_logs(log_dir)

    os.makedirs(log_dir, exist_ok=True)

    level = getattr(logging, log_level.upper(), logging.INFO)

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()

    fmt = logging.Formatter(
        "%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )

    stdout_handler = logging.StreamHandler()
    stdout_handler.setLevel(level)
    stdout_handler.setFormatter(fmt)
    root.addHandler(stdout_handler)

    file_handler = logging.handlers.RotatingFileHandler(
        os.path.join(log_dir, "larknotify.log"),
        maxBytes=10 * 1024 * 1024,  # 10 MB
        backupCount=5,
        encoding="utf-8",
    )
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(fmt)
    root.addHandler(file_handler)

    _setup_jsonl_logger(delivery_logger, os.path.join(log_dir, "deliveries.log"))

    logging.getLogger("larknotify").info(
        "Logging initialized: log_dir=%s, level=%s", log_dir, log_level
    )


def _setup_jsonl_logger(logger_instance: logging.Logger, path: str) -> None:
    """Configure a logger to write raw JSONL messages to a rotating file."""
    logger_instance.setLevel(logging.INFO)
    logger_instance.propagate = False
    logger_instance.handlers.clear()

    handler = logging.handlers.RotatingFileHandler(
        path,
        maxBytes=10 * 1024 * 1024,  # 10 MB
        backupCount=5,
        encoding="utf-8",
    )
    # Message is already JSON
    handler.setFormatter(logging.Formatter("%(message)s"))
    logger_instance.addHandler(handler)


def log_delivery(
    task_id: str,
    status: str,
    success: bool,
    attempts: int,
    transport: str | None = None,
    message_id: str | None = None,
    error: str | None = None,
) -> dict[str, Any]:
    """Record one delivery outcome in the JSONL delivery log."""
    record: dict[str, Any] = {
        "ts": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
        "task_id": task_id,
        "status": status,
        "success": success,
        "attempts": attempts,
    }
    if transport:
        record["transport"] = transport
    if message_id:
        record["message_id"] = message_id
    if error:
        record["error"] = error[:2000]
    try:
        delivery_logger.info(json.dumps(record, default=str))
    except Exception:  # noqa: BLE001
        pass
    return record
