"""Logging infrastructure for workspace-rag."""

from __future__ import annotations

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

from rich.logging import RichHandler

ROOT_LOGGER_NAME = "workspace_rag"

LOG_LEVEL_MAP = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}

DEFAULT_LOG_DIR = Path.home() / ".workspace_rag" / "logs"
DEFAULT_LOG_FILE = DEFAULT_LOG_DIR / "wrag.log"

MAX_LOG_SIZE = 10 * 1024 * 1024  # 10 MB per file
BACKUP_COUNT = 5

_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def get_log_level_from_env() -> int:
    """Get logging level from the WRAG_LOG_LEVEL environment variable.

    Returns:
        Logging level constant. Defaults to WARNING if not set or invalid.
    """
    level_str = os.environ.get("WRAG_LOG_LEVEL", "WARNING").upper()
    return LOG_LEVEL_MAP.get(level_str, logging.WARNING)


def setup_logging(
    level: int | None = None,
    log_file: Path | None = None,
    console_output: bool = True,
    rich_console: bool = True,
    file_logging: bool = True,
) -> None:
    """Configure logging for every ``workspace_rag`` logger.

    The level comes from the ``level`` argument, then ``WRAG_LOG_LEVEL``,
    then WARNING. The rotating log file always records DEBUG.

    Args:
        level: Console logging level.
        log_file: Custom log file path. Defaults to ~/.workspace_rag/logs/wrag.log.
        console_output: Show logs on the console.
        rich_console: Use Rich for console formatting.
        file_logging: Write logs to a rotating file.
    """
    handlers: list[logging.Handler] = []

    if level is None:
        level = get_log_level_from_env()

    if file_logging:
        if log_file is None:
            log_file = DEFAULT_LOG_FILE
        log_file.parent.mkdir(parents=True, exist_ok=True)

        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=MAX_LOG_SIZE,
            backupCount=BACKUP_COUNT,
            encoding="utf-8",
        )
        file_handler.setFormatter(logging.Formatter(_FORMAT))
        file_handler.setLevel(logging.DEBUG)
        handlers.append(file_handler)

    if console_output:
        console_handler: logging.Handler
        if rich_console:
            console_handler = RichHandler(
                rich_tracebacks=True,
                show_time=True,
                show_path=False,
                level=level,
            )
        else:
            console_handler = logging.StreamHandler(sys.stderr)
            console_handler.setFormatter(logging.Formatter(_FORMAT))
            console_handler.setLevel(level)
        handlers.append(console_handler)

    root_logger = logging.getLogger(ROOT_LOGGER_NAME)
    root_logger.setLevel(logging.DEBUG)
    root_logger.handlers.clear()
    for handler in handlers:
        root_logger.addHandler(handler)


def get_logger(name: str) -> logging.Logger:
    """Get a logger below the ``workspace_rag`` namespace.

    Args:
        name: Dotted suffix, e.g. ``"llm"`` or ``"config.loader"``.

    Returns:
        Logger named ``workspace_rag.<name>``.
    """
    return logging.getLogger(f"{ROOT_LOGGER_NAME}.{name}")
