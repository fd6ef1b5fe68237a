"""Logging configuration for homestack with dual output (console + files)."""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

import structlog


def setup_logging(
    log_dir: Path | str = Path("logs"),
    log_level: str | None = None,
    max_file_size_mb: int = 10,
) -> None:
    """Setup dual logging system: console + files with automatic truncation.

    Creates two log files:
    - homestack.log: Server and service activity
    - operations.log: Lifecycle operation steps (install, uninstall, ...)

    Args:
        log_dir: Directory for log files
        log_level: Log level (defaults to LOG_LEVEL env var or INFO)
        max_file_size_mb: Max file size before truncation (no backup files kept)
    """
    log_dir = Path(log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)

    if log_level is None:
        log_level = os.getenv("LOG_LEVEL", "INFO")

    log_level_num = getattr(logging, log_level.upper(), logging.INFO)
    max_bytes = max_file_size_mb * 1024 * 1024

    # Clear any existing handlers to prevent duplicates
    logging.getLogger().handlers.clear()

    server_file_handler = RotatingFileHandler(
        log_dir / "homestack.log",
        maxBytes=max_bytes,
        backupCount=0,
        encoding="utf-8",
    )
    server_file_handler.setLevel(log_level_num)

    operations_file_handler = RotatingFileHandler(
        log_dir / "operations.log",
        maxBytes=max_bytes,
        backupCount=0,
        encoding="utf-8",
    )
    operations_file_handler.setLevel(log_level_num)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_level_num)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level_num)
    root_logger.addHandler(console_handler)

    server_logger = logging.getLogger("server")
    server_logger.addHandler(server_file_handler)
    server_logger.propagate = True

    operations_logger = logging.getLogger("operations")
    operations_logger.addHandler(operations_file_handler)
    operations_logger.propagate = True

    from structlog.stdlib import BoundLogger, LoggerFactory, ProcessorFormatter

    renderer = (
        structlog.dev.ConsoleRenderer()
        if sys.stdout.isatty()
        else structlog.processors.JSONRenderer()
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=LoggerFactory(),
        wrapper_class=BoundLogger,
        cache_logger_on_first_use=True,
    )
    console_handler.setFormatter(ProcessorFormatter(processor=renderer))
    server_file_handler.setFormatter(
        ProcessorFormatter(processor=structlog.processors.JSONRenderer())
    )
    operations_file_handler.setFormatter(
        ProcessorFormatter(processor=structlog.processors.JSONRenderer())
    )

    logger = structlog.get_logger("server")
    logger.info(
        "Logging system initialized",
        log_dir=str(log_dir.absolute()),
        log_level=log_level,
        max_file_size_mb=max_file_size_mb,
        server_log=str(log_dir / "homestack.log"),
        operations_log=str(log_dir / "operations.log"),
    )


def get_server_logger() -> Any:
    """Get logger for general server operations (writes to homestack.log)."""
    return structlog.get_logger("server")


def get_operations_logger() -> Any:
    """Get logger for lifecycle operation steps (writes to operations.log)."""
    return structlog.get_logger("operations")


def get_middleware_logger() -> Any:
    """Get logger for request middleware (writes to homestack.log)."""
    return structlog.get_logger("server.middleware")
