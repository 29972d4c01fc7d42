"""Logging configuration for truthrelay."""

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

import structlog

from truthrelay.config import get_settings

_SHARED_PROCESSORS: list[structlog.typing.Processor] = [
    structlog.contextvars.merge_contextvars,
    structlog.stdlib.add_logger_name,
    structlog.processors.add_log_level,
    structlog.processors.TimeStamper(fmt="iso"),
    structlog.processors.StackInfoRenderer(),
    structlog.dev.set_exc_info,
]


def setup_logging() -> None:
    """Configure structured logging.

    Console output is colourised in development and JSON otherwise. When
    ``log_to_file`` is enabled a rotating JSON log file is written as well;
    failure to create the log directory or file falls back to console only.
    """
    settings = get_settings()

    log_level = getattr(logging, str(settings.log_level).upper(), logging.INFO)
    if not isinstance(log_level, int):
        log_level = logging.INFO

    structlog.configure(
        processors=[
            *_SHARED_PROCESSORS,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(format="%(message)s", level=log_level, handlers=[])
    root = logging.getLogger()
    root.setLevel(log_level)

    console_renderer = (
        structlog.dev.ConsoleRenderer(colors=True)
        if settings.is_development
        else structlog.processors.JSONRenderer()
    )
    console = logging.StreamHandler(sys.stdout)
    console.setLevel(log_level)
    console.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                console_renderer,
            ],
            foreign_pre_chain=_SHARED_PROCESSORS,
        )
    )
    root.addHandler(console)

    if settings.log_to_file:
        try:
            Path(settings.log_directory).mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            print(f"Cannot create log directory {settings.log_directory}: {exc}", file=sys.stderr)
            settings.log_to_file = False

    if settings.log_to_file:
        json_formatter = structlog.stdlib.ProcessorFormatter(
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                structlog.processors.JSONRenderer(),
            ],
            foreign_pre_chain=_SHARED_PROCESSORS,
        )
        try:
            file_handler = RotatingFileHandler(
                settings.log_file_path,
                maxBytes=settings.log_file_max_bytes,
                backupCount=settings.log_file_backup_count,
                encoding="utf-8",
            )
        except OSError as exc:
            print(f"Cannot open log file {settings.log_file_path}: {exc}", file=sys.stderr)
        else:
            file_handler.setLevel(log_level)
            file_handler.setFormatter(json_formatter)
            root.addHandler(file_handler)

    # Reduce noise from discord.py, httpx and asyncpg
    for noisy in ("discord", "httpx", "httpcore", "asyncpg"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a logger instance."""
    return structlog.get_logger(name)  # type: ignore[no-any-return]
