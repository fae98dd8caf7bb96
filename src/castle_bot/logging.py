"""
Logging configuration using structlog.

Console output is human readable unless the bot runs under a service
manager, where every line is a JSON object. The optional log file is always
JSON lines so long-running sessions can be grepped afterwards.
"""

import sys
import logging
from typing import Any
from pathlib import Path

import structlog
from structlog.types import Processor


# Keys whose values never reach a log sink
REDACT_PATTERNS = (
    "password",
    "email",
    "token",
    "secret",
    "api_key",
    "apikey",
    "cookie",
)

# Chatty third-party loggers kept at WARNING unless verbose
NOISY_LOGGERS = ("httpx", "httpcore", "asyncio")


def redact_secrets(
    logger: logging.Logger, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """Replace string values under credential-like keys."""
    for key in list(event_dict):
        lowered = key.lower()
        if isinstance(event_dict[key], str) and any(p in lowered for p in REDACT_PATTERNS):
            event_dict[key] = "[REDACTED]"
    return event_dict


def _pre_chain() -> list[Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        redact_secrets,
    ]


def _handler(handler: logging.Handler, renderer: Processor, pre_chain: list[Processor]) -> logging.Handler:
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
            foreign_pre_chain=pre_chain,
        )
    )
    return handler


def setup_logging(
    level: str = "INFO",
    log_file: Path | None = None,
    json_console: bool = False,
) -> None:
    """
    Configure structlog for the bot.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        log_file: Optional path to a JSON-lines log file
        json_console: Render stderr as JSON instead of colored text
    """
    numeric_level = getattr(logging, level.upper())
    pre_chain = _pre_chain()

    structlog.configure(
        processors=pre_chain + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    console_renderer: Processor = (
        structlog.processors.JSONRenderer()
        if json_console
        else structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())
    )
    handlers = [_handler(logging.StreamHandler(sys.stderr), console_renderer, pre_chain)]

    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(
            _handler(logging.FileHandler(log_file, encoding="utf-8"), structlog.processors.JSONRenderer(), pre_chain)
        )

    root = logging.getLogger()
    root.handlers = handlers
    root.setLevel(numeric_level)

    if numeric_level > logging.DEBUG:
        for name in NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)


def bind_cycle(cycle: int) -> None:
    """Attach the cycle number to every log line emitted until the next bind."""
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(cycle=cycle)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
