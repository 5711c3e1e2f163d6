"""Structlog configuration used by the console and the store service."""

from __future__ import annotations

import logging
import logging.config
import sys
from typing import TextIO

import structlog

from agentlink.settings import settings

# Server loggers that are routed through our handler at the configured level.
_SERVER_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access")

# HTTP client loggers log every request at INFO; only their warnings are kept.
_QUIET_LOGGERS = ("httpx", "httpcore")


def _add_uvicorn_access_fields(
    logger: logging.Logger | None, name: str, event_dict: dict
) -> dict:
    """Attach structured access log fields extracted from uvicorn.access records."""
    record = event_dict.get("_record")
    if not record or record.name != "uvicorn.access":
        return event_dict
    args = record.args
    if isinstance(args, tuple) and len(args) >= 5:
        client_addr, method, path, http_version, status_code = args[:5]
        event_dict.update(
            client_addr=client_addr,
            method=method,
            path=path,
            http_version=http_version,
            status_code=status_code,
        )
    return event_dict


def _renderer(log_format: str, stream: TextIO):
    if log_format == "json":
        return structlog.processors.JSONRenderer()
    isatty = getattr(stream, "isatty", None)
    return structlog.dev.ConsoleRenderer(colors=bool(isatty and isatty()))


def _logger_table(level: int) -> dict:
    table = {
        name: {"handlers": ["default"], "level": level, "propagate": False}
        for name in _SERVER_LOGGERS
    }
    for name in _QUIET_LOGGERS:
        table[name] = {"handlers": ["default"], "level": logging.WARNING, "propagate": False}
    return table


def configure_logging(*, stream: TextIO | None = None) -> None:
    """Configure structlog + stdlib logging using env-driven settings.

    Args:
        stream: Output stream for log records. The console passes stderr so
            log lines never interleave with streamed agent output on stdout.
    """
    stream = stream or sys.stdout
    level = getattr(logging, settings.log_level(), logging.INFO)

    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
    ]

    structlog.configure(
        processors=shared_processors
        + [
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        processor=_renderer(settings.log_format(), stream),
        foreign_pre_chain=shared_processors + [_add_uvicorn_access_fields],
    )

    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {"default": {"()": lambda: formatter}},
            "handlers": {
                "default": {
                    "class": "logging.StreamHandler",
                    "formatter": "default",
                    "stream": stream,
                }
            },
            "root": {"handlers": ["default"], "level": level},
            "loggers": _logger_table(level),
        }
    )
