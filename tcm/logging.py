"""structlog setup shared by the CLI, the agent loop and the plugins.

Log lines always go to stderr: thin-edge.io parses the plugins' stdout
(module lists, `self check` results).
"""
from __future__ import annotations

import logging
import sys
from typing import TextIO

import structlog

LOG_FORMATS = ("text", "json")

# libraries that log every request at INFO
_QUIET_LOGGERS = ("docker", "urllib3", "httpx", "httpcore", "paho", "uvicorn.access")


def _renderer(fmt: str, stream: TextIO) -> structlog.typing.Processor:
    if fmt == "json":
        return structlog.processors.JSONRenderer(sort_keys=True)
    return structlog.dev.ConsoleRenderer(colors=stream.isatty())


def setup_logging(level: str = "info", fmt: str = "text", stream: TextIO | None = None) -> None:
    """Configure structlog and the stdlib root logger.

    `fmt` is `text` (console key/value) or `json` (one object per line, for
    journald or a log shipper). Unknown levels fall back to info.
    """
    if fmt not in LOG_FORMATS:
        raise ValueError(f"Unknown log format {fmt!r}, expected one of {LOG_FORMATS}")
    stream = stream or sys.stderr
    log_level = logging.getLevelName(level.upper())
    if not isinstance(log_level, int):
        log_level = logging.INFO

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.format_exc_info if fmt == "json" else structlog.dev.set_exc_info,
            _renderer(fmt, stream),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=stream),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(format="%(name)s: %(message)s", stream=stream, level=log_level, force=True)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(log_level, logging.WARNING))


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Logger that tags every line with `logger=<name>`."""
    return structlog.get_logger(logger=name)
