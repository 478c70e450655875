"""Logging configuration for Script Agent."""

import logging
import sys
from typing import Callable

import structlog

from script_agent.config import get_config

LogSink = Callable[[str], None]


class _LineSink:
    """Write target that hands complete log lines to a host callback."""

    def __init__(self, sink: LogSink):
        self._sink = sink
        self._pending = ""

    def write(self, text: str) -> int:
        lines = (self._pending + text).split("\n")
        self._pending = lines.pop()
        for line in lines:
            if line:
                self._sink(line)
        return len(text)

    def flush(self) -> None:
        if self._pending:
            self._sink(self._pending)
            self._pending = ""


def configure_logging(level: str | None = None, sink: LogSink | None = None) -> None:
    """Configure structlog for the process.

    Args:
        level: Level name overriding ``logging.level`` from the config
        sink: Callback receiving rendered lines instead of stderr, for hosts
            that show logs in their own output window
    """
    config = get_config()
    log_level = getattr(logging, (level or config.logging.level).upper(), logging.INFO)

    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    if config.logging.format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sink is None))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=_LineSink(sink) if sink else sys.stderr),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.BoundLogger:
    if name:
        return structlog.get_logger(name)
    return structlog.get_logger()


log = get_logger(__name__)
