"""Structured Logging Configuration.

This module configures structlog once for the whole process and hands out
bound loggers. Every log call uses an event name plus key/value context:

    log = get_logger(__name__)
    log.info("tts_chunk_converted", chunk=2, bytes=48213)

Configuration:
- JSON output (machine consumers, worker process) or console output (CLI)
- Output goes to stderr so stdout stays free for the progress channel
- Optional listener receives every event dict before rendering; the worker
  uses it to forward log lines to the presentation layer
- Log levels: DEBUG, INFO, WARNING, ERROR, CRITICAL
"""

import contextlib
import logging
import sys
from collections.abc import Callable
from typing import Any, TextIO

import structlog
from structlog.stdlib import LoggerFactory

LogListener = Callable[[dict[str, Any]], None]

_listener: LogListener | None = None


def _forward_to_listener(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """structlog processor that hands a copy of the event to the listener."""
    if _listener is not None:
        # A broken listener must not break logging
        with contextlib.suppress(Exception):
            _listener(dict(event_dict))
    return event_dict


def configure_logging(
    level: str = "INFO",
    json_output: bool = True,
    stream: TextIO | None = None,
    listener: LogListener | None = None,
) -> None:
    """Configure structlog and the standard library root logger.

    Args:
        level: Log level name (e.g. "INFO")
        json_output: Render JSON lines when True, human console lines otherwise
        stream: Output stream (default: sys.stderr)
        listener: Optional callable receiving each event dict

    Example:
        >>> configure_logging("DEBUG", json_output=False)
        >>> get_logger(__name__).debug("ready")
    """
    global _listener
    _listener = listener

    renderer = (
        structlog.processors.JSONRenderer(ensure_ascii=False)
        if json_output
        else structlog.dev.ConsoleRenderer()
    )
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            _forward_to_listener,
            renderer,
        ],
        context_class=dict,
        logger_factory=LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )

    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(logging.Formatter("%(message)s"))
    root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance for the given module.

    Args:
        name: Module name (typically __name__)

    Returns:
        structlog bound logger (lazy; picks up configure_logging() changes)
    """
    return structlog.get_logger(name)


def redact(secret: str | None, visible: int = 4) -> str:
    """Truncate a secret for logging ("abcd***").

    Example:
        >>> redact("sk-1234567890")
        'sk-1***'
    """
    if not secret:
        return "<unset>"
    return f"{secret[:visible]}***"
