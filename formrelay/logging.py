"""Structured logging setup using structlog."""

from __future__ import annotations

import logging
import sys

import structlog


def setup_logging(
    *,
    json: bool = True,
    level: str = "INFO",
    log_file: str | None = None,
    log_error_file: str | None = None,
) -> None:
    """Configure structlog for the relay process.

    Parameters
    ----------
    json:
        If *True* (the default), output JSON lines.  If *False*, use a
        human-friendly console renderer on stdout.
    level:
        Root log level name (e.g. ``"DEBUG"``, ``"INFO"``).
    log_file:
        Optional path of a file that receives every record as a JSON line,
        in addition to stdout.
    log_error_file:
        Optional path of a file that receives only ERROR and above, as JSON
        lines.
    """
    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if json:
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                renderer,
            ],
        )
    )

    root = logging.getLogger()
    for existing in root.handlers:
        if isinstance(existing, logging.FileHandler):
            existing.close()
    root.handlers.clear()
    root.addHandler(handler)

    if log_file:
        root.addHandler(_json_file_handler(log_file))
    if log_error_file:
        root.addHandler(_json_file_handler(log_error_file, logging.ERROR))

    root.setLevel(level.upper())

    # httpx logs every request at INFO.
    logging.getLogger("httpx").setLevel(logging.WARNING)


def _json_file_handler(path: str, level: int = logging.NOTSET) -> logging.FileHandler:
    # File output is always JSON, whatever the console renderer.
    handler = logging.FileHandler(path, encoding="utf-8")
    handler.setLevel(level)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                structlog.processors.JSONRenderer(),
            ],
        )
    )
    return handler
