from __future__ import annotations

import logging
import sys
from typing import Any

import structlog


_CONFIGURED = False


def configure_logging(level: int | str = logging.INFO, json_format: bool = True) -> None:
    """Configure structlog + stdlib logging.

    JSON output by default, the structlog console renderer otherwise.
    Safe to call multiple times (no-op after first call).
    """

    global _CONFIGURED
    if _CONFIGURED:
        return

    if isinstance(level, str):
        level = logging.getLevelName(level.upper())

    pre_chain: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    structlog.configure(
        processors=[
            *pre_chain,
            # Let ProcessorFormatter render stdlib log records too.
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    renderer: Any = structlog.processors.JSONRenderer() if json_format else structlog.dev.ConsoleRenderer()
    formatter = structlog.stdlib.ProcessorFormatter(
        processor=renderer,
        foreign_pre_chain=pre_chain,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(level)

    # uvicorn.access would duplicate the middleware's request_completed line.
    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        logger = logging.getLogger(name)
        logger.handlers = [handler]
        logger.propagate = False
        logger.setLevel(level if name != "uvicorn.access" else logging.WARNING)

    _CONFIGURED = True
