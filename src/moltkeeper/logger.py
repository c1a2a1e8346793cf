"""Structured logging for the control plane.

The level comes from LOG_LEVEL at import time, so config errors raised while
Settings load are still logged, and is re-applied from ``logging.level``
once Settings exist. Gateway tokens travel on command lines, so every event
passes through a processor that masks ``--token`` values before rendering.
"""

from __future__ import annotations

import logging
import os
import re
import sys
from collections.abc import MutableMapping
from typing import Any

import structlog

_TOKEN_ARG_RE = re.compile(r"(--token[=\s]+)(\S+)")
_MASK = "***"


def redact_token_args(text: str) -> str:
    """Replace the value of every ``--token`` argument in ``text``."""
    return _TOKEN_ARG_RE.sub(rf"\g<1>{_MASK}", text)


def _redact_secrets(
    _logger: Any, _method: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    for key, value in event_dict.items():
        if isinstance(value, str) and "--token" in value:
            event_dict[key] = redact_token_args(value)
    return event_dict


def _resolve_level(level_name: str) -> int:
    level = logging.getLevelName(level_name.upper())
    return level if isinstance(level, int) else logging.INFO


def _setup_logging() -> structlog.stdlib.BoundLogger:
    level = _resolve_level(os.environ.get("LOG_LEVEL", "INFO"))
    logging.basicConfig(level=level, format="%(message)s", stream=sys.stderr)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            _redact_secrets,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    return structlog.get_logger("moltkeeper")


logger = _setup_logging()


def set_level(level_name: str) -> int:
    """Apply the configured level. Unknown names fall back to INFO."""
    level = _resolve_level(level_name)
    logging.getLogger().setLevel(level)
    return level


def _uncaught_exception_handler(
    exc_type: type[BaseException],
    exc_value: BaseException,
    exc_tb: object,
) -> None:
    if issubclass(exc_type, KeyboardInterrupt):
        sys.__excepthook__(exc_type, exc_value, exc_tb)  # type: ignore[arg-type]
        return
    logger.critical("Uncaught exception", exc_info=(exc_type, exc_value, exc_tb))
    sys.exit(1)


sys.excepthook = _uncaught_exception_handler
