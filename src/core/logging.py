"""
Structured logging for the skill compilation engine.

Every module gets its logger through ``get_logger(__name__)``.  Request-scoped
fields (active table, query type …) are attached with ``bind`` so a single
analysis run can be followed across the router, resolver and assembler logs.
"""
from __future__ import annotations

import logging
import sys
from typing import Any

from src.core.config import get_settings

_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"


class _ContextAdapter(logging.LoggerAdapter):
    """Prefix each message with ``[key=value ...]`` from the bound context."""

    def process(self, msg: Any, kwargs: Any) -> tuple[Any, Any]:
        if not self.extra:
            return msg, kwargs
        fields = " ".join(f"{k}={v}" for k, v in self.extra.items() if v is not None)
        return f"[{fields}] {msg}", kwargs


def get_logger(name: str) -> logging.Logger:
    settings = get_settings()
    logger = logging.getLogger(name)
    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
        logger.addHandler(handler)
    logger.setLevel(getattr(logging, settings.log_level.upper(), logging.INFO))
    return logger


def bind(logger: logging.Logger, **context: Any) -> logging.LoggerAdapter:
    """Return an adapter that tags every record with *context*."""
    return _ContextAdapter(logger, context)


def preview(text: str, limit: int = 80) -> str:
    """Shorten user-supplied text before it goes into a log line."""
    text = " ".join(text.split())
    if len(text) <= limit:
        return text
    return text[: limit - 3] + "..."
