"""
Structured Logging — JSON Lines with Request and Decision Context

One JSON object per line in production, a readable line in development.
Context travels in `extra=`; only whitelisted fields are emitted, and
anything that looks like an upstream or service API key is masked before
it reaches a handler (BYOK keys pass through phase 2 error messages).

Usage:
    from ragebaiter.logging import get_logger
    logger = get_logger("analyzer")
    logger.info("Upstream call complete", extra={"provider": "google", "duration_ms": 412})
"""

from __future__ import annotations

import json
import logging
import os
import re
import sys
from datetime import datetime, timezone
from typing import Optional


LOG_LEVEL = os.getenv("RAGEBAITER_LOG_LEVEL", "INFO").upper()
LOG_FORMAT = os.getenv("RAGEBAITER_LOG_FORMAT", "json")  # "json" or "text"

EXTRA_FIELDS = (
    "tweet_id", "cache_key", "source", "provider", "attempt", "backoff_ms",
    "duration_ms", "tokens_total", "prompt_tokens", "completion_tokens",
    "user_id", "key_id", "decision", "action", "retry_after", "error",
    "error_type", "status_code", "method", "path",
)

# Shown after the message in text mode, in this order
TEXT_CONTEXT_FIELDS = ("tweet_id", "user_id", "provider", "source", "attempt", "decision")

_SECRET = re.compile(r"\b(sk-(?:ant-)?[A-Za-z0-9_\-]{8,}|AIza[A-Za-z0-9_\-]{20,}|rb_[A-Za-z0-9_\-]{16,})")


def redact(text: str) -> str:
    """Mask provider and service keys, keeping a 4-char prefix for correlation."""
    return _SECRET.sub(lambda m: m.group(1)[:4] + "***", text)


class RedactingFilter(logging.Filter):
    """Rewrites the rendered message and the `error` extra with keys masked."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        masked = redact(message)
        if masked != message:
            record.msg, record.args = masked, None
        error = getattr(record, "error", None)
        if isinstance(error, str):
            record.error = redact(error)
        return True


def _context(record: logging.LogRecord, fields) -> dict:
    values = {}
    for key in fields:
        val = getattr(record, key, None)
        if val is not None:
            values[key] = val
    return values


class JSONFormatter(logging.Formatter):
    """Formats log records as JSON lines."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        entry.update(_context(record, EXTRA_FIELDS))

        if record.exc_info and record.exc_info[0]:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


class TextFormatter(logging.Formatter):
    """Human-readable format for development, with key context appended."""

    def __init__(self):
        super().__init__(
            fmt="%(asctime)s [%(levelname)-8s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        context = _context(record, TEXT_CONTEXT_FIELDS)
        if not context:
            return line
        head, sep, tail = line.partition("\n")
        suffix = " ".join(f"{k}={v}" for k, v in context.items())
        return f"{head} [{suffix}]{sep}{tail}"


def setup_logging(level: Optional[str] = None, fmt: Optional[str] = None) -> logging.Logger:
    """Configure the ragebaiter logger tree. Safe to call more than once."""
    root = logging.getLogger("ragebaiter")
    level_name = (level or LOG_LEVEL).upper()
    root.setLevel(getattr(logging, level_name, logging.INFO))

    root.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter() if (fmt or LOG_FORMAT) == "json" else TextFormatter())
    handler.addFilter(RedactingFilter())
    root.addHandler(handler)

    # Suppress noisy third-party loggers
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("google_genai").setLevel(logging.WARNING)

    return root


def get_logger(name: str) -> logging.Logger:
    """Get a named logger under the ragebaiter namespace."""
    return logging.getLogger(f"ragebaiter.{name}")
