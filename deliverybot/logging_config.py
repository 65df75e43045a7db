"""deliverybot logging configuration.

Everything logs through standard-library loggers named after their module
(`logging.getLogger(__name__)`), all children of the `deliverybot` logger.
`setup_logging` attaches a single stream handler to that logger, either as
plain text or as one JSON object per line (`DELIVERYBOT_LOG_JSON=1`).

Bot tokens and API keys are redacted before a record is formatted.
"""

from __future__ import annotations

import json
import logging
import os
import re
import sys
from datetime import datetime, timezone
from typing import Optional

from deliverybot.constants import DEFAULT_LOG_LEVEL

_ROOT_LOGGER = "deliverybot"
_TEXT_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"

_SENSITIVE_PATTERNS = [
    (re.compile(r"(Authorization:\s*(?:Bearer|Bot)\s+)\S+", re.IGNORECASE), r"\1[REDACTED]"),
    (re.compile(r'(api[_-]?key["\s:=]+)[^\s&"\']+', re.IGNORECASE), r"\1[REDACTED]"),
    (re.compile(r'(token["\s:=]+)[^\s&"\']+', re.IGNORECASE), r"\1[REDACTED]"),
    # Discord bot tokens: three dot-separated base64 segments
    (re.compile(r"[MN][A-Za-z\d_-]{23,}\.[\w-]{6}\.[\w-]{27,}"), "[REDACTED_TOKEN]"),
]


def _redact(value: str) -> str:
    for pattern, replacement in _SENSITIVE_PATTERNS:
        value = pattern.sub(replacement, value)
    return value


class SensitiveDataFilter(logging.Filter):
    """Redacts tokens and keys from the message and its string arguments."""

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            record.msg = _redact(record.msg)
        if isinstance(record.args, tuple):
            record.args = tuple(_redact(a) if isinstance(a, str) else a for a in record.args)
        elif isinstance(record.args, dict):
            record.args = {k: (_redact(v) if isinstance(v, str) else v) for k, v in record.args.items()}
        return True


class JSONFormatter(logging.Formatter):
    """One JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, object] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        for key in ("buyer_id", "plan", "kind", "email"):
            if hasattr(record, key):
                entry[key] = getattr(record, key)
        return json.dumps(entry, default=str)


def setup_logging(level: Optional[str] = None, *, json_output: Optional[bool] = None) -> None:
    """Configure deliverybot logging.

    Args:
        level: Optional override for `DELIVERYBOT_LOG_LEVEL`.
        json_output: Optional override for `DELIVERYBOT_LOG_JSON`.
    """
    level_name = (level or os.getenv("DELIVERYBOT_LOG_LEVEL") or DEFAULT_LOG_LEVEL).upper()
    if json_output is None:
        json_output = os.getenv("DELIVERYBOT_LOG_JSON", "").lower() in ("1", "true", "yes")

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter() if json_output else logging.Formatter(_TEXT_FORMAT))
    handler.addFilter(SensitiveDataFilter())

    logger = logging.getLogger(_ROOT_LOGGER)
    logger.handlers.clear()
    logger.addHandler(handler)
    logger.setLevel(getattr(logging, level_name, logging.INFO))
    logger.propagate = False

    # discord.py is chatty at INFO; keep its warnings.
    logging.getLogger("discord").setLevel(logging.WARNING)
