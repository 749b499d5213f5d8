"""
===============================================================================
MODULE: Structured (JSON) logger with query context
===============================================================================

CRC (Component Card)
-------------------------------------------------------------------------------
Component:
  JSONFormatter + setup_logger()

Responsibilities:
  - Emit one JSON object per line.
  - Stamp each line with the ids of the current request and query.
  - Keep provider credentials out of the output; cap oversized values.

Collaborators:
  - rag_engine/context.py (ContextVars)
  - crosscutting/config.py (level and format)
===============================================================================
"""

from __future__ import annotations

import json
import logging
import os
import re
import sys
import traceback
from datetime import datetime, timezone
from typing import Any

from pydantic import ValidationError

REDACTED = "***REDACTED***"

# Everything a bare LogRecord carries; the rest came in through extra={...}.
_RECORD_ATTRS = frozenset(
    vars(logging.LogRecord("blank", logging.INFO, "", 0, "", None, None))
) | {"message", "asctime", "taskName"}

_CREDENTIAL_FIELDS = frozenset(
    {
        "api_key",
        "apikey",
        "authorization",
        "x-api-key",
        "x-goog-api-key",
        "access_token",
        "token",
        "secret",
        "password",
        "credential",
        "openai_api_key",
        "anthropic_api_key",
        "google_api_key",
        "self_hosted_api_key",
        "database_url",
    }
)

# Credentials echoed inside free text (provider error bodies, header dumps).
_CREDENTIAL_PATTERNS = (
    re.compile(r"(?i)bearer\s+[a-z0-9._\-]{8,}"),
    re.compile(r"\bsk-[A-Za-z0-9_\-]{8,}"),
    re.compile(r"\bAIza[0-9A-Za-z_\-]{20,}"),
    re.compile(r"(?i)(postgres(?:ql)?://[^:/\s]+:)[^@\s]+(@)"),
)


def redact_text(text: str) -> str:
    for pattern in _CREDENTIAL_PATTERNS:
        if pattern.groups:
            text = pattern.sub(rf"\g<1>{REDACTED}\g<2>", text)
        else:
            text = pattern.sub(REDACTED, text)
    return text


def safe_value(value: Any, *, field: str = "", depth: int = 0, limit: int = 8_000) -> Any:
    """Log-safe copy of ``value``: credentials masked, long text cut, JSON friendly."""
    if field.lower() in _CREDENTIAL_FIELDS:
        return REDACTED
    if depth > 4:
        return "<nested too deep>"
    if isinstance(value, str):
        value = redact_text(value)
        return value if len(value) <= limit else f"{value[:limit]}...(truncated)"
    if isinstance(value, (bytes, bytearray)):
        return f"<{len(value)} bytes>"
    if isinstance(value, dict):
        return {
            str(k): safe_value(v, field=str(k), depth=depth + 1, limit=limit)
            for k, v in value.items()
        }
    if isinstance(value, (list, tuple, set, frozenset)):
        return [safe_value(v, field=field, depth=depth + 1, limit=limit) for v in value]
    if value is None or isinstance(value, (bool, int, float)):
        return value
    return str(value)


class JSONFormatter(logging.Formatter):
    """LogRecord -> single-line JSON, enriched with the query context."""

    def format(self, record: logging.LogRecord) -> str:
        from ..context import get_context_dict

        line: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": safe_value(record.getMessage()),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
            "pid": os.getpid(),
            **get_context_dict(),
        }
        line.update(
            (name, safe_value(value, field=name))
            for name, value in vars(record).items()
            if name not in _RECORD_ATTRS
        )

        if record.exc_info and record.exc_info[0] is not None:
            exc_type, exc, tb = record.exc_info
            line["exception"] = {
                "type": exc_type.__name__,
                "message": safe_value(str(exc)),
                "stacktrace": [
                    redact_text(part) for part in traceback.format_exception(exc_type, exc, tb)
                ],
            }

        return json.dumps(line, ensure_ascii=False, default=str, separators=(",", ":"))


def _level_and_format() -> tuple[str, bool]:
    from .config import get_settings

    try:
        settings = get_settings()
    except ValidationError:
        # Settings are validated again by the container, which reports the error.
        return os.getenv("LOG_LEVEL", "INFO").upper(), True
    return (settings.log_level or "INFO").upper(), bool(settings.log_json)


def setup_logger(name: str = "rag-engine") -> logging.Logger:
    """Configure the engine logger once; re-imports do not stack handlers."""
    log = logging.getLogger(name)
    level, as_json = _level_and_format()
    log.setLevel(getattr(logging, level, logging.INFO))

    if not log.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(
            JSONFormatter() if as_json else logging.Formatter("%(levelname)s %(name)s %(message)s")
        )
        log.addHandler(handler)
    return log


logger = setup_logger()
