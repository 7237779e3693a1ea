"""Structured JSON logging configuration.

Configures Python logging to emit JSON-formatted log entries with required
fields: request_id, level, timestamp. Operation-specific fields are added
contextually through ``extra`` (stage and error_reason for orchestration
failures; command and duration_ms for external processes; check_name and
score for health cycles).

SECURITY: license keys and tokens are redacted from messages.
"""

from __future__ import annotations

import json
import logging
import re
from datetime import datetime, timezone

from egress_sidecar.middleware.request_id import request_id_ctx

_SENSITIVE_PATTERNS = re.compile(
    r"(license.key|license|api.key|secret|password|token|authorization)"
    r"[\s]*[=:]\s*\S+"
    r"|registration\s+license\s+\S+",
    re.IGNORECASE,
)

_CONTEXT_FIELDS = (
    "stage",
    "command",
    "returncode",
    "check_name",
    "duration_ms",
    "score",
    "client_state",
    "chain",
)


class RequestIdFilter(logging.Filter):
    """Attach the current HTTP request id to records that lack one."""

    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "request_id", None) is None:
            record.request_id = request_id_ctx.get()  # type: ignore[attr-defined]
        return True


class JsonFormatter(logging.Formatter):
    """Formats log records as JSON with structured fields.

    Each entry contains at minimum: request_id, level, timestamp, message.
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: dict = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": self._sanitize(record.getMessage()),
            "request_id": getattr(record, "request_id", None),
        }

        for name in _CONTEXT_FIELDS:
            if hasattr(record, name):
                entry[name] = getattr(record, name)

        if hasattr(record, "error_reason"):
            entry["error_reason"] = self._sanitize(
                str(getattr(record, "error_reason"))
            )

        if record.exc_info and record.exc_info[1]:
            entry["exception"] = self._sanitize(
                self.formatException(record.exc_info)
            )

        return json.dumps(entry, default=str)

    @staticmethod
    def _sanitize(text: str) -> str:
        """Remove sensitive values from log text."""
        return _SENSITIVE_PATTERNS.sub("[REDACTED]", text)


def configure_logging(level: str = "INFO") -> None:
    """Configure the root logger with JSON formatting.

    Parameters
    ----------
    level:
        Log level string (DEBUG, INFO, WARNING, ERROR, CRITICAL).
    """
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    root.handlers.clear()

    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())
    handler.addFilter(RequestIdFilter())
    root.addHandler(handler)
