"""Custom logging formatters for structured logging output."""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict

CORE_FIELDS = ("timestamp", "level", "logger", "module", "message", "exc_info", "stack_info")


class StructuredJSONFormatter(logging.Formatter):
    """
    Render a record as one JSON object per line.

    The ``context`` dict attached by ``AppLogger`` is merged at the top level;
    a key that would shadow a core field is kept as ``context_<key>``.
    """

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "module": record.module,
            "message": record.getMessage(),
        }

        context = getattr(record, "context", None)
        if isinstance(context, dict):
            for key, value in context.items():
                payload[f"context_{key}" if key in CORE_FIELDS else key] = value

        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        if record.stack_info:
            payload["stack_info"] = self.formatStack(record.stack_info)

        return json.dumps(payload, default=str)
