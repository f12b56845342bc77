from __future__ import annotations

from datetime import datetime, timezone
import json
import logging

_CONTEXT_FIELDS = ("run_id", "stage", "pipeline_id")


class SafeFormatter(logging.Formatter):
    """Formatter that tolerates records without the context fields."""

    def format(self, record: logging.LogRecord) -> str:
        missing = [key for key in _CONTEXT_FIELDS if not hasattr(record, key)]
        for key in missing:
            setattr(record, key, "-")
        try:
            return super().format(record)
        finally:
            # other handlers see the record as it was logged
            for key in missing:
                delattr(record, key)


class ColorFormatter(SafeFormatter):
    COLORS = {
        logging.DEBUG: "\033[36m",  # cyan
        logging.INFO: "\033[32m",  # green
        logging.WARNING: "\033[33m",  # yellow
        logging.ERROR: "\033[31m",  # red
        logging.CRITICAL: "\033[35m",  # magenta
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        text = super().format(record)
        color = self.COLORS.get(record.levelno)
        return f"{color}{text}{self.RESET}" if color else text


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        for key in _CONTEXT_FIELDS:
            value = getattr(record, key, None)
            if value is not None:
                payload[key] = value
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)
