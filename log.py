"""Logging setup for the CLI, workers and dashboard."""

import json
import logging
from datetime import datetime, timezone


class JSONFormatter(logging.Formatter):
    """Format logs as JSON for better parsing."""

    def format(self, record):
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_data)


def setup_logging(level="INFO", json_logs: bool = False) -> logging.Logger:
    """Configures the root logger, replacing any handler an earlier call installed."""
    root = logging.getLogger()
    root.setLevel(level.upper() if isinstance(level, str) else level)

    for old in [h for h in root.handlers if getattr(h, "_queuectl", False)]:
        root.removeHandler(old)

    handler = logging.StreamHandler()
    handler._queuectl = True
    root.addHandler(handler)

    if json_logs:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    return root
