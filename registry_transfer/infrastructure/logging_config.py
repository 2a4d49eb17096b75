"""Structured logging configuration for transfer runs.

This module provides structured logging with JSON formatting for scheduled
(production) runs and human-readable formatting for interactive use.

Security Impact:
    - Failed submissions are logged with their payload; log sinks must be PHI-safe
    - Log levels keep per-instance detail at DEBUG
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict

logger = logging.getLogger(__name__)


class StructuredFormatter(logging.Formatter):
    """Structured JSON formatter: one JSON object per log line."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON.

        Parameters:
            record: Log record to format

        Returns:
            JSON string representation of log record
        """
        log_data: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        if hasattr(record, "extra_fields"):
            log_data.update(record.extra_fields)

        if hasattr(record, "run_id"):
            log_data["run_id"] = record.run_id

        return json.dumps(log_data, ensure_ascii=False)


def setup_logging(use_json: bool = False, log_level: str = "INFO") -> None:
    """Setup application logging.

    Parameters:
        use_json: Use JSON formatting (for scheduled runs)
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    level = getattr(logging, log_level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)

    if use_json:
        formatter = StructuredFormatter()
    else:
        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )

    handler.setFormatter(formatter)
    root_logger.addHandler(handler)

    # Request-level chatter from the HTTP stack
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


class RunContextFilter(logging.Filter):
    """Stamps the current run id on every record passing through a handler."""

    def __init__(self, run_id: str):
        super().__init__()
        self.run_id = run_id

    def filter(self, record: logging.LogRecord) -> bool:
        record.run_id = self.run_id
        return True
