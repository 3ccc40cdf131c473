"""Configure checkout logging using the Python standard library.

``configure_logging`` installs a JSON formatter on a console handler and a
rotating file handler.  Records may carry ``request_id`` (the order
reference) and an ``extra`` dict whose keys are merged into the JSON line,
e.g. ``logger.info("Order dispatched", extra={"request_id": ref,
"extra": {"method": "push"}})``.
"""

import json
import logging
import logging.handlers
import os
from datetime import datetime, UTC
from typing import Optional

LOG_FILE_NAME = "pharmacy_checkout.log"


class JsonFormatter(logging.Formatter):
    """Format log records as one JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        log_record = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        request_id = getattr(record, "request_id", None)
        if request_id is not None:
            log_record["order_reference"] = request_id
        extra = getattr(record, "extra", None)
        if isinstance(extra, dict):
            for key, value in extra.items():
                log_record.setdefault(key, value)
        if record.exc_info:
            log_record["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_record, default=str)


def configure_logging(log_dir: Optional[str] = None, level: int = logging.INFO, console: bool = True) -> None:
    """Configure the root logger with JSON output.

    Args:
        log_dir: Directory for ``pharmacy_checkout.log``.  Defaults to
            ``PHARMACY_LOG_DIR`` or ``logs``; created if missing.
        level: Root logger level.
        console: Also log to stderr.
    """
    log_dir = log_dir or os.environ.get("PHARMACY_LOG_DIR", "logs")
    os.makedirs(log_dir, exist_ok=True)
    logger = logging.getLogger()
    logger.setLevel(level)
    # Replace handlers so repeated calls do not duplicate output
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    formatter = JsonFormatter()
    if console:
        console_handler = logging.StreamHandler()
        console_handler.setFormatter(formatter)
        console_handler.setLevel(level)
        logger.addHandler(console_handler)
    file_handler = logging.handlers.RotatingFileHandler(
        filename=os.path.join(log_dir, LOG_FILE_NAME),
        maxBytes=5 * 1024 * 1024,
        backupCount=3,
        encoding="utf-8",
    )
    file_handler.setFormatter(formatter)
    file_handler.setLevel(level)
    logger.addHandler(file_handler)
