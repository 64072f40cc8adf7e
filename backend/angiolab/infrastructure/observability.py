"""Structured Logging — JSON formatter and setup for production observability.

Invariants:
    - All logs include timestamp, level, logger name, and message
    - Extra fields (patient_id, table_name, backup_name, error_code, ...) surfaced when present
    - JSON format in production, human-readable in development (console only)
    - With a log_dir: angio-lab.log gets every record, error.log only ERROR and above,
      both JSON, both rotated at max_bytes keeping backup_count files
    - setup_logging is idempotent: repeated lifespans do not stack handlers

Design Decisions:
    - JSONFormatter over third-party libs: zero dependencies, full control
    - setup_logging called once on startup via lifespan
"""

import logging
import json
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path

MAIN_LOG_NAME = "angio-lab.log"
ERROR_LOG_NAME = "error.log"

_EXTRA_KEYS = (
    "patient_id", "procedure_id", "table_name", "record_id",
    "backup_kind", "backup_name", "error_code", "operation", "path",
)


class JSONFormatter(logging.Formatter):
    """Format logs as JSON for structured logging in production."""

    def format(self, record: logging.LogRecord) -> str:
        log = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key in _EXTRA_KEYS:
            val = record.__dict__.get(key)
            if val is not None:
                log[key] = val
        if record.exc_info:
            log["exception"] = self.formatException(record.exc_info)
        return json.dumps(log, ensure_ascii=False, default=str)


def setup_logging(
    level: str = "INFO",
    fmt: str = "json",
    log_dir: Path | None = None,
    max_bytes: int = 10 * 1024 * 1024,
    backup_count: int = 5,
):
    """Configure logging for the application."""
    for existing in list(logging.root.handlers):
        if getattr(existing, "_angiolab", False):
            logging.root.removeHandler(existing)
            existing.close()

    console = logging.StreamHandler()
    if fmt == "json":
        console.setFormatter(JSONFormatter())
    else:
        console.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)s %(name)s: %(message)s",
        ))
    handlers: list[logging.Handler] = [console]

    if log_dir is not None:
        log_dir = Path(log_dir)
        log_dir.mkdir(parents=True, exist_ok=True)
        main_file = RotatingFileHandler(
            log_dir / MAIN_LOG_NAME, maxBytes=max_bytes,
            backupCount=backup_count, encoding="utf-8",
        )
        error_file = RotatingFileHandler(
            log_dir / ERROR_LOG_NAME, maxBytes=max_bytes,
            backupCount=backup_count, encoding="utf-8",
        )
        error_file.setLevel(logging.ERROR)
        for handler in (main_file, error_file):
            handler.setFormatter(JSONFormatter())
            handlers.append(handler)

    for handler in handlers:
        handler._angiolab = True
        logging.root.addHandler(handler)
    logging.root.setLevel(getattr(logging, level.upper(), logging.INFO))
