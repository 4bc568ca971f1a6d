"""
Structured Logging Configuration Module

Ledger loggers live under ``ledger.<module>`` and emit one JSON object per
record. Action records carry who did what to which record; anything else
goes in ``extra``.
"""

import logging
import json
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from .config import LedgerConfig, get_config

# Record attributes copied into the JSON entry when set
CONTEXT_FIELDS = ("correlation_id", "actor_id", "action", "resource", "extra")

TEXT_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


class JSONFormatter(logging.Formatter):
    """One JSON object per record, keys with no value omitted"""

    def format(self, record):
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for name in CONTEXT_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                entry[name] = value

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


def setup_logging(level: Optional[str] = None, logger_name: str = "ledger",
                  config: Optional[LedgerConfig] = None) -> logging.Logger:
    """
    Configure the ledger logger tree from settings.

    Args:
        level: Overrides ``config.log_level``
        logger_name: Root of the tree to configure
        config: Settings for level, format and log file

    Returns:
        The configured logger
    """
    config = config or get_config()
    logger = logging.getLogger(logger_name)

    for handler in logger.handlers[:]:
        logger.removeHandler(handler)
        handler.close()

    handler = logging.FileHandler(config.log_file) if config.log_file else logging.StreamHandler()
    handler.setFormatter(JSONFormatter() if config.log_format == "json" else logging.Formatter(TEXT_FORMAT))

    logger.addHandler(handler)
    logger.setLevel((level or config.log_level).upper())
    logger.propagate = False

    return logger


def get_logger(name: str = "ledger") -> logging.Logger:
    return logging.getLogger(name)


def log_action(logger: logging.Logger, level: str, message: str,
               actor_id: Optional[str] = None, action: Optional[str] = None,
               resource: Optional[str] = None, correlation_id: Optional[str] = None,
               extra: Optional[dict] = None):
    """
    Log a ledger action with structured context.

    Args:
        logger: Logger to emit on
        level: Level name (info, warning, ...)
        message: Human-readable message
        actor_id: User who performed the action
        action: Operation name, e.g. ``record_payment``
        resource: Record acted on, as ``kind:id``
        correlation_id: Request id supplied by the caller
        extra: Additional structured data
    """
    context = {
        "actor_id": actor_id,
        "action": action,
        "resource": resource,
        "correlation_id": correlation_id,
        "extra": extra,
    }
    logger.log(logging.getLevelName(level.upper()), message,
               extra={key: value for key, value in context.items() if value})
