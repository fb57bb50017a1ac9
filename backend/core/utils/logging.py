"""
JSON logger for events that operators search on: failed side effects,
database errors and concurrent modifications.
"""
import logging
import json
from datetime import datetime, timezone
from typing import Any, Dict, Optional

SERVICE_NAME = "storefront-orders"


class StructuredLogger:
    """
    Emits one JSON document per event through a stdlib logger, so the
    handlers installed by setup_logging decide where it ends up.
    """

    def __init__(self, name: str = "storefront.events"):
        self.logger = logging.getLogger(name)

    @staticmethod
    def _entry(
        level: str,
        message: str,
        user_id: Optional[str],
        endpoint: Optional[str],
        metadata: Optional[Dict[str, Any]],
        exception: Optional[BaseException],
    ) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "service": SERVICE_NAME,
            "level": level,
            "message": message,
        }
        if user_id:
            entry["user_id"] = user_id
        if endpoint:
            entry["endpoint"] = endpoint
        if metadata:
            entry["metadata"] = metadata
        if exception is not None:
            entry["exception"] = {
                "type": type(exception).__name__,
                # APIException carries its text in .message
                "message": getattr(exception, "message", None) or str(exception),
            }
        return json.dumps(entry, default=str)

    def _log(self, level: int, message: str, user_id: Optional[str] = None,
             endpoint: Optional[str] = None, metadata: Optional[Dict[str, Any]] = None,
             exception: Optional[BaseException] = None):
        if self.logger.isEnabledFor(level):
            self.logger.log(level, self._entry(
                logging.getLevelName(level), message, user_id, endpoint, metadata, exception
            ))

    def info(self, message: str, **fields):
        self._log(logging.INFO, message, **fields)

    def warning(self, message: str, **fields):
        self._log(logging.WARNING, message, **fields)

    def error(self, message: str, **fields):
        self._log(logging.ERROR, message, **fields)

    def critical(self, message: str, **fields):
        self._log(logging.CRITICAL, message, **fields)


# Create global logger instance
structured_logger = StructuredLogger()
