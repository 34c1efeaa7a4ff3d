"""
logging_config.py - Centralized JSON Logging Configuration

PURPOSE:
    Provides structured JSON logging for every service with timezone-aware
    timestamps, correlation tracking, and service-specific context injection.

JSON LOG FIELDS:
    - timestamp: ISO 8601 in the business timezone (e.g. "2026-10-19T14:02:11.120311+03:00")
    - level: Log level (INFO, ERROR, WARNING, DEBUG, CRITICAL)
    - logger: Module where the log originated (e.g. "services.pos_service.checkout")
    - message: The actual log message
    - service_name: Name of the service (injected automatically)
    - correlation_id / event_type / event_id: Kafka tracing context, when passed via extra=
    - transaction_id / terminal_id: POS context, when passed via extra=
    - exception: Full stack trace (only when exc_info is set)

USAGE:
    from shared.logging_config import setup_logging
    setup_logging("pos-service", level="INFO")

    logger = logging.getLogger(__name__)
    logger.info("Checkout submitted", extra={"transaction_id": "TXN-...", "terminal_id": "till-1"})

EXAMPLE JSON OUTPUT:
    {
        "timestamp": "2026-10-19T14:02:11.120311+03:00",
        "level": "INFO",
        "logger": "services.pos_service.checkout",
        "message": "Transaction TXN-1A2B3C4D5E6F completed",
        "service_name": "pos-service",
        "transaction_id": "TXN-1A2B3C4D5E6F",
        "terminal_id": "till-1"
    }
"""

import json
import logging
import sys
from datetime import datetime
from typing import Any, Dict
from zoneinfo import ZoneInfo

CONTEXT_FIELDS = (
    "service_name",
    "correlation_id",
    "event_type",
    "event_id",
    "transaction_id",
    "terminal_id",
)


class JsonFormatter(logging.Formatter):
    """Custom formatter that outputs JSON logs with correlation context."""

    def __init__(self, timezone: str = "Africa/Nairobi"):
        super().__init__()
        self.tz = ZoneInfo(timezone)

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_data: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, self.tz).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for field in CONTEXT_FIELDS:
            if hasattr(record, field):
                log_data[field] = getattr(record, field)

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


class ServiceFilter(logging.Filter):
    """Stamps every record with the owning service's name."""

    def __init__(self, service_name: str):
        super().__init__()
        self.service_name = service_name

    def filter(self, record: logging.LogRecord) -> bool:
        record.service_name = self.service_name
        return True


def setup_logging(service_name: str, level: str = "INFO", timezone: str = "Africa/Nairobi") -> None:
    """Setup JSON logging for a service. Safe to call more than once."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter(timezone))
    handler.addFilter(ServiceFilter(service_name))

    root = logging.getLogger()
    root.setLevel(level)
    for existing in list(root.handlers):
        if isinstance(existing.formatter, JsonFormatter):
            root.removeHandler(existing)
    root.addHandler(handler)
