import logging
from enum import Enum
from typing import Any, Dict, Optional

from shared.events import NotificationSendEvent, ReceiptPrintRequestedEvent
from shared.kafka_client import BaseKafkaProducer

logger = logging.getLogger(__name__)

NOTIFICATION_TOPIC = "notification.send"
RECEIPT_PRINT_TOPIC = "receipt.print_requested"


class NotificationLevel(str, Enum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    DANGER = "danger"


class TerminalNotifier:
    """Fire-and-forget notifications for the till; publish failures are only logged."""

    def __init__(self, producer: BaseKafkaProducer):
        self.producer = producer

    def notify(self, level: NotificationLevel, title: str, body: str, terminal_id: Optional[str] = None) -> None:
        event = NotificationSendEvent(
            correlation_id=terminal_id or "pos",
            level=NotificationLevel(level).value,
            title=title,
            body=body,
            terminal_id=terminal_id,
        )
        try:
            self.producer.publish(NOTIFICATION_TOPIC, event)
        except Exception as e:
            logger.error(f"Failed to send notification '{title}': {e}", extra={"terminal_id": terminal_id})

    def request_receipt_print(
        self,
        transaction_id: str,
        receipt_number: str,
        terminal_id: Optional[str] = None,
        customer_email: Optional[str] = None,
        receipt_data: Optional[Dict[str, Any]] = None,
    ) -> None:
        event = ReceiptPrintRequestedEvent(
            correlation_id=transaction_id,
            transaction_id=transaction_id,
            receipt_number=receipt_number,
            terminal_id=terminal_id,
            customer_email=customer_email,
            receipt_data=receipt_data or {},
        )
        try:
            self.producer.publish(RECEIPT_PRINT_TOPIC, event)
        except Exception as e:
            logger.error(
                f"Failed to request receipt {receipt_number}: {e}",
                extra={"transaction_id": transaction_id, "terminal_id": terminal_id},
            )
