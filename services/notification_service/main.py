"""
notification_service/main.py - Receipt Email Microservice

PURPOSE:
    Emails receipts to customers once the POS service settles a transaction.
    Receipts are only emailed when the customer left an email address; the
    till prints its own copy from the same event.

API ENDPOINTS:
    GET /health - Health check

KAFKA EVENTS CONSUMED:
    - receipt.print_requested: format the receipt and email it

EMAIL SERVER:
    - Mailpit SMTP server (development/testing)
    - Port: 1025
    - Web UI: http://localhost:8025

USAGE:
    python -m services.notification_service.main
"""

import logging
import os
import threading
from contextlib import asynccontextmanager

from fastapi import FastAPI
from pydantic_settings import BaseSettings

from services.notification_service.email_sender import ReceiptEmailSender
from services.notification_service.receipt_formatter import format_receipt, receipt_subject
from shared.events import ReceiptPrintRequestedEvent
from shared.kafka_client import BaseKafkaConsumer
from shared.logging_config import setup_logging
from shared.topic_initializer import create_topics


class Settings(BaseSettings):
    """Application settings."""

    kafka_bootstrap_servers: str = os.getenv("KAFKA_BOOTSTRAP_SERVERS", "localhost:9092")
    smtp_host: str = os.getenv("SMTP_HOST", "localhost")
    smtp_port: int = int(os.getenv("SMTP_PORT", "1025"))
    smtp_security: str = os.getenv("SMTP_SECURITY", "none")  # none, starttls, ssl
    smtp_username: str = os.getenv("SMTP_USERNAME", "")
    smtp_password: str = os.getenv("SMTP_PASSWORD", "")
    smtp_timeout_seconds: int = int(os.getenv("SMTP_TIMEOUT_SECONDS", "30"))
    receipt_sender: str = os.getenv("RECEIPT_SENDER", "receipts@spa-pos.local")
    notification_service_port: int = int(os.getenv("NOTIFICATION_SERVICE_PORT", "8012"))
    log_level: str = os.getenv("LOG_LEVEL", "INFO")


settings = Settings()

setup_logging("notification-service", level=settings.log_level)
logger = logging.getLogger(__name__)

receipt_consumer: BaseKafkaConsumer = None


class ReceiptMailer:
    """Emails the receipt carried by a receipt.print_requested event."""

    def __init__(self, email_sender: ReceiptEmailSender):
        self.email_sender = email_sender

    def handle(self, event: ReceiptPrintRequestedEvent) -> bool:
        if not event.customer_email:
            logger.info(
                f"No email on file for receipt {event.receipt_number}, print only",
                extra={"transaction_id": event.transaction_id},
            )
            return False

        return self.email_sender.send_receipt(
            event.customer_email,
            receipt_subject(event.receipt_number, event.receipt_data),
            format_receipt(event.receipt_number, event.receipt_data),
            event.receipt_number,
        )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage app lifecycle."""
    global receipt_consumer

    logger.info("Starting Notification Service...")

    try:
        create_topics(settings.kafka_bootstrap_servers)
        logger.info("Kafka topics initialized")
    except Exception as e:
        logger.error(f"Failed to initialize Kafka topics: {e}")
        raise

    sender = ReceiptEmailSender(
        settings.smtp_host,
        settings.smtp_port,
        sender=settings.receipt_sender,
        security=settings.smtp_security,
        username=settings.smtp_username or None,
        password=settings.smtp_password or None,
        timeout=settings.smtp_timeout_seconds,
    )
    mailer = ReceiptMailer(sender)
    receipt_consumer = BaseKafkaConsumer(
        bootstrap_servers=settings.kafka_bootstrap_servers,
        group_id="notification-service-group",
        topics=["receipt.print_requested"],
    )

    def consume_receipts():
        try:
            receipt_consumer.consume(mailer.handle)
        except Exception as e:
            logger.error(f"Error in receipt consumer: {e}")

    threading.Thread(target=consume_receipts, daemon=True).start()
    logger.info("Receipt consumer thread started")

    yield

    logger.info("Shutting down Notification Service...")
    if receipt_consumer:
        receipt_consumer.stop()


app = FastAPI(title="Notification Service", version="1.0.0", lifespan=lifespan)


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {
        "status": "ok",
        "service": "notification-service",
        "version": "1.0.0",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=settings.notification_service_port)
