"""
payment_events.py - Inbound M-Pesa outcome handling

CONSUMED:
    - payment.succeeded: settles the transaction, resets the till
    - payment.failed: fails the transaction, keeps the cart

IDEMPOTENCY:
    Two layers. The event id is recorded in processed_events once handled, so
    a Kafka redelivery of the same message is skipped outright. A different
    message about the same transaction (gateway retry, callback after the
    simulated result) reaches the engine, where the conditional status update
    on transaction_id lets only the first outcome through.
"""

import logging

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from services.pos_service.checkout import CheckoutEngine
from services.pos_service.repository import TransactionRepository
from shared.database import session_scope
from shared.events import BaseEvent, PaymentFailedEvent, PaymentSucceededEvent

logger = logging.getLogger(__name__)

PAYMENT_TOPICS = ["payment.succeeded", "payment.failed"]


class PaymentEventHandler:
    """Routes gateway outcome events to the checkout engine."""

    def __init__(self, engine: CheckoutEngine, session_factory: sessionmaker):
        self.engine = engine
        self.session_factory = session_factory

    def handle(self, event: BaseEvent) -> bool:
        """Returns True when the event changed a transaction."""
        with session_scope(self.session_factory) as db:
            if TransactionRepository(db).is_event_processed(event.event_id):
                logger.info(
                    f"Event {event.event_id} already processed",
                    extra={"event_type": event.event_type, "correlation_id": event.correlation_id},
                )
                return False

        if isinstance(event, PaymentSucceededEvent):
            applied = self.engine.handle_payment_succeeded(event.transaction_id, event.external_payment_ref)
        elif isinstance(event, PaymentFailedEvent):
            applied = self.engine.handle_payment_failed(event.transaction_id, event.error_detail)
        else:
            logger.warning(f"Ignoring unexpected event type {event.event_type}")
            return False

        if not applied:
            logger.info(
                f"Duplicate or late {event.event_type} for {event.transaction_id} ignored",
                extra={"event_type": event.event_type, "transaction_id": event.transaction_id},
            )

        try:
            with session_scope(self.session_factory) as db:
                TransactionRepository(db).mark_event_processed(event.event_id, event.event_type)
        except IntegrityError:
            logger.info(
                f"Event {event.event_id} recorded by a concurrent delivery",
                extra={"event_type": event.event_type, "correlation_id": event.correlation_id},
            )
        return applied
