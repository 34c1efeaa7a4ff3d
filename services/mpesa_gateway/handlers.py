import logging
from typing import Any, Dict, Optional

from sqlalchemy.orm import sessionmaker

from services.mpesa_gateway.repository import MpesaRepository
from services.mpesa_gateway.stk_push import StkPushSimulator, StkResult
from shared.database import session_scope
from shared.events import PaymentChargeRequestedEvent, PaymentFailedEvent, PaymentSucceededEvent
from shared.kafka_client import BaseKafkaProducer

logger = logging.getLogger(__name__)

SUCCEEDED_TOPIC = "payment.succeeded"
FAILED_TOPIC = "payment.failed"


class ChargeRequestHandler:
    """Turns payment.charge_requested into a pending STK push."""

    def __init__(self, session_factory: sessionmaker, simulator: StkPushSimulator):
        self.session_factory = session_factory
        self.simulator = simulator

    def handle(self, event: PaymentChargeRequestedEvent) -> Optional[str]:
        """Returns the checkout request id, or None when the charge was already requested."""
        with session_scope(self.session_factory) as db:
            repo = MpesaRepository(db)
            existing = repo.find_by_pos_transaction_id(event.transaction_id)
            if existing is not None:
                logger.info(
                    f"STK push already sent for {event.transaction_id}, skipping",
                    extra={"transaction_id": event.transaction_id},
                )
                return None

            merchant_request_id, checkout_request_id = self.simulator.request()
            repo.create_pending(
                pos_transaction_id=event.transaction_id,
                merchant_request_id=merchant_request_id,
                checkout_request_id=checkout_request_id,
                phone_number=event.phone_number,
                amount=event.amount,
                account_reference=event.account_reference,
                transaction_desc=event.description,
            )

        logger.info(
            f"STK push sent to {event.phone_number} for KES {event.amount}",
            extra={"transaction_id": event.transaction_id},
        )
        return checkout_request_id


class StkOutcomeHandler:
    """Applies an STK result and tells the POS service how the charge ended."""

    def __init__(self, session_factory: sessionmaker, producer: BaseKafkaProducer):
        self.session_factory = session_factory
        self.producer = producer

    def apply(self, result: StkResult, callback_data: Optional[Dict[str, Any]] = None) -> bool:
        """Returns False for an unknown or already settled checkout request."""
        with session_scope(self.session_factory) as db:
            repo = MpesaRepository(db)
            if not repo.record_result(result, callback_data):
                logger.info(f"Duplicate or unknown STK result for {result.checkout_request_id} ignored")
                return False

            record = repo.find_by_checkout_request_id(result.checkout_request_id)
            transaction_id = record.pos_transaction_id

            # A publish error rolls the recorded result back.
            if result.succeeded:
                self.producer.publish(
                    SUCCEEDED_TOPIC,
                    PaymentSucceededEvent(
                        correlation_id=transaction_id,
                        transaction_id=transaction_id,
                        external_payment_ref=result.receipt_number or result.checkout_request_id,
                    ),
                )
            else:
                self.producer.publish(
                    FAILED_TOPIC,
                    PaymentFailedEvent(
                        correlation_id=transaction_id,
                        transaction_id=transaction_id,
                        error_detail=result.result_desc,
                    ),
                )

        logger.info(
            f"STK result {result.result_code} applied to {transaction_id}",
            extra={"transaction_id": transaction_id},
        )
        return True
