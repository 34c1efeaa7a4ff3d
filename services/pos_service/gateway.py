import logging
import re
from decimal import Decimal
from typing import Optional

from services.pos_service.errors import GatewayError
from shared.events import PaymentChargeRequestedEvent
from shared.kafka_client import BaseKafkaProducer

logger = logging.getLogger(__name__)

CHARGE_REQUESTED_TOPIC = "payment.charge_requested"

_MSISDN = re.compile(r"^254[17]\d{8}$")


def normalize_phone(phone_number: Optional[str]) -> str:
    """
    Normalize a Kenyan mobile number to the 2547XXXXXXXX / 2541XXXXXXXX form
    the M-Pesa STK push expects. Raises GatewayError if it cannot be read.
    """
    if not phone_number or not phone_number.strip():
        raise GatewayError("Customer phone number is required for M-Pesa payments")

    digits = re.sub(r"[\s\-()]", "", phone_number.strip())
    if digits.startswith("+"):
        digits = digits[1:]
    if digits.startswith("0") and len(digits) == 10:
        digits = f"254{digits[1:]}"
    elif len(digits) == 9 and digits[0] in "17":
        digits = f"254{digits}"

    if not _MSISDN.match(digits):
        raise GatewayError(f"Invalid M-Pesa phone number: {phone_number}")
    return digits


class MobileMoneyGateway:
    """
    Starts M-Pesa charges by publishing payment.charge_requested.

    The call returns as soon as the request is on the event channel; the
    outcome comes back later as payment.succeeded or payment.failed.
    """

    def __init__(self, producer: BaseKafkaProducer, account_reference: str = "SPA-POS"):
        self.producer = producer
        self.account_reference = account_reference

    def initiate_charge(self, transaction_id: str, amount: Decimal, phone_number: Optional[str]) -> None:
        msisdn = normalize_phone(phone_number)
        if amount <= 0:
            raise GatewayError(f"Cannot charge a non-positive amount ({amount})")

        event = PaymentChargeRequestedEvent(
            correlation_id=transaction_id,
            transaction_id=transaction_id,
            amount=amount,
            phone_number=msisdn,
            account_reference=self.account_reference,
            description=f"Payment for {transaction_id}",
        )
        try:
            self.producer.publish(CHARGE_REQUESTED_TOPIC, event)
        except Exception as e:
            raise GatewayError(f"Could not reach M-Pesa gateway: {e}") from e

        logger.info(
            f"Requested M-Pesa charge of {amount} from {msisdn}",
            extra={"transaction_id": transaction_id, "correlation_id": transaction_id},
        )
