import logging
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from services.mpesa_gateway.models import MpesaTransaction
from services.mpesa_gateway.stk_push import MpesaStatus, StkResult, status_for_result_code
from shared.database import utcnow

logger = logging.getLogger(__name__)


class MpesaRepository:
    """Repository for STK push records."""

    def __init__(self, db: Session):
        """Initialize with database session."""
        self.db = db

    def create_pending(
        self,
        pos_transaction_id: str,
        merchant_request_id: str,
        checkout_request_id: str,
        phone_number: str,
        amount: Decimal,
        account_reference: Optional[str] = None,
        transaction_desc: Optional[str] = None,
    ) -> MpesaTransaction:
        """Record an STK push that is waiting for the customer."""
        record = MpesaTransaction(
            pos_transaction_id=pos_transaction_id,
            merchant_request_id=merchant_request_id,
            checkout_request_id=checkout_request_id,
            phone_number=phone_number,
            amount=amount,
            account_reference=account_reference,
            transaction_desc=transaction_desc,
            status=MpesaStatus.PENDING.value,
        )
        self.db.add(record)
        self.db.flush()
        logger.info(
            f"Created STK push {checkout_request_id} for {pos_transaction_id}",
            extra={"transaction_id": pos_transaction_id},
        )
        return record

    def find_by_checkout_request_id(self, checkout_request_id: str) -> Optional[MpesaTransaction]:
        return (
            self.db.query(MpesaTransaction)
            .filter(MpesaTransaction.checkout_request_id == checkout_request_id)
            .first()
        )

    def find_by_pos_transaction_id(self, pos_transaction_id: str) -> Optional[MpesaTransaction]:
        return (
            self.db.query(MpesaTransaction)
            .filter(MpesaTransaction.pos_transaction_id == pos_transaction_id)
            .first()
        )

    def record_result(self, result: StkResult, callback_data: Optional[Dict[str, Any]] = None) -> bool:
        """
        Move a pending STK push to its final status.

        Returns False when the push is unknown or already settled, so a
        repeated callback changes nothing.
        """
        values = {
            MpesaTransaction.status: status_for_result_code(result.result_code).value,
            MpesaTransaction.result_code: result.result_code,
            MpesaTransaction.result_desc: result.result_desc,
            MpesaTransaction.mpesa_receipt_number: result.receipt_number,
            MpesaTransaction.transaction_date: result.transaction_date,
            MpesaTransaction.updated_at: utcnow(),
        }
        if callback_data is not None:
            values[MpesaTransaction.callback_data] = callback_data

        updated = (
            self.db.query(MpesaTransaction)
            .filter(
                MpesaTransaction.checkout_request_id == result.checkout_request_id,
                MpesaTransaction.status == MpesaStatus.PENDING.value,
            )
            .update(values, synchronize_session=False)
        )
        self.db.flush()
        if updated:
            self.db.expire_all()
        return bool(updated)
