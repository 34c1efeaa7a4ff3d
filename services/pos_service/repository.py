import logging
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional
from uuid import uuid4

from sqlalchemy import and_, func
from sqlalchemy.orm import Session

from services.pos_service.cart import CartLine, PaymentMethod, PaymentStatus, TransactionKind
from services.pos_service.models import PosReceipt, PosTransaction, PosTransactionItem, ProcessedEvent
from shared.database import utcnow

logger = logging.getLogger(__name__)


class TransactionRepository:
    """Durable store for POS transactions, their line items and receipts."""

    def __init__(self, db: Session):
        """Initialize with database session."""
        self.db = db

    def next_transaction_number(self, business_date: date) -> str:
        """POS + YYYYMMDD + 4-digit sequence of that day's transactions."""
        count = (
            self.db.query(func.count(PosTransaction.id))
            .filter(PosTransaction.business_date == business_date)
            .scalar()
        )
        return f"POS{business_date:%Y%m%d}{count + 1:04d}"

    def create(
        self,
        *,
        terminal_id: str,
        branch_id: int,
        staff_id: int,
        business_date: date,
        transaction_kind: TransactionKind,
        subtotal: Decimal,
        discount_amount: Decimal,
        tax_amount: Decimal,
        tip_amount: Decimal,
        total_amount: Decimal,
        payment_method: PaymentMethod,
        client_id: Optional[int] = None,
        customer_info: Optional[Dict[str, Any]] = None,
    ) -> PosTransaction:
        """Create a transaction in PROCESSING state."""
        transaction_id = f"TXN-{uuid4().hex[:12].upper()}"
        transaction = PosTransaction(
            transaction_id=transaction_id,
            transaction_number=self.next_transaction_number(business_date),
            business_date=business_date,
            terminal_id=terminal_id,
            branch_id=branch_id,
            staff_id=staff_id,
            client_id=client_id,
            customer_info=customer_info,
            transaction_kind=TransactionKind(transaction_kind).value,
            subtotal=subtotal,
            discount_amount=discount_amount,
            tax_amount=tax_amount,
            tip_amount=tip_amount,
            total_amount=total_amount,
            payment_method=PaymentMethod(payment_method).value,
            payment_status=PaymentStatus.PROCESSING.value,
        )
        self.db.add(transaction)
        self.db.flush()
        logger.info(
            f"Created transaction {transaction_id} ({transaction.transaction_number}) for {total_amount}",
            extra={"transaction_id": transaction_id, "terminal_id": terminal_id},
        )
        return transaction

    def append_line_items(self, transaction_id: str, lines: Iterable[CartLine]) -> List[PosTransactionItem]:
        """Snapshot cart lines onto an existing transaction."""
        transaction = self.find_by_id(transaction_id)
        if transaction is None:
            raise LookupError(f"Transaction {transaction_id} not found")

        items = []
        for line in lines:
            item = PosTransactionItem(
                transaction=transaction,
                item_type=line.item_kind.value,
                item_id=line.item_id,
                item_name=line.name,
                item_description=line.description,
                quantity=line.quantity,
                unit_price=line.unit_price,
                total_price=line.line_total,
                assigned_staff_id=line.assigned_staff_id,
                duration_minutes=line.duration_minutes,
            )
            self.db.add(item)
            items.append(item)
        self.db.flush()
        logger.info(f"Added {len(items)} line items to {transaction_id}", extra={"transaction_id": transaction_id})
        return items

    def find_by_id(self, transaction_id: str) -> Optional[PosTransaction]:
        return self.db.query(PosTransaction).filter(PosTransaction.transaction_id == transaction_id).first()

    def update_status(
        self,
        transaction_id: str,
        status: PaymentStatus,
        external_ref: Optional[str] = None,
        reason: Optional[str] = None,
        expected: PaymentStatus = PaymentStatus.PROCESSING,
    ) -> bool:
        """
        Move a transaction from `expected` to `status`.

        The row is only touched when it is still in `expected`, so concurrent
        or repeated deliveries of the same gateway outcome race on this single
        UPDATE and exactly one of them wins. Returns True for the winner.
        """
        now = utcnow()
        values = {
            PosTransaction.payment_status: PaymentStatus(status).value,
            PosTransaction.updated_at: now,
        }
        if status == PaymentStatus.COMPLETED:
            values[PosTransaction.completed_at] = now
        if external_ref is not None:
            values[PosTransaction.external_payment_ref] = external_ref
        if reason is not None:
            values[PosTransaction.failure_reason] = reason

        updated = (
            self.db.query(PosTransaction)
            .filter(
                and_(
                    PosTransaction.transaction_id == transaction_id,
                    PosTransaction.payment_status == PaymentStatus(expected).value,
                )
            )
            .update(values, synchronize_session=False)
        )
        self.db.flush()

        if updated == 0:
            logger.info(
                f"Transaction {transaction_id} not in {expected.value}, status {status.value} ignored",
                extra={"transaction_id": transaction_id},
            )
            return False

        self.db.expire_all()
        logger.info(f"Updated transaction {transaction_id} status to {status.value}", extra={"transaction_id": transaction_id})
        return True

    def create_receipt(self, transaction: PosTransaction) -> PosReceipt:
        """Digital receipt: RCP + YYYYMMDD + zero-padded transaction row id."""
        if transaction.receipt is not None:
            return transaction.receipt

        receipt = PosReceipt(
            transaction=transaction,
            receipt_number=f"RCP{transaction.business_date:%Y%m%d}{transaction.id:06d}",
            receipt_type="digital",
            customer_email=transaction.customer_email,
            customer_phone=transaction.customer_phone,
            receipt_data=build_receipt_data(transaction),
        )
        self.db.add(receipt)
        self.db.flush()
        logger.info(f"Generated receipt {receipt.receipt_number}", extra={"transaction_id": transaction.transaction_id})
        return receipt

    def list_stale_processing(self, cutoff: datetime, limit: int = 50) -> List[PosTransaction]:
        """PROCESSING transactions created before `cutoff` (naive UTC)."""
        return (
            self.db.query(PosTransaction)
            .filter(
                PosTransaction.payment_status == PaymentStatus.PROCESSING.value,
                PosTransaction.created_at <= cutoff,
            )
            .order_by(PosTransaction.created_at)
            .limit(limit)
            .all()
        )

    def daily_summary(self, branch_id: int, business_date: date) -> Dict[str, Any]:
        """End-of-day figures for one branch."""
        transactions = (
            self.db.query(PosTransaction)
            .filter(
                PosTransaction.branch_id == branch_id,
                PosTransaction.business_date == business_date,
            )
            .all()
        )
        completed = [t for t in transactions if t.payment_status == PaymentStatus.COMPLETED.value]

        def total(rows) -> Decimal:
            return sum((Decimal(r.total_amount) for r in rows), Decimal("0"))

        revenue = total(completed)
        return {
            "branch_id": branch_id,
            "business_date": business_date.isoformat(),
            "total_transactions": len(transactions),
            "completed_transactions": len(completed),
            "failed_transactions": sum(1 for t in transactions if t.payment_status == PaymentStatus.FAILED.value),
            "total_revenue": revenue,
            "cash_sales": total(t for t in completed if t.payment_method == PaymentMethod.CASH.value),
            "mpesa_sales": total(t for t in completed if t.payment_method == PaymentMethod.MPESA.value),
            "service_revenue": total(t for t in completed if t.transaction_kind == TransactionKind.SERVICE.value),
            "total_discounts": sum((Decimal(t.discount_amount) for t in transactions), Decimal("0")),
            "total_tips": sum((Decimal(t.tip_amount) for t in transactions), Decimal("0")),
            "avg_transaction_value": (revenue / len(completed)).quantize(Decimal("0.01")) if completed else Decimal("0"),
        }

    def is_event_processed(self, event_id: str) -> bool:
        """Check if event has been processed."""
        return self.db.query(ProcessedEvent).filter(ProcessedEvent.event_id == event_id).first() is not None

    def mark_event_processed(self, event_id: str, event_type: str) -> ProcessedEvent:
        """Mark event as processed."""
        processed_event = ProcessedEvent(event_id=event_id, event_type=event_type)
        self.db.add(processed_event)
        self.db.flush()
        logger.info(f"Marked event {event_id} as processed")
        return processed_event


def build_receipt_data(transaction: PosTransaction) -> Dict[str, Any]:
    """JSON-safe snapshot printed on the till and emailed to the customer."""
    return {
        "transaction": {
            "transaction_id": transaction.transaction_id,
            "transaction_number": transaction.transaction_number,
            "subtotal": str(transaction.subtotal),
            "discount_amount": str(transaction.discount_amount),
            "tax_amount": str(transaction.tax_amount),
            "tip_amount": str(transaction.tip_amount),
            "total_amount": str(transaction.total_amount),
            "payment_method": transaction.payment_method,
            "external_payment_ref": transaction.external_payment_ref,
            "created_at": transaction.created_at.isoformat() if transaction.created_at else None,
        },
        "customer": {
            "name": transaction.customer_name,
            "phone": transaction.customer_phone,
            "email": transaction.customer_email,
        },
        "items": [
            {
                "name": item.item_name,
                "quantity": item.quantity,
                "unit_price": str(item.unit_price),
                "total_price": str(item.total_price),
                "staff": item.assigned_staff.name if item.assigned_staff else None,
            }
            for item in transaction.items
        ],
        "staff": transaction.staff.name if transaction.staff else None,
        "branch": transaction.branch.name if transaction.branch else None,
    }
