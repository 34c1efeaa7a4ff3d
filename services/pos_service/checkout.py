"""
checkout.py - Cart/Checkout Engine

PURPOSE:
    Drives one terminal session from building a cart to a settled (or failed)
    POS transaction. Catalog lookups, the transaction store, the M-Pesa
    gateway and terminal notifications are all reached from here; the cart
    arithmetic itself lives in cart.py.

STATE MACHINE:
    building --submit--> submitting --cash--> completed
                                    --mpesa--> awaiting_confirmation
    awaiting_confirmation --payment.succeeded--> completed
    awaiting_confirmation --payment.failed / expiry--> failed
    completed | failed --any cart edit--> building

SETTLEMENT:
    Cash is settled inside submit_checkout. M-Pesa returns as soon as the
    charge request is published; the outcome arrives later on the Kafka
    consumer thread through handle_payment_succeeded/handle_payment_failed.

IDEMPOTENCY:
    Both outcomes go through TransactionRepository.update_status, which only
    moves a row that is still PROCESSING. A duplicate or late gateway event
    loses that race and is dropped without touching the cart or notifying.

USAGE:
    engine = CheckoutEngine(SessionLocal, gateway, notifier, sessions=sessions)
    with sessions.edit("till-01") as session:
        engine.add_item(session, ItemKind.SERVICE, 1)
        engine.select_staff(session, 2)
        result = engine.submit_checkout(session)
"""

import logging
from contextlib import contextmanager
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, Iterator, NamedTuple, Optional, Tuple
from zoneinfo import ZoneInfo

from pydantic import BaseModel
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from services.pos_service.cart import (
    CartLine,
    CheckoutState,
    CustomerInfo,
    CustomerType,
    ItemKind,
    PaymentMethod,
    PaymentStatus,
    TerminalSession,
    Totals,
    TransactionKind,
    to_money,
)
from services.pos_service.cart_repository import SessionRepository
from services.pos_service.catalog import CatalogRepository, ClientDirectory, StaffDirectory
from services.pos_service.errors import (
    CheckoutInProgressError,
    CustomerNotFound,
    EmptyCartError,
    GatewayError,
    ItemNotFound,
    PersistenceError,
    StaffNotFound,
    StaffRequiredError,
)
from services.pos_service.gateway import MobileMoneyGateway
from services.pos_service.models import PosTransaction
from services.pos_service.notifications import NotificationLevel, TerminalNotifier
from services.pos_service.repository import TransactionRepository
from shared.database import session_scope, utcnow
from shared.events import (
    BUSINESS_TIMEZONE,
    CartItemAddedEvent,
    CartItemRemovedEvent,
    CheckoutSubmittedEvent,
    TransactionCompletedEvent,
)
from shared.kafka_client import BaseKafkaProducer

logger = logging.getLogger(__name__)

PAYMENT_TIMEOUT_MESSAGE = "Payment confirmation timed out"
# Daily numbers are count-based; a concurrent submit can take ours first
NUMBER_ATTEMPTS = 3


class CheckoutResult(BaseModel):
    """What the till gets back after submitting a cart."""

    transaction_id: str
    transaction_number: str
    terminal_id: str
    payment_method: PaymentMethod
    payment_status: PaymentStatus
    total_amount: Decimal
    external_payment_ref: Optional[str] = None
    receipt_number: Optional[str] = None


class _Settlement(NamedTuple):
    """Values read from a settled transaction before its DB session closes."""

    transaction_id: str
    terminal_id: str
    branch_id: int
    total_amount: Decimal
    payment_method: str
    external_payment_ref: Optional[str]
    receipt_number: str
    customer_email: Optional[str]
    receipt_data: Dict[str, Any]


class CheckoutEngine:
    """Cart mutations and the checkout state machine for POS terminal sessions."""

    def __init__(
        self,
        session_factory: sessionmaker,
        gateway: MobileMoneyGateway,
        notifier: TerminalNotifier,
        sessions: Optional[SessionRepository] = None,
        producer: Optional[BaseKafkaProducer] = None,
        business_timezone: ZoneInfo = BUSINESS_TIMEZONE,
    ):
        self.session_factory = session_factory
        self.gateway = gateway
        self.notifier = notifier
        self.sessions = sessions
        self.producer = producer
        self.business_timezone = business_timezone

    # ------------------------------------------------------------------
    # Cart mutations
    # ------------------------------------------------------------------

    def add_item(self, session: TerminalSession, kind: ItemKind, item_id: int) -> CartLine:
        """Add one unit of a catalog item. Raises ItemNotFound for unknown or inactive ids."""
        kind = ItemKind(kind)
        self._ensure_editable(session)

        with session_scope(self.session_factory) as db:
            catalog = CatalogRepository(db)
            if kind == ItemKind.SERVICE:
                service = catalog.find_service(item_id)
                if service is None:
                    raise ItemNotFound(kind.value, item_id)
                name, unit_price = service.name, service.price
                description, duration = service.description, service.duration_minutes
            else:
                product = catalog.find_product(item_id)
                if product is None:
                    raise ItemNotFound(kind.value, item_id)
                name, unit_price = product.name, product.selling_price
                description, duration = product.description, None

        self._resume_building(session)
        line = session.cart.add_line(kind, item_id, name, unit_price, description or "", duration)
        logger.info(
            f"Added {line.line_id} to cart (qty {line.quantity})",
            extra={"terminal_id": session.terminal_id},
        )

        self.notifier.notify(
            NotificationLevel.INFO, "Added to Cart", f"{name} added successfully", session.terminal_id
        )
        self._publish(
            "cart.item_added",
            CartItemAddedEvent(
                correlation_id=session.terminal_id,
                terminal_id=session.terminal_id,
                branch_id=session.branch_id,
                line_id=line.line_id,
                item_kind=kind.value,
                item_id=item_id,
                quantity=line.quantity,
                unit_price=line.unit_price,
            ),
        )
        return line

    def remove_item(self, session: TerminalSession, line_id: str) -> bool:
        self._ensure_editable(session)
        self._resume_building(session)
        removed = session.cart.remove_line(line_id)
        if removed:
            self._line_removed(session, line_id)
        return removed

    def set_quantity(self, session: TerminalSession, line_id: str, quantity: int) -> bool:
        """Quantity <= 0 removes the line; returns False when the line is not in the cart."""
        self._ensure_editable(session)
        self._resume_building(session)
        present = session.cart.get_line(line_id) is not None
        changed = session.cart.set_quantity(line_id, quantity)
        if present and quantity <= 0:
            self._line_removed(session, line_id)
        return changed

    def assign_staff_to_line(self, session: TerminalSession, line_id: str, staff_id: Optional[int]) -> bool:
        self._ensure_editable(session)
        if staff_id is not None:
            self._require_staff(staff_id)
        self._resume_building(session)
        return session.cart.assign_staff(line_id, staff_id)

    def set_discount(self, session: TerminalSession, amount) -> None:
        self._ensure_editable(session)
        self._resume_building(session)
        session.cart.set_discount(amount)

    def set_tip(self, session: TerminalSession, amount) -> None:
        self._ensure_editable(session)
        self._resume_building(session)
        session.cart.set_tip(amount)

    def reset_cart(self, session: TerminalSession) -> None:
        self._ensure_editable(session)
        session.cart.reset()
        self._resume_building(session)
        logger.info("Cart cleared", extra={"terminal_id": session.terminal_id})

    def select_staff(self, session: TerminalSession, staff_id: int) -> None:
        """Default assignee for service lines added from now on."""
        self._ensure_editable(session)
        self._require_staff(staff_id)
        self._resume_building(session)
        session.cart.selected_staff_id = staff_id

    def set_payment_method(self, session: TerminalSession, method: PaymentMethod) -> None:
        self._ensure_editable(session)
        self._resume_building(session)
        session.cart.payment_method = PaymentMethod(method)

    def set_customer(self, session: TerminalSession, client_id: int) -> CustomerInfo:
        """Attach a registered client."""
        self._ensure_editable(session)
        with session_scope(self.session_factory) as db:
            client = ClientDirectory(db).find_client(client_id)
            if client is None:
                raise CustomerNotFound(f"Client {client_id} not found")
            customer = CustomerInfo(
                type=CustomerType.REGISTERED,
                client_id=client.id,
                name=client.full_name,
                phone=client.phone or "",
                email=client.email or "",
            )
        self._resume_building(session)
        session.cart.customer = customer
        return customer

    def set_walk_in_customer(self, session: TerminalSession, name: str = "", phone: str = "", email: str = "") -> CustomerInfo:
        self._ensure_editable(session)
        self._resume_building(session)
        session.cart.customer = CustomerInfo(type=CustomerType.WALK_IN, name=name, phone=phone, email=email)
        return session.cart.customer

    # ------------------------------------------------------------------
    # Checkout
    # ------------------------------------------------------------------

    def submit_checkout(self, session: TerminalSession) -> CheckoutResult:
        """
        Snapshot the cart into a PROCESSING transaction and start settlement.

        Raises:
            CheckoutInProgressError: the terminal is already submitting or awaiting M-Pesa
            EmptyCartError / StaffRequiredError: preconditions, nothing is written
            PersistenceError: the transaction could not be stored; the cart is kept
            GatewayError: M-Pesa refused the charge; the transaction is failed, the cart kept

        Any other error puts the session back to building with one failure
        notification before it propagates.
        """
        if session.state.is_busy:
            raise CheckoutInProgressError(f"Terminal {session.terminal_id} already has a payment in progress")

        cart = session.cart
        if cart.is_empty:
            raise EmptyCartError("Please add items to cart before processing payment")
        if cart.selected_staff_id is None:
            raise StaffRequiredError("Please select a staff member")

        session.state = CheckoutState.SUBMITTING
        session.is_processing_payment = True
        session.last_error = None
        totals = cart.recompute_totals()
        transaction_kind = cart.transaction_kind()

        try:
            transaction_id, transaction_number = self._record_transaction(session, totals, transaction_kind)
        except SQLAlchemyError as e:
            self._submission_failed(session, e)
            raise PersistenceError(f"Could not record transaction: {e}") from e
        except Exception as e:
            self._submission_failed(session, e)
            raise

        self._publish(
            "checkout.submitted",
            CheckoutSubmittedEvent(
                correlation_id=transaction_id,
                transaction_id=transaction_id,
                transaction_number=transaction_number,
                terminal_id=session.terminal_id,
                branch_id=session.branch_id,
                transaction_kind=transaction_kind.value,
                payment_method=cart.payment_method.value,
                total_amount=totals.total_amount,
            ),
        )

        result = CheckoutResult(
            transaction_id=transaction_id,
            transaction_number=transaction_number,
            terminal_id=session.terminal_id,
            payment_method=cart.payment_method,
            payment_status=PaymentStatus.PROCESSING,
            total_amount=totals.total_amount,
        )

        if cart.payment_method == PaymentMethod.CASH:
            return self._settle_cash(session, result)
        return self._start_mpesa(session, result, cart.customer.phone)

    def _record_transaction(
        self, session: TerminalSession, totals: Totals, transaction_kind: TransactionKind
    ) -> Tuple[str, str]:
        """Store the cart as a PROCESSING transaction, retrying when another till took the same number."""
        cart = session.cart
        for attempt in range(1, NUMBER_ATTEMPTS + 1):
            try:
                with session_scope(self.session_factory) as db:
                    repo = TransactionRepository(db)
                    transaction = repo.create(
                        terminal_id=session.terminal_id,
                        branch_id=session.branch_id,
                        staff_id=cart.selected_staff_id,
                        business_date=self._business_date(),
                        transaction_kind=transaction_kind,
                        subtotal=totals.subtotal,
                        discount_amount=cart.discount_amount,
                        tax_amount=totals.tax_amount,
                        tip_amount=cart.tip_amount,
                        total_amount=totals.total_amount,
                        payment_method=cart.payment_method,
                        client_id=cart.customer.client_id,
                        customer_info=_customer_snapshot(cart.customer),
                    )
                    repo.append_line_items(transaction.transaction_id, cart.lines.values())
                    return transaction.transaction_id, transaction.transaction_number
            except IntegrityError:
                if attempt == NUMBER_ATTEMPTS:
                    raise
                logger.warning(
                    f"Transaction number taken by another till, retrying ({attempt}/{NUMBER_ATTEMPTS})",
                    extra={"terminal_id": session.terminal_id},
                )

    def _settle_cash(self, session: TerminalSession, result: CheckoutResult) -> CheckoutResult:
        try:
            settlement = self._complete(result.transaction_id)
        except SQLAlchemyError as e:
            self._submission_failed(session, e)
            raise PersistenceError(f"Could not complete transaction {result.transaction_id}: {e}") from e
        except Exception as e:
            self._submission_failed(session, e)
            raise
        if settlement is None:
            self._submission_failed(session, "transaction is no longer processing")
            raise PersistenceError(f"Transaction {result.transaction_id} is no longer processing")

        self._finalize(settlement, session)
        return result.model_copy(
            update={"payment_status": PaymentStatus.COMPLETED, "receipt_number": settlement.receipt_number}
        )

    def _start_mpesa(self, session: TerminalSession, result: CheckoutResult, phone: str) -> CheckoutResult:
        transaction_id = result.transaction_id
        # Set before publishing; the outcome event finds the session by pending_transaction_id.
        session.state = CheckoutState.AWAITING_CONFIRMATION
        session.pending_transaction_id = transaction_id

        try:
            self.gateway.initiate_charge(transaction_id, result.total_amount, phone)
        except GatewayError as e:
            logger.error(f"M-Pesa charge rejected: {e}", extra={"transaction_id": transaction_id})
            self._fail_transaction(transaction_id, str(e))
            self._mark_session_failed(session, transaction_id, str(e))
            self.notifier.notify(
                NotificationLevel.DANGER,
                "Payment Failed",
                f"An error occurred while processing payment: {e}",
                session.terminal_id,
            )
            raise
        except Exception as e:
            logger.error(
                f"Unexpected error starting M-Pesa charge for {transaction_id}: {e}",
                extra={"transaction_id": transaction_id},
            )
            self._fail_transaction(transaction_id, str(e))
            self._submission_failed(session, e)
            raise

        logger.info(
            f"Awaiting M-Pesa confirmation for {transaction_id}",
            extra={"transaction_id": transaction_id, "terminal_id": session.terminal_id},
        )
        return result

    # ------------------------------------------------------------------
    # Gateway outcomes
    # ------------------------------------------------------------------

    def handle_payment_succeeded(self, transaction_id: str, external_ref: str) -> bool:
        """Settle a PROCESSING transaction. Returns False for duplicate, late or unknown events."""
        terminal_id = self._terminal_of(transaction_id)
        if terminal_id is None:
            return False

        with self._terminal(terminal_id) as session:
            settlement = self._complete(transaction_id, external_ref)
            if settlement is None:
                return False
            self._finalize(settlement, self._owned(session, transaction_id))
        return True

    def handle_payment_failed(self, transaction_id: str, error_detail: str) -> bool:
        """Fail a PROCESSING transaction, keeping the cart. Returns False when nothing changed."""
        terminal_id = self._terminal_of(transaction_id)
        if terminal_id is None:
            return False

        with self._terminal(terminal_id) as session:
            with session_scope(self.session_factory) as db:
                if not TransactionRepository(db).update_status(
                    transaction_id, PaymentStatus.FAILED, reason=error_detail
                ):
                    return False

            logger.warning(f"Payment failed: {error_detail}", extra={"transaction_id": transaction_id})
            owned = self._owned(session, transaction_id)
            if owned is not None:
                self._mark_session_failed(owned, transaction_id, error_detail)
            self.notifier.notify(NotificationLevel.DANGER, "M-Pesa Payment Failed", error_detail, terminal_id)
        return True

    def expire_stale_transactions(self, older_than: timedelta) -> int:
        """Fail PROCESSING transactions the gateway never answered. Returns how many were expired."""
        cutoff = utcnow() - older_than
        with session_scope(self.session_factory) as db:
            stale = [t.transaction_id for t in TransactionRepository(db).list_stale_processing(cutoff)]

        expired = 0
        for transaction_id in stale:
            if self.handle_payment_failed(transaction_id, PAYMENT_TIMEOUT_MESSAGE):
                expired += 1
        if expired:
            logger.info(f"Expired {expired} stale transactions")
        return expired

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _complete(self, transaction_id: str, external_ref: Optional[str] = None) -> Optional[_Settlement]:
        with session_scope(self.session_factory) as db:
            repo = TransactionRepository(db)
            if not repo.update_status(transaction_id, PaymentStatus.COMPLETED, external_ref=external_ref):
                return None
            transaction = repo.find_by_id(transaction_id)
            receipt = repo.create_receipt(transaction)
            return _settlement_from(transaction, receipt.receipt_number, receipt.receipt_data)

    def _terminal_of(self, transaction_id: str) -> Optional[str]:
        with session_scope(self.session_factory) as db:
            transaction = TransactionRepository(db).find_by_id(transaction_id)
            if transaction is None:
                logger.warning(f"Unknown transaction {transaction_id}", extra={"transaction_id": transaction_id})
                return None
            return transaction.terminal_id

    @contextmanager
    def _terminal(self, terminal_id: str) -> Iterator[Optional[TerminalSession]]:
        """Lock the terminal session for the duration of a gateway outcome."""
        if self.sessions is None:
            yield None
            return
        with self.sessions.edit(terminal_id, missing_ok=True) as session:
            yield session

    @staticmethod
    def _owned(session: Optional[TerminalSession], transaction_id: str) -> Optional[TerminalSession]:
        """The session only if it is still waiting on this transaction."""
        if session is not None and session.pending_transaction_id == transaction_id:
            return session
        return None

    def _finalize(self, settlement: _Settlement, session: Optional[TerminalSession]) -> None:
        """Notify, reset the owning terminal and ask for a receipt print."""
        self.notifier.notify(
            NotificationLevel.SUCCESS,
            "Payment Successful!",
            "Transaction completed successfully. Receipt will be sent.",
            settlement.terminal_id,
        )

        if session is not None:
            session.cart.reset()
            session.state = CheckoutState.COMPLETED
            session.is_processing_payment = False
            session.pending_transaction_id = None
            session.last_transaction_id = settlement.transaction_id
            session.last_error = None

        self.notifier.request_receipt_print(
            settlement.transaction_id,
            settlement.receipt_number,
            terminal_id=settlement.terminal_id,
            customer_email=settlement.customer_email,
            receipt_data=settlement.receipt_data,
        )
        self._publish(
            "transaction.completed",
            TransactionCompletedEvent(
                correlation_id=settlement.transaction_id,
                transaction_id=settlement.transaction_id,
                branch_id=settlement.branch_id,
                total_amount=settlement.total_amount,
                payment_method=settlement.payment_method,
                external_payment_ref=settlement.external_payment_ref,
            ),
        )
        logger.info(
            f"Transaction {settlement.transaction_id} completed, receipt {settlement.receipt_number}",
            extra={"transaction_id": settlement.transaction_id, "terminal_id": settlement.terminal_id},
        )

    def _fail_transaction(self, transaction_id: str, reason: str) -> None:
        try:
            with session_scope(self.session_factory) as db:
                TransactionRepository(db).update_status(transaction_id, PaymentStatus.FAILED, reason=reason)
        except SQLAlchemyError as e:
            logger.error(f"Could not mark {transaction_id} failed: {e}", extra={"transaction_id": transaction_id})

    def _submission_failed(self, session: TerminalSession, error) -> None:
        logger.error(f"Checkout failed: {error}", extra={"terminal_id": session.terminal_id})
        session.state = CheckoutState.BUILDING
        session.is_processing_payment = False
        session.pending_transaction_id = None
        session.last_error = str(error)
        self.notifier.notify(
            NotificationLevel.DANGER,
            "Payment Failed",
            "An error occurred while processing payment. Please try again.",
            session.terminal_id,
        )

    @staticmethod
    def _mark_session_failed(session: TerminalSession, transaction_id: str, reason: str) -> None:
        session.state = CheckoutState.FAILED
        session.is_processing_payment = False
        session.pending_transaction_id = None
        session.last_transaction_id = transaction_id
        session.last_error = reason

    @staticmethod
    def _ensure_editable(session: TerminalSession) -> None:
        if session.state.is_busy:
            raise CheckoutInProgressError("Cart is locked while a payment is in progress")

    @staticmethod
    def _resume_building(session: TerminalSession) -> None:
        if session.state in (CheckoutState.COMPLETED, CheckoutState.FAILED):
            session.state = CheckoutState.BUILDING
            session.last_error = None

    def _require_staff(self, staff_id: int) -> None:
        with session_scope(self.session_factory) as db:
            if StaffDirectory(db).get_active_staff(staff_id) is None:
                raise StaffNotFound(f"Staff {staff_id} not found")

    def _line_removed(self, session: TerminalSession, line_id: str) -> None:
        self.notifier.notify(NotificationLevel.INFO, "Removed from Cart", "Item removed successfully", session.terminal_id)
        self._publish(
            "cart.item_removed",
            CartItemRemovedEvent(
                correlation_id=session.terminal_id,
                terminal_id=session.terminal_id,
                branch_id=session.branch_id,
                line_id=line_id,
            ),
        )

    def _business_date(self) -> date:
        return datetime.now(self.business_timezone).date()

    def _publish(self, topic: str, event) -> None:
        if self.producer is None:
            return
        try:
            self.producer.publish(topic, event)
        except Exception as e:
            logger.error(f"Failed to publish {topic}: {e}", extra={"correlation_id": event.correlation_id})


def _customer_snapshot(customer: CustomerInfo) -> Optional[Dict[str, str]]:
    if customer.type != CustomerType.WALK_IN:
        return None
    return {"name": customer.name, "phone": customer.phone, "email": customer.email}


def _settlement_from(transaction: PosTransaction, receipt_number: str, receipt_data: Dict[str, Any]) -> _Settlement:
    return _Settlement(
        transaction_id=transaction.transaction_id,
        terminal_id=transaction.terminal_id,
        branch_id=transaction.branch_id,
        total_amount=to_money(transaction.total_amount),
        payment_method=transaction.payment_method,
        external_payment_ref=transaction.external_payment_ref,
        receipt_number=receipt_number,
        customer_email=transaction.customer_email,
        receipt_data=receipt_data,
    )
