"""Checkout engine: cart edits, cash and M-Pesa settlement, gateway outcomes."""

import re
from datetime import timedelta
from decimal import Decimal
from unittest.mock import patch

import pytest
from sqlalchemy.exc import SQLAlchemyError

from services.pos_service.cart import (
    CheckoutState,
    CustomerType,
    ItemKind,
    PaymentMethod,
    PaymentStatus,
    TransactionKind,
)
from services.pos_service.checkout import PAYMENT_TIMEOUT_MESSAGE, CheckoutEngine
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
from services.pos_service.models import PosTransaction, PosTransactionItem
from services.pos_service.notifications import NotificationLevel
from services.pos_service.repository import TransactionRepository
from shared.database import session_scope

from support import (
    ALICE,
    DEEP_TISSUE,
    FACIAL,
    LAVENDER_OIL,
    SARAH,
    SWEDISH_MASSAGE,
    TERMINAL,
    notification_titles,
    published_topics,
)

MANICURE = 5
COFFEE_SCRUB = 3
NAIL_POLISH = 4
PHONE = "0712345678"


def levels(notifier):
    return [c.args[0] for c in notifier.notify.call_args_list]


def transaction_count(session_factory) -> int:
    with session_scope(session_factory) as db:
        return db.query(PosTransaction).count()


def load_transaction(session_factory, transaction_id) -> PosTransaction:
    with session_scope(session_factory) as db:
        return TransactionRepository(db).find_by_id(transaction_id)


def load_transaction_numbers(session_factory):
    with session_scope(session_factory) as db:
        return [t.transaction_number for t in db.query(PosTransaction).order_by(PosTransaction.id)]


def fill_cart(engine, sessions, *items, staff_id=SARAH, payment_method=PaymentMethod.CASH, phone=None):
    with sessions.edit(TERMINAL) as session:
        for kind, item_id in items:
            engine.add_item(session, kind, item_id)
        if staff_id is not None:
            engine.select_staff(session, staff_id)
        engine.set_payment_method(session, payment_method)
        if phone is not None:
            engine.set_walk_in_customer(session, "Jane Wanjiku", phone, "jane@example.com")


def submit(engine, sessions):
    with sessions.edit(TERMINAL) as session:
        return engine.submit_checkout(session)


@pytest.fixture
def mpesa_checkout(engine, sessions, session, notifier):
    """A submitted M-Pesa checkout awaiting confirmation."""
    fill_cart(
        engine,
        sessions,
        (ItemKind.SERVICE, SWEDISH_MASSAGE),
        (ItemKind.PRODUCT, LAVENDER_OIL),
        payment_method=PaymentMethod.MPESA,
        phone=PHONE,
    )
    result = submit(engine, sessions)
    notifier.reset_mock()
    return result


class TestCartEdits:
    def test_add_service_uses_catalog_price(self, engine, session, notifier, producer):
        line = engine.add_item(session, ItemKind.SERVICE, SWEDISH_MASSAGE)

        assert line.name == "Swedish Massage"
        assert line.unit_price == Decimal("3500")
        assert line.duration_minutes == 60
        assert session.cart.subtotal == Decimal("3500")
        notifier.notify.assert_called_once_with(
            NotificationLevel.INFO, "Added to Cart", "Swedish Massage added successfully", TERMINAL
        )
        assert published_topics(producer) == ["cart.item_added"]

    def test_add_same_product_twice(self, engine, session):
        engine.add_item(session, ItemKind.PRODUCT, LAVENDER_OIL)
        engine.add_item(session, ItemKind.PRODUCT, LAVENDER_OIL)

        assert session.cart.lines["product_1"].quantity == 2
        assert session.cart.subtotal == Decimal("2400")

    def test_add_same_service_twice(self, engine, session):
        engine.add_item(session, ItemKind.SERVICE, SWEDISH_MASSAGE)
        engine.add_item(session, ItemKind.SERVICE, SWEDISH_MASSAGE)

        assert len(session.cart.lines) == 1
        assert session.cart.lines["service_1"].quantity == 1

    def test_unknown_item_leaves_cart_unchanged(self, engine, session, notifier):
        engine.add_item(session, ItemKind.SERVICE, FACIAL)

        with pytest.raises(ItemNotFound) as exc_info:
            engine.add_item(session, ItemKind.PRODUCT, 999)

        assert exc_info.value.item_id == 999
        assert list(session.cart.lines) == ["service_3"]
        assert notification_titles(notifier) == ["Added to Cart"]

    def test_set_quantity_zero_removes_line(self, engine, session, notifier, producer):
        engine.add_item(session, ItemKind.SERVICE, DEEP_TISSUE)
        engine.add_item(session, ItemKind.PRODUCT, LAVENDER_OIL)

        assert engine.set_quantity(session, "product_1", 0) is True

        assert list(session.cart.lines) == ["service_2"]
        assert session.cart.subtotal == Decimal("4500")
        assert notification_titles(notifier)[-1] == "Removed from Cart"
        assert published_topics(producer)[-1] == "cart.item_removed"

    def test_set_quantity_updates_product(self, engine, session):
        engine.add_item(session, ItemKind.PRODUCT, LAVENDER_OIL)
        assert engine.set_quantity(session, "product_1", 3) is True
        assert session.cart.subtotal == Decimal("3600")

    def test_remove_missing_line_is_silent(self, engine, session, notifier):
        assert engine.remove_item(session, "service_9") is False
        notifier.notify.assert_not_called()

    def test_select_unknown_staff(self, engine, session):
        with pytest.raises(StaffNotFound):
            engine.select_staff(session, 99)
        assert session.cart.selected_staff_id is None

    def test_selected_staff_assigned_to_later_services(self, engine, session):
        engine.select_staff(session, SARAH)
        line = engine.add_item(session, ItemKind.SERVICE, SWEDISH_MASSAGE)
        assert line.assigned_staff_id == SARAH

    def test_assign_staff_to_line(self, engine, session):
        engine.add_item(session, ItemKind.SERVICE, SWEDISH_MASSAGE)
        assert engine.assign_staff_to_line(session, "service_1", 2) is True
        assert session.cart.lines["service_1"].assigned_staff_id == 2
        with pytest.raises(StaffNotFound):
            engine.assign_staff_to_line(session, "service_1", 42)

    def test_registered_customer(self, engine, session):
        customer = engine.set_customer(session, ALICE)

        assert customer.type == CustomerType.REGISTERED
        assert customer.name == "Alice Smith"
        assert session.cart.customer.email == "alice.smith@example.com"

    def test_unknown_customer(self, engine, session):
        with pytest.raises(CustomerNotFound):
            engine.set_customer(session, 404)
        assert session.cart.customer.type == CustomerType.WALK_IN

    def test_discount_and_tip(self, engine, session):
        engine.add_item(session, ItemKind.SERVICE, SWEDISH_MASSAGE)
        engine.set_discount(session, Decimal("100"))
        engine.set_tip(session, Decimal("50"))

        assert session.cart.tax_amount == Decimal("560.00")
        assert session.cart.total_amount == Decimal("4010.00")

    def test_reset_cart(self, engine, session):
        engine.add_item(session, ItemKind.SERVICE, SWEDISH_MASSAGE)
        engine.reset_cart(session)
        assert session.cart.is_empty


class TestSubmitPreconditions:
    def test_empty_cart(self, engine, sessions, session, session_factory):
        with pytest.raises(EmptyCartError):
            submit(engine, sessions)

        assert transaction_count(session_factory) == 0
        assert sessions.get(TERMINAL).state == CheckoutState.BUILDING

    def test_staff_required(self, engine, sessions, session, session_factory):
        fill_cart(engine, sessions, (ItemKind.SERVICE, SWEDISH_MASSAGE), staff_id=None)

        with pytest.raises(StaffRequiredError, match="Please select a staff member"):
            submit(engine, sessions)

        assert transaction_count(session_factory) == 0
        stored = sessions.get(TERMINAL)
        assert stored.state == CheckoutState.BUILDING
        assert not stored.is_processing_payment
        assert list(stored.cart.lines) == ["service_1"]


class TestCashCheckout:
    def test_four_item_sale_completes_immediately(self, engine, sessions, session, session_factory, notifier, producer):
        fill_cart(
            engine,
            sessions,
            (ItemKind.SERVICE, MANICURE),
            (ItemKind.PRODUCT, NAIL_POLISH),
            (ItemKind.PRODUCT, COFFEE_SCRUB),
            (ItemKind.PRODUCT, LAVENDER_OIL),
        )
        with sessions.edit(TERMINAL) as s:
            # 4150 + 664.00 VAT + 186 tip
            engine.set_tip(s, Decimal("186"))
            assert s.cart.total_amount == Decimal("5000.00")

        result = submit(engine, sessions)

        assert result.payment_status == PaymentStatus.COMPLETED
        assert result.total_amount == Decimal("5000.00")
        assert re.match(r"^POS\d{8}0001$", result.transaction_number)
        assert result.receipt_number.startswith("RCP")

        stored_session = sessions.get(TERMINAL)
        assert stored_session.cart.is_empty
        assert stored_session.state == CheckoutState.COMPLETED
        assert not stored_session.is_processing_payment
        assert stored_session.last_transaction_id == result.transaction_id

        assert levels(notifier).count(NotificationLevel.SUCCESS) == 1
        assert NotificationLevel.DANGER not in levels(notifier)

        with session_scope(session_factory) as db:
            transaction = TransactionRepository(db).find_by_id(result.transaction_id)
            assert transaction.payment_status == PaymentStatus.COMPLETED.value
            assert transaction.total_amount == Decimal("5000.00")
            assert transaction.tax_amount == Decimal("664.00")
            assert transaction.transaction_kind == "mixed"
            assert transaction.completed_at is not None
            assert len(transaction.items) == 4
            assert transaction.receipt.receipt_number == result.receipt_number

        topics = published_topics(producer)
        assert topics.count("checkout.submitted") == 1
        assert topics.count("transaction.completed") == 1

    def test_receipt_requested_for_registered_client(self, engine, sessions, session, notifier):
        fill_cart(engine, sessions, (ItemKind.SERVICE, SWEDISH_MASSAGE))
        with sessions.edit(TERMINAL) as s:
            engine.set_customer(s, ALICE)

        result = submit(engine, sessions)

        notifier.request_receipt_print.assert_called_once()
        call = notifier.request_receipt_print.call_args
        assert call.args == (result.transaction_id, result.receipt_number)
        assert call.kwargs["customer_email"] == "alice.smith@example.com"
        assert call.kwargs["receipt_data"]["customer"]["name"] == "Alice Smith"

    def test_transaction_numbers_increase(self, engine, sessions, session):
        fill_cart(engine, sessions, (ItemKind.SERVICE, SWEDISH_MASSAGE))
        first = submit(engine, sessions)
        fill_cart(engine, sessions, (ItemKind.SERVICE, FACIAL))
        second = submit(engine, sessions)

        assert first.transaction_number.endswith("0001")
        assert second.transaction_number.endswith("0002")
        assert first.transaction_id != second.transaction_id

    def test_persistence_failure_keeps_cart(self, engine, sessions, session, session_factory, notifier):
        fill_cart(engine, sessions, (ItemKind.SERVICE, SWEDISH_MASSAGE))

        with patch.object(TransactionRepository, "create", side_effect=SQLAlchemyError("database is down")):
            with pytest.raises(PersistenceError):
                submit(engine, sessions)

        stored = sessions.get(TERMINAL)
        assert stored.state == CheckoutState.BUILDING
        assert not stored.is_processing_payment
        assert list(stored.cart.lines) == ["service_1"]
        assert "database is down" in stored.last_error
        assert transaction_count(session_factory) == 0
        assert levels(notifier).count(NotificationLevel.DANGER) == 1

    def test_unexpected_error_returns_till_to_building(self, engine, sessions, session, session_factory, notifier):
        fill_cart(engine, sessions, (ItemKind.SERVICE, SWEDISH_MASSAGE))
        notifier.reset_mock()

        with patch.object(TransactionRepository, "append_line_items", side_effect=LookupError("snapshot lost")):
            with pytest.raises(LookupError):
                submit(engine, sessions)

        stored = sessions.get(TERMINAL)
        assert stored.state == CheckoutState.BUILDING
        assert not stored.is_processing_payment
        assert list(stored.cart.lines) == ["service_1"]
        assert transaction_count(session_factory) == 0
        assert notification_titles(notifier) == ["Payment Failed"]


class TestMpesaCheckout:
    def test_submit_waits_for_confirmation(self, mpesa_checkout, sessions, session_factory, gateway, notifier):
        result = mpesa_checkout

        assert result.payment_status == PaymentStatus.PROCESSING
        assert result.receipt_number is None
        gateway.initiate_charge.assert_called_once_with(result.transaction_id, Decimal("5452.00"), PHONE)

        stored = sessions.get(TERMINAL)
        assert stored.state == CheckoutState.AWAITING_CONFIRMATION
        assert stored.is_processing_payment
        assert stored.pending_transaction_id == result.transaction_id
        assert len(stored.cart.lines) == 2

        assert load_transaction(session_factory, result.transaction_id).payment_status == "processing"

    def test_cart_locked_while_awaiting(self, engine, sessions, mpesa_checkout):
        with sessions.edit(TERMINAL) as session:
            with pytest.raises(CheckoutInProgressError):
                engine.add_item(session, ItemKind.SERVICE, FACIAL)
            with pytest.raises(CheckoutInProgressError):
                engine.submit_checkout(session)
            assert len(session.cart.lines) == 2

    def test_payment_succeeded_settles_once(self, engine, sessions, session_factory, notifier, mpesa_checkout):
        transaction_id = mpesa_checkout.transaction_id

        assert engine.handle_payment_succeeded(transaction_id, "QK71XYZ9AB") is True

        stored = sessions.get(TERMINAL)
        assert stored.cart.is_empty
        assert stored.state == CheckoutState.COMPLETED
        assert stored.pending_transaction_id is None
        transaction = load_transaction(session_factory, transaction_id)
        assert transaction.payment_status == "completed"
        assert transaction.external_payment_ref == "QK71XYZ9AB"
        notifier.notify.assert_called_once_with(
            NotificationLevel.SUCCESS,
            "Payment Successful!",
            "Transaction completed successfully. Receipt will be sent.",
            TERMINAL,
        )

        assert engine.handle_payment_succeeded(transaction_id, "QK71XYZ9AB") is False
        assert notifier.notify.call_count == 1
        notifier.request_receipt_print.assert_called_once()

    def test_payment_failed_keeps_cart(self, engine, sessions, session_factory, notifier, mpesa_checkout):
        transaction_id = mpesa_checkout.transaction_id

        assert engine.handle_payment_failed(transaction_id, "Request cancelled by user") is True

        stored = sessions.get(TERMINAL)
        assert stored.state == CheckoutState.FAILED
        assert not stored.is_processing_payment
        assert list(stored.cart.lines) == ["service_1", "product_1"]
        assert stored.last_error == "Request cancelled by user"
        transaction = load_transaction(session_factory, transaction_id)
        assert transaction.payment_status == "failed"
        assert transaction.failure_reason == "Request cancelled by user"
        notifier.notify.assert_called_once_with(
            NotificationLevel.DANGER, "M-Pesa Payment Failed", "Request cancelled by user", TERMINAL
        )

        assert engine.handle_payment_failed(transaction_id, "Request cancelled by user") is False
        assert notifier.notify.call_count == 1

    def test_late_success_after_failure_is_ignored(self, engine, sessions, session_factory, notifier, mpesa_checkout):
        transaction_id = mpesa_checkout.transaction_id
        engine.handle_payment_failed(transaction_id, "DS timeout user cannot be reached")

        assert engine.handle_payment_succeeded(transaction_id, "LATE000001") is False

        assert load_transaction(session_factory, transaction_id).payment_status == "failed"
        assert len(sessions.get(TERMINAL).cart.lines) == 2
        assert levels(notifier) == [NotificationLevel.DANGER]

    def test_retry_after_failure(self, engine, sessions, gateway, mpesa_checkout):
        engine.handle_payment_failed(mpesa_checkout.transaction_id, "The balance is insufficient for the transaction.")

        with sessions.edit(TERMINAL) as session:
            engine.set_payment_method(session, PaymentMethod.CASH)
            assert session.state == CheckoutState.BUILDING
            retry = engine.submit_checkout(session)

        assert retry.transaction_id != mpesa_checkout.transaction_id
        assert retry.payment_status == PaymentStatus.COMPLETED
        assert sessions.get(TERMINAL).cart.is_empty

    def test_unknown_transaction(self, engine, notifier):
        assert engine.handle_payment_succeeded("TXN-DOESNOTEXIST", "REF") is False
        assert engine.handle_payment_failed("TXN-DOESNOTEXIST", "nope") is False
        notifier.notify.assert_not_called()

    def test_success_without_open_session(self, engine, sessions, session_factory, notifier, mpesa_checkout):
        sessions.delete(TERMINAL)

        assert engine.handle_payment_succeeded(mpesa_checkout.transaction_id, "QK71XYZ9AB") is True

        assert load_transaction(session_factory, mpesa_checkout.transaction_id).payment_status == "completed"
        assert levels(notifier) == [NotificationLevel.SUCCESS]
        assert sessions.get(TERMINAL) is None

    def test_gateway_error_fails_transaction(self, engine, sessions, session, session_factory, gateway, notifier):
        gateway.initiate_charge.side_effect = GatewayError("Invalid M-Pesa phone number: 123")
        fill_cart(
            engine,
            sessions,
            (ItemKind.SERVICE, SWEDISH_MASSAGE),
            payment_method=PaymentMethod.MPESA,
            phone="123",
        )
        notifier.reset_mock()

        with pytest.raises(GatewayError):
            submit(engine, sessions)

        stored = sessions.get(TERMINAL)
        assert stored.state == CheckoutState.FAILED
        assert list(stored.cart.lines) == ["service_1"]
        transaction = load_transaction(session_factory, stored.last_transaction_id)
        assert transaction.payment_status == "failed"
        assert transaction.failure_reason == "Invalid M-Pesa phone number: 123"
        assert levels(notifier) == [NotificationLevel.DANGER]
        assert notification_titles(notifier) == ["Payment Failed"]

    def test_unexpected_gateway_error_unlocks_till(self, engine, sessions, session, session_factory, gateway, notifier):
        gateway.initiate_charge.side_effect = RuntimeError("producer closed")
        fill_cart(
            engine,
            sessions,
            (ItemKind.SERVICE, SWEDISH_MASSAGE),
            payment_method=PaymentMethod.MPESA,
            phone=PHONE,
        )
        notifier.reset_mock()

        with pytest.raises(RuntimeError):
            submit(engine, sessions)

        stored = sessions.get(TERMINAL)
        assert stored.state == CheckoutState.BUILDING
        assert not stored.is_processing_payment
        assert stored.pending_transaction_id is None
        assert list(stored.cart.lines) == ["service_1"]
        assert notification_titles(notifier) == ["Payment Failed"]
        with session_scope(session_factory) as db:
            transaction = db.query(PosTransaction).one()
            assert transaction.payment_status == "failed"
            assert transaction.failure_reason == "producer closed"

        with sessions.edit(TERMINAL) as s:
            engine.add_item(s, ItemKind.SERVICE, DEEP_TISSUE)
        assert sessions.get(TERMINAL).cart.subtotal == Decimal("8000")


class TestExpiry:
    def test_stale_mpesa_transaction_expires(self, engine, sessions, session_factory, notifier, mpesa_checkout):
        assert engine.expire_stale_transactions(timedelta(minutes=5)) == 0

        assert engine.expire_stale_transactions(timedelta(seconds=0)) == 1

        transaction = load_transaction(session_factory, mpesa_checkout.transaction_id)
        assert transaction.payment_status == "failed"
        assert transaction.failure_reason == PAYMENT_TIMEOUT_MESSAGE
        stored = sessions.get(TERMINAL)
        assert stored.state == CheckoutState.FAILED
        assert len(stored.cart.lines) == 2

        assert engine.expire_stale_transactions(timedelta(seconds=0)) == 0
        assert levels(notifier) == [NotificationLevel.DANGER]


class TestItemsSnapshot:
    def test_line_items_copied_from_cart(self, engine, sessions, session, session_factory):
        fill_cart(engine, sessions, (ItemKind.SERVICE, SWEDISH_MASSAGE), (ItemKind.PRODUCT, LAVENDER_OIL))
        with sessions.edit(TERMINAL) as s:
            engine.set_quantity(s, "product_1", 2)

        result = submit(engine, sessions)

        with session_scope(session_factory) as db:
            items = (
                db.query(PosTransactionItem)
                .join(PosTransaction)
                .filter(PosTransaction.transaction_id == result.transaction_id)
                .order_by(PosTransactionItem.id)
                .all()
            )
            assert [(i.item_type, i.item_id, i.quantity, i.total_price) for i in items] == [
                ("service", SWEDISH_MASSAGE, 1, Decimal("3500.00")),
                ("product", LAVENDER_OIL, 2, Decimal("2400.00")),
            ]
            assert items[0].duration_minutes == 60


class TestConcurrentTills:
    def test_number_taken_by_another_till_is_retried(self, file_session_factory, sessions, session, gateway, notifier):
        engine = CheckoutEngine(file_session_factory, gateway, notifier, sessions=sessions)
        fill_cart(engine, sessions, (ItemKind.SERVICE, SWEDISH_MASSAGE))
        notifier.reset_mock()
        real_next_number = TransactionRepository.next_transaction_number
        other_till = []

        def other_till_commits_first(repo, business_date):
            number = real_next_number(repo, business_date)
            if not other_till:
                other_till.append(number)
                with session_scope(file_session_factory) as db:
                    TransactionRepository(db).create(
                        terminal_id="till-02",
                        branch_id=1,
                        staff_id=SARAH,
                        business_date=business_date,
                        transaction_kind=TransactionKind.SERVICE,
                        subtotal=Decimal("2500"),
                        discount_amount=Decimal("0"),
                        tax_amount=Decimal("400.00"),
                        tip_amount=Decimal("0"),
                        total_amount=Decimal("2900.00"),
                        payment_method=PaymentMethod.CASH,
                    )
            return number

        with patch.object(TransactionRepository, "next_transaction_number", other_till_commits_first):
            result = submit(engine, sessions)

        assert other_till[0].endswith("0001")
        assert result.transaction_number.endswith("0002")
        assert result.payment_status == PaymentStatus.COMPLETED
        assert transaction_count(file_session_factory) == 2
        assert NotificationLevel.DANGER not in levels(notifier)

    def test_gives_up_after_repeated_collisions(self, file_session_factory, sessions, session, gateway, notifier):
        engine = CheckoutEngine(file_session_factory, gateway, notifier, sessions=sessions)
        fill_cart(engine, sessions, (ItemKind.SERVICE, SWEDISH_MASSAGE))
        submit(engine, sessions)
        with sessions.edit(TERMINAL) as s:
            engine.add_item(s, ItemKind.SERVICE, FACIAL)
            engine.select_staff(s, SARAH)
        taken = load_transaction_numbers(file_session_factory)[0]

        with patch.object(TransactionRepository, "next_transaction_number", return_value=taken):
            with pytest.raises(PersistenceError):
                submit(engine, sessions)

        assert sessions.get(TERMINAL).state == CheckoutState.BUILDING
        assert transaction_count(file_session_factory) == 1
