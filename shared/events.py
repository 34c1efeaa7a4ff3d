"""
events.py - Kafka Event Schema Definitions

PURPOSE:
    Defines all event schemas exchanged between the POS service, the M-Pesa
    gateway and the notification service. Uses Pydantic for validation and
    serialization.

EVENT CATEGORIES:
    1. Cart Events: Terminal cart activity
       - cart.item_added
       - cart.item_removed

    2. Checkout Events: Transaction lifecycle
       - checkout.submitted
       - transaction.completed

    3. Payment Events: Mobile-money settlement
       - payment.charge_requested (POS -> gateway)
       - payment.succeeded (gateway -> POS)
       - payment.failed (gateway -> POS)

    4. Terminal Events: Operator-facing side effects
       - notification.send
       - receipt.print_requested

    5. System Events: Dead Letter Queue
       - dlq.events

COMMON FIELDS (BaseEvent):
    - event_id: Unique identifier (UUID)
    - event_type: Event category and action
    - timestamp: Timezone-aware creation time
    - correlation_id: Links every event of one checkout (the transaction_id)

USAGE:
    event = PaymentSucceededEvent(
        correlation_id="TXN-1A2B3C4D5E6F",
        transaction_id="TXN-1A2B3C4D5E6F",
        external_payment_ref="QK71XYZ9AB",
    )
    payload = event.model_dump_json()
    event = EVENT_TYPE_MAP[data["event_type"]].model_validate(data)
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional
from uuid import uuid4
from zoneinfo import ZoneInfo

from pydantic import BaseModel, Field

BUSINESS_TIMEZONE = ZoneInfo("Africa/Nairobi")


def _now() -> datetime:
    return datetime.now(BUSINESS_TIMEZONE)


class BaseEvent(BaseModel):
    """
    Base event model for all Kafka events.

    All events inherit from this class and include:
    - Unique event ID
    - Event type identifier
    - Business timezone-aware timestamp
    - Correlation ID (the POS transaction or terminal the event belongs to)
    """

    event_id: str = Field(default_factory=lambda: str(uuid4()))
    event_type: str
    timestamp: datetime = Field(default_factory=_now)
    correlation_id: str


# ============================================================================
# CART EVENTS - Terminal cart activity
# ============================================================================

class CartItemAddedEvent(BaseEvent):
    """
    Published when an item lands in a terminal cart.
    Consumers: reporting (basket composition)
    """

    event_type: str = "cart.item_added"
    terminal_id: str
    branch_id: int
    line_id: str
    item_kind: str
    item_id: int
    quantity: int
    unit_price: Decimal


class CartItemRemovedEvent(BaseEvent):
    """Published when a line leaves a terminal cart."""

    event_type: str = "cart.item_removed"
    terminal_id: str
    branch_id: int
    line_id: str


# ============================================================================
# CHECKOUT EVENTS - Transaction lifecycle
# ============================================================================

class CheckoutSubmittedEvent(BaseEvent):
    """
    Published once a transaction has been persisted in PROCESSING state.
    Triggers: POS service submit_checkout
    Consumers: reporting
    """

    event_type: str = "checkout.submitted"
    transaction_id: str
    transaction_number: str
    terminal_id: str
    branch_id: int
    transaction_kind: str
    payment_method: str
    total_amount: Decimal


class TransactionCompletedEvent(BaseEvent):
    """Published when a transaction is settled (cash or confirmed M-Pesa)."""

    event_type: str = "transaction.completed"
    transaction_id: str
    branch_id: int
    total_amount: Decimal
    payment_method: str
    external_payment_ref: Optional[str] = None


# ============================================================================
# PAYMENT EVENTS - Mobile-money settlement
# ============================================================================

class PaymentChargeRequestedEvent(BaseEvent):
    """
    Request for an STK push to the customer's phone.
    Triggers: POS service MobileMoneyGateway.initiate_charge
    Consumers: M-Pesa gateway service
    """

    event_type: str = "payment.charge_requested"
    transaction_id: str
    amount: Decimal
    phone_number: str
    account_reference: str
    description: str = "Spa services"


class PaymentSucceededEvent(BaseEvent):
    """
    The customer approved the charge.
    Triggers: M-Pesa gateway service (simulated STK result or Daraja callback)
    Consumers: POS service (settles the transaction)
    """

    event_type: str = "payment.succeeded"
    transaction_id: str
    external_payment_ref: str


class PaymentFailedEvent(BaseEvent):
    """
    The charge was declined, cancelled or timed out.
    Consumers: POS service (fails the transaction, keeps the cart)
    """

    event_type: str = "payment.failed"
    transaction_id: str
    error_detail: str


# ============================================================================
# TERMINAL EVENTS - Operator-facing side effects
# ============================================================================

class NotificationSendEvent(BaseEvent):
    """Toast/ops notification for a POS terminal."""

    event_type: str = "notification.send"
    level: str  # info, success, warning, danger
    title: str
    body: str
    terminal_id: Optional[str] = None


class ReceiptPrintRequestedEvent(BaseEvent):
    """
    Ask the terminal to print, and the notification service to email, a receipt.
    Consumers: terminal front-end, Notification Service
    """

    event_type: str = "receipt.print_requested"
    transaction_id: str
    receipt_number: str
    terminal_id: Optional[str] = None
    customer_email: Optional[str] = None
    receipt_data: Dict[str, Any] = Field(default_factory=dict)


# ============================================================================
# DLQ EVENTS - Dead Letter Queue (failed message processing)
# ============================================================================

class DLQEvent(BaseEvent):
    """
    Published when message processing fails after retries.
    Preserves the failed message for investigation and replay.
    """

    event_type: str = "dlq.events"
    original_topic: str
    original_event_type: str
    error_reason: str
    retry_count: int
    payload: Dict[str, Any]


# Event mapping for deserialization
EVENT_TYPE_MAP = {
    "cart.item_added": CartItemAddedEvent,
    "cart.item_removed": CartItemRemovedEvent,
    "checkout.submitted": CheckoutSubmittedEvent,
    "transaction.completed": TransactionCompletedEvent,
    "payment.charge_requested": PaymentChargeRequestedEvent,
    "payment.succeeded": PaymentSucceededEvent,
    "payment.failed": PaymentFailedEvent,
    "notification.send": NotificationSendEvent,
    "receipt.print_requested": ReceiptPrintRequestedEvent,
    "dlq.events": DLQEvent,
}

ALL_TOPICS: List[str] = list(EVENT_TYPE_MAP)
