"""
cart.py - Terminal Cart Domain Model

PURPOSE:
    Holds the in-memory cart of one POS terminal session and the pure money
    arithmetic around it. Nothing in this module performs I/O: catalog
    lookups, persistence and notifications live in checkout.py.

DATA FORMAT:
    Lines are keyed "{kind}_{item_id}" (e.g. "service_3", "product_12") and
    kept in insertion order, which is also the display order on the till.

TOTALS:
    subtotal = sum(unit_price * quantity)
    tax      = subtotal * VAT_RATE, rounded half-up to the cent
    total    = max(0, subtotal + tax + tip - discount)

    Discount and tip do not change the tax base.
"""

from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Dict, Iterable, NamedTuple, Optional

from pydantic import BaseModel, Field

VAT_RATE = Decimal("0.16")
CENT = Decimal("0.01")
ZERO = Decimal("0")


class ItemKind(str, Enum):
    SERVICE = "service"
    PRODUCT = "product"


class PaymentMethod(str, Enum):
    CASH = "cash"
    MPESA = "mpesa"

    @property
    def label(self) -> str:
        return {PaymentMethod.CASH: "Cash", PaymentMethod.MPESA: "M-Pesa"}[self]


class PaymentStatus(str, Enum):
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def label(self) -> str:
        return {
            PaymentStatus.PROCESSING: "Processing",
            PaymentStatus.COMPLETED: "Completed",
            PaymentStatus.FAILED: "Failed",
        }[self]


class TransactionKind(str, Enum):
    SERVICE = "service"
    PRODUCT = "product"
    MIXED = "mixed"

    @property
    def label(self) -> str:
        return {
            TransactionKind.SERVICE: "Service Only",
            TransactionKind.PRODUCT: "Product Only",
            TransactionKind.MIXED: "Service + Product",
        }[self]


class CheckoutState(str, Enum):
    BUILDING = "building"
    SUBMITTING = "submitting"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_busy(self) -> bool:
        return self in (CheckoutState.SUBMITTING, CheckoutState.AWAITING_CONFIRMATION)


class CustomerType(str, Enum):
    WALK_IN = "walk_in"
    REGISTERED = "registered"


def to_money(value) -> Decimal:
    """Coerce ints, floats, strings and Decimals to a Decimal amount."""
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def line_key(kind: ItemKind, item_id: int) -> str:
    return f"{ItemKind(kind).value}_{item_id}"


class CustomerInfo(BaseModel):
    """Walk-in details or a reference to a registered client."""

    type: CustomerType = CustomerType.WALK_IN
    client_id: Optional[int] = None
    name: str = ""
    phone: str = ""
    email: str = ""


class CartLine(BaseModel):
    """One service or product in the cart."""

    line_id: str
    item_kind: ItemKind
    item_id: int
    name: str
    description: str = ""
    unit_price: Decimal = Field(ge=0)
    quantity: int = Field(default=1, ge=1)
    assigned_staff_id: Optional[int] = None
    duration_minutes: Optional[int] = None

    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.quantity


class Totals(NamedTuple):
    subtotal: Decimal
    tax_amount: Decimal
    total_amount: Decimal


def compute_totals(
    lines: Iterable[CartLine],
    discount_amount: Decimal = ZERO,
    tip_amount: Decimal = ZERO,
) -> Totals:
    """Pure totals calculation shared by the cart and the tests."""
    subtotal = sum((line.line_total for line in lines), ZERO)
    tax_amount = (subtotal * VAT_RATE).quantize(CENT, rounding=ROUND_HALF_UP)
    total_amount = max(ZERO, subtotal + tax_amount + tip_amount - discount_amount)
    return Totals(subtotal, tax_amount, total_amount)


def derive_transaction_kind(lines: Iterable[CartLine]) -> TransactionKind:
    """Mixed when both kinds are present; an empty cart counts as a service sale."""
    kinds = {line.item_kind for line in lines}
    if kinds == {ItemKind.SERVICE, ItemKind.PRODUCT}:
        return TransactionKind.MIXED
    if ItemKind.PRODUCT in kinds:
        return TransactionKind.PRODUCT
    return TransactionKind.SERVICE


class Cart(BaseModel):
    """Mutable cart aggregate; totals are recomputed after every priced change."""

    lines: Dict[str, CartLine] = Field(default_factory=dict)
    customer: CustomerInfo = Field(default_factory=CustomerInfo)
    selected_staff_id: Optional[int] = None
    payment_method: PaymentMethod = PaymentMethod.CASH
    discount_amount: Decimal = ZERO
    tip_amount: Decimal = ZERO
    subtotal: Decimal = ZERO
    tax_amount: Decimal = ZERO
    total_amount: Decimal = ZERO

    @property
    def is_empty(self) -> bool:
        return not self.lines

    def get_line(self, line_id: str) -> Optional[CartLine]:
        return self.lines.get(line_id)

    def add_line(
        self,
        kind: ItemKind,
        item_id: int,
        name: str,
        unit_price,
        description: str = "",
        duration_minutes: Optional[int] = None,
    ) -> CartLine:
        """
        Add one unit of an item.

        A repeated product bumps the quantity; a repeated service is left
        alone since one booking slot cannot be sold twice in a cart.
        """
        kind = ItemKind(kind)
        key = line_key(kind, item_id)
        existing = self.lines.get(key)

        if existing is not None:
            if kind == ItemKind.PRODUCT:
                existing.quantity += 1
                self.recompute_totals()
            return existing

        is_service = kind == ItemKind.SERVICE
        line = CartLine(
            line_id=key,
            item_kind=kind,
            item_id=item_id,
            name=name,
            description=description or "",
            unit_price=to_money(unit_price),
            quantity=1,
            assigned_staff_id=self.selected_staff_id if is_service else None,
            duration_minutes=duration_minutes if is_service else None,
        )
        self.lines[key] = line
        self.recompute_totals()
        return line

    def remove_line(self, line_id: str) -> bool:
        removed = self.lines.pop(line_id, None) is not None
        self.recompute_totals()
        return removed

    def set_quantity(self, line_id: str, quantity: int) -> bool:
        """Quantity <= 0 removes the line. Returns False when the line is absent."""
        if quantity <= 0:
            return self.remove_line(line_id)

        line = self.lines.get(line_id)
        if line is None:
            return False

        if line.item_kind == ItemKind.PRODUCT:
            line.quantity = quantity
            self.recompute_totals()
        return True

    def assign_staff(self, line_id: str, staff_id: Optional[int]) -> bool:
        line = self.lines.get(line_id)
        if line is None:
            return False
        line.assigned_staff_id = staff_id
        return True

    def set_discount(self, amount) -> None:
        self.discount_amount = to_money(amount)
        self.recompute_totals()

    def set_tip(self, amount) -> None:
        self.tip_amount = to_money(amount)
        self.recompute_totals()

    def recompute_totals(self) -> Totals:
        totals = compute_totals(self.lines.values(), self.discount_amount, self.tip_amount)
        self.subtotal, self.tax_amount, self.total_amount = totals
        return totals

    def transaction_kind(self) -> TransactionKind:
        return derive_transaction_kind(self.lines.values())

    def reset(self) -> None:
        """Back to an empty walk-in cash sale."""
        self.lines = {}
        self.customer = CustomerInfo()
        self.selected_staff_id = None
        self.payment_method = PaymentMethod.CASH
        self.discount_amount = ZERO
        self.tip_amount = ZERO
        self.recompute_totals()


class TerminalSession(BaseModel):
    """Everything one POS terminal holds between requests."""

    terminal_id: str
    branch_id: int
    cart: Cart = Field(default_factory=Cart)
    state: CheckoutState = CheckoutState.BUILDING
    is_processing_payment: bool = False
    pending_transaction_id: Optional[str] = None
    last_transaction_id: Optional[str] = None
    last_error: Optional[str] = None
