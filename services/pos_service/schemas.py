from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from services.pos_service.cart import ItemKind, PaymentMethod, TerminalSession
from services.pos_service.checkout import CheckoutResult


class OpenSessionRequest(BaseModel):
    """Request model for opening a terminal session."""

    branch_id: int


class AddItemRequest(BaseModel):
    """Request model for adding a service or product to the cart."""

    item_kind: ItemKind
    item_id: int


class UpdateQuantityRequest(BaseModel):
    """Quantity 0 (or less) removes the line."""

    quantity: int


class AssignStaffRequest(BaseModel):
    staff_id: Optional[int] = None


class SelectStaffRequest(BaseModel):
    staff_id: int


class AdjustmentsRequest(BaseModel):
    """Discount and tip; omitted fields are left unchanged."""

    discount_amount: Optional[Decimal] = Field(default=None, ge=0)
    tip_amount: Optional[Decimal] = Field(default=None, ge=0)


class PaymentMethodRequest(BaseModel):
    payment_method: PaymentMethod


class CustomerRequest(BaseModel):
    """Registered client when client_id is given, walk-in otherwise."""

    client_id: Optional[int] = None
    name: str = ""
    phone: str = ""
    email: str = ""


class CheckoutResponse(BaseModel):
    """Response model for checkout."""

    transaction: CheckoutResult
    session: TerminalSession


class ServiceResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    description: Optional[str] = None
    category: str
    price: Decimal
    duration_minutes: int


class ProductResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    sku: Optional[str] = None
    name: str
    description: Optional[str] = None
    category: str
    selling_price: Decimal
    current_stock: int


class StaffResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    email: Optional[str] = None
    phone: Optional[str] = None


class TransactionItemResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    item_type: str
    item_id: int
    item_name: str
    quantity: int
    unit_price: Decimal
    total_price: Decimal
    assigned_staff_id: Optional[int] = None
    duration_minutes: Optional[int] = None


class TransactionResponse(BaseModel):
    """Response model for a stored POS transaction."""

    model_config = ConfigDict(from_attributes=True)

    transaction_id: str
    transaction_number: str
    business_date: date
    terminal_id: str
    branch_id: int
    staff_id: int
    client_id: Optional[int] = None
    customer_name: str
    transaction_kind: str
    subtotal: Decimal
    discount_amount: Decimal
    tax_amount: Decimal
    tip_amount: Decimal
    total_amount: Decimal
    payment_method: str
    payment_status: str
    external_payment_ref: Optional[str] = None
    failure_reason: Optional[str] = None
    receipt_number: Optional[str] = None
    created_at: datetime
    completed_at: Optional[datetime] = None
    items: List[TransactionItemResponse]


class DailySummaryResponse(BaseModel):
    branch_id: int
    business_date: date
    total_transactions: int
    completed_transactions: int
    failed_transactions: int
    total_revenue: Decimal
    cash_sales: Decimal
    mpesa_sales: Decimal
    service_revenue: Decimal
    total_discounts: Decimal
    total_tips: Decimal
    avg_transaction_value: Decimal


class HealthResponse(BaseModel):
    """Response model for health check."""

    status: str
    service: str
    version: str
