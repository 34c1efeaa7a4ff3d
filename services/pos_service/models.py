from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Table,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship

from shared.database import utcnow

Base = declarative_base()

MONEY = Numeric(12, 2)


service_branches = Table(
    "service_branches",
    Base.metadata,
    Column("service_id", ForeignKey("services.id"), primary_key=True),
    Column("branch_id", ForeignKey("branches.id"), primary_key=True),
)

staff_branches = Table(
    "staff_branches",
    Base.metadata,
    Column("staff_id", ForeignKey("staff.id"), primary_key=True),
    Column("branch_id", ForeignKey("branches.id"), primary_key=True),
)


class Branch(Base):
    """Spa/salon location; every terminal session belongs to one."""

    __tablename__ = "branches"

    id = Column(Integer, primary_key=True)
    name = Column(String(255), nullable=False, unique=True)
    phone = Column(String(32), nullable=True)


class Service(Base):
    """Bookable treatment sold per session."""

    __tablename__ = "services"

    id = Column(Integer, primary_key=True)
    name = Column(String(255), nullable=False, index=True)
    description = Column(Text, nullable=True)
    category = Column(String(50), nullable=False, default="other")
    price = Column(MONEY, nullable=False)
    duration_minutes = Column(Integer, nullable=False, default=60)
    is_active = Column(Boolean, nullable=False, default=True)

    branches = relationship("Branch", secondary=service_branches)


class Product(Base):
    """Retail stock item held by one branch."""

    __tablename__ = "products"

    id = Column(Integer, primary_key=True)
    branch_id = Column(Integer, ForeignKey("branches.id"), nullable=False, index=True)
    sku = Column(String(64), nullable=True)
    name = Column(String(255), nullable=False, index=True)
    description = Column(Text, nullable=True)
    category = Column(String(50), nullable=False, default="other")
    selling_price = Column(MONEY, nullable=True)
    current_stock = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True)


class Staff(Base):
    __tablename__ = "staff"

    id = Column(Integer, primary_key=True)
    name = Column(String(255), nullable=False)
    email = Column(String(255), nullable=True)
    phone = Column(String(32), nullable=True)
    status = Column(String(20), nullable=False, default="active")  # active, inactive, on_leave

    branches = relationship("Branch", secondary=staff_branches)


class Client(Base):
    """Registered customer."""

    __tablename__ = "clients"

    id = Column(Integer, primary_key=True)
    first_name = Column(String(120), nullable=False)
    last_name = Column(String(120), nullable=False, default="")
    phone = Column(String(32), nullable=True)
    email = Column(String(255), nullable=True)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class PosTransaction(Base):
    """Checkout record; money columns are written once at submission."""

    __tablename__ = "pos_transactions"
    __table_args__ = (UniqueConstraint("transaction_number", name="uq_pos_transactions_number"),)

    id = Column(Integer, primary_key=True)
    transaction_id = Column(String(64), unique=True, nullable=False, index=True)
    transaction_number = Column(String(32), nullable=False)
    business_date = Column(Date, nullable=False, index=True)
    terminal_id = Column(String(64), nullable=False, index=True)
    branch_id = Column(Integer, ForeignKey("branches.id"), nullable=False, index=True)
    staff_id = Column(Integer, ForeignKey("staff.id"), nullable=False)
    client_id = Column(Integer, ForeignKey("clients.id"), nullable=True)
    customer_info = Column(JSON, nullable=True)  # walk-in name/phone/email
    transaction_kind = Column(String(20), nullable=False)  # service, product, mixed
    subtotal = Column(MONEY, nullable=False)
    discount_amount = Column(MONEY, nullable=False, default=0)
    tax_amount = Column(MONEY, nullable=False)
    tip_amount = Column(MONEY, nullable=False, default=0)
    total_amount = Column(MONEY, nullable=False)
    payment_method = Column(String(20), nullable=False)  # cash, mpesa
    payment_status = Column(String(20), nullable=False, default="processing", index=True)  # processing, completed, failed
    external_payment_ref = Column(String(64), nullable=True)
    failure_reason = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
    completed_at = Column(DateTime, nullable=True)

    items = relationship("PosTransactionItem", back_populates="transaction", order_by="PosTransactionItem.id")
    receipt = relationship("PosReceipt", back_populates="transaction", uselist=False)
    staff = relationship("Staff")
    branch = relationship("Branch")
    client = relationship("Client")

    @property
    def customer_name(self) -> str:
        if self.client is not None:
            return self.client.full_name
        if self.customer_info and self.customer_info.get("name"):
            return self.customer_info["name"]
        return "Walk-in Customer"

    @property
    def customer_phone(self):
        if self.client is not None:
            return self.client.phone
        return (self.customer_info or {}).get("phone") or None

    @property
    def customer_email(self):
        if self.client is not None:
            return self.client.email
        return (self.customer_info or {}).get("email") or None

    @property
    def receipt_number(self):
        return self.receipt.receipt_number if self.receipt is not None else None


class PosTransactionItem(Base):
    """Snapshot of one cart line at submission time."""

    __tablename__ = "pos_transaction_items"

    id = Column(Integer, primary_key=True)
    pos_transaction_id = Column(Integer, ForeignKey("pos_transactions.id"), nullable=False, index=True)
    item_type = Column(String(20), nullable=False)  # service, product
    item_id = Column(Integer, nullable=False)
    item_name = Column(String(255), nullable=False)
    item_description = Column(Text, nullable=True)
    quantity = Column(Integer, nullable=False)
    unit_price = Column(MONEY, nullable=False)
    total_price = Column(MONEY, nullable=False)
    assigned_staff_id = Column(Integer, ForeignKey("staff.id"), nullable=True)
    duration_minutes = Column(Integer, nullable=True)

    transaction = relationship("PosTransaction", back_populates="items")
    assigned_staff = relationship("Staff")


class PosReceipt(Base):
    __tablename__ = "pos_receipts"

    id = Column(Integer, primary_key=True)
    pos_transaction_id = Column(Integer, ForeignKey("pos_transactions.id"), nullable=False, unique=True)
    receipt_number = Column(String(32), unique=True, nullable=False)
    receipt_type = Column(String(20), nullable=False, default="digital")
    customer_email = Column(String(255), nullable=True)
    customer_phone = Column(String(32), nullable=True)
    receipt_data = Column(JSON, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    transaction = relationship("PosTransaction", back_populates="receipt")


class ProcessedEvent(Base):
    """Track processed inbound events for idempotency."""

    __tablename__ = "processed_events"

    id = Column(Integer, primary_key=True)
    event_id = Column(String(255), unique=True, nullable=False, index=True)
    event_type = Column(String(100), nullable=False)
    processed_at = Column(DateTime, default=utcnow, nullable=False)
