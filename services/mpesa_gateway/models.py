from sqlalchemy import JSON, Column, DateTime, Integer, Numeric, String, Text
from sqlalchemy.orm import declarative_base

from shared.database import utcnow

Base = declarative_base()


class MpesaTransaction(Base):
    """One STK push request and its outcome."""

    __tablename__ = "mpesa_transactions"

    id = Column(Integer, primary_key=True)
    pos_transaction_id = Column(String(64), unique=True, nullable=False, index=True)
    merchant_request_id = Column(String(64), nullable=False, index=True)
    checkout_request_id = Column(String(64), unique=True, nullable=False, index=True)
    phone_number = Column(String(20), nullable=False)
    amount = Column(Numeric(10, 2), nullable=False)
    account_reference = Column(String(64), nullable=True)
    transaction_desc = Column(String(255), nullable=True)
    status = Column(String(20), nullable=False, default="pending", index=True)  # pending, success, failed, cancelled, timeout
    result_code = Column(String(10), nullable=True)
    result_desc = Column(Text, nullable=True)
    mpesa_receipt_number = Column(String(32), nullable=True, index=True)
    transaction_date = Column(DateTime, nullable=True)
    callback_data = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
