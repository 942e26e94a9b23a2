"""
Deposit: журнал пополнений через Crypto Pay.
invoice_id уникален; переход pending -> paid выполняется условным UPDATE,
поэтому баланс зачисляется ровно один раз.
"""
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import Column, DateTime, Integer, Numeric, String

from proxyshop.db.base import Base

STATUS_PENDING = "pending"
STATUS_PAID = "paid"
STATUS_EXPIRED = "expired"
STATUS_CANCELLED = "cancelled"

TERMINAL_STATUSES = frozenset({STATUS_PAID, STATUS_EXPIRED, STATUS_CANCELLED})


class Deposit(Base):
    __tablename__ = "deposits"

    id = Column(String, primary_key=True, default=lambda: str(uuid4()))
    invoice_id = Column(String, unique=True, nullable=False)
    telegram_id = Column(String, nullable=False, index=True)
    amount = Column(Numeric(12, 2), nullable=False)  # USD
    asset = Column(String, nullable=False, default="USDT")
    pay_url = Column(String, nullable=True)
    status = Column(String, nullable=False, default=STATUS_PENDING, index=True)
    poll_attempts = Column(Integer, nullable=False, default=0)
    last_polled_at = Column(DateTime(timezone=True), nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    paid_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )
