from datetime import datetime, timezone
from decimal import Decimal
from uuid import uuid4

from sqlalchemy import CheckConstraint, Column, DateTime, Integer, Numeric, String

from proxyshop.db.base import Base


class User(Base):
    __tablename__ = "users"
    __table_args__ = (
        CheckConstraint("balance >= 0", name="ck_users_balance_non_negative"),
        CheckConstraint("proxies_purchased >= 0", name="ck_users_purchased_non_negative"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid4()))
    telegram_id = Column(String, unique=True, nullable=False, index=True)
    username = Column(String, nullable=True)   # @nickname
    balance = Column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))  # USD
    proxies_purchased = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )
