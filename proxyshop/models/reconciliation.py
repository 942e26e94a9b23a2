from datetime import datetime, timezone
from decimal import Decimal
from uuid import uuid4

from sqlalchemy import Column, DateTime, Numeric, String

from proxyshop.db.base import Base, JSONType

REASON_PROVISIONING_FAILED = "refund_provisioning_failed"
REASON_CREDENTIALS_NOT_FOUND = "refund_credentials_not_found"
REASON_PARTIAL_SHORTFALL = "refund_partial_shortfall"
REASON_INTERNAL_ERROR = "refund_internal_error"


class ReconciliationLog(Base):
    """Money events that need a human look: the external order may exist while the user got a refund."""

    __tablename__ = "reconciliation_log"

    id = Column(String, primary_key=True, default=lambda: str(uuid4()))
    telegram_id = Column(String, nullable=False, index=True)
    order_id = Column(String, nullable=True, index=True)
    reason = Column(String, nullable=False)
    amount = Column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    detail = Column(JSONType, nullable=False, default=dict)
    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
