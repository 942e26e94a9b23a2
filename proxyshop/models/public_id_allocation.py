from datetime import datetime, timezone

from sqlalchemy import BigInteger, Column, DateTime, Integer

from proxyshop.db.base import Base


class PublicIdAllocation(Base):
    """Monotonic counter behind CM ids: one row per issued identifier, gaps allowed."""

    __tablename__ = "public_id_allocations"
    __table_args__ = {"sqlite_autoincrement": True}

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    issued_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))
