"""
UserProxy: прокси, закреплённый за одним пользователем.
proxy_id (ключ Proxy-Seller) уникален: это единственное, что мешает двум
пользователям получить один и тот же прокси при параллельных покупках.
"""
from datetime import datetime, timezone

from sqlalchemy import BigInteger, Column, DateTime, Index, Integer, String

from proxyshop.db.base import Base

STATUS_ACTIVE = "active"
STATUS_EXPIRED = "expired"
STATUS_CANCELLED = "cancelled"


class UserProxy(Base):
    __tablename__ = "user_proxies"
    __table_args__ = (
        Index("idx_user_proxies_user_country", "telegram_id", "country"),
    )

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    public_id = Column(String, unique=True, nullable=True)  # CM000001; NULL only for legacy rows
    proxy_id = Column(String, unique=True, nullable=True, index=True)
    telegram_id = Column(String, nullable=False, index=True)
    order_id = Column(String, nullable=True, index=True)
    proxy_type = Column(String, nullable=True)  # ipv4 / ipv6 / mix
    login = Column(String, nullable=True)
    password = Column(String, nullable=True)
    ip = Column(String, nullable=True)
    port = Column(Integer, nullable=True)
    port_http = Column(Integer, nullable=True)
    port_socks = Column(Integer, nullable=True)
    country = Column(String, nullable=True)
    date_start = Column(DateTime(timezone=True), nullable=True)
    date_end = Column(DateTime(timezone=True), nullable=True)
    status = Column(String, nullable=False, default=STATUS_ACTIVE, index=True)
    purchased_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))
    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        index=True,
    )
