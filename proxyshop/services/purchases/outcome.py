from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from proxyshop.models.user_proxy import UserProxy
from proxyshop.services.errors import (
    CredentialsNotFound,
    InsufficientFunds,
    InvalidPurchaseRequest,
    PriceUnavailable,
    ProvisioningFailed,
)
from proxyshop.services.provisioning.base import Price, ProvisioningRequest


class PurchaseState(str, Enum):
    SETTLED = "settled"
    PARTIALLY_SETTLED = "partially_settled"
    ABORTED = "aborted"


class AbortReason(str, Enum):
    INVALID_REQUEST = InvalidPurchaseRequest.code
    DUPLICATE_REQUEST = "duplicate_request"
    PRICE_UNAVAILABLE = PriceUnavailable.code
    INSUFFICIENT_FUNDS = InsufficientFunds.code
    PROVISIONING_FAILED = ProvisioningFailed.code
    CREDENTIALS_NOT_FOUND = CredentialsNotFound.code


@dataclass
class Quote:
    request: ProvisioningRequest
    price: Price
    token: str
    expires_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "resource_type": self.request.resource_type,
            "location": self.request.location,
            "period_days": self.request.period_days,
            "quantity": self.request.quantity,
            "price": self.price.to_dict(),
            "token": self.token,
            "expires_at": self.expires_at.isoformat(),
        }


def claim_to_dict(claim: UserProxy) -> dict[str, Any]:
    return {
        "id": claim.id,
        "public_id": claim.public_id,
        "proxy_id": claim.proxy_id,
        "order_id": claim.order_id,
        "proxy_type": claim.proxy_type,
        "ip": claim.ip,
        "port_http": claim.port_http,
        "port_socks": claim.port_socks,
        "login": claim.login,
        "password": claim.password,
        "country": claim.country,
        "date_start": claim.date_start.isoformat() if claim.date_start else None,
        "date_end": claim.date_end.isoformat() if claim.date_end else None,
        "status": claim.status,
    }


@dataclass
class PurchaseOutcome:
    state: PurchaseState
    requested: int
    reason: AbortReason | None = None
    claims: list[dict[str, Any]] = field(default_factory=list)
    total_charged: Decimal = Decimal("0.00")
    refunded: Decimal = Decimal("0.00")
    new_balance: Decimal | None = None
    order_id: str | None = None

    @property
    def ok(self) -> bool:
        return self.state != PurchaseState.ABORTED

    @property
    def claimed(self) -> int:
        return len(self.claims)

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "reason": self.reason.value if self.reason else None,
            "requested": self.requested,
            "claimed": self.claimed,
            "claims": self.claims,
            "total_charged": str(self.total_charged),
            "refunded": str(self.refunded),
            "new_balance": str(self.new_balance) if self.new_balance is not None else None,
            "order_id": self.order_id,
        }
