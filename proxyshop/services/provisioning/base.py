"""
Base classes and types for provisioning providers.
Used by the gateway and the Proxy-Seller provider.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any

# Resource types offered to users
RESOURCE_TYPES = ("private_ipv4", "shared_ipv4", "private_ipv6")


@dataclass
class ProvisioningRequest:
    """What the user wants to buy."""
    resource_type: str
    location: str  # country: alpha-3, alpha-2, provider id or name
    period_days: int
    quantity: int


@dataclass
class Price:
    base: Decimal
    markup_percent: int
    markup: Decimal
    total: Decimal

    def to_dict(self) -> dict[str, Any]:
        return {
            "base": str(self.base),
            "markup_percent": self.markup_percent,
            "markup": str(self.markup),
            "total": str(self.total),
        }


@dataclass
class OrderResult:
    order_id: str | None
    candidate_keys: list[str] = field(default_factory=list)
    raw: dict[str, Any] | None = None


@dataclass
class ResourceRecord:
    """One unit as listed by the provider, normalized."""
    key: str | None
    order_id: str | None
    login: str | None
    password: str | None
    ip: str | None
    port_http: int | None = None
    port_socks: int | None = None
    country: str | None = None
    date_start: datetime | None = None
    date_end: datetime | None = None
    status: str | None = None

    @property
    def usable(self) -> bool:
        return bool(self.key and self.login and self.ip)

    def claim_attributes(self, resource_type: str | None = None) -> dict[str, Any]:
        return {
            "order_id": self.order_id,
            "proxy_type": resource_type,
            "login": self.login,
            "password": self.password,
            "ip": self.ip,
            "port": self.port_http,
            "port_http": self.port_http,
            "port_socks": self.port_socks,
            "country": self.country,
            "date_start": self.date_start,
            "date_end": self.date_end,
        }


class ProvisioningError(Exception):
    """Raised when the provider call fails; detail holds http_status etc. for classification."""
    def __init__(self, message: str, detail: dict[str, Any] | None = None):
        super().__init__(message)
        self.detail = detail or {}


class ProvisioningProvider(ABC):
    """Base class for provisioning providers."""

    @abstractmethod
    def calculate(self, request: ProvisioningRequest) -> Decimal | None:
        """Provider base price for the whole request, None when it cannot be priced."""
        pass

    @abstractmethod
    def place_order(self, request: ProvisioningRequest) -> dict[str, Any]:
        """Create the order. Returns the provider payload; raises ProvisioningError."""
        pass

    @abstractmethod
    def list_units(self, resource_type: str) -> list[dict[str, Any]]:
        """All units of the account for a resource type (raw provider dicts)."""
        pass
