"""
Failure normalization for provisioning calls.
Decides whether a failed Proxy-Seller call may be retried.
"""
from enum import Enum
from typing import Any


class FailureType(str, Enum):
    TRANSPORT_TRANSIENT = "transport_transient"  # 429, 5xx, timeout, connection reset
    CIRCUIT_OPEN = "circuit_open"
    BUSINESS_REJECTED = "business_rejected"  # {status: error, errors: [...]}
    CLIENT_NON_RETRIABLE = "client_non_retriable"  # 4xx except 429


def classify_failure(
    http_status: int | None,
    detail: dict[str, Any],
) -> tuple[FailureType, bool]:
    """Returns (failure_type, retry_allowed)."""
    if detail.get("circuit_open"):
        return (FailureType.CIRCUIT_OPEN, False)

    if http_status is not None:
        if http_status == 429:
            return (FailureType.TRANSPORT_TRANSIENT, True)
        if 500 <= http_status < 600:
            return (FailureType.TRANSPORT_TRANSIENT, True)
        if 400 <= http_status < 500:
            return (FailureType.CLIENT_NON_RETRIABLE, False)

    if detail.get("errors"):
        return (FailureType.BUSINESS_REJECTED, False)

    # No detail (network error, timeout): transient
    return (FailureType.TRANSPORT_TRANSIENT, True)
