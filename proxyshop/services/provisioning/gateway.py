"""
Provisioning gateway: quote, order and credential retrieval over a provider,
with retry/backoff for transient failures and the bounded activation schedule.
"""
import logging
import random
import time
from decimal import Decimal
from typing import Any, Callable, Iterator

from proxyshop.core.config import settings
from proxyshop.services.errors import PriceUnavailable, ProvisioningFailed
from proxyshop.services.provisioning.base import (
    OrderResult,
    Price,
    ProvisioningError,
    ProvisioningProvider,
    ProvisioningRequest,
    ResourceRecord,
)
from proxyshop.services.provisioning.failure_types import classify_failure
from proxyshop.services.provisioning.pricing import apply_markup
from proxyshop.services.provisioning.proxy_seller import parse_date

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = frozenset({"active"})


def _to_int(value: Any) -> int | None:
    try:
        return int(value) if value not in (None, "") else None
    except (TypeError, ValueError):
        return None


def _to_str(value: Any) -> str | None:
    return str(value) if value not in (None, "") else None


def is_active(raw: dict[str, Any]) -> bool:
    status = str(raw.get("status") or "").lower()
    status_type = str(raw.get("status_type") or "").lower()
    return status in ACTIVE_STATUSES or status_type in ACTIVE_STATUSES


def to_record(raw: dict[str, Any]) -> ResourceRecord:
    return ResourceRecord(
        key=_to_str(raw.get("id") if raw.get("id") is not None else raw.get("proxy_id")),
        order_id=_to_str(raw.get("order_id") if raw.get("order_id") is not None else raw.get("orderId")),
        login=_to_str(raw.get("login")),
        password=_to_str(raw.get("password")),
        ip=_to_str(raw.get("ip")),
        port_http=_to_int(raw.get("port_http") if raw.get("port_http") is not None else raw.get("port")),
        port_socks=_to_int(raw.get("port_socks")),
        country=_to_str(raw.get("country_alpha3") or raw.get("country")),
        date_start=parse_date(raw.get("date_start")),
        date_end=parse_date(raw.get("date_end")),
        status=_to_str(raw.get("status") or raw.get("status_type")),
    )


def extract_order(data: dict[str, Any]) -> OrderResult:
    """order id plus every unit key the response exposes (proxy_id scalar/list, items[].id, proxies[].id)."""
    order_id = None
    for key in ("orderId", "order_id", "id"):
        if data.get(key) not in (None, ""):
            order_id = str(data[key])
            break

    keys: list[str] = []

    def _add(value: Any) -> None:
        if value in (None, ""):
            return
        value = str(value)
        if value not in keys:
            keys.append(value)

    proxy_id = data.get("proxy_id")
    if isinstance(proxy_id, list):
        for value in proxy_id:
            _add(value)
    else:
        _add(proxy_id)
    for group in ("items", "proxies"):
        for item in data.get(group) or []:
            if isinstance(item, dict):
                _add(item.get("id"))

    return OrderResult(order_id=order_id, candidate_keys=keys, raw=data)


class ProvisioningGateway:
    def __init__(
        self,
        provider: ProvisioningProvider | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if provider is None:
            from proxyshop.services.provisioning.proxy_seller import ProxySellerProvider

            provider = ProxySellerProvider()
        self.provider = provider
        self.sleep = sleep
        self.poll_attempts = settings.provisioning_poll_attempts
        self.poll_delay = settings.provisioning_poll_delay_seconds
        self.retry_max_attempts = settings.provisioning_retry_max_attempts
        self.retry_backoff = settings.provisioning_retry_backoff_seconds

    def _with_retry(self, operation: str, func: Callable[[], Any]) -> Any:
        """Retry transient failures with backoff + jitter; business rejections go straight up."""
        attempt = 0
        while True:
            attempt += 1
            try:
                return func()
            except ProvisioningError as e:
                detail = e.detail or {}
                failure_type, retry_allowed = classify_failure(detail.get("http_status"), detail)
                if not retry_allowed or attempt >= self.retry_max_attempts:
                    logger.warning(
                        "provisioning_call_failed",
                        extra={
                            "operation": operation,
                            "attempt": attempt,
                            "failure_type": failure_type.value,
                            "error": str(e),
                        },
                    )
                    raise
                delay = self.retry_backoff * attempt
                if detail.get("retry_after"):
                    try:
                        delay = float(detail["retry_after"])
                    except (TypeError, ValueError):
                        pass
                delay += random.uniform(0, 1)
                logger.info(
                    "provisioning_retry_scheduled",
                    extra={
                        "operation": operation,
                        "attempt": attempt,
                        "max_attempts": self.retry_max_attempts,
                        "delay_seconds": round(delay, 2),
                        "failure_type": failure_type.value,
                    },
                )
                self.sleep(delay)

    def quote(self, resource_type: str, location: str, period_days: int, quantity: int) -> Price:
        request = ProvisioningRequest(resource_type, location, int(period_days), int(quantity))
        try:
            base = self._with_retry("calculate", lambda: self.provider.calculate(request))
        except ProvisioningError as e:
            raise PriceUnavailable(str(e)) from e
        if base is None or Decimal(base) <= 0:
            raise PriceUnavailable("no positive price for request", request=request)
        return apply_markup(Decimal(base), request.period_days)

    def order(self, resource_type: str, location: str, period_days: int, quantity: int) -> OrderResult:
        """Not retried: order/make is not idempotent on the provider side."""
        request = ProvisioningRequest(resource_type, location, int(period_days), int(quantity))
        try:
            data = self.provider.place_order(request)
        except ProvisioningError as e:
            raise ProvisioningFailed(str(e), detail=e.detail) from e
        return extract_order(data)

    def fetch_credentials(self, resource_type: str, since_order_id: str | None = None) -> list[ResourceRecord]:
        """Active units only. Units of `since_order_id` come first, the rest keep provider order."""
        raw = self._with_retry("list_units", lambda: self.provider.list_units(resource_type))
        records = [to_record(item) for item in raw if isinstance(item, dict) and is_active(item)]
        if since_order_id:
            records.sort(key=lambda r: r.order_id != str(since_order_id))
        return records

    def credential_batches(self, resource_type: str, order_id: str | None) -> Iterator[list[ResourceRecord]]:
        """
        Activation schedule: up to poll_attempts fetches, poll_delay apart.
        A failed fetch counts as an attempt and yields an empty batch.
        """
        for attempt in range(1, self.poll_attempts + 1):
            if attempt > 1:
                self.sleep(self.poll_delay)
            try:
                batch = self.fetch_credentials(resource_type, since_order_id=order_id)
            except ProvisioningError as e:
                logger.warning(
                    "credentials_fetch_failed",
                    extra={"order_id": order_id, "attempt": attempt, "error": str(e)},
                )
                batch = []
            logger.info(
                "credentials_batch",
                extra={
                    "order_id": order_id,
                    "attempt": attempt,
                    "max_attempts": self.poll_attempts,
                    "count": len(batch),
                },
            )
            yield batch
