"""
Proxy-Seller user API v1 provider (httpx sync client).
Base URL: {PROXY_SELLER_API_URL}/{api_key}/..., envelope {status, data, errors}.
"""
import logging
import time
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any

import httpx
import pybreaker

from proxyshop.core.config import settings
from proxyshop.services.circuit_breaker import get_circuit_breaker
from proxyshop.services.provisioning.base import (
    ProvisioningError,
    ProvisioningProvider,
    ProvisioningRequest,
)
from proxyshop.utils.metrics import provider_request_duration_seconds, provider_requests_total

logger = logging.getLogger(__name__)

PROVIDER = "proxy_seller"

# resource type -> API proxy type
API_TYPES = {
    "private_ipv4": "ipv4",
    "shared_ipv4": "mix",
    "private_ipv6": "ipv6",
}

# rental days -> periodId
PERIOD_IDS = {
    7: "1w",
    14: "2w",
    30: "1m",
    60: "2m",
    90: "3m",
    180: "6m",
}
# first available of these when the exact period is not offered
PERIOD_FALLBACK = ("1w", "2w", "1m", "2m", "3m", "6m")

ALPHA3_KEYS = ("alpha3", "code3", "alpha_3", "iso3", "iso_3")
ALPHA2_KEYS = ("alpha2", "code2", "alpha_2", "iso2", "iso_2")
NAME_KEYS = ("name", "country", "title")

DATE_FORMATS = ("%d.%m.%Y %H:%M:%S", "%d.%m.%Y %H:%M", "%d.%m.%Y", "%Y-%m-%d %H:%M:%S", "%Y-%m-%d")


class ProxySellerRejected(ProvisioningError):
    """API answered with {status: error, errors: [...]}: a business answer, not an outage."""


def api_type_for(resource_type: str) -> str:
    return API_TYPES.get(resource_type, "ipv4")


def period_id_for(days: int) -> str:
    return PERIOD_IDS.get(int(days), "1w")


def _error_message(errors: Any) -> str:
    if not isinstance(errors, list):
        return str(errors)
    parts = []
    for e in errors:
        if isinstance(e, dict):
            parts.append(str(e.get("message") or e.get("error") or e))
        else:
            parts.append(str(e))
    return "; ".join(parts)


def normalize_reference(raw: Any, api_type: str) -> tuple[list[dict], list[dict]]:
    """
    reference/list comes in several shapes:
    {items: {country, period}}, {items: [{country, period}]}, [{country, period}],
    {ipv4: {country, period}}, {country, period}.
    Returns (countries, periods) as lists of dicts.
    """
    section: Any = raw
    if isinstance(raw, dict) and isinstance(raw.get("items"), dict):
        if "country" in raw["items"] or "period" in raw["items"]:
            section = raw["items"]
    elif isinstance(raw, list) and raw:
        section = next((it for it in raw if isinstance(it, dict) and ("country" in it or "period" in it)), raw[0])
    elif isinstance(raw, dict) and isinstance(raw.get("items"), list) and raw["items"]:
        items = raw["items"]
        section = next((it for it in items if isinstance(it, dict) and ("country" in it or "period" in it)), items[0])
    elif isinstance(raw, dict) and isinstance(raw.get(api_type), dict):
        section = raw[api_type]

    if not isinstance(section, dict):
        return [], []

    def _as_list(value: Any) -> list:
        if isinstance(value, list):
            return value
        if isinstance(value, dict):
            return list(value.values())
        return []

    countries = [
        c if isinstance(c, dict) else {"id": idx + 1, "name": str(c)}
        for idx, c in enumerate(_as_list(section.get("country")))
    ]
    periods = [
        p if isinstance(p, dict) else {"id": str(p), "name": str(p)}
        for p in _as_list(section.get("period"))
    ]
    return countries, periods


def _first(record: dict, keys: tuple[str, ...]) -> str:
    for key in keys:
        if record.get(key):
            return str(record[key])
    return ""


def find_country(countries: list[dict], location: str) -> dict | None:
    """Match by numeric id, alpha-3, alpha-2, id string, exact name, then name prefix."""
    value = str(location or "").strip()
    if not value or not countries:
        return None
    upper, lower = value.upper(), value.lower()

    if value.isdigit():
        for c in countries:
            try:
                if int(c.get("id") or c.get("value") or 0) == int(value):
                    return c
            except (TypeError, ValueError):
                continue
    for keys in (ALPHA3_KEYS, ALPHA2_KEYS):
        for c in countries:
            if _first(c, keys).upper() == upper:
                return c
    for c in countries:
        if str(c.get("id") or c.get("value") or "") == value:
            return c
    for c in countries:
        if _first(c, NAME_KEYS).lower() == lower:
            return c
    for c in countries:
        name = _first(c, NAME_KEYS).lower()
        if name and name.startswith(lower):
            return c
    return None


def pick_period(periods: list[dict], days: int) -> str | None:
    ids = [str(p.get("id")) for p in periods if p.get("id") is not None]
    desired = period_id_for(days)
    if desired in ids:
        return desired
    for alt in PERIOD_FALLBACK:
        if alt in ids:
            logger.warning(
                "proxy_seller_period_fallback",
                extra={"reason": f"{days}d ({desired}) not offered, using {alt}"},
            )
            return alt
    return None


def extract_price(data: Any) -> Decimal | None:
    """data.total, else data.price * quantity, else the first positive amount-like field."""
    if not isinstance(data, dict):
        return None

    def _positive(value: Any) -> Decimal | None:
        if value is None or isinstance(value, bool):
            return None
        try:
            number = Decimal(str(value))
        except (InvalidOperation, ValueError):
            return None
        return number if number.is_finite() and number > 0 else None

    total = _positive(data.get("total"))
    if total is not None:
        return total
    price = _positive(data.get("price"))
    if price is not None:
        qty = _positive(data.get("quantity")) or Decimal(1)
        return price * qty
    for key in ("amount", "usd", "cost", "final", "sum"):
        value = _positive(data.get(key))
        if value is not None:
            return value
    return None


def parse_date(value: Any) -> datetime | None:
    if not value:
        return None
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    text = str(value).strip()
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).replace(tzinfo=timezone.utc)
        except ValueError:
            continue
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


class ProxySellerProvider(ProvisioningProvider):
    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        client: httpx.Client | None = None,
        breaker: pybreaker.CircuitBreaker | None = None,
    ) -> None:
        self._api_key = api_key or settings.proxy_seller_api_key
        self._base_url = (base_url or settings.proxy_seller_api_url).rstrip("/")
        self._client = client
        self._breaker = breaker or get_circuit_breaker(PROVIDER, exclude=[ProxySellerRejected])

    @property
    def client(self) -> httpx.Client:
        """Lazy initialization of httpx client."""
        if self._client is None:
            self._client = httpx.Client(timeout=settings.proxy_seller_timeout)
        return self._client

    def _record(self, method: str, status: str, started: float) -> None:
        provider_requests_total.labels(provider=PROVIDER, method=method, status=status).inc()
        provider_request_duration_seconds.labels(provider=PROVIDER, method=method).observe(
            time.monotonic() - started
        )

    def _request(self, http_method: str, path: str, payload: dict | None = None) -> Any:
        method = "/".join(path.split("/")[:2])  # metrics label without the type suffix
        url = f"{self._base_url}/{self._api_key}/{path}"
        started = time.monotonic()
        try:
            resp = self.client.request(http_method, url, json=payload)
        except httpx.HTTPError as e:
            self._record(method, "transport_error", started)
            raise ProvisioningError(f"proxy-seller {path}: {type(e).__name__}") from e

        if resp.status_code >= 400:
            self._record(method, str(resp.status_code), started)
            retry_after = resp.headers.get("retry-after")
            raise ProvisioningError(
                f"proxy-seller {path}: HTTP {resp.status_code}",
                {"http_status": resp.status_code, "retry_after": retry_after},
            )
        try:
            body = resp.json()
        except ValueError as e:
            self._record(method, "invalid_json", started)
            raise ProvisioningError(
                f"proxy-seller {path}: invalid JSON", {"http_status": resp.status_code}
            ) from e

        if isinstance(body, dict) and body.get("status") == "success":
            self._record(method, "ok", started)
            if body.get("errors"):
                logger.warning(
                    "proxy_seller_warnings",
                    extra={"operation": path, "error": _error_message(body["errors"])},
                )
            return body.get("data")
        if isinstance(body, dict) and (body.get("errors") or body.get("status") == "error"):
            self._record(method, "rejected", started)
            errors = body.get("errors") or [{"message": "status=error"}]
            raise ProxySellerRejected(
                f"proxy-seller {path}: {_error_message(errors)}",
                {"errors": errors},
            )
        self._record(method, "ok", started)
        return body

    def _call(self, http_method: str, path: str, payload: dict | None = None) -> Any:
        try:
            return self._breaker.call(self._request, http_method, path, payload)
        except pybreaker.CircuitBreakerError as e:
            raise ProvisioningError(f"proxy-seller {path}: circuit open", {"circuit_open": True}) from e

    def reference(self, api_type: str) -> tuple[list[dict], list[dict]]:
        return normalize_reference(self._call("GET", f"reference/list/{api_type}"), api_type)

    def _order_payload(self, request: ProvisioningRequest) -> dict[str, Any] | None:
        """countryId/periodId resolved against reference/list; None when not offered."""
        api_type = api_type_for(request.resource_type)
        countries, periods = self.reference(api_type)
        country = find_country(countries, request.location)
        if country is None:
            logger.warning(
                "proxy_seller_country_not_found",
                extra={"reason": str(request.location), "operation": api_type},
            )
            return None
        period_id = pick_period(periods, request.period_days)
        if period_id is None:
            logger.warning(
                "proxy_seller_period_not_found",
                extra={"reason": f"{request.period_days}d", "operation": api_type},
            )
            return None

        payload: dict[str, Any] = {
            "paymentId": settings.proxy_seller_payment_id,
            "generateAuth": "N",
            "countryId": country.get("id") or country.get("value"),
            "periodId": period_id,
            "quantity": int(request.quantity),
            "authorization": "",
            "coupon": "",
            "customTargetName": settings.proxy_seller_target_name,
        }
        if api_type == "ipv6":
            payload["protocol"] = settings.proxy_seller_ipv6_protocol
        return payload

    def calculate(self, request: ProvisioningRequest) -> Decimal | None:
        payload = self._order_payload(request)
        if payload is None:
            return None
        try:
            data = self._call("POST", "order/calc", payload)
        except ProxySellerRejected as e:
            logger.warning("proxy_seller_calc_rejected", extra={"error": str(e)})
            return None
        if isinstance(data, dict) and data.get("warning"):
            logger.warning("proxy_seller_calc_warning", extra={"reason": str(data["warning"])})
        return extract_price(data)

    def place_order(self, request: ProvisioningRequest) -> dict[str, Any]:
        payload = self._order_payload(request)
        if payload is None:
            raise ProxySellerRejected(
                "proxy-seller order/make: location or period not offered",
                {"errors": [{"message": "reference lookup failed"}]},
            )
        data = self._call("POST", "order/make", payload)
        if not isinstance(data, dict):
            raise ProvisioningError("proxy-seller order/make: unexpected response", {"errors": [str(data)]})
        logger.info(
            "proxy_seller_order_placed",
            extra={"order_id": data.get("orderId") or data.get("order_id"), "quantity": request.quantity},
        )
        return data

    def list_units(self, resource_type: str) -> list[dict[str, Any]]:
        data = self._call("GET", f"proxy/list/{api_type_for(resource_type)}")
        if isinstance(data, list):
            return data
        if isinstance(data, dict):
            for key in ("items", "data", "proxies"):
                if isinstance(data.get(key), list):
                    return data[key]
            # per-type grouping: {"ipv4": [...]}
            for value in data.values():
                if isinstance(value, list):
                    return value
        # nothing active yet
        return []
