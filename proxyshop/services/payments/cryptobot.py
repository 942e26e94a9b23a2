"""
Crypto Pay (CryptoBot) API client using httpx sync client.
Envelope: {ok: true, result: ...} / {ok: false, error: {code, name}}.
"""
import logging
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Any

import httpx
import pybreaker

from proxyshop.core.config import settings
from proxyshop.services.circuit_breaker import get_circuit_breaker
from proxyshop.services.errors import PaymentLookupFailed, PaymentProviderError
from proxyshop.utils.metrics import provider_request_duration_seconds, provider_requests_total

logger = logging.getLogger(__name__)

PROVIDER = "crypto_pay"

INVOICE_ACTIVE = "active"
INVOICE_PAID = "paid"
INVOICE_EXPIRED = "expired"


@dataclass
class Invoice:
    invoice_id: str
    pay_url: str | None
    status: str = INVOICE_ACTIVE
    amount: str | None = None
    paid_at: str | None = None


def _invoice_from(result: dict[str, Any]) -> Invoice:
    invoice_id = result.get("invoice_id") or result.get("invoiceId")
    if invoice_id in (None, ""):
        raise PaymentProviderError("crypto pay: invoice without id")
    return Invoice(
        invoice_id=str(invoice_id),
        pay_url=result.get("bot_invoice_url") or result.get("pay_url") or result.get("mini_app_invoice_url"),
        status=str(result.get("status") or INVOICE_ACTIVE),
        amount=result.get("amount"),
        paid_at=result.get("paid_at"),
    )


class CryptoPayClient:
    def __init__(
        self,
        token: str | None = None,
        base_url: str | None = None,
        client: httpx.Client | None = None,
        breaker: pybreaker.CircuitBreaker | None = None,
    ) -> None:
        self._token = token or settings.crypto_pay_api_token
        self._base_url = (base_url or settings.crypto_pay_api_url).rstrip("/")
        self._client = client
        self._breaker = breaker or get_circuit_breaker(PROVIDER)

    @property
    def client(self) -> httpx.Client:
        """Lazy initialization of httpx client."""
        if self._client is None:
            self._client = httpx.Client(timeout=settings.crypto_pay_timeout)
        return self._client

    def _record(self, method: str, status: str, started: float) -> None:
        provider_requests_total.labels(provider=PROVIDER, method=method, status=status).inc()
        provider_request_duration_seconds.labels(provider=PROVIDER, method=method).observe(
            time.monotonic() - started
        )

    def _request(self, method: str, params: dict | None = None, payload: dict | None = None) -> Any:
        url = f"{self._base_url}/{method}"
        headers = {"Crypto-Pay-API-Token": self._token}
        started = time.monotonic()
        try:
            if payload is not None:
                resp = self.client.post(url, json=payload, headers=headers)
            else:
                resp = self.client.get(url, params=params, headers=headers)
        except httpx.HTTPError as e:
            self._record(method, "transport_error", started)
            raise PaymentProviderError(f"crypto pay {method}: {type(e).__name__}") from e

        try:
            body = resp.json()
        except ValueError as e:
            self._record(method, str(resp.status_code), started)
            raise PaymentProviderError(f"crypto pay {method}: HTTP {resp.status_code}, invalid JSON") from e

        if not isinstance(body, dict) or not body.get("ok"):
            error = body.get("error") if isinstance(body, dict) else None
            name = ""
            if isinstance(error, dict):
                name = error.get("name") or error.get("message") or str(error.get("code") or "")
            elif error:
                name = str(error)
            self._record(method, str(resp.status_code), started)
            logger.warning(
                "crypto_pay_error",
                extra={"operation": method, "status": resp.status_code, "error": name},
            )
            raise PaymentProviderError(f"crypto pay {method}: {name or f'HTTP {resp.status_code}'}")

        self._record(method, "ok", started)
        return body.get("result")

    def _call(self, method: str, params: dict | None = None, payload: dict | None = None) -> Any:
        try:
            return self._breaker.call(self._request, method, params, payload)
        except pybreaker.CircuitBreakerError as e:
            raise PaymentProviderError(f"crypto pay {method}: circuit open") from e

    def create_invoice(self, amount: Decimal, payload: str, description: str = "Balance top-up") -> Invoice:
        body: dict[str, Any] = {
            "asset": settings.crypto_pay_asset,
            "amount": str(amount),
            "description": description,
            "payload": payload,
            "expires_in": settings.deposit_invoice_ttl_seconds,
        }
        if settings.bot_url:
            body["paid_btn_name"] = "viewItem"
            body["paid_btn_url"] = settings.bot_url
        result = self._call("createInvoice", payload=body)
        if not isinstance(result, dict):
            raise PaymentProviderError("crypto pay createInvoice: unexpected result")
        invoice = _invoice_from(result)
        logger.info("invoice_created", extra={"invoice_id": invoice.invoice_id, "amount": str(amount)})
        return invoice

    def get_invoice_status(self, invoice_id: str) -> Invoice:
        """Raises PaymentLookupFailed when the status cannot be determined."""
        try:
            result = self._call("getInvoices", params={"invoice_ids": str(invoice_id)})
        except PaymentProviderError as e:
            raise PaymentLookupFailed(str(e), invoice_id=invoice_id) from e
        items = result.get("items") if isinstance(result, dict) else result
        if not isinstance(items, list):
            raise PaymentLookupFailed("crypto pay getInvoices: unexpected result", invoice_id=invoice_id)
        for item in items:
            if isinstance(item, dict) and str(item.get("invoice_id") or item.get("invoiceId")) == str(invoice_id):
                return _invoice_from(item)
        raise PaymentLookupFailed("crypto pay getInvoices: invoice not listed", invoice_id=invoice_id)

    def delete_invoice(self, invoice_id: str) -> bool:
        result = self._call("deleteInvoice", payload={"invoice_id": int(invoice_id)})
        return bool(result)
