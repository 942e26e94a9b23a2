"""Tests for CryptoPayClient: request shape, envelope handling, status lookup."""
import json
from decimal import Decimal

import httpx
import pytest


def _client(handler):
    from proxyshop.services.payments.cryptobot import CryptoPayClient

    http = httpx.Client(transport=httpx.MockTransport(handler))
    return CryptoPayClient(token="TOKEN", base_url="https://pay.test/api", client=http)


def _ok(result):
    return httpx.Response(200, json={"ok": True, "result": result})


def test_create_invoice_request_and_result(monkeypatch):
    from proxyshop.core.config import settings

    monkeypatch.setattr(settings, "bot_url", "https://t.me/shop_bot")
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["token"] = request.headers["Crypto-Pay-API-Token"]
        seen["body"] = json.loads(request.content)
        return _ok({"invoice_id": 321, "bot_invoice_url": "https://t.me/CryptoBot?start=IV321", "status": "active"})

    invoice = _client(handler).create_invoice(Decimal("25.00"), payload="deposit_1")

    assert invoice.invoice_id == "321"
    assert invoice.pay_url == "https://t.me/CryptoBot?start=IV321"
    assert invoice.status == "active"
    assert seen["path"] == "/api/createInvoice"
    assert seen["token"] == "TOKEN"
    assert seen["body"]["asset"] == "USDT"
    assert seen["body"]["amount"] == "25.00"
    assert seen["body"]["payload"] == "deposit_1"
    assert seen["body"]["expires_in"] == settings.deposit_invoice_ttl_seconds
    assert seen["body"]["paid_btn_name"] == "viewItem"
    assert seen["body"]["paid_btn_url"] == "https://t.me/shop_bot"


def test_create_invoice_without_bot_url_has_no_button(monkeypatch):
    from proxyshop.core.config import settings

    monkeypatch.setattr(settings, "bot_url", "")
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["body"] = json.loads(request.content)
        return _ok({"invoice_id": 1, "pay_url": "https://pay"})

    _client(handler).create_invoice(Decimal("5"), payload="deposit_1")
    assert "paid_btn_name" not in seen["body"]


def test_api_error_raises_provider_error():
    from proxyshop.services.errors import PaymentProviderError

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(400, json={"ok": False, "error": {"code": 400, "name": "AMOUNT_TOO_SMALL"}})

    with pytest.raises(PaymentProviderError) as exc:
        _client(handler).create_invoice(Decimal("0.01"), payload="deposit_1")
    assert "AMOUNT_TOO_SMALL" in str(exc.value)


def test_invalid_json_raises_provider_error():
    from proxyshop.services.errors import PaymentProviderError

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(502, text="<html>bad gateway</html>")

    with pytest.raises(PaymentProviderError):
        _client(handler).create_invoice(Decimal("5"), payload="deposit_1")


class TestInvoiceStatus:
    def test_paid(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["params"] = dict(request.url.params)
            return _ok({"items": [{"invoice_id": 321, "status": "paid", "amount": "25", "paid_at": "2026-10-19"}]})

        invoice = _client(handler).get_invoice_status("321")
        assert invoice.status == "paid"
        assert invoice.paid_at == "2026-10-19"
        assert seen["params"] == {"invoice_ids": "321"}

    def test_not_listed(self):
        from proxyshop.services.errors import PaymentLookupFailed

        def handler(request: httpx.Request) -> httpx.Response:
            return _ok({"items": [{"invoice_id": 999, "status": "paid"}]})

        with pytest.raises(PaymentLookupFailed):
            _client(handler).get_invoice_status("321")

    def test_transport_error_is_lookup_failure(self):
        from proxyshop.services.errors import PaymentLookupFailed

        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timeout", request=request)

        with pytest.raises(PaymentLookupFailed):
            _client(handler).get_invoice_status("321")

    def test_open_circuit_is_lookup_failure(self):
        from proxyshop.services.errors import PaymentLookupFailed

        calls = {"n": 0}

        def handler(request: httpx.Request) -> httpx.Response:
            calls["n"] += 1
            raise httpx.ConnectError("refused", request=request)

        client = _client(handler)
        for _ in range(7):
            with pytest.raises(PaymentLookupFailed):
                client.get_invoice_status("321")
        assert calls["n"] == 5


def test_delete_invoice():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["body"] = json.loads(request.content)
        return _ok(True)

    assert _client(handler).delete_invoice("321") is True
    assert seen["body"] == {"invoice_id": 321}
