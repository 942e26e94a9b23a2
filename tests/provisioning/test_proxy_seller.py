"""Tests for the Proxy-Seller provider: response parsing, order payload, envelope and circuit handling."""
import json
from datetime import datetime, timezone
from decimal import Decimal

import httpx
import pytest

BASE_URL = "https://api.test/v1"
API_KEY = "KEY"

REFERENCE = {
    "status": "success",
    "data": {
        "items": {
            "country": [
                {"id": 1, "name": "United States", "alpha3": "USA", "alpha2": "US"},
                {"id": 7, "name": "Germany", "alpha3": "DEU", "alpha2": "DE"},
            ],
            "period": [{"id": "1w", "name": "1 week"}, {"id": "1m", "name": "1 month"}],
        }
    },
    "errors": [],
}


def _provider(handler):
    from proxyshop.services.provisioning.proxy_seller import ProxySellerProvider

    client = httpx.Client(transport=httpx.MockTransport(handler))
    return ProxySellerProvider(api_key=API_KEY, base_url=BASE_URL, client=client)


def _success(data):
    return httpx.Response(200, json={"status": "success", "data": data, "errors": []})


class TestNormalizeReference:
    COUNTRY = [{"id": 1, "name": "United States"}]
    PERIOD = [{"id": "1w"}]

    @pytest.mark.parametrize(
        "raw",
        [
            {"items": {"country": COUNTRY, "period": PERIOD}},
            {"items": [{"country": COUNTRY, "period": PERIOD}]},
            [{"country": COUNTRY, "period": PERIOD}],
            {"ipv4": {"country": COUNTRY, "period": PERIOD}},
            {"country": COUNTRY, "period": PERIOD},
        ],
    )
    def test_known_shapes(self, raw):
        from proxyshop.services.provisioning.proxy_seller import normalize_reference

        countries, periods = normalize_reference(raw, "ipv4")
        assert countries == self.COUNTRY
        assert periods == self.PERIOD

    def test_dict_valued_lists_and_plain_strings(self):
        from proxyshop.services.provisioning.proxy_seller import normalize_reference

        countries, periods = normalize_reference({"country": {"a": "Germany"}, "period": ["1w"]}, "ipv4")
        assert countries == [{"id": 1, "name": "Germany"}]
        assert periods == [{"id": "1w", "name": "1w"}]

    def test_garbage_gives_empty(self):
        from proxyshop.services.provisioning.proxy_seller import normalize_reference

        assert normalize_reference(None, "ipv4") == ([], [])
        assert normalize_reference("oops", "ipv4") == ([], [])


class TestFindCountry:
    COUNTRIES = REFERENCE["data"]["items"]["country"]

    @pytest.mark.parametrize("location", ["1", "usa", "US", "united states", "united"])
    def test_matches(self, location):
        from proxyshop.services.provisioning.proxy_seller import find_country

        assert find_country(self.COUNTRIES, location)["id"] == 1

    def test_no_match(self):
        from proxyshop.services.provisioning.proxy_seller import find_country

        assert find_country(self.COUNTRIES, "Atlantis") is None
        assert find_country(self.COUNTRIES, "") is None


def test_pick_period_exact_and_fallback():
    from proxyshop.services.provisioning.proxy_seller import pick_period

    periods = [{"id": "1m"}, {"id": "3m"}]
    assert pick_period(periods, 30) == "1m"
    assert pick_period(periods, 7) == "1m"
    assert pick_period([], 7) is None


@pytest.mark.parametrize(
    "data,expected",
    [
        ({"total": "10.5"}, Decimal("10.5")),
        ({"price": 2, "quantity": 3}, Decimal("6")),
        ({"price": "2.5"}, Decimal("2.5")),
        ({"amount": 4}, Decimal("4")),
        ({"total": 0, "usd": "3.2"}, Decimal("3.2")),
        ({"total": 0, "price": 0}, None),
        ({"total": True}, None),
        ("x", None),
    ],
)
def test_extract_price(data, expected):
    from proxyshop.services.provisioning.proxy_seller import extract_price

    assert extract_price(data) == expected


def test_parse_date_formats():
    from proxyshop.services.provisioning.proxy_seller import parse_date

    assert parse_date("31.10.2026") == datetime(2026, 10, 31, tzinfo=timezone.utc)
    assert parse_date("31.10.2026 12:30:00") == datetime(2026, 10, 31, 12, 30, tzinfo=timezone.utc)
    assert parse_date("2026-10-31T12:00:00") == datetime(2026, 10, 31, 12, tzinfo=timezone.utc)
    assert parse_date(None) is None
    assert parse_date("soon") is None


class TestProvider:
    def test_calculate_sends_resolved_payload(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path.endswith("/reference/list/ipv4"):
                return httpx.Response(200, json=REFERENCE)
            if request.url.path.endswith("/order/calc"):
                seen["path"] = request.url.path
                seen["payload"] = json.loads(request.content)
                return _success({"total": 12.5})
            return httpx.Response(404)

        from proxyshop.services.provisioning.base import ProvisioningRequest

        price = _provider(handler).calculate(ProvisioningRequest("private_ipv4", "USA", 30, 2))

        assert price == Decimal("12.5")
        assert seen["path"] == "/v1/KEY/order/calc"
        assert seen["payload"]["countryId"] == 1
        assert seen["payload"]["periodId"] == "1m"
        assert seen["payload"]["quantity"] == 2
        assert seen["payload"]["generateAuth"] == "N"
        assert seen["payload"]["customTargetName"] == "surfing"
        assert "protocol" not in seen["payload"]

    def test_ipv6_payload_has_protocol(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            if "/reference/list/" in request.url.path:
                seen["type"] = request.url.path.rsplit("/", 1)[-1]
                return httpx.Response(200, json=REFERENCE)
            seen["payload"] = json.loads(request.content)
            return _success({"total": 3})

        from proxyshop.services.provisioning.base import ProvisioningRequest

        _provider(handler).calculate(ProvisioningRequest("private_ipv6", "DEU", 7, 1))
        assert seen["type"] == "ipv6"
        assert seen["payload"]["protocol"] == "HTTPS"
        assert seen["payload"]["countryId"] == 7

    def test_calculate_unknown_location_is_none(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json=REFERENCE)

        from proxyshop.services.provisioning.base import ProvisioningRequest

        assert _provider(handler).calculate(ProvisioningRequest("private_ipv4", "Atlantis", 30, 1)) is None

    def test_calculate_rejection_is_none(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if "/reference/list/" in request.url.path:
                return httpx.Response(200, json=REFERENCE)
            return httpx.Response(200, json={"status": "error", "errors": [{"message": "Not enough balance"}]})

        from proxyshop.services.provisioning.base import ProvisioningRequest

        assert _provider(handler).calculate(ProvisioningRequest("private_ipv4", "USA", 30, 1)) is None

    def test_place_order_returns_data(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if "/reference/list/" in request.url.path:
                return httpx.Response(200, json=REFERENCE)
            assert request.url.path.endswith("/order/make")
            return _success({"orderId": 555, "total": 12.5})

        from proxyshop.services.provisioning.base import ProvisioningRequest

        data = _provider(handler).place_order(ProvisioningRequest("private_ipv4", "USA", 30, 1))
        assert data["orderId"] == 555

    def test_place_order_rejected(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if "/reference/list/" in request.url.path:
                return httpx.Response(200, json=REFERENCE)
            return httpx.Response(200, json={"status": "error", "errors": ["Out of stock"]})

        from proxyshop.services.provisioning.base import ProvisioningRequest
        from proxyshop.services.provisioning.proxy_seller import ProxySellerRejected

        with pytest.raises(ProxySellerRejected) as exc:
            _provider(handler).place_order(ProvisioningRequest("private_ipv4", "USA", 30, 1))
        assert "Out of stock" in str(exc.value)
        assert exc.value.detail["errors"] == ["Out of stock"]

    @pytest.mark.parametrize(
        "data",
        [
            [{"id": 1}],
            {"items": [{"id": 1}]},
            {"proxies": [{"id": 1}]},
            {"ipv4": [{"id": 1}]},
        ],
    )
    def test_list_units_shapes(self, data):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path.endswith("/proxy/list/ipv4")
            return _success(data)

        assert _provider(handler).list_units("private_ipv4") == [{"id": 1}]

    def test_list_units_empty(self):
        assert _provider(lambda request: _success(None)).list_units("shared_ipv4") == []

    def test_http_error_carries_status_and_retry_after(self):
        from proxyshop.services.provisioning.base import ProvisioningError

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(429, headers={"Retry-After": "3"})

        with pytest.raises(ProvisioningError) as exc:
            _provider(handler).list_units("private_ipv4")
        assert exc.value.detail["http_status"] == 429
        assert exc.value.detail["retry_after"] == "3"

    def test_transport_error(self):
        from proxyshop.services.provisioning.base import ProvisioningError

        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectTimeout("timeout", request=request)

        with pytest.raises(ProvisioningError) as exc:
            _provider(handler).list_units("private_ipv4")
        assert exc.value.detail == {}

    def test_circuit_opens_after_repeated_failures(self):
        from proxyshop.services.provisioning.base import ProvisioningError

        calls = {"n": 0}

        def handler(request: httpx.Request) -> httpx.Response:
            calls["n"] += 1
            return httpx.Response(503)

        provider = _provider(handler)
        errors = []
        for _ in range(7):
            with pytest.raises(ProvisioningError) as exc:
                provider.list_units("private_ipv4")
            errors.append(exc.value.detail)

        assert errors[0]["http_status"] == 503
        assert errors[-1] == {"circuit_open": True}
        # open circuit: no more HTTP calls
        assert calls["n"] == 5

    def test_rejections_do_not_open_circuit(self):
        from proxyshop.services.provisioning.proxy_seller import ProxySellerRejected

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"status": "error", "errors": ["nope"]})

        provider = _provider(handler)
        for _ in range(8):
            with pytest.raises(ProxySellerRejected):
                provider.list_units("private_ipv4")
