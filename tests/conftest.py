"""Shared fixtures: SQLite file database per test, fakeredis, in-memory provider and payment fakes."""
import os

# Settings are read at import time of proxyshop.core.config
os.environ.update({
    "DATABASE_URL": "sqlite://",
    "REDIS_URL": "redis://localhost:6379/15",
    "CELERY_BROKER_URL": "memory://",
    "CELERY_RESULT_BACKEND": "cache+memory://",
    "TELEGRAM_BOT_TOKEN": "123456:test-token",
    "PROXY_SELLER_API_KEY": "test-api-key",
    "CRYPTO_PAY_API_TOKEN": "test-crypto-token",
    "STATE_SECRET": "test-state-secret-0123456789",
    "CB_STORAGE": "memory",
})

import threading
from decimal import Decimal

import fakeredis
import pytest
from sqlalchemy.orm import sessionmaker

from proxyshop.services.errors import PaymentLookupFailed
from proxyshop.services.payments.cryptobot import INVOICE_ACTIVE, INVOICE_EXPIRED, INVOICE_PAID, Invoice
from proxyshop.services.provisioning.base import ProvisioningProvider


def make_unit(unit_id, order_id="1001", status="Active", **overrides) -> dict:
    """Raw proxy/list item as Proxy-Seller returns it."""
    unit = {
        "id": unit_id,
        "order_id": order_id,
        "ip": f"10.0.0.{int(unit_id) % 250}",
        "port_http": 8000 + int(unit_id) % 1000,
        "port_socks": 9000 + int(unit_id) % 1000,
        "login": f"user{unit_id}",
        "password": f"pass{unit_id}",
        "country_alpha3": "USA",
        "date_start": "01.10.2026",
        "date_end": "31.10.2026",
        "status": status,
    }
    unit.update(overrides)
    return unit


class FakeProvider(ProvisioningProvider):
    """
    price: base price for the whole request (None = not priced).
    batches: list_units answers in call order; the last one repeats.
    An Exception instance in batches is raised instead of returned.
    """

    def __init__(self, price=Decimal("10.00"), order=None, batches=None, order_error=None, calc_error=None):
        self.price = price
        self.order_response = order if order is not None else {"orderId": "1001"}
        self.batches = list(batches or [])
        self.order_error = order_error
        self.calc_error = calc_error
        self.calc_calls = 0
        self.order_calls = 0
        self.list_calls = 0
        self._lock = threading.Lock()

    def calculate(self, request):
        with self._lock:
            self.calc_calls += 1
        if self.calc_error is not None:
            raise self.calc_error
        return self.price

    def place_order(self, request):
        with self._lock:
            self.order_calls += 1
        if self.order_error is not None:
            raise self.order_error
        return dict(self.order_response)

    def list_units(self, resource_type):
        with self._lock:
            index = self.list_calls
            self.list_calls += 1
        if not self.batches:
            return []
        batch = self.batches[min(index, len(self.batches) - 1)]
        if isinstance(batch, Exception):
            raise batch
        return list(batch)


class FakeCryptoPay:
    def __init__(self):
        self.invoices: dict[str, Invoice] = {}
        self.deleted: list[str] = []
        self.fail_lookups = False
        self.lookup_calls = 0
        self._next_id = 100
        self._lock = threading.Lock()

    def create_invoice(self, amount, payload, description="Balance top-up"):
        with self._lock:
            self._next_id += 1
            invoice_id = str(self._next_id)
        invoice = Invoice(
            invoice_id=invoice_id,
            pay_url=f"https://t.me/CryptoBot?start=IV{invoice_id}",
            status=INVOICE_ACTIVE,
            amount=str(amount),
        )
        self.invoices[invoice_id] = invoice
        return invoice

    def get_invoice_status(self, invoice_id):
        with self._lock:
            self.lookup_calls += 1
        if self.fail_lookups:
            raise PaymentLookupFailed("lookup failed", invoice_id=invoice_id)
        invoice = self.invoices.get(str(invoice_id))
        if invoice is None:
            raise PaymentLookupFailed("invoice not listed", invoice_id=invoice_id)
        return invoice

    def delete_invoice(self, invoice_id):
        self.deleted.append(str(invoice_id))
        return True

    def pay(self, invoice_id):
        self.invoices[str(invoice_id)].status = INVOICE_PAID

    def expire(self, invoice_id):
        self.invoices[str(invoice_id)].status = INVOICE_EXPIRED


class FakeScheduler:
    def __init__(self):
        self.scheduled: list[str] = []
        self.revoked: list[str] = []

    def schedule(self, invoice_id):
        self.scheduled.append(str(invoice_id))
        return f"task-{len(self.scheduled)}"

    def revoke(self, task_id):
        self.revoked.append(task_id)


def no_sleep(seconds):
    return None


@pytest.fixture(autouse=True)
def _fresh_circuit_breakers():
    from proxyshop.services import circuit_breaker

    circuit_breaker._breakers.clear()
    yield
    circuit_breaker._breakers.clear()


@pytest.fixture
def engine(tmp_path):
    from proxyshop.db.session import create_db_engine, init_db

    eng = create_db_engine(f"sqlite:///{tmp_path / 'shop.db'}")
    init_db(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def redis_client():
    return fakeredis.FakeRedis(decode_responses=True)


@pytest.fixture
def store(redis_client):
    from proxyshop.services.state import PendingDepositStore

    return PendingDepositStore(redis_client)


@pytest.fixture
def payments():
    return FakeCryptoPay()


@pytest.fixture
def scheduler():
    return FakeScheduler()


@pytest.fixture
def provider_factory():
    return FakeProvider


@pytest.fixture
def unit():
    return make_unit


@pytest.fixture
def gateway_factory():
    from proxyshop.services.provisioning.gateway import ProvisioningGateway

    def _make(provider):
        return ProvisioningGateway(provider, sleep=no_sleep)

    return _make


@pytest.fixture
def fund(session_factory):
    """Credit a user's balance in its own committed transaction."""
    from proxyshop.services.balance.service import BalanceService

    def _fund(user_id, amount):
        session = session_factory()
        try:
            balance = BalanceService(session).credit(user_id, amount)
            session.commit()
            return balance
        finally:
            session.close()

    return _fund
