"""Tests for health checks and the metrics endpoint."""
from unittest.mock import MagicMock, patch

import fakeredis
from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy.exc import OperationalError


def _app(db):
    from proxyshop.api.routes import health
    from proxyshop.db.session import get_db
    from proxyshop.utils.metrics import router as metrics_router

    app = FastAPI()
    app.include_router(health.router)
    app.include_router(metrics_router)
    app.dependency_overrides[get_db] = lambda: db
    return app


def test_health():
    assert TestClient(_app(MagicMock())).get("/health").json() == {"status": "ok"}


def test_ready():
    from proxyshop.api.routes import health

    with patch.object(health.redis.Redis, "from_url", return_value=fakeredis.FakeRedis()):
        resp = TestClient(_app(MagicMock())).get("/ready")
    assert resp.status_code == 200
    assert resp.json() == {
        "status": "ready",
        "checks": {"database": "ok", "redis": "ok"},
        "circuit_breakers": {},
    }


def test_open_circuit_is_reported_but_stays_ready():
    from proxyshop.api.routes import health
    from proxyshop.services.circuit_breaker import get_circuit_breaker

    get_circuit_breaker("proxy_seller").open()
    with patch.object(health.redis.Redis, "from_url", return_value=fakeredis.FakeRedis()):
        resp = TestClient(_app(MagicMock())).get("/ready")

    assert resp.status_code == 200
    assert resp.json()["circuit_breakers"] == {"proxy_seller": "open"}


def test_not_ready_when_database_down():
    from proxyshop.api.routes import health

    db = MagicMock()
    db.execute.side_effect = OperationalError("SELECT 1", {}, Exception("connection refused"))

    with patch.object(health.redis.Redis, "from_url", return_value=fakeredis.FakeRedis()):
        resp = TestClient(_app(db)).get("/ready")
    assert resp.status_code == 503
    assert resp.json()["status"] == "not_ready"
    assert resp.json()["checks"] == {"database": "error: OperationalError", "redis": "ok"}


def test_metrics_exposed():
    resp = TestClient(_app(MagicMock())).get("/metrics")
    assert resp.status_code == 200
    assert "# HELP purchases_total" in resp.text
