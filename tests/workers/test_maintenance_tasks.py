"""Tests for beat tasks and the purchase task wrapper."""
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import MagicMock, patch


def test_expire_claims(session_factory):
    from proxyshop.models.user_proxy import UserProxy
    from proxyshop.workers.tasks import maintenance

    session = session_factory()
    now = datetime.now(timezone.utc)
    session.add(UserProxy(proxy_id="a", telegram_id="1", public_id="CM000001", date_end=now - timedelta(hours=1)))
    session.add(UserProxy(proxy_id="b", telegram_id="1", public_id="CM000002", date_end=now + timedelta(days=3)))
    session.commit()
    session.close()

    with patch.object(maintenance, "SessionLocal", session_factory):
        result = maintenance.expire_claims()

    assert result == {"ok": True, "expired_count": 1}
    session = session_factory()
    statuses = {c.proxy_id: c.status for c in session.query(UserProxy).all()}
    session.close()
    assert statuses == {"a": "expired", "b": "active"}


def test_resume_stale_deposits(session_factory, payments, store):
    from proxyshop.models.deposit import Deposit
    from proxyshop.services.deposits.service import DepositService
    from proxyshop.workers.tasks import maintenance

    session = session_factory()
    ticket = DepositService(session, client=payments, store=store).start("1", 25)
    row = session.query(Deposit).filter(Deposit.invoice_id == ticket.invoice_id).one()
    row.created_at = datetime.now(timezone.utc) - timedelta(hours=1)
    row.poll_attempts = 7
    session.commit()
    session.close()

    watcher = MagicMock()
    watcher.apply_async.return_value.id = "task-resumed"
    with patch.object(maintenance, "SessionLocal", session_factory), \
         patch.object(maintenance, "PendingDepositStore", return_value=store), \
         patch("proxyshop.workers.tasks.deposits.watch_deposit_invoice", watcher):
        result = maintenance.resume_stale_deposits()

    assert result == {"ok": True, "resumed_count": 1}
    watcher.apply_async.assert_called_once_with(args=[ticket.invoice_id, 8])
    assert store.get("1")["task_id"] == "task-resumed"


class TestPurchaseTask:
    def test_runs_purchase_and_notifies(self, session_factory):
        from proxyshop.services.purchases.outcome import PurchaseOutcome, PurchaseState
        from proxyshop.workers.tasks import purchases

        outcome = PurchaseOutcome(
            state=PurchaseState.SETTLED,
            requested=1,
            claims=[{"public_id": "CM000001", "ip": "10.0.0.1", "port_http": 8000, "login": "u", "password": "p"}],
            total_charged=Decimal("16.00"),
            new_balance=Decimal("84.00"),
            order_id="1001",
        )
        shop = MagicMock()
        shop.return_value.execute_purchase.return_value = outcome

        with patch.object(purchases, "SessionLocal", session_factory), \
             patch.object(purchases, "ShopService", shop), \
             patch.object(purchases, "notify") as notify:
            result = purchases.execute_purchase("1", "private_ipv4", "USA", "30", 1, request_id="r-1")

        assert result["state"] == "settled"
        assert result["total_charged"] == "16.00"
        request = shop.return_value.execute_purchase.call_args[0][1]
        assert request.period_days == 30
        assert shop.return_value.execute_purchase.call_args[1] == {"quote_token": None, "request_id": "r-1"}
        assert "CM000001" in notify.call_args[0][1]

    def test_unexpected_error_is_reported(self, session_factory):
        from proxyshop.workers.tasks import purchases

        shop = MagicMock()
        shop.return_value.execute_purchase.side_effect = RuntimeError("db gone")

        with patch.object(purchases, "SessionLocal", session_factory), \
             patch.object(purchases, "ShopService", shop), \
             patch.object(purchases, "notify") as notify:
            result = purchases.execute_purchase("1", "private_ipv4", "USA", 30, 1)

        assert result == {"state": "error"}
        assert "Ошибка" in notify.call_args[0][1]
