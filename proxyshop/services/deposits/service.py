"""
Deposit lifecycle: invoice creation, one poll tick at a time, exactly-once credit.
The pending -> paid transition is a conditional UPDATE; only the caller whose
update hit the row credits the balance.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from sqlalchemy import or_, update
from sqlalchemy.orm import Session as DBSession

from proxyshop.core.config import settings
from proxyshop.models.deposit import (
    STATUS_CANCELLED,
    STATUS_EXPIRED,
    STATUS_PAID,
    STATUS_PENDING,
    TERMINAL_STATUSES,
    Deposit,
)
from proxyshop.services.balance.service import BalanceService, to_money
from proxyshop.services.errors import (
    InvalidDepositAmount,
    InvoiceExpired,
    PaymentLookupFailed,
    PaymentProviderError,
)
from proxyshop.services.payments.cryptobot import INVOICE_EXPIRED, INVOICE_PAID, CryptoPayClient
from proxyshop.services.state import PendingDepositStore
from proxyshop.utils.metrics import balance_operations_total, deposits_total

logger = logging.getLogger(__name__)


@dataclass
class DepositTicket:
    invoice_id: str
    pay_url: str | None
    amount: Decimal
    expires_at: datetime

    def to_dict(self) -> dict:
        return {
            "invoice_id": self.invoice_id,
            "pay_url": self.pay_url,
            "amount": str(self.amount),
            "expires_at": self.expires_at.isoformat(),
        }


@dataclass
class DepositStatus:
    invoice_id: str
    user_id: str
    status: str
    amount: Decimal
    credited: bool = False
    transitioned: bool = False  # this call moved the row to its current status
    new_balance: Decimal | None = None
    error: str | None = None  # code of the error the tick escalated to

    @property
    def finished(self) -> bool:
        return self.status in TERMINAL_STATUSES


class DepositService:
    def __init__(
        self,
        db: DBSession,
        client: CryptoPayClient | None = None,
        store: PendingDepositStore | None = None,
    ):
        self.db = db
        self.client = client or CryptoPayClient()
        self.store = store or PendingDepositStore()
        self.max_polls = settings.deposit_max_polls

    def _get(self, invoice_id: str) -> Deposit | None:
        return self.db.query(Deposit).filter(Deposit.invoice_id == str(invoice_id)).one_or_none()

    def _status(
        self,
        deposit: Deposit,
        credited: bool = False,
        new_balance: Decimal | None = None,
        transitioned: bool = False,
    ) -> DepositStatus:
        return DepositStatus(
            invoice_id=deposit.invoice_id,
            user_id=deposit.telegram_id,
            status=deposit.status,
            amount=to_money(deposit.amount),
            credited=credited,
            new_balance=new_balance,
            transitioned=transitioned,
        )

    def validate_amount(self, amount) -> Decimal:
        try:
            value = to_money(amount)
        except (ArithmeticError, TypeError, ValueError) as e:
            raise InvalidDepositAmount(f"not a number: {amount}") from e
        low = to_money(settings.deposit_min_amount)
        high = to_money(settings.deposit_max_amount)
        if not low <= value <= high:
            raise InvalidDepositAmount(f"amount must be {low}..{high}", amount=value)
        return value

    def start(self, user_id: str, amount) -> DepositTicket:
        value = self.validate_amount(amount)
        self.cancel(user_id)

        invoice = self.client.create_invoice(value, payload=f"deposit_{user_id}")
        expires_at = datetime.now(timezone.utc) + timedelta(seconds=settings.deposit_invoice_ttl_seconds)
        try:
            BalanceService(self.db).get_or_create(user_id)
            self.db.add(Deposit(
                invoice_id=invoice.invoice_id,
                telegram_id=str(user_id),
                amount=value,
                asset=settings.crypto_pay_asset,
                pay_url=invoice.pay_url,
                status=STATUS_PENDING,
                expires_at=expires_at,
            ))
            self.db.commit()
        except Exception:
            self.db.rollback()
            self._delete_invoice(invoice.invoice_id)
            raise
        self.store.set(user_id, invoice.invoice_id)
        logger.info(
            "deposit_started",
            extra={"user_id": str(user_id), "invoice_id": invoice.invoice_id, "amount": str(value)},
        )
        return DepositTicket(invoice.invoice_id, invoice.pay_url, value, expires_at)

    def cancel(self, user_id: str) -> bool:
        """Drop the cancellation token and cancel every pending deposit of the user."""
        self.store.clear(user_id)
        pending = (
            self.db.query(Deposit)
            .filter(Deposit.telegram_id == str(user_id), Deposit.status == STATUS_PENDING)
            .all()
        )
        cancelled = False
        for deposit in pending:
            result = self._close(deposit, STATUS_CANCELLED, check_paid=True)
            cancelled = cancelled or result.status == STATUS_CANCELLED
        self.db.commit()
        return cancelled

    def poll(self, invoice_id: str, attempt: int) -> DepositStatus | None:
        """One tick of the watcher. None for an unknown invoice."""
        deposit = self._get(invoice_id)
        if deposit is None:
            logger.warning("deposit_unknown_invoice", extra={"invoice_id": str(invoice_id)})
            self.db.rollback()
            return None
        if deposit.status in TERMINAL_STATUSES:
            status = self._status(deposit)
            self.db.rollback()
            return status

        if not self.store.is_current(deposit.telegram_id, deposit.invoice_id):
            # replaced or cancelled by the user
            status = self._close(deposit, STATUS_CANCELLED, check_paid=True)
            self.db.commit()
            return status

        deposit.poll_attempts = attempt
        deposit.last_polled_at = datetime.now(timezone.utc)
        self.db.flush()

        try:
            invoice = self.client.get_invoice_status(deposit.invoice_id)
        except PaymentLookupFailed as e:
            logger.warning(
                "deposit_lookup_failed",
                extra={
                    "invoice_id": deposit.invoice_id,
                    "attempt": attempt,
                    "max_attempts": self.max_polls,
                    "error": str(e),
                },
            )
            if self._out_of_budget(deposit, attempt):
                status = self._expire(deposit)
                self.db.commit()
                return status
            status = self._status(deposit)
            self.db.commit()
            return status

        if invoice.status == INVOICE_PAID:
            status = self._settle(deposit)
            self.db.commit()
            return status
        if invoice.status == INVOICE_EXPIRED or self._out_of_budget(deposit, attempt):
            status = self._expire(deposit)
            self.db.commit()
            return status
        status = self._status(deposit)
        self.db.commit()
        return status

    def _out_of_budget(self, deposit: Deposit, attempt: int) -> bool:
        """Attempt budget spent or the invoice window is over."""
        if attempt >= self.max_polls:
            return True
        expires_at = deposit.expires_at
        if expires_at.tzinfo is None:
            # SQLite drops the offset
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return datetime.now(timezone.utc) >= expires_at

    def stale_pending(self, now: datetime | None = None) -> list[Deposit]:
        """Pending deposits nobody polled recently (worker restart, lost task)."""
        now = now or datetime.now(timezone.utc)
        cutoff = now - timedelta(seconds=settings.deposit_poll_interval_seconds * 6)
        return (
            self.db.query(Deposit)
            .filter(
                Deposit.status == STATUS_PENDING,
                or_(
                    Deposit.last_polled_at < cutoff,
                    (Deposit.last_polled_at.is_(None)) & (Deposit.created_at < cutoff),
                ),
            )
            .all()
        )

    # ----- transitions (flush only, caller commits) -----

    def _transition(self, deposit: Deposit, status: str, **values) -> bool:
        result = self.db.execute(
            update(Deposit)
            .where(Deposit.id == deposit.id, Deposit.status == STATUS_PENDING)
            .values(status=status, updated_at=datetime.now(timezone.utc), **values)
            .execution_options(synchronize_session=False)
        )
        self.db.flush()
        self.db.refresh(deposit)
        return result.rowcount == 1

    def _settle(self, deposit: Deposit) -> DepositStatus:
        if not self._transition(deposit, STATUS_PAID, paid_at=datetime.now(timezone.utc)):
            # someone else settled or closed it
            return self._status(deposit)
        new_balance = BalanceService(self.db).credit(deposit.telegram_id, deposit.amount)
        self.store.clear(deposit.telegram_id, deposit.invoice_id)
        deposits_total.labels(status=STATUS_PAID).inc()
        balance_operations_total.labels(operation="CREDIT").inc()
        logger.info(
            "deposit_paid",
            extra={
                "user_id": deposit.telegram_id,
                "invoice_id": deposit.invoice_id,
                "amount": str(deposit.amount),
                "new_balance": str(new_balance),
            },
        )
        return self._status(deposit, credited=True, new_balance=new_balance, transitioned=True)

    def _finish(self, deposit: Deposit, status: str) -> DepositStatus:
        if self._transition(deposit, status):
            self.store.clear(deposit.telegram_id, deposit.invoice_id)
            deposits_total.labels(status=status).inc()
            logger.info(
                "deposit_closed",
                extra={"user_id": deposit.telegram_id, "invoice_id": deposit.invoice_id, "status": status},
            )
            self._delete_invoice(deposit.invoice_id)
            return self._status(deposit, transitioned=True)
        return self._status(deposit)

    def _expire(self, deposit: Deposit) -> DepositStatus:
        status = self._finish(deposit, STATUS_EXPIRED)
        if status.status == STATUS_EXPIRED:
            status.error = InvoiceExpired.code
        return status

    def _close(self, deposit: Deposit, status: str, check_paid: bool = False) -> DepositStatus:
        """Cancel/expire, but a payment that already went through is still credited."""
        if check_paid:
            try:
                invoice = self.client.get_invoice_status(deposit.invoice_id)
            except PaymentLookupFailed as e:
                logger.warning(
                    "deposit_final_lookup_failed",
                    extra={"invoice_id": deposit.invoice_id, "error": str(e)},
                )
            else:
                if invoice.status == INVOICE_PAID:
                    return self._settle(deposit)
        return self._finish(deposit, status)

    def _delete_invoice(self, invoice_id: str) -> None:
        try:
            self.client.delete_invoice(invoice_id)
        except (PaymentProviderError, ValueError) as e:
            logger.info("invoice_delete_failed", extra={"invoice_id": str(invoice_id), "error": str(e)})
