"""
Entry points for the chat front-end and the workers.
Each call gets its own DB session; the facade owns commit for read paths
that lazily assign identifiers.
"""
import logging
from decimal import Decimal

from sqlalchemy.orm import Session as DBSession

from proxyshop.core.config import settings
from proxyshop.models.user_proxy import UserProxy
from proxyshop.services.balance.service import BalanceService
from proxyshop.services.claims.service import ClaimService
from proxyshop.services.deposits.service import DepositService, DepositTicket
from proxyshop.services.idempotency import IdempotencyStore
from proxyshop.services.payments.cryptobot import CryptoPayClient
from proxyshop.services.provisioning.base import ProvisioningRequest
from proxyshop.services.provisioning.gateway import ProvisioningGateway
from proxyshop.services.purchases.outcome import AbortReason, PurchaseOutcome, PurchaseState, Quote
from proxyshop.services.purchases.service import PurchaseService
from proxyshop.services.state import PendingDepositStore

logger = logging.getLogger(__name__)

# aborted before any spend; the same request_id may be retried
RETRYABLE_ABORTS = frozenset({
    AbortReason.INVALID_REQUEST,
    AbortReason.PRICE_UNAVAILABLE,
    AbortReason.INSUFFICIENT_FUNDS,
})


class CeleryDepositScheduler:
    """Starts and stops the deposit watcher task chain."""

    def schedule(self, invoice_id: str) -> str:
        from proxyshop.workers.tasks.deposits import watch_deposit_invoice

        result = watch_deposit_invoice.apply_async(
            args=[invoice_id, 1],
            countdown=settings.deposit_poll_interval_seconds,
        )
        return result.id

    def revoke(self, task_id: str) -> None:
        from proxyshop.core.celery_app import celery_app

        celery_app.control.revoke(task_id)


class ShopService:
    def __init__(
        self,
        db: DBSession,
        gateway: ProvisioningGateway | None = None,
        payments: CryptoPayClient | None = None,
        store: PendingDepositStore | None = None,
        idempotency: IdempotencyStore | None = None,
        scheduler: CeleryDepositScheduler | None = None,
    ):
        self.db = db
        self._gateway = gateway
        self._payments = payments
        self.store = store or PendingDepositStore()
        self._idempotency = idempotency
        self.scheduler = scheduler or CeleryDepositScheduler()

    @property
    def idempotency(self) -> IdempotencyStore:
        if self._idempotency is None:
            self._idempotency = IdempotencyStore(self.store.client)
        return self._idempotency

    def _purchases(self) -> PurchaseService:
        return PurchaseService(self.db, gateway=self._gateway)

    def _deposits(self) -> DepositService:
        return DepositService(self.db, client=self._payments, store=self.store)

    # ----- purchases -----

    def quote_purchase(self, request: ProvisioningRequest) -> Quote:
        return self._purchases().quote(request)

    def execute_purchase(
        self,
        user_id: str,
        request: ProvisioningRequest,
        quote_token: str | None = None,
        request_id: str | None = None,
    ) -> PurchaseOutcome:
        key = f"purchase:{user_id}:{request_id}" if request_id else None
        if key and not self.idempotency.check_and_set(key):
            logger.info("purchase_duplicate_request", extra={"user_id": str(user_id)})
            return PurchaseOutcome(
                state=PurchaseState.ABORTED,
                requested=request.quantity,
                reason=AbortReason.DUPLICATE_REQUEST,
                new_balance=self.get_balance(user_id),
            )
        try:
            outcome = self._purchases().execute(user_id, request, quote_token=quote_token)
        except Exception:
            if key:
                self.idempotency.release(key)
            raise
        if key and outcome.state == PurchaseState.ABORTED and outcome.reason in RETRYABLE_ABORTS:
            self.idempotency.release(key)
        return outcome

    # ----- balance & claims -----

    def get_balance(self, user_id: str) -> Decimal:
        return BalanceService(self.db).get_balance(user_id)

    def list_claims(self, user_id: str) -> list[UserProxy]:
        claims = ClaimService(self.db)
        items = claims.list_active(user_id)
        if any(c.public_id is None for c in items):
            for claim in items:
                claims.ensure_public_id(claim)
            self.db.commit()
        return items

    def get_claim(self, user_id: str, claim_id) -> UserProxy:
        claims = ClaimService(self.db)
        claim = claims.get(claim_id, user_id)
        if claim.public_id is None:
            claims.ensure_public_id(claim)
            self.db.commit()
        return claim

    # ----- deposits -----

    def start_deposit(self, user_id: str, amount) -> DepositTicket:
        previous = self.store.get(user_id)
        ticket = self._deposits().start(user_id, amount)
        if previous.get("task_id"):
            self.scheduler.revoke(previous["task_id"])
        task_id = self.scheduler.schedule(ticket.invoice_id)
        self.store.set_task(user_id, ticket.invoice_id, task_id)
        return ticket

    def cancel_deposit(self, user_id: str) -> bool:
        previous = self.store.get(user_id)
        cancelled = self._deposits().cancel(user_id)
        if previous.get("task_id"):
            self.scheduler.revoke(previous["task_id"])
        return cancelled
