"""
Purchase orchestrator: quote -> debit -> order -> await credentials -> claim.
One session transaction per purchase. Zero claims roll everything back
(the debit included); partial fulfillment commits and refunds the shortfall.
"""
import logging
import time
from datetime import datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Callable

from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer
from sqlalchemy.orm import Session as DBSession

from proxyshop.core.config import settings
from proxyshop.models.reconciliation import (
    REASON_CREDENTIALS_NOT_FOUND,
    REASON_INTERNAL_ERROR,
    REASON_PARTIAL_SHORTFALL,
    REASON_PROVISIONING_FAILED,
    ReconciliationLog,
)
from proxyshop.models.user_proxy import UserProxy
from proxyshop.services.balance.service import CENT, BalanceService, to_money
from proxyshop.services.claims.service import ClaimService
from proxyshop.services.errors import (
    InsufficientFunds,
    InvalidPurchaseRequest,
    PriceUnavailable,
    ProvisioningFailed,
)
from proxyshop.services.identifiers.service import IdentifierIssuer
from proxyshop.services.provisioning.base import (
    RESOURCE_TYPES,
    OrderResult,
    Price,
    ProvisioningRequest,
)
from proxyshop.services.provisioning.gateway import ProvisioningGateway
from proxyshop.services.provisioning.proxy_seller import api_type_for
from proxyshop.services.purchases.candidates import select_candidates
from proxyshop.services.purchases.outcome import (
    AbortReason,
    PurchaseOutcome,
    PurchaseState,
    Quote,
    claim_to_dict,
)
from proxyshop.utils.metrics import (
    balance_operations_total,
    balance_rejected_total,
    claim_conflicts_total,
    proxies_claimed_total,
    purchase_duration_seconds,
    purchases_total,
)

logger = logging.getLogger(__name__)

QUOTE_SALT = "purchase-quote"


def validate_request(request: ProvisioningRequest) -> None:
    if request.resource_type not in RESOURCE_TYPES:
        raise InvalidPurchaseRequest(f"unknown resource type: {request.resource_type}")
    if not str(request.location or "").strip():
        raise InvalidPurchaseRequest("location is required")
    if not isinstance(request.quantity, int) or not 1 <= request.quantity <= settings.purchase_max_quantity:
        raise InvalidPurchaseRequest(
            f"quantity must be 1..{settings.purchase_max_quantity}, got {request.quantity}"
        )
    if not isinstance(request.period_days, int) or request.period_days <= 0:
        raise InvalidPurchaseRequest(f"period must be positive, got {request.period_days}")


def prorate(total: Decimal, claimed: int, requested: int) -> Decimal:
    """Share of the price for what was actually delivered."""
    return (total * Decimal(claimed) / Decimal(requested)).quantize(CENT, rounding=ROUND_HALF_UP)


class PurchaseService:
    def __init__(
        self,
        db: DBSession,
        gateway: ProvisioningGateway | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.db = db
        self.gateway = gateway or ProvisioningGateway(sleep=sleep)
        self.sleep = sleep
        self.serializer = URLSafeTimedSerializer(settings.state_secret, salt=QUOTE_SALT)

    # ----- quoting -----

    def _compute_price(self, request: ProvisioningRequest) -> Price:
        attempts = max(settings.price_retry_attempts, 1)
        for attempt in range(1, attempts + 1):
            try:
                return self.gateway.quote(
                    request.resource_type, request.location, request.period_days, request.quantity
                )
            except PriceUnavailable:
                if attempt >= attempts:
                    raise
                logger.info(
                    "price_retry_scheduled",
                    extra={"attempt": attempt, "max_attempts": attempts},
                )
                self.sleep(settings.price_retry_delay_seconds)
        raise PriceUnavailable("no price")

    def quote(self, request: ProvisioningRequest) -> Quote:
        validate_request(request)
        price = self._compute_price(request)
        token = self.serializer.dumps({
            "resource_type": request.resource_type,
            "location": request.location,
            "period_days": request.period_days,
            "quantity": request.quantity,
            "base": str(price.base),
            "markup_percent": price.markup_percent,
            "markup": str(price.markup),
            "total": str(price.total),
        })
        expires_at = datetime.now(timezone.utc) + timedelta(seconds=settings.quote_ttl_seconds)
        return Quote(request=request, price=price, token=token, expires_at=expires_at)

    def price_from_token(self, token: str, request: ProvisioningRequest) -> Price | None:
        """Price of a still-valid quote for exactly this request, else None."""
        try:
            data = self.serializer.loads(token, max_age=settings.quote_ttl_seconds)
        except (BadSignature, SignatureExpired):
            return None
        if not isinstance(data, dict):
            return None
        same = (
            data.get("resource_type") == request.resource_type
            and data.get("location") == request.location
            and data.get("period_days") == request.period_days
            and data.get("quantity") == request.quantity
        )
        if not same:
            return None
        return Price(
            base=to_money(data["base"]),
            markup_percent=int(data["markup_percent"]),
            markup=to_money(data["markup"]),
            total=to_money(data["total"]),
        )

    # ----- execution -----

    def _aborted(
        self,
        user_id: str,
        request: ProvisioningRequest,
        reason: AbortReason,
        order_id: str | None = None,
    ) -> PurchaseOutcome:
        purchases_total.labels(
            resource_type=request.resource_type, state=PurchaseState.ABORTED.value, reason=reason.value
        ).inc()
        logger.info(
            "purchase_aborted",
            extra={"user_id": str(user_id), "reason": reason.value, "order_id": order_id},
        )
        new_balance = BalanceService(self.db).get_balance(user_id)
        # read-only, release the connection
        self.db.rollback()
        return PurchaseOutcome(
            state=PurchaseState.ABORTED,
            requested=request.quantity,
            reason=reason,
            new_balance=new_balance,
            order_id=order_id,
        )

    def _reconcile(
        self,
        user_id: str,
        order_id: str | None,
        reason: str,
        amount: Decimal,
        detail: dict[str, Any],
    ) -> None:
        """Own transaction: runs after the purchase transaction was rolled back."""
        try:
            self.db.add(ReconciliationLog(
                telegram_id=str(user_id),
                order_id=order_id,
                reason=reason,
                amount=amount,
                detail=detail,
            ))
            self.db.commit()
        except Exception:
            self.db.rollback()
            logger.exception(
                "reconciliation_write_failed",
                extra={"user_id": str(user_id), "order_id": order_id, "reason": reason},
            )
            return
        balance_operations_total.labels(operation="REFUND").inc()
        logger.warning(
            "purchase_refunded",
            extra={"user_id": str(user_id), "order_id": order_id, "reason": reason, "amount": str(amount)},
        )

    def _claim_units(
        self,
        claims: ClaimService,
        user_id: str,
        request: ProvisioningRequest,
        order: OrderResult,
    ) -> list[UserProxy]:
        claimed: dict[str, UserProxy] = {}
        # owned by someone else or by an earlier purchase of this user
        taken: set[str] = set()
        proxy_type = api_type_for(request.resource_type)
        for batch in self.gateway.credential_batches(request.resource_type, order.order_id):
            candidates, strategy = select_candidates(
                batch,
                order.candidate_keys,
                order.order_id,
                request.quantity - len(claimed),
                exclude=set(claimed) | taken,
            )
            for record in candidates:
                if len(claimed) >= request.quantity:
                    break
                if not record.usable:
                    logger.warning(
                        "candidate_skipped_incomplete",
                        extra={"proxy_id": record.key, "order_id": order.order_id},
                    )
                    continue
                attributes = record.claim_attributes(proxy_type)
                attributes["order_id"] = record.order_id or order.order_id
                attributes["country"] = record.country or request.location
                result = claims.try_claim(record.key, user_id, attributes)
                if result.claim is None:
                    claim_conflicts_total.inc()
                    taken.add(record.key)
                    continue
                if result.same_owner and (order.order_id is None or result.claim.order_id != order.order_id):
                    taken.add(record.key)
                    continue
                claimed[record.key] = result.claim
                logger.info(
                    "candidate_claimed",
                    extra={
                        "user_id": str(user_id),
                        "proxy_id": record.key,
                        "public_id": result.claim.public_id,
                        "strategy": strategy,
                    },
                )
            if len(claimed) >= request.quantity:
                break
        return list(claimed.values())

    def execute(
        self,
        user_id: str,
        request: ProvisioningRequest,
        quote_token: str | None = None,
    ) -> PurchaseOutcome:
        try:
            validate_request(request)
        except InvalidPurchaseRequest as e:
            logger.info("purchase_invalid", extra={"user_id": str(user_id), "error": str(e)})
            return self._aborted(user_id, request, AbortReason.INVALID_REQUEST)

        price = self.price_from_token(quote_token, request) if quote_token else None
        if price is None:
            try:
                price = self._compute_price(request)
            except PriceUnavailable:
                return self._aborted(user_id, request, AbortReason.PRICE_UNAVAILABLE)

        started = time.monotonic()
        balance = BalanceService(self.db)
        claims = ClaimService(self.db, IdentifierIssuer(self.db))
        order: OrderResult | None = None
        total = price.total

        try:
            try:
                balance.debit(user_id, total)
            except InsufficientFunds:
                self.db.rollback()
                balance_rejected_total.inc()
                return self._aborted(user_id, request, AbortReason.INSUFFICIENT_FUNDS)
            balance_operations_total.labels(operation="DEBIT").inc()

            try:
                order = self.gateway.order(
                    request.resource_type, request.location, request.period_days, request.quantity
                )
            except ProvisioningFailed as e:
                self.db.rollback()
                self._reconcile(
                    user_id,
                    None,
                    REASON_PROVISIONING_FAILED,
                    total,
                    {"error": str(e), "request": request.__dict__},
                )
                return self._aborted(user_id, request, AbortReason.PROVISIONING_FAILED)
            logger.info(
                "purchase_order_placed",
                extra={
                    "user_id": str(user_id),
                    "order_id": order.order_id,
                    "quantity": request.quantity,
                    "count": len(order.candidate_keys),
                },
            )

            claimed = self._claim_units(claims, user_id, request, order)
            if not claimed:
                self.db.rollback()
                self._reconcile(
                    user_id,
                    order.order_id,
                    REASON_CREDENTIALS_NOT_FOUND,
                    total,
                    {"candidate_keys": order.candidate_keys, "request": request.__dict__},
                )
                return self._aborted(
                    user_id, request, AbortReason.CREDENTIALS_NOT_FOUND, order_id=order.order_id
                )

            charged = total
            refund = Decimal("0.00")
            if len(claimed) < request.quantity:
                charged = prorate(total, len(claimed), request.quantity)
                refund = total - charged
                if refund > 0:
                    balance.credit(user_id, refund)
                    self.db.add(ReconciliationLog(
                        telegram_id=str(user_id),
                        order_id=order.order_id,
                        reason=REASON_PARTIAL_SHORTFALL,
                        amount=refund,
                        detail={
                            "requested": request.quantity,
                            "claimed": len(claimed),
                            "total": str(total),
                            "charged": str(charged),
                        },
                    ))
            balance.increment_purchased(user_id, len(claimed))
            new_balance = to_money(balance.lock(user_id).balance)
            claim_dicts = [claim_to_dict(c) for c in claimed]
            self.db.commit()
        except Exception:
            self.db.rollback()
            if order is not None:
                self._reconcile(
                    user_id,
                    order.order_id,
                    REASON_INTERNAL_ERROR,
                    total,
                    {"candidate_keys": order.candidate_keys, "request": request.__dict__},
                )
            logger.exception("purchase_failed", extra={"user_id": str(user_id)})
            raise

        state = PurchaseState.SETTLED if len(claimed) >= request.quantity else PurchaseState.PARTIALLY_SETTLED
        purchases_total.labels(resource_type=request.resource_type, state=state.value, reason="").inc()
        proxies_claimed_total.labels(resource_type=request.resource_type).inc(len(claimed))
        purchase_duration_seconds.observe(time.monotonic() - started)
        if refund > 0:
            balance_operations_total.labels(operation="REFUND").inc()
            logger.warning(
                "purchase_partially_settled",
                extra={
                    "user_id": str(user_id),
                    "order_id": order.order_id,
                    "quantity": request.quantity,
                    "claimed": len(claimed),
                    "amount": str(refund),
                },
            )
        logger.info(
            "purchase_settled",
            extra={
                "user_id": str(user_id),
                "order_id": order.order_id,
                "claimed": len(claimed),
                "amount": str(charged),
                "new_balance": str(new_balance),
                "status": state.value,
            },
        )
        return PurchaseOutcome(
            state=state,
            requested=request.quantity,
            claims=claim_dicts,
            total_charged=charged,
            refunded=refund,
            new_balance=new_balance,
            order_id=order.order_id,
        )
