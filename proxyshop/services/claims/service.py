"""
Claim store: binds an external proxy key to exactly one user.
The unique constraint on user_proxies.proxy_id is the arbiter; the pre-check
SELECT only keeps the common conflict path out of savepoint churn.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session as DBSession

from proxyshop.models.user_proxy import STATUS_ACTIVE, STATUS_EXPIRED, UserProxy
from proxyshop.services.errors import AlreadyClaimed, ClaimNotFound
from proxyshop.services.identifiers.service import IdentifierIssuer

logger = logging.getLogger(__name__)

CLAIM_ATTRIBUTES = (
    "order_id",
    "proxy_type",
    "login",
    "password",
    "ip",
    "port",
    "port_http",
    "port_socks",
    "country",
    "date_start",
    "date_end",
)


@dataclass
class ClaimResult:
    claim: UserProxy | None = None
    owner_id: str | None = None
    same_owner: bool = False
    error: AlreadyClaimed | None = None  # set when another user holds the key

    @property
    def claimed(self) -> bool:
        return self.claim is not None


class ClaimService:
    def __init__(self, db: DBSession, issuer: IdentifierIssuer | None = None):
        self.db = db
        self.issuer = issuer or IdentifierIssuer(db)

    def _by_key(self, external_key: str) -> UserProxy | None:
        return (
            self.db.query(UserProxy)
            .filter(UserProxy.proxy_id == str(external_key))
            .one_or_none()
        )

    def _conflict(self, existing: UserProxy, external_key: str, user_id: str) -> ClaimResult:
        if existing.telegram_id == str(user_id):
            return ClaimResult(claim=existing, owner_id=existing.telegram_id, same_owner=True)
        logger.warning(
            "claim_conflict",
            extra={"proxy_id": str(external_key), "user_id": str(user_id), "owner_id": existing.telegram_id},
        )
        return ClaimResult(
            claim=None,
            owner_id=existing.telegram_id,
            error=AlreadyClaimed(proxy_id=str(external_key), owner_id=existing.telegram_id),
        )

    def try_claim(self, external_key: str, user_id: str, attributes: dict[str, Any]) -> ClaimResult:
        """
        Claimed(record) for a fresh key or for the same owner (idempotent),
        Conflict(owner_id) when another user holds the key. Never overwrites.
        """
        existing = self._by_key(external_key)
        if existing is not None:
            return self._conflict(existing, external_key, user_id)

        values = {k: attributes.get(k) for k in CLAIM_ATTRIBUTES}
        if values.get("port") is None:
            values["port"] = values.get("port_http")
        if values.get("order_id") is not None:
            values["order_id"] = str(values["order_id"])

        try:
            with self.db.begin_nested():
                claim = UserProxy(
                    proxy_id=str(external_key),
                    telegram_id=str(user_id),
                    public_id=self.issuer.next(),
                    status=STATUS_ACTIVE,
                    purchased_at=datetime.now(timezone.utc),
                    **values,
                )
                self.db.add(claim)
        except IntegrityError:
            existing = self._by_key(external_key)
            if existing is None:
                raise
            return self._conflict(existing, external_key, user_id)

        logger.info(
            "claim_created",
            extra={"proxy_id": str(external_key), "user_id": str(user_id), "public_id": claim.public_id},
        )
        return ClaimResult(claim=claim, owner_id=str(user_id))

    def list_active(self, user_id: str) -> list[UserProxy]:
        return (
            self.db.query(UserProxy)
            .filter(UserProxy.telegram_id == str(user_id), UserProxy.status == STATUS_ACTIVE)
            .order_by(UserProxy.purchased_at.desc(), UserProxy.id.desc())
            .all()
        )

    def get(self, claim_id, user_id: str) -> UserProxy:
        """By numeric id or public id (CM000001); foreign claims look the same as missing ones."""
        query = self.db.query(UserProxy).filter(UserProxy.telegram_id == str(user_id))
        if isinstance(claim_id, int) or str(claim_id).isdigit():
            query = query.filter(UserProxy.id == int(claim_id))
        else:
            query = query.filter(UserProxy.public_id == str(claim_id))
        claim = query.one_or_none()
        if claim is None:
            raise ClaimNotFound("claim not found", claim_id=claim_id)
        return claim

    def ensure_public_id(self, claim: UserProxy) -> str:
        """Legacy rows were stored without an identifier: assign one once, never change it."""
        if claim.public_id:
            return claim.public_id
        public_id = self.issuer.next()
        result = self.db.execute(
            update(UserProxy)
            .where(UserProxy.id == claim.id, UserProxy.public_id.is_(None))
            .values(public_id=public_id)
        )
        self.db.flush()
        self.db.refresh(claim)
        if result.rowcount:
            logger.info("claim_public_id_assigned", extra={"public_id": claim.public_id})
        return claim.public_id

    def expire_overdue(self, now: datetime | None = None) -> int:
        now = now or datetime.now(timezone.utc)
        result = self.db.execute(
            update(UserProxy)
            .where(
                UserProxy.status == STATUS_ACTIVE,
                UserProxy.date_end.is_not(None),
                UserProxy.date_end < now,
            )
            .values(status=STATUS_EXPIRED)
            .execution_options(synchronize_session=False)
        )
        self.db.flush()
        return result.rowcount or 0
