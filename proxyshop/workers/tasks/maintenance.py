"""
Celery beat tasks: expire overdue proxies, restart deposit watchers that
stopped (worker restart, lost message).
"""
import logging
from datetime import datetime, timezone

from proxyshop.core.celery_app import celery_app
from proxyshop.db.session import SessionLocal
from proxyshop.services.claims.service import ClaimService
from proxyshop.services.deposits.service import DepositService
from proxyshop.services.state import PendingDepositStore

logger = logging.getLogger(__name__)


@celery_app.task(
    name="proxyshop.workers.tasks.maintenance.expire_claims",
    time_limit=60,
    soft_time_limit=55,
)
def expire_claims() -> dict:
    db = SessionLocal()
    try:
        count = ClaimService(db).expire_overdue(datetime.now(timezone.utc))
        db.commit()
        if count:
            logger.info("claims_expired", extra={"count": count})
        return {"ok": True, "expired_count": count}
    except Exception:
        logger.exception("expire_claims_error")
        db.rollback()
        return {"ok": False}
    finally:
        db.close()


@celery_app.task(
    name="proxyshop.workers.tasks.maintenance.resume_stale_deposits",
    time_limit=60,
    soft_time_limit=55,
)
def resume_stale_deposits() -> dict:
    from proxyshop.workers.tasks.deposits import watch_deposit_invoice

    db = SessionLocal()
    try:
        store = PendingDepositStore()
        stale = DepositService(db, store=store).stale_pending(datetime.now(timezone.utc))
        resumed = 0
        for deposit in stale:
            result = watch_deposit_invoice.apply_async(args=[deposit.invoice_id, (deposit.poll_attempts or 0) + 1])
            store.set_task(deposit.telegram_id, deposit.invoice_id, result.id)
            resumed += 1
        db.rollback()
        if resumed:
            logger.warning("deposit_watchers_resumed", extra={"count": resumed})
        return {"ok": True, "resumed_count": resumed}
    except Exception:
        logger.exception("resume_stale_deposits_error")
        db.rollback()
        return {"ok": False}
    finally:
        db.close()
