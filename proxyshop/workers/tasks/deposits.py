"""
Deposit watcher: one poll tick per task run, re-enqueued with a countdown
while the invoice is pending. The Redis pending-deposit entry is the
cancellation token; the attempt number travels with the task.
"""
import logging

from sqlalchemy.exc import SQLAlchemyError

from proxyshop.core.celery_app import celery_app
from proxyshop.core.config import settings
from proxyshop.db.session import SessionLocal
from proxyshop.models.deposit import Deposit
from proxyshop.services.deposits.service import DepositService
from proxyshop.services.state import PendingDepositStore
from proxyshop.services.telegram.notifications import deposit_text, notify

logger = logging.getLogger(__name__)


def _reschedule(invoice_id: str, attempt: int) -> str:
    result = watch_deposit_invoice.apply_async(
        args=[invoice_id, attempt],
        countdown=settings.deposit_poll_interval_seconds,
    )
    return result.id


def _owner_of(db, invoice_id: str) -> str | None:
    try:
        row = db.query(Deposit.telegram_id).filter(Deposit.invoice_id == str(invoice_id)).one_or_none()
    except SQLAlchemyError:
        logger.warning("deposit_owner_lookup_failed", extra={"invoice_id": invoice_id})
        db.rollback()
        return None
    return row[0] if row else None


@celery_app.task(
    name="proxyshop.workers.tasks.deposits.watch_deposit_invoice",
    time_limit=60,
    soft_time_limit=55,
)
def watch_deposit_invoice(invoice_id: str, attempt: int = 1) -> dict:
    db = SessionLocal()
    store = PendingDepositStore()
    try:
        status = DepositService(db, store=store).poll(invoice_id, attempt)
        if status is None:
            return {"ok": False, "invoice_id": invoice_id, "reason": "unknown_invoice"}

        if not status.finished:
            task_id = _reschedule(invoice_id, attempt + 1)
            store.set_task(status.user_id, invoice_id, task_id)
            return {"ok": True, "invoice_id": invoice_id, "status": status.status, "attempt": attempt}

        if status.transitioned:
            notify(status.user_id, deposit_text(status))
        return {
            "ok": True,
            "invoice_id": invoice_id,
            "status": status.status,
            "credited": status.credited,
        }
    except Exception:
        logger.exception("deposit_watch_error", extra={"invoice_id": invoice_id, "attempt": attempt})
        db.rollback()
        if attempt < settings.deposit_max_polls:
            task_id = _reschedule(invoice_id, attempt + 1)
            user_id = _owner_of(db, invoice_id)
            if user_id is not None:
                store.set_task(user_id, invoice_id, task_id)
        return {"ok": False, "invoice_id": invoice_id}
    finally:
        db.close()
