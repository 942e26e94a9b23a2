import logging

from proxyshop.core.celery_app import celery_app
from proxyshop.db.session import SessionLocal
from proxyshop.services.provisioning.base import ProvisioningRequest
from proxyshop.services.shop.service import ShopService
from proxyshop.services.telegram.notifications import notify, purchase_text

logger = logging.getLogger(__name__)


@celery_app.task(
    name="proxyshop.workers.tasks.purchases.execute_purchase",
    # a redelivered purchase would place a second external order
    acks_late=False,
    time_limit=600,
    soft_time_limit=590,
)
def execute_purchase(
    user_id: str,
    resource_type: str,
    location: str,
    period_days: int,
    quantity: int,
    quote_token: str | None = None,
    request_id: str | None = None,
) -> dict:
    """Runs a whole purchase and tells the user how it went."""
    db = SessionLocal()
    try:
        request = ProvisioningRequest(resource_type, location, int(period_days), int(quantity))
        outcome = ShopService(db).execute_purchase(
            user_id, request, quote_token=quote_token, request_id=request_id
        )
        notify(user_id, purchase_text(outcome))
        return outcome.to_dict()
    except Exception:
        logger.exception("purchase_task_error", extra={"user_id": str(user_id)})
        db.rollback()
        notify(user_id, "❌ Ошибка при покупке. Если средства списаны, обратитесь в поддержку.")
        return {"state": "error"}
    finally:
        db.close()
