"""
Celery application: broker and result backend from settings.
Tasks are in proxyshop.workers.tasks (deposit watcher, purchases, maintenance).
"""
from celery import Celery, signals
from celery.schedules import crontab

from proxyshop.core.config import settings
from proxyshop.core.logging import configure_logging

celery_app = Celery(
    "proxyshop",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=[
        "proxyshop.workers.tasks.deposits",
        "proxyshop.workers.tasks.purchases",
        "proxyshop.workers.tasks.maintenance",
    ],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    task_track_started=True,
    task_time_limit=3600,
    result_expires=86400,
    beat_schedule={
        "expire-overdue-proxies": {
            "task": "proxyshop.workers.tasks.maintenance.expire_claims",
            "schedule": crontab(minute="*/30"),
        },
        "resume-stale-deposits": {
            "task": "proxyshop.workers.tasks.maintenance.resume_stale_deposits",
            "schedule": crontab(minute="*/2"),
        },
    },
)

@signals.setup_logging.connect
def _setup_logging(**kwargs) -> None:
    # JSON logs in workers too (otherwise Celery installs its own handlers)
    configure_logging()


celery_app.conf.task_routes = {
    "proxyshop.workers.tasks.purchases.execute_purchase": {"queue": "purchases"},
    "proxyshop.workers.tasks.deposits.watch_deposit_invoice": {"queue": "deposits"},
}
