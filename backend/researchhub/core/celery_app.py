"""Celery application configuration."""

from celery import Celery
from celery.schedules import crontab

from researchhub.core.config import settings

celery_app = Celery(
    "researchhub_billing",
    broker=settings.REDIS_URL,
    backend=settings.REDIS_URL,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=900,
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
)

celery_app.conf.beat_schedule = {
    "billing-process-retry-queue": {
        "task": "billing.process_retry_queue",
        "schedule": crontab(minute="*/10"),
    },
    "billing-expire-stale-payments": {
        "task": "billing.expire_stale_payments",
        "schedule": crontab(minute="*/15"),
    },
    "billing-process-subscription-periods": {
        "task": "billing.process_subscription_periods",
        "schedule": crontab(minute=5),
    },
    "billing-deactivate-expired-credit-accounts": {
        "task": "billing.deactivate_expired_credit_accounts",
        "schedule": crontab(hour=0, minute=30),
    },
}

celery_app.autodiscover_tasks(["researchhub.modules.billing"])
