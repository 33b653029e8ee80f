from celery import Celery
from core.config import settings

# Redis is both broker and result backend
celery_app = Celery(
    "storefront_orders",
    broker=settings.REDIS_URL,
    backend=settings.REDIS_URL,
    include=["tasks.payment_tasks"],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    result_expires=60 * 60,
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    # A retry batch calls the gateway once per due payment
    task_time_limit=10 * 60,
    task_soft_time_limit=8 * 60,
    # Re-running a batch is safe: only failed payments past next_retry_at are picked
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    worker_max_tasks_per_child=1000,
    broker_connection_retry_on_startup=True,
    beat_schedule={
        "retry-due-payments": {
            "task": "tasks.payment_tasks.retry_due_payments",
            "schedule": float(settings.RETRY_POLL_SECONDS),
        },
    },
)
