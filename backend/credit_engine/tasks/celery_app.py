from celery import Celery
from ..platform.config import settings

celery_app = Celery(
    "credit_engine",
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
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    beat_schedule={
        "credit-reconciliation-daily": {
            "task": "credit_engine.tasks.reconciliation_tasks.run_reconciliation",
            "schedule": settings.RECONCILIATION_INTERVAL_SECONDS,
        },
        "reservation-expiry-sweep": {
            "task": "credit_engine.tasks.reconciliation_tasks.sweep_expired_reservations",
            "schedule": settings.RESERVATION_SWEEP_INTERVAL_SECONDS,
        },
    },
)

# Auto-discover tasks
celery_app.autodiscover_tasks(["credit_engine.tasks"])
