from .celery_app import celery_app
from .reconciliation_tasks import run_reconciliation, sweep_expired_reservations

__all__ = [
    "celery_app",
    "run_reconciliation",
    "sweep_expired_reservations",
]
