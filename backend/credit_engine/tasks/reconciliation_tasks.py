import logging
from .celery_app import celery_app

logger = logging.getLogger(__name__)


@celery_app.task(bind=True, max_retries=3, default_retry_delay=300)
def run_reconciliation(self, request_id: str | None = None):
    """Daily sweep: monthly resets, stuck reservations, rollover expiry."""
    from ..components.ledger.reconciliation import ReconciliationJob

    try:
        report = ReconciliationJob().run()
    except Exception as exc:
        logger.error("Reconciliation run failed: %s", exc, extra={"request_id": request_id or self.request.id})
        raise self.retry(exc=exc)
    logger.info(
        "Reconciliation run complete: %s",
        report.as_dict(),
        extra={"request_id": request_id or self.request.id},
    )
    return report.as_dict()


@celery_app.task
def sweep_expired_reservations():
    """Expire pending reservations whose hold ran past its timeout."""
    from ..components.ledger.reconciliation import ReconciliationJob

    report = ReconciliationJob().run_reservation_sweep()
    return {"expired": report.reservations_expired, "failures": len(report.failures)}
