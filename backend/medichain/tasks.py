import os

from celery import Celery
from celery.utils.log import get_task_logger

from .database import SessionLocal
from .errors import ReconciliationPartialFailure
from .ledger import LEDGER_BACKEND, build_ledger_gateway
from .services import compliance, reconciliation

# purpose: run reconciliation and violation retries outside the request lifecycle
# inputs: CELERY_BROKER_URL, RECONCILE_INTERVAL_MINUTES, LEDGER_BACKEND
# outputs: sync summaries, violation retry summaries
# status: active

_logger = get_task_logger(__name__)

CELERY_BROKER_URL = os.getenv("CELERY_BROKER_URL", "memory://")
RECONCILE_INTERVAL_MINUTES = int(os.getenv("RECONCILE_INTERVAL_MINUTES", "15"))

celery_app = Celery("medichain", broker=CELERY_BROKER_URL)
celery_app.conf.task_always_eager = (
    CELERY_BROKER_URL == "memory://" or os.getenv("TESTING") == "1"
)


def build_beat_schedule(backend: str = LEDGER_BACKEND) -> dict:
    """Periodic jobs for a shared ledger.

    Each task run builds its own gateway, and an in-memory ledger built that
    way starts empty, so nothing is scheduled for the ``memory`` backend.
    """

    if backend.lower() == "memory":
        return {}
    return {
        "reconcile-all-batches": {
            "task": "medichain.tasks.reconcile_all_batches",
            "schedule": RECONCILE_INTERVAL_MINUTES * 60.0,
        },
        "retry-pending-violations": {
            "task": "medichain.tasks.retry_pending_violations",
            "schedule": 300.0,
        },
    }


celery_app.conf.beat_schedule = build_beat_schedule()


@celery_app.task(name="medichain.tasks.reconcile_all_batches")
def reconcile_all_batches():
    """Re-sync every known batch; raises ReconciliationPartialFailure after a partial run.

    Requires a shared ledger backend: with ``LEDGER_BACKEND=memory`` the task
    gets a fresh empty ledger and every batch is reported as failed.
    """

    db = SessionLocal()
    ledger = build_ledger_gateway()
    try:
        summary = reconciliation.sync_all(db, ledger, raise_on_failure=True)
    except ReconciliationPartialFailure as exc:
        _logger.error("Reconciliation incomplete: %s (%s)", exc.message, exc.summary.errors)
        raise
    finally:
        ledger.close()
        db.close()
    _logger.info("Reconciled %d of %d batches", summary.processed, summary.total)
    return summary.as_dict()


@celery_app.task(name="medichain.tasks.retry_pending_violations")
def retry_pending_violations(limit: int = 100):
    """Resubmit unlogged violations; like reconciliation it needs a shared ledger backend."""

    db = SessionLocal()
    ledger = build_ledger_gateway()
    try:
        return compliance.retry_failed_violations(db, ledger, limit=limit)
    finally:
        ledger.close()
        db.close()
