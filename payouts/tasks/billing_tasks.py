"""
Celery tasks for retainer billing and payout reconciliation
"""

import logging
from typing import Any, Dict, Optional

from celery import Task
from celery.signals import worker_init, worker_process_init

from database.db import session_scope
from payouts.tasks.celery_app import app
from services.config import PayoutSettings
from services.providers import PayoutProviders, build_payout_providers, build_payout_services

logger = logging.getLogger(__name__)

_providers: Optional[PayoutProviders] = None


@worker_init.connect
def validate_payout_settings(**kwargs):
    """Refuse to start a worker whose provider credentials are incomplete."""
    PayoutSettings.from_env().validate()


@worker_process_init.connect
def init_providers(**kwargs):
    """Build the provider clients once per worker process, before any task runs."""
    global _providers
    _providers = build_payout_providers()


def get_providers() -> PayoutProviders:
    """Provider clients built when this worker process started."""
    if _providers is None:
        raise RuntimeError("Payout providers were not initialized for this worker process")
    return _providers


class PayoutTask(Task):
    """Base task with logging for payout jobs"""

    def on_failure(self, exc, task_id, args, kwargs, einfo):
        """Log task failures"""
        logger.error(f"Task {task_id} failed: {exc}")
        logger.error(f"Exception info: {einfo}")

    def on_success(self, retval, task_id, args, kwargs):
        """Called when task succeeds"""
        logger.info(f"Task {task_id} completed successfully")


@app.task(base=PayoutTask, name="payouts.tasks.process_monthly_retainers")
def process_monthly_retainers() -> Dict[str, Any]:
    """
    Monthly retainer billing batch.

    Not retried automatically: the batch isolates per-contract failures
    itself, and re-running is safe but should be a deliberate decision.

    Returns:
        Batch counts (processed, failed, skipped, errors)
    """
    with session_scope() as db:
        services = build_payout_services(db, get_providers())
        result = services.scheduler.process_monthly_batch()

    summary = result.as_dict()
    summary.pop("results")
    logger.info(f"Monthly retainer batch: {summary}")
    return summary


@app.task(base=PayoutTask, name="payouts.tasks.reconcile_payouts")
def reconcile_payouts() -> Dict[str, Any]:
    """Settle payouts stuck in processing or failed with an unknown outcome."""
    with session_scope() as db:
        services = build_payout_services(db, get_providers())
        report = services.reconciliation.reconcile()
    return report.as_dict()
