"""
Creator Payouts Celery Application
Runs the monthly retainer billing batch and the daily payout reconciliation.
"""

import os
from celery import Celery
from dotenv import load_dotenv

load_dotenv()

# Initialize Celery with Redis as broker and backend
REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")

app = Celery(
    "payout_tasks",
    broker=REDIS_URL,
    backend=REDIS_URL,
    include=['payouts.tasks.billing_tasks']  # Auto-discover tasks
)

# Celery configuration
app.conf.update(
    # Task settings
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,

    # Result backend settings
    result_expires=24 * 3600,  # Batch summaries kept for a day
    result_extended=True,  # Store task args, kwargs, result

    # Task execution settings
    task_track_started=True,  # Track when task starts
    task_time_limit=3600,  # 1 hour hard timeout (sequential provider calls)
    task_soft_time_limit=3300,

    # Worker settings
    worker_prefetch_multiplier=1,  # One batch at a time per worker
    worker_max_tasks_per_child=50,  # Restart worker after 50 tasks

    # A billing batch must not be re-run because a worker died mid-batch:
    # ack on receipt, idempotency guards any manual re-run
    task_acks_late=False,
)

# Task routing (dedicated payouts queue)
app.conf.task_routes = {
    "payouts.tasks.process_monthly_retainers": {"queue": "payouts"},
    "payouts.tasks.reconcile_payouts": {"queue": "payouts"},
}

# Periodic task schedule (Celery Beat)
from celery.schedules import crontab

app.conf.beat_schedule = {
    'retainer-billing-monthly': {
        'task': 'payouts.tasks.process_monthly_retainers',
        'schedule': crontab(day_of_month=1, hour=6, minute=0),  # 1st of the month, 06:00 UTC
        'options': {'queue': 'payouts'}
    },
    'reconcile-payouts-daily': {
        'task': 'payouts.tasks.reconcile_payouts',
        'schedule': crontab(hour=7, minute=0),  # Daily at 07:00 UTC
        'options': {'queue': 'payouts'}
    },
}

if __name__ == "__main__":
    app.start()
