import os

from celery import Celery
from celery.schedules import crontab

# Set the default Django settings module for the 'celery' program.
# This must come before instantiating Celery apps.
os.environ.setdefault("DJANGO_SETTINGS_MODULE", "stakeplatform.settings")

app = Celery("stakeplatform")

# Namespace='CELERY' means all celery-related configuration keys
# should have a `CELERY_` prefix.
app.config_from_object("django.conf:settings", namespace="CELERY")

# Loads tasks in `tasks.py` from installed apps.
app.autodiscover_tasks()

# Queues
QUEUE_STAKING = "staking"
QUEUE_DEPOSITS = "deposits"
QUEUE_LEDGER = "ledger"


# Scheduled tasks

app.conf.beat_schedule = {
    # Staking
    "core_process-due-stakes": {
        "task": "core.tasks.process_due_stakes",
        "schedule": crontab(minute="*/5"),
        "options": {
            "expires": 4 * 60,
            "priority": 1,
            "queue": QUEUE_STAKING,
        },
    },
    # Deposits
    "core_reconcile-pending-deposits": {
        "task": "core.tasks.reconcile_pending_deposits",
        "schedule": crontab(minute="*/1"),
        "options": {
            "expires": 50,
            "priority": 2,
            "queue": QUEUE_DEPOSITS,
        },
    },
    # Ledger
    "core_verify-ledger-balances": {
        "task": "core.tasks.verify_ledger_balances",
        "schedule": crontab(minute=30, hour=0),
        "options": {
            "priority": 5,
            "queue": QUEUE_LEDGER,
        },
    },
}
