"""Periodic jobs. Scheduled in stakeplatform/celery.py.

Each job takes a cache lock so overlapping beats skip instead of piling up.
Correctness never depends on the lock: every step underneath is a
compare-and-set and safe to run concurrently.
"""
import logging

import core.locking as lock
from core.services import ledger_service
from core.services.accrual_service import PayoutAccrualScheduler
from core.services.deposit_service import DepositReconciliationService
from stakeplatform.celery import QUEUE_DEPOSITS, QUEUE_LEDGER, QUEUE_STAKING, app

logger = logging.getLogger(__name__)


@app.task(queue=QUEUE_STAKING)
def process_due_stakes():
	key = lock.name("process_due_stakes")
	if not lock.acquire(key, timeout=10 * 60):
		logger.warning(f"Already locked {key}, skipping task")
		return False

	try:
		return PayoutAccrualScheduler().run().as_dict()
	finally:
		lock.release(key)


@app.task(queue=QUEUE_DEPOSITS)
def reconcile_pending_deposits():
	key = lock.name("reconcile_pending_deposits")
	if not lock.acquire(key, timeout=5 * 60):
		logger.warning(f"Already locked {key}, skipping task")
		return False

	try:
		return DepositReconciliationService().reconcile_pending()
	finally:
		lock.release(key)


@app.task(queue=QUEUE_LEDGER)
def verify_ledger_balances():
	key = lock.name("verify_ledger_balances")
	if not lock.acquire(key):
		logger.warning(f"Already locked {key}, skipping task")
		return False

	try:
		return ledger_service.verify_all_balances()
	finally:
		lock.release(key)
