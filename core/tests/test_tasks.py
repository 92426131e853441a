from datetime import timedelta
from decimal import Decimal
from unittest.mock import patch

from django.test import TestCase
from django.utils import timezone

from core import locking
from core.models import StakePayment, User
from core.services import staking_service
from core.tasks import process_due_stakes, reconcile_pending_deposits, verify_ledger_balances
from core.tests.helpers import create_plan, create_user


class LockingTests(TestCase):
    def test_lock_is_exclusive_until_released(self):
        key = locking.name("test_lock")

        self.assertEqual(key, "lock:test_lock")
        self.assertTrue(locking.acquire(key))
        self.assertFalse(locking.acquire(key))
        locking.release(key)
        self.assertTrue(locking.acquire(key))
        locking.release(key)


class TaskTests(TestCase):
    def test_process_due_stakes(self):
        user = create_user(balance="1000")
        plan = create_plan()
        staking_service.create_stake(user.pk, plan.pk, "1000", now=timezone.now() - timedelta(days=2, hours=1))

        result = process_due_stakes()

        self.assertEqual(result["processed"], 2)
        self.assertEqual(StakePayment.objects.count(), 2)

    @patch("core.tasks.lock.acquire", return_value=False)
    def test_skips_when_locked(self, mock_acquire):
        self.assertFalse(process_due_stakes())
        self.assertFalse(reconcile_pending_deposits())
        self.assertFalse(verify_ledger_balances())

    def test_reconcile_pending_deposits_with_nothing_open(self):
        self.assertEqual(reconcile_pending_deposits(), {})

    def test_verify_ledger_balances(self):
        user = create_user(balance="10")
        User.objects.filter(pk=user.pk).update(balance=Decimal("0.00"))

        self.assertEqual(verify_ledger_balances(), 1)
        user.refresh_from_db()
        self.assertEqual(user.balance, Decimal("10.00"))

    def test_lock_is_released_after_run(self):
        process_due_stakes()

        self.assertTrue(locking.acquire(locking.name("process_due_stakes")))
        locking.release(locking.name("process_due_stakes"))
