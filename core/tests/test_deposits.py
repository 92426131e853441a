from datetime import timedelta
from decimal import Decimal
from unittest.mock import patch

from django.db.models import F
from django.test import TestCase, override_settings
from django.utils import timezone

from core.exceptions import CurrencyInactive, GatewayUnavailable, InvalidAmount
from core.models import DepositRequest, DepositStatus, LedgerEntry, LedgerEntryKind
from core.services.deposit_service import (
    DepositReconciliationService,
    ReconcileOutcome,
    map_gateway_status,
)
from core.services.ledger_service import get_balance, post_entry
from core.tests.helpers import NOW, FakeGateway, create_currency, create_user
from gateway_stub.models import GatewayStubPayment


class DepositTestCase(TestCase):
    def setUp(self):
        self.user = create_user()
        self.currency = create_currency(symbol="USDT", network="TRC20", min_deposit="10")
        self.gateway = FakeGateway()
        self.service = DepositReconciliationService(gateway=self.gateway)

    def deposit_entries(self):
        return LedgerEntry.objects.filter(kind=LedgerEntryKind.DEPOSIT)


class CreateDepositRequestTests(DepositTestCase):
    @override_settings(APP_URL="https://stake.example.com")
    def test_creates_pending_request(self):
        deposit = self.service.create_deposit_request(self.user.pk, self.currency.pk, "100", now=NOW)

        self.assertEqual(deposit.status, DepositStatus.PENDING)
        self.assertEqual(deposit.amount_usd, Decimal("100.00"))
        self.assertEqual(deposit.gateway_payment_id, "FAKE-1")
        self.assertEqual(deposit.address, f"addr-{deposit.pk}")
        self.assertEqual(deposit.pay_currency, "usdttrc20")
        self.assertEqual(deposit.expires_at, NOW + timedelta(minutes=60))

        created = self.gateway.created[0]
        self.assertEqual(created["order_id"], str(deposit.pk))
        self.assertEqual(created["ipn_callback_url"], "https://stake.example.com/api/deposits/webhook")
        self.assertFalse(self.deposit_entries().exists())

    def test_gateway_expiry_wins_over_default(self):
        self.gateway.expires_at = NOW + timedelta(minutes=20)

        deposit = self.service.create_deposit_request(self.user.pk, self.currency.pk, "100", now=NOW)

        self.assertEqual(deposit.expires_at, NOW + timedelta(minutes=20))

    def test_reuses_open_request_for_same_amount(self):
        first = self.service.create_deposit_request(self.user.pk, self.currency.pk, "100", now=NOW)
        second = self.service.create_deposit_request(
            self.user.pk, self.currency.pk, "100", now=NOW + timedelta(minutes=5)
        )
        other = self.service.create_deposit_request(
            self.user.pk, self.currency.pk, "200", now=NOW + timedelta(minutes=5)
        )

        self.assertEqual(first.pk, second.pk)
        self.assertNotEqual(first.pk, other.pk)
        self.assertEqual(len(self.gateway.created), 2)

    def test_below_minimum_is_rejected(self):
        with self.assertRaises(InvalidAmount):
            self.service.create_deposit_request(self.user.pk, self.currency.pk, "9.99", now=NOW)

        self.assertFalse(DepositRequest.objects.exists())
        self.assertEqual(self.gateway.created, [])

    def test_inactive_currency_is_rejected(self):
        retired = create_currency(symbol="BTC", network="", is_active=False)

        with self.assertRaises(CurrencyInactive):
            self.service.create_deposit_request(self.user.pk, retired.pk, "100", now=NOW)

    def test_gateway_failure_leaves_no_request(self):
        self.gateway.unavailable = True

        with self.assertRaises(GatewayUnavailable):
            self.service.create_deposit_request(self.user.pk, self.currency.pk, "100", now=NOW)

        self.assertFalse(DepositRequest.objects.exists())


class ReconcileTests(DepositTestCase):
    def setUp(self):
        super().setUp()
        self.deposit = self.service.create_deposit_request(self.user.pk, self.currency.pk, "100", now=NOW)

    def test_confirmation_credits_once(self):
        self.gateway.status = "confirmed"
        self.gateway.actually_paid = Decimal("100.0000000000")

        outcome = self.service.reconcile(self.deposit.pk, now=NOW + timedelta(minutes=10))
        repeat = self.service.reconcile(self.deposit.pk, now=NOW + timedelta(minutes=12))

        self.assertEqual(outcome, ReconcileOutcome.CONFIRMED)
        self.assertEqual(repeat, ReconcileOutcome.NOOP)
        entry = self.deposit_entries().get()
        self.assertEqual(entry.amount, Decimal("100.00"))
        self.assertEqual(entry.related_entity_id, self.deposit.pk)
        self.assertEqual(get_balance(self.user.pk), Decimal("100.00"))

        self.deposit.refresh_from_db()
        self.assertEqual(self.deposit.status, DepositStatus.CONFIRMED)
        self.assertEqual(self.deposit.confirmed_at, NOW + timedelta(minutes=10))
        # terminal requests are not polled again
        self.assertEqual(self.gateway.status_calls, 1)

    def test_duplicate_callback_does_not_credit_again(self):
        payload = {
            "payment_id": self.deposit.gateway_payment_id,
            "payment_status": "confirmed",
            "order_id": str(self.deposit.pk),
            "actually_paid": 100,
        }

        first = self.service.handle_callback(payload, now=NOW + timedelta(minutes=10))
        second = self.service.handle_callback(payload, now=NOW + timedelta(minutes=12))

        self.assertEqual(first, ReconcileOutcome.CONFIRMED)
        self.assertEqual(second, ReconcileOutcome.NOOP)
        self.assertEqual(self.deposit_entries().count(), 1)
        self.assertEqual(get_balance(self.user.pk), Decimal("100.00"))

    def test_callback_found_by_gateway_payment_id(self):
        payload = {"payment_id": self.deposit.gateway_payment_id, "payment_status": "finished"}

        outcome = self.service.handle_callback(payload, now=NOW + timedelta(minutes=10))

        self.assertEqual(outcome, ReconcileOutcome.CONFIRMED)

    def test_callback_without_identifiers(self):
        with self.assertRaises(ValueError):
            self.service.handle_callback({"payment_status": "finished"}, now=NOW)

    def test_stale_snapshot_cannot_credit_twice(self):
        first = DepositRequest.objects.get(pk=self.deposit.pk)
        second = DepositRequest.objects.get(pk=self.deposit.pk)
        self.gateway.status = "confirmed"
        status = self.gateway.get_status(self.deposit.gateway_payment_id)

        self.service.apply_gateway_status(first, status, NOW + timedelta(minutes=10))
        outcome = self.service.apply_gateway_status(second, status, NOW + timedelta(minutes=10))

        self.assertEqual(outcome, ReconcileOutcome.NOOP)
        self.assertEqual(self.deposit_entries().count(), 1)

    def test_late_confirmation_is_rejected(self):
        self.gateway.status = "finished"

        with self.assertLogs("core.services.deposit_service", level="WARNING"):
            outcome = self.service.reconcile(self.deposit.pk, now=NOW + timedelta(minutes=61))

        self.assertEqual(outcome, ReconcileOutcome.LATE_REJECTED)
        self.deposit.refresh_from_db()
        self.assertEqual(self.deposit.status, DepositStatus.EXPIRED)
        self.assertFalse(self.deposit_entries().exists())

    @override_settings(DEPOSIT_CONFIRMATION_GRACE_SECONDS=300)
    def test_confirmation_within_grace_window_is_credited(self):
        self.gateway.status = "confirmed"

        outcome = self.service.reconcile(self.deposit.pk, now=NOW + timedelta(minutes=62))

        self.assertEqual(outcome, ReconcileOutcome.CONFIRMED)
        self.assertEqual(self.deposit_entries().count(), 1)

    def test_confirmation_after_expiry_status_is_ignored(self):
        self.service.reconcile(self.deposit.pk, now=NOW + timedelta(minutes=61))
        self.gateway.status = "confirmed"

        outcome = self.service.reconcile(self.deposit.pk, now=NOW + timedelta(minutes=70))

        self.assertEqual(outcome, ReconcileOutcome.NOOP)
        self.assertFalse(self.deposit_entries().exists())

    def test_gateway_unavailable_skips_and_keeps_pending(self):
        self.gateway.unavailable = True

        outcome = self.service.reconcile(self.deposit.pk, now=NOW + timedelta(minutes=5))

        self.assertEqual(outcome, ReconcileOutcome.SKIPPED)
        self.deposit.refresh_from_db()
        self.assertEqual(self.deposit.status, DepositStatus.PENDING)
        self.assertEqual(self.deposit.poll_count, 1)
        self.assertEqual(self.deposit.last_polled_at, NOW + timedelta(minutes=5))

    def test_concurrent_polls_both_count(self):
        load = DepositRequest.objects.get

        def load_during_another_poll(*args, **kwargs):
            deposit = load(*args, **kwargs)
            DepositRequest.objects.filter(pk=deposit.pk).update(poll_count=F("poll_count") + 1)
            return deposit

        with patch.object(DepositRequest.objects, "get", side_effect=load_during_another_poll):
            self.service.reconcile(self.deposit.pk, now=NOW + timedelta(minutes=5))

        self.deposit.refresh_from_db()
        self.assertEqual(self.deposit.poll_count, 2)

    def test_gateway_unavailable_past_expiry_expires(self):
        self.gateway.unavailable = True

        outcome = self.service.reconcile(self.deposit.pk, now=NOW + timedelta(minutes=61))

        self.assertEqual(outcome, ReconcileOutcome.EXPIRED)

    def test_failed_and_refunded_are_terminal(self):
        self.gateway.status = "refunded"

        outcome = self.service.reconcile(self.deposit.pk, now=NOW + timedelta(minutes=5))

        self.assertEqual(outcome, ReconcileOutcome.FAILED)
        self.deposit.refresh_from_db()
        self.assertEqual(self.deposit.status, DepositStatus.FAILED)
        self.assertEqual(self.deposit.gateway_status, "refunded")

    def test_partial_payment_then_confirmation(self):
        self.gateway.status = "partially_paid"
        self.gateway.actually_paid = Decimal("40")

        partial = self.service.reconcile(self.deposit.pk, now=NOW + timedelta(minutes=5))
        self.deposit.refresh_from_db()
        self.assertEqual(partial, ReconcileOutcome.PARTIALLY_PAID)
        self.assertEqual(self.deposit.status, DepositStatus.PARTIALLY_PAID)
        self.assertEqual(self.deposit.actually_paid, Decimal("40"))
        self.assertFalse(self.deposit_entries().exists())

        self.gateway.status = "finished"
        self.gateway.actually_paid = Decimal("100")
        confirmed = self.service.reconcile(self.deposit.pk, now=NOW + timedelta(minutes=20))

        self.assertEqual(confirmed, ReconcileOutcome.CONFIRMED)
        self.assertEqual(self.deposit_entries().get().amount, Decimal("100.00"))

    def test_partially_paid_expires_without_credit(self):
        self.gateway.status = "partially_paid"
        self.service.reconcile(self.deposit.pk, now=NOW + timedelta(minutes=5))

        outcome = self.service.reconcile(self.deposit.pk, now=NOW + timedelta(minutes=61))

        self.assertEqual(outcome, ReconcileOutcome.EXPIRED)
        self.assertFalse(self.deposit_entries().exists())

    def test_cancel_is_advisory(self):
        cancelled = self.service.cancel(self.user.pk, self.deposit.pk, now=NOW + timedelta(minutes=2))
        self.assertEqual(cancelled.status, DepositStatus.PENDING)
        self.assertEqual(cancelled.cancelled_at, NOW + timedelta(minutes=2))

        self.gateway.status = "confirmed"
        outcome = self.service.reconcile(self.deposit.pk, now=NOW + timedelta(minutes=10))

        self.assertEqual(outcome, ReconcileOutcome.CONFIRMED)
        self.assertEqual(get_balance(self.user.pk), Decimal("100.00"))

    def test_cancelled_request_is_not_reused(self):
        self.service.cancel(self.user.pk, self.deposit.pk, now=NOW + timedelta(minutes=2))

        fresh = self.service.create_deposit_request(self.user.pk, self.currency.pk, "100", now=NOW + timedelta(minutes=3))

        self.assertNotEqual(fresh.pk, self.deposit.pk)

    def test_manual_confirmation(self):
        outcome = self.service.confirm_manually(self.deposit.pk, now=NOW + timedelta(minutes=30))
        repeat = self.service.confirm_manually(self.deposit.pk, now=NOW + timedelta(minutes=31))

        self.assertEqual(outcome, ReconcileOutcome.CONFIRMED)
        self.assertEqual(repeat, ReconcileOutcome.NOOP)
        self.assertEqual(self.deposit_entries().count(), 1)
        self.assertEqual(self.gateway.status_calls, 0)

    def test_existing_credit_for_open_request_halts_it(self):
        post_entry(self.user.pk, LedgerEntryKind.DEPOSIT, "100", related_entity_id=self.deposit.pk)
        self.gateway.status = "confirmed"

        with self.assertLogs("core.services.deposit_service", level="ERROR"):
            outcome = self.service.reconcile(self.deposit.pk, now=NOW + timedelta(minutes=10))

        self.assertEqual(outcome, ReconcileOutcome.NOOP)
        self.deposit.refresh_from_db()
        self.assertEqual(self.deposit.status, DepositStatus.PENDING)
        self.assertTrue(self.deposit.processing_halted)
        self.assertEqual(self.deposit_entries().count(), 1)


class ReconcilePendingTests(DepositTestCase):
    def test_polls_due_requests_and_expires_stale_ones(self):
        fresh = self.service.create_deposit_request(self.user.pk, self.currency.pk, "100", now=NOW)
        stale = self.service.create_deposit_request(
            self.user.pk, self.currency.pk, "50", now=NOW - timedelta(minutes=90)
        )

        counts = self.service.reconcile_pending(now=NOW + timedelta(minutes=1))

        self.assertEqual(counts, {"PENDING": 1, "EXPIRED": 1})
        fresh.refresh_from_db()
        stale.refresh_from_db()
        self.assertEqual(fresh.status, DepositStatus.PENDING)
        self.assertEqual(stale.status, DepositStatus.EXPIRED)

    @override_settings(DEPOSIT_POLL_INTERVAL_SECONDS=60)
    def test_poll_interval_is_respected(self):
        self.service.create_deposit_request(self.user.pk, self.currency.pk, "100", now=NOW)

        self.service.reconcile_pending(now=NOW + timedelta(seconds=10))
        self.service.reconcile_pending(now=NOW + timedelta(seconds=30))
        self.service.reconcile_pending(now=NOW + timedelta(seconds=80))

        self.assertEqual(self.gateway.status_calls, 2)

    def test_terminal_requests_are_not_polled(self):
        deposit = self.service.create_deposit_request(self.user.pk, self.currency.pk, "100", now=NOW)
        self.gateway.status = "confirmed"
        self.service.reconcile_pending(now=NOW + timedelta(minutes=1))

        counts = self.service.reconcile_pending(now=NOW + timedelta(minutes=5))

        self.assertEqual(counts, {})
        self.assertEqual(self.gateway.status_calls, 1)
        deposit.refresh_from_db()
        self.assertEqual(deposit.status, DepositStatus.CONFIRMED)


class GatewayStatusMappingTests(TestCase):
    def test_map_gateway_status(self):
        self.assertEqual(map_gateway_status("waiting"), DepositStatus.PENDING)
        self.assertEqual(map_gateway_status("confirming"), DepositStatus.PENDING)
        self.assertEqual(map_gateway_status("confirmed"), DepositStatus.CONFIRMED)
        self.assertEqual(map_gateway_status("sending"), DepositStatus.CONFIRMED)
        self.assertEqual(map_gateway_status("FINISHED"), DepositStatus.CONFIRMED)
        self.assertEqual(map_gateway_status("partially_paid"), DepositStatus.PARTIALLY_PAID)
        self.assertEqual(map_gateway_status("failed"), DepositStatus.FAILED)
        self.assertEqual(map_gateway_status("refunded"), DepositStatus.FAILED)
        self.assertEqual(map_gateway_status("expired"), DepositStatus.EXPIRED)
        self.assertEqual(map_gateway_status("something-new"), DepositStatus.PENDING)


class StubGatewayFlowTests(TestCase):
    """
    Same flow against the in-process gateway stub.
    """

    def test_stub_confirmation_credits_balance(self):
        user = create_user()
        currency = create_currency()
        service = DepositReconciliationService()
        now = timezone.now()

        deposit = service.create_deposit_request(user.pk, currency.pk, "100", now=now)
        self.assertTrue(deposit.gateway_payment_id.startswith("PAY-"))
        self.assertEqual(service.reconcile(deposit.pk, now=now), ReconcileOutcome.PENDING)

        GatewayStubPayment.objects.filter(payment_id=deposit.gateway_payment_id).update(
            status="finished", actually_paid=deposit.pay_amount
        )
        outcome = service.reconcile(deposit.pk, now=now + timedelta(minutes=10))

        self.assertEqual(outcome, ReconcileOutcome.CONFIRMED)
        self.assertEqual(get_balance(user.pk), Decimal("100.00"))
