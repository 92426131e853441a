"""Deposit reconciliation: gateway payments → exactly one ledger credit.

Every status change of a DepositRequest is a compare-and-set on its current
status (`filter(status__in=...).update(...)`); the confirming update and the
DEPOSIT ledger entry share one transaction, so repeated polls or duplicated
IPN callbacks can never credit twice. A request past its expiry is never
credited: a confirmation seen after expiry is logged and rejected.
"""
import enum
import logging
from datetime import timedelta
from decimal import Decimal

from django.conf import settings
from django.db import IntegrityError, transaction
from django.db.models import F, Q
from django.utils import timezone

from core.adapters.gateway_adapter import (
	GatewayPaymentStatus,
	default_expiry,
	get_gateway,
	to_gateway_currency_code,
)
from core.constants import (
	GATEWAY_CONFIRMED_STATUSES,
	GATEWAY_EXPIRED_STATUSES,
	GATEWAY_FAILED_STATUSES,
	GATEWAY_PARTIAL_STATUSES,
	to_money,
)
from core.exceptions import CurrencyInactive, GatewayUnavailable, InvalidAmount
from core.models import (
	DEPOSIT_OPEN_STATUSES,
	DepositCurrency,
	DepositRequest,
	DepositStatus,
	LedgerEntryKind,
)
from core.services.ledger_service import post_entry

logger = logging.getLogger(__name__)


class ReconcileOutcome(str, enum.Enum):
	CONFIRMED = "CONFIRMED"
	PARTIALLY_PAID = "PARTIALLY_PAID"
	FAILED = "FAILED"
	EXPIRED = "EXPIRED"
	PENDING = "PENDING"
	LATE_REJECTED = "LATE_REJECTED"
	SKIPPED = "SKIPPED" # gateway unavailable, retried on the next poll
	NOOP = "NOOP" # already terminal, or another worker won the transition


def map_gateway_status(gateway_status: str) -> str:
	"""
	Gateway status → local DepositStatus.
	"""
	s = (gateway_status or "").lower()
	if s in GATEWAY_CONFIRMED_STATUSES:
		return DepositStatus.CONFIRMED
	if s in GATEWAY_PARTIAL_STATUSES:
		return DepositStatus.PARTIALLY_PAID
	if s in GATEWAY_FAILED_STATUSES:
		return DepositStatus.FAILED
	if s in GATEWAY_EXPIRED_STATUSES:
		return DepositStatus.EXPIRED
	return DepositStatus.PENDING


def confirmation_deadline(deposit: DepositRequest):
	grace = timedelta(seconds=getattr(settings, "DEPOSIT_CONFIRMATION_GRACE_SECONDS", 0))
	return deposit.expires_at + grace


def ipn_callback_url() -> str | None:
	base = getattr(settings, "APP_URL", "")
	return f"{base.rstrip('/')}/api/deposits/webhook" if base else None


class DepositReconciliationService:

	def __init__(self, gateway=None):
		self.gateway = gateway or get_gateway()

	def create_deposit_request(self, user_id, currency_id, amount_usd, now=None) -> DepositRequest:
		"""
		Ask the gateway for a pay-in address and persist a PENDING request.

		An unexpired PENDING request for the same user, currency and amount is
		returned as is instead of creating another gateway payment.
		"""
		now = now or timezone.now()
		try:
			currency = DepositCurrency.objects.get(pk=currency_id, is_active=True)
		except (DepositCurrency.DoesNotExist, ValueError):
			raise CurrencyInactive("Currency not found.")

		try:
			amount_usd = to_money(amount_usd)
		except ArithmeticError:
			raise InvalidAmount("Amount is not a number.")
		if amount_usd <= 0:
			raise InvalidAmount("Amount must be greater than 0.")
		if amount_usd < currency.min_deposit:
			raise InvalidAmount(f"Minimum deposit is ${currency.min_deposit} USD.")

		existing = (
			DepositRequest.objects.filter(
				user_id=user_id,
				currency=currency,
				amount_usd=amount_usd,
				status=DepositStatus.PENDING,
				expires_at__gt=now,
				gateway_payment_id__isnull=False,
				cancelled_at__isnull=True,
			)
			.order_by("-created_at")
			.first()
		)
		if existing:
			return existing

		# Placeholder first so its id can travel to the gateway as order_id
		deposit = DepositRequest.objects.create(
			user_id=user_id,
			currency=currency,
			amount_usd=amount_usd,
			expires_at=default_expiry(now),
		)
		try:
			payment = self.gateway.create_payment(
				amount_usd,
				to_gateway_currency_code(currency.symbol, currency.network),
				str(deposit.pk),
				ipn_callback_url(),
			)
		except GatewayUnavailable:
			deposit.delete()
			raise

		deposit.gateway_payment_id = payment.gateway_payment_id
		deposit.address = payment.address
		deposit.pay_amount = payment.pay_amount
		deposit.pay_currency = payment.pay_currency
		deposit.expires_at = payment.expires_at or deposit.expires_at
		deposit.save(update_fields=["gateway_payment_id", "address", "pay_amount", "pay_currency", "expires_at", "updated_at"])
		logger.info("Created deposit request %s for user %s: $%s via %s", deposit.pk, user_id, amount_usd, payment.pay_currency)
		return deposit

	def reconcile(self, deposit_id, now=None) -> ReconcileOutcome:
		"""
		Poll the gateway for one request and apply what it reports.
		"""
		now = now or timezone.now()
		deposit = DepositRequest.objects.get(pk=deposit_id)
		if deposit.is_terminal or deposit.processing_halted:
			return ReconcileOutcome.NOOP

		if not deposit.gateway_payment_id:
			if now > confirmation_deadline(deposit):
				return self._expire(deposit, now)
			return ReconcileOutcome.PENDING

		DepositRequest.objects.filter(pk=deposit.pk).update(last_polled_at=now, poll_count=F("poll_count") + 1)
		try:
			gateway_status = self.gateway.get_status(deposit.gateway_payment_id)
		except GatewayUnavailable as e:
			logger.warning("Gateway unavailable while reconciling deposit %s: %s", deposit.pk, e)
			if now > confirmation_deadline(deposit):
				return self._expire(deposit, now)
			return ReconcileOutcome.SKIPPED

		return self.apply_gateway_status(deposit, gateway_status, now)

	def apply_gateway_status(self, deposit: DepositRequest, gateway_status: GatewayPaymentStatus, now=None) -> ReconcileOutcome:
		"""
		Shared by polling and IPN callbacks.
		"""
		now = now or timezone.now()
		if deposit.is_terminal:
			return ReconcileOutcome.NOOP

		target = map_gateway_status(gateway_status.status)
		expired = now > confirmation_deadline(deposit)

		if target == DepositStatus.CONFIRMED:
			if expired:
				logger.warning(
					"Late confirmation for deposit %s (gateway %s, expired at %s) rejected, not credited",
					deposit.pk, gateway_status.gateway_payment_id, deposit.expires_at,
				)
				outcome = self._expire(deposit, now, gateway_status.status)
				return ReconcileOutcome.LATE_REJECTED if outcome == ReconcileOutcome.EXPIRED else outcome
			return self._confirm(deposit, now, gateway_status)

		if expired or target == DepositStatus.EXPIRED:
			return self._expire(deposit, now, gateway_status.status)

		if target == DepositStatus.FAILED:
			if self._transition(deposit, DEPOSIT_OPEN_STATUSES, DepositStatus.FAILED, now, gateway_status=gateway_status.status):
				logger.info("Deposit %s failed at gateway (%s)", deposit.pk, gateway_status.status)
				return ReconcileOutcome.FAILED
			return ReconcileOutcome.NOOP

		if target == DepositStatus.PARTIALLY_PAID:
			self._transition(
				deposit, DEPOSIT_OPEN_STATUSES, DepositStatus.PARTIALLY_PAID, now,
				gateway_status=gateway_status.status,
				actually_paid=gateway_status.actually_paid,
			)
			return ReconcileOutcome.PARTIALLY_PAID

		DepositRequest.objects.filter(pk=deposit.pk, status__in=DEPOSIT_OPEN_STATUSES).update(
			gateway_status=gateway_status.status, updated_at=now
		)
		return ReconcileOutcome.PENDING

	def _transition(self, deposit, from_statuses, to_status, now, **extra) -> bool:
		"""
		Compare-and-set on status. Returns False if another writer got there first.
		"""
		values = {"status": to_status, "updated_at": now}
		values.update({k: v for k, v in extra.items() if v is not None})
		updated = DepositRequest.objects.filter(pk=deposit.pk, status__in=from_statuses).update(**values)
		if updated:
			for k, v in values.items():
				setattr(deposit, k, v)
		return bool(updated)

	def _expire(self, deposit, now, gateway_status: str | None = None) -> ReconcileOutcome:
		if self._transition(deposit, DEPOSIT_OPEN_STATUSES, DepositStatus.EXPIRED, now, gateway_status=gateway_status):
			logger.info("Deposit %s expired", deposit.pk)
			return ReconcileOutcome.EXPIRED
		return ReconcileOutcome.NOOP

	def _confirm(self, deposit, now, gateway_status: GatewayPaymentStatus) -> ReconcileOutcome:
		try:
			with transaction.atomic():
				updated = DepositRequest.objects.filter(
					pk=deposit.pk,
					status__in=DEPOSIT_OPEN_STATUSES,
					processing_halted=False,
				).update(
					status=DepositStatus.CONFIRMED,
					confirmed_at=now,
					gateway_status=gateway_status.status,
					actually_paid=gateway_status.actually_paid,
					updated_at=now,
				)
				if not updated:
					return ReconcileOutcome.NOOP

				post_entry(
					deposit.user_id,
					LedgerEntryKind.DEPOSIT,
					deposit.amount_usd,
					related_entity_id=deposit.pk,
					memo=f"Deposit: {gateway_status.actually_paid or deposit.pay_amount or ''} {deposit.pay_currency.upper()} (~${deposit.amount_usd} USD)",
				)
		except IntegrityError:
			# A DEPOSIT entry already references this request while its status
			# says it was never confirmed: ledger and state disagree.
			self.halt(deposit, "DEPOSIT ledger entry exists for a request that is not CONFIRMED")
			return ReconcileOutcome.NOOP

		deposit.refresh_from_db()
		logger.info("Deposit %s confirmed, credited $%s to user %s", deposit.pk, deposit.amount_usd, deposit.user_id)
		return ReconcileOutcome.CONFIRMED

	def halt(self, deposit, reason: str) -> None:
		logger.error("Halting deposit %s pending manual reconciliation: %s", deposit.pk, reason)
		DepositRequest.objects.filter(pk=deposit.pk).update(processing_halted=True, halted_reason=reason)

	def confirm_manually(self, deposit_id, now=None) -> ReconcileOutcome:
		"""
		Operator confirmation of a request that is still open. Goes through the
		same compare-and-set credit as gateway confirmations.
		"""
		now = now or timezone.now()
		deposit = DepositRequest.objects.get(pk=deposit_id)
		if deposit.is_terminal:
			return ReconcileOutcome.NOOP
		logger.info("Manual confirmation requested for deposit %s", deposit.pk)
		return self._confirm(
			deposit,
			now,
			GatewayPaymentStatus(gateway_payment_id=deposit.gateway_payment_id or "", status="confirmed", actually_paid=deposit.actually_paid),
		)

	def handle_callback(self, payload: dict, now=None) -> ReconcileOutcome:
		"""
		Apply an (already signature-checked) IPN payload. Looks the request up
		by order_id (our id) first, then by gateway payment id.
		"""
		order_id = payload.get("order_id")
		payment_id = payload.get("payment_id")
		if not order_id and not payment_id:
			raise ValueError("Missing identifiers")

		lookup = Q(pk=order_id) if order_id else Q(gateway_payment_id=str(payment_id))
		deposit = DepositRequest.objects.get(lookup)
		gateway_status = GatewayPaymentStatus(
			gateway_payment_id=str(payment_id or deposit.gateway_payment_id or ""),
			status=str(payload.get("payment_status", "")).lower(),
			actually_paid=Decimal(str(payload["actually_paid"])) if payload.get("actually_paid") not in (None, "") else None,
		)
		return self.apply_gateway_status(deposit, gateway_status, now)

	def reconcile_pending(self, now=None) -> dict:
		"""
		One polling pass: every open request whose poll interval has elapsed.
		Requests past their deadline get one last poll and are then expired, so
		polling of a request stops at expiry.
		"""
		now = now or timezone.now()
		interval = timedelta(seconds=getattr(settings, "DEPOSIT_POLL_INTERVAL_SECONDS", 60))
		due = (
			DepositRequest.objects.filter(status__in=DEPOSIT_OPEN_STATUSES, processing_halted=False)
			.filter(Q(last_polled_at__isnull=True) | Q(last_polled_at__lte=now - interval) | Q(expires_at__lte=now))
			.order_by("created_at")
			.values_list("id", flat=True)
		)
		counts = {}
		for deposit_id in list(due):
			try:
				outcome = self.reconcile(deposit_id, now)
			except Exception:
				logger.exception("Failed to reconcile deposit %s", deposit_id)
				outcome = "ERROR"
			key = getattr(outcome, "value", outcome)
			counts[key] = counts.get(key, 0) + 1
		logger.info("Deposit reconciliation pass done: %s", counts)
		return counts

	def cancel(self, user_id, deposit_id, now=None) -> DepositRequest:
		"""
		User "Cancel" button. Advisory only: the request keeps being polled
		until the gateway or expiry settles it, so funds already sent on chain
		are still credited.
		"""
		now = now or timezone.now()
		deposit = DepositRequest.objects.get(pk=deposit_id, user_id=user_id)
		if not deposit.is_terminal and deposit.cancelled_at is None:
			DepositRequest.objects.filter(pk=deposit.pk, cancelled_at__isnull=True).update(cancelled_at=now)
			deposit.refresh_from_db()
			logger.info("User %s cancelled deposit request %s (advisory)", user_id, deposit.pk)
		return deposit


def create_deposit_request(user_id, currency_id, amount_usd, now=None) -> DepositRequest:
	return DepositReconciliationService().create_deposit_request(user_id, currency_id, amount_usd, now)


def reconcile_deposit(deposit_id, now=None) -> ReconcileOutcome:
	return DepositReconciliationService().reconcile(deposit_id, now)


def cancel_deposit_request(user_id, deposit_id, now=None) -> DepositRequest:
	return DepositReconciliationService().cancel(user_id, deposit_id, now)


def reconcile_pending_deposits(now=None) -> dict:
	return DepositReconciliationService().reconcile_pending(now)
