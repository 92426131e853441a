"""Payout accrual: one atomic step per stake per elapsed day.

An accrual step is a compare-and-set on the stake keyed by the
(next_process_at, total_earned) pair read beforehand. Only one writer can move
a stake from a given pair, so overlapping scheduler passes or workers produce
exactly one StakePayment per day; the loser gets ConcurrencyConflict and the
transaction it opened writes nothing.
"""
import logging
from dataclasses import dataclass, field
from decimal import Decimal

from django.db import IntegrityError, transaction
from django.db.models import Count, Q, Sum
from django.db.models.functions import Coalesce
from django.utils import timezone

from core.constants import ZERO, percent_of, to_money
from core.exceptions import AlreadyTerminal, ConcurrencyConflict, LedgerInconsistency
from core.models import (
	LedgerEntry,
	LedgerEntryKind,
	Stake,
	StakePayment,
	StakeStatus,
)
from core.services.ledger_service import post_entry
from core.services.referral_service import ReferralCommissionService
from core.services.staking_service import ONE_DAY, activate_due_stakes, check_transition

logger = logging.getLogger(__name__)


@dataclass
class AccrualResult:
	stake_id: object
	payment: StakePayment
	completed: bool
	referral_earning: object = None


@dataclass
class AccrualRunSummary:
	activated: int = 0
	processed: int = 0
	completed: int = 0
	conflicts: int = 0
	halted: list = field(default_factory=list)
	errors: list = field(default_factory=list)

	def as_dict(self) -> dict:
		return {
			"activated": self.activated,
			"processed": self.processed,
			"completed": self.completed,
			"conflicts": self.conflicts,
			"halted": [str(s) for s in self.halted],
			"errors": [str(s) for s in self.errors],
		}


def compute_day_amount(stake: Stake, day_number: int) -> Decimal:
	"""
	Payout owed for `day_number` (1-based).

	Regular days pay amount * daily_roi / 100 (truncated to cents), clamped so
	the running total never passes expected_return. The last day pays whatever
	is left, which returns the principal and absorbs the rounding remainder, so
	the payments of a completed stake sum to expected_return exactly.
	"""
	remaining = stake.expected_return - stake.total_earned
	if day_number >= stake.duration_days:
		return to_money(remaining)
	daily = percent_of(stake.amount, stake.daily_roi)
	return to_money(max(ZERO, min(daily, remaining)))


def yield_portion(stake: Stake, day_number: int, payout: Decimal) -> Decimal:
	"""
	Part of a payout that is earnings rather than returned principal.
	"""
	if day_number >= stake.duration_days:
		return max(ZERO, payout - stake.amount)
	return payout


def check_stake_consistency(stake: Stake) -> int:
	"""
	Payment rows, total_earned and payout credits must agree before another
	day is added. Returns the number of days already paid.
	"""
	agg = StakePayment.objects.filter(stake=stake).aggregate(
		count=Count("id"),
		nonzero=Count("id", filter=Q(amount__gt=0)),
		total=Coalesce(Sum("amount"), ZERO),
	)
	days_paid = agg["count"]
	paid_total = to_money(agg["total"])
	if paid_total != to_money(stake.total_earned):
		raise LedgerInconsistency(
			f"Stake {stake.pk}: payments sum {paid_total} != total_earned {stake.total_earned}"
		)
	credited = LedgerEntry.objects.filter(
		kind=LedgerEntryKind.PAYOUT_CREDIT,
		related_entity_id__in=StakePayment.objects.filter(stake=stake, amount__gt=0).values("id"),
	).count()
	if credited != agg["nonzero"]:
		raise LedgerInconsistency(
			f"Stake {stake.pk}: {agg['nonzero']} paid days but {credited} payout credits"
		)
	if days_paid >= stake.duration_days:
		raise LedgerInconsistency(
			f"Stake {stake.pk} is {stake.status} with all {days_paid} days already paid"
		)
	return days_paid


class PayoutAccrualScheduler:
	"""
	Finds ACTIVE stakes whose next_process_at has passed and accrues every
	missed day, one step at a time.
	"""

	def __init__(self, referral_service: ReferralCommissionService | None = None):
		self.referral_service = referral_service or ReferralCommissionService()

	def accrue_day(self, stake: Stake, now=None) -> AccrualResult:
		"""
		Perform one accrual step for the given stake snapshot.

		Raises ConcurrencyConflict when the snapshot is stale and
		AlreadyTerminal when the stake no longer accrues.
		"""
		now = now or timezone.now()
		try:
			return self._accrue_day(stake, now)
		except IntegrityError as e:
			# unique (stake, day_number) or ledger source constraint: someone else wrote this day
			raise ConcurrencyConflict(f"Stake {stake.pk}: day already written ({e})")

	@transaction.atomic
	def _accrue_day(self, stake: Stake, now) -> AccrualResult:
		current = Stake.objects.select_for_update().get(pk=stake.pk)
		if current.status != StakeStatus.ACTIVE or current.next_process_at is None:
			raise AlreadyTerminal(f"Stake {stake.pk} is {current.status}")
		if current.processing_halted:
			raise LedgerInconsistency(f"Stake {stake.pk} is halted: {current.halted_reason}")
		if (current.next_process_at, current.total_earned) != (stake.next_process_at, stake.total_earned):
			raise ConcurrencyConflict(f"Stake {stake.pk} was advanced by another worker")

		days_paid = check_stake_consistency(current)
		day_number = days_paid + 1
		payout = compute_day_amount(stake, day_number)
		is_last = day_number >= stake.duration_days
		pay_date = stake.next_process_at

		values = {
			"total_earned": to_money(stake.total_earned + payout),
			"last_processed_at": now,
			"updated_at": now,
		}
		if is_last:
			check_transition(stake.status, StakeStatus.COMPLETED)
			values.update(status=StakeStatus.COMPLETED, next_process_at=None)
		else:
			values["next_process_at"] = pay_date + ONE_DAY

		updated = Stake.objects.filter(
			pk=stake.pk,
			status=StakeStatus.ACTIVE,
			next_process_at=pay_date,
			total_earned=stake.total_earned,
		).update(**values)
		if not updated:
			raise ConcurrencyConflict(f"Stake {stake.pk} was advanced by another worker")

		payment = StakePayment.objects.create(stake=stake, day_number=day_number, amount=payout, date=pay_date)
		if payout > 0:
			post_entry(
				stake.user_id,
				LedgerEntryKind.PAYOUT_CREDIT,
				payout,
				related_entity_id=payment.pk,
				memo=f"Daily ROI day {day_number}/{stake.duration_days} of stake {stake.pk}",
			)

		earning = self.referral_service.on_payout(
			from_user_id=stake.user_id,
			amount=yield_portion(stake, day_number, payout),
			stake=stake,
			payment=payment,
		)

		for attr, value in values.items():
			setattr(stake, attr, value)
		if is_last:
			logger.info("Stake %s completed, total earned %s", stake.pk, stake.total_earned)
		return AccrualResult(stake_id=stake.pk, payment=payment, completed=is_last, referral_earning=earning)

	def catch_up(self, stake_id, now=None, summary: AccrualRunSummary | None = None) -> AccrualRunSummary:
		"""
		Accrue every day that is due for one stake. Bounded by the days still
		owed, so a stake that was many days overdue gets one row per missed day.
		"""
		now = now or timezone.now()
		summary = summary or AccrualRunSummary()
		stake = Stake.objects.get(pk=stake_id)
		remaining_days = stake.duration_days - StakePayment.objects.filter(stake=stake).count()

		for _ in range(max(remaining_days, 1)):
			if stake.processing_halted or stake.status != StakeStatus.ACTIVE:
				break
			if stake.next_process_at is None or stake.next_process_at > now:
				break
			try:
				result = self.accrue_day(stake, now)
			except ConcurrencyConflict as e:
				logger.info("Accrual conflict, retrying next pass: %s", e)
				summary.conflicts += 1
				break
			except AlreadyTerminal:
				break
			except LedgerInconsistency as e:
				self.halt(stake, str(e))
				summary.halted.append(stake.pk)
				break
			summary.processed += 1
			if result.completed:
				summary.completed += 1
		return summary

	def halt(self, stake: Stake, reason: str) -> None:
		logger.error("Halting stake %s pending manual reconciliation: %s", stake.pk, reason)
		Stake.objects.filter(pk=stake.pk).update(processing_halted=True, halted_reason=reason)
		stake.processing_halted = True
		stake.halted_reason = reason

	def run(self, now=None) -> AccrualRunSummary:
		"""
		One scheduler pass: activate due PENDING stakes, then catch up every
		due ACTIVE stake.
		"""
		now = now or timezone.now()
		summary = AccrualRunSummary()
		summary.activated = activate_due_stakes(now)

		due_ids = list(
			Stake.objects.filter(
				status=StakeStatus.ACTIVE,
				next_process_at__lte=now,
				processing_halted=False,
			).order_by("next_process_at").values_list("id", flat=True)
		)
		for stake_id in due_ids:
			try:
				self.catch_up(stake_id, now, summary)
			except Exception:
				# One broken stake must not block the rest of the pass
				logger.exception("Failed to process stake %s", stake_id)
				summary.errors.append(stake_id)

		logger.info(
			"Accrual pass done: activated=%s processed=%s completed=%s conflicts=%s halted=%s errors=%s",
			summary.activated, summary.processed, summary.completed,
			summary.conflicts, len(summary.halted), len(summary.errors),
		)
		return summary


def process_due_stakes(now=None) -> AccrualRunSummary:
	return PayoutAccrualScheduler().run(now)
