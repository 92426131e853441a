"""Stake lifecycle: creation, activation and cancellation.

State machine: PENDING → ACTIVE → {COMPLETED, CANCELLED}; PENDING → CANCELLED.
COMPLETED and CANCELLED are terminal. Completion happens inside the accrual
step (see accrual_service) through the same transition check.
"""
import logging
from datetime import timedelta
from decimal import Decimal

from django.conf import settings
from django.db import transaction
from django.utils import timezone

from core.constants import to_money
from core.exceptions import (
	AlreadyTerminal,
	ConcurrencyConflict,
	InsufficientBalance,
	InvalidAmount,
	PlanInactive,
)
from core.models import (
	LedgerEntryKind,
	Stake,
	StakeStatus,
	StakingPlan,
	STAKE_TERMINAL_STATUSES,
)
from core.services.ledger_service import ledger_sum, lock_user, post_entry

logger = logging.getLogger(__name__)

ONE_DAY = timedelta(days=1)

ALLOWED_TRANSITIONS = {
	StakeStatus.PENDING: (StakeStatus.ACTIVE, StakeStatus.CANCELLED),
	StakeStatus.ACTIVE: (StakeStatus.COMPLETED, StakeStatus.CANCELLED),
	StakeStatus.COMPLETED: (),
	StakeStatus.CANCELLED: (),
}


def check_transition(current: str, target: str) -> None:
	if current in STAKE_TERMINAL_STATUSES:
		raise AlreadyTerminal(f"Stake is {current}")
	if target not in ALLOWED_TRANSITIONS[current]:
		raise ValueError(f"Illegal stake transition {current} -> {target}")


def expected_return_for(amount: Decimal, total_roi: Decimal) -> Decimal:
	"""
	amount + amount * total_roi / 100
	"""
	return to_money(amount + amount * Decimal(total_roi) / Decimal(100))


def get_active_plan(plan_id) -> StakingPlan:
	try:
		return StakingPlan.objects.get(pk=plan_id, is_active=True)
	except (StakingPlan.DoesNotExist, ValueError):
		raise PlanInactive("Plan not found or inactive.")


def validate_amount(plan: StakingPlan, amount: Decimal) -> None:
	if amount <= 0:
		raise InvalidAmount("Amount must be greater than 0.")
	if amount < plan.min_amount:
		raise InvalidAmount(f"Minimum investment is ${plan.min_amount}.")
	if plan.max_amount is not None and amount > plan.max_amount:
		raise InvalidAmount(f"Maximum investment is ${plan.max_amount}.")


@transaction.atomic
def create_stake(user_id, plan_id, amount, now=None) -> Stake:
	"""
	Debit the user's balance and open a stake against the plan's current terms.

	The debit and the stake row are written in one transaction; any failure
	leaves neither behind.
	"""
	now = now or timezone.now()
	plan = get_active_plan(plan_id)
	try:
		amount = to_money(amount)
	except ArithmeticError:
		raise InvalidAmount("Amount is not a number.")
	validate_amount(plan, amount)

	# Lock the user row first so two concurrent stakes can't both pass the balance check
	lock_user(user_id)
	if ledger_sum(user_id) < amount:
		raise InsufficientBalance("Insufficient balance.")

	delay = timedelta(seconds=getattr(settings, "STAKE_ACTIVATION_DELAY_SECONDS", 0))
	start_date = now + delay
	status = StakeStatus.PENDING if delay else StakeStatus.ACTIVE

	stake = Stake.objects.create(
		user_id=user_id,
		plan=plan,
		amount=amount,
		daily_roi=plan.daily_roi,
		total_roi=plan.total_roi,
		duration_days=plan.duration_days,
		expected_return=expected_return_for(amount, plan.total_roi),
		start_date=start_date,
		end_date=start_date + plan.duration_days * ONE_DAY,
		next_process_at=start_date + ONE_DAY,
		status=status,
	)
	post_entry(
		user_id,
		LedgerEntryKind.STAKE_DEBIT,
		-amount,
		related_entity_id=stake.pk,
		memo=f"Staked ${amount} in {plan.name}",
	)
	logger.info("Created %s stake %s for user %s: %s in plan %s", status, stake.pk, user_id, amount, plan.pk)
	return stake


def activate_stake(stake: Stake, now=None) -> Stake:
	"""
	PENDING → ACTIVE once start_date has passed.
	"""
	now = now or timezone.now()
	check_transition(stake.status, StakeStatus.ACTIVE)
	updated = Stake.objects.filter(pk=stake.pk, status=StakeStatus.PENDING).update(
		status=StakeStatus.ACTIVE, updated_at=now
	)
	if not updated:
		raise ConcurrencyConflict(f"Stake {stake.pk} changed before activation")
	stake.refresh_from_db()
	logger.info("Activated stake %s", stake.pk)
	return stake


def activate_due_stakes(now=None) -> int:
	now = now or timezone.now()
	activated = 0
	for stake in Stake.objects.filter(status=StakeStatus.PENDING, start_date__lte=now, processing_halted=False):
		try:
			activate_stake(stake, now)
			activated += 1
		except (ConcurrencyConflict, AlreadyTerminal):
			continue
	return activated


@transaction.atomic
def cancel_stake(stake_id, reason: str = "", now=None) -> Stake:
	"""
	Cancel a PENDING or ACTIVE stake and return its principal to the balance.

	Cancelling a terminal stake is a no-op that returns it unchanged.
	"""
	now = now or timezone.now()
	stake = Stake.objects.select_for_update().get(pk=stake_id)
	try:
		check_transition(stake.status, StakeStatus.CANCELLED)
	except AlreadyTerminal:
		logger.info("Stake %s already %s, cancel ignored", stake.pk, stake.status)
		return stake

	updated = Stake.objects.filter(pk=stake.pk, status=stake.status, total_earned=stake.total_earned).update(
		status=StakeStatus.CANCELLED, next_process_at=None, updated_at=now
	)
	if not updated:
		raise ConcurrencyConflict(f"Stake {stake.pk} changed before cancellation")

	post_entry(
		stake.user_id,
		LedgerEntryKind.ADJUSTMENT,
		stake.amount,
		related_entity_id=stake.pk,
		memo=f"Stake cancelled, principal returned{': ' + reason if reason else ''}",
	)
	stake.refresh_from_db()
	logger.info("Cancelled stake %s (%s)", stake.pk, reason or "no reason given")
	return stake
