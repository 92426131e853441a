"""Database models for the staking settlement engine.


Tables:
- User: account holder; `balance` is a materialized projection of the ledger
- LedgerEntry: append-only balance-affecting entries (source of truth)
- SiteSetting: runtime-editable business settings (referral rate)
- StakingPlan: catalog terms, snapshotted onto each Stake at creation
- Stake: fixed-term commitment accruing daily payouts
- StakePayment: one row per accrued day (authoritative "days paid" counter)
- DepositCurrency
- DepositRequest: pending gateway payment awaiting confirmation
- ReferralEarning: commission credited to a referrer for one payout day
- Withdrawal
"""

import uuid
from decimal import Decimal
from django.db import models
from django.db.models import Q


class User(models.Model):
	"""
	Account holder. `referred_by` is the single-level referral link.
	"""
	id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
	email = models.EmailField(unique=True)
	display_name = models.CharField(max_length=200, blank=True, default="")
	referred_by = models.ForeignKey("self", null=True, blank=True, on_delete=models.SET_NULL, related_name="referrals")
	# cached projection of sum(LedgerEntry.amount); never the source of truth
	balance = models.DecimalField(max_digits=18, decimal_places=2, default=Decimal("0.00"))
	created_at = models.DateTimeField(auto_now_add=True)

	def __str__(self):
		return self.email


class LedgerEntryKind(models.TextChoices):
	DEPOSIT = "DEPOSIT", "Deposit"
	STAKE_DEBIT = "STAKE_DEBIT", "Stake debit"
	PAYOUT_CREDIT = "PAYOUT_CREDIT", "Payout credit"
	REFERRAL_CREDIT = "REFERRAL_CREDIT", "Referral credit"
	WITHDRAWAL_DEBIT = "WITHDRAWAL_DEBIT", "Withdrawal debit"
	ADJUSTMENT = "ADJUSTMENT", "Adjustment"


class LedgerEntry(models.Model):
	"""
	Immutable, signed balance movement for one user.

	At most one DEPOSIT entry may reference a given deposit request.
	"""
	id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
	user = models.ForeignKey(User, on_delete=models.PROTECT, related_name="ledger_entries")
	kind = models.CharField(max_length=20, choices=LedgerEntryKind.choices)
	amount = models.DecimalField(max_digits=18, decimal_places=2)
	related_entity_id = models.UUIDField(null=True, blank=True)
	memo = models.CharField(max_length=255, blank=True, default="")
	created_at = models.DateTimeField(auto_now_add=True)

	class Meta:
		indexes = [
			models.Index(fields=["user", "created_at"]),
			models.Index(fields=["related_entity_id"]),
		]
		constraints = [
			models.UniqueConstraint(
				fields=["kind", "related_entity_id"],
				condition=Q(kind__in=["DEPOSIT", "STAKE_DEBIT", "PAYOUT_CREDIT", "REFERRAL_CREDIT", "WITHDRAWAL_DEBIT"]),
				name="uniq_ledger_entry_per_source",
			),
		]

	def save(self, *args, **kwargs):
		if not self._state.adding:
			raise ValueError("Ledger entries are immutable")
		super().save(*args, **kwargs)

	def delete(self, *args, **kwargs):
		raise ValueError("Ledger entries are immutable")


class SiteSetting(models.Model):
	key = models.CharField(max_length=100, unique=True)
	value = models.CharField(max_length=255)
	updated_at = models.DateTimeField(auto_now=True)


class StakingPlan(models.Model):
	"""
	Catalog terms. Editing a plan never touches existing stakes: every term a
	stake needs is copied onto it at creation.
	"""
	id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
	name = models.CharField(max_length=100)
	daily_roi = models.DecimalField(max_digits=9, decimal_places=4)
	duration_days = models.PositiveIntegerField()
	total_roi = models.DecimalField(max_digits=12, decimal_places=4, default=Decimal("0"))
	min_amount = models.DecimalField(max_digits=18, decimal_places=2)
	max_amount = models.DecimalField(max_digits=18, decimal_places=2, null=True, blank=True) # None => unbounded
	is_active = models.BooleanField(default=True)
	created_at = models.DateTimeField(auto_now_add=True)

	def save(self, *args, **kwargs):
		self.total_roi = Decimal(self.daily_roi) * self.duration_days
		super().save(*args, **kwargs)


class StakeStatus(models.TextChoices):
	PENDING = "PENDING", "Pending"
	ACTIVE = "ACTIVE", "Active"
	COMPLETED = "COMPLETED", "Completed"
	CANCELLED = "CANCELLED", "Cancelled"


STAKE_TERMINAL_STATUSES = (StakeStatus.COMPLETED, StakeStatus.CANCELLED)


class Stake(models.Model):
	"""
	Plan terms (daily_roi, total_roi, duration_days) are snapshots.

	next_process_at and total_earned together are the compare-and-set key of an
	accrual step; next_process_at is None once the stake is terminal.
	"""
	id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
	user = models.ForeignKey(User, on_delete=models.PROTECT, related_name="stakes")
	plan = models.ForeignKey(StakingPlan, on_delete=models.PROTECT, related_name="stakes")
	amount = models.DecimalField(max_digits=18, decimal_places=2)
	currency = models.CharField(max_length=10, default="USD")
	daily_roi = models.DecimalField(max_digits=9, decimal_places=4)
	total_roi = models.DecimalField(max_digits=12, decimal_places=4)
	duration_days = models.PositiveIntegerField()
	expected_return = models.DecimalField(max_digits=18, decimal_places=2)
	total_earned = models.DecimalField(max_digits=18, decimal_places=2, default=Decimal("0.00"))
	start_date = models.DateTimeField()
	end_date = models.DateTimeField()
	next_process_at = models.DateTimeField(null=True, blank=True)
	last_processed_at = models.DateTimeField(null=True, blank=True)
	status = models.CharField(max_length=16, choices=StakeStatus.choices, default=StakeStatus.ACTIVE)
	processing_halted = models.BooleanField(default=False)
	halted_reason = models.TextField(blank=True, default="")
	created_at = models.DateTimeField(auto_now_add=True)
	updated_at = models.DateTimeField(auto_now=True)

	class Meta:
		indexes = [
			models.Index(fields=["status", "next_process_at"]),
		]

	@property
	def is_terminal(self) -> bool:
		return self.status in STAKE_TERMINAL_STATUSES


class StakePayment(models.Model):
	"""
	One accrued day. (stake, day_number) is unique so a day can never be paid twice.
	"""
	id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
	stake = models.ForeignKey(Stake, on_delete=models.PROTECT, related_name="payments")
	day_number = models.PositiveIntegerField()
	amount = models.DecimalField(max_digits=18, decimal_places=2)
	date = models.DateTimeField() # scheduled payout time of this day
	created_at = models.DateTimeField(auto_now_add=True)

	class Meta:
		constraints = [
			models.UniqueConstraint(fields=["stake", "day_number"], name="uniq_stake_payment_day"),
		]
		ordering = ["day_number"]


class DepositCurrency(models.Model):
	id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
	symbol = models.CharField(max_length=16) # 'USDT'
	network = models.CharField(max_length=32, blank=True, default="") # 'TRC20'
	name = models.CharField(max_length=64, blank=True, default="")
	min_deposit = models.DecimalField(max_digits=18, decimal_places=2, default=Decimal("0.00"))
	is_active = models.BooleanField(default=True)


class DepositStatus(models.TextChoices):
	PENDING = "PENDING", "Pending"
	CONFIRMED = "CONFIRMED", "Confirmed"
	PARTIALLY_PAID = "PARTIALLY_PAID", "Partially paid"
	FAILED = "FAILED", "Failed"
	EXPIRED = "EXPIRED", "Expired"


DEPOSIT_TERMINAL_STATUSES = (DepositStatus.CONFIRMED, DepositStatus.FAILED, DepositStatus.EXPIRED)
DEPOSIT_OPEN_STATUSES = (DepositStatus.PENDING, DepositStatus.PARTIALLY_PAID)


class DepositRequest(models.Model):
	"""
	A gateway payment awaiting confirmation.

	Only the reconciliation service mutates `status`, always with a
	compare-and-set on the current value. cancelled_at is advisory.
	"""
	id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
	user = models.ForeignKey(User, on_delete=models.PROTECT, related_name="deposit_requests")
	currency = models.ForeignKey(DepositCurrency, on_delete=models.PROTECT, related_name="deposit_requests")
	amount_usd = models.DecimalField(max_digits=18, decimal_places=2)
	pay_amount = models.DecimalField(max_digits=30, decimal_places=10, null=True, blank=True)
	actually_paid = models.DecimalField(max_digits=30, decimal_places=10, null=True, blank=True)
	pay_currency = models.CharField(max_length=32, blank=True, default="")
	address = models.CharField(max_length=255, blank=True, default="")
	gateway_payment_id = models.CharField(max_length=100, null=True, blank=True, unique=True)
	gateway_status = models.CharField(max_length=32, blank=True, default="")
	expires_at = models.DateTimeField()
	status = models.CharField(max_length=16, choices=DepositStatus.choices, default=DepositStatus.PENDING)
	last_polled_at = models.DateTimeField(null=True, blank=True)
	poll_count = models.PositiveIntegerField(default=0)
	confirmed_at = models.DateTimeField(null=True, blank=True)
	cancelled_at = models.DateTimeField(null=True, blank=True)
	processing_halted = models.BooleanField(default=False)
	halted_reason = models.TextField(blank=True, default="")
	created_at = models.DateTimeField(auto_now_add=True)
	updated_at = models.DateTimeField(auto_now=True)

	class Meta:
		indexes = [
			models.Index(fields=["status", "expires_at"]),
		]

	@property
	def is_terminal(self) -> bool:
		return self.status in DEPOSIT_TERMINAL_STATUSES


class ReferralEarningType(models.TextChoices):
	STAKE_PAYOUT = "STAKE_PAYOUT", "Stake payout"


class ReferralEarning(models.Model):
	"""
	Commission for one (referrer, stake, payout day). Immutable.
	"""
	id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
	user = models.ForeignKey(User, on_delete=models.PROTECT, related_name="referral_earnings")
	from_user = models.ForeignKey(User, on_delete=models.PROTECT, related_name="generated_referral_earnings")
	stake = models.ForeignKey(Stake, on_delete=models.PROTECT, related_name="referral_earnings")
	payment = models.OneToOneField(StakePayment, on_delete=models.PROTECT, related_name="referral_earning")
	payment_date = models.DateTimeField()
	amount = models.DecimalField(max_digits=18, decimal_places=2)
	percentage = models.DecimalField(max_digits=7, decimal_places=4)
	type = models.CharField(max_length=20, choices=ReferralEarningType.choices, default=ReferralEarningType.STAKE_PAYOUT)
	created_at = models.DateTimeField(auto_now_add=True)

	class Meta:
		constraints = [
			models.UniqueConstraint(fields=["user", "stake", "payment_date"], name="uniq_referral_earning_per_day"),
		]


class WithdrawalStatus(models.TextChoices):
	PENDING = "PENDING", "Pending"
	COMPLETED = "COMPLETED", "Completed"
	REJECTED = "REJECTED", "Rejected"


class Withdrawal(models.Model):
	id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
	user = models.ForeignKey(User, on_delete=models.PROTECT, related_name="withdrawals")
	amount = models.DecimalField(max_digits=18, decimal_places=2)
	wallet_address = models.CharField(max_length=255)
	status = models.CharField(max_length=16, choices=WithdrawalStatus.choices, default=WithdrawalStatus.PENDING)
	tx_hash = models.CharField(max_length=128, blank=True, default="")
	created_at = models.DateTimeField(auto_now_add=True)
	processed_at = models.DateTimeField(null=True, blank=True)
