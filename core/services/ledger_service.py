"""Ledger: the only way balances move.

Every balance-affecting operation writes one immutable LedgerEntry and, in the
same transaction, refreshes the cached User.balance from the locked user row.
Reads trust the cache only after checking it against the entry sum.
"""
import logging
from decimal import Decimal

from django.db import transaction
from django.db.models import Sum
from django.db.models.functions import Coalesce

from core.constants import ZERO, to_money
from core.exceptions import InsufficientBalance
from core.models import LedgerEntry, LedgerEntryKind, User

logger = logging.getLogger(__name__)

DEBIT_KINDS = (LedgerEntryKind.STAKE_DEBIT, LedgerEntryKind.WITHDRAWAL_DEBIT)
CREDIT_KINDS = (LedgerEntryKind.DEPOSIT, LedgerEntryKind.PAYOUT_CREDIT, LedgerEntryKind.REFERRAL_CREDIT)


def ledger_sum(user_id) -> Decimal:
	"""
	Authoritative balance: the sum of all ledger entries of a user.
	"""
	total = LedgerEntry.objects.filter(user_id=user_id).aggregate(
		total=Coalesce(Sum("amount"), ZERO)
	)["total"]
	return to_money(total)


def lock_user(user_id) -> User:
	"""
	Row-lock the user for the rest of the current transaction.
	"""
	return User.objects.select_for_update().get(pk=user_id)


@transaction.atomic
def post_entry(user_id, kind: str, amount, related_entity_id=None, memo: str = "") -> LedgerEntry:
	"""
	Append one signed entry and refresh the cached balance.

	Debit kinds must be negative, credit kinds positive; adjustments may carry
	either sign but never zero.
	"""
	amount = to_money(amount)
	if amount == 0:
		raise ValueError("Ledger entries must move a non-zero amount")
	if kind in DEBIT_KINDS and amount > 0:
		raise ValueError(f"{kind} entries must be negative")
	if kind in CREDIT_KINDS and amount < 0:
		raise ValueError(f"{kind} entries must be positive")

	user = lock_user(user_id)
	entry = LedgerEntry.objects.create(
		user=user,
		kind=kind,
		amount=amount,
		related_entity_id=related_entity_id,
		memo=memo[:255],
	)

	# Recompute from entries under the row lock so the cache can never diverge
	# through this path even if it was already stale.
	user.balance = ledger_sum(user.pk)
	user.save(update_fields=["balance"])
	return entry


def get_balance(user_id) -> Decimal:
	"""
	User-facing balance read. Serves the cached value when it matches the
	ledger; on drift, logs and rewrites the cache from the ledger.
	"""
	cached = User.objects.values_list("balance", flat=True).get(pk=user_id)
	actual = ledger_sum(user_id)
	if to_money(cached) != actual:
		return repair_balance(user_id)
	return actual


@transaction.atomic
def repair_balance(user_id) -> Decimal:
	user = lock_user(user_id)
	actual = ledger_sum(user.pk)
	if to_money(user.balance) != actual:
		logger.warning(
			"Balance drift for user %s: cached=%s ledger=%s, rewriting cache",
			user.pk, user.balance, actual,
		)
		user.balance = actual
		user.save(update_fields=["balance"])
	return actual


def verify_all_balances() -> int:
	"""
	Check every cached balance against the ledger. Returns the number repaired.
	"""
	repaired = 0
	for user_id, cached in User.objects.values_list("id", "balance").iterator():
		if to_money(cached) != ledger_sum(user_id):
			repair_balance(user_id)
			repaired += 1
	logger.info("Verified ledger balances, repaired %s", repaired)
	return repaired


def adjust_balance(user_id, amount, memo: str = "") -> LedgerEntry:
	"""
	Operator adjustment (signed). A negative adjustment may not overdraw.
	"""
	amount = to_money(amount)
	with transaction.atomic():
		lock_user(user_id)
		if amount < 0 and ledger_sum(user_id) + amount < 0:
			raise InsufficientBalance("Adjustment would make the balance negative.")
		entry = post_entry(user_id, LedgerEntryKind.ADJUSTMENT, amount, memo=memo or "Admin balance adjustment")
	logger.info("Adjusted balance of user %s by %s", user_id, amount)
	return entry
