"""Withdrawals: the balance is debited when the request is made.

PENDING → COMPLETED (operator sent the funds, records tx_hash) or
PENDING → REJECTED (amount returned with an ADJUSTMENT entry).
"""
import logging

from django.db import transaction
from django.utils import timezone

from core.constants import to_money
from core.exceptions import AlreadyTerminal, InsufficientBalance, InvalidAmount
from core.models import LedgerEntryKind, Withdrawal, WithdrawalStatus
from core.services.ledger_service import ledger_sum, lock_user, post_entry

logger = logging.getLogger(__name__)


@transaction.atomic
def request_withdrawal(user_id, amount, wallet_address: str) -> Withdrawal:
	try:
		amount = to_money(amount)
	except ArithmeticError:
		raise InvalidAmount("Amount is not a number.")
	if amount <= 0:
		raise InvalidAmount("Amount must be greater than 0.")
	wallet_address = (wallet_address or "").strip()
	if not wallet_address:
		raise InvalidAmount("Wallet address required.", code="wallet_address_required")

	lock_user(user_id)
	if ledger_sum(user_id) < amount:
		raise InsufficientBalance("Insufficient balance.")

	withdrawal = Withdrawal.objects.create(user_id=user_id, amount=amount, wallet_address=wallet_address)
	post_entry(
		user_id,
		LedgerEntryKind.WITHDRAWAL_DEBIT,
		-amount,
		related_entity_id=withdrawal.pk,
		memo=f"Withdrawal to {wallet_address}",
	)
	logger.info("Withdrawal %s requested by user %s: %s", withdrawal.pk, user_id, amount)
	return withdrawal


def _settle(withdrawal_id, status: str, now, **extra) -> Withdrawal:
	updated = Withdrawal.objects.filter(pk=withdrawal_id, status=WithdrawalStatus.PENDING).update(
		status=status, processed_at=now, **extra
	)
	withdrawal = Withdrawal.objects.get(pk=withdrawal_id)
	if not updated:
		raise AlreadyTerminal(f"Withdrawal {withdrawal_id} is {withdrawal.status}")
	return withdrawal


def complete_withdrawal(withdrawal_id, tx_hash: str = "", now=None) -> Withdrawal:
	now = now or timezone.now()
	withdrawal = _settle(withdrawal_id, WithdrawalStatus.COMPLETED, now, tx_hash=tx_hash or "")
	logger.info("Withdrawal %s completed (tx %s)", withdrawal.pk, tx_hash or "-")
	return withdrawal


@transaction.atomic
def reject_withdrawal(withdrawal_id, reason: str = "", now=None) -> Withdrawal:
	"""
	Refund goes through ADJUSTMENT: WITHDRAWAL_DEBIT already references this
	withdrawal and ledger entries are never edited.
	"""
	now = now or timezone.now()
	withdrawal = _settle(withdrawal_id, WithdrawalStatus.REJECTED, now)
	post_entry(
		withdrawal.user_id,
		LedgerEntryKind.ADJUSTMENT,
		withdrawal.amount,
		related_entity_id=withdrawal.pk,
		memo=f"Withdrawal rejected, amount returned{': ' + reason if reason else ''}",
	)
	logger.info("Withdrawal %s rejected (%s)", withdrawal.pk, reason or "no reason given")
	return withdrawal
