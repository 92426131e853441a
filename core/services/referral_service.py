import logging
from decimal import Decimal, InvalidOperation
from typing import Optional

from django.conf import settings
from django.db import transaction
from django.db.models import Count, Sum
from django.db.models.functions import Coalesce

from core.constants import REFERRAL_RATE_SETTING_KEY, ZERO, percent_of
from core.models import (
	LedgerEntryKind,
	ReferralEarning,
	ReferralEarningType,
	SiteSetting,
	Stake,
	StakePayment,
	User,
)
from core.services.ledger_service import post_entry

logger = logging.getLogger(__name__)


class ReferralCommissionService:
	"""
	Credits a single-level commission to the referrer of a user whose stake
	paid out. Must run inside the transaction of the payout it belongs to so
	the payout and its commission land together or not at all.
	"""

	def get_commission_rate(self) -> Optional[Decimal]:
		"""
		Rate in percent. A SiteSetting row wins over the settings default; a
		non-numeric or non-finite row (NaN, Infinity) falls back to the default,
		while 0 is a valid value that disables commissions.
		"""
		raw = SiteSetting.objects.filter(key=REFERRAL_RATE_SETTING_KEY).values_list("value", flat=True).first()
		if raw is not None:
			try:
				value = Decimal(str(raw).strip())
			except InvalidOperation:
				value = None
			if value is not None and value.is_finite():
				return value
			logger.warning("Ignoring unusable %s setting %r", REFERRAL_RATE_SETTING_KEY, raw)
		return getattr(settings, "REFERRAL_BONUS_PERCENT", None)

	def on_payout(self, from_user_id, amount: Decimal, stake: Stake, payment: StakePayment) -> Optional[ReferralEarning]:
		"""
		Returns the ReferralEarning written (or already present) for this
		payout day, or None when no commission applies.
		"""
		if not transaction.get_connection().in_atomic_block:
			raise RuntimeError("on_payout must run inside the payout transaction")

		referrer_id = User.objects.filter(pk=from_user_id).values_list("referred_by_id", flat=True).first()
		if referrer_id is None:
			return None

		rate = self.get_commission_rate()
		if rate is None or rate <= 0:
			return None

		commission = percent_of(amount, rate)
		if commission <= 0:
			return None

		existing = ReferralEarning.objects.filter(
			user_id=referrer_id, stake=stake, payment_date=payment.date
		).first()
		if existing:
			logger.info("Referral earning already recorded for stake %s day %s", stake.pk, payment.date)
			return existing

		earning = ReferralEarning.objects.create(
			user_id=referrer_id,
			from_user_id=from_user_id,
			stake=stake,
			payment=payment,
			payment_date=payment.date,
			amount=commission,
			percentage=rate,
			type=ReferralEarningType.STAKE_PAYOUT,
		)
		post_entry(
			referrer_id,
			LedgerEntryKind.REFERRAL_CREDIT,
			commission,
			related_entity_id=earning.pk,
			memo=f"Referral commission {rate}% on stake {stake.pk} day {payment.day_number}",
		)
		return earning

	def get_referral_summary(self, user: User) -> dict:
		"""
		Totals for the referrals screen.
		"""
		earnings = ReferralEarning.objects.filter(user=user)
		totals = earnings.aggregate(total=Coalesce(Sum("amount"), ZERO), count=Count("id"))
		return {
			"referred_users": user.referrals.count(),
			"total_earned": totals["total"],
			"earnings_count": totals["count"],
			"commission_rate": self.get_commission_rate(),
		}
