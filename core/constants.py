"""Money helpers and engine-wide constants.


- to_money quantizes to cents (ROUND_DOWN) so derived amounts never overpay.
- percent_of applies a percentage rate to an amount.
- gateway status groups used by deposit reconciliation.
"""

from decimal import Decimal, ROUND_DOWN

CENT = Decimal("0.01")
ZERO = Decimal("0.00")

REFERRAL_RATE_SETTING_KEY = "referral_bonus_percent"

GATEWAY_PENDING_STATUSES = ("waiting", "confirming")
GATEWAY_CONFIRMED_STATUSES = ("confirmed", "sending", "finished")
GATEWAY_PARTIAL_STATUSES = ("partially_paid",)
GATEWAY_FAILED_STATUSES = ("failed", "refunded")
GATEWAY_EXPIRED_STATUSES = ("expired",)


def to_money(amount: str | int | Decimal) -> Decimal:
    """
    Convert a human amount (str, int or Decimal) to a 2-decimal Decimal, truncating.
    """
    amount = Decimal(str(amount))  # str() first: never let a float through unrounded
    return amount.quantize(CENT, rounding=ROUND_DOWN)


def percent_of(amount: Decimal, rate: Decimal) -> Decimal:
    """
    amount * rate / 100, truncated to cents.
    """
    return to_money(Decimal(amount) * Decimal(rate) / Decimal(100))
