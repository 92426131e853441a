import uuid
from datetime import datetime, timedelta, timezone as dt_timezone
from decimal import Decimal

from core.adapters.gateway_adapter import GatewayPayment, GatewayPaymentStatus
from core.exceptions import GatewayUnavailable
from core.models import DepositCurrency, DepositRequest, StakingPlan, User
from core.services.ledger_service import adjust_balance

NOW = datetime(2025, 3, 1, 12, 0, tzinfo=dt_timezone.utc)


def create_user(email=None, referred_by=None, balance=None):
    user = User.objects.create(
        email=email or f"user_{uuid.uuid4().hex[:8]}@example.com",
        referred_by=referred_by,
    )
    if balance:
        adjust_balance(user.pk, Decimal(str(balance)), memo="test funding")
    return user


def create_plan(
    name="Gold",
    daily_roi="2.5",
    duration_days=30,
    min_amount="500",
    max_amount=None,
    is_active=True,
):
    return StakingPlan.objects.create(
        name=name,
        daily_roi=Decimal(daily_roi),
        duration_days=duration_days,
        min_amount=Decimal(min_amount),
        max_amount=Decimal(max_amount) if max_amount is not None else None,
        is_active=is_active,
    )


def create_currency(symbol="USDT", network="TRC20", min_deposit="10", is_active=True):
    return DepositCurrency.objects.create(
        symbol=symbol,
        network=network,
        name=f"{symbol} ({network})",
        min_deposit=Decimal(min_deposit),
        is_active=is_active,
    )


def create_open_deposit(user, currency=None, amount_usd="100", expires_at=None, gateway_payment_id=None):
    return DepositRequest.objects.create(
        user=user,
        currency=currency or create_currency(),
        amount_usd=Decimal(amount_usd),
        pay_amount=Decimal(amount_usd),
        pay_currency="usdttrc20",
        address="stub-address",
        gateway_payment_id=gateway_payment_id or f"PAY-{uuid.uuid4().hex[:12]}",
        expires_at=expires_at or NOW + timedelta(minutes=60),
    )


class FakeGateway:
    """
    In-memory gateway: tests set `status` (or `unavailable`) and read `created`.
    """

    def __init__(self, status="waiting", actually_paid=None, expires_at=None):
        self.status = status
        self.actually_paid = actually_paid
        self.expires_at = expires_at
        self.unavailable = False
        self.created = []
        self.status_calls = 0

    def create_payment(self, amount_usd, pay_currency, order_id, ipn_callback_url=None):
        if self.unavailable:
            raise GatewayUnavailable("gateway down")
        payment_id = f"FAKE-{len(self.created) + 1}"
        self.created.append(
            {
                "payment_id": payment_id,
                "amount_usd": amount_usd,
                "pay_currency": pay_currency,
                "order_id": order_id,
                "ipn_callback_url": ipn_callback_url,
            }
        )
        return GatewayPayment(
            gateway_payment_id=payment_id,
            address=f"addr-{order_id}",
            pay_amount=Decimal(str(amount_usd)),
            pay_currency=pay_currency,
            expires_at=self.expires_at,
        )

    def get_status(self, gateway_payment_id):
        self.status_calls += 1
        if self.unavailable:
            raise GatewayUnavailable("gateway down")
        return GatewayPaymentStatus(
            gateway_payment_id=gateway_payment_id,
            status=self.status,
            actually_paid=self.actually_paid,
        )
