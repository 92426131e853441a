"""Read-only endpoints for the presentation layer (balance, ledger, stakes, deposits, referrals)."""

from django.http import JsonResponse

from api.helpers import current_user, engine_view
from core.models import (
	DepositCurrency,
	DepositRequest,
	LedgerEntry,
	ReferralEarning,
	Stake,
	StakingPlan,
	Withdrawal,
)
from core.services.ledger_service import get_balance
from core.services.referral_service import ReferralCommissionService


def _iso(dt):
	return dt.isoformat() if dt else None


def _money(value):
	return f"{value:.2f}" if value is not None else None


def serialize_plan(p: StakingPlan) -> dict:
	return {
		"id": str(p.id),
		"name": p.name,
		"daily_roi": str(p.daily_roi),
		"total_roi": str(p.total_roi),
		"duration_days": p.duration_days,
		"min_amount": _money(p.min_amount),
		"max_amount": _money(p.max_amount),
	}


def serialize_stake(s: Stake, with_payments: bool = False) -> dict:
	data = {
		"id": str(s.id),
		"plan_id": str(s.plan_id),
		"amount": _money(s.amount),
		"currency": s.currency,
		"daily_roi": str(s.daily_roi),
		"total_roi": str(s.total_roi),
		"duration_days": s.duration_days,
		"expected_return": _money(s.expected_return),
		"total_earned": _money(s.total_earned),
		"status": s.status,
		"start_date": _iso(s.start_date),
		"end_date": _iso(s.end_date),
		"next_process_at": _iso(s.next_process_at),
		"processing_halted": s.processing_halted,
	}
	if with_payments:
		payments = list(s.payments.all())
		data["days_paid"] = len(payments)
		data["payments"] = [
			{"day_number": p.day_number, "amount": _money(p.amount), "date": _iso(p.date)}
			for p in payments
		]
	return data


def serialize_deposit(d: DepositRequest) -> dict:
	return {
		"id": str(d.id),
		"currency_id": str(d.currency_id),
		"amount_usd": _money(d.amount_usd),
		"pay_amount": str(d.pay_amount) if d.pay_amount is not None else None,
		"pay_currency": d.pay_currency,
		"address": d.address,
		"gateway_payment_id": d.gateway_payment_id,
		"status": d.status,
		"expires_at": _iso(d.expires_at),
		"confirmed_at": _iso(d.confirmed_at),
		"cancelled_at": _iso(d.cancelled_at),
		"created_at": _iso(d.created_at),
	}


def serialize_withdrawal(w: Withdrawal) -> dict:
	return {
		"id": str(w.id),
		"amount": _money(w.amount),
		"wallet_address": w.wallet_address,
		"status": w.status,
		"tx_hash": w.tx_hash,
		"created_at": _iso(w.created_at),
		"processed_at": _iso(w.processed_at),
	}


@engine_view("GET")
def me(request):
	user = current_user(request)
	return JsonResponse({
		"user_id": str(user.id),
		"email": user.email,
		"display_name": user.display_name,
		"referred_by": str(user.referred_by_id) if user.referred_by_id else None,
	})


@engine_view("GET")
def balance(request):
	"""
	GET: Balance, checked against the ledger (drift is repaired on read)
	"""
	user = current_user(request)
	return JsonResponse({"balance": _money(get_balance(user.pk))})


@engine_view("GET")
def ledger(request):
	"""
	GET: Recent ledger entries, newest first
	"""
	user = current_user(request)
	rows = LedgerEntry.objects.filter(user=user).order_by("-created_at")[:100]
	data = [
		{
			"id": str(r.id),
			"kind": r.kind,
			"amount": _money(r.amount),
			"related_entity_id": str(r.related_entity_id) if r.related_entity_id else None,
			"memo": r.memo,
			"created_at": _iso(r.created_at),
		}
		for r in rows
	]
	return JsonResponse(data, safe=False)


@engine_view("GET")
def plans(request):
	rows = StakingPlan.objects.filter(is_active=True).order_by("duration_days", "name")
	return JsonResponse([serialize_plan(p) for p in rows], safe=False)


@engine_view("GET")
def stakes(request):
	"""
	GET: The caller's stakes with their payment rows
	"""
	user = current_user(request)
	rows = Stake.objects.filter(user=user).prefetch_related("payments").order_by("-created_at")
	return JsonResponse([serialize_stake(s, with_payments=True) for s in rows], safe=False)


@engine_view("GET")
def deposit_currencies(request):
	rows = DepositCurrency.objects.filter(is_active=True).order_by("symbol", "network")
	data = [
		{
			"id": str(c.id),
			"symbol": c.symbol,
			"network": c.network,
			"name": c.name,
			"min_deposit": _money(c.min_deposit),
		}
		for c in rows
	]
	return JsonResponse(data, safe=False)


@engine_view("GET")
def deposits(request):
	user = current_user(request)
	rows = DepositRequest.objects.filter(user=user).order_by("-created_at")[:50]
	return JsonResponse([serialize_deposit(d) for d in rows], safe=False)


@engine_view("GET")
def withdrawals(request):
	user = current_user(request)
	rows = Withdrawal.objects.filter(user=user).order_by("-created_at")[:50]
	return JsonResponse([serialize_withdrawal(w) for w in rows], safe=False)


@engine_view("GET")
def referrals(request):
	"""
	GET: Commission totals and the latest earnings
	"""
	user = current_user(request)
	service = ReferralCommissionService()
	summary = service.get_referral_summary(user)
	rows = ReferralEarning.objects.filter(user=user).select_related("from_user").order_by("-payment_date")[:50]
	return JsonResponse({
		"referred_users": summary["referred_users"],
		"total_earned": _money(summary["total_earned"]),
		"earnings_count": summary["earnings_count"],
		"commission_rate": str(summary["commission_rate"]) if summary["commission_rate"] is not None else None,
		"earnings": [
			{
				"from_user": r.from_user.email,
				"stake_id": str(r.stake_id),
				"amount": _money(r.amount),
				"percentage": str(r.percentage),
				"payment_date": _iso(r.payment_date),
			}
			for r in rows
		],
	})
