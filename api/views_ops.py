"""Operational endpoints that move the engine forward (stake, deposit, withdraw,
gateway callbacks) plus operator-only actions behind the CRON_SECRET bearer token."""

import json
import logging

from django.core.exceptions import ValidationError
from django.http import HttpResponseBadRequest, HttpResponseForbidden, JsonResponse
from django.utils import timezone
from django.views.decorators.csrf import csrf_exempt

from api.helpers import BadRequest, current_user, engine_view, read_json, require
from api.views_read import serialize_deposit, serialize_stake, serialize_withdrawal
from core.adapters.gateway_adapter import verify_ipn_signature
from core.models import DepositRequest
from core.services import ledger_service, staking_service, withdrawal_service
from core.services.accrual_service import PayoutAccrualScheduler
from core.services.deposit_service import DepositReconciliationService

logger = logging.getLogger(__name__)


def health(request):
	return JsonResponse({"ok": True})


@csrf_exempt
@engine_view("POST")
def create_stake(request):
	"""
	POST: Stake `amount` from the balance into `plan_id`
	"""
	user = current_user(request)
	plan_id, amount = require(read_json(request), "plan_id", "amount")
	stake = staking_service.create_stake(user.pk, plan_id, amount)
	return JsonResponse(serialize_stake(stake), status=201)


@csrf_exempt
@engine_view("POST")
def create_deposit(request):
	"""
	POST: Open (or reuse) a gateway payment for `amount_usd` in `currency_id`
	"""
	user = current_user(request)
	currency_id, amount_usd = require(read_json(request), "currency_id", "amount_usd")
	deposit = DepositReconciliationService().create_deposit_request(user.pk, currency_id, amount_usd)
	return JsonResponse(serialize_deposit(deposit), status=201)


@csrf_exempt
@engine_view("POST")
def cancel_deposit(request, deposit_id):
	"""
	POST: Advisory cancel; the request is still settled by the gateway or expiry
	"""
	user = current_user(request)
	deposit = DepositReconciliationService().cancel(user.pk, deposit_id)
	return JsonResponse(serialize_deposit(deposit))


@csrf_exempt
@engine_view("POST")
def request_withdrawal(request):
	user = current_user(request)
	amount, wallet_address = require(read_json(request), "amount", "wallet_address")
	withdrawal = withdrawal_service.request_withdrawal(user.pk, amount, wallet_address)
	return JsonResponse(serialize_withdrawal(withdrawal), status=201)


# --- Webhooks ----------------------------------------------------------------

@csrf_exempt
def deposit_webhook(request):
	"""
	Gateway IPN callback. Body is the payment status object, e.g.
	{
	  "payment_id": 5077125051,
	  "payment_status": "finished",
	  "order_id": "<deposit request uuid>",
	  "actually_paid": 100.1,
	  ...
	}
	signed in x-nowpayments-sig. Applies the same transition as polling.
	"""
	if request.method != "POST":
		return HttpResponseBadRequest("POST required")

	raw = request.body or b""
	if not verify_ipn_signature(raw, request.headers.get("x-nowpayments-sig") or ""):
		logger.warning("Rejected deposit webhook with invalid signature")
		return HttpResponseForbidden("Bad signature")

	try:
		payload = json.loads(raw.decode("utf-8"))
	except (UnicodeDecodeError, ValueError):
		return HttpResponseBadRequest("Invalid JSON")

	try:
		outcome = DepositReconciliationService().handle_callback(payload)
	except DepositRequest.DoesNotExist:
		logger.warning("Deposit webhook for unknown request: order_id=%s payment_id=%s", payload.get("order_id"), payload.get("payment_id"))
		return JsonResponse({"error": "Deposit not found"}, status=404)
	except (ValueError, ArithmeticError, ValidationError) as e:
		return HttpResponseBadRequest(f"Invalid payload: {e}")

	return JsonResponse({"ok": True, "outcome": outcome.value})


# --- Operator ----------------------------------------------------------------

@csrf_exempt
@engine_view("POST", operator=True)
def run_accrual(request):
	"""
	POST: One accrual pass (what the scheduler runs every few minutes)
	"""
	summary = PayoutAccrualScheduler().run(timezone.now())
	return JsonResponse(summary.as_dict())


@csrf_exempt
@engine_view("POST", operator=True)
def run_deposit_reconciliation(request):
	return JsonResponse(DepositReconciliationService().reconcile_pending())


@csrf_exempt
@engine_view("POST", operator=True)
def confirm_deposit(request, deposit_id):
	"""
	POST: Manually confirm and credit an open deposit request
	"""
	outcome = DepositReconciliationService().confirm_manually(deposit_id)
	deposit = DepositRequest.objects.get(pk=deposit_id)
	return JsonResponse({"outcome": outcome.value, "deposit": serialize_deposit(deposit)})


@csrf_exempt
@engine_view("POST", operator=True)
def adjust_balance(request, user_id):
	body = read_json(request)
	(amount,) = require(body, "amount")
	try:
		entry = ledger_service.adjust_balance(user_id, amount, body.get("memo", ""))
	except ArithmeticError:
		raise BadRequest("amount must be a number")
	return JsonResponse({
		"entry_id": str(entry.id),
		"amount": f"{entry.amount:.2f}",
		"balance": f"{ledger_service.get_balance(user_id):.2f}",
	}, status=201)


@csrf_exempt
@engine_view("POST", operator=True)
def cancel_stake(request, stake_id):
	body = read_json(request)
	stake = staking_service.cancel_stake(stake_id, reason=body.get("reason", ""))
	return JsonResponse(serialize_stake(stake))


@csrf_exempt
@engine_view("POST", operator=True)
def complete_withdrawal(request, withdrawal_id):
	body = read_json(request)
	withdrawal = withdrawal_service.complete_withdrawal(withdrawal_id, tx_hash=body.get("tx_hash", ""))
	return JsonResponse(serialize_withdrawal(withdrawal))


@csrf_exempt
@engine_view("POST", operator=True)
def reject_withdrawal(request, withdrawal_id):
	body = read_json(request)
	withdrawal = withdrawal_service.reject_withdrawal(withdrawal_id, reason=body.get("reason", ""))
	return JsonResponse(serialize_withdrawal(withdrawal))
