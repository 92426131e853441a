"""HTTP endpoints for the gateway stub (optional to call directly).

The adapter uses ORM access for determinism; these endpoints mirror what the
real gateway exposes (create payment, payment status) plus a control endpoint
to simulate on-chain progress.
"""

import json
from decimal import Decimal
from django.http import JsonResponse, HttpResponseBadRequest
from django.shortcuts import get_object_or_404
from django.views.decorators.csrf import csrf_exempt
from .models import GatewayStubPayment, STUB_STATUSES


def serialize_payment(p: GatewayStubPayment) -> dict:
	return {
		"payment_id": p.payment_id,
		"payment_status": p.status,
		"pay_address": p.pay_address,
		"price_amount": f"{p.price_amount:.2f}",
		"price_currency": p.price_currency,
		"pay_amount": str(p.pay_amount),
		"pay_currency": p.pay_currency,
		"actually_paid": str(p.actually_paid),
		"order_id": p.order_id,
		"expiration_estimate_date": p.expires_at.isoformat().replace("+00:00", "Z"),
	}


@csrf_exempt
def create_payment(request):
	"""
	POST: Create a payment for price_amount (USD) payable in pay_currency
	"""
	if request.method != "POST":
		return HttpResponseBadRequest("POST only")
	body = json.loads(request.body or b"{}")
	price_amount = body.get("price_amount")
	pay_currency = body.get("pay_currency")
	if not price_amount or not pay_currency:
		return HttpResponseBadRequest("price_amount and pay_currency required")
	p = GatewayStubPayment.objects.create(
		price_amount=Decimal(str(price_amount)),
		pay_currency=str(pay_currency).lower(),
		pay_amount=Decimal(str(price_amount)),
		order_id=str(body.get("order_id", "")),
	)
	return JsonResponse(serialize_payment(p), status=201)


def payment_status(request, payment_id: str):
	"""
	GET: Current status of a payment
	"""
	p = get_object_or_404(GatewayStubPayment, payment_id=payment_id)
	return JsonResponse(serialize_payment(p))


@csrf_exempt
def set_status(request, payment_id: str):
	"""
	POST: Move a payment to another status (simulated chain progress)
	"""
	if request.method != "POST":
		return HttpResponseBadRequest("POST only")
	body = json.loads(request.body or b"{}")
	status = body.get("status")
	if status not in dict(STUB_STATUSES):
		return HttpResponseBadRequest("unknown status")
	p = get_object_or_404(GatewayStubPayment, payment_id=payment_id)
	p.status = status
	if "actually_paid" in body:
		try:
			p.actually_paid = Decimal(str(body["actually_paid"]))
		except ArithmeticError:
			return HttpResponseBadRequest("actually_paid must be a number")
	elif status in ("confirmed", "sending", "finished"):
		p.actually_paid = p.pay_amount
	p.save(update_fields=["status", "actually_paid", "updated_at"])
	return JsonResponse(serialize_payment(p))
