"""Deterministic in-process payment gateway.

Mirrors the slice of the NOWPayments API the engine uses: a payment with a
pay-in address, a crypto amount, an expiry and a status that moves
waiting → confirming → confirmed/finished (or partially_paid/failed/expired/refunded).
Tests and local runs flip the status directly instead of waiting on a chain.
"""

import uuid
from datetime import timedelta
from django.db import models
from django.utils.timezone import now


STUB_PAYMENT_TTL = timedelta(minutes=60)

STUB_STATUSES = (
	("waiting", "Waiting"),
	("confirming", "Confirming"),
	("confirmed", "Confirmed"),
	("sending", "Sending"),
	("finished", "Finished"),
	("partially_paid", "Partially paid"),
	("failed", "Failed"),
	("expired", "Expired"),
	("refunded", "Refunded"),
)


def gen_payment_id():
	# Named function = migration-friendly
	return f"PAY-{uuid.uuid4().hex[:12]}"


def gen_pay_address():
	return f"stub-{uuid.uuid4().hex}"


def default_expiry():
	return now() + STUB_PAYMENT_TTL


class GatewayStubPayment(models.Model):
	"""
	One payment as the gateway sees it. order_id is our DepositRequest id.
	"""
	id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
	payment_id = models.CharField(max_length=100, unique=True, default=gen_payment_id)
	order_id = models.CharField(max_length=100, blank=True, default="")
	price_amount = models.DecimalField(max_digits=18, decimal_places=2)
	price_currency = models.CharField(max_length=10, default="usd")
	pay_currency = models.CharField(max_length=32)
	pay_amount = models.DecimalField(max_digits=30, decimal_places=10)
	actually_paid = models.DecimalField(max_digits=30, decimal_places=10, default=0)
	pay_address = models.CharField(max_length=255, default=gen_pay_address)
	status = models.CharField(max_length=20, choices=STUB_STATUSES, default="waiting")
	expires_at = models.DateTimeField(default=default_expiry)
	created_at = models.DateTimeField(default=now)
	updated_at = models.DateTimeField(auto_now=True)
