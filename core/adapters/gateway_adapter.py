"""Adapters over the crypto payment gateway.

NowPaymentsAdapter talks to the real NOWPayments REST API; StubGatewayAdapter
reads and writes the gateway_stub tables directly for repeatable, deterministic
tests and local runs. Both return the same dataclasses so the deposit service
never sees provider-shaped payloads.
"""

import hashlib
import hmac
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone as dt_timezone
from decimal import Decimal
from typing import Optional

import requests
from django.conf import settings
from django.utils import timezone
from django.utils.dateparse import parse_datetime
from django.utils.module_loading import import_string

from core.exceptions import GatewayUnavailable
from gateway_stub.models import GatewayStubPayment

logger = logging.getLogger(__name__)


@dataclass
class GatewayPayment:
	gateway_payment_id: str
	address: str
	pay_amount: Decimal
	pay_currency: str
	expires_at: Optional[datetime]


@dataclass
class GatewayPaymentStatus:
	gateway_payment_id: str
	status: str # waiting | confirming | confirmed | sending | finished | partially_paid | failed | expired | refunded
	actually_paid: Optional[Decimal] = None
	pay_amount: Optional[Decimal] = None


def _decimal_or_none(value) -> Optional[Decimal]:
	if value in (None, ""):
		return None
	return Decimal(str(value))


def _parse_expiry(value) -> Optional[datetime]:
	if not value:
		return None
	dt = parse_datetime(str(value).replace("Z", "+00:00"))
	if dt is not None and timezone.is_naive(dt):
		dt = timezone.make_aware(dt, dt_timezone.utc)
	return dt


def to_gateway_currency_code(symbol: str, network: str = "") -> str:
	"""
	Map a currency symbol + network to the gateway's pay_currency code.
	"""
	s = (symbol or "").lower()
	n = (network or "").lower()

	# Stablecoins: network-specific codes
	if s in ("usdt", "usdc"):
		if n == "trc20":
			return f"{s}trc20"
		if n in ("bep20", "bsc"):
			return f"{s}bsc"
		if "polygon" in n or n == "matic":
			return f"{s}matic"
		if n == "sol" or "solana" in n:
			return f"{s}sol"
		return f"{s}erc20"
	if s == "bnb" and n in ("bep20", "bsc"):
		return "bnbbsc"
	return s


def verify_ipn_signature(raw_body: bytes, signature: str, secret: str | None = None) -> bool:
	"""
	The gateway signs the key-sorted, compact JSON body with HMAC-SHA512 (hex).
	"""
	secret = secret if secret is not None else getattr(settings, "NOWPAYMENTS_IPN_SECRET", "")
	if not secret or not signature:
		return False
	try:
		payload = json.loads(raw_body.decode("utf-8"))
	except (UnicodeDecodeError, ValueError):
		return False
	canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
	expected = hmac.new(secret.encode("utf-8"), canonical.encode("utf-8"), hashlib.sha512).hexdigest()
	return hmac.compare_digest(expected.lower(), signature.strip().lower())


class NowPaymentsAdapter:
	"""
	Minimal create/status calls. Any transport error, timeout or non-2xx answer
	surfaces as GatewayUnavailable so callers can skip and retry later.
	"""
	provider_name = "nowpayments"

	def __init__(self, api_key: str | None = None, base_url: str | None = None, timeout: int | None = None):
		self.api_key = api_key if api_key is not None else settings.NOWPAYMENTS_API_KEY
		self.base_url = (base_url or settings.NOWPAYMENTS_BASE_URL).rstrip("/")
		self.timeout = timeout or getattr(settings, "NOWPAYMENTS_TIMEOUT_SECONDS", 10)
		if not self.api_key:
			logger.warning("NOWPayments API key not configured")

	def _request(self, method: str, path: str, payload: dict | None = None) -> dict:
		try:
			response = requests.request(
				method,
				f"{self.base_url}{path}",
				json=payload,
				headers={"x-api-key": self.api_key, "Content-Type": "application/json"},
				timeout=self.timeout,
			)
			response.raise_for_status()
			return response.json()
		except (requests.RequestException, ValueError) as e:
			status_code = getattr(getattr(e, "response", None), "status_code", None)
			logger.warning("NOWPayments %s %s failed (status=%s): %s", method, path, status_code, e, exc_info=True)
			raise GatewayUnavailable(f"NOWPayments {path} failed: {e}") from e

	def create_payment(self, amount_usd: Decimal, pay_currency: str, order_id: str, ipn_callback_url: str | None = None) -> GatewayPayment:
		body = {
			"price_amount": float(amount_usd),
			"price_currency": "usd",
			"pay_currency": pay_currency.lower(),
			"order_id": order_id,
			"order_description": "Balance deposit",
		}
		if ipn_callback_url:
			body["ipn_callback_url"] = ipn_callback_url
		data = self._request("POST", "/payment", body)
		return GatewayPayment(
			gateway_payment_id=str(data["payment_id"]),
			address=data.get("pay_address", ""),
			pay_amount=_decimal_or_none(data.get("pay_amount")),
			pay_currency=data.get("pay_currency", pay_currency),
			expires_at=_parse_expiry(data.get("expiration_estimate_date")),
		)

	def get_status(self, gateway_payment_id: str) -> GatewayPaymentStatus:
		data = self._request("GET", f"/payment/{gateway_payment_id}")
		return GatewayPaymentStatus(
			gateway_payment_id=str(gateway_payment_id),
			status=str(data.get("payment_status", "")).lower(),
			actually_paid=_decimal_or_none(data.get("actually_paid")),
			pay_amount=_decimal_or_none(data.get("pay_amount")),
		)


class StubGatewayAdapter:
	"""
	Same surface as NowPaymentsAdapter, backed by gateway_stub tables.
	"""
	provider_name = "stub-gateway"

	def create_payment(self, amount_usd: Decimal, pay_currency: str, order_id: str, ipn_callback_url: str | None = None) -> GatewayPayment:
		p = GatewayStubPayment.objects.create(
			price_amount=amount_usd,
			pay_currency=pay_currency.lower(),
			pay_amount=Decimal(str(amount_usd)),
			order_id=str(order_id),
		)
		return GatewayPayment(
			gateway_payment_id=p.payment_id,
			address=p.pay_address,
			pay_amount=p.pay_amount,
			pay_currency=p.pay_currency,
			expires_at=p.expires_at,
		)

	def get_status(self, gateway_payment_id: str) -> GatewayPaymentStatus:
		try:
			p = GatewayStubPayment.objects.get(payment_id=gateway_payment_id)
		except GatewayStubPayment.DoesNotExist:
			raise GatewayUnavailable(f"Unknown stub payment {gateway_payment_id}")
		return GatewayPaymentStatus(
			gateway_payment_id=p.payment_id,
			status=p.status,
			actually_paid=p.actually_paid,
			pay_amount=p.pay_amount,
		)


def get_gateway():
	"""
	Instantiate the adapter configured in settings.PAYMENT_GATEWAY_ADAPTER.
	"""
	return import_string(settings.PAYMENT_GATEWAY_ADAPTER)()


def default_expiry(now=None) -> datetime:
	now = now or timezone.now()
	return now + timedelta(minutes=getattr(settings, "DEPOSIT_REQUEST_TTL_MINUTES", 60))
