"""Request plumbing shared by the api views: caller identity, operator auth,
JSON bodies and error responses."""

import hmac
import json
import logging
from functools import wraps

from django.conf import settings
from django.core.exceptions import ObjectDoesNotExist, ValidationError
from django.http import HttpResponseBadRequest, HttpResponseForbidden, JsonResponse

from core.exceptions import AlreadyTerminal, ConcurrencyConflict, GatewayUnavailable
from core.models import User

logger = logging.getLogger(__name__)


class BadRequest(Exception):
	pass


def read_json(request) -> dict:
	try:
		body = json.loads((request.body or b"{}").decode("utf-8"))
	except (UnicodeDecodeError, ValueError):
		raise BadRequest("Invalid JSON")
	if not isinstance(body, dict):
		raise BadRequest("JSON object required")
	return body


def require(body: dict, *fields):
	missing = [f for f in fields if body.get(f) in (None, "")]
	if missing:
		raise BadRequest(f"{', '.join(missing)} required")
	return [body[f] for f in fields]


def current_user(request) -> User:
	"""
	The presentation layer authenticates and forwards the user id in X-User-Id.
	"""
	user_id = request.headers.get("X-User-Id")
	if not user_id:
		raise BadRequest("X-User-Id header required")
	return User.objects.get(pk=user_id)


def is_operator(request) -> bool:
	secret = getattr(settings, "CRON_SECRET", "")
	auth = request.headers.get("Authorization") or ""
	return bool(secret) and hmac.compare_digest(auth, f"Bearer {secret}")


def engine_view(method: str, operator: bool = False):
	"""
	Enforce the HTTP method (and operator bearer token), and map engine
	errors onto status codes.
	"""
	def decorator(view):
		@wraps(view)
		def wrapper(request, *args, **kwargs):
			if request.method != method:
				return HttpResponseBadRequest(f"{method} only")
			if operator and not is_operator(request):
				return HttpResponseForbidden("Operator token required")
			try:
				return view(request, *args, **kwargs)
			except BadRequest as e:
				return HttpResponseBadRequest(str(e))
			except ObjectDoesNotExist:
				return JsonResponse({"error": "Not found"}, status=404)
			except ValidationError as e:
				return JsonResponse({"error": " ".join(e.messages), "code": getattr(e, "code", None)}, status=400)
			except (AlreadyTerminal, ConcurrencyConflict) as e:
				return JsonResponse({"error": str(e)}, status=409)
			except GatewayUnavailable:
				logger.warning("Gateway unavailable while serving %s", request.path)
				return JsonResponse({"error": "Payment gateway unavailable, try again later"}, status=503)
		return wrapper
	return decorator
