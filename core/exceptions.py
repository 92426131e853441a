from django.core.exceptions import ValidationError


class EngineValidationError(ValidationError):
	"""Rejected synchronously, never retried."""

	default_code = "invalid"

	def __init__(self, message, code=None, params=None):
		super().__init__(message, code=code or self.default_code, params=params)


class InvalidAmount(EngineValidationError):
	default_code = "invalid_amount"


class PlanInactive(EngineValidationError):
	default_code = "plan_inactive"


class CurrencyInactive(EngineValidationError):
	default_code = "currency_inactive"


class InsufficientBalance(EngineValidationError):
	default_code = "insufficient_balance"


class ConcurrencyConflict(Exception):
	"""Another writer advanced the entity first; the caller's snapshot is stale."""

	pass


class GatewayUnavailable(Exception):
	"""The payment gateway could not be reached or answered with an error."""

	pass


class AlreadyTerminal(Exception):
	"""A transition was attempted on an entity in a terminal state."""

	pass


class LedgerInconsistency(Exception):
	"""
	Ledger rows and entity state disagree. Processing of the entity must stop
	until an operator reconciles it by hand.
	"""

	pass
