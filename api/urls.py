"""Public API surface of the staking engine.

- /stakes, /deposits, /withdrawals: user actions (caller in X-User-Id)
- /deposits/webhook: gateway IPN callback (signed)
- /ops/*: operator actions (Authorization: Bearer CRON_SECRET)
- /me, /balance, /ledger, /plans, /referrals ...: read-only views
"""

from django.urls import path
from .views_ops import (
	adjust_balance,
	cancel_deposit,
	cancel_stake,
	complete_withdrawal,
	confirm_deposit,
	create_deposit,
	create_stake,
	deposit_webhook,
	health,
	reject_withdrawal,
	request_withdrawal,
	run_accrual,
	run_deposit_reconciliation,
)
from .views_read import (
	balance,
	deposit_currencies,
	deposits,
	ledger,
	me,
	plans,
	referrals,
	stakes,
	withdrawals,
)


urlpatterns = [
	path("health", health),
	path("me", me),
	path("balance", balance),
	path("ledger", ledger),
	path("plans", plans),
	path("stakes", stakes),
	path("stakes/create", create_stake),
	path("deposit-currencies", deposit_currencies),
	path("deposits", deposits),
	path("deposits/create", create_deposit),
	path("deposits/webhook", deposit_webhook, name="deposit_webhook"),
	path("deposits/<uuid:deposit_id>/cancel", cancel_deposit),
	path("withdrawals", withdrawals),
	path("withdrawals/create", request_withdrawal),
	path("referrals", referrals),
	path("ops/accrual/run", run_accrual),
	path("ops/deposits/reconcile", run_deposit_reconciliation),
	path("ops/deposits/<uuid:deposit_id>/confirm", confirm_deposit),
	path("ops/users/<uuid:user_id>/adjust-balance", adjust_balance),
	path("ops/stakes/<uuid:stake_id>/cancel", cancel_stake),
	path("ops/withdrawals/<uuid:withdrawal_id>/complete", complete_withdrawal),
	path("ops/withdrawals/<uuid:withdrawal_id>/reject", reject_withdrawal),
]
