"""
invoice_billing/features/credits/ledger.py

Monthly usage credits per account.

Handles:
- Lazy cycle roll-over (reset_if_due) with catch-up for dormant accounts
- Availability checks and atomic consumption under the account lock
- Usage projection for the credits screen

Limits are looked up from the plan catalog on every call, so a plan change
(including a downgrade) takes effect on the next check without touching the
stored counters.
"""

import logging
from datetime import datetime
from typing import Optional, Union

from dateutil.relativedelta import relativedelta

from invoice_billing.core.clock import ClockSource, SystemClock
from invoice_billing.core.errors import InsufficientCredits, RecordNotFound, ValidationError
from invoice_billing.core.metrics import credits_consumed_total, credits_denied_total
from invoice_billing.features.billing.store import BillingStore
from invoice_billing.features.plans.catalog import PlanCatalog
from invoice_billing.models.credit import ConsumeResult, CreditBalance, CreditKind, CreditUsage, KindUsage
from invoice_billing.models.plan import PlanEntitlement

logger = logging.getLogger("invoice_billing.credits")


def next_cycle_end(cycle_start: datetime, anchor_day: int) -> datetime:
    """One calendar month after cycle_start, on anchor_day (clamped to month end)."""
    return cycle_start + relativedelta(months=1, day=anchor_day)


def limit_for(plan: PlanEntitlement, kind: CreditKind) -> Optional[int]:
    """Monthly allowance for a kind; None means unlimited."""
    if kind is CreditKind.EMAIL:
        return plan.email_credits_monthly
    if kind is CreditKind.SMS:
        return plan.sms_credits_monthly
    return plan.invoice_limit


def _parse_kind(kind: Union[CreditKind, str]) -> CreditKind:
    if isinstance(kind, CreditKind):
        return kind
    try:
        return CreditKind.parse(kind)
    except ValueError:
        raise ValidationError(f"Invalid credit type: {kind}") from None


def _validate_count(count: int) -> int:
    if isinstance(count, bool) or not isinstance(count, int) or count < 1:
        raise ValidationError("count must be a positive integer")
    return count


class CreditLedger:
    def __init__(self, store: BillingStore, catalog: PlanCatalog, clock: Optional[ClockSource] = None):
        self.store = store
        self.catalog = catalog
        self.clock = clock or SystemClock()

    def _plan_for(self, account_id: str) -> PlanEntitlement:
        account = self.store.get_account(account_id)
        if account is None:
            raise RecordNotFound(f"Account {account_id} not found")
        return self.catalog.get(account.plan)

    def _load_current(self, account_id: str, now: datetime) -> CreditBalance:
        """Fetch (or open) the balance and roll it forward to the cycle containing now.

        Caller must hold the account lock.
        """
        balance = self.store.get_balance(account_id)
        if balance is None:
            account = self.store.get_account(account_id)
            if account is None:
                raise RecordNotFound(f"Account {account_id} not found")
            start = account.created_at
            balance = CreditBalance(
                account_id=account_id,
                cycle_start=start,
                cycle_end=next_cycle_end(start, start.day),
                anchor_day=start.day,
            )
            return self._roll_forward(balance, now, persist_always=True)
        return self._roll_forward(balance, now)

    def _roll_forward(self, balance: CreditBalance, now: datetime, persist_always: bool = False) -> CreditBalance:
        rolled = False
        while now >= balance.cycle_end:
            start = balance.cycle_end
            balance = balance.model_copy(update={
                "cycle_start": start,
                "cycle_end": next_cycle_end(start, balance.anchor_day),
                "email_used": 0,
                "sms_used": 0,
                "invoices_used": 0,
            })
            rolled = True
        if rolled:
            logger.info(
                "credits.cycle_reset",
                extra={"account_id": balance.account_id, "cycle_start": balance.cycle_start.isoformat()},
            )
        if rolled or persist_always:
            self.store.save_balance(balance)
        return balance

    def ensure_balance(self, account_id: str) -> CreditBalance:
        with self.store.account_lock(account_id):
            return self._load_current(account_id, self.clock.now())

    def reset_if_due(self, account_id: str) -> CreditBalance:
        """Roll the cycle forward until it contains now. Safe to call repeatedly."""
        return self.ensure_balance(account_id)

    def check_available(self, account_id: str, kind: Union[CreditKind, str], count: int = 1) -> bool:
        kind = _parse_kind(kind)
        count = _validate_count(count)
        with self.store.account_lock(account_id):
            plan = self._plan_for(account_id)
            balance = self._load_current(account_id, self.clock.now())
        limit = limit_for(plan, kind)
        if limit is None:
            return True
        return balance.used(kind) + count <= limit

    def available(self, account_id: str, kind: Union[CreditKind, str]) -> Optional[int]:
        """Credits left this cycle (never negative); None when unlimited."""
        kind = _parse_kind(kind)
        with self.store.account_lock(account_id):
            plan = self._plan_for(account_id)
            balance = self._load_current(account_id, self.clock.now())
        limit = limit_for(plan, kind)
        if limit is None:
            return None
        return max(0, limit - balance.used(kind))

    def consume(self, account_id: str, kind: Union[CreditKind, str], count: int = 1) -> ConsumeResult:
        """
        Atomically check and consume credits.

        Raises:
            InsufficientCredits: If used + count would exceed the current limit
            ValidationError: If kind or count is invalid
            RecordNotFound: If the account does not exist
        """
        kind = _parse_kind(kind)
        count = _validate_count(count)
        with self.store.account_lock(account_id):
            plan = self._plan_for(account_id)
            balance = self._load_current(account_id, self.clock.now())
            used = balance.used(kind)
            limit = limit_for(plan, kind)

            if limit is not None and used + count > limit:
                credits_denied_total.inc(labels={"kind": kind.value})
                logger.info(
                    "credits.denied",
                    extra={"account_id": account_id, "credit_kind": kind.value, "used": used, "limit": limit, "requested": count},
                )
                raise InsufficientCredits(kind.value, available=max(0, limit - used), required=count)

            balance = balance.with_used(kind, used + count)
            self.store.save_balance(balance)

        credits_consumed_total.inc(labels={"kind": kind.value}, amount=count)
        new_used = used + count
        return ConsumeResult(
            kind=kind,
            consumed=count,
            used=new_used,
            limit=limit,
            remaining=None if limit is None else limit - new_used,
        )

    def usage(self, account_id: str) -> CreditUsage:
        now = self.clock.now()
        with self.store.account_lock(account_id):
            plan = self._plan_for(account_id)
            balance = self._load_current(account_id, now)

        credits = {}
        for kind in CreditKind:
            limit = limit_for(plan, kind)
            used = balance.used(kind)
            metered = kind is not CreditKind.INVOICE
            credits[kind.usage_key] = KindUsage(
                used=used,
                limit=limit,
                remaining=None if limit is None else max(0, limit - used),
                unlimited=limit is None,
                total=limit if metered else None,
                monthly_limit=limit if metered else None,
            )

        return CreditUsage(
            account_id=account_id,
            plan=plan.plan_id,
            credits=credits,
            cycle_start=balance.cycle_start,
            reset_date=balance.cycle_end,
            days_until_reset=max(0, (balance.cycle_end - now).days),
            features=plan.features(),
            monthly_price=float(plan.monthly_price),
        )
