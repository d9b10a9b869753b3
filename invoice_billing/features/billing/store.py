"""
Billing persistence protocol and in-memory implementation.

The store is the persistence collaborator for accounts, plan history, credit balances,
payment failures and sweep job runs. Callers wrap every read-modify-write of
account-scoped state in `account_lock(account_id)`; individual store methods
are atomic on their own but do not serialize multi-step updates.
"""
from __future__ import annotations

import itertools
import threading
from contextlib import AbstractContextManager
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Protocol

from invoice_billing.core.errors import FailureAlreadyOpen
from invoice_billing.core.locks import KeyedLock
from invoice_billing.models.account import Account, PlanPeriod, PlanPeriodStatus
from invoice_billing.models.credit import CreditBalance
from invoice_billing.models.payment_failure import FailureStatus, PaymentFailure


class BillingStore(Protocol):
    """
    Protocol for billing persistence.

    Implementations must provide per-account exclusivity through
    account_lock and reject a second active failure for the same account.
    """

    def account_lock(self, account_id: str) -> AbstractContextManager:
        ...

    def get_account(self, account_id: str) -> Optional[Account]:
        ...

    def save_account(self, account: Account) -> Account:
        ...

    def record_plan_change(
        self, account_id: str, plan: str, at: datetime, closed_status: PlanPeriodStatus
    ) -> PlanPeriod:
        """Close the active plan period with closed_status and open one for plan."""
        ...

    def list_plan_history(self, account_id: str) -> List[PlanPeriod]:
        """Plan periods for an account, newest first."""
        ...

    def get_balance(self, account_id: str) -> Optional[CreditBalance]:
        ...

    def save_balance(self, balance: CreditBalance) -> CreditBalance:
        ...

    def get_failure(self, failure_id: int) -> Optional[PaymentFailure]:
        ...

    def find_active_failure(self, account_id: str) -> Optional[PaymentFailure]:
        ...

    def list_failures(self, account_id: str, statuses: Optional[List[FailureStatus]] = None) -> List[PaymentFailure]:
        """Failures for an account, newest first."""
        ...

    def insert_failure(self, failure: PaymentFailure) -> PaymentFailure:
        """
        Persist a new failure and assign its id.

        Raises:
            FailureAlreadyOpen: If the account already has an active failure
        """
        ...

    def save_failure(self, failure: PaymentFailure) -> PaymentFailure:
        ...

    def list_due_failures(self, now: datetime, warning_window: timedelta, limit: int) -> List[PaymentFailure]:
        """Active failures whose retry, grace deadline or grace warning is due."""
        ...

    def record_job_run(self, job_name: str, started_at: datetime, finished_at: datetime, status: str, stats: dict) -> None:
        ...


def is_due(failure: PaymentFailure, now: datetime, warning_window: timedelta) -> bool:
    if not failure.status.is_active:
        return False
    if failure.next_retry_at is not None and failure.next_retry_at <= now:
        return True
    if failure.grace_until <= now:
        return True
    return failure.grace_warning_sent_at is None and failure.grace_until - warning_window <= now


class InMemoryBillingStore:
    """Process-local store used when DATABASE_URL is not configured."""

    def __init__(self):
        self._locks = KeyedLock()
        self._data_lock = threading.Lock()
        self._ids = itertools.count(1)
        self._accounts: Dict[str, Account] = {}
        self._balances: Dict[str, CreditBalance] = {}
        self._failures: Dict[int, PaymentFailure] = {}
        self._plan_history: List[PlanPeriod] = []
        self._period_ids = itertools.count(1)
        self.job_runs: List[dict] = []

    def account_lock(self, account_id: str) -> AbstractContextManager:
        return self._locks.hold(account_id)

    def get_account(self, account_id: str) -> Optional[Account]:
        return self._accounts.get(account_id)

    def save_account(self, account: Account) -> Account:
        with self._data_lock:
            self._accounts[account.account_id] = account
        return account

    def record_plan_change(
        self, account_id: str, plan: str, at: datetime, closed_status: PlanPeriodStatus
    ) -> PlanPeriod:
        with self._data_lock:
            for i, period in enumerate(self._plan_history):
                if period.account_id == account_id and period.status is PlanPeriodStatus.ACTIVE:
                    self._plan_history[i] = period.model_copy(update={"status": closed_status, "ended_at": at})
            opened = PlanPeriod(id=next(self._period_ids), account_id=account_id, plan=plan, started_at=at)
            self._plan_history.append(opened)
        return opened

    def list_plan_history(self, account_id: str) -> List[PlanPeriod]:
        with self._data_lock:
            rows = [p for p in self._plan_history if p.account_id == account_id]
        return sorted(rows, key=lambda p: (p.started_at, p.id), reverse=True)

    def get_balance(self, account_id: str) -> Optional[CreditBalance]:
        return self._balances.get(account_id)

    def save_balance(self, balance: CreditBalance) -> CreditBalance:
        with self._data_lock:
            self._balances[balance.account_id] = balance
        return balance

    def get_failure(self, failure_id: int) -> Optional[PaymentFailure]:
        return self._failures.get(failure_id)

    def find_active_failure(self, account_id: str) -> Optional[PaymentFailure]:
        with self._data_lock:
            for failure in self._failures.values():
                if failure.account_id == account_id and failure.status.is_active:
                    return failure
        return None

    def list_failures(self, account_id: str, statuses: Optional[List[FailureStatus]] = None) -> List[PaymentFailure]:
        with self._data_lock:
            rows = [
                f for f in self._failures.values()
                if f.account_id == account_id and (statuses is None or f.status in statuses)
            ]
        return sorted(rows, key=lambda f: (f.created_at, f.id), reverse=True)

    def insert_failure(self, failure: PaymentFailure) -> PaymentFailure:
        with self._data_lock:
            for existing in self._failures.values():
                if existing.account_id == failure.account_id and existing.status.is_active:
                    raise FailureAlreadyOpen(failure.account_id, existing.id)
            stored = failure.model_copy(update={"id": next(self._ids)})
            self._failures[stored.id] = stored
        return stored

    def save_failure(self, failure: PaymentFailure) -> PaymentFailure:
        if failure.id is None:
            raise ValueError("save_failure requires a persisted failure")
        with self._data_lock:
            self._failures[failure.id] = failure
        return failure

    def list_due_failures(self, now: datetime, warning_window: timedelta, limit: int) -> List[PaymentFailure]:
        with self._data_lock:
            due = [f for f in self._failures.values() if is_due(f, now, warning_window)]
        due.sort(key=lambda f: (f.next_retry_at or f.grace_until, f.id))
        return due[:limit]

    def record_job_run(self, job_name: str, started_at: datetime, finished_at: datetime, status: str, stats: dict) -> None:
        with self._data_lock:
            self.job_runs.append({
                "job_name": job_name,
                "started_at": started_at,
                "finished_at": finished_at,
                "status": status,
                "stats": dict(stats),
            })
