"""
SQLAlchemy-backed billing store.

Uses the Core tables in invoice_billing.core.database. Per-account exclusivity
combines an in-process keyed lock with a Postgres session advisory lock, so
API workers and the sweep worker serialize on the same account even across
processes. SQLite (tests, local dev) relies on the in-process lock alone.
"""
from __future__ import annotations

import json
import threading
from contextlib import AbstractContextManager, contextmanager
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Iterator, List, Optional

from sqlalchemy import and_, func, insert, or_, select, text, update
from sqlalchemy.exc import IntegrityError

from invoice_billing.core.clock import ensure_utc
from invoice_billing.core.database import (
    accounts,
    billing_job_runs,
    credit_balances,
    get_db_session,
    get_engine,
    payment_failures,
    plan_history,
)
from invoice_billing.core.errors import FailureAlreadyOpen
from invoice_billing.core.locks import KeyedLock
from invoice_billing.models.account import Account, PlanPeriod, PlanPeriodStatus
from invoice_billing.models.credit import CreditBalance
from invoice_billing.models.payment_failure import ACTIVE_STATUSES, FailureStatus, PaymentFailure

_ACTIVE_VALUES = [s.value for s in ACTIVE_STATUSES]


def _utc(value: Optional[datetime]) -> Optional[datetime]:
    return ensure_utc(value) if value is not None else None


def _row_to_failure(row) -> PaymentFailure:
    return PaymentFailure(
        id=row.id,
        account_id=row.account_id,
        plan=row.plan_id,
        amount=Decimal(str(row.amount)),
        failure_reason=row.failure_reason,
        retry_count=row.retry_count,
        max_retries=row.max_retries,
        next_retry_at=_utc(row.next_retry_at),
        last_retry_at=_utc(row.last_retry_at),
        grace_until=_utc(row.grace_until),
        grace_warning_sent_at=_utc(row.grace_warning_sent_at),
        status=FailureStatus(row.status),
        claimed_by=row.claimed_by,
        claimed_at=_utc(row.claimed_at),
        resolution_note=row.resolution_note,
        created_at=_utc(row.created_at),
        updated_at=_utc(row.updated_at),
        resolved_at=_utc(row.resolved_at),
    )


def _failure_values(failure: PaymentFailure) -> dict:
    return {
        "account_id": failure.account_id,
        "plan_id": failure.plan,
        "amount": failure.amount,
        "failure_reason": failure.failure_reason,
        "retry_count": failure.retry_count,
        "max_retries": failure.max_retries,
        "next_retry_at": failure.next_retry_at,
        "last_retry_at": failure.last_retry_at,
        "grace_until": failure.grace_until,
        "grace_warning_sent_at": failure.grace_warning_sent_at,
        "status": failure.status.value,
        "claimed_by": failure.claimed_by,
        "claimed_at": failure.claimed_at,
        "resolution_note": failure.resolution_note,
        "created_at": failure.created_at,
        "updated_at": failure.updated_at,
        "resolved_at": failure.resolved_at,
    }


class SqlBillingStore:
    """Billing store over SQLAlchemy Core."""

    def __init__(self, use_advisory_lock: Optional[bool] = None):
        self._locks = KeyedLock()
        self._held = threading.local()
        if use_advisory_lock is None:
            use_advisory_lock = get_engine().dialect.name == "postgresql"
        self._use_advisory_lock = use_advisory_lock

    # ------------------------------------------------------------------
    # Locking
    # ------------------------------------------------------------------

    def account_lock(self, account_id: str) -> AbstractContextManager:
        return self._hold(account_id)

    @contextmanager
    def _hold(self, account_id: str) -> Iterator[None]:
        held = getattr(self._held, "keys", None)
        if held is None:
            held = self._held.keys = set()

        with self._locks.hold(account_id):
            if account_id in held or not self._use_advisory_lock:
                yield
                return
            held.add(account_id)
            try:
                with get_engine().connect() as conn:
                    conn.execute(text("SELECT pg_advisory_lock(hashtext(:key))"), {"key": account_id})
                    try:
                        yield
                    finally:
                        conn.execute(text("SELECT pg_advisory_unlock(hashtext(:key))"), {"key": account_id})
                        conn.commit()
            finally:
                held.discard(account_id)

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    def get_account(self, account_id: str) -> Optional[Account]:
        with get_db_session() as session:
            row = session.execute(
                select(accounts).where(accounts.c.account_id == account_id)
            ).fetchone()
        if not row:
            return None
        return Account(
            account_id=row.account_id,
            plan=row.plan_id,
            plan_assigned_at=_utc(row.plan_assigned_at),
            created_at=_utc(row.created_at),
            payment_failure_count=row.payment_failure_count,
            last_payment_failure_at=_utc(row.last_payment_failure_at),
        )

    def save_account(self, account: Account) -> Account:
        values = {
            "plan_id": account.plan,
            "plan_assigned_at": account.plan_assigned_at,
            "payment_failure_count": account.payment_failure_count,
            "last_payment_failure_at": account.last_payment_failure_at,
        }
        with get_db_session() as session:
            result = session.execute(
                update(accounts)
                .where(accounts.c.account_id == account.account_id)
                .values(**values)
            )
            if not result.rowcount:
                session.execute(
                    insert(accounts).values(
                        account_id=account.account_id, created_at=account.created_at, **values
                    )
                )
        return account

    def record_plan_change(
        self, account_id: str, plan: str, at: datetime, closed_status: PlanPeriodStatus
    ) -> PlanPeriod:
        with get_db_session() as session:
            session.execute(
                update(plan_history)
                .where(plan_history.c.account_id == account_id)
                .where(plan_history.c.status == PlanPeriodStatus.ACTIVE.value)
                .values(status=closed_status.value, ended_at=at)
            )
            result = session.execute(
                insert(plan_history).values(
                    account_id=account_id,
                    plan_id=plan,
                    status=PlanPeriodStatus.ACTIVE.value,
                    started_at=at,
                )
            )
            period_id = result.inserted_primary_key[0]
        return PlanPeriod(id=period_id, account_id=account_id, plan=plan, started_at=at)

    def list_plan_history(self, account_id: str) -> List[PlanPeriod]:
        stmt = (
            select(plan_history)
            .where(plan_history.c.account_id == account_id)
            .order_by(plan_history.c.started_at.desc(), plan_history.c.id.desc())
        )
        with get_db_session() as session:
            rows = session.execute(stmt).fetchall()
        return [
            PlanPeriod(
                id=r.id,
                account_id=r.account_id,
                plan=r.plan_id,
                status=PlanPeriodStatus(r.status),
                started_at=_utc(r.started_at),
                ended_at=_utc(r.ended_at),
            )
            for r in rows
        ]

    # ------------------------------------------------------------------
    # Credit balances
    # ------------------------------------------------------------------

    def get_balance(self, account_id: str) -> Optional[CreditBalance]:
        with get_db_session() as session:
            row = session.execute(
                select(credit_balances).where(credit_balances.c.account_id == account_id)
            ).fetchone()
        if not row:
            return None
        return CreditBalance(
            account_id=row.account_id,
            email_used=row.email_used,
            sms_used=row.sms_used,
            invoices_used=row.invoices_used,
            cycle_start=_utc(row.cycle_start),
            cycle_end=_utc(row.cycle_end),
            anchor_day=row.anchor_day,
        )

    def save_balance(self, balance: CreditBalance) -> CreditBalance:
        values = {
            "email_used": balance.email_used,
            "sms_used": balance.sms_used,
            "invoices_used": balance.invoices_used,
            "cycle_start": balance.cycle_start,
            "cycle_end": balance.cycle_end,
            "anchor_day": balance.anchor_day,
            "updated_at": func.now(),
        }
        with get_db_session() as session:
            result = session.execute(
                update(credit_balances)
                .where(credit_balances.c.account_id == balance.account_id)
                .values(**values)
            )
            if not result.rowcount:
                session.execute(
                    insert(credit_balances).values(account_id=balance.account_id, **values)
                )
        return balance

    # ------------------------------------------------------------------
    # Payment failures
    # ------------------------------------------------------------------

    def get_failure(self, failure_id: int) -> Optional[PaymentFailure]:
        with get_db_session() as session:
            row = session.execute(
                select(payment_failures).where(payment_failures.c.id == failure_id)
            ).fetchone()
        return _row_to_failure(row) if row else None

    def find_active_failure(self, account_id: str) -> Optional[PaymentFailure]:
        with get_db_session() as session:
            row = session.execute(
                select(payment_failures)
                .where(payment_failures.c.account_id == account_id)
                .where(payment_failures.c.status.in_(_ACTIVE_VALUES))
                .limit(1)
            ).fetchone()
        return _row_to_failure(row) if row else None

    def list_failures(self, account_id: str, statuses: Optional[List[FailureStatus]] = None) -> List[PaymentFailure]:
        stmt = select(payment_failures).where(payment_failures.c.account_id == account_id)
        if statuses is not None:
            stmt = stmt.where(payment_failures.c.status.in_([s.value for s in statuses]))
        stmt = stmt.order_by(payment_failures.c.created_at.desc(), payment_failures.c.id.desc())
        with get_db_session() as session:
            rows = session.execute(stmt).fetchall()
        return [_row_to_failure(r) for r in rows]

    def insert_failure(self, failure: PaymentFailure) -> PaymentFailure:
        existing = self.find_active_failure(failure.account_id)
        if existing:
            raise FailureAlreadyOpen(failure.account_id, existing.id)
        try:
            with get_db_session() as session:
                result = session.execute(
                    insert(payment_failures).values(**_failure_values(failure))
                )
                failure_id = result.inserted_primary_key[0]
        except IntegrityError:
            # Lost a race against another writer on the partial unique index
            existing = self.find_active_failure(failure.account_id)
            raise FailureAlreadyOpen(failure.account_id, existing.id if existing else 0) from None
        return failure.model_copy(update={"id": failure_id})

    def save_failure(self, failure: PaymentFailure) -> PaymentFailure:
        if failure.id is None:
            raise ValueError("save_failure requires a persisted failure")
        with get_db_session() as session:
            session.execute(
                update(payment_failures)
                .where(payment_failures.c.id == failure.id)
                .values(**_failure_values(failure))
            )
        return failure

    def list_due_failures(self, now: datetime, warning_window: timedelta, limit: int) -> List[PaymentFailure]:
        pf = payment_failures.c
        stmt = (
            select(payment_failures)
            .where(pf.status.in_(_ACTIVE_VALUES))
            .where(
                or_(
                    and_(pf.next_retry_at.isnot(None), pf.next_retry_at <= now),
                    pf.grace_until <= now,
                    and_(pf.grace_warning_sent_at.is_(None), pf.grace_until <= now + warning_window),
                )
            )
            .order_by(func.coalesce(pf.next_retry_at, pf.grace_until).asc(), pf.id.asc())
            .limit(limit)
        )
        with get_db_session() as session:
            rows = session.execute(stmt).fetchall()
        return [_row_to_failure(r) for r in rows]

    # ------------------------------------------------------------------
    # Job runs
    # ------------------------------------------------------------------

    def record_job_run(self, job_name: str, started_at: datetime, finished_at: datetime, status: str, stats: dict) -> None:
        with get_db_session() as session:
            session.execute(
                insert(billing_job_runs).values(
                    job_name=job_name,
                    started_at=started_at,
                    finished_at=finished_at,
                    status=status,
                    stats_json=json.dumps(stats, default=str),
                )
            )
