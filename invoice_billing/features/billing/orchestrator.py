"""
Billing orchestrator.

Single entry point for the API layer and the sweep worker. Composes the plan
catalog, credit ledger and retry scheduler over one BillingStore.

Charge attempts run in three steps so the account lock is never held across
a processor call:
1. claim the failure under the account lock
2. call the processor with no lock held
3. re-acquire the lock and apply the result only if the claim is still ours
   and the failure is still active
"""
from __future__ import annotations

import logging
import socket
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import List, Optional, Tuple, Union
from uuid import uuid4

from invoice_billing.core.clock import ClockSource, SystemClock
from invoice_billing.core.errors import (
    FailureAlreadyOpen,
    InvalidTransition,
    NonRetryableDecline,
    ProcessorUnavailable,
    RecordNotFound,
    ValidationError,
)
from invoice_billing.core.logging import log_event
from invoice_billing.core.metrics import (
    payment_failures_recorded_total,
    payment_retry_attempts_total,
    plan_downgrades_total,
    retry_sweep_last_due,
    retry_sweep_last_run_timestamp,
)
from invoice_billing.features.billing import notifications
from invoice_billing.features.billing.notifications import Notifier, safe_notify
from invoice_billing.features.billing.processor import ChargeResult, PaymentProcessor
from invoice_billing.features.billing.retry_scheduler import RetryPolicy, RetryScheduler
from invoice_billing.features.billing.store import BillingStore
from invoice_billing.features.credits.ledger import CreditLedger
from invoice_billing.features.plans.catalog import PlanCatalog
from invoice_billing.models.account import Account, PlanPeriod, PlanPeriodStatus
from invoice_billing.models.credit import ConsumeResult, CreditKind, CreditUsage
from invoice_billing.models.payment_failure import (
    FailureStatus,
    LatestFailure,
    ManualRetryResult,
    PaymentFailure,
    RetryStatus,
    SweepReport,
)

logger = logging.getLogger("invoice_billing.billing")

SWEEP_JOB_NAME = "payment_retry_sweep"

# Outcome labels for payment_retry_attempts_total
SUCCEEDED = "succeeded"
FAILED = "failed"
EXHAUSTED = "exhausted"
DOWNGRADED = "downgraded"
STALE = "stale"


def _parse_amount(amount: Union[Decimal, str, int, float]) -> Decimal:
    try:
        value = Decimal(str(amount))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"Invalid amount: {amount}") from None
    if not value.is_finite() or value <= 0:
        raise ValidationError("amount must be greater than zero")
    return value.quantize(Decimal("0.01"))


class BillingOrchestrator:
    def __init__(
        self,
        store: BillingStore,
        catalog: PlanCatalog,
        processor: PaymentProcessor,
        notifier: Optional[Notifier] = None,
        clock: Optional[ClockSource] = None,
        policy: Optional[RetryPolicy] = None,
        worker_id: Optional[str] = None,
        sweep_batch_size: int = 50,
    ):
        self.store = store
        self.catalog = catalog
        self.processor = processor
        self.notifier = notifier
        self.clock = clock or SystemClock()
        self.scheduler = RetryScheduler(policy)
        self.ledger = CreditLedger(store, catalog, self.clock)
        self.worker_id = worker_id or socket.gethostname()
        self.sweep_batch_size = sweep_batch_size

    @property
    def policy(self) -> RetryPolicy:
        return self.scheduler.policy

    # ------------------------------------------------------------------
    # Accounts and plans
    # ------------------------------------------------------------------

    def open_account(self, account_id: str, plan: Optional[str] = None) -> Account:
        """Create the account on first sight; existing accounts are returned unchanged."""
        if not account_id:
            raise ValidationError("account_id is required")
        plan_id = plan or self.catalog.free_tier().plan_id
        self.catalog.get(plan_id)

        with self.store.account_lock(account_id):
            existing = self.store.get_account(account_id)
            if existing is not None:
                return existing
            now = self.clock.now()
            account = self.store.save_account(
                Account(account_id=account_id, plan=plan_id, plan_assigned_at=now, created_at=now)
            )
            self.store.record_plan_change(account_id, plan_id, now, PlanPeriodStatus.CHANGED)
            self.ledger.ensure_balance(account_id)

        log_event("info", "account.opened", account_id=account_id, event_type="account.opened", extra={"plan": plan_id})
        return account

    def get_account(self, account_id: str) -> Account:
        account = self.store.get_account(account_id)
        if account is None:
            raise RecordNotFound(f"Account {account_id} not found")
        return account

    def assign_plan(self, account_id: str, plan: str) -> Account:
        """Switch an account's plan. Usage counters are kept; limits follow the new plan."""
        self.catalog.get(plan)
        with self.store.account_lock(account_id):
            account = self.get_account(account_id)
            if account.plan == plan:
                return account
            now = self.clock.now()
            updated = self.store.save_account(account.model_copy(update={"plan": plan, "plan_assigned_at": now}))
            self.store.record_plan_change(account_id, plan, now, PlanPeriodStatus.CHANGED)
        log_event(
            "info",
            "account.plan_changed",
            account_id=account_id,
            event_type="account.plan_changed",
            extra={"from_plan": account.plan, "to_plan": plan},
        )
        return updated

    def plan_history(self, account_id: str) -> List[PlanPeriod]:
        return self.store.list_plan_history(account_id)

    def _bump_failure_count(self, account_id: str, now: datetime) -> None:
        """Caller holds the account lock."""
        account = self.get_account(account_id)
        self.store.save_account(account.model_copy(update={
            "payment_failure_count": account.payment_failure_count + 1,
            "last_payment_failure_at": now,
        }))

    def _clear_failure_count(self, account_id: str) -> None:
        """Caller holds the account lock."""
        account = self.get_account(account_id)
        if account.payment_failure_count or account.last_payment_failure_at is not None:
            self.store.save_account(account.model_copy(update={
                "payment_failure_count": 0,
                "last_payment_failure_at": None,
            }))

    # ------------------------------------------------------------------
    # Credits
    # ------------------------------------------------------------------

    def request_credit(self, account_id: str, kind: Union[CreditKind, str], count: int = 1) -> ConsumeResult:
        return self.ledger.consume(account_id, kind, count)

    def check_credit(self, account_id: str, kind: Union[CreditKind, str], count: int = 1) -> Tuple[bool, Optional[int]]:
        """Returns (sufficient, available); available is None for unlimited kinds."""
        sufficient = self.ledger.check_available(account_id, kind, count)
        return sufficient, self.ledger.available(account_id, kind)

    def credit_usage(self, account_id: str) -> CreditUsage:
        return self.ledger.usage(account_id)

    # ------------------------------------------------------------------
    # Payment failures
    # ------------------------------------------------------------------

    def record_failure(
        self,
        account_id: str,
        plan: str,
        amount: Union[Decimal, str, int, float],
        reason: Optional[str] = None,
    ) -> PaymentFailure:
        """
        Open a payment failure and start its grace period.

        Raises:
            FailureAlreadyOpen: If the account already has a pending/retrying failure
            UnknownPlan: If plan is not in the catalog
            RecordNotFound: If the account does not exist
        """
        value = _parse_amount(amount)
        grace_period = self.catalog.grace_period(plan)

        with self.store.account_lock(account_id):
            self.get_account(account_id)
            existing = self.store.find_active_failure(account_id)
            if existing is not None:
                log_event(
                    "warning",
                    "payment.failure_already_open",
                    account_id=account_id,
                    failure_id=existing.id,
                    error_code=FailureAlreadyOpen.code,
                )
                raise FailureAlreadyOpen(account_id, existing.id)
            now = self.clock.now()
            failure = self.store.insert_failure(
                self.scheduler.open(account_id, plan, value, reason, now, grace_period)
            )
            self._bump_failure_count(account_id, now)

        payment_failures_recorded_total.inc(labels={"plan": plan})
        log_event(
            "info",
            "payment.failure_recorded",
            account_id=account_id,
            failure_id=failure.id,
            event_type=notifications.GRACE_PERIOD_STARTED,
            extra={"plan": plan, "grace_until": failure.grace_until.isoformat(), "reason": reason},
        )
        safe_notify(self.notifier, notifications.GRACE_PERIOD_STARTED, account_id, {
            "failure_id": failure.id,
            "plan": plan,
            "amount": str(value),
            "reason": reason,
            "grace_until": failure.grace_until.isoformat(),
            "next_retry_at": failure.next_retry_at.isoformat() if failure.next_retry_at else None,
        })
        return failure

    def get_failure(self, failure_id: int, account_id: Optional[str] = None) -> PaymentFailure:
        failure = self.store.get_failure(failure_id)
        if failure is None or (account_id is not None and failure.account_id != account_id):
            raise RecordNotFound(f"Payment failure {failure_id} not found")
        return failure

    def list_failures(self, account_id: str) -> List[PaymentFailure]:
        return self.store.list_failures(account_id)

    def retry_status(self, account_id: str) -> RetryStatus:
        active = self.store.list_failures(account_id, [FailureStatus.PENDING, FailureStatus.RETRYING])
        if not active:
            return RetryStatus(has_failed_payments=False, failed_count=0)
        latest = active[0]
        return RetryStatus(
            has_failed_payments=True,
            failed_count=len(active),
            grace_until=latest.grace_until,
            next_retry_at=latest.next_retry_at,
            latest_failure=LatestFailure(
                id=latest.id,
                amount=float(latest.amount),
                plan=latest.plan,
                failure_reason=latest.failure_reason,
                retry_count=latest.retry_count,
                max_retries=latest.max_retries,
            ),
        )

    def resolve_failure(self, failure_id: int, note: Optional[str] = None) -> PaymentFailure:
        """Operator override: close a failure without charging or downgrading."""
        failure = self.get_failure(failure_id)
        with self.store.account_lock(failure.account_id):
            current = self.get_failure(failure_id)
            resolved = self.store.save_failure(self.scheduler.resolve(current, self.clock.now(), note))
        log_event(
            "info",
            "payment.manually_resolved",
            account_id=resolved.account_id,
            failure_id=resolved.id,
            event_type="payment.manually_resolved",
            extra={"note": note},
        )
        return resolved

    # ------------------------------------------------------------------
    # Charge attempts
    # ------------------------------------------------------------------

    def _claim(
        self, failure_id: int, account_id: str, now: datetime, require_due: bool = False
    ) -> Tuple[PaymentFailure, str]:
        owner = f"{self.worker_id}:{uuid4().hex}"
        with self.store.account_lock(account_id):
            current = self.get_failure(failure_id)
            if require_due and not self.scheduler.retry_due(current, now):
                # Listing is stale: another attempt already moved next_retry_at
                raise InvalidTransition(f"Payment failure {failure_id} is no longer due")
            claimed = self.store.save_failure(self.scheduler.claim(current, owner, now))
        return claimed, owner

    def _release(self, failure_id: int, account_id: str, owner: str) -> None:
        with self.store.account_lock(account_id):
            current = self.store.get_failure(failure_id)
            if current is not None and self.scheduler.owns_claim(current, owner):
                self.store.save_failure(self.scheduler.release_claim(current, owner, self.clock.now()))

    def _charge(self, failure: PaymentFailure, owner: str) -> Tuple[ChargeResult, bool]:
        """Call the processor. Returns (result, non_retryable). Unexpected errors propagate."""
        try:
            return self.processor.charge(failure.account_id, failure.amount, idempotency_key=owner), False
        except NonRetryableDecline as e:
            return ChargeResult(success=False, reason=e.message), True
        except ProcessorUnavailable as e:
            log_event(
                "warning",
                "payment.processor_unavailable",
                account_id=failure.account_id,
                failure_id=failure.id,
                error_code=ProcessorUnavailable.code,
                extra={"detail": e.message},
            )
            return ChargeResult(success=False, reason="processor_unavailable"), False

    def _downgrade_locked(self, failure: PaymentFailure, now: datetime) -> Tuple[PaymentFailure, str]:
        """Expire grace and move the account to the free tier. Caller holds the account lock."""
        expired = self.scheduler.expire_grace(failure, now)
        account = self.get_account(failure.account_id)
        free_plan = self.catalog.free_tier().plan_id
        if account.plan != free_plan:
            self.store.save_account(account.model_copy(update={"plan": free_plan, "plan_assigned_at": now}))
            self.store.record_plan_change(account.account_id, free_plan, now, PlanPeriodStatus.PAYMENT_FAILED)
        downgraded = self.store.save_failure(self.scheduler.mark_downgraded(expired, now))
        return downgraded, account.plan

    def _apply(
        self,
        claimed: PaymentFailure,
        owner: str,
        result: ChargeResult,
        non_retryable: bool,
        now: datetime,
    ) -> Tuple[PaymentFailure, str, Optional[str]]:
        """Fold an attempt result into the failure. Returns (failure, outcome, downgraded_from)."""
        downgraded_from = None
        with self.store.account_lock(claimed.account_id):
            current = self.get_failure(claimed.id)
            if not current.status.is_active or not self.scheduler.owns_claim(current, owner):
                log_event(
                    "warning",
                    "payment.stale_attempt",
                    account_id=current.account_id,
                    failure_id=current.id,
                    event_type="payment.stale_attempt",
                    extra={"status": current.status.value, "charge_success": result.success},
                )
                return current, STALE, None

            if result.success:
                succeeded = self.store.save_failure(self.scheduler.apply_success(current, owner, now))
                self._clear_failure_count(current.account_id)
                return succeeded, SUCCEEDED, None

            updated = self.scheduler.apply_failure(current, owner, now, result.reason, non_retryable)
            if updated.retries_exhausted and not current.retries_exhausted:
                self._bump_failure_count(current.account_id, now)
            if now >= updated.grace_until:
                updated, downgraded_from = self._downgrade_locked(updated, now)
                return updated, DOWNGRADED, downgraded_from
            updated = self.store.save_failure(updated)
            outcome = EXHAUSTED if updated.retries_exhausted else FAILED
            return updated, outcome, None

    def _announce_attempt(self, failure: PaymentFailure, outcome: str, trigger: str, downgraded_from: Optional[str]) -> None:
        payment_retry_attempts_total.inc(labels={"trigger": trigger, "outcome": outcome})
        log_event(
            "info",
            "payment.retry_attempted",
            account_id=failure.account_id,
            failure_id=failure.id,
            event_type="payment.retry_attempted",
            extra={
                "trigger": trigger,
                "outcome": outcome,
                "status": failure.status.value,
                "retry_count": failure.retry_count,
                "next_retry_at": failure.next_retry_at.isoformat() if failure.next_retry_at else None,
            },
        )
        payload = {
            "failure_id": failure.id,
            "plan": failure.plan,
            "amount": str(failure.amount),
            "retry_count": failure.retry_count,
            "max_retries": failure.max_retries,
            "reason": failure.failure_reason,
            "next_retry_at": failure.next_retry_at.isoformat() if failure.next_retry_at else None,
            "grace_until": failure.grace_until.isoformat(),
        }
        if outcome == SUCCEEDED:
            safe_notify(self.notifier, notifications.RETRY_SUCCEEDED, failure.account_id, payload)
        elif outcome == FAILED:
            safe_notify(self.notifier, notifications.RETRY_FAILED, failure.account_id, payload)
        elif outcome == EXHAUSTED:
            safe_notify(self.notifier, notifications.RETRIES_EXHAUSTED, failure.account_id, payload)
        elif outcome == DOWNGRADED:
            self._announce_downgrade(failure, downgraded_from)

    def _announce_downgrade(self, failure: PaymentFailure, from_plan: Optional[str]) -> None:
        free_plan = self.catalog.free_tier().plan_id
        plan_downgrades_total.inc(labels={"from_plan": from_plan or ""})
        log_event(
            "warning",
            "payment.plan_downgraded",
            account_id=failure.account_id,
            failure_id=failure.id,
            event_type=notifications.PLAN_DOWNGRADED,
            extra={"from_plan": from_plan, "to_plan": free_plan},
        )
        safe_notify(self.notifier, notifications.PLAN_DOWNGRADED, failure.account_id, {
            "failure_id": failure.id,
            "from_plan": from_plan,
            "to_plan": free_plan,
            "grace_until": failure.grace_until.isoformat(),
        })

    def _attempt(self, failure_id: int, account_id: str, trigger: str, now: Optional[datetime] = None) -> Tuple[PaymentFailure, str]:
        claimed, owner = self._claim(failure_id, account_id, now or self.clock.now(), require_due=trigger == "sweep")
        try:
            result, non_retryable = self._charge(claimed, owner)
        except Exception:
            self._release(failure_id, account_id, owner)
            raise
        failure, outcome, downgraded_from = self._apply(claimed, owner, result, non_retryable, now or self.clock.now())
        if outcome != STALE:
            self._announce_attempt(failure, outcome, trigger, downgraded_from)
        return failure, outcome

    def manual_retry(self, failure_id: int, account_id: Optional[str] = None) -> ManualRetryResult:
        """
        Charge immediately, regardless of next_retry_at.

        Raises:
            RecordNotFound: Unknown failure (or owned by another account)
            InvalidTransition: Failure is closed or another attempt is in flight
        """
        failure = self.get_failure(failure_id, account_id)
        failure, outcome = self._attempt(failure.id, failure.account_id, trigger="manual")

        if outcome == SUCCEEDED:
            message = "Payment successful. Your subscription is active again."
        elif outcome == DOWNGRADED:
            message = "Payment failed and the grace period has ended. Your plan was downgraded."
        elif outcome == STALE:
            message = f"Payment failure is already {failure.status.value}."
        elif failure.next_retry_at is not None:
            message = "Payment failed. Another attempt is scheduled."
        else:
            message = "Payment failed. Please update your payment method and retry."

        return ManualRetryResult(
            success=outcome == SUCCEEDED,
            message=message,
            next_retry=failure.next_retry_at,
            failure=failure,
        )

    # ------------------------------------------------------------------
    # Sweep
    # ------------------------------------------------------------------

    def _expire(self, failure_id: int, account_id: str, now: datetime) -> Optional[PaymentFailure]:
        with self.store.account_lock(account_id):
            current = self.get_failure(failure_id)
            if not self.scheduler.grace_passed(current, now) or self.scheduler.is_claim_live(current, now):
                return None
            downgraded, from_plan = self._downgrade_locked(current, now)
        self._announce_downgrade(downgraded, from_plan)
        return downgraded

    def _send_grace_warning(self, failure_id: int, account_id: str, now: datetime) -> bool:
        with self.store.account_lock(account_id):
            current = self.get_failure(failure_id)
            if not self.scheduler.grace_warning_due(current, now):
                return False
            current = self.store.save_failure(self.scheduler.mark_warning_sent(current, now))
        remaining = current.grace_until - now
        log_event("info", "payment.grace_warning", account_id=account_id, failure_id=failure_id, event_type=notifications.GRACE_WARNING)
        safe_notify(self.notifier, notifications.GRACE_WARNING, account_id, {
            "failure_id": failure_id,
            "plan": current.plan,
            "amount": str(current.amount),
            "grace_until": current.grace_until.isoformat(),
            "days_remaining": max(0, remaining.days),
        })
        return True

    def _sweep_one(self, failure: PaymentFailure, now: datetime, report: SweepReport) -> None:
        if not failure.status.is_active or self.scheduler.is_claim_live(failure, now):
            report.skipped += 1
            return

        if self.scheduler.retry_due(failure, now):
            try:
                updated, outcome = self._attempt(failure.id, failure.account_id, trigger="sweep", now=now)
            except InvalidTransition:
                # Claimed, rescheduled or closed by a concurrent attempt since listing
                report.skipped += 1
                return
            if outcome == STALE:
                report.skipped += 1
                return
            report.processed += 1
            if outcome == SUCCEEDED:
                report.succeeded += 1
            else:
                report.failed += 1
                if outcome == EXHAUSTED:
                    report.exhausted += 1
                elif outcome == DOWNGRADED:
                    report.downgraded += 1
        elif self.scheduler.grace_passed(failure, now):
            if self._expire(failure.id, failure.account_id, now) is not None:
                report.downgraded += 1
            else:
                report.skipped += 1

        if self._send_grace_warning(failure.id, failure.account_id, now):
            report.warnings_sent += 1

    def process_due_retries(self, now: Optional[datetime] = None) -> SweepReport:
        """
        Sweep entry point: retry due failures, expire passed grace periods and
        send grace warnings. Safe to run concurrently with itself and with
        manual retries.
        """
        now = now or self.clock.now()
        report = SweepReport(started_at=now)
        due = self.store.list_due_failures(now, self.policy.grace_warning, self.sweep_batch_size)
        report.due = len(due)

        for failure in due:
            try:
                self._sweep_one(failure, now, report)
            except Exception as e:
                logger.error(
                    "sweep.failure_error",
                    exc_info=True,
                    extra={"account_id": failure.account_id, "failure_id": failure.id, "error_code": type(e).__name__},
                )
                report.errors.append({"failure_id": failure.id, "account_id": failure.account_id, "error": type(e).__name__})

        finished_at = self.clock.now()
        status = "completed" if not report.errors else "completed_with_errors"
        try:
            self.store.record_job_run(SWEEP_JOB_NAME, now, finished_at, status, report.model_dump(mode="json"))
        except Exception:
            logger.error("sweep.job_run_record_failed", exc_info=True)

        retry_sweep_last_run_timestamp.set(finished_at.timestamp())
        retry_sweep_last_due.set(report.due)
        log_event(
            "info",
            "sweep.completed",
            event_type="sweep.completed",
            extra={
                "due": report.due,
                "processed": report.processed,
                "succeeded": report.succeeded,
                "downgraded": report.downgraded,
                "warnings_sent": report.warnings_sent,
                "errors": len(report.errors),
            },
        )
        return report
