"""
Payment retry state machine.

Pure transitions over PaymentFailure snapshots: no I/O, no clock reads. The
orchestrator owns locking, persistence and the processor call; every method
here takes `now` explicitly and returns a new snapshot.

    pending --attempt--> retrying --success--> succeeded
                           |  ^
                           |  +--failure (retry_count < max)
                           +--grace passed--> grace_expired --> downgraded
    pending/retrying --operator--> manually_resolved

Backoff: the first retry is due base_interval after the failure; after the
n-th failed attempt the next one is due base_interval * 2**n after it, never
later than grace_until.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional

from invoice_billing.core.errors import InvalidTransition
from invoice_billing.models.payment_failure import FailureStatus, PaymentFailure


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 3
    base_interval: timedelta = timedelta(hours=1)
    claim_timeout: timedelta = timedelta(minutes=15)
    grace_warning: timedelta = timedelta(days=2)

    @classmethod
    def from_settings(cls, settings) -> "RetryPolicy":
        return cls(
            max_retries=settings.BILLING_MAX_RETRIES,
            base_interval=timedelta(minutes=settings.BILLING_RETRY_BASE_MINUTES),
            claim_timeout=timedelta(seconds=settings.BILLING_CLAIM_TIMEOUT_SECONDS),
            grace_warning=timedelta(days=settings.BILLING_GRACE_WARNING_DAYS),
        )


def compute_backoff(base_interval: timedelta, retry_count: int) -> timedelta:
    """Exponential backoff: base, 2x base, 4x base, ..."""
    return base_interval * (2 ** retry_count)


class RetryScheduler:
    def __init__(self, policy: Optional[RetryPolicy] = None):
        self.policy = policy or RetryPolicy()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def next_retry_at(self, failure: PaymentFailure, attempted_at: datetime) -> Optional[datetime]:
        """When the next automatic attempt is due given failure.retry_count."""
        if failure.retry_count >= failure.max_retries:
            return None
        candidate = attempted_at + compute_backoff(self.policy.base_interval, failure.retry_count)
        return min(candidate, failure.grace_until)

    def is_claim_live(self, failure: PaymentFailure, now: datetime) -> bool:
        if failure.claimed_by is None or failure.claimed_at is None:
            return False
        return failure.claimed_at + self.policy.claim_timeout > now

    def owns_claim(self, failure: PaymentFailure, owner: str) -> bool:
        return failure.claimed_by == owner

    def retry_due(self, failure: PaymentFailure, now: datetime) -> bool:
        return failure.status.is_active and failure.next_retry_at is not None and failure.next_retry_at <= now

    def grace_passed(self, failure: PaymentFailure, now: datetime) -> bool:
        return failure.status.is_active and now >= failure.grace_until

    def grace_warning_due(self, failure: PaymentFailure, now: datetime) -> bool:
        if not failure.status.is_active or failure.grace_warning_sent_at is not None:
            return False
        return failure.grace_until - self.policy.grace_warning <= now < failure.grace_until

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def open(
        self,
        account_id: str,
        plan: str,
        amount: Decimal,
        reason: Optional[str],
        now: datetime,
        grace_period: timedelta,
    ) -> PaymentFailure:
        grace_until = now + grace_period
        return PaymentFailure(
            account_id=account_id,
            plan=plan,
            amount=amount,
            failure_reason=reason,
            retry_count=0,
            max_retries=self.policy.max_retries,
            next_retry_at=min(now + self.policy.base_interval, grace_until),
            grace_until=grace_until,
            status=FailureStatus.PENDING,
            created_at=now,
            updated_at=now,
        )

    def claim(self, failure: PaymentFailure, owner: str, now: datetime) -> PaymentFailure:
        """Mark a charge attempt as in flight. Rejects terminal records and live claims."""
        if not failure.status.is_active:
            raise InvalidTransition(f"Payment failure {failure.id} is {failure.status.value}")
        if self.is_claim_live(failure, now):
            raise InvalidTransition(f"Payment failure {failure.id} has a retry in progress")
        return failure.model_copy(update={"claimed_by": owner, "claimed_at": now, "updated_at": now})

    def release_claim(self, failure: PaymentFailure, owner: str, now: datetime) -> PaymentFailure:
        if not self.owns_claim(failure, owner):
            return failure
        return failure.model_copy(update={"claimed_by": None, "claimed_at": None, "updated_at": now})

    def _require_attempt(self, failure: PaymentFailure, owner: str) -> None:
        if not failure.status.is_active:
            raise InvalidTransition(f"Payment failure {failure.id} is {failure.status.value}")
        if not self.owns_claim(failure, owner):
            raise InvalidTransition(f"Payment failure {failure.id} is not claimed by {owner}")

    def apply_success(self, failure: PaymentFailure, owner: str, now: datetime) -> PaymentFailure:
        self._require_attempt(failure, owner)
        return failure.model_copy(update={
            "status": FailureStatus.SUCCEEDED,
            "next_retry_at": None,
            "last_retry_at": now,
            "claimed_by": None,
            "claimed_at": None,
            "updated_at": now,
            "resolved_at": now,
        })

    def apply_failure(
        self,
        failure: PaymentFailure,
        owner: str,
        now: datetime,
        reason: Optional[str] = None,
        non_retryable: bool = False,
    ) -> PaymentFailure:
        self._require_attempt(failure, owner)
        if non_retryable:
            retry_count = failure.max_retries
        else:
            retry_count = min(failure.retry_count + 1, failure.max_retries)
        updated = failure.model_copy(update={
            "status": FailureStatus.RETRYING,
            "retry_count": retry_count,
            "last_retry_at": now,
            "failure_reason": reason or failure.failure_reason,
            "claimed_by": None,
            "claimed_at": None,
            "updated_at": now,
        })
        return updated.model_copy(update={"next_retry_at": self.next_retry_at(updated, now)})

    def expire_grace(self, failure: PaymentFailure, now: datetime) -> PaymentFailure:
        if not failure.status.is_active:
            raise InvalidTransition(f"Payment failure {failure.id} is {failure.status.value}")
        if now < failure.grace_until:
            raise InvalidTransition(f"Grace period for payment failure {failure.id} has not ended")
        return failure.model_copy(update={
            "status": FailureStatus.GRACE_EXPIRED,
            "next_retry_at": None,
            "claimed_by": None,
            "claimed_at": None,
            "updated_at": now,
        })

    def mark_downgraded(self, failure: PaymentFailure, now: datetime) -> PaymentFailure:
        if failure.status is not FailureStatus.GRACE_EXPIRED:
            raise InvalidTransition(f"Payment failure {failure.id} is {failure.status.value}, not grace_expired")
        return failure.model_copy(update={
            "status": FailureStatus.DOWNGRADED,
            "updated_at": now,
            "resolved_at": now,
        })

    def resolve(self, failure: PaymentFailure, now: datetime, note: Optional[str] = None) -> PaymentFailure:
        if failure.status.is_terminal:
            raise InvalidTransition(f"Payment failure {failure.id} is already {failure.status.value}")
        return failure.model_copy(update={
            "status": FailureStatus.MANUALLY_RESOLVED,
            "next_retry_at": None,
            "claimed_by": None,
            "claimed_at": None,
            "resolution_note": note,
            "updated_at": now,
            "resolved_at": now,
        })

    def mark_warning_sent(self, failure: PaymentFailure, now: datetime) -> PaymentFailure:
        return failure.model_copy(update={"grace_warning_sent_at": now, "updated_at": now})
