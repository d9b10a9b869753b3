"""
invoice_billing/models/payment_failure.py

Payment failure record: one per failed subscription charge chain.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import List, Optional
from pydantic import BaseModel, ConfigDict


class FailureStatus(str, Enum):
    PENDING = "pending"
    RETRYING = "retrying"
    SUCCEEDED = "succeeded"
    GRACE_EXPIRED = "grace_expired"
    DOWNGRADED = "downgraded"
    MANUALLY_RESOLVED = "manually_resolved"

    @property
    def is_active(self) -> bool:
        return self in ACTIVE_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


ACTIVE_STATUSES = frozenset({FailureStatus.PENDING, FailureStatus.RETRYING})
TERMINAL_STATUSES = frozenset({
    FailureStatus.SUCCEEDED,
    FailureStatus.DOWNGRADED,
    FailureStatus.MANUALLY_RESOLVED,
})


class PaymentFailure(BaseModel):
    """
    Immutable snapshot of a payment failure.

    Transitions produce a new snapshot via model_copy; the store persists
    whichever snapshot the caller saves under the account lock.

    Invariants:
    - retry_count <= max_retries, and next_retry_at is None once equal
    - grace_until is fixed at creation
    - claimed_by is set only while a charge attempt is in flight
    """
    model_config = ConfigDict(frozen=True)

    id: Optional[int] = None
    account_id: str
    plan: str
    amount: Decimal
    failure_reason: Optional[str] = None
    retry_count: int = 0
    max_retries: int
    next_retry_at: Optional[datetime] = None
    last_retry_at: Optional[datetime] = None
    grace_until: datetime
    grace_warning_sent_at: Optional[datetime] = None
    status: FailureStatus = FailureStatus.PENDING
    claimed_by: Optional[str] = None
    claimed_at: Optional[datetime] = None
    resolution_note: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    resolved_at: Optional[datetime] = None

    @property
    def retries_exhausted(self) -> bool:
        return self.retry_count >= self.max_retries


class ManualRetryResult(BaseModel):
    success: bool
    message: str
    next_retry: Optional[datetime] = None
    failure: PaymentFailure


class SweepReport(BaseModel):
    started_at: datetime
    due: int = 0
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    exhausted: int = 0
    downgraded: int = 0
    warnings_sent: int = 0
    skipped: int = 0
    errors: List[dict] = []


class LatestFailure(BaseModel):
    id: int
    amount: float
    plan: str
    failure_reason: Optional[str] = None
    retry_count: int
    max_retries: int


class RetryStatus(BaseModel):
    """Projection served to the payment-issue banner."""
    has_failed_payments: bool
    failed_count: int
    grace_until: Optional[datetime] = None
    next_retry_at: Optional[datetime] = None
    latest_failure: Optional[LatestFailure] = None
