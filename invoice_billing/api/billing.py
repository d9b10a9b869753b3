"""
Payment retry API routes.

- GET  /api/billing/retry-status: Banner projection of open payment failures
- POST /api/billing/manual-retry: Charge an open failure immediately
- POST /api/billing/record-failure: Open a failure after a declined charge
- GET  /api/billing/failures: Failure history, newest first
"""
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from invoice_billing.api.deps import current_account, get_billing
from invoice_billing.features.billing.orchestrator import BillingOrchestrator
from invoice_billing.models.account import PlanPeriod
from invoice_billing.models.payment_failure import PaymentFailure, RetryStatus


router = APIRouter(prefix="/billing", tags=["billing"])


class ManualRetryRequest(BaseModel):
    """Request to retry a failed payment now."""
    transaction_id: int


class ManualRetryResponse(BaseModel):
    success: bool
    message: str
    next_retry: Optional[datetime] = None


class RecordFailureRequest(BaseModel):
    """A subscription charge that just failed."""
    plan: str
    amount: Decimal = Field(..., gt=0)
    failure_reason: Optional[str] = Field(default=None, max_length=500)


class PaymentFailureResponse(BaseModel):
    id: int
    plan: str
    amount: float
    failure_reason: Optional[str]
    status: str
    retry_count: int
    max_retries: int
    next_retry_at: Optional[datetime]
    last_retry_at: Optional[datetime]
    grace_until: datetime
    created_at: datetime
    resolved_at: Optional[datetime]


def failure_to_response(failure: PaymentFailure) -> PaymentFailureResponse:
    """Client-facing projection; claim bookkeeping stays internal."""
    return PaymentFailureResponse(
        id=failure.id,
        plan=failure.plan,
        amount=float(failure.amount),
        failure_reason=failure.failure_reason,
        status=failure.status.value,
        retry_count=failure.retry_count,
        max_retries=failure.max_retries,
        next_retry_at=failure.next_retry_at,
        last_retry_at=failure.last_retry_at,
        grace_until=failure.grace_until,
        created_at=failure.created_at,
        resolved_at=failure.resolved_at,
    )


@router.get("/retry-status", response_model=RetryStatus)
def get_retry_status(
    account_id: str = Depends(current_account),
    billing: BillingOrchestrator = Depends(get_billing),
):
    return billing.retry_status(account_id)


@router.post("/manual-retry", response_model=ManualRetryResponse)
def manual_retry(
    request: ManualRetryRequest,
    account_id: str = Depends(current_account),
    billing: BillingOrchestrator = Depends(get_billing),
):
    """
    Charge an open payment failure immediately.

    Errors:
        404: Unknown transaction (or another account's)
        409: Failure already closed, or a retry is already in progress
    """
    result = billing.manual_retry(request.transaction_id, account_id=account_id)
    return ManualRetryResponse(success=result.success, message=result.message, next_retry=result.next_retry)


@router.post("/record-failure", response_model=PaymentFailureResponse, status_code=201)
def record_failure(
    request: RecordFailureRequest,
    account_id: str = Depends(current_account),
    billing: BillingOrchestrator = Depends(get_billing),
):
    failure = billing.record_failure(account_id, request.plan, request.amount, request.failure_reason)
    return failure_to_response(failure)


@router.get("/failures", response_model=List[PaymentFailureResponse])
def list_failures(
    account_id: str = Depends(current_account),
    billing: BillingOrchestrator = Depends(get_billing),
):
    return [failure_to_response(f) for f in billing.list_failures(account_id)]


@router.get("/plan-history", response_model=List[PlanPeriod])
def plan_history(
    account_id: str = Depends(current_account),
    billing: BillingOrchestrator = Depends(get_billing),
):
    """Most recent plan periods, newest first."""
    return billing.plan_history(account_id)[:10]
