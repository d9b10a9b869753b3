"""
Usage credit API routes.

- GET  /api/credits/usage: Per-kind usage against the current plan
- GET  /api/credits/check: Would a send of `count` credits be allowed
- POST /api/credits/use: Consume credits (402 when insufficient)
- GET  /api/credits/plans: Plan catalog, cheapest first
"""
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from invoice_billing.api.deps import current_account, get_billing
from invoice_billing.features.billing.orchestrator import BillingOrchestrator
from invoice_billing.models.credit import CreditUsage


router = APIRouter(prefix="/credits", tags=["credits"])


class UseCreditsRequest(BaseModel):
    type: str
    count: int = Field(default=1, ge=1)


class UseCreditsResponse(BaseModel):
    success: bool
    credits_used: int
    remaining: Optional[int]  # None when unlimited


class CheckCreditsResponse(BaseModel):
    available: Optional[int]
    required: int
    sufficient: bool
    unlimited: bool
    plan: str


class PlanResponse(BaseModel):
    plan_name: str
    name: str
    monthly_price: float
    email_credits_monthly: int
    sms_credits_monthly: int
    invoices_monthly: Optional[int]  # None when unlimited
    custom_branding: bool
    auto_reminders: bool
    advanced_reports: bool
    multi_user: int
    priority_support: bool
    grace_period_days: int


@router.get("/usage", response_model=CreditUsage)
def get_usage(
    account_id: str = Depends(current_account),
    billing: BillingOrchestrator = Depends(get_billing),
):
    return billing.credit_usage(account_id)


@router.get("/check", response_model=CheckCreditsResponse)
def check_credits(
    type: str = Query(..., description="email, sms or invoice"),
    count: int = Query(1, ge=1),
    account_id: str = Depends(current_account),
    billing: BillingOrchestrator = Depends(get_billing),
):
    sufficient, available = billing.check_credit(account_id, type, count)
    return CheckCreditsResponse(
        available=available,
        required=count,
        sufficient=sufficient,
        unlimited=available is None,
        plan=billing.get_account(account_id).plan,
    )


@router.post("/use", response_model=UseCreditsResponse)
def use_credits(
    request: UseCreditsRequest,
    account_id: str = Depends(current_account),
    billing: BillingOrchestrator = Depends(get_billing),
):
    """
    Consume credits for a send.

    Errors:
        402: Insufficient credits (payload carries available/required/upgrade_required)
        400: Unknown credit type
    """
    result = billing.request_credit(account_id, request.type, request.count)
    return UseCreditsResponse(success=True, credits_used=result.consumed, remaining=result.remaining)


@router.get("/plans", response_model=List[PlanResponse])
def list_plans(billing: BillingOrchestrator = Depends(get_billing)):
    return [
        PlanResponse(
            plan_name=plan.plan_id,
            name=plan.name,
            monthly_price=float(plan.monthly_price),
            email_credits_monthly=plan.email_credits_monthly,
            sms_credits_monthly=plan.sms_credits_monthly,
            invoices_monthly=plan.invoice_limit,
            grace_period_days=plan.grace_period_days,
            **plan.features(),
        )
        for plan in billing.catalog.list_plans()
    ]
