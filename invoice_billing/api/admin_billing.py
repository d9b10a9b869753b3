"""
Admin-only billing operations router.
Requires X-Admin-Key header for all endpoints.
Handles on-demand retry sweeps and operator resolution of payment failures.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from invoice_billing.api.billing import PaymentFailureResponse, failure_to_response
from invoice_billing.api.deps import get_billing, require_admin_key
from invoice_billing.features.billing.orchestrator import BillingOrchestrator
from invoice_billing.models.payment_failure import SweepReport

logger = logging.getLogger("invoice_billing.admin_billing")

router = APIRouter(prefix="/api/admin/billing", dependencies=[Depends(require_admin_key)])


class ResolveFailureRequest(BaseModel):
    note: Optional[str] = Field(default=None, max_length=1000)


@router.post("/process-retries", response_model=SweepReport)
def process_retries(billing: BillingOrchestrator = Depends(get_billing)):
    """Run one retry sweep now (same work as the background worker)."""
    report = billing.process_due_retries()
    logger.info("admin.sweep_triggered", extra={"due": report.due, "processed": report.processed})
    return report


@router.post("/failures/{failure_id}/resolve", response_model=PaymentFailureResponse)
def resolve_failure(
    failure_id: int,
    request: Optional[ResolveFailureRequest] = None,
    billing: BillingOrchestrator = Depends(get_billing),
):
    failure = billing.resolve_failure(failure_id, note=request.note if request else None)
    return failure_to_response(failure)


@router.get("/failures/{failure_id}", response_model=PaymentFailureResponse)
def get_failure(failure_id: int, billing: BillingOrchestrator = Depends(get_billing)):
    return failure_to_response(billing.get_failure(failure_id))
