"""
invoice_billing/models/account.py

Account model: the billed tenant, its active plan and its plan history.
"""

from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict


class Account(BaseModel):
    """
    Account links a tenant to exactly one active plan.

    plan_assigned_at moves whenever the plan changes (upgrade or forced
    downgrade after an unresolved payment failure).

    payment_failure_count counts failed charges since the last successful
    one; it is cleared when a retry succeeds.
    """
    model_config = ConfigDict(frozen=True)

    account_id: str
    plan: str
    plan_assigned_at: datetime
    created_at: datetime
    payment_failure_count: int = 0
    last_payment_failure_at: Optional[datetime] = None


class PlanPeriodStatus(str, Enum):
    ACTIVE = "active"
    CHANGED = "changed"
    PAYMENT_FAILED = "payment_failed"


class PlanPeriod(BaseModel):
    """One row of an account's plan history; at most one is active."""
    model_config = ConfigDict(frozen=True)

    id: Optional[int] = None
    account_id: str
    plan: str
    status: PlanPeriodStatus = PlanPeriodStatus.ACTIVE
    started_at: datetime
    ended_at: Optional[datetime] = None
