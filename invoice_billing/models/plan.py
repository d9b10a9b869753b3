"""
invoice_billing/models/plan.py

Plan entitlement model.

Entitlements define what a subscription plan allows each month: email and SMS
credits, invoice count, feature flags and the price charged for it.
"""

from decimal import Decimal
from typing import Optional
from pydantic import BaseModel, ConfigDict


class PlanEntitlement(BaseModel):
    """
    PlanEntitlement is shared, read-only reference data keyed by plan_id.

    Limits:
    - email_credits_monthly / sms_credits_monthly: always finite
    - invoice_limit: None means unlimited invoices

    grace_period_days is how long a failed payment may stay unresolved
    before the account is downgraded to the default (free) plan.
    """
    model_config = ConfigDict(frozen=True)

    plan_id: str
    name: str
    email_credits_monthly: int
    sms_credits_monthly: int
    invoice_limit: Optional[int] = None
    monthly_price: Decimal
    custom_branding: bool = False
    auto_reminders: bool = False
    advanced_reports: bool = False
    multi_user_seats: int = 1
    priority_support: bool = False
    grace_period_days: int = 7
    is_default: bool = False

    def features(self) -> dict:
        return {
            "custom_branding": self.custom_branding,
            "auto_reminders": self.auto_reminders,
            "advanced_reports": self.advanced_reports,
            "multi_user": self.multi_user_seats,
            "priority_support": self.priority_support,
        }
