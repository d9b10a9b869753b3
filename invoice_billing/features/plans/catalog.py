"""
invoice_billing/features/plans/catalog.py

Plan catalog: static mapping from plan id to entitlements.

Handles:
- Default plan configuration (free, solo, pro, business, enterprise)
- Plan lookup and the free-tier fallback used for downgrades
- Grace period length per plan
"""

from datetime import timedelta
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

from invoice_billing.core.errors import UnknownPlan
from invoice_billing.models.plan import PlanEntitlement


# Default plan configurations
DEFAULT_PLANS = {
    "free": {
        "name": "Free",
        "is_default": True,
        "monthly_price": "0",
        "email_credits_monthly": 20,
        "sms_credits_monthly": 0,
        "invoice_limit": 30,
    },
    "solo": {
        "name": "Solo",
        "monthly_price": "149",
        "email_credits_monthly": 50,
        "sms_credits_monthly": 10,
        "invoice_limit": None,  # unlimited
        "custom_branding": True,
    },
    "pro": {
        "name": "Pro",
        "monthly_price": "299",
        "email_credits_monthly": 100,
        "sms_credits_monthly": 25,
        "invoice_limit": None,
        "custom_branding": True,
        "auto_reminders": True,
        "advanced_reports": True,
        "priority_support": True,
    },
    "business": {
        "name": "Business",
        "monthly_price": "599",
        "email_credits_monthly": 200,
        "sms_credits_monthly": 50,
        "invoice_limit": None,
        "custom_branding": True,
        "auto_reminders": True,
        "advanced_reports": True,
        "multi_user_seats": 10,
        "priority_support": True,
    },
    "enterprise": {
        "name": "Enterprise",
        "monthly_price": "999",
        "email_credits_monthly": 999999,
        "sms_credits_monthly": 999999,
        "invoice_limit": None,
        "custom_branding": True,
        "auto_reminders": True,
        "advanced_reports": True,
        "multi_user_seats": 50,
        "priority_support": True,
        "grace_period_days": 14,
    },
}


def build_entitlements(
    config: Dict[str, dict],
    default_grace_days: int = 7,
) -> Dict[str, PlanEntitlement]:
    entitlements = {}
    for plan_id, values in config.items():
        data = dict(values)
        data.setdefault("grace_period_days", default_grace_days)
        data["monthly_price"] = Decimal(str(data["monthly_price"]))
        entitlements[plan_id] = PlanEntitlement(plan_id=plan_id, **data)
    return entitlements


class PlanCatalog:
    """Read-only plan reference data."""

    def __init__(
        self,
        plans: Optional[Iterable[PlanEntitlement]] = None,
        free_plan_id: Optional[str] = None,
    ):
        entries = list(plans) if plans is not None else list(build_entitlements(DEFAULT_PLANS).values())
        if not entries:
            raise ValueError("PlanCatalog requires at least one plan")
        self._plans: Dict[str, PlanEntitlement] = {p.plan_id: p for p in entries}

        if free_plan_id is None:
            defaults = [p.plan_id for p in entries if p.is_default]
            free_plan_id = defaults[0] if defaults else entries[0].plan_id
        if free_plan_id not in self._plans:
            raise ValueError(f"Free plan {free_plan_id} is not in the catalog")
        self._free_plan_id = free_plan_id

    @classmethod
    def from_settings(cls, settings) -> "PlanCatalog":
        plans = build_entitlements(DEFAULT_PLANS, default_grace_days=settings.BILLING_GRACE_PERIOD_DAYS)
        return cls(plans.values(), free_plan_id=settings.BILLING_FREE_PLAN_ID)

    def get(self, plan_id: str) -> PlanEntitlement:
        try:
            return self._plans[plan_id]
        except KeyError:
            raise UnknownPlan(plan_id) from None

    def exists(self, plan_id: str) -> bool:
        return plan_id in self._plans

    def free_tier(self) -> PlanEntitlement:
        return self._plans[self._free_plan_id]

    def grace_period(self, plan_id: str) -> timedelta:
        return timedelta(days=self.get(plan_id).grace_period_days)

    def list_plans(self) -> List[PlanEntitlement]:
        """All plans, cheapest first."""
        return sorted(self._plans.values(), key=lambda p: (p.monthly_price, p.plan_id))
