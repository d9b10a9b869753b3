"""
invoice_billing/models/credit.py

Credit balance and usage projections.
"""

from datetime import datetime
from enum import Enum
from typing import Dict, Optional
from pydantic import BaseModel, ConfigDict


class CreditKind(str, Enum):
    EMAIL = "email"
    SMS = "sms"
    INVOICE = "invoice"

    @classmethod
    def parse(cls, value: str) -> "CreditKind":
        normalized = (value or "").strip().lower()
        # REST clients send the plural form for invoices
        if normalized == "invoices":
            normalized = "invoice"
        return cls(normalized)

    @property
    def usage_key(self) -> str:
        """Key used in usage payloads; invoices are reported in the plural."""
        return "invoices" if self is CreditKind.INVOICE else self.value


class CreditBalance(BaseModel):
    """
    Usage counters for one account in one monthly cycle.

    cycle_end is always one calendar month after cycle_start, landing on
    anchor_day (clamped to the last day of shorter months). Counters are not
    capped at write time; the ledger refuses consumption instead.
    """
    model_config = ConfigDict(frozen=True)

    account_id: str
    email_used: int = 0
    sms_used: int = 0
    invoices_used: int = 0
    cycle_start: datetime
    cycle_end: datetime
    anchor_day: int

    def used(self, kind: CreditKind) -> int:
        if kind is CreditKind.EMAIL:
            return self.email_used
        if kind is CreditKind.SMS:
            return self.sms_used
        return self.invoices_used

    def with_used(self, kind: CreditKind, value: int) -> "CreditBalance":
        field = {
            CreditKind.EMAIL: "email_used",
            CreditKind.SMS: "sms_used",
            CreditKind.INVOICE: "invoices_used",
        }[kind]
        return self.model_copy(update={field: value})


class ConsumeResult(BaseModel):
    kind: CreditKind
    consumed: int
    used: int
    limit: Optional[int]
    remaining: Optional[int]  # None when unlimited


class KindUsage(BaseModel):
    used: int
    limit: Optional[int]
    remaining: Optional[int]
    unlimited: bool = False
    # Metered kinds only: this cycle's allotment and the plan's monthly figure
    total: Optional[int] = None
    monthly_limit: Optional[int] = None


class CreditUsage(BaseModel):
    """Ledger and plan projection served to the credits screen."""
    account_id: str
    plan: str
    credits: Dict[str, KindUsage]
    cycle_start: datetime
    reset_date: datetime
    days_until_reset: int
    features: Dict[str, object]
    monthly_price: float
