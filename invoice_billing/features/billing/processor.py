"""
Payment processor protocol.

Defines the interface the retry engine uses to re-attempt a failed
subscription charge. This allows swapping processors without changing the
retry state machine.
"""
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Protocol

from invoice_billing.core.errors import ProcessorUnavailable


@dataclass
class ChargeResult:
    """Outcome of a single charge attempt."""
    success: bool
    reason: Optional[str] = None
    reference: Optional[str] = None  # processor-side charge id


class PaymentProcessor(Protocol):
    """
    Protocol for payment processors.

    Implementations return ChargeResult for ordinary approvals and declines,
    and may raise:
        NonRetryableDecline: The decline is final; automatic retries stop
        ProcessorUnavailable: The processor could not be reached
    """

    def charge(self, account_id: str, amount: Decimal, idempotency_key: Optional[str] = None) -> ChargeResult:
        ...


class UnconfiguredProcessor:
    """Stand-in when no processor credentials are set; every attempt counts as a failure."""

    def charge(self, account_id: str, amount: Decimal, idempotency_key: Optional[str] = None) -> ChargeResult:
        raise ProcessorUnavailable("Payment processor not configured")
