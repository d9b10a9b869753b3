"""
Stripe payment processor.

Re-charges the customer's default payment method off-session with a
PaymentIntent. Declines map to ChargeResult failures; hard declines and
missing payment methods raise NonRetryableDecline; network and 5xx errors
raise ProcessorUnavailable.
"""
import logging
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

import stripe

from invoice_billing.core.config import settings
from invoice_billing.core.errors import NonRetryableDecline, ProcessorUnavailable
from invoice_billing.features.billing.processor import ChargeResult

logger = logging.getLogger("invoice_billing.stripe")

# Issuer decline codes where retrying the same card cannot succeed
NON_RETRYABLE_DECLINE_CODES = frozenset({
    "lost_card",
    "stolen_card",
    "pickup_card",
    "fraudulent",
    "restricted_card",
    "revocation_of_authorization",
    "revocation_of_all_authorizations",
    "stop_payment_order",
    "invalid_account",
    "card_not_supported",
})


def to_minor_units(amount: Decimal) -> int:
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class StripeProcessor:
    """Stripe implementation of PaymentProcessor."""

    def __init__(self, secret_key: Optional[str] = None, currency: Optional[str] = None):
        self.secret_key = secret_key or settings.STRIPE_SECRET_KEY
        self.currency = (currency or settings.STRIPE_CURRENCY).lower()

        if not self.secret_key:
            raise ValueError("STRIPE_SECRET_KEY not configured")

        stripe.api_key = self.secret_key

    def _find_customer(self, account_id: str):
        result = stripe.Customer.search(query=f"metadata['account_id']:'{account_id}'", limit=1)
        return result.data[0] if result.data else None

    def charge(self, account_id: str, amount: Decimal, idempotency_key: Optional[str] = None) -> ChargeResult:
        try:
            customer = self._find_customer(account_id)
            if customer is None:
                raise NonRetryableDecline(f"No billing customer for account {account_id}")

            payment_method = (customer.get("invoice_settings") or {}).get("default_payment_method")
            if not payment_method:
                raise NonRetryableDecline("No saved payment method")

            params = {
                "amount": to_minor_units(amount),
                "currency": self.currency,
                "customer": customer.id,
                "payment_method": payment_method,
                "off_session": True,
                "confirm": True,
                "metadata": {"account_id": account_id},
            }
            if idempotency_key:
                params["idempotency_key"] = idempotency_key
            intent = stripe.PaymentIntent.create(**params)
        except stripe.CardError as e:
            code = getattr(e, "code", None)
            decline_code = getattr(getattr(e, "error", None), "decline_code", None)
            if decline_code in NON_RETRYABLE_DECLINE_CODES:
                raise NonRetryableDecline(f"Card declined: {decline_code}") from e
            return ChargeResult(success=False, reason=decline_code or code or "card_declined")
        except (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError) as e:
            logger.warning("stripe.unavailable", extra={"account_id": account_id, "error_code": type(e).__name__})
            raise ProcessorUnavailable(f"Stripe unavailable: {type(e).__name__}") from e
        except stripe.StripeError as e:
            logger.error("stripe.error", extra={"account_id": account_id, "error_code": type(e).__name__})
            raise ProcessorUnavailable(f"Stripe charge failed: {type(e).__name__}") from e

        if intent.status == "succeeded":
            return ChargeResult(success=True, reference=intent.id)
        # requires_action / requires_payment_method: customer must intervene
        return ChargeResult(success=False, reason=intent.status, reference=intent.id)
