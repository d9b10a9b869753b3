"""
Billing service wiring.

Builds the process-wide BillingOrchestrator from settings:
- SQL store when DATABASE_URL is configured, in-memory store otherwise
- Stripe processor when STRIPE_SECRET_KEY is configured
- Webhook notifier when NOTIFY_WEBHOOK_URL is configured, logging otherwise
"""
import logging
import threading
from typing import Optional

from invoice_billing.core.clock import ClockSource
from invoice_billing.core.config import settings
from invoice_billing.core.database import create_all_tables, get_database_url
from invoice_billing.features.billing.notifications import Notifier, build_notifier
from invoice_billing.features.billing.orchestrator import BillingOrchestrator
from invoice_billing.features.billing.processor import PaymentProcessor, UnconfiguredProcessor
from invoice_billing.features.billing.retry_scheduler import RetryPolicy
from invoice_billing.features.billing.sql_store import SqlBillingStore
from invoice_billing.features.billing.store import BillingStore, InMemoryBillingStore
from invoice_billing.features.billing.stripe_processor import StripeProcessor
from invoice_billing.features.plans.catalog import PlanCatalog

logger = logging.getLogger("invoice_billing")

_orchestrator: Optional[BillingOrchestrator] = None
_orchestrator_lock = threading.Lock()


def billing_enabled() -> bool:
    """Check if a real payment processor is configured."""
    return bool(settings.STRIPE_SECRET_KEY)


def get_processor() -> PaymentProcessor:
    if not billing_enabled():
        logger.warning("STRIPE_SECRET_KEY not set; payment retries will fail until configured")
        return UnconfiguredProcessor()
    return StripeProcessor()


def get_store() -> BillingStore:
    if get_database_url():
        create_all_tables()
        return SqlBillingStore()
    logger.info("DATABASE_URL not set; using in-memory billing store")
    return InMemoryBillingStore()


def build_orchestrator(
    store: Optional[BillingStore] = None,
    processor: Optional[PaymentProcessor] = None,
    notifier: Optional[Notifier] = None,
    clock: Optional[ClockSource] = None,
) -> BillingOrchestrator:
    return BillingOrchestrator(
        store=store or get_store(),
        catalog=PlanCatalog.from_settings(settings),
        processor=processor or get_processor(),
        notifier=notifier or build_notifier(settings),
        clock=clock,
        policy=RetryPolicy.from_settings(settings),
        sweep_batch_size=settings.BILLING_SWEEP_BATCH_SIZE,
    )


def get_orchestrator() -> BillingOrchestrator:
    """Process-wide orchestrator, built on first use."""
    global _orchestrator
    with _orchestrator_lock:
        if _orchestrator is None:
            _orchestrator = build_orchestrator()
        return _orchestrator


def set_orchestrator(orchestrator: Optional[BillingOrchestrator]) -> None:
    """Replace (or clear) the process-wide orchestrator; used by tests."""
    global _orchestrator
    with _orchestrator_lock:
        _orchestrator = orchestrator


def close_notifier(timeout: float = 10.0) -> None:
    """Flush queued notifications on shutdown."""
    with _orchestrator_lock:
        orchestrator = _orchestrator
    if orchestrator is None:
        return
    close = getattr(orchestrator.notifier, "close", None)
    if close is not None:
        close(timeout=timeout)
