"""Shared FastAPI dependencies for the billing routers."""

import hmac
import logging
from typing import Optional

from fastapi import Depends, Header, HTTPException

from invoice_billing.core.config import settings
from invoice_billing.features.billing.orchestrator import BillingOrchestrator
from invoice_billing.features.billing.service import get_orchestrator

logger = logging.getLogger("invoice_billing.api")


def get_billing() -> BillingOrchestrator:
    return get_orchestrator()


def get_account_id(x_account_id: Optional[str] = Header(None)) -> str:
    """Account id supplied by the upstream auth layer."""
    account_id = (x_account_id or "").strip()
    if not account_id:
        raise HTTPException(status_code=401, detail="Missing X-Account-Id header")
    return account_id


def current_account(
    account_id: str = Depends(get_account_id),
    billing: BillingOrchestrator = Depends(get_billing),
) -> str:
    """Resolve the caller's account, opening it on the free plan on first sight."""
    billing.open_account(account_id)
    return account_id


def require_admin_key(x_admin_key: Optional[str] = Header(None)) -> str:
    admin_key = settings.ADMIN_KEY
    if not admin_key or not x_admin_key or not hmac.compare_digest(x_admin_key, admin_key):
        logger.warning("admin.auth_rejected", extra={"error_code": "forbidden"})
        raise HTTPException(status_code=403, detail="Invalid or missing X-Admin-Key header")
    return x_admin_key
