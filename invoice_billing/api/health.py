"""
Health endpoints.

Lightweight liveness and readiness checks that never expose secrets.
"""

import logging

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import inspect

from invoice_billing.core.database import check_connection, get_database_url, get_engine

logger = logging.getLogger("invoice_billing")

router = APIRouter(tags=["health"])

REQUIRED_TABLES = [
    "billing_accounts",
    "plan_history",
    "credit_balances",
    "payment_failures",
    "billing_job_runs",
]


@router.get("/healthz")
def healthz():
    """Liveness check (no deps)."""
    return {"status": "ok"}


@router.get("/readyz")
def readyz():
    """Readiness check: DB connectivity + required tables (in-memory mode is always ready)."""
    if not get_database_url():
        return {"status": "ok", "store": "memory"}

    if not check_connection():
        return JSONResponse(status_code=503, content={"status": "error", "detail": "database unreachable"})

    try:
        inspector = inspect(get_engine())
        missing = [t for t in REQUIRED_TABLES if not inspector.has_table(t)]
    except Exception as e:
        logger.error(f"[readyz] schema inspection failed: {e}")
        return JSONResponse(status_code=503, content={"status": "error", "detail": "database unreachable"})

    if missing:
        detail = f"missing tables: {', '.join(missing)}"
        logger.warning(f"[readyz] {detail}")
        return JSONResponse(status_code=503, content={"status": "error", "detail": detail})

    return {"status": "ok", "store": "sql"}
