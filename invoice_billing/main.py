import logging
import os

from dotenv import load_dotenv

# Load .env before settings are read (tests configure the environment themselves)
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv()

from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException

from invoice_billing.api import admin_billing, billing, credits, health, metrics
from invoice_billing.core.config import settings, validate_config
from invoice_billing.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    unhandled_exception_handler,
)
from invoice_billing.core.logging import configure_logging
from invoice_billing.core.middleware.metrics import MetricsMiddleware
from invoice_billing.core.middleware.request_id import RequestIdMiddleware
from invoice_billing.features.billing.service import close_notifier, get_orchestrator
from invoice_billing.workers.retry_sweep import SweepThread

configure_logging(settings.ENV)
validate_config(strict=settings.CONFIG_STRICT)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("invoice_billing")
    logger.info("Starting billing service...")
    sweeper = None
    if settings.BILLING_SWEEP_ENABLED:
        sweeper = SweepThread(get_orchestrator(), interval=settings.BILLING_SWEEP_INTERVAL_SECONDS)
        sweeper.start()
    app.state.sweeper = sweeper
    try:
        yield
    finally:
        if sweeper is not None:
            sweeper.stop()
        close_notifier()
        logger.info("Stopping billing service...")


app = FastAPI(title="Invoice Billing Core", lifespan=lifespan)

# Middlewares
app.add_middleware(RequestIdMiddleware)
app.add_middleware(MetricsMiddleware)

app.add_exception_handler(AppError, app_error_handler)
app.add_exception_handler(HTTPException, http_error_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

app.include_router(billing.router, prefix="/api", tags=["billing"])
app.include_router(credits.router, prefix="/api", tags=["credits"])
app.include_router(admin_billing.router, tags=["admin-billing"])
app.include_router(health.router, tags=["health"])
app.include_router(metrics.router, tags=["metrics"])
