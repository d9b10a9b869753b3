"""Billing error taxonomy and FastAPI handlers."""

import logging
from typing import Optional
from uuid import uuid4

from fastapi import HTTPException
from fastapi.responses import JSONResponse
from starlette.requests import Request

from invoice_billing.core.logging import get_request_id


class AppError(Exception):
    code = "app_error"
    status_code = 500

    def __init__(self, message: str, *, code: Optional[str] = None, status_code: Optional[int] = None, request_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.request_id = request_id


class ValidationError(AppError, ValueError):
    code = "validation_error"
    status_code = 400


class UnknownPlan(ValidationError):
    code = "unknown_plan"

    def __init__(self, plan_id: str):
        super().__init__(f"Unknown plan: {plan_id}")
        self.plan_id = plan_id


class RecordNotFound(AppError, LookupError):
    code = "not_found"
    status_code = 404


class InvalidTransition(AppError):
    """Raised when a payment failure cannot move to the requested state."""
    code = "invalid_transition"
    status_code = 409


class FailureAlreadyOpen(AppError):
    """An account already has a pending or retrying payment failure."""
    code = "failure_already_open"
    status_code = 409

    def __init__(self, account_id: str, failure_id: int):
        super().__init__(
            f"Account {account_id} already has an open payment failure ({failure_id})"
        )
        self.account_id = account_id
        self.failure_id = failure_id


class InsufficientCredits(AppError):
    code = "insufficient_credits"
    status_code = 402

    def __init__(self, kind: str, available: int, required: int):
        super().__init__(
            f"Insufficient {kind} credits: {available} available, {required} required"
        )
        self.kind = kind
        self.available = available
        self.required = required


class ProcessorUnavailable(AppError):
    """The payment processor could not be reached; absorbed by the retry schedule."""
    code = "processor_unavailable"
    status_code = 503


class NonRetryableDecline(AppError):
    """The processor declined the charge and further automatic retries are pointless."""
    code = "non_retryable_decline"
    status_code = 402


def _extract_request_id(request: Request, fallback: Optional[str] = None) -> str:
    return (
        getattr(request.state, "request_id", None)
        or get_request_id()
        or fallback
        or str(uuid4())
    )


def _error_payload(code: str, message: str, request_id: str) -> dict:
    return {
        "error": {"code": code, "message": message, "request_id": request_id},
        "detail": message,
    }


async def app_error_handler(request: Request, exc: AppError):
    rid = exc.request_id or _extract_request_id(request)
    payload = _error_payload(exc.code, exc.message, rid)
    if isinstance(exc, InsufficientCredits):
        payload["available"] = exc.available
        payload["required"] = exc.required
        payload["upgrade_required"] = True
    logger = logging.getLogger("invoice_billing")
    log_level = logging.ERROR if exc.status_code >= 500 else logging.WARNING
    logger.log(
        log_level,
        "app.error",
        extra={"request_id": rid, "error_code": exc.code, "error_message": exc.message, "status": exc.status_code},
    )
    response = JSONResponse(status_code=exc.status_code, content=payload)
    response.headers["x-request-id"] = rid
    return response


async def http_error_handler(request: Request, exc: HTTPException):
    rid = _extract_request_id(request)
    code = "not_found" if exc.status_code == 404 else "http_error"
    message = exc.detail if exc.detail else "HTTP error"
    payload = _error_payload(code, message, rid)
    logger = logging.getLogger("invoice_billing")
    logger.warning("http.error", extra={"request_id": rid, "error_code": code, "status": exc.status_code})
    response = JSONResponse(status_code=exc.status_code, content=payload)
    response.headers["x-request-id"] = rid
    return response


async def unhandled_exception_handler(request: Request, exc: Exception):
    rid = _extract_request_id(request)
    logger = logging.getLogger("invoice_billing")
    logger.error("unhandled.exception", exc_info=True, extra={"request_id": rid, "error_code": "internal_error"})
    payload = _error_payload("internal_error", "Unexpected error", rid)
    response = JSONResponse(status_code=500, content=payload)
    response.headers["x-request-id"] = rid
    return response
