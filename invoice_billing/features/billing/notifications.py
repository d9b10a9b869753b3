"""
Billing notifications.

Notifiers are told about payment-failure lifecycle events. Delivery is
fire-and-forget: webhooks go through a background queue, and safe_notify
swallows and logs notifier errors so billing state never depends on a
notification being delivered.
"""
from __future__ import annotations

import hashlib
import hmac
import json
import logging
import queue
import threading
import time
from typing import Dict, List, Optional, Protocol, Sequence, Tuple
from uuid import uuid4

import httpx

from invoice_billing.core.logging import get_request_id
from invoice_billing.core.metrics import (
    notification_failures_total,
    notification_queue_depth,
    notification_retries_total,
)

logger = logging.getLogger("invoice_billing.notifications")

GRACE_PERIOD_STARTED = "payment.grace_period_started"
RETRY_FAILED = "payment.retry_failed"
RETRIES_EXHAUSTED = "payment.retries_exhausted"
RETRY_SUCCEEDED = "payment.retry_succeeded"
GRACE_WARNING = "payment.grace_warning"
PLAN_DOWNGRADED = "payment.plan_downgraded"

EVENT_TYPES = (
    GRACE_PERIOD_STARTED,
    RETRY_FAILED,
    RETRIES_EXHAUSTED,
    RETRY_SUCCEEDED,
    GRACE_WARNING,
    PLAN_DOWNGRADED,
)

_STOP = object()


class Notifier(Protocol):
    def notify(self, event_type: str, account_id: str, payload: Dict[str, object]) -> None:
        ...


class LoggingNotifier:
    """Writes each event to the log; the default when no webhook is configured."""

    def notify(self, event_type: str, account_id: str, payload: Dict[str, object]) -> None:
        logger.info(
            "notification.sent",
            extra={"event_type": event_type, "account_id": account_id, "payload": json.dumps(payload, default=str)},
        )


class RecordingNotifier:
    """Keeps events in memory (tests, local dev)."""

    def __init__(self):
        self.events = []

    def notify(self, event_type: str, account_id: str, payload: Dict[str, object]) -> None:
        self.events.append((event_type, account_id, dict(payload)))

    def types(self):
        return [e[0] for e in self.events]


def _canonical_json_bytes(payload: Dict) -> bytes:
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str).encode()


def sign_payload(secret: str, timestamp: int, body_bytes: bytes) -> str:
    signed_content = f"{timestamp}.".encode() + body_bytes
    digest = hmac.new(secret.encode(), signed_content, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


class WebhookNotifier:
    """POSTs events as signed JSON to a single endpoint."""

    def __init__(self, url: str, secret: Optional[str] = None, timeout: float = 5.0, client: Optional[httpx.Client] = None):
        self.url = url
        self.secret = secret
        self.timeout = timeout
        self._client = client

    def notify(self, event_type: str, account_id: str, payload: Dict[str, object]) -> None:
        timestamp = int(time.time())
        body = {
            "event_id": str(uuid4()),
            "event_type": event_type,
            "account_id": account_id,
            "timestamp": timestamp,
            "data": payload,
        }
        body_bytes = _canonical_json_bytes(body)
        headers = {
            "Content-Type": "application/json",
            "X-Billing-Event-Type": event_type,
            "X-Billing-Event-ID": body["event_id"],
        }
        if self.secret:
            headers["X-Billing-Signature"] = sign_payload(self.secret, timestamp, body_bytes)

        if self._client is not None:
            response = self._client.post(self.url, content=body_bytes, headers=headers, timeout=self.timeout)
            response.raise_for_status()
            return
        with httpx.Client(timeout=self.timeout) as client:
            response = client.post(self.url, content=body_bytes, headers=headers)
            response.raise_for_status()


def parse_backoff(raw: Optional[str], default: Tuple[float, ...] = (5, 30, 120)) -> List[float]:
    """Parse a csv of backoff seconds; falls back to default on bad input."""
    try:
        values = [float(x.strip()) for x in (raw or "").split(",") if x.strip()]
    except ValueError:
        return list(default)
    return values or list(default)


class QueuedNotifier:
    """
    Hands events to a background thread that delivers them through `inner`.

    notify() only enqueues, so billing callers never wait on the endpoint.
    Each event gets up to max_attempts deliveries with backoff between them;
    an event that still fails is counted in notification_failures_total and
    dropped. queue.Full propagates so safe_notify counts overflow the same way.
    """

    def __init__(
        self,
        inner: Notifier,
        max_attempts: int = 3,
        backoff_seconds: Sequence[float] = (5, 30, 120),
        maxsize: int = 1000,
    ):
        self.inner = inner
        self.max_attempts = max(1, max_attempts)
        self.backoff_seconds = list(backoff_seconds) or [0]
        self._queue: queue.Queue = queue.Queue(maxsize=maxsize)
        self._closing = threading.Event()
        self._start_lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None

    def notify(self, event_type: str, account_id: str, payload: Dict[str, object]) -> None:
        if self._closing.is_set():
            raise RuntimeError("notifier is closed")
        self._ensure_started()
        self._queue.put_nowait((event_type, account_id, dict(payload)))
        notification_queue_depth.set(self._queue.qsize())

    def close(self, timeout: float = 10.0) -> None:
        """Stop accepting events and wait for queued ones; backoff waits are skipped."""
        self._closing.set()
        with self._start_lock:
            thread = self._thread
        if thread is None:
            return
        self._queue.put(_STOP)
        thread.join(timeout)
        if thread.is_alive():
            logger.warning("notification.close_timeout", extra={"pending": self._queue.qsize()})

    def _ensure_started(self) -> None:
        with self._start_lock:
            if self._thread is None:
                self._thread = threading.Thread(target=self._run, name="notification-delivery", daemon=True)
                self._thread.start()

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    return
                self._deliver(*item)
            finally:
                self._queue.task_done()
                notification_queue_depth.set(self._queue.qsize())

    def _deliver(self, event_type: str, account_id: str, payload: Dict[str, object]) -> bool:
        for attempt in range(1, self.max_attempts + 1):
            try:
                self.inner.notify(event_type, account_id, payload)
                return True
            except Exception as e:
                error_code = type(e).__name__
            if attempt >= self.max_attempts:
                break
            notification_retries_total.inc(labels={"event_type": event_type})
            delay = self.backoff_seconds[min(attempt - 1, len(self.backoff_seconds) - 1)]
            logger.info(
                "notification.retry_scheduled",
                extra={"event_type": event_type, "account_id": account_id, "attempt": attempt, "delay_seconds": delay},
            )
            # Returns at once while closing, so shutdown only skips the wait
            self._closing.wait(delay)
        notification_failures_total.inc(labels={"event_type": event_type})
        logger.warning(
            "notification.dropped",
            extra={
                "event_type": event_type,
                "account_id": account_id,
                "attempts": attempt,
                "error_code": error_code,
            },
        )
        return False


def safe_notify(notifier: Optional[Notifier], event_type: str, account_id: str, payload: Dict[str, object]) -> bool:
    """Deliver a notification, logging (never raising) on failure."""
    if notifier is None:
        return False
    try:
        notifier.notify(event_type, account_id, payload)
        return True
    except Exception as e:
        notification_failures_total.inc(labels={"event_type": event_type})
        logger.warning(
            "notification.failed",
            extra={
                "request_id": get_request_id(),
                "event_type": event_type,
                "account_id": account_id,
                "error_code": type(e).__name__,
            },
        )
        return False


def build_notifier(settings) -> Notifier:
    if settings.NOTIFY_WEBHOOK_URL:
        webhook = WebhookNotifier(
            settings.NOTIFY_WEBHOOK_URL,
            secret=settings.NOTIFY_WEBHOOK_SECRET,
            timeout=settings.NOTIFY_WEBHOOK_TIMEOUT_SECONDS,
        )
        return QueuedNotifier(
            webhook,
            max_attempts=settings.NOTIFY_WEBHOOK_MAX_ATTEMPTS,
            backoff_seconds=parse_backoff(settings.NOTIFY_WEBHOOK_BACKOFF_SECONDS),
            maxsize=settings.NOTIFY_QUEUE_SIZE,
        )
    return LoggingNotifier()
