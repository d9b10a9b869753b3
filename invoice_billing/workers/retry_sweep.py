"""Payment retry sweep worker.

Usage:
    python -m invoice_billing.workers.retry_sweep --once
    python -m invoice_billing.workers.retry_sweep --loop

Environment flags:
- BILLING_SWEEP_INTERVAL_SECONDS (default 300)
- BILLING_SWEEP_BATCH_SIZE (default 50)
"""
from __future__ import annotations

import argparse
import logging
import threading
import time
from typing import List, Optional

from invoice_billing.core.config import settings
from invoice_billing.core.logging import configure_logging
from invoice_billing.features.billing.orchestrator import BillingOrchestrator
from invoice_billing.features.billing.service import get_orchestrator
from invoice_billing.models.payment_failure import SweepReport

logger = logging.getLogger("invoice_billing.workers.retry_sweep")


def run_once(orchestrator: Optional[BillingOrchestrator] = None) -> SweepReport:
    billing = orchestrator or get_orchestrator()
    return billing.process_due_retries()


class SweepThread(threading.Thread):
    """Background sweeper started by the API process when BILLING_SWEEP_ENABLED."""

    def __init__(self, orchestrator: Optional[BillingOrchestrator] = None, interval: float = 300):
        super().__init__(name="retry-sweep", daemon=True)
        self.orchestrator = orchestrator
        self.interval = interval
        self._stop_event = threading.Event()

    def run(self) -> None:
        logger.info("sweep.thread_started", extra={"interval_seconds": self.interval})
        while not self._stop_event.is_set():
            try:
                run_once(self.orchestrator)
            except Exception:
                logger.error("sweep.run_failed", exc_info=True)
            self._stop_event.wait(self.interval)
        logger.info("sweep.thread_stopped")

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        self._stop_event.set()
        self.join(timeout)


def main(argv: Optional[List[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="Payment retry sweep worker")
    parser.add_argument("--once", action="store_true", help="Run one sweep and exit")
    parser.add_argument("--loop", action="store_true", help="Run in continuous loop")
    parser.add_argument(
        "--sleep",
        type=int,
        default=settings.BILLING_SWEEP_INTERVAL_SECONDS,
        help="Seconds to sleep between sweeps (when --loop)",
    )
    args = parser.parse_args(argv)

    configure_logging(settings.ENV)

    if args.once:
        report = run_once()
        print(
            f"[retry-sweep] due={report.due} processed={report.processed} "
            f"succeeded={report.succeeded} downgraded={report.downgraded} errors={len(report.errors)}"
        )
        return

    # Default to loop mode when not explicitly once
    print(f"[retry-sweep] Starting loop (sleep={args.sleep}s). CTRL+C to stop.")
    try:
        while True:
            try:
                report = run_once()
                if report.processed or report.downgraded:
                    print(f"[retry-sweep] processed={report.processed} downgraded={report.downgraded}")
            except Exception:
                logger.error("sweep.run_failed", exc_info=True)
            time.sleep(args.sleep)
    except KeyboardInterrupt:
        print("[retry-sweep] Stopped")


if __name__ == "__main__":
    main()
