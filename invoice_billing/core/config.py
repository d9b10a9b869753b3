import logging

from pydantic_settings import BaseSettings
from pydantic import ConfigDict
from typing import Optional

class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    CONFIG_STRICT: bool = False

    # Database
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None

    # Stripe (payment processor)
    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_CURRENCY: str = "zar"

    # Retry policy
    BILLING_MAX_RETRIES: int = 3
    BILLING_RETRY_BASE_MINUTES: int = 60
    BILLING_GRACE_PERIOD_DAYS: int = 7
    BILLING_GRACE_WARNING_DAYS: int = 2
    BILLING_CLAIM_TIMEOUT_SECONDS: int = 900
    BILLING_FREE_PLAN_ID: str = "free"

    # Sweep worker
    BILLING_SWEEP_ENABLED: bool = False
    BILLING_SWEEP_INTERVAL_SECONDS: int = 300
    BILLING_SWEEP_BATCH_SIZE: int = 50

    # Notifications (fire-and-forget webhook, delivered from a background queue)
    NOTIFY_WEBHOOK_URL: Optional[str] = None
    NOTIFY_WEBHOOK_SECRET: Optional[str] = None
    NOTIFY_WEBHOOK_TIMEOUT_SECONDS: float = 5.0
    NOTIFY_WEBHOOK_MAX_ATTEMPTS: int = 3
    NOTIFY_WEBHOOK_BACKOFF_SECONDS: str = "5,30,120"  # csv, last value repeats
    NOTIFY_QUEUE_SIZE: int = 1000

    # Admin access (operator endpoints)
    ADMIN_KEY: Optional[str] = None

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )
settings = Settings()


def validate_config(strict: Optional[bool] = None, settings_obj: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> bool:
    """Validate required configuration.

    In strict mode raise RuntimeError; otherwise emit warnings only.
    Secrets are not logged, only missing keys.
    """
    cfg = settings_obj or settings
    log = logger or logging.getLogger("invoice_billing")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    required_keys = [
        "DATABASE_URL",
        "STRIPE_SECRET_KEY",
        "ADMIN_KEY",
    ]

    missing = [key for key in required_keys if not getattr(cfg, key, None)]
    if missing:
        message = f"Missing required configuration: {', '.join(missing)}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    if cfg.BILLING_MAX_RETRIES < 1:
        message = "BILLING_MAX_RETRIES must be at least 1"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    return True
