import logging

from pydantic_settings import BaseSettings
from pydantic import ConfigDict
from typing import Optional

class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    CONFIG_STRICT: bool = False

    # Persistence
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None

    # Stripe
    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_API_VERSION: Optional[str] = None

    # Money defaults
    DEFAULT_CURRENCY: str = "USD"
    DEFAULT_LOCALE: str = "en_US"
    BILLING_PERIOD_DAYS: int = 30  # fallback when a plan interval is unknown

    # Retry policy for provider calls
    RETRY_MAX_ATTEMPTS: int = 3
    RETRY_BASE_DELAY_SECONDS: float = 1.0
    RETRY_MAX_DELAY_SECONDS: float = 10.0
    RETRY_JITTER_SECONDS: float = 1.0

    # Diagnostics
    ERROR_LOG_CAPACITY: int = 50

    # Redirect URLs
    PORTAL_RETURN_URL: str = "http://localhost:3000/billing"
    CHECKOUT_SUCCESS_URL: str = "http://localhost:3000/success?type=subscription"
    CHECKOUT_CANCEL_URL: str = "http://localhost:3000/cancel"

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
    log = logger or logging.getLogger("paydesk")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    required_keys = [
        "DATABASE_URL",
        "STRIPE_SECRET_KEY",
    ]

    missing = [key for key in required_keys if not getattr(cfg, key, None)]
    if missing:
        message = f"Missing required configuration: {', '.join(missing)}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    if cfg.RETRY_MAX_ATTEMPTS < 1:
        message = "RETRY_MAX_ATTEMPTS must be at least 1"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    return True
