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
    DB_STATEMENT_TIMEOUT_MS: int = 5000  # postgres only; 0 = disabled

    # Identity provider (HS256 JWTs, `sub` = actor id)
    AUTH_JWT_SECRET: Optional[str] = None
    AUTH_JWT_AUDIENCE: Optional[str] = None
    ALLOW_HEADER_AUTH: bool = True  # X-Actor-Id fallback for dev/tests

    # Stripe
    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_WEBHOOK_SECRET: Optional[str] = None

    # App URLs
    APP_BASE_URL: str = "https://drillity.com"
    ALLOWED_ORIGINS: str = "https://www.drillity.com,https://drillity.com"  # comma-separated

    # Usage period policy
    USAGE_PERIOD_DAYS: int = 30
    COMPANY_TRIAL_DAYS: int = 14
    INVOICE_PAYMENT_TERMS_DAYS: int = 30  # default days_until_due for company invoices
    USAGE_WARNING_RATIO: float = 0.8

    # AI matching metering
    AI_MATCH_FREE_PER_PERIOD: int = 1
    AI_MATCH_UNIT_COST_EUR: float = 0.005  # per candidate analyzed

    # ROI display heuristic
    ROI_HOURS_PER_MATCH: float = 2.0
    ROI_HOURLY_RATE_EUR: float = 50.0

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
    log = logger or logging.getLogger("drillity")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    required_keys = [
        "DATABASE_URL",
        "AUTH_JWT_SECRET",
        "STRIPE_SECRET_KEY",
        "STRIPE_WEBHOOK_SECRET",
    ]

    missing = [key for key in required_keys if not getattr(cfg, key, None)]
    if missing:
        message = f"Missing required configuration: {', '.join(missing)}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    return True
