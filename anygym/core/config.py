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

    # Auth (bearer JWT issued by the identity provider)
    AUTH_JWT_SECRET: Optional[str] = None
    AUTH_JWT_AUDIENCE: Optional[str] = None
    AUTH_JWT_ISSUER: Optional[str] = None
    AUTH_ALLOW_HEADER_FALLBACK: bool = False  # X-User-Id, dev/test only

    # Stripe
    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_WEBHOOK_SECRET: Optional[str] = None
    STRIPE_WEBHOOK_TOLERANCE_SECONDS: int = 300
    STRIPE_PRICE_ID: Optional[str] = None
    # Unsettled billing events older than this are assumed abandoned and re-claimable
    BILLING_EVENT_LEASE_SECONDS: int = 900

    # Geocoding (Geoapify)
    GEOAPIFY_API_KEY: Optional[str] = None
    GEOCODING_URL: str = "https://api.geoapify.com/v1/geocode/search"
    GEOCODING_TIMEOUT_SECONDS: float = 5.0

    # Welcome email (SendGrid dynamic templates)
    SENDGRID_API_KEY: Optional[str] = None
    SENDGRID_URL: str = "https://api.sendgrid.com/v3/mail/send"
    WELCOME_TEMPLATE_ID: Optional[str] = None
    MAIL_FROM: str = "hello@any-gym.com"
    NOTIFY_TIMEOUT_SECONDS: float = 5.0

    # Passes
    PASS_VALIDITY_HOURS: int = 24
    PASS_PRICE_STANDARD: float = 0.0
    PASS_PRICE_PREMIUM: float = 0.0
    PASS_PRICE_ELITE: float = 0.0

    # App URLs
    BASE_URL: str = "http://localhost:3000"

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
    log = logger or logging.getLogger("anygym")
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

    # Optional integrations degrade instead of failing
    optional_keys = ["GEOAPIFY_API_KEY", "SENDGRID_API_KEY", "WELCOME_TEMPLATE_ID"]
    degraded = [key for key in optional_keys if not getattr(cfg, key, None)]
    if degraded:
        log.info(f"Optional integrations not configured: {', '.join(degraded)}")

    return True
