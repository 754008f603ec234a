import logging

from pydantic_settings import BaseSettings
from pydantic import ConfigDict
from typing import Optional

class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    CONFIG_STRICT: bool = False

    # Clerk Auth
    CLERK_SECRET_KEY: Optional[str] = None
    CLERK_ISSUER: Optional[str] = None  # e.g. https://your-instance.clerk.accounts.dev
    CLERK_JWKS_URL: Optional[str] = None

    # PayPal
    PAYPAL_CLIENT_ID: Optional[str] = None
    PAYPAL_CLIENT_SECRET: Optional[str] = None
    PAYPAL_MODE: str = "sandbox"  # sandbox | live
    PAYPAL_WEBHOOK_ID: Optional[str] = None
    PAYPAL_TIMEOUT_SECONDS: float = 15.0

    # Generation
    GROQ_API_KEY: Optional[str] = None
    GROQ_MODEL: str = "llama-3.1-8b-instant"

    # Rate limiting
    RATE_LIMIT_BACKEND: str = "memory"  # memory | redis
    REDIS_URL: str = "redis://localhost:6379"
    PAYMENT_RATE_LIMIT_MAX: int = 3
    PAYMENT_RATE_LIMIT_WINDOW_MS: int = 60000
    GENERATION_RATE_LIMIT_MAX: int = 5
    GENERATION_RATE_LIMIT_WINDOW_MS: int = 60000
    RATE_LIMIT_SWEEP_INTERVAL_MS: int = 300000
    RATE_LIMIT_SWEEP_GRACE_MS: int = 300000

    # Plan catalog override (JSON file)
    PLAN_CATALOG_PATH: Optional[str] = None

    # CORS
    CORS_ALLOWED_ORIGINS: str = "http://localhost:3000"  # comma-separated

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
    log = logger or logging.getLogger("planpilot")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    required_keys = [
        "CLERK_SECRET_KEY",
        "PAYPAL_CLIENT_ID",
        "PAYPAL_CLIENT_SECRET",
        "GROQ_API_KEY",
    ]
    if str(getattr(cfg, "ENV", "")).lower() == "production":
        required_keys.append("PAYPAL_WEBHOOK_ID")
    if str(getattr(cfg, "RATE_LIMIT_BACKEND", "memory")).lower() == "redis":
        required_keys.append("REDIS_URL")

    missing = [key for key in required_keys if not getattr(cfg, key, None)]
    if missing:
        message = f"Missing required configuration: {', '.join(missing)}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    return True


def cors_origins(settings_obj: Optional[Settings] = None) -> list:
    cfg = settings_obj or settings
    return [origin.strip() for origin in cfg.CORS_ALLOWED_ORIGINS.split(",") if origin.strip()]
