import logging

from pydantic_settings import BaseSettings
from pydantic import ConfigDict
from typing import Optional

class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    CONFIG_STRICT: bool = False

    # Database & Cache
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None
    REDIS_URL: str = "redis://localhost:6379"

    # Admin access (billing trigger, warnings scan)
    ADMIN_KEY: Optional[str] = None

    # Enforcement
    LIMIT_CACHE_TTL_SECONDS: int = 30  # 0 = cache disabled
    LIMIT_CACHE_MAX_ENTRIES: int = 10000
    DEFAULT_SOFT_LIMIT_THRESHOLD: float = 0.8
    USAGE_CAP_HARD_BY_DEFAULT: bool = True  # bare usage_caps deny beyond the cap

    # Billing runs
    BILLING_RUN_TIMEOUT_SECONDS: int = 300
    BILLING_LOCK_TTL_SECONDS: int = 900
    BILLING_QUEUE_NAME: str = "billing"

    # Usage warning delivery
    NOTIFICATION_WEBHOOK_URL: Optional[str] = None
    NOTIFICATION_WEBHOOK_SECRET: Optional[str] = None
    NOTIFICATION_TIMEOUT_SECONDS: int = 10

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
    log = logger or logging.getLogger("tierline")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)
    mode = (getattr(cfg, "ENV", "development") or "development").lower()

    problems = []

    required_keys = ["DATABASE_URL", "ADMIN_KEY"]
    missing = [key for key in required_keys if not getattr(cfg, key, None)]
    if missing:
        problems.append(f"Missing required configuration: {', '.join(missing)}")

    if mode == "production" and getattr(cfg, "TEST_DATABASE_URL", None):
        problems.append("TEST_DATABASE_URL must not be set in production")

    threshold = getattr(cfg, "DEFAULT_SOFT_LIMIT_THRESHOLD", 0.8)
    if not (0 < threshold <= 1):
        problems.append("DEFAULT_SOFT_LIMIT_THRESHOLD must be in (0, 1]")

    if getattr(cfg, "NOTIFICATION_WEBHOOK_URL", None) and not getattr(cfg, "NOTIFICATION_WEBHOOK_SECRET", None):
        problems.append("NOTIFICATION_WEBHOOK_SECRET is required when NOTIFICATION_WEBHOOK_URL is set")

    for message in problems:
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    return True
