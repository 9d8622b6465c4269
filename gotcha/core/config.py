import logging
from typing import Optional

from pydantic import ConfigDict, Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    ENV: str = "development"
    CONFIG_STRICT: bool = False

    # Relational store (keys, tenants, usage) and counter store (rate limit, idempotency)
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None
    REDIS_URL: str = "redis://localhost:6379"

    # The site's own host for same-site checks on internal routes, e.g. "gotcha.cx".
    # Falls back to the request's Host header when unset.
    APP_HOST: Optional[str] = None
    # Server-side key the site's embedded SDK uses on internal routes
    INTERNAL_SDK_API_KEY: Optional[str] = None

    # API keys
    API_KEY_PREFIX: str = Field(default="gtch", pattern=r"^[a-z0-9]+$")
    API_KEY_CACHE_TTL_SECONDS: int = Field(default=60, ge=0)
    API_KEY_CACHE_MAX_ENTRIES: int = Field(default=10000, ge=1)
    LAST_USED_WORKERS: int = Field(default=2, ge=1)

    # Sliding-window rate limit; ceilings come from the plan tier
    RATE_LIMIT_ENABLED: bool = True
    RATE_LIMIT_WINDOW_SECONDS: int = 60
    RATE_LIMIT_PREFIX: str = "gotcha:ratelimit"

    IDEMPOTENCY_TTL_SECONDS: int = Field(default=300, ge=1)
    IDEMPOTENCY_PREFIX: str = "gotcha:idempotency:response"

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


settings = Settings()

REQUIRED_KEYS = ("DATABASE_URL", "REDIS_URL")


def validate_config(strict: Optional[bool] = None, settings_obj: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> bool:
    """Check that the stores are configured.

    Strict mode raises RuntimeError, otherwise a warning is logged. Only
    key names are reported, never values.
    """
    cfg = settings_obj or settings
    log = logger or logging.getLogger("gotcha")
    strict_mode = getattr(cfg, "CONFIG_STRICT", False) if strict is None else strict

    missing = [key for key in REQUIRED_KEYS if not getattr(cfg, key, None)]
    if not missing:
        return True

    message = f"Missing required configuration: {', '.join(missing)}"
    if strict_mode:
        raise RuntimeError(message)
    log.warning(message)
    return True
