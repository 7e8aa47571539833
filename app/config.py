import json
from pathlib import Path
from typing import Literal
from urllib.parse import urlparse

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

ENV_PATH = Path(__file__).resolve().parent.parent / ".env.local"


class Settings(BaseSettings):
    # Environment settings
    environment: str = "development"
    debug: bool = False
    LOG_LEVEL: str = "INFO"

    # Hosted database (contracts, message templates, send log)
    SUPABASE_DB_URL: str | None = None

    # RADIUS accounting database
    RADIUS_DB_URL: str | None = None

    # Redis settings (pass lock)
    REDIS_URL: str | None = None
    UPSTASH_REDIS_REST_URL: str | None = None
    UPSTASH_REDIS_REST_TOKEN: str | None = None

    # Outbound messaging webhook
    MESSAGE_WEBHOOK_URL: str | None = None
    MESSAGE_WEBHOOK_TOKEN: str | None = None
    MESSAGE_WEBHOOK_TIMEOUT: float = 30.0

    # =================================================================
    # DATABASE POOL SETTINGS - Simple and configurable
    # =================================================================
    DB_POOL_MIN_SIZE: int = 3
    DB_POOL_MAX_SIZE: int = 12
    DB_POOL_TIMEOUT: float = 30.0
    DB_POOL_MAX_IDLE: float = 600.0  # 10 minutes
    DB_POOL_MAX_LIFETIME: float = 3600.0  # 1 hour

    # =================================================================
    # BILLING REMINDERS
    # =================================================================
    REMINDER_COOLDOWN_DAYS: int = 30
    BILLING_DAY_CLAMP: Literal["clamp_to_month_end", "skip_short_months"] = "clamp_to_month_end"
    MIN_PHONE_DIGITS: int = 10
    REMINDER_MAX_CONCURRENCY: int = 10
    REMINDER_PASS_LOCK_TTL_SECONDS: int = 3600
    REMINDER_PASS_MAX_RETRIES: int = 3
    REMINDER_PASS_RETRY_BASE_DELAY: float = 30.0
    REMINDER_RUN_HOUR_UTC: int = 12

    # =================================================================
    # SESSION ACCOUNTING
    # =================================================================
    SESSION_HISTORY_LIMIT: int = 10
    STALE_SESSION_POLICY: Literal["flag", "force_close"] = "flag"
    NAS_ADDRESS_ALIASES: dict[str, str] = {}

    model_config = SettingsConfigDict(
        env_file=str(ENV_PATH),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @field_validator("NAS_ADDRESS_ALIASES", mode="before")
    @classmethod
    def _parse_aliases(cls, value):
        if isinstance(value, str):
            return json.loads(value) if value.strip() else {}
        return value

    @field_validator("REMINDER_RUN_HOUR_UTC")
    @classmethod
    def _check_run_hour(cls, value: int) -> int:
        if not 0 <= value <= 23:
            raise ValueError("REMINDER_RUN_HOUR_UTC must be between 0 and 23")
        return value

    def redis_url(self) -> str | None:
        """
        Resolve the Redis connection URL.

        A plain REDIS_URL wins; otherwise the Upstash REST host is turned into
        the native protocol URL, e.g.
        https://eu1-foo.upstash.io -> rediss://default:<token>@eu1-foo.upstash.io:6379
        """
        if self.REDIS_URL:
            return self.REDIS_URL
        if not self.UPSTASH_REDIS_REST_URL or not self.UPSTASH_REDIS_REST_TOKEN:
            return None

        rest_url = self.UPSTASH_REDIS_REST_URL.strip()
        host = urlparse(rest_url).hostname or urlparse(f"https://{rest_url}").hostname
        if not host:
            raise ValueError("UPSTASH_REDIS_REST_URL does not include a valid hostname")
        return f"rediss://default:{self.UPSTASH_REDIS_REST_TOKEN}@{host}:6379"

    def get_db_pool_config(self) -> dict:
        """
        Get database pool configuration.
        Adjust environment-specific settings based on self.environment.
        """
        config = {
            "min_size": self.DB_POOL_MIN_SIZE,
            "max_size": self.DB_POOL_MAX_SIZE,
            "timeout": self.DB_POOL_TIMEOUT,
            "max_idle": self.DB_POOL_MAX_IDLE,
            "max_lifetime": self.DB_POOL_MAX_LIFETIME,
        }

        if self.environment == "development":
            # More conservative for local development
            config.update(
                {
                    "min_size": 1,
                    "max_size": 4,
                    "timeout": 15.0,
                }
            )

        return config


settings = Settings()
