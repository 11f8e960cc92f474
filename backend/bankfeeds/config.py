"""
Runtime settings for bank feed integrations.
"""
import os
from functools import lru_cache
from typing import Optional

from dotenv import load_dotenv
from pydantic_settings import BaseSettings

load_dotenv()


PRODUCTION_MARKERS = {"production", "prod"}


def is_production_environment() -> bool:
    for env_var in ("ENVIRONMENT", "APP_ENV", "NODE_ENV"):
        value = os.getenv(env_var, "").strip().lower()
        if value in PRODUCTION_MARKERS:
            return True
    return False


class Settings(BaseSettings):
    """
    Bank integration settings.
    Every field can be overridden by an environment variable of the same name.
    """
    app_url: str = "http://localhost:8000"
    api_docs_enabled: bool = False
    auto_create_tables: bool = False  # dev only; prefer migrations

    # Provider HTTP behaviour
    http_timeout_seconds: float = 30.0
    provider_timezone: str = "Africa/Nairobi"
    strict_fetch_failures: bool = False

    # Named bank variants of the generic REST adapter
    kcb_base_url: str = "https://api.kcbgroup.com/v1"
    equity_base_url: str = "https://api.equitybank.com/v2"

    # M-Pesa certificates live here as mpesa_<env>.cer
    bank_cert_dir: str = "certs"
    callback_signing_secret: Optional[str] = None

    # Sync scheduling
    sync_lookback_days: int = 30
    bank_sync_interval_minutes: int = 60
    sync_task_time_limit_seconds: int = 900
    sync_lock_timeout_seconds: int = 960  # never shorter than the task time limit
    redis_url: str = "redis://localhost:6379/0"

    class Config:
        env_file = ".env"
        extra = "ignore"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()


def reset_settings_cache() -> None:
    get_settings.cache_clear()
