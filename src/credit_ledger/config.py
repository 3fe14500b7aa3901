"""
Runtime configuration loaded from environment variables (and `.env`).
"""

from __future__ import annotations

from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Settings for the credit ledger service."""

    # Storage
    MONGO_URI: Optional[str] = None
    MONGO_DB: str = "credit_ledger"

    # Plans
    FREE_PLAN_CREDITS: int = 4120
    PLAN_CACHE_TTL_SECONDS: int = 300

    # Billing behaviour
    RECONCILE_ON_CONFIRM: bool = False
    RUN_MONTHLY_REROLL_ON_PREAUTH: bool = True

    # Logging
    LOG_LEVEL: str = "INFO"
    AUDIT_LOG_PATH: str = "logs/credit_audit.log"

    # HTTP
    USER_ID_HEADER: str = "X-User-Id"

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=True, extra="ignore")


settings = Settings()
