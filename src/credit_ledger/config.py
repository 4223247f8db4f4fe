"""
Ledger configuration using Pydantic Settings.
"""

from typing import List

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Ledger settings loaded from environment variables (prefix CREDIT_)."""

    # Storage; empty URI selects the in-memory backend
    MONGO_URI: str = ""
    MONGO_DB: str = "credit_ledger"

    # Audit log
    LEDGER_LOG_PATH: str = "logs/credit_ledger.log"

    # Engine
    RESERVATION_TTL_SECONDS: int = 15 * 60
    LOCK_TIMEOUT_SECONDS: float = 5.0
    AUTO_CREATE_ACCOUNTS: bool = True

    # Maintenance
    SWEEP_INTERVAL_SECONDS: float = 300.0

    # Low balance alerts
    LOW_BALANCE_THRESHOLDS: List[int] = [50, 25, 10]
    LOW_BALANCE_ALERT_COOLDOWN_DAYS: int = 7

    model_config = SettingsConfigDict(
        env_prefix="CREDIT_", env_file=".env", case_sensitive=True, extra="ignore"
    )


settings = Settings()
