"""Configuration applicative (pydantic-settings).

Toutes les variables d'environnement passent par `settings` plutôt que par
des os.getenv() dispersés.
"""

from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Database
    database_url: str = "sqlite:///./binledger.db"
    sqlite_busy_timeout_seconds: float = 30.0

    log_level: str = "INFO"

    # Remote inventory ledger (Zoho Inventory style API)
    ledger_api_url: str = "https://www.zohoapis.com/inventory/v1"
    ledger_access_token: str = ""
    ledger_default_warehouse_id: Optional[str] = None
    ledger_timeout_seconds: float = 30.0
    # True = on poursuit la déduction avec un id local si le ledger est injoignable
    ledger_fallback_enabled: bool = True

    # Verification gates
    payment_freshness_hours: int = 24
    max_deductions_per_hour: int = 100

    # Business rules
    max_deduction_quantity: int = 1000
    stock_cache_ttl_seconds: int = 30


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
