from functools import lru_cache
import json
from typing import Optional

from pydantic import SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


def parse_cors_origins(value: str) -> list[str]:
    if not value:
        return []

    parsed: list[str]
    raw = value.strip()
    if raw.startswith("["):
        try:
            items = json.loads(raw)
            parsed = [str(item).strip() for item in items if str(item).strip()]
        except (TypeError, ValueError):
            parsed = []
    else:
        parsed = [origin.strip() for origin in raw.split(",") if origin.strip()]

    # Preserve order and remove duplicates.
    return list(dict.fromkeys(parsed))


def parse_json_list(value: str) -> list[dict]:
    raw = (value or "").strip()
    if not raw:
        return []
    try:
        items = json.loads(raw)
    except (TypeError, ValueError):
        return []
    if not isinstance(items, list):
        return []
    return [item for item in items if isinstance(item, dict)]


def parse_json_object(value: str) -> dict:
    raw = (value or "").strip()
    if not raw:
        return {}
    try:
        data = json.loads(raw)
    except (TypeError, ValueError):
        return {}
    return data if isinstance(data, dict) else {}


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    app_name: str = "Custody Core"
    environment: str = "development"
    api_v1_prefix: str = "/api/v1"
    log_level: str = "INFO"

    # Database
    database_url: str = "sqlite:///./custody.db"
    db_pool_size: int = 5
    db_max_overflow: int = 5
    db_pool_timeout: int = 15
    db_pool_recycle: int = 1200
    db_pool_pre_ping: bool = True
    auto_create_tables: bool = False

    # HD wallet secrets (never logged)
    wallet_mnemonic: Optional[SecretStr] = None
    wallet_passphrase: Optional[SecretStr] = None
    # Fernet key used to encrypt derived private keys at rest.
    key_encryption_key: Optional[SecretStr] = None

    # Ledger
    ledger_denomination: str = "in_kind"  # in_kind|usd

    # Balance / price sources, ordered by preference (JSON lists).
    chain_sources: str = ""
    price_sources: str = '[{"kind": "coingecko", "base_url": "https://api.coingecko.com/api/v3"}]'
    coingecko_api_key: Optional[str] = None
    provider_timeout_seconds: float = 8.0
    provider_cache_ttl_seconds: int = 20

    # Reconciliation
    reconcile_enabled: bool = True
    reconcile_interval_seconds: int = 30
    reconcile_max_workers: int = 8

    # Staking
    staking_accrual_interval_seconds: int = 3600
    # JSON object: {"BTC": {"rate": "0.005", "period_seconds": 604800, "min_amount": "0.001"}}
    staking_rates: str = ""

    # Notifications
    notification_sink: str = "console"  # console|webhook
    notification_webhook_url: Optional[str] = None
    notification_timeout_seconds: float = 5.0

    # HTTP
    rate_limit_enabled: bool = True

    # CORS
    cors_origins: str = "http://localhost:5173,http://localhost:3000"


@lru_cache
def get_settings() -> Settings:
    return Settings()
