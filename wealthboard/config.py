from __future__ import annotations

from dataclasses import dataclass
import os

from wealthboard.currency_conversion import PIVOT_CURRENCY, normalize_currency
from wealthboard.errors import ValidationError
from wealthboard.payday import EXPECTED_INCOME_CENTS


@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite:///./wealthboard.db"
    frontend_origin: str = "http://localhost:3000"
    display_currency: str = PIVOT_CURRENCY
    price_cache_ttl_minutes: int = 15
    expected_income_cents: int = EXPECTED_INCOME_CENTS
    anomaly_lookback_periods: int = 6
    exchange_rate_api_key: str | None = None
    rate_cache_ttl_seconds: int = 60 * 60
    price_refresh_workers: int = 4


def load_settings() -> Settings:
    defaults = Settings()
    return Settings(
        database_url=os.getenv("DATABASE_URL", defaults.database_url),
        frontend_origin=os.getenv("FRONTEND_ORIGIN", defaults.frontend_origin),
        display_currency=_get_currency("DISPLAY_CURRENCY", defaults.display_currency),
        price_cache_ttl_minutes=_get_int("PRICE_CACHE_TTL_MINUTES", defaults.price_cache_ttl_minutes),
        expected_income_cents=_get_int("EXPECTED_INCOME_CENTS", defaults.expected_income_cents),
        anomaly_lookback_periods=_get_int("ANOMALY_LOOKBACK_PERIODS", defaults.anomaly_lookback_periods),
        exchange_rate_api_key=os.getenv("EXCHANGE_RATE_API_KEY") or None,
        rate_cache_ttl_seconds=_get_int("RATE_CACHE_TTL_SECONDS", defaults.rate_cache_ttl_seconds),
        price_refresh_workers=_get_int("PRICE_REFRESH_WORKERS", defaults.price_refresh_workers),
    )


def _get_currency(name: str, default: str) -> str:
    raw = os.getenv(name, default)
    try:
        return normalize_currency(raw)
    except ValidationError:
        return default


def _get_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return value if value > 0 else default
