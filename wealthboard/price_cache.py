from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
import logging
from typing import Callable, Dict, Iterable, List, Optional, Protocol

logger = logging.getLogger(__name__)

DEFAULT_PRICE_CACHE_TTL = timedelta(minutes=15)


@dataclass(frozen=True)
class CachedPrice:
    symbol: str
    price: Decimal
    currency: str
    fetched_at: datetime
    change_percent: Optional[Decimal] = None
    change_absolute: Optional[Decimal] = None
    source: str = "yahoo"


@dataclass(frozen=True)
class PriceResult:
    price: Decimal
    currency: str
    change_percent: Optional[Decimal] = None
    change_absolute: Optional[Decimal] = None
    source: str = "yahoo"


@dataclass
class PriceRefreshReport:
    refreshed: Dict[str, PriceResult] = field(default_factory=dict)
    failed: Dict[str, str] = field(default_factory=dict)
    skipped: List[str] = field(default_factory=list)


class PriceWriter(Protocol):
    def upsert_cached_price(self, symbol: str, result: PriceResult, fetched_at: datetime) -> None:
        ...


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def price_age(cached: CachedPrice, now: Optional[datetime] = None) -> timedelta:
    current = _as_aware(now) if now is not None else utcnow()
    return current - _as_aware(cached.fetched_at)


def is_cache_valid(
    cached: CachedPrice,
    ttl: timedelta = DEFAULT_PRICE_CACHE_TTL,
    now: Optional[datetime] = None,
) -> bool:
    return price_age(cached, now) < ttl


def refresh_prices(
    symbols: Iterable[str],
    fetch_price: Callable[[str], PriceResult],
    writer: PriceWriter,
    max_workers: int = 4,
    get_cached: Optional[Callable[[str], Optional[CachedPrice]]] = None,
    force_refresh: bool = False,
    ttl: timedelta = DEFAULT_PRICE_CACHE_TTL,
) -> PriceRefreshReport:
    """
    Fetch prices for each symbol in parallel and write every success.

    A failing symbol is logged and reported; it never stops the others.
    Symbols whose cached price is still within ``ttl`` are skipped unless
    ``force_refresh`` is set.
    """
    unique_symbols: List[str] = []
    for symbol in symbols:
        normalized = symbol.strip().upper()
        if normalized and normalized not in unique_symbols:
            unique_symbols.append(normalized)

    report = PriceRefreshReport()
    if get_cached is not None and not force_refresh:
        pending: List[str] = []
        for symbol in unique_symbols:
            cached = get_cached(symbol)
            if cached is not None and is_cache_valid(cached, ttl):
                report.skipped.append(symbol)
            else:
                pending.append(symbol)
        unique_symbols = pending

    if not unique_symbols:
        return report

    with ThreadPoolExecutor(max_workers=max(1, max_workers)) as pool:
        futures = {symbol: pool.submit(fetch_price, symbol) for symbol in unique_symbols}

    for symbol, future in futures.items():
        try:
            result = future.result()
            writer.upsert_cached_price(symbol, result, utcnow())
        except Exception as exc:
            logger.warning("Price refresh failed for %s: %s", symbol, exc)
            report.failed[symbol] = str(exc) or exc.__class__.__name__
            continue
        report.refreshed[symbol] = result

    return report


def _as_aware(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; stored timestamps are UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
