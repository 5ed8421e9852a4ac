from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
import json
import logging
from typing import Optional
from urllib.error import HTTPError, URLError
from urllib.parse import quote
from urllib.request import Request, urlopen

from wealthboard.currency_conversion import SUPPORTED_CURRENCIES, normalize_currency
from wealthboard.errors import ValidationError
from wealthboard.price_cache import PriceResult

logger = logging.getLogger(__name__)

EXCHANGE_SUFFIXES = {
    "ASX": ".AX",
    "NZX": ".NZ",
}


class PriceFetchError(RuntimeError):
    def __init__(self, message: str, symbol: str) -> None:
        super().__init__(message)
        self.symbol = symbol


def normalize_symbol(symbol: str, exchange: Optional[str] = None) -> str:
    """Add the Yahoo exchange suffix (VAS -> VAS.AX) unless one is present."""
    upper = symbol.strip().upper()
    if "." in upper or not exchange:
        return upper
    return upper + EXCHANGE_SUFFIXES.get(exchange.strip().upper(), "")


@dataclass(frozen=True)
class YahooChartFetcher:
    base_url: str = "https://query1.finance.yahoo.com/v8/finance/chart"
    timeout_seconds: int = 8

    def fetch(self, symbol: str, exchange: Optional[str] = None) -> PriceResult:
        normalized = normalize_symbol(symbol, exchange)
        url = f"{self.base_url}/{quote(normalized)}?range=1d&interval=1d"
        request = Request(url, headers={"Accept": "application/json", "User-Agent": "wealthboard"})
        try:
            with urlopen(request, timeout=self.timeout_seconds) as response:
                payload = json.load(response)
        except HTTPError as exc:
            if exc.code == 404:
                raise PriceFetchError(f"Invalid symbol: {normalized}", normalized) from exc
            raise PriceFetchError(f"Failed to fetch price for {normalized}: HTTP {exc.code}", normalized) from exc
        except (URLError, TimeoutError, json.JSONDecodeError) as exc:
            raise PriceFetchError(f"Network error fetching {normalized}", normalized) from exc

        return parse_chart_payload(payload, normalized)


def parse_chart_payload(payload: dict, symbol: str) -> PriceResult:
    chart = payload.get("chart") or {}
    results = chart.get("result") or []
    if not results:
        raise PriceFetchError(f"No quote data returned for symbol: {symbol}", symbol)
    meta = results[0].get("meta") or {}

    raw_price = meta.get("regularMarketPrice")
    if raw_price is None:
        raise PriceFetchError(f"No price available for symbol: {symbol}", symbol)
    quoted_currency = meta.get("currency") or ""
    try:
        price = Decimal(str(raw_price))
        currency = normalize_currency(quoted_currency)
    except (InvalidOperation, ValidationError) as exc:
        raise PriceFetchError(f"Unusable quote for symbol: {symbol}", symbol) from exc
    # Minor units such as GBp (pence) are case-distinguished and never supported.
    if currency not in SUPPORTED_CURRENCIES or quoted_currency.strip() != currency:
        raise PriceFetchError(f"Unsupported quote currency {quoted_currency} for symbol: {symbol}", symbol)

    change_absolute = None
    change_percent = None
    previous = meta.get("chartPreviousClose")
    if previous:
        previous_close = Decimal(str(previous))
        change_absolute = price - previous_close
        if previous_close != 0:
            change_percent = change_absolute / previous_close * Decimal("100")

    return PriceResult(
        price=price,
        currency=currency,
        change_percent=change_percent,
        change_absolute=change_absolute,
        source="yahoo",
    )
