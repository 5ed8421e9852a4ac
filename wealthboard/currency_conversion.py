from __future__ import annotations

from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
import json
import logging
import time
from typing import Mapping
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from wealthboard.errors import ValidationError

logger = logging.getLogger(__name__)

PIVOT_CURRENCY = "AUD"
SUPPORTED_CURRENCIES = ("AUD", "NZD", "USD")

# Display figures are shown to the cent; accounting keeps four places so that
# chained conversions do not compound rounding error.
DISPLAY_PLACES = 2
ACCOUNTING_PLACES = 4

# 1 unit of foreign currency = X AUD
DEFAULT_RATES: dict[str, Decimal] = {
    "USD/AUD": Decimal("1.53"),
    "NZD/AUD": Decimal("0.91"),
}


class MissingRateError(ValidationError):
    """Raised when a conversion needs a rate the caller did not supply."""

    def __init__(self, currency: str) -> None:
        super().__init__(f"No exchange rate available for {currency}.", field="currency")
        self.currency = currency


class RateProviderUnavailable(RuntimeError):
    """Raised when a rate provider cannot fetch live rates."""


def rate_key(currency: str) -> str:
    return f"{normalize_currency(currency)}/{PIVOT_CURRENCY}"


def quantize_money(amount: Decimal, places: int = DISPLAY_PLACES) -> Decimal:
    exponent = Decimal(1).scaleb(-places)
    return amount.quantize(exponent, rounding=ROUND_HALF_UP)


def convert_amount(
    amount: Decimal | int | float | str,
    source_currency: str,
    target_currency: str,
    rates: Mapping[str, Decimal | float | str],
    places: int = DISPLAY_PLACES,
) -> Decimal:
    """Convert an amount between currencies using AUD as the pivot.

    ``rates`` holds ``"USD/AUD"`` style keys, each the number of AUD one unit
    of the foreign currency buys. A same-currency conversion is only rounded,
    never multiplied, so the result does not depend on ``rates`` at all.
    """
    normalized_source = normalize_currency(source_currency)
    normalized_target = normalize_currency(target_currency)
    coerced_amount = _coerce_amount(amount)

    if normalized_source == normalized_target:
        return quantize_money(coerced_amount, places)

    amount_in_aud = coerced_amount * aud_rate(normalized_source, rates)
    result = amount_in_aud / aud_rate(normalized_target, rates)
    return quantize_money(result, places)


def aud_rate(currency: str, rates: Mapping[str, Decimal | float | str]) -> Decimal:
    """Return the AUD value of one unit of ``currency``."""
    normalized = normalize_currency(currency)
    if normalized == PIVOT_CURRENCY:
        return Decimal("1")
    raw = rates.get(rate_key(normalized))
    if raw is None:
        raise MissingRateError(normalized)
    try:
        rate = _coerce_amount(raw)
    except InvalidOperation as exc:
        raise MissingRateError(normalized) from exc
    if not rate.is_finite() or rate <= 0:
        raise MissingRateError(normalized)
    return rate


def normalize_currency(value: str) -> str:
    normalized = value.strip().upper()
    if len(normalized) != 3 or not normalized.isalpha():
        raise ValidationError("Currency must be a 3-letter ISO 4217 code.", field="currency")
    return normalized


def validate_supported_currency(value: str) -> str:
    normalized = normalize_currency(value)
    if normalized not in SUPPORTED_CURRENCIES:
        raise ValidationError(
            f"Currency must be one of: {', '.join(SUPPORTED_CURRENCIES)}",
            field="currency",
        )
    return normalized


@dataclass(frozen=True)
class StaticRateProvider:
    """Deterministic, in-memory FX rates keyed as ``"USD/AUD"``."""

    rates: Mapping[str, Decimal] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "rates", dict(self.rates or DEFAULT_RATES))

    def get_rates(self) -> dict[str, Decimal]:
        return dict(self.rates)


@dataclass(frozen=True)
class CachedRates:
    rates: Mapping[str, Decimal]
    expires_at: float


@dataclass
class ExchangeRateApiProvider:
    """Live AUD-pivot rates from exchangerate-api.com, cached in memory."""

    api_key: str | None = None
    base_url: str = "https://open.er-api.com/v6/latest"
    keyed_base_url: str = "https://v6.exchangerate-api.com/v6"
    cache_ttl_seconds: int = 60 * 60
    currencies: tuple[str, ...] = ("USD", "NZD")
    _cache: CachedRates | None = field(default=None, repr=False)

    def get_rates(self) -> dict[str, Decimal]:
        now = time.monotonic()
        if self._cache and self._cache.expires_at > now:
            return dict(self._cache.rates)

        rates = self._fetch_rates()
        self._cache = CachedRates(rates=rates, expires_at=now + self.cache_ttl_seconds)
        return dict(rates)

    def _build_url(self) -> str:
        if self.api_key:
            return f"{self.keyed_base_url}/{self.api_key}/latest/{PIVOT_CURRENCY}"
        return f"{self.base_url}/{PIVOT_CURRENCY}"

    def _fetch_rates(self) -> dict[str, Decimal]:
        request = Request(self._build_url(), headers={"Accept": "application/json"})
        try:
            with urlopen(request, timeout=8) as response:
                payload = json.load(response)
        except (HTTPError, URLError, TimeoutError, json.JSONDecodeError) as exc:
            raise RateProviderUnavailable("Exchange rate API unavailable") from exc

        if payload.get("result") == "error":
            reason = payload.get("error-type") or payload.get("error") or "unknown error"
            raise RateProviderUnavailable(f"Exchange rate API error: {reason}")

        # The API quotes "1 AUD = X foreign"; invert into "1 foreign = X AUD".
        quoted = payload.get("conversion_rates") or payload.get("rates")
        if not isinstance(quoted, dict):
            raise RateProviderUnavailable("Exchange rate response missing rates")

        parsed: dict[str, Decimal] = {}
        for currency in self.currencies:
            value = quoted.get(currency)
            if value is None:
                raise RateProviderUnavailable(f"Exchange rate response missing {currency}")
            per_aud = Decimal(str(value))
            if per_aud <= 0:
                raise RateProviderUnavailable(f"Exchange rate for {currency} is not positive")
            parsed[rate_key(currency)] = Decimal("1") / per_aud
        return parsed


@dataclass(frozen=True)
class CompositeRateProvider:
    primary: StaticRateProvider | ExchangeRateApiProvider
    fallback: StaticRateProvider

    def get_rates(self) -> dict[str, Decimal]:
        try:
            return self.primary.get_rates()
        except RateProviderUnavailable as exc:
            logger.warning("Falling back to static exchange rates: %s", exc)
            return self.fallback.get_rates()


def _coerce_amount(amount: Decimal | int | float | str) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))
