"""
Net worth aggregation.

- Tradeable holdings (stock, etf, crypto): FIFO quantity x cached price
- Snapshot assets (super, cash): latest snapshot balance, carried forward
- Debt: latest snapshot balance, subtracted from net worth

Everything is summed in AUD and re-expressed in the display currency at the
end. Missing or old inputs never fail the calculation; the affected holding
is listed in ``stale_holdings`` with a reason.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

from wealthboard.cost_basis import LedgerTransaction, calculate_cost_basis
from wealthboard.currency_conversion import (
    ACCOUNTING_PLACES,
    PIVOT_CURRENCY,
    convert_amount,
    normalize_currency,
    quantize_money,
)
from wealthboard.price_cache import DEFAULT_PRICE_CACHE_TTL, CachedPrice, price_age, utcnow

ZERO = Decimal("0")


class HoldingType(str, Enum):
    STOCK = "stock"
    ETF = "etf"
    CRYPTO = "crypto"
    SUPER = "super"
    CASH = "cash"
    DEBT = "debt"


TRADEABLE_TYPES = frozenset({HoldingType.STOCK, HoldingType.ETF, HoldingType.CRYPTO})
SNAPSHOT_TYPES = frozenset({HoldingType.SUPER, HoldingType.CASH, HoldingType.DEBT})
ASSET_TYPE_ORDER = (
    HoldingType.STOCK,
    HoldingType.ETF,
    HoldingType.CRYPTO,
    HoldingType.SUPER,
    HoldingType.CASH,
)


class StaleReason(str, Enum):
    NO_PRICE = "no_price"
    STALE_PRICE = "stale_price"
    NO_DATA = "no_data"
    STALE_SNAPSHOT = "stale_snapshot"


@dataclass(frozen=True)
class Holding:
    id: str
    type: HoldingType
    currency: str
    name: str = ""
    symbol: Optional[str] = None
    exchange: Optional[str] = None
    is_dormant: bool = False
    is_active: bool = True
    deleted_at: Optional[datetime] = None


@dataclass(frozen=True)
class Snapshot:
    holding_id: str
    date: date
    balance: Decimal
    currency: str
    deleted_at: Optional[datetime] = None


@dataclass(frozen=True)
class HoldingValue:
    id: str
    name: str
    symbol: Optional[str]
    value_aud: Decimal
    currency: str
    value_native: Decimal
    quantity: Optional[Decimal] = None
    price: Optional[Decimal] = None
    as_of: Optional[date] = None


@dataclass(frozen=True)
class TypeBreakdown:
    type: HoldingType
    value_aud: Decimal
    value: Decimal
    count: int
    holdings: List[HoldingValue] = field(default_factory=list)


@dataclass(frozen=True)
class StaleHolding:
    holding_id: str
    reason: StaleReason
    age_minutes: Optional[int] = None
    last_updated: Optional[date] = None


@dataclass(frozen=True)
class NetWorthResult:
    net_worth: Decimal
    total_assets: Decimal
    total_debt: Decimal
    currency: str
    breakdown: List[TypeBreakdown]
    debt_breakdown: List[HoldingValue]
    stale_holdings: List[StaleHolding]
    calculated_at: datetime

    @property
    def has_stale_data(self) -> bool:
        return bool(self.stale_holdings)


def calculate_net_worth(
    holdings: Iterable[Holding],
    transactions_by_holding: Mapping[str, Sequence[LedgerTransaction]],
    snapshots_by_holding: Mapping[str, Sequence[Snapshot]],
    prices_by_symbol: Mapping[str, CachedPrice],
    rates: Mapping[str, Decimal],
    *,
    as_of: Optional[datetime] = None,
    display_currency: str = PIVOT_CURRENCY,
    price_ttl: timedelta = DEFAULT_PRICE_CACHE_TTL,
) -> NetWorthResult:
    calculated_at = as_of or utcnow()
    target_date = calculated_at.date()
    display = normalize_currency(display_currency)

    asset_values: Dict[HoldingType, List[HoldingValue]] = {}
    debt_values: List[HoldingValue] = []
    stale: List[StaleHolding] = []

    for holding in holdings:
        if holding.deleted_at is not None or not holding.is_active:
            continue

        if holding.type in TRADEABLE_TYPES:
            value = _tradeable_value(
                holding,
                transactions_by_holding.get(holding.id, ()),
                prices_by_symbol,
                rates,
                calculated_at,
                price_ttl,
                stale,
            )
        elif holding.type in SNAPSHOT_TYPES:
            value = _snapshot_value(
                holding,
                snapshots_by_holding.get(holding.id, ()),
                rates,
                target_date,
                stale,
            )
        else:
            raise ValueError(f"Unsupported holding type: {holding.type}")

        if value is None:
            continue
        if holding.type is HoldingType.DEBT:
            debt_values.append(value)
        else:
            asset_values.setdefault(holding.type, []).append(value)

    breakdown: List[TypeBreakdown] = []
    for holding_type in ASSET_TYPE_ORDER:
        values = asset_values.get(holding_type)
        if not values:
            continue
        type_total = sum((v.value_aud for v in values), ZERO)
        breakdown.append(
            TypeBreakdown(
                type=holding_type,
                value_aud=quantize_money(type_total),
                value=convert_amount(type_total, PIVOT_CURRENCY, display, rates),
                count=len(values),
                holdings=values,
            )
        )

    total_assets_aud = sum((v.value_aud for values in asset_values.values() for v in values), ZERO)
    total_debt_aud = sum((v.value_aud for v in debt_values), ZERO)

    total_assets = convert_amount(total_assets_aud, PIVOT_CURRENCY, display, rates)
    total_debt = convert_amount(total_debt_aud, PIVOT_CURRENCY, display, rates)
    net_worth = total_assets - total_debt

    return NetWorthResult(
        net_worth=net_worth,
        total_assets=total_assets,
        total_debt=total_debt,
        currency=display,
        breakdown=breakdown,
        debt_breakdown=debt_values,
        stale_holdings=stale,
        calculated_at=calculated_at,
    )


def latest_snapshot(snapshots: Iterable[Snapshot], on_or_before: date) -> Optional[Snapshot]:
    latest: Optional[Snapshot] = None
    for snapshot in snapshots:
        if snapshot.deleted_at is not None or snapshot.date > on_or_before:
            continue
        if latest is None or snapshot.date > latest.date:
            latest = snapshot
    return latest


def _tradeable_value(
    holding: Holding,
    transactions: Sequence[LedgerTransaction],
    prices_by_symbol: Mapping[str, CachedPrice],
    rates: Mapping[str, Decimal],
    now: datetime,
    price_ttl: timedelta,
    stale: List[StaleHolding],
) -> Optional[HoldingValue]:
    quantity = calculate_cost_basis(transactions).quantity
    if quantity <= ZERO:
        return None

    cached = prices_by_symbol.get(holding.symbol) if holding.symbol else None
    if cached is None:
        stale.append(StaleHolding(holding_id=holding.id, reason=StaleReason.NO_PRICE))
        return HoldingValue(
            id=holding.id,
            name=holding.name,
            symbol=holding.symbol,
            value_aud=ZERO,
            currency=holding.currency,
            value_native=ZERO,
            quantity=quantity,
            price=None,
        )

    age = price_age(cached, now)
    if age >= price_ttl:
        stale.append(
            StaleHolding(
                holding_id=holding.id,
                reason=StaleReason.STALE_PRICE,
                age_minutes=int(age.total_seconds() // 60),
            )
        )

    value_native = quantity * cached.price
    value_aud = convert_amount(value_native, cached.currency, PIVOT_CURRENCY, rates, ACCOUNTING_PLACES)
    return HoldingValue(
        id=holding.id,
        name=holding.name,
        symbol=holding.symbol,
        value_aud=value_aud,
        currency=cached.currency,
        value_native=value_native,
        quantity=quantity,
        price=cached.price,
    )


def _snapshot_value(
    holding: Holding,
    snapshots: Sequence[Snapshot],
    rates: Mapping[str, Decimal],
    target_date: date,
    stale: List[StaleHolding],
) -> Optional[HoldingValue]:
    snapshot = latest_snapshot(snapshots, target_date)
    if snapshot is None:
        stale.append(StaleHolding(holding_id=holding.id, reason=StaleReason.NO_DATA))
        return None

    if _month_index(snapshot.date) < _month_index(target_date) and not holding.is_dormant:
        stale.append(
            StaleHolding(
                holding_id=holding.id,
                reason=StaleReason.STALE_SNAPSHOT,
                last_updated=snapshot.date,
            )
        )

    # Debt may be entered as a negative balance; it is always summed as a magnitude.
    value_native = abs(snapshot.balance) if holding.type is HoldingType.DEBT else snapshot.balance
    value_aud = convert_amount(value_native, snapshot.currency, PIVOT_CURRENCY, rates, ACCOUNTING_PLACES)
    return HoldingValue(
        id=holding.id,
        name=holding.name,
        symbol=holding.symbol,
        value_aud=value_aud,
        currency=snapshot.currency,
        value_native=value_native,
        as_of=snapshot.date,
    )


def _month_index(value: date) -> int:
    return value.year * 12 + value.month - 1
