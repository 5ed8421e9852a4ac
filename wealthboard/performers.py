from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Iterable, List, Mapping, Optional, Sequence

from wealthboard.cost_basis import LedgerTransaction, calculate_cost_basis
from wealthboard.currency_conversion import ACCOUNTING_PLACES, PIVOT_CURRENCY, convert_amount
from wealthboard.net_worth import TRADEABLE_TYPES, Holding, HoldingType
from wealthboard.price_cache import CachedPrice, utcnow

ZERO = Decimal("0")


@dataclass(frozen=True)
class Performer:
    holding_id: str
    name: str
    symbol: str
    type: HoldingType
    current_value: Decimal
    cost_basis: Decimal
    gain_loss: Decimal
    gain_loss_percent: Decimal


@dataclass(frozen=True)
class TopPerformersResult:
    gainers: List[Performer] = field(default_factory=list)
    losers: List[Performer] = field(default_factory=list)
    calculated_at: Optional[datetime] = None


def holding_performance(
    holding: Holding,
    transactions: Sequence[LedgerTransaction],
    prices_by_symbol: Mapping[str, CachedPrice],
    rates: Mapping[str, Decimal],
) -> Optional[Performer]:
    """Unrealized gain/loss in AUD, or ``None`` without a position, price or basis."""
    if holding.type not in TRADEABLE_TYPES or not holding.symbol:
        return None

    result = calculate_cost_basis(transactions)
    if result.quantity <= ZERO:
        return None

    cached = prices_by_symbol.get(holding.symbol)
    if cached is None or cached.price == ZERO:
        return None

    # Market value is quoted in the price currency; basis was paid in the holding's.
    current_value = convert_amount(
        result.quantity * cached.price, cached.currency, PIVOT_CURRENCY, rates, ACCOUNTING_PLACES
    )
    cost_basis = convert_amount(
        result.cost_basis, holding.currency, PIVOT_CURRENCY, rates, ACCOUNTING_PLACES
    )
    if cost_basis == ZERO:
        return None

    gain_loss = current_value - cost_basis
    return Performer(
        holding_id=holding.id,
        name=holding.name,
        symbol=holding.symbol,
        type=holding.type,
        current_value=current_value,
        cost_basis=cost_basis,
        gain_loss=gain_loss,
        gain_loss_percent=gain_loss / cost_basis * Decimal("100"),
    )


def get_top_performers(
    holdings: Iterable[Holding],
    transactions_by_holding: Mapping[str, Sequence[LedgerTransaction]],
    prices_by_symbol: Mapping[str, CachedPrice],
    rates: Mapping[str, Decimal],
    limit: int = 5,
) -> TopPerformersResult:
    performers: List[Performer] = []
    for holding in holdings:
        if holding.deleted_at is not None or not holding.is_active:
            continue
        performer = holding_performance(
            holding,
            transactions_by_holding.get(holding.id, ()),
            prices_by_symbol,
            rates,
        )
        if performer is not None:
            performers.append(performer)

    gainers = sorted((p for p in performers if p.gain_loss > ZERO), key=lambda p: p.gain_loss, reverse=True)
    losers = sorted((p for p in performers if p.gain_loss < ZERO), key=lambda p: p.gain_loss)
    return TopPerformersResult(
        gainers=gainers[:limit],
        losers=losers[:limit],
        calculated_at=utcnow(),
    )
