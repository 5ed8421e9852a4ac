"""
Spending anomaly detection for the current budget period.

Rule based, compared against each (saver, category)'s own history:

1. projected_overspend - spend projected to period end runs well past the
   category's average period total
2. large_transaction - one transaction is a large multiple of the
   category's average transaction
3. budget_overspend - spend is already well past the configured budget with
   more than half the period still to go
4. duplicate_merchant - the same merchant charged more than once in a day

Categories with no prior-period history are never reported.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from wealthboard.payday import PeriodContext

CategoryKey = Tuple[str, str]


class AnomalyKind(str, Enum):
    PROJECTED_OVERSPEND = "projected_overspend"
    LARGE_TRANSACTION = "large_transaction"
    BUDGET_OVERSPEND = "budget_overspend"
    DUPLICATE_MERCHANT = "duplicate_merchant"


class AnomalySeverity(str, Enum):
    WARNING = "warning"
    ALERT = "alert"


@dataclass(frozen=True)
class PeriodTransaction:
    id: str
    amount_cents: int
    transaction_date: date
    description: str = ""
    saver_key: Optional[str] = None
    category_key: Optional[str] = None


@dataclass(frozen=True)
class CategoryAverage:
    saver_key: str
    category_key: Optional[str]
    avg_transaction_cents: int
    avg_period_total_cents: int
    budget_cents: int = 0
    period_count: int = 0


@dataclass(frozen=True)
class PeriodCategoryTotal:
    saver_key: Optional[str]
    category_key: Optional[str]
    total_cents: int
    tx_count: int


@dataclass(frozen=True)
class AnomalyThresholds:
    projection_multiple: Decimal = Decimal("1.5")
    projection_alert_multiple: Decimal = Decimal("2")
    large_transaction_multiple: Decimal = Decimal("2")
    large_transaction_alert_multiple: Decimal = Decimal("3")
    budget_multiple: Decimal = Decimal("1.5")
    budget_alert_multiple: Decimal = Decimal("2")
    budget_min_remaining_fraction: Decimal = Decimal("0.5")


@dataclass(frozen=True)
class Anomaly:
    id: str
    kind: AnomalyKind
    severity: AnomalySeverity
    saver_key: Optional[str]
    category_key: Optional[str]
    description: str
    current_value: int
    baseline_value: int
    projected_value: Optional[int] = None
    transaction_ids: List[str] = field(default_factory=list)


def detect_anomalies(
    period_transactions: Iterable[PeriodTransaction],
    category_averages: Iterable[CategoryAverage],
    period_context: PeriodContext,
    thresholds: AnomalyThresholds = AnomalyThresholds(),
) -> List[Anomaly]:
    averages: Dict[CategoryKey, CategoryAverage] = {}
    for avg in category_averages:
        if avg.avg_period_total_cents > 0:
            averages[_key(avg.saver_key, avg.category_key)] = avg

    spending: Dict[CategoryKey, List[PeriodTransaction]] = defaultdict(list)
    for tx in period_transactions:
        if tx.amount_cents < 0:
            spending[_key(tx.saver_key, tx.category_key)].append(tx)

    anomalies: List[Anomaly] = []
    for key, txs in spending.items():
        avg = averages.get(key)
        if avg is None:
            continue
        anomalies.extend(_large_transactions(txs, avg, thresholds))
        projected = _projected_overspend(key, txs, avg, period_context, thresholds)
        if projected is not None:
            anomalies.append(projected)
        overspend = _budget_overspend(key, txs, avg, period_context, thresholds)
        if overspend is not None:
            anomalies.append(overspend)
        anomalies.extend(_duplicate_merchants(txs))

    anomalies.sort(
        key=lambda a: (0 if a.severity is AnomalySeverity.ALERT else 1, -a.current_value)
    )
    return anomalies


def build_category_averages(
    prior_period_totals: Iterable[PeriodCategoryTotal],
    period_count: int,
    budgets: Optional[Mapping[CategoryKey, int]] = None,
) -> List[CategoryAverage]:
    """Average the per-period totals of up to ``period_count`` prior periods."""
    if period_count <= 0:
        return []
    budgets = budgets or {}

    totals: Dict[CategoryKey, List[int]] = {}
    for row in prior_period_totals:
        key = _key(row.saver_key, row.category_key)
        running = totals.setdefault(key, [0, 0])
        running[0] += abs(int(row.total_cents))
        running[1] += int(row.tx_count)

    averages: List[CategoryAverage] = []
    for (saver_key, category_key), (total_cents, tx_count) in totals.items():
        averages.append(
            CategoryAverage(
                saver_key=saver_key,
                category_key=category_key or None,
                avg_transaction_cents=_round_cents(Decimal(total_cents) / tx_count) if tx_count else 0,
                avg_period_total_cents=_round_cents(Decimal(total_cents) / period_count),
                budget_cents=budgets.get((saver_key, category_key), 0),
                period_count=period_count,
            )
        )
    return averages


def elapsed_fraction(context: PeriodContext) -> Decimal:
    """Share of the period elapsed, never less than one day's worth."""
    if context.total_days <= 0:
        return Decimal("1")
    elapsed_days = max(1, context.total_days - context.days_remaining)
    return Decimal(elapsed_days) / Decimal(context.total_days)


def _projected_overspend(
    key: CategoryKey,
    txs: List[PeriodTransaction],
    avg: CategoryAverage,
    context: PeriodContext,
    thresholds: AnomalyThresholds,
) -> Optional[Anomaly]:
    current = sum(abs(tx.amount_cents) for tx in txs)
    baseline = Decimal(avg.avg_period_total_cents)
    elapsed = elapsed_fraction(context)
    projected = Decimal(current) / elapsed
    limit = baseline * thresholds.projection_multiple

    # Spend beyond the category's own historical pace must exceed one typical
    # transaction before a run-rate projection counts; sparse, lumpy
    # categories (rent, insurance) are expected to land early in a period.
    excess_over_pace = Decimal(current) - baseline * elapsed
    pace_breached = projected > limit and excess_over_pace > avg.avg_transaction_cents
    if not (Decimal(current) > limit or pace_breached):
        return None

    severity = (
        AnomalySeverity.ALERT
        if projected > baseline * thresholds.projection_alert_multiple
        else AnomalySeverity.WARNING
    )
    projected_cents = _round_cents(projected)
    return Anomaly(
        id=f"projected::{key[0]}::{key[1]}",
        kind=AnomalyKind.PROJECTED_OVERSPEND,
        severity=severity,
        saver_key=key[0] or None,
        category_key=key[1] or None,
        description=(
            f"{_label(key)} is on track to spend {_dollars(projected_cents)} this period "
            f"against a usual {_dollars(avg.avg_period_total_cents)}"
        ),
        current_value=current,
        baseline_value=avg.avg_period_total_cents,
        projected_value=projected_cents,
        transaction_ids=_largest_first(txs),
    )


def _large_transactions(
    txs: List[PeriodTransaction],
    avg: CategoryAverage,
    thresholds: AnomalyThresholds,
) -> List[Anomaly]:
    if avg.avg_transaction_cents <= 0:
        return []
    average = Decimal(avg.avg_transaction_cents)
    found: List[Anomaly] = []
    for tx in txs:
        amount = abs(tx.amount_cents)
        if Decimal(amount) <= average * thresholds.large_transaction_multiple:
            continue
        multiple = _round_cents(Decimal(amount) / average)
        found.append(
            Anomaly(
                id=f"large_tx::{tx.id}",
                kind=AnomalyKind.LARGE_TRANSACTION,
                severity=(
                    AnomalySeverity.ALERT
                    if Decimal(amount) > average * thresholds.large_transaction_alert_multiple
                    else AnomalySeverity.WARNING
                ),
                saver_key=tx.saver_key,
                category_key=tx.category_key,
                description=(
                    f"{tx.description} ({_dollars(amount)}) is {multiple}x the average "
                    f"transaction for this category"
                ),
                current_value=amount,
                baseline_value=avg.avg_transaction_cents,
                transaction_ids=[tx.id],
            )
        )
    return found


def _budget_overspend(
    key: CategoryKey,
    txs: List[PeriodTransaction],
    avg: CategoryAverage,
    context: PeriodContext,
    thresholds: AnomalyThresholds,
) -> Optional[Anomaly]:
    if avg.budget_cents <= 0:
        return None
    if Decimal(context.days_remaining) <= Decimal(context.total_days) * thresholds.budget_min_remaining_fraction:
        return None
    current = sum(abs(tx.amount_cents) for tx in txs)
    budget = Decimal(avg.budget_cents)
    if Decimal(current) <= budget * thresholds.budget_multiple:
        return None
    percent_used = _round_cents(Decimal(current) / budget * 100)
    return Anomaly(
        id=f"overspend::{key[0]}::{key[1]}",
        kind=AnomalyKind.BUDGET_OVERSPEND,
        severity=(
            AnomalySeverity.ALERT
            if Decimal(current) > budget * thresholds.budget_alert_multiple
            else AnomalySeverity.WARNING
        ),
        saver_key=key[0] or None,
        category_key=key[1] or None,
        description=(
            f"{_label(key)} is at {percent_used}% of budget with "
            f"{context.days_remaining} days remaining"
        ),
        current_value=current,
        baseline_value=avg.budget_cents,
        transaction_ids=_largest_first(txs),
    )


def _duplicate_merchants(txs: List[PeriodTransaction]) -> List[Anomaly]:
    groups: Dict[Tuple[str, date], List[PeriodTransaction]] = defaultdict(list)
    for tx in txs:
        merchant = tx.description.strip().upper()
        if merchant:
            groups[(merchant, tx.transaction_date)].append(tx)

    found: List[Anomaly] = []
    for (merchant, day), group in groups.items():
        if len(group) < 2:
            continue
        total = sum(abs(tx.amount_cents) for tx in group)
        found.append(
            Anomaly(
                id=f"duplicate::{merchant}::{day.isoformat()}",
                kind=AnomalyKind.DUPLICATE_MERCHANT,
                severity=AnomalySeverity.WARNING,
                saver_key=group[0].saver_key,
                category_key=group[0].category_key,
                description=(
                    f"{merchant} was charged {len(group)} times on {day.isoformat()} "
                    f"(total {_dollars(total)})"
                ),
                current_value=total,
                baseline_value=abs(group[0].amount_cents),
                transaction_ids=[tx.id for tx in group],
            )
        )
    return found


def _key(saver_key: Optional[str], category_key: Optional[str]) -> CategoryKey:
    return (saver_key or "", category_key or "")


def _label(key: CategoryKey) -> str:
    return key[1] or key[0] or "Uncategorised"


def _largest_first(txs: List[PeriodTransaction]) -> List[str]:
    return [tx.id for tx in sorted(txs, key=lambda tx: abs(tx.amount_cents), reverse=True)]


def _round_cents(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _dollars(cents: int) -> str:
    return f"${Decimal(cents) / 100:,.2f}"
