"""
Pay-cycle aligned budget periods.

Payday is the 14th of every month, moved back to the preceding Friday when
it falls on a weekend (Saturday -> 13th, Sunday -> 12th). A period starts on
one payday and ends the day before the next month's payday.

    get_payday(2026, 2)  -> 2026-02-13   (14th is a Saturday)
    get_payday(2026, 4)  -> 2026-04-14   (14th is a Tuesday)
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, timedelta
import logging
from typing import List, Optional, Protocol

from wealthboard.errors import DataUnavailableError

logger = logging.getLogger(__name__)

PAYDAY_DAY = 14
EXPECTED_INCOME_CENTS = 916853
SATURDAY = 5
SUNDAY = 6


@dataclass(frozen=True)
class PeriodWindow:
    start_date: date
    end_date: date
    day_count: int

    def contains(self, target: date) -> bool:
        return self.start_date <= target <= self.end_date


@dataclass(frozen=True)
class BudgetPeriod:
    id: int
    start_date: date
    end_date: date
    expected_income_cents: int

    @property
    def day_count(self) -> int:
        return (self.end_date - self.start_date).days + 1


@dataclass(frozen=True)
class PeriodContext:
    progress_percent: int
    days_elapsed: int
    days_remaining: int
    total_days: int


class PeriodStore(Protocol):
    def find_period_covering(self, target: date) -> Optional[BudgetPeriod]:
        ...

    def insert_period(
        self, window: PeriodWindow, expected_income_cents: int
    ) -> Optional[BudgetPeriod]:
        """Insert the period, returning ``None`` if a conflicting row already exists."""
        ...


def get_payday(year: int, month: int) -> date:
    _validate_month(month)
    return _adjust_for_weekend(date(year, month, PAYDAY_DAY))


def generate_period(year: int, month: int) -> PeriodWindow:
    start = get_payday(year, month)
    next_year, next_month = _shift_month(year, month, 1)
    end = get_payday(next_year, next_month) - timedelta(days=1)
    return PeriodWindow(
        start_date=start,
        end_date=end,
        day_count=(end - start).days + 1,
    )


def find_containing_period(target: date) -> tuple[int, int]:
    if get_payday(target.year, target.month) <= target:
        return target.year, target.month
    return _shift_month(target.year, target.month, -1)


def period_for_date(target: date) -> PeriodWindow:
    year, month = find_containing_period(target)
    return generate_period(year, month)


def generate_periods(range_start: date, range_end: date) -> List[PeriodWindow]:
    if range_start > range_end:
        raise ValueError("range_start must be on or before range_end.")
    year, month = find_containing_period(range_start)
    periods: List[PeriodWindow] = []
    current = generate_period(year, month)
    while current.start_date <= range_end:
        periods.append(current)
        year, month = _shift_month(year, month, 1)
        current = generate_period(year, month)
    return periods


def next_payday(target: date) -> date:
    year, month = find_containing_period(target)
    next_year, next_month = _shift_month(year, month, 1)
    return get_payday(next_year, next_month)


def days_until_payday(target: date) -> int:
    return (next_payday(target) - target).days


def period_context(start_date: date, end_date: date, today: date) -> PeriodContext:
    total_days = (end_date - start_date).days + 1
    days_elapsed = max(0, min(total_days, (today - start_date).days + 1))
    days_remaining = max(0, total_days - days_elapsed)
    progress_percent = round(days_elapsed / total_days * 100) if total_days > 0 else 0
    return PeriodContext(
        progress_percent=progress_percent,
        days_elapsed=days_elapsed,
        days_remaining=days_remaining,
        total_days=total_days,
    )


def ensure_period_for_date(
    target: date,
    store: PeriodStore,
    expected_income_cents: int = EXPECTED_INCOME_CENTS,
) -> BudgetPeriod:
    """Return the single stored period covering ``target``, creating it if needed.

    Safe to call concurrently: when another caller inserts the same window
    first, the insert reports a conflict and the existing row is returned.
    """
    existing = store.find_period_covering(target)
    if existing is not None:
        return existing

    window = period_for_date(target)
    created = store.insert_period(window, expected_income_cents)
    if created is not None:
        logger.debug("Created budget period %s..%s", window.start_date, window.end_date)
        return created

    logger.debug("Budget period %s..%s created concurrently; fetching", window.start_date, window.end_date)
    fetched = store.find_period_covering(target)
    if fetched is None:
        raise DataUnavailableError(
            f"Budget period starting {window.start_date.isoformat()} conflicts with a stored "
            f"period that does not cover {target.isoformat()}."
        )
    return fetched


def _adjust_for_weekend(candidate: date) -> date:
    weekday = candidate.weekday()
    if weekday == SATURDAY:
        return candidate - timedelta(days=1)
    if weekday == SUNDAY:
        return candidate - timedelta(days=2)
    return candidate


def _shift_month(year: int, month: int, months: int) -> tuple[int, int]:
    total_month = month - 1 + months
    return year + total_month // 12, total_month % 12 + 1


def _validate_month(month: int) -> None:
    if not 1 <= month <= 12:
        raise ValueError("month must be between 1 and 12.")
