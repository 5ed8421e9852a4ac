from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, List, Optional

from wealthboard.payday import PeriodContext

WARNING_PERCENT = Decimal("80")
OVER_PERCENT = Decimal("100")


@dataclass(frozen=True)
class CategoryBudget:
    category_key: str
    budgeted_cents: int
    spent_cents: int
    saver_key: Optional[str] = None


@dataclass(frozen=True)
class CategoryBudgetEvaluation:
    category_key: str
    budgeted_cents: int
    spent_cents: int
    remaining_cents: int
    percent_used: Decimal
    status: str
    pace_expected_cents: int
    pace_status: str
    saver_key: Optional[str] = None


@dataclass(frozen=True)
class BudgetSummary:
    expected_income_cents: int
    actual_income_cents: int
    budgeted_cents: int
    spent_cents: int
    unallocated_cents: int
    savings_cents: int
    savings_rate: Decimal
    categories: List[CategoryBudgetEvaluation]


def evaluate_category_budget(
    budget: CategoryBudget,
    context: PeriodContext,
) -> CategoryBudgetEvaluation:
    """Compare spend against the budget and a straight-line pace through the period."""
    if budget.budgeted_cents < 0:
        raise ValueError("budgeted_cents must not be negative.")
    spent = abs(budget.spent_cents)

    if budget.budgeted_cents > 0:
        percent_used = (Decimal(spent) / Decimal(budget.budgeted_cents) * 100).quantize(
            Decimal("0.1"), rounding=ROUND_HALF_UP
        )
    else:
        percent_used = OVER_PERCENT + 1 if spent > 0 else Decimal("0")

    pace_expected = _straight_line_pace(budget.budgeted_cents, context)
    return CategoryBudgetEvaluation(
        category_key=budget.category_key,
        saver_key=budget.saver_key,
        budgeted_cents=budget.budgeted_cents,
        spent_cents=spent,
        remaining_cents=budget.budgeted_cents - spent,
        percent_used=percent_used,
        status=_status(percent_used),
        pace_expected_cents=pace_expected,
        pace_status="ahead" if spent > pace_expected else "on_track",
    )


def summarize_budget(
    budgets: Iterable[CategoryBudget],
    context: PeriodContext,
    expected_income_cents: int,
    actual_income_cents: int,
) -> BudgetSummary:
    categories = [evaluate_category_budget(budget, context) for budget in budgets]
    budgeted = sum(category.budgeted_cents for category in categories)
    spent = sum(category.spent_cents for category in categories)
    savings = actual_income_cents - spent
    savings_rate = Decimal("0")
    if actual_income_cents > 0:
        savings_rate = (Decimal(savings) / Decimal(actual_income_cents) * 100).quantize(
            Decimal("0.1"), rounding=ROUND_HALF_UP
        )
    return BudgetSummary(
        expected_income_cents=expected_income_cents,
        actual_income_cents=actual_income_cents,
        budgeted_cents=budgeted,
        spent_cents=spent,
        unallocated_cents=expected_income_cents - budgeted,
        savings_cents=savings,
        savings_rate=savings_rate,
        categories=categories,
    )


def _straight_line_pace(budgeted_cents: int, context: PeriodContext) -> int:
    if context.total_days <= 0:
        return budgeted_cents
    elapsed = Decimal(context.days_elapsed) / Decimal(context.total_days)
    return int((Decimal(budgeted_cents) * elapsed).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _status(percent_used: Decimal) -> str:
    if percent_used > OVER_PERCENT:
        return "over"
    if percent_used >= WARNING_PERCENT:
        return "warning"
    return "under"
