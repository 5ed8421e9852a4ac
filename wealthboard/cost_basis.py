"""
FIFO cost basis and lot accounting for tradeable holdings.

Transactions are replayed in (date, sequence) order:

- BUY opens a lot whose basis includes the fees paid
- SELL consumes the oldest open lots first
- SPLIT scales every open lot's quantity by the ratio, keeping its basis
- DIVIDEND leaves lots alone and is tracked as income
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from enum import Enum
import logging
from typing import Iterable, List, Optional, Sequence

from wealthboard.errors import ValidationError

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


class TransactionAction(str, Enum):
    BUY = "BUY"
    SELL = "SELL"
    DIVIDEND = "DIVIDEND"
    SPLIT = "SPLIT"

    @classmethod
    def validate(cls, value: str) -> "TransactionAction":
        normalized = value.strip().upper()
        try:
            return cls(normalized)
        except ValueError as exc:
            allowed = ", ".join(action.value for action in cls)
            raise ValidationError(f"Action must be one of: {allowed}", field="action") from exc


@dataclass(frozen=True)
class LedgerTransaction:
    date: date
    action: TransactionAction
    quantity: Decimal
    unit_price: Decimal = ZERO
    fees: Decimal = ZERO
    currency: str = "AUD"
    id: Optional[str] = None
    sequence: int = 0


@dataclass
class Lot:
    date: date
    original_quantity: Decimal
    remaining_quantity: Decimal
    cost_basis: Decimal

    @property
    def unit_cost(self) -> Decimal:
        if self.remaining_quantity <= ZERO:
            return ZERO
        return self.cost_basis / self.remaining_quantity

    @property
    def is_open(self) -> bool:
        return self.remaining_quantity > ZERO


@dataclass(frozen=True)
class CostBasisResult:
    quantity: Decimal
    cost_basis: Decimal
    avg_cost: Decimal
    lots: List[Lot] = field(default_factory=list)
    realized_gain: Decimal = ZERO
    dividend_income: Decimal = ZERO


@dataclass(frozen=True)
class GainLoss:
    market_value: Decimal
    cost_basis: Decimal
    gain_loss: Decimal
    gain_loss_percent: Optional[Decimal]


class InsufficientQuantityError(ValidationError):
    """Raised when a SELL asks for more than the FIFO walk says is held."""

    def __init__(self, requested: Decimal, available: Decimal) -> None:
        self.requested = requested
        self.available = available
        self.shortfall = requested - available
        super().__init__(
            f"Sell quantity exceeds holdings: requested {requested}, "
            f"held {available} (short by {self.shortfall}).",
            field="quantity",
        )


def sort_transactions(transactions: Iterable[LedgerTransaction]) -> List[LedgerTransaction]:
    return sorted(transactions, key=lambda txn: (txn.date, txn.sequence))


def calculate_cost_basis(transactions: Iterable[LedgerTransaction]) -> CostBasisResult:
    lots: List[Lot] = []
    realized_gain = ZERO
    dividend_income = ZERO

    for txn in sort_transactions(transactions):
        quantity = _coerce_amount(txn.quantity)
        unit_price = _coerce_amount(txn.unit_price)
        fees = _coerce_amount(txn.fees)

        if txn.action is TransactionAction.BUY:
            lots.append(
                Lot(
                    date=txn.date,
                    original_quantity=quantity,
                    remaining_quantity=quantity,
                    cost_basis=quantity * unit_price + fees,
                )
            )
        elif txn.action is TransactionAction.SELL:
            consumed_basis, unfilled = _consume_lots(lots, quantity)
            if unfilled > ZERO:
                logger.warning(
                    "SELL on %s exceeds quantity held by %s; ledger is inconsistent",
                    txn.date.isoformat(),
                    unfilled,
                )
            filled = quantity - unfilled
            proceeds = filled * unit_price - fees
            realized_gain += proceeds - consumed_basis
        elif txn.action is TransactionAction.SPLIT:
            _apply_split(lots, quantity)
        elif txn.action is TransactionAction.DIVIDEND:
            dividend_income += quantity * unit_price - fees
        else:
            raise ValueError(f"Unsupported transaction action: {txn.action}")

    open_lots = [lot for lot in lots if lot.is_open]
    total_quantity = sum((lot.remaining_quantity for lot in open_lots), ZERO)
    total_basis = sum((lot.cost_basis for lot in open_lots), ZERO)
    avg_cost = total_basis / total_quantity if total_quantity > ZERO else ZERO

    return CostBasisResult(
        quantity=total_quantity,
        cost_basis=total_basis,
        avg_cost=avg_cost,
        lots=open_lots,
        realized_gain=realized_gain,
        dividend_income=dividend_income,
    )


def quantity_held(transactions: Iterable[LedgerTransaction]) -> Decimal:
    return calculate_cost_basis(transactions).quantity


def validate_sell(
    transactions: Sequence[LedgerTransaction],
    sell_date: date,
    quantity: Decimal,
    exclude_id: Optional[str] = None,
    sequence: Optional[int] = None,
) -> Decimal:
    """Check a prospective SELL against the quantity held just before it.

    Only transactions strictly before ``sell_date`` count. When ``sequence``
    is given, same-day rows entered earlier count as well. ``exclude_id``
    drops the row being edited so it is not measured against itself.
    Returns the quantity available.
    """
    requested = _coerce_amount(quantity)
    if requested <= ZERO:
        raise ValidationError("Quantity must be a positive number", field="quantity")

    prior = [
        txn
        for txn in transactions
        if (exclude_id is None or txn.id != exclude_id)
        and _precedes(txn, sell_date, sequence)
    ]
    available = quantity_held(prior)
    if requested > available:
        raise InsufficientQuantityError(requested=requested, available=available)
    return available


def validate_ledger(transactions: Iterable[LedgerTransaction]) -> None:
    """Check every SELL in a ledger against the quantity held just before it.

    Used when an earlier BUY or SPLIT is edited or removed, which can leave a
    later SELL short.
    """
    ordered = sort_transactions(transactions)
    for index, txn in enumerate(ordered):
        if txn.action is not TransactionAction.SELL:
            continue
        requested = _coerce_amount(txn.quantity)
        available = quantity_held(ordered[:index])
        if requested > available:
            raise InsufficientQuantityError(requested=requested, available=available)


def calculate_gain_loss(result: CostBasisResult, current_price: Decimal) -> GainLoss:
    market_value = result.quantity * _coerce_amount(current_price)
    gain_loss = market_value - result.cost_basis
    percent = None
    if result.cost_basis > ZERO:
        percent = gain_loss / result.cost_basis * Decimal("100")
    return GainLoss(
        market_value=market_value,
        cost_basis=result.cost_basis,
        gain_loss=gain_loss,
        gain_loss_percent=percent,
    )


def _precedes(txn: LedgerTransaction, sell_date: date, sequence: Optional[int]) -> bool:
    if txn.date < sell_date:
        return True
    return sequence is not None and txn.date == sell_date and txn.sequence < sequence


def _consume_lots(lots: List[Lot], quantity: Decimal) -> tuple[Decimal, Decimal]:
    remaining = quantity
    consumed_basis = ZERO
    for lot in lots:
        if remaining <= ZERO:
            break
        if not lot.is_open:
            continue
        consumed = min(lot.remaining_quantity, remaining)
        if consumed == lot.remaining_quantity:
            basis_taken = lot.cost_basis
        else:
            basis_taken = lot.cost_basis * consumed / lot.remaining_quantity
        lot.remaining_quantity -= consumed
        lot.cost_basis -= basis_taken
        consumed_basis += basis_taken
        remaining -= consumed
    return consumed_basis, remaining


def _apply_split(lots: List[Lot], ratio: Decimal) -> None:
    if ratio <= ZERO:
        raise ValueError("Split ratio must be greater than zero.")
    for lot in lots:
        lot.original_quantity *= ratio
        lot.remaining_quantity *= ratio


def _coerce_amount(amount: Decimal) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))
