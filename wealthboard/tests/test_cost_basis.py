import unittest
from datetime import date
from decimal import Decimal

from wealthboard.cost_basis import (
    InsufficientQuantityError,
    LedgerTransaction,
    TransactionAction,
    calculate_cost_basis,
    calculate_gain_loss,
    quantity_held,
    validate_ledger,
    validate_sell,
)
from wealthboard.errors import ValidationError


def buy(day, quantity, price, fees="0", txn_id=None, sequence=0):
    return LedgerTransaction(
        date=day,
        action=TransactionAction.BUY,
        quantity=Decimal(quantity),
        unit_price=Decimal(price),
        fees=Decimal(fees),
        id=txn_id,
        sequence=sequence,
    )


def sell(day, quantity, price, fees="0", txn_id=None, sequence=0):
    return LedgerTransaction(
        date=day,
        action=TransactionAction.SELL,
        quantity=Decimal(quantity),
        unit_price=Decimal(price),
        fees=Decimal(fees),
        id=txn_id,
        sequence=sequence,
    )


class CostBasisTests(unittest.TestCase):
    def test_buy_includes_fees_in_basis(self) -> None:
        result = calculate_cost_basis([buy(date(2024, 1, 10), "10", "50", fees="9.95")])

        self.assertEqual(result.quantity, Decimal("10"))
        self.assertEqual(result.cost_basis, Decimal("509.95"))
        self.assertEqual(result.avg_cost, Decimal("50.995"))
        self.assertEqual(len(result.lots), 1)

    def test_sell_consumes_oldest_lot_first(self) -> None:
        result = calculate_cost_basis(
            [
                buy(date(2024, 1, 1), "10", "10"),
                buy(date(2024, 2, 1), "10", "20"),
                sell(date(2024, 3, 1), "15", "25"),
            ]
        )

        self.assertEqual(result.quantity, Decimal("5"))
        self.assertEqual(result.cost_basis, Decimal("100"))
        self.assertEqual(result.lots[0].date, date(2024, 2, 1))
        # 15 * 25 proceeds against 100 + 5 * 20 consumed basis
        self.assertEqual(result.realized_gain, Decimal("175"))

    def test_transactions_are_replayed_in_date_order(self) -> None:
        result = calculate_cost_basis(
            [
                sell(date(2024, 3, 1), "5", "30"),
                buy(date(2024, 1, 1), "10", "10"),
            ]
        )

        self.assertEqual(result.quantity, Decimal("5"))
        self.assertEqual(result.cost_basis, Decimal("50"))

    def test_split_scales_quantity_and_keeps_basis(self) -> None:
        result = calculate_cost_basis(
            [
                buy(date(2024, 1, 1), "10", "100"),
                LedgerTransaction(
                    date=date(2024, 6, 1),
                    action=TransactionAction.SPLIT,
                    quantity=Decimal("2"),
                ),
            ]
        )

        self.assertEqual(result.quantity, Decimal("20"))
        self.assertEqual(result.cost_basis, Decimal("1000"))
        self.assertEqual(result.avg_cost, Decimal("50"))

    def test_dividend_is_income_not_a_lot(self) -> None:
        result = calculate_cost_basis(
            [
                buy(date(2024, 1, 1), "10", "100"),
                LedgerTransaction(
                    date=date(2024, 4, 1),
                    action=TransactionAction.DIVIDEND,
                    quantity=Decimal("10"),
                    unit_price=Decimal("0.5"),
                ),
            ]
        )

        self.assertEqual(result.quantity, Decimal("10"))
        self.assertEqual(result.dividend_income, Decimal("5.0"))

    def test_oversell_during_replay_is_logged_and_capped(self) -> None:
        with self.assertLogs("wealthboard.cost_basis", level="WARNING"):
            result = calculate_cost_basis(
                [
                    buy(date(2024, 1, 1), "5", "10"),
                    sell(date(2024, 2, 1), "8", "10"),
                ]
            )

        self.assertEqual(result.quantity, Decimal("0"))
        self.assertEqual(result.lots, [])

    def test_selling_half_of_two_lots_leaves_second_lot_basis(self) -> None:
        result = calculate_cost_basis(
            [
                buy(date(2024, 1, 1), "10", "1"),
                buy(date(2024, 2, 1), "10", "2"),
                sell(date(2024, 3, 1), "10", "3"),
            ]
        )

        self.assertEqual(result.quantity, Decimal("10"))
        self.assertEqual(result.cost_basis, Decimal("20"))
        self.assertEqual(result.avg_cost, Decimal("2"))

    def test_selling_everything_closes_all_lots(self) -> None:
        result = calculate_cost_basis(
            [
                buy(date(2024, 1, 1), "10", "10"),
                buy(date(2024, 2, 1), "5", "12", fees="3"),
                sell(date(2024, 3, 1), "15", "11"),
            ]
        )

        self.assertEqual(result.quantity, Decimal("0"))
        self.assertEqual(result.cost_basis, Decimal("0"))
        self.assertEqual(result.lots, [])

    def test_open_lots_sum_to_quantity(self) -> None:
        result = calculate_cost_basis(
            [
                buy(date(2024, 1, 1), "10", "10"),
                buy(date(2024, 2, 1), "5", "20", fees="1"),
                LedgerTransaction(
                    date=date(2024, 3, 1),
                    action=TransactionAction.SPLIT,
                    quantity=Decimal("2"),
                ),
                sell(date(2024, 4, 1), "12", "8"),
                buy(date(2024, 5, 1), "3", "9"),
            ]
        )

        self.assertEqual(result.quantity, Decimal("21"))
        self.assertEqual(sum(lot.remaining_quantity for lot in result.lots), result.quantity)
        self.assertEqual(sum(lot.cost_basis for lot in result.lots), result.cost_basis)

    def test_empty_ledger(self) -> None:
        result = calculate_cost_basis([])

        self.assertEqual(result.quantity, Decimal("0"))
        self.assertEqual(result.avg_cost, Decimal("0"))

    def test_gain_loss_against_current_price(self) -> None:
        result = calculate_cost_basis([buy(date(2024, 1, 1), "10", "10")])

        gain = calculate_gain_loss(result, Decimal("12"))

        self.assertEqual(gain.market_value, Decimal("120"))
        self.assertEqual(gain.gain_loss, Decimal("20"))
        self.assertEqual(gain.gain_loss_percent, Decimal("20"))

    def test_action_validation_names_the_field(self) -> None:
        self.assertIs(TransactionAction.validate(" sell "), TransactionAction.SELL)
        with self.assertRaises(ValidationError) as ctx:
            TransactionAction.validate("TRANSFER")

        self.assertEqual(ctx.exception.field, "action")


class ValidateSellTests(unittest.TestCase):
    def setUp(self) -> None:
        self.ledger = [
            buy(date(2024, 1, 1), "10", "10", txn_id="1", sequence=1),
            sell(date(2024, 2, 1), "4", "12", txn_id="2", sequence=2),
            buy(date(2024, 3, 1), "5", "11", txn_id="3", sequence=3),
        ]

    def test_sell_within_holdings_returns_available(self) -> None:
        available = validate_sell(self.ledger, date(2024, 4, 1), Decimal("11"))

        self.assertEqual(available, Decimal("11"))

    def test_only_earlier_transactions_count(self) -> None:
        with self.assertRaises(InsufficientQuantityError) as ctx:
            validate_sell(self.ledger, date(2024, 2, 15), Decimal("7"))

        self.assertEqual(ctx.exception.available, Decimal("6"))
        self.assertEqual(ctx.exception.shortfall, Decimal("1"))
        self.assertEqual(ctx.exception.as_field_errors().keys(), {"quantity"})

    def test_same_day_rows_ignored_without_sequence(self) -> None:
        with self.assertRaises(InsufficientQuantityError):
            validate_sell(self.ledger, date(2024, 3, 1), Decimal("8"))

    def test_same_day_rows_with_lower_sequence_count(self) -> None:
        available = validate_sell(self.ledger, date(2024, 3, 1), Decimal("8"), sequence=4)

        self.assertEqual(available, Decimal("11"))

    def test_excluded_row_is_not_measured_against_itself(self) -> None:
        available = validate_sell(self.ledger, date(2024, 4, 1), Decimal("15"), exclude_id="2")

        self.assertEqual(available, Decimal("15"))

    def test_non_positive_quantity_rejected(self) -> None:
        with self.assertRaises(ValidationError):
            validate_sell(self.ledger, date(2024, 4, 1), Decimal("0"))

    def test_quantity_held(self) -> None:
        self.assertEqual(quantity_held(self.ledger), Decimal("11"))



class ValidateLedgerTests(unittest.TestCase):
    def test_consistent_ledger_passes(self) -> None:
        ledger = [
            buy(date(2024, 1, 1), "10", "10", sequence=1),
            sell(date(2024, 1, 1), "10", "12", sequence=2),
        ]

        self.assertIsNone(validate_ledger(ledger))

    def test_shrunk_buy_leaves_later_sell_short(self) -> None:
        ledger = [
            buy(date(2024, 1, 1), "1", "10", sequence=1),
            sell(date(2024, 2, 1), "4", "12", sequence=2),
        ]

        with self.assertRaises(InsufficientQuantityError) as ctx:
            validate_ledger(ledger)

        self.assertEqual(ctx.exception.available, Decimal("1"))
        self.assertEqual(ctx.exception.requested, Decimal("4"))

    def test_buy_moved_after_sell_is_rejected(self) -> None:
        ledger = [
            sell(date(2024, 2, 1), "4", "12", sequence=2),
            buy(date(2024, 3, 1), "10", "10", sequence=1),
        ]

        with self.assertRaises(InsufficientQuantityError):
            validate_ledger(ledger)

    def test_reverse_split_leaves_later_sell_short(self) -> None:
        ledger = [
            buy(date(2024, 1, 1), "10", "10", sequence=1),
            LedgerTransaction(
                date=date(2024, 2, 1),
                action=TransactionAction.SPLIT,
                quantity=Decimal("0.5"),
                sequence=2,
            ),
            sell(date(2024, 3, 1), "6", "20", sequence=3),
        ]

        with self.assertRaises(InsufficientQuantityError) as ctx:
            validate_ledger(ledger)

        self.assertEqual(ctx.exception.available, Decimal("5.0"))

if __name__ == "__main__":
    unittest.main()
