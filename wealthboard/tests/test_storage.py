import os
import tempfile
import unittest
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

from sqlalchemy import insert, update
from sqlalchemy.exc import IntegrityError

from wealthboard.payday import ensure_period_for_date, period_for_date
from wealthboard.price_cache import PriceResult, is_cache_valid
from wealthboard.storage import (
    SqlPeriodStore,
    SqlPriceStore,
    budget_transactions,
    create_db_engine,
    holdings,
    init_db,
    load_holdings,
    load_period_category_totals,
    load_period_transactions,
    load_prior_periods,
    load_transactions,
    snapshots,
    transactions,
)


class StorageTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.tmpdir = tempfile.TemporaryDirectory()
        path = os.path.join(self.tmpdir.name, "test.db")
        self.engine = create_db_engine(f"sqlite:///{path}")
        init_db(self.engine)

    def tearDown(self) -> None:
        self.engine.dispose()
        self.tmpdir.cleanup()

    def add_holding(self, conn, **values):
        row = dict(user_id=1, type="stock", name="Vanguard", currency="AUD", symbol="VAS")
        row.update(values)
        return conn.execute(insert(holdings).values(**row).returning(holdings.c.id)).scalar_one()


class PeriodStoreTests(StorageTestCase):
    def test_duplicate_start_date_reports_conflict(self) -> None:
        store = SqlPeriodStore(self.engine)
        window = period_for_date(date(2026, 3, 20))

        first = store.insert_period(window, 916853)
        second = store.insert_period(window, 916853)

        self.assertIsNotNone(first)
        self.assertIsNone(second)

    def test_ensure_period_is_idempotent(self) -> None:
        store = SqlPeriodStore(self.engine)

        first = ensure_period_for_date(date(2026, 3, 20), store)
        second = ensure_period_for_date(date(2026, 4, 1), store)

        self.assertEqual(first.id, second.id)
        self.assertEqual(first.start_date, date(2026, 3, 13))
        self.assertEqual(first.end_date, date(2026, 4, 13))

    def test_prior_periods_newest_first(self) -> None:
        store = SqlPeriodStore(self.engine)
        for target in (date(2026, 1, 20), date(2026, 2, 20), date(2026, 3, 20)):
            ensure_period_for_date(target, store)

        with self.engine.begin() as conn:
            prior = load_prior_periods(conn, date(2026, 3, 13), limit=6)

        self.assertEqual([p.start_date for p in prior], [date(2026, 2, 13), date(2026, 1, 14)])


class PriceStoreTests(StorageTestCase):
    def test_upsert_replaces_existing_row(self) -> None:
        store = SqlPriceStore(self.engine)
        now = datetime.now(timezone.utc)

        store.upsert_cached_price("VAS", PriceResult(price=Decimal("100"), currency="AUD"), now)
        store.upsert_cached_price("VAS", PriceResult(price=Decimal("101.5"), currency="AUD"), now)

        cached = store.get_cached_price("VAS")
        self.assertEqual(cached.price, Decimal("101.5"))
        self.assertTrue(is_cache_valid(cached, timedelta(minutes=15)))
        self.assertIsNone(store.get_cached_price("VGS"))


class LedgerStorageTests(StorageTestCase):
    def test_deleted_transactions_are_not_loaded(self) -> None:
        with self.engine.begin() as conn:
            holding_id = self.add_holding(conn)
            for day, qty, deleted in (
                (date(2024, 1, 1), "10", None),
                (date(2024, 2, 1), "5", datetime(2024, 3, 1)),
            ):
                conn.execute(
                    insert(transactions).values(
                        holding_id=holding_id,
                        date=day,
                        action="BUY",
                        quantity=Decimal(qty),
                        unit_price=Decimal("10"),
                        currency="AUD",
                        deleted_at=deleted,
                    )
                )
            ledgers = load_transactions(conn, [str(holding_id)])
            loaded_holdings = load_holdings(conn, 1)

        self.assertEqual(len(ledgers[str(holding_id)]), 1)
        self.assertEqual(ledgers[str(holding_id)][0].quantity, Decimal("10"))
        self.assertEqual([h.symbol for h in loaded_holdings], ["VAS"])

    def test_one_active_snapshot_per_month(self) -> None:
        with self.engine.begin() as conn:
            holding_id = self.add_holding(conn, type="cash", symbol=None, name="Offset")
            conn.execute(
                insert(snapshots).values(
                    holding_id=holding_id, date=date(2026, 3, 1), balance=Decimal("10"), currency="AUD"
                )
            )

        with self.assertRaises(IntegrityError):
            with self.engine.begin() as conn:
                conn.execute(
                    insert(snapshots).values(
                        holding_id=holding_id, date=date(2026, 3, 1), balance=Decimal("20"), currency="AUD"
                    )
                )

        with self.engine.begin() as conn:
            conn.execute(update(snapshots).values(deleted_at=datetime(2026, 3, 2)))
            conn.execute(
                insert(snapshots).values(
                    holding_id=holding_id, date=date(2026, 3, 1), balance=Decimal("20"), currency="AUD"
                )
            )


class BudgetStorageTests(StorageTestCase):
    def test_category_totals_skip_transfers_income_and_deleted(self) -> None:
        rows = [
            dict(description="Woolworths", amount_cents=-5000, saver_key="essentials", category_key="groceries"),
            dict(description="Coles", amount_cents=-3000, saver_key="essentials", category_key="groceries"),
            dict(description="Salary", amount_cents=916853),
            dict(description="To savings", amount_cents=-100000, is_transfer=True),
            dict(
                description="Aldi",
                amount_cents=-700,
                saver_key="essentials",
                category_key="groceries",
                deleted_at=datetime(2026, 3, 20),
            ),
        ]
        with self.engine.begin() as conn:
            for row in rows:
                conn.execute(insert(budget_transactions).values(transaction_date=date(2026, 3, 15), **row))
            totals = load_period_category_totals(conn, date(2026, 3, 13), date(2026, 4, 13))
            current = load_period_transactions(conn, date(2026, 3, 13), date(2026, 4, 13))

        self.assertEqual(len(totals), 1)
        self.assertEqual(totals[0].total_cents, 8000)
        self.assertEqual(totals[0].tx_count, 2)
        self.assertEqual(sorted(tx.description for tx in current), ["Coles", "Salary", "Woolworths"])


if __name__ == "__main__":
    unittest.main()
