from __future__ import annotations

from datetime import date, datetime
from typing import Dict, Iterable, List, Mapping, Optional

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    UniqueConstraint,
    and_,
    create_engine,
    func,
    insert,
    select,
    update,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError

from wealthboard.anomalies import CategoryKey, PeriodCategoryTotal, PeriodTransaction
from wealthboard.cost_basis import LedgerTransaction, TransactionAction
from wealthboard.net_worth import Holding, HoldingType, Snapshot
from wealthboard.payday import BudgetPeriod, PeriodWindow
from wealthboard.price_cache import CachedPrice, PriceResult

metadata = MetaData()

holdings = Table(
    "holdings",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False),
    Column("type", String(10), nullable=False),
    Column("symbol", String(50)),
    Column("name", String(255), nullable=False),
    Column("currency", String(3), nullable=False),
    Column("exchange", String(20)),
    Column("is_dormant", Boolean, nullable=False, server_default="0"),
    Column("is_active", Boolean, nullable=False, server_default="1"),
    Column("notes", String(500)),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    Column("deleted_at", DateTime),
)

transactions = Table(
    "transactions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("holding_id", Integer, ForeignKey("holdings.id"), nullable=False),
    Column("date", Date, nullable=False),
    Column("action", String(10), nullable=False),
    Column("quantity", Numeric(18, 8), nullable=False),
    Column("unit_price", Numeric(18, 8), nullable=False),
    Column("fees", Numeric(18, 8), nullable=False, server_default="0"),
    Column("currency", String(3), nullable=False),
    Column("notes", String(500)),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    Column("deleted_at", DateTime),
)

snapshots = Table(
    "snapshots",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("holding_id", Integer, ForeignKey("holdings.id"), nullable=False),
    Column("date", Date, nullable=False),
    Column("balance", Numeric(18, 2), nullable=False),
    Column("currency", String(3), nullable=False),
    Column("notes", String(500)),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    Column("deleted_at", DateTime),
)

Index(
    "uq_snapshots_holding_date_active",
    snapshots.c.holding_id,
    snapshots.c.date,
    unique=True,
    sqlite_where=snapshots.c.deleted_at.is_(None),
    postgresql_where=snapshots.c.deleted_at.is_(None),
)

price_cache = Table(
    "price_cache",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("symbol", String(50), nullable=False, unique=True),
    Column("price", Numeric(20, 8), nullable=False),
    Column("currency", String(3), nullable=False),
    Column("change_percent", Numeric(10, 4)),
    Column("change_absolute", Numeric(20, 8)),
    Column("fetched_at", DateTime(timezone=True), nullable=False),
    Column("source", String(20), nullable=False),
)

budget_periods = Table(
    "budget_periods",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("start_date", Date, nullable=False),
    Column("end_date", Date, nullable=False),
    Column("expected_income_cents", Integer, nullable=False),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    UniqueConstraint("start_date", name="uq_budget_periods_start_date"),
)

budget_categories = Table(
    "budget_categories",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("saver_key", String(100), nullable=False),
    Column("category_key", String(100), nullable=False, server_default=""),
    Column("budget_cents", Integer, nullable=False, server_default="0"),
    Column("is_active", Boolean, nullable=False, server_default="1"),
    UniqueConstraint("saver_key", "category_key", name="uq_budget_categories_key"),
)

budget_transactions = Table(
    "budget_transactions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("description", String(255), nullable=False),
    Column("amount_cents", Integer, nullable=False),
    Column("transaction_date", Date, nullable=False),
    Column("saver_key", String(100)),
    Column("category_key", String(100)),
    Column("is_transfer", Boolean, nullable=False, server_default="0"),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    Column("deleted_at", DateTime),
)


def create_db_engine(database_url: str) -> Engine:
    connect_args = {}
    if database_url.startswith("sqlite"):
        connect_args = {"check_same_thread": False}
    return create_engine(database_url, connect_args=connect_args)


def init_db(engine: Engine) -> None:
    metadata.create_all(engine)


def row_to_holding(row: Mapping) -> Holding:
    return Holding(
        id=str(row["id"]),
        type=HoldingType(row["type"]),
        currency=row["currency"],
        name=row["name"],
        symbol=row["symbol"],
        exchange=row["exchange"],
        is_dormant=bool(row["is_dormant"]),
        is_active=bool(row["is_active"]),
        deleted_at=row["deleted_at"],
    )


def row_to_transaction(row: Mapping) -> LedgerTransaction:
    return LedgerTransaction(
        id=str(row["id"]),
        date=row["date"],
        action=TransactionAction(row["action"]),
        quantity=row["quantity"],
        unit_price=row["unit_price"],
        fees=row["fees"],
        currency=row["currency"],
        sequence=row["id"],
    )


def row_to_cached_price(row: Mapping) -> CachedPrice:
    return CachedPrice(
        symbol=row["symbol"],
        price=row["price"],
        currency=row["currency"],
        change_percent=row["change_percent"],
        change_absolute=row["change_absolute"],
        fetched_at=row["fetched_at"],
        source=row["source"],
    )


def row_to_period(row: Mapping) -> BudgetPeriod:
    return BudgetPeriod(
        id=row["id"],
        start_date=row["start_date"],
        end_date=row["end_date"],
        expected_income_cents=row["expected_income_cents"],
    )


def load_holdings(conn: Connection, user_id: int) -> List[Holding]:
    rows = conn.execute(
        select(holdings)
        .where(
            holdings.c.user_id == user_id,
            holdings.c.deleted_at.is_(None),
            holdings.c.is_active.is_(True),
        )
        .order_by(holdings.c.id.asc())
    ).mappings().all()
    return [row_to_holding(row) for row in rows]


def load_holding(conn: Connection, user_id: int, holding_id: int) -> Optional[Holding]:
    row = conn.execute(
        select(holdings).where(
            holdings.c.id == holding_id,
            holdings.c.user_id == user_id,
            holdings.c.deleted_at.is_(None),
        )
    ).mappings().first()
    return row_to_holding(row) if row else None


def load_transactions(
    conn: Connection, holding_ids: Iterable[str]
) -> Dict[str, List[LedgerTransaction]]:
    ids = [int(holding_id) for holding_id in holding_ids]
    grouped: Dict[str, List[LedgerTransaction]] = {str(holding_id): [] for holding_id in ids}
    if not ids:
        return grouped
    rows = conn.execute(
        select(transactions)
        .where(transactions.c.holding_id.in_(ids), transactions.c.deleted_at.is_(None))
        .order_by(transactions.c.date.asc(), transactions.c.id.asc())
    ).mappings().all()
    for row in rows:
        grouped[str(row["holding_id"])].append(row_to_transaction(row))
    return grouped


def load_snapshots(conn: Connection, holding_ids: Iterable[str]) -> Dict[str, List[Snapshot]]:
    ids = [int(holding_id) for holding_id in holding_ids]
    grouped: Dict[str, List[Snapshot]] = {str(holding_id): [] for holding_id in ids}
    if not ids:
        return grouped
    rows = conn.execute(
        select(snapshots)
        .where(snapshots.c.holding_id.in_(ids), snapshots.c.deleted_at.is_(None))
        .order_by(snapshots.c.date.asc())
    ).mappings().all()
    for row in rows:
        grouped[str(row["holding_id"])].append(
            Snapshot(
                holding_id=str(row["holding_id"]),
                date=row["date"],
                balance=row["balance"],
                currency=row["currency"],
            )
        )
    return grouped


def load_cached_prices(conn: Connection, symbols: Iterable[str]) -> Dict[str, CachedPrice]:
    wanted = sorted({symbol for symbol in symbols if symbol})
    if not wanted:
        return {}
    rows = conn.execute(select(price_cache).where(price_cache.c.symbol.in_(wanted))).mappings().all()
    return {row["symbol"]: row_to_cached_price(row) for row in rows}


class SqlPriceStore:
    """Price cache reads and idempotent per-symbol writes."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def get_cached_price(self, symbol: str) -> Optional[CachedPrice]:
        with self.engine.begin() as conn:
            row = conn.execute(
                select(price_cache).where(price_cache.c.symbol == symbol)
            ).mappings().first()
        return row_to_cached_price(row) if row else None

    def upsert_cached_price(self, symbol: str, result: PriceResult, fetched_at: datetime) -> None:
        values = dict(
            price=result.price,
            currency=result.currency,
            change_percent=result.change_percent,
            change_absolute=result.change_absolute,
            fetched_at=fetched_at,
            source=result.source,
        )
        update_stmt = update(price_cache).where(price_cache.c.symbol == symbol).values(**values)
        try:
            with self.engine.begin() as conn:
                if conn.execute(update_stmt).rowcount == 0:
                    conn.execute(insert(price_cache).values(symbol=symbol, **values))
        except IntegrityError:
            # Another writer inserted the symbol first; apply ours on top.
            with self.engine.begin() as conn:
                conn.execute(update_stmt)


class SqlPeriodStore:
    """Budget period storage with insert-or-fetch on the unique start date."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def find_period_covering(self, target: date) -> Optional[BudgetPeriod]:
        with self.engine.begin() as conn:
            row = conn.execute(
                select(budget_periods)
                .where(
                    and_(
                        budget_periods.c.start_date <= target,
                        budget_periods.c.end_date >= target,
                    )
                )
                .order_by(budget_periods.c.start_date.desc())
                .limit(1)
            ).mappings().first()
        return row_to_period(row) if row else None

    def insert_period(self, window: PeriodWindow, expected_income_cents: int) -> Optional[BudgetPeriod]:
        stmt = (
            insert(budget_periods)
            .values(
                start_date=window.start_date,
                end_date=window.end_date,
                expected_income_cents=expected_income_cents,
            )
            .returning(
                budget_periods.c.id,
                budget_periods.c.start_date,
                budget_periods.c.end_date,
                budget_periods.c.expected_income_cents,
            )
        )
        try:
            with self.engine.begin() as conn:
                row = conn.execute(stmt).mappings().first()
        except IntegrityError:
            return None
        return row_to_period(row) if row else None


def load_period(conn: Connection, period_id: int) -> Optional[BudgetPeriod]:
    row = conn.execute(select(budget_periods).where(budget_periods.c.id == period_id)).mappings().first()
    return row_to_period(row) if row else None


def load_prior_periods(conn: Connection, before: date, limit: int) -> List[BudgetPeriod]:
    rows = conn.execute(
        select(budget_periods)
        .where(budget_periods.c.start_date < before)
        .order_by(budget_periods.c.start_date.desc())
        .limit(limit)
    ).mappings().all()
    return [row_to_period(row) for row in rows]


def _active_budget_transactions(start_date: date, end_date: date) -> list:
    return [
        budget_transactions.c.transaction_date >= start_date,
        budget_transactions.c.transaction_date <= end_date,
        budget_transactions.c.is_transfer.is_(False),
        budget_transactions.c.deleted_at.is_(None),
    ]


def load_period_transactions(conn: Connection, start_date: date, end_date: date) -> List[PeriodTransaction]:
    rows = conn.execute(
        select(budget_transactions)
        .where(*_active_budget_transactions(start_date, end_date))
        .order_by(budget_transactions.c.transaction_date.asc(), budget_transactions.c.id.asc())
    ).mappings().all()
    return [
        PeriodTransaction(
            id=str(row["id"]),
            description=row["description"],
            amount_cents=row["amount_cents"],
            transaction_date=row["transaction_date"],
            saver_key=row["saver_key"],
            category_key=row["category_key"],
        )
        for row in rows
    ]


def load_period_category_totals(
    conn: Connection, start_date: date, end_date: date
) -> List[PeriodCategoryTotal]:
    rows = conn.execute(
        select(
            budget_transactions.c.saver_key,
            budget_transactions.c.category_key,
            func.coalesce(func.sum(func.abs(budget_transactions.c.amount_cents)), 0).label("total_cents"),
            func.count().label("tx_count"),
        )
        .where(
            budget_transactions.c.amount_cents < 0,
            *_active_budget_transactions(start_date, end_date),
        )
        .group_by(budget_transactions.c.saver_key, budget_transactions.c.category_key)
    ).mappings().all()
    return [
        PeriodCategoryTotal(
            saver_key=row["saver_key"],
            category_key=row["category_key"],
            total_cents=int(row["total_cents"]),
            tx_count=int(row["tx_count"]),
        )
        for row in rows
    ]


def load_category_budgets(conn: Connection) -> Dict[CategoryKey, int]:
    rows = conn.execute(
        select(budget_categories).where(budget_categories.c.is_active.is_(True))
    ).mappings().all()
    return {(row["saver_key"], row["category_key"] or ""): row["budget_cents"] for row in rows}
