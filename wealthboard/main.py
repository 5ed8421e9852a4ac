import logging
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

from fastapi import FastAPI, Header, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel
from sqlalchemy import insert, select, update
from sqlalchemy.exc import IntegrityError

from wealthboard.anomalies import Anomaly, build_category_averages, detect_anomalies
from wealthboard.budget_engine import CategoryBudget, summarize_budget
from wealthboard.config import load_settings
from wealthboard.cost_basis import (
    LedgerTransaction,
    TransactionAction,
    calculate_cost_basis,
    calculate_gain_loss,
    validate_ledger,
)
from wealthboard.currency_conversion import (
    ACCOUNTING_PLACES,
    CompositeRateProvider,
    ExchangeRateApiProvider,
    StaticRateProvider,
    convert_amount,
    normalize_currency,
    quantize_money,
    validate_supported_currency,
)
from wealthboard.errors import DataUnavailableError, ValidationError
from wealthboard.net_worth import (
    SNAPSHOT_TYPES,
    TRADEABLE_TYPES,
    HoldingType,
    HoldingValue,
    calculate_net_worth,
)
from wealthboard.payday import ensure_period_for_date, period_context
from wealthboard.performers import Performer, get_top_performers
from wealthboard.price_cache import is_cache_valid, refresh_prices
from wealthboard.price_fetcher import YahooChartFetcher
from wealthboard.storage import (
    SqlPeriodStore,
    SqlPriceStore,
    budget_transactions,
    create_db_engine,
    holdings,
    init_db,
    load_cached_prices,
    load_category_budgets,
    load_holding,
    load_holdings,
    load_period,
    load_period_category_totals,
    load_period_transactions,
    load_prior_periods,
    load_snapshots,
    load_transactions,
    row_to_transaction,
    snapshots,
    transactions,
)

logger = logging.getLogger(__name__)

settings = load_settings()

app = FastAPI()

app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.frontend_origin],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

engine = create_db_engine(settings.database_url)

RATE_PROVIDER = CompositeRateProvider(
    primary=ExchangeRateApiProvider(
        api_key=settings.exchange_rate_api_key,
        cache_ttl_seconds=settings.rate_cache_ttl_seconds,
    ),
    fallback=StaticRateProvider(),
)

PRICE_FETCHER = YahooChartFetcher()


@app.on_event("startup")
def startup() -> None:
    init_db(engine)


class HoldingPayload(BaseModel):
    type: str
    name: str
    currency: str
    symbol: str | None = None
    exchange: str | None = None
    is_dormant: bool = False
    notes: str | None = None

    @classmethod
    def validate_payload(cls, payload: "HoldingPayload") -> "HoldingPayload":
        try:
            payload.type = HoldingType(payload.type.strip().lower()).value
        except ValueError as exc:
            allowed = ", ".join(t.value for t in HoldingType)
            raise ValidationError(f"Type must be one of: {allowed}", field="type") from exc
        payload.name = payload.name.strip()
        if not payload.name:
            raise ValidationError("Holding name required.", field="name")
        payload.currency = validate_supported_currency(payload.currency)
        payload.symbol = payload.symbol.strip().upper() if payload.symbol else None
        if HoldingType(payload.type) in TRADEABLE_TYPES and not payload.symbol:
            raise ValidationError("Tradeable holdings require a symbol.", field="symbol")
        payload.exchange = payload.exchange.strip().upper() if payload.exchange else None
        payload.notes = payload.notes.strip() if payload.notes else None
        return payload


class HoldingResponse(BaseModel):
    id: int
    type: str
    name: str
    currency: str
    symbol: str | None = None
    exchange: str | None = None
    is_dormant: bool = False


class TransactionPayload(BaseModel):
    holding_id: int
    date: date
    action: str
    quantity: Decimal
    unit_price: Decimal
    currency: str
    fees: Decimal = Decimal("0")
    notes: str | None = None

    @classmethod
    def validate_payload(cls, payload: "TransactionPayload") -> "TransactionPayload":
        payload.action = TransactionAction.validate(payload.action).value
        if payload.quantity <= 0:
            raise ValidationError("Quantity must be a positive number", field="quantity")
        if payload.unit_price < 0:
            raise ValidationError("Unit price must be a non-negative number", field="unit_price")
        if payload.fees < 0:
            raise ValidationError("Fees must be a non-negative number", field="fees")
        payload.currency = validate_supported_currency(payload.currency)
        payload.notes = payload.notes.strip() if payload.notes else None
        return payload


class TransactionResponse(BaseModel):
    id: int
    holding_id: int
    date: date
    action: str
    quantity: Decimal
    unit_price: Decimal
    fees: Decimal
    currency: str
    notes: str | None = None


class SnapshotPayload(BaseModel):
    holding_id: int
    date: date
    balance: Decimal
    currency: str
    notes: str | None = None


class SnapshotResponse(BaseModel):
    id: int
    holding_id: int
    date: date
    balance: Decimal
    currency: str


class LotResponse(BaseModel):
    date: date
    quantity: Decimal
    unit_cost: Decimal
    cost_basis: Decimal


class HoldingDetailResponse(BaseModel):
    id: int
    name: str
    type: str
    currency: str
    quantity: Decimal
    cost_basis: Decimal
    avg_cost: Decimal
    realized_gain: Decimal
    dividend_income: Decimal
    lots: list[LotResponse]
    price: Decimal | None = None
    price_is_stale: bool | None = None
    market_value: Decimal | None = None
    gain_loss: Decimal | None = None
    gain_loss_percent: Decimal | None = None


class HoldingValueResponse(BaseModel):
    id: str
    name: str
    symbol: str | None = None
    value_aud: Decimal
    currency: str
    value_native: Decimal
    quantity: Decimal | None = None
    price: Decimal | None = None
    as_of: date | None = None


class BreakdownResponse(BaseModel):
    type: str
    value_aud: Decimal
    value: Decimal
    count: int
    holdings: list[HoldingValueResponse]


class StaleHoldingResponse(BaseModel):
    holding_id: str
    reason: str
    age_minutes: int | None = None
    last_updated: date | None = None


class NetWorthResponse(BaseModel):
    net_worth: Decimal
    total_assets: Decimal
    total_debt: Decimal
    currency: str
    breakdown: list[BreakdownResponse]
    debt_breakdown: list[HoldingValueResponse]
    stale_holdings: list[StaleHoldingResponse]
    has_stale_data: bool
    calculated_at: datetime


class PerformerResponse(BaseModel):
    holding_id: str
    name: str
    symbol: str
    type: str
    current_value: Decimal
    cost_basis: Decimal
    gain_loss: Decimal
    gain_loss_percent: Decimal


class TopPerformersResponse(BaseModel):
    gainers: list[PerformerResponse]
    losers: list[PerformerResponse]
    calculated_at: datetime | None = None


class PriceRefreshResponse(BaseModel):
    refreshed: list[str]
    skipped: list[str]
    failed: dict[str, str]


class BudgetPeriodResponse(BaseModel):
    id: int
    start_date: date
    end_date: date
    expected_income_cents: int


class BudgetTransactionPayload(BaseModel):
    description: str
    amount_cents: int
    transaction_date: date
    saver_key: str | None = None
    category_key: str | None = None
    is_transfer: bool = False


class AnomalyResponse(BaseModel):
    id: str
    kind: str
    severity: str
    saver_key: str | None = None
    category_key: str | None = None
    description: str
    current_value: int
    baseline_value: int
    projected_value: int | None = None
    transaction_ids: list[str]


class AnomaliesResponse(BaseModel):
    period_id: int
    anomalies: list[AnomalyResponse]


class CategorySummaryResponse(BaseModel):
    saver_key: str | None = None
    category_key: str
    budgeted_cents: int
    spent_cents: int
    remaining_cents: int
    percent_used: Decimal
    status: str
    pace_expected_cents: int
    pace_status: str


class BudgetSummaryResponse(BaseModel):
    period_id: int
    start_date: date
    end_date: date
    expected_income_cents: int
    actual_income_cents: int
    budgeted_cents: int
    spent_cents: int
    unallocated_cents: int
    savings_cents: int
    savings_rate: Decimal
    days_elapsed: int
    days_remaining: int
    total_days: int
    categories: list[CategorySummaryResponse]


def get_user_id(x_user_id: str | None) -> int:
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing user identity.")
    try:
        return int(x_user_id)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid user identity.") from exc


def validation_failed(exc: ValidationError) -> HTTPException:
    return HTTPException(status_code=400, detail={"errors": exc.as_field_errors()})


def today() -> date:
    return date.today()


def _transaction_response(row) -> TransactionResponse:
    return TransactionResponse(
        id=row["id"],
        holding_id=row["holding_id"],
        date=row["date"],
        action=row["action"],
        quantity=row["quantity"],
        unit_price=row["unit_price"],
        fees=row["fees"],
        currency=row["currency"],
        notes=row["notes"],
    )


def _holding_value_response(value: HoldingValue) -> HoldingValueResponse:
    return HoldingValueResponse(
        id=value.id,
        name=value.name,
        symbol=value.symbol,
        value_aud=quantize_money(value.value_aud),
        currency=value.currency,
        value_native=quantize_money(value.value_native),
        quantity=value.quantity,
        price=value.price,
        as_of=value.as_of,
    )


def _performer_response(performer: Performer) -> PerformerResponse:
    return PerformerResponse(
        holding_id=performer.holding_id,
        name=performer.name,
        symbol=performer.symbol,
        type=performer.type.value,
        current_value=quantize_money(performer.current_value),
        cost_basis=quantize_money(performer.cost_basis),
        gain_loss=quantize_money(performer.gain_loss),
        gain_loss_percent=quantize_money(performer.gain_loss_percent),
    )


def _anomaly_response(anomaly: Anomaly) -> AnomalyResponse:
    return AnomalyResponse(
        id=anomaly.id,
        kind=anomaly.kind.value,
        severity=anomaly.severity.value,
        saver_key=anomaly.saver_key,
        category_key=anomaly.category_key,
        description=anomaly.description,
        current_value=anomaly.current_value,
        baseline_value=anomaly.baseline_value,
        projected_value=anomaly.projected_value,
        transaction_ids=anomaly.transaction_ids,
    )


def _require_tradeable(conn, user_id: int, holding_id: int):
    holding = load_holding(conn, user_id, holding_id)
    if holding is None:
        raise validation_failed(ValidationError("Holding not found", field="holding_id"))
    if holding.type not in TRADEABLE_TYPES:
        allowed = ", ".join(sorted(t.value for t in TRADEABLE_TYPES))
        raise validation_failed(
            ValidationError(
                f"Transactions can only be added to tradeable holdings ({allowed})",
                field="holding_id",
            )
        )
    return holding


def _ledger_candidate(
    payload: TransactionPayload, sequence: int, transaction_id: int | None = None
) -> LedgerTransaction:
    return LedgerTransaction(
        id=str(transaction_id) if transaction_id is not None else None,
        date=payload.date,
        action=TransactionAction(payload.action),
        quantity=payload.quantity,
        unit_price=payload.unit_price,
        fees=payload.fees,
        currency=payload.currency,
        sequence=sequence,
    )


def _check_ledger(
    conn,
    holding_id: int,
    candidate: LedgerTransaction | None = None,
    drop_id: int | None = None,
) -> None:
    """Reject a write that would leave any SELL on the holding short."""
    ledger = load_transactions(conn, [str(holding_id)])[str(holding_id)]
    removed = {str(drop_id)} if drop_id is not None else set()
    if candidate is not None and candidate.id is not None:
        removed.add(candidate.id)
    ledger = [txn for txn in ledger if txn.id not in removed]
    if candidate is not None:
        ledger.append(candidate)
    try:
        validate_ledger(ledger)
    except ValidationError as exc:
        raise validation_failed(exc) from exc


def _next_sequence(conn, holding_id: int) -> int:
    # Row ids order same-day entries; a new row sorts after every existing one.
    ledger = load_transactions(conn, [str(holding_id)])[str(holding_id)]
    return max((txn.sequence for txn in ledger), default=0) + 1


def _resolve_period(period_id: int | None):
    if period_id is None:
        return ensure_period_for_date(
            today(), SqlPeriodStore(engine), settings.expected_income_cents
        )
    with engine.begin() as conn:
        period = load_period(conn, period_id)
    if period is None:
        raise HTTPException(status_code=404, detail="No budget period found")
    return period


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}


@app.get("/exchange-rates")
def get_exchange_rates() -> dict:
    rates = RATE_PROVIDER.get_rates()
    return {"base": "AUD", "rates": {key: str(value) for key, value in rates.items()}}


@app.post("/holdings", response_model=HoldingResponse, status_code=201)
def create_holding(
    payload: HoldingPayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> HoldingResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = HoldingPayload.validate_payload(payload)
    except ValidationError as exc:
        raise validation_failed(exc) from exc

    stmt = (
        insert(holdings)
        .values(
            user_id=user_id,
            type=payload.type,
            name=payload.name,
            currency=payload.currency,
            symbol=payload.symbol,
            exchange=payload.exchange,
            is_dormant=payload.is_dormant,
            notes=payload.notes,
        )
        .returning(holdings)
    )
    with engine.begin() as conn:
        row = conn.execute(stmt).mappings().first()

    if not row:
        raise HTTPException(status_code=500, detail="Failed to create holding.")
    return HoldingResponse(
        id=row["id"],
        type=row["type"],
        name=row["name"],
        currency=row["currency"],
        symbol=row["symbol"],
        exchange=row["exchange"],
        is_dormant=row["is_dormant"],
    )


@app.get("/holdings", response_model=list[HoldingResponse])
def list_holdings(x_user_id: str | None = Header(None, alias="x-user-id")) -> list[HoldingResponse]:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        rows = load_holdings(conn, user_id)
    return [
        HoldingResponse(
            id=int(h.id),
            type=h.type.value,
            name=h.name,
            currency=h.currency,
            symbol=h.symbol,
            exchange=h.exchange,
            is_dormant=h.is_dormant,
        )
        for h in rows
    ]


@app.get("/holdings/{holding_id}", response_model=HoldingDetailResponse)
def get_holding_detail(
    holding_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
) -> HoldingDetailResponse:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        holding = load_holding(conn, user_id, holding_id)
        if holding is None:
            raise HTTPException(status_code=404, detail="Holding not found.")
        ledger = load_transactions(conn, [holding.id])[holding.id]
        prices = load_cached_prices(conn, [holding.symbol] if holding.symbol else [])

    result = calculate_cost_basis(ledger)
    response = HoldingDetailResponse(
        id=holding_id,
        name=holding.name,
        type=holding.type.value,
        currency=holding.currency,
        quantity=result.quantity,
        cost_basis=quantize_money(result.cost_basis),
        avg_cost=quantize_money(result.avg_cost, ACCOUNTING_PLACES),
        realized_gain=quantize_money(result.realized_gain),
        dividend_income=quantize_money(result.dividend_income),
        lots=[
            LotResponse(
                date=lot.date,
                quantity=lot.remaining_quantity,
                unit_cost=quantize_money(lot.unit_cost, ACCOUNTING_PLACES),
                cost_basis=quantize_money(lot.cost_basis),
            )
            for lot in result.lots
        ],
    )

    cached = prices.get(holding.symbol) if holding.symbol else None
    if cached is None:
        return response

    # Cost basis is kept in the holding's currency; express the price there too.
    price = convert_amount(
        cached.price, cached.currency, holding.currency, RATE_PROVIDER.get_rates(), ACCOUNTING_PLACES
    )
    gain = calculate_gain_loss(result, price)
    response.price = price
    response.price_is_stale = not is_cache_valid(
        cached, timedelta(minutes=settings.price_cache_ttl_minutes)
    )
    response.market_value = quantize_money(gain.market_value)
    response.gain_loss = quantize_money(gain.gain_loss)
    if gain.gain_loss_percent is not None:
        response.gain_loss_percent = quantize_money(gain.gain_loss_percent)
    return response


@app.post("/transactions", response_model=TransactionResponse, status_code=201)
def create_transaction(
    payload: TransactionPayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> TransactionResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = TransactionPayload.validate_payload(payload)
    except ValidationError as exc:
        raise validation_failed(exc) from exc

    with engine.begin() as conn:
        _require_tradeable(conn, user_id, payload.holding_id)
        sequence = _next_sequence(conn, payload.holding_id)
        _check_ledger(conn, payload.holding_id, _ledger_candidate(payload, sequence))
        row = conn.execute(
            insert(transactions)
            .values(
                holding_id=payload.holding_id,
                date=payload.date,
                action=payload.action,
                quantity=payload.quantity,
                unit_price=payload.unit_price,
                fees=payload.fees,
                currency=payload.currency,
                notes=payload.notes,
            )
            .returning(transactions)
        ).mappings().first()

    if not row:
        raise HTTPException(status_code=500, detail="Failed to create transaction.")
    return _transaction_response(row)


@app.put("/transactions/{transaction_id}", response_model=TransactionResponse)
def update_transaction(
    transaction_id: int,
    payload: TransactionPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> TransactionResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = TransactionPayload.validate_payload(payload)
    except ValidationError as exc:
        raise validation_failed(exc) from exc

    with engine.begin() as conn:
        _require_tradeable(conn, user_id, payload.holding_id)
        _check_ledger(
            conn, payload.holding_id, _ledger_candidate(payload, transaction_id, transaction_id)
        )
        row = conn.execute(
            update(transactions)
            .where(
                transactions.c.id == transaction_id,
                transactions.c.holding_id == payload.holding_id,
                transactions.c.deleted_at.is_(None),
            )
            .values(
                date=payload.date,
                action=payload.action,
                quantity=payload.quantity,
                unit_price=payload.unit_price,
                fees=payload.fees,
                currency=payload.currency,
                notes=payload.notes,
            )
            .returning(transactions)
        ).mappings().first()
        if not row:
            raise HTTPException(status_code=404, detail="Transaction not found.")
    return _transaction_response(row)


def _owned_transaction(conn, user_id: int, transaction_id: int):
    row = conn.execute(
        select(transactions)
        .select_from(transactions.join(holdings, transactions.c.holding_id == holdings.c.id))
        .where(transactions.c.id == transaction_id, holdings.c.user_id == user_id)
    ).mappings().first()
    if not row:
        raise HTTPException(status_code=404, detail="Transaction not found.")
    return row


@app.delete("/transactions/{transaction_id}", response_model=TransactionResponse)
def delete_transaction(
    transaction_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
) -> TransactionResponse:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        row = _owned_transaction(conn, user_id, transaction_id)
        if row["deleted_at"] is not None:
            raise HTTPException(status_code=404, detail="Transaction not found.")
        _check_ledger(conn, row["holding_id"], drop_id=transaction_id)
        conn.execute(
            update(transactions)
            .where(transactions.c.id == transaction_id)
            .values(deleted_at=datetime.now(timezone.utc))
        )
    return _transaction_response(row)


@app.post("/transactions/{transaction_id}/restore", response_model=TransactionResponse)
def restore_transaction(
    transaction_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
) -> TransactionResponse:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        row = _owned_transaction(conn, user_id, transaction_id)
        if row["deleted_at"] is None:
            raise HTTPException(status_code=409, detail="Transaction is not deleted.")
        _check_ledger(conn, row["holding_id"], row_to_transaction(row))
        conn.execute(
            update(transactions).where(transactions.c.id == transaction_id).values(deleted_at=None)
        )
    return _transaction_response(row)


@app.post("/snapshots", response_model=SnapshotResponse, status_code=201)
def create_snapshot(
    payload: SnapshotPayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> SnapshotResponse:
    user_id = get_user_id(x_user_id)
    try:
        currency = validate_supported_currency(payload.currency)
    except ValidationError as exc:
        raise validation_failed(exc) from exc

    try:
        with engine.begin() as conn:
            holding = load_holding(conn, user_id, payload.holding_id)
            if holding is None:
                raise validation_failed(ValidationError("Holding not found", field="holding_id"))
            if holding.type not in SNAPSHOT_TYPES:
                raise validation_failed(
                    ValidationError("Snapshots can only be added to super, cash or debt holdings", field="holding_id")
                )
            row = conn.execute(
                insert(snapshots)
                .values(
                    holding_id=payload.holding_id,
                    date=payload.date.replace(day=1),
                    balance=payload.balance,
                    currency=currency,
                    notes=payload.notes.strip() if payload.notes else None,
                )
                .returning(snapshots)
            ).mappings().first()
    except IntegrityError as exc:
        raise HTTPException(status_code=409, detail="Snapshot already exists for this month.") from exc

    return SnapshotResponse(
        id=row["id"],
        holding_id=row["holding_id"],
        date=row["date"],
        balance=row["balance"],
        currency=row["currency"],
    )


@app.post("/prices/refresh", response_model=PriceRefreshResponse)
def refresh_holding_prices(
    force: bool = False, x_user_id: str | None = Header(None, alias="x-user-id")
) -> PriceRefreshResponse:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        tradeable = [h for h in load_holdings(conn, user_id) if h.type in TRADEABLE_TYPES and h.symbol]
    exchanges = {h.symbol: h.exchange for h in tradeable}

    store = SqlPriceStore(engine)
    report = refresh_prices(
        exchanges.keys(),
        lambda symbol: PRICE_FETCHER.fetch(symbol, exchanges.get(symbol)),
        store,
        max_workers=settings.price_refresh_workers,
        get_cached=store.get_cached_price,
        force_refresh=force,
        ttl=timedelta(minutes=settings.price_cache_ttl_minutes),
    )
    return PriceRefreshResponse(
        refreshed=sorted(report.refreshed),
        skipped=report.skipped,
        failed=report.failed,
    )


@app.get("/net-worth", response_model=NetWorthResponse)
def get_net_worth(
    currency: str | None = None,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> NetWorthResponse:
    user_id = get_user_id(x_user_id)
    try:
        display_currency = normalize_currency(currency) if currency else settings.display_currency
    except ValidationError as exc:
        raise validation_failed(exc) from exc

    with engine.begin() as conn:
        user_holdings = load_holdings(conn, user_id)
        ids = [h.id for h in user_holdings]
        ledgers = load_transactions(conn, ids)
        balances = load_snapshots(conn, ids)
        prices = load_cached_prices(conn, [h.symbol for h in user_holdings if h.symbol])

    try:
        result = calculate_net_worth(
            user_holdings,
            ledgers,
            balances,
            prices,
            RATE_PROVIDER.get_rates(),
            display_currency=display_currency,
            price_ttl=timedelta(minutes=settings.price_cache_ttl_minutes),
        )
    except ValidationError as exc:
        raise validation_failed(exc) from exc

    return NetWorthResponse(
        net_worth=result.net_worth,
        total_assets=result.total_assets,
        total_debt=result.total_debt,
        currency=result.currency,
        breakdown=[
            BreakdownResponse(
                type=b.type.value,
                value_aud=b.value_aud,
                value=b.value,
                count=b.count,
                holdings=[_holding_value_response(v) for v in b.holdings],
            )
            for b in result.breakdown
        ],
        debt_breakdown=[_holding_value_response(v) for v in result.debt_breakdown],
        stale_holdings=[
            StaleHoldingResponse(
                holding_id=s.holding_id,
                reason=s.reason.value,
                age_minutes=s.age_minutes,
                last_updated=s.last_updated,
            )
            for s in result.stale_holdings
        ],
        has_stale_data=result.has_stale_data,
        calculated_at=result.calculated_at,
    )


@app.get("/performers", response_model=TopPerformersResponse)
def get_performers(
    limit: int = 5, x_user_id: str | None = Header(None, alias="x-user-id")
) -> TopPerformersResponse:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        user_holdings = [h for h in load_holdings(conn, user_id) if h.type in TRADEABLE_TYPES]
        ledgers = load_transactions(conn, [h.id for h in user_holdings])
        prices = load_cached_prices(conn, [h.symbol for h in user_holdings if h.symbol])
    result = get_top_performers(user_holdings, ledgers, prices, RATE_PROVIDER.get_rates(), limit=limit)
    return TopPerformersResponse(
        gainers=[_performer_response(p) for p in result.gainers],
        losers=[_performer_response(p) for p in result.losers],
        calculated_at=result.calculated_at,
    )


@app.get("/budget/periods/current", response_model=BudgetPeriodResponse)
def get_current_period() -> BudgetPeriodResponse:
    try:
        period = _resolve_period(None)
    except DataUnavailableError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return BudgetPeriodResponse(
        id=period.id,
        start_date=period.start_date,
        end_date=period.end_date,
        expected_income_cents=period.expected_income_cents,
    )


@app.post("/budget/transactions", status_code=201)
def create_budget_transaction(payload: BudgetTransactionPayload) -> dict:
    description = payload.description.strip()
    if not description:
        raise validation_failed(ValidationError("Description required.", field="description"))
    if payload.amount_cents == 0:
        raise validation_failed(ValidationError("Amount must not be zero.", field="amount_cents"))
    with engine.begin() as conn:
        row = conn.execute(
            insert(budget_transactions)
            .values(
                description=description,
                amount_cents=payload.amount_cents,
                transaction_date=payload.transaction_date,
                saver_key=payload.saver_key,
                category_key=payload.category_key,
                is_transfer=payload.is_transfer,
            )
            .returning(budget_transactions.c.id)
        ).mappings().first()
    return {"id": row["id"]}


@app.get("/budget/anomalies", response_model=AnomaliesResponse)
def get_anomalies(period_id: int | None = None) -> AnomaliesResponse:
    try:
        period = _resolve_period(period_id)
    except DataUnavailableError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc

    context = period_context(period.start_date, period.end_date, today())
    with engine.begin() as conn:
        current = load_period_transactions(conn, period.start_date, period.end_date)
        prior_periods = load_prior_periods(conn, period.start_date, settings.anomaly_lookback_periods)
        prior_totals = []
        for prior in prior_periods:
            prior_totals.extend(load_period_category_totals(conn, prior.start_date, prior.end_date))
        budgets = load_category_budgets(conn)

    averages = build_category_averages(prior_totals, len(prior_periods), budgets)
    anomalies = detect_anomalies(current, averages, context)
    logger.debug("Detected %d anomalies for period %s", len(anomalies), period.id)
    return AnomaliesResponse(
        period_id=period.id,
        anomalies=[_anomaly_response(a) for a in anomalies],
    )


@app.get("/budget/summary", response_model=BudgetSummaryResponse)
def get_budget_summary(period_id: int | None = None) -> BudgetSummaryResponse:
    try:
        period = _resolve_period(period_id)
    except DataUnavailableError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc

    context = period_context(period.start_date, period.end_date, today())
    with engine.begin() as conn:
        current = load_period_transactions(conn, period.start_date, period.end_date)
        budgets = load_category_budgets(conn)

    spent: dict[tuple[str, str], int] = {}
    actual_income = 0
    for tx in current:
        if tx.amount_cents > 0:
            actual_income += tx.amount_cents
            continue
        key = (tx.saver_key or "", tx.category_key or "")
        spent[key] = spent.get(key, 0) + abs(tx.amount_cents)

    summary = summarize_budget(
        [
            CategoryBudget(
                saver_key=saver_key,
                category_key=category_key,
                budgeted_cents=budgeted,
                spent_cents=spent.get((saver_key, category_key), 0),
            )
            for (saver_key, category_key), budgeted in sorted(budgets.items())
        ],
        context,
        period.expected_income_cents,
        actual_income,
    )
    return BudgetSummaryResponse(
        period_id=period.id,
        start_date=period.start_date,
        end_date=period.end_date,
        expected_income_cents=summary.expected_income_cents,
        actual_income_cents=summary.actual_income_cents,
        budgeted_cents=summary.budgeted_cents,
        spent_cents=summary.spent_cents,
        unallocated_cents=summary.unallocated_cents,
        savings_cents=summary.savings_cents,
        savings_rate=summary.savings_rate,
        days_elapsed=context.days_elapsed,
        days_remaining=context.days_remaining,
        total_days=context.total_days,
        categories=[
            CategorySummaryResponse(
                saver_key=c.saver_key,
                category_key=c.category_key,
                budgeted_cents=c.budgeted_cents,
                spent_cents=c.spent_cents,
                remaining_cents=c.remaining_cents,
                percent_used=c.percent_used,
                status=c.status,
                pace_expected_cents=c.pace_expected_cents,
                pace_status=c.pace_status,
            )
            for c in summary.categories
        ],
    )
