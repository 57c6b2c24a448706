import asyncio
from datetime import date, datetime, timedelta
from decimal import Decimal
from functools import partial
from typing import Optional

import structlog
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel
from sqlalchemy import create_engine

from ledger import config
from ledger.aggregation import (
    EntityTotal,
    UPCOMING_DAYS,
    LedgerSummary,
    date_label,
    due_buckets,
    entity_statement,
    filter_transactions,
    payable_positions,
    receivable_positions,
    resolve_name,
    total_expenses,
)
from ledger.amounts import format_amount, parse_amount
from ledger.currency_conversion import display_value
from ledger.entries import TransactionDraft, build_transaction
from ledger.live import LiveSummary
from ledger.logging_config import configure_logging
from ledger.models import Entity, RateSnapshot, Transaction, TransactionKind
from ledger.rate_providers import (
    CompositeRateProvider,
    ExchangeRateHostProvider,
    FrankfurterRateProvider,
    RateProviderUnavailable,
)
from ledger.rate_refresh import (
    refresh_rates,
    refresh_rates_with_retry,
    run_periodic_refresh,
)
from ledger.rate_store import load_rate_snapshot, save_manual_rates
from ledger.store import ChangeNotifier, LedgerStore, SqlSettingsStore

configure_logging(config.LOG_LEVEL, config.LOG_JSON)
logger = structlog.get_logger(__name__)

app = FastAPI()

app.add_middleware(
    CORSMiddleware,
    allow_origins=[config.FRONTEND_ORIGIN],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

connect_args = {}
if config.DATABASE_URL.startswith("sqlite"):
    connect_args = {"check_same_thread": False}

engine = create_engine(config.DATABASE_URL, connect_args=connect_args)
notifier = ChangeNotifier()
store = LedgerStore(engine, notifier)
settings_store = SqlSettingsStore(engine, notifier)
live_summary = LiveSummary(store, settings_store)

GOLD_PROVIDER = ExchangeRateHostProvider(
    base_url=config.EXCHANGERATE_HOST_BASE_URL,
    access_key=config.EXCHANGERATE_HOST_KEY,
)
FX_PROVIDER = CompositeRateProvider(
    primary=FrankfurterRateProvider(base_url=config.FRANKFURTER_BASE_URL),
    fallback=GOLD_PROVIDER,
)
refresh = partial(
    refresh_rates,
    settings_store,
    fx_provider=FX_PROVIDER,
    gold_provider=GOLD_PROVIDER,
    base_currency=config.BASE_CURRENCY,
)

_background_tasks: list[asyncio.Task] = []

# Aliased so pydantic models can have a field named "date".
OptionalDate = Optional[date]


@app.on_event("startup")
async def init_ledger() -> None:
    store.create_all()
    live_summary.start()
    if config.RATE_REFRESH_ON_STARTUP:
        _background_tasks.append(asyncio.create_task(refresh_rates_with_retry(refresh)))
        _background_tasks.append(
            asyncio.create_task(
                run_periodic_refresh(refresh, interval=config.RATE_REFRESH_INTERVAL_SECONDS)
            )
        )


@app.on_event("shutdown")
async def stop_ledger() -> None:
    for task in _background_tasks:
        task.cancel()
    _background_tasks.clear()
    live_summary.stop()


class EntityPayload(BaseModel):
    name: str
    role: str | None = None
    contact: str | None = None
    note: str | None = None

    @classmethod
    def validate_payload(cls, payload: "EntityPayload") -> "EntityPayload":
        payload.name = payload.name.strip()
        payload.role = payload.role.strip() if payload.role else None
        payload.contact = payload.contact.strip() if payload.contact else None
        payload.note = payload.note.strip() if payload.note else None
        if not payload.name:
            raise ValueError("Entity name required.")
        return payload


class EntityResponse(EntityPayload):
    id: str
    created_at: datetime | None = None


class TransactionPayload(BaseModel):
    kind: str
    amount: Decimal | str
    unit: str | None = None
    date: OptionalDate = None
    open_ended: bool = False
    entity_id: str | None = None
    description: str | None = None

    @classmethod
    def validate_payload(cls, payload: "TransactionPayload") -> "TransactionPayload":
        payload.kind = TransactionKind.validate(payload.kind)
        payload.entity_id = payload.entity_id.strip() if payload.entity_id else None
        payload.unit = payload.unit.strip() if payload.unit else None
        return payload

    def to_draft(self) -> TransactionDraft:
        return TransactionDraft(
            kind=self.kind,
            amount=self.amount,
            unit=self.unit,
            date=self.date,
            open_ended=self.open_ended,
            entity_id=self.entity_id,
            description=self.description,
        )


class TransactionResponse(BaseModel):
    id: str
    kind: str
    date: OptionalDate = None
    date_label: str
    open_ended: bool
    entity_id: str | None = None
    entity_name: str
    description: str | None = None
    unit: str | None = None
    raw_amount: Decimal | None = None
    amount: Decimal
    display_amount: Decimal
    display_text: str
    created_at: datetime | None = None


class RatesPayload(BaseModel):
    usd: Decimal | str
    eur: Decimal | str
    gold_per_gram: Decimal | str


class RatesResponse(BaseModel):
    base_currency: str
    usd: Decimal
    eur: Decimal
    gold_per_gram: Decimal
    source: str
    updated_at: str


class EntityAmountResponse(BaseModel):
    entity_id: str | None = None
    name: str
    amount: Decimal
    display_text: str


class PositionsResponse(BaseModel):
    total: Decimal
    display_text: str
    entities: list[EntityAmountResponse]


class DueBucketResponse(BaseModel):
    start_day: int
    end_day: int
    total: Decimal
    display_text: str
    transactions: list[TransactionResponse]


class MonthlyCashFlowResponse(BaseModel):
    month: str
    collected: Decimal
    paid: Decimal


class SummaryResponse(BaseModel):
    as_of: date
    total_collected: Decimal
    total_paid: Decimal
    total_receivable: Decimal
    planned_payable: Decimal
    planned_receivable: Decimal
    net_position: Decimal
    upcoming_payable: Decimal
    top_receivable_balances: list[EntityAmountResponse]
    top_payable_balances: list[EntityAmountResponse]
    monthly: list[MonthlyCashFlowResponse]


class ExpensesResponse(BaseModel):
    total: Decimal
    display_text: str
    rates: RatesResponse
    transactions: list[TransactionResponse]


class StatementResponse(BaseModel):
    entity_id: str
    entity_name: str
    collected: Decimal
    paid: Decimal
    payable: Decimal
    receivable: Decimal
    net: Decimal
    transactions: list[TransactionResponse]


def entity_response(entity: Entity) -> EntityResponse:
    return EntityResponse(
        id=entity.id,
        name=entity.name,
        role=entity.role,
        contact=entity.contact,
        note=entity.note,
        created_at=entity.created_at,
    )


def transaction_response(
    txn: Transaction, rates: RateSnapshot, names: dict[str, str]
) -> TransactionResponse:
    value = display_value(txn, rates)
    return TransactionResponse(
        id=txn.id,
        kind=txn.kind,
        date=txn.date,
        date_label=date_label(txn),
        open_ended=txn.open_ended,
        entity_id=txn.entity_id,
        entity_name=resolve_name(txn.entity_id, names),
        description=txn.description,
        unit=txn.unit,
        raw_amount=txn.raw_amount,
        amount=txn.amount,
        display_amount=value,
        display_text=format_amount(value),
        created_at=txn.created_at,
    )


def rates_response(rates: RateSnapshot) -> RatesResponse:
    return RatesResponse(
        base_currency=config.BASE_CURRENCY,
        usd=rates.usd,
        eur=rates.eur,
        gold_per_gram=rates.gold_per_gram,
        source=rates.source,
        updated_at=rates.updated_at,
    )


def entity_amount_response(item: EntityTotal) -> EntityAmountResponse:
    return EntityAmountResponse(
        entity_id=item.entity_id,
        name=item.name,
        amount=item.amount,
        display_text=format_amount(item.amount),
    )


def positions_response(items: list[EntityTotal]) -> PositionsResponse:
    total = sum((item.amount for item in items), Decimal("0"))
    return PositionsResponse(
        total=total,
        display_text=format_amount(total),
        entities=[entity_amount_response(item) for item in items],
    )


def summary_response(summary: LedgerSummary) -> SummaryResponse:
    return SummaryResponse(
        as_of=summary.as_of,
        total_collected=summary.total_collected,
        total_paid=summary.total_paid,
        total_receivable=summary.total_receivable,
        planned_payable=summary.planned_payable,
        planned_receivable=summary.planned_receivable,
        net_position=summary.net_position,
        upcoming_payable=summary.upcoming_payable,
        top_receivable_balances=[
            entity_amount_response(item) for item in summary.top_receivable_balances
        ],
        top_payable_balances=[
            entity_amount_response(item) for item in summary.top_payable_balances
        ],
        monthly=[
            MonthlyCashFlowResponse(
                month=item.month.strftime("%Y-%m"),
                collected=item.collected,
                paid=item.paid,
            )
            for item in summary.monthly
        ],
    )


def ensure_entity_exists(entity_id: str | None) -> None:
    if entity_id and store.get_entity(entity_id) is None:
        raise HTTPException(status_code=404, detail="Entity not found.")


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}


@app.get("/entities", response_model=list[EntityResponse])
def list_entities() -> list[EntityResponse]:
    return [entity_response(entity) for entity in store.list_entities()]


@app.post("/entities", response_model=EntityResponse)
def create_entity(payload: EntityPayload) -> EntityResponse:
    try:
        payload = EntityPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    entity = store.insert_entity(
        name=payload.name,
        role=payload.role,
        contact=payload.contact,
        note=payload.note,
    )
    return entity_response(entity)


@app.delete("/entities/{entity_id}")
def delete_entity(entity_id: str) -> dict:
    if not store.delete_entity(entity_id):
        raise HTTPException(status_code=404, detail="Entity not found.")
    return {"status": "deleted"}


@app.get("/entities/{entity_id}/statement", response_model=StatementResponse)
def get_entity_statement(entity_id: str, q: str | None = None) -> StatementResponse:
    entity = store.get_entity(entity_id)
    if entity is None:
        raise HTTPException(status_code=404, detail="Entity not found.")
    rates = load_rate_snapshot(settings_store)
    names = {entity.id: entity.name}
    statement = entity_statement(
        entity_id,
        store.list_transactions_for_entity(entity_id),
        rates,
        query=q,
        names=names,
    )
    totals = statement.totals
    return StatementResponse(
        entity_id=entity.id,
        entity_name=entity.name,
        collected=totals.collected,
        paid=totals.paid,
        payable=totals.payable,
        receivable=totals.receivable,
        net=totals.net,
        transactions=[
            transaction_response(row.transaction, rates, names) for row in statement.rows
        ],
    )


@app.get("/transactions", response_model=list[TransactionResponse])
def list_transactions(
    entity_id: str | None = None, q: str | None = None
) -> list[TransactionResponse]:
    rates = load_rate_snapshot(settings_store)
    names = store.entity_names()
    rows = filter_transactions(store.list_transactions(), q, names, entity_id)
    return [transaction_response(txn, rates, names) for txn in rows]


@app.post("/transactions", response_model=TransactionResponse)
def create_transaction(payload: TransactionPayload) -> TransactionResponse:
    try:
        payload = TransactionPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    ensure_entity_exists(payload.entity_id)

    rates = load_rate_snapshot(settings_store)
    try:
        txn = build_transaction(
            payload.to_draft(), rates, base_currency=config.BASE_CURRENCY
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    stored = store.insert_transaction(txn)
    logger.info("transaction_saved", transaction_id=stored.id, kind=stored.kind, action="insert")
    return transaction_response(stored, rates, store.entity_names())


@app.put("/transactions/{transaction_id}", response_model=TransactionResponse)
def update_transaction(
    transaction_id: str, payload: TransactionPayload
) -> TransactionResponse:
    try:
        payload = TransactionPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    original = store.get_transaction(transaction_id)
    if original is None:
        raise HTTPException(status_code=404, detail="Transaction not found.")
    # Keeping a reference to a since-deleted entity is allowed; only new links are checked.
    if payload.entity_id != original.entity_id:
        ensure_entity_exists(payload.entity_id)

    rates = load_rate_snapshot(settings_store)
    try:
        txn = build_transaction(
            payload.to_draft(),
            rates,
            base_currency=config.BASE_CURRENCY,
            original=original,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    stored = store.update_transaction(txn)
    if stored is None:
        raise HTTPException(status_code=404, detail="Transaction not found.")
    logger.info("transaction_saved", transaction_id=stored.id, kind=stored.kind, action="update")
    return transaction_response(stored, rates, store.entity_names())


@app.delete("/transactions/{transaction_id}")
def delete_transaction(transaction_id: str) -> dict:
    if not store.delete_transaction(transaction_id):
        raise HTTPException(status_code=404, detail="Transaction not found.")
    return {"status": "deleted"}


@app.get("/rates", response_model=RatesResponse)
def get_rates() -> RatesResponse:
    return rates_response(load_rate_snapshot(settings_store))


@app.put("/rates", response_model=RatesResponse)
def update_rates(payload: RatesPayload) -> RatesResponse:
    try:
        rates = save_manual_rates(
            settings_store,
            usd=parse_amount(payload.usd),
            eur=parse_amount(payload.eur),
            gold_per_gram=parse_amount(payload.gold_per_gram),
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return rates_response(rates)


@app.post("/rates/refresh", response_model=RatesResponse)
def refresh_rates_now() -> RatesResponse:
    try:
        rates = refresh("Manual refresh: Frankfurter + exchangerate.host")
    except RateProviderUnavailable as exc:
        logger.warning("rate_refresh_failed", trigger="manual", error=str(exc))
        raise HTTPException(status_code=502, detail="Exchange rates unavailable.") from exc
    return rates_response(rates)


@app.get("/reports/summary", response_model=SummaryResponse)
def get_summary() -> SummaryResponse:
    return summary_response(live_summary.current())


@app.get("/reports/receivables", response_model=PositionsResponse)
def get_receivables() -> PositionsResponse:
    rates = load_rate_snapshot(settings_store)
    return positions_response(
        receivable_positions(store.list_transactions(), rates, store.entity_names())
    )


@app.get("/reports/payables", response_model=PositionsResponse)
def get_payables() -> PositionsResponse:
    rates = load_rate_snapshot(settings_store)
    return positions_response(
        payable_positions(store.list_transactions(), rates, store.entity_names())
    )


@app.get("/reports/upcoming", response_model=list[DueBucketResponse])
def get_upcoming_payables() -> list[DueBucketResponse]:
    today = date.today()
    rates = load_rate_snapshot(settings_store)
    names = store.entity_names()
    rows = store.list_transactions_by_kind(
        TransactionKind.PAYABLE, start_date=today, end_date=today + timedelta(days=UPCOMING_DAYS)
    )
    return [
        DueBucketResponse(
            start_day=bucket.start_day,
            end_day=bucket.end_day,
            total=bucket.total,
            display_text=format_amount(bucket.total),
            transactions=[transaction_response(txn, rates, names) for txn in bucket.transactions],
        )
        for bucket in due_buckets(rows, rates, today)
    ]


@app.get("/reports/expenses", response_model=ExpensesResponse)
def get_expenses() -> ExpensesResponse:
    rates = load_rate_snapshot(settings_store)
    names = store.entity_names()
    rows = store.list_transactions_by_kind(TransactionKind.PAID)
    total = total_expenses(rows)
    return ExpensesResponse(
        total=total,
        display_text=format_amount(total),
        rates=rates_response(rates),
        transactions=[transaction_response(txn, rates, names) for txn in rows],
    )
