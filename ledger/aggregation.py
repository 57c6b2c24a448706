from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, time
from decimal import Decimal
from typing import Iterable, List, Mapping, Optional

from ledger.currency_conversion import display_value
from ledger.models import (
    UNASSIGNED_NAME,
    ZERO,
    RateSnapshot,
    Transaction,
    TransactionKind,
)

# Calendar dates are compared at midday so a timezone shift cannot move them a day.
DAY_ANCHOR = time(12, 0)
DUE_WINDOWS = ((0, 7), (8, 14), (15, 30))
UPCOMING_DAYS = 30
CASH_FLOW_MONTHS = 6
TOP_LIMIT = 5
OPEN_ENDED_LABEL = "open-ended"


@dataclass(frozen=True)
class EntityBalance:
    entity_id: Optional[str]
    name: str
    collected: Decimal = ZERO
    paid: Decimal = ZERO
    payable: Decimal = ZERO
    receivable: Decimal = ZERO

    @property
    def net(self) -> Decimal:
        return self.receivable + self.paid - self.collected - self.payable


@dataclass(frozen=True)
class EntityTotal:
    entity_id: Optional[str]
    name: str
    amount: Decimal


@dataclass(frozen=True)
class DueBucket:
    start_day: int
    end_day: int
    transactions: List[Transaction]
    total: Decimal


@dataclass(frozen=True)
class MonthlyCashFlow:
    month: date
    collected: Decimal
    paid: Decimal


@dataclass(frozen=True)
class StatementRow:
    transaction: Transaction
    value: Decimal


@dataclass(frozen=True)
class EntityStatement:
    entity_id: str
    rows: List[StatementRow]
    totals: EntityBalance


@dataclass(frozen=True)
class LedgerSummary:
    as_of: date
    total_collected: Decimal
    total_paid: Decimal
    total_receivable: Decimal
    planned_payable: Decimal
    planned_receivable: Decimal
    net_position: Decimal
    upcoming_payable: Decimal
    top_receivable_balances: List[EntityTotal] = field(default_factory=list)
    top_payable_balances: List[EntityTotal] = field(default_factory=list)
    monthly: List[MonthlyCashFlow] = field(default_factory=list)


def net_balance(
    entity_id: Optional[str],
    transactions: Iterable[Transaction],
    rates: RateSnapshot,
) -> Decimal:
    """Signed balance of one entity; positive means the entity owes the ledger owner."""
    balance = _balance_for(
        entity_id,
        UNASSIGNED_NAME,
        (txn for txn in transactions if txn.entity_id == entity_id),
        rates,
    )
    return balance.net


def entity_balances(
    transactions: Iterable[Transaction],
    rates: RateSnapshot,
    names: Mapping[str, str] | None = None,
) -> List[EntityBalance]:
    grouped: dict[Optional[str], list[Transaction]] = {}
    for txn in transactions:
        grouped.setdefault(txn.entity_id, []).append(txn)
    return [
        _balance_for(entity_id, resolve_name(entity_id, names), rows, rates)
        for entity_id, rows in grouped.items()
    ]


def receivable_positions(
    transactions: Iterable[Transaction],
    rates: RateSnapshot,
    names: Mapping[str, str] | None = None,
) -> List[EntityTotal]:
    """Entities whose receivables exceed their collections, largest first."""
    positions = []
    for balance in entity_balances(transactions, rates, names):
        outstanding = balance.receivable - balance.collected
        if outstanding > ZERO:
            positions.append(EntityTotal(balance.entity_id, balance.name, outstanding))
    return sorted(positions, key=lambda item: item.amount, reverse=True)


def total_receivables(
    transactions: Iterable[Transaction],
    rates: RateSnapshot,
) -> Decimal:
    return sum(
        (position.amount for position in receivable_positions(transactions, rates)),
        ZERO,
    )


def payable_positions(
    transactions: Iterable[Transaction],
    rates: RateSnapshot,
    names: Mapping[str, str] | None = None,
) -> List[EntityTotal]:
    """Entities with a negative four-term net, largest debt first, as positive amounts."""
    positions = [
        EntityTotal(balance.entity_id, balance.name, abs(balance.net))
        for balance in entity_balances(transactions, rates, names)
        if balance.net < ZERO
    ]
    return sorted(positions, key=lambda item: item.amount, reverse=True)


def total_payables(
    transactions: Iterable[Transaction],
    rates: RateSnapshot,
) -> Decimal:
    return sum(
        (position.amount for position in payable_positions(transactions, rates)),
        ZERO,
    )


def due_buckets(
    transactions: Iterable[Transaction],
    rates: RateSnapshot,
    today: date,
) -> List[DueBucket]:
    """Dated payables split into 0-7, 8-14 and 15-30 days from ``today``, bounds inclusive."""
    members: dict[tuple[int, int], list[Transaction]] = {window: [] for window in DUE_WINDOWS}
    for txn in _dated_payables(transactions):
        days = days_between(today, txn.date)
        for window in DUE_WINDOWS:
            if window[0] <= days <= window[1]:
                members[window].append(txn)
                break
    return [
        DueBucket(
            start_day=start,
            end_day=end,
            transactions=rows,
            total=_sum_display(rows, rates),
        )
        for (start, end), rows in members.items()
    ]


def upcoming_total(
    transactions: Iterable[Transaction],
    rates: RateSnapshot,
    today: date,
    days: int = UPCOMING_DAYS,
) -> Decimal:
    rows = [
        txn
        for txn in _dated_payables(transactions)
        if 0 <= days_between(today, txn.date) <= days
    ]
    return _sum_display(rows, rates)


def monthly_cash_flow(
    transactions: Iterable[Transaction],
    rates: RateSnapshot,
    today: date,
    months: int = CASH_FLOW_MONTHS,
) -> List[MonthlyCashFlow]:
    """Collected and paid sums per calendar month, oldest first, ending with ``today``'s month."""
    window = [shift_month(month_start(today), -offset) for offset in range(months - 1, -1, -1)]
    sums = {month: [ZERO, ZERO] for month in window}
    for txn in transactions:
        if txn.kind not in TransactionKind.realized or txn.date is None:
            continue
        bucket = sums.get(month_start(txn.date))
        if bucket is None:
            continue
        index = 0 if txn.kind == TransactionKind.COLLECTED else 1
        bucket[index] += display_value(txn, rates)
    return [
        MonthlyCashFlow(month=month, collected=sums[month][0], paid=sums[month][1])
        for month in window
    ]


def kind_totals(
    transactions: Iterable[Transaction],
    rates: RateSnapshot,
) -> dict[str, Decimal]:
    totals = {kind: ZERO for kind in TransactionKind.values}
    for txn in transactions:
        if txn.kind in totals:
            totals[txn.kind] += display_value(txn, rates)
    return totals


def total_expenses(transactions: Iterable[Transaction]) -> Decimal:
    """Sum of paid snapshots; paid rows never move with the rates."""
    return sum(
        (txn.amount for txn in transactions if txn.kind == TransactionKind.PAID),
        ZERO,
    )


def top_balances(
    balances: Iterable[EntityBalance], limit: int = TOP_LIMIT
) -> tuple[List[EntityTotal], List[EntityTotal]]:
    """Largest positive nets and most negative nets, ``limit`` of each."""
    balances = list(balances)
    owing = sorted(
        (b for b in balances if b.net > ZERO), key=lambda b: b.net, reverse=True
    )
    owed = sorted((b for b in balances if b.net < ZERO), key=lambda b: b.net)
    return (
        [EntityTotal(b.entity_id, b.name, b.net) for b in owing[:limit]],
        [EntityTotal(b.entity_id, b.name, b.net) for b in owed[:limit]],
    )


def filter_transactions(
    transactions: Iterable[Transaction],
    query: str | None = None,
    names: Mapping[str, str] | None = None,
    entity_id: str | None = None,
) -> List[Transaction]:
    needle = query.strip().casefold() if query else ""
    matched = []
    for txn in transactions:
        if entity_id and txn.entity_id != entity_id:
            continue
        if needle and not _matches(txn, needle, names):
            continue
        matched.append(txn)
    return matched


def entity_statement(
    entity_id: str,
    transactions: Iterable[Transaction],
    rates: RateSnapshot,
    query: str | None = None,
    names: Mapping[str, str] | None = None,
) -> EntityStatement:
    rows = filter_transactions(transactions, query, entity_id=entity_id)
    return EntityStatement(
        entity_id=entity_id,
        rows=[StatementRow(txn, display_value(txn, rates)) for txn in rows],
        totals=_balance_for(entity_id, resolve_name(entity_id, names), rows, rates),
    )


def build_summary(
    transactions: Iterable[Transaction],
    rates: RateSnapshot,
    names: Mapping[str, str] | None,
    today: date,
) -> LedgerSummary:
    transactions = list(transactions)
    totals = kind_totals(transactions, rates)
    balances = entity_balances(transactions, rates, names)
    owing, owed = top_balances(balances)
    return LedgerSummary(
        as_of=today,
        total_collected=totals[TransactionKind.COLLECTED],
        total_paid=totals[TransactionKind.PAID],
        total_receivable=totals[TransactionKind.RECEIVABLE],
        planned_payable=total_payables(transactions, rates),
        planned_receivable=totals[TransactionKind.RECEIVABLE]
        - totals[TransactionKind.COLLECTED],
        net_position=totals[TransactionKind.COLLECTED] - totals[TransactionKind.PAID],
        upcoming_payable=upcoming_total(transactions, rates, today),
        top_receivable_balances=owing,
        top_payable_balances=owed,
        monthly=monthly_cash_flow(transactions, rates, today),
    )


def resolve_name(entity_id: Optional[str], names: Mapping[str, str] | None) -> str:
    if entity_id is None or not names:
        return UNASSIGNED_NAME
    return names.get(entity_id) or UNASSIGNED_NAME


def days_between(start: date, end: date) -> int:
    delta = datetime.combine(end, DAY_ANCHOR) - datetime.combine(start, DAY_ANCHOR)
    return delta.days


def month_start(value: date) -> date:
    return value.replace(day=1)


def shift_month(value: date, months: int) -> date:
    month_index = (value.year * 12 + value.month - 1) + months
    year = month_index // 12
    month = month_index % 12 + 1
    return date(year, month, 1)


def date_label(txn: Transaction) -> str:
    if txn.open_ended:
        return OPEN_ENDED_LABEL
    return txn.date.isoformat() if txn.date else "-"


def _balance_for(
    entity_id: Optional[str],
    name: str,
    transactions: Iterable[Transaction],
    rates: RateSnapshot,
) -> EntityBalance:
    sums = {kind: ZERO for kind in TransactionKind.values}
    for txn in transactions:
        if txn.kind in sums:
            sums[txn.kind] += display_value(txn, rates)
    return EntityBalance(
        entity_id=entity_id,
        name=name,
        collected=sums[TransactionKind.COLLECTED],
        paid=sums[TransactionKind.PAID],
        payable=sums[TransactionKind.PAYABLE],
        receivable=sums[TransactionKind.RECEIVABLE],
    )


def _dated_payables(transactions: Iterable[Transaction]) -> Iterable[Transaction]:
    return (
        txn
        for txn in transactions
        if txn.kind == TransactionKind.PAYABLE and txn.date is not None and not txn.open_ended
    )


def _sum_display(transactions: Iterable[Transaction], rates: RateSnapshot) -> Decimal:
    return sum((display_value(txn, rates) for txn in transactions), ZERO)


def _matches(txn: Transaction, needle: str, names: Mapping[str, str] | None) -> bool:
    haystacks = [
        txn.kind,
        txn.description or "",
        date_label(txn),
    ]
    if names and txn.entity_id:
        haystacks.append(names.get(txn.entity_id, ""))
    return any(needle in text.casefold() for text in haystacks)
