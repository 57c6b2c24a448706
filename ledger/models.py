from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping, Optional

ZERO = Decimal("0")
UNASSIGNED_NAME = "(none)"


class TransactionKind:
    COLLECTED = "collected"
    PAID = "paid"
    PAYABLE = "payable"
    RECEIVABLE = "receivable"

    values = {COLLECTED, PAID, PAYABLE, RECEIVABLE}
    realized = {COLLECTED, PAID}
    planned = {PAYABLE, RECEIVABLE}

    @classmethod
    def validate(cls, value: str) -> str:
        normalized = value.strip().lower() if value else ""
        if normalized not in cls.values:
            raise ValueError("Invalid transaction kind.")
        return normalized


class CurrencyUnit:
    BASE = "BASE"
    USD = "USD"
    EUR = "EUR"
    GOLD = "GOLD"

    values = {BASE, USD, EUR, GOLD}

    @classmethod
    def normalize(cls, value: str | None, base_currency: str | None = None) -> str:
        """Map user input to a unit; blank input and the base ISO code mean BASE."""
        if value is None or not value.strip():
            return cls.BASE
        normalized = value.strip().upper()
        if base_currency and normalized == base_currency.strip().upper():
            return cls.BASE
        if normalized not in cls.values:
            raise ValueError("Invalid currency unit.")
        return normalized


@dataclass(frozen=True)
class Entity:
    id: str
    name: str
    role: Optional[str] = None
    contact: Optional[str] = None
    note: Optional[str] = None
    created_at: Optional[datetime] = None


@dataclass(frozen=True)
class Transaction:
    id: str
    kind: str
    amount: Decimal
    date: Optional[date] = None
    open_ended: bool = False
    entity_id: Optional[str] = None
    description: Optional[str] = None
    unit: Optional[str] = None
    raw_amount: Optional[Decimal] = None
    created_at: Optional[datetime] = None

    @property
    def is_realized(self) -> bool:
        return self.kind in TransactionKind.realized

    @property
    def is_planned(self) -> bool:
        return self.kind in TransactionKind.planned


@dataclass(frozen=True)
class RateSnapshot:
    """Exchange rates into the base currency, read once per operation."""

    usd: Decimal = ZERO
    eur: Decimal = ZERO
    gold_per_gram: Decimal = ZERO
    source: str = ""
    updated_at: str = ""

    def rate_for(self, unit: str | None) -> Optional[Decimal]:
        if unit == CurrencyUnit.USD:
            return self.usd
        if unit == CurrencyUnit.EUR:
            return self.eur
        if unit == CurrencyUnit.GOLD:
            return self.gold_per_gram
        return None


def validate_schedule(
    kind: str, txn_date: date | None, open_ended: bool
) -> tuple[date | None, bool]:
    """Check the date rules for ``kind`` and return the stored (date, open_ended) pair.

    Realized kinds need a concrete date and are never open-ended. Planned kinds
    need a date or the open-ended flag; when the flag is set the date is dropped.
    """
    if kind in TransactionKind.realized:
        if txn_date is None:
            raise ValueError("A date is required for collected and paid transactions.")
        return txn_date, False
    if kind in TransactionKind.planned:
        if open_ended:
            return None, True
        if txn_date is None:
            raise ValueError("Choose a date or mark the transaction as open-ended.")
        return txn_date, False
    raise ValueError("Invalid transaction kind.")


def entity_from_row(row: Mapping[str, Any]) -> Entity:
    return Entity(
        id=str(row["id"]),
        name=row.get("name") or "",
        role=row.get("role"),
        contact=row.get("contact"),
        note=row.get("note"),
        created_at=row.get("created_at"),
    )


def transaction_from_row(row: Mapping[str, Any]) -> Transaction:
    """Build a typed record from a store row.

    Unreadable amounts become zero and unreadable raw amounts are dropped, so
    one damaged row cannot break a whole aggregation pass.
    """
    kind = (row.get("kind") or "").strip().lower()
    unit = row.get("unit")
    return Transaction(
        id=str(row["id"]),
        kind=kind,
        amount=_coerce_decimal(row.get("amount")) or ZERO,
        date=_coerce_date(row.get("date")),
        open_ended=bool(row.get("open_ended")),
        entity_id=row.get("entity_id"),
        description=row.get("description"),
        unit=unit.strip().upper() if isinstance(unit, str) and unit.strip() else None,
        raw_amount=_coerce_decimal(row.get("raw_amount")),
        created_at=row.get("created_at"),
    )


def _coerce_decimal(value: Any) -> Optional[Decimal]:
    if value is None or isinstance(value, bool):
        return None
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except InvalidOperation:
        return None
    return amount if amount.is_finite() else None


def _coerce_date(value: Any) -> Optional[date]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        return None
