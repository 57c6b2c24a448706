from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Optional
from uuid import uuid4

from ledger.amounts import parse_amount
from ledger.currency_conversion import freeze_value, snapshot_for_edit
from ledger.models import (
    ZERO,
    CurrencyUnit,
    RateSnapshot,
    Transaction,
    TransactionKind,
    validate_schedule,
)


@dataclass(frozen=True)
class TransactionDraft:
    """User input for a transaction before validation and rate freezing."""

    kind: str
    amount: Decimal | int | float | str
    unit: Optional[str] = None
    date: Optional[date] = None
    open_ended: bool = False
    entity_id: Optional[str] = None
    description: Optional[str] = None


def build_transaction(
    draft: TransactionDraft,
    rates: RateSnapshot,
    *,
    base_currency: str | None = None,
    original: Transaction | None = None,
    created_at: datetime | None = None,
) -> Transaction:
    """Validate ``draft`` and freeze its base-currency snapshot.

    New entries are converted at the given rates. When ``original`` is passed
    the entry is an edit: a collected or paid row whose kind, unit and amount
    did not change keeps its earlier snapshot. Raises ValueError (including
    RateNotDefined) when the entry cannot be saved.
    """
    kind = TransactionKind.validate(draft.kind)
    txn_date, open_ended = validate_schedule(kind, draft.date, draft.open_ended)
    unit = CurrencyUnit.normalize(draft.unit, base_currency)
    raw_amount = parse_amount(draft.amount)
    if raw_amount == ZERO:
        raise ValueError("Amount required.")

    if original is None:
        amount = freeze_value(raw_amount, unit, rates)
    else:
        amount = snapshot_for_edit(original, kind, unit, raw_amount, rates)

    description = draft.description.strip() if draft.description else None
    return Transaction(
        id=original.id if original else uuid4().hex,
        kind=kind,
        amount=amount,
        date=txn_date,
        open_ended=open_ended,
        entity_id=draft.entity_id or None,
        description=description or None,
        unit=unit,
        raw_amount=raw_amount,
        created_at=original.created_at if original else created_at,
    )
