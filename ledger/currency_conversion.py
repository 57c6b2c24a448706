from __future__ import annotations

from decimal import Decimal

from ledger.models import ZERO, CurrencyUnit, RateSnapshot, Transaction, TransactionKind

# Stored raw amounts equal to the edited value within this tolerance keep their snapshot.
EDIT_TOLERANCE = Decimal("1e-9")

UNIT_LABELS = {
    CurrencyUnit.USD: "USD",
    CurrencyUnit.EUR: "EUR",
    CurrencyUnit.GOLD: "Gram gold",
}


class RateNotDefined(ValueError):
    """Raised when a realized amount must be frozen but its rate is missing."""

    def __init__(self, unit: str) -> None:
        self.unit = unit
        label = UNIT_LABELS.get(unit, unit)
        super().__init__(f"{label} rate not defined in settings.")


def convert_to_base(
    amount: Decimal, unit: str | None, rates: RateSnapshot
) -> Decimal:
    """Convert ``amount`` at the given rates for display.

    Base and unknown units pass through unchanged; a missing or non-positive
    rate contributes zero instead of failing.
    """
    if unit is None or unit == CurrencyUnit.BASE or unit not in CurrencyUnit.values:
        return amount
    rate = rates.rate_for(unit)
    if rate is None or not rate.is_finite() or rate <= ZERO:
        return ZERO
    return amount * rate


def display_value(txn: Transaction, rates: RateSnapshot) -> Decimal:
    """Base-currency value of ``txn`` as shown on every report.

    Collected and paid rows keep the snapshot frozen when they were saved.
    Payable and receivable rows are re-priced from their raw amount at the
    current rates, falling back to the snapshot when no raw amount is stored.
    """
    snapshot = _finite_or_zero(txn.amount)
    if txn.kind in TransactionKind.realized:
        return snapshot
    raw = txn.raw_amount
    if raw is not None and raw.is_finite() and txn.unit:
        return convert_to_base(raw, txn.unit, rates)
    return snapshot


def freeze_value(raw_amount: Decimal, unit: str | None, rates: RateSnapshot) -> Decimal:
    """Base-currency snapshot for a new or re-priced entry.

    Raises RateNotDefined for a foreign unit whose rate is unset or not
    positive; nothing should be saved in that case.
    """
    if unit is None or unit == CurrencyUnit.BASE:
        return raw_amount
    rate = rates.rate_for(unit)
    if rate is None or not rate.is_finite() or rate <= ZERO:
        raise RateNotDefined(unit)
    return raw_amount * rate


def snapshot_for_edit(
    original: Transaction,
    kind: str,
    unit: str | None,
    raw_amount: Decimal,
    rates: RateSnapshot,
) -> Decimal:
    if kind in TransactionKind.realized and _same_entry(original, kind, unit, raw_amount):
        return original.amount
    return freeze_value(raw_amount, unit, rates)


def _same_entry(
    original: Transaction, kind: str, unit: str | None, raw_amount: Decimal
) -> bool:
    original_raw = original.raw_amount if original.raw_amount is not None else original.amount
    original_unit = original.unit or CurrencyUnit.BASE
    return (
        original.kind == kind
        and original_unit == (unit or CurrencyUnit.BASE)
        and abs(original_raw - raw_amount) < EDIT_TOLERANCE
    )


def _finite_or_zero(value: Decimal | None) -> Decimal:
    if value is None or not value.is_finite():
        return ZERO
    return value
