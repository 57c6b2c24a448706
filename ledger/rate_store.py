from __future__ import annotations

from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Protocol

from ledger.models import ZERO, RateSnapshot

USD_KEY = "fx_usd"
EUR_KEY = "fx_eur"
GOLD_KEY = "fx_gold_per_gram"
SOURCE_KEY = "fx_source"
UPDATED_AT_KEY = "fx_updated_at"

FX_DIGITS = 4
GOLD_DIGITS = 2
MANUAL_SOURCE = "Manual"


class SettingsStore(Protocol):
    def get(self, key: str, default: str = "") -> str:
        ...

    def set(self, key: str, value: str) -> None:
        ...


def load_rate_snapshot(settings: SettingsStore) -> RateSnapshot:
    return RateSnapshot(
        usd=read_rate(settings.get(USD_KEY, "0")),
        eur=read_rate(settings.get(EUR_KEY, "0")),
        gold_per_gram=read_rate(settings.get(GOLD_KEY, "0")),
        source=settings.get(SOURCE_KEY, MANUAL_SOURCE),
        updated_at=settings.get(UPDATED_AT_KEY, ""),
    )


def save_rate_snapshot(
    settings: SettingsStore,
    *,
    usd: Decimal,
    eur: Decimal,
    gold_per_gram: Decimal | None,
    source: str,
    updated_at: str,
) -> RateSnapshot:
    """Overwrite the stored rates and return what is now persisted.

    ``gold_per_gram=None`` leaves the stored gold price untouched. The
    timestamp is written last so listeners can treat it as the commit marker.
    """
    settings.set(USD_KEY, format_rate(usd, FX_DIGITS))
    settings.set(EUR_KEY, format_rate(eur, FX_DIGITS))
    if gold_per_gram is not None:
        settings.set(GOLD_KEY, format_rate(gold_per_gram, GOLD_DIGITS))
    settings.set(SOURCE_KEY, source)
    settings.set(UPDATED_AT_KEY, updated_at)
    return load_rate_snapshot(settings)


def save_manual_rates(
    settings: SettingsStore,
    *,
    usd: Decimal,
    eur: Decimal,
    gold_per_gram: Decimal,
    now: datetime | None = None,
) -> RateSnapshot:
    for label, value in (("USD", usd), ("EUR", eur), ("Gram gold", gold_per_gram)):
        if not value.is_finite() or value < ZERO:
            raise ValueError(f"{label} rate must be zero or greater.")
    return save_rate_snapshot(
        settings,
        usd=usd,
        eur=eur,
        gold_per_gram=gold_per_gram,
        source=MANUAL_SOURCE,
        updated_at=(now or datetime.now(timezone.utc)).isoformat(),
    )


def read_rate(value: str | None) -> Decimal:
    if not value:
        return ZERO
    try:
        rate = Decimal(value.strip().replace(",", "."))
    except InvalidOperation:
        return ZERO
    return rate if rate.is_finite() else ZERO


def format_rate(value: Decimal, digits: int) -> str:
    if not value.is_finite():
        return "0"
    return str(value.quantize(Decimal(1).scaleb(-digits), rounding=ROUND_HALF_UP))
