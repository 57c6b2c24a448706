from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Iterable, Optional, TypeVar

import structlog

from ledger.models import RateSnapshot
from ledger.rate_providers import RateProvider, RateProviderUnavailable
from ledger.rate_store import SettingsStore, save_rate_snapshot

GOLD_CODE = "XAU"
OUNCE_IN_GRAMS = Decimal("31.1034768")
ONE = Decimal("1")
DEFAULT_SOURCE = "Frankfurter (ECB) + exchangerate.host"
STARTUP_NOTE = "Startup refresh"
PERIODIC_NOTE = "Auto refresh: Frankfurter + exchangerate.host"
RETRY_PAUSE_SECONDS = 0.5
REFRESH_INTERVAL_SECONDS = 10 * 60

T = TypeVar("T")

logger = structlog.get_logger(__name__)


def first_success(strategies: Iterable[Callable[[], T]]) -> Optional[T]:
    """Run ``strategies`` in order and return the first result that does not fail."""
    for strategy in strategies:
        try:
            return strategy()
        except (RateProviderUnavailable, ValueError, ArithmeticError) as exc:
            logger.debug(
                "rate_strategy_failed",
                strategy=getattr(strategy, "__name__", repr(strategy)),
                error=str(exc),
            )
    return None


def resolve_gold_per_ounce(
    gold_provider: RateProvider,
    fx_provider: RateProvider,
    base_currency: str,
    usd_hint: Decimal | None = None,
    eur_hint: Decimal | None = None,
) -> Optional[Decimal]:
    """Price of one troy ounce of gold in the base currency, or None.

    The USD and EUR routes reuse the rates already fetched in the same
    refresh when hints are given.
    """

    def direct() -> Decimal:
        return gold_provider.get_rate(GOLD_CODE, base_currency)

    def via_usd() -> Decimal:
        usd_to_gold = gold_provider.get_rate("USD", GOLD_CODE)
        usd_rate = usd_hint if _usable(usd_hint) else fx_provider.get_rate("USD", base_currency)
        return (ONE / usd_to_gold) * usd_rate

    def inverted_base() -> Decimal:
        return ONE / gold_provider.get_rate(base_currency, GOLD_CODE)

    def via_eur() -> Decimal:
        eur_to_gold = gold_provider.get_rate("EUR", GOLD_CODE)
        eur_rate = eur_hint if _usable(eur_hint) else fx_provider.get_rate("EUR", base_currency)
        return (ONE / eur_to_gold) * eur_rate

    return first_success([direct, via_usd, inverted_base, via_eur])


def refresh_rates(
    settings: SettingsStore,
    note: str | None = None,
    *,
    fx_provider: RateProvider,
    gold_provider: RateProvider,
    base_currency: str,
    now: datetime | None = None,
) -> RateSnapshot:
    """Fetch live rates and persist them as the current snapshot.

    Raises RateProviderUnavailable when USD or EUR cannot be fetched from any
    provider. A missing gold price never fails the refresh: the stored gram
    price is kept as it was.
    """
    usd = fx_provider.get_rate("USD", base_currency)
    eur = fx_provider.get_rate("EUR", base_currency)

    ounce = resolve_gold_per_ounce(
        gold_provider, fx_provider, base_currency, usd_hint=usd, eur_hint=eur
    )
    gold_per_gram = None
    if _usable(ounce):
        gold_per_gram = ounce / OUNCE_IN_GRAMS
        gold_note = "gold: ok"
    else:
        logger.warning("gold_rate_unresolved", base_currency=base_currency)
        gold_note = "gold: previous value kept"

    snapshot = save_rate_snapshot(
        settings,
        usd=usd,
        eur=eur,
        gold_per_gram=gold_per_gram,
        source=f"{note or DEFAULT_SOURCE}; {gold_note}",
        updated_at=(now or datetime.now(timezone.utc)).isoformat(),
    )
    logger.info(
        "rates_refreshed",
        usd=str(snapshot.usd),
        eur=str(snapshot.eur),
        gold_per_gram=str(snapshot.gold_per_gram),
        source=snapshot.source,
    )
    return snapshot


async def refresh_rates_with_retry(
    refresh: Callable[[str], RateSnapshot],
    base_note: str = STARTUP_NOTE,
    *,
    pause: float = RETRY_PAUSE_SECONDS,
) -> Optional[RateSnapshot]:
    """Session-start policy: try, wait ``pause`` seconds, try once more, then give up.

    Failures are logged and never raised so the caller is not blocked.
    """
    try:
        return await asyncio.to_thread(refresh, f"{base_note} #1")
    except Exception as exc:
        logger.warning("rate_refresh_failed", attempt=1, error=str(exc))
    await asyncio.sleep(pause)
    try:
        return await asyncio.to_thread(refresh, f"{base_note} #2")
    except Exception as exc:
        logger.error("rate_refresh_failed", attempt=2, error=str(exc))
    return None


async def run_periodic_refresh(
    refresh: Callable[[str], RateSnapshot],
    interval: float = REFRESH_INTERVAL_SECONDS,
    note: str = PERIODIC_NOTE,
) -> None:
    while True:
        await asyncio.sleep(interval)
        try:
            await asyncio.to_thread(refresh, note)
        except Exception:
            logger.exception("periodic_rate_refresh_failed")


def _usable(value: Decimal | None) -> bool:
    return value is not None and value.is_finite() and value > 0
