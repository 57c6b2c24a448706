import asyncio
import unittest
from datetime import datetime, timezone
from decimal import Decimal

from ledger.rate_providers import RateProviderUnavailable
from ledger.rate_refresh import (
    DEFAULT_SOURCE,
    OUNCE_IN_GRAMS,
    first_success,
    refresh_rates,
    refresh_rates_with_retry,
    resolve_gold_per_ounce,
    run_periodic_refresh,
)
from ledger.rate_store import GOLD_KEY, USD_KEY, format_rate, load_rate_snapshot
from ledger.tests.fakes import MemorySettings, StaticRateProvider


NOW = datetime(2024, 5, 1, 9, 30, tzinfo=timezone.utc)


class FirstSuccessTests(unittest.TestCase):
    def test_returns_first_result_that_does_not_fail(self) -> None:
        def unavailable():
            raise RateProviderUnavailable("down")

        def zero_division():
            return Decimal(1) / Decimal(0)

        self.assertEqual(
            first_success([unavailable, zero_division, lambda: 3, lambda: 4]), 3
        )

    def test_all_failing_returns_none(self) -> None:
        def unavailable():
            raise RateProviderUnavailable("down")

        self.assertIsNone(first_success([unavailable, unavailable]))


class ResolveGoldTests(unittest.TestCase):
    def test_direct_quote_wins(self) -> None:
        gold = StaticRateProvider(rates={("XAU", "TRY"): Decimal("80000")})
        fx = StaticRateProvider()

        self.assertEqual(resolve_gold_per_ounce(gold, fx, "TRY"), Decimal("80000"))
        self.assertEqual(fx.calls, [])

    def test_inverted_base_quote(self) -> None:
        gold = StaticRateProvider(rates={("TRY", "XAU"): Decimal("0.0000125")})

        self.assertEqual(
            resolve_gold_per_ounce(gold, StaticRateProvider(), "TRY"), Decimal("80000")
        )

    def test_eur_route_is_last_resort(self) -> None:
        gold = StaticRateProvider(rates={("EUR", "XAU"): Decimal("0.0004")})

        ounce = resolve_gold_per_ounce(
            gold, StaticRateProvider(), "TRY", usd_hint=Decimal("32"), eur_hint=Decimal("35")
        )

        self.assertEqual(ounce, Decimal("87500"))
        self.assertEqual(
            gold.calls,
            [("XAU", "TRY"), ("USD", "XAU"), ("TRY", "XAU"), ("EUR", "XAU")],
        )

    def test_nothing_available_returns_none(self) -> None:
        self.assertIsNone(
            resolve_gold_per_ounce(StaticRateProvider(), StaticRateProvider(), "TRY")
        )


class RefreshRatesTests(unittest.TestCase):
    def setUp(self) -> None:
        self.fx = StaticRateProvider(
            rates={("USD", "TRY"): Decimal("32"), ("EUR", "TRY"): Decimal("35")}
        )

    def test_gold_via_usd_reuses_fetched_usd_rate(self) -> None:
        gold = StaticRateProvider(rates={("USD", "XAU"): Decimal("0.0005")})
        settings = MemorySettings()

        snapshot = refresh_rates(
            settings, fx_provider=self.fx, gold_provider=gold, base_currency="TRY", now=NOW
        )

        expected_gram = Decimal("64000") / OUNCE_IN_GRAMS
        self.assertEqual(snapshot.usd, Decimal("32.0000"))
        self.assertEqual(snapshot.eur, Decimal("35.0000"))
        self.assertEqual(snapshot.gold_per_gram, Decimal(format_rate(expected_gram, 2)))
        self.assertEqual(snapshot.source, f"{DEFAULT_SOURCE}; gold: ok")
        self.assertEqual(snapshot.updated_at, NOW.isoformat())
        self.assertEqual(self.fx.calls, [("USD", "TRY"), ("EUR", "TRY")])

    def test_unresolved_gold_keeps_previous_value(self) -> None:
        settings = MemorySettings({GOLD_KEY: "2500.00"})

        snapshot = refresh_rates(
            settings,
            "Startup refresh #1",
            fx_provider=self.fx,
            gold_provider=StaticRateProvider(),
            base_currency="TRY",
            now=NOW,
        )

        self.assertEqual(snapshot.gold_per_gram, Decimal("2500.00"))
        self.assertEqual(snapshot.source, "Startup refresh #1; gold: previous value kept")
        self.assertNotIn(GOLD_KEY, settings.writes)

    def test_timestamp_is_written_last(self) -> None:
        settings = MemorySettings()

        refresh_rates(
            settings,
            fx_provider=self.fx,
            gold_provider=StaticRateProvider(),
            base_currency="TRY",
            now=NOW,
        )

        self.assertEqual(settings.writes[-1], "fx_updated_at")

    def test_missing_currency_rates_fail_without_writing(self) -> None:
        settings = MemorySettings({USD_KEY: "30.0000"})
        fx = StaticRateProvider(error=RateProviderUnavailable("down"))

        with self.assertRaises(RateProviderUnavailable):
            refresh_rates(
                settings,
                fx_provider=fx,
                gold_provider=StaticRateProvider(),
                base_currency="TRY",
                now=NOW,
            )

        self.assertEqual(settings.writes, [])
        self.assertEqual(load_rate_snapshot(settings).usd, Decimal("30.0000"))


class RefreshPolicyTests(unittest.IsolatedAsyncioTestCase):
    async def test_second_attempt_after_failure(self) -> None:
        notes: list[str] = []

        def refresh(note: str) -> str:
            notes.append(note)
            if len(notes) == 1:
                raise RateProviderUnavailable("down")
            return "snapshot"

        result = await refresh_rates_with_retry(refresh, "Startup refresh", pause=0)

        self.assertEqual(result, "snapshot")
        self.assertEqual(notes, ["Startup refresh #1", "Startup refresh #2"])

    async def test_gives_up_after_two_failures(self) -> None:
        notes: list[str] = []

        def refresh(note: str) -> str:
            notes.append(note)
            raise RateProviderUnavailable("down")

        result = await refresh_rates_with_retry(refresh, "Startup refresh", pause=0)

        self.assertIsNone(result)
        self.assertEqual(len(notes), 2)

    async def test_periodic_refresh_survives_failures(self) -> None:
        notes: list[str] = []

        def refresh(note: str) -> None:
            notes.append(note)
            if len(notes) == 1:
                raise RateProviderUnavailable("down")

        task = asyncio.create_task(run_periodic_refresh(refresh, interval=0, note="tick"))

        async def wait_for_calls() -> None:
            while len(notes) < 3:
                await asyncio.sleep(0.01)

        try:
            await asyncio.wait_for(wait_for_calls(), timeout=5)
        finally:
            task.cancel()
            with self.assertRaises(asyncio.CancelledError):
                await task

        self.assertEqual(notes[:3], ["tick", "tick", "tick"])


if __name__ == "__main__":
    unittest.main()
