import os
import tempfile
import unittest
from datetime import date, timedelta
from decimal import Decimal
from unittest import mock

_DB_DIR = tempfile.mkdtemp()
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_DB_DIR, 'ledger-test.db')}"
os.environ["BASE_CURRENCY"] = "TRY"
os.environ["RATE_REFRESH_ON_STARTUP"] = "0"

from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy import delete  # noqa: E402

from ledger import main  # noqa: E402
from ledger.rate_providers import RateProviderUnavailable  # noqa: E402
from ledger.store import entities, settings, transactions  # noqa: E402


def as_decimal(value) -> Decimal:
    return Decimal(str(value))


class LedgerApiTests(unittest.TestCase):
    @classmethod
    def setUpClass(cls) -> None:
        cls.client_context = TestClient(main.app)
        cls.client = cls.client_context.__enter__()

    @classmethod
    def tearDownClass(cls) -> None:
        cls.client_context.__exit__(None, None, None)

    def setUp(self) -> None:
        with main.engine.begin() as conn:
            conn.execute(delete(transactions))
            conn.execute(delete(entities))
            conn.execute(delete(settings))
        main.live_summary.reload()

    def set_rates(self, usd: str = "30", eur: str = "33,5", gold: str = "2500") -> dict:
        response = self.client.put(
            "/rates", json={"usd": usd, "eur": eur, "gold_per_gram": gold}
        )
        self.assertEqual(response.status_code, 200)
        return response.json()

    def create_entity(self, name: str) -> str:
        response = self.client.post("/entities", json={"name": name, "role": "Customer"})
        self.assertEqual(response.status_code, 200)
        return response.json()["id"]

    def create_transaction(self, **payload) -> dict:
        response = self.client.post("/transactions", json=payload)
        self.assertEqual(response.status_code, 200, response.text)
        return response.json()

    def test_health(self) -> None:
        self.assertEqual(self.client.get("/health").json(), {"status": "ok"})

    def test_entity_name_is_required(self) -> None:
        response = self.client.post("/entities", json={"name": "   "})

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["detail"], "Entity name required.")

    def test_manual_rates_round_trip(self) -> None:
        body = self.set_rates()

        self.assertEqual(body["base_currency"], "TRY")
        self.assertEqual(as_decimal(body["usd"]), Decimal("30"))
        self.assertEqual(as_decimal(body["eur"]), Decimal("33.5"))
        self.assertEqual(body["source"], "Manual")
        self.assertEqual(as_decimal(self.client.get("/rates").json()["gold_per_gram"]), Decimal("2500"))

    def test_negative_manual_rate_is_rejected(self) -> None:
        response = self.client.put(
            "/rates", json={"usd": "-1", "eur": "1", "gold_per_gram": "1"}
        )

        self.assertEqual(response.status_code, 400)

    def test_foreign_entry_without_rate_is_rejected(self) -> None:
        response = self.client.post(
            "/transactions",
            json={"kind": "paid", "amount": "10", "unit": "USD", "date": "2024-05-01"},
        )

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["detail"], "USD rate not defined in settings.")
        self.assertEqual(self.client.get("/transactions").json(), [])

    def test_planned_rows_follow_rates_and_realized_rows_do_not(self) -> None:
        self.set_rates(usd="30")
        payable = self.create_transaction(
            kind="payable", amount="10", unit="USD", open_ended=True
        )
        paid = self.create_transaction(
            kind="paid", amount="10", unit="USD", date="2024-05-01"
        )
        self.assertEqual(as_decimal(payable["display_amount"]), Decimal("300"))
        self.assertEqual(payable["date_label"], "open-ended")

        self.set_rates(usd="35")
        rows = {row["id"]: row for row in self.client.get("/transactions").json()}

        self.assertEqual(as_decimal(rows[payable["id"]]["display_amount"]), Decimal("350"))
        self.assertEqual(rows[payable["id"]]["display_text"], "350,00")
        self.assertEqual(as_decimal(rows[paid["id"]]["display_amount"]), Decimal("300"))

    def test_unchanged_edit_keeps_snapshot(self) -> None:
        self.set_rates(usd="30")
        paid = self.create_transaction(kind="paid", amount="10", unit="USD", date="2024-05-01")
        self.set_rates(usd="40")

        response = self.client.put(
            f"/transactions/{paid['id']}",
            json={
                "kind": "paid",
                "amount": "10",
                "unit": "USD",
                "date": "2024-05-02",
                "description": "moved",
            },
        )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(as_decimal(response.json()["amount"]), Decimal("300"))
        self.assertEqual(response.json()["date"], "2024-05-02")

    def test_unknown_ids_return_404(self) -> None:
        payload = {"kind": "paid", "amount": "1", "date": "2024-05-01"}

        self.assertEqual(self.client.put("/transactions/nope", json=payload).status_code, 404)
        self.assertEqual(self.client.delete("/transactions/nope").status_code, 404)
        self.assertEqual(self.client.delete("/entities/nope").status_code, 404)
        self.assertEqual(self.client.get("/entities/nope/statement").status_code, 404)
        self.assertEqual(
            self.client.post("/transactions", json={**payload, "entity_id": "nope"}).status_code,
            404,
        )

    def test_deleted_entity_shows_as_unassigned(self) -> None:
        entity_id = self.create_entity("Acme")
        txn = self.create_transaction(
            kind="receivable", amount="100", date="2024-05-01", entity_id=entity_id
        )
        self.assertEqual(txn["entity_name"], "Acme")

        self.assertEqual(self.client.delete(f"/entities/{entity_id}").status_code, 200)

        rows = self.client.get("/transactions").json()
        self.assertEqual(rows[0]["entity_name"], "(none)")
        self.assertEqual(rows[0]["entity_id"], entity_id)

    def test_edit_keeps_reference_to_deleted_entity(self) -> None:
        entity_id = self.create_entity("Acme")
        txn = self.create_transaction(
            kind="receivable", amount="100", date="2024-05-01", entity_id=entity_id
        )
        self.client.delete(f"/entities/{entity_id}")

        kept = self.client.put(
            f"/transactions/{txn['id']}",
            json={
                "kind": "receivable",
                "amount": "100",
                "date": "2024-06-01",
                "entity_id": entity_id,
            },
        )
        relinked = self.client.put(
            f"/transactions/{txn['id']}",
            json={
                "kind": "receivable",
                "amount": "100",
                "date": "2024-06-01",
                "entity_id": "someone-else",
            },
        )

        self.assertEqual(kept.status_code, 200)
        self.assertEqual(kept.json()["date"], "2024-06-01")
        self.assertEqual(kept.json()["entity_name"], "(none)")
        self.assertEqual(relinked.status_code, 404)

    def test_statement_and_search(self) -> None:
        entity_id = self.create_entity("Acme")
        self.create_transaction(
            kind="receivable", amount="200", date="2024-05-01", entity_id=entity_id,
            description="Invoice 12",
        )
        self.create_transaction(
            kind="collected", amount="50", date="2024-05-03", entity_id=entity_id
        )

        statement = self.client.get(f"/entities/{entity_id}/statement").json()
        searched = self.client.get("/transactions", params={"q": "invoice"}).json()

        self.assertEqual(statement["entity_name"], "Acme")
        self.assertEqual(as_decimal(statement["net"]), Decimal("150"))
        self.assertEqual(len(statement["transactions"]), 2)
        self.assertEqual(len(searched), 1)

    def test_reports(self) -> None:
        today = date.today()
        acme = self.create_entity("Acme")
        bolt = self.create_entity("Bolt")
        self.create_transaction(kind="receivable", amount="200", date=today.isoformat(), entity_id=acme)
        self.create_transaction(kind="collected", amount="50", date=today.isoformat(), entity_id=acme)
        self.create_transaction(kind="paid", amount="30", date=today.isoformat(), entity_id=bolt)
        self.create_transaction(
            kind="payable",
            amount="100",
            date=(today + timedelta(days=10)).isoformat(),
            entity_id=bolt,
        )

        summary = self.client.get("/reports/summary").json()
        receivables = self.client.get("/reports/receivables").json()
        payables = self.client.get("/reports/payables").json()
        upcoming = self.client.get("/reports/upcoming").json()
        expenses = self.client.get("/reports/expenses").json()

        self.assertEqual(summary["as_of"], today.isoformat())
        self.assertEqual(as_decimal(summary["planned_receivable"]), Decimal("150"))
        self.assertEqual(as_decimal(summary["planned_payable"]), Decimal("70"))
        self.assertEqual(as_decimal(summary["net_position"]), Decimal("20"))
        self.assertEqual(as_decimal(summary["upcoming_payable"]), Decimal("100"))
        self.assertEqual(len(summary["monthly"]), 6)
        self.assertEqual(as_decimal(receivables["total"]), Decimal("150"))
        self.assertEqual(receivables["entities"][0]["name"], "Acme")
        self.assertEqual(as_decimal(payables["total"]), Decimal("70"))
        self.assertEqual([len(bucket["transactions"]) for bucket in upcoming], [0, 1, 0])
        self.assertEqual(as_decimal(expenses["total"]), Decimal("30"))

    def test_refresh_failure_returns_502(self) -> None:
        with mock.patch.object(
            main, "refresh", side_effect=RateProviderUnavailable("down")
        ):
            response = self.client.post("/rates/refresh")

        self.assertEqual(response.status_code, 502)


if __name__ == "__main__":
    unittest.main()
