import unittest
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import patch

from fastapi.testclient import TestClient

from finboard import main
from finboard.currency_conversion import ProviderRateSource, StaticRateProvider
from finboard.models import Holding
from finboard.stock_prices import StaticPriceSource, build_quote
from finboard.tests.test_dashboard import InMemoryStore


class ApiTests(unittest.TestCase):
    def setUp(self) -> None:
        self.store = InMemoryStore()
        self.store.holdings = [
            Holding(
                id="h-1",
                account_id="acc-1",
                category_id="cat-groceries",
                symbol="AAPL",
                quantity=Decimal("2"),
                average_cost=Decimal("150"),
                currency="USD",
            )
        ]
        fetched_at = datetime.now(timezone.utc) - timedelta(hours=1)
        patches = [
            patch.object(main, "STORE", self.store),
            patch.object(main, "RATE_SOURCE", ProviderRateSource(StaticRateProvider())),
            patch.object(
                main,
                "PRICE_SOURCE",
                StaticPriceSource({"AAPL": build_quote(Decimal("200"), Decimal("0.5"), fetched_at)}),
            ),
        ]
        for patcher in patches:
            patcher.start()
            self.addCleanup(patcher.stop)
        self.client = TestClient(main.app)

    def test_health(self) -> None:
        response = self.client.get("/health")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"status": "ok"})

    def test_dashboard_report(self) -> None:
        response = self.client.get(
            "/dashboard", params={"account_id": "acc-1", "month": "2024-01", "currency": "usd"}
        )

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["month"], "2024-01")
        self.assertEqual(body["preferred_currency"], "USD")
        self.assertEqual(
            [(stat["label"], Decimal(stat["amount"])) for stat in body["stats"]],
            [
                ("Net this month", Decimal("2850")),
                ("On track for", Decimal("2500")),
                ("Left to spend", Decimal("350")),
                ("Monthly target", Decimal("2500")),
            ],
        )
        self.assertEqual(body["stats"][0]["breakdown"]["type"], "net-this-month")
        self.assertEqual(body["stats"][2]["variant"], "neutral")
        self.assertEqual(body["monthly_income_goal"]["source"], "budget")
        self.assertEqual(len(body["history"]), 6)
        self.assertEqual(body["comparison"]["previous_month"], "2023-12")
        self.assertEqual(body["transactions"][0]["display_currency"], "USD")
        self.assertIsNotNone(body["exchange_rate_last_update"])

    def test_invalid_month_is_bad_request(self) -> None:
        response = self.client.get("/dashboard", params={"account_id": "acc-1", "month": "2024-13"})

        self.assertEqual(response.status_code, 400)

    def test_invalid_currency_is_bad_request(self) -> None:
        response = self.client.get(
            "/dashboard", params={"account_id": "acc-1", "month": "2024-01", "currency": "dollars"}
        )

        self.assertEqual(response.status_code, 400)

    def test_store_failure_is_service_unavailable(self) -> None:
        def broken(*args, **kwargs):
            raise ConnectionError("database down")

        self.store.list_transactions = broken

        with self.assertLogs("finboard", level="WARNING"):
            response = self.client.get("/dashboard", params={"account_id": "acc-1", "month": "2024-01"})

        self.assertEqual(response.status_code, 503)

    def test_holdings_are_valued_in_requested_currency(self) -> None:
        response = self.client.get("/holdings", params={"currency": "EUR"})

        self.assertEqual(response.status_code, 200)
        [holding] = response.json()
        self.assertEqual(holding["symbol"], "AAPL")
        self.assertEqual(Decimal(holding["market_value"]), Decimal("400"))
        self.assertEqual(Decimal(holding["market_value_converted"]), Decimal("368.00"))
        self.assertEqual(Decimal(holding["gain_loss_percent"]), Decimal("33.33"))
        self.assertFalse(holding["is_stale"])
        self.assertEqual(holding["account_name"], "Everyday")


if __name__ == "__main__":
    unittest.main()
