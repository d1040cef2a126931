import unittest
from datetime import date, datetime, timezone
from decimal import Decimal

from sqlalchemy import create_engine, event
from sqlalchemy.pool import StaticPool

from finboard.models import EXPENSE, INCOME
from finboard.store import (
    SqlPriceSource,
    SqlRecordStore,
    accounts,
    budgets,
    categories,
    holdings,
    init_db,
    monthly_income_goals,
    recurring_templates,
    stock_prices,
    transactions,
)

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def memory_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(engine)
    return engine


class SqlRecordStoreTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = memory_engine()
        self.store = SqlRecordStore(self.engine)
        with self.engine.begin() as conn:
            conn.execute(
                accounts.insert(),
                [
                    {
                        "id": "acc-1",
                        "user_id": "user-1",
                        "name": "Everyday",
                        "currency": "usd",
                        "default_income_goal": Decimal("4000"),
                        "default_income_goal_currency": "EUR",
                    },
                    {
                        "id": "acc-2",
                        "user_id": "user-2",
                        "name": "Savings",
                        "currency": "GBP",
                        "default_income_goal": None,
                        "default_income_goal_currency": None,
                    },
                ],
            )
            conn.execute(
                categories.insert(),
                [
                    {"id": "cat-salary", "user_id": "user-1", "name": "Salary", "type": "INCOME", "archived": False},
                    {"id": "cat-food", "user_id": "user-1", "name": "Groceries", "type": "expense", "archived": False},
                    {
                        "id": "cat-old",
                        "user_id": "user-1",
                        "name": "Old",
                        "type": "expense",
                        "archived": True,
                    },
                ],
            )
            conn.execute(
                transactions.insert(),
                [
                    {
                        "id": "t-1",
                        "account_id": "acc-1",
                        "category_id": "cat-salary",
                        "type": "income",
                        "amount": Decimal("3000"),
                        "currency": "USD",
                        "date": date(2024, 1, 5),
                        "month": date(2024, 1, 1),
                        "deleted_at": None,
                    },
                    {
                        "id": "t-2",
                        "account_id": "acc-1",
                        "category_id": "cat-food",
                        "type": "expense",
                        "amount": Decimal("150"),
                        "currency": "USD",
                        "date": date(2024, 1, 10),
                        "month": date(2024, 1, 1),
                        "deleted_at": None,
                    },
                    {
                        "id": "t-3",
                        "account_id": "acc-1",
                        "category_id": "cat-food",
                        "type": "expense",
                        "amount": Decimal("80"),
                        "currency": "USD",
                        "date": date(2023, 12, 20),
                        "month": date(2023, 12, 1),
                        "deleted_at": None,
                    },
                    {
                        "id": "t-4",
                        "account_id": "acc-1",
                        "category_id": "cat-food",
                        "type": "expense",
                        "amount": Decimal("999"),
                        "currency": "USD",
                        "date": date(2024, 1, 12),
                        "month": date(2024, 1, 1),
                        "deleted_at": datetime(2024, 1, 13),
                    },
                    {
                        "id": "t-5",
                        "account_id": "acc-2",
                        "category_id": "cat-food",
                        "type": "expense",
                        "amount": Decimal("20"),
                        "currency": "GBP",
                        "date": date(2024, 1, 3),
                        "month": date(2024, 1, 1),
                        "deleted_at": None,
                    },
                ],
            )
            conn.execute(
                budgets.insert(),
                [
                    {
                        "id": "b-1",
                        "account_id": "acc-1",
                        "category_id": "cat-food",
                        "month": date(2024, 1, 1),
                        "planned": Decimal("500"),
                        "currency": "usd",
                    },
                    {
                        "id": "b-2",
                        "account_id": "acc-1",
                        "category_id": "cat-food",
                        "month": date(2024, 2, 1),
                        "planned": Decimal("450"),
                        "currency": "USD",
                    },
                ],
            )
            conn.execute(
                recurring_templates.insert(),
                [
                    {
                        "id": "rec-1",
                        "account_id": "acc-1",
                        "category_id": "cat-salary",
                        "type": "income",
                        "amount": Decimal("5000"),
                        "day_of_month": 1,
                        "start_month": date(2024, 1, 1),
                    },
                ],
            )
            conn.execute(
                monthly_income_goals.insert(),
                [
                    {
                        "account_id": "acc-1",
                        "month": date(2024, 1, 1),
                        "amount": Decimal("7000"),
                        "currency": "usd",
                    },
                ],
            )
            conn.execute(
                holdings.insert(),
                [
                    {
                        "id": "h-1",
                        "account_id": "acc-1",
                        "category_id": "cat-food",
                        "symbol": "AAPL",
                        "quantity": Decimal("10"),
                        "average_cost": Decimal("150"),
                        "currency": "USD",
                        "deleted_at": None,
                    },
                    {
                        "id": "h-2",
                        "account_id": "acc-1",
                        "category_id": "cat-food",
                        "symbol": "GONE",
                        "quantity": Decimal("1"),
                        "average_cost": Decimal("1"),
                        "currency": "USD",
                        "deleted_at": datetime(2024, 1, 1),
                    },
                ],
            )

    def test_lists_accounts_with_normalized_currency(self) -> None:
        result = self.store.list_accounts()

        self.assertEqual([account.name for account in result], ["Everyday", "Savings"])
        self.assertEqual(result[0].currency, "USD")
        self.assertEqual(result[0].default_income_goal, Decimal("4000"))
        self.assertEqual(result[0].default_income_goal_currency, "EUR")
        self.assertEqual([account.id for account in self.store.list_accounts("user-2")], ["acc-2"])

    def test_archived_categories_are_hidden_by_default(self) -> None:
        visible = self.store.list_categories()
        everything = self.store.list_categories(include_archived=True)

        self.assertEqual([category.name for category in visible], ["Groceries", "Salary"])
        self.assertEqual(visible[1].type, INCOME)
        self.assertEqual(len(everything), 3)

    def test_transactions_cover_inclusive_month_range(self) -> None:
        january = self.store.list_transactions(date(2024, 1, 1), date(2024, 1, 1), account_id="acc-1")
        both = self.store.list_transactions(date(2023, 12, 1), date(2024, 1, 31), account_id="acc-1")

        self.assertEqual([txn.id for txn in january], ["t-2", "t-1"])
        self.assertEqual([txn.id for txn in both], ["t-2", "t-1", "t-3"])
        self.assertEqual(january[1].amount, Decimal("3000"))

    def test_transactions_filter_by_type_and_skip_deleted(self) -> None:
        expenses = self.store.list_transactions(date(2024, 1, 1), date(2024, 1, 1), type="EXPENSE")

        self.assertEqual({txn.id for txn in expenses}, {"t-2", "t-5"})
        self.assertTrue(all(txn.type == EXPENSE for txn in expenses))

    def test_budgets_for_one_month(self) -> None:
        [budget] = self.store.list_budgets("acc-1", date(2024, 1, 15))

        self.assertEqual(budget.id, "b-1")
        self.assertEqual(budget.planned, Decimal("500"))
        self.assertEqual(budget.currency, "USD")

    def test_budgets_carry_their_category_even_when_archived(self) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                budgets.insert(),
                [
                    {
                        "id": "b-3",
                        "account_id": "acc-2",
                        "category_id": "cat-old",
                        "month": date(2024, 1, 1),
                        "planned": Decimal("80"),
                        "currency": "GBP",
                    }
                ],
            )

        [current] = self.store.list_budgets("acc-1", date(2024, 1, 1))
        [archived] = self.store.list_budgets("acc-2", date(2024, 1, 1))

        self.assertEqual((current.category_name, current.category_type), ("Groceries", EXPENSE))
        self.assertEqual((archived.category_name, archived.category_type), ("Old", EXPENSE))

    def test_recurring_templates(self) -> None:
        [template] = self.store.list_recurring_templates("acc-1")

        self.assertTrue(template.is_active)
        self.assertIsNone(template.currency)
        self.assertEqual(template.start_month, date(2024, 1, 1))

    def test_monthly_goal_and_defaults(self) -> None:
        goal = self.store.get_monthly_income_goal("acc-1", date(2024, 1, 1))
        defaults = self.store.get_account_defaults("acc-1")

        self.assertEqual(goal.amount, Decimal("7000"))
        self.assertEqual(goal.currency, "USD")
        self.assertIsNone(self.store.get_monthly_income_goal("acc-1", date(2024, 2, 1)))
        self.assertEqual(defaults.default_income_goal, Decimal("4000"))
        self.assertEqual(defaults.currency, "EUR")

    def test_defaults_fall_back_to_account_currency(self) -> None:
        defaults = self.store.get_account_defaults("acc-2")

        self.assertIsNone(defaults.default_income_goal)
        self.assertEqual(defaults.currency, "GBP")
        self.assertIsNone(self.store.get_account_defaults("missing"))

    def test_holdings_skip_deleted(self) -> None:
        result = self.store.list_holdings("acc-1")

        self.assertEqual([holding.symbol for holding in result], ["AAPL"])
        self.assertEqual(result[0].quantity, Decimal("10"))


class SqlPriceSourceTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = memory_engine()
        with self.engine.begin() as conn:
            conn.execute(
                stock_prices.insert(),
                [
                    {
                        "symbol": "AAPL",
                        "price": Decimal("170"),
                        "change_percent": Decimal("-0.5"),
                        "fetched_at": datetime(2024, 5, 30, 12, 0),
                    },
                    {
                        "symbol": "AAPL",
                        "price": Decimal("180"),
                        "change_percent": Decimal("1.25"),
                        "fetched_at": datetime(2024, 6, 1, 10, 0),
                    },
                    {
                        "symbol": "msft",
                        "price": Decimal("400"),
                        "change_percent": None,
                        "fetched_at": datetime(2024, 5, 31, 6, 0),
                    },
                    {
                        "symbol": "aapl",
                        "price": Decimal("150"),
                        "change_percent": None,
                        "fetched_at": datetime(2024, 5, 1, 9, 0),
                    },
                ],
            )

    def test_keeps_latest_quote_per_symbol(self) -> None:
        prices = SqlPriceSource(self.engine).load_prices(["aapl", "MSFT", "NONE"], now=NOW)

        self.assertEqual(set(prices), {"AAPL", "MSFT"})
        self.assertEqual(prices["AAPL"].price, Decimal("180"))
        self.assertEqual(prices["AAPL"].change_percent, Decimal("1.25"))
        self.assertEqual(prices["AAPL"].hours_since_update, 2.0)
        self.assertFalse(prices["AAPL"].is_stale)

    def test_selects_only_latest_rows_in_sql(self) -> None:
        statements = []

        def capture(conn, cursor, statement, parameters, context, executemany):
            statements.append(statement)

        event.listen(self.engine, "before_cursor_execute", capture)
        self.addCleanup(event.remove, self.engine, "before_cursor_execute", capture)

        prices = SqlPriceSource(self.engine).load_prices(["AAPL"], now=NOW)

        self.assertEqual(prices["AAPL"].price, Decimal("180"))
        [statement] = [sql for sql in statements if "stock_prices" in sql]
        self.assertIn("max(", statement.lower())
        self.assertIn("GROUP BY", statement)

    def test_marks_quotes_older_than_max_age_stale(self) -> None:
        prices = SqlPriceSource(self.engine, max_age_hours=24).load_prices(["MSFT"], now=NOW)

        self.assertTrue(prices["MSFT"].is_stale)
        self.assertEqual(prices["MSFT"].hours_since_update, 30.0)
        self.assertIsNone(prices["MSFT"].change_percent)

    def test_empty_request_skips_query(self) -> None:
        self.assertEqual(SqlPriceSource(self.engine).load_prices([]), {})


if __name__ == "__main__":
    unittest.main()
