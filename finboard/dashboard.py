from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
import logging
from typing import Any, Callable, Iterable, Optional, Sequence

from finboard.budget_summary import (
    BudgetSummary,
    actual_total,
    has_income_budgets,
    planned_total,
    remaining_expense_budget,
    summarize_budgets,
)
from finboard.currency_conversion import RateCache, convert_amount, normalize_currency
from finboard.history import HISTORY_MONTHS, MonthlyHistoryPoint, build_history
from finboard.holdings import HoldingValuation, value_holdings
from finboard.income_goal import ResolvedIncomeGoal, resolve_income_goal
from finboard.models import (
    EXPENSE,
    INCOME,
    Account,
    AccountDefaults,
    Budget,
    Category,
    MonthlyIncomeGoal,
    RecurringTemplate,
    Transaction,
)
from finboard.months import month_key, month_start, parse_month_value, shift_month
from finboard.stock_prices import normalize_symbol

logger = logging.getLogger(__name__)

ZERO = Decimal("0")

POSITIVE = "positive"
NEGATIVE = "negative"
NEUTRAL = "neutral"


class DashboardUnavailable(RuntimeError):
    """Raised when any input of a report could not be fetched."""


@dataclass(frozen=True)
class NetThisMonthBreakdown:
    income: Decimal
    expense: Decimal
    net: Decimal
    type: str = "net-this-month"


@dataclass(frozen=True)
class OnTrackForBreakdown:
    actual_income: Decimal
    actual_expense: Decimal
    remaining_budgeted_expense: Decimal
    income_source: str
    projected: Decimal
    type: str = "on-track-for"


@dataclass(frozen=True)
class CategoryRemaining:
    id: str
    name: str
    planned: Decimal
    actual: Decimal
    remaining: Decimal


@dataclass(frozen=True)
class LeftToSpendBreakdown:
    total_planned: Decimal
    total_actual: Decimal
    total_remaining: Decimal
    categories: list[CategoryRemaining] = field(default_factory=list)
    type: str = "left-to-spend"


@dataclass(frozen=True)
class MonthlyTargetBreakdown:
    planned_income: Decimal
    income_source: str
    planned_expense: Decimal
    target: Decimal
    type: str = "monthly-target"


@dataclass(frozen=True)
class MonetaryStat:
    label: str
    amount: Decimal
    variant: str
    helper: str
    breakdown: Any = None


@dataclass(frozen=True)
class MonthComparison:
    previous_month: str
    previous_net: Decimal
    change: Decimal


@dataclass(frozen=True)
class TransactionWithDisplay:
    transaction: Transaction
    converted_amount: Decimal
    display_currency: str


@dataclass(frozen=True)
class DashboardData:
    month: str
    stats: list[MonetaryStat]
    budgets: list[BudgetSummary]
    comparison: MonthComparison
    history: list[MonthlyHistoryPoint]
    accounts: list[Account]
    categories: list[Category]
    transactions: list[TransactionWithDisplay]
    recurring_templates: list[RecurringTemplate]
    preferred_currency: str
    actual_income: Decimal
    monthly_income_goal: ResolvedIncomeGoal
    exchange_rate_last_update: Optional[datetime] = None


async def get_dashboard_data(
    store,
    rate_source,
    account_id: str,
    month_key_value: str,
    preferred_currency: str,
    accounts: Optional[Sequence[Account]] = None,
    categories: Optional[Sequence[Category]] = None,
    user_id: Optional[str] = None,
    history_months: int = HISTORY_MONTHS,
) -> DashboardData:
    """Build the full dashboard report for one account and month.

    Any failed fetch fails the whole report with ``DashboardUnavailable``.
    """
    month = parse_month_value(month_key_value)
    currency = normalize_currency(preferred_currency)
    previous_month = shift_month(month, -1)
    history_start = shift_month(month, -(history_months - 1))

    logger.debug("Fetching dashboard inputs for account %s, %s", account_id, month_key(month))
    try:
        (
            fetched_accounts,
            fetched_categories,
            current_transactions,
            previous_transactions,
            history_transactions,
            budgets,
            templates,
            monthly_goal,
            account_defaults,
        ) = await asyncio.gather(
            _supplied_or_fetch(accounts, store.list_accounts, user_id),
            _supplied_or_fetch(
                categories, store.list_categories, user_id, include_archived=True
            ),
            asyncio.to_thread(store.list_transactions, month, month, account_id=account_id),
            asyncio.to_thread(
                store.list_transactions, previous_month, previous_month, account_id=account_id
            ),
            asyncio.to_thread(store.list_transactions, history_start, month, account_id=account_id),
            asyncio.to_thread(store.list_budgets, account_id, month),
            asyncio.to_thread(store.list_recurring_templates, account_id),
            asyncio.to_thread(store.get_monthly_income_goal, account_id, month),
            asyncio.to_thread(store.get_account_defaults, account_id),
        )
    except Exception as exc:
        logger.error("Dashboard fetch failed for account %s: %s", account_id, exc)
        raise DashboardUnavailable("Failed to load dashboard records.") from exc

    currencies = currency_closure(
        currency,
        fetched_accounts,
        budgets,
        templates,
        current_transactions,
        previous_transactions,
        history_transactions,
        monthly_goal=monthly_goal,
        account_defaults=account_defaults,
    )
    try:
        rates = await asyncio.to_thread(
            rate_source.load_rates, currencies, date=report_rate_date(month)
        )
    except Exception as exc:
        logger.error("Exchange rate load failed for %s: %s", sorted(currencies), exc)
        raise DashboardUnavailable("Failed to load exchange rates.") from exc

    report = build_dashboard(
        account_id=account_id,
        month=month,
        preferred_currency=currency,
        rates=rates,
        accounts=fetched_accounts,
        categories=fetched_categories,
        current_transactions=current_transactions,
        previous_transactions=previous_transactions,
        history_transactions=history_transactions,
        budgets=budgets,
        recurring_templates=templates,
        monthly_goal=monthly_goal,
        account_defaults=account_defaults,
        history_months=history_months,
    )
    logger.info(
        "Built dashboard for account %s, %s in %s (%d budgets, %d transactions)",
        account_id,
        report.month,
        currency,
        len(report.budgets),
        len(report.transactions),
    )
    return report


def build_dashboard(
    *,
    account_id: str,
    month: date,
    preferred_currency: str,
    rates: RateCache,
    accounts: Sequence[Account],
    categories: Sequence[Category],
    current_transactions: Sequence[Transaction],
    previous_transactions: Sequence[Transaction],
    history_transactions: Sequence[Transaction],
    budgets: Sequence[Budget],
    recurring_templates: Sequence[RecurringTemplate],
    monthly_goal: Optional[MonthlyIncomeGoal] = None,
    account_defaults: Optional[AccountDefaults] = None,
    history_months: int = HISTORY_MONTHS,
) -> DashboardData:
    currency = normalize_currency(preferred_currency)
    displayed = [
        TransactionWithDisplay(
            transaction=txn,
            converted_amount=convert_amount(txn.amount, txn.currency, currency, rates),
            display_currency=currency,
        )
        for txn in current_transactions
    ]
    actual_income = _sum_by_type(displayed, INCOME)
    actual_expense = _sum_by_type(displayed, EXPENSE)
    actual_net = actual_income - actual_expense

    summaries = summarize_budgets(budgets, current_transactions, categories, accounts, currency, rates)
    remaining_expense = remaining_expense_budget(summaries)
    planned_expense = planned_total(summaries, EXPENSE)

    goal = resolve_income_goal(
        account_id,
        month,
        accounts,
        recurring_templates,
        planned_total(summaries, INCOME),
        currency=currency,
        rates=rates,
        monthly_goal=monthly_goal,
        account_defaults=account_defaults,
        has_income_budgets=has_income_budgets(summaries),
    )
    expected_income = convert_amount(goal.amount, goal.currency, currency, rates)

    projected_net = actual_income - (actual_expense + remaining_expense)
    planned_net = expected_income - planned_expense

    stats = [
        MonetaryStat(
            label="Net this month",
            amount=actual_net,
            variant=_variant(actual_net),
            helper="Income minus expenses this month",
            breakdown=NetThisMonthBreakdown(
                income=actual_income,
                expense=actual_expense,
                net=actual_net,
            ),
        ),
        MonetaryStat(
            label="On track for",
            amount=projected_net,
            variant=_variant(projected_net),
            helper="Where you'll be at month end",
            breakdown=OnTrackForBreakdown(
                actual_income=actual_income,
                actual_expense=actual_expense,
                remaining_budgeted_expense=remaining_expense,
                income_source=goal.source,
                projected=projected_net,
            ),
        ),
        MonetaryStat(
            label="Left to spend",
            amount=remaining_expense,
            variant=NEUTRAL,
            helper="Budget not yet used",
            breakdown=LeftToSpendBreakdown(
                total_planned=planned_expense,
                total_actual=actual_total(summaries, EXPENSE),
                total_remaining=remaining_expense,
                categories=[
                    CategoryRemaining(
                        id=summary.category_id,
                        name=summary.category_name,
                        planned=summary.planned,
                        actual=summary.actual,
                        remaining=summary.remaining,
                    )
                    for summary in summaries
                    if summary.category_type == EXPENSE
                ],
            ),
        ),
        MonetaryStat(
            label="Monthly target",
            amount=planned_net,
            variant=_variant(planned_net),
            helper="Expected income minus budgeted expenses",
            breakdown=MonthlyTargetBreakdown(
                planned_income=expected_income,
                income_source=goal.source,
                planned_expense=planned_expense,
                target=planned_net,
            ),
        ),
    ]

    previous_net = _net(previous_transactions, currency, rates)
    comparison = MonthComparison(
        previous_month=month_key(shift_month(month, -1)),
        previous_net=previous_net,
        change=actual_net - previous_net,
    )

    return DashboardData(
        month=month_key(month),
        stats=stats,
        budgets=summaries,
        comparison=comparison,
        history=build_history(history_transactions, month, currency, rates, months=history_months),
        accounts=list(accounts),
        categories=list(categories),
        transactions=displayed,
        recurring_templates=list(recurring_templates),
        preferred_currency=currency,
        actual_income=actual_income,
        monthly_income_goal=goal,
        exchange_rate_last_update=rates.as_of,
    )


async def get_holdings_with_prices(
    store,
    price_source,
    rate_source,
    preferred_currency: Optional[str] = None,
    account_id: Optional[str] = None,
    accounts: Optional[Sequence[Account]] = None,
    categories: Optional[Sequence[Category]] = None,
) -> list[HoldingValuation]:
    """Value every holding with one price load and one rate load."""
    try:
        holdings, fetched_accounts, fetched_categories = await asyncio.gather(
            asyncio.to_thread(store.list_holdings, account_id),
            _supplied_or_fetch(accounts, store.list_accounts),
            _supplied_or_fetch(categories, store.list_categories, include_archived=True),
        )
    except Exception as exc:
        logger.error("Holdings fetch failed: %s", exc)
        raise DashboardUnavailable("Failed to load holdings.") from exc

    symbols = {normalize_symbol(holding.symbol) for holding in holdings}
    currencies = {normalize_currency(holding.currency) for holding in holdings}
    if preferred_currency:
        currencies.add(normalize_currency(preferred_currency))
    try:
        prices, rates = await asyncio.gather(
            _load_prices(price_source, symbols),
            asyncio.to_thread(rate_source.load_rates, currencies),
        )
    except Exception as exc:
        logger.error("Price or rate load failed for %d symbols: %s", len(symbols), exc)
        raise DashboardUnavailable("Failed to load prices.") from exc

    return value_holdings(
        holdings,
        prices,
        preferred_currency,
        rates,
        accounts=fetched_accounts,
        categories=fetched_categories,
    )


def report_rate_date(month: date, today: Optional[date] = None) -> Optional[date]:
    """Past months convert at the rates of their first day, later months at the latest rates."""
    current_month = month_start(today or date.today())
    if month_start(month) < current_month:
        return month_start(month)
    return None


def currency_closure(
    preferred_currency: str,
    accounts: Iterable[Account],
    budgets: Iterable[Budget],
    templates: Iterable[RecurringTemplate],
    *transaction_sets: Iterable[Transaction],
    monthly_goal: Optional[MonthlyIncomeGoal] = None,
    account_defaults: Optional[AccountDefaults] = None,
) -> set[str]:
    """Every currency a report can convert from or to."""
    currencies = {normalize_currency(preferred_currency)}
    for account in accounts:
        currencies.add(account.currency)
        if account.default_income_goal_currency:
            currencies.add(account.default_income_goal_currency)
    currencies.update(budget.currency for budget in budgets)
    currencies.update(template.currency for template in templates if template.currency)
    for transactions in transaction_sets:
        currencies.update(txn.currency for txn in transactions)
    if monthly_goal is not None:
        currencies.add(monthly_goal.currency)
    if account_defaults is not None:
        currencies.add(account_defaults.currency)
    return {normalize_currency(value) for value in currencies}


async def _supplied_or_fetch(
    supplied: Optional[Sequence], fetch: Callable, *args, **kwargs
) -> list:
    if supplied is not None:
        return list(supplied)
    return await asyncio.to_thread(fetch, *args, **kwargs)


async def _load_prices(price_source, symbols: set[str]) -> dict:
    if not symbols:
        return {}
    return await asyncio.to_thread(price_source.load_prices, symbols)


def _sum_by_type(entries: Iterable[TransactionWithDisplay], txn_type: str) -> Decimal:
    return sum(
        (entry.converted_amount for entry in entries if entry.transaction.type == txn_type),
        ZERO,
    )


def _net(transactions: Iterable[Transaction], currency: str, rates: RateCache) -> Decimal:
    net = ZERO
    for txn in transactions:
        amount = convert_amount(txn.amount, txn.currency, currency, rates)
        if txn.type == INCOME:
            net += amount
        elif txn.type == EXPENSE:
            net -= amount
    return net


def _variant(amount: Decimal) -> str:
    return POSITIVE if amount >= ZERO else NEGATIVE
