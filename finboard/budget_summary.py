from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Iterable, Optional, Sequence

from finboard.currency_conversion import RateCache, convert_amount, normalize_currency
from finboard.models import EXPENSE, INCOME, Account, Budget, Category, Transaction
from finboard.months import month_key, month_start

ZERO = Decimal("0")


@dataclass(frozen=True)
class BudgetSummary:
    budget_id: str
    account_id: str
    account_name: Optional[str]
    category_id: str
    category_name: str
    category_type: Optional[str]
    planned: Decimal
    actual: Decimal
    remaining: Decimal
    month: str
    currency: str


def summarize_budgets(
    budgets: Iterable[Budget],
    transactions: Sequence[Transaction],
    categories: Iterable[Category],
    accounts: Iterable[Account],
    preferred_currency: str,
    rates: RateCache,
) -> list[BudgetSummary]:
    """Join each budget with its actual spend, both in ``preferred_currency``.

    ``remaining`` keeps its sign: negative means overspent (EXPENSE) or
    under-earned (INCOME).
    """
    target_currency = normalize_currency(preferred_currency)
    category_index = {category.id: category for category in categories}
    account_index = {account.id: account for account in accounts}

    summaries: list[BudgetSummary] = []
    for budget in budgets:
        budget_month = month_start(budget.month)
        planned = convert_amount(budget.planned, budget.currency, target_currency, rates)
        actual = _sum_actual(transactions, budget, target_currency, budget_month, rates)

        category = category_index.get(budget.category_id)
        category_name = budget.category_name or (category.name if category else "")
        category_type = budget.category_type or (category.type if category else None)
        account = account_index.get(budget.account_id)
        summaries.append(
            BudgetSummary(
                budget_id=budget.id,
                account_id=budget.account_id,
                account_name=account.name if account else None,
                category_id=budget.category_id,
                category_name=category_name,
                category_type=category_type,
                planned=planned,
                actual=actual,
                remaining=planned - actual,
                month=month_key(budget_month),
                currency=target_currency,
            )
        )

    summaries.sort(key=lambda summary: (summary.category_name.lower(), summary.budget_id))
    return summaries


def remaining_expense_budget(summaries: Iterable[BudgetSummary]) -> Decimal:
    return sum(
        (max(summary.remaining, ZERO) for summary in summaries if summary.category_type == EXPENSE),
        ZERO,
    )


def planned_total(summaries: Iterable[BudgetSummary], category_type: str) -> Decimal:
    return sum(
        (summary.planned for summary in summaries if summary.category_type == category_type),
        ZERO,
    )


def actual_total(summaries: Iterable[BudgetSummary], category_type: str) -> Decimal:
    return sum(
        (summary.actual for summary in summaries if summary.category_type == category_type),
        ZERO,
    )


def has_income_budgets(summaries: Iterable[BudgetSummary]) -> bool:
    return any(summary.category_type == INCOME for summary in summaries)


def _sum_actual(
    transactions: Iterable[Transaction],
    budget: Budget,
    target_currency: str,
    budget_month: date,
    rates: RateCache,
) -> Decimal:
    total = ZERO
    for txn in transactions:
        if txn.category_id != budget.category_id:
            continue
        if month_start(txn.month) != budget_month:
            continue
        total += convert_amount(txn.amount, txn.currency, target_currency, rates)
    return total
