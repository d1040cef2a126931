from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Callable, Iterable, Optional, Sequence, TypeVar

from finboard.currency_conversion import RateCache, convert_amount, normalize_currency
from finboard.models import (
    INCOME,
    Account,
    AccountDefaults,
    MonthlyIncomeGoal,
    RecurringTemplate,
)
from finboard.months import month_start

T = TypeVar("T")

GOAL = "goal"
DEFAULT = "default"
RECURRING = "recurring"
BUDGET = "budget"
NONE = "none"


@dataclass(frozen=True)
class ResolvedIncomeGoal:
    amount: Decimal
    currency: str
    is_default: bool
    source: str


@dataclass(frozen=True)
class IncomeGoalContext:
    account_id: str
    month: date
    currency: str
    rates: RateCache
    accounts: Sequence[Account] = ()
    monthly_goal: Optional[MonthlyIncomeGoal] = None
    account_defaults: Optional[AccountDefaults] = None
    recurring_templates: Sequence[RecurringTemplate] = ()
    income_budget_total: Decimal = Decimal("0")
    has_income_budgets: bool = False


Resolver = Callable[[IncomeGoalContext], Optional[ResolvedIncomeGoal]]


def first_match(resolvers: Iterable[Callable[[T], Optional[ResolvedIncomeGoal]]], context: T):
    """Return the first non-``None`` resolver result, or ``None``."""
    for resolver in resolvers:
        result = resolver(context)
        if result is not None:
            return result
    return None


def from_monthly_goal(context: IncomeGoalContext) -> Optional[ResolvedIncomeGoal]:
    goal = context.monthly_goal
    if goal is None or goal.amount is None:
        return None
    if goal.account_id != context.account_id or month_start(goal.month) != context.month:
        return None
    return ResolvedIncomeGoal(
        amount=goal.amount,
        currency=normalize_currency(goal.currency),
        is_default=False,
        source=GOAL,
    )


def from_account_default(context: IncomeGoalContext) -> Optional[ResolvedIncomeGoal]:
    defaults = context.account_defaults or _defaults_from_accounts(context)
    if defaults is None or defaults.default_income_goal is None:
        return None
    return ResolvedIncomeGoal(
        amount=defaults.default_income_goal,
        currency=normalize_currency(defaults.currency),
        is_default=True,
        source=DEFAULT,
    )


def from_recurring_income(context: IncomeGoalContext) -> Optional[ResolvedIncomeGoal]:
    account_currency = _account_currency(context)
    templates = [
        template
        for template in context.recurring_templates
        if _counts_toward_income(template, context.month)
    ]
    if not templates:
        return None
    total = sum(
        (
            convert_amount(
                template.amount,
                template.currency or account_currency,
                context.currency,
                context.rates,
            )
            for template in templates
        ),
        Decimal("0"),
    )
    return ResolvedIncomeGoal(
        amount=total,
        currency=context.currency,
        is_default=True,
        source=RECURRING,
    )


def from_income_budget(context: IncomeGoalContext) -> Optional[ResolvedIncomeGoal]:
    return ResolvedIncomeGoal(
        amount=context.income_budget_total,
        currency=context.currency,
        is_default=True,
        source=BUDGET if context.has_income_budgets else NONE,
    )


INCOME_GOAL_RESOLVERS: tuple[Resolver, ...] = (
    from_monthly_goal,
    from_account_default,
    from_recurring_income,
    from_income_budget,
)


def resolve_income_goal(
    account_id: str,
    month: date,
    accounts: Sequence[Account],
    recurring_templates: Sequence[RecurringTemplate],
    income_budget_total: Decimal,
    *,
    currency: str,
    rates: RateCache,
    monthly_goal: Optional[MonthlyIncomeGoal] = None,
    account_defaults: Optional[AccountDefaults] = None,
    has_income_budgets: bool = False,
) -> ResolvedIncomeGoal:
    """Resolve the income target for ``month``.

    Tiers, highest first: explicit monthly goal, the account's default goal,
    active recurring income templates, then the month's planned income budget.
    The first tier that yields a value wins. Goal tiers keep their native
    currency; the recurring and budget tiers are already in ``currency``.
    """
    context = IncomeGoalContext(
        account_id=account_id,
        month=month_start(month),
        currency=normalize_currency(currency),
        rates=rates,
        accounts=accounts,
        monthly_goal=monthly_goal,
        account_defaults=account_defaults,
        recurring_templates=recurring_templates,
        income_budget_total=income_budget_total,
        has_income_budgets=has_income_budgets,
    )
    return first_match(INCOME_GOAL_RESOLVERS, context)


def _counts_toward_income(template: RecurringTemplate, month: date) -> bool:
    if template.type != INCOME or not template.is_active:
        return False
    if template.start_month is not None and month_start(template.start_month) > month:
        return False
    if template.end_month is not None and month_start(template.end_month) < month:
        return False
    return True


def _find_account(context: IncomeGoalContext) -> Optional[Account]:
    for account in context.accounts:
        if account.id == context.account_id:
            return account
    return None


def _account_currency(context: IncomeGoalContext) -> str:
    account = _find_account(context)
    return account.currency if account else context.currency


def _defaults_from_accounts(context: IncomeGoalContext) -> Optional[AccountDefaults]:
    account = _find_account(context)
    if account is None or account.default_income_goal is None:
        return None
    return AccountDefaults(
        default_income_goal=account.default_income_goal,
        currency=account.default_income_goal_currency or account.currency,
    )
