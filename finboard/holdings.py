from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Optional

from finboard.currency_conversion import RateCache, convert_amount, normalize_currency
from finboard.models import Account, Category, Holding
from finboard.stock_prices import PriceCache, normalize_symbol

ZERO = Decimal("0")
HUNDRED = Decimal("100")
PERCENT_QUANTUM = Decimal("0.01")


@dataclass(frozen=True)
class HoldingValuation:
    id: str
    account_id: str
    account_name: Optional[str]
    category_id: str
    category_name: Optional[str]
    symbol: str
    quantity: Decimal
    average_cost: Decimal
    currency: str
    notes: Optional[str]
    current_price: Optional[Decimal]
    change_percent: Optional[Decimal]
    market_value: Decimal
    cost_basis: Decimal
    gain_loss: Decimal
    gain_loss_percent: Decimal
    price_age: Optional[datetime]
    is_stale: bool
    current_price_converted: Optional[Decimal]
    market_value_converted: Decimal
    cost_basis_converted: Decimal
    gain_loss_converted: Decimal


def value_holding(
    holding: Holding,
    prices: PriceCache,
    preferred_currency: Optional[str],
    rates: Optional[RateCache],
    account_name: Optional[str] = None,
    category_name: Optional[str] = None,
) -> HoldingValuation:
    """Value one holding at its latest quote.

    Without a quote the holding is carried at cost. The ``*_converted``
    fields mirror the native values unless ``preferred_currency`` differs
    from the holding's currency.
    """
    quote = prices.get(normalize_symbol(holding.symbol))
    current_price = quote.price if quote else None

    cost_basis = holding.quantity * holding.average_cost
    market_value = holding.quantity * current_price if current_price is not None else cost_basis
    gain_loss = market_value - cost_basis
    gain_loss_percent = gain_loss_percentage(gain_loss, cost_basis)

    holding_currency = normalize_currency(holding.currency)
    current_price_converted = current_price
    market_value_converted = market_value
    cost_basis_converted = cost_basis
    gain_loss_converted = gain_loss
    if preferred_currency and normalize_currency(preferred_currency) != holding_currency:
        target = normalize_currency(preferred_currency)
        if current_price is not None:
            current_price_converted = convert_amount(current_price, holding_currency, target, rates)
        market_value_converted = convert_amount(market_value, holding_currency, target, rates)
        cost_basis_converted = convert_amount(cost_basis, holding_currency, target, rates)
        gain_loss_converted = market_value_converted - cost_basis_converted

    return HoldingValuation(
        id=holding.id,
        account_id=holding.account_id,
        account_name=account_name,
        category_id=holding.category_id,
        category_name=category_name,
        symbol=holding.symbol,
        quantity=holding.quantity,
        average_cost=holding.average_cost,
        currency=holding_currency,
        notes=holding.notes,
        current_price=current_price,
        change_percent=quote.change_percent if quote else None,
        market_value=market_value,
        cost_basis=cost_basis,
        gain_loss=gain_loss,
        gain_loss_percent=gain_loss_percent,
        price_age=quote.fetched_at if quote else None,
        is_stale=quote.is_stale if quote else False,
        current_price_converted=current_price_converted,
        market_value_converted=market_value_converted,
        cost_basis_converted=cost_basis_converted,
        gain_loss_converted=gain_loss_converted,
    )


def value_holdings(
    holdings: Iterable[Holding],
    prices: PriceCache,
    preferred_currency: Optional[str],
    rates: Optional[RateCache],
    accounts: Iterable[Account] = (),
    categories: Iterable[Category] = (),
) -> list[HoldingValuation]:
    account_names = {account.id: account.name for account in accounts}
    category_names = {category.id: category.name for category in categories}
    valuations = [
        value_holding(
            holding,
            prices,
            preferred_currency,
            rates,
            account_name=account_names.get(holding.account_id),
            category_name=category_names.get(holding.category_id),
        )
        for holding in holdings
    ]
    valuations.sort(key=lambda valuation: (normalize_symbol(valuation.symbol), valuation.id))
    return valuations


def gain_loss_percentage(gain_loss: Decimal, cost_basis: Decimal) -> Decimal:
    if cost_basis == ZERO:
        return ZERO
    return (gain_loss / cost_basis * HUNDRED).quantize(PERCENT_QUANTUM, rounding=ROUND_HALF_UP)
