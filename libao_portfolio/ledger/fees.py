"""Brokerage fee and transaction tax estimation.

Taiwan equities pay a 0.1425% brokerage fee (discounted by the broker,
NT$20 minimum) on both sides and a 0.3% securities transaction tax on
sells. US trades go through zero-commission brokers and carry no tax in
base currency.
"""

import math
from dataclasses import dataclass

from libao_portfolio.ledger.models import Market, OrderAction, Settings

TW_FEE_RATE = 0.001425
TW_MIN_FEE = 20.0
TW_SELL_TAX_RATE = 0.003


@dataclass(frozen=True)
class FeeQuote:
    """Estimated fee and tax for a trade, both in base currency."""

    fee: float = 0.0
    tax: float = 0.0

    @property
    def total(self) -> float:
        return self.fee + self.tax


def estimate_fees(
    market: Market,
    action: OrderAction,
    gross_amount: float,
    settings: Settings,
) -> FeeQuote:
    """Estimate fee and tax for a trade.

    Args:
        market: Market the instrument trades on
        action: BUY or SELL
        gross_amount: Gross trade value in base currency
        settings: User settings (fee toggle and TW discount)

    Returns:
        FeeQuote with fee and tax (both 0 when fees are disabled)

    Example:
        >>> estimate_fees(Market.TW, OrderAction.SELL, 100_000, Settings())
        FeeQuote(fee=85.0, tax=300.0)
    """
    if not settings.enable_fees or gross_amount <= 0:
        return FeeQuote()

    if market != Market.TW:
        return FeeQuote()

    discount = settings.tw_fee_discount / 10 if settings.tw_fee_discount > 0 else 1.0
    fee = _floor(gross_amount * TW_FEE_RATE * discount)
    fee = max(fee, TW_MIN_FEE)

    tax = 0.0
    if action == OrderAction.SELL:
        tax = _floor(gross_amount * TW_SELL_TAX_RATE)

    return FeeQuote(fee=fee, tax=tax)


def _floor(value: float) -> float:
    # 0.001425 and 0.003 are not exact in binary; trim float noise first
    return float(math.floor(round(value, 6)))
