"""Valuation Layer.

Derives the calculated portfolio view (cost basis, market value, realized
and unrealized PnL, allocation utilization) from a ledger snapshot.
"""

from libao_portfolio.valuation.engine import (
    ValuationEngine,
    apply_prices,
    realized_pnl_by_month,
    round_half_up,
    transactions_frame,
)
from libao_portfolio.valuation.models import (
    CalculatedAsset,
    CalculatedCategory,
    CalculatedPortfolio,
)

__all__ = [
    "ValuationEngine",
    "apply_prices",
    "realized_pnl_by_month",
    "round_half_up",
    "transactions_frame",
    "CalculatedAsset",
    "CalculatedCategory",
    "CalculatedPortfolio",
]
