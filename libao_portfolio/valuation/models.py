"""Calculated (derived) views produced by the valuation engine.

These are read-only rendering views. Nothing in them is persisted; they
are rebuilt from a PortfolioSnapshot plus a price snapshot on demand.
"""

from dataclasses import dataclass, field
from typing import Optional, Tuple

from libao_portfolio.ledger.models import Market


@dataclass(frozen=True)
class CalculatedAsset:
    """One position enriched with valuation figures.

    Attributes:
        id: Position identifier
        symbol: Instrument symbol
        name: Display name
        shares: Shares held
        average_cost: Base-currency cost per share
        current_price: Price used for this valuation (native currency)
        cost_basis: Base-currency cost of live lots
        market_value: shares x price x current base rate
        unrealized_pnl: market_value - cost_basis, rounded half up
        return_rate: unrealized_pnl / cost_basis x 100, 0 without cost
        portfolio_ratio: cost_basis / category projected investment x 100
        realized_pnl: Sum of realized PnL over this asset's transactions
    """

    id: str
    symbol: str
    name: str
    shares: float
    average_cost: float
    current_price: float
    cost_basis: float
    market_value: float
    unrealized_pnl: int
    return_rate: float
    portfolio_ratio: float
    realized_pnl: float


@dataclass(frozen=True)
class CalculatedCategory:
    """One category enriched with allocation utilization figures."""

    id: str
    name: str
    market: Market
    allocation_percent: float
    projected_investment: int
    invested_amount: float
    remaining_cash: float
    investment_ratio: float
    market_value: float
    unrealized_pnl: int
    realized_pnl: float
    assets: Tuple[CalculatedAsset, ...] = ()

    @property
    def is_over_allocated(self) -> bool:
        return self.remaining_cash < 0

    def find_asset(self, symbol: str) -> Optional[CalculatedAsset]:
        symbol = symbol.upper()
        for asset in self.assets:
            if asset.symbol.upper() == symbol:
                return asset
        return None


@dataclass(frozen=True)
class CalculatedPortfolio:
    """Whole-portfolio valuation.

    Attributes:
        total_capital: Fold of the capital log
        total_invested: Sum of category invested amounts
        total_market_value: Sum of category market values
        total_unrealized_pnl: Sum of category unrealized PnL
        total_realized_pnl: Sum of realized PnL over all transactions
        total_net_worth: capital + realized + unrealized
        invested_ratio: total_invested / total_capital x 100
        unrealized_ratio: total_unrealized_pnl / total_capital x 100
        categories: Per-category views, in snapshot order
    """

    total_capital: float
    total_invested: float
    total_market_value: float
    total_unrealized_pnl: int
    total_realized_pnl: float
    total_net_worth: float
    invested_ratio: float
    unrealized_ratio: float
    categories: Tuple[CalculatedCategory, ...] = field(default_factory=tuple)

    def find_category(self, category_id: str) -> Optional[CalculatedCategory]:
        for category in self.categories:
            if category.id == category_id:
                return category
        return None
