"""Valuation engine: derives the calculated portfolio view.

Everything here is a pure function of a PortfolioSnapshot and an optional
price snapshot. Realized PnL is always an idempotent fold over the
immutable transaction log, never a running counter, and every ratio
guards its denominator so that a zero yields 0 instead of an exception.

Cost basis is valued at each lot's historical exchange rate while market
value uses the current rate for all live shares, so unrealized PnL
absorbs exchange-rate movement since purchase.
"""

import math
from collections import defaultdict
from dataclasses import replace
from datetime import date
from typing import Dict, Iterable, Mapping, Optional

import pandas as pd

from libao_portfolio.ledger.allocation import AllocationManager
from libao_portfolio.ledger.models import (
    AssetPosition,
    Category,
    PortfolioSnapshot,
    TransactionRecord,
    TransactionType,
    utc_now,
)
from libao_portfolio.utils.logging import get_logger
from libao_portfolio.valuation.models import (
    CalculatedAsset,
    CalculatedCategory,
    CalculatedPortfolio,
)

logger = get_logger(__name__)

TRANSACTION_COLUMNS = [
    "id",
    "timestamp",
    "category",
    "symbol",
    "name",
    "action",
    "shares",
    "price",
    "exchange_rate",
    "gross_amount",
    "fee",
    "tax",
    "realized_pnl",
]


def round_half_up(value: float) -> int:
    """Round to the nearest integer, halves toward +infinity.

    Matches the rounding the display layer has always used
    (round_half_up(-2.5) == -2), unlike Python's banker's rounding.
    """
    return int(math.floor(value + 0.5))


def _ratio(numerator: float, denominator: float) -> float:
    if denominator <= 0:
        return 0.0
    return numerator / denominator * 100


class ValuationEngine:
    """Builds CalculatedPortfolio views from snapshots.

    Example:
        >>> engine = ValuationEngine()
        >>> view = engine.revalue(snapshot, prices={"2330": 600.0})
        >>> view.total_net_worth
        1012000.0
    """

    def revalue(
        self,
        snapshot: PortfolioSnapshot,
        prices: Optional[Mapping[str, Optional[float]]] = None,
    ) -> CalculatedPortfolio:
        """Value every position and aggregate category and portfolio totals.

        Args:
            snapshot: Portfolio snapshot to value
            prices: Optional symbol -> native price mapping. Missing or
                None entries fall back to the position's last known price.

        Returns:
            CalculatedPortfolio view
        """
        prices = prices or {}
        total_capital = snapshot.total_capital

        realized_by_asset: Dict[str, float] = defaultdict(float)
        realized_by_category: Dict[str, float] = defaultdict(float)
        for tx in snapshot.transactions:
            realized_by_asset[tx.asset_id] += tx.realized_pnl
            realized_by_category[tx.category_name] += tx.realized_pnl

        categories = []
        for category in snapshot.categories:
            categories.append(
                self._revalue_category(
                    category,
                    total_capital,
                    snapshot.settings.exchange_rate_for(category.market),
                    prices,
                    realized_by_asset,
                    realized_by_category[category.name],
                )
            )

        total_invested = sum(c.invested_amount for c in categories)
        total_market_value = sum(c.market_value for c in categories)
        total_unrealized = round_half_up(total_market_value - total_invested)
        total_realized = sum(tx.realized_pnl for tx in snapshot.transactions)

        view = CalculatedPortfolio(
            total_capital=total_capital,
            total_invested=total_invested,
            total_market_value=total_market_value,
            total_unrealized_pnl=total_unrealized,
            total_realized_pnl=total_realized,
            total_net_worth=total_capital + total_realized + total_unrealized,
            invested_ratio=_ratio(total_invested, total_capital),
            unrealized_ratio=_ratio(total_unrealized, total_capital),
            categories=tuple(categories),
        )

        logger.debug(
            "Revalued %d categories: invested=%.2f market=%.2f net_worth=%.2f",
            len(categories),
            view.total_invested,
            view.total_market_value,
            view.total_net_worth,
        )
        return view

    def _revalue_category(
        self,
        category: Category,
        total_capital: float,
        exchange_rate: float,
        prices: Mapping[str, Optional[float]],
        realized_by_asset: Mapping[str, float],
        realized_pnl: float,
    ) -> CalculatedCategory:
        projected = AllocationManager.projected_investment(
            total_capital, category.allocation_percent
        )

        assets = tuple(
            self._revalue_asset(
                position,
                _price_for(position, prices),
                exchange_rate,
                projected,
                realized_by_asset.get(position.id, 0.0),
            )
            for position in category.assets
        )

        invested = sum(a.cost_basis for a in assets)
        market_value = sum(a.market_value for a in assets)

        return CalculatedCategory(
            id=category.id,
            name=category.name,
            market=category.market,
            allocation_percent=category.allocation_percent,
            projected_investment=projected,
            invested_amount=invested,
            remaining_cash=projected - invested,
            investment_ratio=_ratio(invested, projected),
            market_value=market_value,
            unrealized_pnl=round_half_up(market_value - invested),
            realized_pnl=realized_pnl,
            assets=assets,
        )

    @staticmethod
    def _revalue_asset(
        position: AssetPosition,
        price: float,
        exchange_rate: float,
        projected_investment: int,
        realized_pnl: float,
    ) -> CalculatedAsset:
        cost_basis = position.cost_basis
        market_value = position.shares * price * exchange_rate
        unrealized = round_half_up(market_value - cost_basis)

        return CalculatedAsset(
            id=position.id,
            symbol=position.symbol,
            name=position.name,
            shares=position.shares,
            average_cost=position.average_cost,
            current_price=price,
            cost_basis=cost_basis,
            market_value=market_value,
            unrealized_pnl=unrealized,
            return_rate=_ratio(unrealized, cost_basis),
            portfolio_ratio=_ratio(cost_basis, projected_investment),
            realized_pnl=realized_pnl,
        )


def _price_for(position: AssetPosition, prices: Mapping[str, Optional[float]]) -> float:
    price = prices.get(position.symbol)
    if price is None or price <= 0:
        return position.current_price
    return price


def apply_prices(
    snapshot: PortfolioSnapshot,
    prices: Mapping[str, Optional[float]],
) -> PortfolioSnapshot:
    """Store refreshed quotes as the positions' last known prices.

    Symbols missing from prices (or mapped to None) keep their current
    price. The snapshot is returned unchanged when nothing moved.

    Args:
        snapshot: Portfolio snapshot
        prices: Symbol -> native price mapping

    Returns:
        Snapshot with updated current_price values
    """
    changed = 0
    categories = []

    for category in snapshot.categories:
        assets = []
        for position in category.assets:
            price = _price_for(position, prices)
            if price != position.current_price:
                position = replace(position, current_price=price)
                changed += 1
            assets.append(position)
        categories.append(replace(category, assets=tuple(assets)))

    if not changed:
        return snapshot

    logger.info("Applied %d refreshed prices", changed)
    return replace(snapshot, categories=tuple(categories)).touched()


def realized_pnl_by_month(
    transactions: Iterable[TransactionRecord],
    months: Optional[int] = 6,
    today: Optional[date] = None,
) -> pd.Series:
    """Realized PnL (SELL and DIVIDEND) grouped by calendar month.

    Args:
        transactions: Transaction log
        months: Trailing window length, zero-filled and ending at the
            current month. None returns every month with activity.
        today: Reference date for the window (defaults to today, UTC)

    Returns:
        Series of realized PnL indexed by "YYYY-MM", oldest first
    """
    rows = [
        {"month": tx.timestamp.strftime("%Y-%m"), "realized_pnl": tx.realized_pnl}
        for tx in transactions
        if tx.action in (TransactionType.SELL, TransactionType.DIVIDEND) and tx.realized_pnl
    ]

    if rows:
        series = pd.DataFrame(rows).groupby("month")["realized_pnl"].sum()
    else:
        series = pd.Series(dtype=float)

    series = series.sort_index()
    series.name = "realized_pnl"
    series.index.name = "month"

    if months is None:
        return series

    today = today or utc_now().date()
    window = pd.period_range(
        end=pd.Period(year=today.year, month=today.month, freq="M"),
        periods=months,
        freq="M",
    ).strftime("%Y-%m")

    series = series.reindex(window, fill_value=0.0).astype(float)
    series.name = "realized_pnl"
    series.index.name = "month"
    return series


def transactions_frame(transactions: Iterable[TransactionRecord]) -> pd.DataFrame:
    """Tabular view of the transaction log, newest first."""
    records = [
        {
            "id": tx.id,
            "timestamp": tx.timestamp,
            "category": tx.category_name,
            "symbol": tx.symbol,
            "name": tx.name,
            "action": tx.action.value,
            "shares": tx.shares,
            "price": tx.price,
            "exchange_rate": tx.exchange_rate,
            "gross_amount": tx.gross_amount,
            "fee": tx.fee,
            "tax": tx.tax,
            "realized_pnl": tx.realized_pnl,
        }
        for tx in transactions
    ]

    if not records:
        return pd.DataFrame(columns=TRANSACTION_COLUMNS)

    df = pd.DataFrame.from_records(records, columns=TRANSACTION_COLUMNS)
    return df.sort_values("timestamp", ascending=False, kind="stable").reset_index(drop=True)
