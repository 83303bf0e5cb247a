"""User-friendly API for the Libao portfolio ledger.

Components:
- PortfolioAPI: Orders, capital, allocation, prices, valuation and export
"""

from libao_portfolio.api.portfolio_api import PortfolioAPI

__all__ = [
    "PortfolioAPI",
]
