"""Ledger Layer.

This layer owns the portfolio's persisted state and every mutation of it:
lot-level FIFO cost accounting, the transaction log and the capital log.

Components:
- LotSequence: Immutable FIFO lot store
- OrderProcessor: Applies BUY/SELL orders, dividends and revocations
- AllocationManager: Category targets and capital deposits/withdrawals
- estimate_fees: TW/US brokerage fee and tax estimation
- scan_dividends: Unrecorded dividends on held positions
"""

from libao_portfolio.ledger.allocation import (
    OPENING_BALANCE_ID,
    AllocationManager,
    default_categories,
    new_portfolio,
)
from libao_portfolio.ledger.dividends import DividendSuggestion, scan_dividends, shares_held_on
from libao_portfolio.ledger.fees import FeeQuote, estimate_fees
from libao_portfolio.ledger.lots import Lot, LotConsumption, LotSequence
from libao_portfolio.ledger.models import (
    AssetPosition,
    CapitalLogEntry,
    CapitalType,
    Category,
    Market,
    Order,
    OrderAction,
    PortfolioSnapshot,
    Settings,
    TransactionRecord,
    TransactionType,
)
from libao_portfolio.ledger.order_processor import OrderProcessor

__all__ = [
    # Processors
    "OrderProcessor",
    "AllocationManager",
    "estimate_fees",
    "FeeQuote",
    "scan_dividends",
    "shares_held_on",
    "DividendSuggestion",
    # Construction helpers
    "default_categories",
    "new_portfolio",
    "OPENING_BALANCE_ID",
    # Data model
    "AssetPosition",
    "CapitalLogEntry",
    "CapitalType",
    "Category",
    "Lot",
    "LotConsumption",
    "LotSequence",
    "Market",
    "Order",
    "OrderAction",
    "PortfolioSnapshot",
    "Settings",
    "TransactionRecord",
    "TransactionType",
]
