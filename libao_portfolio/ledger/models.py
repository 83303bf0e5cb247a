"""Ledger data model.

This module defines the immutable records the ledger works on: categories
(capital-allocation buckets), asset positions with their lots, the
append-only transaction log and the capital log. Every mutation in the
ledger produces new instances via dataclasses.replace; nothing here is
modified in place.

Components:
- Market, OrderAction, TransactionType, CapitalType: enums
- Order: a buy/sell instruction from the caller
- AssetPosition, Category, Settings: portfolio structure
- TransactionRecord, CapitalLogEntry: audit logs
- PortfolioSnapshot: the whole persisted state
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, Optional, Tuple

from libao_portfolio.ledger.lots import Lot, LotConsumption, LotSequence, SHARE_EPSILON


class Market(Enum):
    """Market a category is bound to."""

    TW = "TW"
    US = "US"


class OrderAction(Enum):
    """Order action types."""

    BUY = "BUY"
    SELL = "SELL"


class TransactionType(Enum):
    """Transaction log entry types."""

    BUY = "BUY"
    SELL = "SELL"
    DIVIDEND = "DIVIDEND"


class CapitalType(Enum):
    """Capital log entry types."""

    DEPOSIT = "DEPOSIT"
    WITHDRAW = "WITHDRAW"


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes so all timestamps stay comparable."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@dataclass(frozen=True)
class Order:
    """A buy or sell instruction.

    Attributes:
        action: BUY or SELL
        symbol: Instrument symbol (upper-cased)
        shares: Number of shares to trade
        price: Price per share in native currency
        name: Display name of the instrument
        exchange_rate: Native-to-base rate for this trade (1 for TW)
        total_amount: Gross trade value in base currency; derived when None
        fee: Brokerage fee in base currency
        tax: Transaction tax in base currency
        asset_id: Id of the position being traded, when known
        timestamp: Trade time; defaults to now when executed
    """

    action: OrderAction
    symbol: str
    shares: float
    price: float
    name: str = ""
    exchange_rate: float = 1.0
    total_amount: Optional[float] = None
    fee: float = 0.0
    tax: float = 0.0
    asset_id: Optional[str] = None
    timestamp: Optional[datetime] = None

    def __post_init__(self):
        """Normalize action and symbol."""
        if isinstance(self.action, str):
            object.__setattr__(self, "action", OrderAction(self.action.upper()))
        object.__setattr__(self, "symbol", self.symbol.strip().upper())

    @property
    def base_amount(self) -> float:
        """Gross trade value in base currency."""
        if self.total_amount is not None:
            return self.total_amount
        return self.shares * self.price * self.exchange_rate


@dataclass(frozen=True)
class AssetPosition:
    """One instrument held inside one category.

    Shares and average cost are derived from the live lots, so the
    invariants "shares == sum of lot shares" and "average_cost == base
    cost / shares" cannot drift.

    Attributes:
        id: Position identifier (transactions reference it as asset_id)
        symbol: Instrument symbol
        name: Display name
        lots: Live lots, oldest first
        current_price: Last known price in native currency
        note: Free-form user note
    """

    id: str
    symbol: str
    name: str
    lots: LotSequence = field(default_factory=LotSequence)
    current_price: float = 0.0
    note: str = ""

    @property
    def shares(self) -> float:
        return self.lots.total_shares

    @property
    def average_cost(self) -> float:
        """Base-currency cost per share."""
        return self.lots.average_cost

    @property
    def cost_basis(self) -> float:
        """Base-currency cost of all live lots."""
        return self.lots.total_base_cost

    @property
    def is_empty(self) -> bool:
        return self.shares <= SHARE_EPSILON


@dataclass(frozen=True)
class Category:
    """A named capital-allocation bucket bound to one market.

    Attributes:
        id: Category identifier
        name: Display name (transactions reference it as category_name)
        market: TW or US
        allocation_percent: Target share of total capital, 0-100
        assets: Positions keyed by symbol, in display order
    """

    id: str
    name: str
    market: Market
    allocation_percent: float
    assets: Tuple[AssetPosition, ...] = ()

    def find_asset(self, symbol: str) -> Optional[AssetPosition]:
        symbol = symbol.upper()
        for asset in self.assets:
            if asset.symbol.upper() == symbol:
                return asset
        return None

    def with_asset(self, position: AssetPosition) -> "Category":
        """Return a copy with the position replaced or appended.

        A position without shares is dropped instead.
        """
        if position.is_empty:
            return self.without_asset(position.symbol)

        assets = list(self.assets)
        for index, asset in enumerate(assets):
            if asset.symbol.upper() == position.symbol.upper():
                assets[index] = position
                break
        else:
            assets.append(position)
        return replace(self, assets=tuple(assets))

    def without_asset(self, symbol: str) -> "Category":
        symbol = symbol.upper()
        return replace(
            self,
            assets=tuple(a for a in self.assets if a.symbol.upper() != symbol),
        )


@dataclass(frozen=True)
class Settings:
    """User settings relevant to the ledger.

    Attributes:
        us_exchange_rate: Current USD->TWD rate used for valuation
        enable_fees: Whether fee estimation is enabled
        us_broker: US broker name (fee schedule selector)
        tw_fee_discount: TW brokerage discount, in tenths (6 = 60%)
        extra: Unrecognized settings kept for lossless export
    """

    us_exchange_rate: float = 30.0
    enable_fees: bool = True
    us_broker: str = "Firstrade"
    tw_fee_discount: float = 6.0
    extra: Dict[str, Any] = field(default_factory=dict)

    def exchange_rate_for(self, market: Market) -> float:
        """Current native-to-base rate for a market."""
        return self.us_exchange_rate if market == Market.US else 1.0


@dataclass(frozen=True)
class TransactionRecord:
    """Append-only audit entry for a BUY, SELL or DIVIDEND.

    Attributes:
        id: Transaction identifier
        timestamp: When the event happened
        asset_id: Position the event belongs to
        symbol: Instrument symbol
        name: Instrument display name
        action: BUY, SELL or DIVIDEND
        shares: Shares traded (or entitled, for dividends)
        price: Price per share (or dividend per share), native currency
        exchange_rate: Rate used for the event
        gross_amount: Gross value in base currency
        fee: Fee in base currency
        tax: Tax in base currency
        category_name: Category the event belongs to
        realized_pnl: 0 for BUY, FIFO profit for SELL, net cash for DIVIDEND
        lot_id: Lot created by a BUY
        cost_basis: Base-currency cost of the shares a SELL consumed
        consumed_lots: Per-lot breakdown of a SELL, used for revocation
        portfolio_ratio: BUY trade value, or SELL cost of shares sold, as %
            of the category's projected investment at trade time
    """

    id: str
    timestamp: datetime
    asset_id: str
    symbol: str
    name: str
    action: TransactionType
    shares: float
    price: float
    exchange_rate: float
    gross_amount: float
    fee: float
    tax: float
    category_name: str
    realized_pnl: float = 0.0
    lot_id: Optional[str] = None
    cost_basis: float = 0.0
    consumed_lots: Tuple[LotConsumption, ...] = ()
    portfolio_ratio: float = 0.0


@dataclass(frozen=True)
class CapitalLogEntry:
    """Deposit or withdrawal against total capital."""

    id: str
    type: CapitalType
    amount: float
    timestamp: datetime
    note: str = ""

    @property
    def signed_amount(self) -> float:
        return self.amount if self.type == CapitalType.DEPOSIT else -self.amount


def fold_capital(capital_logs: Iterable[CapitalLogEntry]) -> float:
    """Total capital as the fold of all deposits minus withdrawals."""
    return sum(entry.signed_amount for entry in capital_logs)


@dataclass(frozen=True)
class PortfolioSnapshot:
    """The complete persisted state of one portfolio.

    Total capital is never stored; it is always folded from the capital
    log. Transactions are kept newest first.
    """

    settings: Settings = field(default_factory=Settings)
    categories: Tuple[Category, ...] = ()
    transactions: Tuple[TransactionRecord, ...] = ()
    capital_logs: Tuple[CapitalLogEntry, ...] = ()
    last_modified: Optional[datetime] = None

    @property
    def total_capital(self) -> float:
        return fold_capital(self.capital_logs)

    def find_category(self, category_id: str) -> Optional[Category]:
        for category in self.categories:
            if category.id == category_id:
                return category
        return None

    def find_category_by_name(self, name: str) -> Optional[Category]:
        for category in self.categories:
            if category.name == name:
                return category
        return None

    def find_transaction(self, transaction_id: str) -> Optional[TransactionRecord]:
        for tx in self.transactions:
            if tx.id == transaction_id:
                return tx
        return None

    def with_category(self, category: Category) -> "PortfolioSnapshot":
        """Return a copy with the category (matched by id) replaced."""
        return replace(
            self,
            categories=tuple(
                category if c.id == category.id else c for c in self.categories
            ),
        )

    def touched(self) -> "PortfolioSnapshot":
        """Return a copy stamped with a fresh last_modified."""
        return replace(self, last_modified=utc_now())


__all__ = [
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
    "ensure_utc",
    "fold_capital",
    "utc_now",
]
