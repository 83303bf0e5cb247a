"""User-friendly Portfolio API for the ledger, valuation and price oracle.

This module provides a simple, high-level interface that holds the latest
portfolio snapshot and serializes every mutation through it. Each call
either replaces the snapshot with a new one or raises, leaving the
previous snapshot in place.
"""

from dataclasses import replace
from datetime import date, datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import pandas as pd

from libao_portfolio.ledger.allocation import AllocationManager, new_portfolio
from libao_portfolio.ledger.dividends import DividendSuggestion, scan_dividends
from libao_portfolio.ledger.fees import FeeQuote, estimate_fees
from libao_portfolio.ledger.models import (
    Order,
    OrderAction,
    PortfolioSnapshot,
    TransactionRecord,
)
from libao_portfolio.ledger.order_processor import OrderProcessor
from libao_portfolio.oracle.price_oracle import PriceOracle
from libao_portfolio.storage.snapshot import export_snapshot, import_snapshot
from libao_portfolio.utils.exceptions import (
    LedgerError,
    SnapshotImportError,
    UnknownCategoryError,
    ValidationError,
)
from libao_portfolio.utils.ledger_log import LedgerEventLogger, LedgerEventType
from libao_portfolio.utils.logging import get_logger
from libao_portfolio.valuation.engine import (
    ValuationEngine,
    apply_prices,
    realized_pnl_by_month,
    transactions_frame,
)
from libao_portfolio.valuation.models import CalculatedPortfolio

logger = get_logger(__name__)

SETTINGS_ATTRIBUTES = ("us_exchange_rate", "enable_fees", "us_broker", "tw_fee_discount")


class PortfolioAPI:
    """High-level API for portfolio bookkeeping.

    Example:
        >>> api = PortfolioAPI(snapshot=new_portfolio(1_000_000))
        >>> tx = api.execute_order(
        ...     "tw-g",
        ...     Order(action=OrderAction.BUY, symbol="2330", shares=1000, price=580.0),
        ... )
        >>> api.refresh_prices()
        >>> view = api.calculate()
        >>> view.total_net_worth
    """

    def __init__(
        self,
        snapshot: Optional[PortfolioSnapshot] = None,
        oracle: Optional[PriceOracle] = None,
        processor: Optional[OrderProcessor] = None,
        allocation: Optional[AllocationManager] = None,
        engine: Optional[ValuationEngine] = None,
        event_logger: Optional[LedgerEventLogger] = None,
    ):
        """Initialize PortfolioAPI.

        Args:
            snapshot: Starting snapshot (defaults to an empty portfolio
                with the default categories)
            oracle: PriceOracle instance (created lazily when first needed)
            processor: OrderProcessor instance
            allocation: AllocationManager instance
            engine: ValuationEngine instance
            event_logger: Optional audit logger for ledger events
        """
        self.snapshot = snapshot or new_portfolio()
        self._oracle = oracle
        self.processor = processor or OrderProcessor()
        self.allocation = allocation or AllocationManager()
        self.engine = engine or ValuationEngine()
        self.event_logger = event_logger

        logger.debug(
            "PortfolioAPI initialized with %d categories", len(self.snapshot.categories)
        )

    @property
    def oracle(self) -> PriceOracle:
        if self._oracle is None:
            self._oracle = PriceOracle()
        return self._oracle

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------

    def execute_order(self, category_id: str, order: Order) -> TransactionRecord:
        """Execute a BUY or SELL order against a category.

        Args:
            category_id: Target category id
            order: Order instruction

        Returns:
            The recorded transaction

        Raises:
            UnknownCategoryError: If the category does not exist
            ValidationError: If the order is invalid
            InsufficientSharesError: If a SELL exceeds the shares held
        """
        try:
            snapshot, tx = self.processor.apply(self.snapshot, category_id, order)
        except LedgerError as e:
            self._log_rejection(order, e)
            raise

        self.snapshot = snapshot
        if self.event_logger:
            self.event_logger.log_order_event(
                LedgerEventType.ORDER_EXECUTED,
                symbol=tx.symbol,
                action=tx.action.value,
                shares=tx.shares,
                price=tx.price,
                transaction_id=tx.id,
                category=tx.category_name,
                realized_pnl=tx.realized_pnl,
            )
        return tx

    def estimate_fees(self, category_id: str, action: OrderAction | str, gross_amount: float) -> FeeQuote:
        """Estimate fee and tax for a trade in a category's market."""
        category = self.snapshot.find_category(category_id)
        if category is None:
            raise UnknownCategoryError(f"Unknown category: {category_id}")
        if isinstance(action, str):
            action = OrderAction(action.upper())
        return estimate_fees(category.market, action, gross_amount, self.snapshot.settings)

    def revoke_transaction(self, transaction_id: str) -> TransactionRecord:
        """Delete a transaction and reverse its effect on the lots.

        Raises:
            TransactionNotFoundError: If the transaction does not exist
            IrreversibleTransactionError: If later activity depends on it
        """
        try:
            snapshot, tx = self.processor.revoke(self.snapshot, transaction_id)
        except LedgerError as e:
            if self.event_logger:
                self.event_logger.log_error(
                    LedgerEventType.LEDGER_ERROR,
                    error=str(e),
                    operation="revoke",
                    transaction_id=transaction_id,
                )
            raise

        self.snapshot = snapshot
        if self.event_logger:
            self.event_logger.log_order_event(
                LedgerEventType.TRANSACTION_REVOKED,
                symbol=tx.symbol,
                action=tx.action.value,
                shares=tx.shares,
                price=tx.price,
                transaction_id=tx.id,
            )
        return tx

    def record_dividend(
        self,
        category_id: str,
        symbol: str,
        amount_per_share: float,
        shares: Optional[float] = None,
        tax_rate: float = 0.0,
        exchange_rate: Optional[float] = None,
        ex_date: Optional[datetime] = None,
    ) -> TransactionRecord:
        """Record a cash dividend; see OrderProcessor.record_dividend."""
        snapshot, tx = self.processor.record_dividend(
            self.snapshot,
            category_id,
            symbol,
            amount_per_share,
            shares=shares,
            tax_rate=tax_rate,
            exchange_rate=exchange_rate,
            ex_date=ex_date,
        )
        self.snapshot = snapshot
        if self.event_logger:
            self.event_logger.log_order_event(
                LedgerEventType.DIVIDEND_RECORDED,
                symbol=tx.symbol,
                action=tx.action.value,
                shares=tx.shares,
                price=tx.price,
                transaction_id=tx.id,
                net=tx.realized_pnl,
            )
        return tx

    def scan_dividends(self, category_id: Optional[str] = None) -> List[DividendSuggestion]:
        """Find unrecorded dividends on held positions via the oracle.

        Nothing is recorded; pass the suggestions you accept to
        record_scanned_dividends.

        Raises:
            UnknownCategoryError: If category_id does not exist
        """
        return scan_dividends(self.snapshot, self.oracle.get_dividends, category_id)

    def record_scanned_dividends(self, suggestions: Iterable[DividendSuggestion]) -> List[TransactionRecord]:
        """Record scanned dividends; all or nothing.

        Raises:
            LedgerError: If any suggestion is rejected; no dividend is kept
        """
        snapshot = self.snapshot
        recorded = []
        for suggestion in suggestions:
            snapshot, tx = self.processor.record_dividend(
                snapshot,
                suggestion.category_id,
                suggestion.symbol,
                suggestion.amount_per_share,
                shares=suggestion.shares,
                tax_rate=suggestion.tax_rate,
                ex_date=suggestion.ex_date,
            )
            recorded.append(tx)

        self.snapshot = snapshot
        if self.event_logger:
            for tx in recorded:
                self.event_logger.log_order_event(
                    LedgerEventType.DIVIDEND_RECORDED,
                    symbol=tx.symbol,
                    action=tx.action.value,
                    shares=tx.shares,
                    price=tx.price,
                    transaction_id=tx.id,
                    net=tx.realized_pnl,
                )
        return recorded

    def rebuild_positions(self) -> PortfolioSnapshot:
        """Rebuild all positions from the BUY/SELL history."""
        self.snapshot = self.processor.rebuild(self.snapshot)
        if self.event_logger:
            self.event_logger.log_capital_event(
                LedgerEventType.POSITIONS_REBUILT,
                total_capital=self.snapshot.total_capital,
                positions=sum(len(c.assets) for c in self.snapshot.categories),
            )
        return self.snapshot

    # ------------------------------------------------------------------
    # Capital and allocation
    # ------------------------------------------------------------------

    def set_allocation(self, category_id: str, percent: float) -> None:
        self.snapshot = self.allocation.set_allocation(self.snapshot, category_id, percent)
        if self.event_logger:
            self.event_logger.log_capital_event(
                LedgerEventType.ALLOCATION_CHANGED,
                total_capital=self.snapshot.total_capital,
                category_id=category_id,
                allocation_percent=percent,
                total_allocation=sum(c.allocation_percent for c in self.snapshot.categories),
            )

    def deposit(self, amount: float, note: str = "", timestamp: Optional[datetime] = None) -> float:
        """Deposit capital; returns the new total capital."""
        self.snapshot = self.allocation.deposit(self.snapshot, amount, note, timestamp)
        self._log_capital(LedgerEventType.CAPITAL_DEPOSITED, amount=amount, note=note)
        return self.snapshot.total_capital

    def withdraw(self, amount: float, note: str = "", timestamp: Optional[datetime] = None) -> float:
        """Withdraw capital; returns the new total capital."""
        self.snapshot = self.allocation.withdraw(self.snapshot, amount, note, timestamp)
        self._log_capital(LedgerEventType.CAPITAL_WITHDRAWN, amount=amount, note=note)
        return self.snapshot.total_capital

    def remove_capital_log(self, entry_id: str) -> float:
        """Delete a capital log entry; returns the new total capital."""
        self.snapshot = self.allocation.remove_capital_log(self.snapshot, entry_id)
        self._log_capital(LedgerEventType.CAPITAL_LOG_REMOVED, entry_id=entry_id)
        return self.snapshot.total_capital

    def update_settings(self, **changes: Any) -> None:
        """Update user settings (us_exchange_rate, enable_fees, ...).

        Raises:
            ValidationError: If an unknown setting or invalid rate is given
        """
        unknown = set(changes) - set(SETTINGS_ATTRIBUTES)
        if unknown:
            raise ValidationError(f"Unknown setting(s): {', '.join(sorted(unknown))}")
        if "us_exchange_rate" in changes and changes["us_exchange_rate"] <= 0:
            raise ValidationError(
                f"us_exchange_rate must be positive, got {changes['us_exchange_rate']}"
            )

        settings = replace(self.snapshot.settings, **changes)
        self.snapshot = replace(self.snapshot, settings=settings).touched()
        logger.info("Settings updated: %s", ", ".join(f"{k}={v}" for k, v in changes.items()))

    # ------------------------------------------------------------------
    # Prices and valuation
    # ------------------------------------------------------------------

    def refresh_prices(self, category_id: Optional[str] = None) -> Dict[str, float]:
        """Fetch current prices and store them on the positions.

        Args:
            category_id: Refresh only this category (default: all)

        Returns:
            Mapping of symbol to the prices that were fetched
        """
        if category_id is not None:
            category = self.snapshot.find_category(category_id)
            if category is None:
                raise UnknownCategoryError(f"Unknown category: {category_id}")
            categories = [category]
        else:
            categories = list(self.snapshot.categories)

        instruments = [
            (asset.symbol, category.market)
            for category in categories
            for asset in category.assets
        ]
        if not instruments:
            return {}

        prices = self.oracle.get_prices(instruments)
        self.snapshot = apply_prices(self.snapshot, prices)

        if self.event_logger:
            self.event_logger.log_oracle_event(
                LedgerEventType.PRICES_REFRESHED,
                requested=len(set(instruments)),
                resolved=len(prices),
                category_id=category_id,
            )
        return prices

    def calculate(self, prices: Optional[Dict[str, float]] = None) -> CalculatedPortfolio:
        """Value the current snapshot (optionally with explicit prices)."""
        return self.engine.revalue(self.snapshot, prices)

    def monthly_realized_pnl(self, months: Optional[int] = 6, today: Optional[date] = None) -> pd.Series:
        return realized_pnl_by_month(self.snapshot.transactions, months=months, today=today)

    def transaction_history(self) -> pd.DataFrame:
        return transactions_frame(self.snapshot.transactions)

    def get_quote(self, symbol: str, market: str) -> Optional[float]:
        return self.oracle.get_price(symbol, market)

    def search(self, query: str, market: str) -> List:
        return self.oracle.search_instruments(query, market)

    def news(self, symbol: str, market: str, name: Optional[str] = None) -> List:
        return self.oracle.get_news(symbol, market, name)

    # ------------------------------------------------------------------
    # Export / import
    # ------------------------------------------------------------------

    def export(self, directory: str | Path, today: Optional[date] = None) -> Path:
        """Write the snapshot to <directory>/portfolio_<YYYY-MM-DD>.json."""
        path = export_snapshot(self.snapshot, directory, today=today)
        if self.event_logger:
            self.event_logger.log_capital_event(
                LedgerEventType.SNAPSHOT_EXPORTED,
                total_capital=self.snapshot.total_capital,
                path=str(path),
            )
        return path

    def import_file(self, source: str | Path) -> PortfolioSnapshot:
        """Replace the snapshot with an imported one.

        Raises:
            SnapshotImportError: If the file is invalid; the current
                snapshot is kept
        """
        try:
            snapshot = import_snapshot(source)
        except SnapshotImportError as e:
            if self.event_logger:
                self.event_logger.log_error(LedgerEventType.IMPORT_ERROR, error=str(e))
            raise

        self.snapshot = snapshot
        if self.event_logger:
            self.event_logger.log_capital_event(
                LedgerEventType.SNAPSHOT_IMPORTED,
                total_capital=snapshot.total_capital,
                categories=len(snapshot.categories),
                transactions=len(snapshot.transactions),
            )
        return snapshot

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _log_capital(self, event_type: LedgerEventType, **extra: Any) -> None:
        if self.event_logger:
            self.event_logger.log_capital_event(
                event_type,
                total_capital=self.snapshot.total_capital,
                **extra,
            )

    def _log_rejection(self, order: Order, error: Exception) -> None:
        logger.warning("Order rejected: %s %s %s: %s", order.action.value, order.shares, order.symbol, error)
        if self.event_logger:
            self.event_logger.log_order_event(
                LedgerEventType.ORDER_REJECTED,
                symbol=order.symbol,
                action=order.action.value,
                shares=order.shares,
                price=order.price,
                reason=str(error),
            )
