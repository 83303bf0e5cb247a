"""Order processor: applies buy/sell instructions to the lot store.

This module implements the ledger's forward algorithm (BUY appends a lot,
SELL consumes lots FIFO and attributes realized PnL) and its inverse
(revoking a transaction). Every operation is copy-on-write: callers get
new Category / PortfolioSnapshot instances and the inputs are never
modified, so an update can be discarded if a later step fails.
"""

import uuid
from dataclasses import replace
from datetime import datetime
from typing import Callable, Optional, Tuple

from libao_portfolio.ledger.allocation import AllocationManager
from libao_portfolio.ledger.dividends import shares_held_on
from libao_portfolio.ledger.lots import SHARE_EPSILON, Lot, LotSequence
from libao_portfolio.ledger.models import (
    AssetPosition,
    Category,
    Order,
    OrderAction,
    PortfolioSnapshot,
    TransactionRecord,
    TransactionType,
    ensure_utc,
    utc_now,
)
from libao_portfolio.utils.exceptions import (
    InsufficientSharesError,
    IrreversibleTransactionError,
    TransactionNotFoundError,
    UnknownCategoryError,
    ValidationError,
)
from libao_portfolio.utils.logging import get_logger, log_with_context

logger = get_logger(__name__)


def _new_id() -> str:
    return str(uuid.uuid4())


class OrderProcessor:
    """Applies orders, dividends and revocations to the ledger.

    Example:
        >>> processor = OrderProcessor()
        >>> order = Order(action=OrderAction.BUY, symbol="2330", shares=1000, price=580.0)
        >>> snapshot, tx = processor.apply(snapshot, "tw-g", order)
        >>> tx.realized_pnl
        0.0
    """

    def __init__(
        self,
        id_factory: Optional[Callable[[], str]] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """Initialize order processor.

        Args:
            id_factory: Generates transaction/lot/asset ids (default uuid4)
            clock: Returns the current timestamp (default UTC now)
        """
        self._new_id = id_factory or _new_id
        self._clock = clock or utc_now

    # ------------------------------------------------------------------
    # Forward algorithm
    # ------------------------------------------------------------------

    def execute(self, category: Category, order: Order) -> Tuple[Category, TransactionRecord]:
        """Apply one order to a category.

        Args:
            category: Category the order targets
            order: BUY or SELL instruction

        Returns:
            Tuple of (updated category, transaction record)

        Raises:
            ValidationError: If the order fails validation
            InsufficientSharesError: If a SELL exceeds the shares held
        """
        self._validate_order(order)

        if order.action == OrderAction.BUY:
            return self._execute_buy(category, order)
        return self._execute_sell(category, order)

    def apply(
        self,
        snapshot: PortfolioSnapshot,
        category_id: str,
        order: Order,
    ) -> Tuple[PortfolioSnapshot, TransactionRecord]:
        """Apply one order to a portfolio snapshot.

        The transaction is prepended to the log (newest first) and stamped
        with its share of the category's projected investment: the trade
        value for a BUY, the cost of the shares sold for a SELL.

        Raises:
            UnknownCategoryError: If the category does not exist
            ValidationError: If the order fails validation
            InsufficientSharesError: If a SELL exceeds the shares held
        """
        category = snapshot.find_category(category_id)
        if category is None:
            raise UnknownCategoryError(f"Unknown category: {category_id}")

        updated_category, tx = self.execute(category, order)

        projected = AllocationManager.projected_investment(
            snapshot.total_capital, category.allocation_percent
        )
        if projected > 0:
            # SELLs are measured by the FIFO cost of the shares they closed
            basis = tx.cost_basis if tx.action == TransactionType.SELL else tx.gross_amount
            tx = replace(tx, portfolio_ratio=basis / projected * 100)

        updated = replace(
            snapshot.with_category(updated_category),
            transactions=(tx,) + snapshot.transactions,
        )
        return updated.touched(), tx

    def _validate_order(self, order: Order) -> None:
        """Validate order before any state is touched."""
        if not order.symbol:
            raise ValidationError("symbol must not be empty")
        if order.shares <= 0:
            raise ValidationError(f"shares must be positive, got {order.shares}")
        if order.price < 0:
            raise ValidationError(f"price must be non-negative, got {order.price}")
        if order.exchange_rate <= 0:
            raise ValidationError(
                f"exchange_rate must be positive, got {order.exchange_rate}"
            )
        if order.fee < 0 or order.tax < 0:
            raise ValidationError(
                f"fee and tax must be non-negative, got fee={order.fee} tax={order.tax}"
            )
        if order.total_amount is not None and order.total_amount < 0:
            raise ValidationError(
                f"total_amount must be non-negative, got {order.total_amount}"
            )

    def _timestamp(self, order: Order) -> datetime:
        return ensure_utc(order.timestamp) if order.timestamp else self._clock()

    def _execute_buy(self, category: Category, order: Order) -> Tuple[Category, TransactionRecord]:
        timestamp = self._timestamp(order)
        lot = Lot(
            id=self._new_id(),
            acquired_at=timestamp,
            shares=order.shares,
            cost_per_share=order.price,
            exchange_rate=order.exchange_rate,
        )

        position = category.find_asset(order.symbol)
        if position is None:
            position = AssetPosition(
                id=order.asset_id or self._new_id(),
                symbol=order.symbol,
                name=order.name or order.symbol,
                lots=LotSequence([lot]),
                current_price=order.price,
            )
        else:
            position = replace(
                position,
                lots=position.lots.append(lot),
                current_price=order.price,
            )

        tx = TransactionRecord(
            id=self._new_id(),
            timestamp=timestamp,
            asset_id=position.id,
            symbol=order.symbol,
            name=position.name,
            action=TransactionType.BUY,
            shares=order.shares,
            price=order.price,
            exchange_rate=order.exchange_rate,
            gross_amount=order.base_amount,
            fee=order.fee,
            tax=order.tax,
            category_name=category.name,
            realized_pnl=0.0,
            lot_id=lot.id,
        )

        log_with_context(
            logger,
            "info",
            "BUY executed",
            category=category.name,
            symbol=order.symbol,
            shares=order.shares,
            price=order.price,
            average_cost=round(position.average_cost, 4),
        )
        return category.with_asset(position), tx

    def _execute_sell(self, category: Category, order: Order) -> Tuple[Category, TransactionRecord]:
        position = category.find_asset(order.symbol)
        held = position.shares if position is not None else 0.0

        if order.shares > held + SHARE_EPSILON:
            raise InsufficientSharesError(
                f"Insufficient shares of {order.symbol}: need {order.shares}, have {held}"
            )

        remaining_lots, consumed = position.lots.consume_fifo(order.shares)
        cost_of_sold = sum(c.base_cost for c in consumed)
        realized_pnl = order.base_amount - cost_of_sold - order.fee - order.tax

        updated_position = replace(position, lots=remaining_lots, current_price=order.price)

        tx = TransactionRecord(
            id=self._new_id(),
            timestamp=self._timestamp(order),
            asset_id=position.id,
            symbol=order.symbol,
            name=position.name,
            action=TransactionType.SELL,
            shares=order.shares,
            price=order.price,
            exchange_rate=order.exchange_rate,
            gross_amount=order.base_amount,
            fee=order.fee,
            tax=order.tax,
            category_name=category.name,
            realized_pnl=realized_pnl,
            cost_basis=cost_of_sold,
            consumed_lots=consumed,
        )

        log_with_context(
            logger,
            "info",
            "SELL executed",
            category=category.name,
            symbol=order.symbol,
            shares=order.shares,
            price=order.price,
            lots_consumed=len(consumed),
            realized_pnl=round(realized_pnl, 2),
            closed=updated_position.is_empty,
        )
        return category.with_asset(updated_position), tx

    # ------------------------------------------------------------------
    # Dividends
    # ------------------------------------------------------------------

    def record_dividend(
        self,
        snapshot: PortfolioSnapshot,
        category_id: str,
        symbol: str,
        amount_per_share: float,
        shares: Optional[float] = None,
        tax_rate: float = 0.0,
        exchange_rate: Optional[float] = None,
        ex_date: Optional[datetime] = None,
    ) -> Tuple[PortfolioSnapshot, TransactionRecord]:
        """Record a cash dividend as a DIVIDEND transaction.

        The dividend's net cash (gross minus withholding tax) is booked
        as realized PnL; lots are not touched.

        Args:
            snapshot: Current portfolio snapshot
            category_id: Category holding the instrument
            symbol: Instrument symbol
            amount_per_share: Dividend per share in native currency
            shares: Entitled shares (defaults to the shares held before
                ex_date, or to the current holding when ex_date is omitted)
            tax_rate: Withholding tax rate, 0 <= rate < 1
            exchange_rate: Native-to-base rate (defaults to current setting)
            ex_date: Ex-dividend date (defaults to now)

        Returns:
            Tuple of (new snapshot, dividend transaction)

        Raises:
            UnknownCategoryError: If the category does not exist
            ValidationError: If amount, shares or tax rate are invalid
        """
        category = snapshot.find_category(category_id)
        if category is None:
            raise UnknownCategoryError(f"Unknown category: {category_id}")
        if amount_per_share <= 0:
            raise ValidationError(
                f"amount_per_share must be positive, got {amount_per_share}"
            )
        if not 0 <= tax_rate < 1:
            raise ValidationError(f"tax_rate must be within [0, 1), got {tax_rate}")

        symbol = symbol.strip().upper()
        position = category.find_asset(symbol)
        if shares is None and ex_date is not None:
            shares = shares_held_on(snapshot, category_id, symbol, ex_date)
        elif shares is None:
            shares = position.shares if position is not None else 0.0
        if shares <= 0:
            raise ValidationError(f"shares must be positive, got {shares}")

        rate = exchange_rate if exchange_rate is not None else snapshot.settings.exchange_rate_for(category.market)
        gross = shares * amount_per_share * rate
        tax = gross * tax_rate

        tx = TransactionRecord(
            id=self._new_id(),
            timestamp=ensure_utc(ex_date) if ex_date else self._clock(),
            asset_id=position.id if position is not None else self._new_id(),
            symbol=symbol,
            name=position.name if position is not None else symbol,
            action=TransactionType.DIVIDEND,
            shares=shares,
            price=amount_per_share,
            exchange_rate=rate,
            gross_amount=gross,
            fee=0.0,
            tax=tax,
            category_name=category.name,
            realized_pnl=gross - tax,
        )

        log_with_context(
            logger,
            "info",
            "Dividend recorded",
            category=category.name,
            symbol=symbol,
            shares=shares,
            net=round(gross - tax, 2),
        )
        updated = replace(snapshot, transactions=(tx,) + snapshot.transactions)
        return updated.touched(), tx

    # ------------------------------------------------------------------
    # Revocation
    # ------------------------------------------------------------------

    def revoke(
        self,
        snapshot: PortfolioSnapshot,
        transaction_id: str,
    ) -> Tuple[PortfolioSnapshot, TransactionRecord]:
        """Delete a transaction and reverse its ledger effect exactly.

        - BUY: its lot is removed; the lot must still be live and untouched.
        - SELL: the consumed lot shares are restored with their original
          terms; no later SELL of the same symbol may exist in the category.
        - DIVIDEND: the record is removed (lots are unaffected).

        Returns:
            Tuple of (new snapshot, the revoked transaction)

        Raises:
            TransactionNotFoundError: If the transaction does not exist
            UnknownCategoryError: If its category no longer exists
            IrreversibleTransactionError: If later activity depends on it
        """
        index = next(
            (i for i, t in enumerate(snapshot.transactions) if t.id == transaction_id),
            None,
        )
        if index is None:
            raise TransactionNotFoundError(f"Unknown transaction: {transaction_id}")

        tx = snapshot.transactions[index]
        remaining = snapshot.transactions[:index] + snapshot.transactions[index + 1:]

        if tx.action == TransactionType.DIVIDEND:
            updated = replace(snapshot, transactions=remaining)
        else:
            category = snapshot.find_category_by_name(tx.category_name)
            if category is None:
                raise UnknownCategoryError(f"Unknown category: {tx.category_name}")

            if tx.action == TransactionType.BUY:
                category = self._revoke_buy(category, tx)
            else:
                # Transactions are newest first: everything before index is later
                self._ensure_no_later_sell(snapshot.transactions[:index], tx)
                category = self._revoke_sell(category, tx)

            updated = replace(snapshot.with_category(category), transactions=remaining)

        log_with_context(
            logger,
            "info",
            "Transaction revoked",
            transaction_id=tx.id,
            action=tx.action.value,
            symbol=tx.symbol,
            shares=tx.shares,
        )
        return updated.touched(), tx

    def _revoke_buy(self, category: Category, tx: TransactionRecord) -> Category:
        position = category.find_asset(tx.symbol)
        lot = position.lots.find(tx.lot_id) if position is not None and tx.lot_id else None

        if lot is None or lot.shares < tx.shares - SHARE_EPSILON:
            raise IrreversibleTransactionError(
                f"Cannot revoke BUY {tx.id}: lot {tx.lot_id} has already been sold from"
            )

        return category.with_asset(replace(position, lots=position.lots.remove(lot.id)))

    @staticmethod
    def _ensure_no_later_sell(later: Tuple[TransactionRecord, ...], tx: TransactionRecord) -> None:
        for other in later:
            if (
                other.action == TransactionType.SELL
                and other.category_name == tx.category_name
                and other.symbol.upper() == tx.symbol.upper()
            ):
                raise IrreversibleTransactionError(
                    f"Cannot revoke SELL {tx.id}: later SELL {other.id} of {tx.symbol} "
                    "already consumed lots after it"
                )

    def _revoke_sell(self, category: Category, tx: TransactionRecord) -> Category:
        position = category.find_asset(tx.symbol)
        lots = position.lots if position is not None else LotSequence()

        if tx.consumed_lots:
            lots = lots.restore(tx.consumed_lots)
        else:
            # Records without a lot breakdown come back as one lot at their cost
            cost = tx.cost_basis or tx.shares * tx.price * tx.exchange_rate
            lots = lots.append(
                Lot(
                    id=self._new_id(),
                    acquired_at=tx.timestamp,
                    shares=tx.shares,
                    cost_per_share=cost / tx.shares / tx.exchange_rate,
                    exchange_rate=tx.exchange_rate,
                )
            )

        if position is None:
            position = AssetPosition(
                id=tx.asset_id,
                symbol=tx.symbol,
                name=tx.name or tx.symbol,
                lots=lots,
                current_price=tx.price,
            )
        else:
            position = replace(position, lots=lots)

        return category.with_asset(position)

    # ------------------------------------------------------------------
    # Rebuild
    # ------------------------------------------------------------------

    def rebuild(self, snapshot: PortfolioSnapshot) -> PortfolioSnapshot:
        """Rebuild every position by replaying BUY/SELL history oldest first.

        Used to repair a snapshot whose positions drifted from its log.
        BUY lots keep their recorded lot ids, so rebuilt BUYs stay
        revocable. Positions that survive keep their last-known price and
        note. Transactions whose category no longer exists, and SELLs of
        symbols not held at that point, are skipped; a SELL larger than the
        rebuilt holding only consumes what is there.

        Returns:
            New snapshot with rebuilt positions and the same transactions
        """
        previous = {
            (category.id, asset.symbol.upper()): asset
            for category in snapshot.categories
            for asset in category.assets
        }
        categories = {category.name: replace(category, assets=()) for category in snapshot.categories}

        # The log is newest first; reversing keeps same-timestamp entries in entry order
        history = sorted(reversed(snapshot.transactions), key=lambda t: t.timestamp)
        replayed = skipped = 0

        for tx in history:
            if tx.action not in (TransactionType.BUY, TransactionType.SELL):
                continue

            category = categories.get(tx.category_name)
            if category is None:
                skipped += 1
                continue

            position = category.find_asset(tx.symbol)
            if tx.action == TransactionType.BUY:
                lot = Lot(
                    id=tx.lot_id or self._new_id(),
                    acquired_at=tx.timestamp,
                    shares=tx.shares,
                    cost_per_share=tx.price,
                    exchange_rate=tx.exchange_rate,
                )
                if position is None:
                    position = AssetPosition(
                        id=tx.asset_id,
                        symbol=tx.symbol,
                        name=tx.name or tx.symbol,
                        lots=LotSequence([lot]),
                        current_price=tx.price,
                    )
                else:
                    position = replace(position, lots=position.lots.append(lot), current_price=tx.price)
            else:
                if position is None:
                    skipped += 1
                    continue
                shares = min(tx.shares, position.shares)
                remaining, _ = position.lots.consume_fifo(shares)
                position = replace(position, lots=remaining, current_price=tx.price)

            categories[tx.category_name] = category.with_asset(position)
            replayed += 1

        rebuilt = []
        for category in snapshot.categories:
            updated = categories[category.name]
            assets = []
            for asset in updated.assets:
                old = previous.get((category.id, asset.symbol.upper()))
                if old is not None:
                    asset = replace(asset, current_price=old.current_price, note=old.note)
                assets.append(asset)
            rebuilt.append(replace(updated, assets=tuple(assets)))

        log_with_context(
            logger,
            "info",
            "Positions rebuilt from history",
            replayed=replayed,
            skipped=skipped,
            positions=sum(len(c.assets) for c in rebuilt),
        )
        return replace(snapshot, categories=tuple(rebuilt)).touched()
