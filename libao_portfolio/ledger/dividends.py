"""Dividend entitlement: shares held on an ex-date and dividend scans.

Entitlement is reconstructed from the transaction log rather than the live
lots, so a dividend recorded after later trades is still booked on the
shares that were actually held before the ex-date.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from libao_portfolio.ledger.models import (
    Category,
    Market,
    PortfolioSnapshot,
    TransactionType,
    ensure_utc,
)
from libao_portfolio.utils.exceptions import UnknownCategoryError
from libao_portfolio.utils.logging import get_logger, log_with_context

logger = get_logger(__name__)

# Default withholding on US dividends for non-resident holders
DEFAULT_WITHHOLDING = {
    Market.TW: 0.0,
    Market.US: 0.3,
}


@dataclass(frozen=True)
class DividendSuggestion:
    """An unrecorded dividend found by a scan, ready for record_dividend.

    Attributes:
        category_id: Category holding the instrument
        symbol: Instrument symbol
        name: Instrument display name
        market: Market of the category
        ex_date: Ex-dividend date
        amount_per_share: Dividend per share in native currency
        shares: Shares held before the ex-date
        tax_rate: Suggested withholding rate
    """

    category_id: str
    symbol: str
    name: str
    market: Market
    ex_date: datetime
    amount_per_share: float
    shares: float
    tax_rate: float


def _require_category(snapshot: PortfolioSnapshot, category_id: str) -> Category:
    category = snapshot.find_category(category_id)
    if category is None:
        raise UnknownCategoryError(f"Unknown category: {category_id}")
    return category


def shares_held_on(
    snapshot: PortfolioSnapshot,
    category_id: str,
    symbol: str,
    when: datetime,
) -> float:
    """Shares of symbol held in a category just before `when`.

    BUYs add and SELLs subtract; only transactions strictly earlier than
    `when` count, so a trade on the ex-date itself is not entitled.

    Raises:
        UnknownCategoryError: If the category does not exist
    """
    category = _require_category(snapshot, category_id)
    symbol = symbol.strip().upper()
    cutoff = ensure_utc(when)

    held = 0.0
    for tx in snapshot.transactions:
        if tx.category_name != category.name or tx.symbol.upper() != symbol:
            continue
        if tx.timestamp >= cutoff:
            continue
        if tx.action == TransactionType.BUY:
            held += tx.shares
        elif tx.action == TransactionType.SELL:
            held -= tx.shares
    return max(held, 0.0)


def _recorded_dates(snapshot: PortfolioSnapshot, category: Category, symbol: str) -> set:
    return {
        tx.timestamp.date()
        for tx in snapshot.transactions
        if tx.action == TransactionType.DIVIDEND
        and tx.category_name == category.name
        and tx.symbol.upper() == symbol
    }


def scan_dividends(
    snapshot: PortfolioSnapshot,
    fetch_dividends: Callable[[str, Market], Iterable],
    category_id: Optional[str] = None,
) -> List[DividendSuggestion]:
    """Find dividends paid on held positions that are not yet recorded.

    Every position with at least one BUY in its category is checked.
    Dividend events already recorded on the same ex-date, and events on
    which no shares were held, are skipped.

    Args:
        snapshot: Current portfolio snapshot
        fetch_dividends: Returns dividend events (ex_date, amount) for a
            symbol, e.g. PriceOracle.get_dividends
        category_id: Restrict the scan to one category

    Returns:
        Suggestions sorted by ex-date, oldest first

    Raises:
        UnknownCategoryError: If category_id does not exist
    """
    if category_id is not None:
        categories: Tuple[Category, ...] = (_require_category(snapshot, category_id),)
    else:
        categories = snapshot.categories

    events_by_symbol: Dict[Tuple[str, Market], list] = {}
    suggestions = []

    for category in categories:
        for asset in category.assets:
            symbol = asset.symbol.upper()
            has_buy = any(
                tx.action == TransactionType.BUY
                and tx.category_name == category.name
                and tx.symbol.upper() == symbol
                for tx in snapshot.transactions
            )
            if not has_buy:
                continue

            key = (symbol, category.market)
            if key not in events_by_symbol:
                events_by_symbol[key] = list(fetch_dividends(symbol, category.market))

            recorded = _recorded_dates(snapshot, category, symbol)
            for event in events_by_symbol[key]:
                ex_date = ensure_utc(event.ex_date)
                if ex_date.date() in recorded:
                    continue

                shares = shares_held_on(snapshot, category.id, symbol, ex_date)
                if shares <= 0:
                    continue

                suggestions.append(
                    DividendSuggestion(
                        category_id=category.id,
                        symbol=symbol,
                        name=asset.name,
                        market=category.market,
                        ex_date=ex_date,
                        amount_per_share=event.amount,
                        shares=shares,
                        tax_rate=DEFAULT_WITHHOLDING[category.market],
                    )
                )

    log_with_context(
        logger,
        "info",
        "Dividend scan finished",
        instruments=len(events_by_symbol),
        found=len(suggestions),
    )
    return sorted(suggestions, key=lambda s: (s.ex_date, s.category_id, s.symbol))
