"""Allocation manager: category targets and the capital log.

Each category carries a target percentage of total capital. Targets are
set independently; their sum is not forced to 100, and over- or
under-allocation is a reportable state rather than an error. Total
capital is always the fold of the capital log.
"""

import math
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Iterable, Optional, Tuple

from libao_portfolio.ledger.models import (
    CapitalLogEntry,
    CapitalType,
    Category,
    Market,
    PortfolioSnapshot,
    Settings,
    ensure_utc,
    fold_capital,
    utc_now,
)
from libao_portfolio.utils.exceptions import UnknownCategoryError, ValidationError
from libao_portfolio.utils.logging import get_logger

logger = get_logger(__name__)

OPENING_BALANCE_ID = "opening-balance"


def default_categories() -> Tuple[Category, ...]:
    """The five position buckets seeded at onboarding."""
    return (
        Category(id="tw-red", name="紅標 (頭等艙)", market=Market.TW, allocation_percent=20),
        Category(id="tw-g", name="G倉 (長線)", market=Market.TW, allocation_percent=25),
        Category(id="tw-f", name="F倉", market=Market.TW, allocation_percent=15),
        Category(id="us-d", name="D倉 (長線)", market=Market.US, allocation_percent=25),
        Category(id="us-e", name="E倉", market=Market.US, allocation_percent=15),
    )


def new_portfolio(
    initial_capital: float = 0.0,
    settings: Optional[Settings] = None,
    categories: Optional[Iterable[Category]] = None,
) -> PortfolioSnapshot:
    """Create a fresh portfolio snapshot.

    Args:
        initial_capital: Opening capital; recorded as the first DEPOSIT
        settings: User settings (defaults to Settings())
        categories: Buckets to seed (defaults to default_categories())

    Returns:
        New PortfolioSnapshot

    Raises:
        ValidationError: If initial_capital is negative
    """
    if initial_capital < 0:
        raise ValidationError(
            f"initial_capital must be non-negative, got {initial_capital}"
        )

    logs: Tuple[CapitalLogEntry, ...] = ()
    if initial_capital > 0:
        logs = (
            CapitalLogEntry(
                id=OPENING_BALANCE_ID,
                type=CapitalType.DEPOSIT,
                amount=initial_capital,
                timestamp=utc_now(),
                note="Opening balance",
            ),
        )

    return PortfolioSnapshot(
        settings=settings or Settings(),
        categories=tuple(categories) if categories is not None else default_categories(),
        capital_logs=logs,
        last_modified=utc_now(),
    )


class AllocationManager:
    """Maintains category targets and derives capital figures.

    Example:
        >>> manager = AllocationManager()
        >>> snapshot = manager.deposit(new_portfolio(), 1_000_000)
        >>> snapshot = manager.set_allocation(snapshot, "tw-red", 30)
        >>> manager.projected_investment(snapshot.total_capital, 30)
        300000
    """

    @staticmethod
    def total_capital(capital_logs: Iterable[CapitalLogEntry]) -> float:
        """Fold the capital log: deposits minus withdrawals."""
        return fold_capital(capital_logs)

    @staticmethod
    def projected_investment(total_capital: float, allocation_percent: float) -> int:
        """Capital earmarked for a category, floored to whole units."""
        return math.floor(total_capital * allocation_percent / 100)

    def set_allocation(
        self,
        snapshot: PortfolioSnapshot,
        category_id: str,
        percent: float,
    ) -> PortfolioSnapshot:
        """Replace a category's target percentage.

        Args:
            snapshot: Current portfolio snapshot
            category_id: Category to update
            percent: New target, 0-100

        Returns:
            New snapshot with the updated category

        Raises:
            ValidationError: If percent is outside 0-100
            UnknownCategoryError: If the category does not exist
        """
        if not 0 <= percent <= 100:
            raise ValidationError(f"allocation percent must be within 0-100, got {percent}")

        category = snapshot.find_category(category_id)
        if category is None:
            raise UnknownCategoryError(f"Unknown category: {category_id}")

        updated = snapshot.with_category(replace(category, allocation_percent=percent))

        total = sum(c.allocation_percent for c in updated.categories)
        logger.info(
            "Allocation for %s set to %.2f%% (all categories: %.2f%%)",
            category.name,
            percent,
            total,
        )
        return updated.touched()

    def deposit(
        self,
        snapshot: PortfolioSnapshot,
        amount: float,
        note: str = "",
        timestamp: Optional[datetime] = None,
    ) -> PortfolioSnapshot:
        """Append a DEPOSIT entry to the capital log."""
        return self._append_log(snapshot, CapitalType.DEPOSIT, amount, note, timestamp)

    def withdraw(
        self,
        snapshot: PortfolioSnapshot,
        amount: float,
        note: str = "",
        timestamp: Optional[datetime] = None,
    ) -> PortfolioSnapshot:
        """Append a WITHDRAW entry to the capital log.

        Withdrawals beyond the current total are allowed; total capital
        simply goes negative, as the log is the only source of truth.
        """
        return self._append_log(snapshot, CapitalType.WITHDRAW, amount, note, timestamp)

    def remove_capital_log(self, snapshot: PortfolioSnapshot, entry_id: str) -> PortfolioSnapshot:
        """Delete a capital log entry.

        Raises:
            ValidationError: If no entry has this id
        """
        if not any(entry.id == entry_id for entry in snapshot.capital_logs):
            raise ValidationError(f"Unknown capital log entry: {entry_id}")

        updated = replace(
            snapshot,
            capital_logs=tuple(e for e in snapshot.capital_logs if e.id != entry_id),
        )
        logger.info(
            "Removed capital log entry %s, total capital now %.2f",
            entry_id,
            updated.total_capital,
        )
        return updated.touched()

    def _append_log(
        self,
        snapshot: PortfolioSnapshot,
        capital_type: CapitalType,
        amount: float,
        note: str,
        timestamp: Optional[datetime],
    ) -> PortfolioSnapshot:
        if amount <= 0:
            raise ValidationError(f"amount must be positive, got {amount}")

        entry = CapitalLogEntry(
            id=str(uuid.uuid4()),
            type=capital_type,
            amount=amount,
            timestamp=ensure_utc(timestamp) if timestamp else utc_now(),
            note=note,
        )
        updated = replace(snapshot, capital_logs=snapshot.capital_logs + (entry,))

        logger.info(
            "%s %.2f, total capital now %.2f",
            capital_type.value,
            amount,
            updated.total_capital,
        )
        return updated.touched()
