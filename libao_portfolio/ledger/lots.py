"""Lot store: immutable FIFO sequences of purchase lots.

A position's cost basis is the sum of its live lots, each valued at its own
purchase price and its own historical exchange rate. Consuming shares never
mutates a lot sequence in place; every operation returns a new sequence so
the order processor can stay copy-on-write.
"""

from dataclasses import dataclass, replace
from datetime import datetime
from typing import Iterable, Iterator, Optional, Tuple

# Share quantities below this are treated as zero (fractional US shares)
SHARE_EPSILON = 1e-9


@dataclass(frozen=True)
class Lot:
    """One discrete purchase of an instrument.

    Attributes:
        id: Lot identifier (referenced by the BUY transaction's lot_id)
        acquired_at: Purchase timestamp (timezone-aware)
        shares: Shares still held from this purchase
        cost_per_share: Purchase price in the instrument's native currency
        exchange_rate: Native-to-base rate captured at purchase (1 for TW)
    """

    id: str
    acquired_at: datetime
    shares: float
    cost_per_share: float
    exchange_rate: float = 1.0

    @property
    def base_cost(self) -> float:
        """Cost of the remaining shares in base currency."""
        return self.shares * self.cost_per_share * self.exchange_rate


@dataclass(frozen=True)
class LotConsumption:
    """Shares taken from one lot by a SELL.

    Carries the lot's original terms so the consumption can be reversed
    exactly, even after the lot itself was fully consumed and dropped.
    """

    lot_id: str
    acquired_at: datetime
    shares: float
    cost_per_share: float
    exchange_rate: float

    @property
    def base_cost(self) -> float:
        return self.shares * self.cost_per_share * self.exchange_rate

    def to_lot(self) -> Lot:
        return Lot(
            id=self.lot_id,
            acquired_at=self.acquired_at,
            shares=self.shares,
            cost_per_share=self.cost_per_share,
            exchange_rate=self.exchange_rate,
        )


class LotSequence:
    """Immutable sequence of live lots, oldest first.

    Lots are ordered by acquisition time. Lots sharing a timestamp keep
    their insertion order, so FIFO consumption is deterministic.

    Example:
        >>> lots = LotSequence().append(lot_a).append(lot_b)
        >>> remaining, consumed = lots.consume_fifo(120)
        >>> sum(c.base_cost for c in consumed)
        12400.0
    """

    __slots__ = ("_lots",)

    def __init__(self, lots: Iterable[Lot] = ()):
        # sorted() is stable: equal timestamps keep insertion order
        self._lots: Tuple[Lot, ...] = tuple(sorted(lots, key=lambda lot: lot.acquired_at))

    def __iter__(self) -> Iterator[Lot]:
        return iter(self._lots)

    def __len__(self) -> int:
        return len(self._lots)

    def __getitem__(self, index: int) -> Lot:
        return self._lots[index]

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, LotSequence):
            return NotImplemented
        return self._lots == other._lots

    def __hash__(self) -> int:
        return hash(self._lots)

    def __repr__(self) -> str:
        return f"LotSequence({list(self._lots)!r})"

    @property
    def total_shares(self) -> float:
        return sum(lot.shares for lot in self._lots)

    @property
    def total_base_cost(self) -> float:
        return sum(lot.base_cost for lot in self._lots)

    @property
    def average_cost(self) -> float:
        """Base-currency cost per share, 0 for an empty sequence."""
        shares = self.total_shares
        if shares <= SHARE_EPSILON:
            return 0.0
        return self.total_base_cost / shares

    def find(self, lot_id: str) -> Optional[Lot]:
        for lot in self._lots:
            if lot.id == lot_id:
                return lot
        return None

    def append(self, lot: Lot) -> "LotSequence":
        """Return a new sequence with the lot added."""
        return LotSequence(self._lots + (lot,))

    def remove(self, lot_id: str) -> "LotSequence":
        """Return a new sequence without the given lot.

        Raises:
            KeyError: If no live lot has this id
        """
        if self.find(lot_id) is None:
            raise KeyError(lot_id)
        return LotSequence(lot for lot in self._lots if lot.id != lot_id)

    def consume_fifo(self, shares: float) -> Tuple["LotSequence", Tuple[LotConsumption, ...]]:
        """Consume shares from the oldest lots first.

        Fully consumed lots are dropped; a partially consumed lot keeps its
        original cost_per_share and exchange_rate with reduced shares.

        Args:
            shares: Number of shares to consume (must be positive)

        Returns:
            Tuple of (remaining sequence, consumption records in FIFO order)

        Raises:
            ValueError: If shares is not positive or exceeds the total held
        """
        if shares <= 0:
            raise ValueError(f"shares must be positive, got {shares}")
        if shares > self.total_shares + SHARE_EPSILON:
            raise ValueError(
                f"cannot consume {shares} shares, only {self.total_shares} held"
            )

        remaining = shares
        kept = []
        consumed = []

        for lot in self._lots:
            if remaining <= SHARE_EPSILON:
                kept.append(lot)
                continue

            taken = min(lot.shares, remaining)
            consumed.append(
                LotConsumption(
                    lot_id=lot.id,
                    acquired_at=lot.acquired_at,
                    shares=taken,
                    cost_per_share=lot.cost_per_share,
                    exchange_rate=lot.exchange_rate,
                )
            )
            remaining -= taken

            leftover = lot.shares - taken
            if leftover > SHARE_EPSILON:
                kept.append(replace(lot, shares=leftover))

        return LotSequence(kept), tuple(consumed)

    def restore(self, consumptions: Iterable[LotConsumption]) -> "LotSequence":
        """Reverse a FIFO consumption.

        Shares are added back to lots that are still live; fully consumed
        lots are re-created with their original id and terms.

        Args:
            consumptions: Records previously returned by consume_fifo

        Returns:
            New sequence with the consumed shares restored
        """
        lots = {lot.id: lot for lot in self._lots}
        order = [lot.id for lot in self._lots]

        for consumption in consumptions:
            live = lots.get(consumption.lot_id)
            if live is None:
                lots[consumption.lot_id] = consumption.to_lot()
                order.append(consumption.lot_id)
            else:
                lots[consumption.lot_id] = replace(
                    live, shares=live.shares + consumption.shares
                )

        return LotSequence(lots[lot_id] for lot_id in order)
