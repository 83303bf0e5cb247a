"""Unit tests for the order processor forward algorithm and dividends."""

import itertools
from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from libao_portfolio.ledger.allocation import AllocationManager, new_portfolio
from libao_portfolio.ledger.models import (
    Category,
    Market,
    Order,
    OrderAction,
    PortfolioSnapshot,
    Settings,
    TransactionType,
)
from libao_portfolio.ledger.order_processor import OrderProcessor
from libao_portfolio.utils.exceptions import (
    InsufficientSharesError,
    UnknownCategoryError,
    ValidationError,
)

T0 = datetime(2024, 3, 1, 2, 0, tzinfo=timezone.utc)


def sequential_ids():
    counter = itertools.count(1)
    return lambda: f"id-{next(counter)}"


def buy(symbol: str, shares: float, price: float, days: int = 0, **kwargs) -> Order:
    return Order(
        action=OrderAction.BUY,
        symbol=symbol,
        shares=shares,
        price=price,
        timestamp=T0 + timedelta(days=days),
        **kwargs,
    )


def sell(symbol: str, shares: float, price: float, days: int = 10, **kwargs) -> Order:
    return Order(
        action=OrderAction.SELL,
        symbol=symbol,
        shares=shares,
        price=price,
        timestamp=T0 + timedelta(days=days),
        **kwargs,
    )


@pytest.fixture
def processor() -> OrderProcessor:
    return OrderProcessor(id_factory=sequential_ids())


@pytest.fixture
def snapshot() -> PortfolioSnapshot:
    return new_portfolio(1_000_000)


class TestBuy:
    """Test cases for BUY execution."""

    def test_first_buy_creates_position(self, processor: OrderProcessor) -> None:
        """Test a BUY into an empty category opens a position with one lot."""
        category = Category(id="tw", name="TW", market=Market.TW, allocation_percent=50)

        updated, tx = processor.execute(category, buy("2330", 1000, 580, name="台積電"))

        position = updated.find_asset("2330")
        assert position is not None
        assert position.name == "台積電"
        assert position.shares == 1000
        assert position.average_cost == 580
        assert position.current_price == 580
        assert len(position.lots) == 1
        assert tx.action == TransactionType.BUY
        assert tx.realized_pnl == 0.0
        assert tx.lot_id == position.lots[0].id
        assert tx.asset_id == position.id
        assert tx.gross_amount == 580_000

    def test_second_buy_appends_lot(self, processor: OrderProcessor) -> None:
        """Test a second BUY adds a lot and re-weights the average cost."""
        category = Category(id="tw", name="TW", market=Market.TW, allocation_percent=50)
        category, _ = processor.execute(category, buy("2330", 100, 100))

        category, _ = processor.execute(category, buy("2330", 50, 120, days=1))

        position = category.find_asset("2330")
        assert len(category.assets) == 1
        assert len(position.lots) == 2
        assert position.shares == 150
        assert position.average_cost == pytest.approx(106.6667, rel=1e-4)

    def test_input_category_unchanged(self, processor: OrderProcessor) -> None:
        """Test execute never mutates its input category."""
        category = Category(id="tw", name="TW", market=Market.TW, allocation_percent=50)

        processor.execute(category, buy("2330", 100, 100))

        assert category.assets == ()

    def test_us_buy_captures_exchange_rate(self, processor: OrderProcessor) -> None:
        """Test a US lot keeps the rate it was bought at."""
        category = Category(id="us", name="US", market=Market.US, allocation_percent=50)

        updated, tx = processor.execute(category, buy("AAPL", 10, 150, exchange_rate=31.0))

        lot = updated.find_asset("AAPL").lots[0]
        assert lot.exchange_rate == 31.0
        assert tx.gross_amount == 46_500

    def test_symbol_normalized(self, processor: OrderProcessor) -> None:
        """Test symbols are upper-cased and stripped."""
        category = Category(id="us", name="US", market=Market.US, allocation_percent=50)

        updated, tx = processor.execute(category, buy(" aapl ", 1, 150))

        assert tx.symbol == "AAPL"
        assert updated.find_asset("AAPL") is not None


class TestSell:
    """Test cases for SELL execution and FIFO PnL."""

    @pytest.fixture
    def category(self, processor: OrderProcessor) -> Category:
        """Category holding 100 @ 100 and 50 @ 120 of 2330."""
        category = Category(id="tw", name="TW", market=Market.TW, allocation_percent=50)
        category, _ = processor.execute(category, buy("2330", 100, 100))
        category, _ = processor.execute(category, buy("2330", 50, 120, days=1))
        return category

    def test_fifo_realized_pnl(self, processor: OrderProcessor, category: Category) -> None:
        """Test selling 120 @ 130 realizes 3200 against a 12400 FIFO cost."""
        updated, tx = processor.execute(category, sell("2330", 120, 130))

        assert tx.cost_basis == 12400
        assert tx.realized_pnl == 3200
        position = updated.find_asset("2330")
        assert position.shares == 30
        assert len(position.lots) == 1
        assert position.lots[0].cost_per_share == 120
        assert position.average_cost == 120

    def test_fee_and_tax_reduce_realized_pnl(self, processor: OrderProcessor, category: Category) -> None:
        """Test fee and tax are deducted from realized PnL."""
        _, tx = processor.execute(category, sell("2330", 120, 130, fee=22, tax=46))

        assert tx.realized_pnl == 3200 - 22 - 46

    def test_consumed_lots_recorded(self, processor: OrderProcessor, category: Category) -> None:
        """Test the SELL keeps a per-lot breakdown."""
        _, tx = processor.execute(category, sell("2330", 120, 130))

        assert [(c.shares, c.cost_per_share) for c in tx.consumed_lots] == [(100, 100), (20, 120)]

    def test_exact_exhaustion_removes_position(self, processor: OrderProcessor, category: Category) -> None:
        """Test selling every share removes the symbol from the category."""
        updated, tx = processor.execute(category, sell("2330", 150, 110))

        assert updated.find_asset("2330") is None
        assert tx.realized_pnl == 150 * 110 - 16000

    def test_oversell_rejected_without_change(self, processor: OrderProcessor, category: Category) -> None:
        """Test selling more than held raises and sells nothing."""
        with pytest.raises(InsufficientSharesError, match="need 151"):
            processor.execute(category, sell("2330", 151, 130))

        assert category.find_asset("2330").shares == 150

    def test_sell_unknown_symbol_rejected(self, processor: OrderProcessor, category: Category) -> None:
        """Test selling a symbol that is not held raises."""
        with pytest.raises(InsufficientSharesError, match="have 0"):
            processor.execute(category, sell("2317", 1, 100))

    def test_us_sell_uses_lot_rates_for_cost(self, processor: OrderProcessor) -> None:
        """Test US realized PnL compares sale rate against purchase rates."""
        category = Category(id="us", name="US", market=Market.US, allocation_percent=50)
        category, _ = processor.execute(category, buy("AAPL", 10, 100, exchange_rate=30.0))

        _, tx = processor.execute(category, sell("AAPL", 10, 100, exchange_rate=32.0))

        assert tx.cost_basis == 30_000
        assert tx.realized_pnl == 2_000


class TestOrderValidation:
    """Test cases for order validation."""

    @pytest.fixture
    def category(self) -> Category:
        return Category(id="tw", name="TW", market=Market.TW, allocation_percent=50)

    @pytest.mark.parametrize(
        "order, message",
        [
            (Order(action=OrderAction.BUY, symbol="  ", shares=1, price=1), "symbol"),
            (Order(action=OrderAction.BUY, symbol="2330", shares=0, price=1), "shares"),
            (Order(action=OrderAction.BUY, symbol="2330", shares=-5, price=1), "shares"),
            (Order(action=OrderAction.BUY, symbol="2330", shares=1, price=-1), "price"),
            (Order(action=OrderAction.BUY, symbol="2330", shares=1, price=1, exchange_rate=0), "exchange_rate"),
            (Order(action=OrderAction.BUY, symbol="2330", shares=1, price=1, fee=-1), "fee"),
            (Order(action=OrderAction.BUY, symbol="2330", shares=1, price=1, total_amount=-1), "total_amount"),
        ],
    )
    def test_invalid_orders_rejected(
        self, processor: OrderProcessor, category: Category, order: Order, message: str
    ) -> None:
        """Test each invalid field raises ValidationError."""
        with pytest.raises(ValidationError, match=message):
            processor.execute(category, order)

    def test_action_string_accepted(self) -> None:
        """Test Order accepts a lower-case action string."""
        order = Order(action="sell", symbol="2330", shares=1, price=1)

        assert order.action == OrderAction.SELL


class TestApply:
    """Test cases for applying orders to a snapshot."""

    def test_transaction_prepended(self, processor: OrderProcessor, snapshot: PortfolioSnapshot) -> None:
        """Test transactions are kept newest first."""
        snapshot, first = processor.apply(snapshot, "tw-g", buy("2330", 100, 100))
        snapshot, second = processor.apply(snapshot, "tw-g", buy("2317", 100, 50, days=1))

        assert [tx.id for tx in snapshot.transactions] == [second.id, first.id]

    def test_portfolio_ratio_against_projected(self, processor: OrderProcessor, snapshot: PortfolioSnapshot) -> None:
        """Test the trade is stamped with its share of projected investment."""
        # tw-g: 25% of 1,000,000 = 250,000 projected
        _, tx = processor.apply(snapshot, "tw-g", buy("2330", 100, 500))

        assert tx.portfolio_ratio == pytest.approx(20.0)

    def test_sell_ratio_uses_cost_of_shares_sold(self, processor: OrderProcessor) -> None:
        """Test a SELL is stamped with its FIFO cost, not its proceeds."""
        snapshot = AllocationManager().set_allocation(new_portfolio(100_000), "tw-g", 100)
        snapshot, bought = processor.apply(snapshot, "tw-g", buy("2330", 100, 100))
        _, sold = processor.apply(snapshot, "tw-g", sell("2330", 100, 200))

        assert bought.portfolio_ratio == pytest.approx(10.0)
        assert sold.portfolio_ratio == pytest.approx(10.0)
        assert sold.gross_amount == 20_000

    def test_unknown_category_rejected(self, processor: OrderProcessor, snapshot: PortfolioSnapshot) -> None:
        """Test an unknown category raises before anything changes."""
        with pytest.raises(UnknownCategoryError):
            processor.apply(snapshot, "missing", buy("2330", 1, 1))

    def test_original_snapshot_untouched(self, processor: OrderProcessor, snapshot: PortfolioSnapshot) -> None:
        """Test apply is copy-on-write."""
        processor.apply(snapshot, "tw-g", buy("2330", 100, 100))

        assert snapshot.transactions == ()
        assert snapshot.find_category("tw-g").assets == ()

    def test_failed_sell_leaves_snapshot_untouched(self, processor: OrderProcessor, snapshot: PortfolioSnapshot) -> None:
        """Test a rejected SELL raises and the caller keeps its snapshot."""
        snapshot, _ = processor.apply(snapshot, "tw-g", buy("2330", 10, 100))

        with pytest.raises(InsufficientSharesError):
            processor.apply(snapshot, "tw-g", sell("2330", 11, 100))

        assert len(snapshot.transactions) == 1
        assert snapshot.find_category("tw-g").find_asset("2330").shares == 10


class TestDividend:
    """Test cases for dividend recording."""

    @pytest.fixture
    def held(self, processor: OrderProcessor, snapshot: PortfolioSnapshot) -> PortfolioSnapshot:
        snapshot, _ = processor.apply(snapshot, "tw-g", buy("2330", 1000, 580))
        snapshot, _ = processor.apply(snapshot, "us-d", buy("AAPL", 10, 150, exchange_rate=30.0))
        return snapshot

    def test_dividend_defaults_to_held_shares(self, processor: OrderProcessor, held: PortfolioSnapshot) -> None:
        """Test a TW dividend is booked on all held shares."""
        updated, tx = processor.record_dividend(held, "tw-g", "2330", 3.5)

        assert tx.action == TransactionType.DIVIDEND
        assert tx.shares == 1000
        assert tx.gross_amount == 3500
        assert tx.realized_pnl == 3500
        assert updated.transactions[0] is tx
        assert updated.find_category("tw-g").find_asset("2330").shares == 1000

    def test_us_dividend_withholding_and_rate(self, processor: OrderProcessor, held: PortfolioSnapshot) -> None:
        """Test a US dividend converts at the current rate and nets tax."""
        held = replace(held, settings=Settings(us_exchange_rate=32.0))

        _, tx = processor.record_dividend(held, "us-d", "AAPL", 0.25, tax_rate=0.3)

        assert tx.exchange_rate == 32.0
        assert tx.gross_amount == pytest.approx(80.0)
        assert tx.tax == pytest.approx(24.0)
        assert tx.realized_pnl == pytest.approx(56.0)

    def test_invalid_dividends_rejected(self, processor: OrderProcessor, held: PortfolioSnapshot) -> None:
        """Test invalid amount, tax rate and shares raise ValidationError."""
        with pytest.raises(ValidationError, match="amount_per_share"):
            processor.record_dividend(held, "tw-g", "2330", 0)
        with pytest.raises(ValidationError, match="tax_rate"):
            processor.record_dividend(held, "tw-g", "2330", 1.0, tax_rate=1.0)
        with pytest.raises(ValidationError, match="shares"):
            processor.record_dividend(held, "tw-g", "2317", 1.0)

    def test_ex_date_uses_shares_held_before_it(self, processor: OrderProcessor, held: PortfolioSnapshot) -> None:
        """Test a back-dated dividend is booked on the shares held at the ex-date."""
        snapshot, _ = processor.apply(held, "tw-g", buy("2330", 500, 600, days=20))

        _, tx = processor.record_dividend(snapshot, "tw-g", "2330", 3.5, ex_date=T0 + timedelta(days=15))

        assert tx.shares == 1000
        assert tx.timestamp == T0 + timedelta(days=15)
        assert tx.gross_amount == 3500

    def test_ex_date_before_any_buy_rejected(self, processor: OrderProcessor, held: PortfolioSnapshot) -> None:
        """Test no shares held at the ex-date raises ValidationError."""
        with pytest.raises(ValidationError, match="shares"):
            processor.record_dividend(held, "tw-g", "2330", 3.5, ex_date=T0 - timedelta(days=1))

    def test_unknown_category_rejected(self, processor: OrderProcessor, held: PortfolioSnapshot) -> None:
        """Test a dividend into an unknown category raises."""
        with pytest.raises(UnknownCategoryError):
            processor.record_dividend(held, "nope", "2330", 1.0)


class TestRebuild:
    """Test cases for rebuilding positions from history."""

    @pytest.fixture
    def traded(self, processor: OrderProcessor, snapshot: PortfolioSnapshot) -> PortfolioSnapshot:
        snapshot, _ = processor.apply(snapshot, "tw-g", buy("2330", 1000, 500))
        snapshot, _ = processor.apply(snapshot, "tw-g", buy("2330", 500, 600, days=1))
        snapshot, _ = processor.apply(snapshot, "tw-g", sell("2330", 1200, 650, days=2))
        snapshot, _ = processor.apply(snapshot, "us-d", buy("AAPL", 10, 150, days=3, exchange_rate=31.0))
        return snapshot

    @staticmethod
    def drifted(snapshot: PortfolioSnapshot) -> PortfolioSnapshot:
        return replace(snapshot, categories=tuple(replace(c, assets=()) for c in snapshot.categories))

    def test_replay_restores_lots(self, processor: OrderProcessor, traded: PortfolioSnapshot) -> None:
        """Test replaying the log reproduces the FIFO lots with their ids."""
        rebuilt = processor.rebuild(self.drifted(traded))

        for category_id, symbol in (("tw-g", "2330"), ("us-d", "AAPL")):
            expected = traded.find_category(category_id).find_asset(symbol)
            position = rebuilt.find_category(category_id).find_asset(symbol)
            assert position.lots == expected.lots
            assert position.id == expected.id

        tw = rebuilt.find_category("tw-g").find_asset("2330")
        assert tw.shares == 300
        assert tw.average_cost == 600
        assert rebuilt.transactions == traded.transactions

    def test_rebuilt_buy_stays_revocable(self, processor: OrderProcessor, traded: PortfolioSnapshot) -> None:
        """Test a rebuilt BUY lot can still be revoked by its transaction."""
        rebuilt = processor.rebuild(self.drifted(traded))
        aapl_buy = traded.transactions[0]

        updated, _ = processor.revoke(rebuilt, aapl_buy.id)

        assert updated.find_category("us-d").find_asset("AAPL") is None

    def test_drifted_shares_repaired(self, processor: OrderProcessor, traded: PortfolioSnapshot) -> None:
        """Test a position edited out of line with the log is corrected."""
        category = traded.find_category("tw-g")
        position = category.find_asset("2330")
        broken = replace(position, lots=position.lots.append(replace(position.lots[0], id="stray")))
        snapshot = traded.with_category(category.with_asset(broken))

        rebuilt = processor.rebuild(snapshot)

        assert rebuilt.find_category("tw-g").find_asset("2330").shares == 300

    def test_last_price_and_note_kept(self, processor: OrderProcessor, traded: PortfolioSnapshot) -> None:
        """Test surviving positions keep their last-known price and note."""
        category = traded.find_category("tw-g")
        position = replace(category.find_asset("2330"), current_price=777.0, note="core")
        snapshot = traded.with_category(category.with_asset(position))

        rebuilt = processor.rebuild(snapshot)

        position = rebuilt.find_category("tw-g").find_asset("2330")
        assert position.current_price == 777.0
        assert position.note == "core"

    def test_unreplayable_entries_skipped(self, processor: OrderProcessor, traded: PortfolioSnapshot) -> None:
        """Test SELLs without a holding and unknown categories are skipped."""
        orphan_sell = replace(traded.transactions[1], id="orphan", symbol="2317", timestamp=T0 - timedelta(days=1))
        lost_buy = replace(traded.transactions[0], id="lost", category_name="Closed bucket")
        snapshot = replace(traded, transactions=(lost_buy, orphan_sell) + traded.transactions)

        rebuilt = processor.rebuild(self.drifted(snapshot))

        assert rebuilt.find_category("tw-g").find_asset("2317") is None
        assert rebuilt.find_category("us-d").find_asset("AAPL").shares == 10

    def test_oversell_clamped(self, processor: OrderProcessor, traded: PortfolioSnapshot) -> None:
        """Test a SELL larger than the rebuilt holding closes the position."""
        big_sell = replace(traded.transactions[1], id="big", shares=5000, timestamp=T0 + timedelta(days=5))
        snapshot = replace(traded, transactions=(big_sell,) + traded.transactions)

        rebuilt = processor.rebuild(self.drifted(snapshot))

        assert rebuilt.find_category("tw-g").find_asset("2330") is None
