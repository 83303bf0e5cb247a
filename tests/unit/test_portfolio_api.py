"""Unit tests for PortfolioAPI."""

import json
from dataclasses import replace
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import MagicMock

import pandas as pd
import pytest

from libao_portfolio.api.portfolio_api import PortfolioAPI
from libao_portfolio.ledger.allocation import new_portfolio
from libao_portfolio.ledger.models import Market, Order, OrderAction
from libao_portfolio.oracle.price_oracle import PriceOracle
from libao_portfolio.oracle.sources import DividendEvent
from libao_portfolio.utils.exceptions import (
    InsufficientSharesError,
    IrreversibleTransactionError,
    SnapshotImportError,
    UnknownCategoryError,
    ValidationError,
)
from libao_portfolio.utils.ledger_log import LedgerEventLogger


def buy(symbol: str, shares: float, price: float, **kwargs) -> Order:
    return Order(action=OrderAction.BUY, symbol=symbol, shares=shares, price=price, **kwargs)


def sell(symbol: str, shares: float, price: float, **kwargs) -> Order:
    return Order(action=OrderAction.SELL, symbol=symbol, shares=shares, price=price, **kwargs)


@pytest.fixture
def oracle() -> MagicMock:
    oracle = MagicMock(spec=PriceOracle)
    oracle.get_prices.return_value = {"2330": 600.0}
    return oracle


@pytest.fixture
def api(oracle: MagicMock) -> PortfolioAPI:
    return PortfolioAPI(snapshot=new_portfolio(1_000_000), oracle=oracle)


class TestPortfolioAPIInit:
    """Test cases for PortfolioAPI initialization."""

    def test_default_initialization(self) -> None:
        """Test PortfolioAPI starts from an empty default portfolio."""
        api = PortfolioAPI()

        assert len(api.snapshot.categories) == 5
        assert api.snapshot.total_capital == 0

    def test_oracle_created_lazily(self) -> None:
        """Test a default oracle is only built on first use."""
        api = PortfolioAPI()

        assert api._oracle is None
        assert isinstance(api.oracle, PriceOracle)
        assert api.oracle is api.oracle


class TestOrders:
    """Test cases for order execution through the API."""

    def test_execute_order_replaces_snapshot(self, api: PortfolioAPI) -> None:
        """Test a successful order installs the new snapshot."""
        before = api.snapshot

        tx = api.execute_order("tw-g", buy("2330", 1000, 580))

        assert api.snapshot is not before
        assert api.snapshot.transactions[0] == tx
        assert before.transactions == ()

    def test_failed_order_keeps_snapshot(self, api: PortfolioAPI) -> None:
        """Test a rejected order leaves the snapshot untouched."""
        api.execute_order("tw-g", buy("2330", 10, 580))
        before = api.snapshot

        with pytest.raises(InsufficientSharesError):
            api.execute_order("tw-g", sell("2330", 11, 600))
        with pytest.raises(ValidationError):
            api.execute_order("tw-g", buy("2330", 0, 600))
        with pytest.raises(UnknownCategoryError):
            api.execute_order("nope", buy("2330", 1, 600))

        assert api.snapshot is before

    def test_estimate_fees_uses_category_market(self, api: PortfolioAPI) -> None:
        """Test fee estimation follows the category's market."""
        assert api.estimate_fees("tw-g", "sell", 100_000).total == 385.0
        assert api.estimate_fees("us-d", OrderAction.SELL, 100_000).total == 0.0
        with pytest.raises(UnknownCategoryError):
            api.estimate_fees("nope", "BUY", 1)

    def test_revoke_transaction(self, api: PortfolioAPI) -> None:
        """Test revocation through the API."""
        first = api.execute_order("tw-g", buy("2330", 100, 100))
        api.execute_order("tw-g", sell("2330", 50, 110))

        with pytest.raises(IrreversibleTransactionError):
            api.revoke_transaction(first.id)

        assert len(api.snapshot.transactions) == 2

    def test_record_dividend(self, api: PortfolioAPI) -> None:
        """Test dividends are booked as realized PnL."""
        api.execute_order("tw-g", buy("2330", 1000, 580))

        tx = api.record_dividend("tw-g", "2330", 3.0)

        assert tx.realized_pnl == 3000
        assert api.calculate().total_realized_pnl == 3000



class TestMaintenance:
    """Test cases for dividend scans and position rebuilds."""

    @pytest.fixture
    def held(self, api: PortfolioAPI, oracle: MagicMock) -> PortfolioAPI:
        api.execute_order("tw-g", buy("2330", 1000, 580))
        oracle.get_dividends.return_value = [
            DividendEvent(ex_date=datetime.now(timezone.utc) + timedelta(days=1), amount=3.0),
        ]
        return api

    def test_scan_uses_oracle_without_recording(self, held: PortfolioAPI, oracle: MagicMock) -> None:
        """Test a scan asks the oracle and leaves the snapshot alone."""
        before = held.snapshot

        suggestions = held.scan_dividends()

        assert [(s.symbol, s.shares) for s in suggestions] == [("2330", 1000)]
        oracle.get_dividends.assert_called_once_with("2330", Market.TW)
        assert held.snapshot is before

    def test_record_scanned_dividends(self, held: PortfolioAPI) -> None:
        """Test accepted suggestions are booked and not suggested again."""
        recorded = held.record_scanned_dividends(held.scan_dividends())

        assert [tx.realized_pnl for tx in recorded] == [3000]
        assert held.calculate().total_realized_pnl == 3000
        assert held.scan_dividends() == []

    def test_record_scanned_dividends_all_or_nothing(self, held: PortfolioAPI) -> None:
        """Test one invalid suggestion keeps every dividend out."""
        good = held.scan_dividends()[0]
        bad = replace(good, amount_per_share=0.0)
        before = held.snapshot

        with pytest.raises(ValidationError):
            held.record_scanned_dividends([good, bad])

        assert held.snapshot is before

    def test_rebuild_positions(self, held: PortfolioAPI) -> None:
        """Test rebuild restores a position wiped from the snapshot."""
        category = held.snapshot.find_category("tw-g")
        held.snapshot = held.snapshot.with_category(category.without_asset("2330"))

        snapshot = held.rebuild_positions()

        assert snapshot is held.snapshot
        assert snapshot.find_category("tw-g").find_asset("2330").shares == 1000

class TestCapital:
    """Test cases for capital and settings operations."""

    def test_deposit_withdraw_remove(self, api: PortfolioAPI) -> None:
        """Test capital operations return the new total."""
        assert api.deposit(500_000, note="bonus") == 1_500_000
        assert api.withdraw(200_000) == 1_300_000

        entry_id = api.snapshot.capital_logs[1].id
        assert api.remove_capital_log(entry_id) == 800_000

    def test_set_allocation(self, api: PortfolioAPI) -> None:
        """Test allocation changes are visible in the valuation."""
        api.set_allocation("tw-g", 50)

        assert api.calculate().find_category("tw-g").projected_investment == 500_000

    def test_update_settings(self, api: PortfolioAPI) -> None:
        """Test settings updates and their validation."""
        api.update_settings(us_exchange_rate=32.5, enable_fees=False)

        assert api.snapshot.settings.us_exchange_rate == 32.5
        assert api.snapshot.settings.enable_fees is False
        with pytest.raises(ValidationError, match="Unknown setting"):
            api.update_settings(theme="dark")
        with pytest.raises(ValidationError, match="positive"):
            api.update_settings(us_exchange_rate=0)


class TestPrices:
    """Test cases for price refresh and valuation."""

    def test_refresh_prices(self, api: PortfolioAPI, oracle: MagicMock) -> None:
        """Test refreshed prices are stored and used for valuation."""
        api.execute_order("tw-g", buy("2330", 1000, 580))

        prices = api.refresh_prices()

        assert prices == {"2330": 600.0}
        oracle.get_prices.assert_called_once_with([("2330", Market.TW)])
        assert api.calculate().total_unrealized_pnl == 20_000

    def test_refresh_without_assets(self, api: PortfolioAPI, oracle: MagicMock) -> None:
        """Test no oracle call is made for an empty portfolio."""
        assert api.refresh_prices() == {}
        oracle.get_prices.assert_not_called()

    def test_refresh_unknown_category(self, api: PortfolioAPI) -> None:
        """Test refreshing an unknown category raises."""
        with pytest.raises(UnknownCategoryError):
            api.refresh_prices("nope")

    def test_quote_search_news(self, api: PortfolioAPI, oracle: MagicMock) -> None:
        """Test lookups are delegated to the oracle."""
        oracle.get_price.return_value = 189.5
        oracle.search_instruments.return_value = []
        oracle.get_news.return_value = []

        assert api.get_quote("AAPL", "US") == 189.5
        assert api.search("apple", "US") == []
        assert api.news("AAPL", "US") == []
        oracle.get_news.assert_called_once_with("AAPL", "US", None)

    def test_history_views(self, api: PortfolioAPI) -> None:
        """Test the tabular transaction and monthly PnL views."""
        api.execute_order("tw-g", buy("2330", 100, 100))
        api.execute_order("tw-g", sell("2330", 100, 110))

        frame = api.transaction_history()
        series = api.monthly_realized_pnl(months=1)

        assert isinstance(frame, pd.DataFrame)
        assert list(frame["action"]) == ["SELL", "BUY"]
        assert series.iloc[-1] == 1000


class TestExportImport:
    """Test cases for export and import through the API."""

    def test_export_then_import(self, api: PortfolioAPI, tmp_path: Path) -> None:
        """Test an exported file can be imported into a fresh API."""
        api.execute_order("tw-g", buy("2330", 100, 100))
        path = api.export(tmp_path, today=date(2024, 6, 1))

        restored = PortfolioAPI()
        restored.import_file(path)

        assert path.name == "portfolio_2024-06-01.json"
        assert restored.snapshot == api.snapshot

    def test_failed_import_keeps_snapshot(self, api: PortfolioAPI, tmp_path: Path) -> None:
        """Test a rejected file leaves the current snapshot in place."""
        bad = tmp_path / "bad.json"
        bad.write_text(json.dumps({"categories": []}), encoding="utf-8")
        before = api.snapshot

        with pytest.raises(SnapshotImportError):
            api.import_file(bad)

        assert api.snapshot is before


class TestEventLogging:
    """Test cases for audit logging through the API."""

    def test_events_written(self, oracle: MagicMock, tmp_path: Path) -> None:
        """Test executed, rejected and capital events reach the audit log."""
        audit = LedgerEventLogger(log_dir=tmp_path)
        api = PortfolioAPI(snapshot=new_portfolio(1_000_000), oracle=oracle, event_logger=audit)

        api.execute_order("tw-g", buy("2330", 10, 580))
        with pytest.raises(InsufficientSharesError):
            api.execute_order("tw-g", sell("2330", 20, 580))
        api.deposit(1000)
        with pytest.raises(SnapshotImportError):
            api.import_file("{broken")
        audit.close()

        orders = [json.loads(line) for line in (tmp_path / "orders.log").read_text(encoding="utf-8").splitlines()]
        capital = (tmp_path / "capital.log").read_text(encoding="utf-8")
        errors = (tmp_path / "errors.log").read_text(encoding="utf-8")
        assert [e["event_type"] for e in orders] == ["order_executed", "order_rejected"]
        assert "Insufficient shares" in orders[1]["reason"]
        assert "capital_deposited" in capital
        assert "import_error" in errors

    def test_rebuild_logged(self, oracle: MagicMock, tmp_path: Path) -> None:
        """Test a rebuild is written to the capital log."""
        audit = LedgerEventLogger(log_dir=tmp_path)
        api = PortfolioAPI(snapshot=new_portfolio(1_000_000), oracle=oracle, event_logger=audit)
        api.execute_order("tw-g", buy("2330", 10, 580))

        api.rebuild_positions()
        audit.close()

        capital = [json.loads(line) for line in (tmp_path / "capital.log").read_text(encoding="utf-8").splitlines()]
        assert capital[-1]["event_type"] == "positions_rebuilt"
        assert capital[-1]["positions"] == 1
