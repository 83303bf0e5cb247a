#!/usr/bin/env python3
"""Portfolio ledger CLI tool.

This script is a thin front end over PortfolioAPI:
- Create a new portfolio snapshot file
- Record orders and capital deposits into a snapshot file
- Show the calculated portfolio view, optionally with live prices
- Show the transaction history and monthly realized PnL
- Look up quotes, instrument search results, news and dividends
- Rebuild positions from history and scan for unrecorded dividends

Examples:
    # Create a portfolio with NT$1,000,000 of opening capital
    python scripts/view_portfolio.py init data/ --capital 1000000

    # Buy 1000 shares of 2330 into the G bucket
    python scripts/view_portfolio.py order data/portfolio_2024-06-01.json \\
        tw-g BUY 2330 1000 580

    # Show the portfolio with refreshed prices
    python scripts/view_portfolio.py show data/portfolio_2024-06-01.json --refresh

    # Quote and news lookups
    python scripts/view_portfolio.py quote AAPL --market US
    python scripts/view_portfolio.py news 2330 --market TW --name 台積電

    # Record dividends paid on held positions
    python scripts/view_portfolio.py scan-dividends data/portfolio_2024-06-01.json --record
"""

import sys
from pathlib import Path
from typing import Optional

import click

# Add project root to path
sys.path.append(".")

from libao_portfolio.api.portfolio_api import PortfolioAPI
from libao_portfolio.ledger.allocation import new_portfolio
from libao_portfolio.ledger.models import Order, OrderAction, Settings, TransactionType
from libao_portfolio.oracle.price_oracle import PriceOracle
from libao_portfolio.storage.snapshot import dumps_snapshot, import_snapshot
from libao_portfolio.utils.config import Config, load_config
from libao_portfolio.utils.exceptions import LibaoPortfolioError, UnknownCategoryError
from libao_portfolio.utils.ledger_log import LedgerEventLogger
from libao_portfolio.utils.logging import setup_logging

MARKET_CHOICE = click.Choice(["TW", "US"], case_sensitive=False)


def load_cli_config(config_path: Optional[str] = None) -> Config:
    """Load config and set up console logging."""
    config = load_config(config_path)
    setup_logging(level=config.get("logging.level", "WARNING"))
    return config


def build_event_logger(config: Config) -> Optional[LedgerEventLogger]:
    """Audit logger writing to logging.log_dir (disabled when unset)."""
    log_dir = config.get("logging.log_dir")
    return LedgerEventLogger(log_dir=log_dir) if log_dir else None


def build_api(snapshot_path: Optional[str] = None, config_path: Optional[str] = None) -> PortfolioAPI:
    """Build a PortfolioAPI from config and (optionally) a snapshot file."""
    config = load_cli_config(config_path)
    snapshot = import_snapshot(snapshot_path) if snapshot_path else None
    return PortfolioAPI(
        snapshot=snapshot,
        oracle=PriceOracle.from_config(config),
        event_logger=build_event_logger(config),
    )


def save(api: PortfolioAPI, snapshot_path: str) -> None:
    """Write the API's snapshot back to the file it was loaded from."""
    Path(snapshot_path).write_text(dumps_snapshot(api.snapshot), encoding="utf-8")


def format_money(value: float) -> str:
    return f"{value:,.0f}"


@click.group()
@click.option("--config", "config_path", type=click.Path(exists=True), default=None, help="Config YAML file")
@click.pass_context
def cli(ctx: click.Context, config_path: Optional[str]):
    """Libao Portfolio Ledger Tool"""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path


@cli.command()
@click.argument("output_dir", type=click.Path(file_okay=False))
@click.option("--capital", type=float, default=None, help="Opening capital (TWD, default portfolio.initial_capital)")
@click.option("--rate", type=float, default=None, help="USD->TWD exchange rate (default portfolio.us_exchange_rate)")
@click.pass_context
def init(ctx: click.Context, output_dir: str, capital: Optional[float], rate: Optional[float]):
    """Create a new portfolio snapshot in OUTPUT_DIR."""
    try:
        config = load_cli_config(ctx.obj.get("config_path"))
        if capital is None:
            capital = float(config.get("portfolio.initial_capital", 0.0))
        if rate is None:
            rate = float(config.get("portfolio.us_exchange_rate", 30.0))
        api = PortfolioAPI(
            snapshot=new_portfolio(capital, settings=Settings(us_exchange_rate=rate)),
            event_logger=build_event_logger(config),
        )
        path = api.export(output_dir)
    except LibaoPortfolioError as e:
        click.echo(f"✗ Error: {e}")
        sys.exit(1)

    click.echo(f"✓ Created {path}")
    click.echo(f"  Total capital: {format_money(api.snapshot.total_capital)}")
    for category in api.snapshot.categories:
        click.echo(f"  {category.id:<8} {category.name:<14} {category.market.value}  {category.allocation_percent:g}%")


@cli.command()
@click.argument("snapshot_path", type=click.Path(exists=True, dir_okay=False))
@click.argument("category_id")
@click.argument("action", type=click.Choice(["BUY", "SELL"], case_sensitive=False))
@click.argument("symbol")
@click.argument("shares", type=float)
@click.argument("price", type=float)
@click.option("--name", default="", help="Instrument display name")
@click.option("--rate", type=float, default=None, help="Exchange rate (defaults to the category market's rate)")
@click.option("--fee", type=float, default=None, help="Fee in TWD (estimated when omitted)")
@click.option("--tax", type=float, default=None, help="Tax in TWD (estimated when omitted)")
@click.pass_context
def order(
    ctx: click.Context,
    snapshot_path: str,
    category_id: str,
    action: str,
    symbol: str,
    shares: float,
    price: float,
    name: str,
    rate: Optional[float],
    fee: Optional[float],
    tax: Optional[float],
):
    """Record a BUY or SELL order into SNAPSHOT_PATH."""
    try:
        api = build_api(snapshot_path, ctx.obj.get("config_path"))
        category = api.snapshot.find_category(category_id)
        if category is None:
            raise UnknownCategoryError(f"Unknown category: {category_id}")

        exchange_rate = rate if rate is not None else api.snapshot.settings.exchange_rate_for(category.market)
        gross = shares * price * exchange_rate
        estimate = api.estimate_fees(category_id, action, gross)

        tx = api.execute_order(
            category_id,
            Order(
                action=OrderAction(action.upper()),
                symbol=symbol,
                name=name,
                shares=shares,
                price=price,
                exchange_rate=exchange_rate,
                fee=estimate.fee if fee is None else fee,
                tax=estimate.tax if tax is None else tax,
            ),
        )
        save(api, snapshot_path)
    except LibaoPortfolioError as e:
        click.echo(f"✗ Error: {e}")
        sys.exit(1)

    click.echo(f"✓ {tx.action.value} {tx.shares:g} {tx.symbol} @ {tx.price:g} ({tx.category_name})")
    click.echo(f"  Amount: {format_money(tx.gross_amount)}  Fee: {tx.fee:g}  Tax: {tx.tax:g}")
    if tx.action == TransactionType.SELL:
        click.echo(f"  Realized PnL: {format_money(tx.realized_pnl)}")


@cli.command()
@click.argument("snapshot_path", type=click.Path(exists=True, dir_okay=False))
@click.argument("amount", type=float)
@click.option("--withdraw", is_flag=True, help="Withdraw instead of deposit")
@click.option("--note", default="", help="Note for the capital log")
@click.pass_context
def capital(ctx: click.Context, snapshot_path: str, amount: float, withdraw: bool, note: str):
    """Deposit (or withdraw) AMOUNT of capital in SNAPSHOT_PATH."""
    try:
        api = build_api(snapshot_path, ctx.obj.get("config_path"))
        total = api.withdraw(amount, note) if withdraw else api.deposit(amount, note)
        save(api, snapshot_path)
    except LibaoPortfolioError as e:
        click.echo(f"✗ Error: {e}")
        sys.exit(1)

    click.echo(f"✓ Total capital: {format_money(total)}")


@cli.command()
@click.argument("snapshot_path", type=click.Path(exists=True, dir_okay=False))
@click.option("--refresh", is_flag=True, help="Fetch current prices before valuing")
@click.option("--category", "category_id", default=None, help="Show only this category")
@click.pass_context
def show(ctx: click.Context, snapshot_path: str, refresh: bool, category_id: Optional[str]):
    """Show the calculated portfolio view of SNAPSHOT_PATH."""
    try:
        api = build_api(snapshot_path, ctx.obj.get("config_path"))
        if refresh:
            prices = api.refresh_prices(category_id)
            click.echo(f"Fetched {len(prices)} prices")
        view = api.calculate()
    except LibaoPortfolioError as e:
        click.echo(f"✗ Error: {e}")
        sys.exit(1)

    click.echo("=" * 70)
    click.echo("PORTFOLIO SUMMARY")
    click.echo("=" * 70)
    click.echo(f"Total capital:   {format_money(view.total_capital)}")
    click.echo(f"Invested:        {format_money(view.total_invested)} ({view.invested_ratio:.1f}%)")
    click.echo(f"Market value:    {format_money(view.total_market_value)}")
    click.echo(f"Unrealized PnL:  {format_money(view.total_unrealized_pnl)} ({view.unrealized_ratio:.1f}%)")
    click.echo(f"Realized PnL:    {format_money(view.total_realized_pnl)}")
    click.echo(f"Net worth:       {format_money(view.total_net_worth)}")

    for category in view.categories:
        if category_id is not None and category.id != category_id:
            continue

        click.echo()
        click.echo("-" * 70)
        click.echo(
            f"{category.name} [{category.market.value}] {category.allocation_percent:g}%  "
            f"projected {format_money(category.projected_investment)}  "
            f"invested {format_money(category.invested_amount)} ({category.investment_ratio:.1f}%)  "
            f"cash {format_money(category.remaining_cash)}"
        )
        if category.is_over_allocated:
            click.echo("  ⚠ over-allocated")

        for asset in category.assets:
            click.echo(
                f"  {asset.symbol:<8} {asset.shares:>10g} sh  avg {asset.average_cost:>10.2f}  "
                f"px {asset.current_price:>10.2f}  PnL {format_money(asset.unrealized_pnl):>10} "
                f"({asset.return_rate:+.2f}%)"
            )


@cli.command()
@click.argument("snapshot_path", type=click.Path(exists=True, dir_okay=False))
@click.option("--months", type=int, default=6, help="Months of realized PnL to show")
@click.option("--limit", type=int, default=20, help="Transactions to show")
@click.pass_context
def history(ctx: click.Context, snapshot_path: str, months: int, limit: int):
    """Show transaction history and monthly realized PnL."""
    try:
        api = build_api(snapshot_path, ctx.obj.get("config_path"))
    except LibaoPortfolioError as e:
        click.echo(f"✗ Error: {e}")
        sys.exit(1)

    frame = api.transaction_history()
    if frame.empty:
        click.echo("No transactions")
    else:
        columns = ["timestamp", "category", "action", "symbol", "shares", "price", "realized_pnl"]
        click.echo(frame[columns].head(limit).to_string(index=False))

    click.echo()
    click.echo("Monthly realized PnL:")
    for month, value in api.monthly_realized_pnl(months=months).items():
        click.echo(f"  {month}  {format_money(value):>12}")


@cli.command()
@click.argument("symbol")
@click.option("--market", type=MARKET_CHOICE, default="TW", help="Market")
@click.pass_context
def quote(ctx: click.Context, symbol: str, market: str):
    """Fetch the current price of SYMBOL."""
    api = build_api(config_path=ctx.obj.get("config_path"))
    price = api.get_quote(symbol, market)
    if price is None:
        click.echo(f"✗ No price available for {symbol.upper()} ({market.upper()})")
        sys.exit(1)
    click.echo(f"{symbol.upper()} ({market.upper()}): {price:,.2f}")


@cli.command()
@click.argument("query")
@click.option("--market", type=MARKET_CHOICE, default="TW", help="Market")
@click.pass_context
def search(ctx: click.Context, query: str, market: str):
    """Search listed equities and ETFs matching QUERY."""
    api = build_api(config_path=ctx.obj.get("config_path"))
    candidates = api.search(query, market)
    if not candidates:
        click.echo("No matches")
        return
    for candidate in candidates:
        click.echo(f"{candidate.symbol:<10} {candidate.name}")


@cli.command()
@click.argument("symbol")
@click.option("--market", type=MARKET_CHOICE, default="TW", help="Market")
@click.option("--name", default=None, help="Company name (improves TW results)")
@click.pass_context
def news(ctx: click.Context, symbol: str, market: str, name: Optional[str]):
    """Show the latest headlines for SYMBOL."""
    api = build_api(config_path=ctx.obj.get("config_path"))
    items = api.news(symbol, market, name)
    if not items:
        click.echo("No news")
        return
    for item in items:
        published = item.published_at.strftime("%Y-%m-%d %H:%M") if item.published_at else "-"
        click.echo(f"[{published}] {item.title} ({item.source})")
        click.echo(f"    {item.link}")


@cli.command()
@click.argument("symbol")
@click.option("--market", type=MARKET_CHOICE, default="TW", help="Market")
@click.pass_context
def dividends(ctx: click.Context, symbol: str, market: str):
    """Show two years of cash dividends for SYMBOL."""
    api = build_api(config_path=ctx.obj.get("config_path"))
    events = api.oracle.get_dividends(symbol, market)
    if not events:
        click.echo("No dividends")
        return
    for event in events:
        click.echo(f"{event.ex_date.date().isoformat()}  {event.amount:g}")


@cli.command()
@click.argument("snapshot_path", type=click.Path(exists=True, dir_okay=False))
@click.pass_context
def rebuild(ctx: click.Context, snapshot_path: str):
    """Rebuild the positions of SNAPSHOT_PATH from its BUY/SELL history."""
    try:
        api = build_api(snapshot_path, ctx.obj.get("config_path"))
        snapshot = api.rebuild_positions()
        save(api, snapshot_path)
    except LibaoPortfolioError as e:
        click.echo(f"✗ Error: {e}")
        sys.exit(1)

    click.echo(f"✓ Rebuilt positions from {len(snapshot.transactions)} transactions")
    for category in snapshot.categories:
        for asset in category.assets:
            click.echo(f"  {category.id:<8} {asset.symbol:<8} {asset.shares:>10g} sh  avg {asset.average_cost:>10.2f}")


@cli.command("scan-dividends")
@click.argument("snapshot_path", type=click.Path(exists=True, dir_okay=False))
@click.option("--category", "category_id", default=None, help="Scan only this category")
@click.option("--record", is_flag=True, help="Record the dividends found into SNAPSHOT_PATH")
@click.pass_context
def scan_dividends(ctx: click.Context, snapshot_path: str, category_id: Optional[str], record: bool):
    """Find dividends on held positions that are not recorded yet."""
    try:
        api = build_api(snapshot_path, ctx.obj.get("config_path"))
        suggestions = api.scan_dividends(category_id)
        recorded = api.record_scanned_dividends(suggestions) if record and suggestions else []
        if recorded:
            save(api, snapshot_path)
    except LibaoPortfolioError as e:
        click.echo(f"✗ Error: {e}")
        sys.exit(1)

    if not suggestions:
        click.echo("No unrecorded dividends")
        return
    for suggestion in suggestions:
        click.echo(
            f"{suggestion.ex_date.date().isoformat()}  {suggestion.category_id:<8} {suggestion.symbol:<8} "
            f"{suggestion.amount_per_share:g} x {suggestion.shares:g} sh  tax {suggestion.tax_rate:.0%}"
        )
    if recorded:
        click.echo(f"✓ Recorded {len(recorded)} dividends")


if __name__ == "__main__":
    cli()
