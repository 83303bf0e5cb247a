"""Upstream data sources for quotes, instrument search, news and dividends.

Every source reaches its host through a RelayChain and degrades to
None / [] on failure. Payload-shape problems (missing keys, wrong types,
unparseable XML) are treated exactly like network failures.
"""

import re
import xml.etree.ElementTree as ET
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Dict, List, Optional, Sequence
from urllib.parse import quote, quote_plus

from libao_portfolio.ledger.models import Market
from libao_portfolio.oracle.relays import RelayChain
from libao_portfolio.utils.logging import get_logger

logger = get_logger(__name__)

YAHOO_CHART_URL = "https://query1.finance.yahoo.com/v8/finance/chart/{symbol}?interval=1d&range=1d"
YAHOO_DIVIDEND_URL = (
    "https://query1.finance.yahoo.com/v8/finance/chart/{symbol}"
    "?region=US&lang=en-US&includePrePost=false&interval=1d&range=2y&events=div"
)
YAHOO_SEARCH_URL = (
    "https://query1.finance.yahoo.com/v1/finance/search"
    "?q={query}&lang=zh-Hant-TW&region=TW&quotesCount=10&newsCount=0"
)
GOOGLE_FINANCE_URL = "https://www.google.com/finance/quote/{symbol}:{exchange}"

GOOGLE_PRICE_PATTERN = re.compile(r'<div class="YMlKec fxKbKc">\$?([0-9,]+\.[0-9]+)</div>')

TW_SUFFIXES = (".TW", ".TWO")
SEARCHABLE_QUOTE_TYPES = ("EQUITY", "ETF")

MIN_FEED_LENGTH = 300


@dataclass(frozen=True)
class InstrumentCandidate:
    """A search hit: bare symbol (no venue suffix), display name, market."""

    symbol: str
    name: str
    market: Market


@dataclass(frozen=True)
class NewsItem:
    title: str
    link: str
    source: str
    symbol: str
    market: Market
    published_at: Optional[datetime] = None


@dataclass(frozen=True)
class DividendEvent:
    """A cash dividend paid on ex_date, amount per share in native currency."""

    ex_date: datetime
    amount: float


def yahoo_symbols(symbol: str, market: Market) -> List[str]:
    """Yahoo tickers to try for a symbol, in order.

    TW symbols may list on the primary exchange (.TW) or OTC (.TWO).
    """
    symbol = symbol.strip().upper()
    if market != Market.TW or symbol.endswith(TW_SUFFIXES):
        return [symbol]
    return [f"{symbol}{suffix}" for suffix in TW_SUFFIXES]


def _chart_result(data: Any) -> Optional[Dict[str, Any]]:
    try:
        result = data["chart"]["result"][0]
    except (KeyError, IndexError, TypeError):
        return None
    return result if isinstance(result, dict) else None


def _has_chart_meta(data: Any) -> bool:
    result = _chart_result(data)
    return result is not None and isinstance(result.get("meta"), dict)


def _positive_float(value: Any) -> Optional[float]:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if number > 0 else None


class QuoteSource(ABC):
    """A provider of current prices."""

    name: str = "quote"

    @abstractmethod
    def fetch_price(self, symbol: str, market: Market) -> Optional[float]:
        """Return the latest native-currency price, or None."""
        pass


class YahooChartQuoteSource(QuoteSource):
    """Yahoo chart JSON: meta.regularMarketPrice, else meta.previousClose."""

    name = "yahoo"

    def __init__(self, relays: RelayChain):
        self.relays = relays

    def fetch_price(self, symbol: str, market: Market) -> Optional[float]:
        for ticker in yahoo_symbols(symbol, market):
            result = _chart_result(
                self.relays.fetch(YAHOO_CHART_URL.format(symbol=quote(ticker)), accept=_has_chart_meta)
            )
            if result is None:
                continue

            meta = result.get("meta")
            if not isinstance(meta, dict):
                continue
            price = _positive_float(meta.get("regularMarketPrice")) or _positive_float(
                meta.get("previousClose")
            )
            if price is not None:
                logger.debug("%s: %s = %s", self.name, ticker, price)
                return price

        return None


def _has_google_price(html: Any) -> bool:
    return isinstance(html, str) and GOOGLE_PRICE_PATTERN.search(html) is not None


class GoogleFinanceQuoteSource(QuoteSource):
    """Google Finance quote page scrape, US listings only."""

    name = "google"

    def __init__(self, relays: RelayChain, exchanges: Sequence[str] = ("NASDAQ", "NYSE")):
        self.relays = relays
        self.exchanges = tuple(exchanges)

    def fetch_price(self, symbol: str, market: Market) -> Optional[float]:
        if market != Market.US:
            return None

        for exchange in self.exchanges:
            url = GOOGLE_FINANCE_URL.format(symbol=quote(symbol.upper()), exchange=exchange)
            html = self.relays.fetch(url, as_json=False, accept=_has_google_price)
            if not isinstance(html, str):
                continue

            match = GOOGLE_PRICE_PATTERN.search(html)
            if match:
                price = _positive_float(match.group(1).replace(",", ""))
                if price is not None:
                    logger.debug("%s: %s:%s = %s", self.name, symbol, exchange, price)
                    return price

        return None


def _has_quotes(data: Any) -> bool:
    return isinstance(data, dict) and isinstance(data.get("quotes"), list)


class YahooSearchSource:
    """Instrument search over Yahoo's finance search API."""

    def __init__(self, relays: RelayChain):
        self.relays = relays

    def search(self, query: str, market: Market) -> List[InstrumentCandidate]:
        """Search equities and ETFs listed on the given market.

        Args:
            query: Free-text query (symbol or company name)
            market: TW keeps .TW/.TWO listings, US keeps everything else

        Returns:
            Candidates with the venue suffix stripped, [] on failure
        """
        query = query.strip()
        if not query:
            return []

        data = self.relays.fetch(YAHOO_SEARCH_URL.format(query=quote(query)), accept=_has_quotes)
        quotes = data.get("quotes") if isinstance(data, dict) else None
        if not isinstance(quotes, list):
            return []

        candidates = []
        for item in quotes:
            if not isinstance(item, dict) or item.get("quoteType") not in SEARCHABLE_QUOTE_TYPES:
                continue

            ticker = item.get("symbol")
            if not isinstance(ticker, str) or not ticker:
                continue

            is_tw = ticker.upper().endswith(TW_SUFFIXES)
            if is_tw != (market == Market.TW):
                continue

            symbol = ticker.split(".")[0] if is_tw else ticker
            name = item.get("shortname") or item.get("longname") or symbol
            candidates.append(InstrumentCandidate(symbol=symbol, name=name, market=market))

        return candidates


@dataclass(frozen=True)
class FeedSpec:
    """An RSS feed URL with a "{q}" slot and the query that fills it."""

    url: str
    query: str = "{symbol}"

    def build_url(self, symbol: str, name: Optional[str]) -> str:
        text = " ".join(self.query.format(symbol=symbol, name=name or "").split())
        return self.url.format(q=quote_plus(text))


DEFAULT_FEEDS: Dict[Market, Sequence[FeedSpec]] = {
    Market.TW: (
        FeedSpec("https://tw.stock.yahoo.com/rss/s/{q}"),
        FeedSpec(
            "https://news.google.com/rss/search?q={q}&hl=zh-TW&gl=TW&ceid=TW:zh-Hant",
            "{symbol} {name} 股票",
        ),
    ),
    Market.US: (
        FeedSpec("https://finance.yahoo.com/rss/headline?s={q}"),
        FeedSpec(
            "https://news.google.com/rss/search?q={q}&hl=en-US&gl=US&ceid=US:en",
            "{symbol} stock news",
        ),
    ),
}

DEFAULT_NEWS_SOURCE = {
    Market.TW: "Yahoo 財經",
    Market.US: "Yahoo Finance",
}


def _feed_start(text: str) -> int:
    start = text.find("<?xml")
    return start if start != -1 else text.find("<rss")


def _feed_root(text: Any) -> Optional[ET.Element]:
    """Parse a feed payload; None when it is too short or not RSS/XML."""
    if not isinstance(text, str) or len(text) < MIN_FEED_LENGTH:
        return None
    start = _feed_start(text)
    if start == -1:
        return None
    try:
        return ET.fromstring(text[start:].encode("utf-8"))
    except ET.ParseError as e:
        logger.debug("Discarding malformed feed: %s", e)
        return None


def _is_feed(text: Any) -> bool:
    return _feed_root(text) is not None


def _parse_pub_date(value: str) -> Optional[datetime]:
    if not value:
        return None
    try:
        published = parsedate_to_datetime(value.strip())
    except (TypeError, ValueError):
        return None
    if published.tzinfo is None:
        published = published.replace(tzinfo=timezone.utc)
    return published


class RssNewsSource:
    """Headline news from RSS feeds.

    Feeds are tried in order; the first feed that yields at least one
    item wins. A payload only counts as a feed when it is long enough and
    carries an XML declaration or an <rss> root.
    """

    def __init__(
        self,
        relays: RelayChain,
        feeds: Optional[Dict[Market, Sequence[FeedSpec]]] = None,
        limit: int = 4,
    ):
        self.relays = relays
        self.feeds = feeds or DEFAULT_FEEDS
        self.limit = limit

    def fetch_news(self, symbol: str, market: Market, name: Optional[str] = None) -> List[NewsItem]:
        """Fetch up to `limit` headlines, newest first; [] on total failure."""
        for feed in self.feeds.get(market, ()):
            text = self.relays.fetch(feed.build_url(symbol, name), as_json=False, accept=_is_feed)
            if not isinstance(text, str):
                continue

            items = self.parse_feed(text, symbol, market)
            if items:
                return items

        return []

    def parse_feed(self, text: str, symbol: str, market: Market) -> List[NewsItem]:
        """Parse an RSS document into news items; [] when it is not one."""
        root = _feed_root(text)
        if root is None:
            return []

        items = []
        for element in root.iter("item"):
            if len(items) >= self.limit:
                break

            title = (element.findtext("title") or "").strip()
            link = (element.findtext("link") or "").strip()
            if not title or not link:
                continue

            items.append(
                NewsItem(
                    # Drop the " - Source" attribution suffix
                    title=title.split(" - ")[0],
                    link=link,
                    source=(element.findtext("source") or "").strip() or DEFAULT_NEWS_SOURCE[market],
                    symbol=symbol,
                    market=market,
                    published_at=_parse_pub_date(element.findtext("pubDate") or ""),
                )
            )

        epoch = datetime.min.replace(tzinfo=timezone.utc)
        return sorted(items, key=lambda item: item.published_at or epoch, reverse=True)


class YahooDividendSource:
    """Cash dividend history (two years) from Yahoo chart events."""

    def __init__(self, relays: RelayChain):
        self.relays = relays

    def fetch_dividends(self, symbol: str, market: Market) -> List[DividendEvent]:
        """Return dividend events newest first; [] when none are found."""
        for ticker in yahoo_symbols(symbol, market):
            result = _chart_result(
                self.relays.fetch(
                    YAHOO_DIVIDEND_URL.format(symbol=quote(ticker)),
                    accept=lambda data: _chart_result(data) is not None,
                )
            )
            events_block = result.get("events") if result is not None else None
            dividends = events_block.get("dividends") if isinstance(events_block, dict) else None
            if not isinstance(dividends, dict) or not dividends:
                continue

            events = []
            for entry in dividends.values():
                if not isinstance(entry, dict):
                    continue
                amount = _positive_float(entry.get("amount"))
                try:
                    ex_date = datetime.fromtimestamp(int(entry["date"]), tz=timezone.utc)
                except (KeyError, TypeError, ValueError, OverflowError, OSError):
                    continue
                if amount is not None:
                    events.append(DividendEvent(ex_date=ex_date, amount=amount))

            if events:
                return sorted(events, key=lambda event: event.ex_date, reverse=True)

        return []
